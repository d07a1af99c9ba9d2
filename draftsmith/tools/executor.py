"""Tool executor: relays validated tool calls across the host boundary."""

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from draftsmith.exceptions import ProtocolError, ToolError
from draftsmith.llm import ToolCall
from draftsmith.logging import get_logger
from draftsmith.tools.registry import CapabilitySet, ToolRegistry

log = get_logger(__name__)


def new_call_id(tool_name: str) -> str:
    """Fallback correlation id when the model did not supply one."""
    return f"{tool_name or 'tool'}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class ToolCallStatus(str, Enum):
    CALLING = "calling"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ToolCallRecord:
    """One entry of the tool-call trace for a single agent loop invocation."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.CALLING
    result: str | None = None
    error: str | None = None
    duration_ms: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is ToolCallStatus.SUCCESS

    def complete(self, result: str, started: float | None = None) -> None:
        self.status = ToolCallStatus.SUCCESS
        self.result = result
        self._stamp(started)

    def fail(self, error: str, started: float | None = None) -> None:
        self.status = ToolCallStatus.ERROR
        self.error = error or "Tool execution failed"
        self._stamp(started)

    def _stamp(self, started: float | None) -> None:
        if started is not None:
            self.duration_ms = int((time.monotonic() - started) * 1000)

    def to_model_content(self) -> str:
        """Tool result text fed back to the model."""
        if self.succeeded:
            return self.result or ""
        return f"Error: {self.error}"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "args": self.args,
            "status": self.status.value,
        }
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        if self.duration_ms is not None:
            data["duration"] = self.duration_ms
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCallRecord":
        return cls(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            args=dict(data.get("args") or {}),
            status=ToolCallStatus(data.get("status", ToolCallStatus.CALLING.value)),
            result=data.get("result"),
            error=data.get("error"),
            duration_ms=data.get("duration"),
        )


@dataclass(frozen=True)
class ToolCallRequest:
    """Wire request for one tool call: ``{id, name, args}``."""

    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": self.args}


@dataclass(frozen=True)
class ToolCallReply:
    """Wire reply for one tool call: ``{id, result | error}``."""

    id: str
    result: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not (self.error or "").strip()

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "result": self.result}
        if self.error is not None:
            data["error"] = self.error
        return data


class ToolChannel(ABC):
    """Request/reply channel to the process that actually executes tools."""

    @abstractmethod
    async def call(self, request: ToolCallRequest) -> ToolCallReply:
        """Send one request and wait for the reply with the same correlation id."""
        pass


class ToolExecutor:
    """Validate calls against the capability subset and dispatch them over a channel."""

    def __init__(self, channel: ToolChannel, registry: ToolRegistry | None = None):
        self.channel = channel
        self.registry = registry or ToolRegistry()

    async def execute(
        self,
        call: ToolCall,
        capabilities: CapabilitySet,
        trace: list[ToolCallRecord] | None = None,
    ) -> ToolCallRecord:
        """Execute one tool call and return its terminal trace record.

        Unknown tools, capability denials and invalid arguments fail the record
        without any dispatch. Protocol errors and cancellation propagate after
        the record is marked as failed.
        """
        call_id = call.id or new_call_id(call.name)
        record = ToolCallRecord(id=call_id, name=call.name, args=dict(call.arguments or {}))
        if trace is not None:
            trace.append(record)

        try:
            invocation = self.registry.resolve(call_id, call.name, call.arguments, capabilities)
        except ToolError as e:
            log.info("Tool call rejected before dispatch", tool=call.name, call_id=call_id, error=str(e))
            record.fail(str(e))
            return record

        record.args = invocation.args
        started = time.monotonic()
        log.info("Dispatching tool call", tool=call.name, call_id=call_id)
        try:
            reply = await self.channel.call(
                ToolCallRequest(id=call_id, name=invocation.name.value, args=invocation.args)
            )
        except asyncio.CancelledError:
            record.fail("Cancelled", started)
            raise
        except ProtocolError as e:
            record.fail(str(e), started)
            raise

        if reply.id != call_id:
            record.fail("Mismatched tool result id", started)
            raise ProtocolError(f"Tool result id {reply.id!r} does not match call {call_id!r}")

        if reply.ok:
            record.complete(reply.result, started)
        else:
            record.fail(reply.error or "", started)
        log.info("Tool call finished", tool=call.name, call_id=call_id, status=record.status.value)
        return record
