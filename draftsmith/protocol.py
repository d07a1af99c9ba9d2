"""Line-delimited JSON protocol between the host and the engine process.

One JSON object per line in both directions. Inbound (host -> engine):
``chat``, ``fetch_models``, ``compact``, ``complete``, ``tool_result`` and
``cancel``. Outbound (engine -> host): ``tool_call``, ``done``,
``compact_summary``, ``models`` and ``error``.
"""

import asyncio
import json
import sys
from typing import Annotated, Any, Callable, Literal, TextIO, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from draftsmith.config import ModelParameters, ProviderDescriptor
from draftsmith.exceptions import EndOfStreamError, ProtocolError
from draftsmith.llm import Message
from draftsmith.tools.executor import ToolCallReply, ToolCallRequest
from draftsmith.tools.registry import CapabilitySet


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class WireMessage(WireModel):
    role: Literal["user", "assistant", "system", "tool"]
    content: str = ""
    tool_call_id: str | None = Field(default=None, alias="toolCallId")

    def to_message(self) -> Message:
        return Message(role=self.role, content=self.content, tool_call_id=self.tool_call_id)

    @classmethod
    def from_session(cls, message: dict[str, Any]) -> "WireMessage":
        return cls(role=message.get("role", "user"), content=str(message.get("content") or ""))


class ChatRequest(WireModel):
    type: Literal["chat"] = "chat"
    provider: ProviderDescriptor
    parameters: ModelParameters
    system_prompt: str = Field(default="", alias="systemPrompt")
    messages: list[WireMessage] = Field(default_factory=list)
    capabilities: CapabilitySet = CapabilitySet.READ_ONLY
    max_steps: int | None = Field(default=None, alias="maxSteps", ge=1)


class FetchModelsRequest(WireModel):
    type: Literal["fetch_models"] = "fetch_models"
    base_url: str = Field(alias="baseURL")
    api_key: str = Field(default="", alias="apiKey")
    provider_type: Literal["openai-compatible", "google", "anthropic"] = Field(
        default="openai-compatible", alias="providerType"
    )


class CompactRequest(WireModel):
    type: Literal["compact"] = "compact"
    provider: ProviderDescriptor
    parameters: ModelParameters
    messages: list[WireMessage] = Field(default_factory=list)


class CompleteRequest(WireModel):
    type: Literal["complete"] = "complete"
    provider: ProviderDescriptor
    parameters: ModelParameters
    system_prompt: str = Field(default="", alias="systemPrompt")
    messages: list[WireMessage] = Field(default_factory=list)


class WireToolResult(WireModel):
    id: str
    result: str = ""
    error: str | None = None

    def to_reply(self) -> ToolCallReply:
        return ToolCallReply(id=self.id, result=self.result, error=self.error)


class ToolResultMessage(WireModel):
    type: Literal["tool_result"] = "tool_result"
    results: list[WireToolResult] = Field(default_factory=list)

    @classmethod
    def from_reply(cls, reply: ToolCallReply) -> "ToolResultMessage":
        return cls(results=[WireToolResult(id=reply.id, result=reply.result, error=reply.error)])


class CancelRequest(WireModel):
    type: Literal["cancel"] = "cancel"


InboundMessage = Annotated[
    Union[
        ChatRequest,
        FetchModelsRequest,
        CompactRequest,
        CompleteRequest,
        ToolResultMessage,
        CancelRequest,
    ],
    Field(discriminator="type"),
]


class WireToolCall(WireModel):
    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)

    def to_request(self) -> ToolCallRequest:
        return ToolCallRequest(id=self.id, name=self.name, args=self.args)


class ToolCallEvent(WireModel):
    type: Literal["tool_call"] = "tool_call"
    calls: list[WireToolCall] = Field(default_factory=list)

    @classmethod
    def from_request(cls, request: ToolCallRequest) -> "ToolCallEvent":
        return cls(calls=[WireToolCall(id=request.id, name=request.name, args=request.args)])


class DoneEvent(WireModel):
    type: Literal["done"] = "done"
    content: str = ""
    outcome: Literal["completed", "step_limit_exceeded", "cancelled"] = "completed"
    tool_calls: list[dict[str, Any]] = Field(default_factory=list, alias="toolCalls")


class CompactSummaryEvent(WireModel):
    type: Literal["compact_summary"] = "compact_summary"
    content: str = ""


class ModelsEvent(WireModel):
    type: Literal["models"] = "models"
    models: list[str] = Field(default_factory=list)


class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    message: str


OutboundEvent = Annotated[
    Union[ToolCallEvent, DoneEvent, CompactSummaryEvent, ModelsEvent, ErrorEvent],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[Any] = TypeAdapter(InboundMessage)
_outbound_adapter: TypeAdapter[Any] = TypeAdapter(OutboundEvent)


def _decode(line: str | bytes, adapter: TypeAdapter[Any], direction: str) -> Any:
    try:
        payload = json.loads(line)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Malformed JSON from {direction}: {e}") from e
    if not isinstance(payload, dict) or "type" not in payload:
        raise ProtocolError(f"Message from {direction} has no type")
    try:
        return adapter.validate_python(payload)
    except ValidationError as e:
        kind = payload.get("type")
        raise ProtocolError(f"Invalid {kind!r} message from {direction}: {e.errors()[0]['msg']}") from e


def decode_inbound(line: str | bytes) -> Any:
    """Decode one host -> engine line."""
    return _decode(line, _inbound_adapter, "host")


def decode_outbound(line: str | bytes) -> Any:
    """Decode one engine -> host line."""
    return _decode(line, _outbound_adapter, "engine")


def encode(message: WireModel) -> str:
    """Encode one message as a single JSON line (newline included)."""
    return message.model_dump_json(by_alias=True, exclude_none=True) + "\n"


class LineReader:
    """Read protocol messages from an asyncio stream, skipping blank lines."""

    def __init__(self, stream: asyncio.StreamReader, decode: Callable[[str | bytes], Any]):
        self.stream = stream
        self.decode = decode

    async def read(self) -> Any:
        """Return the next message.

        Raises:
            ProtocolError: malformed line or end of stream
        """
        while True:
            raw = await self.stream.readline()
            if not raw:
                raise EndOfStreamError()
            line = raw.strip()
            if not line:
                continue
            return self.decode(line)


class LineWriter:
    """Write protocol messages to a text stream, one line each, flushed."""

    def __init__(self, stream: TextIO | None = None):
        self.stream = stream or sys.stdout

    def send(self, message: WireModel) -> None:
        self.stream.write(encode(message))
        self.stream.flush()
