"""Host-side client for the engine process.

Spawns ``draftsmith engine`` (or the configured command), writes one request,
answers ``tool_call`` events through a ToolHost and returns the terminal
event's payload.
"""

import asyncio
from collections import deque
from typing import Any

from draftsmith.agent import AgentOutcome, AgentResult
from draftsmith.config import Config, ModelParameters, ProviderDescriptor, get_config
from draftsmith.exceptions import EndOfStreamError, EngineError, EngineTimeoutError, ProtocolError
from draftsmith.host import ToolHost
from draftsmith.llm.providers import ensure_model_allowed
from draftsmith.logging import get_logger
from draftsmith.protocol import (
    CancelRequest,
    ChatRequest,
    CompactRequest,
    CompactSummaryEvent,
    CompleteRequest,
    DoneEvent,
    ErrorEvent,
    FetchModelsRequest,
    LineReader,
    ModelsEvent,
    ToolCallEvent,
    ToolResultMessage,
    WireMessage,
    WireModel,
    WireToolResult,
    decode_outbound,
    encode,
)
from draftsmith.runner import AgentRunner
from draftsmith.tools.executor import ToolCallRecord, ToolCallReply
from draftsmith.tools.registry import CapabilitySet

log = get_logger(__name__)

_STDERR_TAIL_LINES = 20
_CHAT_ROLES = ("user", "assistant", "system")


def _wire_messages(messages: list[dict[str, Any]]) -> list[WireMessage]:
    return [
        WireMessage.from_session(message)
        for message in messages
        if str(message.get("role") or "") in _CHAT_ROLES
    ]


class _EngineProcess:
    """One spawned engine process with line-oriented stdin/stdout."""

    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process
        self.reader = LineReader(process.stdout, decode_outbound)
        self.stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        assert self.process.stderr is not None
        while True:
            raw = await self.process.stderr.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self.stderr_tail.append(line)
                log.debug("Engine stderr", line=line)

    async def send(self, message: WireModel) -> None:
        assert self.process.stdin is not None
        self.process.stdin.write(encode(message).encode("utf-8"))
        await self.process.stdin.drain()

    async def try_send(self, message: WireModel) -> bool:
        """Send unless the engine already closed its stdin."""
        try:
            await self.send(message)
        except (BrokenPipeError, ConnectionResetError):
            return False
        return True

    async def diagnostics(self) -> str:
        """Stderr tail, once the drain task has caught up with a finished process."""
        try:
            await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
        except asyncio.TimeoutError:
            pass
        return "\n".join(self.stderr_tail)

    async def close(self) -> None:
        if self.process.stdin is not None and not self.process.stdin.is_closing():
            self.process.stdin.close()
        if self.process.returncode is None:
            try:
                await asyncio.wait_for(self.process.wait(), timeout=1.0)
            except asyncio.TimeoutError:
                self.kill()
                await self.process.wait()
        try:
            await asyncio.wait_for(self._stderr_task, timeout=1.0)
        except asyncio.TimeoutError:
            self._stderr_task.cancel()

    def kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass


class EngineClient(AgentRunner):
    """Run engine requests in a child process.

    ``descriptor`` and ``parameters`` are needed for ``chat``, ``compact``
    and ``complete``; ``fetch_models`` works without them.
    """

    def __init__(
        self,
        descriptor: ProviderDescriptor | None = None,
        parameters: ModelParameters | None = None,
        host: ToolHost | None = None,
        *,
        config: Config | None = None,
        command: list[str] | None = None,
    ):
        self.config = config or get_config()
        self.descriptor = descriptor
        self.parameters = parameters
        self.host = host
        self.command = list(command or self.config.engine.command)
        self.timeout = float(self.config.engine.chat_timeout_seconds)
        self.cancel_grace = float(self.config.engine.cancel_grace_seconds)
        self.max_steps = self.config.agent.max_steps

    @classmethod
    def from_config(cls, host: ToolHost | None = None, config: Config | None = None) -> "EngineClient":
        cfg = config or get_config()
        descriptor, parameters = cfg.resolve_model()
        return cls(descriptor, parameters, host, config=cfg)

    def _model(self) -> tuple[ProviderDescriptor, ModelParameters]:
        if self.descriptor is None or self.parameters is None:
            return self.config.resolve_model()
        return self.descriptor, self.parameters

    async def _spawn(self) -> _EngineProcess:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ProtocolError(f"Engine executable not found: {self.command[0]}") from e
        log.debug("Engine started", pid=process.pid, command=self.command)
        return _EngineProcess(process)

    async def _handle_tool_calls(
        self,
        event: ToolCallEvent,
        capabilities: CapabilitySet,
        trace: list[ToolCallRecord],
    ) -> ToolResultMessage:
        results: list[WireToolResult] = []
        for call in event.calls:
            request = call.to_request()
            record = ToolCallRecord(id=request.id, name=request.name, args=dict(request.args))
            trace.append(record)
            if self.host is None:
                reply = ToolCallReply(id=request.id, error="No tool host configured")
            else:
                reply = await self.host.handle(request, capabilities)
            if reply.ok:
                record.complete(reply.result)
            else:
                record.fail(reply.error or "")
            results.append(WireToolResult(id=reply.id, result=reply.result, error=reply.error))
        return ToolResultMessage(results=results)

    async def _converse(
        self,
        engine: _EngineProcess,
        request: WireModel,
        capabilities: CapabilitySet,
        trace: list[ToolCallRecord],
    ) -> Any:
        await engine.send(request)
        while True:
            try:
                event = await engine.reader.read()
            except EndOfStreamError:
                await engine.process.wait()
                detail = await engine.diagnostics() or f"exit code {engine.process.returncode}"
                raise ProtocolError(f"Engine exited without a response: {detail}") from None
            if isinstance(event, ToolCallEvent):
                reply = await self._handle_tool_calls(event, capabilities, trace)
                if not await engine.try_send(reply):
                    # The engine already finished (after a cancel, say); its
                    # terminal event is still buffered on stdout.
                    log.info("Engine stopped reading tool results", calls=len(reply.results))
                continue
            return event

    async def _exchange(
        self,
        request: WireModel,
        *,
        capabilities: CapabilitySet = CapabilitySet.READ_ONLY,
        cancel_event: asyncio.Event | None = None,
        trace: list[ToolCallRecord] | None = None,
    ) -> Any:
        """Run one request to its terminal event.

        Returns ``None`` when a cancel was requested and the engine then had
        to be killed, or closed its stream without a terminal event.
        """
        loop = asyncio.get_running_loop()
        engine = await self._spawn()
        conversation = asyncio.create_task(
            self._converse(engine, request, capabilities, trace if trace is not None else [])
        )
        waiters: set[asyncio.Future[Any]] = {conversation}
        cancel_wait: asyncio.Task[Any] | None = None
        if cancel_event is not None:
            cancel_wait = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_wait)

        deadline = loop.time() + self.timeout
        cancel_requested = False
        try:
            while True:
                remaining = deadline - loop.time()
                done: set[asyncio.Future[Any]] = set()
                if remaining > 0:
                    done, _ = await asyncio.wait(
                        waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                    )
                if conversation in done:
                    error = conversation.exception()
                    if cancel_requested and isinstance(error, ProtocolError):
                        log.info("Engine stream ended after cancel", error=str(error))
                        return None
                    return conversation.result()
                if cancel_wait is not None and cancel_wait in done:
                    waiters.discard(cancel_wait)
                    cancel_requested = True
                    log.info("Cancelling engine request", grace=self.cancel_grace)
                    await engine.try_send(CancelRequest())
                    deadline = min(deadline, loop.time() + self.cancel_grace)
                    continue
                if cancel_requested:
                    log.warning("Engine ignored cancel, killing process")
                    engine.kill()
                    return None
                engine.kill()
                raise EngineTimeoutError(self.timeout)
        finally:
            for task in (conversation, cancel_wait):
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except (asyncio.CancelledError, ProtocolError):
                        pass
            await engine.close()

    @staticmethod
    def _raise_for_error(event: Any) -> None:
        if isinstance(event, ErrorEvent):
            raise EngineError(event.message)

    async def run(
        self,
        messages: list[dict[str, Any]],
        *,
        system_prompt: str = "",
        capabilities: CapabilitySet = CapabilitySet.READ_ONLY,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentResult:
        """Run a ``chat`` request; same contract as the in-process runner."""
        descriptor, parameters = self._model()
        # Fail fast without spawning a process.
        ensure_model_allowed(descriptor, parameters.model)
        request = ChatRequest(
            provider=descriptor,
            parameters=parameters,
            system_prompt=system_prompt,
            messages=_wire_messages(messages),
            capabilities=capabilities,
            max_steps=self.max_steps,
        )
        host_trace: list[ToolCallRecord] = []
        event = await self._exchange(
            request,
            capabilities=capabilities,
            cancel_event=cancel_event,
            trace=host_trace,
        )
        if event is None:
            for record in host_trace:
                if record.error is None and record.result is None:
                    record.fail("Cancelled")
            return AgentResult(
                content="",
                outcome=AgentOutcome.CANCELLED,
                tool_calls=host_trace,
                max_steps=self.max_steps,
            )
        self._raise_for_error(event)
        if not isinstance(event, DoneEvent):
            raise ProtocolError(f"Unexpected engine response: {event.type}")
        return AgentResult(
            content=event.content,
            outcome=AgentOutcome(event.outcome),
            tool_calls=[ToolCallRecord.from_dict(item) for item in event.tool_calls],
            max_steps=self.max_steps,
        )

    async def summarize(self, messages: list[dict[str, Any]]) -> str:
        descriptor, parameters = self._model()
        ensure_model_allowed(descriptor, parameters.model)
        event = await self._exchange(
            CompactRequest(provider=descriptor, parameters=parameters, messages=_wire_messages(messages))
        )
        self._raise_for_error(event)
        if not isinstance(event, CompactSummaryEvent):
            raise ProtocolError(f"Unexpected engine response: {event.type}")
        return event.content

    async def complete(self, messages: list[dict[str, Any]], system_prompt: str = "") -> str:
        """Inline completion: one tool-free generation."""
        descriptor, parameters = self._model()
        ensure_model_allowed(descriptor, parameters.model)
        event = await self._exchange(
            CompleteRequest(
                provider=descriptor,
                parameters=parameters,
                system_prompt=system_prompt,
                messages=_wire_messages(messages),
            )
        )
        self._raise_for_error(event)
        if not isinstance(event, DoneEvent):
            raise ProtocolError(f"Unexpected engine response: {event.type}")
        return event.content

    async def fetch_models(
        self,
        base_url: str,
        api_key: str = "",
        provider_type: str = "openai-compatible",
    ) -> list[str]:
        event = await self._exchange(
            FetchModelsRequest(base_url=base_url, api_key=api_key, provider_type=provider_type)
        )
        self._raise_for_error(event)
        if not isinstance(event, ModelsEvent):
            raise ProtocolError(f"Unexpected engine response: {event.type}")
        return event.models
