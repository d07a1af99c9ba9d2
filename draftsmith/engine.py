"""Engine process: serve one protocol request over stdin/stdout.

The engine reads a single request, runs it, and exits. During ``chat`` it
emits ``tool_call`` events and waits for matching ``tool_result`` replies;
a ``cancel`` message stops the loop with a cancelled outcome.
"""

import asyncio
import sys
from typing import Any

import httpx
import structlog

from draftsmith.agent import AgentLoop
from draftsmith.compaction import LLMSummarizer
from draftsmith.config import Config, get_config
from draftsmith.exceptions import DraftsmithError, EndOfStreamError, ProtocolError
from draftsmith.instructions import InstructionLoader
from draftsmith.llm import LLMProvider, Message
from draftsmith.llm.providers import build_request_context, fetch_models
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
    LineWriter,
    ModelsEvent,
    ToolCallEvent,
    ToolResultMessage,
    decode_inbound,
)
from draftsmith.tools.executor import ToolCallReply, ToolCallRequest, ToolChannel, ToolExecutor

log = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1


class ProtocolToolChannel(ToolChannel):
    """Tool channel over the protocol streams, correlating replies by id."""

    def __init__(self, writer: LineWriter):
        self.writer = writer
        self._pending: dict[str, asyncio.Future[ToolCallReply]] = {}
        self._closed: ProtocolError | None = None

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    async def call(self, request: ToolCallRequest) -> ToolCallReply:
        if self._closed is not None:
            raise self._closed
        if request.id in self._pending:
            raise ProtocolError(f"Tool call id already outstanding: {request.id}")

        future: asyncio.Future[ToolCallReply] = asyncio.get_running_loop().create_future()
        self._pending[request.id] = future
        try:
            self.writer.send(ToolCallEvent.from_request(request))
            return await future
        finally:
            self._pending.pop(request.id, None)

    def deliver(self, message: ToolResultMessage) -> None:
        """Resolve outstanding calls from a ``tool_result`` message."""
        for result in message.results:
            future = self._pending.get(result.id)
            if future is None:
                raise ProtocolError(f"Unexpected tool result id: {result.id}")
            if not future.done():
                future.set_result(result.to_reply())

    def close(self, error: ProtocolError) -> None:
        """Fail outstanding and future calls with ``error``."""
        self._closed = error
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)


class EngineServer:
    """Handle one inbound request and report the process exit code."""

    def __init__(
        self,
        reader: LineReader,
        writer: LineWriter,
        *,
        config: Config | None = None,
        http_client: httpx.AsyncClient | None = None,
        instructions: InstructionLoader | None = None,
    ):
        self.reader = reader
        self.writer = writer
        self.config = config or get_config()
        self.http_client = http_client
        self.instructions = instructions or InstructionLoader()

    def _error(self, message: str, code: int = EXIT_ERROR) -> int:
        self.writer.send(ErrorEvent(message=message))
        return code

    async def serve(self) -> int:
        try:
            request = await self.reader.read()
        except ProtocolError as e:
            log.error("Failed to read request", error=str(e))
            return self._error(str(e))

        with structlog.contextvars.bound_contextvars(request=request.type):
            log.info("Engine request")
            if isinstance(request, FetchModelsRequest):
                return await self._handle_fetch_models(request)
            if isinstance(request, ChatRequest):
                return await self._handle_chat(request)
            if isinstance(request, CompactRequest):
                return await self._handle_compact(request)
            if isinstance(request, CompleteRequest):
                return await self._handle_complete(request)
            return self._error(f"Unknown request type: {request.type}")

    async def _handle_fetch_models(self, request: FetchModelsRequest) -> int:
        try:
            models = await fetch_models(
                request.base_url,
                request.api_key,
                provider_type=request.provider_type,
                client=self.http_client,
            )
        except DraftsmithError as e:
            # Listing failures are reported but are not fatal to the caller.
            return self._error(str(e), EXIT_OK)
        self.writer.send(ModelsEvent(models=models))
        return EXIT_OK

    def _create_provider(self, request: ChatRequest | CompactRequest | CompleteRequest) -> LLMProvider:
        context = build_request_context(request.provider, client=self.http_client)
        return context.create_model(request.parameters)

    async def _pump_inbound(self, channel: ProtocolToolChannel, cancel_event: asyncio.Event) -> None:
        """Route inbound messages while a chat runs."""
        try:
            while True:
                message = await self.reader.read()
                if isinstance(message, ToolResultMessage):
                    channel.deliver(message)
                elif isinstance(message, CancelRequest):
                    log.info("Cancel requested")
                    cancel_event.set()
                else:
                    raise ProtocolError("Expected tool_result")
        except EndOfStreamError as e:
            # Host closed stdin; only fatal if a tool result is still owed.
            channel.close(e)
            if channel.pending_ids:
                raise
        except ProtocolError as e:
            channel.close(e)
            raise

    async def _handle_chat(self, request: ChatRequest) -> int:
        try:
            provider = self._create_provider(request)
        except DraftsmithError as e:
            return self._error(str(e))

        channel = ProtocolToolChannel(self.writer)
        agent = AgentLoop(
            provider,
            ToolExecutor(channel),
            max_steps=request.max_steps or self.config.agent.max_steps,
        )
        cancel_event = asyncio.Event()
        pump_task = asyncio.create_task(self._pump_inbound(channel, cancel_event))
        run_task = asyncio.create_task(
            agent.run(
                [m.to_message() for m in request.messages],
                system_prompt=request.system_prompt,
                capabilities=request.capabilities,
                cancel_event=cancel_event,
            )
        )
        try:
            pending: set[asyncio.Task[Any]] = {run_task, pump_task}
            while run_task in pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                if pump_task in done and pump_task.exception() is not None and run_task in pending:
                    run_task.cancel()
                    try:
                        await run_task
                    except asyncio.CancelledError:
                        pass
                    return self._error(str(pump_task.exception()))

            try:
                result = run_task.result()
            except DraftsmithError as e:
                log.error("Chat failed", error=str(e))
                return self._error(str(e))

            self.writer.send(DoneEvent(
                content=result.content,
                outcome=result.outcome.value,
                tool_calls=[record.to_dict() for record in result.tool_calls],
            ))
            return EXIT_OK
        finally:
            if not pump_task.done():
                pump_task.cancel()
                try:
                    await pump_task
                except (asyncio.CancelledError, ProtocolError):
                    pass
            await provider.close()

    async def _handle_compact(self, request: CompactRequest) -> int:
        try:
            provider = self._create_provider(request)
        except DraftsmithError as e:
            return self._error(str(e))
        try:
            summarizer = LLMSummarizer(
                provider,
                instructions=self.instructions,
                max_tokens=request.parameters.max_tokens,
            )
            summary = await summarizer([m.model_dump() for m in request.messages])
        except DraftsmithError as e:
            return self._error(str(e))
        finally:
            await provider.close()
        if not summary:
            return self._error("Compaction produced an empty summary")
        self.writer.send(CompactSummaryEvent(content=summary))
        return EXIT_OK

    async def _handle_complete(self, request: CompleteRequest) -> int:
        try:
            provider = self._create_provider(request)
        except DraftsmithError as e:
            return self._error(str(e))
        system_prompt = request.system_prompt or self.instructions.load("inline_completion_system_prompt.md")
        messages = [Message(role="system", content=system_prompt)]
        messages.extend(m.to_message() for m in request.messages)
        try:
            response = await provider.complete(messages, tools=None)
        except DraftsmithError as e:
            return self._error(str(e))
        finally:
            await provider.close()
        self.writer.send(DoneEvent(content=response.content.strip()))
        return EXIT_OK


async def open_stdin_reader() -> asyncio.StreamReader:
    """Wrap the process stdin pipe in an asyncio stream reader."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def run_engine(config: Config | None = None) -> int:
    """Serve one request on stdin/stdout and return the exit code."""
    stream = await open_stdin_reader()
    server = EngineServer(
        LineReader(stream, decode_inbound),
        LineWriter(sys.stdout),
        config=config,
    )
    return await server.serve()
