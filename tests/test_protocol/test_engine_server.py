import asyncio
import io
import json

import httpx
import pytest

from draftsmith.config import Config, ModelParameters, ProviderDescriptor
from draftsmith.engine import EXIT_ERROR, EXIT_OK, EngineServer
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
    WireMessage,
    WireToolResult,
    decode_inbound,
    decode_outbound,
    encode,
)
from draftsmith.tools.registry import CapabilitySet

PROVIDER = ProviderDescriptor(id="p1", base_url="https://api.example.com/v1", api_key="sk", models=["m1"])


class CapturingWriter(LineWriter):
    """Keeps decoded events and lets the test answer tool calls inline."""

    def __init__(self, on_event=None):
        super().__init__(io.StringIO())
        self.events: list = []
        self.on_event = on_event

    def send(self, message) -> None:
        super().send(message)
        event = decode_outbound(encode(message))
        self.events.append(event)
        if self.on_event is not None:
            self.on_event(event)


def _completion(content: str = "", tool_calls: list | None = None) -> dict:
    message: dict = {"content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {"model": "m1", "choices": [{"message": message}]}


def _tool_call(call_id: str, name: str, args: dict) -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": json.dumps(args)}}


def _reader(*messages) -> tuple[asyncio.StreamReader, LineReader]:
    stream = asyncio.StreamReader()
    for message in messages:
        stream.feed_data(encode(message).encode("utf-8"))
    return stream, LineReader(stream, decode_inbound)


def _server(reader: LineReader, writer: LineWriter, client: httpx.AsyncClient) -> EngineServer:
    return EngineServer(reader, writer, config=Config(), http_client=client)


def _chat(model: str = "m1", capabilities: CapabilitySet = CapabilitySet.READ_ONLY) -> ChatRequest:
    return ChatRequest(
        provider=PROVIDER,
        parameters=ModelParameters(model=model),
        system_prompt="You are a writing agent.",
        messages=[WireMessage(role="user", content="continue")],
        capabilities=capabilities,
    )


@pytest.mark.asyncio
async def test_chat_relays_tool_calls_and_finishes_with_done():
    bodies: list[dict] = []
    responses = [
        _completion(tool_calls=[_tool_call("c1", "read", {"path": "chapters/chapter_001.txt"})]),
        _completion(content="Here is the draft."),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=responses.pop(0))

    stream, reader = _reader(_chat())

    def answer(event) -> None:
        if isinstance(event, ToolCallEvent):
            reply = ToolResultMessage(results=[WireToolResult(id=event.calls[0].id, result="00001| It rained.\n")])
            stream.feed_data(encode(reply).encode("utf-8"))

    writer = CapturingWriter(answer)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await _server(reader, writer, client).serve()

    assert code == EXIT_OK
    assert [event.type for event in writer.events] == ["tool_call", "done"]
    call = writer.events[0].calls[0]
    assert call.id == "c1"
    assert call.name == "read"
    assert call.args["path"] == "chapters/chapter_001.txt"

    done = writer.events[1]
    assert isinstance(done, DoneEvent)
    assert done.content == "Here is the draft."
    assert done.outcome == "completed"
    assert done.tool_calls[0]["status"] == "success"

    assert bodies[0]["messages"][0] == {"role": "system", "content": "You are a writing agent."}
    assert bodies[1]["messages"][-1] == {"role": "tool", "tool_call_id": "c1", "content": "00001| It rained.\n"}
    assert "append" not in [tool["function"]["name"] for tool in bodies[0]["tools"]]


@pytest.mark.asyncio
async def test_chat_never_relays_write_tools_in_read_only_subset():
    responses = [
        _completion(tool_calls=[_tool_call("c1", "append", {"path": "chapters/chapter_001.txt", "content": "x"})]),
        _completion(content="I need your confirmation first."),
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=responses.pop(0))

    _, reader = _reader(_chat())
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await _server(reader, writer, client).serve()

    assert code == EXIT_OK
    assert [event.type for event in writer.events] == ["done"]
    assert writer.events[0].tool_calls[0]["status"] == "error"


@pytest.mark.asyncio
async def test_chat_with_disallowed_model_reports_error_without_network():
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=_completion("x"))

    _, reader = _reader(_chat(model="m2"))
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await _server(reader, writer, client).serve()

    assert code == EXIT_ERROR
    assert isinstance(writer.events[0], ErrorEvent)
    assert "m2" in writer.events[0].message
    assert requests == []


@pytest.mark.asyncio
async def test_cancel_message_ends_chat_with_cancelled_outcome():
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.Event().wait()
        return httpx.Response(200, json=_completion("never"))

    _, reader = _reader(_chat(), CancelRequest())
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await asyncio.wait_for(_server(reader, writer, client).serve(), timeout=5)

    assert code == EXIT_OK
    assert writer.events[-1].type == "done"
    assert writer.events[-1].outcome == "cancelled"


@pytest.mark.asyncio
async def test_host_closing_stdin_with_tool_result_owed_is_an_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion(tool_calls=[_tool_call("c1", "list", {})]))

    stream, reader = _reader(_chat())
    stream.feed_eof()
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await asyncio.wait_for(_server(reader, writer, client).serve(), timeout=5)

    assert code == EXIT_ERROR
    assert writer.events[-1].type == "error"


@pytest.mark.asyncio
async def test_fetch_models_request():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"id": "m1"}, {"id": "m2"}]})

    _, reader = _reader(FetchModelsRequest(base_url="https://api.example.com/v1", api_key="sk"))
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await _server(reader, writer, client).serve()

    assert code == EXIT_OK
    assert isinstance(writer.events[0], ModelsEvent)
    assert writer.events[0].models == ["m1", "m2"]


@pytest.mark.asyncio
async def test_fetch_models_failure_is_reported_but_not_fatal():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "bad key"})

    _, reader = _reader(FetchModelsRequest(base_url="https://api.example.com/v1"))
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await _server(reader, writer, client).serve()

    assert code == EXIT_OK
    assert isinstance(writer.events[0], ErrorEvent)
    assert "401" in writer.events[0].message


@pytest.mark.asyncio
async def test_compact_request_returns_summary():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_completion("  [Conversation summary] They sailed.  "))

    request = CompactRequest(
        provider=PROVIDER,
        parameters=ModelParameters(model="m1"),
        messages=[WireMessage(role="user", content="We sail at dawn.")],
    )
    _, reader = _reader(request)
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await _server(reader, writer, client).serve()

    assert code == EXIT_OK
    assert isinstance(writer.events[0], CompactSummaryEvent)
    assert writer.events[0].content == "[Conversation summary] They sailed."
    assert "tools" not in bodies[0]
    assert "We sail at dawn." in bodies[0]["messages"][1]["content"]


@pytest.mark.asyncio
async def test_complete_request_is_tool_free():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=_completion(" and the tide turned.\n"))

    request = CompleteRequest(
        provider=PROVIDER,
        parameters=ModelParameters(model="m1"),
        messages=[WireMessage(role="user", content="The ship left port")],
    )
    _, reader = _reader(request)
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        code = await _server(reader, writer, client).serve()

    assert code == EXIT_OK
    assert writer.events[0].content == "and the tide turned."
    assert "tools" not in bodies[0]
    assert bodies[0]["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_malformed_request_line_is_an_error():
    stream = asyncio.StreamReader()
    stream.feed_data(b"{not json}\n")
    writer = CapturingWriter()
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as client:
        code = await _server(LineReader(stream, decode_inbound), writer, client).serve()

    assert code == EXIT_ERROR
    assert isinstance(writer.events[0], ErrorEvent)
