import asyncio
import json

import pytest

from draftsmith.config import ModelParameters, ProviderDescriptor
from draftsmith.exceptions import EndOfStreamError, ProtocolError
from draftsmith.protocol import (
    CancelRequest,
    ChatRequest,
    DoneEvent,
    LineReader,
    ToolCallEvent,
    ToolResultMessage,
    WireMessage,
    decode_inbound,
    decode_outbound,
    encode,
)
from draftsmith.tools.executor import ToolCallRequest
from draftsmith.tools.registry import CapabilitySet


def test_encode_is_one_line_with_wire_field_names():
    request = ChatRequest(
        provider=ProviderDescriptor(id="p1", base_url="https://api.example.com/v1", api_key="sk"),
        parameters=ModelParameters(model="m1", max_tokens=100),
        system_prompt="sys",
        messages=[WireMessage(role="user", content="line one\nline two")],
        capabilities=CapabilitySet.READ_WRITE,
        max_steps=4,
    )

    line = encode(request)

    assert line.endswith("\n")
    assert line.count("\n") == 1
    payload = json.loads(line)
    assert payload["type"] == "chat"
    assert payload["systemPrompt"] == "sys"
    assert payload["maxSteps"] == 4
    assert payload["capabilities"] == "read-write"
    assert payload["provider"]["baseURL"] == "https://api.example.com/v1"
    assert payload["provider"]["apiKey"] == "sk"
    assert payload["parameters"] == {"model": "m1", "maxTokens": 100}


def test_decode_inbound_chat_request():
    line = json.dumps({
        "type": "chat",
        "provider": {"id": "p1", "baseURL": "https://x/v1", "providerType": "google"},
        "parameters": {"model": "m1", "topP": 0.9},
        "messages": [{"role": "user", "content": "hi"}],
        "capabilities": "read-only",
    })

    request = decode_inbound(line)

    assert isinstance(request, ChatRequest)
    assert request.provider.provider_type == "google"
    assert request.parameters.top_p == 0.9
    assert request.capabilities is CapabilitySet.READ_ONLY
    assert request.max_steps is None
    assert request.messages[0].to_message().content == "hi"


def test_decode_cancel_and_tool_result():
    assert isinstance(decode_inbound('{"type": "cancel"}'), CancelRequest)
    message = decode_inbound('{"type": "tool_result", "results": [{"id": "c1", "error": "nope"}]}')
    assert isinstance(message, ToolResultMessage)
    reply = message.results[0].to_reply()
    assert reply.id == "c1"
    assert not reply.ok


def test_decode_outbound_events():
    event = decode_outbound(encode(ToolCallEvent.from_request(ToolCallRequest(id="c1", name="read", args={"path": "a"}))))
    assert isinstance(event, ToolCallEvent)
    assert event.calls[0].to_request() == ToolCallRequest(id="c1", name="read", args={"path": "a"})

    done = decode_outbound('{"type": "done", "content": "x", "toolCalls": [{"id": "c1"}]}')
    assert isinstance(done, DoneEvent)
    assert done.outcome == "completed"
    assert done.tool_calls == [{"id": "c1"}]


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2]",
        '{"content": "no type"}',
        '{"type": "shutdown"}',
        '{"type": "chat", "parameters": {"model": "m1"}}',
    ],
)
def test_decode_rejects_malformed_lines(line):
    with pytest.raises(ProtocolError):
        decode_inbound(line)


def test_outbound_decoder_rejects_inbound_kinds():
    with pytest.raises(ProtocolError):
        decode_outbound('{"type": "cancel"}')


@pytest.mark.asyncio
async def test_line_reader_skips_blank_lines_and_reports_eof():
    stream = asyncio.StreamReader()
    stream.feed_data(b"\n  \n" + encode(CancelRequest()).encode("utf-8"))
    stream.feed_eof()
    reader = LineReader(stream, decode_inbound)

    assert isinstance(await reader.read(), CancelRequest)
    with pytest.raises(EndOfStreamError):
        await reader.read()
