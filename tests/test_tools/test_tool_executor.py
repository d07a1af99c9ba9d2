import pytest

from draftsmith.exceptions import ProtocolError
from draftsmith.llm import ToolCall
from draftsmith.tools.executor import (
    ToolCallRecord,
    ToolCallReply,
    ToolCallRequest,
    ToolCallStatus,
    ToolChannel,
    ToolExecutor,
)
from draftsmith.tools.registry import CapabilitySet


class FakeChannel(ToolChannel):
    """Records every request and answers from a callable."""

    def __init__(self, respond=None):
        self.requests: list[ToolCallRequest] = []
        self.respond = respond or (lambda request: ToolCallReply(id=request.id, result="ok"))

    async def call(self, request: ToolCallRequest) -> ToolCallReply:
        self.requests.append(request)
        return self.respond(request)


@pytest.mark.asyncio
async def test_unknown_tool_fails_without_dispatch():
    channel = FakeChannel()
    trace: list[ToolCallRecord] = []

    record = await ToolExecutor(channel).execute(
        ToolCall(id="c1", name="delete", arguments={"path": "x"}),
        CapabilitySet.READ_WRITE,
        trace=trace,
    )

    assert record.status is ToolCallStatus.ERROR
    assert record.error == "Unknown tool: delete"
    assert trace == [record]
    assert channel.requests == []


@pytest.mark.asyncio
async def test_write_tool_outside_capability_subset_is_not_dispatched():
    channel = FakeChannel()

    record = await ToolExecutor(channel).execute(
        ToolCall(id="c1", name="write", arguments={"path": "a.txt", "content": "x"}),
        CapabilitySet.READ_ONLY,
    )

    assert record.status is ToolCallStatus.ERROR
    assert "denied" in (record.error or "")
    assert channel.requests == []


@pytest.mark.asyncio
async def test_invalid_arguments_are_not_dispatched():
    channel = FakeChannel()

    record = await ToolExecutor(channel).execute(
        ToolCall(id="c1", name="read", arguments={"path": "../secret"}),
        CapabilitySet.READ_ONLY,
    )

    assert record.status is ToolCallStatus.ERROR
    assert channel.requests == []


@pytest.mark.asyncio
async def test_successful_call_is_correlated_and_timed():
    channel = FakeChannel(lambda request: ToolCallReply(id=request.id, result="00001| hello\n"))

    record = await ToolExecutor(channel).execute(
        ToolCall(id="c7", name="read", arguments={"path": "a.txt"}),
        CapabilitySet.READ_ONLY,
    )

    assert record.succeeded
    assert record.result == "00001| hello\n"
    assert record.duration_ms is not None
    assert channel.requests[0].id == "c7"
    assert channel.requests[0].name == "read"
    assert channel.requests[0].args["path"] == "a.txt"
    assert record.to_model_content() == "00001| hello\n"


@pytest.mark.asyncio
async def test_error_reply_marks_record_failed():
    channel = FakeChannel(lambda request: ToolCallReply(id=request.id, error="File not found: a.txt"))

    record = await ToolExecutor(channel).execute(
        ToolCall(id="c1", name="read", arguments={"path": "a.txt"}),
        CapabilitySet.READ_ONLY,
    )

    assert record.status is ToolCallStatus.ERROR
    assert record.to_model_content() == "Error: File not found: a.txt"


@pytest.mark.asyncio
async def test_mismatched_reply_id_is_a_protocol_error():
    channel = FakeChannel(lambda request: ToolCallReply(id="someone-else", result="ok"))
    trace: list[ToolCallRecord] = []

    with pytest.raises(ProtocolError):
        await ToolExecutor(channel).execute(
            ToolCall(id="c1", name="list", arguments={}),
            CapabilitySet.READ_ONLY,
            trace=trace,
        )

    assert trace[0].status is ToolCallStatus.ERROR


@pytest.mark.asyncio
async def test_missing_call_id_gets_generated():
    channel = FakeChannel()

    record = await ToolExecutor(channel).execute(
        ToolCall(id="", name="list", arguments={}),
        CapabilitySet.READ_ONLY,
    )

    assert record.id.startswith("list-")
    assert channel.requests[0].id == record.id


def test_record_round_trips_through_dict():
    record = ToolCallRecord(id="c1", name="append", args={"path": "a.txt", "content": "x"})
    record.complete("Content appended successfully")
    restored = ToolCallRecord.from_dict(record.to_dict())
    assert restored.succeeded
    assert restored.result == "Content appended successfully"
    assert restored.args == record.args
