import asyncio

import pytest

from draftsmith.agent import AgentOutcome, AgentResult
from draftsmith.compaction import ContextCompactor
from draftsmith.exceptions import NoChapterSelectedError, SessionBusyError, WorkflowError
from draftsmith.instructions import InstructionLoader
from draftsmith.runner import AgentRunner
from draftsmith.session import Session, SessionState
from draftsmith.tools.executor import ToolCallRecord
from draftsmith.tools.registry import CapabilitySet
from draftsmith.workflow import (
    CLARIFY_MESSAGE,
    CONFIRM_APPEND_MESSAGE,
    CONTINUE_DRAFT_MARKER,
    DISCARD_NOTE,
    REGENERATE_MESSAGE,
    ContinuationWorkflow,
    DraftState,
    Phase,
    PhaseClassifier,
    PhaseDecision,
)

DRAFT_REPLY = f"{CONTINUE_DRAFT_MARKER}\nThe rain kept falling over the harbor."


class FakeRunner(AgentRunner):
    def __init__(self, results: list[AgentResult]):
        self.results = list(results)
        self.calls: list[dict] = []

    async def run(self, messages, *, system_prompt="", capabilities=CapabilitySet.READ_ONLY, cancel_event=None):
        self.calls.append({
            "messages": list(messages),
            "system_prompt": system_prompt,
            "capabilities": capabilities,
        })
        return self.results.pop(0)

    async def summarize(self, messages):
        return "Earlier: the crew left port."


class BlockingRunner(FakeRunner):
    """Waits for the cancel signal, then reports a cancelled run."""

    def __init__(self):
        super().__init__([])
        self.started = asyncio.Event()

    async def run(self, messages, *, system_prompt="", capabilities=CapabilitySet.READ_ONLY, cancel_event=None):
        self.started.set()
        await cancel_event.wait()
        return AgentResult(content="", outcome=AgentOutcome.CANCELLED)


class FakeStore:
    def __init__(self):
        self.saved: list[int] = []

    async def save_session(self, session):
        self.saved.append(len(session.messages))


def _record(name: str, args: dict, ok: bool = True) -> ToolCallRecord:
    record = ToolCallRecord(id=f"{name}-1", name=name, args=args)
    if ok:
        record.complete("ok")
    else:
        record.fail("disk full")
    return record


def _apply_result(ok: bool = True) -> AgentResult:
    return AgentResult(
        content="Appended and summarized.",
        tool_calls=[
            _record("append", {"path": "chapters/chapter_001.txt", "content": "The rain..."}, ok=ok),
            _record("save_summary", {"chapterId": "chapter_001", "summary": "Rain over the harbor."}, ok=ok),
        ],
    )


@pytest.fixture
def session() -> Session:
    return Session(id="s1", name="test", chapter_id="chapter_001", chapter_title="Harbor")


def _workflow(runner: AgentRunner, tmp_path, **kwargs) -> ContinuationWorkflow:
    return ContinuationWorkflow(
        runner=runner,
        project_path="/projects/novel",
        instructions=InstructionLoader(personal_dir=tmp_path / "instructions"),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_confirm_append_unlocks_write_tools_for_one_turn(session, tmp_path):
    runner = FakeRunner([
        AgentResult(content=DRAFT_REPLY),
        _apply_result(),
        AgentResult(content="What next?"),
    ])
    workflow = _workflow(runner, tmp_path)

    draft_turn = await workflow.submit_turn(session, "Continue the chapter")
    assert draft_turn.phase is Phase.DRAFT
    assert draft_turn.is_draft
    assert draft_turn.assistant_message["content"] == "The rain kept falling over the harbor."
    assert draft_turn.assistant_message["metadata"]["applied"] is False
    assert draft_turn.assistant_message["metadata"]["word_count"] == len("Therainkeptfallingovertheharbor.")
    assert runner.calls[0]["capabilities"] is CapabilitySet.READ_ONLY
    assert workflow.draft_state(session) is DraftState.DRAFT_PENDING

    apply_turn = await workflow.submit_turn(session, "确认追加")
    assert apply_turn.phase is Phase.APPLY
    assert apply_turn.appended
    assert apply_turn.source_draft_id == draft_turn.assistant_message["id"]
    assert runner.calls[1]["capabilities"] is CapabilitySet.READ_WRITE
    assert draft_turn.assistant_message["metadata"]["applied"] is True
    assert apply_turn.assistant_message["metadata"]["applied"] is True
    assert apply_turn.assistant_message["metadata"]["summary"] == "Rain over the harbor."
    assert workflow.draft_state(session) is DraftState.DRAFT

    await workflow.submit_turn(session, "Thanks")
    assert runner.calls[2]["capabilities"] is CapabilitySet.READ_ONLY
    assert session.state is SessionState.IDLE
    assert not session.busy


@pytest.mark.asyncio
async def test_system_prompt_reflects_phase_and_chapter(session, tmp_path):
    runner = FakeRunner([AgentResult(content=DRAFT_REPLY), _apply_result()])
    workflow = _workflow(runner, tmp_path, writing_preset="Short sentences.")

    await workflow.submit_turn(session, "Continue")
    await workflow.submit_turn(session, "confirm append")

    draft_prompt = runner.calls[0]["system_prompt"]
    apply_prompt = runner.calls[1]["system_prompt"]
    assert "[Draft phase]" in draft_prompt
    assert "[Apply phase]" in apply_prompt
    assert CONTINUE_DRAFT_MARKER in draft_prompt
    assert "chapters/chapter_001.txt" in draft_prompt
    assert "Harbor (chapter_001)" in draft_prompt
    assert "Short sentences." in draft_prompt


def test_discussion_prompt_without_chapter(tmp_path):
    workflow = _workflow(FakeRunner([]), tmp_path)
    prompt = workflow.build_system_prompt(Session(id="s2", name="free"), Phase.DRAFT)
    assert "No chapter is selected" in prompt
    assert "/projects/novel" in prompt


@pytest.mark.asyncio
async def test_ambiguous_turn_asks_for_clarification(session, tmp_path):
    runner = FakeRunner([AgentResult(content=DRAFT_REPLY)])
    workflow = _workflow(runner, tmp_path)
    await workflow.submit_turn(session, "Continue")
    before = list(session.messages)

    turn = await workflow.submit_turn(session, "Should I append this or change the ending?")

    assert turn.decision.ambiguous
    assert turn.clarification == CLARIFY_MESSAGE
    assert turn.content == CLARIFY_MESSAGE
    assert turn.result is None
    assert len(runner.calls) == 1
    assert session.messages == before


@pytest.mark.asyncio
async def test_apply_without_chapter_is_rejected(tmp_path):
    runner = FakeRunner([])
    workflow = _workflow(runner, tmp_path)
    session = Session(id="s3", name="free")

    with pytest.raises(NoChapterSelectedError):
        await workflow.submit_turn(session, "confirm append", phase=Phase.APPLY)
    assert session.messages == []
    assert runner.calls == []


@pytest.mark.asyncio
async def test_failed_append_keeps_draft_pending(session, tmp_path):
    runner = FakeRunner([AgentResult(content=DRAFT_REPLY), _apply_result(ok=False)])
    workflow = _workflow(runner, tmp_path)
    draft_turn = await workflow.submit_turn(session, "Continue")

    apply_turn = await workflow.submit_turn(session, "好")

    assert apply_turn.phase is Phase.APPLY
    assert not apply_turn.appended
    assert draft_turn.assistant_message["metadata"]["applied"] is False
    assert workflow.pending_draft(session)["id"] == draft_turn.assistant_message["id"]
    assert draft_turn.assistant_message["id"] not in session.dismissed_draft_ids


@pytest.mark.asyncio
async def test_confirm_draft_uses_fixed_message(session, tmp_path):
    runner = FakeRunner([AgentResult(content=DRAFT_REPLY), _apply_result()])
    workflow = _workflow(runner, tmp_path)
    await workflow.submit_turn(session, "Continue")

    turn = await workflow.confirm_draft(session)

    assert turn.user_message["content"] == CONFIRM_APPEND_MESSAGE
    assert runner.calls[1]["capabilities"] is CapabilitySet.READ_WRITE
    assert turn.appended


@pytest.mark.asyncio
async def test_regenerate_dismisses_old_draft(session, tmp_path):
    second_draft = f"{CONTINUE_DRAFT_MARKER}\nA different opening."
    runner = FakeRunner([AgentResult(content=DRAFT_REPLY), AgentResult(content=second_draft)])
    workflow = _workflow(runner, tmp_path)
    first = await workflow.submit_turn(session, "Continue")

    turn = await workflow.regenerate_draft(session)

    assert turn.user_message["content"] == REGENERATE_MESSAGE
    assert runner.calls[1]["capabilities"] is CapabilitySet.READ_ONLY
    assert first.assistant_message["id"] in session.dismissed_draft_ids
    assert workflow.pending_draft(session)["id"] == turn.assistant_message["id"]


@pytest.mark.asyncio
async def test_discard_draft_adds_note_without_running_agent(session, tmp_path):
    store = FakeStore()
    runner = FakeRunner([AgentResult(content=DRAFT_REPLY)])
    workflow = _workflow(runner, tmp_path, store=store)
    await workflow.submit_turn(session, "Continue")

    note = await workflow.discard_draft(session)

    assert note["role"] == "system"
    assert note["content"] == DISCARD_NOTE
    assert workflow.pending_draft(session) is None
    assert len(runner.calls) == 1
    assert store.saved[-1] == len(session.messages)

    with pytest.raises(WorkflowError):
        await workflow.discard_draft(session)


@pytest.mark.asyncio
async def test_busy_session_rejects_second_turn_and_cancel_stops_first(session, tmp_path):
    runner = BlockingRunner()
    workflow = _workflow(runner, tmp_path)

    task = asyncio.create_task(workflow.submit_turn(session, "Continue"))
    await asyncio.wait_for(runner.started.wait(), timeout=2)
    assert session.state is SessionState.GENERATING
    assert session.busy

    with pytest.raises(SessionBusyError):
        await workflow.submit_turn(session, "Hello?")

    assert workflow.cancel(session) is True
    assert session.state is SessionState.CANCELLING
    turn = await asyncio.wait_for(task, timeout=2)

    assert turn.outcome is AgentOutcome.CANCELLED
    assert turn.assistant_message["content"] == "Generation stopped."
    assert turn.assistant_message["metadata"]["outcome"] == "cancelled"
    assert session.state is SessionState.IDLE
    assert workflow.cancel(session) is False


@pytest.mark.asyncio
async def test_compaction_runs_before_the_agent(tmp_path):
    summaries: list[int] = []

    async def summarize(messages):
        summaries.append(len(messages))
        return "Earlier: the crew left port."

    session = Session(id="s4", name="long", chapter_id="chapter_001")
    for i in range(12):
        session.add_message("user" if i % 2 == 0 else "assistant", "x" * 400)
    runner = FakeRunner([AgentResult(content="Sure.")])
    compactor = ContextCompactor(summarize=summarize, max_tokens=1000, keep_recent=4)
    workflow = _workflow(runner, tmp_path, compactor=compactor)

    turn = await workflow.submit_turn(session, "Where were we?")

    assert turn.compaction is not None and turn.compaction.compacted
    assert summaries == [13 - 4]
    assert runner.calls[0]["messages"][0]["content"] == "Earlier: the crew left port."
    assert len(runner.calls[0]["messages"]) == 1 + 4
    assert session.messages[0]["metadata"]["compaction"]
    assert session.messages[-1]["content"] == "Sure."


@pytest.mark.asyncio
async def test_custom_classifier_is_used(session, tmp_path):
    class AlwaysApply(PhaseClassifier):
        def classify(self, text, session):
            return PhaseDecision(Phase.APPLY, reason="test")

    runner = FakeRunner([_apply_result()])
    workflow = _workflow(runner, tmp_path, classifier=AlwaysApply())

    turn = await workflow.submit_turn(session, "anything")

    assert turn.decision.reason == "test"
    assert runner.calls[0]["capabilities"] is CapabilitySet.READ_WRITE
