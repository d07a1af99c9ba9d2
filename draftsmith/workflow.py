"""Continuation workflow: draft -> confirm -> apply.

Each user turn is classified into a phase. Only the apply phase runs the
agent with write-capable tools, and only for that one invocation.
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from draftsmith.agent import AgentOutcome, AgentResult, run_cancellable
from draftsmith.compaction import CompactionResult, ContextCompactor
from draftsmith.exceptions import NoChapterSelectedError, SessionBusyError, WorkflowError
from draftsmith.instructions import InstructionLoader
from draftsmith.logging import get_logger
from draftsmith.runner import AgentRunner
from draftsmith.session import Session, SessionState, count_words
from draftsmith.tools.registry import CapabilitySet, ToolName

log = get_logger(__name__)

CONTINUE_DRAFT_MARKER = "<<<CONTINUE_DRAFT>>>"
DEFAULT_DRAFT_LENGTH = "500-1000"

CONFIRM_APPEND_MESSAGE = (
    "Confirm append. Append the preview you gave in your previous message, unchanged, "
    "to the end of the chapter, then save a 50-100 word summary."
)
REGENERATE_MESSAGE = "Not satisfied, please generate a new continuation preview (do not append to the chapter)."
DISCARD_NOTE = "Continuation draft discarded."
CLARIFY_MESSAGE = (
    "There is a continuation draft waiting for confirmation. Reply \"confirm append\" to append it "
    "to the chapter, or describe what should change."
)

_DRAFT_MARKER_RE = re.compile(r"(^|\r?\n)\s*" + re.escape(CONTINUE_DRAFT_MARKER) + r"\s*(\r?\n|$)")
_TRAILING_PUNCT_RE = re.compile(r"[。！？.!?]+$")


class Phase(str, Enum):
    DRAFT = "draft"
    APPLY = "apply"


class DraftState(str, Enum):
    """Where a session stands in the continuation cycle."""

    DRAFT = "draft"
    DRAFT_PENDING = "draft_pending"
    APPLYING = "applying"


@dataclass(frozen=True)
class PhaseDecision:
    phase: Phase
    ambiguous: bool = False
    reason: str = ""


def strip_draft_marker(reply: str) -> tuple[bool, str]:
    """Return ``(is_draft, content)``; content follows the marker line."""
    normalized = reply.lstrip("\ufeff")
    match = _DRAFT_MARKER_RE.search(normalized)
    if not match:
        return False, reply
    return True, normalized[match.end():].lstrip()


def find_pending_draft(
    messages: list[dict[str, Any]],
    dismissed: set[str] | frozenset[str] = frozenset(),
) -> dict[str, Any] | None:
    """Latest assistant message with ``applied=False`` that was not dismissed."""
    for message in reversed(messages):
        if message.get("role") != "assistant":
            continue
        if (message.get("metadata") or {}).get("applied") is not False:
            continue
        if message.get("id") in dismissed:
            continue
        return message
    return None


def _last_assistant(messages: list[dict[str, Any]]) -> dict[str, Any] | None:
    for message in reversed(messages):
        if message.get("role") == "assistant":
            return message
    return None


class PhaseClassifier(ABC):
    """Decides the phase of a user turn. Must be deterministic."""

    @abstractmethod
    def classify(self, text: str, session: Session) -> PhaseDecision:
        pass


class ConfirmationPhraseClassifier(PhaseClassifier):
    """Phrase-list classifier.

    Apply only when a draft is pending: an explicit "confirm append" anywhere
    in the turn, or an exact short confirmation right after the draft. Turns
    that talk about confirming or appending in any other way are ambiguous.
    """

    explicit_phrases: tuple[str, ...] = ("确认追加", "confirm append")
    short_confirmations: tuple[str, ...] = ("确认", "可以", "好", "行", "ok", "okay", "yes")
    append_phrases: tuple[str, ...] = ("追加", "追加吧", "追加到章节", "写入章节", "应用到章节", "append", "apply")
    ambiguous_hints: tuple[str, ...] = ("确认", "追加", "写入", "confirm", "append")

    @staticmethod
    def normalize(text: str) -> str:
        return _TRAILING_PUNCT_RE.sub("", text.strip()).strip()

    def classify(self, text: str, session: Session) -> PhaseDecision:
        normalized = self.normalize(text)
        if not normalized:
            return PhaseDecision(Phase.DRAFT, reason="empty")

        pending = find_pending_draft(session.messages, session.dismissed_draft_ids)
        if pending is None:
            return PhaseDecision(Phase.DRAFT, reason="no_pending_draft")

        lowered = normalized.lower()
        if any(phrase in lowered for phrase in self.explicit_phrases):
            return PhaseDecision(Phase.APPLY, reason="explicit_confirmation")

        last = _last_assistant(session.messages)
        if last is not None and last.get("id") == pending.get("id"):
            if lowered in self.short_confirmations or lowered in self.append_phrases:
                return PhaseDecision(Phase.APPLY, reason="short_confirmation")

        if any(hint in lowered for hint in self.ambiguous_hints):
            return PhaseDecision(Phase.DRAFT, ambiguous=True, reason="unclear_confirmation")
        return PhaseDecision(Phase.DRAFT, reason="discussion")


class SessionStore(Protocol):
    async def save_session(self, session: Session) -> None: ...


@dataclass
class TurnResult:
    """What one submitted turn produced."""

    phase: Phase
    decision: PhaseDecision
    user_message: dict[str, Any] | None = None
    assistant_message: dict[str, Any] | None = None
    result: AgentResult | None = None
    compaction: CompactionResult | None = None
    clarification: str | None = None
    appended: bool = False
    source_draft_id: str | None = None
    is_draft: bool = False

    @property
    def outcome(self) -> AgentOutcome | None:
        return self.result.outcome if self.result else None

    @property
    def content(self) -> str:
        if self.clarification is not None:
            return self.clarification
        return str((self.assistant_message or {}).get("content") or "")


@dataclass
class ContinuationWorkflow:
    """Phase policy above the agent runner, one in-flight turn per session."""

    runner: AgentRunner
    project_path: str = "."
    compactor: ContextCompactor | None = None
    classifier: PhaseClassifier = field(default_factory=ConfirmationPhraseClassifier)
    instructions: InstructionLoader = field(default_factory=InstructionLoader)
    store: SessionStore | None = None
    writing_preset: str = ""
    draft_length: str = DEFAULT_DRAFT_LENGTH
    _cancel_events: dict[str, asyncio.Event] = field(default_factory=dict, init=False, repr=False)
    _applying: set[str] = field(default_factory=set, init=False, repr=False)

    # -- state --

    def draft_state(self, session: Session) -> DraftState:
        if session.id in self._applying:
            return DraftState.APPLYING
        if find_pending_draft(session.messages, session.dismissed_draft_ids) is not None:
            return DraftState.DRAFT_PENDING
        return DraftState.DRAFT

    def pending_draft(self, session: Session) -> dict[str, Any] | None:
        return find_pending_draft(session.messages, session.dismissed_draft_ids)

    def classify(self, session: Session, text: str) -> PhaseDecision:
        return self.classifier.classify(text, session)

    def build_system_prompt(self, session: Session, phase: Phase) -> str:
        preset = self.writing_preset.strip() or "(none)"
        if not session.chapter_id:
            return self.instructions.render(
                "discussion_system_prompt.md",
                project_path=self.project_path,
                writing_preset=preset,
            )
        chapter_id = session.chapter_id
        label = f"{session.chapter_title} ({chapter_id})" if session.chapter_title else chapter_id
        return self.instructions.render(
            "continuation_system_prompt.md",
            phase_hint=self.instructions.load(f"continuation_phase_{phase.value}.md"),
            draft_length=self.draft_length,
            draft_marker=CONTINUE_DRAFT_MARKER,
            chapter_path=f"chapters/{chapter_id}.txt",
            chapter_id=chapter_id,
            chapter_label=label,
            writing_preset=preset,
            project_path=self.project_path,
        )

    async def _save(self, session: Session) -> None:
        if self.store is not None:
            await self.store.save_session(session)

    # -- turns --

    async def submit_turn(
        self,
        session: Session,
        text: str,
        *,
        phase: Phase | None = None,
        source_draft_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Run one user turn.

        ``phase`` forces the phase (confirm/regenerate buttons); otherwise the
        classifier decides. Ambiguous turns get a clarification and the agent
        is not run.

        Raises:
            SessionBusyError: a turn is already in flight for this session
            NoChapterSelectedError: apply phase without a selected chapter
        """
        if session.busy:
            raise SessionBusyError(session.id, session.state.value)

        decision = PhaseDecision(phase, reason="forced") if phase is not None else self.classify(session, text)
        if decision.ambiguous:
            log.info("Ambiguous confirmation, asking user", session_id=session.id)
            return TurnResult(phase=decision.phase, decision=decision, clarification=CLARIFY_MESSAGE)

        allow_write = decision.phase is Phase.APPLY
        if allow_write and not session.chapter_id:
            raise NoChapterSelectedError()

        if allow_write and source_draft_id is None:
            pending = self.pending_draft(session)
            source_draft_id = pending.get("id") if pending else None

        turn = TurnResult(phase=decision.phase, decision=decision, source_draft_id=source_draft_id)
        cancel = cancel_event or asyncio.Event()
        self._cancel_events[session.id] = cancel
        session.loading = True
        if allow_write:
            self._applying.add(session.id)
            if source_draft_id:
                session.dismissed_draft_ids.add(source_draft_id)

        try:
            turn.user_message = session.add_message("user", text)
            working = list(session.messages)

            if self.compactor is not None and self.compactor.needs_compaction(working):
                session.state = SessionState.COMPACTING
                compaction, _ = await run_cancellable(self.compactor.maybe_compact(working), cancel)
                if compaction is not None:
                    turn.compaction = compaction
                    if compaction.rewrites_history:
                        session.replace_messages(compaction.history)
                        await self._save(session)
                    working = compaction.working

            if cancel.is_set():
                turn.result = AgentResult(content="", outcome=AgentOutcome.CANCELLED)
            else:
                session.state = SessionState.GENERATING
                turn.result = await self.runner.run(
                    working,
                    system_prompt=self.build_system_prompt(session, decision.phase),
                    capabilities=CapabilitySet.READ_WRITE if allow_write else CapabilitySet.READ_ONLY,
                    cancel_event=cancel,
                )

            turn.assistant_message = self._record_reply(session, turn, allow_write)
            turn.appended = bool(turn.result.successful_calls(ToolName.APPEND.value))
            if allow_write and source_draft_id and turn.appended:
                session.update_message_metadata(source_draft_id, applied=True)
            return turn
        finally:
            if allow_write:
                self._applying.discard(session.id)
                if source_draft_id and not turn.appended:
                    # Append did not happen; the draft stays actionable.
                    session.dismissed_draft_ids.discard(source_draft_id)
            self._cancel_events.pop(session.id, None)
            session.state = SessionState.IDLE
            session.loading = False
            await self._save(session)

    def _record_reply(self, session: Session, turn: TurnResult, allow_write: bool) -> dict[str, Any]:
        result = turn.result
        assert result is not None
        is_draft, content = strip_draft_marker(result.content)

        metadata: dict[str, Any] = {}
        if result.tool_calls:
            metadata["tool_calls"] = [record.to_dict() for record in result.tool_calls]
        if result.outcome is not AgentOutcome.COMPLETED:
            metadata["outcome"] = result.outcome.value

        if result.outcome is AgentOutcome.COMPLETED and is_draft and not allow_write:
            metadata["applied"] = False
            metadata["word_count"] = count_words(content)
            turn.is_draft = True
        elif allow_write:
            metadata["applied"] = True
            saved = [
                record.args.get("summary")
                for record in result.tool_calls
                if record.name == ToolName.SAVE_SUMMARY.value
            ]
            summary = next((s.strip() for s in saved if isinstance(s, str) and s.strip()), None)
            if summary:
                metadata["summary"] = summary

        if result.cancelled and not content.strip():
            content = "Generation stopped."
        return session.add_message("assistant", content, metadata or None)

    # -- draft actions --

    def _resolve_draft(self, session: Session, draft_id: str | None) -> dict[str, Any]:
        draft = session.find_message(draft_id) if draft_id else self.pending_draft(session)
        if draft is None or (draft.get("metadata") or {}).get("applied") is not False:
            raise WorkflowError("No pending continuation draft")
        return draft

    async def confirm_draft(
        self,
        session: Session,
        draft_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Append the pending draft to the chapter and save its summary."""
        draft = self._resolve_draft(session, draft_id)
        return await self.submit_turn(
            session,
            CONFIRM_APPEND_MESSAGE,
            phase=Phase.APPLY,
            source_draft_id=draft["id"],
            cancel_event=cancel_event,
        )

    async def regenerate_draft(
        self,
        session: Session,
        draft_id: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TurnResult:
        """Dismiss the pending draft and ask for a fresh preview."""
        draft = self._resolve_draft(session, draft_id)
        if session.busy:
            raise SessionBusyError(session.id, session.state.value)
        session.dismissed_draft_ids.add(draft["id"])
        return await self.submit_turn(
            session,
            REGENERATE_MESSAGE,
            phase=Phase.DRAFT,
            cancel_event=cancel_event,
        )

    async def discard_draft(self, session: Session, draft_id: str | None = None) -> dict[str, Any]:
        """Dismiss the pending draft without running the agent."""
        draft = self._resolve_draft(session, draft_id)
        if session.busy:
            raise SessionBusyError(session.id, session.state.value)
        session.dismissed_draft_ids.add(draft["id"])
        note = session.add_message("system", DISCARD_NOTE)
        await self._save(session)
        return note

    def cancel(self, session: Session) -> bool:
        """Signal the in-flight turn to stop. Returns False when idle."""
        event = self._cancel_events.get(session.id)
        if event is None or event.is_set():
            return False
        session.state = SessionState.CANCELLING
        event.set()
        log.info("Cancelling turn", session_id=session.id)
        return True
