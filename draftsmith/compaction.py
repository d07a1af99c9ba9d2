"""Token-budget-driven history compaction."""

import math
import re
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from draftsmith.config import Config, get_config
from draftsmith.instructions import InstructionLoader
from draftsmith.llm import LLMProvider, Message
from draftsmith.logging import get_logger

log = get_logger(__name__)

Summarizer = Callable[[list[dict[str, Any]]], Awaitable[str]]

SUMMARY_MAX_TOKENS = 800
STATS_HISTORY_LIMIT = 50


def estimate_tokens(
    messages: list[dict[str, Any]],
    chars_per_token: int = 4,
    message_overhead: int = 4,
) -> int:
    """Cheap estimate: ceil(total chars / chars_per_token) + overhead per message."""
    total_chars = sum(len(str(msg.get("content") or "")) for msg in messages)
    return math.ceil(total_chars / max(1, chars_per_token)) + message_overhead * len(messages)


def is_summary_message(msg: dict[str, Any]) -> bool:
    return bool((msg.get("metadata") or {}).get("compaction"))


@dataclass
class CompactionResult:
    """Outcome of one ``maybe_compact`` call.

    ``history`` is what the session should persist; ``working`` is what the
    next agent invocation should see. They differ only for the truncation
    fallback, which never rewrites persisted history.
    """

    history: list[dict[str, Any]]
    working: list[dict[str, Any]]
    strategy: str = "none"  # "none" | "summary" | "truncate"
    reason: str = ""
    before_tokens: int = 0
    after_tokens: int = 0
    compacted_messages: int = 0
    kept_messages: int = 0
    error: str | None = None

    @property
    def compacted(self) -> bool:
        return self.strategy == "summary"

    @property
    def rewrites_history(self) -> bool:
        return self.strategy == "summary"

    def stats(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "strategy": self.strategy,
            "reason": self.reason,
            "before_tokens": self.before_tokens,
            "after_tokens": self.after_tokens,
            "compacted_messages": self.compacted_messages,
            "kept_messages": self.kept_messages,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ContextCompactor:
    """Replace all but the last ``keep_recent`` messages with one summary."""

    summarize: Summarizer
    max_tokens: int = 8000
    compaction_threshold: float = 0.8
    keep_recent: int = 5
    fallback_keep_messages: int = 20
    chars_per_token: int = 4
    message_overhead_tokens: int = 4
    stats_history: deque[dict[str, Any]] = field(default_factory=lambda: deque(maxlen=STATS_HISTORY_LIMIT))

    @classmethod
    def from_config(cls, summarize: Summarizer, config: Config | None = None) -> "ContextCompactor":
        ctx = (config or get_config()).context
        return cls(
            summarize=summarize,
            max_tokens=ctx.max_tokens,
            compaction_threshold=ctx.compaction_threshold,
            keep_recent=ctx.keep_recent,
            fallback_keep_messages=ctx.fallback_keep_messages,
            chars_per_token=ctx.chars_per_token,
            message_overhead_tokens=ctx.message_overhead_tokens,
        )

    def estimate(self, messages: list[dict[str, Any]]) -> int:
        return estimate_tokens(messages, self.chars_per_token, self.message_overhead_tokens)

    def threshold_tokens(self, budget: int | None = None) -> float:
        return max(1, int(budget or self.max_tokens)) * float(self.compaction_threshold)

    def needs_compaction(self, messages: list[dict[str, Any]], budget: int | None = None) -> bool:
        return self.estimate(messages) > self.threshold_tokens(budget)

    def _unchanged(self, messages: list[dict[str, Any]], reason: str, tokens: int) -> CompactionResult:
        return CompactionResult(
            history=list(messages),
            working=list(messages),
            strategy="none",
            reason=reason,
            before_tokens=tokens,
            after_tokens=tokens,
            kept_messages=len(messages),
        )

    def _truncate(self, messages: list[dict[str, Any]], before: int, error: str) -> CompactionResult:
        keep = max(1, int(self.fallback_keep_messages))
        working = list(messages[-keep:])
        return CompactionResult(
            history=list(messages),
            working=working,
            strategy="truncate",
            reason="summarization_failed",
            before_tokens=before,
            after_tokens=self.estimate(working),
            compacted_messages=len(messages) - len(working),
            kept_messages=len(working),
            error=error,
        )

    async def maybe_compact(
        self,
        messages: list[dict[str, Any]],
        budget: int | None = None,
    ) -> CompactionResult:
        """Compact when the estimate exceeds ``budget * compaction_threshold``.

        Returns the history unchanged when below threshold or when there is
        nothing older than the preserved tail. Summarization failure falls back
        to truncating the working set.
        """
        before = self.estimate(messages)
        threshold = self.threshold_tokens(budget)
        if before <= threshold:
            return self._unchanged(messages, "below_threshold", before)

        keep = max(0, int(self.keep_recent))
        if len(messages) <= keep:
            return self._unchanged(messages, "nothing_to_compact", before)

        old_messages = list(messages[: len(messages) - keep])
        recent_messages = list(messages[len(messages) - keep:])

        try:
            summary_text = (await self.summarize(old_messages)).strip()
            if not summary_text:
                raise ValueError("summarizer returned empty text")
        except Exception as e:
            log.warning("Compaction summarization failed, using truncation", error=str(e))
            return self._truncate(messages, before, str(e))

        now_iso = datetime.now(UTC).isoformat()
        summary_message = {
            "role": "system",
            "content": summary_text,
            "timestamp": now_iso,
            "metadata": {
                "compaction": {
                    "compacted_messages": len(old_messages),
                    "kept_messages": len(recent_messages),
                    "compacted_at": now_iso,
                }
            },
        }
        history = [summary_message, *recent_messages]
        after = self.estimate(history)

        working = history
        if after > threshold:
            keep_working = max(1, int(self.fallback_keep_messages))
            working = history[-keep_working:]

        result = CompactionResult(
            history=history,
            working=list(working),
            strategy="summary",
            reason="over_threshold",
            before_tokens=before,
            after_tokens=after,
            compacted_messages=len(old_messages),
            kept_messages=len(recent_messages),
        )
        self.stats_history.append(result.stats())
        log.info("Compaction completed", **result.stats())
        return result


def _compact_role(role: str) -> str:
    normalized = (role or "").strip().lower()
    return normalized if normalized else "unknown"


def format_compaction_messages(
    messages: list[dict[str, Any]],
    max_total_chars: int = 24000,
    max_item_chars: int = 600,
) -> str:
    """Format messages as a transcript for the summarization prompt."""
    lines: list[str] = []
    consumed = 0
    for idx, msg in enumerate(messages, start=1):
        role = _compact_role(str(msg.get("role", "")))
        content = re.sub(r"\s+", " ", str(msg.get("content", "")).strip())
        if len(content) > max_item_chars:
            content = content[:max_item_chars].rstrip() + "... [truncated]"
        line = f"{idx}. {role}: {content}"
        if consumed + len(line) > max_total_chars:
            lines.append("[... older conversation excerpt truncated for compaction ...]")
            break
        lines.append(line)
        consumed += len(line)
    return "\n".join(lines)


class LLMSummarizer:
    """Summarize old messages with a separate, tool-free completion call."""

    def __init__(
        self,
        provider: LLMProvider,
        instructions: InstructionLoader | None = None,
        max_tokens: int | None = None,
    ):
        self.provider = provider
        self.instructions = instructions or InstructionLoader()
        limit = SUMMARY_MAX_TOKENS if max_tokens is None else int(max_tokens)
        self.max_tokens = max(1, min(limit, SUMMARY_MAX_TOKENS))

    async def __call__(self, messages: list[dict[str, Any]]) -> str:
        formatted = format_compaction_messages(messages)
        prompt = self.instructions.render("compaction_summary_user_prompt.md", formatted=formatted)
        response = await self.provider.complete(
            [
                Message(role="system", content=self.instructions.load("compaction_summary_system_prompt.md")),
                Message(role="user", content=prompt),
            ],
            tools=None,
            temperature=0.2,
            top_p=1.0,
            max_tokens=self.max_tokens,
        )
        return (response.content or "").strip()
