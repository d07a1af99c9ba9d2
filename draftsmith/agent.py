"""Agent loop: generate, dispatch tool calls, feed results back, repeat."""

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from draftsmith.exceptions import StepLimitExceededError
from draftsmith.llm import LLMProvider, Message, ToolCall
from draftsmith.logging import get_logger
from draftsmith.tools.executor import ToolCallRecord, ToolExecutor, new_call_id
from draftsmith.tools.registry import CapabilitySet

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_STEPS = 10


class AgentOutcome(str, Enum):
    COMPLETED = "completed"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    CANCELLED = "cancelled"


@dataclass
class AgentResult:
    """Final text, outcome and ordered tool-call trace of one invocation."""

    content: str
    outcome: AgentOutcome = AgentOutcome.COMPLETED
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    steps: int = 0
    max_steps: int = DEFAULT_MAX_STEPS

    @property
    def cancelled(self) -> bool:
        return self.outcome is AgentOutcome.CANCELLED

    @property
    def step_limit_exceeded(self) -> bool:
        return self.outcome is AgentOutcome.STEP_LIMIT_EXCEEDED

    def raise_for_outcome(self) -> "AgentResult":
        """Raise StepLimitExceededError for a step-limited run; cancellation is not an error."""
        if self.step_limit_exceeded:
            raise StepLimitExceededError(self.max_steps, self.content)
        return self

    def successful_calls(self, name: str) -> list[ToolCallRecord]:
        return [record for record in self.tool_calls if record.name == name and record.succeeded]

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "outcome": self.outcome.value,
            "toolCalls": [record.to_dict() for record in self.tool_calls],
        }


async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def run_cancellable(
    work: Awaitable[T],
    cancel_event: asyncio.Event | None,
) -> tuple[T | None, bool]:
    """Run work until it finishes or ``cancel_event`` fires.

    Returns:
        ``(result, False)`` on completion, ``(None, True)`` when cancelled.
    """
    if cancel_event is None:
        return await work, False
    if cancel_event.is_set():
        if asyncio.iscoroutine(work):
            work.close()
        return None, True

    work_task = asyncio.ensure_future(work)
    cancel_task = asyncio.create_task(cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {work_task, cancel_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        if work_task in done:
            return work_task.result(), False
        await _cancel_task(work_task)
        return None, True
    except asyncio.CancelledError:
        await _cancel_task(work_task)
        raise
    finally:
        await _cancel_task(cancel_task)


class AgentLoop:
    """Bounded generate -> tool-call -> tool-result loop for one invocation."""

    def __init__(
        self,
        provider: LLMProvider,
        executor: ToolExecutor,
        max_steps: int = DEFAULT_MAX_STEPS,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.provider = provider
        self.executor = executor
        self.max_steps = max_steps

    def _result(
        self,
        content: str,
        outcome: AgentOutcome,
        trace: list[ToolCallRecord],
        steps: int,
    ) -> AgentResult:
        return AgentResult(
            content=content,
            outcome=outcome,
            tool_calls=trace,
            steps=steps,
            max_steps=self.max_steps,
        )

    async def run(
        self,
        messages: list[Message],
        *,
        system_prompt: str = "",
        capabilities: CapabilitySet = CapabilitySet.READ_ONLY,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentResult:
        """Run the loop until a tool-free answer, the step limit, or cancellation.

        Provider and protocol errors propagate; tool-level errors are fed back
        to the model as tool results.
        """
        conversation: list[Message] = []
        if system_prompt.strip():
            conversation.append(Message(role="system", content=system_prompt))
        conversation.extend(messages)

        definitions = self.executor.registry.get_definitions(capabilities)
        trace: list[ToolCallRecord] = []
        partial = ""

        for step in range(1, self.max_steps + 1):
            log.debug("Agent step", step=step, capabilities=capabilities.value, messages=len(conversation))
            response, cancelled = await run_cancellable(
                self.provider.complete(conversation, tools=definitions or None),
                cancel_event,
            )
            if cancelled or response is None:
                log.info("Agent cancelled during generation", step=step)
                return self._result(partial, AgentOutcome.CANCELLED, trace, step - 1)

            if (response.content or "").strip():
                partial = response.content

            if not response.tool_calls:
                return self._result(response.content or "", AgentOutcome.COMPLETED, trace, step)

            calls = [
                ToolCall(id=call.id or new_call_id(call.name), name=call.name, arguments=call.arguments)
                for call in response.tool_calls
            ]
            conversation.append(Message(role="assistant", content=response.content or "", tool_calls=calls))

            for call in calls:
                record, cancelled = await run_cancellable(
                    self.executor.execute(call, capabilities, trace=trace),
                    cancel_event,
                )
                if cancelled or record is None:
                    log.info("Agent cancelled during tool dispatch", step=step, tool=call.name)
                    return self._result(partial, AgentOutcome.CANCELLED, trace, step)
                conversation.append(Message(
                    role="tool",
                    content=record.to_model_content(),
                    tool_call_id=record.id,
                    tool_name=record.name,
                ))

        log.warning("Agent step limit reached", max_steps=self.max_steps, tool_calls=len(trace))
        return self._result(partial, AgentOutcome.STEP_LIMIT_EXCEEDED, trace, self.max_steps)
