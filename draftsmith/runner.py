"""Agent runners: one entry point for the workflow, in-process or via the engine."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import httpx

from draftsmith.agent import DEFAULT_MAX_STEPS, AgentLoop, AgentResult
from draftsmith.compaction import LLMSummarizer
from draftsmith.config import Config, get_config
from draftsmith.host import LocalToolChannel, ToolHost
from draftsmith.instructions import InstructionLoader
from draftsmith.llm import LLMProvider
from draftsmith.llm.providers import build_request_context
from draftsmith.session import to_provider_messages
from draftsmith.tools.executor import ToolExecutor
from draftsmith.tools.registry import CapabilitySet


class AgentRunner(ABC):
    """Runs one agent invocation over session messages."""

    @abstractmethod
    async def run(
        self,
        messages: list[dict[str, Any]],
        *,
        system_prompt: str = "",
        capabilities: CapabilitySet = CapabilitySet.READ_ONLY,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentResult:
        pass

    @abstractmethod
    async def summarize(self, messages: list[dict[str, Any]]) -> str:
        """Produce a compaction summary for ``messages``."""
        pass

    async def close(self) -> None:
        """Release resources (no-op by default)."""
        return None


class LocalAgentRunner(AgentRunner):
    """Runs the agent loop in this process against a ToolHost."""

    def __init__(
        self,
        provider: LLMProvider,
        host: ToolHost,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
        instructions: InstructionLoader | None = None,
        summary_max_tokens: int | None = None,
    ):
        self.provider = provider
        self.host = host
        self.max_steps = max_steps
        self.instructions = instructions or InstructionLoader()
        self.summary_max_tokens = summary_max_tokens

    @classmethod
    def from_config(
        cls,
        host: ToolHost,
        config: Config | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> "LocalAgentRunner":
        """Build a runner for the configured provider.

        Raises:
            ConfigurationMissingError: no provider/model is selected
            ModelNotAllowedError: the model is outside the provider allow-list
        """
        cfg = config or get_config()
        descriptor, parameters = cfg.resolve_model()
        context = build_request_context(descriptor, client=http_client)
        return cls(
            context.create_model(parameters),
            host,
            max_steps=cfg.agent.max_steps,
            summary_max_tokens=parameters.max_tokens,
        )

    async def run(
        self,
        messages: list[dict[str, Any]],
        *,
        system_prompt: str = "",
        capabilities: CapabilitySet = CapabilitySet.READ_ONLY,
        cancel_event: asyncio.Event | None = None,
    ) -> AgentResult:
        channel = LocalToolChannel(self.host, capabilities)
        loop = AgentLoop(
            self.provider,
            ToolExecutor(channel, self.host.registry),
            max_steps=self.max_steps,
        )
        return await loop.run(
            to_provider_messages(messages),
            system_prompt=system_prompt,
            capabilities=capabilities,
            cancel_event=cancel_event,
        )

    async def summarize(self, messages: list[dict[str, Any]]) -> str:
        summarizer = LLMSummarizer(
            self.provider,
            instructions=self.instructions,
            max_tokens=self.summary_max_tokens,
        )
        return await summarizer(messages)

    async def close(self) -> None:
        await self.provider.close()
