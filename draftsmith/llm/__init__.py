"""OpenAI-compatible chat completion provider - direct HTTP calls via httpx."""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from draftsmith.config import ModelParameters
from draftsmith.exceptions import ProviderRequestError
from draftsmith.logging import get_logger

log = get_logger(__name__)


@dataclass
class ToolCall:
    """A tool call requested by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class Message:
    """A message in the conversation sent to the provider."""

    role: str  # "system", "user", "assistant", "tool"
    content: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        top_p: float | None = None,
    ) -> LLMResponse:
        pass

    def count_tokens(self, text: str) -> int:
        """Rough estimate: ~1 token per 4 characters."""
        return math.ceil(len(text) / 4)

    async def close(self) -> None:
        return None


class OpenAICompatibleProvider(LLMProvider):
    """Chat-completions provider for any OpenAI-compatible endpoint."""

    def __init__(
        self,
        endpoint: str,
        parameters: ModelParameters,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ):
        """Initialize provider.

        Args:
            endpoint: Base URL; ``/chat/completions`` is appended
            parameters: Default sampling parameters (model id included)
            headers: Auth and static headers, already resolved
            client: Optional shared httpx client (not closed by this provider)
            timeout: Request timeout when the provider owns its client
        """
        self.endpoint = endpoint.rstrip("/")
        self.parameters = parameters
        self.headers = dict(headers or {})
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @property
    def model(self) -> str:
        return self.parameters.model

    @staticmethod
    def _convert_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert messages to OpenAI chat format."""
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "tool":
                result.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "",
                    "content": msg.content or "",
                })
            elif msg.role == "assistant" and msg.tool_calls:
                result.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": json.dumps(call.arguments, ensure_ascii=False),
                            },
                        }
                        for call in msg.tool_calls
                    ],
                })
            else:
                result.append({"role": msg.role, "content": msg.content or ""})
        return result

    @staticmethod
    def _convert_tools(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to OpenAI function format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description or "",
                    "parameters": tool.parameters or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _parse_tool_calls(raw_calls: list[dict[str, Any]] | None) -> list[ToolCall]:
        tool_calls: list[ToolCall] = []
        for raw in raw_calls or []:
            function = raw.get("function") or {}
            raw_args = function.get("arguments")
            if isinstance(raw_args, dict):
                arguments = raw_args
            else:
                try:
                    arguments = json.loads(raw_args or "{}")
                except json.JSONDecodeError:
                    log.warning("Tool call arguments are not valid JSON", tool=function.get("name"))
                    arguments = {}
                if not isinstance(arguments, dict):
                    arguments = {}
            tool_calls.append(ToolCall(
                id=str(raw.get("id") or ""),
                name=str(function.get("name") or ""),
                arguments=arguments,
            ))
        return tool_calls

    def _build_body(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
        top_p: float | None,
    ) -> dict[str, Any]:
        params = self.parameters
        body: dict[str, Any] = {
            "model": params.model,
            "messages": self._convert_messages(messages),
            "stream": False,
        }
        effective_temperature = temperature if temperature is not None else params.temperature
        if effective_temperature is not None:
            body["temperature"] = effective_temperature
        effective_top_p = top_p if top_p is not None else params.top_p
        if effective_top_p is not None:
            body["top_p"] = effective_top_p
        if params.top_k is not None:
            body["top_k"] = params.top_k
        effective_max_tokens = max_tokens if max_tokens is not None else params.max_tokens
        if effective_max_tokens is not None:
            body["max_tokens"] = effective_max_tokens
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        top_p: float | None = None,
    ) -> LLMResponse:
        """Generate a completion."""
        url = f"{self.endpoint}/chat/completions"
        body = self._build_body(messages, tools, temperature, max_tokens, top_p)
        headers = {"Content-Type": "application/json", **self.headers}

        try:
            log.debug("Calling provider", model=self.model, url=url, msg_count=len(messages))
            response = await self.client.post(url, json=body, headers=headers)
            log.debug("Provider response status", status=response.status_code)

            if not response.is_success:
                raise ProviderRequestError(
                    f"Provider request failed {response.status_code}: {response.text}",
                    status_code=response.status_code,
                )

            data = response.json()
        except httpx.HTTPError as e:
            raise ProviderRequestError(f"Provider HTTP error: {e}") from e
        except json.JSONDecodeError as e:
            raise ProviderRequestError(f"Provider response decode error: {e}") from e

        choices = data.get("choices") or []
        if not choices:
            raise ProviderRequestError("Provider response contained no choices")
        message = choices[0].get("message") or {}
        usage = data.get("usage") or {}

        return LLMResponse(
            content=message.get("content") or "",
            tool_calls=self._parse_tool_calls(message.get("tool_calls")),
            model=str(data.get("model") or self.model),
            usage={k: int(v) for k, v in usage.items() if isinstance(v, int)},
        )

    async def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client:
            await self.client.aclose()
