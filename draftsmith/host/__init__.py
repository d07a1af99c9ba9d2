"""Host side of the tool boundary: executes tool calls the engine relays."""

from abc import ABC, abstractmethod

from draftsmith.exceptions import (
    CapabilityDeniedError,
    ToolArgumentsError,
    ToolError,
    ToolExecutionError,
    UnknownToolError,
)
from draftsmith.logging import get_logger
from draftsmith.tools.executor import ToolCallReply, ToolCallRequest, ToolChannel
from draftsmith.tools.registry import CapabilitySet, ToolInvocation, ToolRegistry, ToolResult

log = get_logger(__name__)

NOT_CONFIRMED_MESSAGE = "Tool not allowed before user confirmation"


class ToolHost(ABC):
    """Executes validated tool invocations and answers wire requests.

    ``handle`` re-checks the capability subset on the host side, so a
    misbehaving engine still cannot write before the user confirmed.
    """

    def __init__(self, registry: ToolRegistry | None = None):
        self.registry = registry or ToolRegistry()

    async def handle(self, request: ToolCallRequest, capabilities: CapabilitySet) -> ToolCallReply:
        """Answer one ``tool_call`` entry with a correlated reply."""
        try:
            invocation = self.registry.resolve(request.id, request.name, request.args, capabilities)
        except UnknownToolError as e:
            return ToolCallReply(id=request.id, error=str(e))
        except CapabilityDeniedError:
            log.warning("Host refused tool call", tool=request.name, capabilities=capabilities.value)
            return ToolCallReply(id=request.id, error=NOT_CONFIRMED_MESSAGE)
        except ToolArgumentsError as e:
            return ToolCallReply(id=request.id, error=str(e))

        try:
            result = await self._execute_checked(invocation)
        except ToolError as e:
            return ToolCallReply(id=request.id, error=str(e))

        if not result.success:
            return ToolCallReply(id=request.id, error=result.error)
        return ToolCallReply(id=request.id, result=result.content)

    async def _execute_checked(self, invocation: ToolInvocation) -> ToolResult:
        name = invocation.name.value
        try:
            return await self.execute(invocation)
        except ToolError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e

    @abstractmethod
    async def execute(self, invocation: ToolInvocation) -> ToolResult:
        """Run a validated invocation."""
        pass


class LocalToolChannel(ToolChannel):
    """In-process channel that hands requests straight to a ToolHost."""

    def __init__(self, host: ToolHost, capabilities: CapabilitySet = CapabilitySet.READ_ONLY):
        self.host = host
        self.capabilities = capabilities
        self.requests: list[ToolCallRequest] = []

    async def call(self, request: ToolCallRequest) -> ToolCallReply:
        self.requests.append(request)
        return await self.host.handle(request, self.capabilities)


__all__ = [
    "LocalToolChannel",
    "NOT_CONFIRMED_MESSAGE",
    "ToolHost",
]
