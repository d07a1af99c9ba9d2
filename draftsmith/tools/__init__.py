"""Tools package for Draftsmith."""

from draftsmith.tools.executor import (
    ToolCallRecord,
    ToolCallReply,
    ToolCallRequest,
    ToolCallStatus,
    ToolChannel,
    ToolExecutor,
    new_call_id,
)
from draftsmith.tools.registry import (
    TOOL_SPECS,
    Capability,
    CapabilitySet,
    ToolInvocation,
    ToolName,
    ToolRegistry,
    ToolResult,
    ToolSpec,
)

__all__ = [
    "TOOL_SPECS",
    "Capability",
    "CapabilitySet",
    "ToolCallRecord",
    "ToolCallReply",
    "ToolCallRequest",
    "ToolCallStatus",
    "ToolChannel",
    "ToolExecutor",
    "ToolInvocation",
    "ToolName",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "new_call_id",
]
