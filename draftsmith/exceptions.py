"""Custom exceptions for Draftsmith."""

import re
from dataclasses import dataclass


class DraftsmithError(Exception):
    """Base exception for Draftsmith."""

    pass


class ConfigurationError(DraftsmithError):
    """Configuration-related errors."""

    pass


CONFIGURATION_MISSING_MESSAGE = (
    "Add a provider in settings, set it as current, then configure default model parameters."
)


class ConfigurationMissingError(ConfigurationError):
    """No usable provider/model is selected."""

    def __init__(self, message: str = CONFIGURATION_MISSING_MESSAGE):
        super().__init__(message)


class LLMError(DraftsmithError):
    """LLM-related errors."""

    pass


class ModelNotAllowedError(LLMError):
    """Requested model is outside the provider's allow-list."""

    def __init__(self, provider_id: str, model: str):
        super().__init__(f"Model not allowed by provider ({provider_id}): {model}")
        self.provider_id = provider_id
        self.model = model


class ProviderRequestError(LLMError):
    """Network/HTTP failure from the completion endpoint."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(DraftsmithError):
    """Tool-related errors."""

    pass


class UnknownToolError(ToolError):
    """Tool name is not part of the registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class CapabilityDeniedError(ToolError):
    """Tool exists but is outside the active capability subset."""

    def __init__(self, tool_name: str, capabilities: str):
        super().__init__(
            f"Tool '{tool_name}' denied: not available with {capabilities} capabilities"
        )
        self.tool_name = tool_name
        self.capabilities = capabilities


class ToolArgumentsError(ToolError):
    """Tool arguments failed validation."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Host-side tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.detail = message


class ProtocolError(DraftsmithError):
    """Malformed or unexpected message across the process boundary."""

    pass


class EndOfStreamError(ProtocolError):
    """Peer closed the stream before a complete message arrived."""

    def __init__(self, message: str = "EOF before complete JSON"):
        super().__init__(message)


class EngineTimeoutError(ProtocolError):
    """Engine process did not finish within the host timeout."""

    def __init__(self, timeout_seconds: float):
        super().__init__(f"AI request timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class EngineError(DraftsmithError):
    """The engine process reported an error event."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class StepLimitExceededError(DraftsmithError):
    """Agent loop hit its step bound before a tool-free answer."""

    def __init__(self, max_steps: int, partial: str = ""):
        super().__init__(f"Agent stopped after reaching the step limit ({max_steps})")
        self.max_steps = max_steps
        self.partial = partial


class WorkflowError(DraftsmithError):
    """Continuation workflow errors."""

    pass


class SessionBusyError(WorkflowError):
    """A turn is already in flight for the session."""

    def __init__(self, session_id: str, state: str):
        super().__init__(f"Session {session_id} is busy ({state})")
        self.session_id = session_id
        self.state = state


class NoChapterSelectedError(WorkflowError):
    """Apply phase requested without a target chapter."""

    def __init__(self):
        super().__init__("No chapter selected, cannot append the draft")


@dataclass
class ErrorDescription:
    """User-facing classification of an error."""

    category: str  # "cancelled", "configuration", "environment", "error"
    message: str
    raw: str


_PREFIX_RE = re.compile(r"^\s*(?:error|invokeerror)\s*:\s*", re.IGNORECASE)
_CANCEL_RE = re.compile(r"已停止生成|cancelled|canceled|aborted|取消", re.IGNORECASE)
_CONFIG_MARKERS = ("请先在设置", "add a provider in settings", "no provider", "no model selected")

_ENVIRONMENT_HINTS: list[tuple[tuple[str, ...], str]] = [
    (
        ("engine executable not found", "ai-engine cli not found"),
        "The AI engine executable was not found. Reinstall or check the engine command.",
    ),
    (
        ("permission denied", "os error 13", "errno 13"),
        "Permission denied. Check access rights for the project directory.",
    ),
    # "errno 28" before "errno 2" so the shorter code does not shadow it.
    (
        ("no space left", "os error 28", "errno 28"),
        "No space left on device.",
    ),
    (
        ("no such file", "os error 2", "errno 2"),
        "File or directory does not exist.",
    ),
]


def describe_error(error: BaseException | str) -> ErrorDescription:
    """Classify an error for display while keeping the raw text."""
    if isinstance(error, ConfigurationMissingError):
        raw = str(error)
        return ErrorDescription(category="configuration", message=raw, raw=raw)

    raw = str(error or "").strip()
    text = raw
    while True:
        stripped = _PREFIX_RE.sub("", text, count=1)
        if stripped == text:
            break
        text = stripped
    text = text.strip() or "Unknown error"
    lowered = text.lower()

    if _CANCEL_RE.search(text):
        return ErrorDescription(category="cancelled", message="Generation stopped.", raw=raw)

    for needles, friendly in _ENVIRONMENT_HINTS:
        if any(needle in lowered for needle in needles):
            return ErrorDescription(category="environment", message=friendly, raw=raw)

    if any(marker in lowered for marker in _CONFIG_MARKERS):
        return ErrorDescription(category="configuration", message=text, raw=raw)

    return ErrorDescription(category="error", message=text, raw=raw)
