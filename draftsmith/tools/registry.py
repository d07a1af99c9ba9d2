"""Tool registry: the closed tool set, typed arguments and capability subsets."""

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath, PureWindowsPath
from typing import Annotated, Any, Iterable

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, model_validator

from draftsmith.exceptions import CapabilityDeniedError, ToolArgumentsError, UnknownToolError
from draftsmith.llm import ToolDefinition
from draftsmith.logging import get_logger

log = get_logger(__name__)


class ToolName(str, Enum):
    """Every tool the model may request. Anything else is an unknown tool."""

    READ = "read"
    WRITE = "write"
    APPEND = "append"
    LIST = "list"
    SEARCH = "search"
    GET_CHAPTER_INFO = "get_chapter_info"
    SAVE_SUMMARY = "save_summary"
    RAG_SEARCH = "rag_search"


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"


class CapabilitySet(str, Enum):
    """Capability subset passed explicitly into one agent loop invocation."""

    READ_ONLY = "read-only"
    READ_WRITE = "read-write"

    def allows(self, capability: Capability) -> bool:
        if capability is Capability.READ:
            return True
        return self is CapabilitySet.READ_WRITE


def _relative_path(value: str) -> str:
    """Reject absolute paths and parent traversal; the host enforces the root too."""
    cleaned = value.strip()
    if not cleaned:
        raise ValueError("path must not be empty")
    if PurePosixPath(cleaned).is_absolute() or PureWindowsPath(cleaned).is_absolute():
        raise ValueError("absolute paths are not allowed")
    if ".." in PurePosixPath(cleaned.replace("\\", "/")).parts:
        raise ValueError("parent directory (..) is not allowed")
    return cleaned


RelativePath = Annotated[str, AfterValidator(_relative_path)]


class ToolArguments(BaseModel):
    """Base for typed tool arguments."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ReadArgs(ToolArguments):
    path: RelativePath
    offset: int | None = None  # 0-based line; negative counts from the end
    limit: int = Field(default=2000, ge=1)


class WriteArgs(ToolArguments):
    path: RelativePath
    content: str


class AppendArgs(ToolArguments):
    path: RelativePath
    content: str


class ListArgs(ToolArguments):
    path: RelativePath | None = None


class SearchArgs(ToolArguments):
    query: str = Field(min_length=1)
    path: RelativePath | None = None


class GetChapterInfoArgs(ToolArguments):
    pass


class SaveSummaryArgs(ToolArguments):
    chapter_id: str = Field(alias="chapterId", min_length=1)
    summary: str = Field(min_length=1)


class RagSearchArgs(ToolArguments):
    query: str = Field(min_length=1)
    top_k: int | None = Field(default=None, alias="topK", ge=1, le=50)
    path: RelativePath | None = None


@dataclass(frozen=True)
class ToolSpec:
    """Declared tool: name, description, JSON-schema contract and capability."""

    name: ToolName
    description: str
    parameters: dict[str, Any]
    capability: Capability
    args_model: type[ToolArguments]

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name.value,
            description=self.description,
            parameters=self.parameters,
        )

    def parse_arguments(self, arguments: dict[str, Any] | None) -> ToolArguments:
        try:
            return self.args_model.model_validate(arguments or {})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolArgumentsError(self.name.value, problems) from e


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


TOOL_SPECS: tuple[ToolSpec, ...] = (
    ToolSpec(
        name=ToolName.READ,
        description="Read a text file from the project. Returns numbered lines.",
        parameters=_object_schema(
            {
                "path": {"type": "string", "description": "File path relative to the project root"},
                "offset": {
                    "type": "integer",
                    "description": "Start line (0-based). Negative values count back from the end",
                },
                "limit": {"type": "integer", "description": "Maximum number of lines (default 2000)"},
            },
            ["path"],
        ),
        capability=Capability.READ,
        args_model=ReadArgs,
    ),
    ToolSpec(
        name=ToolName.WRITE,
        description="Create or overwrite a project file with content.",
        parameters=_object_schema(
            {
                "path": {"type": "string", "description": "File path relative to the project root"},
                "content": {"type": "string", "description": "Full file content"},
            },
            ["path", "content"],
        ),
        capability=Capability.WRITE,
        args_model=WriteArgs,
    ),
    ToolSpec(
        name=ToolName.APPEND,
        description="Append content to the end of a project file (e.g. a chapter).",
        parameters=_object_schema(
            {
                "path": {"type": "string", "description": "File path relative to the project root"},
                "content": {"type": "string", "description": "Content to append"},
            },
            ["path", "content"],
        ),
        capability=Capability.WRITE,
        args_model=AppendArgs,
    ),
    ToolSpec(
        name=ToolName.LIST,
        description="List entries of a project directory.",
        parameters=_object_schema(
            {"path": {"type": "string", "description": "Directory relative to the project root"}},
            [],
        ),
        capability=Capability.READ,
        args_model=ListArgs,
    ),
    ToolSpec(
        name=ToolName.SEARCH,
        description="Search project text files for a keyword. Returns file, line and content.",
        parameters=_object_schema(
            {
                "query": {"type": "string", "description": "Text to search for"},
                "path": {"type": "string", "description": "Optional directory or file to search in"},
            },
            ["query"],
        ),
        capability=Capability.READ,
        args_model=SearchArgs,
    ),
    ToolSpec(
        name=ToolName.GET_CHAPTER_INFO,
        description="Get information about the current chapter (id, title, path, word count).",
        parameters=_object_schema({}, []),
        capability=Capability.READ,
        args_model=GetChapterInfoArgs,
    ),
    ToolSpec(
        name=ToolName.SAVE_SUMMARY,
        description="Save a short summary of the text just added to a chapter.",
        parameters=_object_schema(
            {
                "chapterId": {"type": "string", "description": "Chapter id"},
                "summary": {"type": "string", "description": "Summary text"},
            },
            ["chapterId", "summary"],
        ),
        capability=Capability.WRITE,
        args_model=SaveSummaryArgs,
    ),
    ToolSpec(
        name=ToolName.RAG_SEARCH,
        description="Semantic search over the knowledge base. Returns ranked passages.",
        parameters=_object_schema(
            {
                "query": {"type": "string", "description": "What to look for"},
                "topK": {"type": "integer", "description": "Number of passages to return"},
                "path": {"type": "string", "description": "Optional directory scope"},
            },
            ["query"],
        ),
        capability=Capability.READ,
        args_model=RagSearchArgs,
    ),
)


@dataclass(frozen=True)
class ToolInvocation:
    """A validated tool call ready for dispatch."""

    id: str
    name: ToolName
    arguments: ToolArguments

    @property
    def args(self) -> dict[str, Any]:
        return self.arguments.to_wire()


class ToolRegistry:
    """Static, ordered set of tool specs."""

    def __init__(self, specs: Iterable[ToolSpec] | None = None):
        self._specs: dict[ToolName, ToolSpec] = {}
        for spec in specs if specs is not None else TOOL_SPECS:
            if spec.name in self._specs:
                raise ValueError(f"Duplicate tool spec: {spec.name.value}")
            self._specs[spec.name] = spec

    def __contains__(self, name: object) -> bool:
        try:
            return ToolName(name) in self._specs
        except ValueError:
            return False

    def get(self, name: str | ToolName) -> ToolSpec:
        """Get a tool spec by name.

        Raises:
            UnknownToolError if the name is not registered
        """
        try:
            key = ToolName(name)
        except ValueError:
            raise UnknownToolError(str(name)) from None
        spec = self._specs.get(key)
        if spec is None:
            raise UnknownToolError(key.value)
        return spec

    def specs(self, capabilities: CapabilitySet | None = None) -> list[ToolSpec]:
        return [
            spec
            for spec in self._specs.values()
            if capabilities is None or capabilities.allows(spec.capability)
        ]

    def list_tools(self, capabilities: CapabilitySet | None = None) -> list[str]:
        return [spec.name.value for spec in self.specs(capabilities)]

    def get_definitions(self, capabilities: CapabilitySet | None = None) -> list[ToolDefinition]:
        """Definitions exposed to the model for a capability subset."""
        return [spec.get_definition() for spec in self.specs(capabilities)]

    def resolve(
        self,
        call_id: str,
        name: str,
        arguments: dict[str, Any] | None,
        capabilities: CapabilitySet,
    ) -> ToolInvocation:
        """Validate a requested call against the registry and capability subset.

        Raises:
            UnknownToolError: name is not in the registry
            CapabilityDeniedError: tool is outside ``capabilities``
            ToolArgumentsError: arguments do not match the tool's contract
        """
        spec = self.get(name)
        if not capabilities.allows(spec.capability):
            log.warning("Tool call denied by capability subset", tool=spec.name.value, capabilities=capabilities.value)
            raise CapabilityDeniedError(spec.name.value, capabilities.value)
        return ToolInvocation(id=call_id, name=spec.name, arguments=spec.parse_arguments(arguments))


class ToolResult(BaseModel):
    """Result from host-side tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self
