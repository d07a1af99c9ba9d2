"""Configuration management for Draftsmith."""

import sys
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from draftsmith.exceptions import ConfigurationMissingError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.draftsmith/config.yaml").expanduser()
LOCAL_CONFIG_FILENAME = "draftsmith.yaml"

ProviderType = Literal["openai-compatible", "google", "anthropic"]


class ProviderDescriptor(BaseModel):
    """A configured chat-completion backend.

    Field aliases match the engine wire format (``baseURL``, ``apiKey``,
    ``providerType``); YAML config may use either spelling.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str = ""
    base_url: str = Field(default="", alias="baseURL")
    api_key: str = Field(default="", alias="apiKey")
    models: list[str] = Field(default_factory=list)
    provider_type: ProviderType = Field(default="openai-compatible", alias="providerType")
    headers: dict[str, str] = Field(default_factory=dict)


class ModelParameters(BaseModel):
    """Sampling parameters for one request."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    model: str
    temperature: float | None = None
    top_p: float | None = Field(default=None, alias="topP")
    top_k: int | None = Field(default=None, alias="topK")
    max_tokens: int | None = Field(default=None, alias="maxTokens")


class ModelConfig(BaseModel):
    """Current provider selection and default model parameters."""

    provider: str = ""
    model: str = ""
    temperature: float = 0.7
    top_p: float = 1.0
    top_k: int | None = None
    max_tokens: int = 2000


class ContextConfig(BaseModel):
    """Context window configuration."""

    max_tokens: int = 8000
    compaction_threshold: float = 0.8
    keep_recent: int = 5
    fallback_keep_messages: int = 20
    chars_per_token: int = 4
    message_overhead_tokens: int = 4


class AgentConfig(BaseModel):
    """Agent loop configuration."""

    max_steps: int = 10


def _default_engine_command() -> list[str]:
    return [sys.executable, "-m", "draftsmith", "engine"]


class EngineConfig(BaseModel):
    """Engine subprocess configuration (host side)."""

    command: list[str] = Field(default_factory=_default_engine_command)
    chat_timeout_seconds: float = 600.0
    cancel_grace_seconds: float = 2.0


class UIConfig(BaseModel):
    """UI configuration."""

    simulated_streaming: bool = True
    show_tool_calls: bool = True


class WorkspaceConfig(BaseModel):
    """Project root used by the file-backed tool host."""

    path: str = "."


class SessionConfig(BaseModel):
    """Session storage; relative paths are anchored to the workspace."""

    path: str = ".draftsmith/sessions.db"


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "WARNING"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Draftsmith."""

    providers: list[ProviderDescriptor] = Field(default_factory=list)
    model: ModelConfig = Field(default_factory=ModelConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    ui: UIConfig = Field(default_factory=UIConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="DRAFTSMITH_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @classmethod
    def resolve_default_config_path(cls) -> Path:
        """Resolve default config path with local-first precedence."""
        local_path = Path.cwd() / LOCAL_CONFIG_FILENAME
        if local_path.exists():
            return local_path
        return DEFAULT_CONFIG_PATH

    @classmethod
    def from_yaml(cls, path: Path | str | None = None) -> "Config":
        """Load configuration from YAML file."""
        config_path = Path(path).expanduser() if path else cls.resolve_default_config_path()

        if not config_path.exists():
            return cls()

        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)

    @classmethod
    def load(cls, path: Path | str | None = None) -> "Config":
        """Load configuration; environment variables are applied by BaseSettings."""
        return cls.from_yaml(path)

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    def get_provider(self, provider_id: str) -> ProviderDescriptor | None:
        """Return a configured provider by id."""
        for provider in self.providers:
            if provider.id == provider_id:
                return provider
        return None

    def resolve_model(self) -> tuple[ProviderDescriptor, ModelParameters]:
        """Return the active provider and default model parameters.

        Raises:
            ConfigurationMissingError: no current provider, unknown id, or no model
        """
        provider_id = self.model.provider.strip()
        if not provider_id:
            raise ConfigurationMissingError()
        provider = self.get_provider(provider_id)
        if provider is None:
            raise ConfigurationMissingError()
        model = self.model.model.strip()
        if not model:
            raise ConfigurationMissingError()
        parameters = ModelParameters(
            model=model,
            temperature=self.model.temperature,
            top_p=self.model.top_p,
            top_k=self.model.top_k,
            max_tokens=self.model.max_tokens,
        )
        return provider, parameters

    def resolved_workspace_path(self, runtime_base: Path | str | None = None) -> Path:
        """Resolve workspace path, anchoring relative paths to runtime base/cwd."""
        raw = Path(self.workspace.path).expanduser()
        if raw.is_absolute():
            return raw.resolve()
        anchor = Path(runtime_base).expanduser().resolve() if runtime_base is not None else Path.cwd().resolve()
        return (anchor / raw).resolve()

    def resolved_session_path(self, runtime_base: Path | str | None = None) -> Path:
        raw = Path(self.session.path).expanduser()
        if raw.is_absolute():
            return raw
        return self.resolved_workspace_path(runtime_base) / raw


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
