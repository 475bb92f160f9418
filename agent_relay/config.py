"""Configuration management for Agent Relay."""

from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_relay.exceptions import ConfigurationError


# Paths
DEFAULT_CONFIG_PATH = Path("~/.agent-relay/config.yaml").expanduser()
DEFAULT_DB_PATH = Path("~/.agent-relay/chats.db").expanduser()
LOCAL_CONFIG_FILENAME = "config.yaml"

ANTHROPIC_BASE_URL = "https://api.anthropic.com"


class ModelConfig(BaseModel):
    """Upstream model configuration."""

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str = ANTHROPIC_BASE_URL
    anthropic_version: str = "2023-06-01"
    max_tokens: int = 4000
    temperature: float | None = None
    system_prompt: str = ""


class LoopConfig(BaseModel):
    """Agent loop bounds."""

    max_iterations: int = Field(default=5, ge=1)
    request_timeout_seconds: float = Field(default=55.0, gt=0)
    max_tool_result_chars: int = Field(default=100000, ge=1)
    malformed_tool_calls: Literal["drop", "error_result"] = "drop"
    iteration_limit_notice: str = ""


class ToolsConfig(BaseModel):
    """Tool registry configuration."""

    plugins: list[str] = Field(default_factory=list)
    default_timeout_seconds: float = 30.0


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8340


class StoreConfig(BaseModel):
    """Chat persistence configuration."""

    enabled: bool = True
    path: str = str(DEFAULT_DB_PATH)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "console"


class Config(BaseSettings):
    """Main configuration for Agent Relay."""

    model: ModelConfig = Field(default_factory=ModelConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_nested_delimiter="__",
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

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        return cls(**data)

    @classmethod
    def load(cls) -> "Config":
        """Load configuration, preferring env vars over YAML."""
        # Pydantic-settings applies RELAY_* environment overrides on construction
        return cls.from_yaml()

    def save(self, path: Path | str | None = None) -> None:
        """Save configuration to YAML file."""
        config_path = Path(path) if path else DEFAULT_CONFIG_PATH
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(exclude_none=True)

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


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
