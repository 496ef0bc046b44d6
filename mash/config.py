"""Settings file and environment resolution for mash."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_PROVIDER_MODEL = "deepseek-chat"
DEFAULT_MAX_TOKENS = 131072

DEFAULT_PROXY_HOST = "127.0.0.1"
DEFAULT_PROXY_PORT = 31415
PROXY_PORT_ENV = "MCP_HTTP_PORT"

DEFAULT_COMMAND_TIMEOUT = 120.0  # seconds
TASK_FILE_ENV = "MASH_TASK_FILE"


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""

    pass


# --- Settings file ---


class ModelProvider(BaseModel):
    """One model provider entry in settings.json."""

    name: str
    base_url: str = ""
    api_key: str = ""


class SettingsFile(BaseModel):
    """Contents of ~/.mash/settings.json."""

    model_provider: str = ""
    model: str = ""
    model_providers: list[ModelProvider] = Field(default_factory=list)


class McpServerConfig(BaseModel):
    """Launch configuration of one stdio capability provider."""

    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    disabled: bool = False


class McpConfigFile(BaseModel):
    """Contents of ~/.mash/mcp.json."""

    mcp_servers: dict[str, McpServerConfig] = Field(
        default_factory=dict,
        alias="mcpServers",
    )


def mash_home() -> Path:
    """Directory holding settings.json, mcp.json and the task files."""
    override = os.environ.get("MASH_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mash"


def mash_config_path(filename: str) -> Path:
    return mash_home() / filename


def load_settings_file(path: Path | None = None) -> SettingsFile | None:
    """Load settings.json. Returns None if the file is missing or invalid."""
    path = path or mash_config_path("settings.json")
    if not path.is_file():
        return None
    try:
        return SettingsFile.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        logger.warning(f"Ignoring unreadable settings file {path}: {e}")
        return None


def load_mcp_config(path: Path | None = None) -> dict[str, McpServerConfig]:
    """Load provider launch configs from mcp.json (empty when absent)."""
    path = path or mash_config_path("mcp.json")
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return McpConfigFile.model_validate(raw).mcp_servers
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise ConfigError(f"Invalid MCP config {path}: {e}") from e


# --- API config ---


@dataclass
class ApiConfig:
    """Resolved model provider connection settings."""

    base_url: str
    api_key: str
    model: str
    max_tokens: int = DEFAULT_MAX_TOKENS

    @classmethod
    def load(cls, settings_path: Path | None = None) -> ApiConfig:
        """Use the selected provider from settings.json, then fall back to env."""
        settings = load_settings_file(settings_path)
        if settings is not None:
            provider = next(
                (p for p in settings.model_providers if p.name == settings.model_provider),
                None,
            )
            if provider is not None and provider.api_key:
                return cls(
                    base_url=provider.base_url or DEFAULT_BASE_URL,
                    api_key=provider.api_key,
                    model=settings.model or DEFAULT_PROVIDER_MODEL,
                    max_tokens=DEFAULT_MAX_TOKENS,
                )

        return cls.from_env()

    @classmethod
    def from_env(cls) -> ApiConfig:
        api_key = os.environ.get("API_KEY")
        if not api_key:
            raise ConfigError("API_KEY not set and no provider configured in settings.json")

        return cls(
            base_url=os.environ.get("BASE_URL") or DEFAULT_BASE_URL,
            api_key=api_key,
            model=os.environ.get("MODEL") or DEFAULT_MODEL,
            max_tokens=_env_int("MAX_TOKENS", DEFAULT_MAX_TOKENS),
        )


def proxy_port() -> int:
    """Port of the capability proxy, overridable via MCP_HTTP_PORT."""
    return _env_int(PROXY_PORT_ENV, DEFAULT_PROXY_PORT)


def command_timeout() -> float:
    raw = os.environ.get("MASH_COMMAND_TIMEOUT")
    if raw:
        try:
            value = float(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid MASH_COMMAND_TIMEOUT={raw!r}")
        else:
            if value > 0:
                return value
    return DEFAULT_COMMAND_TIMEOUT


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}")
        return default
    return value if value > 0 else default
