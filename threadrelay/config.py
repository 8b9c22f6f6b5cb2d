"""Configuration models and loaders for threadrelay.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = "threadrelay/config.yaml"


class ConfigurationError(Exception):
    """Raised when a required external credential or endpoint is not configured."""


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class RemoteCapabilityConfig(BaseModel):
    """Connection settings for the remote capability (MCP) server."""

    server_id: str = "remote"
    url: str | None = None
    token_header: str = "Authorization"
    data_source_header: str = "X-Data-Source"
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float = 60.0
    tool_call_timeout_seconds: float = 60.0
    max_sessions: int = 32
    session_idle_seconds: float | None = 1800.0

    @property
    def enabled(self) -> bool:
        """Return true when a remote endpoint is configured."""
        return bool((self.url or "").strip())


class WebSearchConfig(BaseModel):
    """Settings for the Tavily-backed `web_search` tool."""

    api_key: str | None = None
    base_url: str = "https://api.tavily.com"
    max_results: int = 5
    timeout_seconds: float = 10.0


class WeatherConfig(BaseModel):
    """Settings for the Open-Meteo-backed `get_weather` tool."""

    geocoding_url: str = "https://geocoding-api.open-meteo.com/v1/search"
    forecast_url: str = "https://api.open-meteo.com/v1/forecast"
    timeout_seconds: float = 10.0


class ToolPolicyConfig(BaseModel):
    """Which tools one conversation mode may see.

    `allow` and `first_turn_only` hold fnmatch patterns over exposed tool names.
    """

    allow: list[str] = Field(default_factory=lambda: ["*"])
    first_turn_only: list[str] = Field(default_factory=list)
    include_remote: bool = True


def _default_tool_policies() -> dict[str, ToolPolicyConfig]:
    return {
        "general": ToolPolicyConfig(allow=["web_search", "get_weather"], include_remote=False),
        "copilot": ToolPolicyConfig(allow=["*"], first_turn_only=["get_conversation_context"]),
    }


class GatewayConfig(BaseModel):
    """Top-level gateway configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:3001"
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    upstream_base_url: str = "https://api.thesys.dev/v1/embed"
    upstream_api_key: str | None = None
    upstream_model: str = "c1/openai/gpt-5/v-20251230"
    upstream_temperature: float | None = 0.8
    upstream_connect_retries: int | None = None
    upstream_retry_interval_ms: int | None = None

    max_tool_rounds: int | None = None
    max_tool_concurrency: int | None = None
    tool_call_timeout_seconds: float | None = None
    request_timeout_seconds: float | None = None
    stream_keepalive_seconds: float | None = None

    thread_idle_ttl_seconds: float | None = None
    max_threads: int | None = None
    history_window: int | None = None

    system_prompts: dict[str, str] = Field(default_factory=dict)
    tool_policies: dict[str, ToolPolicyConfig] = Field(default_factory=_default_tool_policies)

    remote: RemoteCapabilityConfig = Field(default_factory=RemoteCapabilityConfig)
    web_search: WebSearchConfig = Field(default_factory=WebSearchConfig)
    weather: WeatherConfig = Field(default_factory=WeatherConfig)
    logging: LoggingConfig | None = None

    @model_validator(mode="after")
    def _validate_and_fill_defaults(self) -> "GatewayConfig":
        """Validate the bind address and fill in runtime defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:3001")
        if self.upstream_connect_retries is None:
            self.upstream_connect_retries = 0
        if self.upstream_retry_interval_ms is None:
            self.upstream_retry_interval_ms = 1000
        if self.max_tool_rounds is None:
            self.max_tool_rounds = 8
        if self.max_tool_concurrency is None:
            self.max_tool_concurrency = 4
        if self.tool_call_timeout_seconds is None:
            self.tool_call_timeout_seconds = 60.0
        if self.request_timeout_seconds is None:
            self.request_timeout_seconds = 300.0
        if self.stream_keepalive_seconds is None:
            self.stream_keepalive_seconds = 15.0
        if self.thread_idle_ttl_seconds is None:
            self.thread_idle_ttl_seconds = 86400.0
        if self.max_threads is None:
            self.max_threads = 10000
        # Modes missing from a partial table keep their built-in policy.
        self.tool_policies = {**_default_tool_policies(), **self.tool_policies}
        if self.logging is None:
            self.logging = LoggingConfig()
        return self

    @field_validator("max_tool_rounds", "max_tool_concurrency", "max_threads", "history_window")
    @classmethod
    def _validate_positive(cls, value: int | None) -> int | None:
        """Reject zero or negative bounds."""
        if value is not None and value < 1:
            raise ValueError("bounds must be >= 1")
        return value

    @field_validator("system_prompts", "tool_policies", mode="before")
    @classmethod
    def _none_to_empty_mapping(cls, value: Any) -> Any:
        """Treat explicit YAML `null` for mapping fields as empty."""
        if value is None:
            return {}
        return value

    def require_upstream_api_key(self) -> str:
        """Return the completion service key or raise `ConfigurationError`."""
        key = (self.upstream_api_key or "").strip()
        if not key:
            raise ConfigurationError("upstream_api_key is not configured")
        return key


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only deployments.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


# First variable found wins; unprefixed names are the provider-conventional ones.
_ENV_MAP: list[tuple[str, tuple[str, ...]]] = [
    ("service_base_url", ("THREADRELAY_SERVICE_BASE_URL",)),
    ("upstream_base_url", ("THREADRELAY_UPSTREAM_BASE_URL",)),
    ("upstream_api_key", ("THREADRELAY_UPSTREAM_API_KEY", "THESYS_API_KEY")),
    ("upstream_model", ("THREADRELAY_UPSTREAM_MODEL",)),
    ("upstream_connect_retries", ("THREADRELAY_UPSTREAM_CONNECT_RETRIES",)),
    ("upstream_retry_interval_ms", ("THREADRELAY_UPSTREAM_RETRY_INTERVAL_MS",)),
    ("max_tool_rounds", ("THREADRELAY_MAX_TOOL_ROUNDS",)),
    ("max_tool_concurrency", ("THREADRELAY_MAX_TOOL_CONCURRENCY",)),
    ("request_timeout_seconds", ("THREADRELAY_REQUEST_TIMEOUT_SECONDS",)),
    ("stream_keepalive_seconds", ("THREADRELAY_STREAM_KEEPALIVE_SECONDS",)),
    ("remote.url", ("THREADRELAY_REMOTE_URL", "XANO_MCP_URL")),
    ("web_search.api_key", ("THREADRELAY_TAVILY_API_KEY", "TAVILY_API_KEY")),
    ("logging.level", ("THREADRELAY_LOG_LEVEL",)),
    ("logging.json", ("THREADRELAY_LOG_JSON",)),
]

_INT_KEYS = {
    "upstream_connect_retries",
    "upstream_retry_interval_ms",
    "max_tool_rounds",
    "max_tool_concurrency",
}
_FLOAT_KEYS = {"request_timeout_seconds", "stream_keepalive_seconds"}


def _first_env(names: tuple[str, ...]) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value is not None:
            return value
    return None


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    out = dict(data)
    for section in ("logging", "remote", "web_search"):
        out[section] = dict(out.get(section) or {})

    for key, env_names in _ENV_MAP:
        value = _first_env(env_names)
        if value is None:
            continue

        if key in _INT_KEYS:
            out[key] = int(value)
        elif key in _FLOAT_KEYS:
            out[key] = float(value)
        elif key == "logging.json":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif "." in key:
            section, field_name = key.split(".", 1)
            out[section][field_name] = value
        else:
            out[key] = value

    port = os.getenv("PORT")
    if port and "THREADRELAY_SERVICE_BASE_URL" not in os.environ:
        parsed = urlparse(str(out.get("service_base_url") or "http://127.0.0.1:3001"))
        out["service_base_url"] = f"{parsed.scheme or 'http'}://{parsed.hostname or '127.0.0.1'}:{int(port)}"

    return out


def load_config(path: str | None = None) -> GatewayConfig:
    """Load, merge, and validate gateway configuration."""
    final_path = path or os.getenv("THREADRELAY_CONFIG") or DEFAULT_CONFIG_PATH
    raw = _load_yaml(final_path)
    raw = _override_from_env(raw)
    return GatewayConfig.model_validate(raw)
