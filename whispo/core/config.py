"""
Whispo Configuration
--------------------
Configuration models for the context protocol layer.
Loads from environment variables and YAML config files.
"""

import os
import logging
from typing import Optional, Dict, Any, List

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("Whispo.Config")

LOCAL_NAMESPACE = "local"
DEFAULT_CONTEXT_TOOLS = ("get_context", "get_active_file", "get_project_info")


def _parse_positive_float_env(name: str) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = float(raw)
        if value <= 0:
            raise ValueError
        return value
    except ValueError:
        logger.warning(
            "Invalid %s value '%s'; expected positive float. Ignoring.",
            name,
            raw,
        )
        return None


def _parse_port_env(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw)
        if not 0 < value < 65536:
            raise ValueError
        return value
    except ValueError:
        logger.warning("Invalid %s value '%s'; expected TCP port. Ignoring.", name, raw)
        return None


def _parse_bool_env(name: str) -> Optional[bool]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


class ProviderConfig(BaseModel):
    """One external context provider, launched as a child process."""
    name: str
    command: str
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    call_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("provider name must not be empty")
        if value == LOCAL_NAMESPACE:
            raise ValueError(f"provider name '{LOCAL_NAMESPACE}' is reserved for local tools")
        if "/" in value:
            raise ValueError("provider name must not contain '/'")
        return value

    @field_validator("command")
    @classmethod
    def _check_command(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("provider command must not be empty")
        return value


class ServerConfig(BaseModel):
    """HTTP server-mode endpoint configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = Field(default=7420, gt=0, lt=65536)
    path: str = "/mcp"
    auth_token: Optional[str] = None

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"


class ContextAwarenessConfig(BaseModel):
    """What the context aggregator gathers and how long it may take."""
    use_file_context: bool = True
    use_project_context: bool = True
    use_glossary: bool = True
    use_recent_interactions: bool = True
    max_context_length: int = Field(default=4096, ge=0)
    recent_history_limit: int = Field(default=5, ge=0)
    budget_seconds: float = Field(default=1.5, gt=0)
    provider_tools: List[str] = Field(default_factory=lambda: list(DEFAULT_CONTEXT_TOOLS))


class TimingConfig(BaseModel):
    """Timeouts, heartbeat and reconnect backoff for provider connections."""
    call_timeout_seconds: float = Field(default=10.0, gt=0)
    handshake_timeout_seconds: float = Field(default=10.0, gt=0)
    heartbeat_interval_seconds: float = Field(default=30.0, ge=0)
    heartbeat_timeout_seconds: float = Field(default=5.0, gt=0)
    reconnect_max_attempts: int = Field(default=5, ge=0)
    reconnect_base_delay_seconds: float = Field(default=0.5, gt=0)
    reconnect_max_delay_seconds: float = Field(default=30.0, gt=0)
    shutdown_grace_seconds: float = Field(default=2.0, gt=0)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (0-based): base * 2**attempt, capped."""
        return min(
            self.reconnect_max_delay_seconds,
            self.reconnect_base_delay_seconds * (2 ** attempt),
        )


class McpConfig(BaseModel):
    """Context protocol layer configuration: providers, server and context."""
    enabled: bool = False
    providers: List[ProviderConfig] = Field(default_factory=list)
    server: ServerConfig = Field(default_factory=ServerConfig)
    context: ContextAwarenessConfig = Field(default_factory=ContextAwarenessConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)

    @model_validator(mode="after")
    def _unique_provider_names(self) -> "McpConfig":
        seen = set()
        for provider in self.providers:
            if provider.name in seen:
                raise ValueError(f"duplicate provider name '{provider.name}'")
            seen.add(provider.name)
        return self

    def active_providers(self) -> List[ProviderConfig]:
        """Providers that should be connected, in configured order."""
        if not self.enabled:
            return []
        return [provider for provider in self.providers if provider.enabled]


class WhispoConfig(BaseModel):
    """Root configuration."""
    mcp: McpConfig = Field(default_factory=McpConfig)
    log_level: str = "info"

    @classmethod
    def from_env(cls) -> "WhispoConfig":
        """
        Load configuration from environment variables.

        Environment variables override defaults:
        - WHISPO_MCP_ENABLED: Enable/disable the provider client role
        - WHISPO_SERVER_ENABLED: Enable/disable the HTTP server role
        - WHISPO_SERVER_HOST / WHISPO_SERVER_PORT: Server binding
        - WHISPO_SERVER_AUTH_TOKEN: Require this bearer token on the endpoint
        - WHISPO_CALL_TIMEOUT_SEC: Default provider call timeout
        - WHISPO_CONTEXT_BUDGET_SEC: Context aggregation budget
        - WHISPO_LOG_LEVEL: Logging level
        """
        return cls().with_env_overrides()

    @classmethod
    def from_yaml(cls, path: str) -> "WhispoConfig":
        """Load configuration from a YAML file; environment variables still win."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            logger.warning("Config file not found: %s; using defaults", path)
            return cls.from_env()
        return cls.model_validate(data or {}).with_env_overrides()

    def with_env_overrides(self) -> "WhispoConfig":
        config = self.model_copy(deep=True)
        mcp = config.mcp

        enabled = _parse_bool_env("WHISPO_MCP_ENABLED")
        if enabled is not None:
            mcp.enabled = enabled
        server_enabled = _parse_bool_env("WHISPO_SERVER_ENABLED")
        if server_enabled is not None:
            mcp.server.enabled = server_enabled
        mcp.server.host = os.environ.get("WHISPO_SERVER_HOST", mcp.server.host)
        port = _parse_port_env("WHISPO_SERVER_PORT")
        if port is not None:
            mcp.server.port = port
        token = os.environ.get("WHISPO_SERVER_AUTH_TOKEN")
        if token:
            mcp.server.auth_token = token

        call_timeout = _parse_positive_float_env("WHISPO_CALL_TIMEOUT_SEC")
        if call_timeout is not None:
            mcp.timing.call_timeout_seconds = call_timeout
        budget = _parse_positive_float_env("WHISPO_CONTEXT_BUDGET_SEC")
        if budget is not None:
            mcp.context.budget_seconds = budget

        config.log_level = os.environ.get("WHISPO_LOG_LEVEL", config.log_level)
        return config

    def summary(self) -> Dict[str, Any]:
        """Loggable view with secrets masked."""
        data = self.model_dump()
        if data["mcp"]["server"].get("auth_token"):
            data["mcp"]["server"]["auth_token"] = "***"
        return data
