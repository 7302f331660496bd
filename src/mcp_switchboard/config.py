"""
Configuration management for MCP Switchboard.

Supports YAML or JSON configuration files with environment variable
expansion, validation via Pydantic, and importing server definitions from
the MCP configs of other tools (Cursor, Claude, VS Code, Windsurf).
"""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

ToolPrefix = Literal["server", "short", "none"]
AuthMode = Literal["none", "bearer", "oauth"]
LifecycleMode = Literal["ephemeral", "keep-alive"]

DEFAULT_CONFIG_PATH = Path("~/.config/mcp-switchboard/servers.yaml")

# Where other tools keep their MCP server lists, by import name.
IMPORT_SOURCES: dict[str, tuple[str, ...]] = {
    "cursor": ("~/.cursor/mcp.json",),
    "claude-code": ("~/.claude.json", ".mcp.json"),
    "claude-desktop": (
        "~/Library/Application Support/Claude/claude_desktop_config.json",
        "~/.config/Claude/claude_desktop_config.json",
    ),
    "vscode": (".vscode/mcp.json",),
    "windsurf": ("~/.codeium/windsurf/mcp_config.json",),
}


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports both ${VAR} and $VAR syntax.
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    pattern = r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)"
    return re.sub(pattern, replacer, value)


class ServerDefinition(BaseModel):
    """Static description of one upstream MCP server."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )

    name: str = Field(default="", description="Unique identifier for this server")
    description: str = Field(default="", description="Human-readable description")

    # Transport configuration (exactly one must be set)
    command: str | None = Field(default=None, description="Command for stdio transport")
    args: list[str] = Field(default_factory=list, description="Extra command arguments")
    url: str | None = Field(default=None, description="URL for HTTP/SSE transport")

    # Transport options
    env: dict[str, str] = Field(default_factory=dict, description="Environment variables")
    headers: dict[str, str] = Field(default_factory=dict, description="HTTP headers")
    cwd: str | None = Field(default=None, description="Working directory for stdio")

    # Auth
    auth: AuthMode = Field(default="none", description="Authentication mode")
    bearer_token: str | None = Field(default=None, description="Static bearer token")
    bearer_token_env: str | None = Field(
        default=None, description="Environment variable holding the bearer token"
    )

    # Behaviour
    lifecycle: LifecycleMode = Field(default="ephemeral", description="Supervision policy")
    expose_resources: bool = Field(default=True, description="Expose resources as tools")
    debug: bool = Field(default=False, description="Forward server stderr to the log")
    enabled: bool = Field(default=True, description="Whether this server is active")

    @field_validator("command", "url", "cwd", "bearer_token", mode="before")
    @classmethod
    def expand_env(cls, v: str | None) -> str | None:
        """Expand environment variables in string fields."""
        if v is None:
            return None
        return expand_env_vars(v)

    @field_validator("args", mode="before")
    @classmethod
    def expand_list_values(cls, v: list[str] | None) -> list[str]:
        """Expand environment variables in command arguments."""
        if v is None:
            return []
        return [expand_env_vars(str(item)) for item in v]

    @field_validator("env", "headers", mode="before")
    @classmethod
    def expand_dict_values(cls, v: dict[str, str] | None) -> dict[str, str]:
        """Expand environment variables in dict values."""
        if v is None:
            return {}
        return {k: expand_env_vars(str(val)) for k, val in v.items()}

    @field_validator("lifecycle", mode="before")
    @classmethod
    def normalize_lifecycle(cls, v: Any) -> Any:
        """Accept keep_alive / keepalive spellings and treat lazy as ephemeral."""
        if isinstance(v, str):
            lowered = v.strip().lower().replace("_", "-")
            if lowered in ("keepalive", "keep-alive"):
                return "keep-alive"
            if lowered in ("lazy", "eager"):
                return "ephemeral"
            return lowered
        return v

    @model_validator(mode="after")
    def validate_transport(self) -> ServerDefinition:
        """Ensure exactly one transport is configured."""
        has_command = self.command is not None
        has_url = self.url is not None

        if not has_command and not has_url:
            raise ValueError(f"Server '{self.name}' must have either 'command' or 'url'")
        if has_command and has_url:
            raise ValueError(f"Server '{self.name}' cannot have both 'command' and 'url'")
        if self.auth != "none" and not has_url:
            raise ValueError(f"Server '{self.name}' uses '{self.auth}' auth but has no 'url'")

        return self

    @property
    def transport_type(self) -> Literal["stdio", "http", "sse"]:
        """Determine the transport type for this server."""
        if self.command:
            return "stdio"
        elif self.url and self.url.rstrip("/").endswith("/sse"):
            return "sse"
        else:
            return "http"

    @property
    def command_list(self) -> list[str] | None:
        """Parse command string plus args into a list for the subprocess."""
        if not self.command:
            return None
        return shlex.split(self.command) + list(self.args)

    @property
    def keep_alive(self) -> bool:
        return self.lifecycle == "keep-alive"


class GatewaySettings(BaseModel):
    """Behavioural settings shared by every server."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")

    tool_prefix: ToolPrefix = Field(default="server", description="Public tool naming style")
    health_check_interval: float = Field(
        default=30.0, ge=1.0, description="Seconds between health checks"
    )
    health_check_timeout: float = Field(
        default=5.0, gt=0, description="Timeout of a single health check"
    )
    connect_timeout: float = Field(
        default=30.0, gt=0, description="Timeout for handshake and listing requests"
    )
    connect_concurrency: int = Field(
        default=10, ge=1, description="Maximum simultaneous connection attempts"
    )
    reconnect_initial_delay: float = Field(
        default=5.0, gt=0, description="First backoff delay after a failed reconnect"
    )
    reconnect_max_delay: float = Field(
        default=300.0, gt=0, description="Upper bound for reconnect backoff"
    )
    oauth_dir: str = Field(
        default="~/.config/mcp-switchboard/oauth",
        description="Directory holding <server>/tokens.json files",
    )


class GatewayConfig(BaseModel):
    """Configuration for the MCP Switchboard."""

    # Server settings
    host: str = Field(default="127.0.0.1", description="Host to bind to")
    port: int = Field(default=39400, ge=1, le=65535, description="Port to listen on")

    # Upstream servers
    servers: dict[str, ServerDefinition] = Field(
        default_factory=dict, description="MCP server definitions"
    )
    settings: GatewaySettings = Field(default_factory=GatewaySettings)
    imports: list[str] = Field(
        default_factory=list, description="External tool configs to merge in"
    )

    # Operational settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging verbosity"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> GatewayConfig:
        """Load configuration from a YAML (or JSON) file.

        Args:
            path: Path to configuration file

        Returns:
            Validated GatewayConfig instance

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If configuration is invalid
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open() as f:
            if path.suffix == ".json":
                raw_config = json.load(f)
            else:
                raw_config = yaml.safe_load(f)

        return cls.from_dict(raw_config or {})

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GatewayConfig:
        """Create configuration from a dictionary.

        Handles the servers section specially to convert each entry to a
        ServerDefinition carrying its own name. Accepts ``servers``,
        ``mcpServers`` and ``backends`` as the section name.
        """
        gateway_settings = {
            k: v for k, v in data.items() if k not in ("servers", "mcpServers", "backends")
        }

        servers_raw = data.get("servers") or data.get("mcpServers") or data.get("backends") or {}
        servers = {}

        for name, server_data in servers_raw.items():
            if isinstance(server_data, ServerDefinition):
                servers[name] = server_data.model_copy(update={"name": name})
            elif isinstance(server_data, dict):
                servers[name] = ServerDefinition(**{**server_data, "name": name})

        gateway_settings["servers"] = servers
        return cls(**gateway_settings)

    def get_enabled_servers(self) -> dict[str, ServerDefinition]:
        """Return only enabled servers."""
        return {name: server for name, server in self.servers.items() if server.enabled}


def create_default_config() -> GatewayConfig:
    """Create a minimal default configuration.

    Returns:
        GatewayConfig with sensible defaults and no servers.
    """
    return GatewayConfig()


def merge_configs(base: GatewayConfig, override: GatewayConfig) -> GatewayConfig:
    """Merge two configurations, with override taking precedence.

    Args:
        base: Base configuration
        override: Configuration to overlay

    Returns:
        Merged configuration
    """
    base_dict = base.model_dump()
    override_dict = override.model_dump(exclude_unset=True)

    # Deep merge servers
    if "servers" in override_dict:
        base_dict["servers"].update(override_dict.pop("servers"))

    base_dict.update(override_dict)
    return GatewayConfig.from_dict(base_dict)


def read_import(source: str) -> dict[str, ServerDefinition]:
    """Read server definitions from another tool's MCP config.

    Missing files yield nothing; entries that fail validation are skipped.
    """
    paths = IMPORT_SOURCES.get(source)
    if paths is None:
        logger.warning(f"Unknown config import '{source}'")
        return {}

    found: dict[str, ServerDefinition] = {}
    for raw_path in paths:
        path = Path(raw_path).expanduser()
        if not path.is_file():
            continue
        try:
            data = json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read {source} config {path}: {e}")
            continue

        section = data.get("mcpServers") or data.get("servers") or {}
        for name, entry in section.items():
            if name in found or not isinstance(entry, dict):
                continue
            try:
                found[name] = ServerDefinition(**{**entry, "name": name})
            except ValidationError as e:
                logger.warning(f"Skipping '{name}' from {source}: {e.error_count()} invalid fields")

    logger.debug(f"Imported {len(found)} servers from {source}")
    return found


def apply_imports(config: GatewayConfig) -> GatewayConfig:
    """Merge imported servers into the config; local definitions win."""
    if not config.imports:
        return config

    servers = dict(config.servers)
    for source in config.imports:
        for name, definition in read_import(source).items():
            servers.setdefault(name, definition)

    return config.model_copy(update={"servers": servers})


def load_config(path: str | Path | None = None) -> GatewayConfig:
    """Load the gateway configuration and merge its imports.

    With no path, the default location is used when it exists; otherwise an
    empty configuration is returned.
    """
    if path is not None:
        config = GatewayConfig.from_yaml(path)
    elif DEFAULT_CONFIG_PATH.expanduser().exists():
        config = GatewayConfig.from_yaml(DEFAULT_CONFIG_PATH)
    else:
        config = create_default_config()

    return apply_imports(config)
