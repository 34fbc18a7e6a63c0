"""
MCP Server Configuration Loader.

Builds the registry configuration from, in order:

1. Built-in server definitions
2. A user configuration file (JSON or YAML)
3. Environment variable overrides

Validation runs on the merged result and is fatal: a broken deployment
must not silently start with zero servers.

Usage:
    from mcp_orchestrator.mcp.config import load_registry_config

    config = load_registry_config()
    for server in config.servers:
        print(server.id, server.transport.type)
"""

from __future__ import annotations

import copy
import json
import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Any

import structlog
import yaml

from mcp_orchestrator.mcp.types import (
    Capabilities,
    RegistryConfig,
    RegistryDefaults,
    ServerConfig,
    TransportConfig,
    TransportType,
)

logger = structlog.get_logger(__name__)


class ConfigValidationError(ValueError):
    """Raised when the MCP configuration is malformed."""


# Environment variable names
ENV_CONFIG_PATH = "MCP_CONFIG_PATH"
ENV_DISABLE_BUILTIN = "MCP_DISABLE_BUILTIN"
ENV_AUTO_CONNECT = "MCP_AUTO_CONNECT"
ENV_TIMEOUT = "MCP_TIMEOUT"
ENV_RETRY_ATTEMPTS = "MCP_RETRY_ATTEMPTS"

# User configuration files, checked in order relative to the working directory
CONFIG_PATHS = (
    ".mcp-config.json",
    "mcp.config.json",
    "config/mcp.json",
)

CONFIG_VERSION = "1.0.0"

BUILTIN_SERVERS: list[ServerConfig] = [
    ServerConfig(
        id="pg-aiguide",
        name="PostgreSQL AI Guide",
        description=(
            "AI-optimized PostgreSQL expertise with semantic search and best practices"
        ),
        transport=TransportConfig(
            type=TransportType.HTTP,
            url="https://mcp.tigerdata.com/docs",
        ),
        enabled=True,
        timeout=10.0,
        retry_attempts=2,
        priority=100,
        tags=("postgres", "database", "sql", "timescale", "ai"),
        tool_namespace="pg_",
        capabilities=Capabilities(
            tools=True,
            resources=True,
            prompts=False,
            elicitation=False,
        ),
    ),
]


def expand_bash_vars(value: str) -> str:
    """Expand bash-style environment variables with default values.

    Handles the following patterns:
    - $VAR or ${VAR} - standard variable expansion
    - ${VAR:-default} - use default if VAR is unset or empty
    - ${VAR-default} - use default if VAR is unset (but not if empty)
    """
    if not value or "$" not in value:
        return value

    pattern = r"\$\{([^}:-]+)(:-|-)?([^}]*)?\}"

    def replace_var(match: re.Match) -> str:
        var_name = match.group(1)
        operator = match.group(2)
        default = match.group(3) or ""

        env_value = os.environ.get(var_name)

        if operator == ":-":
            return env_value if env_value else default
        elif operator == "-":
            return env_value if env_value is not None else default
        return env_value or ""

    result = re.sub(pattern, replace_var, value)
    return os.path.expandvars(result)


def default_registry_config() -> RegistryConfig:
    """Configuration made of the built-in servers and default settings."""
    return RegistryConfig(
        version=CONFIG_VERSION,
        servers=list(BUILTIN_SERVERS),
        defaults=RegistryDefaults(timeout=10.0, retry_attempts=2, auto_connect=True),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Raw (file-format) handling
# ─────────────────────────────────────────────────────────────────────────────


def _get(data: dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Read the first present key, accepting camelCase and snake_case."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _validate_limits(data: dict[str, Any], owner: str) -> None:
    """Check the numeric knobs shared by server entries and ``defaults``."""
    timeout = _get(data, "timeout")
    if timeout is not None and (not _is_number(timeout) or timeout <= 0):
        raise ConfigValidationError(
            f"{owner} timeout must be a positive number of milliseconds, got {timeout!r}"
        )

    retry_attempts = _get(data, "retryAttempts", "retry_attempts")
    if retry_attempts is not None and (
        not isinstance(retry_attempts, int)
        or isinstance(retry_attempts, bool)
        or retry_attempts < 1
    ):
        raise ConfigValidationError(
            f"{owner} retryAttempts must be an integer of at least 1, got {retry_attempts!r}"
        )


def validate_config(data: dict[str, Any]) -> None:
    """
    Validate raw configuration data.

    Raises:
        ConfigValidationError: on the first problem found
    """
    if not isinstance(data, dict):
        raise ConfigValidationError("MCP config must be a mapping")

    if not data.get("version"):
        raise ConfigValidationError("MCP config missing version")

    servers = data.get("servers")
    if not isinstance(servers, list):
        raise ConfigValidationError("MCP config servers must be a list")

    valid_types = {t.value for t in TransportType}

    for server in servers:
        if not isinstance(server, dict):
            raise ConfigValidationError("MCP server entry must be a mapping")

        server_id = server.get("id")
        if not server_id or not isinstance(server_id, str):
            raise ConfigValidationError("MCP server missing or invalid id")

        name = server.get("name")
        if not name or not isinstance(name, str):
            raise ConfigValidationError(f"MCP server {server_id} missing or invalid name")

        transport = server.get("transport")
        if not transport or not isinstance(transport, dict):
            raise ConfigValidationError(
                f"MCP server {server_id} missing or invalid transport"
            )

        transport_type = transport.get("type")
        if transport_type not in valid_types:
            raise ConfigValidationError(
                f"MCP server {server_id} has invalid transport type: {transport_type}"
            )

        if transport_type in ("http", "sse") and not transport.get("url"):
            raise ConfigValidationError(f"MCP server {server_id} missing transport URL")

        if transport_type == "stdio" and not transport.get("command"):
            raise ConfigValidationError(f"MCP server {server_id} missing stdio command")

        _validate_limits(server, f"MCP server {server_id}")

        priority = server.get("priority")
        if priority is not None and not _is_number(priority):
            raise ConfigValidationError(
                f"MCP server {server_id} priority must be a number, got {priority!r}"
            )

        tags = server.get("tags")
        if tags is not None and not (
            isinstance(tags, list) and all(isinstance(tag, str) for tag in tags)
        ):
            raise ConfigValidationError(f"MCP server {server_id} tags must be a list of strings")

    defaults = data.get("defaults")
    if defaults is not None:
        if not isinstance(defaults, dict):
            raise ConfigValidationError("MCP config defaults must be a mapping")
        _validate_limits(defaults, "MCP config defaults")

    logger.debug("MCP configuration validated", servers=len(servers))


def _parse_transport(data: dict[str, Any]) -> TransportConfig:
    transport_type = TransportType(data["type"])
    url = data.get("url")
    command = data.get("command")
    return TransportConfig(
        type=transport_type,
        url=expand_bash_vars(url) if url else None,
        headers={k: expand_bash_vars(str(v)) for k, v in (data.get("headers") or {}).items()},
        command=expand_bash_vars(os.path.expanduser(command)) if command else None,
        args=tuple(str(a) for a in data.get("args") or ()),
        env={
            k: expand_bash_vars(os.path.expanduser(str(v)))
            for k, v in (data.get("env") or {}).items()
        },
    )


def _parse_capabilities(data: dict[str, Any] | None) -> Capabilities | None:
    if data is None:
        return None
    return Capabilities(
        tools=bool(data.get("tools", True)),
        resources=bool(data.get("resources", False)),
        prompts=bool(data.get("prompts", False)),
        elicitation=bool(data.get("elicitation", False)),
    )


def parse_server_config(
    data: dict[str, Any],
    defaults: RegistryDefaults | None = None,
) -> ServerConfig:
    """
    Build a ServerConfig from a raw entry.

    ``timeout`` in the raw entry is in milliseconds. Defaults fill in
    ``timeout`` and ``retry_attempts`` when the entry leaves them out.
    """
    timeout_ms = _get(data, "timeout")
    retry_attempts = _get(data, "retryAttempts", "retry_attempts")

    timeout = timeout_ms / 1000 if timeout_ms is not None else None
    if defaults is not None:
        if timeout is None:
            timeout = defaults.timeout
        if retry_attempts is None:
            retry_attempts = defaults.retry_attempts

    return ServerConfig(
        id=data["id"],
        name=data["name"],
        description=data.get("description") or "",
        transport=_parse_transport(data["transport"]),
        enabled=data.get("enabled", True) is not False,
        timeout=timeout,
        retry_attempts=int(retry_attempts) if retry_attempts is not None else None,
        priority=int(_get(data, "priority", default=0)),
        tags=tuple(data.get("tags") or ()),
        tool_namespace=_get(data, "toolNamespace", "tool_namespace"),
        capabilities=_parse_capabilities(data.get("capabilities")),
    )


def _parse_defaults(data: dict[str, Any] | None) -> RegistryDefaults:
    data = data or {}
    defaults = RegistryDefaults()
    timeout_ms = _get(data, "timeout")
    if timeout_ms is not None:
        defaults.timeout = timeout_ms / 1000
    retry_attempts = _get(data, "retryAttempts", "retry_attempts")
    if retry_attempts is not None:
        defaults.retry_attempts = int(retry_attempts)
    auto_connect = _get(data, "autoConnect", "auto_connect")
    if auto_connect is not None:
        defaults.auto_connect = bool(auto_connect)
    return defaults


def parse_registry_config(data: dict[str, Any]) -> RegistryConfig:
    """Validate raw configuration data and convert it to a RegistryConfig."""
    validate_config(data)
    defaults = _parse_defaults(data.get("defaults"))
    return RegistryConfig(
        version=str(data["version"]),
        servers=[parse_server_config(s, defaults) for s in data["servers"]],
        defaults=defaults,
    )


def config_to_dict(config: RegistryConfig) -> dict[str, Any]:
    """Convert a RegistryConfig back to the raw file layout."""
    return {
        "version": config.version,
        "servers": [server.to_dict() for server in config.servers],
        "defaults": {
            "timeout": int(config.defaults.timeout * 1000),
            "retryAttempts": config.defaults.retry_attempts,
            "autoConnect": config.defaults.auto_connect,
        },
    }


def merge_configs(
    base: dict[str, Any],
    override: dict[str, Any],
) -> dict[str, Any]:
    """
    Merge a user configuration over a base configuration.

    Servers are matched by id: an existing entry is updated key by key,
    a new id is appended. ``defaults`` are merged key by key.
    """
    merged = copy.deepcopy(base)
    merged["version"] = override.get("version") or base.get("version")
    merged["defaults"] = {**(base.get("defaults") or {}), **(override.get("defaults") or {})}

    servers: list[dict[str, Any]] = merged.setdefault("servers", [])
    user_servers = override.get("servers")
    if not isinstance(user_servers, list):
        return merged

    for user_server in user_servers:
        if not isinstance(user_server, dict):
            servers.append(user_server)
            continue

        existing = next(
            (i for i, s in enumerate(servers) if s.get("id") == user_server.get("id")),
            None,
        )
        if existing is not None:
            servers[existing] = {**servers[existing], **user_server}
            logger.info("Overriding MCP server", server_id=user_server.get("id"))
        else:
            servers.append(copy.deepcopy(user_server))
            logger.info("Adding user MCP server", server_id=user_server.get("id"))

    return merged


def _read_config_file(path: Path) -> dict[str, Any] | None:
    """Read a config file; missing or empty files yield None.

    ``.yaml``/``.yml`` files are parsed as YAML, everything else as JSON.
    """
    if not path.is_file():
        return None

    text = path.read_text()
    if not text.strip():
        return None

    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"MCP config file {path} is not valid: {e}") from e

    if data is None:
        return None
    if not isinstance(data, dict):
        raise ConfigValidationError(f"MCP config file {path} must contain a mapping")

    logger.info("Loaded user MCP config", path=str(path))
    return data


def _load_user_config(
    config_path: str | Path | None,
    base_dir: Path,
) -> dict[str, Any] | None:
    if config_path is not None:
        data = _read_config_file(Path(config_path))
        if data is None:
            logger.warning("MCP config file not found", path=str(config_path))
        return data

    custom_path = os.getenv(ENV_CONFIG_PATH)
    if custom_path:
        data = _read_config_file(Path(custom_path))
        if data is not None:
            return data
        logger.warning("MCP config file from environment not found", path=custom_path)

    for candidate in CONFIG_PATHS:
        data = _read_config_file(base_dir / candidate)
        if data is not None:
            return data

    return None


def _env_int(name: str) -> int | None:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer environment value", name=name, value=value)
        return None


def apply_environment_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply MCP_* environment variables to the raw ``defaults`` block."""
    defaults = data.setdefault("defaults", {})

    auto_connect = os.getenv(ENV_AUTO_CONNECT)
    if auto_connect:
        defaults["autoConnect"] = auto_connect.lower() == "true"

    timeout = _env_int(ENV_TIMEOUT)
    if timeout is not None:
        defaults["timeout"] = timeout

    retry_attempts = _env_int(ENV_RETRY_ATTEMPTS)
    if retry_attempts is not None:
        defaults["retryAttempts"] = retry_attempts

    return data


def load_registry_config(
    config_path: str | Path | None = None,
    base_dir: str | Path | None = None,
) -> RegistryConfig:
    """
    Load the MCP configuration.

    Args:
        config_path: Explicit config file. When omitted, MCP_CONFIG_PATH and
            then CONFIG_PATHS (relative to ``base_dir``) are tried.
        base_dir: Directory for CONFIG_PATHS. Defaults to the working directory.

    Returns:
        Validated RegistryConfig

    Raises:
        ConfigValidationError: if the merged configuration is malformed
    """
    data = config_to_dict(default_registry_config())

    if os.getenv(ENV_DISABLE_BUILTIN, "").lower() == "true":
        logger.info("Built-in MCP servers disabled via environment")
        data["servers"] = []

    user_config = _load_user_config(config_path, Path(base_dir) if base_dir else Path.cwd())
    if user_config:
        data = merge_configs(data, user_config)

    data = apply_environment_overrides(data)
    config = parse_registry_config(data)

    logger.info(
        "MCP configuration loaded",
        total_servers=len(config.servers),
        enabled_servers=len([s for s in config.servers if s.enabled]),
    )
    return config


# ─────────────────────────────────────────────────────────────────────────────
# RegistryConfig helpers
# ─────────────────────────────────────────────────────────────────────────────


def get_server_config(config: RegistryConfig, server_id: str) -> ServerConfig | None:
    """Get a specific server configuration."""
    return next((s for s in config.servers if s.id == server_id), None)


def add_server_to_config(config: RegistryConfig, server: ServerConfig) -> RegistryConfig:
    """Add a server, replacing any existing entry with the same id."""
    for index, existing in enumerate(config.servers):
        if existing.id == server.id:
            config.servers[index] = server
            return config
    config.servers.append(server)
    return config


def remove_server_from_config(config: RegistryConfig, server_id: str) -> RegistryConfig:
    """Remove a server by id."""
    config.servers = [s for s in config.servers if s.id != server_id]
    return config


def toggle_server_in_config(
    config: RegistryConfig,
    server_id: str,
    enabled: bool,
) -> RegistryConfig:
    """Enable or disable a server by id."""
    config.servers = [
        replace(s, enabled=enabled) if s.id == server_id else s for s in config.servers
    ]
    return config


def export_config_to_json(config: RegistryConfig) -> str:
    """Serialize a configuration to indented JSON."""
    return json.dumps(config_to_dict(config), indent=2)


def save_config_to_file(
    config: RegistryConfig,
    path: str | Path = ".mcp-config.json",
) -> Path:
    """Write a configuration to disk as JSON, or YAML for .yaml/.yml paths."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix in (".yaml", ".yml"):
        content = yaml.safe_dump(config_to_dict(config), sort_keys=False)
    else:
        content = export_config_to_json(config)

    path.write_text(content)
    logger.info("Saved MCP configuration", path=str(path))
    return path


def create_example_config() -> RegistryConfig:
    """Example configuration with one custom HTTP server."""
    return RegistryConfig(
        version=CONFIG_VERSION,
        servers=[
            ServerConfig(
                id="my-custom-mcp",
                name="My Custom MCP Server",
                description="Custom MCP server for my organization",
                transport=TransportConfig(
                    type=TransportType.HTTP,
                    url="https://mcp.example.com",
                ),
                enabled=True,
                timeout=10.0,
                retry_attempts=2,
                priority=80,
                tags=("custom", "example"),
                tool_namespace="custom_",
                capabilities=Capabilities(tools=True),
            ),
        ],
        defaults=RegistryDefaults(timeout=10.0, retry_attempts=2, auto_connect=True),
    )
