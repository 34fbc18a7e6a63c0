"""
MCP Types.

Passive data definitions shared by the registry, connection manager,
router and manager. No behavior beyond small serialization helpers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:
    from mcp_orchestrator.mcp.client import ToolDefinition


class TransportType(str, Enum):
    """MCP transport types."""

    HTTP = "http"
    SSE = "sse"
    STDIO = "stdio"


class ConnectionStatus(str, Enum):
    """Connection state of a registered server."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    TIMEOUT = "timeout"


class LifecycleEvent(str, Enum):
    """Lifecycle hooks a subscriber can attach to."""

    BEFORE_CONNECT = "before_connect"
    AFTER_CONNECT = "after_connect"
    BEFORE_DISCONNECT = "before_disconnect"
    AFTER_DISCONNECT = "after_disconnect"
    ERROR = "error"
    TOOL_CALL = "tool_call"


class PreferenceMode(str, Enum):
    """How the user wants tool servers to be used for a request."""

    AUTO = "auto"
    FORCE = "force"
    SKIP = "skip"
    VERBOSE = "verbose"


@dataclass(frozen=True)
class TransportConfig:
    """Where and how to reach a server."""

    type: TransportType
    # http / sse
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    # stdio
    command: str | None = None
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the config-file layout."""
        data: dict[str, Any] = {"type": self.type.value}
        if self.type == TransportType.STDIO:
            data["command"] = self.command
            if self.args:
                data["args"] = list(self.args)
            if self.env:
                data["env"] = dict(self.env)
        else:
            data["url"] = self.url
            if self.headers:
                data["headers"] = dict(self.headers)
        return data


@dataclass(frozen=True)
class Capabilities:
    """Protocol features a server advertises."""

    tools: bool = True
    resources: bool = False
    prompts: bool = False
    elicitation: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {
            "tools": self.tools,
            "resources": self.resources,
            "prompts": self.prompts,
            "elicitation": self.elicitation,
        }


@dataclass(frozen=True)
class ServerConfig:
    """
    Configuration of a single tool server.

    Immutable once registered. ``timeout`` is in seconds; ``None`` for
    ``timeout`` or ``retry_attempts`` means "use the connection defaults".
    Config files reject ``retryAttempts`` below 1; a config built in code
    with 0 or less still gets one attempt.
    """

    id: str
    name: str
    transport: TransportConfig
    description: str = ""
    enabled: bool = True
    timeout: float | None = None
    retry_attempts: int | None = None
    priority: int = 0
    tags: tuple[str, ...] = ()
    tool_namespace: str | None = None
    capabilities: Capabilities | None = None

    @property
    def namespace(self) -> str:
        """Prefix applied to every tool exposed by this server."""
        return self.tool_namespace or f"{self.id}_"

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the camelCase config-file layout."""
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "transport": self.transport.to_dict(),
            "enabled": self.enabled,
            "priority": self.priority,
            "tags": list(self.tags),
        }
        if self.timeout is not None:
            data["timeout"] = int(self.timeout * 1000)
        if self.retry_attempts is not None:
            data["retryAttempts"] = self.retry_attempts
        if self.tool_namespace:
            data["toolNamespace"] = self.tool_namespace
        if self.capabilities is not None:
            data["capabilities"] = self.capabilities.to_dict()
        return data


@dataclass
class RegistryDefaults:
    """Defaults applied to servers that do not set their own values."""

    timeout: float = 10.0
    retry_attempts: int = 2
    auto_connect: bool = True


@dataclass
class RegistryConfig:
    """Complete configuration: a version tag, servers and defaults."""

    version: str = "1.0.0"
    servers: list[ServerConfig] = field(default_factory=list)
    defaults: RegistryDefaults = field(default_factory=RegistryDefaults)


@dataclass
class ServerMetadata:
    """Static description of a connected server."""

    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    tags: tuple[str, ...] = ()
    capabilities: Capabilities = field(default_factory=Capabilities)


@dataclass
class ServerInstance:
    """Runtime state of a registered server."""

    config: ServerConfig
    client: Any = None
    tools: dict[str, ToolDefinition] = field(default_factory=dict)
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    error: BaseException | None = None
    connected_at: datetime | None = None
    last_used_at: datetime | None = None
    metadata: ServerMetadata | None = None

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        """Status summary (no live handles)."""
        return {
            "id": self.config.id,
            "name": self.config.name,
            "status": self.status.value,
            "tools": sorted(self.tools),
            "error": str(self.error) if self.error else None,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
            "priority": self.config.priority,
            "tags": list(self.config.tags),
        }


@dataclass
class UserPreference:
    """An explicit user directive about tool-server usage."""

    mode: PreferenceMode = PreferenceMode.AUTO
    preferred_servers: list[str] = field(default_factory=list)
    excluded_servers: list[str] = field(default_factory=list)
    reason: str = ""


@dataclass
class RequestContext:
    """Everything the router may look at for one inbound request."""

    user_message: str
    message_history: list[dict[str, str]] = field(default_factory=list)
    schema_state: dict[str, Any] | None = None
    user_preference: UserPreference | None = None


@dataclass
class RoutingDecision:
    """Which servers' tools to expose for a request."""

    use_mcp: bool
    preferred_servers: list[str] = field(default_factory=list)
    reason: str = ""
    confidence: float = 0.0
    verbose: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "use_mcp": self.use_mcp,
            "preferred_servers": list(self.preferred_servers),
            "reason": self.reason,
            "confidence": self.confidence,
            "verbose": self.verbose,
        }


@dataclass
class ManagerStats:
    """Counts over the registry's current state."""

    total_servers: int = 0
    connected_servers: int = 0
    disconnected_servers: int = 0
    error_servers: int = 0
    total_tools: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total_servers": self.total_servers,
            "connected_servers": self.connected_servers,
            "disconnected_servers": self.disconnected_servers,
            "error_servers": self.error_servers,
            "total_tools": self.total_tools,
        }


@dataclass
class LifecycleContext:
    """Payload delivered to lifecycle subscribers."""

    server_id: str
    server_name: str
    event: LifecycleEvent
    data: Any = None
    error: BaseException | None = None


LifecycleHandler = Callable[[LifecycleContext], "Awaitable[None] | None"]
