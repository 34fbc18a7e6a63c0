"""
MCP (Model Context Protocol) Orchestration Layer.

Lets an assistant draw on any number of external tool servers without the
request handler knowing where they live or whether they are reachable.

Architecture:
    Manager -> Router             (which servers for this request)
            -> ConnectionManager  (connect, retry, health-check)
            -> ServerRegistry     (instances, events, tool maps)
            -> MCPClient          (stdio / HTTP transport)

Quick Setup:
    from mcp_orchestrator.mcp import Manager, RequestContext

    manager = Manager()
    await manager.initialize()
    selection = manager.get_tools_for_request(RequestContext(user_message=text))
"""

from mcp_orchestrator.mcp.client import (
    MCPClient,
    MCPError,
    ToolCallResult,
    ToolDefinition,
)
from mcp_orchestrator.mcp.config import (
    BUILTIN_SERVERS,
    CONFIG_PATHS,
    ConfigValidationError,
    add_server_to_config,
    create_example_config,
    default_registry_config,
    export_config_to_json,
    get_server_config,
    load_registry_config,
    parse_registry_config,
    remove_server_from_config,
    save_config_to_file,
    toggle_server_in_config,
)
from mcp_orchestrator.mcp.connection_manager import (
    ConnectionFailedError,
    ConnectionManager,
    ConnectionOptions,
)
from mcp_orchestrator.mcp.manager import (
    Manager,
    ManagerNotInitializedError,
    ManagerOptions,
    ToolSelection,
    is_available,
)
from mcp_orchestrator.mcp.registry import ServerRegistry
from mcp_orchestrator.mcp.router import KeywordPolicy, RequestAnalysis, Router
from mcp_orchestrator.mcp.types import (
    Capabilities,
    ConnectionStatus,
    LifecycleContext,
    LifecycleEvent,
    ManagerStats,
    PreferenceMode,
    RegistryConfig,
    RegistryDefaults,
    RequestContext,
    RoutingDecision,
    ServerConfig,
    ServerInstance,
    ServerMetadata,
    TransportConfig,
    TransportType,
    UserPreference,
)

__all__ = [
    # Client
    "MCPClient",
    "MCPError",
    "ToolDefinition",
    "ToolCallResult",
    # Types
    "Capabilities",
    "ConnectionStatus",
    "LifecycleContext",
    "LifecycleEvent",
    "ManagerStats",
    "PreferenceMode",
    "RegistryConfig",
    "RegistryDefaults",
    "RequestContext",
    "RoutingDecision",
    "ServerConfig",
    "ServerInstance",
    "ServerMetadata",
    "TransportConfig",
    "TransportType",
    "UserPreference",
    # Config
    "BUILTIN_SERVERS",
    "CONFIG_PATHS",
    "ConfigValidationError",
    "add_server_to_config",
    "create_example_config",
    "default_registry_config",
    "export_config_to_json",
    "get_server_config",
    "load_registry_config",
    "parse_registry_config",
    "remove_server_from_config",
    "save_config_to_file",
    "toggle_server_in_config",
    # Registry
    "ServerRegistry",
    # Connections
    "ConnectionManager",
    "ConnectionOptions",
    "ConnectionFailedError",
    # Router
    "Router",
    "KeywordPolicy",
    "RequestAnalysis",
    # Manager
    "Manager",
    "ManagerOptions",
    "ManagerNotInitializedError",
    "ToolSelection",
    "is_available",
]
