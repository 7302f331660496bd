"""
The gateway state aggregate shared by the dispatcher, supervisor and
startup orchestrator. One instance lives from startup to shutdown.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from mcp_switchboard.catalog import ToolCatalog
from mcp_switchboard.config import GatewayConfig, ServerDefinition
from mcp_switchboard.connection import ConnectionManager
from mcp_switchboard.lifecycle import LifecycleSupervisor
from mcp_switchboard.notifications import Notifier


@dataclass
class GatewayState:
    config: GatewayConfig
    manager: ConnectionManager
    catalog: ToolCatalog
    supervisor: LifecycleSupervisor
    notifier: Notifier = field(default_factory=Notifier)

    @classmethod
    def create(cls, config: GatewayConfig, notifier: Notifier | None = None) -> GatewayState:
        notifier = notifier or Notifier()
        manager = ConnectionManager.from_settings(config.settings)
        state = cls(
            config=config,
            manager=manager,
            catalog=ToolCatalog(prefix=config.settings.tool_prefix),
            supervisor=LifecycleSupervisor.from_settings(manager, config.settings, notifier),
            notifier=notifier,
        )
        state.supervisor.is_configured = state.is_configured
        return state

    @property
    def servers(self) -> dict[str, ServerDefinition]:
        """Configured (enabled) servers, connected or not."""
        return self.config.get_enabled_servers()

    def is_configured(self, name: str) -> bool:
        return name in self.servers

    def refresh_server(self, name: str) -> None:
        """Rebuild a server's catalog entry from its current connection."""
        connection = self.manager.get_connection(name)
        definition = self.servers.get(name)
        if connection is None or not connection.is_connected or definition is None:
            return
        self.catalog.rebuild_for_server(name, connection, definition)
