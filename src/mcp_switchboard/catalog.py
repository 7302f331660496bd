"""
Tool catalog - the flat, namespaced index of every server's tools.

Each server owns one CatalogEntry holding its tool metadata and the list of
public names. Entries are rebuilt from a connection snapshot and swapped in
with a single assignment, so readers see either the old or the new entry.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mcp_switchboard.config import ServerDefinition, ToolPrefix
    from mcp_switchboard.connection import Connection

logger = logging.getLogger(__name__)


def format_tool_name(tool_name: str, server_name: str, prefix: ToolPrefix = "server") -> str:
    """Public name of a tool under the given prefix style."""
    if prefix == "none":
        return tool_name
    if prefix == "short":
        short = re.sub(r"-?mcp$", "", server_name, flags=re.IGNORECASE).replace("-", "_")
        return f"{short or 'mcp'}_{tool_name}"
    return f"{server_name.replace('-', '_')}_{tool_name}"


def resource_name_to_tool_name(name: str) -> str:
    """Turn a resource name like ``config/app.json`` into ``config_app_json``."""
    return re.sub(r"[^a-zA-Z0-9]+", "_", name).strip("_").lower()


@dataclass(frozen=True)
class ToolMetadata:
    """Searchable description of one public tool."""

    name: str
    original_name: str
    server: str
    description: str = ""
    input_schema: Any = None
    resource_uri: str | None = None

    @property
    def is_resource(self) -> bool:
        return self.resource_uri is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "name": self.name,
            "originalName": self.original_name,
            "server": self.server,
            "description": self.description,
        }
        if self.resource_uri is not None:
            data["resourceUri"] = self.resource_uri
        elif self.input_schema is not None:
            data["inputSchema"] = self.input_schema
        return data


@dataclass(frozen=True)
class CatalogEntry:
    """All public tools of one server."""

    server: str
    tools: tuple[ToolMetadata, ...] = ()
    names: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()

    def find(self, name: str) -> ToolMetadata | None:
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


class ToolCatalog:
    """Per-server tool metadata used for listing, search and describe."""

    def __init__(self, prefix: ToolPrefix = "server") -> None:
        self.prefix = prefix
        self._entries: dict[str, CatalogEntry] = {}

    def build_for_server(
        self, server: str, connection: Connection, definition: ServerDefinition
    ) -> CatalogEntry:
        """Derive a server's entry from its connection snapshot (not stored)."""
        tools: list[ToolMetadata] = []
        seen_originals: set[str] = set()
        seen_public: set[str] = set()
        skipped: list[str] = []

        def add(meta: ToolMetadata) -> None:
            if meta.original_name in seen_originals or meta.name in seen_public:
                skipped.append(meta.original_name)
                return
            seen_originals.add(meta.original_name)
            seen_public.add(meta.name)
            tools.append(meta)

        for tool in connection.tools:
            add(
                ToolMetadata(
                    name=format_tool_name(tool.name, server, self.prefix),
                    original_name=tool.name,
                    server=server,
                    description=tool.description,
                    input_schema=tool.input_schema,
                )
            )

        if definition.expose_resources:
            for resource in connection.resources:
                base_name = f"get_{resource_name_to_tool_name(resource.name)}"
                add(
                    ToolMetadata(
                        name=format_tool_name(base_name, server, self.prefix),
                        original_name=base_name,
                        server=server,
                        description=resource.description or f"Read resource: {resource.uri}",
                        resource_uri=resource.uri,
                    )
                )

        if skipped:
            logger.warning(f"[{server}] {len(skipped)} tools skipped: {', '.join(skipped)}")

        return CatalogEntry(
            server=server,
            tools=tuple(tools),
            names=tuple(meta.name for meta in tools),
            skipped=tuple(skipped),
        )

    def rebuild_for_server(
        self, server: str, connection: Connection, definition: ServerDefinition
    ) -> CatalogEntry:
        """Build a server's entry and replace whatever was stored before."""
        entry = self.build_for_server(server, connection, definition)
        self._entries[server] = entry
        logger.debug(f"[{server}] Catalog rebuilt with {len(entry.tools)} tools")
        return entry

    def remove(self, server: str) -> None:
        self._entries.pop(server, None)

    def clear(self) -> None:
        self._entries = {}

    def get(self, server: str) -> CatalogEntry | None:
        return self._entries.get(server)

    def has_server(self, server: str) -> bool:
        return server in self._entries

    def servers(self) -> list[str]:
        return list(self._entries)

    def tool_names(self, server: str) -> tuple[str, ...] | None:
        entry = self._entries.get(server)
        return entry.names if entry is not None else None

    def all_tool_names(self) -> list[str]:
        return [name for entry in list(self._entries.values()) for name in entry.names]

    def iter_tools(self, server: str | None = None) -> Iterator[ToolMetadata]:
        """Yield tools across all servers, or one server when given."""
        for name, entry in list(self._entries.items()):
            if server is not None and name != server:
                continue
            yield from entry.tools

    def find(self, public_name: str) -> ToolMetadata | None:
        """Exact public-name lookup across every server."""
        for entry in list(self._entries.values()):
            found = entry.find(public_name)
            if found is not None:
                return found
        return None

    @property
    def total_tools(self) -> int:
        return sum(len(entry.names) for entry in list(self._entries.values()))
