"""
Gateway dispatcher - the single polymorphic ``mcp`` operation.

The caller's parameters select one of five modes, first match wins:

    mcp({ tool: "name", args: {...} })  -> call
    mcp({ describe: "tool_name" })      -> describe
    mcp({ search: "query" })            -> search (space-separated words OR'd)
    mcp({ server: "name" })             -> list tools of a server
    mcp({ })                            -> status

Every mode returns a GatewayResult; errors never escape to the caller.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from mcp_switchboard.formatting import (
    convert_resource_contents,
    convert_tool_content,
    format_schema,
    joined_text,
    truncate_at_word,
)

if TYPE_CHECKING:
    from mcp_switchboard.catalog import ToolMetadata
    from mcp_switchboard.state import GatewayState

logger = logging.getLogger(__name__)

DESCRIPTION_TARGET = 50


class Mode(str, Enum):
    STATUS = "status"
    LIST = "list"
    SEARCH = "search"
    DESCRIBE = "describe"
    CALL = "call"


class Outcome(str, Enum):
    """Structured result tag a calling agent can branch on."""

    OK = "ok"
    TOOL_NOT_FOUND = "tool_not_found"
    SERVER_NOT_FOUND = "server_not_found"
    SERVER_NOT_CONNECTED = "server_not_connected"
    INVALID_PATTERN = "invalid_pattern"
    EMPTY_QUERY = "empty_query"
    TOOL_ERROR = "tool_error"
    CALL_FAILED = "call_failed"
    INIT_FAILED = "init_failed"


class GatewayParams(BaseModel):
    """Parameter shape of the ``mcp`` tool."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tool: str | None = Field(default=None, description="Tool name to call")
    args: dict[str, Any] | None = Field(
        default=None,
        validation_alias=AliasChoices("args", "arguments"),
        description="Arguments for tool call",
    )
    describe: str | None = Field(default=None, description="Tool name to describe")
    search: str | None = Field(default=None, description="Search tools by name/description")
    regex: bool = Field(default=False, description="Treat search as regex")
    include_schemas: bool = Field(
        default=True, alias="includeSchemas", description="Include schemas in search results"
    )
    server: str | None = Field(default=None, description="Filter to specific server")

    @classmethod
    def parse(cls, raw: Any) -> GatewayParams:
        """Validate raw parameters; anything malformed means status mode."""
        if isinstance(raw, cls):
            return raw
        if not isinstance(raw, dict):
            return cls()
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            logger.debug(f"Malformed gateway parameters, showing status: {e}")
            return cls()

    @property
    def mode(self) -> Mode:
        if self.tool:
            return Mode.CALL
        if self.describe:
            return Mode.DESCRIBE
        if self.search:
            return Mode.SEARCH
        if self.server:
            return Mode.LIST
        return Mode.STATUS


@dataclass
class GatewayResult:
    """Human-readable content plus structured details."""

    content: list[dict[str, Any]]
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_text(cls, text: str, **details: Any) -> GatewayResult:
        return cls(content=[{"type": "text", "text": text}], details=details)

    @classmethod
    def failure(cls, mode: Mode, outcome: Outcome, text: str, **details: Any) -> GatewayResult:
        return cls.from_text(text, mode=mode.value, error=outcome.value, **details)

    @property
    def text(self) -> str:
        return joined_text(self.content)

    @property
    def outcome(self) -> Outcome:
        return Outcome(self.details.get("error", Outcome.OK.value))

    @property
    def is_error(self) -> bool:
        return self.outcome is not Outcome.OK

    def to_mcp(self) -> dict[str, Any]:
        """Shape as an MCP tools/call result."""
        return {
            "content": self.content,
            "structuredContent": self.details,
            "isError": self.is_error,
        }


def _schema_hint(tool: ToolMetadata) -> str:
    if tool.input_schema is None:
        return ""
    return f"\n\nExpected parameters:\n{format_schema(tool.input_schema)}"


class GatewayDispatcher:
    """Executes gateway modes against the catalog and connections."""

    def __init__(self, state: GatewayState) -> None:
        self.state = state

    async def execute(self, raw_params: Any) -> GatewayResult:
        params = GatewayParams.parse(raw_params)
        mode = params.mode

        if mode is Mode.CALL:
            assert params.tool is not None
            return await self.call(params.tool, params.args)
        if mode is Mode.DESCRIBE:
            assert params.describe is not None
            return self.describe(params.describe)
        if mode is Mode.SEARCH:
            assert params.search is not None
            return self.search(
                params.search,
                regex=params.regex,
                server=params.server,
                include_schemas=params.include_schemas,
            )
        if mode is Mode.LIST:
            assert params.server is not None
            return self.list_server(params.server)
        return self.status()

    # =========================================================================
    # Modes
    # =========================================================================

    def status(self) -> GatewayResult:
        """Every configured server with its status and tool count."""
        servers: list[dict[str, Any]] = []

        for name in self.state.servers:
            connection = self.state.manager.get_connection(name)
            tool_names = self.state.catalog.tool_names(name) or ()
            servers.append(
                {
                    "name": name,
                    "status": connection.status.value if connection else "not connected",
                    "toolCount": len(tool_names),
                }
            )

        total_tools = sum(s["toolCount"] for s in servers)
        connected_count = sum(1 for s in servers if s["status"] == "connected")

        text = f"MCP: {connected_count}/{len(servers)} servers, {total_tools} tools\n\n"
        for server in servers:
            icon = "✓" if server["status"] == "connected" else "○"
            text += f"{icon} {server['name']} ({server['toolCount']} tools)\n"

        if servers:
            text += '\nmcp({ server: "name" }) to list tools, mcp({ search: "..." }) to search'

        return GatewayResult.from_text(
            text.strip(),
            mode=Mode.STATUS.value,
            servers=servers,
            totalTools=total_tools,
            connectedCount=connected_count,
        )

    def list_server(self, server: str) -> GatewayResult:
        """Tools of one server, distinguishing unconnected and unknown servers."""
        entry = self.state.catalog.get(server)

        if entry is None:
            if server in self.state.servers:
                return GatewayResult.failure(
                    Mode.LIST,
                    Outcome.SERVER_NOT_CONNECTED,
                    f'Server "{server}" is configured but not connected. '
                    "Use /mcp reconnect to retry.",
                    server=server,
                    tools=[],
                    count=0,
                )
            return GatewayResult.failure(
                Mode.LIST,
                Outcome.SERVER_NOT_FOUND,
                f'Server "{server}" not found. Use mcp({{}}) to see available servers.',
                server=server,
                tools=[],
                count=0,
            )

        if not entry.names:
            return GatewayResult.from_text(
                f'Server "{server}" has no tools.',
                mode=Mode.LIST.value,
                server=server,
                tools=[],
                count=0,
            )

        lines = [f"{server} ({len(entry.names)} tools):", ""]
        for tool in entry.tools:
            line = f"- {tool.name}"
            if tool.description:
                line += f" - {truncate_at_word(tool.description, DESCRIPTION_TARGET)}"
            lines.append(line)

        return GatewayResult.from_text(
            "\n".join(lines),
            mode=Mode.LIST.value,
            server=server,
            tools=list(entry.names),
            count=len(entry.names),
        )

    def search(
        self,
        query: str,
        regex: bool = False,
        server: str | None = None,
        include_schemas: bool = True,
    ) -> GatewayResult:
        """Find tools whose name or description matches the query."""
        if regex:
            try:
                pattern = re.compile(query, re.IGNORECASE)
            except re.error as e:
                return GatewayResult.failure(
                    Mode.SEARCH,
                    Outcome.INVALID_PATTERN,
                    f"Invalid regex: {query} ({e})",
                    query=query,
                )
        else:
            terms = query.split()
            if not terms:
                return GatewayResult.failure(
                    Mode.SEARCH, Outcome.EMPTY_QUERY, "Search query cannot be empty", query=query
                )
            pattern = re.compile("|".join(re.escape(term) for term in terms), re.IGNORECASE)

        matches = [
            tool
            for tool in self.state.catalog.iter_tools(server)
            if pattern.search(tool.name) or pattern.search(tool.description)
        ]

        if not matches:
            text = (
                f'No tools matching "{query}" in "{server}"'
                if server
                else f'No tools matching "{query}"'
            )
            return GatewayResult.from_text(
                text, mode=Mode.SEARCH.value, matches=[], count=0, query=query
            )

        plural = "" if len(matches) == 1 else "s"
        text = f'Found {len(matches)} tool{plural} matching "{query}":\n\n'
        for tool in matches:
            if include_schemas:
                text += f"{tool.name}\n"
                text += f"  {tool.description or '(no description)'}\n"
                if tool.is_resource:
                    text += "  No parameters (resource tool).\n"
                elif tool.input_schema is not None:
                    text += f"\n  Parameters:\n{format_schema(tool.input_schema, '    ')}\n"
                text += "\n"
            else:
                text += f"- {tool.name}"
                if tool.description:
                    text += f" - {truncate_at_word(tool.description, DESCRIPTION_TARGET)}"
                text += "\n"

        structured = []
        for tool in matches:
            match: dict[str, Any] = {"server": tool.server, "tool": tool.name}
            if include_schemas and not tool.is_resource and tool.input_schema is not None:
                match["inputSchema"] = tool.input_schema
            structured.append(match)

        return GatewayResult.from_text(
            text.strip(),
            mode=Mode.SEARCH.value,
            matches=structured,
            count=len(matches),
            query=query,
        )

    def describe(self, tool_name: str) -> GatewayResult:
        """Full documentation of one tool."""
        tool = self.state.catalog.find(tool_name)
        if tool is None:
            return GatewayResult.failure(
                Mode.DESCRIBE,
                Outcome.TOOL_NOT_FOUND,
                f'Tool "{tool_name}" not found. Use mcp({{ search: "..." }}) to search.',
                requestedTool=tool_name,
            )

        text = f"{tool.name}\nServer: {tool.server}\n"
        if tool.is_resource:
            text += f"Type: Resource (reads from {tool.resource_uri})\n"
        text += f"\n{tool.description or '(no description)'}\n"

        if tool.is_resource:
            text += "\nNo parameters required (resource tool)."
        elif tool.input_schema is not None:
            text += f"\nParameters:\n{format_schema(tool.input_schema)}"
        else:
            text += "\nNo parameters defined."

        return GatewayResult.from_text(
            text.strip(), mode=Mode.DESCRIBE.value, tool=tool.to_dict(), server=tool.server
        )

    async def call(self, tool_name: str, args: dict[str, Any] | None = None) -> GatewayResult:
        """Invoke a tool (or read a resource) on its owning server."""
        tool = self.state.catalog.find(tool_name)
        if tool is None:
            return GatewayResult.failure(
                Mode.CALL,
                Outcome.TOOL_NOT_FOUND,
                f'Tool "{tool_name}" not found. Use mcp({{ search: "..." }}) to search.',
                requestedTool=tool_name,
            )

        connection = self.state.manager.get_connection(tool.server)
        if connection is None or not connection.is_connected:
            return GatewayResult.failure(
                Mode.CALL,
                Outcome.SERVER_NOT_CONNECTED,
                f'Server "{tool.server}" not connected',
                server=tool.server,
            )

        client = connection.client
        assert client is not None

        try:
            if tool.resource_uri is not None:
                contents = await client.read_resource(tool.resource_uri)
                content = convert_resource_contents(contents)
                return GatewayResult(
                    content=content or [{"type": "text", "text": "(empty resource)"}],
                    details={
                        "mode": Mode.CALL.value,
                        "resourceUri": tool.resource_uri,
                        "server": tool.server,
                    },
                )

            result = await client.call_tool(tool.original_name, args or {})
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"[{tool.server}] Call to {tool.original_name} failed: {message}")
            return GatewayResult.failure(
                Mode.CALL,
                Outcome.CALL_FAILED,
                f"Failed to call tool: {message}{_schema_hint(tool)}",
                message=message,
                server=tool.server,
            )

        content = convert_tool_content(result.content)

        if result.is_error:
            error_text = joined_text(content) or "Tool execution failed"
            return GatewayResult.failure(
                Mode.CALL,
                Outcome.TOOL_ERROR,
                f"Error: {error_text}{_schema_hint(tool)}",
                mcpResult=result.raw,
                server=tool.server,
            )

        return GatewayResult(
            content=content or [{"type": "text", "text": "(empty result)"}],
            details={
                "mode": Mode.CALL.value,
                "mcpResult": result.raw,
                "server": tool.server,
                "tool": tool.original_name,
            },
        )
