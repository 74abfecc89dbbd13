"""
MCP tool-server adapter.

Spawns each configured MCP server as a subprocess on first use and talks to
it over stdio via the MCP Python SDK. Sessions stay open until shutdown().
"""

from __future__ import annotations

import logging
import re
from typing import Any

from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client

from chatrelay.llm.models import MCPCallToolResponse, MCPServer, MCPTool
from chatrelay.tools.base import ToolServerAdapter

logger = logging.getLogger(__name__)


def tool_id(server: MCPServer, name: str) -> str:
    """Model-facing tool id: server id and tool name, safe for XML tags."""
    return re.sub(r"[^\w-]", "_", f"{server.id}__{name}")


class _Connection:
    """An open stdio transport plus its client session."""

    def __init__(self, stdio_context, session_context, session: ClientSession):
        self.stdio_context = stdio_context
        self.session_context = session_context
        self.session = session

    async def close(self) -> None:
        # Exit the session first, then the stdio context (terminates subprocess)
        await self.session_context.__aexit__(None, None, None)
        await self.stdio_context.__aexit__(None, None, None)


class MCPService(ToolServerAdapter):
    """
    Tool-server adapter for stdio MCP servers.

    Example:
        >>> async with MCPService() as mcp:
        ...     tools = await mcp.list_tools(server)
        ...     result = await mcp.call_tool(server, "roll", {"notation": "1d20"})
    """

    def __init__(self):
        self._connections: dict[str, _Connection] = {}

    async def _session(self, server: MCPServer) -> ClientSession:
        connection = self._connections.get(server.id)
        if connection is not None:
            return connection.session

        server_params = StdioServerParameters(
            command=server.command,
            args=server.args,
            env=server.env,
        )

        logger.info(f"Starting MCP server {server.name or server.id}: {server.command}")
        stdio_context = stdio_client(server_params)
        read_stream, write_stream = await stdio_context.__aenter__()

        session_context = ClientSession(read_stream, write_stream)
        try:
            session = await session_context.__aenter__()
            await session.initialize()
        except Exception:
            await stdio_context.__aexit__(None, None, None)
            raise

        self._connections[server.id] = _Connection(stdio_context, session_context, session)
        return session

    async def shutdown(self) -> None:
        """Close every open session and terminate the server subprocesses."""
        connections, self._connections = self._connections, {}
        for server_id, connection in connections.items():
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"Failed to close MCP server {server_id}: {e}")

    async def list_tools(self, server: MCPServer) -> list[MCPTool]:
        session = await self._session(server)
        result = await session.list_tools()

        return [
            MCPTool(
                id=tool_id(server, tool.name),
                name=tool.name,
                description=tool.description or "",
                input_schema=tool.inputSchema or {},
                server_id=server.id,
                server_name=server.name,
            )
            for tool in result.tools
        ]

    async def call_tool(
        self, server: MCPServer, name: str, arguments: dict[str, Any]
    ) -> MCPCallToolResponse:
        session = await self._session(server)
        logger.debug(f"Calling MCP tool {name} on {server.id} with {arguments}")
        result = await session.call_tool(name, arguments)

        return MCPCallToolResponse(
            content=[block.model_dump(mode="json", exclude_none=True) for block in result.content],
            is_error=bool(result.isError),
        )

    async def list_prompts(self, server: MCPServer) -> list[dict[str, Any]]:
        session = await self._session(server)
        result = await session.list_prompts()
        return [
            {**prompt.model_dump(mode="json", exclude_none=True), "server_id": server.id}
            for prompt in result.prompts
        ]

    async def get_prompt(
        self, server: MCPServer, name: str, arguments: dict[str, str] | None = None
    ) -> dict[str, Any]:
        session = await self._session(server)
        result = await session.get_prompt(name, arguments)
        return result.model_dump(mode="json", exclude_none=True)

    async def list_resources(self, server: MCPServer) -> list[dict[str, Any]]:
        session = await self._session(server)
        result = await session.list_resources()
        return [
            {**resource.model_dump(mode="json", exclude_none=True), "server_id": server.id}
            for resource in result.resources
        ]

    async def get_resource(self, server: MCPServer, uri: str) -> dict[str, Any]:
        session = await self._session(server)
        result = await session.read_resource(uri)
        return result.model_dump(mode="json", exclude_none=True)


async def gather_enabled_tools(mcp: ToolServerAdapter, servers: list[MCPServer]) -> list[MCPTool]:
    """
    Collect the tools of every enabled server, minus the ones the user disabled.

    A server that fails to list its tools is skipped with a warning.
    """
    tools: list[MCPTool] = []
    for server in servers:
        try:
            server_tools = await mcp.list_tools(server)
        except Exception as e:
            logger.warning(f"Failed to list tools of MCP server {server.id}: {e}")
            continue
        tools.extend(t for t in server_tools if t.name not in server.disabled_tools)
    return tools


# ---------------------------------------------------------------------------
# Rendering prompt / resource payloads as text
# ---------------------------------------------------------------------------

def format_prompt_content(response: Any) -> str | None:
    """
    Flatten a get_prompt() response into markdown text.

    Each message is prefixed with its bolded role; images become data-URI
    markdown images, audio and binary resources become placeholders.
    """
    if isinstance(response, str):
        return response
    if not isinstance(response, dict) or not isinstance(response.get("messages"), list):
        return None

    parts: list[str] = []
    for message in response["messages"]:
        content = message.get("content")
        if not content:
            continue
        role = message.get("role")
        prefix = f"**{role.capitalize()}:** " if role else ""
        kind = content.get("type")

        if kind == "image":
            if content.get("data") and content.get("mimeType"):
                image = f"![Image](data:{content['mimeType']};base64,{content['data']})"
                parts.append(f"{prefix}\n{image}" if prefix else image)
        elif kind == "audio":
            parts.append(f"{prefix}[Audio content available]")
        elif kind == "resource":
            text = (content.get("resource") or {}).get("text") or content.get("text")
            parts.append(f"{prefix}{text}" if text else f"{prefix}[Resource content available]")
        elif content.get("text"):
            parts.append(f"{prefix}{content['text']}")

    return "\n\n".join(parts).strip()


def format_resource_contents(response: dict[str, Any], fallback_name: str = "") -> list[str]:
    """
    Render read_resource() contents as text snippets.

    Text resources are returned verbatim, image blobs as markdown images and
    other blobs as "[name - mimeType]" placeholders.
    """
    contents = response.get("contents")
    if not isinstance(contents, list):
        contents = [response]

    snippets: list[str] = []
    for item in contents:
        name = item.get("name") or fallback_name
        mime_type = item.get("mimeType")
        if item.get("blob"):
            if mime_type and mime_type.startswith("image/"):
                snippets.append(f"![{name or 'Image'}](data:{mime_type};base64,{item['blob']})")
            else:
                snippets.append(f"[{name} - {mime_type or 'binary data'}]")
        elif item.get("text"):
            snippets.append(item["text"])
        else:
            snippets.append(f"[{name} - {item.get('uri', '')}]")
    return snippets
