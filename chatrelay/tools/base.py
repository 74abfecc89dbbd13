"""
Interface between the completion pipeline and tool servers.

The orchestrator and the tool-call resolver only ever talk to a
ToolServerAdapter. Each method takes the server descriptor it targets,
which lets a single adapter multiplex every configured MCP server.
"""

from abc import ABC, abstractmethod
from typing import Any

from chatrelay.llm.models import MCPCallToolResponse, MCPServer, MCPTool


class ToolServerAdapter(ABC):
    """
    Gateway to a family of tool servers.

    An adapter may open connections lazily; whatever it opens is its own
    to close in shutdown(). Using it as an async context manager calls
    shutdown() on the way out.
    """

    @abstractmethod
    async def shutdown(self) -> None:
        """Close every session and stop any server process started so far."""

    @abstractmethod
    async def list_tools(self, server: MCPServer) -> list[MCPTool]:
        """
        Describe the tools a server offers.

        The returned MCPTool.id values must not collide across servers;
        they are what the model writes inside <name> tags.
        """

    @abstractmethod
    async def call_tool(
        self, server: MCPServer, name: str, arguments: dict[str, Any]
    ) -> MCPCallToolResponse:
        """
        Invoke one tool.

        Args:
            server: Descriptor of the server hosting the tool
            name: The server-local tool name, without the server prefix
            arguments: Parsed JSON arguments from the model

        Returns:
            Content blocks plus the server's is_error flag

        Raises:
            RuntimeError: When the server cannot be started or reached
        """

    @abstractmethod
    async def list_prompts(self, server: MCPServer) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_prompt(
        self, server: MCPServer, name: str, arguments: dict[str, str] | None = None
    ) -> dict[str, Any]:
        """Render a named prompt into {"description", "messages"} form."""

    @abstractmethod
    async def list_resources(self, server: MCPServer) -> list[dict[str, Any]]: ...

    @abstractmethod
    async def get_resource(self, server: MCPServer, uri: str) -> dict[str, Any]:
        """Fetch a resource as {"contents": [{"uri", "mimeType", "text" or "blob"}]}."""

    async def __aenter__(self) -> "ToolServerAdapter":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.shutdown()
        return False
