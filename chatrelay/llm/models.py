"""
Data structures shared across the completion pipeline.

This module defines the types that flow between the orchestrator, the
provider adapters, the tool-call resolver and the web search augmenter:
- Model / Provider: read-only reference data about a vendor endpoint
- Assistant / AssistantSettings: per-turn configuration
- Message: the conversation entry mutated in place while a reply streams in
- Chunk: the additive unit a provider adapter emits while streaming
- Usage / Metrics: token and timing bookkeeping
- MCPServer / MCPTool / MCPToolResponse: tool-server descriptors and results
- WebSearchResult / WebSearchResponse: search payloads
- ChatRelayError and subclasses: the error taxonomy
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]
MessageStatus = Literal["pending", "searching", "success", "paused", "error"]
ReasoningEffort = Literal["low", "medium", "high"]


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ChatRelayError(Exception):
    """Base exception for completion pipeline failures."""

    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


class ConfigurationError(ChatRelayError):
    """Raised before any network call when a provider is misconfigured."""


class AbortError(ChatRelayError):
    """Raised when an in-flight request is cancelled by the user."""

    def __init__(self, message: str = "Request was aborted.", cause: Exception | None = None):
        super().__init__(message, cause=cause)


class ToolLoopExceededError(ChatRelayError):
    """Raised when the model keeps requesting tools past the round limit."""


class InvalidResponseError(ChatRelayError):
    """Raised when a vendor or tool server returns a malformed payload."""


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

class Model(BaseModel):
    """A vendor model plus optional explicit capability flags."""

    id: str = Field(description="Vendor model id, e.g. 'gpt-4o' or 'claude-3-7-sonnet-20250219'")
    provider: str = Field(description="Provider id this model belongs to, e.g. 'openai', 'openrouter'")
    name: str = Field(default="", description="Display name")
    group: str = Field(default="", description="Display group")
    vision: bool | None = Field(
        default=None,
        description="Explicit vision capability. None means detect from the model id.",
    )
    reasoning: bool | None = Field(
        default=None,
        description="Explicit reasoning capability. None means detect from the model id.",
    )


class Provider(BaseModel):
    """Credentials and routing for one vendor endpoint."""

    id: str = Field(description="Provider id, e.g. 'openai', 'anthropic', 'zhipu', 'ollama'")
    type: Literal["openai", "anthropic"] = Field(
        default="openai", description="Adapter family used to talk to this endpoint"
    )
    name: str = Field(default="")
    api_key: str = Field(default="")
    api_host: str = Field(default="")
    models: list[Model] = Field(default_factory=list)


class AssistantSettings(BaseModel):
    """Sampling and context settings for one assistant."""

    temperature: float = Field(default=0.7)
    top_p: float = Field(default=1.0)
    max_tokens: int | None = Field(default=None, description="None means the default budget")
    context_count: int = Field(default=5, ge=0, description="Number of prior messages kept")
    stream_output: bool = Field(default=True)
    reasoning_effort: ReasoningEffort | None = Field(default=None)
    custom_parameters: dict[str, Any] = Field(
        default_factory=dict, description="Extra vendor parameters merged into every request"
    )


class Assistant(BaseModel):
    """Configuration for a conversation turn."""

    id: str = Field(default_factory=_new_id)
    name: str = Field(default="Default Assistant")
    prompt: str = Field(default="", description="System prompt")
    model: Model | None = Field(default=None)
    settings: AssistantSettings = Field(default_factory=AssistantSettings)
    enable_web_search: bool = Field(default=False)


# ---------------------------------------------------------------------------
# Tool servers
# ---------------------------------------------------------------------------

class MCPServer(BaseModel):
    """Descriptor of a stdio MCP server."""

    id: str = Field(description="Stable server id")
    name: str = Field(default="")
    command: str = Field(description="Executable used to start the server, e.g. 'npx'")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] | None = Field(default=None)
    disabled_tools: list[str] = Field(
        default_factory=list, description="Tool names hidden from the model"
    )


class MCPTool(BaseModel):
    """A tool exposed by an MCP server."""

    id: str = Field(description="Identifier the model uses to invoke the tool")
    name: str = Field(description="Tool name on its server")
    description: str = Field(default="")
    input_schema: dict[str, Any] = Field(default_factory=dict)
    server_id: str = Field(description="Id of the owning MCPServer")
    server_name: str = Field(default="")


class MCPCallToolResponse(BaseModel):
    """Normalized result of a tool call."""

    content: list[dict[str, Any]] = Field(default_factory=list)
    is_error: bool = Field(default=False)


class MCPToolResponse(BaseModel):
    """Progress record for one tool invocation, rendered by the UI."""

    id: str
    tool: MCPTool
    arguments: dict[str, Any] = Field(default_factory=dict)
    status: Literal["invoking", "done"] = "invoking"
    response: MCPCallToolResponse | None = None


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------

class WebSearchResult(BaseModel):
    title: str = ""
    content: str = ""
    url: str = ""


class WebSearchResponse(BaseModel):
    query: str | None = None
    results: list[WebSearchResult] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Usage, metrics, chunks, messages
# ---------------------------------------------------------------------------

class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class Metrics(BaseModel):
    completion_tokens: int | None = None
    time_completion_millsec: int = 0
    time_first_token_millsec: int = 0
    time_thinking_millsec: int = 0


class GenerateImage(BaseModel):
    type: Literal["url", "base64"] = "url"
    images: list[str] = Field(default_factory=list)


class Chunk(BaseModel):
    """
    Unit emitted by a provider adapter while streaming.

    Every field is optional; the orchestrator folds whatever is present into
    the running Message. Text and reasoning are increments, everything else
    is the latest snapshot.
    """

    text: str = ""
    reasoning_content: str = ""
    usage: Usage | None = None
    metrics: Metrics | None = None
    mcp_tool_response: list[MCPToolResponse] | None = None
    web_search: list[dict[str, Any]] | None = Field(
        default=None, description="Vendor search references (Zhipu, Hunyuan)"
    )
    search: dict[str, Any] | None = Field(default=None, description="Grounding metadata")
    annotations: list[dict[str, Any]] | None = None
    citations: list[str] | None = None
    generate_image: GenerateImage | None = None


class FileType(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    DOCUMENT = "document"
    OTHER = "other"


class FileRef(BaseModel):
    """A file attached to a message."""

    id: str = Field(default_factory=_new_id)
    path: str = Field(description="Local path to the file contents")
    origin_name: str = Field(default="")
    type: FileType = FileType.OTHER
    mime_type: str | None = None


class MessageMetadata(BaseModel):
    web_search: WebSearchResponse | None = None
    mcp_tools: list[MCPToolResponse] | None = None
    citations: list[str] | None = None
    grounding_metadata: dict[str, Any] | None = None
    annotations: list[dict[str, Any]] | None = None
    web_search_info: list[dict[str, Any]] | None = None
    generate_image: GenerateImage | None = None

    model_config = ConfigDict(extra="allow")


class Message(BaseModel):
    """
    A conversation entry.

    Assistant messages are created empty with status "pending" and filled in
    by the orchestrator as chunks arrive.
    """

    id: str = Field(default_factory=_new_id)
    role: Role
    content: str = ""
    assistant_id: str = ""
    topic_id: str = ""
    type: Literal["text", "clear"] = "text"
    files: list[FileRef] = Field(default_factory=list)
    reasoning_content: str | None = None
    usage: Usage | None = None
    metrics: Metrics | None = None
    metadata: MessageMetadata = Field(default_factory=MessageMetadata)
    status: MessageStatus = "success"
    error: dict[str, Any] | None = None
    ask_id: str | None = Field(default=None, description="Id of the user message this answers")
    use_for_context: bool = Field(default=False)
    is_preset: bool = Field(default=False)
    enabled_mcps: list[MCPServer] = Field(default_factory=list)
    translated_content: str | None = None


class CheckResult(BaseModel):
    valid: bool
    error: str | None = None
