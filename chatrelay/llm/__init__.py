"""
LLM Orchestration Layer.

Turns a message history plus an assistant configuration into one streamed,
possibly multi-round, tool-augmented reply:

    CompletionOrchestrator.fetch_chat_completion(message, messages, assistant, on_response)
                                        ↓
        WebSearchAugmenter → message filters → BaseProvider.completions()
                                        ↓                ↕
                               Chunk callbacks     Tool-call resolver (MCP)
                                        ↓
                     Message snapshots → on_response / ResponseChannel

Key responsibilities:
- Normalize vendor streams (via LiteLLM) into Chunks
- Drive the tool-use loop with a bounded number of rounds
- Track latency metrics and token usage across rounds
- Convert vendor citation markers into numbered links
- Map aborts and failures onto the reply message's status

The orchestrator lives in chatrelay.llm.orchestrator; this package only
re-exports the shared data types.
"""

from chatrelay.llm.models import (
    AbortError,
    Assistant,
    AssistantSettings,
    ChatRelayError,
    Chunk,
    ConfigurationError,
    InvalidResponseError,
    Message,
    Model,
    Provider,
    ToolLoopExceededError,
)
from chatrelay.llm.runtime import ResponseChannel, RuntimeState

__all__ = [
    "AbortError",
    "Assistant",
    "AssistantSettings",
    "ChatRelayError",
    "Chunk",
    "ConfigurationError",
    "InvalidResponseError",
    "Message",
    "Model",
    "Provider",
    "ResponseChannel",
    "RuntimeState",
    "ToolLoopExceededError",
]
