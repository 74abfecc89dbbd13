"""
ChatRelay - streaming LLM completion pipeline.

Mediates one chat exchange between a user and an LLM provider: filters the
history window, optionally augments it with web search results, lets the
model call MCP tools mid-answer, and streams the reply with latency and
token usage bookkeeping.
"""

__version__ = "0.1.0"
