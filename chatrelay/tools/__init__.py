"""
Tool Integration Layer.

Adapters for external tool servers (stdio MCP servers) whose tools the
model can invoke mid-answer.
"""
