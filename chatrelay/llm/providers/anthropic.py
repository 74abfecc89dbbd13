"""Adapter for the Anthropic Messages API."""

from __future__ import annotations

from typing import Any

from chatrelay.llm.capabilities import is_claude_thinking_model, is_reasoning_model
from chatrelay.llm.metrics import reasoning_budget
from chatrelay.llm.models import Assistant, MCPToolResponse, Model
from chatrelay.llm.providers.base import DEFAULT_MAX_TOKENS, BaseProvider
from chatrelay.llm.tool_calls import tool_response_to_anthropic_message


class AnthropicProvider(BaseProvider):
    """
    Provider adapter for Claude models.

    Reasoning-capable Claude models get an extended-thinking budget derived
    from the assistant's reasoning effort instead of temperature / top-p.
    """

    def litellm_model(self, model: Model) -> str:
        return f"anthropic/{model.id}"

    def base_url(self) -> str:
        return self.provider.api_host.rstrip("/")

    def thinking_config(self, assistant: Assistant, model: Model) -> dict[str, Any] | None:
        if not (is_reasoning_model(model) and is_claude_thinking_model(model)):
            return None
        max_tokens = assistant.settings.max_tokens or DEFAULT_MAX_TOKENS
        budget = reasoning_budget(max_tokens, assistant.settings.reasoning_effort)
        if budget is None:
            return None
        return {"type": "enabled", "budget_tokens": budget}

    def sampling_params(self, assistant: Assistant, model: Model) -> dict[str, Any]:
        if is_reasoning_model(model):
            thinking = self.thinking_config(assistant, model)
            return {"thinking": thinking} if thinking else {}
        return {
            "temperature": assistant.settings.temperature,
            "top_p": assistant.settings.top_p,
        }

    def convert_tool_response(self, response: MCPToolResponse, is_vision_model: bool) -> dict[str, Any]:
        return tool_response_to_anthropic_message(response, is_vision_model)

    async def models(self) -> list[Model]:
        # Anthropic models are configured, not discovered
        return list(self.provider.models)
