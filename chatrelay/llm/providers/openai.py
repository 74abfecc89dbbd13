"""
Adapter for OpenAI-compatible endpoints.

Covers OpenAI itself and every vendor that speaks the same chat-completions
protocol (OpenRouter, Zhipu, Hunyuan, DashScope, DeepSeek, Ollama, LM Studio
and so on). All of them are routed through LiteLLM's "openai/" prefix with an
explicit api_base.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from litellm import aembedding, aimage_generation

from chatrelay.llm.capabilities import get_web_search_params, is_reasoning_model
from chatrelay.llm.models import Assistant, MCPToolResponse, Model
from chatrelay.llm.providers.base import BaseProvider, _as_dict
from chatrelay.llm.tool_calls import tool_response_to_openai_message

logger = logging.getLogger(__name__)

MODELS_TIMEOUT_SECONDS = 30.0


def format_api_host(host: str) -> str:
    """
    Normalize a configured host into the base URL of the v1 API.

    Hosts ending in "/" are taken verbatim, as are Volcengine Ark hosts
    (".../api/v3"); anything else gets "/v1/" appended.

    Example:
        >>> format_api_host("https://api.openai.com")
        'https://api.openai.com/v1/'
        >>> format_api_host("https://example.com/custom/")
        'https://example.com/custom/'
    """
    if not host:
        return host
    if host.endswith("/") or host.endswith("volces.com/api/v3"):
        return host
    return f"{host}/v1/"


class OpenAIProvider(BaseProvider):
    """Provider adapter for OpenAI-compatible chat-completion endpoints."""

    def litellm_model(self, model: Model) -> str:
        return f"openai/{model.id}"

    def base_url(self) -> str:
        return format_api_host(self.provider.api_host)

    def connection_kwargs(self) -> dict[str, Any]:
        kwargs = super().connection_kwargs()
        # Local servers accept any key but LiteLLM's openai route requires one
        kwargs.setdefault("api_key", "secret")
        return kwargs

    def sampling_params(self, assistant: Assistant, model: Model) -> dict[str, Any]:
        settings = assistant.settings
        if is_reasoning_model(model):
            if settings.reasoning_effort:
                return {"reasoning_effort": settings.reasoning_effort}
            return {}
        return {"temperature": settings.temperature, "top_p": settings.top_p}

    def request_params(self, assistant: Assistant, model: Model) -> dict[str, Any]:
        return get_web_search_params(assistant, model)

    def convert_tool_response(self, response: MCPToolResponse, is_vision_model: bool) -> dict[str, Any]:
        return tool_response_to_openai_message(response, is_vision_model)

    def extract_extras(self, part: Any) -> dict[str, Any]:
        """
        Pick up vendor citation data carried alongside the text.

        - citations: Perplexity / OpenRouter URL lists
        - annotations: OpenAI search-preview url_citation entries
        - web_search: Zhipu "web_search" references or Hunyuan "search_info"
        """
        extras: dict[str, Any] = {}

        citations = getattr(part, "citations", None)
        if citations:
            extras["citations"] = list(citations)

        choices = getattr(part, "choices", None) or []
        if choices:
            holder = getattr(choices[0], "delta", None) or getattr(choices[0], "message", None)
            annotations = getattr(holder, "annotations", None)
            if annotations:
                extras["annotations"] = [_as_dict(a) for a in annotations]

        web_search = getattr(part, "web_search", None)
        if web_search:
            extras["web_search"] = [_as_dict(item) for item in web_search]

        search_info = getattr(part, "search_info", None)
        if search_info:
            results = _as_dict(search_info).get("search_results") or []
            if results:
                extras["web_search"] = [_as_dict(item) for item in results]

        return extras

    async def generate_image(
        self,
        prompt: str,
        model: Model,
        n: int = 1,
        size: str = "1024x1024",
        **kwargs: Any,
    ) -> list[str]:
        """Generate images; returns URLs or base64 payloads."""
        response = await aimage_generation(
            model=self.litellm_model(model),
            prompt=prompt,
            n=n,
            size=size,
            **kwargs,
            **self.connection_kwargs(),
        )

        images: list[str] = []
        for item in response.data or []:
            data = _as_dict(item)
            image = data.get("url") or data.get("b64_json")
            if image:
                images.append(image)
        return images

    async def models(self) -> list[Model]:
        """List the endpoint's models via GET {base_url}/models."""
        url = f"{self.base_url().rstrip('/')}/models"
        headers = {}
        if self.provider.api_key:
            headers["Authorization"] = f"Bearer {self.provider.api_key}"

        async with httpx.AsyncClient(timeout=MODELS_TIMEOUT_SECONDS) as client:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
            payload = response.json()

        models = []
        for item in payload.get("data", []):
            model_id = (item.get("id") or "").strip()
            if not model_id:
                continue
            models.append(
                Model(
                    id=model_id,
                    provider=self.provider.id,
                    name=model_id,
                    group=item.get("owned_by") or "",
                )
            )
        return models

    async def get_embedding_dimensions(self, model: Model) -> int:
        response = await aembedding(
            model=self.litellm_model(model),
            input=["hi"],
            **self.connection_kwargs(),
        )
        return len(_as_dict(response.data[0])["embedding"])
