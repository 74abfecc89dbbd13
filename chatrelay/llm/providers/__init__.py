"""
Vendor adapters.

Use create_provider() to get the adapter for a configured endpoint:

    >>> provider = create_provider(Provider(id="openai", api_key="sk-..."))
    >>> await provider.completions(request)
"""

from chatrelay.llm.abort import AbortRegistry
from chatrelay.llm.models import Model, Provider
from chatrelay.llm.providers.anthropic import AnthropicProvider
from chatrelay.llm.providers.base import BaseProvider, CompletionsRequest
from chatrelay.llm.providers.openai import OpenAIProvider, format_api_host

PROVIDER_TYPES: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def create_provider(
    provider: Provider,
    aborts: AbortRegistry | None = None,
    default_model: Model | None = None,
    **kwargs,
) -> BaseProvider:
    """Instantiate the adapter for provider.type (unknown types fall back to OpenAI-compatible)."""
    adapter_class = PROVIDER_TYPES.get(provider.type, OpenAIProvider)
    return adapter_class(provider, aborts=aborts, default_model=default_model, **kwargs)


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "CompletionsRequest",
    "OpenAIProvider",
    "PROVIDER_TYPES",
    "create_provider",
    "format_api_host",
]
