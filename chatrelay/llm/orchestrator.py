"""
Completion orchestrator: the top-level driver of one chat exchange.

Data flow:
    fetch_chat_completion(message, messages, assistant, on_response)
        → WebSearchAugmenter.search_the_web()      (optional)
        → gather MCP tools of the last user message
        → BaseProvider.completions()               (rounds 0..N, tool loop)
              ↓ on_chunk(Chunk)
        → fold chunk into the reply Message, emit a "pending" copy
        → final status: success / paused / error, emitted once more

The orchestrator is the only place where exceptions become message state:
an abort marks the reply "paused" and keeps the streamed text, any other
failure marks it "error" with a formatted description. Configuration
problems are raised to the caller before any network call.

The auxiliary fetch_* operations wrap the one-shot provider calls and
degrade to an empty result on failure, since their callers (title
generation, translation, suggestions) have nothing better to show.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

from chatrelay.llm.capabilities import is_openrouter_model, is_zhipu_model
from chatrelay.llm.links import (
    LinkConverter,
    clean_link_commas,
    complete_links,
    extract_urls_from_markdown,
    select_link_converter,
)
from chatrelay.llm.messages import filter_context_messages, filter_messages, filter_useful_messages
from chatrelay.llm.models import (
    AbortError,
    Assistant,
    CheckResult,
    Chunk,
    ConfigurationError,
    GenerateImage,
    MCPCallToolResponse,
    MCPServer,
    MCPTool,
    Message,
    Model,
    Provider,
)
from chatrelay.llm.prompts import TRANSLATE_PROMPT
from chatrelay.llm.providers import BaseProvider, CompletionsRequest, create_provider
from chatrelay.llm.providers.base import DEFAULT_MAX_TOOL_ROUNDS
from chatrelay.llm.runtime import RuntimeState
from chatrelay.llm.tokens import TokenEstimator
from chatrelay.tools.base import ToolServerAdapter
from chatrelay.tools.mcp_service import gather_enabled_tools
from chatrelay.websearch.augmenter import WebSearchAugmenter
from chatrelay.websearch.service import WebSearchService

logger = logging.getLogger(__name__)

ResponseCallback = Callable[[Message], None]

# Providers that run locally and accept requests without a key
KEYLESS_PROVIDERS = ("ollama", "lmstudio")

IMAGE_REGEX = re.compile(r'!\[[^\]]*\]\((.*?)\s*("(?:.*[^"])")?\s*\)')
DOWNLOAD_LINK_REGEX = re.compile(r'\[[^\]]*\]\((.*?)\s*("(?:.*[^"])")?\s*\)')
BLANK_LINES_REGEX = re.compile(r"\n\s*\n")


def has_api_key(provider: Provider | None) -> bool:
    if provider is None:
        return False
    if provider.id in KEYLESS_PROVIDERS:
        return True
    return bool(provider.api_key)


def validate_provider(provider: Provider) -> None:
    """
    Reject a provider that cannot possibly work.

    Raises:
        ConfigurationError: If the API key, host or model list is missing
    """
    if not has_api_key(provider):
        raise ConfigurationError(f"Please enter an API key for provider '{provider.id}'")
    if not provider.api_host:
        raise ConfigurationError(f"Please enter an API host for provider '{provider.id}'")
    if not provider.models:
        raise ConfigurationError(f"Please add at least one model to provider '{provider.id}'")


def format_api_keys(value: str) -> str:
    """Normalize a pasted list of keys to comma-separated form."""
    return value.replace("，", ",").replace(" ", ",").replace("\n", ",")


def format_message_error(error: Exception) -> dict[str, Any]:
    """Serializable description of a failure, stored on the message."""
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    return {
        "message": str(error) or type(error).__name__,
        "name": type(error).__name__,
        "status": status if isinstance(status, int) else None,
    }


def with_generate_image(message: Message) -> Message:
    """
    Move the first markdown image in the content into generate_image metadata.

    A download link following the image is removed as well.
    """
    match = IMAGE_REGEX.search(message.content)
    if match is None or not match.group(1):
        return message

    content = BLANK_LINES_REGEX.sub("\n", IMAGE_REGEX.sub("", message.content, count=1)).strip()
    if DOWNLOAD_LINK_REGEX.search(content):
        content = BLANK_LINES_REGEX.sub("\n", DOWNLOAD_LINK_REGEX.sub("", content, count=1)).strip()

    message.content = content
    message.metadata.generate_image = GenerateImage(type="url", images=[match.group(1)])
    return message


class CompletionOrchestrator:
    """
    Runs chat completions for one configured provider.

    Args:
        provider: Endpoint used for every operation (check_api / fetch_models
            accept another one)
        runtime: Generation flag, search cache and abort handles
        mcp: Tool-server adapter; tools are disabled when None
        web_search: Search backend; web search augmentation is disabled when None
        estimator: Local token counter for vendors that report no usage
        default_model: Model for operations that run without an assistant
        max_tool_rounds: Safety limit on tool-use loop iterations
        topic_naming_prompt: System prompt for conversation titles
        provider_factory: Builds the vendor adapter for a Provider
    """

    def __init__(
        self,
        provider: Provider,
        runtime: RuntimeState | None = None,
        mcp: ToolServerAdapter | None = None,
        web_search: WebSearchService | None = None,
        estimator: TokenEstimator | None = None,
        default_model: Model | None = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        topic_naming_prompt: str | None = None,
        provider_factory: Callable[..., BaseProvider] = create_provider,
    ):
        self.provider = provider
        self.runtime = runtime or RuntimeState()
        self.mcp = mcp
        self.estimator = estimator or TokenEstimator()
        self.default_model = default_model or (provider.models[0] if provider.models else None)
        self.max_tool_rounds = max_tool_rounds
        self.topic_naming_prompt = topic_naming_prompt
        self._provider_factory = provider_factory

        self.augmenter: WebSearchAugmenter | None = None
        if web_search is not None:
            self.augmenter = WebSearchAugmenter(web_search, self.runtime, self.fetch_search_summary)

    def _adapter(self, provider: Provider | None = None) -> BaseProvider:
        return self._provider_factory(
            provider or self.provider,
            aborts=self.runtime.aborts,
            default_model=self.default_model,
            max_tool_rounds=self.max_tool_rounds,
            topic_naming_prompt=self.topic_naming_prompt,
        )

    def abort(self, message_id: str) -> bool:
        """Abort the completion answering message_id (no-op when none is running)."""
        return self.runtime.aborts.abort(message_id)

    # ------------------------------------------------------------------
    # Chat completion
    # ------------------------------------------------------------------

    async def fetch_chat_completion(
        self,
        message: Message,
        messages: list[Message],
        assistant: Assistant,
        on_response: ResponseCallback,
    ) -> Message:
        """
        Stream the assistant's reply into message.

        Args:
            message: The (empty, pending) assistant message to fill in place
            messages: Conversation history, ending with the user's message
            assistant: Model, prompt and sampling configuration
            on_response: Receives a snapshot of message after every change

        Returns:
            The final message (status success, paused or error)

        Raises:
            ConfigurationError: If the provider is missing a key, host or models
        """
        validate_provider(self.provider)

        self.runtime.generating = True
        adapter = self._adapter()
        converter = select_link_converter(assistant)
        sent_messages: list[Message] = []

        def on_filter_messages(filtered: list[Message]) -> None:
            sent_messages[:] = filtered

        def on_chunk(chunk: Chunk) -> None:
            self._fold_chunk(message, chunk, assistant, converter)
            on_response(message.model_copy(update={"status": "pending"}, deep=True))

        try:
            if self.augmenter is not None:
                await self.augmenter.search_the_web(message, messages, assistant, on_response)

            last_user = next((m for m in reversed(messages) if m.role == "user"), None)
            servers = last_user.enabled_mcps if last_user else []
            mcp_tools: list[MCPTool] = []
            if servers and self.mcp is not None:
                mcp_tools = await gather_enabled_tools(self.mcp, servers)

            await adapter.completions(
                CompletionsRequest(
                    messages=filter_useful_messages(filter_context_messages(messages)),
                    assistant=assistant,
                    on_chunk=on_chunk,
                    on_filter_messages=on_filter_messages,
                    mcp_tools=mcp_tools,
                    call_tool=self._tool_caller(servers) if mcp_tools else None,
                )
            )

            self._flush_links(message, converter)
            message.status = "success"
            with_generate_image(message)
            self._ensure_usage(message, sent_messages)
        except AbortError:
            logger.info(f"Completion for message {message.id} was aborted")
            self._flush_links(message, converter)
            message.status = "paused"
        except Exception as e:
            logger.error(f"Completion for message {message.id} failed: {e}", exc_info=True)
            message.status = "error"
            message.error = format_message_error(e)
        finally:
            self.runtime.generating = False

        on_response(message)
        return message

    def _tool_caller(self, servers: list[MCPServer]):
        by_id = {server.id: server for server in servers}

        async def call_tool(tool: MCPTool, arguments: dict[str, Any]) -> MCPCallToolResponse:
            return await self.mcp.call_tool(by_id[tool.server_id], tool.name, arguments)

        return call_tool

    def _fold_chunk(
        self,
        message: Message,
        chunk: Chunk,
        assistant: Assistant,
        converter: LinkConverter | None,
    ) -> None:
        """Merge one chunk into message. Text and reasoning append, the rest replaces."""
        model = assistant.model
        web_search_info = chunk.web_search or message.metadata.web_search_info

        text = chunk.text
        if converter is not None:
            text = converter.convert(text, web_search_info)
        message.content += text

        if chunk.reasoning_content:
            message.reasoning_content = (message.reasoning_content or "") + chunk.reasoning_content
        if chunk.usage is not None:
            message.usage = chunk.usage
        if chunk.metrics is not None:
            message.metrics = chunk.metrics

        metadata = message.metadata
        if chunk.mcp_tool_response is not None:
            metadata.mcp_tools = [r.model_copy(deep=True) for r in chunk.mcp_tool_response]
        if chunk.generate_image and chunk.generate_image.images:
            existing = metadata.generate_image.images if metadata.generate_image else []
            metadata.generate_image = GenerateImage(
                type=chunk.generate_image.type,
                images=existing + chunk.generate_image.images,
            )
        if chunk.citations:
            metadata.citations = chunk.citations
        if chunk.search:
            metadata.grounding_metadata = chunk.search
        if chunk.annotations:
            metadata.annotations = chunk.annotations
        if chunk.web_search:
            metadata.web_search_info = chunk.web_search

        if not assistant.enable_web_search:
            return

        if is_openrouter_model(model):
            urls = extract_urls_from_markdown(message.content)
            if urls:
                metadata.citations = urls

        message.content = clean_link_commas(message.content)
        if chunk.web_search and is_zhipu_model(model):
            message.content = complete_links(message.content, chunk.web_search)

    @staticmethod
    def _flush_links(message: Message, converter: LinkConverter | None) -> None:
        if converter is not None:
            message.content += converter.flush(message.metadata.web_search_info)

    def _ensure_usage(self, message: Message, sent_messages: list[Message]) -> None:
        """Estimate usage locally when the vendor reported none."""
        if message.usage is not None and message.usage.completion_tokens:
            return

        try:
            message.usage = self.estimator.estimate_usage(sent_messages, message)
        except RuntimeError as e:
            logger.warning(f"Could not estimate token usage: {e}")
            return

        if message.metrics is not None and not message.metrics.completion_tokens:
            message.metrics.completion_tokens = message.usage.completion_tokens

    # ------------------------------------------------------------------
    # Auxiliary operations
    # ------------------------------------------------------------------

    async def fetch_translate(
        self,
        message: Message,
        assistant: Assistant,
        on_response: Callable[[str], None] | None = None,
        target_language: str | None = None,
    ) -> str:
        """
        Translate message.content; returns "" when the call fails.

        Raises:
            ConfigurationError: If the provider has no API key
        """
        if not has_api_key(self.provider):
            raise ConfigurationError(f"Please enter an API key for provider '{self.provider.id}'")

        if target_language:
            assistant = assistant.model_copy(
                update={"prompt": TRANSLATE_PROMPT.format(target_language=target_language)}
            )

        try:
            return await self._adapter().translate(message, assistant, on_response)
        except Exception as e:
            logger.warning(f"Translation failed: {e}")
            return ""

    async def fetch_messages_summary(self, messages: list[Message], assistant: Assistant) -> str | None:
        """Conversation title with quotes removed, or None."""
        if not has_api_key(self.provider):
            return None

        try:
            text = await self._adapter().summaries(filter_messages(messages), assistant)
        except Exception as e:
            logger.warning(f"Topic naming failed: {e}")
            return None
        return re.sub(r"[\"']", "", text or "") or None

    async def fetch_search_summary(self, messages: list[Message], assistant: Assistant) -> str | None:
        if not has_api_key(self.provider):
            return None

        try:
            return await self._adapter().summary_for_search(messages, assistant)
        except Exception as e:
            logger.warning(f"Search summary failed: {e}")
            return None

    async def fetch_generate(self, prompt: str, content: str) -> str:
        if not has_api_key(self.provider):
            return ""

        try:
            return await self._adapter().generate_text(prompt, content)
        except Exception as e:
            logger.warning(f"Text generation failed: {e}")
            return ""

    async def fetch_suggestions(self, messages: list[Message], assistant: Assistant) -> list[dict[str, Any]]:
        model = assistant.model
        if model is None or model.id.endswith("global"):
            return []

        try:
            return await self._adapter().suggestions(filter_messages(messages), assistant)
        except Exception as e:
            logger.warning(f"Suggestions failed: {e}")
            return []

    @staticmethod
    def check_api_provider(provider: Provider) -> CheckResult:
        """Validate key, host and model list without any network call."""
        try:
            validate_provider(provider)
        except ConfigurationError as e:
            return CheckResult(valid=False, error=str(e))
        return CheckResult(valid=True)

    async def check_api(self, provider: Provider, model: Model) -> CheckResult:
        validation = self.check_api_provider(provider)
        if not validation.valid:
            return validation
        return await self._adapter(provider).check(model)

    async def fetch_models(self, provider: Provider | None = None) -> list[Model]:
        try:
            return await self._adapter(provider).models()
        except Exception as e:
            logger.warning(f"Listing models failed: {e}")
            return []
