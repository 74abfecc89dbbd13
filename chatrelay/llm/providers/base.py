"""
Provider adapter interface and the shared completion engine.

Every vendor adapter exposes the same operations (completions, translate,
summaries, summary_for_search, check and the auxiliary capabilities), so the
orchestrator never depends on a concrete vendor type. Requests go through
LiteLLM, which normalizes the wire format; adapters differ in model routing,
sampling / reasoning parameters, vendor extras in stream parts, and the shape
of tool-result follow-up messages.

Streaming state machine (shared by all adapters):
    t0 = request start (once per completions() call, across all rounds)
    first text or reasoning event  -> time_first_token_millsec (set once)
    first text after reasoning     -> time_first_content_millsec
                                      => time_thinking_millsec
    every chunk                    -> time_completion_millsec = now - t0
    end of each round              -> Tool-Call Resolver; follow-ups re-enter
                                      the vendor call with round index + 1
    final chunk                    -> cumulative usage + final metrics

Design decisions:
- The tool loop is iterative with a max_tool_rounds guard. Exceeding it is
  a ToolLoopExceededError rather than unbounded recursion.
- Cancellation races every network read against the abort signal of the
  message being answered, so a stalled stream still aborts immediately.
"""

from __future__ import annotations

import base64
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable

import aiofiles
from litellm import acompletion

from chatrelay.llm.abort import AbortRegistry, await_or_abort, iterate_until_aborted
from chatrelay.llm.capabilities import is_vision_model
from chatrelay.llm.messages import filter_context_window
from chatrelay.llm.metrics import StreamTimer, usage_from_response
from chatrelay.llm.models import (
    Assistant,
    CheckResult,
    Chunk,
    ConfigurationError,
    FileType,
    MCPTool,
    MCPToolResponse,
    Message,
    Model,
    Provider,
    ToolLoopExceededError,
    Usage,
)
from chatrelay.llm.prompts import TOPIC_NAMING_PROMPT
from chatrelay.llm.tool_calls import ChunkCallback, ToolCaller, build_system_prompt, parse_and_call_tools

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096
DEFAULT_MAX_TOOL_ROUNDS = 20
SEARCH_SUMMARY_TIMEOUT_SECONDS = 20


@dataclass
class CompletionsRequest:
    """Normalized input of BaseProvider.completions()."""

    messages: list[Message]
    assistant: Assistant
    on_chunk: ChunkCallback
    on_filter_messages: Callable[[list[Message]], None] = lambda messages: None
    mcp_tools: list[MCPTool] = field(default_factory=list)
    call_tool: ToolCaller | None = None


@dataclass
class RoundResult:
    """Accumulated output of one vendor call."""

    text: str = ""
    reasoning: str = ""
    usage: Usage | None = None


def response_text(response: Any) -> str:
    """Text of the first choice of a non-streamed LiteLLM response."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    return getattr(choices[0].message, "content", None) or ""


def remove_special_characters_for_topic_name(text: str) -> str:
    return " ".join(text.splitlines()).strip()


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return dict(vars(value))


class BaseProvider(ABC):
    """
    Abstract base class for vendor adapters.

    Args:
        provider: Endpoint credentials and routing
        aborts: Registry holding the abort handles of in-flight requests
        default_model: Used when an assistant has no model selected
        max_tool_rounds: Safety limit on tool-use loop iterations
        topic_naming_prompt: System prompt for summaries()
    """

    def __init__(
        self,
        provider: Provider,
        aborts: AbortRegistry | None = None,
        default_model: Model | None = None,
        max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS,
        topic_naming_prompt: str | None = None,
    ):
        self.provider = provider
        self.aborts = aborts or AbortRegistry()
        self.default_model = default_model
        self.max_tool_rounds = max_tool_rounds
        self.topic_naming_prompt = topic_naming_prompt or TOPIC_NAMING_PROMPT

    # ------------------------------------------------------------------
    # Vendor hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def litellm_model(self, model: Model) -> str:
        """LiteLLM model string, with the provider routing prefix."""

    @abstractmethod
    def sampling_params(self, assistant: Assistant, model: Model) -> dict[str, Any]:
        """Temperature / top-p or reasoning parameters for this model."""

    @abstractmethod
    def convert_tool_response(self, response: MCPToolResponse, is_vision_model: bool) -> dict[str, Any]:
        """Turn a finished tool call into the follow-up message for the next round."""

    def base_url(self) -> str:
        return self.provider.api_host

    def connection_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if self.provider.api_key:
            kwargs["api_key"] = self.provider.api_key
        base_url = self.base_url()
        if base_url:
            kwargs["api_base"] = base_url
        return kwargs

    def request_params(self, assistant: Assistant, model: Model) -> dict[str, Any]:
        """Vendor-specific request extras (e.g. native web search switches)."""
        return {}

    def include_images(self, model: Model) -> bool:
        return is_vision_model(model)

    def extract_extras(self, part: Any) -> dict[str, Any]:
        """Vendor-specific Chunk fields carried by a stream part."""
        return {}

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def resolve_model(self, assistant: Assistant | None) -> Model:
        model = (assistant.model if assistant else None) or self.default_model
        if model is None:
            raise ConfigurationError("No model selected for this assistant")
        return model

    async def message_param(self, message: Message, model: Model) -> dict[str, Any]:
        """
        Convert a Message into the OpenAI-style chat format LiteLLM expects.

        Images are attached as data URIs (vision models only); text and
        document files are inlined after their file name.
        """
        parts: list[dict[str, Any]] = [{"type": "text", "text": message.content}]

        for file in message.files:
            if file.type == FileType.IMAGE and self.include_images(model):
                async with aiofiles.open(file.path, "rb") as f:
                    data = await f.read()
                mime_type = file.mime_type or mimetypes.guess_type(file.path)[0] or "image/png"
                encoded = base64.b64encode(data).decode("ascii")
                parts.append({"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}})
            elif file.type in (FileType.TEXT, FileType.DOCUMENT):
                async with aiofiles.open(file.path, "r", encoding="utf-8", errors="replace") as f:
                    text = (await f.read()).strip()
                parts.append({"type": "text", "text": f"{file.origin_name}\n{text}"})

        if len(parts) == 1:
            return {"role": message.role, "content": message.content}
        return {"role": message.role, "content": parts}

    def build_body(
        self,
        assistant: Assistant,
        model: Model,
        messages: list[dict[str, Any]],
        system_prompt: str,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.litellm_model(model),
            "messages": ([{"role": "system", "content": system_prompt}] if system_prompt else []) + messages,
            "max_tokens": assistant.settings.max_tokens or DEFAULT_MAX_TOKENS,
            "drop_params": True,
            **self.connection_kwargs(),
        }
        body.update(self.sampling_params(assistant, model))
        body.update(self.request_params(assistant, model))
        body.update(assistant.settings.custom_parameters)
        return body

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------

    async def completions(self, request: CompletionsRequest) -> None:
        """
        Stream one (possibly multi-round, tool-augmented) reply.

        Calls request.on_filter_messages once with the exact history sent,
        and request.on_chunk for every normalized chunk. The last chunk
        carries cumulative usage, final metrics and the tool responses.

        Raises:
            AbortError: If the abort handle of the last user message fires
            ToolLoopExceededError: If tools are still requested after
                max_tool_rounds rounds
            Exception: Transport / vendor errors propagate unchanged
        """
        assistant = request.assistant
        model = self.resolve_model(assistant)
        settings = assistant.settings

        filtered = filter_context_window(request.messages, settings.context_count)
        request.on_filter_messages(filtered)

        conversation = [await self.message_param(m, model) for m in filtered]

        system_prompt = assistant.prompt
        if request.mcp_tools:
            system_prompt = build_system_prompt(system_prompt, request.mcp_tools)

        body = self.build_body(assistant, model, conversation, system_prompt)

        last_user = next((m for m in reversed(filtered) if m.role == "user"), None)
        signal, cleanup = self.aborts.create(last_user.id if last_user else None)

        timer = StreamTimer()
        tool_responses: list[MCPToolResponse] = []
        total_usage: Usage | None = None
        vision = is_vision_model(model)

        try:
            idx = 0
            while True:
                result = await self._run_round(body, settings.stream_output, timer, signal, request.on_chunk)
                if result.usage is not None:
                    total_usage = result.usage if total_usage is None else total_usage + result.usage

                follow_ups: list[dict[str, Any]] = []
                if result.text and request.mcp_tools and request.call_tool is not None:
                    follow_ups = await parse_and_call_tools(
                        result.text,
                        tool_responses,
                        request.on_chunk,
                        idx,
                        self.convert_tool_response,
                        request.mcp_tools,
                        vision,
                        request.call_tool,
                    )

                if not follow_ups:
                    break

                if idx + 1 > self.max_tool_rounds:
                    raise ToolLoopExceededError(
                        f"Model kept requesting tools after {self.max_tool_rounds} rounds"
                    )

                body["messages"] = body["messages"] + [{"role": "assistant", "content": result.text}] + follow_ups
                idx += 1
                logger.debug(f"Starting tool round {idx} with {len(follow_ups)} tool result(s)")

            request.on_chunk(
                Chunk(
                    usage=total_usage,
                    metrics=timer.snapshot(total_usage.completion_tokens if total_usage else None),
                    mcp_tool_response=list(tool_responses) if tool_responses else None,
                )
            )
        finally:
            cleanup()

    async def _run_round(self, body, stream: bool, timer: StreamTimer, signal, on_chunk) -> RoundResult:
        if stream:
            return await self._stream_round(body, timer, signal, on_chunk)
        return await self._complete_round(body, timer, signal, on_chunk)

    async def _stream_round(self, body, timer: StreamTimer, signal, on_chunk) -> RoundResult:
        result = RoundResult()
        response = await await_or_abort(
            acompletion(**body, stream=True, stream_options={"include_usage": True}),
            signal,
        )

        async for part in iterate_until_aborted(response, signal):
            usage = usage_from_response(getattr(part, "usage", None))
            if usage is not None:
                result.usage = usage

            choices = getattr(part, "choices", None) or []
            delta = choices[0].delta if choices else None
            reasoning = (getattr(delta, "reasoning_content", None) or "") if delta else ""
            text = (getattr(delta, "content", None) or "") if delta else ""
            extras = self.extract_extras(part)

            if reasoning:
                timer.on_reasoning()
                result.reasoning += reasoning
            if text:
                timer.on_text()
                result.text += text

            if reasoning or text or extras:
                on_chunk(
                    Chunk(
                        text=text,
                        reasoning_content=reasoning,
                        metrics=timer.snapshot(),
                        **extras,
                    )
                )

        return result

    async def _complete_round(self, body, timer: StreamTimer, signal, on_chunk) -> RoundResult:
        response = await await_or_abort(acompletion(**body), signal)

        message = response.choices[0].message
        text = getattr(message, "content", None) or ""
        reasoning = getattr(message, "reasoning_content", None) or ""
        if reasoning:
            timer.on_reasoning()
        if text:
            timer.on_text()

        on_chunk(
            Chunk(
                text=text,
                reasoning_content=reasoning,
                metrics=timer.snapshot(),
                **self.extract_extras(response),
            )
        )
        return RoundResult(
            text=text,
            reasoning=reasoning,
            usage=usage_from_response(getattr(response, "usage", None)),
        )

    # ------------------------------------------------------------------
    # One-shot operations
    # ------------------------------------------------------------------

    async def _simple_completion(
        self,
        model: Model,
        system_prompt: str | None,
        user_content: str,
        timeout: float | None = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
    ) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_content})

        kwargs: dict[str, Any] = {
            "model": self.litellm_model(model),
            "messages": messages,
            "max_tokens": max_tokens,
            "drop_params": True,
            **self.connection_kwargs(),
        }
        if timeout is not None:
            kwargs["timeout"] = timeout

        response = await acompletion(**kwargs)
        return response_text(response)

    async def translate(
        self,
        message: Message,
        assistant: Assistant,
        on_response: Callable[[str], None] | None = None,
    ) -> str:
        """
        Re-generate message content with the assistant's (translation) prompt.

        When on_response is given the reply is streamed and the callback
        receives the accumulated text after every increment.
        """
        model = self.resolve_model(assistant)
        if on_response is None:
            return await self._simple_completion(model, assistant.prompt, message.content)

        body = {
            "model": self.litellm_model(model),
            "messages": [
                {"role": "system", "content": assistant.prompt},
                {"role": "user", "content": message.content},
            ],
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": assistant.settings.temperature,
            "stream": True,
            "drop_params": True,
            **self.connection_kwargs(),
        }

        text = ""
        response = await acompletion(**body)
        async for part in response:
            choices = getattr(part, "choices", None) or []
            delta = getattr(choices[0].delta, "content", None) if choices else None
            if delta:
                text += delta
                on_response(text)
        return text

    async def summaries(self, messages: list[Message], assistant: Assistant) -> str:
        """
        Produce a short conversation title.

        Uses at most the last 5 non-preset messages, starting from a user turn.
        """
        model = self.resolve_model(assistant)

        recent = [m for m in messages[-5:] if not m.is_preset]
        if recent and recent[0].role == "assistant":
            recent = recent[1:]

        content = "\n".join(
            f"User: {m.content}" if m.role == "user" else f"Assistant: {m.content}"
            for m in recent
        )

        text = await self._simple_completion(model, self.topic_naming_prompt, content)
        return remove_special_characters_for_topic_name(text)

    async def summary_for_search(self, messages: list[Message], assistant: Assistant) -> str | None:
        """Ask the model whether and what to search; non-streaming, 20 s timeout."""
        model = self.resolve_model(assistant)
        content = "\n".join(m.content for m in messages)
        text = await self._simple_completion(
            model, assistant.prompt, content, timeout=SEARCH_SUMMARY_TIMEOUT_SECONDS
        )
        return text or None

    async def generate_text(self, prompt: str, content: str) -> str:
        return await self._simple_completion(self.resolve_model(None), prompt, content)

    async def suggestions(self, messages: list[Message], assistant: Assistant) -> list[dict[str, Any]]:
        return []

    async def check(self, model: Model | None) -> CheckResult:
        """Send a minimal probe; valid iff the vendor answers with content."""
        if model is None:
            return CheckResult(valid=False, error="No model found")

        try:
            response = await acompletion(
                model=self.litellm_model(model),
                messages=[{"role": "user", "content": "hi"}],
                max_tokens=100,
                drop_params=True,
                **self.connection_kwargs(),
            )
        except Exception as e:
            logger.warning(f"Model check failed for {model.id}: {e}")
            return CheckResult(valid=False, error=str(e))

        return CheckResult(valid=bool(response_text(response)))

    async def generate_image(self, prompt: str, model: Model, **kwargs: Any) -> list[str]:
        return []

    async def models(self) -> list[Model]:
        return []

    async def get_embedding_dimensions(self, model: Model) -> int:
        return 0
