"""
Unit tests for the Completion Orchestrator.

The provider adapter is replaced by a scripted mock through the
orchestrator's provider_factory, so these tests exercise only the
orchestration: chunk folding, final status, usage estimation, tool and web
search wiring, and the auxiliary operations.

Tests cover:
- Chunk folding and status transitions (success / paused / error)
- Provider validation
- Local usage estimation
- Tool-server wiring
- Citation link rewriting
- Web search augmentation
- Auxiliary operations
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.llm.models import (
    AbortError,
    Assistant,
    Chunk,
    ConfigurationError,
    MCPCallToolResponse,
    MCPServer,
    MCPTool,
    MCPToolResponse,
    Message,
    Metrics,
    Model,
    Provider,
    Usage,
    WebSearchResponse,
    WebSearchResult,
)
from chatrelay.llm.orchestrator import (
    CompletionOrchestrator,
    format_api_keys,
    format_message_error,
    with_generate_image,
)
from chatrelay.llm.runtime import RuntimeState
from chatrelay.tools.base import ToolServerAdapter
from chatrelay.websearch.service import WebSearchService


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _scripted_completions(*chunks, error: Exception | None = None):
    """completions() side effect that replays chunks, then optionally raises."""

    async def completions(request):
        request.on_filter_messages(list(request.messages))
        for chunk in chunks:
            request.on_chunk(chunk)
        if error is not None:
            raise error

    return completions


def _final_chunk(prompt: int = 10, completion: int = 4) -> Chunk:
    return Chunk(
        usage=Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=prompt + completion),
        metrics=Metrics(completion_tokens=completion, time_completion_millsec=120, time_first_token_millsec=40),
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def gpt4o():
    return Model(id="gpt-4o", provider="openai")


@pytest.fixture
def provider(gpt4o):
    return Provider(id="openai", api_key="sk-test", api_host="https://api.openai.com", models=[gpt4o])


@pytest.fixture
def assistant(gpt4o):
    return Assistant(prompt="Be brief.", model=gpt4o)


@pytest.fixture
def adapter():
    adapter = MagicMock()
    adapter.completions = AsyncMock(side_effect=_scripted_completions(Chunk(text="ok"), _final_chunk()))
    return adapter


@pytest.fixture
def estimator():
    estimator = MagicMock()
    estimator.estimate_usage.return_value = Usage(prompt_tokens=20, completion_tokens=7, total_tokens=27)
    return estimator


@pytest.fixture
def runtime():
    return RuntimeState()


@pytest.fixture
def orchestrator(provider, adapter, estimator, runtime):
    return CompletionOrchestrator(
        provider,
        runtime=runtime,
        estimator=estimator,
        provider_factory=MagicMock(return_value=adapter),
    )


@pytest.fixture
def conversation():
    return [Message(role="user", content="What is the capital of France?")]


@pytest.fixture
def reply():
    return Message(role="assistant", content="", status="pending")


# ---------------------------------------------------------------------------
# Chat completion
# ---------------------------------------------------------------------------

class TestFetchChatCompletion:
    """Tests for folding and final status."""

    @pytest.mark.asyncio
    async def test_success_folds_text_and_usage(self, orchestrator, adapter, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(
            Chunk(reasoning_content="Thinking. "),
            Chunk(text="Paris"),
            Chunk(text=" is the capital."),
            _final_chunk(),
        )
        snapshots = []

        result = await orchestrator.fetch_chat_completion(reply, conversation, assistant, snapshots.append)

        assert result is reply
        assert reply.status == "success"
        assert reply.content == "Paris is the capital."
        assert reply.reasoning_content == "Thinking. "
        assert reply.usage.total_tokens == 14
        assert reply.metrics.time_first_token_millsec == 40
        assert [s.status for s in snapshots[:-1]] == ["pending"] * 4
        assert snapshots[-1].status == "success"

    @pytest.mark.asyncio
    async def test_pending_snapshots_are_copies(self, orchestrator, adapter, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(Chunk(text="a"), Chunk(text="b"))
        snapshots = []

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, snapshots.append)

        assert snapshots[0].content == "a"
        assert snapshots[1].content == "ab"
        assert snapshots[0] is not reply

    @pytest.mark.asyncio
    async def test_sent_snapshots_do_not_change(self, orchestrator, adapter, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(
            Chunk(text="a", citations=["https://one.example"]),
            Chunk(text="b", citations=["https://two.example"]),
        )
        snapshots = []

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, snapshots.append)

        assert snapshots[0].content == "a"
        assert snapshots[0].metadata.citations == ["https://one.example"]
        assert snapshots[1].metadata.citations == ["https://two.example"]
        assert reply.metadata.citations == ["https://two.example"]

    @pytest.mark.asyncio
    async def test_abort_keeps_streamed_text(self, orchestrator, adapter, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(
            Chunk(text="Once upon a time"), error=AbortError()
        )

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        assert reply.status == "paused"
        assert reply.content == "Once upon a time"
        assert reply.error is None

    @pytest.mark.asyncio
    async def test_vendor_error_marks_message(self, orchestrator, adapter, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(error=RuntimeError("rate limited"))
        snapshots = []

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, snapshots.append)

        assert reply.status == "error"
        assert reply.error == {"message": "rate limited", "name": "RuntimeError", "status": None}
        assert snapshots[-1].status == "error"

    @pytest.mark.asyncio
    async def test_generating_flag(self, orchestrator, adapter, runtime, assistant, conversation, reply):
        seen = []

        async def completions(request):
            seen.append(runtime.generating)

        adapter.completions.side_effect = completions

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        assert seen == [True]
        assert runtime.generating is False

    @pytest.mark.asyncio
    async def test_generating_flag_reset_after_error(self, orchestrator, adapter, runtime, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(error=RuntimeError("boom"))
        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)
        assert runtime.generating is False

    @pytest.mark.asyncio
    async def test_history_filters_applied(self, orchestrator, adapter, assistant, reply):
        question = Message(role="user", content="q")
        messages = [
            Message(role="user", content="forgotten"),
            Message(role="user", type="clear"),
            question,
            Message(role="assistant", content="first", ask_id=question.id),
            Message(role="assistant", content="second", ask_id=question.id),
            Message(role="user", content="follow-up"),
        ]

        await orchestrator.fetch_chat_completion(reply, messages, assistant, lambda m: None)

        request = adapter.completions.call_args.args[0]
        assert [m.content for m in request.messages] == ["q", "second", "follow-up"]
        assert request.mcp_tools == []
        assert request.call_tool is None


class TestProviderValidation:
    """Configuration problems surface before any network call."""

    @pytest.mark.asyncio
    async def test_missing_key_raises(self, adapter, assistant, conversation, reply, gpt4o):
        provider = Provider(id="openai", api_host="https://api.openai.com", models=[gpt4o])
        orchestrator = CompletionOrchestrator(provider, provider_factory=MagicMock(return_value=adapter))

        with pytest.raises(ConfigurationError):
            await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        adapter.completions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_models_raises(self, adapter, assistant, conversation, reply):
        provider = Provider(id="openai", api_key="sk", api_host="https://api.openai.com")
        orchestrator = CompletionOrchestrator(provider, provider_factory=MagicMock(return_value=adapter))

        with pytest.raises(ConfigurationError):
            await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

    @pytest.mark.asyncio
    async def test_local_provider_needs_no_key(self, adapter, estimator, conversation, reply):
        model = Model(id="llama3.2", provider="ollama")
        provider = Provider(id="ollama", api_host="http://localhost:11434", models=[model])
        orchestrator = CompletionOrchestrator(
            provider, estimator=estimator, provider_factory=MagicMock(return_value=adapter)
        )

        await orchestrator.fetch_chat_completion(reply, conversation, Assistant(model=model), lambda m: None)

        assert reply.status == "success"

    def test_check_api_provider(self, gpt4o):
        assert CompletionOrchestrator.check_api_provider(
            Provider(id="openai", api_key="sk", api_host="https://h", models=[gpt4o])
        ).valid is True
        result = CompletionOrchestrator.check_api_provider(Provider(id="openai", api_key="sk", models=[gpt4o]))
        assert result.valid is False
        assert "API host" in result.error


# ---------------------------------------------------------------------------
# Usage estimation
# ---------------------------------------------------------------------------

class TestUsageEstimation:
    """Tests for local token estimation."""

    @pytest.mark.asyncio
    async def test_estimates_when_vendor_reports_none(self, orchestrator, adapter, estimator, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(
            Chunk(text="Paris"), Chunk(metrics=Metrics(time_completion_millsec=50))
        )

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        sent, completion = estimator.estimate_usage.call_args.args
        assert [m.content for m in sent] == ["What is the capital of France?"]
        assert completion is reply
        assert reply.usage.completion_tokens == 7
        assert reply.metrics.completion_tokens == 7

    @pytest.mark.asyncio
    async def test_estimates_when_completion_tokens_zero(self, orchestrator, adapter, estimator, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(Chunk(text="x"), _final_chunk(completion=0))

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        estimator.estimate_usage.assert_called_once()

    @pytest.mark.asyncio
    async def test_reported_usage_is_kept(self, orchestrator, estimator, assistant, conversation, reply):
        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        estimator.estimate_usage.assert_not_called()
        assert reply.usage.completion_tokens == 4

    @pytest.mark.asyncio
    async def test_estimation_failure_is_not_fatal(self, orchestrator, adapter, estimator, assistant, conversation, reply):
        adapter.completions.side_effect = _scripted_completions(Chunk(text="x"))
        estimator.estimate_usage.side_effect = RuntimeError("no tokenizer")

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        assert reply.status == "success"
        assert reply.usage is None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class TestToolWiring:
    """Tests for tool-server integration."""

    @pytest.fixture
    def server(self):
        return MCPServer(id="dice", command="dice-server", disabled_tools=["reset"])

    @pytest.fixture
    def mcp(self):
        mcp = AsyncMock(spec=ToolServerAdapter)
        mcp.list_tools.return_value = [
            MCPTool(id="dice__roll", name="roll", server_id="dice"),
            MCPTool(id="dice__reset", name="reset", server_id="dice"),
        ]
        mcp.call_tool.return_value = MCPCallToolResponse(content=[{"type": "text", "text": "17"}])
        return mcp

    @pytest.mark.asyncio
    async def test_enabled_tools_reach_adapter(self, provider, adapter, estimator, assistant, reply, server, mcp):
        orchestrator = CompletionOrchestrator(
            provider, mcp=mcp, estimator=estimator, provider_factory=MagicMock(return_value=adapter)
        )
        question = Message(role="user", content="roll a d20", enabled_mcps=[server])

        await orchestrator.fetch_chat_completion(reply, [question], assistant, lambda m: None)

        request = adapter.completions.call_args.args[0]
        assert [t.id for t in request.mcp_tools] == ["dice__roll"]

        result = await request.call_tool(request.mcp_tools[0], {"notation": "1d20"})
        mcp.call_tool.assert_awaited_once_with(server, "roll", {"notation": "1d20"})
        assert result.content[0]["text"] == "17"

    @pytest.mark.asyncio
    async def test_tool_responses_stored_in_metadata(self, provider, adapter, estimator, assistant, reply, server, mcp):
        tool = MCPTool(id="dice__roll", name="roll", server_id="dice")
        response = MCPToolResponse(id="dice__roll-0-0", tool=tool, status="done")
        adapter.completions.side_effect = _scripted_completions(
            Chunk(mcp_tool_response=[response]), Chunk(text="You rolled 17.")
        )
        orchestrator = CompletionOrchestrator(
            provider, mcp=mcp, estimator=estimator, provider_factory=MagicMock(return_value=adapter)
        )

        await orchestrator.fetch_chat_completion(
            reply, [Message(role="user", content="roll", enabled_mcps=[server])], assistant, lambda m: None
        )

        assert reply.metadata.mcp_tools[0].id == "dice__roll-0-0"
        assert reply.metadata.mcp_tools[0] is not response

    @pytest.mark.asyncio
    async def test_no_servers_no_tools(self, orchestrator, adapter, assistant, conversation, reply):
        orchestrator.mcp = AsyncMock(spec=ToolServerAdapter)
        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)
        orchestrator.mcp.list_tools.assert_not_awaited()


# ---------------------------------------------------------------------------
# Citation links
# ---------------------------------------------------------------------------

class TestCitationLinks:
    """Tests for link rewriting during folding."""

    @pytest.mark.asyncio
    async def test_zhipu_refs_completed_from_search_results(self, adapter, estimator, conversation, reply):
        model = Model(id="glm-4-plus", provider="zhipu")
        provider = Provider(id="zhipu", api_key="k", api_host="https://open.bigmodel.cn/api/paas/v4/", models=[model])
        orchestrator = CompletionOrchestrator(
            provider, estimator=estimator, provider_factory=MagicMock(return_value=adapter)
        )
        adapter.completions.side_effect = _scripted_completions(
            Chunk(text="Python 3.13 [ref_1] is out", web_search=[{"link": "https://python.org"}])
        )

        await orchestrator.fetch_chat_completion(
            reply, conversation, Assistant(model=model, enable_web_search=True), lambda m: None
        )

        assert reply.content == "Python 3.13 [<sup>1</sup>](https://python.org) is out"
        assert reply.metadata.web_search_info == [{"link": "https://python.org"}]

    @pytest.mark.asyncio
    async def test_held_link_text_flushed_on_abort(self, adapter, estimator, conversation, reply):
        model = Model(id="gpt-4o-search-preview", provider="openai")
        provider = Provider(id="openai", api_key="k", api_host="https://api.openai.com", models=[model])
        orchestrator = CompletionOrchestrator(
            provider, estimator=estimator, provider_factory=MagicMock(return_value=adapter)
        )
        adapter.completions.side_effect = _scripted_completions(Chunk(text="See [exam"), error=AbortError())

        await orchestrator.fetch_chat_completion(reply, conversation, Assistant(model=model), lambda m: None)

        assert reply.status == "paused"
        assert reply.content == "See [exam"

    @pytest.mark.asyncio
    async def test_openrouter_citations_from_content(self, adapter, estimator, conversation, reply):
        model = Model(id="openai/gpt-4o", provider="openrouter")
        provider = Provider(id="openrouter", api_key="k", api_host="https://openrouter.ai/api/v1/", models=[model])
        orchestrator = CompletionOrchestrator(
            provider, estimator=estimator, provider_factory=MagicMock(return_value=adapter)
        )
        adapter.completions.side_effect = _scripted_completions(
            Chunk(text="See [example.com](https://example.com) and [docs](https://docs.example.com).")
        )

        await orchestrator.fetch_chat_completion(
            reply, conversation, Assistant(model=model, enable_web_search=True), lambda m: None
        )

        assert reply.metadata.citations == ["https://example.com", "https://docs.example.com"]


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------

class TestWebSearchAugmentation:
    """Tests for the search step before the model call."""

    @pytest.fixture
    def search_service(self):
        service = MagicMock(spec=WebSearchService)
        service.is_web_search_enabled.return_value = True
        service.is_enhance_mode_enabled.return_value = False
        service.is_overwrite_enabled.return_value = False
        service.search = AsyncMock(
            return_value=WebSearchResponse(
                query="capital of France",
                results=[WebSearchResult(title="Paris", url="https://en.wikipedia.org/wiki/Paris")],
            )
        )
        return service

    @pytest.mark.asyncio
    async def test_results_attached_before_completion(
        self, provider, adapter, estimator, runtime, gpt4o, conversation, reply, search_service
    ):
        orchestrator = CompletionOrchestrator(
            provider,
            runtime=runtime,
            web_search=search_service,
            estimator=estimator,
            provider_factory=MagicMock(return_value=adapter),
        )
        snapshots = []

        await orchestrator.fetch_chat_completion(
            reply, conversation, Assistant(model=gpt4o, enable_web_search=True), snapshots.append
        )

        assert snapshots[0].status == "searching"
        assert reply.metadata.web_search.results[0].title == "Paris"
        assert runtime.get_search_result(conversation[-1].id) is reply.metadata.web_search
        search_service.search.assert_awaited_once_with("What is the capital of France?")

    @pytest.mark.asyncio
    async def test_no_search_when_assistant_disabled(
        self, provider, adapter, estimator, assistant, conversation, reply, search_service
    ):
        orchestrator = CompletionOrchestrator(
            provider,
            web_search=search_service,
            estimator=estimator,
            provider_factory=MagicMock(return_value=adapter),
        )

        await orchestrator.fetch_chat_completion(reply, conversation, assistant, lambda m: None)

        search_service.search.assert_not_awaited()
        assert reply.metadata.web_search is None


# ---------------------------------------------------------------------------
# Auxiliary operations
# ---------------------------------------------------------------------------

class TestAuxiliaryOperations:
    """Tests for the one-shot fetch_* wrappers."""

    @pytest.mark.asyncio
    async def test_translate_uses_target_language(self, orchestrator, adapter, assistant):
        adapter.translate = AsyncMock(return_value="Bonjour")

        text = await orchestrator.fetch_translate(
            Message(role="user", content="Hello"), assistant, target_language="French"
        )

        assert text == "Bonjour"
        translate_assistant = adapter.translate.call_args.args[1]
        assert "French" in translate_assistant.prompt
        assert assistant.prompt == "Be brief."

    @pytest.mark.asyncio
    async def test_translate_failure_returns_empty(self, orchestrator, adapter, assistant):
        adapter.translate = AsyncMock(side_effect=RuntimeError("timeout"))
        assert await orchestrator.fetch_translate(Message(role="user", content="Hello"), assistant) == ""

    @pytest.mark.asyncio
    async def test_translate_without_key_raises(self, adapter, assistant, gpt4o):
        orchestrator = CompletionOrchestrator(
            Provider(id="openai", api_host="https://h", models=[gpt4o]),
            provider_factory=MagicMock(return_value=adapter),
        )
        with pytest.raises(ConfigurationError):
            await orchestrator.fetch_translate(Message(role="user", content="Hello"), assistant)

    @pytest.mark.asyncio
    async def test_summary_strips_quotes(self, orchestrator, adapter, assistant, conversation):
        adapter.summaries = AsyncMock(return_value='"Capital of France"')
        assert await orchestrator.fetch_messages_summary(conversation, assistant) == "Capital of France"

    @pytest.mark.asyncio
    async def test_summary_failure_returns_none(self, orchestrator, adapter, assistant, conversation):
        adapter.summaries = AsyncMock(side_effect=RuntimeError("boom"))
        assert await orchestrator.fetch_messages_summary(conversation, assistant) is None

    @pytest.mark.asyncio
    async def test_search_summary_failure_returns_none(self, orchestrator, adapter, assistant, conversation):
        adapter.summary_for_search = AsyncMock(side_effect=RuntimeError("timeout"))
        assert await orchestrator.fetch_search_summary(conversation, assistant) is None

    @pytest.mark.asyncio
    async def test_generate(self, orchestrator, adapter):
        adapter.generate_text = AsyncMock(return_value="42")
        assert await orchestrator.fetch_generate("Answer briefly.", "6 * 7?") == "42"

    @pytest.mark.asyncio
    async def test_suggestions_skipped_for_global_models(self, orchestrator, adapter, conversation):
        adapter.suggestions = AsyncMock(return_value=[{"content": "x"}])
        assistant = Assistant(model=Model(id="qwen-global", provider="dashscope"))
        assert await orchestrator.fetch_suggestions(conversation, assistant) == []
        adapter.suggestions.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_check_api_skips_network_for_invalid_provider(self, orchestrator, adapter, gpt4o):
        adapter.check = AsyncMock()
        result = await orchestrator.check_api(Provider(id="openai", models=[gpt4o]), gpt4o)
        assert result.valid is False
        adapter.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fetch_models_failure_returns_empty(self, orchestrator, adapter):
        adapter.models = AsyncMock(side_effect=RuntimeError("404"))
        assert await orchestrator.fetch_models() == []

    def test_abort_delegates_to_registry(self, orchestrator, runtime):
        runtime.aborts.create("m1")
        assert orchestrator.abort("m1") is True
        assert orchestrator.abort("unknown") is False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestHelpers:
    """Tests for module-level helpers."""

    def test_format_api_keys(self):
        assert format_api_keys("a，b c\nd") == "a,b,c,d"

    def test_format_message_error_with_status(self):
        error = RuntimeError("unauthorized")
        error.status_code = 401
        assert format_message_error(error) == {"message": "unauthorized", "name": "RuntimeError", "status": 401}

    def test_with_generate_image(self):
        message = Message(
            role="assistant",
            content="Here you go\n\n![image](https://img.example/cat.png)\n\n[Download](https://img.example/cat.png)",
        )
        with_generate_image(message)
        assert message.content == "Here you go"
        assert message.metadata.generate_image.images == ["https://img.example/cat.png"]

    def test_with_generate_image_no_image(self):
        message = Message(role="assistant", content="No pictures here.")
        with_generate_image(message)
        assert message.metadata.generate_image is None
        assert message.content == "No pictures here."
