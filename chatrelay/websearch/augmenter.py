"""
Web search augmentation of a completion.

Runs before the main model call and attaches search results to the reply
message's metadata. Failures never reach the caller: a search that cannot
be performed simply leaves the message without results.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from chatrelay.llm.capabilities import has_native_web_search
from chatrelay.llm.models import Assistant, Message, WebSearchResponse
from chatrelay.llm.prompts import SEARCH_SUMMARY_PROMPT
from chatrelay.llm.runtime import RuntimeState
from chatrelay.websearch.service import WebSearchService

logger = logging.getLogger(__name__)

SearchSummarizer = Callable[[list[Message], Assistant], Awaitable[str | None]]
ResponseCallback = Callable[[Message], None]


class WebSearchAugmenter:
    """
    Decides whether to search and stores the results on the message.

    Args:
        service: Search backend client
        runtime: Holds the search cache results are stored in
        summarize: Asks the model for a search decision (enhanced mode)
    """

    def __init__(self, service: WebSearchService, runtime: RuntimeState, summarize: SearchSummarizer):
        self.service = service
        self.runtime = runtime
        self.summarize = summarize

    def should_search(self, assistant: Assistant) -> bool:
        if not (self.service.is_web_search_enabled() and assistant.enable_web_search and assistant.model):
            return False
        if has_native_web_search(assistant, assistant.model) and not self.service.is_overwrite_enabled():
            # The vendor searches by itself
            return False
        return True

    async def search_the_web(
        self,
        message: Message,
        messages: list[Message],
        assistant: Assistant,
        on_response: ResponseCallback,
    ) -> None:
        """
        Search for the last user message and attach the results to message.

        Emits message with status "searching" before any network call. The
        payload goes to message.metadata.web_search and to the runtime cache
        under web-search-<last user message id>.
        """
        if not self.should_search(assistant):
            return

        last_user = next((m for m in reversed(messages) if m.role == "user"), None)
        if last_user is None:
            return
        last_answer = next((m for m in reversed(messages) if m.role == "assistant"), None)

        on_response(message.model_copy(update={"status": "searching"}, deep=True))

        try:
            response = await self._search(last_user, last_answer, assistant)
            if response is None:
                logger.info("Model decided no web search is needed")
                return

            message.metadata.web_search = response
            self.runtime.set_search_result(last_user.id, response)
        except Exception as e:
            logger.warning(f"Web search failed: {e}")

    async def _search(
        self,
        last_user: Message,
        last_answer: Message | None,
        assistant: Assistant,
    ) -> WebSearchResponse | None:
        """Returns None when the model says no search is needed."""
        if not self.service.is_enhance_mode_enabled():
            return await self.service.search(last_user.content)

        summary_assistant = assistant.model_copy(update={"prompt": SEARCH_SUMMARY_PROMPT})
        history = [last_answer, last_user] if last_answer else [last_user]
        summary = await self.summarize(history, summary_assistant)

        decision = self.service.extract_info_from_xml(summary or "")
        if decision.question == "not_needed":
            return None
        if decision.question == "summarize" and decision.links:
            results = await self.service.fetch_web_contents(decision.links)
            return WebSearchResponse(query="summaries", results=results)
        return await self.service.search(decision.question)
