"""
Web search backends and page fetching.

WebSearchService talks to one configured search backend (Tavily or a
SearXNG instance) over httpx and can fetch pages directly when the model
asks to summarize specific links.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from html.parser import HTMLParser
from typing import TYPE_CHECKING, Callable

import httpx

from chatrelay.llm.models import InvalidResponseError, WebSearchResponse, WebSearchResult

if TYPE_CHECKING:
    from chatrelay.config.settings import WebSearchSettings

logger = logging.getLogger(__name__)

TAVILY_API_HOST = "https://api.tavily.com"
SEARCH_TIMEOUT_SECONDS = 20.0
FETCH_TIMEOUT_SECONDS = 30.0
MAX_PAGE_CHARS = 20000
NO_CONTENT = "No content found"

USER_AGENT = "Mozilla/5.0 (compatible; chatrelay)"

QUESTION_REGEX = re.compile(r"<question>(.*?)</question>", re.DOTALL)
LINKS_REGEX = re.compile(r"<links>(.*?)</links>", re.DOTALL)


@dataclass
class SearchDecision:
    """The model's verdict on whether and what to search."""

    question: str
    links: list[str] = field(default_factory=list)


class _TextExtractor(HTMLParser):
    """Collects the title and the visible text of an HTML page."""

    SKIPPED_TAGS = {"script", "style", "noscript", "template", "svg", "head"}
    BLOCK_TAGS = {"p", "div", "br", "li", "tr", "section", "article", "h1", "h2", "h3", "h4", "h5", "h6"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.title = ""
        self._in_title = False
        self._skip_depth = 0
        self._parts: list[str] = []

    def handle_starttag(self, tag, attrs):
        if tag == "title":
            self._in_title = True
        elif tag in self.SKIPPED_TAGS:
            self._skip_depth += 1
        elif tag in self.BLOCK_TAGS:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag == "title":
            self._in_title = False
        elif tag in self.SKIPPED_TAGS and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data):
        if self._in_title:
            self.title += data
        elif not self._skip_depth:
            self._parts.append(data)

    @property
    def text(self) -> str:
        lines = (" ".join(line.split()) for line in "".join(self._parts).splitlines())
        return "\n".join(line for line in lines if line)


def html_to_text(html: str) -> tuple[str, str]:
    """Return (title, visible text) of an HTML document."""
    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return parser.title.strip(), parser.text


class WebSearchService:
    """
    Search and page-fetch client.

    Args:
        settings: Web search configuration
        client: Shared httpx client (one is created per call when omitted)
        today: Date source for search_with_time, injectable for tests
    """

    def __init__(
        self,
        settings: WebSearchSettings,
        client: httpx.AsyncClient | None = None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings
        self._client = client
        self._today = today

    def is_web_search_enabled(self) -> bool:
        """Enabled and the selected backend has what it needs to run."""
        if not self.settings.enabled:
            return False
        if self.settings.provider == "tavily":
            return bool(self.settings.api_key)
        return bool(self.settings.api_host)

    def is_enhance_mode_enabled(self) -> bool:
        return self.settings.enhance_mode

    def is_overwrite_enabled(self) -> bool:
        return self.settings.overwrite

    @staticmethod
    def extract_info_from_xml(text: str) -> SearchDecision:
        """
        Parse the search-summary reply.

        Expected shape:
            <websearch><question>...</question><links>...</links></websearch>

        Raises:
            InvalidResponseError: If the reply has no <question> element
        """
        match = QUESTION_REGEX.search(text or "")
        if match is None:
            raise InvalidResponseError("Invalid search summary response format")

        links: list[str] = []
        links_match = LINKS_REGEX.search(text)
        if links_match:
            links = [line.strip() for line in links_match.group(1).split() if line.strip()]

        return SearchDecision(question=match.group(1).strip(), links=links)

    def _client_or_new(self, timeout: float) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def _close_if_owned(self, client: httpx.AsyncClient) -> None:
        if client is not self._client:
            await client.aclose()

    async def search(self, query: str) -> WebSearchResponse:
        """
        Run query against the configured backend.

        Raises:
            httpx.HTTPError: On transport or HTTP status failures
        """
        if self.settings.search_with_time:
            query = f"today is {self._today().isoformat()} \r\n {query}"

        client = self._client_or_new(SEARCH_TIMEOUT_SECONDS)
        try:
            if self.settings.provider == "tavily":
                results = await self._search_tavily(client, query)
            else:
                results = await self._search_searxng(client, query)
        finally:
            await self._close_if_owned(client)

        logger.info(f"Web search returned {len(results)} result(s)")
        return WebSearchResponse(query=query, results=results[: self.settings.max_results])

    async def _search_tavily(self, client: httpx.AsyncClient, query: str) -> list[WebSearchResult]:
        host = (self.settings.api_host or TAVILY_API_HOST).rstrip("/")
        response = await client.post(
            f"{host}/search",
            json={"query": query, "max_results": self.settings.max_results},
            headers={"Authorization": f"Bearer {self.settings.api_key}"},
        )
        response.raise_for_status()
        return [
            WebSearchResult(
                title=item.get("title") or "",
                content=item.get("content") or "",
                url=item.get("url") or "",
            )
            for item in response.json().get("results", [])
        ]

    async def _search_searxng(self, client: httpx.AsyncClient, query: str) -> list[WebSearchResult]:
        host = self.settings.api_host.rstrip("/")
        response = await client.get(f"{host}/search", params={"q": query, "format": "json"})
        response.raise_for_status()
        return [
            WebSearchResult(
                title=item.get("title") or "",
                content=item.get("content") or "",
                url=item.get("url") or "",
            )
            for item in response.json().get("results", [])
        ]

    async def fetch_web_contents(self, urls: list[str]) -> list[WebSearchResult]:
        """
        Fetch pages concurrently and reduce them to title and visible text.

        A page that fails to load yields a result with placeholder content
        rather than an error.
        """
        client = self._client_or_new(FETCH_TIMEOUT_SECONDS)
        try:
            return list(await asyncio.gather(*(self._fetch_page(client, url) for url in urls)))
        finally:
            await self._close_if_owned(client)

    async def _fetch_page(self, client: httpx.AsyncClient, url: str) -> WebSearchResult:
        try:
            response = await client.get(url, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch {url}: {e}")
            return WebSearchResult(title=url, content=NO_CONTENT, url=url)

        if "html" in response.headers.get("content-type", "html"):
            title, text = html_to_text(response.text)
        else:
            title, text = "", response.text

        return WebSearchResult(
            title=title or url,
            content=text[:MAX_PAGE_CHARS] or NO_CONTENT,
            url=url,
        )
