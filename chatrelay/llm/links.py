"""
Vendor-specific citation link post-processing.

Search-capable vendors embed their sources in the reply text, each in its own
format. The UI renders citations from one normalized form, a numbered
superscript link:

    [<sup>1</sup>](https://example.com/page)

Each vendor family gets its own converter class. Converters are stateful
only to survive streaming: a link can be split across chunks, so the tail of
the buffer that might still become a link is held back until the next chunk
(or flush()). Create a fresh converter for every completion.

Formats:
    OpenAI      ([host](url)) | [host](url)  -> [<sup>n</sup>](url)
                [any text](url)              -> any text[<sup>n</sup>](url)
    OpenRouter  [host](url)                  -> [<sup>n</sup>](url)
    Zhipu       [ref_n]                      -> [<sup>n</sup>]()  (URL filled by complete_links)
    Hunyuan     [n](@ref) | [n,m](@ref)      -> [<sup>n</sup>](url of search result n)
"""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlparse

from chatrelay.llm.capabilities import (
    is_hunyuan_search_model,
    is_openai_web_search,
    is_openrouter_model,
    is_zhipu_model,
)
from chatrelay.llm.models import Assistant

# Held-back tails longer than this are released unconverted
MAX_HOLD_CHARS = 1000

MARKDOWN_LINK_REGEX = re.compile(r"(!?)(\()?\[([^\[\]]+)\]\(([^()\s]+)\)(\))?")
HOST_TEXT_REGEX = re.compile(r"^(?:www\.)?[\w-]+(?:\.[\w-]+)+$")


def _is_host_text(text: str, url: str) -> bool:
    text = text.strip()
    host = urlparse(url).hostname or ""
    return text == host or text == host.removeprefix("www.") or bool(HOST_TEXT_REGEX.match(text))


def _sup(number: int | str, url: str) -> str:
    return f"[<sup>{number}</sup>]({url})"


class LinkConverter:
    """
    Base class for streaming link converters.

    Subclasses define PARTIAL_TAIL (a regex anchored at end of text matching a
    possibly-incomplete link) and _transform().
    """

    PARTIAL_TAIL: re.Pattern = re.compile(r"$^")

    def __init__(self):
        self._buffer = ""

    def convert(self, text: str, web_search: list[dict[str, Any]] | None = None) -> str:
        """Append a streamed increment and return the part that is safe to show."""
        self._buffer += text or ""
        safe_point = len(self._buffer)
        match = self.PARTIAL_TAIL.search(self._buffer)
        if match and len(self._buffer) - match.start() <= MAX_HOLD_CHARS:
            safe_point = match.start()

        safe, self._buffer = self._buffer[:safe_point], self._buffer[safe_point:]
        return self._transform(safe, web_search or [])

    def flush(self, web_search: list[dict[str, Any]] | None = None) -> str:
        """Release whatever is still held back at the end of the stream."""
        rest, self._buffer = self._buffer, ""
        return self._transform(rest, web_search or [])

    def _transform(self, text: str, web_search: list[dict[str, Any]]) -> str:
        return text


class _NumberingConverter(LinkConverter):
    """Shared numbering: the same URL always gets the same number."""

    # "[text", "[text]", "[text](url" or "([text](url)" still waiting for ")".
    # Labels stay on one line and are short; anything else is plain text.
    PARTIAL_TAIL = re.compile(
        r"\(?\[[^\[\]\n]{0,200}(?:\](?:\([^()\s]*)?)?$|\(\[[^\[\]\n]{0,200}\]\([^()\s]*\)$"
    )

    def __init__(self):
        super().__init__()
        self._counter = 1
        self._url_numbers: dict[str, int] = {}

    def _number_for(self, url: str) -> int:
        if url not in self._url_numbers:
            self._url_numbers[url] = self._counter
            self._counter += 1
        return self._url_numbers[url]


class OpenAILinkConverter(_NumberingConverter):
    """Converts OpenAI search-preview citations."""

    def _transform(self, text, web_search):
        def replace(match: re.Match) -> str:
            bang, open_paren, label, url, close_paren = match.groups()
            if bang or label.startswith("<sup>"):
                return match.group(0)
            link = _sup(self._number_for(url), url)
            if open_paren and close_paren:
                return link
            if not _is_host_text(label, url):
                link = f"{label}{link}"
            return f"{open_paren or ''}{link}{close_paren or ''}"

        return MARKDOWN_LINK_REGEX.sub(replace, text)


class OpenRouterLinkConverter(_NumberingConverter):
    """Converts OpenRouter web-plugin citations; non-host links are left alone."""

    def _transform(self, text, web_search):
        def replace(match: re.Match) -> str:
            bang, open_paren, label, url, close_paren = match.groups()
            if bang or label.startswith("<sup>") or not _is_host_text(label, url):
                return match.group(0)
            return f"{open_paren or ''}{_sup(self._number_for(url), url)}{close_paren or ''}"

        return MARKDOWN_LINK_REGEX.sub(replace, text)


class ZhipuLinkConverter(LinkConverter):
    """Converts Zhipu [ref_n] markers into empty numbered links."""

    PARTIAL_TAIL = re.compile(r"\[(?:r(?:e(?:f(?:_\d*)?)?)?)?$")
    REF_REGEX = re.compile(r"\[ref_(\d+)\]")

    def _transform(self, text, web_search):
        return self.REF_REGEX.sub(lambda m: _sup(m.group(1), ""), text)


class HunyuanLinkConverter(LinkConverter):
    """Converts Hunyuan [n](@ref) markers using the search results of the stream."""

    PARTIAL_TAIL = re.compile(r"\[[\d,\s]*(?:\](?:\((?:@(?:r(?:e(?:f)?)?)?)?)?)?$")
    REF_REGEX = re.compile(r"\[([\d,\s]+)\]\(@ref\)")

    def _transform(self, text, web_search):
        def replace(match: re.Match) -> str:
            links = []
            for number in re.findall(r"\d+", match.group(1)):
                index = int(number) - 1
                url = ""
                if 0 <= index < len(web_search):
                    url = web_search[index].get("url", "")
                links.append(_sup(number, url))
            return "".join(links)

        return self.REF_REGEX.sub(replace, text)


LINK_CONVERTERS: dict[str, type[LinkConverter]] = {
    "openai": OpenAILinkConverter,
    "openrouter": OpenRouterLinkConverter,
    "zhipu": ZhipuLinkConverter,
    "hunyuan": HunyuanLinkConverter,
}


def select_link_converter(assistant: Assistant) -> LinkConverter | None:
    """Pick the converter for the assistant's model, or None when text passes through."""
    model = assistant.model
    if model is None:
        return None
    if is_openai_web_search(model):
        return LINK_CONVERTERS["openai"]()
    if not assistant.enable_web_search:
        return None
    if is_openrouter_model(model):
        return LINK_CONVERTERS["openrouter"]()
    if is_zhipu_model(model):
        return LINK_CONVERTERS["zhipu"]()
    if is_hunyuan_search_model(model):
        return LINK_CONVERTERS["hunyuan"]()
    return None


# ---------------------------------------------------------------------------
# Whole-content helpers
# ---------------------------------------------------------------------------

def clean_link_commas(text: str) -> str:
    """Remove commas (ASCII or full-width) between adjacent links."""
    return re.sub(r"\]\(([^)]*)\)\s*[,，]\s*\[", r"](\1)[", text)


def complete_links(text: str, web_search: list[dict[str, Any]]) -> str:
    """Fill empty numbered links with the matching search result URL."""

    def replace(match: re.Match) -> str:
        index = int(match.group(1)) - 1
        if 0 <= index < len(web_search):
            url = web_search[index].get("link") or web_search[index].get("url") or ""
            if url:
                return _sup(match.group(1), url)
        return match.group(0)

    return re.sub(r"\[<sup>(\d+)</sup>\]\(\)", replace, text)


def extract_urls_from_markdown(text: str) -> list[str]:
    """All distinct http(s) link targets in order of first appearance."""
    urls: list[str] = []
    for url in re.findall(r"(?<!!)\[[^\[\]]*\]\((https?://[^()\s]+)\)", text):
        if url not in urls:
            urls.append(url)
    return urls
