"""Web search augmentation: search backends, page fetching and the augmenter."""

from chatrelay.websearch.augmenter import WebSearchAugmenter
from chatrelay.websearch.service import SearchDecision, WebSearchService

__all__ = ["SearchDecision", "WebSearchAugmenter", "WebSearchService"]
