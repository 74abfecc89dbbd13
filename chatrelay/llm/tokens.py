"""
Local token estimation.

Used when a vendor streams a reply without reporting usage. Counts are
approximate (cl100k_base for every vendor) but stable, which is all the UI
needs for its per-message token badge.
"""

from __future__ import annotations

import logging

import tiktoken

from chatrelay.llm.models import Message, Usage

logger = logging.getLogger(__name__)

# Fixed per-message overhead of the chat format (role markers, separators)
MESSAGE_OVERHEAD_TOKENS = 4


class TokenEstimator:
    """
    Estimates prompt and completion token counts with tiktoken.

    The encoder is loaded lazily on first use.

    Args:
        encoding_name: Tiktoken encoding name (default: "cl100k_base")
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._tokenizer = None

    def _encoder(self):
        if self._tokenizer is None:
            try:
                self._tokenizer = tiktoken.get_encoding(self.encoding_name)
            except Exception as e:
                logger.error(f"Failed to load tiktoken encoding '{self.encoding_name}': {e}")
                raise RuntimeError(f"Could not load tokenizer: {e}") from e
        return self._tokenizer

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoder().encode(text))

    def count_message(self, message: Message) -> int:
        tokens = self.count(message.content) + MESSAGE_OVERHEAD_TOKENS
        if message.reasoning_content:
            tokens += self.count(message.reasoning_content)
        return tokens

    def estimate_usage(self, prompt_messages: list[Message], completion: Message) -> Usage:
        """
        Estimate usage for a finished exchange.

        Args:
            prompt_messages: Messages that were sent to the model
            completion: The assistant message that was produced
        """
        prompt_tokens = sum(self.count_message(m) for m in prompt_messages)
        completion_tokens = self.count_message(completion)
        return Usage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
