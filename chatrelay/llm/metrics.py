"""
Timing and usage bookkeeping shared by every provider adapter.

A StreamTimer is created once per completions() call and shared by all
tool-call rounds, so first-token time is measured from the original request
and set exactly once.
"""

from __future__ import annotations

import time
from typing import Callable

from chatrelay.llm.models import Metrics, Usage

REASONING_EFFORT_RATIOS = {
    "low": 0.2,
    "medium": 0.5,
    "high": 0.8,
}

MIN_REASONING_BUDGET = 1024
MAX_REASONING_BUDGET = 32000


def _now_millsec() -> int:
    return int(time.monotonic() * 1000)


def reasoning_budget(max_tokens: int, effort: str | None) -> int | None:
    """
    Derive the thinking-token budget for a reasoning model.

    Returns None when the effort is unset or unknown.

    Example:
        >>> reasoning_budget(10000, "high")
        8000
        >>> reasoning_budget(100000, "low")
        20000
    """
    ratio = REASONING_EFFORT_RATIOS.get(effort or "")
    if ratio is None:
        return None
    return int(max(min(max_tokens * ratio, MAX_REASONING_BUDGET), MIN_REASONING_BUDGET))


class StreamTimer:
    """
    Tracks the latency metrics of one streamed completion.

    Args:
        clock: Millisecond clock, injectable for tests
    """

    def __init__(self, clock: Callable[[], int] = _now_millsec):
        self._clock = clock
        self.start_millsec = clock()
        self.time_first_token_millsec = 0
        self.time_first_content_millsec = 0
        self._has_reasoning = False

    def on_reasoning(self) -> None:
        self._has_reasoning = True
        self._mark_first_token()

    def on_text(self) -> None:
        self._mark_first_token()
        if self._has_reasoning and self.time_first_content_millsec == 0:
            self.time_first_content_millsec = self._clock()

    def _mark_first_token(self) -> None:
        if self.time_first_token_millsec == 0:
            # max(1, ...) keeps "set" distinguishable from "unset" on fast clocks
            self.time_first_token_millsec = max(1, self._clock() - self.start_millsec)

    @property
    def time_thinking_millsec(self) -> int:
        if not self.time_first_content_millsec:
            return 0
        return self.time_first_content_millsec - self.start_millsec

    def snapshot(self, completion_tokens: int | None = None) -> Metrics:
        """Metrics as of now. completion_tokens is only passed on the final chunk."""
        elapsed = self._clock() - self.start_millsec
        return Metrics(
            completion_tokens=completion_tokens,
            time_completion_millsec=max(elapsed, self.time_first_token_millsec),
            time_first_token_millsec=self.time_first_token_millsec,
            time_thinking_millsec=self.time_thinking_millsec,
        )


def usage_from_response(raw_usage) -> Usage | None:
    """Normalize a LiteLLM usage object (or dict) into Usage."""
    if raw_usage is None:
        return None
    if isinstance(raw_usage, dict):
        get = raw_usage.get
    else:
        def get(key, default=None):
            return getattr(raw_usage, key, default)

    prompt = get("prompt_tokens", 0) or 0
    completion = get("completion_tokens", 0) or 0
    total = get("total_tokens", 0) or (prompt + completion)
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
