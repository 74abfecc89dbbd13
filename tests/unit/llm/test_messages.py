"""
Unit tests for the message history filters.

Tests cover:
- Context window size (C + 2 trailing messages)
- Empty message removal
- Leading non-user message removal
- Context-clear markers
- Regenerated answer collapsing
"""

import pytest

from chatrelay.llm.messages import (
    filter_context_messages,
    filter_context_window,
    filter_empty_messages,
    filter_messages,
    filter_useful_messages,
    filter_user_role_start_messages,
)
from chatrelay.llm.models import FileRef, FileType, Message


def _user(content: str = "question", **kwargs) -> Message:
    return Message(role="user", content=content, **kwargs)


def _assistant(content: str = "answer", **kwargs) -> Message:
    return Message(role="assistant", content=content, **kwargs)


def _conversation(turns: int) -> list[Message]:
    messages = []
    for i in range(turns):
        question = _user(f"q{i}")
        messages.append(question)
        messages.append(_assistant(f"a{i}", ask_id=question.id))
    return messages


# ---------------------------------------------------------------------------
# Context window
# ---------------------------------------------------------------------------

class TestFilterContextWindow:
    """Tests for the composed history window."""

    @pytest.mark.parametrize("context_count", [0, 1, 2, 5, 10])
    def test_at_most_context_count_plus_two(self, context_count):
        messages = _conversation(10) + [_user("latest")]
        result = filter_context_window(messages, context_count)
        assert len(result) <= context_count + 2

    @pytest.mark.parametrize("context_count", [0, 1, 2, 3])
    def test_starts_with_user_message(self, context_count):
        messages = _conversation(5) + [_user("latest")]
        result = filter_context_window(messages, context_count)
        assert result[0].role == "user"

    def test_keeps_trailing_messages_in_order(self):
        messages = _conversation(3) + [_user("latest")]
        result = filter_context_window(messages, 3)
        assert [m.content for m in result] == ["q1", "a1", "q2", "a2", "latest"]

    def test_drops_empty_messages(self):
        messages = [_user("q0"), _assistant("   "), _user("q1")]
        result = filter_context_window(messages, 5)
        assert [m.content for m in result] == ["q0", "q1"]

    def test_window_without_user_message_is_empty(self):
        messages = [_assistant("a0"), _assistant("a1")]
        assert filter_context_window(messages, 5) == []

    def test_empty_input(self):
        assert filter_context_window([], 5) == []

    def test_does_not_mutate_input(self):
        messages = _conversation(4)
        snapshot = list(messages)
        filter_context_window(messages, 1)
        assert messages == snapshot


# ---------------------------------------------------------------------------
# Individual filters
# ---------------------------------------------------------------------------

class TestFilterContextMessages:
    """Tests for context-clear handling."""

    def test_keeps_messages_after_last_clear_marker(self):
        messages = [
            _user("old"),
            Message(role="user", type="clear"),
            _user("kept"),
            _assistant("kept too"),
        ]
        result = filter_context_messages(messages)
        assert [m.content for m in result] == ["kept", "kept too"]

    def test_without_marker_returns_everything(self):
        messages = _conversation(2)
        assert filter_context_messages(messages) == messages

    def test_context_count_limits_window(self):
        messages = _conversation(5)
        assert len(filter_context_messages(messages, 1)) == 3


class TestFilterEmptyMessages:
    """Tests for empty-content removal."""

    def test_whitespace_only_is_dropped(self):
        assert filter_empty_messages([_user(" \n\t ")]) == []

    def test_empty_message_with_file_is_kept(self):
        message = _user("", files=[FileRef(path="/tmp/a.png", type=FileType.IMAGE)])
        assert filter_empty_messages([message]) == [message]


class TestFilterUserRoleStart:
    """Tests for leading non-user removal."""

    def test_drops_leading_assistant_messages(self):
        messages = [_assistant("greeting"), _assistant("more"), _user("q"), _assistant("a")]
        result = filter_user_role_start_messages(messages)
        assert [m.content for m in result] == ["q", "a"]


class TestFilterUsefulMessages:
    """Tests for regenerated answer collapsing."""

    def test_keeps_latest_answer_by_default(self):
        question = _user("q")
        first = _assistant("first", ask_id=question.id)
        second = _assistant("second", ask_id=question.id)
        result = filter_useful_messages([question, first, second])
        assert [m.content for m in result] == ["q", "second"]

    def test_prefers_answer_flagged_for_context(self):
        question = _user("q")
        first = _assistant("first", ask_id=question.id, use_for_context=True)
        second = _assistant("second", ask_id=question.id)
        result = filter_useful_messages([question, first, second])
        assert [m.content for m in result] == ["q", "first"]

    def test_answers_without_ask_id_are_kept(self):
        messages = [_assistant("preset", is_preset=True), _user("q")]
        assert filter_useful_messages(messages) == messages


class TestFilterMessages:
    """Tests for the summary/suggestion filter."""

    def test_drops_empty_and_clear_markers(self):
        messages = [_user("q"), Message(role="user", type="clear", content="-"), _assistant("")]
        assert [m.content for m in filter_messages(messages)] == ["q"]
