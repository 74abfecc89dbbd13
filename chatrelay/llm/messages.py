"""
Message history filters.

Pure functions that pick the slice of a conversation sent to the model.
None of them mutate their input or raise; an empty input yields an empty
output.
"""

from __future__ import annotations

from chatrelay.llm.models import Message


def filter_context_messages(messages: list[Message], context_count: int | None = None) -> list[Message]:
    """
    Keep the messages after the last context-clear marker.

    When context_count is given, at most context_count + 2 trailing
    messages are considered (the pair being answered plus the history).
    """
    if context_count is not None:
        messages = messages[-(context_count + 2):]

    clear_index = None
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].type == "clear":
            clear_index = i
            break

    if clear_index is None:
        return list(messages)
    return list(messages[clear_index + 1:])


def filter_empty_messages(messages: list[Message]) -> list[Message]:
    """Drop messages with whitespace-only content and no attachments."""
    return [m for m in messages if m.content.strip() or m.files]


def filter_user_role_start_messages(messages: list[Message]) -> list[Message]:
    """Drop leading messages until the first user message."""
    for i, message in enumerate(messages):
        if message.role == "user":
            return list(messages[i:])
    return []


def filter_useful_messages(messages: list[Message]) -> list[Message]:
    """
    Collapse multiple assistant answers to the same question.

    When a user message has several assistant replies (regenerations), keep
    the one flagged use_for_context, falling back to the latest.
    """
    chosen: dict[str, Message] = {}
    for message in messages:
        if message.role != "assistant" or not message.ask_id:
            continue
        current = chosen.get(message.ask_id)
        if current is None or not current.use_for_context:
            chosen[message.ask_id] = message

    result: list[Message] = []
    for message in messages:
        if message.role == "assistant" and message.ask_id:
            if chosen[message.ask_id] is not message:
                continue
        result.append(message)
    return result


def filter_messages(messages: list[Message]) -> list[Message]:
    """Drop empty messages and context-clear markers."""
    return [m for m in filter_empty_messages(messages) if m.type != "clear"]


def filter_context_window(messages: list[Message], context_count: int) -> list[Message]:
    """
    Select the history window actually sent to the model.

    At most context_count + 2 trailing messages, no empty messages, starting
    with a user message, in the original order.
    """
    return filter_user_role_start_messages(
        filter_context_messages(filter_empty_messages(messages[-(context_count + 2):]))
    )
