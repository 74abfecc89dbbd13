"""
Tool-call resolver.

Tools are offered to the model through the system prompt rather than a
vendor's native function-calling API, so the same convention works for
every provider. The model invokes a tool by writing:

    <tool_use>
      <name>tool_id</name>
      <arguments>{"key": "value"}</arguments>
    </tool_use>

parse_and_call_tools() is the step function of the tool loop: it finds the
invocations in one round's output, runs them against the tool servers and
returns the follow-up messages to send back to the model. The loop itself
lives in the provider adapter.

Tool errors are passed back to the model as error content (not raised) so
it can react to the failure instead of aborting the turn.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from chatrelay.llm.models import (
    Chunk,
    MCPCallToolResponse,
    MCPTool,
    MCPToolResponse,
)
from chatrelay.llm.prompts import TOOL_USE_PROMPT

logger = logging.getLogger(__name__)

ToolCaller = Callable[[MCPTool, dict[str, Any]], Awaitable[MCPCallToolResponse]]
ChunkCallback = Callable[[Chunk], None]
MessageConverter = Callable[[MCPToolResponse, bool], dict[str, Any]]

TOOL_USE_REGEX = re.compile(
    r"<tool_use>\s*<name>(.*?)</name>\s*<arguments>(.*?)</arguments>\s*</tool_use>",
    re.DOTALL,
)


@dataclass
class ToolUse:
    """One tool invocation parsed from model output."""

    id: str
    tool: MCPTool
    arguments: dict[str, Any]


def build_system_prompt(user_system_prompt: str, tools: list[MCPTool]) -> str:
    """Append tool-use instructions and the tool catalogue to the system prompt."""
    if not tools:
        return user_system_prompt

    entries = []
    for tool in tools:
        entries.append(
            "<tool>\n"
            f"  <name>{tool.id}</name>\n"
            f"  <description>{tool.description}</description>\n"
            f"  <arguments>\n    {json.dumps(tool.input_schema)}\n  </arguments>\n"
            "</tool>"
        )
    available_tools = "<tools>\n\n" + "\n\n".join(entries) + "\n\n</tools>"

    return TOOL_USE_PROMPT.format(
        available_tools=available_tools,
        user_system_prompt=user_system_prompt or "",
    )


def parse_tool_use(content: str, tools: list[MCPTool], idx: int = 0) -> list[ToolUse]:
    """
    Extract tool invocations from model output.

    Invocations naming an unknown tool or carrying invalid JSON arguments
    are skipped with a warning.
    """
    if not content or not tools:
        return []

    by_id = {tool.id: tool for tool in tools}
    by_name = {tool.name: tool for tool in tools}

    uses: list[ToolUse] = []
    for i, match in enumerate(TOOL_USE_REGEX.finditer(content)):
        name = match.group(1).strip()
        raw_arguments = match.group(2).strip()

        tool = by_id.get(name) or by_name.get(name)
        if tool is None:
            logger.warning(f"Model requested unknown tool '{name}'")
            continue

        try:
            arguments = json.loads(raw_arguments) if raw_arguments else {}
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid arguments for tool '{name}': {e}")
            continue
        if not isinstance(arguments, dict):
            logger.warning(f"Arguments for tool '{name}' are not a JSON object")
            continue

        uses.append(ToolUse(id=f"{tool.id}-{idx}-{i}", tool=tool, arguments=arguments))
    return uses


def upsert_tool_response(
    results: list[MCPToolResponse],
    response: MCPToolResponse,
    on_chunk: ChunkCallback,
) -> None:
    """Insert or replace a tool response by id and emit the whole list."""
    for i, existing in enumerate(results):
        if existing.id == response.id:
            results[i] = response
            break
    else:
        results.append(response)

    on_chunk(Chunk(mcp_tool_response=list(results)))


async def _invoke(tool_use: ToolUse, call_tool: ToolCaller) -> MCPCallToolResponse:
    try:
        return await call_tool(tool_use.tool, tool_use.arguments)
    except Exception as e:
        logger.warning(f"Tool '{tool_use.tool.name}' failed: {e}")
        return MCPCallToolResponse(
            content=[{"type": "text", "text": f"Error calling tool {tool_use.tool.name}: {e}"}],
            is_error=True,
        )


async def parse_and_call_tools(
    content: str,
    tool_responses: list[MCPToolResponse],
    on_chunk: ChunkCallback,
    idx: int,
    convert_to_message: MessageConverter,
    tools: list[MCPTool],
    is_vision_model: bool,
    call_tool: ToolCaller,
) -> list[dict[str, Any]]:
    """
    Run every tool invocation found in one round of model output.

    Args:
        content: The model's text for this round
        tool_responses: Shared accumulator across rounds, updated in place
        on_chunk: Receives the accumulator after every status change
        idx: Round index, used to keep response ids unique
        convert_to_message: Vendor-specific tool-result-to-message converter
        tools: Tools offered to the model
        is_vision_model: Whether image results may be forwarded
        call_tool: Executes one tool against its server

    Returns:
        Follow-up messages for the next round; empty when no tool was invoked
    """
    tool_uses = parse_tool_use(content, tools, idx)
    if not tool_uses:
        return []

    for tool_use in tool_uses:
        upsert_tool_response(
            tool_responses,
            MCPToolResponse(
                id=tool_use.id,
                tool=tool_use.tool,
                arguments=tool_use.arguments,
                status="invoking",
            ),
            on_chunk,
        )

    results = await asyncio.gather(*(_invoke(tool_use, call_tool) for tool_use in tool_uses))

    messages: list[dict[str, Any]] = []
    for tool_use, result in zip(tool_uses, results):
        done = MCPToolResponse(
            id=tool_use.id,
            tool=tool_use.tool,
            arguments=tool_use.arguments,
            status="done",
            response=result,
        )
        upsert_tool_response(tool_responses, done, on_chunk)
        messages.append(convert_to_message(done, is_vision_model))
    return messages


# ---------------------------------------------------------------------------
# Result-to-message converters
# ---------------------------------------------------------------------------

def _result_header(response: MCPToolResponse) -> str:
    return f"Here is the result of tool call {response.id}:"


def _image_url_part(block: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{block.get('mimeType', 'image/png')};base64,{block['data']}"},
    }


def tool_response_to_openai_message(response: MCPToolResponse, is_vision_model: bool) -> dict[str, Any]:
    """
    Follow-up message for OpenAI-compatible endpoints.

    Content is a plain string unless images must be forwarded, since many
    OpenAI-compatible servers reject multi-part user content.
    """
    result = response.response or MCPCallToolResponse()
    if result.is_error:
        return {"role": "user", "content": json.dumps(result.content)}

    images = [b for b in result.content if b.get("type") == "image" and b.get("data")]
    text = f"{_result_header(response)}\n{json.dumps(result.content)}"
    if not (is_vision_model and images):
        return {"role": "user", "content": text}

    texts = [b for b in result.content if b.get("type") != "image"]
    parts: list[dict[str, Any]] = [
        {"type": "text", "text": f"{_result_header(response)}\n{json.dumps(texts)}"}
    ]
    parts.extend(_image_url_part(b) for b in images)
    return {"role": "user", "content": parts}


def tool_response_to_anthropic_message(response: MCPToolResponse, is_vision_model: bool) -> dict[str, Any]:
    """
    Follow-up message for Anthropic models: one content block per result block.
    """
    result = response.response or MCPCallToolResponse()
    if result.is_error:
        return {"role": "user", "content": json.dumps(result.content)}

    parts: list[dict[str, Any]] = [{"type": "text", "text": _result_header(response)}]
    if not is_vision_model:
        parts.append({"type": "text", "text": json.dumps(result.content)})
        return {"role": "user", "content": parts}

    for block in result.content:
        kind = block.get("type")
        if kind == "text":
            parts.append({"type": "text", "text": block.get("text") or "no content"})
        elif kind == "image":
            if block.get("data"):
                parts.append(_image_url_part(block))
            else:
                parts.append({"type": "text", "text": "no image data"})
        else:
            parts.append({"type": "text", "text": json.dumps(block)})
    return {"role": "user", "content": parts}
