"""Prompt templates used by the completion pipeline."""

TOPIC_NAMING_PROMPT = (
    "Summarize the conversation into a title of at most 10 words in the "
    "language of the user. Do not use punctuation or special symbols. "
    "Output only the title."
)

TRANSLATE_PROMPT = (
    "You are a translation expert. Translate the user's text into "
    "{target_language}. Output only the translation, without explanations. "
    "Keep markdown formatting, code blocks and URLs unchanged."
)

SEARCH_SUMMARY_PROMPT = """You are a search engine optimization expert. Your task is to decide whether the
user's latest question needs a web search and, if it does, to rewrite it as a
standalone search query.

Rules:
1. If the question is small talk, a greeting, or can be answered without fresh
   information, answer with the question "not_needed".
2. If the user asks to summarize or read one or more URLs, answer with the
   question "summarize" and list the URLs in <links>.
3. Otherwise rewrite the question into a concise, self-contained search query
   in the language of the question, resolving references to the previous answer.

Always reply in exactly this XML format and nothing else:

<websearch>
  <question>
    query, "not_needed" or "summarize"
  </question>
  <links>
    optional URL, one per line
  </links>
</websearch>

Examples:

User: Hi, how are you?
<websearch>
  <question>
    not_needed
  </question>
</websearch>

User: Summarize https://example.com/article
<websearch>
  <question>
    summarize
  </question>
  <links>
    https://example.com/article
  </links>
</websearch>

User: What's the latest stable Python release?
<websearch>
  <question>
    latest stable Python release
  </question>
</websearch>
"""

TOOL_USE_PROMPT = """In this environment you have access to a set of tools you can use to answer the user's question.
You can use one tool per message, and will receive the result of that tool use in the user's response.
Use tools step by step, each tool use informed by the result of the previous one.

## Tool Use Formatting

Tool use is formatted using XML-style tags. The tool name is enclosed in <name></name> and the
arguments are a JSON object enclosed in <arguments></arguments>:

<tool_use>
  <name>{{tool_name}}</name>
  <arguments>{{json_arguments}}</arguments>
</tool_use>

The result of the tool use will be returned as a user message starting with "Here is the result of tool call".

## Available Tools

{available_tools}

## Tool Use Rules
1. Always use the right arguments for the tools. Never use variable names as the argument values.
2. Call a tool only when needed: if no tool is needed, answer the question directly.
3. If no tool call is needed, just answer the question directly without any <tool_use> block.
4. Never re-do a tool call that you previously did with the exact same parameters.

# User Instructions
{user_system_prompt}
"""
