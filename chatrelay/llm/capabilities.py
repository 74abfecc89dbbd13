"""
Model capability detection.

Explicit flags on a Model win; otherwise capabilities are inferred from the
model id and provider, the same way the vendors name their models.
"""

from __future__ import annotations

import re
from typing import Any

from chatrelay.llm.models import Assistant, Model

REASONING_REGEX = re.compile(
    r"^(o\d+(?:-[\w-]+)?)$|reasoner|thinking|deepseek-r1|qwq|qvq|"
    r"claude-3[.-]7-sonnet|claude-(?:sonnet|opus)-4|gemini-2\.\d-flash-thinking|-r\d",
    re.IGNORECASE,
)

VISION_REGEX = re.compile(
    r"gpt-4o|gpt-4-turbo(?!-preview)|gpt-4-vision|gpt-4\.1|gpt-4\.5|chatgpt-4o|"
    r"^o1(?!-mini)|^o3(?!-mini)|claude-3|claude-sonnet-4|claude-opus-4|gemini|"
    r"llava|moondream|minicpm-v|pixtral|qwen.*-vl|qvq|glm-4v|internvl|llama-?3\.2.*vision|"
    r"grok-vision|step-1v|yi-vision|deepseek-vl",
    re.IGNORECASE,
)

NOT_VISION_REGEX = re.compile(r"embed|rerank|audio|tts|whisper", re.IGNORECASE)

OPENAI_SEARCH_MODELS = ("gpt-4o-search-preview", "gpt-4o-mini-search-preview")

ZHIPU_SEARCH_REGEX = re.compile(r"^glm-4", re.IGNORECASE)
DASHSCOPE_SEARCH_REGEX = re.compile(r"^qwen-(turbo|max|plus)", re.IGNORECASE)


def is_reasoning_model(model: Model | None) -> bool:
    if model is None:
        return False
    if model.reasoning is not None:
        return model.reasoning
    return bool(REASONING_REGEX.search(model.id))


def is_vision_model(model: Model | None) -> bool:
    if model is None:
        return False
    if model.vision is not None:
        return model.vision
    if NOT_VISION_REGEX.search(model.id):
        return False
    return bool(VISION_REGEX.search(model.id))


def is_claude_thinking_model(model: Model) -> bool:
    """Anthropic models that accept an extended-thinking budget."""
    return bool(re.search(r"claude-3[.-]7-sonnet|claude-(sonnet|opus)-4", model.id, re.IGNORECASE))


def is_openai_web_search(model: Model | None) -> bool:
    return model is not None and any(name in model.id for name in OPENAI_SEARCH_MODELS)


def is_zhipu_model(model: Model | None) -> bool:
    return model is not None and model.provider == "zhipu"


def is_hunyuan_search_model(model: Model | None) -> bool:
    return model is not None and model.provider == "hunyuan" and model.id != "hunyuan-lite"


def is_openrouter_model(model: Model | None) -> bool:
    return model is not None and model.provider == "openrouter"


def is_web_search_model(model: Model | None) -> bool:
    """Whether the vendor can search the web itself for this model."""
    if model is None:
        return False
    if model.provider in ("perplexity", "openrouter"):
        return True
    if is_openai_web_search(model) or is_hunyuan_search_model(model):
        return True
    if model.provider == "zhipu":
        return bool(ZHIPU_SEARCH_REGEX.search(model.id))
    if model.provider == "dashscope":
        return bool(DASHSCOPE_SEARCH_REGEX.search(model.id))
    return False


def get_web_search_params(assistant: Assistant, model: Model | None) -> dict[str, Any]:
    """
    Request parameters that switch on the vendor's native web search.

    Returns an empty dict when the assistant has web search disabled or the
    vendor has no native search for this model.
    """
    if model is None or not assistant.enable_web_search or not is_web_search_model(model):
        return {}

    if is_hunyuan_search_model(model):
        return {"enable_enhancement": True, "citation": True, "search_info": True}

    if model.provider == "dashscope":
        return {"enable_search": True, "search_options": {"forced_search": True}}

    if is_openai_web_search(model):
        return {"web_search_options": {}}

    if model.provider == "openrouter":
        return {"plugins": [{"id": "web"}]}

    if is_zhipu_model(model):
        return {
            "tools": [
                {
                    "type": "web_search",
                    "web_search": {"enable": True, "search_result": True},
                }
            ]
        }

    return {}


def has_native_web_search(assistant: Assistant, model: Model | None) -> bool:
    if model is None:
        return False
    return bool(get_web_search_params(assistant, model)) or is_openai_web_search(model) or (
        model.provider == "perplexity"
    )
