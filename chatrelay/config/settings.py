"""
chatrelay configuration.

Values come from the process environment and an optional .env file and
are validated by pydantic-settings. Nested sections take a double
underscore, e.g. LLM__API_KEY=... or WEBSEARCH__PROVIDER=searxng.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from chatrelay.llm.models import Assistant, AssistantSettings, MCPServer, Model, Provider
from chatrelay.llm.prompts import TOPIC_NAMING_PROMPT


class LLMSettings(BaseSettings):
    """Provider endpoint and sampling configuration."""

    provider_id: str = Field(
        default="openai",
        description="Provider id, e.g. 'openai', 'openrouter', 'zhipu', 'ollama'. "
                    "Used for capability detection and citation handling.",
    )
    provider_type: Literal["openai", "anthropic"] = Field(
        default="openai",
        description="Adapter family: any OpenAI-compatible endpoint, or Anthropic",
    )
    model: str = Field(default="gpt-4o-mini", description="Vendor model id (no routing prefix)")
    api_key: str = Field(default="", description="API key for the provider")
    api_host: str = Field(
        default="https://api.openai.com",
        description="Endpoint host. '/v1/' is appended for OpenAI-compatible hosts "
                    "unless the host ends with '/'.",
    )
    temperature: float = Field(default=0.7, description="Sampling temperature")
    top_p: float = Field(default=1.0, description="Nucleus sampling threshold")
    max_tokens: int | None = Field(default=None, description="Maximum tokens in response")
    context_count: int = Field(default=5, ge=0, description="Prior messages sent as context")
    stream_output: bool = Field(default=True, description="Stream the response")
    reasoning_effort: Literal["low", "medium", "high"] | None = Field(
        default=None, description="Reasoning effort for reasoning-capable models"
    )
    max_tool_rounds: int = Field(
        default=20, ge=1, description="Maximum tool-use rounds before giving up"
    )
    topic_naming_prompt: str = Field(
        default=TOPIC_NAMING_PROMPT, description="System prompt used to name conversations"
    )
    system_prompt: str = Field(default="", description="Assistant system prompt")

    model_config = SettingsConfigDict(env_prefix="LLM_")


class WebSearchSettings(BaseSettings):
    """External web search configuration."""

    enabled: bool = Field(default=False, description="Enable web search augmentation")
    provider: Literal["tavily", "searxng"] = Field(default="tavily", description="Search backend")
    api_key: str = Field(default="", description="API key (Tavily)")
    api_host: str = Field(
        default="",
        description="Search endpoint host. Required for SearXNG, optional for Tavily.",
    )
    enhance_mode: bool = Field(
        default=True,
        description="Ask the model whether and what to search before searching",
    )
    max_results: int = Field(default=5, ge=1, le=20, description="Results per search")
    search_with_time: bool = Field(
        default=True, description="Prefix queries with today's date"
    )
    overwrite: bool = Field(
        default=False,
        description="Use the search backend even for models with built-in web search",
    )

    model_config = SettingsConfigDict(env_prefix="WEBSEARCH_")


class ToolSettings(BaseSettings):
    """MCP tool-server configuration."""

    mcp_servers: list[MCPServer] = Field(
        default_factory=list,
        description="MCP servers as JSON, e.g. "
                    "TOOLS__MCP_SERVERS='[{\"id\": \"dice\", \"command\": \"node\", "
                    "\"args\": [\"dice/index.js\"]}]'",
    )

    model_config = SettingsConfigDict(env_prefix="TOOL_")


class Settings(BaseSettings):
    """Top-level configuration: logging plus the llm, websearch and tools sections."""

    # Runtime
    environment: Literal["development", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_file: Path | None = Field(default=None, description="Log file path")

    # Sub-configurations
    llm: LLMSettings = Field(default_factory=LLMSettings)
    websearch: WebSearchSettings = Field(default_factory=WebSearchSettings)
    tools: ToolSettings = Field(default_factory=ToolSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    def build_model(self) -> Model:
        return Model(id=self.llm.model, provider=self.llm.provider_id, name=self.llm.model)

    def build_provider(self) -> Provider:
        """Provider record for the configured endpoint, with its single model."""
        return Provider(
            id=self.llm.provider_id,
            type=self.llm.provider_type,
            name=self.llm.provider_id,
            api_key=self.llm.api_key,
            api_host=self.llm.api_host,
            models=[self.build_model()],
        )

    def build_assistant(self, enable_web_search: bool | None = None) -> Assistant:
        """
        Assistant for CLI / single-user sessions.

        Args:
            enable_web_search: Override for the assistant's web search flag.
                Defaults to websearch.enabled.
        """
        if enable_web_search is None:
            enable_web_search = self.websearch.enabled
        return Assistant(
            name="Default Assistant",
            prompt=self.llm.system_prompt,
            model=self.build_model(),
            settings=AssistantSettings(
                temperature=self.llm.temperature,
                top_p=self.llm.top_p,
                max_tokens=self.llm.max_tokens,
                context_count=self.llm.context_count,
                stream_output=self.llm.stream_output,
                reasoning_effort=self.llm.reasoning_effort,
            ),
            enable_web_search=enable_web_search,
        )


# Process-wide settings, created on first use
_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first call."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def load_settings(env_file: str | Path | None = None) -> Settings:
    """Reload the process-wide settings, reading env_file instead of ./.env when given."""
    global _settings
    _settings = Settings(_env_file=env_file) if env_file else Settings()
    return _settings
