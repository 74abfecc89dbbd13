"""
ChatRelay CLI entry point.

Provides a command-line interface for chatting with the configured provider
and for the auxiliary provider operations (checks, model listing,
translation, conversation titles).
"""

import argparse
import asyncio
import sys
from pathlib import Path

from chatrelay import __version__
from chatrelay.config.logging import get_logger, setup_logging
from chatrelay.config.settings import Settings, load_settings
from chatrelay.llm.models import ConfigurationError, Message
from chatrelay.llm.orchestrator import CompletionOrchestrator
from chatrelay.llm.runtime import ResponseChannel, RuntimeState
from chatrelay.tools.mcp_service import MCPService
from chatrelay.websearch.service import WebSearchService


def create_parser() -> argparse.ArgumentParser:
    """Create and configure argument parser."""
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="Streaming LLM chat with web search and MCP tools",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"ChatRelay {__version__}",
    )

    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to .env file (default: .env in current directory)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override logging level from config",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("config", help="Show current configuration")

    chat_parser = subparsers.add_parser("chat", help="Ask a question and stream the answer")
    chat_parser.add_argument("question", help='Question to ask, e.g. "What is new in Python 3.13?"')
    chat_parser.add_argument(
        "--web-search",
        action="store_true",
        help="Augment the answer with web search results (requires WEBSEARCH__ settings)",
    )
    chat_parser.add_argument(
        "--no-stream",
        action="store_true",
        help="Request the answer in one piece instead of streaming it",
    )
    chat_parser.add_argument(
        "--mcp",
        action="append",
        default=[],
        metavar="SERVER_ID",
        help="Enable tools of a configured MCP server (repeatable)",
    )

    subparsers.add_parser("check", help="Send a minimal request to verify the provider settings")
    subparsers.add_parser("models", help="List the models the provider offers")

    translate_parser = subparsers.add_parser("translate", help="Translate a text")
    translate_parser.add_argument("text", help="Text to translate")
    translate_parser.add_argument(
        "--language",
        default="English",
        help="Target language (default: English)",
    )

    title_parser = subparsers.add_parser("title", help="Name a question/answer exchange")
    title_parser.add_argument("question", help="The user's question")
    title_parser.add_argument("answer", help="The assistant's answer")

    return parser


def build_orchestrator(settings: Settings, mcp: MCPService | None = None) -> CompletionOrchestrator:
    """Wire an orchestrator from settings."""
    web_search = WebSearchService(settings.websearch) if settings.websearch.enabled else None
    return CompletionOrchestrator(
        provider=settings.build_provider(),
        runtime=RuntimeState(),
        mcp=mcp,
        web_search=web_search,
        max_tool_rounds=settings.llm.max_tool_rounds,
        topic_naming_prompt=settings.llm.topic_naming_prompt,
    )


def cmd_config(settings: Settings) -> int:
    """Show current configuration."""
    logger = get_logger(__name__)

    logger.info("\n=== ChatRelay Configuration ===\n")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Log Level: {settings.log_level}")
    logger.info(f"Log File: {settings.log_file or 'None (console only)'}")
    logger.info(f"\nProvider: {settings.llm.provider_id} ({settings.llm.provider_type})")
    logger.info(f"API Host: {settings.llm.api_host}")
    logger.info(f"API Key: {'Set' if settings.llm.api_key else 'Not set'}")
    logger.info(f"Model: {settings.llm.model}")
    logger.info(f"Temperature: {settings.llm.temperature}  Top-p: {settings.llm.top_p}")
    logger.info(f"Max Tokens: {settings.llm.max_tokens or 'default'}")
    logger.info(f"Context Count: {settings.llm.context_count}")
    logger.info(f"Reasoning Effort: {settings.llm.reasoning_effort or 'None'}")
    logger.info(f"Max Tool Rounds: {settings.llm.max_tool_rounds}")
    logger.info(f"\nWeb Search: {'Enabled' if settings.websearch.enabled else 'Disabled'}")
    logger.info(f"  Provider: {settings.websearch.provider}")
    logger.info(f"  Enhance Mode: {settings.websearch.enhance_mode}")
    logger.info(f"  Max Results: {settings.websearch.max_results}")
    logger.info(f"\nMCP Servers: {len(settings.tools.mcp_servers)}")
    for server in settings.tools.mcp_servers:
        logger.info(f"  {server.id}: {server.command} {' '.join(server.args)}")

    return 0


async def cmd_chat(args, settings: Settings) -> int:
    """
    Ask one question and stream the answer to stdout.

    The orchestrator writes message snapshots into a ResponseChannel which
    this command drains while the completion runs.
    """
    logger = get_logger(__name__)

    servers = {server.id: server for server in settings.tools.mcp_servers}
    unknown = [server_id for server_id in args.mcp if server_id not in servers]
    if unknown:
        logger.error(f"Unknown MCP server(s): {', '.join(unknown)}")
        return 1

    assistant = settings.build_assistant(enable_web_search=args.web_search or None)
    if args.no_stream:
        assistant.settings.stream_output = False

    question = Message(
        role="user",
        content=args.question,
        assistant_id=assistant.id,
        enabled_mcps=[servers[server_id] for server_id in args.mcp],
    )
    reply = Message(role="assistant", assistant_id=assistant.id, ask_id=question.id, status="pending")

    async with MCPService() as mcp:
        orchestrator = build_orchestrator(settings, mcp=mcp)
        channel = ResponseChannel()

        async def produce() -> Message:
            try:
                return await orchestrator.fetch_chat_completion(reply, [question], assistant, channel.send)
            finally:
                channel.close()

        task = asyncio.create_task(produce())

        shown = ""
        async for snapshot in channel:
            if snapshot.status == "searching":
                logger.info("Searching the web...")
            if snapshot.content.startswith(shown):
                print(snapshot.content[len(shown):], end="", flush=True)
                shown = snapshot.content

        try:
            final = await task
        except ConfigurationError as e:
            logger.error(str(e))
            return 1

    print()

    if final.metadata.web_search and final.metadata.web_search.results:
        print("\n--- Sources ---")
        for i, result in enumerate(final.metadata.web_search.results, start=1):
            print(f"  [{i}] {result.title} {result.url}")

    if final.metadata.mcp_tools:
        print("\n--- Tool Calls ---")
        for response in final.metadata.mcp_tools:
            failed = " (error)" if response.response and response.response.is_error else ""
            print(f"  {response.tool.name} {response.arguments}{failed}")

    if final.status == "error":
        print(f"\nError: {(final.error or {}).get('message')}", file=sys.stderr)
        return 1

    if final.usage:
        print(f"\nTokens: {final.usage.total_tokens} "
              f"(prompt {final.usage.prompt_tokens} "
              f"+ completion {final.usage.completion_tokens})")
    if final.metrics:
        print(f"First token: {final.metrics.time_first_token_millsec} ms, "
              f"total: {final.metrics.time_completion_millsec} ms")
    return 0


async def cmd_check(settings: Settings) -> int:
    """Verify the provider settings with a minimal request."""
    logger = get_logger(__name__)

    orchestrator = build_orchestrator(settings)
    result = await orchestrator.check_api(settings.build_provider(), settings.build_model())
    if not result.valid:
        logger.error(f"Check failed: {result.error or 'empty response'}")
        return 1

    print(f"OK: {settings.llm.provider_id}/{settings.llm.model} is reachable")
    return 0


async def cmd_models(settings: Settings) -> int:
    """List the provider's models."""
    orchestrator = build_orchestrator(settings)
    models = await orchestrator.fetch_models()
    if not models:
        print("No models found.")
        return 1

    for model in sorted(models, key=lambda m: m.id):
        group = f"  ({model.group})" if model.group else ""
        print(f"{model.id}{group}")
    return 0


async def cmd_translate(args, settings: Settings) -> int:
    """Translate a text with the configured model."""
    logger = get_logger(__name__)

    orchestrator = build_orchestrator(settings)
    message = Message(role="user", content=args.text)

    try:
        text = await orchestrator.fetch_translate(
            message,
            settings.build_assistant(enable_web_search=False),
            target_language=args.language,
        )
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    if not text:
        logger.error("Translation failed")
        return 1

    print(text)
    return 0


async def cmd_title(args, settings: Settings) -> int:
    """Print a short title for a question/answer exchange."""
    orchestrator = build_orchestrator(settings)
    question = Message(role="user", content=args.question)
    answer = Message(role="assistant", content=args.answer, ask_id=question.id)

    title = await orchestrator.fetch_messages_summary([question, answer], settings.build_assistant())
    if not title:
        print("Could not generate a title.", file=sys.stderr)
        return 1

    print(title)
    return 0


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    # Load settings
    try:
        settings = load_settings(env_file=args.env_file)
    except Exception as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        return 1

    # Override log level if specified
    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings)

    # Execute command
    if args.command == "config":
        return cmd_config(settings)
    elif args.command == "chat":
        return asyncio.run(cmd_chat(args, settings))
    elif args.command == "check":
        return asyncio.run(cmd_check(settings))
    elif args.command == "models":
        return asyncio.run(cmd_models(settings))
    elif args.command == "translate":
        return asyncio.run(cmd_translate(args, settings))
    elif args.command == "title":
        return asyncio.run(cmd_title(args, settings))
    else:
        # Default: show help
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
