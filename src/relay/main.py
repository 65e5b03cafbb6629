"""
Relay entry point.

This file handles startup concerns (arg-parsing, env setup, logging), loads the requested agent and
either runs a single prompt or starts an interactive chat.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from relay.agent.catalog import (
    AgentCatalog,
    AgentLoadError,
    AgentNotFoundError,
    build_tools_prompt,
)
from relay.agent.runner import Runner
from relay.client.print_writer import PrintWriter
from relay.client.spinner import ToolProgress
from relay.common import (
    AnsiColors,
    colored_print,
)
from relay.config import settings
from relay.core.schema import AgentDefinition
from relay.core.scope import Scope
from relay.services.inmemory import InMemorySessionServices
from relay.services.plugins import PluginCatalog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _fail(message: str) -> None:
    colored_print(message, AnsiColors.RED, file=sys.stderr)
    sys.exit(1)


def _apply_overrides(
    agent: AgentDefinition, args: argparse.Namespace, catalog: AgentCatalog
) -> AgentDefinition:
    """Return *agent* with the command-line overrides applied."""
    update: Dict[str, Any] = {}
    if args.model:
        update["model"] = args.model
    if args.provider:
        update["provider"] = args.provider
    if args.system:
        update["system_prompt"] = args.system
    if args.tools is not None:
        tools = [name.strip() for name in args.tools.split(",") if name.strip()]
        update["allowed_tools"] = tools
        update["tools_prompt"] = build_tools_prompt(tools, catalog.delegatable_agents())
    return agent.model_copy(update=update) if update else agent


def _read_prompt(words: List[str]) -> str:
    if words:
        return " ".join(words).strip()
    if not sys.stdin.isatty():
        return sys.stdin.read().strip()
    return ""


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: Optional[List[str]] = None) -> None:
    """
    Main entry point for the Relay CLI.

    ``run`` mode (the default when a prompt is given) sends one prompt and prints the result;
    ``chat`` mode starts an interactive session with the agent.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Run a Relay agent")
    parser.add_argument("prompt", nargs="*", help="Prompt to send (read from stdin if piped)")
    parser.add_argument(
        "--mode",
        choices=["chat", "run"],
        type=str.lower,
        default=None,
        help="Interactive chat or a single run (default: run when a prompt is given)",
    )
    parser.add_argument(
        "--agent",
        default=settings.DEFAULT_AGENT,
        help="Agent handle to use (default: %(default)s)",
    )
    parser.add_argument("--model", help="Override the agent's model")
    parser.add_argument("--provider", help="Override the model provider (openai, anthropic, ...)")
    parser.add_argument("--system", help="Replace the agent's system prompt")
    parser.add_argument("--tools", help="Comma-separated list of allowed tools")
    parser.add_argument(
        "--attach",
        action="append",
        default=[],
        metavar="PATH",
        help="Attach a file to the prompt (repeatable, run mode only)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level
    _init_logging(settings.LOG_LEVEL)

    # Ensure the data directory exists and is writable
    data_dir = Path(settings.DATA_DIR).expanduser()
    data_dir.mkdir(parents=True, exist_ok=True)
    if not data_dir.is_dir() or not os.access(data_dir, os.W_OK):
        logger.error("Data directory is not writable: %s", data_dir)
        sys.exit(1)

    plugins = PluginCatalog()
    catalog = AgentCatalog(plugins=plugins)
    try:
        agent = _apply_overrides(catalog.load(args.agent), args, catalog)
    except (AgentNotFoundError, AgentLoadError) as exc:
        _fail(f"Error: {exc}")
        return

    mode = args.mode or ("run" if args.prompt or not sys.stdin.isatty() else "chat")
    logger.info("Starting Relay [%s mode] with %s", mode, agent.handle)
    logger.debug("Settings: %s", settings.model_dump())

    runner = Runner(
        services=InMemorySessionServices(),
        catalog=catalog,
        plugins=plugins,
        progress=ToolProgress(),
    )

    if mode == "chat":
        # Lazy import to keep the run path free of the interactive client
        from relay.client.cli import run_cli  # pylint: disable=import-outside-toplevel

        run_cli(runner, agent)
        runner.supervisor.shutdown()
        return

    prompt = _read_prompt(args.prompt)
    if not prompt:
        parser.error("a prompt is required in run mode")
    if agent.has_input_schema():
        try:
            agent.validate_input(prompt)
        except ValueError as exc:
            _fail(f"Error: {exc}")

    writer = PrintWriter()
    try:
        runner.text(Scope.background(), agent, prompt, args.attach, writer)
    except KeyboardInterrupt:
        writer.write_error(RuntimeError("interrupted"))
        sys.exit(130)
    except Exception as exc:  # pylint: disable=broad-except
        # The writer has already shown the error
        logger.debug("Run failed", exc_info=exc)
        sys.exit(1)
    finally:
        runner.wait_for_background()
        runner.supervisor.shutdown()


if __name__ == "__main__":
    main()
