"""
toolloop entry point.

This file handles startup concerns (arg-parsing, logging) and either answers a single request or
launches the interactive shell.
"""

import argparse
import logging
import sys
from pathlib import Path

from toolloop.agent.loop import ToolLoop
from toolloop.agent.model_client import (
    available_model_clients,
    load_model_client,
)
from toolloop.client.cli import (
    DEFAULT_PREAMBLE,
    answer_once,
    run_cli,
)
from toolloop.config import settings
from toolloop.tools import default_registry
from toolloop.tools import builtin  # noqa: F401  # pylint: disable=unused-import

logger = logging.getLogger(__name__)

_SECRET_SETTINGS = {"OPENROUTER_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY"}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _init_logging(level: str) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        stream=sys.stderr,
    )
    # Keep per-request transport logs out of the way
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _read_preamble(value: str | None) -> str:
    if not value:
        return DEFAULT_PREAMBLE
    if value.startswith("@"):
        return Path(value[1:]).read_text(encoding="utf-8")
    return value


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for the toolloop application.

    With a request argument the request is answered once and the exit code reflects how the loop
    terminated (0 completed, 1 degraded, 2 model call failure).  Without one, an interactive shell
    is started.
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="Answer requests with an LLM tool-calling loop")
    parser.add_argument("request", nargs="?", help="Request to answer (omit for a shell)")
    parser.add_argument(
        "--client",
        choices=available_model_clients(),
        type=str.lower,
        default=settings.MODEL_CLIENT,
        help="Model client to use (default from env: %(default)s)",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=settings.MAX_ITERATIONS,
        help="Model calls allowed per request (default: %(default)s)",
    )
    parser.add_argument(
        "--preamble",
        default=None,
        help="System preamble text, or @path to read it from a file",
    )
    parser.add_argument(
        "--parallel-tools",
        action="store_true",
        default=settings.PARALLEL_TOOLS,
        help="Run the tool calls of one step concurrently",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error", "critical"],
        type=str.lower,
        default=settings.LOG_LEVEL,
        help="Logging level (default from env: %(default)s)",
    )
    args = parser.parse_args(argv)

    if args.max_iterations < 1:
        parser.error("--max-iterations must be at least 1")

    # Override log level setting with command-line argument
    settings.LOG_LEVEL = args.log_level
    _init_logging(settings.LOG_LEVEL)

    logger.info("Starting toolloop [%s client]", args.client)
    logger.debug("Settings: %s", settings.model_dump(exclude=_SECRET_SETTINGS))

    model = load_model_client(args.client)
    loop = ToolLoop(parallel_tools=args.parallel_tools)
    preamble = _read_preamble(args.preamble)

    if args.request:
        return answer_once(
            loop, args.request, preamble, default_registry, model, args.max_iterations
        )

    run_cli(loop, default_registry, model, preamble, args.max_iterations)
    return 0


if __name__ == "__main__":
    sys.exit(main())
