"""Interactive shell that answers each line with one loop invocation."""

from __future__ import annotations

import logging
from typing import Tuple

from toolloop.agent.loop import ToolLoop
from toolloop.agent.model_client import (
    ModelCallError,
    ModelClient,
)
from toolloop.common import (
    AnsiColors,
    colored_print,
    reason_color,
)
from toolloop.core.schema import (
    LoopResult,
    TerminationReason,
)
from toolloop.tools import ToolRegistryProtocol

logger = logging.getLogger(__name__)

DEFAULT_PREAMBLE = "You are a helpful assistant that can call tools to answer the user."


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def print_result(result: LoopResult, show_tools: bool = True) -> None:
    """Print a loop result the way the shell shows it."""
    if show_tools:
        for outcome in result.tool_outcomes:
            color = AnsiColors.GREEN if outcome.ok else AnsiColors.RED
            colored_print(f"[{outcome.tool_name}] {outcome.render()}", color)

    color = reason_color(result.termination_reason)
    if result.termination_reason is TerminationReason.COMPLETED:
        colored_print(result.answer, color)
    else:
        colored_print(f"⚠️ {result.answer} [{result.termination_reason.value}]", color)
        if result.error:
            colored_print(result.error, AnsiColors.GREY)

    if result.summary is not None:
        colored_print(result.summary.to_markdown(), AnsiColors.BLUE)


def answer_once(
    loop: ToolLoop,
    request: str,
    preamble: str,
    tools: ToolRegistryProtocol,
    model: ModelClient,
    max_iterations: int,
) -> int:
    """Answer a single request and return a process exit code."""
    try:
        result = loop.run(request, preamble, tools, model, max_iterations)
    except ModelCallError as exc:
        colored_print(f"⚠️ Model call failed: {exc}", AnsiColors.RED)
        return 2
    print_result(result)
    return 0 if result.ok else 1


def run_cli(
    loop: ToolLoop,
    tools: ToolRegistryProtocol,
    model: ModelClient,
    preamble: str = DEFAULT_PREAMBLE,
    max_iterations: int = 10,
) -> None:
    """Run the interactive shell until the user exits."""
    colored_print(
        "\n🔮 toolloop shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN
    )
    while True:
        colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        answer_once(loop, user_msg, preamble, tools, model, max_iterations)
