"""Terminal and logging helpers shared by the loop and the shell."""

from enum import Enum
from typing import Any

from toolloop.core.schema import TerminationReason


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    GREY = "\033[90m"


_REASON_COLORS = {
    TerminationReason.COMPLETED: AnsiColors.YELLOW,
    TerminationReason.ITERATION_BUDGET_EXCEEDED: AnsiColors.RED,
    TerminationReason.PROTOCOL_FAILURE: AnsiColors.RED,
}


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text wrapped in an ANSI color and reset sequence.

    Args:
        text: The text to print
        color: One of :class:`AnsiColors`
        args: Passed on to ``print``
        kwargs: Passed on to ``print`` (``end=""`` for prompts)
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)


def reason_color(reason: TerminationReason) -> AnsiColors:
    """Color used to show an answer that ended with *reason*."""
    return _REASON_COLORS.get(reason, AnsiColors.RED)


def truncate(text: str, limit: int = 200) -> str:
    """Shorten *text* for log lines, marking how much was cut."""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... [{len(text) - limit} more chars]"
