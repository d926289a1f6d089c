"""Small general-purpose tools registered on the default registry."""

from typing import (
    Any,
    List,
)

from toolloop.tools import (
    ToolContext,
    register_tool,
)

MAX_FIBONACCI_INDEX = 90
NOTES_KEY = "notes"


@register_tool("echo")
def echo_tool(text: str) -> str:
    """Echo the input text back to the caller."""
    return text


@register_tool("add_numbers")
def add_numbers(a: float, b: float) -> float:
    """Return the sum of two numbers."""
    return a + b


@register_tool("reverse_string")
def reverse_string(text: str) -> str:
    """Return the text with its characters in reverse order."""
    return text[::-1]


@register_tool("calculate_fibonacci")
def calculate_fibonacci(n: int) -> List[int]:
    """Return the first n Fibonacci numbers (n between 1 and 90)."""
    if not 1 <= n <= MAX_FIBONACCI_INDEX:
        raise ValueError(f"n must be between 1 and {MAX_FIBONACCI_INDEX}, got {n}")
    sequence = [0, 1]
    while len(sequence) < n:
        sequence.append(sequence[-1] + sequence[-2])
    return sequence[:n]


@register_tool("remember")
def remember(key: str, value: Any, context: ToolContext) -> str:
    """Store a value under key for the rest of this request."""
    context.state.setdefault(NOTES_KEY, {})[key] = value
    return f"Stored '{key}'."


@register_tool("recall")
def recall(key: str, context: ToolContext) -> Any:
    """Return a value stored earlier in this request with 'remember'."""
    notes = context.state.get(NOTES_KEY, {})
    if key not in notes:
        raise KeyError(f"nothing stored under '{key}'")
    return notes[key]
