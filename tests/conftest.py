"""Shared fakes for the test-suite."""

import json
from typing import (
    Any,
    Dict,
    List,
    Sequence,
)

import pytest

from toolloop.agent.model_client import ModelClient
from toolloop.core.schema import (
    Message,
    ToolDescriptor,
)
from toolloop.tools import ToolRegistry


class ScriptedModel(ModelClient):
    """Model client that replays canned replies; the last one repeats forever."""

    def __init__(self, replies: Sequence[Any]):
        if not replies:
            raise ValueError("ScriptedModel needs at least one reply")
        self.replies = list(replies)
        self.calls: List[List[Message]] = []
        self.tool_descriptions: List[List[ToolDescriptor]] = []

    def complete(
        self, messages: Sequence[Message], tool_descriptions: Sequence[ToolDescriptor]
    ) -> str:
        self.calls.append(list(messages))
        self.tool_descriptions.append(list(tool_descriptions))
        reply = self.replies[min(len(self.calls), len(self.replies)) - 1]
        if isinstance(reply, BaseException):
            raise reply
        return reply


def tool_step(*calls: Dict[str, Any]) -> str:
    """Wire text for a tool step."""
    return json.dumps({"step": "tool", "toolCalls": list(calls), "answer": None})


def final_step(answer: str, summary: Dict[str, Any] | None = None) -> str:
    """Wire text for a final step."""
    document: Dict[str, Any] = {"step": "final", "toolCalls": [], "answer": answer}
    if summary is not None:
        document["summary"] = summary
    return json.dumps(document)


@pytest.fixture
def registry() -> ToolRegistry:
    """A small registry with one well-behaved and one failing tool."""
    reg = ToolRegistry()

    @reg.tool("list_x")
    def list_x() -> List[str]:
        """List the x items."""
        return ["a", "b"]

    @reg.tool("boom")
    def boom() -> str:
        """Always fails."""
        raise RuntimeError("kaboom")

    @reg.tool("noop")
    def noop() -> str:
        """Do nothing."""
        return "ok"

    @reg.tool("add")
    def add(a: int, b: int) -> int:
        """Return the sum of two integers."""
        return a + b

    return reg
