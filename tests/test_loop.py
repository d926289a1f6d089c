"""End-to-end tests for the orchestration loop, driven by a scripted model."""

import time
from typing import Sequence

import pytest
from conftest import (
    ScriptedModel,
    final_step,
    tool_step,
)

from toolloop.agent import loop as loop_module
from toolloop.agent.loop import (
    BUDGET_EXCEEDED_ANSWER,
    PROTOCOL_FAILURE_ANSWER,
    ToolLoop,
)
from toolloop.agent.model_client import (
    ModelCallError,
    ModelCallTimeout,
    ModelClient,
)
from toolloop.agent.prompts import PromptBuilder
from toolloop.core.schema import (
    Message,
    Role,
    TerminationReason,
    ToolDescriptor,
)
from toolloop.protocol.step_codec import FEEDBACK_HEADER
from toolloop.tools import (
    ToolRegistry,
    default_registry,
)
from toolloop.tools import builtin  # noqa: F401  # pylint: disable=unused-import

PREAMBLE = "You help people manage their lists."


def _loop(**kwargs) -> ToolLoop:
    kwargs.setdefault("model_timeout", 5.0)
    kwargs.setdefault("correction_attempts", 0)
    kwargs.setdefault("parallel_tools", False)
    return ToolLoop(**kwargs)


# ---------------------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------------------
def test_one_tool_round_then_final(registry: ToolRegistry) -> None:
    """One tool step followed by a final step yields two model calls and one raw output."""

    model = ScriptedModel(
        [
            tool_step({"name": "list_x", "arguments": {}}),
            final_step("Found a and b.", {"title": "t", "total_items": 2}),
        ]
    )
    result = _loop().run("What is in x?", PREAMBLE, registry, model, max_iterations=5)

    assert len(model.calls) == 2
    assert result.termination_reason is TerminationReason.COMPLETED
    assert result.ok
    assert result.answer == "Found a and b."
    assert result.raw_tool_outputs == ['["a","b"]']
    assert result.summary is not None and result.summary.title == "t"
    assert result.summary.total_items == 2
    assert result.iterations == 2
    assert result.error is None


def test_prose_reply_completes_immediately(registry: ToolRegistry) -> None:
    model = ScriptedModel(["Nothing to look up, the answer is 4."])
    result = _loop().run("2+2?", PREAMBLE, registry, model, max_iterations=3)

    assert result.ok
    assert result.answer == "Nothing to look up, the answer is 4."
    assert result.raw_tool_outputs == []
    assert result.summary is None
    assert len(model.calls) == 1


def test_initial_prompt(registry: ToolRegistry) -> None:
    """The first call sees the system prompt with every tool, then the user request."""

    model = ScriptedModel([final_step("hi")])
    _loop().run("Hello", PREAMBLE, registry, model, max_iterations=1)

    first = model.calls[0]
    assert [m.role for m in first] == [Role.SYSTEM, Role.USER]
    assert first[0].content.startswith(PREAMBLE)
    for name in ("list_x", "boom", "noop", "add"):
        assert f"- {name}(" in first[0].content
    assert first[1].content == "Hello"
    assert model.tool_descriptions[0] == registry.describe()


def test_conversation_grows_with_reply_and_feedback(registry: ToolRegistry) -> None:
    """The raw assistant reply and the encoded tool results are appended between calls."""

    reply = tool_step({"name": "add", "arguments": {"a": 2, "b": 3}})
    model = ScriptedModel([reply, final_step("5")])
    _loop().run("2+3?", PREAMBLE, registry, model, max_iterations=3)

    second = model.calls[1]
    assert len(second) == 4
    assert second[2] == Message.assistant(reply)
    assert second[3] == Message.user(f"{FEEDBACK_HEADER}\nTOOL_RESULT add: 5")


# ---------------------------------------------------------------------------
# Tool failures are data
# ---------------------------------------------------------------------------
def test_failed_call_does_not_stop_the_others(registry: ToolRegistry) -> None:
    model = ScriptedModel(
        [
            tool_step(
                {"name": "list_x", "arguments": {}},
                {"name": "boom", "arguments": {}},
                {"name": "noop", "arguments": {}},
            ),
            final_step("done"),
        ]
    )
    result = _loop().run("go", PREAMBLE, registry, model, max_iterations=3)

    assert result.ok
    assert result.raw_tool_outputs[0] == '["a","b"]'
    assert result.raw_tool_outputs[1].startswith("ERROR: ")
    assert "kaboom" in result.raw_tool_outputs[1]
    assert result.raw_tool_outputs[2] == "ok"
    assert [o.ok for o in result.tool_outcomes] == [True, False, True]

    feedback = model.calls[1][-1].content.splitlines()
    assert feedback[0] == FEEDBACK_HEADER
    assert feedback[1] == 'TOOL_RESULT list_x: ["a","b"]'
    assert feedback[2].startswith("TOOL_RESULT boom: ERROR: ")
    assert feedback[3] == "TOOL_RESULT noop: ok"


def test_unknown_tool_is_reported_to_the_model(registry: ToolRegistry) -> None:
    model = ScriptedModel([tool_step({"name": "nope", "arguments": {}}), final_step("sorry")])
    result = _loop().run("go", PREAMBLE, registry, model, max_iterations=3)

    assert result.ok
    assert result.raw_tool_outputs == ["ERROR: Tool 'nope' is not registered."]


def test_bad_arguments_are_reported_to_the_model(registry: ToolRegistry) -> None:
    model = ScriptedModel(
        [tool_step({"name": "add", "arguments": {"a": "x"}}), final_step("sorry")]
    )
    result = _loop().run("go", PREAMBLE, registry, model, max_iterations=3)

    assert result.raw_tool_outputs[0].startswith("ERROR: Invalid arguments for tool 'add'")


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------
def test_iteration_budget(registry: ToolRegistry) -> None:
    """A model that never finishes is called exactly max_iterations times."""

    model = ScriptedModel([tool_step({"name": "noop", "arguments": {}})])
    result = _loop().run("loop forever", PREAMBLE, registry, model, max_iterations=3)

    assert len(model.calls) == 3
    assert result.termination_reason is TerminationReason.ITERATION_BUDGET_EXCEEDED
    assert not result.ok
    assert result.answer == BUDGET_EXCEEDED_ANSWER.format(max_iterations=3)
    assert result.raw_tool_outputs == ["ok", "ok", "ok"]
    assert result.iterations == 3


def test_protocol_failure(registry: ToolRegistry) -> None:
    model = ScriptedModel(['{"step": "tool", "toolCalls": [], "answer": null}'])
    result = _loop().run("go", PREAMBLE, registry, model, max_iterations=5)

    assert len(model.calls) == 1
    assert result.termination_reason is TerminationReason.PROTOCOL_FAILURE
    assert result.answer == PROTOCOL_FAILURE_ANSWER
    assert result.error is not None and result.error.startswith("protocol_violation")
    assert result.summary is None


def test_protocol_failure_keeps_earlier_outputs(registry: ToolRegistry) -> None:
    model = ScriptedModel([tool_step({"name": "noop", "arguments": {}}), "{broken"])
    result = _loop().run("go", PREAMBLE, registry, model, max_iterations=5)

    assert result.termination_reason is TerminationReason.PROTOCOL_FAILURE
    assert result.raw_tool_outputs == ["ok"]
    assert result.error is not None and result.error.startswith("unrecoverable")


def test_correction_attempt(registry: ToolRegistry) -> None:
    """With corrections enabled an unreadable reply is answered with a correction request."""

    model = ScriptedModel(["{broken", final_step("fixed")])
    result = _loop(correction_attempts=1).run("go", PREAMBLE, registry, model, max_iterations=5)

    assert result.ok
    assert result.answer == "fixed"
    assert result.iterations == 2
    second = model.calls[1]
    assert second[-2] == Message.assistant("{broken")
    assert second[-1].content == PromptBuilder.CORRECTION_PROMPT


def test_corrections_count_against_the_budget(registry: ToolRegistry) -> None:
    model = ScriptedModel(["{broken"])
    result = _loop(correction_attempts=5).run("go", PREAMBLE, registry, model, max_iterations=2)

    assert len(model.calls) == 2
    assert result.termination_reason is TerminationReason.PROTOCOL_FAILURE


def test_budget_must_be_positive(registry: ToolRegistry) -> None:
    model = ScriptedModel([final_step("never")])
    with pytest.raises(ValueError):
        _loop().run("go", PREAMBLE, registry, model, max_iterations=0)
    assert model.calls == []


# ---------------------------------------------------------------------------
# Model failures propagate
# ---------------------------------------------------------------------------
def test_model_call_error_propagates(registry: ToolRegistry) -> None:
    model = ScriptedModel([ModelCallError("provider down")])
    with pytest.raises(ModelCallError, match="provider down"):
        _loop().run("go", PREAMBLE, registry, model, max_iterations=3)


def test_unexpected_client_exception_is_wrapped(registry: ToolRegistry) -> None:
    model = ScriptedModel([tool_step({"name": "noop", "arguments": {}}), RuntimeError("socket")])
    with pytest.raises(ModelCallError, match="socket") as info:
        _loop().run("go", PREAMBLE, registry, model, max_iterations=3)
    assert not isinstance(info.value, ModelCallTimeout)
    assert isinstance(info.value.__cause__, RuntimeError)


def test_non_string_reply_is_a_model_error(registry: ToolRegistry) -> None:
    model = ScriptedModel([{"step": "final"}])
    with pytest.raises(ModelCallError):
        _loop().run("go", PREAMBLE, registry, model, max_iterations=3)


class SlowModel(ModelClient):
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def complete(
        self, messages: Sequence[Message], tool_descriptions: Sequence[ToolDescriptor]
    ) -> str:
        time.sleep(self.delay)
        return final_step("too late")


def test_model_timeout(registry: ToolRegistry) -> None:
    with pytest.raises(ModelCallTimeout):
        _loop(model_timeout=0.05).run("go", PREAMBLE, registry, SlowModel(0.5), max_iterations=2)


def test_timeout_disabled_calls_model_inline(registry: ToolRegistry) -> None:
    result = _loop(model_timeout=0).run(
        "go", PREAMBLE, registry, SlowModel(0.01), max_iterations=1
    )
    assert result.answer == "too late"


# ---------------------------------------------------------------------------
# Invocation isolation
# ---------------------------------------------------------------------------
def test_run_messages_does_not_mutate_input(registry: ToolRegistry) -> None:
    initial = [Message.system("sys"), Message.user("hi")]
    model = ScriptedModel([tool_step({"name": "noop", "arguments": {}}), final_step("bye")])
    result = _loop().run_messages(initial, registry, model, max_iterations=3)

    assert result.ok
    assert initial == [Message.system("sys"), Message.user("hi")]
    assert model.calls[0] == initial
    assert len(model.calls[1]) == 4


def test_context_is_fresh_per_invocation() -> None:
    """State stored by a tool in one request is not visible to the next."""

    loop = _loop()
    first = ScriptedModel(
        [
            tool_step(
                {"name": "remember", "arguments": {"key": "list", "value": "groceries"}},
                {"name": "recall", "arguments": {"key": "list"}},
            ),
            final_step("stored"),
        ]
    )
    result = loop.run("remember", PREAMBLE, default_registry, first, max_iterations=3)
    assert result.raw_tool_outputs == ["Stored 'list'.", "groceries"]

    second = ScriptedModel(
        [tool_step({"name": "recall", "arguments": {"key": "list"}}), final_step("gone")]
    )
    result = loop.run("recall", PREAMBLE, default_registry, second, max_iterations=3)
    assert result.raw_tool_outputs[0].startswith("ERROR: ")


def test_parallel_tools_keep_call_order() -> None:
    reg = ToolRegistry()

    @reg.tool("wait")
    def wait(delay: float, label: str) -> str:
        time.sleep(delay)
        return label

    model = ScriptedModel(
        [
            tool_step(
                {"name": "wait", "arguments": {"delay": 0.1, "label": "slow"}},
                {"name": "wait", "arguments": {"delay": 0.0, "label": "fast"}},
            ),
            final_step("done"),
        ]
    )
    result = _loop(parallel_tools=True).run("go", PREAMBLE, reg, model, max_iterations=3)
    assert result.raw_tool_outputs == ["slow", "fast"]


def test_module_level_run(registry: ToolRegistry) -> None:
    model = ScriptedModel([tool_step({"name": "noop", "arguments": {}})])
    result = loop_module.run("go", PREAMBLE, registry, model, max_iterations=2)

    assert result.termination_reason is TerminationReason.ITERATION_BUDGET_EXCEEDED
    assert len(model.calls) == 2
