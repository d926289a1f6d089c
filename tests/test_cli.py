"""Tests for the command-line front end."""

from pathlib import Path

from conftest import (
    ScriptedModel,
    final_step,
    tool_step,
)

from toolloop.agent.loop import ToolLoop
from toolloop.agent.model_client import ModelCallError
from toolloop.client.cli import (
    DEFAULT_PREAMBLE,
    answer_once,
)
from toolloop.main import _read_preamble
from toolloop.tools import ToolRegistry


def _loop() -> ToolLoop:
    return ToolLoop(model_timeout=5.0, correction_attempts=0, parallel_tools=False)


def test_answer_once_completed(registry: ToolRegistry, capsys) -> None:
    model = ScriptedModel(
        [
            tool_step({"name": "list_x", "arguments": {}}),
            final_step("All done.", {"title": "Overview", "highlights": ["a"]}),
        ]
    )
    code = answer_once(_loop(), "go", DEFAULT_PREAMBLE, registry, model, 3)

    out = capsys.readouterr().out
    assert code == 0
    assert '[list_x] ["a","b"]' in out
    assert "All done." in out
    assert "# Overview" in out
    assert "- a" in out


def test_answer_once_degraded(registry: ToolRegistry, capsys) -> None:
    model = ScriptedModel([tool_step({"name": "noop", "arguments": {}})])
    code = answer_once(_loop(), "go", DEFAULT_PREAMBLE, registry, model, 2)

    assert code == 1
    out = capsys.readouterr().out
    assert "could not finish within 2 steps" in out
    assert "[iteration_budget_exceeded]" in out


def test_answer_once_model_failure(registry: ToolRegistry, capsys) -> None:
    model = ScriptedModel([ModelCallError("provider down")])
    code = answer_once(_loop(), "go", DEFAULT_PREAMBLE, registry, model, 2)

    assert code == 2
    assert "provider down" in capsys.readouterr().out


def test_read_preamble(tmp_path: Path) -> None:
    assert _read_preamble(None) == DEFAULT_PREAMBLE
    assert _read_preamble("Be terse.") == "Be terse."

    source = tmp_path / "preamble.txt"
    source.write_text("From a file.", encoding="utf-8")
    assert _read_preamble(f"@{source}") == "From a file."
