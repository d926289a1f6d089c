"""
Codec for the step protocol spoken between the loop and the model.

Wire format (``toolCalls`` is canonical, ``tool_calls`` is accepted on decode)::

    {"step": "tool", "toolCalls": [{"name": "<tool>", "arguments": {...}}], "answer": null}
    {"step": "final", "toolCalls": [], "answer": "<text>", "summary": {...}}

Decoding is forgiving: Markdown fences are stripped, near-JSON goes through
:mod:`toolloop.protocol.repair`, and a reply that is plain prose becomes the final answer.
"""

import json
import logging
import re
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Sequence,
)

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    ValidationError,
    field_validator,
)

from toolloop.core.schema import (
    FinalStep,
    StepResponse,
    StructuredSummary,
    ToolCall,
    ToolOutcome,
    ToolStep,
)
from toolloop.protocol.repair import (
    DocumentParseError,
    parse_document,
    repair,
)

logger = logging.getLogger(__name__)

STEP_TOOL = "tool"
STEP_FINAL = "final"
FEEDBACK_HEADER = "Tool execution results:"


class DecodeErrorKind(str, Enum):
    """Why a model reply could not be decoded."""

    PROTOCOL_VIOLATION = "protocol_violation"
    UNRECOVERABLE = "unrecoverable"


class StepDecodeError(ValueError):
    """Raised when a model reply cannot be turned into a step."""

    def __init__(self, kind: DecodeErrorKind, detail: str, raw: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}")
        self.kind = kind
        self.detail = detail
        self.raw = raw


class _ShapeError(ValueError):
    """Document parsed, but is not a valid step."""


# ---------------------------------------------------------------------------
# Pydantic models for the wire shape
# ---------------------------------------------------------------------------
class _WireToolCall(BaseModel):
    name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("arguments", "args")
    )

    @field_validator("arguments", mode="before")
    @classmethod
    def _coerce_arguments(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            # Some models send the arguments object JSON-encoded.
            try:
                return parse_document(value) if value.strip() else {}
            except DocumentParseError as exc:
                raise ValueError(f"arguments is not a JSON object: {exc}") from exc
        return value


class _WireStep(BaseModel):
    step: Optional[Literal["tool", "final"]] = None
    tool_calls: Optional[List[_WireToolCall]] = Field(
        default=None, validation_alias=AliasChoices("toolCalls", "tool_calls")
    )
    answer: Any = None
    summary: Any = None

    @field_validator("step", mode="before")
    @classmethod
    def _normalise_step(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
_FENCE_OPEN = re.compile(r"^```[A-Za-z0-9_+-]*[ \t]*\n?")


def strip_fence(text: str) -> str:
    """Remove a Markdown code fence wrapped around *text*."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _compact(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _summary_from(value: Any) -> Optional[StructuredSummary]:
    if value is None:
        return None
    if not isinstance(value, dict):
        logger.warning("Ignoring summary of type %s", type(value).__name__)
        return None
    return StructuredSummary.model_validate(value)


# Every character str.splitlines() breaks on.
_LINE_BREAKS = str.maketrans(
    {
        ch: ch.encode("unicode_escape").decode("ascii")
        for ch in "\n\r\x0b\x0c\x1c\x1d\x1e\x85\u2028\u2029"
    }
)


def _single_line(text: str) -> str:
    return text.translate(_LINE_BREAKS)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------
class StepCodec:
    """
    Turns raw model replies into :data:`StepResponse` values and tool outcomes into feedback.

    Parameters
    ----------
    infer_missing_step:
        Accept documents without a ``step`` field, guessing ``tool`` when calls are present and
        ``final`` when an answer is present.  Off by default.
    """

    def __init__(self, infer_missing_step: bool = False) -> None:
        self.infer_missing_step = infer_missing_step

    # ------------------------------------------------------------------ #
    # Decoding
    # ------------------------------------------------------------------ #
    def decode(self, raw: str) -> StepResponse:
        """
        Decode one model reply.

        Raises
        ------
        StepDecodeError
            ``PROTOCOL_VIOLATION`` if a document was read but has the wrong shape,
            ``UNRECOVERABLE`` if the reply looks like a document but cannot be read.
        """
        if raw is None or not raw.strip():
            raise StepDecodeError(DecodeErrorKind.UNRECOVERABLE, "empty model reply", raw or "")

        text = strip_fence(raw)
        violation: Optional[str] = None

        try:
            return self._to_step(parse_document(text))
        except DocumentParseError as exc:
            logger.debug("Reply is not valid JSON (%s), attempting repair", exc)
        except _ShapeError as exc:
            violation = str(exc)
            logger.warning("Reply violates the step protocol: %s", violation)

        repaired = repair(text)
        if repaired != text:
            try:
                step = self._to_step(parse_document(repaired))
                logger.info("Decoded model reply after repair")
                return step
            except DocumentParseError as exc:
                logger.debug("Repaired reply still unreadable: %s", exc)
            except _ShapeError as exc:
                violation = str(exc)
                logger.warning("Repaired reply violates the step protocol: %s", violation)

        if not text.startswith("{"):
            logger.info("Reply is plain text, treating it as the final answer")
            return FinalStep(answer=raw.strip())

        if violation is not None:
            raise StepDecodeError(DecodeErrorKind.PROTOCOL_VIOLATION, violation, raw)
        raise StepDecodeError(
            DecodeErrorKind.UNRECOVERABLE, "malformed document could not be repaired", raw
        )

    def _to_step(self, document: Any) -> StepResponse:
        if not isinstance(document, dict):
            raise _ShapeError(f"expected a JSON object, got {type(document).__name__}")
        try:
            wire = _WireStep.model_validate(document)
        except ValidationError as exc:
            raise _ShapeError(_describe(exc)) from exc

        calls = [ToolCall(name=c.name, arguments=c.arguments) for c in wire.tool_calls or []]
        step = wire.step
        if step is None:
            if not self.infer_missing_step:
                raise _ShapeError("missing 'step' discriminator")
            step = STEP_TOOL if calls else STEP_FINAL

        if step == STEP_TOOL:
            if not calls:
                raise _ShapeError("'tool' step without tool calls")
            return ToolStep(calls=calls)

        if wire.answer is None:
            raise _ShapeError("'final' step without an answer")
        answer = wire.answer if isinstance(wire.answer, str) else _compact(wire.answer)
        return FinalStep(answer=answer, summary=_summary_from(wire.summary))

    # ------------------------------------------------------------------ #
    # Encoding
    # ------------------------------------------------------------------ #
    def encode(self, outcomes: Sequence[ToolOutcome]) -> str:
        """
        Render tool outcomes as one feedback message, one line per outcome.

        Line breaks inside a payload or error are escaped as ``\\n`` so every line stays
        labelled with its tool name.
        """
        lines = [FEEDBACK_HEADER]
        lines.extend(
            f"TOOL_RESULT {o.tool_name}: {_single_line(o.render())}" for o in outcomes
        )
        return "\n".join(lines)

    def encode_step(self, step: StepResponse) -> str:
        """Serialize *step* in the canonical wire form."""
        document: Dict[str, Any]
        if isinstance(step, ToolStep):
            document = {
                "step": STEP_TOOL,
                "toolCalls": [c.model_dump() for c in step.calls],
                "answer": None,
            }
        else:
            document = {"step": STEP_FINAL, "toolCalls": [], "answer": step.answer}
            if step.summary is not None:
                document["summary"] = step.summary.model_dump(exclude_none=True)
        return json.dumps(document, ensure_ascii=False)


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors(include_url=False):
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


_default_codec = StepCodec()


def decode(raw: str) -> StepResponse:
    """Decode *raw* with the default codec."""
    return _default_codec.decode(raw)


def encode(outcomes: Sequence[ToolOutcome]) -> str:
    """Encode *outcomes* with the default codec."""
    return _default_codec.encode(outcomes)
