"""Turns a final step into the structured summary the calling feature understands."""

import logging
from typing import (
    Optional,
    Type,
    TypeVar,
)

from pydantic import (
    BaseModel,
    ValidationError,
)

from toolloop.core.schema import (
    FinalStep,
    StructuredSummary,
)
from toolloop.protocol.repair import (
    DocumentParseError,
    parse_document,
)
from toolloop.protocol.step_codec import strip_fence

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def extract(final_step: FinalStep, from_answer: bool = False) -> Optional[StructuredSummary]:
    """
    Return the summary attached to *final_step*, or ``None``.

    With *from_answer* set, a step without a summary whose answer is itself a JSON object is
    read as the summary (some prompts ask the model to put the whole record in the answer).
    """
    if final_step.summary is not None:
        return final_step.summary
    if not from_answer:
        return None

    try:
        document = parse_document(strip_fence(final_step.answer))
    except DocumentParseError:
        return None
    if not isinstance(document, dict):
        return None
    if isinstance(document.get("summary"), dict):
        document = document["summary"]
    return StructuredSummary.model_validate(document)


def extract_as(
    final_step: FinalStep, model_cls: Type[ModelT], from_answer: bool = False
) -> Optional[ModelT]:
    """Validate the extracted summary into *model_cls*; ``None`` if absent or incompatible."""
    summary = extract(final_step, from_answer=from_answer)
    if summary is None:
        return None
    try:
        return model_cls.model_validate(summary.model_dump())
    except ValidationError as exc:
        logger.warning("Summary does not match %s: %s", model_cls.__name__, exc)
        return None
