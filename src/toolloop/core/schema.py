"""
Schema definitions for loop <-> model <-> tool messages.

These data models serve as the contract between the model client, the orchestration loop, and the
tool registry.  We keep them separate from runtime logic so they can be imported anywhere without
side-effects.
"""

from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    model_validator,
)


class Role(str, Enum):
    """Conversation roles understood by every model client."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """One entry of the conversation sent to the model."""

    role: Role
    content: str

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=content)


class ToolCall(BaseModel):
    """A call that the model wants the loop to execute."""

    name: str = Field(..., min_length=1, description="Registered tool name")
    arguments: Dict[str, Any] = Field(
        default_factory=dict, description="Keyword arguments for the tool"
    )


class ToolOutcome(BaseModel):
    """Result of running one ToolCall.  Exactly one of *payload* / *error* is set."""

    tool_name: str
    ok: bool
    payload: Optional[str] = None
    error: Optional[str] = None

    @model_validator(mode="after")
    def _check_exclusive(self) -> "ToolOutcome":
        if self.ok and (self.payload is None or self.error is not None):
            raise ValueError("successful outcome needs a payload and no error")
        if not self.ok and (self.error is None or self.payload is not None):
            raise ValueError("failed outcome needs an error and no payload")
        return self

    @classmethod
    def success(cls, tool_name: str, payload: str) -> "ToolOutcome":
        return cls(tool_name=tool_name, ok=True, payload=payload)

    @classmethod
    def failure(cls, tool_name: str, error: str) -> "ToolOutcome":
        return cls(tool_name=tool_name, ok=False, error=error)

    def render(self) -> str:
        """Text shown to the model (and kept for audit) for this outcome."""
        if self.ok:
            return self.payload or ""
        return f"ERROR: {self.error}"


class ToolDescriptor(BaseModel):
    """Tool description handed to the model client unchanged."""

    name: str
    description: str = ""
    argument_schema: Dict[str, Any] = Field(default_factory=dict)


class StructuredSummary(BaseModel):
    """
    Optional domain record attached to a final step.

    The loop never looks inside it, so no field is type-checked: whatever the model sends is
    kept as-is.  Keys other than the well-known ones are kept as extra attributes.  Use
    :func:`~toolloop.agent.result_extractor.extract_as` to validate into a stricter model.
    """

    model_config = ConfigDict(extra="allow")

    title: Any = None
    total_items: Any = None
    priority: Any = None
    highlights: Any = Field(default_factory=list)
    due_soon: Any = Field(default_factory=list)
    overdue: Any = Field(default_factory=list)

    def to_markdown(self) -> str:
        """Render the summary as a small Markdown document."""
        lines: List[str] = [f"# {self.title or 'Summary'}"]
        if self.priority:
            lines.append(f"**Priority:** {self.priority}")
        if self.total_items is not None:
            lines.append(f"**Items:** {self.total_items}")
        for heading, items in (
            ("Highlights", self.highlights),
            ("Due soon", self.due_soon),
            ("Overdue", self.overdue),
        ):
            if items:
                lines.append("")
                lines.append(f"## {heading}")
                if not isinstance(items, list):
                    items = [items]
                lines.extend(f"- {_render_item(item)}" for item in items)
        return "\n".join(lines)


def _render_item(item: Any) -> str:
    if isinstance(item, dict):
        task = item.get("task") or item.get("title") or item.get("name")
        due = item.get("due")
        if task and due:
            return f"{task} (due {due})"
        if task:
            return str(task)
        return ", ".join(f"{k}: {v}" for k, v in item.items())
    return str(item)


class ToolStep(BaseModel):
    """The model wants to run tools before answering."""

    calls: List[ToolCall] = Field(..., min_length=1)


class FinalStep(BaseModel):
    """The model is done."""

    answer: str
    summary: Optional[StructuredSummary] = None


StepResponse = Union[ToolStep, FinalStep]


class TerminationReason(str, Enum):
    """Why a loop invocation stopped."""

    COMPLETED = "completed"
    ITERATION_BUDGET_EXCEEDED = "iteration_budget_exceeded"
    PROTOCOL_FAILURE = "protocol_failure"


class LoopResult(BaseModel):
    """Immutable outcome of one loop invocation."""

    model_config = ConfigDict(frozen=True)

    answer: str
    raw_tool_outputs: List[str] = Field(default_factory=list)
    summary: Optional[StructuredSummary] = None
    termination_reason: TerminationReason
    iterations: int = 0
    tool_outcomes: List[ToolOutcome] = Field(default_factory=list)
    error: Optional[str] = None  # decode failure detail for PROTOCOL_FAILURE

    @property
    def ok(self) -> bool:
        """True when the model reached a final step."""
        return self.termination_reason is TerminationReason.COMPLETED
