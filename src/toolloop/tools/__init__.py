"""
Tool registry for toolloop.

This module provides a registry that maps tool names to plain Python functions, validates the
model-supplied arguments against each function's signature, and runs the function.  Execution
never raises: every problem (unknown tool, bad arguments, a tool that blows up) comes back as a
failed :class:`~toolloop.core.schema.ToolOutcome` so the loop can show it to the model.
"""

import inspect
import logging
import uuid
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Type,
    get_type_hints,
    runtime_checkable,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    create_model,
)
from pydantic_core import (
    PydanticSerializationError,
    to_json,
)

from toolloop.core.schema import (
    ToolDescriptor,
    ToolOutcome,
)

logger = logging.getLogger(__name__)

CONTEXT_PARAM = "context"


class ToolExecutionError(RuntimeError):
    """Raised when a requested tool cannot run or fails."""


class ToolArgumentError(ToolExecutionError):
    """Raised when the arguments do not match the tool's parameters."""


class ToolContext:
    """
    State that belongs to one loop invocation.

    Tools that need to remember something between calls of the same turn (for example a list id
    chosen by an earlier call) keep it in :attr:`state`.  A fresh context is created for every
    invocation, so nothing leaks between requests served by the same worker thread.
    """

    def __init__(self, invocation_id: Optional[str] = None, state: Optional[Dict[str, Any]] = None):
        self.invocation_id = invocation_id or uuid.uuid4().hex
        self.state: Dict[str, Any] = state if state is not None else {}

    def __repr__(self) -> str:
        return f"ToolContext(invocation_id={self.invocation_id!r}, keys={sorted(self.state)})"


@runtime_checkable
class ToolRegistryProtocol(Protocol):
    """What the loop needs from a tool registry."""

    def describe(self) -> List[ToolDescriptor]:
        """Descriptions of every available tool."""

    def execute(
        self,
        name: str,
        arguments: Mapping[str, Any],
        context: Optional[ToolContext] = None,
    ) -> ToolOutcome:
        """Run one tool.  Must return a failed outcome instead of raising."""


class RegisteredTool:
    """A function plus the argument model derived from its signature."""

    def __init__(self, name: str, fn: Callable[..., Any], description: Optional[str] = None):
        self.name = name
        self.fn = fn
        self.description = (description or inspect.getdoc(fn) or "").strip()
        self.context_param: Optional[str] = None
        self.args_model = self._build_args_model()

    def _build_args_model(self) -> Type[BaseModel]:
        sig = inspect.signature(self.fn)
        type_hints = get_type_hints(self.fn)
        fields: Dict[str, Any] = {}
        for param_name, param in sig.parameters.items():
            annotation = type_hints.get(param_name, Any)
            if param_name == CONTEXT_PARAM or annotation is ToolContext:
                self.context_param = param_name
                continue
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                raise ValueError(f"Tool '{self.name}' cannot take *args or **kwargs.")
            default = ... if param.default is inspect.Parameter.empty else param.default
            fields[param_name] = (annotation, default)

        return create_model(  # type: ignore[call-overload]
            f"{self.name}_arguments",
            __config__=ConfigDict(extra="forbid"),
            **fields,
        )

    def descriptor(self) -> ToolDescriptor:
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        return ToolDescriptor(
            name=self.name, description=self.description, argument_schema=schema
        )


def serialize_result(result: Any) -> str:
    """Render a tool's return value as the payload text fed back to the model."""
    if isinstance(result, str):
        return result
    try:
        return to_json(result, fallback=str).decode("utf-8")
    except PydanticSerializationError as exc:
        raise ToolExecutionError(f"Tool result cannot be serialized: {exc}") from exc


class ToolRegistry:
    """In-process tool registry."""

    def __init__(self) -> None:
        self._tools: Dict[str, RegisteredTool] = {}

    def tool(self, name: str, description: Optional[str] = None) -> Callable:
        """
        Register a tool function with the given name.

        The function is registered as a decorator, so it can be used like this:
            @registry.tool("my_tool")
            def my_tool_function(arg1: int, arg2: str = "x"):
                # Do something
                return result

        Parameter annotations drive argument validation and the JSON schema advertised to the
        model.  A parameter named ``context`` (or annotated with :class:`ToolContext`) receives
        the per-invocation context instead of a model-supplied value.

        Raises
        ------
        ValueError
            If a function with the same name is already registered.
        """
        if name in self._tools:
            raise ValueError(f"Tool '{name}' is already registered.")
        logger.debug("Registering tool '%s'", name)

        def wrapper(fn: Callable) -> Callable:
            self._tools[name] = RegisteredTool(name, fn, description)
            return fn

        return wrapper

    def names(self) -> List[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def describe(self) -> List[ToolDescriptor]:
        """Extract descriptors from registered tools."""
        return [tool.descriptor() for tool in self._tools.values()]

    def execute(
        self,
        name: str,
        arguments: Mapping[str, Any],
        context: Optional[ToolContext] = None,
    ) -> ToolOutcome:
        """Look up *name*, validate *arguments* and run the tool."""
        try:
            result = self._invoke(name, arguments, context)
            payload = serialize_result(result)
        except ToolExecutionError as exc:
            logger.warning("Tool '%s' failed: %s", name, exc)
            return ToolOutcome.failure(name, str(exc))
        return ToolOutcome.success(name, payload)

    def _invoke(
        self, name: str, arguments: Mapping[str, Any], context: Optional[ToolContext]
    ) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(f"Tool '{name}' is not registered.")

        try:
            parsed = tool.args_model.model_validate(dict(arguments or {}))
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
                for err in exc.errors(include_url=False)
            )
            raise ToolArgumentError(f"Invalid arguments for tool '{name}': {problems}") from exc

        kwargs = dict(parsed)
        if tool.context_param is not None:
            kwargs[tool.context_param] = context if context is not None else ToolContext()

        try:
            logger.debug("Executing tool '%s' with args=%s", name, kwargs)
            return tool.fn(**kwargs)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in tool '%s'", name)
            raise ToolExecutionError(f"Tool '{name}' raised an error: {exc}") from exc


default_registry = ToolRegistry()
"""Registry used by the CLI and the built-in tools."""


def register_tool(name: str, description: Optional[str] = None) -> Callable:
    """Register a function on :data:`default_registry`."""
    return default_registry.tool(name, description)
