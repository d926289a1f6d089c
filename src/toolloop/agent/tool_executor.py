"""Runs the tool calls of one iteration against a registry and wraps every failure."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import (
    List,
    Optional,
    Sequence,
)

from toolloop.core.schema import (
    ToolCall,
    ToolOutcome,
)
from toolloop.tools import (
    ToolContext,
    ToolRegistryProtocol,
)

logger = logging.getLogger(__name__)


class ToolExecutor:
    """
    Execute tool calls in isolation.

    Parameters
    ----------
    registry:
        Anything implementing :class:`~toolloop.tools.ToolRegistryProtocol`.
    parallel:
        Run the calls of one iteration concurrently.  Only safe when the registry's tools do not
        depend on each other within an iteration.  Outcomes are always returned in call order.
    max_workers:
        Thread pool size used when *parallel* is set.
    """

    def __init__(
        self,
        registry: ToolRegistryProtocol,
        parallel: bool = False,
        max_workers: int = 4,
    ) -> None:
        self.registry = registry
        self.parallel = parallel
        self.max_workers = max_workers

    def execute(self, call: ToolCall, context: Optional[ToolContext] = None) -> ToolOutcome:
        """
        Run a single call.

        Registries are supposed to report failures as outcomes; one that raises anyway is
        treated the same way, so a single tool can never abort the iteration.
        """
        logger.info("Executing tool '%s' with args=%s", call.name, call.arguments)
        try:
            outcome = self.registry.execute(call.name, call.arguments, context)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Registry raised while executing tool '%s'", call.name)
            return ToolOutcome.failure(call.name, f"Tool '{call.name}' raised an error: {exc}")

        if outcome.ok:
            logger.info("Tool '%s' succeeded", call.name)
        else:
            logger.warning("Tool '%s' returned error: %s", call.name, outcome.error)
        return outcome

    def execute_all(
        self, calls: Sequence[ToolCall], context: Optional[ToolContext] = None
    ) -> List[ToolOutcome]:
        """Run *calls* and return their outcomes in the order requested."""
        if not self.parallel or len(calls) < 2:
            return [self.execute(call, context) for call in calls]

        workers = min(self.max_workers, len(calls))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="toolloop-tool") as pool:
            # map() yields in submission order; the with-block waits for every call to finish.
            return list(pool.map(lambda call: self.execute(call, context), calls))
