"""
Main orchestration loop for toolloop.

One invocation walks the state machine

    AwaitingModel -> Deciding -> (ExecutingTools -> AwaitingModel) | Terminated

until the model produces a final step, the reply cannot be decoded, or the iteration budget runs
out.  Tool failures are data: they are fed back to the model and never stop the loop.  Model call
failures are not retried here and propagate to the caller as :class:`ModelCallError`.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import (
    List,
    Optional,
    Sequence,
)

from toolloop.agent.model_client import (
    ModelCallError,
    ModelCallTimeout,
    ModelClient,
    describe_client,
)
from toolloop.agent.prompts import PromptBuilder
from toolloop.agent.result_extractor import extract
from toolloop.agent.tool_executor import ToolExecutor
from toolloop.common import truncate
from toolloop.config import settings
from toolloop.core.schema import (
    FinalStep,
    LoopResult,
    Message,
    TerminationReason,
    ToolDescriptor,
    ToolOutcome,
)
from toolloop.protocol.step_codec import (
    StepCodec,
    StepDecodeError,
)
from toolloop.tools import (
    ToolContext,
    ToolRegistryProtocol,
)

logger = logging.getLogger(__name__)

BUDGET_EXCEEDED_ANSWER = (
    "Sorry, I could not finish within {max_iterations} steps. "
    "Please rephrase or narrow down your request."
)
PROTOCOL_FAILURE_ANSWER = (
    "Sorry, an error occurred while processing the model response. Please try again."
)


class ToolLoop:
    """
    Drives model <-> tool exchanges for one request at a time.

    A ``ToolLoop`` holds configuration only; every call to :meth:`run` or :meth:`run_messages`
    builds its own message list, output accumulator and :class:`ToolContext`, so one instance can
    serve concurrent requests.
    """

    def __init__(
        self,
        codec: Optional[StepCodec] = None,
        prompt_builder: Optional[PromptBuilder] = None,
        model_timeout: Optional[float] = None,
        parallel_tools: Optional[bool] = None,
        correction_attempts: Optional[int] = None,
        max_tool_workers: int = 4,
    ) -> None:
        self.codec = codec or StepCodec(infer_missing_step=settings.INFER_MISSING_STEP)
        self.prompt_builder = prompt_builder or PromptBuilder(self.codec)
        self.model_timeout = settings.MODEL_TIMEOUT if model_timeout is None else model_timeout
        self.parallel_tools = settings.PARALLEL_TOOLS if parallel_tools is None else parallel_tools
        self.correction_attempts = (
            settings.CORRECTION_ATTEMPTS if correction_attempts is None else correction_attempts
        )
        self.max_tool_workers = max_tool_workers

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def run(
        self,
        user_request: str,
        system_preamble: str,
        tools: ToolRegistryProtocol,
        model: ModelClient,
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """Answer *user_request* using *tools* and *model*."""
        descriptors = tools.describe()
        messages = self.prompt_builder.build_messages(user_request, system_preamble, descriptors)
        return self._run(messages, descriptors, tools, model, max_iterations)

    def run_messages(
        self,
        initial_messages: Sequence[Message],
        tools: ToolRegistryProtocol,
        model: ModelClient,
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """Run the loop from a caller-built conversation."""
        return self._run(list(initial_messages), tools.describe(), tools, model, max_iterations)

    # ------------------------------------------------------------------ #
    # State machine
    # ------------------------------------------------------------------ #
    def _run(
        self,
        messages: List[Message],
        descriptors: List[ToolDescriptor],
        tools: ToolRegistryProtocol,
        model: ModelClient,
        max_iterations: Optional[int],
    ) -> LoopResult:
        budget = settings.MAX_ITERATIONS if max_iterations is None else max_iterations
        if budget < 1:
            raise ValueError(f"max_iterations must be at least 1, got {budget}")

        context = ToolContext()
        executor = ToolExecutor(
            tools, parallel=self.parallel_tools, max_workers=self.max_tool_workers
        )
        raw_outputs: List[str] = []
        outcomes: List[ToolOutcome] = []
        corrections_left = self.correction_attempts

        logger.info(
            "Starting tool loop %s with %s, %d tools, budget %d",
            context.invocation_id,
            describe_client(model),
            len(descriptors),
            budget,
        )

        iteration = 0
        while iteration < budget:
            iteration += 1
            logger.info("Tool loop iteration %d/%d", iteration, budget)

            reply = self._complete(model, messages, descriptors)
            logger.debug("Model reply: %s", truncate(reply))

            try:
                step = self.codec.decode(reply)
            except StepDecodeError as exc:
                if corrections_left > 0 and iteration < budget:
                    corrections_left -= 1
                    logger.warning("Unreadable model reply (%s), asking for a correction", exc)
                    messages.append(Message.assistant(reply))
                    messages.append(self.prompt_builder.correction_message())
                    continue
                logger.error("Unreadable model reply, giving up: %s", exc)
                return LoopResult(
                    answer=PROTOCOL_FAILURE_ANSWER,
                    raw_tool_outputs=raw_outputs,
                    termination_reason=TerminationReason.PROTOCOL_FAILURE,
                    iterations=iteration,
                    tool_outcomes=outcomes,
                    error=str(exc),
                )

            if isinstance(step, FinalStep):
                logger.info("Got final answer after %d iteration(s)", iteration)
                return LoopResult(
                    answer=step.answer,
                    raw_tool_outputs=raw_outputs,
                    summary=extract(step),
                    termination_reason=TerminationReason.COMPLETED,
                    iterations=iteration,
                    tool_outcomes=outcomes,
                )

            logger.info(
                "Model requested %d tool call(s): %s",
                len(step.calls),
                [call.name for call in step.calls],
            )
            messages.append(Message.assistant(reply))
            step_outcomes = executor.execute_all(step.calls, context)
            outcomes.extend(step_outcomes)
            raw_outputs.extend(outcome.render() for outcome in step_outcomes)
            messages.append(Message.user(self.codec.encode(step_outcomes)))

        logger.error("Max iterations (%d) reached in tool loop", budget)
        return LoopResult(
            answer=BUDGET_EXCEEDED_ANSWER.format(max_iterations=budget),
            raw_tool_outputs=raw_outputs,
            termination_reason=TerminationReason.ITERATION_BUDGET_EXCEEDED,
            iterations=iteration,
            tool_outcomes=outcomes,
        )

    # ------------------------------------------------------------------ #
    # Model calls
    # ------------------------------------------------------------------ #
    def _complete(
        self,
        model: ModelClient,
        messages: Sequence[Message],
        descriptors: Sequence[ToolDescriptor],
    ) -> str:
        """Call the model with the configured timeout."""
        snapshot = list(messages)
        if not self.model_timeout or self.model_timeout <= 0:
            return _call_model(model, snapshot, descriptors)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="toolloop-model")
        future = pool.submit(_call_model, model, snapshot, descriptors)
        try:
            return future.result(timeout=self.model_timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            logger.error("Model call exceeded %.1fs timeout", self.model_timeout)
            raise ModelCallTimeout(
                f"Model did not answer within {self.model_timeout:.1f}s"
            ) from exc
        finally:
            # The worker thread is abandoned on timeout rather than joined.
            pool.shutdown(wait=False)


def _call_model(
    model: ModelClient, messages: Sequence[Message], descriptors: Sequence[ToolDescriptor]
) -> str:
    try:
        reply = model.complete(messages, descriptors)
    except ModelCallError:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.exception("Model client %s failed", describe_client(model))
        raise ModelCallError(f"Model client failed: {exc}") from exc
    if not isinstance(reply, str):
        raise ModelCallError(f"Model client returned {type(reply).__name__}, expected str")
    return reply


def run(
    user_request: str,
    system_preamble: str,
    tools: ToolRegistryProtocol,
    model: ModelClient,
    max_iterations: int = 10,
) -> LoopResult:
    """Answer one request with a default-configured :class:`ToolLoop`."""
    return ToolLoop().run(user_request, system_preamble, tools, model, max_iterations)
