"""Loop controller — re-run one agent or workflow until a condition holds."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Callable

from ensemble.agent.agent import AgentDefinition
from ensemble.agent.executor import AgentExecutor, ExecutionOptions
from ensemble.context import CancellationToken, ExecutionContext, earliest_deadline
from ensemble.errors import CancellationError, EnsembleError, ExecutionTimeoutError
from ensemble.llm.message import Message
from ensemble.session.wire import EventSink, EventType, WireEvent
from ensemble.workflow.conditions import (
    LoopResult,
    LoopStopCondition,
    result_output,
    result_text,
    success_stop_condition,
)
from ensemble.workflow.descriptor import WorkflowDescriptor
from ensemble.workflow.engine import WorkflowEngine
from ensemble.workflow.record import WorkflowExecutionRecord, WorkflowStatus

logger = logging.getLogger(__name__)

LoopUnit = Callable[[ExecutionContext], Awaitable[LoopResult]]


@dataclass
class LoopConfig:
    max_iterations: int = 10
    min_iterations: int = 0  # stop_when is ignored until this many iterations ran
    iteration_timeout: float | None = None  # seconds
    total_timeout: float | None = None  # seconds
    # Seconds a unit may overrun its deadline before the loop cancels it outright.
    timeout_grace: float = 0.5
    stop_when: LoopStopCondition | None = None
    on_iteration: Callable[[int, LoopResult], None] | None = None
    on_complete: Callable[[LoopRunState], None] | None = None
    # Return True to treat the failure as retryable and keep looping.
    on_error: Callable[[Exception], bool | None] | None = None

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if self.min_iterations < 0 or self.min_iterations > self.max_iterations:
            raise ValueError("min_iterations must be between 0 and max_iterations")
        if self.timeout_grace < 0:
            raise ValueError("timeout_grace must be >= 0")


def _loop_id() -> str:
    return f"loop_{uuid.uuid4().hex[:12]}"


@dataclass
class LoopRunState:
    id: str = field(default_factory=_loop_id)
    iteration: int = 0
    started_at: float | None = None  # epoch seconds
    running: bool = False
    stopped: bool = False
    results: list[LoopResult] = field(default_factory=list)
    elapsed: float = 0.0
    stop_reason: str | None = None  # stop_predicate | max_iterations | timeout | stopped | error
    error: Exception | None = None

    @property
    def last_result(self) -> LoopResult | None:
        return self.results[-1] if self.results else None


def _failure_of(result: LoopResult) -> Exception | None:
    if isinstance(result, WorkflowExecutionRecord):
        if result.status in (WorkflowStatus.FAILED, WorkflowStatus.TIMED_OUT):
            return result.error or EnsembleError(f"Workflow {result.id} {result.status.value}")
        if result.stop_reason == "cancelled":
            return result.error or CancellationError(f"Workflow {result.id} cancelled")
        return None
    if not result.ok:
        return result.to_exception()
    return None


def _turns_of(result: LoopResult) -> list[Message]:
    if isinstance(result, WorkflowExecutionRecord):
        return result.output_turns
    return list(result.turns)


def _carry_output(result: LoopResult) -> object:
    output = result_output(result)
    return output if output is not None else result_text(result)


class LoopController:
    """Runs units repeatedly, feeding each iteration's output into the next.

    Every loop gets an id and its own cancellation token while it runs.
    Stop requests are polled before each iteration and never interrupt one
    in flight; a running iteration ends on the deadline it was handed.
    """

    def __init__(self, on_event: EventSink | None = None) -> None:
        self._on_event = on_event
        self._active: dict[str, tuple[LoopRunState, CancellationToken]] = {}
        self._stop_next = False
        self._state = LoopRunState()

    @property
    def state(self) -> LoopRunState:
        """State of the most recently started loop."""
        return self._state

    # --- active loops ---

    def active(self) -> list[LoopRunState]:
        return [state for state, _ in self._active.values()]

    def get(self, loop_id: str) -> LoopRunState | None:
        entry = self._active.get(loop_id)
        return entry[0] if entry else None

    def stop(self, loop_id: str | None = None) -> bool:
        """Request a loop to end before its next iteration. Idempotent.

        Without ``loop_id`` every running loop is stopped. When none is
        running, the request applies to the next loop started instead.
        """
        if loop_id is None:
            if not self._active:
                logger.info("Loop stop requested before start")
                self._stop_next = True
                return True
            return self.stop_all() > 0

        entry = self._active.get(loop_id)
        if entry is None:
            return False
        state, token = entry
        if not token.cancelled:
            logger.info("Stopping loop %s at iteration %d", loop_id, state.iteration)
        token.cancel(f"loop {loop_id} stopped")
        state.stopped = True
        return True

    def stop_all(self) -> int:
        ids = list(self._active)
        for loop_id in ids:
            self.stop(loop_id)
        return len(ids)

    # --- execution ---

    async def execute_loop(
        self,
        unit: LoopUnit,
        context: ExecutionContext,
        config: LoopConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> LoopRunState:
        """Iterate ``unit`` until a stop condition holds; always returns the final state."""
        config = config or LoopConfig()
        state = LoopRunState(started_at=time.time(), running=True)
        token = cancel_token.child() if cancel_token is not None else CancellationToken()
        if self._stop_next:
            self._stop_next = False
            token.cancel("stopped before start")
            state.stopped = True

        self._state = state
        self._active[state.id] = (state, token)
        start = time.monotonic()
        deadline = start + config.total_timeout if config.total_timeout else None
        working = context.with_deadline(deadline)

        logger.info(
            "Starting loop %s (max %d iterations, min %d)",
            state.id,
            config.max_iterations,
            config.min_iterations,
        )
        try:
            while True:
                if token.cancelled:
                    state.stopped = True
                    state.stop_reason = "stopped"
                    break
                if state.iteration >= config.max_iterations:
                    state.stop_reason = "max_iterations"
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    logger.info("Loop total timeout after %d iterations", state.iteration)
                    state.stop_reason = "timeout"
                    break

                state.iteration += 1
                iteration = state.iteration
                failure = await self._run_iteration(unit, working, config, state)

                if failure is not None:
                    if deadline is not None and time.monotonic() >= deadline:
                        state.stop_reason = "timeout"
                        state.error = failure
                        break
                    logger.warning("Loop iteration %d failed: %s", iteration, failure)
                    retry = config.on_error(failure) if config.on_error else False
                    if not retry:
                        state.stop_reason = "error"
                        state.error = failure
                        break

                if (
                    config.stop_when is not None
                    and iteration >= config.min_iterations
                    and config.stop_when(iteration, state.results)
                ):
                    logger.info("Loop stop condition met at iteration %d", iteration)
                    state.stop_reason = "stop_predicate"
                    break
        finally:
            state.running = False
            state.elapsed = time.monotonic() - start
            self._active.pop(state.id, None)

        logger.info(
            "Loop %s finished after %d iterations (%s, %.2fs)",
            state.id,
            state.iteration,
            state.stop_reason,
            state.elapsed,
        )
        if config.on_complete:
            config.on_complete(state)
        return state

    async def _run_iteration(
        self,
        unit: LoopUnit,
        working: ExecutionContext,
        config: LoopConfig,
        state: LoopRunState,
    ) -> Exception | None:
        """Run one iteration, commit its result and return its failure, if any."""
        iteration = state.iteration
        iteration_deadline = earliest_deadline(
            working.deadline,
            time.monotonic() + config.iteration_timeout if config.iteration_timeout else None,
        )
        ctx = working.with_deadline(iteration_deadline)
        remaining = ctx.remaining()
        # Units see the deadline through ctx; the hard timer only backs up units that ignore it.
        backstop = max(remaining, 0) + config.timeout_grace if remaining is not None else None
        logger.debug("Loop iteration %d/%d", iteration, config.max_iterations)

        try:
            result = await asyncio.wait_for(unit(ctx), timeout=backstop)
        except EnsembleError as e:
            return e
        except asyncio.TimeoutError:
            return ExecutionTimeoutError(
                f"Loop iteration {iteration} did not return by its deadline"
            )
        except Exception as e:
            logger.error("Loop iteration %d raised: %s", iteration, e, exc_info=True)
            return e

        state.results.append(result)
        if config.on_iteration:
            config.on_iteration(iteration, result)
        if self._on_event is not None:
            self._on_event(
                WireEvent(
                    type=EventType.ITERATION,
                    data={"loop_id": state.id, "iteration": iteration},
                )
            )

        failure = _failure_of(result)
        if failure is None:
            working.extend(_turns_of(result))
            working.data["previous_output"] = _carry_output(result)
            working.data["previous_iteration"] = iteration
        return failure

    async def execute_until(
        self,
        unit: LoopUnit,
        context: ExecutionContext,
        target: Callable[[LoopResult], bool],
        max_iterations: int = 10,
    ) -> LoopRunState:
        """Loop until ``target`` accepts a result."""
        config = LoopConfig(
            max_iterations=max_iterations, stop_when=success_stop_condition(target)
        )
        return await self.execute_loop(unit, context, config)

    async def execute_multiple_loops(
        self,
        units: Mapping[str, LoopUnit],
        context: ExecutionContext,
        config: LoopConfig | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[LoopRunState]:
        """Run one loop per unit, in order, chaining them.

        Each loop starts from the context the previous one left: its last
        result's turns appended, ``data["previous_loop_output"]`` and
        ``data["previous_agent"]`` (the unit's key) set. A loop that ends
        ``stopped`` ends the chain.
        """
        states: list[LoopRunState] = []
        current = context.copy()

        for name, unit in units.items():
            state = await self.execute_loop(unit, current, config, cancel_token)
            states.append(state)

            last = state.last_result
            if last is not None:
                current.extend(_turns_of(last))
                current.data["previous_loop_output"] = _carry_output(last)
                current.data["previous_agent"] = name

            if state.stop_reason == "stopped":
                logger.info(
                    "Loop chain stopped after %s (%d of %d)", name, len(states), len(units)
                )
                break
        return states


# --- units ---


def agent_unit(
    executor: AgentExecutor,
    agent: AgentDefinition,
    options: ExecutionOptions | None = None,
) -> LoopUnit:
    """Loop unit running one agent per iteration."""

    async def _unit(context: ExecutionContext) -> LoopResult:
        return await executor.execute(agent, context, options)

    return _unit


def agent_units(
    executor: AgentExecutor,
    agents: Sequence[AgentDefinition],
    options: ExecutionOptions | None = None,
) -> dict[str, LoopUnit]:
    """One :func:`agent_unit` per agent, keyed by agent id.

    Feeds :meth:`LoopController.execute_multiple_loops`.
    """
    return {agent.id: agent_unit(executor, agent, options) for agent in agents}


def workflow_unit(
    engine: WorkflowEngine,
    descriptor: WorkflowDescriptor,
    cancel_token: CancellationToken | None = None,
    on_event: EventSink | None = None,
) -> LoopUnit:
    """Loop unit running one whole workflow per iteration."""

    async def _unit(context: ExecutionContext) -> LoopResult:
        return await engine.execute(
            descriptor, context, cancel_token=cancel_token, on_event=on_event
        )

    return _unit
