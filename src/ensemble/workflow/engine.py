"""Workflow engine — drives agents through a topology and records the run.

State machine per record:

    pending -> running -> completed | failed | timed_out | stopped

Ordered topologies (sequential, routing, evaluator-optimizer) commit step i
before step i+1 starts. Parallel fans out once and commits in input order.
Cancellation and deadlines are checked between steps only.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import assert_never

from ensemble.agent.agent import AgentDefinition
from ensemble.agent.executor import AgentExecutor, ExecutionOptions
from ensemble.agent.registry import AgentCatalog
from ensemble.agent.result import AgentExecutionResult, TerminalReason
from ensemble.context import CancellationToken, ExecutionContext, earliest_deadline
from ensemble.errors import (
    AgentExecutionError,
    CancellationError,
    EnsembleError,
    ExecutionTimeoutError,
    NoMatchingRouteError,
)
from ensemble.session.wire import EventSink, EventType, WireEvent
from ensemble.workflow.descriptor import (
    EvaluatorOptimizerWorkflow,
    ParallelWorkflow,
    RoutingWorkflow,
    SequentialWorkflow,
    WorkflowDescriptor,
)
from ensemble.workflow.evaluation import default_score_parser
from ensemble.workflow.record import WorkflowExecutionRecord, WorkflowStatus
from ensemble.workflow.routing import select_route

logger = logging.getLogger(__name__)

STOP_PREDICATE = "stop_predicate"
MAX_STEPS = "max_steps"
CANCELLED = "cancelled"

Outcome = tuple[WorkflowStatus, str | None]


@dataclass
class _Run:
    """Per-run bookkeeping shared by the topology handlers."""

    record: WorkflowExecutionRecord
    token: CancellationToken
    deadline: float | None
    on_event: EventSink | None

    def emit(self, event_type: EventType, **data: object) -> None:
        if self.on_event is not None:
            self.on_event(WireEvent(type=event_type, data={"workflow_id": self.record.id, **data}))

    def deadline_passed(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


class WorkflowEngine:
    """Executes workflow descriptors against a catalog and an executor."""

    def __init__(
        self,
        catalog: AgentCatalog,
        executor: AgentExecutor,
        max_concurrency: int | None = None,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._catalog = catalog
        self._executor = executor
        self._max_concurrency = max_concurrency
        self._active: dict[str, tuple[WorkflowExecutionRecord, CancellationToken]] = {}

    # --- lifecycle ---

    async def execute(
        self,
        descriptor: WorkflowDescriptor,
        context: ExecutionContext,
        cancel_token: CancellationToken | None = None,
        on_event: EventSink | None = None,
    ) -> WorkflowExecutionRecord:
        """Run ``descriptor`` on a copy of ``context``.

        Always returns a terminal record; failures are recorded on it, not
        raised.
        """
        record = WorkflowExecutionRecord(descriptor=descriptor)
        token = cancel_token.child() if cancel_token is not None else CancellationToken()
        deadline = earliest_deadline(
            context.deadline,
            time.monotonic() + descriptor.timeout if descriptor.timeout else None,
        )
        run = _Run(record=record, token=token, deadline=deadline, on_event=on_event)

        self._active[record.id] = (record, token)
        record._start()
        logger.info("Starting workflow %s (%s) as %s", descriptor.name, descriptor.kind, record.id)
        run.emit(EventType.WORKFLOW_BEGIN, name=descriptor.name, type=descriptor.kind)

        try:
            working = context.with_deadline(deadline)
            status, stop_reason = await self._dispatch(run, descriptor, working)
            record._finish(status, stop_reason=stop_reason)
        except CancellationError as e:
            record._finish(WorkflowStatus.STOPPED, error=e, stop_reason=CANCELLED)
        except ExecutionTimeoutError as e:
            record._finish(WorkflowStatus.TIMED_OUT, error=e)
        except EnsembleError as e:
            logger.error("Workflow %s failed: %s", record.id, e)
            record._finish(WorkflowStatus.FAILED, error=e)
        except Exception as e:
            # Caller-supplied predicates, classifiers and parsers end up here.
            logger.error("Workflow %s crashed: %s", record.id, e, exc_info=True)
            wrapped = EnsembleError(f"{type(e).__name__}: {e}")
            wrapped.__cause__ = e
            record._finish(WorkflowStatus.FAILED, error=wrapped)
        finally:
            self._active.pop(record.id, None)

        logger.info(
            "Workflow %s finished: %s after %d steps%s",
            record.id,
            record.status.value,
            record.step,
            f" ({record.stop_reason})" if record.stop_reason else "",
        )
        if record.error is not None:
            run.emit(EventType.ERROR, error=str(record.error))
        run.emit(
            EventType.WORKFLOW_END,
            status=record.status.value,
            steps=record.step,
            stop_reason=record.stop_reason,
        )
        return record

    async def _dispatch(
        self, run: _Run, descriptor: WorkflowDescriptor, working: ExecutionContext
    ) -> Outcome:
        # Resolve every id up front so a typo fails before any call is made.
        agents = {agent_id: self._catalog.require(agent_id) for agent_id in descriptor.agent_ids()}

        match descriptor:
            case SequentialWorkflow():
                return await self._run_sequential(run, descriptor, agents, working)
            case ParallelWorkflow():
                return await self._run_parallel(run, descriptor, agents, working)
            case RoutingWorkflow():
                return await self._run_routing(run, descriptor, agents, working)
            case EvaluatorOptimizerWorkflow():
                return await self._run_evaluator_optimizer(run, descriptor, agents, working)
            case _:
                assert_never(descriptor)

    # --- active runs ---

    def active(self) -> list[WorkflowExecutionRecord]:
        return [record for record, _ in self._active.values()]

    def get(self, record_id: str) -> WorkflowExecutionRecord | None:
        entry = self._active.get(record_id)
        return entry[0] if entry else None

    def cancel(self, record_id: str) -> bool:
        """Request cooperative cancellation of a running workflow."""
        entry = self._active.get(record_id)
        if entry is None:
            return False
        entry[1].cancel(f"workflow {record_id} cancelled")
        logger.info("Cancelling workflow %s", record_id)
        return True

    def cancel_all(self) -> int:
        ids = list(self._active)
        for record_id in ids:
            self.cancel(record_id)
        return len(ids)

    # --- step helpers ---

    def _checkpoint(self, run: _Run) -> None:
        run.token.raise_if_cancelled()
        if run.deadline_passed():
            raise ExecutionTimeoutError(
                f"Workflow {run.record.descriptor.name} deadline exceeded"
            )

    def _options(self, run: _Run) -> ExecutionOptions:
        def _progress(step: int, total: int) -> None:
            run.emit(EventType.AGENT_PROGRESS, step=step, total=total)

        return ExecutionOptions(cancel_token=run.token, on_progress=_progress)

    async def _invoke(
        self, run: _Run, agent: AgentDefinition, context: ExecutionContext
    ) -> AgentExecutionResult:
        """Run one agent and append its result to the record."""
        run.emit(EventType.STEP_BEGIN, agent=agent.id, step=run.record.step + 1)
        result = await self._executor.execute(agent, context, self._options(run))
        run.record._append(result)
        run.emit(
            EventType.STEP_END,
            agent=agent.id,
            step=run.record.step + 1,
            terminal_reason=result.terminal_reason.value,
            error=result.error,
        )
        return result

    def _raise_if_run_ended(self, run: _Run, result: AgentExecutionResult) -> None:
        """Escalate a failed result that was really the run being cancelled or timing out."""
        if result.ok:
            return
        if result.metadata.cancelled:
            raise CancellationError(result.error or "cancelled")
        if result.terminal_reason is TerminalReason.TIMEOUT and run.deadline_passed():
            raise ExecutionTimeoutError(
                f"Workflow {run.record.descriptor.name} deadline exceeded"
            )

    def _abort_on_failure(self, run: _Run, result: AgentExecutionResult) -> None:
        self._raise_if_run_ended(run, result)
        if not result.ok:
            raise AgentExecutionError(result.agent_id, result.error or result.terminal_reason.value)

    def _predicate_fires(self, run: _Run) -> bool:
        predicate = run.record.descriptor.stop_when
        if predicate is None:
            return False
        if predicate(run.record.results):
            logger.info("Stop predicate fired after step %d", run.record.step)
            return True
        return False

    # --- topologies ---

    async def _run_sequential(
        self,
        run: _Run,
        descriptor: SequentialWorkflow,
        agents: dict[str, AgentDefinition],
        working: ExecutionContext,
    ) -> Outcome:
        limit = descriptor.step_limit()
        for agent_id in descriptor.agents:
            if run.record.step >= limit:
                return WorkflowStatus.STOPPED, MAX_STEPS
            self._checkpoint(run)

            result = await self._invoke(run, agents[agent_id], working)
            run.record._advance()
            self._abort_on_failure(run, result)

            working.extend(result.turns)
            working.data["previous_agent"] = agent_id
            if result.output is not None:
                working.data["previous_output"] = result.output

            if self._predicate_fires(run):
                return WorkflowStatus.STOPPED, STOP_PREDICATE
        return WorkflowStatus.COMPLETED, None

    async def _run_parallel(
        self,
        run: _Run,
        descriptor: ParallelWorkflow,
        agents: dict[str, AgentDefinition],
        working: ExecutionContext,
    ) -> Outcome:
        selected = [agents[a] for a in descriptor.agents[: descriptor.step_limit()]]
        self._checkpoint(run)

        for offset, agent in enumerate(selected, start=1):
            run.emit(EventType.STEP_BEGIN, agent=agent.id, step=run.record.step + offset)
        options = self._options(run)
        options.max_concurrency = descriptor.max_concurrency or self._max_concurrency
        results = await self._executor.execute_parallel(selected, working, options)

        for result in results:
            run.record._append(result)
            run.record._advance()
            run.emit(
                EventType.STEP_END,
                agent=result.agent_id,
                step=run.record.step,
                terminal_reason=result.terminal_reason.value,
                error=result.error,
            )

        failed = [r for r in results if not r.ok]
        for result in failed:
            self._raise_if_run_ended(run, result)
        if failed and len(failed) == len(results):
            raise AgentExecutionError(
                failed[0].agent_id,
                f"all {len(results)} parallel agents failed; first error: {failed[0].error}",
            )
        if failed:
            logger.warning(
                "Parallel workflow %s: %d of %d agents failed",
                descriptor.name,
                len(failed),
                len(results),
            )

        if self._predicate_fires(run):
            return WorkflowStatus.STOPPED, STOP_PREDICATE
        if len(selected) < len(descriptor.agents):
            return WorkflowStatus.STOPPED, MAX_STEPS
        return WorkflowStatus.COMPLETED, None

    async def _run_routing(
        self,
        run: _Run,
        descriptor: RoutingWorkflow,
        agents: dict[str, AgentDefinition],
        working: ExecutionContext,
    ) -> Outcome:
        router = agents[descriptor.router]
        self._checkpoint(run)
        routed = await self._invoke(run, router, working)
        run.record._advance()
        self._abort_on_failure(run, routed)

        candidates = [agents[c] for c in descriptor.candidates]
        destination = select_route(routed, candidates, descriptor.classifier)
        if destination is None:
            if descriptor.fallback is None:
                raise NoMatchingRouteError(router.id, list(descriptor.candidates), routed.text)
            logger.info("No route matched; using fallback %s", descriptor.fallback)
            destination = agents[descriptor.fallback]

        logger.info("Routing to %s (%s)", destination.id, descriptor.strategy.value)
        run.emit(EventType.ROUTE_SELECTED, router=router.id, destination=destination.id)

        if self._predicate_fires(run):
            return WorkflowStatus.STOPPED, STOP_PREDICATE
        if run.record.step >= descriptor.step_limit():
            return WorkflowStatus.STOPPED, MAX_STEPS
        self._checkpoint(run)

        destination_context = working.copy()
        destination_context.data["route"] = destination.id
        destination_context.data["router_output"] = routed.text
        result = await self._invoke(run, destination, destination_context)
        run.record._advance()
        self._abort_on_failure(run, result)

        if self._predicate_fires(run):
            return WorkflowStatus.STOPPED, STOP_PREDICATE
        return WorkflowStatus.COMPLETED, None

    async def _run_evaluator_optimizer(
        self,
        run: _Run,
        descriptor: EvaluatorOptimizerWorkflow,
        agents: dict[str, AgentDefinition],
        working: ExecutionContext,
    ) -> Outcome:
        generator = agents[descriptor.generator]
        evaluator = agents[descriptor.evaluator]
        parse_score = descriptor.score_parser or default_score_parser
        rounds = descriptor.step_limit()

        for round_no in range(1, rounds + 1):
            self._checkpoint(run)
            logger.info("Evaluator-optimizer round %d/%d", round_no, rounds)

            generated = await self._invoke(run, generator, working)
            self._raise_if_run_ended(run, generated)

            critique: AgentExecutionResult | None = None
            score: float | None = None
            if generated.ok:
                self._checkpoint(run)
                evaluation_context = working.copy()
                evaluation_context.extend(generated.turns)
                evaluation_context.data["iteration"] = round_no
                evaluation_context.data["generated_output"] = (
                    generated.output if generated.output is not None else generated.text
                )
                critique = await self._invoke(run, evaluator, evaluation_context)
                self._raise_if_run_ended(run, critique)
                if critique.ok:
                    score = parse_score(critique)
            else:
                logger.warning("Generator failed in round %d: %s", round_no, generated.error)

            run.record._advance()
            run.emit(
                EventType.EVALUATION, round=round_no, score=score, target=descriptor.target_score
            )

            working.extend(generated.turns)
            if critique is not None:
                working.extend(critique.turns)
                working.data["previous_evaluation"] = (
                    critique.output if critique.output is not None else critique.text
                )

            if self._predicate_fires(run):
                return WorkflowStatus.STOPPED, STOP_PREDICATE
            if score is not None and score >= descriptor.target_score:
                logger.info("Target score reached in round %d (%.1f)", round_no, score)
                return WorkflowStatus.COMPLETED, None

        return WorkflowStatus.STOPPED, MAX_STEPS
