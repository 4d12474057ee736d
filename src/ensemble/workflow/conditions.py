"""Ready-made stop conditions.

Workflow stop predicates look at the results committed so far:
``(results) -> bool``. Loop stop conditions also get the iteration number:
``(iteration, results) -> bool``, where each result is an
AgentExecutionResult or a WorkflowExecutionRecord.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any, Callable

from ensemble.agent.result import AgentExecutionResult
from ensemble.workflow.record import WorkflowExecutionRecord, WorkflowStatus

LoopResult = AgentExecutionResult | WorkflowExecutionRecord
LoopStopCondition = Callable[[int, Sequence[LoopResult]], bool]


def result_text(result: LoopResult) -> str:
    if isinstance(result, WorkflowExecutionRecord):
        return result.output_text
    return result.text


def result_output(result: LoopResult) -> Any:
    if isinstance(result, WorkflowExecutionRecord):
        for r in reversed(result.results):
            if r.output is not None:
                return r.output
        return None
    return result.output


def result_failed(result: LoopResult) -> bool:
    if isinstance(result, WorkflowExecutionRecord):
        return result.status in (WorkflowStatus.FAILED, WorkflowStatus.TIMED_OUT)
    return not result.ok


# --- workflow predicates ---


def contains_keyword(keyword: str) -> Callable[[Sequence[AgentExecutionResult]], bool]:
    """Stop once the latest result's text contains ``keyword`` (case-insensitive)."""
    needle = keyword.lower()

    def _predicate(results: Sequence[AgentExecutionResult]) -> bool:
        return bool(results) and needle in results[-1].text.lower()

    return _predicate


# --- loop conditions ---


def keyword_stop_condition(keyword: str) -> LoopStopCondition:
    needle = keyword.lower()

    def _condition(_iteration: int, results: Sequence[LoopResult]) -> bool:
        return bool(results) and needle in result_text(results[-1]).lower()

    return _condition


def iteration_stop_condition(max_iterations: int) -> LoopStopCondition:
    return lambda iteration, _results: iteration >= max_iterations


def success_stop_condition(evaluator: Callable[[LoopResult], bool]) -> LoopStopCondition:
    """Stop when ``evaluator`` accepts the latest result."""

    def _condition(_iteration: int, results: Sequence[LoopResult]) -> bool:
        return bool(results) and evaluator(results[-1])

    return _condition


def error_threshold_stop_condition(max_errors: int) -> LoopStopCondition:
    """Stop after ``max_errors`` consecutive failed iterations."""

    def _condition(_iteration: int, results: Sequence[LoopResult]) -> bool:
        if len(results) < max_errors:
            return False
        return all(result_failed(r) for r in results[-max_errors:])

    return _condition


def stability_stop_condition(
    stable_iterations: int,
    comparator: Callable[[Any, Any], bool] | None = None,
) -> LoopStopCondition:
    """Stop when the last ``stable_iterations`` outputs are all equal."""

    def _same(a: Any, b: Any) -> bool:
        return json.dumps(a, sort_keys=True, default=str) == json.dumps(
            b, sort_keys=True, default=str
        )

    compare = comparator or _same

    def _condition(_iteration: int, results: Sequence[LoopResult]) -> bool:
        if len(results) < stable_iterations:
            return False
        recent = [result_output(r) for r in results[-stable_iterations:]]
        return all(compare(o, recent[0]) for o in recent)

    return _condition
