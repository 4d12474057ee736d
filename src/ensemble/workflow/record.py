"""Workflow execution record — the auditable trace of one run."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from ensemble.agent.result import AgentExecutionResult
from ensemble.errors import EnsembleError
from ensemble.llm.message import Message
from ensemble.workflow.descriptor import WorkflowDescriptor


class WorkflowStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self not in (WorkflowStatus.PENDING, WorkflowStatus.RUNNING)


def _workflow_id() -> str:
    return f"workflow_{uuid.uuid4().hex[:12]}"


@dataclass
class WorkflowExecutionRecord:
    """State and results of one workflow run.

    Only the engine mutates a record, and only while it is running. Once a
    terminal status is set the result list is frozen.
    """

    descriptor: WorkflowDescriptor
    id: str = field(default_factory=_workflow_id)
    status: WorkflowStatus = WorkflowStatus.PENDING
    started_at: float | None = None  # epoch seconds
    finished_at: float | None = None
    step: int = 0
    error: EnsembleError | None = None
    stop_reason: str | None = None  # "stop_predicate" | "max_steps" | "cancelled"
    _results: list[AgentExecutionResult] | tuple[AgentExecutionResult, ...] = field(
        default_factory=list, repr=False
    )

    @property
    def results(self) -> tuple[AgentExecutionResult, ...]:
        return tuple(self._results)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration(self) -> float | None:
        if self.started_at is None:
            return None
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at

    @property
    def output_turns(self) -> list[Message]:
        """Every produced turn, in result order."""
        return [turn for r in self._results for turn in r.turns]

    @property
    def output_text(self) -> str:
        """Final text of the last successful result."""
        for r in reversed(self._results):
            if r.ok and r.text:
                return r.text
        return ""

    # --- engine-only mutation ---

    def _start(self) -> None:
        if self.status is not WorkflowStatus.PENDING:
            raise RuntimeError(f"Workflow {self.id} already started")
        self.status = WorkflowStatus.RUNNING
        self.started_at = time.time()

    def _append(self, result: AgentExecutionResult) -> None:
        if not isinstance(self._results, list):
            raise RuntimeError(f"Workflow {self.id} is {self.status.value}; results are frozen")
        self._results.append(result)

    def _advance(self, steps: int = 1) -> None:
        limit = self.descriptor.step_limit()
        if self.step + steps > limit:
            raise RuntimeError(
                f"Workflow {self.id} would exceed its step limit ({limit})"
            )
        self.step += steps

    def _finish(
        self,
        status: WorkflowStatus,
        error: EnsembleError | None = None,
        stop_reason: str | None = None,
    ) -> None:
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        self.status = status
        self.error = error
        self.stop_reason = stop_reason
        self.finished_at = time.time()
        self._results = tuple(self._results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflow": self.descriptor.name,
            "type": self.descriptor.kind,
            "status": self.status.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "step": self.step,
            "stop_reason": self.stop_reason,
            "error": str(self.error) if self.error else None,
            "error_type": type(self.error).__name__ if self.error else None,
            "results": [r.to_dict() for r in self._results],
        }
