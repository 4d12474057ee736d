"""Workflow descriptors — one frozen dataclass per topology.

``WorkflowDescriptor`` is a closed union; the engine dispatches on it with
an exhaustive ``match``, so adding a topology means adding a case there.
"""

from __future__ import annotations

import enum
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar

from ensemble.agent.result import AgentExecutionResult

StopPredicate = Callable[[Sequence[AgentExecutionResult]], bool]
Classifier = Callable[[str], "str | None"]
ScoreParser = Callable[[AgentExecutionResult], "float | None"]

DEFAULT_EVALUATION_ROUNDS = 3
DEFAULT_TARGET_SCORE = 90.0


@dataclass(frozen=True, kw_only=True)
class _WorkflowBase:
    name: str = "workflow"
    max_steps: int | None = None
    timeout: float | None = None  # seconds for the whole run
    stop_when: StopPredicate | None = field(default=None, compare=False)

    kind: ClassVar[str] = ""

    def __post_init__(self) -> None:
        if self.max_steps is not None and self.max_steps < 1:
            raise ValueError(f"{self.name}: max_steps must be >= 1")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"{self.name}: timeout must be positive")

    def agent_ids(self) -> list[str]:
        raise NotImplementedError

    def natural_steps(self) -> int:
        raise NotImplementedError

    def step_limit(self) -> int:
        """The most steps a run of this descriptor may commit."""
        return self.max_steps if self.max_steps is not None else self.natural_steps()


def _as_tuple(obj: Any, name: str) -> None:
    object.__setattr__(obj, name, tuple(getattr(obj, name)))


@dataclass(frozen=True, kw_only=True)
class SequentialWorkflow(_WorkflowBase):
    """Agents run one at a time; each sees everything produced before it."""

    agents: tuple[str, ...]
    kind: ClassVar[str] = "sequential"

    def __post_init__(self) -> None:
        _as_tuple(self, "agents")
        super().__post_init__()
        if not self.agents:
            raise ValueError(f"{self.name}: sequential workflow needs at least one agent")

    def agent_ids(self) -> list[str]:
        return list(self.agents)

    def natural_steps(self) -> int:
        return len(self.agents)


@dataclass(frozen=True, kw_only=True)
class ParallelWorkflow(_WorkflowBase):
    """Agents run concurrently on the same starting context."""

    agents: tuple[str, ...]
    max_concurrency: int | None = None
    kind: ClassVar[str] = "parallel"

    def __post_init__(self) -> None:
        _as_tuple(self, "agents")
        super().__post_init__()
        if not self.agents:
            raise ValueError(f"{self.name}: parallel workflow needs at least one agent")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError(f"{self.name}: max_concurrency must be >= 1")

    def agent_ids(self) -> list[str]:
        return list(self.agents)

    def natural_steps(self) -> int:
        return len(self.agents)


class RouteStrategy(enum.Enum):
    CAPABILITY = "capability"  # router output must equal a candidate's capability tag
    CLASSIFIER = "classifier"  # caller-supplied text -> agent id function


@dataclass(frozen=True, kw_only=True)
class RoutingWorkflow(_WorkflowBase):
    """A router picks exactly one candidate, which then runs once."""

    router: str
    candidates: tuple[str, ...]
    classifier: Classifier | None = field(default=None, compare=False)
    fallback: str | None = None
    kind: ClassVar[str] = "routing"

    def __post_init__(self) -> None:
        _as_tuple(self, "candidates")
        super().__post_init__()
        if not self.candidates and self.fallback is None:
            raise ValueError(f"{self.name}: routing workflow needs candidates")

    @property
    def strategy(self) -> RouteStrategy:
        return RouteStrategy.CLASSIFIER if self.classifier else RouteStrategy.CAPABILITY

    def agent_ids(self) -> list[str]:
        ids = [self.router, *self.candidates]
        if self.fallback is not None:
            ids.append(self.fallback)
        return ids

    def natural_steps(self) -> int:
        return 2


@dataclass(frozen=True, kw_only=True)
class EvaluatorOptimizerWorkflow(_WorkflowBase):
    """Generator and evaluator alternate until the score reaches the target.

    ``max_steps`` bounds the number of rounds.
    """

    generator: str
    evaluator: str
    target_score: float = DEFAULT_TARGET_SCORE
    score_parser: ScoreParser | None = field(default=None, compare=False)
    kind: ClassVar[str] = "evaluator-optimizer"

    def agent_ids(self) -> list[str]:
        return [self.generator, self.evaluator]

    def natural_steps(self) -> int:
        return DEFAULT_EVALUATION_ROUNDS


WorkflowDescriptor = (
    SequentialWorkflow | ParallelWorkflow | RoutingWorkflow | EvaluatorOptimizerWorkflow
)


def descriptor_from_dict(data: dict[str, Any]) -> WorkflowDescriptor:
    """Build a descriptor from YAML/JSON data.

    Example::

        type: routing
        name: support-desk
        router: triage
        candidates: [billing, tech]
        triggers: {invoice: billing, crash: tech}
        timeout: 120
    """
    from ensemble.workflow.conditions import contains_keyword
    from ensemble.workflow.routing import keyword_classifier

    data = dict(data)
    kind = data.pop("type", None)
    common: dict[str, Any] = {
        "name": data.pop("name", "workflow"),
        "max_steps": data.pop("max_steps", None),
        "timeout": data.pop("timeout", None),
    }
    stop_keyword = data.pop("stop_on_keyword", None)
    if stop_keyword:
        common["stop_when"] = contains_keyword(stop_keyword)

    if kind == SequentialWorkflow.kind:
        return SequentialWorkflow(agents=tuple(data["agents"]), **common)
    if kind == ParallelWorkflow.kind:
        return ParallelWorkflow(
            agents=tuple(data["agents"]),
            max_concurrency=data.get("max_concurrency"),
            **common,
        )
    if kind == RoutingWorkflow.kind:
        triggers = data.get("triggers")
        return RoutingWorkflow(
            router=data["router"],
            candidates=tuple(data.get("candidates", ())),
            classifier=keyword_classifier(triggers) if triggers else None,
            fallback=data.get("fallback"),
            **common,
        )
    if kind == EvaluatorOptimizerWorkflow.kind:
        return EvaluatorOptimizerWorkflow(
            generator=data["generator"],
            evaluator=data["evaluator"],
            target_score=float(data.get("target_score", DEFAULT_TARGET_SCORE)),
            **common,
        )
    raise ValueError(f"Unknown workflow type: {kind!r}")
