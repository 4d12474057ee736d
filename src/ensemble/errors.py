"""Error taxonomy for catalog, executor, engine and loop failures."""

from __future__ import annotations


class EnsembleError(Exception):
    """Base class for all ensemble errors."""


class ExecutionTimeoutError(EnsembleError, TimeoutError):
    """A per-agent, per-run or per-loop deadline elapsed."""


class CancellationError(EnsembleError):
    """An external stop was observed at a checkpoint."""


class NoMatchingRouteError(EnsembleError):
    """The router output did not select any candidate agent."""

    def __init__(self, router_id: str, candidates: list[str], raw: str = "") -> None:
        self.router_id = router_id
        self.candidates = candidates
        self.raw = raw
        super().__init__(
            f"Router '{router_id}' output matched none of: {', '.join(candidates)}"
        )


class DuplicateAgentError(EnsembleError):
    """An agent with the same id is already registered."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent with id '{agent_id}' already registered")


class AgentNotFoundError(EnsembleError):
    """No agent is registered under the requested id."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class AgentValidationError(EnsembleError):
    """An agent definition failed validation."""


class GatewayError(EnsembleError):
    """The completion gateway failed or returned unusable data."""


class MaxStepsExceededError(EnsembleError):
    """A tool-call loop ran out of steps before the agent finished."""


class AgentExecutionError(EnsembleError):
    """A single agent invocation failed inside a topology that aborts on failure."""

    def __init__(self, agent_id: str, message: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} failed: {message}")
