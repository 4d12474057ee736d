"""Agent system — definitions, catalog, executor."""

from ensemble.agent.agent import AgentDefinition, ModelPreference, discover_agents
from ensemble.agent.executor import AgentExecutor, ExecutionOptions
from ensemble.agent.registry import AgentCatalog
from ensemble.agent.result import (
    AgentExecutionResult,
    ExecutionMetadata,
    TerminalReason,
    extract_output,
)

__all__ = [
    "AgentDefinition",
    "ModelPreference",
    "discover_agents",
    "AgentExecutor",
    "ExecutionOptions",
    "AgentCatalog",
    "AgentExecutionResult",
    "ExecutionMetadata",
    "TerminalReason",
    "extract_output",
]
