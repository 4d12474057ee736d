"""Result of one agent invocation."""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from typing import Any

from ensemble.errors import (
    CancellationError,
    EnsembleError,
    ExecutionTimeoutError,
    GatewayError,
    MaxStepsExceededError,
)
from ensemble.llm.message import Message, TokenUsage


class TerminalReason(enum.Enum):
    """Why did the agent invocation end?"""

    COMPLETED = "completed"  # model finished without further tool calls
    MAX_STEPS = "max_steps"  # tool-call loop hit its bound
    TIMEOUT = "timeout"  # deadline elapsed
    ERROR = "error"  # gateway failure or cancellation


@dataclass(frozen=True)
class ExecutionMetadata:
    steps: int = 0
    tool_calls: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    duration: float = 0.0  # seconds
    terminal_reason: TerminalReason = TerminalReason.COMPLETED
    cancelled: bool = False


@dataclass(frozen=True)
class AgentExecutionResult:
    """Immutable record of what one agent produced."""

    agent_id: str
    turns: tuple[Message, ...] = ()
    output: Any = None
    metadata: ExecutionMetadata = field(default_factory=ExecutionMetadata)
    error: str | None = None

    @property
    def terminal_reason(self) -> TerminalReason:
        return self.metadata.terminal_reason

    @property
    def ok(self) -> bool:
        """False for error and timeout terminals; max-steps still counts as output."""
        return self.metadata.terminal_reason in (
            TerminalReason.COMPLETED,
            TerminalReason.MAX_STEPS,
        )

    @property
    def text(self) -> str:
        """Text of the last assistant turn."""
        for turn in reversed(self.turns):
            if turn.role == "assistant" and turn.text:
                return turn.text
        return ""

    def to_exception(self) -> EnsembleError | None:
        """Map the terminal reason onto the error taxonomy (None when completed)."""
        reason = self.metadata.terminal_reason
        if reason is TerminalReason.COMPLETED:
            return None
        if reason is TerminalReason.MAX_STEPS:
            return MaxStepsExceededError(
                f"Agent {self.agent_id} used all {self.metadata.steps} steps"
            )
        if reason is TerminalReason.TIMEOUT:
            return ExecutionTimeoutError(self.error or f"Agent {self.agent_id} timed out")
        if self.metadata.cancelled:
            return CancellationError(self.error or "cancelled")
        return GatewayError(self.error or f"Agent {self.agent_id} failed")

    def to_dict(self) -> dict[str, Any]:
        m = self.metadata
        return {
            "agent_id": self.agent_id,
            "turns": [t.to_dict() for t in self.turns],
            "output": self.output,
            "error": self.error,
            "metadata": {
                "steps": m.steps,
                "tool_calls": m.tool_calls,
                "usage": {
                    "input_tokens": m.usage.input_tokens,
                    "output_tokens": m.usage.output_tokens,
                    "total_tokens": m.usage.total_tokens,
                },
                "duration": round(m.duration, 4),
                "terminal_reason": m.terminal_reason.value,
                "cancelled": m.cancelled,
            },
        }


_JSON_FENCE = re.compile(r"```json\s*\n(.*?)\n```", re.DOTALL)


def extract_output(text: str) -> Any:
    """Structured output from a final answer: a ```json block or a bare JSON value.

    Returns None when the text carries no JSON object or array.
    """
    if not text:
        return None
    match = _JSON_FENCE.search(text)
    candidate = match.group(1) if match else text.strip()
    if not candidate.startswith(("{", "[")):
        return None
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        return None
