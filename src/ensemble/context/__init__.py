"""Execution context — the turns and data one run hands to its agents."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from ensemble.context.cancellation import CancellationToken
from ensemble.llm.message import Message

__all__ = ["CancellationToken", "ExecutionContext", "earliest_deadline"]


def earliest_deadline(*deadlines: float | None) -> float | None:
    """The earliest of several monotonic deadlines, ignoring None."""
    present = [d for d in deadlines if d is not None]
    return min(present) if present else None


@dataclass
class ExecutionContext:
    """Conversation state visible to the next agent invocation.

    Owned by exactly one run. Concurrent invocations get their own
    :meth:`copy` and never write back.
    """

    conversation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    turns: list[Message] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    max_steps: int | None = None
    deadline: float | None = None  # time.monotonic() value

    def __post_init__(self) -> None:
        if self.max_steps is not None and self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")

    @classmethod
    def from_text(cls, *texts: str, **kwargs: Any) -> ExecutionContext:
        """Context seeded with one user turn per text."""
        return cls(turns=[Message.user(t) for t in texts], **kwargs)

    def copy(self) -> ExecutionContext:
        """Independent copy: new turn list and data dict (turns themselves are shared)."""
        return ExecutionContext(
            conversation_id=self.conversation_id,
            turns=list(self.turns),
            data=dict(self.data),
            max_steps=self.max_steps,
            deadline=self.deadline,
        )

    def extend(self, turns: list[Message] | tuple[Message, ...]) -> None:
        self.turns.extend(turns)

    def with_deadline(self, deadline: float | None) -> ExecutionContext:
        """Copy whose deadline is the earlier of the current one and ``deadline``."""
        ctx = self.copy()
        ctx.deadline = earliest_deadline(self.deadline, deadline)
        return ctx

    def remaining(self) -> float | None:
        """Seconds until the deadline (may be negative), or None."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    @property
    def last_text(self) -> str:
        return self.turns[-1].text if self.turns else ""
