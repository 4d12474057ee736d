"""Wire protocol — progress events from the engine to whoever is watching.

The engine delivers events through one synchronous sink
(``Callable[[WireEvent], None]``). ``Wire.send`` is such a sink and fans
events out to asyncio queues, so a CLI or UI can consume them in a
background task.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Callable


class EventType(enum.Enum):
    WORKFLOW_BEGIN = "workflow_begin"
    WORKFLOW_END = "workflow_end"
    STEP_BEGIN = "step_begin"
    STEP_END = "step_end"
    AGENT_PROGRESS = "agent_progress"
    ROUTE_SELECTED = "route_selected"
    EVALUATION = "evaluation"
    ITERATION = "iteration"
    ERROR = "error"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[WireEvent], None]


class Wire:
    """Broadcast bus: engine -> subscribers.

    Single-producer, multi-consumer.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_error(self, error: str) -> None:
        self.send(WireEvent(type=EventType.ERROR, data={"error": error}))

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from; ``None`` marks close."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
