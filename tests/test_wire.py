"""Tests for ensemble.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from ensemble.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType / WireEvent
# ---------------------------------------------------------------------------


class TestEventType:
    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.STEP_BEGIN)
        assert event.data == {}


# ---------------------------------------------------------------------------
# Wire
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send(WireEvent(type=EventType.STEP_END, data={"agent": "a"}))
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.data["agent"] == e2.data["agent"] == "a"

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send(WireEvent(type=EventType.STEP_BEGIN))
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)

    def test_send_error(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_error("something failed")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.ERROR
        assert event.data["error"] == "something failed"

    def test_close_sends_sentinel_then_drops(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        assert q.get_nowait() is None
        wire.send(WireEvent(type=EventType.STEP_BEGIN))
        assert q.empty()

    async def test_usable_as_engine_sink(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        sink = wire.send
        sink(WireEvent(type=EventType.WORKFLOW_BEGIN, data={"name": "w"}))
        wire.close()
        received = []
        event = await q.get()
        while event is not None:
            received.append(event.type)
            event = await q.get()
        assert received == [EventType.WORKFLOW_BEGIN]
