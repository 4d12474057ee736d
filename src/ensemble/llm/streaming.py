"""Streaming events and the fold that turns them into a completed turn."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from ensemble.errors import GatewayError
from ensemble.llm.message import ContentPart, Message, TextPart, TokenUsage, ToolCallPart

if TYPE_CHECKING:
    from ensemble.llm.provider import Completion, CompletionConfig, StreamingGateway

logger = logging.getLogger(__name__)

StreamEventType = Literal["start", "chunk", "complete", "error"]


@dataclass
class StreamEvent:
    """One incremental event of a streamed completion.

    ``chunk`` events carry an OpenAI-style ``delta`` dict (``content`` and/or
    ``tool_calls``). ``complete`` may carry the final usage; ``error`` carries
    the failure text.
    """

    type: StreamEventType
    message_id: str
    delta: dict[str, Any] = field(default_factory=dict)
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    error: str | None = None


async def collect_stream(
    events: AsyncIterable[StreamEvent], agent_id: str | None = None
) -> Completion:
    """Fold a stream of events into a single :class:`Completion`.

    Raises:
        GatewayError: on an ``error`` event, or when the stream ends
            without producing anything usable.
    """
    from ensemble.llm.provider import Completion

    message_id = ""
    text_buffer = ""
    tool_call_buffers: dict[int, dict[str, str]] = {}
    usage = TokenUsage()
    finish_reason: str | None = None
    saw_any = False

    async for event in events:
        saw_any = True
        if event.message_id:
            message_id = event.message_id

        if event.type == "error":
            raise GatewayError(event.error or "stream reported an error")

        if event.finish_reason:
            finish_reason = event.finish_reason
        if event.usage is not None:
            usage = event.usage

        if event.type != "chunk":
            continue

        content = event.delta.get("content")
        if content:
            text_buffer += content

        for tc_delta in event.delta.get("tool_calls") or []:
            idx = tc_delta.get("index", 0)
            buf = tool_call_buffers.setdefault(
                idx, {"id": "", "name": "", "arguments": ""}
            )
            if tc_delta.get("id"):
                buf["id"] = tc_delta["id"]
            func = tc_delta.get("function") or {}
            if func.get("name"):
                buf["name"] = func["name"]
            if func.get("arguments"):
                buf["arguments"] += func["arguments"]

    if not saw_any:
        raise GatewayError("stream ended without any events")

    parts: list[ContentPart] = []
    if text_buffer:
        parts.append(TextPart(text=text_buffer))
    for idx in sorted(tool_call_buffers):
        buf = tool_call_buffers[idx]
        parts.append(ToolCallPart(id=buf["id"], name=buf["name"], arguments=buf["arguments"]))

    message = Message(role="assistant", parts=parts, agent_id=agent_id)
    if message_id:
        message.id = message_id
    return Completion(
        turns=[message],
        finish_reason=finish_reason or ("tool_calls" if tool_call_buffers else "stop"),
        usage=usage,
    )


class StreamingCompletionAdapter:
    """Expose a streaming-only gateway through the ``complete`` interface."""

    def __init__(self, gateway: StreamingGateway) -> None:
        self._gateway = gateway

    async def complete(
        self, turns: list[Message], config: CompletionConfig
    ) -> Completion:
        return await collect_stream(
            self._gateway.stream(turns, config), agent_id=config.agent_id
        )


async def replay(events: list[StreamEvent]) -> AsyncIterator[StreamEvent]:
    """Yield pre-recorded events; handy for wiring recorded streams into a gateway."""
    for event in events:
        yield event
