"""Completion gateway abstraction, implemented on top of litellm.

The rest of ensemble only sees two protocols:

    CompletionGateway.complete(turns, config) -> Completion
    StreamingGateway.stream(turns, config)   -> AsyncIterator[StreamEvent]

litellm handles provider detection from the model string prefix
("anthropic/...", "openai/...", "gemini/...") and normalizes streaming to
OpenAI-format chunks, which we translate into StreamEvents.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ensemble.llm.message import Message, TokenUsage
from ensemble.llm.streaming import StreamEvent, collect_stream

if TYPE_CHECKING:
    from litellm import CustomStreamWrapper, ModelResponse, ModelResponseStream

logger = logging.getLogger(__name__)


@dataclass
class CompletionConfig:
    """Per-call configuration handed to the gateway."""

    agent_id: str | None = None
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    tools: list[dict[str, Any]] | None = None  # OpenAI tool specs


@dataclass
class Completion:
    """A completed gateway call."""

    turns: list[Message] = field(default_factory=list)
    finish_reason: str = "stop"  # "stop" | "tool_calls" | "length" | "error"
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None  # set with finish_reason "error"

    @property
    def message(self) -> Message | None:
        """The last assistant turn, if any."""
        for turn in reversed(self.turns):
            if turn.role == "assistant":
                return turn
        return None


@runtime_checkable
class CompletionGateway(Protocol):
    async def complete(
        self, turns: list[Message], config: CompletionConfig
    ) -> Completion: ...


@runtime_checkable
class StreamingGateway(Protocol):
    def stream(
        self, turns: list[Message], config: CompletionConfig
    ) -> AsyncIterator[StreamEvent]: ...


@dataclass
class ProviderConfig:
    """Defaults applied when an agent carries no model preference."""

    model: str
    temperature: float | None = None
    max_tokens: int | None = None


# ---------------------------------------------------------------------------
# litellm gateway
# ---------------------------------------------------------------------------


@dataclass
class LiteLLMGateway:
    """Completion gateway backed by litellm.

    API keys are read from the environment by litellm
    (ANTHROPIC_API_KEY, OPENAI_API_KEY, GEMINI_API_KEY, ...).
    """

    _config: ProviderConfig

    @property
    def config(self) -> ProviderConfig:
        return self._config

    def _request_kwargs(
        self, turns: list[Message], config: CompletionConfig
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": config.model or self._config.model,
            "messages": [t.to_openai_dict() for t in turns],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if config.tools:
            kwargs["tools"] = config.tools

        temperature = (
            config.temperature
            if config.temperature is not None
            else self._config.temperature
        )
        if temperature is not None:
            kwargs["temperature"] = temperature

        max_tokens = config.max_tokens or self._config.max_tokens
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return kwargs

    async def stream(
        self, turns: list[Message], config: CompletionConfig
    ) -> AsyncIterator[StreamEvent]:
        """Stream one completion as start/chunk/complete/error events."""
        message_id = f"msg_{uuid.uuid4().hex[:12]}"
        yield StreamEvent(type="start", message_id=message_id)

        finish_reason: str | None = None
        usage: TokenUsage | None = None
        try:
            response = await _acompletion_with_retry(**self._request_kwargs(turns, config))
            async for chunk in response:  # type: ignore[union-attr]
                d = _chunk_to_dict(chunk)
                if d.get("finish_reason"):
                    finish_reason = d["finish_reason"]
                if "usage" in d:
                    u = d["usage"]
                    usage = TokenUsage(
                        input_tokens=u["prompt_tokens"],
                        output_tokens=u["completion_tokens"],
                        total_tokens=u["total_tokens"],
                    )
                if d["delta"]:
                    yield StreamEvent(
                        type="chunk",
                        message_id=message_id,
                        delta=d["delta"],
                        finish_reason=d.get("finish_reason"),
                    )
        except Exception as e:
            logger.error("litellm call failed for agent %s: %s", config.agent_id, e)
            yield StreamEvent(type="error", message_id=message_id, error=str(e))
            return

        yield StreamEvent(
            type="complete",
            message_id=message_id,
            finish_reason=finish_reason,
            usage=usage,
        )

    async def complete(
        self, turns: list[Message], config: CompletionConfig
    ) -> Completion:
        return await collect_stream(self.stream(turns, config), agent_id=config.agent_id)


@retry(
    retry=retry_if_exception_type((ConnectionError, TimeoutError, OSError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _acompletion_with_retry(**kwargs: Any) -> CustomStreamWrapper | ModelResponse:
    """Call litellm.acompletion with retry on transient errors."""
    import litellm

    return await litellm.acompletion(**kwargs)


def _chunk_to_dict(chunk: ModelResponseStream) -> dict[str, Any]:
    """Normalize a litellm stream chunk to ``{finish_reason, delta, usage?}``."""
    result: dict[str, Any] = {"finish_reason": None, "delta": {}}

    choices = getattr(chunk, "choices", None)
    if choices:
        choice = choices[0]
        delta = choice.delta
        result["finish_reason"] = choice.finish_reason

        if delta.content is not None:
            result["delta"]["content"] = delta.content

        if delta.tool_calls:
            result["delta"]["tool_calls"] = [
                {
                    "index": tc.index,
                    "id": tc.id,
                    "function": {
                        "name": tc.function.name if tc.function else None,
                        "arguments": tc.function.arguments if tc.function else None,
                    },
                }
                for tc in delta.tool_calls
            ]

    usage = getattr(chunk, "usage", None)
    if usage:
        result["usage"] = {
            "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }

    return result


def create_gateway(
    model: str,
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> LiteLLMGateway:
    """Create a litellm-backed gateway.

    Args:
        model: Default model with provider prefix, used for agents that
            declare no model preference.
        temperature: Default sampling temperature.
        max_tokens: Default max output tokens.
    """
    return LiteLLMGateway(
        _config=ProviderConfig(model=model, temperature=temperature, max_tokens=max_tokens)
    )
