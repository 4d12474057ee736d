"""Agent executor — runs one agent (or several concurrently) to completion."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Callable

from ensemble.agent.agent import AgentDefinition
from ensemble.agent.result import (
    AgentExecutionResult,
    ExecutionMetadata,
    TerminalReason,
    extract_output,
)
from ensemble.context import CancellationToken, ExecutionContext, earliest_deadline
from ensemble.llm.message import Message, TokenUsage, ToolCall
from ensemble.llm.provider import CompletionConfig, CompletionGateway
from ensemble.tool.registry import ToolRegistry

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, int], None]  # (step, total_steps)


@dataclass
class ExecutionOptions:
    """Per-call knobs; unset values fall back to the context, then executor defaults."""

    max_steps: int | None = None
    timeout: float | None = None  # seconds
    cancel_token: CancellationToken | None = None
    on_progress: ProgressSink | None = None
    max_concurrency: int | None = None  # execute_parallel only; None = unbounded

    def __post_init__(self) -> None:
        if self.max_steps is not None and self.max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")


class AgentExecutor:
    """Runs agents against a completion gateway.

    For each agent the executor:
    1. Builds the turn list (instructions as system turn + context turns)
    2. Calls the gateway
    3. Dispatches any tool calls and feeds the results back
    4. Repeats until the model stops calling tools or ``max_steps`` is hit

    Failures local to the invocation (gateway errors, deadline, observed
    cancellation) are captured on the returned result, never raised.
    """

    def __init__(
        self,
        gateway: CompletionGateway,
        tool_registry: ToolRegistry | None = None,
        default_max_steps: int = 10,
        default_timeout: float | None = 60.0,
    ) -> None:
        if default_max_steps < 1:
            raise ValueError("default_max_steps must be >= 1")
        self._gateway = gateway
        self._tools = tool_registry or ToolRegistry()
        self._default_max_steps = default_max_steps
        self._default_timeout = default_timeout
        self._active: set[str] = set()

    @property
    def tool_registry(self) -> ToolRegistry:
        return self._tools

    def active_count(self) -> int:
        """Number of invocations currently in flight."""
        return len(self._active)

    async def execute(
        self,
        agent: AgentDefinition,
        context: ExecutionContext,
        options: ExecutionOptions | None = None,
    ) -> AgentExecutionResult:
        """Run ``agent`` on ``context`` and fold every round trip into one result.

        ``context`` is read, never mutated.
        """
        options = options or ExecutionOptions()
        execution_id = f"exec_{uuid.uuid4().hex[:10]}"
        self._active.add(execution_id)
        try:
            return await self._run(agent, context, options)
        finally:
            self._active.discard(execution_id)

    async def _run(
        self,
        agent: AgentDefinition,
        context: ExecutionContext,
        options: ExecutionOptions,
    ) -> AgentExecutionResult:
        start = time.monotonic()
        max_steps = options.max_steps if options.max_steps is not None else context.max_steps
        if max_steps is None:
            max_steps = self._default_max_steps
        timeout = options.timeout if options.timeout is not None else self._default_timeout
        deadline = earliest_deadline(
            context.deadline, start + timeout if timeout is not None else None
        )
        token = options.cancel_token

        turns = list(context.turns)
        if agent.instructions and not (turns and turns[0].role == "system"):
            turns.insert(0, Message.system(agent.instructions))

        config = CompletionConfig(
            agent_id=agent.id,
            model=agent.model.model if agent.model else None,
            temperature=agent.model.temperature if agent.model else None,
            max_tokens=agent.model.max_tokens if agent.model else None,
            tools=self._tools.get_specs(agent.tools) if agent.tools else None,
        )

        produced: list[Message] = []
        usage = TokenUsage()
        steps = 0
        tool_call_count = 0
        reason: TerminalReason | None = None
        error: str | None = None
        cancelled = False

        def _finish() -> AgentExecutionResult:
            final_reason = reason or TerminalReason.MAX_STEPS
            output = None
            if final_reason is TerminalReason.COMPLETED and produced:
                output = extract_output(produced[-1].text)
            return AgentExecutionResult(
                agent_id=agent.id,
                turns=tuple(produced),
                output=output,
                metadata=ExecutionMetadata(
                    steps=steps,
                    tool_calls=tool_call_count,
                    usage=usage,
                    duration=time.monotonic() - start,
                    terminal_reason=final_reason,
                    cancelled=cancelled,
                ),
                error=error,
            )

        logger.info("Executing agent %s (max %d steps)", agent.id, max_steps)
        if options.on_progress:
            options.on_progress(0, max_steps)

        while steps < max_steps:
            if token is not None and token.cancelled:
                logger.info("Agent %s: cancelled before step %d", agent.id, steps + 1)
                reason, error, cancelled = TerminalReason.ERROR, token.reason or "cancelled", True
                return _finish()

            remaining = deadline - time.monotonic() if deadline is not None else None
            if remaining is not None and remaining <= 0:
                reason, error = TerminalReason.TIMEOUT, f"Agent {agent.id} deadline exceeded"
                return _finish()

            steps += 1
            logger.debug("Agent %s: step %d/%d", agent.id, steps, max_steps)

            try:
                completion = await asyncio.wait_for(
                    self._gateway.complete(list(turns), config), timeout=remaining
                )
            except asyncio.TimeoutError:
                logger.warning("Agent %s: timed out at step %d", agent.id, steps)
                reason = TerminalReason.TIMEOUT
                error = f"Agent {agent.id} timed out after {timeout}s"
                return _finish()
            except Exception as e:
                logger.error(
                    "Agent %s: gateway error at step %d: %s", agent.id, steps, e, exc_info=True
                )
                reason, error = TerminalReason.ERROR, str(e) or type(e).__name__
                return _finish()

            for turn in completion.turns:
                if turn.role == "assistant" and turn.agent_id is None:
                    turn.agent_id = agent.id
            produced.extend(completion.turns)
            turns.extend(completion.turns)
            usage = usage + completion.usage

            if completion.finish_reason == "error":
                reason = TerminalReason.ERROR
                error = completion.error or "gateway reported an error"
                return _finish()

            message = completion.message
            tool_calls = message.tool_calls if message is not None else []

            if tool_calls:
                tool_call_count += len(tool_calls)
                results = await self._dispatch_tools(agent, tool_calls)
                produced.extend(results)
                turns.extend(results)

            if options.on_progress:
                options.on_progress(steps, max_steps)

            if not tool_calls:
                logger.info("Agent %s completed after %d steps", agent.id, steps)
                reason = TerminalReason.COMPLETED
                return _finish()

        logger.warning("Agent %s hit max steps (%d)", agent.id, max_steps)
        return _finish()

    async def _dispatch_tools(
        self, agent: AgentDefinition, tool_calls: list[ToolCall]
    ) -> list[Message]:
        """Run one response's tool calls concurrently; results keep call order."""

        async def _run_tool(tc: ToolCall) -> Message:
            try:
                content, is_error = await self._tools.dispatch(tc, allowed=agent.tools)
            except Exception as e:
                logger.error("Tool %s failed for agent %s: %s", tc.name, agent.id, e)
                content, is_error = f"Error: {e}", True
            return Message.tool_result(tc.id, str(content), is_error)

        return list(await asyncio.gather(*(_run_tool(tc) for tc in tool_calls)))

    async def execute_parallel(
        self,
        agents: Sequence[AgentDefinition],
        context: ExecutionContext,
        options: ExecutionOptions | None = None,
    ) -> list[AgentExecutionResult]:
        """Run every agent concurrently on its own copy of ``context``.

        At most ``options.max_concurrency`` invocations are in flight at
        once. Results are returned in input order; one agent's failure
        never cancels its siblings.
        """
        options = options or ExecutionOptions()
        limit = options.max_concurrency
        if limit is not None and limit < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {limit}")
        semaphore = asyncio.Semaphore(limit) if limit is not None else None

        logger.info(
            "Executing %d agents in parallel (max concurrency: %s)",
            len(agents),
            limit or "unbounded",
        )

        async def _slot(agent: AgentDefinition) -> AgentExecutionResult:
            own = context.copy()
            try:
                if semaphore is None:
                    return await self.execute(agent, own, options)
                async with semaphore:
                    return await self.execute(agent, own, options)
            except Exception as e:
                logger.error("Agent %s crashed: %s", agent.id, e, exc_info=True)
                return AgentExecutionResult(
                    agent_id=agent.id,
                    metadata=ExecutionMetadata(terminal_reason=TerminalReason.ERROR),
                    error=str(e) or type(e).__name__,
                )

        return list(await asyncio.gather(*(_slot(a) for a in agents)))
