"""Tests for ensemble.agent.executor (AgentExecutor)."""

from __future__ import annotations

import pytest
from pydantic import BaseModel

from ensemble.agent.executor import AgentExecutor, ExecutionOptions
from ensemble.agent.result import TerminalReason
from ensemble.context import CancellationToken, ExecutionContext
from ensemble.errors import CancellationError, ExecutionTimeoutError, GatewayError
from ensemble.llm.message import Message
from ensemble.llm.provider import Completion, CompletionConfig
from ensemble.tool.base import BaseTool, ToolOk, ToolResult
from ensemble.tool.registry import ToolRegistry

from fakes import ConcurrencyProbe, EchoGateway, ScriptedGateway, ToolCallingGateway, make_agent


class UpperParams(BaseModel):
    text: str


class UpperTool(BaseTool[UpperParams]):
    name = "upper"
    description = "Upper-case a string."
    param_model = UpperParams

    async def execute(self, params: UpperParams) -> ToolResult:
        return ToolOk(output=params.text.upper())


def _tools() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(UpperTool())
    return registry


# ---------------------------------------------------------------------------
# execute — happy path
# ---------------------------------------------------------------------------


class TestExecute:
    async def test_echo_completes(self) -> None:
        gateway = EchoGateway()
        executor = AgentExecutor(gateway)
        result = await executor.execute(make_agent("a"), ExecutionContext.from_text("hello"))

        assert result.ok
        assert result.terminal_reason == TerminalReason.COMPLETED
        assert result.text == "a:hello"
        assert result.turns[0].agent_id == "a"
        assert result.metadata.steps == 1
        assert result.metadata.usage.total_tokens == 15
        assert result.to_exception() is None

    async def test_instructions_become_system_turn(self) -> None:
        gateway = EchoGateway()
        await AgentExecutor(gateway).execute(make_agent("a"), ExecutionContext.from_text("hi"))
        _, turns = gateway.calls[0]
        assert turns[0].role == "system"
        assert turns[0].text == "You are a."
        assert turns[1].text == "hi"

    async def test_existing_system_turn_kept(self) -> None:
        gateway = EchoGateway()
        ctx = ExecutionContext(turns=[Message.system("house rules"), Message.user("hi")])
        await AgentExecutor(gateway).execute(make_agent("a"), ctx)
        _, turns = gateway.calls[0]
        assert [t.text for t in turns] == ["house rules", "hi"]

    async def test_context_not_mutated(self) -> None:
        ctx = ExecutionContext.from_text("hello")
        await AgentExecutor(EchoGateway()).execute(make_agent("a"), ctx)
        assert [t.text for t in ctx.turns] == ["hello"]

    async def test_structured_output_extracted(self) -> None:
        gateway = ScriptedGateway({"a": ['Here:\n```json\n{"score": 95}\n```']})
        result = await AgentExecutor(gateway).execute(make_agent("a"), ExecutionContext())
        assert result.output == {"score": 95}

    async def test_progress_sink(self) -> None:
        seen: list[tuple[int, int]] = []
        options = ExecutionOptions(max_steps=4, on_progress=lambda s, t: seen.append((s, t)))
        await AgentExecutor(EchoGateway()).execute(make_agent("a"), ExecutionContext(), options)
        assert seen == [(0, 4), (1, 4)]

    async def test_active_count_returns_to_zero(self) -> None:
        executor = AgentExecutor(EchoGateway())
        await executor.execute(make_agent("a"), ExecutionContext())
        assert executor.active_count() == 0


# ---------------------------------------------------------------------------
# execute — tool round trips
# ---------------------------------------------------------------------------


class TestToolRoundTrips:
    async def test_tool_result_fed_back(self) -> None:
        gateway = ToolCallingGateway("upper", {"text": "quiet"})
        executor = AgentExecutor(gateway, tool_registry=_tools())
        agent = make_agent("a", tools=("upper",))

        result = await executor.execute(agent, ExecutionContext.from_text("go"))

        assert result.terminal_reason == TerminalReason.COMPLETED
        assert result.metadata.steps == 2
        assert result.metadata.tool_calls == 1
        assert [t.role for t in result.turns] == ["assistant", "tool", "assistant"]
        assert result.text == "done: QUIET"

    async def test_undeclared_tool_is_refused(self) -> None:
        gateway = ToolCallingGateway("upper", {"text": "quiet"})
        executor = AgentExecutor(gateway, tool_registry=_tools())

        result = await executor.execute(make_agent("a"), ExecutionContext())

        tool_turn = result.turns[1]
        assert tool_turn.parts[0].is_error is True
        assert "not available" in tool_turn.parts[0].content

    async def test_invalid_tool_arguments(self) -> None:
        gateway = ToolCallingGateway("upper", {"wrong": 1})
        executor = AgentExecutor(gateway, tool_registry=_tools())

        result = await executor.execute(make_agent("a", tools=("upper",)), ExecutionContext())

        assert result.ok
        assert "Invalid parameters" in result.turns[1].parts[0].content

    async def test_max_steps(self) -> None:
        class AlwaysCalls(ToolCallingGateway):
            async def complete(self, turns, config):  # type: ignore[override]
                return await super().complete([t for t in turns if t.role != "tool"], config)

        executor = AgentExecutor(AlwaysCalls("upper", {"text": "x"}), tool_registry=_tools())
        agent = make_agent("a", tools=("upper",))

        result = await executor.execute(agent, ExecutionContext(), ExecutionOptions(max_steps=3))

        assert result.terminal_reason == TerminalReason.MAX_STEPS
        assert result.metadata.steps == 3
        assert result.metadata.tool_calls == 3
        assert result.ok
        assert result.output is None


# ---------------------------------------------------------------------------
# execute — failures are captured, not raised
# ---------------------------------------------------------------------------


class TestExecuteFailures:
    async def test_timeout(self) -> None:
        gateway = ScriptedGateway({"a": [(0.5, "late")]})
        executor = AgentExecutor(gateway)

        result = await executor.execute(
            make_agent("a"), ExecutionContext(), ExecutionOptions(timeout=0.05)
        )

        assert result.terminal_reason == TerminalReason.TIMEOUT
        assert not result.ok
        assert isinstance(result.to_exception(), ExecutionTimeoutError)

    async def test_context_deadline_already_passed(self) -> None:
        gateway = EchoGateway()
        ctx = ExecutionContext(deadline=0.0)
        result = await AgentExecutor(gateway).execute(make_agent("a"), ctx)
        assert result.terminal_reason == TerminalReason.TIMEOUT
        assert gateway.calls == []

    async def test_cancelled_before_first_call(self) -> None:
        gateway = EchoGateway()
        token = CancellationToken()
        token.cancel("user abort")

        result = await AgentExecutor(gateway).execute(
            make_agent("a"), ExecutionContext(), ExecutionOptions(cancel_token=token)
        )

        assert result.terminal_reason == TerminalReason.ERROR
        assert result.metadata.cancelled is True
        assert result.error == "user abort"
        assert isinstance(result.to_exception(), CancellationError)
        assert gateway.calls == []

    async def test_gateway_exception(self) -> None:
        gateway = ScriptedGateway({"a": [ConnectionError("socket closed")]})
        result = await AgentExecutor(gateway).execute(make_agent("a"), ExecutionContext())
        assert result.terminal_reason == TerminalReason.ERROR
        assert result.error == "socket closed"
        assert isinstance(result.to_exception(), GatewayError)


# ---------------------------------------------------------------------------
# execute_parallel
# ---------------------------------------------------------------------------


class TestExecuteParallel:
    async def test_results_in_input_order(self) -> None:
        agents = [make_agent(f"agent{i}") for i in range(8)]
        results = await AgentExecutor(ConcurrencyProbe()).execute_parallel(
            agents, ExecutionContext.from_text("go")
        )
        assert [r.agent_id for r in results] == [a.id for a in agents]

    async def test_concurrency_bound(self) -> None:
        probe = ConcurrencyProbe()
        agents = [make_agent(f"agent{i}") for i in range(6)]
        await AgentExecutor(probe).execute_parallel(
            agents, ExecutionContext(), ExecutionOptions(max_concurrency=2)
        )
        assert 1 <= probe.peak <= 2

    async def test_unbounded(self) -> None:
        probe = ConcurrencyProbe()
        agents = [make_agent(f"agent{i}") for i in range(5)]
        await AgentExecutor(probe).execute_parallel(agents, ExecutionContext())
        assert probe.peak == 5

    async def test_each_agent_sees_same_starting_context(self) -> None:
        agents = [make_agent("a"), make_agent("b")]
        ctx = ExecutionContext.from_text("hello")
        results = await AgentExecutor(EchoGateway()).execute_parallel(agents, ctx)
        assert [r.text for r in results] == ["a:hello", "b:hello"]
        assert len(ctx.turns) == 1

    async def test_one_failure_does_not_cancel_siblings(self) -> None:
        gateway = ScriptedGateway(
            {"a": ["fine"], "b": [RuntimeError("boom")], "c": [(0.01, "also fine")]}
        )
        agents = [make_agent("a"), make_agent("b"), make_agent("c")]
        results = await AgentExecutor(gateway).execute_parallel(agents, ExecutionContext())
        assert [r.ok for r in results] == [True, False, True]
        assert results[1].error == "boom"
        assert results[2].text == "also fine"


# ---------------------------------------------------------------------------
# Option validation and gateway-reported errors
# ---------------------------------------------------------------------------


class ErrorGateway:
    """Returns a completion flagged as an error."""

    def __init__(self, error: str | None) -> None:
        self.error = error

    async def complete(self, turns: list[Message], config: CompletionConfig) -> Completion:
        return Completion(
            turns=[Message.assistant("", agent_id=config.agent_id)],
            finish_reason="error",
            error=self.error,
        )


class TestValidationAndErrors:
    def test_options_reject_zero_steps(self) -> None:
        with pytest.raises(ValueError):
            ExecutionOptions(max_steps=0)

    def test_options_reject_zero_concurrency(self) -> None:
        with pytest.raises(ValueError):
            ExecutionOptions(max_concurrency=0)

    def test_executor_rejects_zero_default_steps(self) -> None:
        with pytest.raises(ValueError):
            AgentExecutor(EchoGateway(), default_max_steps=0)

    async def test_parallel_rejects_zero_concurrency_set_later(self) -> None:
        options = ExecutionOptions()
        options.max_concurrency = 0
        with pytest.raises(ValueError):
            await AgentExecutor(EchoGateway()).execute_parallel(
                [make_agent("a")], ExecutionContext(), options
            )

    async def test_context_max_steps_used(self) -> None:
        class AlwaysCalls(ToolCallingGateway):
            async def complete(self, turns, config):  # type: ignore[override]
                return await super().complete([t for t in turns if t.role != "tool"], config)

        executor = AgentExecutor(AlwaysCalls("upper", {"text": "x"}), tool_registry=_tools())
        result = await executor.execute(
            make_agent("a", tools=("upper",)), ExecutionContext(max_steps=2)
        )
        assert result.metadata.steps == 2

    async def test_gateway_error_text_kept(self) -> None:
        result = await AgentExecutor(ErrorGateway("quota exhausted")).execute(
            make_agent("a"), ExecutionContext()
        )
        assert result.terminal_reason == TerminalReason.ERROR
        assert result.error == "quota exhausted"

    async def test_gateway_error_without_text(self) -> None:
        result = await AgentExecutor(ErrorGateway(None)).execute(
            make_agent("a"), ExecutionContext()
        )
        assert result.error == "gateway reported an error"
