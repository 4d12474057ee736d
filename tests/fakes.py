"""Fake completion gateways and helpers shared by the tests."""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Callable

from ensemble.agent.agent import AgentDefinition
from ensemble.llm.message import Message, TokenUsage, ToolCallPart
from ensemble.llm.provider import Completion, CompletionConfig


def make_agent(agent_id: str, *capabilities: str, **kwargs) -> AgentDefinition:
    kwargs.setdefault("name", agent_id.title())
    kwargs.setdefault("instructions", f"You are {agent_id}.")
    return AgentDefinition(id=agent_id, capabilities=capabilities, **kwargs)


class EchoGateway:
    """Replies ``"<agent id>:" + last turn text`` and records every call."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[tuple[str | None, list[Message]]] = []

    def called(self) -> list[str | None]:
        return [agent_id for agent_id, _ in self.calls]

    async def complete(self, turns: list[Message], config: CompletionConfig) -> Completion:
        self.calls.append((config.agent_id, list(turns)))
        if self.delay:
            await asyncio.sleep(self.delay)
        last = turns[-1].text if turns else ""
        return Completion(
            turns=[Message.assistant(f"{config.agent_id}:{last}")],
            usage=TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15),
        )


class ScriptedGateway:
    """Replies per agent from a script: a list of texts, or a function of the turns.

    An entry may also be an exception instance, which is raised, or a
    ``(seconds, text)`` tuple, which sleeps before replying.
    """

    def __init__(self, script: dict[str, list | Callable[[list[Message]], str]]) -> None:
        self.script = {k: (list(v) if isinstance(v, list) else v) for k, v in script.items()}
        self.calls: list[str | None] = []

    async def complete(self, turns: list[Message], config: CompletionConfig) -> Completion:
        self.calls.append(config.agent_id)
        entry = self.script[config.agent_id]
        reply = entry(turns) if callable(entry) else entry.pop(0) if len(entry) > 1 else entry[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, tuple):
            delay, reply = reply
            await asyncio.sleep(delay)
        return Completion(turns=[Message.assistant(reply)])


class ConcurrencyProbe:
    """Tracks how many calls are in flight; completes in random order."""

    def __init__(self, max_delay: float = 0.02, seed: int = 7) -> None:
        self.in_flight = 0
        self.peak = 0
        self.max_delay = max_delay
        self._random = random.Random(seed)

    async def complete(self, turns: list[Message], config: CompletionConfig) -> Completion:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self._random.uniform(0, self.max_delay))
        finally:
            self.in_flight -= 1
        return Completion(turns=[Message.assistant(f"{config.agent_id}:done")])


class ToolCallingGateway:
    """First call asks for ``tool_name``; once a tool result is present it answers."""

    def __init__(self, tool_name: str, arguments: dict, answer: str = "done") -> None:
        self.tool_name = tool_name
        self.arguments = arguments
        self.answer = answer
        self.calls = 0

    async def complete(self, turns: list[Message], config: CompletionConfig) -> Completion:
        self.calls += 1
        results = [t for t in turns if t.role == "tool"]
        if results:
            content = results[-1].parts[0].content
            return Completion(turns=[Message.assistant(f"{self.answer}: {content}")])
        call = ToolCallPart(
            id=f"call_{self.calls}", name=self.tool_name, arguments=json.dumps(self.arguments)
        )
        return Completion(
            turns=[Message.assistant(tool_calls=[call])], finish_reason="tool_calls"
        )
