"""Tool registry — lookup and dispatch for agent tool calls."""

from __future__ import annotations

import logging
from typing import Any

from ensemble.llm.message import ToolCall
from ensemble.tool.base import BaseTool

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Tools available to agents, keyed by name.

    Agents declare tool names; the executor only advertises and dispatches
    the tools an agent declared.
    """

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            logger.warning("Tool %s already registered, overwriting", tool.name)
        self._tools[tool.name] = tool

    def register_many(self, tools: list[BaseTool]) -> None:
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools.keys())

    def get_specs(self, names: list[str] | tuple[str, ...]) -> list[dict[str, Any]]:
        """OpenAI tool specs for the given names; unknown names are skipped."""
        specs = []
        for name in names:
            tool = self._tools.get(name)
            if tool is None:
                logger.warning("Tool %s declared by an agent but not registered", name)
                continue
            specs.append(tool.to_openai_spec())
        return specs

    async def dispatch(
        self, tool_call: ToolCall, allowed: tuple[str, ...] | None = None
    ) -> tuple[str, bool]:
        """Dispatch a tool call.

        Returns:
            (content, is_error) tuple.
        """
        if allowed is not None and tool_call.name not in allowed:
            return f"Tool {tool_call.name} is not available to this agent", True

        tool = self._tools.get(tool_call.name)
        if tool is None:
            return (
                f"Unknown tool: {tool_call.name}. Available tools: {', '.join(self.names())}",
                True,
            )
        return await tool(tool_call.arguments)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
