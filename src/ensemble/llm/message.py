"""Conversation turns exchanged with the completion gateway."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

logger = logging.getLogger(__name__)

Role = Literal["system", "user", "assistant", "tool"]


def _turn_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


@dataclass
class TextPart:
    """A text content part."""

    type: Literal["text"] = "text"
    text: str = ""


@dataclass
class ToolCallPart:
    """A tool call requested by the model."""

    type: Literal["tool_call"] = "tool_call"
    id: str = ""
    name: str = ""
    arguments: str = ""  # JSON string


@dataclass
class ToolResultPart:
    """The result of a tool call, fed back to the model."""

    type: Literal["tool_result"] = "tool_result"
    tool_call_id: str = ""
    content: str = ""
    is_error: bool = False


ContentPart = TextPart | ToolCallPart | ToolResultPart


@dataclass
class ToolCall:
    """A complete tool call extracted from a model response."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass(frozen=True)
class TokenUsage:
    """Token usage stats from one or more gateway calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


@dataclass
class Message:
    """A conversational turn with typed content parts."""

    role: Role
    parts: list[ContentPart] = field(default_factory=list)
    id: str = field(default_factory=_turn_id)
    agent_id: str | None = None  # which agent produced this turn, if any

    @property
    def text(self) -> str:
        """Concatenated text content."""
        return "".join(p.text for p in self.parts if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCall]:
        calls = []
        for p in self.parts:
            if isinstance(p, ToolCallPart):
                try:
                    args = json.loads(p.arguments) if p.arguments else {}
                except json.JSONDecodeError:
                    logger.warning(
                        "Failed to parse tool call arguments for %s: %s",
                        p.name,
                        p.arguments[:200],
                    )
                    args = {}
                calls.append(ToolCall(id=p.id, name=p.name, arguments=args))
        return calls

    # --- Convenience constructors ---

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(role="system", parts=[TextPart(text=text)])

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(role="user", parts=[TextPart(text=text)])

    @classmethod
    def assistant(
        cls,
        text: str = "",
        tool_calls: list[ToolCallPart] | None = None,
        agent_id: str | None = None,
    ) -> Message:
        parts: list[ContentPart] = []
        if text:
            parts.append(TextPart(text=text))
        if tool_calls:
            parts.extend(tool_calls)
        return cls(role="assistant", parts=parts, agent_id=agent_id)

    @classmethod
    def tool_result(
        cls, tool_call_id: str, content: str, is_error: bool = False
    ) -> Message:
        return cls(
            role="tool",
            parts=[
                ToolResultPart(
                    tool_call_id=tool_call_id, content=content, is_error=is_error
                )
            ],
        )

    def to_openai_dict(self) -> dict[str, Any]:
        """Convert to the OpenAI chat format that litellm accepts."""
        if self.role == "tool":
            for p in self.parts:
                if isinstance(p, ToolResultPart):
                    return {
                        "role": "tool",
                        "tool_call_id": p.tool_call_id,
                        "content": p.content,
                    }
            return {"role": "tool", "content": ""}

        if self.role == "assistant":
            result: dict[str, Any] = {"role": "assistant", "content": self.text or None}
            tc_parts = [p for p in self.parts if isinstance(p, ToolCallPart)]
            if tc_parts:
                result["tool_calls"] = [
                    {
                        "id": p.id,
                        "type": "function",
                        "function": {"name": p.name, "arguments": p.arguments},
                    }
                    for p in tc_parts
                ]
            return result

        return {"role": self.role, "content": self.text}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for audit dumps."""
        d: dict[str, Any] = {"id": self.id, "role": self.role, "content": self.text}
        if self.agent_id:
            d["agent_id"] = self.agent_id
        calls = [p for p in self.parts if isinstance(p, ToolCallPart)]
        if calls:
            d["tool_calls"] = [
                {"id": p.id, "name": p.name, "arguments": p.arguments} for p in calls
            ]
        results = [p for p in self.parts if isinstance(p, ToolResultPart)]
        if results:
            d["tool_call_id"] = results[0].tool_call_id
            d["content"] = results[0].content
            d["is_error"] = results[0].is_error
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        role = data.get("role", "user")
        if role == "tool":
            msg = cls.tool_result(
                data.get("tool_call_id", ""),
                data.get("content", ""),
                data.get("is_error", False),
            )
        else:
            calls = [
                ToolCallPart(
                    id=tc.get("id", ""),
                    name=tc.get("name", ""),
                    arguments=tc.get("arguments", ""),
                )
                for tc in data.get("tool_calls", [])
            ]
            parts: list[ContentPart] = []
            if data.get("content"):
                parts.append(TextPart(text=data["content"]))
            parts.extend(calls)
            msg = cls(role=role, parts=parts, agent_id=data.get("agent_id"))
        if data.get("id"):
            msg.id = data["id"]
        return msg
