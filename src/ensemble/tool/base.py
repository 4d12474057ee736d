"""Tools an agent may call during its tool-call round trips."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

MAX_OUTPUT_CHARS = 50 * 1024


@dataclass
class ToolResult:
    output: str = ""
    is_error: bool = False


@dataclass
class ToolOk(ToolResult):
    is_error: bool = False


@dataclass
class ToolError(ToolResult):
    is_error: bool = True


def truncate_output(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    """Bound tool output before it goes back into the conversation."""
    if len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"{text[:limit]}\n\n[... truncated {dropped} characters]"


class BaseTool(ABC, Generic[T]):
    """Base class for tools.

    Each tool declares its parameters as a Pydantic model:

        class LookupParams(BaseModel):
            key: str

        class LookupTool(BaseTool[LookupParams]):
            name = "lookup"
            description = "Look up a value"
            param_model = LookupParams

            async def execute(self, params: LookupParams) -> ToolResult:
                return ToolOk(output=table[params.key])
    """

    name: ClassVar[str]
    description: ClassVar[str]
    param_model: ClassVar[type[BaseModel]]

    async def __call__(self, arguments: dict[str, Any]) -> tuple[str, bool]:
        """Validate arguments, execute, truncate output.

        Returns:
            (content, is_error) tuple for the tool result turn.
        """
        try:
            params = self.param_model.model_validate(arguments)
        except Exception as e:
            return f"Invalid parameters: {e}", True

        try:
            result = await self.execute(params)  # type: ignore[arg-type]
        except Exception as e:
            logger.error("Tool %s execution error: %s", self.name, e, exc_info=True)
            return f"Error executing {self.name}: {e}", True

        return truncate_output(result.output), result.is_error

    @abstractmethod
    async def execute(self, params: T) -> ToolResult: ...

    def to_openai_spec(self) -> dict[str, Any]:
        """OpenAI function tool specification."""
        schema = self.param_model.model_json_schema()
        schema.pop("title", None)
        schema.pop("$defs", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": schema,
            },
        }
