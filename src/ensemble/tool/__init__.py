"""Tool system — tools agents can call between completion round trips."""

from ensemble.tool.base import BaseTool, ToolError, ToolOk, ToolResult
from ensemble.tool.registry import ToolRegistry

__all__ = ["BaseTool", "ToolError", "ToolOk", "ToolResult", "ToolRegistry"]
