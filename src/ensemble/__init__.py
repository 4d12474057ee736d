"""ensemble — multi-agent workflow orchestration."""

__version__ = "0.1.0"
