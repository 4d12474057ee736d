"""Configuration — Pydantic models for ensemble settings."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class LLMConfig(BaseModel):
    """Default model for agents that do not name one.

    Model names use litellm's provider-prefix format, e.g.
    "anthropic/claude-sonnet-4-5-20250929" or "openai/gpt-4o". API keys are
    read from the environment by litellm.
    """

    model: str = Field(default="anthropic/claude-sonnet-4-5-20250929")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)


class ExecutionConfig(BaseModel):
    """Executor and engine limits."""

    max_steps: int = Field(default=10, ge=1, description="Max round trips per agent invocation")
    agent_timeout: float | None = Field(
        default=60.0, gt=0, description="Per-agent timeout in seconds"
    )
    max_concurrency: int | None = Field(
        default=None, ge=1, description="Parallel fan-out bound; None is unbounded"
    )


class EnsembleConfig(BaseModel):
    """Top-level ensemble configuration."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    agents_dir: str = Field(default="agents", description="Directory of agent markdown files")

    @classmethod
    def load(cls, config_path: str | None = None) -> EnsembleConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file (JSON or YAML) > defaults.

        Env vars:
            ENSEMBLE_MODEL            - Default model (litellm format with provider prefix)
            ENSEMBLE_MAX_STEPS        - Max round trips per agent invocation
            ENSEMBLE_AGENT_TIMEOUT    - Per-agent timeout in seconds
            ENSEMBLE_MAX_CONCURRENCY  - Parallel fan-out bound
        """
        # .env wins over stale shell exports.
        load_dotenv(override=True)

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            text = Path(config_path).read_text()
            if config_path.endswith((".yaml", ".yml")):
                config_data = yaml.safe_load(text) or {}
            else:
                config_data = json.loads(text)

        llm = config_data.get("llm", {})
        env_model = os.environ.get("ENSEMBLE_MODEL")
        if env_model:
            llm["model"] = env_model
        if llm:
            config_data["llm"] = llm

        execution = config_data.get("execution", {})
        env_max_steps = os.environ.get("ENSEMBLE_MAX_STEPS")
        if env_max_steps:
            execution["max_steps"] = int(env_max_steps)

        env_timeout = os.environ.get("ENSEMBLE_AGENT_TIMEOUT")
        if env_timeout:
            execution["agent_timeout"] = float(env_timeout)

        env_concurrency = os.environ.get("ENSEMBLE_MAX_CONCURRENCY")
        if env_concurrency:
            execution["max_concurrency"] = int(env_concurrency)

        if execution:
            config_data["execution"] = execution

        return cls.model_validate(config_data)
