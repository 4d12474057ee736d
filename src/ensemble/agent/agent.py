"""Agent definitions — loaded from dicts or markdown files with YAML frontmatter."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import Any

from ensemble.errors import AgentValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPreference:
    """Which model an agent prefers, in litellm ``provider/model`` format."""

    model: str
    temperature: float | None = None
    max_tokens: int | None = None

    @classmethod
    def from_value(cls, value: Any) -> ModelPreference | None:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            return cls(model=value)
        if isinstance(value, dict):
            return cls(
                model=value.get("model", ""),
                temperature=value.get("temperature"),
                max_tokens=value.get("max_tokens"),
            )
        raise AgentValidationError(f"Invalid model preference: {value!r}")

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"model": self.model}
        if self.temperature is not None:
            d["temperature"] = self.temperature
        if self.max_tokens is not None:
            d["max_tokens"] = self.max_tokens
        return d


@dataclass(frozen=True)
class AgentDefinition:
    """A named, immutable agent configuration.

    Agents can be defined as markdown files with YAML frontmatter; the body
    becomes the agent's instructions:

        ---
        id: researcher
        name: Research Agent
        model: anthropic/claude-sonnet-4-5-20250929
        tools: [search_web]
        capabilities: [research, analysis]
        ---

        You are a research specialist...
    """

    id: str
    name: str
    instructions: str
    description: str = ""
    model: ModelPreference | None = None
    tools: tuple[str, ...] = ()
    capabilities: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def validate(self) -> None:
        """Raise AgentValidationError if the definition is unusable."""
        if not self.id or not self.id.strip():
            raise AgentValidationError("Agent id is required")
        if not self.name or not self.name.strip():
            raise AgentValidationError(f"Agent {self.id}: name is required")
        if not self.instructions or not self.instructions.strip():
            raise AgentValidationError(f"Agent {self.id}: instructions are required")
        if self.model is not None:
            if not self.model.model:
                raise AgentValidationError(f"Agent {self.id}: model name is required")
            t = self.model.temperature
            if t is not None and not 0 <= t <= 2:
                raise AgentValidationError(
                    f"Agent {self.id}: temperature must be between 0 and 2"
                )
            if self.model.max_tokens is not None and self.model.max_tokens < 1:
                raise AgentValidationError(f"Agent {self.id}: max_tokens must be positive")

    def evolve(self, **changes: Any) -> AgentDefinition:
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: dict[str, Any], instructions: str | None = None) -> AgentDefinition:
        try:
            agent_id = data["id"]
        except KeyError:
            raise AgentValidationError(f"Agent definition without id: {data!r}") from None
        return cls(
            id=agent_id,
            name=data.get("name") or agent_id,
            instructions=instructions if instructions is not None else data.get("instructions", ""),
            description=data.get("description", ""),
            model=ModelPreference.from_value(data.get("model")),
            tools=tuple(data.get("tools") or ()),
            capabilities=tuple(data.get("capabilities") or ()),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "instructions": self.instructions,
            "description": self.description,
            "tools": list(self.tools),
            "capabilities": list(self.capabilities),
        }
        if self.model is not None:
            d["model"] = self.model.to_dict()
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d

    @classmethod
    def from_markdown(cls, path: str) -> AgentDefinition:
        """Load an agent definition from a markdown file with YAML frontmatter."""
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()

        config, body = _parse_frontmatter(content)
        config.setdefault("id", os.path.splitext(os.path.basename(path))[0])
        return cls.from_dict(config, instructions=body.strip())


def _parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split markdown into (frontmatter dict, body)."""
    import yaml

    pattern = re.compile(r"^---\s*\n(.*?)\n---\s*\n(.*)", re.DOTALL)
    match = pattern.match(content)
    if not match:
        return {}, content

    try:
        config = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.warning("Ignoring malformed frontmatter: %s", e)
        config = {}

    return config, match.group(2)


def discover_agents(search_dirs: list[str]) -> list[AgentDefinition]:
    """Load every ``*.md`` agent definition found in ``search_dirs``."""
    agents = []
    for dir_path in search_dirs:
        if not os.path.isdir(dir_path):
            continue
        for fname in sorted(os.listdir(dir_path)):
            if not fname.endswith(".md"):
                continue
            full_path = os.path.join(dir_path, fname)
            try:
                agents.append(AgentDefinition.from_markdown(full_path))
            except (OSError, AgentValidationError) as e:
                logger.warning("Skipping agent file %s: %s", full_path, e)
    return agents
