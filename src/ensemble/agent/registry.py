"""Agent catalog — in-memory registry of agent definitions."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable

import aiofiles

from ensemble.agent.agent import AgentDefinition, discover_agents
from ensemble.errors import (
    AgentNotFoundError,
    AgentValidationError,
    DuplicateAgentError,
    EnsembleError,
)

logger = logging.getLogger(__name__)


class AgentCatalog:
    """Registry of agent definitions keyed by id.

    Pure lookup: the catalog never executes anything. Iteration order is
    registration order.
    """

    def __init__(self) -> None:
        self._agents: dict[str, AgentDefinition] = {}

    def register(self, agent: AgentDefinition) -> None:
        """Register an agent.

        Raises:
            DuplicateAgentError: an agent with this id is already registered.
            AgentValidationError: the definition is invalid.
        """
        if agent.id in self._agents:
            raise DuplicateAgentError(agent.id)
        agent.validate()
        self._agents[agent.id] = agent
        logger.debug("Registered agent: %s (%s)", agent.name, agent.id)

    def register_many(
        self, agents: list[AgentDefinition]
    ) -> tuple[list[str], list[tuple[str, str]]]:
        """Register several agents, collecting failures instead of raising.

        Returns:
            (registered ids, [(id, error message), ...])
        """
        succeeded: list[str] = []
        failed: list[tuple[str, str]] = []
        for agent in agents:
            try:
                self.register(agent)
                succeeded.append(agent.id)
            except EnsembleError as e:
                failed.append((agent.id, str(e)))
        if failed:
            logger.info(
                "Bulk register: %d succeeded, %d failed", len(succeeded), len(failed)
            )
        return succeeded, failed

    def unregister(self, agent_id: str) -> bool:
        """Remove an agent. Returns whether it was registered."""
        if self._agents.pop(agent_id, None) is None:
            return False
        logger.debug("Unregistered agent: %s", agent_id)
        return True

    def get(self, agent_id: str) -> AgentDefinition | None:
        return self._agents.get(agent_id)

    def require(self, agent_id: str) -> AgentDefinition:
        """Like :meth:`get` but raises AgentNotFoundError."""
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def all(
        self, predicate: Callable[[AgentDefinition], bool] | None = None
    ) -> list[AgentDefinition]:
        agents = list(self._agents.values())
        return [a for a in agents if predicate(a)] if predicate else agents

    def ids(self) -> list[str]:
        return list(self._agents.keys())

    def find_by_capability(self, capability: str) -> list[AgentDefinition]:
        """Agents tagged with ``capability``, in registration order."""
        return [a for a in self._agents.values() if capability in a.capabilities]

    def find_by_capabilities(self, capabilities: list[str]) -> list[AgentDefinition]:
        """Agents carrying every tag in ``capabilities``."""
        if not capabilities:
            return []
        wanted = set(capabilities)
        return [a for a in self._agents.values() if wanted.issubset(a.capabilities)]

    def capabilities(self) -> list[str]:
        """All distinct capability tags, in first-seen order."""
        seen: dict[str, None] = {}
        for agent in self._agents.values():
            for tag in agent.capabilities:
                seen.setdefault(tag, None)
        return list(seen)

    def search(self, query: str, include_description: bool = False) -> list[AgentDefinition]:
        """Case-insensitive substring search over names (and descriptions)."""
        q = query.lower()
        return self.all(
            lambda a: q in a.name.lower()
            or (include_description and q in a.description.lower())
        )

    def clone(self, agent_id: str, new_id: str, **changes: Any) -> AgentDefinition:
        """Register a copy of ``agent_id`` under ``new_id``."""
        source = self.require(agent_id)
        changes.setdefault("name", f"{source.name} (Copy)")
        cloned = source.evolve(id=new_id, **changes)
        self.register(cloned)
        return cloned

    def clear(self) -> None:
        self._agents.clear()

    def discover(self, search_dirs: list[str]) -> None:
        """Register agents found as markdown files in ``search_dirs``."""
        for agent in discover_agents(search_dirs):
            try:
                self.register(agent)
                logger.info("Discovered agent: %s", agent.id)
            except EnsembleError as e:
                logger.warning("Skipping discovered agent %s: %s", agent.id, e)

    # --- Export / import ---

    def export(self, pretty: bool = False) -> str:
        """Serialize every definition to a JSON array."""
        data = [a.to_dict() for a in self._agents.values()]
        return json.dumps(data, indent=2 if pretty else None)

    def import_json(
        self, text: str, replace: bool = False, skip_invalid: bool = False
    ) -> tuple[list[str], list[tuple[str, str]]]:
        """Register definitions from a JSON array produced by :meth:`export`.

        Raises:
            AgentValidationError: malformed JSON, or any definition failed
                and ``skip_invalid`` is False. Definitions that did load
                stay registered.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise AgentValidationError(f"Invalid JSON: {e}") from e
        if not isinstance(data, list):
            raise AgentValidationError("Invalid agent data: expected a JSON array")

        if replace:
            self.clear()

        agents: list[AgentDefinition] = []
        failed: list[tuple[str, str]] = []
        for item in data:
            try:
                agents.append(AgentDefinition.from_dict(item))
            except (AgentValidationError, TypeError, AttributeError) as e:
                item_id = item.get("id", "?") if isinstance(item, dict) else "?"
                failed.append((item_id, str(e)))

        succeeded, register_failed = self.register_many(agents)
        failed.extend(register_failed)
        logger.info("Imported %d agents, %d failed", len(succeeded), len(failed))

        if failed and not skip_invalid:
            details = "; ".join(f"{i}: {msg}" for i, msg in failed)
            raise AgentValidationError(f"Failed to import {len(failed)} agents: {details}")
        return succeeded, failed

    async def save(self, path: str | Path) -> None:
        """Write the exported catalog to ``path``."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(self.export(pretty=True))
        logger.info("Saved %d agents to %s", len(self), path)

    async def load(self, path: str | Path, replace: bool = False) -> list[str]:
        """Import definitions from a file written by :meth:`save`.

        Invalid entries are skipped with a warning.
        """
        async with aiofiles.open(Path(path), "r", encoding="utf-8") as f:
            text = await f.read()
        succeeded, failed = self.import_json(text, replace=replace, skip_invalid=True)
        for agent_id, message in failed:
            logger.warning("Failed to load agent %s: %s", agent_id, message)
        return succeeded

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents
