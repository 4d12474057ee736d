"""Tests for ensemble.agent (AgentDefinition, AgentCatalog)."""

from __future__ import annotations

from pathlib import Path

import pytest

from ensemble.agent.agent import AgentDefinition, ModelPreference, discover_agents
from ensemble.agent.registry import AgentCatalog
from ensemble.errors import AgentNotFoundError, AgentValidationError, DuplicateAgentError

from fakes import make_agent


# ---------------------------------------------------------------------------
# AgentDefinition
# ---------------------------------------------------------------------------


class TestAgentDefinition:
    def test_validate_ok(self) -> None:
        make_agent("writer").validate()

    def test_blank_instructions_rejected(self) -> None:
        agent = make_agent("writer", instructions="   ")
        with pytest.raises(AgentValidationError, match="instructions"):
            agent.validate()

    def test_temperature_out_of_range(self) -> None:
        agent = make_agent("writer", model=ModelPreference("openai/gpt-4o", temperature=2.5))
        with pytest.raises(AgentValidationError, match="temperature"):
            agent.validate()

    def test_max_tokens_must_be_positive(self) -> None:
        agent = make_agent("writer", model=ModelPreference("openai/gpt-4o", max_tokens=0))
        with pytest.raises(AgentValidationError, match="max_tokens"):
            agent.validate()

    def test_immutable(self) -> None:
        agent = make_agent("writer")
        with pytest.raises(AttributeError):
            agent.name = "other"  # type: ignore[misc]

    def test_evolve_returns_copy(self) -> None:
        agent = make_agent("writer", "prose")
        changed = agent.evolve(capabilities=("poetry",))
        assert agent.capabilities == ("prose",)
        assert changed.capabilities == ("poetry",)
        assert changed.id == "writer"

    def test_from_dict_model_string(self) -> None:
        agent = AgentDefinition.from_dict(
            {"id": "a", "instructions": "do it", "model": "openai/gpt-4o"}
        )
        assert agent.name == "a"
        assert agent.model == ModelPreference(model="openai/gpt-4o")

    def test_from_dict_without_id(self) -> None:
        with pytest.raises(AgentValidationError):
            AgentDefinition.from_dict({"name": "nameless"})

    def test_dict_round_trip(self) -> None:
        agent = make_agent(
            "writer",
            "prose",
            model=ModelPreference("openai/gpt-4o", temperature=0.2, max_tokens=512),
            tools=("search",),
            metadata={"team": "docs"},
        )
        assert AgentDefinition.from_dict(agent.to_dict()) == agent

    def test_from_markdown(self, tmp_path: Path) -> None:
        path = tmp_path / "researcher.md"
        path.write_text(
            "---\n"
            "name: Research Agent\n"
            "model:\n"
            "  model: anthropic/claude-sonnet-4-5-20250929\n"
            "  temperature: 0.3\n"
            "capabilities: [research]\n"
            "---\n\n"
            "You research things.\n"
        )
        agent = AgentDefinition.from_markdown(str(path))
        assert agent.id == "researcher"
        assert agent.name == "Research Agent"
        assert agent.instructions == "You research things."
        assert agent.model is not None and agent.model.temperature == 0.3
        assert agent.capabilities == ("research",)

    def test_discover_agents(self, tmp_path: Path) -> None:
        (tmp_path / "a.md").write_text("---\nname: A\n---\nBe A.\n")
        (tmp_path / "b.md").write_text("---\nname: B\n---\nBe B.\n")
        (tmp_path / "notes.txt").write_text("not an agent")
        found = discover_agents([str(tmp_path), str(tmp_path / "missing")])
        assert sorted(a.id for a in found) == ["a", "b"]


# ---------------------------------------------------------------------------
# AgentCatalog — registration and lookup
# ---------------------------------------------------------------------------


class TestCatalogLookup:
    def test_register_and_get(self) -> None:
        catalog = AgentCatalog()
        agent = make_agent("a")
        catalog.register(agent)
        assert catalog.get("a") is agent
        assert "a" in catalog
        assert len(catalog) == 1

    def test_duplicate_rejected(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("a"))
        with pytest.raises(DuplicateAgentError):
            catalog.register(make_agent("a", name="Other"))

    def test_register_validates(self) -> None:
        catalog = AgentCatalog()
        with pytest.raises(AgentValidationError):
            catalog.register(make_agent("a", name=""))
        assert len(catalog) == 0

    def test_get_missing_returns_none(self) -> None:
        assert AgentCatalog().get("nope") is None

    def test_require_missing_raises(self) -> None:
        with pytest.raises(AgentNotFoundError, match="nope"):
            AgentCatalog().require("nope")

    def test_unregister(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("a"))
        assert catalog.unregister("a") is True
        assert catalog.unregister("a") is False
        assert catalog.get("a") is None

    def test_find_by_capability_keeps_registration_order(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("c", "review"))
        catalog.register(make_agent("a", "write"))
        catalog.register(make_agent("b", "review", "write"))
        assert [a.id for a in catalog.find_by_capability("review")] == ["c", "b"]
        assert [a.id for a in catalog.find_by_capabilities(["review", "write"])] == ["b"]
        assert catalog.find_by_capability("unknown") == []

    def test_capabilities(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("a", "write", "edit"))
        catalog.register(make_agent("b", "edit"))
        assert catalog.capabilities() == ["write", "edit"]

    def test_search(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("writer", description="Drafts blog posts"))
        catalog.register(make_agent("critic"))
        assert [a.id for a in catalog.search("WRIT")] == ["writer"]
        assert catalog.search("blog") == []
        assert [a.id for a in catalog.search("blog", include_description=True)] == ["writer"]

    def test_register_many_reports_failures(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("a"))
        ok, failed = catalog.register_many([make_agent("a"), make_agent("b")])
        assert ok == ["b"]
        assert [agent_id for agent_id, _ in failed] == ["a"]

    def test_clone(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("a", "write"))
        clone = catalog.clone("a", "a2")
        assert clone.name == "A (Copy)"
        assert clone.capabilities == ("write",)
        assert catalog.get("a2") is clone

    def test_clone_missing_source(self) -> None:
        with pytest.raises(AgentNotFoundError):
            AgentCatalog().clone("missing", "copy")


# ---------------------------------------------------------------------------
# AgentCatalog — export / import
# ---------------------------------------------------------------------------


class TestCatalogExport:
    def test_export_import_yields_equal_definitions(self) -> None:
        source = AgentCatalog()
        source.register(make_agent("a", "write", model=ModelPreference("openai/gpt-4o")))
        source.register(make_agent("b", "review", tools=("search",)))

        target = AgentCatalog()
        ok, failed = target.import_json(source.export())
        assert ok == ["a", "b"]
        assert failed == []
        assert target.all() == source.all()

    def test_import_rejects_non_array(self) -> None:
        with pytest.raises(AgentValidationError, match="array"):
            AgentCatalog().import_json('{"id": "a"}')

    def test_import_rejects_bad_json(self) -> None:
        with pytest.raises(AgentValidationError, match="Invalid JSON"):
            AgentCatalog().import_json("[{")

    def test_import_skip_invalid(self) -> None:
        catalog = AgentCatalog()
        text = '[{"id": "a", "instructions": "x"}, {"id": "b", "instructions": ""}]'
        ok, failed = catalog.import_json(text, skip_invalid=True)
        assert ok == ["a"]
        assert [agent_id for agent_id, _ in failed] == ["b"]

    def test_import_invalid_raises_but_keeps_valid(self) -> None:
        catalog = AgentCatalog()
        text = '[{"id": "a", "instructions": "x"}, {"id": "b", "instructions": ""}]'
        with pytest.raises(AgentValidationError, match="b"):
            catalog.import_json(text)
        assert "a" in catalog

    def test_import_replace(self) -> None:
        catalog = AgentCatalog()
        catalog.register(make_agent("old"))
        catalog.import_json('[{"id": "new", "instructions": "x"}]', replace=True)
        assert catalog.ids() == ["new"]

    async def test_save_and_load(self, tmp_path: Path) -> None:
        source = AgentCatalog()
        source.register(make_agent("a", "write"))
        path = tmp_path / "sub" / "catalog.json"
        await source.save(path)

        target = AgentCatalog()
        loaded = await target.load(path)
        assert loaded == ["a"]
        assert target.get("a") == source.get("a")
