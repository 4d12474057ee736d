"""Route selection for routing workflows."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ensemble.agent.agent import AgentDefinition
from ensemble.agent.result import AgentExecutionResult
from ensemble.workflow.descriptor import Classifier

logger = logging.getLogger(__name__)


def select_route(
    router_result: AgentExecutionResult,
    candidates: Sequence[AgentDefinition],
    classifier: Classifier | None = None,
) -> AgentDefinition | None:
    """Pick exactly one destination from ``candidates``, or None.

    With a classifier, its returned agent id must name a candidate.
    Without one, the router's structured output is consulted first
    (``selected_agent`` names an id, ``route`` names a tag); otherwise the
    whole stripped answer must equal a capability tag. Ties go to the
    earliest candidate.
    """
    by_id = {c.id: c for c in candidates}

    if classifier is not None:
        agent_id = classifier(router_result.text)
        if agent_id is None:
            return None
        chosen = by_id.get(agent_id)
        if chosen is None:
            logger.warning("Classifier chose %s, which is not a candidate", agent_id)
        return chosen

    tag = router_result.text.strip()
    output = router_result.output
    if isinstance(output, dict):
        selected = output.get("selected_agent")
        if isinstance(selected, str) and selected in by_id:
            return by_id[selected]
        route = output.get("route")
        if isinstance(route, str):
            tag = route.strip()

    for candidate in candidates:
        if tag in candidate.capabilities:
            return candidate
    return None


def keyword_classifier(triggers: dict[str, str]) -> Classifier:
    """Classifier choosing the agent whose trigger keyword appears in the text.

    Keywords are matched case-insensitively in mapping order.
    """
    lowered = [(keyword.lower(), agent_id) for keyword, agent_id in triggers.items()]

    def _classify(text: str) -> str | None:
        haystack = text.lower()
        for keyword, agent_id in lowered:
            if keyword in haystack:
                return agent_id
        return None

    return _classify
