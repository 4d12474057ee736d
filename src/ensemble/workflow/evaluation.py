"""Evaluation parsing for evaluator-optimizer workflows."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from ensemble.agent.result import AgentExecutionResult

_SCORE = re.compile(r"score\s*[:=]\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_RATING = re.compile(r"(\d+(?:\.\d+)?)\s*/\s*100")
_FEEDBACK = re.compile(r"feedback\s*:\s*(.+)", re.IGNORECASE | re.DOTALL)
_ISSUES = re.compile(r"issues\s*:\s*(.+?)(?=\n\n|$)", re.IGNORECASE | re.DOTALL)
_SUGGESTIONS = re.compile(r"suggestions\s*:\s*(.+?)(?=\n\n|$)", re.IGNORECASE | re.DOTALL)


@dataclass
class Evaluation:
    score: float | None
    feedback: str = ""
    issues: list[str] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    raw: str = ""


def _lines(block: str) -> list[str]:
    return [line.strip(" -*\t") for line in block.splitlines() if line.strip(" -*\t")]


def parse_evaluation(result: AgentExecutionResult) -> Evaluation:
    """Read a score (0-100) and critique from an evaluator result.

    Structured output with a numeric ``score`` wins; otherwise the text is
    searched for ``SCORE: n`` and then ``n/100``.
    """
    text = result.text
    evaluation = Evaluation(score=None, feedback=text, raw=text)

    output = result.output
    if isinstance(output, dict) and isinstance(output.get("score"), (int, float)):
        evaluation.score = float(output["score"])
        evaluation.feedback = str(output.get("feedback", text))
        return evaluation

    match = _SCORE.search(text) or _RATING.search(text)
    if match:
        evaluation.score = float(match.group(1))

    feedback = _FEEDBACK.search(text)
    if feedback:
        evaluation.feedback = feedback.group(1).strip()
    issues = _ISSUES.search(text)
    if issues:
        evaluation.issues = _lines(issues.group(1))
    suggestions = _SUGGESTIONS.search(text)
    if suggestions:
        evaluation.suggestions = _lines(suggestions.group(1))
    return evaluation


def default_score_parser(result: AgentExecutionResult) -> float | None:
    return parse_evaluation(result).score
