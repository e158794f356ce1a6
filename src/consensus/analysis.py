"""Helpers for inspecting consensus progress and plans.

Scores are fractions in [0, 1]; the stagnation and trend tolerances below
are expressed in the same unit (0.05 == five percentage points).
"""

from __future__ import annotations

import re
from typing import Optional, Sequence

from src.consensus.aggregator import dedupe
from src.core.models import ConsensusOutcome, ReviewerVote

STAGNATION_RANGE = 0.05
OSCILLATION_MIN_DEVIATION = 0.03
OSCILLATION_MAX_RANGE = 0.20
PROGRESS_MARGIN = 0.02
TREND_TOLERANCE = 0.05

REQUIRED_PLAN_SECTIONS = ("Background", "Goals", "Milestones", "Tasks", "Test")

_EPSILON = 1e-9

_REVIEW_PLAN_HEADER = "## Development Plan\n\n"
_REVIEW_CONTEXT_HEADER = "\n\n## Project Context\n\n"

_NARRATION_OPENERS = (
    "let me ", "i will ", "i'll ", "now i have", "i now have", "based on my analysis",
    "before i proceed", "i've created", "i've analyzed", "i should ", "i need to", "first, i",
)
_SAVED_ELSEWHERE = (
    "the plan is saved", "the plan has been saved", "i've saved the plan", "plan saved to",
    "saved the plan to", "created the plan at", "plan is now available at",
)


def is_stuck(history: Sequence[float], window: int) -> bool:
    """Detect stagnation or oscillation over the trailing ``window`` scores."""
    if window <= 0 or len(history) < window:
        return False

    recent = list(history[-window:])
    spread = max(recent) - min(recent)

    if spread <= STAGNATION_RANGE + _EPSILON:
        return True

    if len(recent) >= 3:
        avg = sum(recent) / len(recent)
        avg_deviation = sum(abs(s - avg) for s in recent) / len(recent)
        if avg_deviation > OSCILLATION_MIN_DEVIATION and spread < OSCILLATION_MAX_RANGE:
            if recent[-1] <= recent[0] + PROGRESS_MARGIN + _EPSILON:
                return True

    return False


def extract_concerns(votes: Sequence[ReviewerVote]) -> list[str]:
    """Blocking issues plus suggestions (prefixed ``Consider:``) to address in a revision."""
    items: list[str] = []
    for vote in votes:
        items.extend(vote.blocking_issues)
    for vote in votes:
        items.extend(f"Consider: {s}" for s in vote.suggestions)
    return dedupe(items)


def calculate_average_score(history: Sequence[float]) -> float:
    if not history:
        return 0.0
    return sum(history) / len(history)


def get_score_trend(history: Sequence[float]) -> str:
    """Compare the first and second half of the history: improving, declining or stable."""
    if len(history) < 2:
        return "stable"

    mid = len(history) // 2
    first = calculate_average_score(history[:mid])
    second = calculate_average_score(history[mid:])
    diff = second - first

    if diff > TREND_TOLERANCE:
        return "improving"
    if diff < -TREND_TOLERANCE:
        return "declining"
    return "stable"


def validate_plan_structure(plan: str) -> list[str]:
    """Return the required section headers missing from a markdown plan."""
    missing: list[str] = []
    for section in REQUIRED_PLAN_SECTIONS:
        pattern = rf"(^|\n)#+\s*{re.escape(section)}"
        if not re.search(pattern, plan, re.IGNORECASE):
            missing.append(section)
    return missing


def format_plan_for_review(plan: str, context: str) -> str:
    return f"{_REVIEW_PLAN_HEADER}{plan.strip()}{_REVIEW_CONTEXT_HEADER}{context.strip()}"


def extract_plan_from_review(document: str) -> str:
    """Inverse of ``format_plan_for_review``; other text is returned unchanged."""
    head, marker, tail = document.partition(_REVIEW_PLAN_HEADER)
    if head.strip() or not marker:
        return document
    plan, _, _ = tail.partition(_REVIEW_CONTEXT_HEADER)
    return plan.strip()


def detect_unusable_plan(plan: str) -> Optional[str]:
    """Reason a generated plan is narration rather than a plan, or None.

    Catches a model that narrates or points at a file instead of writing
    the plan, as well as text without any markdown structure.
    """
    lower = plan.lower()
    opening = lower[:500]
    for phrase in _NARRATION_OPENERS:
        if phrase in opening:
            return f'Plan opens with narration ("{phrase.strip()}") instead of plan content'
    for phrase in _SAVED_ELSEWHERE:
        if phrase in lower:
            return f'Plan refers to content saved elsewhere ("{phrase}")'
    if not re.search(r"^#{1,4}\s+\S", plan, re.MULTILINE) and not re.search(r"^[-*+]\s+\S", plan, re.MULTILINE):
        return "Plan has no recognizable structure (no headers, no list items)"
    return None


def summarize_consensus_process(outcome: ConsensusOutcome) -> str:
    """Render a markdown summary of a finished consensus lineage."""
    arbitrated = outcome.arbitration is not None
    status = "APPROVED" if outcome.approved else "NOT APPROVED"
    if arbitrated:
        status += " (via arbitration)"

    best_iteration = 0
    if outcome.score_history:
        best_iteration = outcome.score_history.index(max(outcome.score_history)) + 1

    lines = [
        "## Consensus Summary",
        "",
        f"**Status:** {status}",
        f"**Final Score:** {outcome.final_score:.0%}",
        f"**Best Score:** {outcome.best_score:.0%} (iteration {best_iteration})",
        f"**Total Iterations:** {outcome.iterations}",
        f"**Trend:** {get_score_trend(outcome.score_history)}",
    ]
    if outcome.reason:
        lines.append(f"**Reason:** {outcome.reason}")

    if outcome.arbitration is not None:
        arb = outcome.arbitration
        lines += [
            "",
            "### Arbitration Decision",
            f"- Decision: {'APPROVED' if arb.approved else 'REVISE'}",
            f"- Confidence: {arb.score:.0%}",
        ]
        if arb.critical_concerns:
            lines.append(f"- Critical Concerns: {len(arb.critical_concerns)}")
        if arb.minor_concerns:
            lines.append(f"- Minor Concerns: {len(arb.minor_concerns)}")

    lines += ["", "### Iteration History", ""]
    for i, score in enumerate(outcome.score_history, start=1):
        marker = " (BEST)" if i == best_iteration else ""
        lines.append(f"- Iteration {i}{marker}: {score:.0%}")

    if outcome.open_issues:
        lines += ["", "### Open Issues", ""]
        lines += [f"- {issue}" for issue in outcome.open_issues]

    return "\n".join(lines)
