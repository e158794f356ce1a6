"""Vote aggregation for Concord.

Turns independent reviewer votes into a ConsensusScore. Pure functions,
no I/O: identical inputs always produce identical scores so that audit
trails can be replayed.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from src.core.models import ConsensusScore, ReviewerVote, Vote

VOTE_WEIGHTS: dict[Vote, float] = {
    Vote.APPROVE: 1.0,
    Vote.CONDITIONAL: 0.5,
    Vote.REJECT: 0.0,
}


def vote_weight(vote: Vote) -> float:
    return VOTE_WEIGHTS[vote]


def score_votes(votes: Sequence[ReviewerVote]) -> ConsensusScore:
    """Compute the raw approval rate and the confidence-weighted score.

    ``score`` is the fraction of APPROVE votes and is reported for
    diagnostics only. ``weighted_score`` gates decisions; it is forced to 0
    when any vote carries blocking issues.
    """
    if not votes:
        return ConsensusScore(score=0.0, weighted_score=0.0)

    approvals = sum(1 for v in votes if v.vote == Vote.APPROVE)
    score = approvals / len(votes)

    total_confidence = sum(v.confidence for v in votes)
    if total_confidence == 0:
        weighted = 0.0
    else:
        weighted = sum(vote_weight(v.vote) * v.confidence for v in votes) / total_confidence

    if any(v.blocking_issues for v in votes):
        weighted = 0.0

    return ConsensusScore(score=_clamp(score), weighted_score=_clamp(weighted))


def dedupe(items: Iterable[str]) -> list[str]:
    """Order-preserving de-duplication, ignoring case and surrounding whitespace."""
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        text = item.strip()
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        result.append(text)
    return result


def collect_feedback(votes: Sequence[ReviewerVote]) -> tuple[list[str], list[str]]:
    """Return (concerns, recommendations) across all votes, de-duplicated."""
    concerns = dedupe(issue for v in votes for issue in v.blocking_issues)
    recommendations = dedupe(s for v in votes for s in v.suggestions)
    return concerns, recommendations


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))
