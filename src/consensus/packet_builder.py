"""Consensus packet builder.

Wraps vote aggregation with threshold and quorum policy to produce one
immutable ConsensusPacket per review round. Persisting the packet is the
caller's job.
"""

from __future__ import annotations

import hashlib
from typing import Optional, Sequence

from src.consensus.aggregator import collect_feedback, score_votes
from src.core.models import (
    ArbitrationResult,
    ArtifactRef,
    ConsensusPacket,
    ConsensusRules,
    FinalStatus,
    PacketResult,
    ReviewerVote,
)


def make_plan_ref(content: str, version: int = 1, path: Optional[str] = None) -> ArtifactRef:
    """Content-addressed reference for a plan version."""
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return ArtifactRef(
        artifact_id=f"plan-{digest[:12]}",
        sha256=digest,
        version=version,
        type="plan",
        path=path,
    )


def decide_status(
    weighted_score: float,
    vote_count: int,
    rules: ConsensusRules,
    arbitrator_result: Optional[ArbitrationResult] = None,
) -> FinalStatus:
    if arbitrator_result is not None:
        return FinalStatus.ARBITRATED
    if weighted_score >= rules.threshold and vote_count >= rules.min_reviewers:
        return FinalStatus.APPROVED
    return FinalStatus.REJECTED


def build_consensus_packet(
    plan_ref: ArtifactRef,
    votes: Sequence[ReviewerVote],
    rules: ConsensusRules,
    arbitrator_result: Optional[ArbitrationResult] = None,
    analysis: str = "",
    strengths: Optional[Sequence[str]] = None,
) -> ConsensusPacket:
    """Build the packet for one review round.

    Too few votes is not an error: the packet is simply REJECTED, since
    reviewers dropping out is an expected failure mode.
    """
    scores = score_votes(votes)
    status = decide_status(scores.weighted_score, len(votes), rules, arbitrator_result)
    concerns, recommendations = collect_feedback(votes)

    if status == FinalStatus.ARBITRATED:
        approved = bool(arbitrator_result and arbitrator_result.approved)
    else:
        approved = status == FinalStatus.APPROVED

    result = PacketResult(
        score=scores.score,
        weighted_score=scores.weighted_score,
        approved=approved,
        analysis=analysis,
        strengths=list(strengths or []),
        concerns=concerns,
        recommendations=recommendations,
    )

    return ConsensusPacket(
        plan_ref=plan_ref,
        votes=list(votes),
        rules=rules,
        consensus_result=result,
        final_status=status,
        arbitrator_result=arbitrator_result,
    )
