"""Iterate-until-consensus control loop.

Drives one proposal lineage through
DRAFT → REVIEWING → {APPROVED, REVISING → REVIEWING, ESCALATED → ARBITRATED}.

Each round collects every reviewer's vote (all calls joined before scoring),
builds a packet, and on rejection asks the proposal generator for a revision
that addresses the de-duplicated feedback. When the revision budget
``max_disagreements`` runs out, or scores stall close to the threshold, the
arbitrator decides.
The loop checkpoint is written to the state store after every round so a
crashed process resumes at the last completed round.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter
from typing import Awaitable, Callable, Optional, Sequence

from src.agents.arbitrator import Arbitrator
from src.agents.generator import ProposalGenerator
from src.agents.reviewer import Reviewer
from src.consensus.analysis import extract_concerns, is_stuck
from src.consensus.packet_builder import build_consensus_packet, make_plan_ref
from src.core.config import ConsensusConfig, PromptLoader
from src.core.exceptions import ConcordError, ConfigError, ConsensusRoundError, RateLimitError, TransientError
from src.core.models import (
    ArbitrationRequest,
    ArbitrationResult,
    ConsensusLoopState,
    ConsensusOutcome,
    ConsensusPacket,
    ConsensusRules,
    FinalStatus,
    LineageState,
    ReviewerVote,
)
from src.state.store import StateStore

logger = logging.getLogger("concord.consensus.loop")

VoteCollector = Callable[[str, str, str, int], Awaitable[list[ReviewerVote]]]


class ConsensusLoop:
    """Runs proposal lineages to a terminal consensus decision.

    Injected dependencies:
        reviewers: Panel of reviewers; every one is asked each round.
        generator: Produces revisions from reviewer feedback.
        config: Threshold, quorum, budgets and timeouts.
        arbitrator: Terminal decision maker once the budget is spent.
        store: Project state store for checkpoints and history (optional).
    """

    _DEFAULT_REVISION_PROMPT = (
        "Revise the development plan below so that it addresses every concern "
        "raised by the reviewers. Return the complete revised plan."
    )

    def __init__(
        self,
        reviewers: Sequence[Reviewer],
        generator: ProposalGenerator,
        config: Optional[ConsensusConfig] = None,
        arbitrator: Optional[Arbitrator] = None,
        store: Optional[StateStore] = None,
        prompt_loader: Optional[PromptLoader] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not reviewers:
            raise ConfigError("ConsensusLoop needs at least one reviewer")
        self.reviewers = list(reviewers)
        self.generator = generator
        self.config = config or ConsensusConfig()
        self.arbitrator = arbitrator
        self.store = store
        self._prompt_loader = prompt_loader or PromptLoader()
        self._progress_callback = progress_callback
        self._clock = clock
        self.rules = ConsensusRules(
            threshold=self.config.threshold,
            quorum=self.config.quorum,
            min_reviewers=self.config.min_reviewers,
        )
        if len(self.reviewers) < self.config.quorum:
            logger.warning(
                "Only %d reviewer(s) configured for a quorum of %d",
                len(self.reviewers), self.config.quorum,
            )
        self._checkpoints: dict[str, ConsensusLoopState] = {}

    def _notify(self, message: str) -> None:
        """Send a progress notification to the CLI callback, if configured."""
        if self._progress_callback is not None:
            self._progress_callback(message)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, plan: str, context: str = "", lineage_id: str = "plan") -> ConsensusOutcome:
        if self.config.parallel_reviews:
            return await self.run_optimized(plan, context, lineage_id)
        return await self.iterate_until_consensus(plan, context, lineage_id)

    async def iterate_until_consensus(
        self, plan: str, context: str = "", lineage_id: str = "plan"
    ) -> ConsensusOutcome:
        """Sequential variant: reviewers are asked one after another."""
        return await self._drive(plan, context, lineage_id, self._collect_sequential)

    async def run_optimized(
        self, plan: str, context: str = "", lineage_id: str = "plan"
    ) -> ConsensusOutcome:
        """Parallel variant: all reviewer calls fan out at once and are joined.

        Also reports the plain mean of reviewer confidences for the last
        round, which can differ from the weighted score when reviewers split.
        """
        outcome = await self._drive(plan, context, lineage_id, self._collect_parallel)
        if outcome.packets:
            votes = outcome.packets[-1].votes
            if votes:
                outcome.average_reviewer_score = sum(v.confidence for v in votes) / len(votes)
        return outcome

    # ------------------------------------------------------------------
    # Core state machine
    # ------------------------------------------------------------------

    async def _drive(
        self, plan: str, context: str, lineage_id: str, collect: VoteCollector
    ) -> ConsensusOutcome:
        state = self._load_checkpoint(lineage_id, plan)
        packets: list[ConsensusPacket] = []
        last_votes: list[ReviewerVote] = []
        started = self._clock()

        while True:
            if state.state == LineageState.ESCALATED:
                return await self._arbitrate(state, packets, last_votes)

            if state.state == LineageState.REVISING:
                await self._revise(state, context)
                continue

            if self._clock() - started > self.config.consensus_timeout_seconds:
                return self._finish(
                    state, LineageState.REJECTED, packets,
                    reason=f"Consensus timed out after {self.config.consensus_timeout_seconds:.0f}s "
                           f"at iteration {state.iteration}",
                )

            state.state = LineageState.REVIEWING
            self._notify(f"  [CONSENSUS] {lineage_id}: review round {state.iteration}")
            last_votes = await collect(state.current_plan, context, lineage_id, state.iteration)
            packet = self._build_packet(state, last_votes)
            packets.append(packet)
            self._absorb_round(state, packet, last_votes)

            weighted = packet.consensus_result.weighted_score
            logger.info(
                "Lineage '%s' iteration %d: %s (weighted %.3f, %d vote(s))",
                lineage_id, state.iteration, packet.final_status.value, weighted, len(last_votes),
            )

            if packet.final_status == FinalStatus.APPROVED:
                return self._finish(
                    state, LineageState.APPROVED, packets,
                    approved=True, final_status=FinalStatus.APPROVED,
                    final_plan=state.current_plan,
                )

            next_iteration = state.iteration + 1
            budget_spent = next_iteration > self.config.max_disagreements
            stalled = (
                state.best_score >= self.config.arbitration_threshold
                and is_stuck(state.score_history, self.config.stuck_iterations)
            )
            can_arbitrate = self.arbitrator is not None and self.config.enable_arbitration

            if can_arbitrate and (budget_spent or stalled):
                logger.warning(
                    "Lineage '%s' escalated to arbitration (%s)",
                    lineage_id, "budget spent" if budget_spent else "scores stalled",
                )
                state.state = LineageState.ESCALATED
                self._save(state)
                continue

            if budget_spent:
                return self._finish(
                    state, LineageState.REJECTED, packets, final_status=FinalStatus.REJECTED,
                    reason=f"No consensus after {state.iteration} iteration(s); "
                           f"best weighted score {state.best_score:.2f}",
                )

            state.state = LineageState.REVISING
            self._save(state)

    def _build_packet(self, state: ConsensusLoopState, votes: list[ReviewerVote]) -> ConsensusPacket:
        tally = Counter(v.vote.value for v in votes)
        analysis = f"{len(votes)}/{len(self.reviewers)} reviewer(s) voted: " + (
            ", ".join(f"{count} {vote}" for vote, count in sorted(tally.items())) or "no votes"
        )
        return build_consensus_packet(
            make_plan_ref(state.current_plan, version=state.iteration),
            votes,
            self.rules,
            analysis=analysis,
        )

    def _absorb_round(
        self, state: ConsensusLoopState, packet: ConsensusPacket, votes: list[ReviewerVote]
    ) -> None:
        """Fold one finished round into the checkpoint and persist it."""
        weighted = packet.consensus_result.weighted_score
        state.score_history.append(weighted)
        if not state.best_plan or weighted > state.best_score:
            state.best_plan = state.current_plan
            state.best_score = weighted
        state.last_concerns = extract_concerns(votes)
        state.last_recommendations = list(packet.consensus_result.recommendations)
        if self.store is not None:
            self.store.record_consensus_iteration(
                state.lineage_id, state.iteration, packet, loop_state=state,
            )
        else:
            self._save(state)

    async def _revise(self, state: ConsensusLoopState, context: str) -> None:
        """Ask the generator for a revision; fall back to the best plan if it fails.

        A rate limit that outlived the retry policy propagates with the
        checkpoint still in REVISING, so no iteration is consumed.
        """
        prompt = self._revision_prompt(state)
        result = await self.generator.generate(prompt, context)

        if result.rate_limited:
            raise RateLimitError(f"Revision of '{state.lineage_id}' rate limited: {result.error}")

        if result.success and result.content.strip():
            state.current_plan = result.content
            state.generator_feedback = ""
        else:
            logger.warning(
                "Revision of '%s' failed (%s); continuing from best plan",
                state.lineage_id, result.error,
            )
            state.current_plan = state.best_plan or state.current_plan
            state.generator_feedback = f"Revision failed: {result.error or 'empty response'}"

        state.iteration += 1
        state.state = LineageState.REVIEWING
        self._save(state)

    def _revision_prompt(self, state: ConsensusLoopState) -> str:
        instructions = self._prompt_loader.load("revision_prompt.txt", self._DEFAULT_REVISION_PROMPT)
        last = state.score_history[-1] if state.score_history else 0.0
        lines = [
            instructions,
            "",
            f"Current weighted score: {last:.0%} (required: {self.config.threshold:.0%}).",
            "",
            "## Concerns to Address",
            "",
        ]
        lines += [f"- {c}" for c in state.last_concerns] or ["- (reviewers gave no specific concerns)"]
        lines += ["", "## Current Plan", "", state.current_plan.strip()]
        return "\n".join(lines)

    async def _arbitrate(
        self,
        state: ConsensusLoopState,
        packets: list[ConsensusPacket],
        last_votes: list[ReviewerVote],
    ) -> ConsensusOutcome:
        if self.arbitrator is None:
            raise ConfigError(f"Lineage '{state.lineage_id}' is escalated but no arbitrator is configured")

        self._notify(f"  [CONSENSUS] {state.lineage_id}: arbitration")
        request = ArbitrationRequest(
            plan=state.best_plan or state.current_plan,
            reviewer_feedback="\n".join(f"- {c}" for c in state.last_concerns),
            generator_feedback=state.generator_feedback,
            iterations=state.iteration,
            score_history=list(state.score_history),
        )
        result: ArbitrationResult = await self.arbitrator.arbitrate(request)

        packet = build_consensus_packet(
            make_plan_ref(request.plan, version=state.iteration),
            last_votes,
            self.rules,
            arbitrator_result=result,
            analysis=result.analysis or result.reasoning,
        )
        packets.append(packet)
        state.state = LineageState.ARBITRATED
        if self.store is not None:
            self.store.record_consensus_iteration(
                state.lineage_id, state.iteration, packet, loop_state=state,
            )

        open_issues: list[str] = []
        if not result.approved:
            open_issues = list(result.suggested_changes) + list(result.critical_concerns)

        return self._finish(
            state, LineageState.ARBITRATED, packets,
            approved=result.approved,
            final_status=FinalStatus.ARBITRATED,
            final_plan=request.plan,
            arbitration=result,
            open_issues=open_issues,
            reason=None if result.approved else "Arbitrator requested revisions",
        )

    def _finish(
        self,
        state: ConsensusLoopState,
        terminal: LineageState,
        packets: list[ConsensusPacket],
        approved: bool = False,
        final_status: Optional[FinalStatus] = None,
        final_plan: Optional[str] = None,
        arbitration: Optional[ArbitrationResult] = None,
        open_issues: Optional[list[str]] = None,
        reason: Optional[str] = None,
    ) -> ConsensusOutcome:
        state.state = terminal
        self._save(state)
        if reason and not approved:
            logger.warning("Lineage '%s' ended %s: %s", state.lineage_id, terminal.value, reason)
        self._notify(f"  [CONSENSUS] {state.lineage_id}: {terminal.value}")

        return ConsensusOutcome(
            lineage_id=state.lineage_id,
            approved=approved,
            lineage_state=terminal,
            final_status=final_status,
            final_plan=final_plan if final_plan is not None else state.best_plan,
            best_plan=state.best_plan,
            best_score=state.best_score,
            final_score=state.score_history[-1] if state.score_history else 0.0,
            iterations=state.iteration,
            score_history=list(state.score_history),
            packets=packets,
            arbitration=arbitration,
            concerns=[c for c in state.last_concerns if not c.startswith("Consider: ")],
            recommendations=list(state.last_recommendations),
            open_issues=open_issues or [],
            reason=reason,
        )

    # ------------------------------------------------------------------
    # Vote collection
    # ------------------------------------------------------------------

    async def _collect_sequential(
        self, plan: str, context: str, lineage_id: str, iteration: int
    ) -> list[ReviewerVote]:
        votes: list[ReviewerVote] = []
        for reviewer in self.reviewers:
            vote = await self._solicit(reviewer, plan, context, lineage_id, iteration)
            if vote is not None:
                votes.append(vote)
        return votes

    async def _collect_parallel(
        self, plan: str, context: str, lineage_id: str, iteration: int
    ) -> list[ReviewerVote]:
        results = await asyncio.gather(
            *(self._solicit(r, plan, context, lineage_id, iteration) for r in self.reviewers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return [r for r in results if isinstance(r, ReviewerVote)]

    async def _solicit(
        self,
        reviewer: Reviewer,
        plan: str,
        context: str,
        lineage_id: str,
        iteration: int,
    ) -> Optional[ReviewerVote]:
        """One reviewer call. Unresponsive reviewers become missing votes.

        Raises:
            ConsensusRoundError: The reviewer failed for a non-transient reason.
        """
        try:
            return await asyncio.wait_for(
                reviewer.review(plan, context),
                timeout=self.config.reviewer_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Reviewer '%s' timed out after %.0fs; counting as missing vote",
                reviewer.reviewer_id, self.config.reviewer_timeout_seconds,
            )
        except TransientError as e:
            logger.warning("Reviewer '%s' unavailable (%s); counting as missing vote", reviewer.reviewer_id, e)
        except (ConcordError, ValueError) as e:
            raise ConsensusRoundError(lineage_id, iteration, f"{reviewer.reviewer_id}: {e}") from e
        return None

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _load_checkpoint(self, lineage_id: str, plan: str) -> ConsensusLoopState:
        saved: Optional[ConsensusLoopState] = None
        if self.store is not None:
            saved = self.store.get_loop_state(lineage_id)
        else:
            saved = self._checkpoints.get(lineage_id)

        if saved is not None and not saved.state.is_terminal:
            logger.info(
                "Resuming lineage '%s' at iteration %d (%s)",
                lineage_id, saved.iteration, saved.state.value,
            )
            return saved

        if saved is not None:
            logger.info("Lineage '%s' was %s; starting a new round of review", lineage_id, saved.state.value)
        return ConsensusLoopState(
            lineage_id=lineage_id,
            state=LineageState.DRAFT,
            current_plan=plan,
        )

    def _save(self, state: ConsensusLoopState) -> None:
        if self.store is not None:
            self.store.save_loop_state(state)
        else:
            self._checkpoints[state.lineage_id] = state.model_copy(deep=True)
