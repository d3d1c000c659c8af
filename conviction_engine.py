"""
Conviction Engine
=================
Continuous, time-weighted voting over proposals.

A member stakes support on a proposal; the stake's conviction grows toward a
steady state while it stays active and freezes when withdrawn:

    decay_rate     = 0.5 ** (1 / HALF_LIFE_HOURS)
    conviction_new = conviction_0 * decay_rate ** dt_hours + weight

A periodic sweep advances every active stake, re-sums conviction per
proposal, and the threshold evaluator promotes any voting proposal whose
aggregate reaches PASSING_FRACTION of the total member weight.

cast/withdraw apply the same accumulator lazily on the request path.
"""

from __future__ import annotations

import os
import secrets
import time
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

import structlog
from prometheus_client import Counter, Histogram

from conviction_models import (
    MAX_WEIGHT_SCORE,
    Activity,
    ActivityType,
    ConvictionUpdate,
    EvaluationResult,
    InvalidState,
    AlreadyVoted,
    Member,
    NoActiveVote,
    NotFound,
    Proposal,
    ProposalStatus,
    SweepResult,
    VoteRecord,
    utcnow,
)
from conviction_store import ConvictionStore

log = structlog.get_logger()


# ==========================================
# CONFIGURATION
# ==========================================

HALF_LIFE_HOURS    = float(os.environ.get("CONVICTION_HALF_LIFE_HOURS", "72"))
DECAY_RATE         = 0.5 ** (1 / HALF_LIFE_HOURS)
PASSING_FRACTION   = float(os.environ.get("CONVICTION_PASSING_FRACTION", "0.10"))
SWEEP_BATCH_SIZE   = int(os.environ.get("CONVICTION_SWEEP_BATCH", "500"))
AUTHOR_BONUS       = 25.0
MIN_VOTE_WEIGHT    = 1.0
WEIGHT_DIVISOR     = 100.0
WITHDRAW_RETRIES   = 3

SWEEP_DURATION  = Histogram("conviction_sweep_duration_seconds", "Sweep wall time")
ITEM_FAILURES   = Counter("conviction_item_failures_total", "Per-item sweep/evaluator failures", ["stage"])
APPROVALS       = Counter("conviction_approvals_total", "Proposals promoted to approved")
VOTES_CAST      = Counter("conviction_votes_cast_total", "Successful casts")
VOTES_WITHDRAWN = Counter("conviction_votes_withdrawn_total", "Successful withdrawals")


# ==========================================
# ACCUMULATOR
# ==========================================

def accumulate(conviction: float, weight: float, last_update: datetime, now: datetime,
               decay_rate: float = DECAY_RATE) -> float:
    """
    Bring a stake's conviction from last_update forward to now.

    A non-positive interval returns the input unchanged, so a second call with
    the same `now` is a no-op. A negative interval means the clock moved
    backwards; it is logged and otherwise ignored.
    """
    dt_hours = (now - last_update).total_seconds() / 3600
    if dt_hours < 0:
        log.warning("clock_skew_detected", last_update=last_update.isoformat(),
                    now=now.isoformat(), skew_hours=round(-dt_hours, 6))
        return conviction
    if dt_hours == 0:
        return conviction
    return conviction * decay_rate ** dt_hours + weight


def advance_vote(vote: VoteRecord, now: datetime) -> Optional[ConvictionUpdate]:
    """CAS write that brings `vote` to `now`, or None when nothing has elapsed."""
    if now <= vote.last_conviction_update:
        if now < vote.last_conviction_update:
            log.warning("clock_skew_detected", vote_id=vote.id,
                        last_update=vote.last_conviction_update.isoformat(), now=now.isoformat())
        return None
    return ConvictionUpdate(
        vote_id=vote.id,
        expected_last_update=vote.last_conviction_update,
        conviction=accumulate(vote.conviction, vote.weight, vote.last_conviction_update, now),
        updated_at=now,
    )


def live_conviction(vote: VoteRecord, now: datetime) -> float:
    """Read-side conviction as of now. Withdrawn stakes stay frozen."""
    if not vote.active:
        return vote.conviction
    return accumulate(vote.conviction, vote.weight, vote.last_conviction_update, now)


def steady_state_conviction(weight: float, decay_rate: float = DECAY_RATE) -> float:
    return weight / (1 - decay_rate)


def vote_weight(weight_score: float) -> float:
    return max(MIN_VOTE_WEIGHT, weight_score / WEIGHT_DIVISOR)


# ==========================================
# ENGINE
# ==========================================

class ConvictionEngine:
    """
    Vote lifecycle, sweep aggregation and threshold evaluation over a
    ConvictionStore. The clock is injectable so sweeps can be driven
    deterministically.
    """

    def __init__(
        self,
        store: ConvictionStore,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = SWEEP_BATCH_SIZE,
        passing_fraction: float = PASSING_FRACTION,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.clock = clock
        self.batch_size = batch_size
        self.passing_fraction = passing_fraction

    def _now(self, now: Optional[datetime]) -> datetime:
        return now if now is not None else self.clock()

    def _emit(self, type: ActivityType, member_id: str, entity_type: str, entity_id: str,
              summary: str, metadata: Optional[Dict] = None, at: Optional[datetime] = None):
        # Feed writes never roll back voting state.
        try:
            self.store.insert_activity(Activity(
                type=type.value,
                member_id=member_id,
                entity_type=entity_type,
                entity_id=entity_id,
                summary=summary,
                metadata=metadata or {},
                created_at=at or self.clock(),
            ))
        except Exception as e:
            log.warning("activity_emit_failed", type=type.value, entity_id=entity_id, error=str(e))

    def _require_member(self, member_id: str) -> Member:
        member = self.store.get_member(member_id)
        if not member:
            raise NotFound(f"Member {member_id} not found")
        return member

    def _require_proposal(self, proposal_id: str) -> Proposal:
        proposal = self.store.get_proposal(proposal_id)
        if not proposal:
            raise NotFound(f"Proposal {proposal_id} not found")
        return proposal

    # ------ members ------

    def register_member(self, name: str, weight_score: float = 0.0,
                        now: Optional[datetime] = None) -> Member:
        now = self._now(now)
        member = Member(
            id=secrets.token_hex(8),
            name=name,
            weight_score=max(0.0, min(MAX_WEIGHT_SCORE, weight_score)),
            created_at=now,
        )
        self.store.add_member(member)
        self._emit(ActivityType.MEMBER_JOINED, member.id, "member", member.id,
                   f"{name} joined", at=now)
        log.info("member_registered", member_id=member.id, name=name)
        return member

    def get_member(self, member_id: str) -> Member:
        return self._require_member(member_id)

    def adjust_weight(self, member_id: str, points: float) -> float:
        new_score = self.store.adjust_member_weight(member_id, points)
        if new_score is None:
            raise NotFound(f"Member {member_id} not found")
        log.info("member_weight_adjusted", member_id=member_id, points=points, weight_score=new_score)
        return new_score

    def leaderboard(self, limit: int = 20) -> List[Member]:
        members = sorted(self.store.list_members(), key=lambda m: (-m.weight_score, m.name))
        return members[:limit]

    # ------ proposal lifecycle hooks ------

    def create_proposal(self, author_id: str, title: str, tagline: str = "",
                        now: Optional[datetime] = None) -> Proposal:
        now = self._now(now)
        author = self._require_member(author_id)
        proposal = Proposal(
            id=secrets.token_hex(8),
            author_id=author_id,
            title=title,
            tagline=tagline,
            created_at=now,
        )
        self.store.add_proposal(proposal)
        self._emit(ActivityType.PROPOSAL_CREATED, author_id, "proposal", proposal.id,
                   f"{author.name} drafted \"{title}\"", at=now)
        return proposal

    def _transition(self, proposal_id: str, from_status: ProposalStatus,
                    to_status: ProposalStatus, now: datetime) -> Proposal:
        proposal = self._require_proposal(proposal_id)
        if proposal.status != from_status or not self.store.transition_proposal(
                proposal_id, from_status, to_status, now):
            current = self._require_proposal(proposal_id).status
            raise InvalidState(
                f"Proposal {proposal_id} is {current.value}, expected {from_status.value}"
            )
        return self._require_proposal(proposal_id)

    def submit_proposal(self, proposal_id: str, now: Optional[datetime] = None) -> Proposal:
        now = self._now(now)
        proposal = self._transition(proposal_id, ProposalStatus.DRAFT, ProposalStatus.DISCUSSION, now)
        self._emit(ActivityType.PROPOSAL_SUBMITTED, proposal.author_id, "proposal", proposal.id,
                   f"\"{proposal.title}\" opened for discussion", at=now)
        return proposal

    def start_voting(self, proposal_id: str, now: Optional[datetime] = None) -> Proposal:
        now = self._now(now)
        proposal = self._transition(proposal_id, ProposalStatus.DISCUSSION, ProposalStatus.VOTING, now)
        self._emit(ActivityType.PROPOSAL_VOTING_STARTED, proposal.author_id, "proposal", proposal.id,
                   f"Voting opened on \"{proposal.title}\"", at=now)
        return proposal

    def get_proposal(self, proposal_id: str) -> Proposal:
        return self._require_proposal(proposal_id)

    def list_proposals(self, status: Optional[ProposalStatus] = None) -> List[Proposal]:
        return self.store.list_proposals(status)

    def top_by_conviction(self, limit: int = 10) -> List[Proposal]:
        return self.store.top_by_conviction(limit)

    # ------ vote lifecycle ------

    def cast(self, member_id: str, proposal_id: str, now: Optional[datetime] = None) -> VoteRecord:
        """
        Stake a member's support on a voting proposal.

        The weight is snapshotted from the member's current weight_score and
        the new record starts with conviction == weight.
        """
        now = self._now(now)
        member = self._require_member(member_id)
        proposal = self._require_proposal(proposal_id)
        if proposal.status != ProposalStatus.VOTING:
            raise InvalidState(f"Proposal {proposal_id} is not in voting phase")
        if self.store.get_active_vote(member_id, proposal_id):
            raise AlreadyVoted(f"Member {member_id} already has an active vote on {proposal_id}")

        weight = vote_weight(member.weight_score)
        vote = VoteRecord(
            id=secrets.token_hex(8),
            member_id=member_id,
            proposal_id=proposal_id,
            weight=weight,
            conviction=weight,
            staked_at=now,
            last_conviction_update=now,
            active=True,
        )
        self.store.insert_vote(vote)
        VOTES_CAST.inc()
        log.info("vote_cast", vote_id=vote.id, member_id=member_id,
                 proposal_id=proposal_id, weight=weight)
        self._emit(ActivityType.VOTE_CAST, member_id, "proposal", proposal_id,
                   f"{member.name} backed \"{proposal.title}\"", {"weight": weight}, at=now)
        return vote

    def withdraw(self, member_id: str, proposal_id: str, now: Optional[datetime] = None) -> VoteRecord:
        """
        Remove a member's active stake. The conviction accumulated up to `now`
        is written once and then frozen.
        """
        now = self._now(now)
        for attempt in range(WITHDRAW_RETRIES):
            vote = self.store.get_active_vote(member_id, proposal_id)
            if not vote:
                raise NoActiveVote(f"No active vote by {member_id} on {proposal_id}")
            conviction = accumulate(vote.conviction, vote.weight, vote.last_conviction_update, now)
            at = max(now, vote.last_conviction_update)
            if self.store.deactivate_vote(vote, conviction, at):
                break
            log.info("withdraw_cas_retry", vote_id=vote.id, attempt=attempt + 1)
        else:
            raise InvalidState(
                f"Vote by {member_id} on {proposal_id} kept changing; withdraw abandoned"
            )

        vote.conviction = conviction
        vote.last_conviction_update = at
        vote.active = False
        vote.withdrawn_at = at
        VOTES_WITHDRAWN.inc()
        log.info("vote_withdrawn", vote_id=vote.id, member_id=member_id,
                 proposal_id=proposal_id, conviction=round(conviction, 4))
        member = self.store.get_member(member_id)
        self._emit(ActivityType.VOTE_WITHDRAWN, member_id, "proposal", proposal_id,
                   f"{member.name if member else member_id} withdrew support",
                   {"conviction": conviction}, at=now)
        return vote

    def votes_for_proposal(self, proposal_id: str, now: Optional[datetime] = None) -> List[Dict]:
        now = self._now(now)
        self._require_proposal(proposal_id)
        rows = []
        for vote in self.store.list_votes_for_proposal(proposal_id):
            member = self.store.get_member(vote.member_id)
            rows.append({
                "vote": vote,
                "member_name": member.name if member else None,
                "live_conviction": live_conviction(vote, now),
            })
        return rows

    # ------ sweep ------

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """
        Advance every active stake to `now` and rewrite each voting proposal's
        conviction_score from the fresh per-stake values.

        A proposal with a stake whose value could not be determined this tick
        keeps its previous score until the next tick.
        """
        now = self._now(now)
        started = time.time()
        result = SweepResult()
        totals: Dict[str, float] = defaultdict(float)
        incomplete: Set[str] = set()

        snapshot = self.store.snapshot_active_votes()
        pending: List[ConvictionUpdate] = []
        by_id: Dict[str, VoteRecord] = {}

        for vote in snapshot:
            try:
                update = advance_vote(vote, now)
            except Exception as e:
                result.failed += 1
                incomplete.add(vote.proposal_id)
                ITEM_FAILURES.labels(stage="accumulate").inc()
                log.error("sweep_record_failed", vote_id=vote.id, error=str(e))
                continue
            if update is None:
                result.unchanged += 1
                totals[vote.proposal_id] += vote.conviction
            else:
                pending.append(update)
                by_id[vote.id] = vote

        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            try:
                applied = set(self.store.apply_conviction_updates(batch))
            except Exception as e:
                result.failed += len(batch)
                incomplete.update(by_id[u.vote_id].proposal_id for u in batch)
                ITEM_FAILURES.labels(stage="write").inc(len(batch))
                log.error("sweep_record_failed", batch_start=start, batch_size=len(batch),
                          error=str(e))
                continue
            for update in batch:
                vote = by_id[update.vote_id]
                if update.vote_id in applied:
                    result.updated += 1
                    totals[vote.proposal_id] += update.conviction
                else:
                    # withdrawn or advanced by another sweeper since the snapshot
                    result.skipped += 1
                    self._count_current(vote, totals, incomplete)

        for proposal in self.store.list_proposals(ProposalStatus.VOTING):
            if proposal.id in incomplete:
                log.warning("sweep_aggregate_deferred", proposal_id=proposal.id)
                continue
            score = totals.get(proposal.id, 0.0)
            try:
                if self.store.set_conviction_score(proposal.id, score):
                    result.proposals[proposal.id] = score
            except Exception as e:
                result.failed += 1
                ITEM_FAILURES.labels(stage="aggregate").inc()
                log.error("sweep_proposal_failed", proposal_id=proposal.id, error=str(e))

        duration = time.time() - started
        SWEEP_DURATION.observe(duration)
        log.info("sweep_completed", updated=result.updated, unchanged=result.unchanged,
                 skipped=result.skipped, failed=result.failed,
                 deferred=len(incomplete), proposals=len(result.proposals),
                 duration_ms=round(duration * 1000, 2))
        return result

    def _count_current(self, vote: VoteRecord, totals: Dict[str, float], incomplete: Set[str]):
        # A lost CAS means the stored row moved on; count whatever is active now.
        try:
            current = self.store.get_active_vote(vote.member_id, vote.proposal_id)
        except Exception as e:
            incomplete.add(vote.proposal_id)
            ITEM_FAILURES.labels(stage="reread").inc()
            log.error("sweep_record_failed", vote_id=vote.id, error=str(e))
            return
        if current is not None:
            totals[vote.proposal_id] += current.conviction

    # ------ threshold evaluation ------

    def total_weight(self) -> float:
        return sum(m.weight_score for m in self.store.list_members())

    def threshold(self, total_weight: Optional[float] = None) -> float:
        if total_weight is None:
            total_weight = self.total_weight()
        return total_weight * self.passing_fraction

    def _promote(self, proposal: Proposal, threshold: float, now: datetime) -> bool:
        if not self.store.transition_proposal(proposal.id, ProposalStatus.VOTING,
                                              ProposalStatus.APPROVED, now):
            return False
        self.store.reward_author(proposal.author_id, AUTHOR_BONUS)
        APPROVALS.inc()
        log.info("proposal_approved", proposal_id=proposal.id,
                 conviction=proposal.conviction_score, threshold=threshold)
        self._emit(ActivityType.PROPOSAL_APPROVED, proposal.author_id, "proposal", proposal.id,
                   f"\"{proposal.title}\" passed with conviction {proposal.conviction_score:.1f}",
                   {"conviction": proposal.conviction_score, "threshold": threshold}, at=now)
        return True

    def _compute_threshold(self) -> Tuple[float, float]:
        total = self.total_weight()
        if total == 0:
            # No members with weight: every voting proposal clears the bar.
            log.warning("zero_total_weight", passing_fraction=self.passing_fraction)
        return total, self.threshold(total)

    def check_thresholds(self, now: Optional[datetime] = None) -> EvaluationResult:
        now = self._now(now)
        total, threshold = self._compute_threshold()
        result = EvaluationResult(threshold=threshold, total_weight=total)

        for proposal in self.store.list_proposals(ProposalStatus.VOTING):
            if proposal.conviction_score < threshold:
                continue
            try:
                if self._promote(proposal, threshold, now):
                    result.approved.append(proposal.id)
            except Exception as e:
                result.failed += 1
                ITEM_FAILURES.labels(stage="evaluate").inc()
                log.error("threshold_check_failed", proposal_id=proposal.id, error=str(e))

        log.info("thresholds_checked", threshold=threshold, total_weight=total,
                 approved=len(result.approved))
        return result

    def evaluate_proposal(self, proposal_id: str, now: Optional[datetime] = None) -> bool:
        now = self._now(now)
        proposal = self._require_proposal(proposal_id)
        if proposal.status != ProposalStatus.VOTING:
            raise InvalidState(f"Proposal {proposal_id} is not in voting phase")
        _, threshold = self._compute_threshold()
        if proposal.conviction_score < threshold:
            return False
        return self._promote(proposal, threshold, now)

    # ------ reporting ------

    def stats(self) -> Dict:
        total = self.total_weight()
        return {
            "total_weight": total,
            "threshold": self.threshold(total),
            "active_votes": self.store.count_active_votes(),
            "passing_threshold": f"{self.passing_fraction * 100:g}%",
        }

    def list_activities(self, limit: int = 50, type: Optional[str] = None,
                        member_id: Optional[str] = None) -> List[Activity]:
        return self.store.list_activities(limit=limit, type=type, member_id=member_id)
