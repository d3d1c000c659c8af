"""
Conviction Models
=================
Records and error kinds shared by the conviction store, engine and service.

Timestamps are timezone-aware UTC datetimes in memory and ISO-8601 strings
at rest.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


MAX_WEIGHT_SCORE = 1000.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts else None


def from_iso(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    ts = datetime.fromisoformat(raw)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# ==========================================
# ENUMS
# ==========================================

class ProposalStatus(Enum):
    DRAFT      = "draft"
    DISCUSSION = "discussion"
    VOTING     = "voting"
    APPROVED   = "approved"
    BUILDING   = "building"
    SHIPPED    = "shipped"
    ABANDONED  = "abandoned"


class ActivityType(Enum):
    MEMBER_JOINED           = "member_joined"
    PROPOSAL_CREATED        = "proposal_created"
    PROPOSAL_SUBMITTED      = "proposal_submitted"
    PROPOSAL_VOTING_STARTED = "proposal_voting_started"
    PROPOSAL_APPROVED       = "proposal_approved"
    VOTE_CAST               = "vote_cast"
    VOTE_WITHDRAWN          = "vote_withdrawn"


# ==========================================
# ERRORS
# ==========================================

class ConvictionError(Exception):
    """Base class for rejections surfaced to the caller."""


class NotFound(ConvictionError):
    pass


class InvalidState(ConvictionError):
    pass


class AlreadyVoted(ConvictionError):
    pass


class NoActiveVote(ConvictionError):
    pass


# ==========================================
# RECORDS
# ==========================================

@dataclass
class Member:
    id: str
    name: str
    weight_score: float = 0.0
    proposals_created: int = 0
    proposals_passed: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Proposal:
    id: str
    author_id: str
    title: str
    tagline: str = ""
    status: ProposalStatus = ProposalStatus.DRAFT
    conviction_score: float = 0.0
    voter_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    voting_started_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None


@dataclass
class VoteRecord:
    """
    One member's stake on one proposal.

    `conviction` is only valid as of `last_conviction_update`; readers that
    need the live value must run it through the accumulator first.
    """
    id: str
    member_id: str
    proposal_id: str
    weight: float
    conviction: float
    staked_at: datetime
    last_conviction_update: datetime
    active: bool = True
    withdrawn_at: Optional[datetime] = None


@dataclass
class Activity:
    type: str
    member_id: str
    entity_type: str
    entity_id: str
    summary: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass
class ConvictionUpdate:
    """A pending compare-and-set write produced by the sweep."""
    vote_id: str
    expected_last_update: datetime
    conviction: float
    updated_at: datetime


@dataclass
class SweepResult:
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    proposals: Dict[str, float] = field(default_factory=dict)


@dataclass
class EvaluationResult:
    threshold: float
    total_weight: float
    approved: List[str] = field(default_factory=list)
    failed: int = 0
