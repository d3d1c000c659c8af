"""
Conviction Store
================
Persistence contract for the conviction engine, plus two implementations:

  - SqliteStore:   WAL-mode SQLite, one transaction per primitive
  - InMemoryStore: lock-guarded dicts, used by tests and local tooling

Every write the engine performs goes through one of the primitives below.
Each primitive is atomic for the entity (or pair of entities) it touches;
vote conviction writes are compare-and-set on `last_conviction_update` so a
record can never have decay applied twice for the same interval.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterator, List, Optional

import structlog

from conviction_models import (
    MAX_WEIGHT_SCORE,
    Activity,
    AlreadyVoted,
    ConvictionUpdate,
    InvalidState,
    Member,
    NotFound,
    Proposal,
    ProposalStatus,
    VoteRecord,
    from_iso,
    to_iso,
)

log = structlog.get_logger()


class ConvictionStore(ABC):
    """Capability set the engine needs from the datastore."""

    # ------ members ------

    @abstractmethod
    def add_member(self, member: Member) -> Member: ...

    @abstractmethod
    def get_member(self, member_id: str) -> Optional[Member]: ...

    @abstractmethod
    def list_members(self) -> List[Member]: ...

    @abstractmethod
    def adjust_member_weight(self, member_id: str, points: float) -> Optional[float]:
        """Add points to weight_score, clamped to [0, MAX_WEIGHT_SCORE]."""

    @abstractmethod
    def reward_author(self, member_id: str, bonus: float) -> bool:
        """Grant the passing bonus and bump proposals_passed."""

    # ------ proposals ------

    @abstractmethod
    def add_proposal(self, proposal: Proposal) -> Proposal:
        """Insert a proposal and bump the author's proposals_created."""

    @abstractmethod
    def get_proposal(self, proposal_id: str) -> Optional[Proposal]: ...

    @abstractmethod
    def list_proposals(self, status: Optional[ProposalStatus] = None) -> List[Proposal]: ...

    @abstractmethod
    def top_by_conviction(self, limit: int = 10) -> List[Proposal]: ...

    @abstractmethod
    def transition_proposal(self, proposal_id: str, from_status: ProposalStatus,
                            to_status: ProposalStatus, at) -> bool:
        """Move a proposal between states only if it is still in from_status."""

    @abstractmethod
    def set_conviction_score(self, proposal_id: str, score: float) -> bool:
        """Overwrite the aggregate. No-op unless the proposal is voting."""

    # ------ votes ------

    @abstractmethod
    def get_active_vote(self, member_id: str, proposal_id: str) -> Optional[VoteRecord]: ...

    @abstractmethod
    def insert_vote(self, vote: VoteRecord) -> VoteRecord:
        """Insert an active vote and increment voter_count atomically.

        Raises NotFound, InvalidState (proposal not voting) or AlreadyVoted.
        """

    @abstractmethod
    def deactivate_vote(self, vote: VoteRecord, conviction: float, at) -> bool:
        """CAS-withdraw a vote and decrement voter_count (floor 0).

        Returns False when the record is no longer active or its
        last_conviction_update moved since `vote` was read.
        """

    @abstractmethod
    def snapshot_active_votes(self) -> List[VoteRecord]:
        """All active votes from a single consistent read."""

    @abstractmethod
    def apply_conviction_updates(self, updates: List[ConvictionUpdate]) -> List[str]:
        """Apply a batch of CAS conviction writes; return the vote ids that landed."""

    @abstractmethod
    def list_votes_for_proposal(self, proposal_id: str) -> List[VoteRecord]: ...

    @abstractmethod
    def count_active_votes(self) -> int: ...

    # ------ activity feed ------

    @abstractmethod
    def insert_activity(self, activity: Activity) -> Activity: ...

    @abstractmethod
    def list_activities(self, limit: int = 50, type: Optional[str] = None,
                        member_id: Optional[str] = None) -> List[Activity]: ...

    def health_check(self) -> bool:
        return True


# ==========================================
# SQLITE
# ==========================================

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS members (
        id                TEXT PRIMARY KEY,
        name              TEXT NOT NULL UNIQUE,
        weight_score      REAL NOT NULL DEFAULT 0,
        proposals_created INTEGER NOT NULL DEFAULT 0,
        proposals_passed  INTEGER NOT NULL DEFAULT 0,
        created_at        TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS proposals (
        id                TEXT PRIMARY KEY,
        author_id         TEXT NOT NULL,
        title             TEXT NOT NULL,
        tagline           TEXT DEFAULT '',
        status            TEXT NOT NULL DEFAULT 'draft',
        conviction_score  REAL NOT NULL DEFAULT 0,
        voter_count       INTEGER NOT NULL DEFAULT 0,
        created_at        TEXT NOT NULL,
        voting_started_at TEXT,
        approved_at       TEXT,
        FOREIGN KEY (author_id) REFERENCES members(id)
    );

    CREATE TABLE IF NOT EXISTS votes (
        id                     TEXT PRIMARY KEY,
        member_id              TEXT NOT NULL,
        proposal_id            TEXT NOT NULL,
        weight                 REAL NOT NULL,
        conviction             REAL NOT NULL,
        staked_at              TEXT NOT NULL,
        last_conviction_update TEXT NOT NULL,
        active                 INTEGER NOT NULL DEFAULT 1,
        withdrawn_at           TEXT,
        FOREIGN KEY (member_id)   REFERENCES members(id),
        FOREIGN KEY (proposal_id) REFERENCES proposals(id)
    );

    CREATE TABLE IF NOT EXISTS activities (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        type        TEXT NOT NULL,
        member_id   TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id   TEXT NOT NULL,
        summary     TEXT NOT NULL,
        metadata    TEXT DEFAULT '{}',
        created_at  TEXT NOT NULL
    );

    -- at most one active stake per (member, proposal)
    CREATE UNIQUE INDEX IF NOT EXISTS idx_votes_one_active
        ON votes(member_id, proposal_id) WHERE active = 1;

    CREATE INDEX IF NOT EXISTS idx_votes_proposal    ON votes(proposal_id, active);
    CREATE INDEX IF NOT EXISTS idx_votes_active      ON votes(active);
    CREATE INDEX IF NOT EXISTS idx_proposals_status  ON proposals(status);
    CREATE INDEX IF NOT EXISTS idx_proposals_conv    ON proposals(conviction_score);
    CREATE INDEX IF NOT EXISTS idx_activities_type   ON activities(type, id);
    CREATE INDEX IF NOT EXISTS idx_activities_member ON activities(member_id, id);
"""


def _row_to_member(row: sqlite3.Row) -> Member:
    return Member(
        id=row["id"],
        name=row["name"],
        weight_score=row["weight_score"],
        proposals_created=row["proposals_created"],
        proposals_passed=row["proposals_passed"],
        created_at=from_iso(row["created_at"]),
    )


def _row_to_proposal(row: sqlite3.Row) -> Proposal:
    return Proposal(
        id=row["id"],
        author_id=row["author_id"],
        title=row["title"],
        tagline=row["tagline"] or "",
        status=ProposalStatus(row["status"]),
        conviction_score=row["conviction_score"],
        voter_count=row["voter_count"],
        created_at=from_iso(row["created_at"]),
        voting_started_at=from_iso(row["voting_started_at"]),
        approved_at=from_iso(row["approved_at"]),
    )


def _row_to_vote(row: sqlite3.Row) -> VoteRecord:
    return VoteRecord(
        id=row["id"],
        member_id=row["member_id"],
        proposal_id=row["proposal_id"],
        weight=row["weight"],
        conviction=row["conviction"],
        staked_at=from_iso(row["staked_at"]),
        last_conviction_update=from_iso(row["last_conviction_update"]),
        active=bool(row["active"]),
        withdrawn_at=from_iso(row["withdrawn_at"]),
    )


def _row_to_activity(row: sqlite3.Row) -> Activity:
    return Activity(
        id=row["id"],
        type=row["type"],
        member_id=row["member_id"],
        entity_type=row["entity_type"],
        entity_id=row["entity_id"],
        summary=row["summary"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=from_iso(row["created_at"]),
    )


class SqliteStore(ConvictionStore):
    """
    SQLite-backed store. Safe to share across threads and processes: every
    primitive opens its own connection and runs inside BEGIN IMMEDIATE.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False,
                               isolation_level=None, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def init_db(self):
        conn = self._connect()
        conn.executescript(_SCHEMA)
        conn.close()
        log.info("database_initialized", path=self.db_path)

    def health_check(self) -> bool:
        try:
            with self._read() as conn:
                names = {r["name"] for r in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()}
            return {"members", "proposals", "votes", "activities"} <= names
        except sqlite3.Error:
            return False

    # ------ members ------

    def add_member(self, member: Member) -> Member:
        try:
            with self._transaction() as conn:
                conn.execute(
                    """INSERT INTO members
                       (id, name, weight_score, proposals_created, proposals_passed, created_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (member.id, member.name, member.weight_score, member.proposals_created,
                     member.proposals_passed, to_iso(member.created_at)),
                )
        except sqlite3.IntegrityError:
            raise InvalidState(f"Member name '{member.name}' already taken.")
        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
        return _row_to_member(row) if row else None

    def list_members(self) -> List[Member]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM members ORDER BY created_at, id").fetchall()
        return [_row_to_member(r) for r in rows]

    def adjust_member_weight(self, member_id: str, points: float) -> Optional[float]:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE members SET weight_score = MAX(0, MIN(?, weight_score + ?)) WHERE id = ?",
                (MAX_WEIGHT_SCORE, points, member_id),
            )
            if cur.rowcount == 0:
                return None
            return conn.execute(
                "SELECT weight_score FROM members WHERE id = ?", (member_id,)
            ).fetchone()["weight_score"]

    def reward_author(self, member_id: str, bonus: float) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """UPDATE members SET
                       weight_score = MIN(?, weight_score + ?),
                       proposals_passed = proposals_passed + 1
                   WHERE id = ?""",
                (MAX_WEIGHT_SCORE, bonus, member_id),
            )
            return cur.rowcount == 1

    # ------ proposals ------

    def add_proposal(self, proposal: Proposal) -> Proposal:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE members SET proposals_created = proposals_created + 1 WHERE id = ?",
                (proposal.author_id,),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Member {proposal.author_id} not found")
            conn.execute(
                """INSERT INTO proposals
                   (id, author_id, title, tagline, status, conviction_score, voter_count,
                    created_at, voting_started_at, approved_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (proposal.id, proposal.author_id, proposal.title, proposal.tagline,
                 proposal.status.value, proposal.conviction_score, proposal.voter_count,
                 to_iso(proposal.created_at), to_iso(proposal.voting_started_at),
                 to_iso(proposal.approved_at)),
            )
        return proposal

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM proposals WHERE id = ?", (proposal_id,)).fetchone()
        return _row_to_proposal(row) if row else None

    def list_proposals(self, status: Optional[ProposalStatus] = None) -> List[Proposal]:
        with self._read() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM proposals ORDER BY created_at, id").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM proposals WHERE status = ? ORDER BY created_at, id",
                    (status.value,),
                ).fetchall()
        return [_row_to_proposal(r) for r in rows]

    def top_by_conviction(self, limit: int = 10) -> List[Proposal]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM proposals ORDER BY conviction_score DESC, id LIMIT ?", (limit,)
            ).fetchall()
        return [_row_to_proposal(r) for r in rows]

    def transition_proposal(self, proposal_id, from_status, to_status, at) -> bool:
        sets = ["status = ?"]
        params: list = [to_status.value]
        if to_status == ProposalStatus.VOTING:
            sets.append("voting_started_at = ?")
            params.append(to_iso(at))
        elif to_status == ProposalStatus.APPROVED:
            sets.append("approved_at = ?")
            params.append(to_iso(at))
        params += [proposal_id, from_status.value]
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE proposals SET {', '.join(sets)} WHERE id = ? AND status = ?", params
            )
            return cur.rowcount == 1

    def set_conviction_score(self, proposal_id: str, score: float) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE proposals SET conviction_score = ? WHERE id = ? AND status = ?",
                (score, proposal_id, ProposalStatus.VOTING.value),
            )
            return cur.rowcount == 1

    # ------ votes ------

    def get_active_vote(self, member_id: str, proposal_id: str) -> Optional[VoteRecord]:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM votes WHERE member_id = ? AND proposal_id = ? AND active = 1",
                (member_id, proposal_id),
            ).fetchone()
        return _row_to_vote(row) if row else None

    def insert_vote(self, vote: VoteRecord) -> VoteRecord:
        with self._transaction() as conn:
            cur = conn.execute(
                "UPDATE proposals SET voter_count = voter_count + 1 WHERE id = ? AND status = ?",
                (vote.proposal_id, ProposalStatus.VOTING.value),
            )
            if cur.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM proposals WHERE id = ?", (vote.proposal_id,)
                ).fetchone()
                if not exists:
                    raise NotFound(f"Proposal {vote.proposal_id} not found")
                raise InvalidState(f"Proposal {vote.proposal_id} is not in voting phase")
            try:
                conn.execute(
                    """INSERT INTO votes
                       (id, member_id, proposal_id, weight, conviction, staked_at,
                        last_conviction_update, active)
                       VALUES (?, ?, ?, ?, ?, ?, ?, 1)""",
                    (vote.id, vote.member_id, vote.proposal_id, vote.weight, vote.conviction,
                     to_iso(vote.staked_at), to_iso(vote.last_conviction_update)),
                )
            except sqlite3.IntegrityError as e:
                if "FOREIGN KEY" in str(e):
                    raise NotFound(f"Member {vote.member_id} not found")
                raise AlreadyVoted(
                    f"Member {vote.member_id} already has an active vote on {vote.proposal_id}"
                )
        return vote

    def deactivate_vote(self, vote: VoteRecord, conviction: float, at) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """UPDATE votes SET conviction = ?, last_conviction_update = ?,
                       active = 0, withdrawn_at = ?
                   WHERE id = ? AND active = 1 AND last_conviction_update = ?""",
                (conviction, to_iso(at), to_iso(at), vote.id,
                 to_iso(vote.last_conviction_update)),
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                "UPDATE proposals SET voter_count = MAX(0, voter_count - 1) WHERE id = ?",
                (vote.proposal_id,),
            )
        return True

    def snapshot_active_votes(self) -> List[VoteRecord]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM votes WHERE active = 1 ORDER BY id").fetchall()
        return [_row_to_vote(r) for r in rows]

    def apply_conviction_updates(self, updates: List[ConvictionUpdate]) -> List[str]:
        applied = []
        with self._transaction() as conn:
            for u in updates:
                cur = conn.execute(
                    """UPDATE votes SET conviction = ?, last_conviction_update = ?
                       WHERE id = ? AND active = 1 AND last_conviction_update = ?""",
                    (u.conviction, to_iso(u.updated_at), u.vote_id,
                     to_iso(u.expected_last_update)),
                )
                if cur.rowcount == 1:
                    applied.append(u.vote_id)
        return applied

    def list_votes_for_proposal(self, proposal_id: str) -> List[VoteRecord]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM votes WHERE proposal_id = ? ORDER BY staked_at, id",
                (proposal_id,),
            ).fetchall()
        return [_row_to_vote(r) for r in rows]

    def count_active_votes(self) -> int:
        with self._read() as conn:
            return conn.execute("SELECT COUNT(*) AS c FROM votes WHERE active = 1").fetchone()["c"]

    # ------ activity feed ------

    def insert_activity(self, activity: Activity) -> Activity:
        with self._transaction() as conn:
            cur = conn.execute(
                """INSERT INTO activities
                   (type, member_id, entity_type, entity_id, summary, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (activity.type, activity.member_id, activity.entity_type, activity.entity_id,
                 activity.summary, json.dumps(activity.metadata, default=str),
                 to_iso(activity.created_at)),
            )
            activity.id = cur.lastrowid
        return activity

    def list_activities(self, limit=50, type=None, member_id=None) -> List[Activity]:
        conditions, params = [], []
        if type:
            conditions.append("type = ?")
            params.append(type)
        if member_id:
            conditions.append("member_id = ?")
            params.append(member_id)
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM activities {where} ORDER BY id DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [_row_to_activity(r) for r in rows]


# ==========================================
# IN-MEMORY
# ==========================================

class InMemoryStore(ConvictionStore):
    """Dict-backed store. One lock serialises every primitive."""

    def __init__(self):
        self._lock = threading.RLock()
        self.members: Dict[str, Member] = {}
        self.proposals: Dict[str, Proposal] = {}
        self.votes: Dict[str, VoteRecord] = {}
        self.activities: List[Activity] = []

    # ------ members ------

    def add_member(self, member: Member) -> Member:
        with self._lock:
            if any(m.name == member.name for m in self.members.values()):
                raise InvalidState(f"Member name '{member.name}' already taken.")
            self.members[member.id] = replace(member)
        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        with self._lock:
            m = self.members.get(member_id)
            return replace(m) if m else None

    def list_members(self) -> List[Member]:
        with self._lock:
            return [replace(m) for m in self.members.values()]

    def adjust_member_weight(self, member_id: str, points: float) -> Optional[float]:
        with self._lock:
            m = self.members.get(member_id)
            if not m:
                return None
            m.weight_score = max(0.0, min(MAX_WEIGHT_SCORE, m.weight_score + points))
            return m.weight_score

    def reward_author(self, member_id: str, bonus: float) -> bool:
        with self._lock:
            m = self.members.get(member_id)
            if not m:
                return False
            m.weight_score = min(MAX_WEIGHT_SCORE, m.weight_score + bonus)
            m.proposals_passed += 1
            return True

    # ------ proposals ------

    def add_proposal(self, proposal: Proposal) -> Proposal:
        with self._lock:
            author = self.members.get(proposal.author_id)
            if not author:
                raise NotFound(f"Member {proposal.author_id} not found")
            author.proposals_created += 1
            self.proposals[proposal.id] = replace(proposal)
        return proposal

    def get_proposal(self, proposal_id: str) -> Optional[Proposal]:
        with self._lock:
            p = self.proposals.get(proposal_id)
            return replace(p) if p else None

    def list_proposals(self, status: Optional[ProposalStatus] = None) -> List[Proposal]:
        with self._lock:
            return [replace(p) for p in self.proposals.values()
                    if status is None or p.status == status]

    def top_by_conviction(self, limit: int = 10) -> List[Proposal]:
        with self._lock:
            ranked = sorted(self.proposals.values(),
                            key=lambda p: (-p.conviction_score, p.id))
            return [replace(p) for p in ranked[:limit]]

    def transition_proposal(self, proposal_id, from_status, to_status, at) -> bool:
        with self._lock:
            p = self.proposals.get(proposal_id)
            if not p or p.status != from_status:
                return False
            p.status = to_status
            if to_status == ProposalStatus.VOTING:
                p.voting_started_at = at
            elif to_status == ProposalStatus.APPROVED:
                p.approved_at = at
            return True

    def set_conviction_score(self, proposal_id: str, score: float) -> bool:
        with self._lock:
            p = self.proposals.get(proposal_id)
            if not p or p.status != ProposalStatus.VOTING:
                return False
            p.conviction_score = score
            return True

    # ------ votes ------

    def get_active_vote(self, member_id: str, proposal_id: str) -> Optional[VoteRecord]:
        with self._lock:
            for v in self.votes.values():
                if v.active and v.member_id == member_id and v.proposal_id == proposal_id:
                    return replace(v)
        return None

    def insert_vote(self, vote: VoteRecord) -> VoteRecord:
        with self._lock:
            p = self.proposals.get(vote.proposal_id)
            if not p:
                raise NotFound(f"Proposal {vote.proposal_id} not found")
            if p.status != ProposalStatus.VOTING:
                raise InvalidState(f"Proposal {vote.proposal_id} is not in voting phase")
            if vote.member_id not in self.members:
                raise NotFound(f"Member {vote.member_id} not found")
            if self.get_active_vote(vote.member_id, vote.proposal_id):
                raise AlreadyVoted(
                    f"Member {vote.member_id} already has an active vote on {vote.proposal_id}"
                )
            self.votes[vote.id] = replace(vote)
            p.voter_count += 1
        return vote

    def deactivate_vote(self, vote: VoteRecord, conviction: float, at) -> bool:
        with self._lock:
            stored = self.votes.get(vote.id)
            if (not stored or not stored.active
                    or stored.last_conviction_update != vote.last_conviction_update):
                return False
            stored.conviction = conviction
            stored.last_conviction_update = at
            stored.active = False
            stored.withdrawn_at = at
            p = self.proposals.get(vote.proposal_id)
            if p:
                p.voter_count = max(0, p.voter_count - 1)
            return True

    def snapshot_active_votes(self) -> List[VoteRecord]:
        with self._lock:
            return [replace(v) for v in sorted(self.votes.values(), key=lambda v: v.id)
                    if v.active]

    def apply_conviction_updates(self, updates: List[ConvictionUpdate]) -> List[str]:
        applied = []
        with self._lock:
            for u in updates:
                stored = self.votes.get(u.vote_id)
                if (stored and stored.active
                        and stored.last_conviction_update == u.expected_last_update):
                    stored.conviction = u.conviction
                    stored.last_conviction_update = u.updated_at
                    applied.append(u.vote_id)
        return applied

    def list_votes_for_proposal(self, proposal_id: str) -> List[VoteRecord]:
        with self._lock:
            votes = [replace(v) for v in self.votes.values() if v.proposal_id == proposal_id]
        return sorted(votes, key=lambda v: (v.staked_at, v.id))

    def count_active_votes(self) -> int:
        with self._lock:
            return sum(1 for v in self.votes.values() if v.active)

    # ------ activity feed ------

    def insert_activity(self, activity: Activity) -> Activity:
        with self._lock:
            activity.id = len(self.activities) + 1
            self.activities.append(replace(activity))
        return activity

    def list_activities(self, limit=50, type=None, member_id=None) -> List[Activity]:
        with self._lock:
            matching = [a for a in reversed(self.activities)
                        if (not type or a.type == type)
                        and (not member_id or a.member_id == member_id)]
        return [replace(a) for a in matching[:limit]]
