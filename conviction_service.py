#!/usr/bin/env python3
"""
Conviction Voting Service v1.0
==============================
HTTP surface for the conviction voting engine.

Members stake continuous support behind proposals. Support grows the longer
it stays in place; a proposal is promoted automatically once its conviction
reaches a fixed fraction of the total member weight.

  - Vote lifecycle: cast / withdraw with lazy conviction catch-up
  - Background sweep + threshold check (owned by app startup/shutdown)
  - Proposal lifecycle hooks (draft -> discussion -> voting)
  - Rate limiting (slowapi)
  - Structured logging (structlog)
  - Prometheus /metrics endpoint
"""

import os
import re
import time
from typing import List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

from conviction_engine import ConvictionEngine
from conviction_models import (
    Activity,
    AlreadyVoted,
    ConvictionError,
    EvaluationResult,
    InvalidState,
    Member,
    NoActiveVote,
    NotFound,
    Proposal,
    ProposalStatus,
    SweepResult,
    VoteRecord,
    to_iso,
    utcnow,
)
from conviction_scheduler import SweepScheduler
from conviction_store import SqliteStore

# ============================================
# Configuration
# ============================================
DB_PATH = os.environ.get("CONVICTION_DB", "conviction.db")
API_VERSION = "1.0.0"
MAX_LIST_RESULTS = 100
SCHEDULER_ENABLED = os.environ.get("CONVICTION_SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")

# CORS: comma-separated list of allowed origins, or "*" for open (dev only)
_CORS_RAW = os.environ.get("CONVICTION_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000")
ALLOWED_ORIGINS: List[str] = (
    ["*"] if _CORS_RAW == "*"
    else [o.strip() for o in _CORS_RAW.split(",") if o.strip()]
)

# ============================================
# Logging
# ============================================
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(),
    ]
)
log = structlog.get_logger()

# ============================================
# Prometheus Metrics
# ============================================
REQUEST_COUNT = Counter("conviction_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram("conviction_request_duration_seconds", "Request latency", ["endpoint"])
ACTIVE_VOTES_GAUGE = Gauge("conviction_active_votes", "Active vote records")
MEMBER_COUNT_GAUGE = Gauge("conviction_members_total", "Total members registered")

# ============================================
# Input Sanitization
# ============================================
# Strip HTML tags and null bytes from free-text fields
_HTML_RE = re.compile(r"<[^>]+>")
_NULL_RE = re.compile(r"\x00")

def sanitize(text: str) -> str:
    text = _NULL_RE.sub("", text)
    text = _HTML_RE.sub("", text)
    return text.strip()

# ============================================
# Engine wiring
# ============================================
store = SqliteStore(DB_PATH)
engine = ConvictionEngine(store)
scheduler = SweepScheduler(engine)

def init_db():
    store.init_db()

# ============================================
# Rate Limiter
# ============================================
limiter = Limiter(key_func=get_remote_address)

# ============================================
# Models
# ============================================
class MemberRegister(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    weight_score: float = Field(0.0, ge=0.0, le=1000.0)

    @field_validator("name")
    @classmethod
    def clean_name(cls, v):
        v = sanitize(v)
        if not v:
            raise ValueError("name must not be empty")
        return v

class WeightAdjust(BaseModel):
    points: float = Field(..., ge=-1000.0, le=1000.0)

class ProposalCreate(BaseModel):
    author_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=200)
    tagline: str = Field("", max_length=500)

    @field_validator("title")
    @classmethod
    def clean_title(cls, v):
        v = sanitize(v)
        if not v:
            raise ValueError("title must not be empty")
        return v

    @field_validator("tagline")
    @classmethod
    def clean_tagline(cls, v):
        return sanitize(v)

class VoteCast(BaseModel):
    member_id: str = Field(..., min_length=1, max_length=64)

# ============================================
# Serialization
# ============================================
def member_out(m: Member) -> dict:
    return {
        "id": m.id,
        "name": m.name,
        "weight_score": m.weight_score,
        "proposals_created": m.proposals_created,
        "proposals_passed": m.proposals_passed,
        "created_at": to_iso(m.created_at),
    }

def proposal_out(p: Proposal) -> dict:
    return {
        "id": p.id,
        "author_id": p.author_id,
        "title": p.title,
        "tagline": p.tagline,
        "status": p.status.value,
        "conviction_score": p.conviction_score,
        "voter_count": p.voter_count,
        "created_at": to_iso(p.created_at),
        "voting_started_at": to_iso(p.voting_started_at),
        "approved_at": to_iso(p.approved_at),
    }

def vote_out(v: VoteRecord) -> dict:
    return {
        "id": v.id,
        "member_id": v.member_id,
        "proposal_id": v.proposal_id,
        "weight": v.weight,
        "conviction": v.conviction,
        "staked_at": to_iso(v.staked_at),
        "last_conviction_update": to_iso(v.last_conviction_update),
        "active": v.active,
        "withdrawn_at": to_iso(v.withdrawn_at),
    }

def activity_out(a: Activity) -> dict:
    return {
        "id": a.id,
        "type": a.type,
        "member_id": a.member_id,
        "entity_type": a.entity_type,
        "entity_id": a.entity_id,
        "summary": a.summary,
        "metadata": a.metadata,
        "created_at": to_iso(a.created_at),
    }

def sweep_out(r: SweepResult) -> dict:
    return {"updated": r.updated, "unchanged": r.unchanged, "skipped": r.skipped,
            "failed": r.failed, "proposals": r.proposals}

def evaluation_out(r: EvaluationResult) -> dict:
    return {"threshold": r.threshold, "total_weight": r.total_weight,
            "approved": r.approved, "failed": r.failed}

# ============================================
# App
# ============================================
app = FastAPI(
    title="Conviction Voting Service",
    description="""
# Conviction Voting Service v1

**Continuous, time-weighted support for proposals.**

## Quick Start
1. `POST /members` → register a member with a weight score
2. `POST /proposals` → draft a proposal, then `/submit` and `/start-voting`
3. `POST /proposals/{id}/votes` → stake support
4. `GET /proposals/top` → see conviction grow after each sweep
5. `DELETE /proposals/{id}/votes/{member_id}` → withdraw support
""",
    version=API_VERSION,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type"],
)

_ERROR_STATUS = {
    NotFound: 404,
    NoActiveVote: 404,
    InvalidState: 409,
    AlreadyVoted: 409,
}

@app.exception_handler(ConvictionError)
async def conviction_error_handler(request: Request, exc: ConvictionError):
    status = _ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status,
                        content={"detail": str(exc), "error": type(exc).__name__})

# ============================================
# Middleware: metrics + logging
# ============================================
@app.middleware("http")
async def instrument(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    latency = time.perf_counter() - start
    endpoint = request.url.path
    REQUEST_COUNT.labels(request.method, endpoint, response.status_code).inc()
    REQUEST_LATENCY.labels(endpoint).observe(latency)
    log.info("request", method=request.method, path=endpoint,
             status=response.status_code, latency_ms=round(latency * 1000, 1))
    return response

# ============================================
# Startup / Shutdown
# ============================================
@app.on_event("startup")
async def startup():
    init_db()
    # Seed gauges
    ACTIVE_VOTES_GAUGE.set(store.count_active_votes())
    MEMBER_COUNT_GAUGE.set(len(store.list_members()))
    if SCHEDULER_ENABLED:
        scheduler.start()

@app.on_event("shutdown")
async def shutdown():
    scheduler.stop()

# ============================================
# Routes
# ============================================

@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request):
    return {
        "service": "Conviction Voting Service",
        "version": API_VERSION,
        "status": "operational",
        "scheduler": scheduler.status(),
        "docs": "/docs",
    }

@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.get("/health")
async def health():
    healthy = store.health_check()
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "degraded", "version": API_VERSION,
                 "scheduler": scheduler.status()["status"]},
    )

# --- Members ---
@app.post("/members", status_code=201)
@limiter.limit("60/minute")
async def register_member(data: MemberRegister, request: Request):
    member = engine.register_member(data.name, data.weight_score)
    MEMBER_COUNT_GAUGE.inc()
    return member_out(member)

@app.get("/members/leaderboard")
@limiter.limit("60/minute")
async def leaderboard(request: Request, limit: int = Query(20, ge=1, le=MAX_LIST_RESULTS)):
    return {"members": [member_out(m) for m in engine.leaderboard(limit)]}

@app.get("/members/{member_id}")
@limiter.limit("120/minute")
async def get_member(member_id: str, request: Request):
    return member_out(engine.get_member(member_id))

@app.post("/members/{member_id}/weight")
@limiter.limit("60/minute")
async def adjust_weight(member_id: str, data: WeightAdjust, request: Request):
    """Add (or subtract) weight points. The result is clamped to 0..1000."""
    score = engine.adjust_weight(member_id, data.points)
    return {"member_id": member_id, "weight_score": score}

# --- Proposals ---
@app.post("/proposals", status_code=201)
@limiter.limit("60/minute")
async def create_proposal(data: ProposalCreate, request: Request):
    return proposal_out(engine.create_proposal(data.author_id, data.title, data.tagline))

@app.get("/proposals")
@limiter.limit("120/minute")
async def list_proposals(request: Request, status: Optional[str] = Query(None)):
    status_filter = None
    if status:
        try:
            status_filter = ProposalStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in ProposalStatus)
            raise HTTPException(422, f"status must be one of: {valid}")
    proposals = engine.list_proposals(status_filter)
    return {"proposals": [proposal_out(p) for p in proposals], "count": len(proposals)}

@app.get("/proposals/top")
@limiter.limit("120/minute")
async def top_proposals(request: Request, limit: int = Query(10, ge=1, le=MAX_LIST_RESULTS)):
    return {"proposals": [proposal_out(p) for p in engine.top_by_conviction(limit)]}

@app.get("/proposals/{proposal_id}")
@limiter.limit("120/minute")
async def get_proposal(proposal_id: str, request: Request):
    return proposal_out(engine.get_proposal(proposal_id))

@app.post("/proposals/{proposal_id}/submit")
@limiter.limit("60/minute")
async def submit_proposal(proposal_id: str, request: Request):
    return proposal_out(engine.submit_proposal(proposal_id))

@app.post("/proposals/{proposal_id}/start-voting")
@limiter.limit("60/minute")
async def start_voting(proposal_id: str, request: Request):
    return proposal_out(engine.start_voting(proposal_id))

@app.post("/proposals/{proposal_id}/evaluate")
@limiter.limit("30/minute")
async def evaluate_proposal(proposal_id: str, request: Request):
    """Check one voting proposal against the current threshold right now."""
    promoted = engine.evaluate_proposal(proposal_id)
    return {"promoted": promoted, "threshold": engine.threshold(),
            "proposal": proposal_out(engine.get_proposal(proposal_id))}

# --- Votes ---
@app.post("/proposals/{proposal_id}/votes", status_code=201)
@limiter.limit("120/minute")
async def cast_vote(proposal_id: str, data: VoteCast, request: Request):
    vote = engine.cast(data.member_id, proposal_id)
    ACTIVE_VOTES_GAUGE.inc()
    return vote_out(vote)

@app.delete("/proposals/{proposal_id}/votes/{member_id}")
@limiter.limit("120/minute")
async def withdraw_vote(proposal_id: str, member_id: str, request: Request):
    vote = engine.withdraw(member_id, proposal_id)
    ACTIVE_VOTES_GAUGE.dec()
    return vote_out(vote)

@app.get("/proposals/{proposal_id}/votes")
@limiter.limit("120/minute")
async def proposal_votes(proposal_id: str, request: Request):
    now = utcnow()
    rows = engine.votes_for_proposal(proposal_id, now)
    return {
        "proposal_id": proposal_id,
        "as_of": to_iso(now),
        "votes": [
            {**vote_out(r["vote"]), "member_name": r["member_name"],
             "live_conviction": r["live_conviction"]}
            for r in rows
        ],
    }

# --- Sweep / stats / feed ---
@app.post("/sweep")
@limiter.limit("10/minute")
async def run_sweep(request: Request):
    """Run one sweep + threshold check now. 409 if a tick is already in progress."""
    result = scheduler.run_once()
    if result is None:
        raise HTTPException(409, "A sweep is already running.")
    ACTIVE_VOTES_GAUGE.set(store.count_active_votes())
    return {
        "ran_at": result["ran_at"],
        "duration_ms": result["duration_ms"],
        "sweep": sweep_out(result["sweep"]),
        "evaluation": evaluation_out(result["evaluation"]),
    }

@app.get("/stats")
@limiter.limit("60/minute")
async def stats(request: Request):
    return engine.stats()

@app.get("/activities")
@limiter.limit("120/minute")
async def activities(
    request: Request,
    limit: int = Query(50, ge=1, le=MAX_LIST_RESULTS),
    type: Optional[str] = Query(None),
    member_id: Optional[str] = Query(None),
):
    items = engine.list_activities(limit=limit, type=type, member_id=member_id)
    return {"activities": [activity_out(a) for a in items], "count": len(items)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"""
Conviction Voting Service v{API_VERSION}

Docs:     http://localhost:{port}/docs
Health:   http://localhost:{port}/health
Metrics:  http://localhost:{port}/metrics
""")
    uvicorn.run(app, host="0.0.0.0", port=port)
