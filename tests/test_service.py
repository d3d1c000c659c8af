"""
Tests for conviction_service.py

Run with:  pytest tests/test_service.py -v
"""

import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# Point the service at a temp DB and keep the background sweep off
_tmp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
os.environ["CONVICTION_DB"] = _tmp_db.name
os.environ["CONVICTION_CORS_ORIGINS"] = "http://localhost:3000"
os.environ["CONVICTION_SCHEDULER_ENABLED"] = "false"

from conviction_service import app, init_db, scheduler

init_db()
client = TestClient(app, raise_server_exceptions=True)


# ==========================================
# Helpers
# ==========================================

def member(name: str, weight_score: float = 0) -> dict:
    r = client.post("/members", json={"name": name, "weight_score": weight_score})
    assert r.status_code == 201, r.text
    return r.json()


def proposal(author_id: str, title: str = "Repair the bridge", voting: bool = True) -> dict:
    r = client.post("/proposals", json={"author_id": author_id, "title": title})
    assert r.status_code == 201, r.text
    p = r.json()
    if voting:
        assert client.post(f"/proposals/{p['id']}/submit").status_code == 200
        r = client.post(f"/proposals/{p['id']}/start-voting")
        assert r.status_code == 200, r.text
        p = r.json()
    return p


# ==========================================
# Service basics
# ==========================================

class TestBasics:
    def test_root(self):
        r = client.get("/")
        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "operational"
        assert body["scheduler"]["status"] == "stopped"

    def test_health(self):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_metrics(self):
        client.get("/")
        r = client.get("/metrics")
        assert r.status_code == 200
        assert "conviction_requests_total" in r.text

    def test_scheduler_not_started_when_disabled(self):
        assert not scheduler.running


# ==========================================
# Members
# ==========================================

class TestMembers:
    def test_register(self):
        m = member("Ada", 250)
        assert m["weight_score"] == 250
        assert m["proposals_passed"] == 0

    def test_duplicate_name_conflict(self):
        member("Dup")
        r = client.post("/members", json={"name": "Dup"})
        assert r.status_code == 409

    def test_name_sanitized(self):
        m = member("<b>Grace</b>")
        assert m["name"] == "Grace"

    def test_weight_out_of_range(self):
        r = client.post("/members", json={"name": "TooHeavy", "weight_score": 1500})
        assert r.status_code == 422

    def test_adjust_weight_clamped(self):
        m = member("Clampy", 900)
        r = client.post(f"/members/{m['id']}/weight", json={"points": 500})
        assert r.status_code == 200
        assert r.json()["weight_score"] == 1000

    def test_adjust_unknown_member(self):
        r = client.post("/members/nobody/weight", json={"points": 5})
        assert r.status_code == 404

    def test_leaderboard(self):
        member("Board", 999)
        r = client.get("/members/leaderboard?limit=50")
        assert r.status_code == 200
        scores = [m["weight_score"] for m in r.json()["members"]]
        assert scores == sorted(scores, reverse=True)

    def test_get_member(self):
        m = member("Lookup")
        assert client.get(f"/members/{m['id']}").json()["name"] == "Lookup"
        assert client.get("/members/missing").status_code == 404


# ==========================================
# Proposals
# ==========================================

class TestProposals:
    def test_lifecycle(self):
        author = member("Author1")
        p = proposal(author["id"], voting=False)
        assert p["status"] == "draft"
        p = client.post(f"/proposals/{p['id']}/submit").json()
        assert p["status"] == "discussion"
        p = client.post(f"/proposals/{p['id']}/start-voting").json()
        assert p["status"] == "voting"
        assert p["voting_started_at"] is not None

    def test_wrong_source_state_conflict(self):
        author = member("Author2")
        p = proposal(author["id"], voting=False)
        r = client.post(f"/proposals/{p['id']}/start-voting")
        assert r.status_code == 409
        assert r.json()["error"] == "InvalidState"

    def test_unknown_author(self):
        r = client.post("/proposals", json={"author_id": "ghost", "title": "Haunted"})
        assert r.status_code == 404

    def test_blank_title_rejected(self):
        author = member("Author3")
        r = client.post("/proposals", json={"author_id": author["id"], "title": "<i></i>"})
        assert r.status_code == 422

    def test_list_by_status(self):
        author = member("Author4")
        p = proposal(author["id"], title="Listed")
        r = client.get("/proposals?status=voting")
        assert r.status_code == 200
        assert p["id"] in [x["id"] for x in r.json()["proposals"]]

    def test_list_invalid_status(self):
        assert client.get("/proposals?status=limbo").status_code == 422

    def test_get_missing(self):
        assert client.get("/proposals/missing").status_code == 404

    def test_top(self):
        r = client.get("/proposals/top?limit=3")
        assert r.status_code == 200
        assert len(r.json()["proposals"]) <= 3


# ==========================================
# Votes
# ==========================================

class TestVotes:
    @pytest.fixture(autouse=True)
    def setup(self, request):
        suffix = request.node.name
        self.a = member(f"A-{suffix}", 300)
        self.b = member(f"B-{suffix}", 400)
        self.p = proposal(self.a["id"], title=f"Vote on {suffix}")

    def test_cast(self):
        r = client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.a["id"]})
        assert r.status_code == 201
        body = r.json()
        assert body["weight"] == 3.0
        assert body["conviction"] == 3.0
        assert body["active"] is True
        assert client.get(f"/proposals/{self.p['id']}").json()["voter_count"] == 1

    def test_double_cast_conflict(self):
        client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.a["id"]})
        r = client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.a["id"]})
        assert r.status_code == 409
        assert r.json()["error"] == "AlreadyVoted"

    def test_cast_on_draft_conflict(self):
        draft = proposal(self.a["id"], title="Draft only", voting=False)
        r = client.post(f"/proposals/{draft['id']}/votes", json={"member_id": self.a["id"]})
        assert r.status_code == 409

    def test_cast_unknown_proposal(self):
        r = client.post("/proposals/missing/votes", json={"member_id": self.a["id"]})
        assert r.status_code == 404

    def test_withdraw(self):
        client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.b["id"]})
        r = client.delete(f"/proposals/{self.p['id']}/votes/{self.b['id']}")
        assert r.status_code == 200
        assert r.json()["active"] is False
        assert r.json()["withdrawn_at"] is not None
        assert client.get(f"/proposals/{self.p['id']}").json()["voter_count"] == 0

    def test_withdraw_without_vote(self):
        r = client.delete(f"/proposals/{self.p['id']}/votes/{self.b['id']}")
        assert r.status_code == 404
        assert r.json()["error"] == "NoActiveVote"

    def test_list_votes_with_live_conviction(self):
        client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.a["id"]})
        r = client.get(f"/proposals/{self.p['id']}/votes")
        assert r.status_code == 200
        votes = r.json()["votes"]
        assert len(votes) == 1
        assert votes[0]["member_name"] == self.a["name"]
        assert votes[0]["live_conviction"] >= votes[0]["conviction"]

    def test_sweep_updates_aggregate(self):
        client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.a["id"]})
        client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.b["id"]})
        r = client.post("/sweep")
        assert r.status_code == 200
        body = r.json()
        assert self.p["id"] in body["sweep"]["proposals"]
        score = client.get(f"/proposals/{self.p['id']}").json()["conviction_score"]
        # each sweep with elapsed time adds one weight unit per stake
        assert score == pytest.approx(2 * (3.0 + 4.0), rel=1e-3)

    def test_activities_feed(self):
        client.post(f"/proposals/{self.p['id']}/votes", json={"member_id": self.a["id"]})
        r = client.get(f"/activities?type=vote_cast&member_id={self.a['id']}")
        assert r.status_code == 200
        items = r.json()["activities"]
        assert len(items) == 1
        assert items[0]["metadata"] == {"weight": 3.0}


# ==========================================
# Evaluation and stats
# ==========================================

class TestEvaluation:
    def test_evaluate_below_threshold(self):
        heavy = member("Heavy", 800)
        p = proposal(heavy["id"], title="Not yet")
        r = client.post(f"/proposals/{p['id']}/evaluate")
        assert r.status_code == 200
        assert r.json()["promoted"] is False
        assert r.json()["proposal"]["status"] == "voting"

    def test_evaluate_draft_conflict(self):
        author = member("EvalDraft")
        p = proposal(author["id"], voting=False)
        assert client.post(f"/proposals/{p['id']}/evaluate").status_code == 409

    def test_evaluate_missing(self):
        assert client.post("/proposals/missing/evaluate").status_code == 404

    def test_stats(self):
        member("StatsMember", 100)
        r = client.get("/stats")
        assert r.status_code == 200
        body = r.json()
        assert body["passing_threshold"] == "10%"
        assert body["threshold"] == pytest.approx(body["total_weight"] * 0.10)
        assert body["active_votes"] >= 0
