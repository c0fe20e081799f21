import json
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from vote_gateway.anchor import FileAnchor
from vote_gateway.audit_log import TamperEvidentAuditLog
from vote_gateway.auth import ENV_API_KEYS_FILE, ENV_API_KEYS_JSON
from vote_gateway.config import EngineConfig
from vote_gateway.crypto import Ed25519KeyPair, _now_utc
from vote_gateway.engine import VoteEngine
from vote_gateway.models import Poll, VotingMode
from vote_gateway.ops_stats import OPS_STATS
from vote_gateway.server import create_app

JUDGE = "judge@example.org"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (ENV_API_KEYS_JSON, ENV_API_KEYS_FILE, "VOTE_STATS_REQUIRE_AUTH", "VOTE_STATS_TOKEN", "VOTE_METRICS_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    OPS_STATS.reset()


@pytest.fixture
def open_poll(directory):
    """A poll whose window is open right now, with credentials per target."""

    def _seed(poll_id="live", mode=VotingMode.SINGLE, **kw):
        now = _now_utc()
        poll = Poll(poll_id=poll_id, start=now - timedelta(hours=1), end=now + timedelta(hours=1), voting_mode=mode, **kw)
        directory.save_poll(poll)
        for t in ("A", "B", "C"):
            directory.add_target(poll_id, t, f"Team {t}")
        directory.add_evaluator(poll_id, JUDGE)
        return {t: directory.issue_credential(poll_id, t) for t in ("A", "B", "C")}

    return _seed


@pytest.fixture
def audit_key():
    return Ed25519KeyPair.generate("audit-http")


@pytest.fixture
def engine(directory, ledger, tmp_path, audit_key):
    return VoteEngine(
        directory=directory,
        ledger=ledger,
        anchor=FileAnchor(str(tmp_path / "anchors.jsonl"), "https://explorer.example/tx"),
        audit=TamperEvidentAuditLog(str(tmp_path / "audit.jsonl"), audit_key),
    )


def _client(engine, **config_kw) -> TestClient:
    return TestClient(create_app(engine=engine, config=EngineConfig(**config_kw)))


def test_submit_then_resubmit(engine, open_poll):
    tokens = open_poll()
    client = _client(engine)

    r = client.post("/v1/vote/submit", json={"identityToken": tokens["A"], "targetId": "B"})
    assert r.status_code == 200
    body = r.json()
    assert body["isUpdate"] is False
    assert body["anchorRef"].startswith("0x")
    assert body["explorerUrl"] == f"https://explorer.example/tx/{body['anchorRef']}"

    again = client.post("/v1/vote/submit", json={"identityToken": tokens["A"], "targetId": "C"})
    assert again.status_code == 200
    assert again.json()["alreadyDecided"] is True
    assert again.json()["decisionId"] == body["decisionId"]
    assert again.json()["existingDecision"]["targetId"] == "B"


def test_ranked_submit_over_http(engine, open_poll):
    tokens = open_poll(mode=VotingMode.RANKED)
    client = _client(engine)

    r = client.post(
        "/v1/vote/submit",
        json={"identityToken": tokens["A"], "rankings": [{"targetId": "B", "rank": 1}, {"targetId": "C", "rank": 2}]},
    )
    assert r.status_code == 200

    res = client.get("/v1/results/live")
    assert res.status_code == 200
    results = {row["targetId"]: row for row in res.json()["results"]}
    assert results["B"]["score"] == 3.0
    assert results["B"]["rankHistogram"] == {"1": 1}


def test_error_envelope_for_rejection(engine, open_poll):
    tokens = open_poll()
    client = _client(engine)

    r = client.post("/v1/vote/submit", json={"identityToken": tokens["A"], "targetId": "A"})
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "VOTE_E_SELF_INTEREST"
    assert body["retryable"] is False
    assert body["http_status"] == 400
    assert body["details"]["reason"] == "self-interest"


def test_malformed_body_uses_error_envelope(engine, open_poll):
    tokens = open_poll()
    client = _client(engine)

    r = client.post(
        "/v1/vote/submit",
        json={"identityToken": tokens["A"], "rankings": [{"targetId": "B", "rank": "first"}]},
    )
    assert r.status_code == 400
    body = r.json()
    assert body["code"] == "VOTE_E_BAD_REQUEST"
    assert body["retryable"] is False
    assert body["http_status"] == 400
    assert any(f["loc"].endswith("rank") for f in body["details"]["fields"])


def test_missing_selector_and_unknown_poll(engine, open_poll):
    open_poll()
    client = _client(engine)

    r = client.post("/v1/vote/submit", json={"pollId": "live", "targetId": "B"})
    assert r.status_code == 400
    assert r.json()["code"] == "VOTE_E_MISSING_IDENTITY_SELECTOR"

    r = client.post("/v1/vote/submit", json={"pollId": "ghost", "evaluatorEmail": JUDGE, "targetId": "B"})
    assert r.status_code == 404
    assert r.json()["code"] == "VOTE_E_POLL_NOT_FOUND"

    r = client.get("/v1/results/ghost")
    assert r.status_code == 404


def test_validate_endpoint(engine, open_poll):
    tokens = open_poll()
    client = _client(engine)

    r = client.post("/v1/vote/validate", json={"identityToken": tokens["B"]})
    assert r.status_code == 200
    body = r.json()
    assert body["constituency"] == "participant"
    assert [t["targetId"] for t in body["availableTargets"]] == ["A", "C"]

    r = client.post("/v1/vote/validate", json={"evaluatorEmail": JUDGE, "pollId": "live"})
    assert r.status_code == 200
    assert r.json()["constituency"] == "evaluator"

    r = client.post("/v1/vote/validate", json={"evaluatorEmail": JUDGE})
    assert r.status_code == 400
    assert r.json()["code"] == "VOTE_E_BAD_REQUEST"

    r = client.post("/v1/vote/validate", json={})
    assert r.json()["code"] == "VOTE_E_MISSING_IDENTITY_SELECTOR"

    r = client.post("/v1/vote/validate", json={"identityToken": "bogus"})
    assert r.status_code == 401
    assert r.json()["code"] == "VOTE_E_INVALID_CREDENTIAL"


def test_api_key_gate(engine, open_poll, monkeypatch):
    tokens = open_poll()
    monkeypatch.setenv(ENV_API_KEYS_JSON, json.dumps({"k1": "frontend"}))
    client = _client(engine)

    r = client.post("/v1/vote/submit", json={"identityToken": tokens["A"], "targetId": "B"})
    assert r.status_code == 401
    assert r.json()["code"] == "VOTE_E_AUTH_REQUIRED"
    assert r.json()["details"]["reason"] == "API_KEY_REQUIRED"

    r = client.get("/v1/results/live", headers={"X-Api-Key": "wrong"})
    assert r.status_code == 401
    assert r.json()["details"]["reason"] == "API_KEY_INVALID"

    r = client.post(
        "/v1/vote/submit",
        json={"identityToken": tokens["A"], "targetId": "B"},
        headers={"X-Api-Key": "k1"},
    )
    assert r.status_code == 200


def test_request_size_limit(engine):
    client = _client(engine, max_request_bytes=64)
    r = client.post("/v1/vote/submit", json={"identityToken": "x" * 200, "targetId": "B"})
    assert r.status_code == 413
    assert r.json()["details"]["max_request_bytes"] == 64


def test_forwarded_origin_lands_in_audit_log(engine, open_poll, tmp_path, audit_key):
    tokens = open_poll()
    client = _client(engine)

    r = client.post(
        "/v1/vote/submit",
        json={"identityToken": tokens["A"], "targetId": "B"},
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )
    assert r.status_code == 200

    audit_path = tmp_path / "audit.jsonl"
    rec = json.loads(audit_path.read_text(encoding="utf-8").splitlines()[0])
    assert rec["event"]["origin"] == "203.0.113.9"
    ok, reason, _ = TamperEvidentAuditLog.verify_file(str(audit_path), {audit_key.key_id: audit_key.public_key_hex})
    assert (ok, reason) == (True, "OK")


def test_anchor_link(engine):
    client = _client(engine)
    r = client.get("/v1/anchors/0xabc")
    assert r.status_code == 200
    assert r.json() == {"anchorRef": "0xabc", "explorerUrl": "https://explorer.example/tx/0xabc"}


def test_health_and_stats(engine, open_poll):
    tokens = open_poll()
    client = _client(engine)
    client.post("/v1/vote/submit", json={"identityToken": tokens["A"], "targetId": "B"})

    health = client.get("/v1/health").json()
    assert health["status"] == "healthy"
    assert health["anchor"] == "FileAnchor"

    stats = client.get("/v1/stats")
    assert stats.status_code == 200
    snap = stats.json()
    assert snap["submissions_total"] == 1
    assert snap["lockdown_active"] is False


def test_metrics_endpoint_exposes_vote_counters(engine, open_poll):
    tokens = open_poll()
    client = _client(engine)
    client.post("/v1/vote/submit", json={"identityToken": tokens["A"], "targetId": "B"})

    r = client.get("/metrics")
    assert r.status_code == 200
    assert "vote_submissions_total" in r.text


def test_metrics_token_required_when_configured(engine, monkeypatch):
    monkeypatch.setenv("VOTE_METRICS_TOKEN", "m-secret")
    client = _client(engine)
    assert client.get("/metrics").status_code == 403
    assert client.get("/metrics", headers={"X-Metrics-Token": "m-secret"}).status_code == 200
