#!/usr/bin/env python3
"""
Vote Gateway Demo (end-to-end)

Goal: a reader can:
  - seed a poll with targets, credentials and an evaluator
  - run the gateway locally and cast decisions over HTTP
  - read the tally and verify the signed audit log offline

No external network calls. Commitments are anchored to a local JSONL file.
Standard library only for HTTP requests.

Run:
  python demo/run_demo.py

Outputs:
  demo/out/vote_demo.db
  demo/out/anchors.jsonl
  demo/out/audit.jsonl
"""
from __future__ import annotations

import atexit
import json
import os
import shutil
import signal
import subprocess
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple


ROOT = Path(__file__).resolve().parents[1]
OUT_DIR = ROOT / "demo" / "out"

GATEWAY_HOST = "127.0.0.1"
GATEWAY_PORT = int(os.getenv("VOTE_DEMO_GATEWAY_PORT", "8000"))

API_KEY = "demo-key-1"
CLIENT_ID = "demo_frontend"
JUDGE = "judge@demo.example"

# Deterministic demo audit seed (32 bytes => 64 hex chars)
# This is a DEMO-ONLY key. Do not reuse in production.
DEMO_AUDIT_SEED_HEX = "2f" * 32
DEMO_AUDIT_KEY_ID = "demo_audit_k1"


def _http_json(
    method: str,
    url: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    headers: Optional[Dict[str, str]] = None,
    timeout: float = 5.0,
) -> Tuple[int, Dict[str, Any]]:
    data = None
    hdrs = {"Content-Type": "application/json"}
    if headers:
        hdrs.update(headers)
    if payload is not None:
        data = json.dumps(payload).encode("utf-8")
    req = urllib.request.Request(url, data=data, headers=hdrs, method=method)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8", errors="replace")
            return resp.status, (json.loads(raw) if raw else {})
    except urllib.error.HTTPError as e:
        raw = e.read().decode("utf-8", errors="replace")
        try:
            obj = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            obj = {"error": raw[:500]}
        return e.code, obj


def _wait_for_health(base_url: str, timeout_seconds: float = 10.0) -> None:
    deadline = time.time() + timeout_seconds
    last_err = ""
    while time.time() < deadline:
        try:
            code, obj = _http_json("GET", f"{base_url}/v1/health", None, timeout=1.0)
            if code == 200 and obj.get("status") == "healthy":
                return
            last_err = f"health={code} {obj}"
        except (urllib.error.URLError, OSError) as e:
            last_err = str(e)
        time.sleep(0.2)
    raise RuntimeError(f"Gateway not healthy: {last_err}")


def _terminate(p: subprocess.Popen) -> None:
    if p.poll() is not None:
        return
    p.send_signal(signal.SIGINT)
    try:
        p.wait(timeout=2.0)
    except subprocess.TimeoutExpired:
        p.kill()
        p.wait(timeout=2.0)


def _poll_document() -> Dict[str, Any]:
    now = datetime.now(timezone.utc).replace(microsecond=0)
    return {
        "pollId": "demo-day",
        "name": "Demo Day",
        "startTime": (now - timedelta(minutes=5)).isoformat(),
        "endTime": (now + timedelta(hours=1)).isoformat(),
        "votingMode": "ranked",
        "participantWeight": 1.0,
        "evaluatorWeight": 2.0,
        "targets": [
            {"targetId": "team-a", "name": "Team A"},
            {"targetId": "team-b", "name": "Team B"},
            {"targetId": "team-c", "name": "Team C"},
        ],
        "evaluators": [JUDGE],
        "credentials": [{"targetId": "team-a"}, {"targetId": "team-b"}, {"targetId": "team-c"}],
    }


def _seed(db_path: Path) -> Dict[str, str]:
    sys.path.insert(0, str(ROOT))
    from vote_gateway.directory import SqlitePollDirectory
    from vote_gateway.storage import VoteDatabase

    _, issued = SqlitePollDirectory(VoteDatabase(str(db_path))).load_poll_document(_poll_document())
    return {target: token for token, target in issued.items()}


def main() -> int:
    # Clean output dir for determinism
    if OUT_DIR.exists():
        shutil.rmtree(OUT_DIR)
    OUT_DIR.mkdir(parents=True, exist_ok=True)

    db_path = OUT_DIR / "vote_demo.db"
    tokens = _seed(db_path)
    base_url = f"http://{GATEWAY_HOST}:{GATEWAY_PORT}"

    gw_env = os.environ.copy()
    gw_env["VOTE_DB_PATH"] = str(db_path)
    gw_env["VOTE_ANCHOR_MODE"] = "file"
    gw_env["VOTE_ANCHOR_FILE"] = str(OUT_DIR / "anchors.jsonl")
    gw_env["VOTE_AUDIT_LOG_PATH"] = str(OUT_DIR / "audit.jsonl")
    gw_env["VOTE_AUDIT_KEY_ID"] = DEMO_AUDIT_KEY_ID
    gw_env["VOTE_AUDIT_SIGNING_KEY"] = DEMO_AUDIT_SEED_HEX
    gw_env["VOTE_API_KEYS_JSON"] = json.dumps({API_KEY: CLIENT_ID})

    gw_proc = subprocess.Popen(
        [sys.executable, "-m", "vote_gateway.server", "--host", GATEWAY_HOST, "--port", str(GATEWAY_PORT)],
        cwd=str(ROOT),
        env=gw_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )
    atexit.register(_terminate, gw_proc)
    _wait_for_health(base_url)

    headers = {"X-Api-Key": API_KEY}
    ballots = [
        {"identityToken": tokens["team-a"], "rankings": [{"targetId": "team-b", "rank": 1}, {"targetId": "team-c", "rank": 2}]},
        {"identityToken": tokens["team-b"], "rankings": [{"targetId": "team-c", "rank": 1}, {"targetId": "team-a", "rank": 2}]},
        {"identityToken": tokens["team-c"], "rankings": [{"targetId": "team-b", "rank": 1}]},
        {
            "pollId": "demo-day",
            "evaluatorEmail": JUDGE,
            "rankings": [
                {"targetId": "team-c", "rank": 1, "justification": "Best live demo"},
                {"targetId": "team-b", "rank": 2},
            ],
        },
    ]
    for ballot in ballots:
        code, resp = _http_json("POST", f"{base_url}/v1/vote/submit", ballot, headers=headers)
        if code != 200:
            raise RuntimeError(f"Submit failed: HTTP {code} {resp}")
        print(f"recorded decision {resp['decisionId']} anchor={resp['anchorRef']}")

    # A second submission with the same credential returns the existing decision.
    code, resp = _http_json("POST", f"{base_url}/v1/vote/submit", ballots[0], headers=headers)
    if code != 200 or not resp.get("alreadyDecided"):
        raise RuntimeError(f"Expected alreadyDecided on resubmission, got HTTP {code} {resp}")
    print(f"resubmission returned existing decision {resp['decisionId']}")

    code, results = _http_json("GET", f"{base_url}/v1/results/demo-day", headers=headers)
    if code != 200:
        raise RuntimeError(f"Results failed: HTTP {code} {results}")

    print("\nResults:")
    for row in results["results"]:
        print(f"  {row['targetId']:<8} score={row['score']:<6g} histogram={row.get('rankHistogram', {})}")
    for group in results["ties"]:
        print(f"  tie: {', '.join(group)}")

    from vote_gateway.crypto import Ed25519KeyPair

    demo_key = Ed25519KeyPair.from_seed(bytes.fromhex(DEMO_AUDIT_SEED_HEX), key_id=DEMO_AUDIT_KEY_ID)
    print("\nVerify the audit log offline:")
    print(f"  python vote_cli.py verify-audit demo/out/audit.jsonl --key {DEMO_AUDIT_KEY_ID}={demo_key.public_key_hex}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
