#!/usr/bin/env python3
"""
Vote Gateway - Command Line Interface

Usage:
    vote serve [--host H] [--port P]          Run the HTTP gateway
    vote load-poll <poll.json>                Seed a poll, its targets, evaluators and credentials
    vote tally <poll_id> [--json]             Tally the current decisions of a poll
    vote pending-anchors <poll_id>            List decisions whose commitment is not anchored yet
    vote verify-audit <log> --key ID=HEX      Verify a signed audit log
    vote keygen [--key-id ID]                 Generate an audit signing key
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

from vote_gateway.audit_log import TamperEvidentAuditLog
from vote_gateway.crypto import Ed25519KeyPair
from vote_gateway.directory import SqlitePollDirectory
from vote_gateway.engine import VoteEngine
from vote_gateway.errors import VoteError
from vote_gateway.ledger import DecisionLedger
from vote_gateway.storage import VoteDatabase

logger = logging.getLogger("vote_gateway")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(level)


def _engine(db_path: str) -> VoteEngine:
    db = VoteDatabase(db_path)
    return VoteEngine(directory=SqlitePollDirectory(db), ledger=DecisionLedger(db))


def _parse_keys(pairs: List[str]) -> Dict[str, str]:
    keys: Dict[str, str] = {}
    for pair in pairs:
        key_id, sep, pub_hex = pair.partition("=")
        if not sep or not key_id or not pub_hex:
            raise SystemExit(f"--key expects KEY_ID=PUBLIC_KEY_HEX, got {pair!r}")
        keys[key_id.strip()] = pub_hex.strip()
    return keys


def cmd_serve(args) -> int:
    from vote_gateway.server import serve

    os.environ["VOTE_DB_PATH"] = args.db
    return serve(args.host, args.port)


def cmd_load_poll(args) -> int:
    """Seed a poll from a JSON document and print the issued credentials."""
    path = Path(args.poll_file)
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        print(f"ERROR: cannot read poll document {path}: {e}", file=sys.stderr)
        return 2

    directory = SqlitePollDirectory(VoteDatabase(args.db))
    try:
        poll, issued = directory.load_poll_document(doc)
    except (KeyError, ValueError) as e:
        print(f"ERROR: invalid poll document: {e}", file=sys.stderr)
        return 2

    logger.info("Loaded poll %s into %s", poll.poll_id, args.db)
    print(json.dumps(
        {
            "pollId": poll.poll_id,
            "targets": len(doc.get("targets", [])),
            "evaluators": len(doc.get("evaluators", [])),
            "credentials": [{"token": t, "targetId": target} for t, target in issued.items()],
        },
        indent=2,
    ))
    return 0


def cmd_tally(args) -> int:
    engine = _engine(args.db)
    try:
        result = engine.results(args.poll_id)
    except VoteError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    print(f"\n{'='*60}")
    print(f"RESULTS  poll={result.poll_id}  mode={result.voting_mode.value}")
    print(f"{'='*60}")
    print(f"Decisions: {result.total_decisions}")
    for position, r in enumerate(result.results, start=1):
        print(
            f"  {position:>3}. {r.target_id:<24} score={r.score:<10g} "
            f"participants={r.participant_count} evaluators={r.evaluator_count}"
        )
    for group in result.ties:
        print(f"  tie: {', '.join(group)}")
    print(f"{'='*60}\n")
    return 0


def cmd_pending_anchors(args) -> int:
    engine = _engine(args.db)
    pending = engine.pending_anchors(args.poll_id)
    for d in pending:
        print(json.dumps({
            "decisionId": d.decision_id,
            "constituency": d.constituency.value,
            "commitment": d.commitment,
            "updatedAt": d.updated_at.isoformat(),
        }))
    logger.info("%d decision(s) pending anchoring for poll %s", len(pending), args.poll_id)
    return 0


def cmd_verify_audit(args) -> int:
    """Verify hash chain and signatures of an audit log."""
    keys = _parse_keys(args.key or [])
    ok, reason, count = TamperEvidentAuditLog.verify_file(args.log, keys)
    if ok:
        print(f"✓ Audit log verified: {count} record(s) ({reason})")
        return 0
    print(f"✗ Audit log verification FAILED at record {count}: {reason}")
    return 1


def cmd_keygen(args) -> int:
    kp = Ed25519KeyPair.generate(args.key_id)
    print(json.dumps(
        {
            "key_id": kp.key_id,
            "seed_hex": kp.private_key_bytes.hex(),
            "public_key_hex": kp.public_key_hex,
        },
        indent=2,
    ))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Vote Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--db",
        default=os.getenv("VOTE_DB_PATH", "vote_gateway.db"),
        help="Path to the SQLite database (default: $VOTE_DB_PATH or vote_gateway.db)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP gateway")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind")
    serve_parser.set_defaults(func=cmd_serve)

    load_parser = subparsers.add_parser("load-poll", help="Seed a poll from a JSON document")
    load_parser.add_argument("poll_file", help="Path to poll JSON document")
    load_parser.set_defaults(func=cmd_load_poll)

    tally_parser = subparsers.add_parser("tally", help="Tally a poll")
    tally_parser.add_argument("poll_id")
    tally_parser.add_argument("--json", action="store_true", help="Print the tally as JSON")
    tally_parser.set_defaults(func=cmd_tally)

    pending_parser = subparsers.add_parser("pending-anchors", help="List decisions not anchored yet")
    pending_parser.add_argument("poll_id")
    pending_parser.set_defaults(func=cmd_pending_anchors)

    verify_parser = subparsers.add_parser("verify-audit", help="Verify a signed audit log")
    verify_parser.add_argument("log", help="Path to the audit JSONL file")
    verify_parser.add_argument("--key", action="append", help="Trusted key as KEY_ID=PUBLIC_KEY_HEX (repeatable)")
    verify_parser.set_defaults(func=cmd_verify_audit)

    keygen_parser = subparsers.add_parser("keygen", help="Generate an audit signing key")
    keygen_parser.add_argument("--key-id", default="vote_gateway", help="Key identifier")
    keygen_parser.set_defaults(func=cmd_keygen)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
