"""
SQLite storage shared by the decision ledger and the poll directory.

Storage properties:
- WAL mode so tally reads do not block submissions
- Every connection goes through the circuit breaker (fail closed)
- decisions carries UNIQUE(poll_id, identity_key): the database, not the
  application, decides which of two concurrent submissions is the creator
"""

from __future__ import annotations

import sqlite3
import time
from contextlib import contextmanager
from typing import Iterator, Optional

from .lockdown import DbCircuitBreaker


class VoteDatabase:
    def __init__(self, db_path: str = "vote_gateway.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = db_path
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def connect(self, op_name: str = "store_op", isolation_level: Optional[str] = "") -> Iterator[sqlite3.Connection]:
        """Connection wrapper: commit on success, roll back on error.

        Operational errors count against the circuit breaker; once it trips,
        every call raises StorageLockdownError until the window passes.
        """
        self.circuit.raise_if_lockdown()
        start = time.monotonic()
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=isolation_level,
            )
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
            elapsed_ms = (time.monotonic() - start) * 1000.0
            if elapsed_ms >= float(self.circuit.config.latency_threshold_ms):
                self.circuit.record_latency(elapsed_ms)
            else:
                self.circuit.record_success()
        except sqlite3.OperationalError as e:
            self.circuit.record_failure(e)
            raise

    def _init_db(self) -> None:
        with self.connect("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS polls (
                poll_id TEXT PRIMARY KEY,
                name TEXT NOT NULL DEFAULT '',
                start_utc TEXT NOT NULL,
                end_utc TEXT NOT NULL,
                voting_mode TEXT NOT NULL,
                voting_permissions TEXT NOT NULL,
                voting_sequence TEXT NOT NULL,
                participant_weight REAL NOT NULL DEFAULT 1.0,
                evaluator_weight REAL NOT NULL DEFAULT 1.0,
                allow_self_interest INTEGER NOT NULL DEFAULT 0,
                allow_edit INTEGER NOT NULL DEFAULT 0,
                max_ranked_positions INTEGER,
                rank_points_json TEXT,
                require_evaluator_justification INTEGER NOT NULL DEFAULT 0
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS targets (
                poll_id TEXT NOT NULL,
                target_id TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                PRIMARY KEY (poll_id, target_id)
            )
            """)

            # Participant credentials are stored only as SHA-256 hashes.
            conn.execute("""
            CREATE TABLE IF NOT EXISTS credentials (
                credential_hash TEXT PRIMARY KEY,
                poll_id TEXT NOT NULL,
                target_id TEXT,
                used INTEGER NOT NULL DEFAULT 0,
                used_at_utc TEXT,
                issued_at_utc TEXT NOT NULL,
                expires_at_utc TEXT
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS evaluators (
                poll_id TEXT NOT NULL,
                email TEXT NOT NULL,
                PRIMARY KEY (poll_id, email)
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS decisions (
                decision_id TEXT PRIMARY KEY,
                poll_id TEXT NOT NULL,
                identity_key TEXT NOT NULL,
                constituency TEXT NOT NULL,
                voting_mode TEXT NOT NULL,
                target_id TEXT,
                target_ids_json TEXT,
                rankings_json TEXT,
                justification TEXT,
                commitment TEXT NOT NULL,
                anchor_ref TEXT,
                anchor_status TEXT NOT NULL,
                created_at_utc TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL,
                UNIQUE (poll_id, identity_key)
            )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_decisions_anchor_status ON decisions (poll_id, anchor_status)"
            )
