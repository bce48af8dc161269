"""Durable rollout storage using SQLite.

Rollout rows hold the immutable plan and the latest state snapshot; the
decision log lives in its own append-only table. A partial unique index
keeps at most one non-terminal rollout per target even across processes
sharing the database.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Callable
from contextlib import suppress
from datetime import UTC, datetime
from threading import Lock
from types import TracebackType
from typing import Any

from rolloutgate.errors import TargetBusy
from rolloutgate.models import (
    TERMINAL_STATUSES,
    DecisionLogEntry,
    RiskAssessment,
    RolloutState,
)

MigrationStep = tuple[int, str, Callable[[], None]]

_TERMINAL_SQL = ", ".join(f"'{status}'" for status in sorted(TERMINAL_STATUSES))


def _is_uniqueness_error(exc: Exception) -> bool:
    return "unique constraint" in str(exc).lower()


class RolloutStore:
    """Rollout state and decision-log store backed by SQLite."""

    def __init__(self, db_path: str) -> None:
        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        self.conn = conn
        self._lock = Lock()
        self._closed = False
        self._init_schema()

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            if self._closed:
                return
            self.conn.close()
            self._closed = True

    def __enter__(self) -> RolloutStore:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def __del__(self) -> None:  # pragma: no cover - best-effort cleanup
        with suppress(Exception):
            self.close()

    def _init_schema(self) -> None:
        """Initialize and migrate the schema to the latest version."""
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            self.conn.commit()
        self._apply_migrations()

    def _build_migrations(self) -> list[MigrationStep]:
        return [
            (1, "bootstrap_schema", self._migration_bootstrap_schema),
            (2, "risk_assessments", self._migration_risk_assessments),
        ]

    def _apply_migrations(self) -> None:
        migrations = self._build_migrations()
        versions = [version for version, _, _ in migrations]
        if versions != sorted(versions) or len(versions) != len(set(versions)):
            raise RuntimeError("Rollout schema migrations must be unique and ordered.")

        with self._lock:
            rows = self.conn.execute("SELECT version FROM schema_migrations").fetchall()
        applied = {int(row["version"]) for row in rows}
        for version, name, handler in migrations:
            if version in applied:
                continue
            self._apply_migration(version, name, handler)

    def _apply_migration(self, version: int, name: str, handler: Callable[[], None]) -> None:
        savepoint = f"rollout_schema_migration_v{version}"
        with self._lock:
            self.conn.execute(f"SAVEPOINT {savepoint}")
        try:
            handler()
            with self._lock:
                self.conn.execute(
                    "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
                    (version, name),
                )
                self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                self.conn.commit()
        except Exception as exc:
            with self._lock:
                with suppress(Exception):
                    self.conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                    self.conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                with suppress(Exception):
                    self.conn.rollback()
            raise RuntimeError(f"Failed rollout schema migration v{version} ({name}).") from exc

    def _migration_bootstrap_schema(self) -> None:
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rollouts (
                    rollout_id TEXT PRIMARY KEY,
                    target TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    status TEXT NOT NULL,
                    risk_score REAL NOT NULL,
                    plan_json TEXT NOT NULL,
                    state_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    archived_at TEXT
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_rollouts_target ON rollouts(target)"
            )
            self.conn.execute(
                f"""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_rollouts_active_target
                ON rollouts(target)
                WHERE status NOT IN ({_TERMINAL_SQL})
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS decision_log (
                    rollout_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    decision TEXT NOT NULL,
                    status TEXT NOT NULL,
                    phase_index INTEGER NOT NULL,
                    rationale TEXT NOT NULL,
                    details_json TEXT NOT NULL,
                    PRIMARY KEY (rollout_id, sequence)
                )
                """
            )

    def _migration_risk_assessments(self) -> None:
        with self._lock:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS risk_assessments (
                    rollout_id TEXT PRIMARY KEY,
                    score REAL NOT NULL,
                    factors_json TEXT NOT NULL,
                    assessed_at TEXT NOT NULL
                )
                """
            )

    def insert_rollout(
        self, state: RolloutState, assessment: RiskAssessment | None = None
    ) -> None:
        """Insert a new rollout; raise TargetBusy if the target has an active one."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT INTO rollouts (
                        rollout_id, target, strategy, status, risk_score,
                        plan_json, state_json, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        state.rollout_id,
                        state.target,
                        state.plan.strategy,
                        state.status,
                        state.plan.risk_score,
                        state.plan.model_dump_json(),
                        _state_json(state),
                        state.plan.created_at.isoformat(),
                        now,
                    ),
                )
                if assessment is not None:
                    self.conn.execute(
                        """
                        INSERT INTO risk_assessments (rollout_id, score, factors_json, assessed_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (
                            state.rollout_id,
                            assessment.score,
                            json.dumps(assessment.factors, sort_keys=True),
                            now,
                        ),
                    )
                self._insert_decisions(state)
                self.conn.commit()
            except sqlite3.IntegrityError as exc:
                self.conn.rollback()
                if _is_uniqueness_error(exc):
                    raise TargetBusy(state.target) from exc
                raise

    def save_state(self, state: RolloutState) -> None:
        """Persist the latest state snapshot and any new decision-log entries."""
        now = datetime.now(UTC).isoformat()
        with self._lock:
            self.conn.execute(
                """
                UPDATE rollouts
                SET status = ?, state_json = ?, updated_at = ?,
                    archived_at = CASE WHEN ? THEN COALESCE(archived_at, ?) ELSE archived_at END
                WHERE rollout_id = ?
                """,
                (
                    state.status,
                    _state_json(state),
                    now,
                    1 if state.archived else 0,
                    now,
                    state.rollout_id,
                ),
            )
            self._insert_decisions(state)
            self.conn.commit()

    def _insert_decisions(self, state: RolloutState) -> None:
        self.conn.executemany(
            """
            INSERT OR IGNORE INTO decision_log (
                rollout_id, sequence, timestamp, decision, status,
                phase_index, rationale, details_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    state.rollout_id,
                    entry.sequence,
                    entry.timestamp.isoformat(),
                    entry.decision,
                    entry.status,
                    entry.phase_index,
                    entry.rationale,
                    json.dumps(entry.details, sort_keys=True, default=str),
                )
                for entry in state.decision_log
            ],
        )

    def get_state(self, rollout_id: str) -> RolloutState | None:
        """Fetch a rollout with its full decision log."""
        with self._lock:
            row = self.conn.execute(
                "SELECT rollout_id, state_json FROM rollouts WHERE rollout_id = ?",
                (rollout_id,),
            ).fetchone()
            if row is None:
                return None
            return self._hydrate(row)

    def list_states(
        self, *, target: str | None = None, status: str | None = None
    ) -> list[RolloutState]:
        """List rollouts oldest first, optionally filtered."""
        query = "SELECT rollout_id, state_json FROM rollouts"
        clauses: list[str] = []
        params: list[Any] = []
        if target is not None:
            clauses.append("target = ?")
            params.append(target)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, rollout_id ASC"
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
            return [self._hydrate(row) for row in rows]

    def active_states(self) -> list[RolloutState]:
        """Return every non-terminal rollout."""
        with self._lock:
            rows = self.conn.execute(
                f"""
                SELECT rollout_id, state_json FROM rollouts
                WHERE status NOT IN ({_TERMINAL_SQL})
                ORDER BY created_at ASC
                """
            ).fetchall()
            return [self._hydrate(row) for row in rows]

    def get_assessment(self, rollout_id: str) -> RiskAssessment | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT score, factors_json FROM risk_assessments WHERE rollout_id = ?",
                (rollout_id,),
            ).fetchone()
        if row is None:
            return None
        return RiskAssessment(score=row["score"], factors=json.loads(row["factors_json"]))

    def _hydrate(self, row: Any) -> RolloutState:
        state = RolloutState.model_validate_json(row["state_json"])
        entries = self.conn.execute(
            """
            SELECT sequence, timestamp, decision, status, phase_index, rationale, details_json
            FROM decision_log WHERE rollout_id = ? ORDER BY sequence ASC
            """,
            (row["rollout_id"],),
        ).fetchall()
        state.decision_log = [
            DecisionLogEntry(
                sequence=entry["sequence"],
                timestamp=datetime.fromisoformat(entry["timestamp"]),
                decision=entry["decision"],
                status=entry["status"],
                phase_index=entry["phase_index"],
                rationale=entry["rationale"],
                details=json.loads(entry["details_json"]),
            )
            for entry in entries
        ]
        return state


def _state_json(state: RolloutState) -> str:
    return state.model_dump_json(exclude={"decision_log"})
