from __future__ import annotations

import secrets
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Literal

from common.utils import hash_token, now_utc_iso, parse_iso_datetime

from coordinator.models import (
    RUN_COMPLETED,
    RUN_PENDING,
    TERMINAL_STATUSES,
    CallbackJob,
    JobRecord,
    Principal,
    RunEvent,
    RunRecord,
    RunSummary,
)

SESSION_TOKEN_PREFIX = "sct_"


class DuplicateEmailError(ValueError):
    pass


@dataclass
class CompletionOutcome:
    status: Literal["completed", "terminal", "not_found"]
    jobs_inserted: int = 0
    run_status: str | None = None


@dataclass
class StoredPrincipal:
    user_id: str
    email: str
    password_hash: str


class CoordinatorRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS principals (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY REFERENCES principals(user_id) ON DELETE CASCADE,
                    email TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS sessions (
                    session_id TEXT PRIMARY KEY,
                    token_hash TEXT NOT NULL UNIQUE,
                    user_id TEXT NOT NULL REFERENCES principals(user_id) ON DELETE CASCADE,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    revoked_at TEXT
                );

                CREATE TABLE IF NOT EXISTS runs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_runs_user_created
                    ON runs(user_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL,
                    location TEXT NOT NULL DEFAULT '',
                    score REAL NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    apply_link TEXT NOT NULL DEFAULT '',
                    cover_letter TEXT NOT NULL DEFAULT '',
                    mail_draft TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_run ON jobs(run_id);

                CREATE TABLE IF NOT EXISTS run_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
                    occurred_at TEXT NOT NULL,
                    request_id TEXT,
                    from_status TEXT,
                    to_status TEXT NOT NULL,
                    message TEXT
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def create_principal(self, email: str, password_hash: str) -> str:
        with self._lock:
            user_id = str(uuid.uuid4())
            try:
                self.connection.execute(
                    """
                    INSERT INTO principals (user_id, email, password_hash, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (user_id, email.lower(), password_hash, now_utc_iso()),
                )
                self.connection.commit()
            except sqlite3.IntegrityError as exc:
                self.connection.rollback()
                raise DuplicateEmailError(f"Email already registered: {email}") from exc
            return user_id

    def get_principal_by_email(self, email: str) -> StoredPrincipal | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT user_id, email, password_hash
                FROM principals
                WHERE email = ?
                """,
                (email.lower(),),
            ).fetchone()
            if row is None:
                return None
            return StoredPrincipal(**dict(row))

    def create_profile(self, user_id: str, email: str) -> None:
        with self._lock:
            try:
                self.connection.execute(
                    "INSERT INTO profiles (id, email, created_at) VALUES (?, ?, ?)",
                    (user_id, email.lower(), now_utc_iso()),
                )
                self.connection.commit()
            except sqlite3.Error:
                self.connection.rollback()
                raise

    def create_session(self, user_id: str, *, ttl_hours: int) -> tuple[str, str]:
        with self._lock:
            now = datetime.now(UTC)
            raw_token = f"{SESSION_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
            expires_at = (now + timedelta(hours=ttl_hours)).isoformat()
            self.connection.execute(
                """
                INSERT INTO sessions (session_id, token_hash, user_id, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (str(uuid.uuid4()), hash_token(raw_token), user_id, now.isoformat(), expires_at),
            )
            self.connection.commit()
            return raw_token, expires_at

    def resolve_session(self, token_value: str) -> Principal | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT s.session_id, s.user_id, s.expires_at, p.email
                FROM sessions s
                JOIN principals p ON p.user_id = s.user_id
                WHERE s.token_hash = ?
                  AND s.revoked_at IS NULL
                """,
                (hash_token(token_value),),
            ).fetchone()
            if row is None:
                return None
            expires_at = parse_iso_datetime(row["expires_at"])
            if expires_at is None or expires_at <= datetime.now(UTC):
                return None
            return Principal(
                user_id=row["user_id"],
                email=row["email"],
                session_id=row["session_id"],
            )

    def revoke_session(self, session_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE sessions
                SET revoked_at = ?
                WHERE session_id = ? AND revoked_at IS NULL
                """,
                (now_utc_iso(), session_id),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def create_run(self, user_id: str, *, request_id: str | None = None) -> RunRecord:
        with self._lock:
            run_id = str(uuid.uuid4())
            created_at = now_utc_iso()
            try:
                self.connection.execute(
                    """
                    INSERT INTO runs (id, user_id, status, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (run_id, user_id, RUN_PENDING, created_at),
                )
                self._insert_event(
                    run_id,
                    request_id=request_id,
                    from_status=None,
                    to_status=RUN_PENDING,
                    message="run created",
                )
                self.connection.commit()
            except sqlite3.Error:
                self.connection.rollback()
                raise
            return RunRecord(
                id=run_id,
                user_id=user_id,
                status=RUN_PENDING,
                created_at=created_at,
            )

    def get_run_for_owner(self, run_id: str, user_id: str) -> RunRecord | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT id, user_id, status, created_at, completed_at
                FROM runs
                WHERE id = ? AND user_id = ?
                """,
                (run_id, user_id),
            ).fetchone()
            if row is None:
                return None
            return RunRecord(**dict(row))

    def transition_run(
        self,
        run_id: str,
        *,
        from_statuses: tuple[str, ...],
        to_status: str,
        request_id: str | None = None,
        message: str | None = None,
    ) -> bool:
        """Move a run to ``to_status`` only if it is currently in ``from_statuses``.

        Returns False when the run is missing or already elsewhere, so a caller
        that lost a race never drags a run backwards.
        """
        with self._lock:
            try:
                row = self.connection.execute(
                    "SELECT status FROM runs WHERE id = ?",
                    (run_id,),
                ).fetchone()
                if row is None or row["status"] not in from_statuses:
                    return False
                completed_at = now_utc_iso() if to_status == RUN_COMPLETED else None
                self.connection.execute(
                    """
                    UPDATE runs
                    SET status = ?, completed_at = COALESCE(?, completed_at)
                    WHERE id = ? AND status = ?
                    """,
                    (to_status, completed_at, run_id, row["status"]),
                )
                self._insert_event(
                    run_id,
                    request_id=request_id,
                    from_status=row["status"],
                    to_status=to_status,
                    message=message,
                )
                self.connection.commit()
            except sqlite3.Error:
                self.connection.rollback()
                raise
            return True

    def complete_run(
        self,
        run_id: str,
        jobs: list[CallbackJob],
        *,
        request_id: str | None = None,
    ) -> CompletionOutcome:
        """Insert a callback batch and complete the run in one transaction."""
        with self._lock:
            row = self.connection.execute(
                "SELECT status FROM runs WHERE id = ?",
                (run_id,),
            ).fetchone()
            if row is None:
                return CompletionOutcome(status="not_found")
            previous_status = row["status"]
            if previous_status in TERMINAL_STATUSES:
                return CompletionOutcome(status="terminal", run_status=previous_status)

            now = now_utc_iso()
            try:
                self.connection.executemany(
                    """
                    INSERT INTO jobs (
                        id,
                        run_id,
                        title,
                        company,
                        location,
                        score,
                        description,
                        apply_link,
                        cover_letter,
                        mail_draft,
                        created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            str(uuid.uuid4()),
                            run_id,
                            job.title,
                            job.company,
                            job.location or "",
                            job.score,
                            job.description,
                            job.apply_link,
                            job.cover_letter,
                            job.mail_draft,
                            now,
                        )
                        for job in jobs
                    ],
                )
                self.connection.execute(
                    """
                    UPDATE runs
                    SET status = ?, completed_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (RUN_COMPLETED, now, run_id, previous_status),
                )
                self._insert_event(
                    run_id,
                    request_id=request_id,
                    from_status=previous_status,
                    to_status=RUN_COMPLETED,
                    message=f"jobs_inserted={len(jobs)}",
                )
                self.connection.commit()
            except sqlite3.Error:
                self.connection.rollback()
                raise
            return CompletionOutcome(
                status="completed",
                jobs_inserted=len(jobs),
                run_status=RUN_COMPLETED,
            )

    def list_runs_for_owner(self, user_id: str) -> list[RunSummary]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    r.id AS id,
                    r.status AS status,
                    r.created_at AS created_at,
                    r.completed_at AS completed_at,
                    COUNT(j.id) AS job_count
                FROM runs r
                LEFT JOIN jobs j ON j.run_id = r.id
                WHERE r.user_id = ?
                GROUP BY r.id, r.status, r.created_at, r.completed_at
                ORDER BY r.created_at DESC, r.rowid DESC
                """,
                (user_id,),
            )
            return [RunSummary(**dict(row)) for row in cursor.fetchall()]

    def list_jobs(self, run_id: str) -> list[JobRecord]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    id,
                    title,
                    company,
                    location,
                    score,
                    description,
                    apply_link,
                    cover_letter,
                    mail_draft,
                    created_at
                FROM jobs
                WHERE run_id = ?
                ORDER BY rowid
                """,
                (run_id,),
            )
            return [JobRecord(**dict(row)) for row in cursor.fetchall()]

    def list_run_events(self, run_id: str) -> list[RunEvent]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    id AS event_id,
                    run_id,
                    occurred_at,
                    request_id,
                    from_status,
                    to_status,
                    message
                FROM run_events
                WHERE run_id = ?
                ORDER BY id
                """,
                (run_id,),
            )
            return [RunEvent(**dict(row)) for row in cursor.fetchall()]

    def _insert_event(
        self,
        run_id: str,
        *,
        request_id: str | None,
        from_status: str | None,
        to_status: str,
        message: str | None,
    ) -> None:
        self.connection.execute(
            """
            INSERT INTO run_events (
                run_id,
                occurred_at,
                request_id,
                from_status,
                to_status,
                message
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (run_id, now_utc_iso(), request_id, from_status, to_status, message),
        )
