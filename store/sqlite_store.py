import asyncio
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Optional, Union

from models.enrollment import Enrollment, EnrollmentStatus
from models.execution_log import StepExecutionLog
from store.base import EnrollmentStore
from utils.time_utils import ensure_aware

_OPEN = (EnrollmentStatus.ACTIVE.value, EnrollmentStatus.WAITING.value)


def _ts(dt: Optional[datetime]) -> Optional[str]:
    # Fixed-width UTC text so that string comparison orders like time.
    if dt is None:
        return None
    return ensure_aware(dt).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S.%f").replace(tzinfo=timezone.utc)


class SQLiteEnrollmentStore(EnrollmentStore):
    """Persist enrollments and execution logs in a SQLite file."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS enrollments (
                    id TEXT PRIMARY KEY,
                    automation_id TEXT NOT NULL,
                    lead_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    enrolled_at TEXT NOT NULL,
                    resumes_at TEXT,
                    touched_at TEXT NOT NULL,
                    claim_token TEXT,
                    claimed_at TEXT,
                    data TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_enrollments_pair ON enrollments (automation_id, lead_id, status)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_enrollments_due ON enrollments (status, resumes_at)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS ix_enrollments_touched ON enrollments (status, touched_at)"
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS step_logs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL,
                    automation_id TEXT NOT NULL,
                    enrollment_id TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchall(self, query: str, *params: Any) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    @staticmethod
    def _to_enrollment(row: sqlite3.Row) -> Enrollment:
        enrollment = Enrollment.model_validate_json(row["data"])
        # claim columns are updated without rewriting the JSON document
        enrollment.claim_token = row["claim_token"]
        enrollment.claimed_at = _parse_ts(row["claimed_at"])
        return enrollment

    @staticmethod
    def _row_values(enrollment: Enrollment) -> tuple:
        return (
            enrollment.id,
            enrollment.automation_id,
            enrollment.lead_id,
            enrollment.status.value,
            _ts(enrollment.enrolled_at),
            _ts(enrollment.resumes_at),
            _ts(enrollment.last_advanced_at or enrollment.enrolled_at),
            enrollment.claim_token,
            _ts(enrollment.claimed_at),
            enrollment.model_dump_json(),
        )

    def _claim_sync(self, enrollment_id: str, token: str, now: datetime, ttl: int, due_only: bool) -> Optional[Enrollment]:
        expired = _ts(now - timedelta(seconds=ttl))
        if due_only:
            status_clause = "status = ? AND resumes_at IS NOT NULL AND resumes_at <= ?"
            status_params: tuple = (EnrollmentStatus.WAITING.value, _ts(now))
        else:
            status_clause = "status IN (?, ?)"
            status_params = _OPEN
        with self._lock, self._conn:
            cur = self._conn.execute(
                f"""
                UPDATE enrollments SET claim_token = ?, claimed_at = ?
                WHERE id = ? AND {status_clause}
                  AND (claim_token IS NULL OR claimed_at IS NULL OR claimed_at <= ?)
                """,
                (token, _ts(now), enrollment_id, *status_params, expired),
            )
            if cur.rowcount != 1:
                return None
            row = self._conn.execute("SELECT * FROM enrollments WHERE id = ?", (enrollment_id,)).fetchone()
        return self._to_enrollment(row)

    def _exit_open_sync(self, automation_id: str, reason: str, now: datetime, lead_id: Optional[str]) -> List[Enrollment]:
        query = "SELECT * FROM enrollments WHERE automation_id = ? AND status IN (?, ?)"
        params: tuple = (automation_id, *_OPEN)
        if lead_id is not None:
            query += " AND lead_id = ?"
            params += (lead_id,)
        exited = []
        with self._lock, self._conn:
            for row in self._conn.execute(query, params).fetchall():
                enrollment = self._to_enrollment(row)
                enrollment.terminate(EnrollmentStatus.EXITED, reason, now)
                enrollment.claim_token = None
                enrollment.claimed_at = None
                cur = self._conn.execute(
                    """
                    UPDATE enrollments SET status = ?, resumes_at = NULL, claim_token = NULL,
                        claimed_at = NULL, data = ?
                    WHERE id = ? AND status IN (?, ?)
                    """,
                    (enrollment.status.value, enrollment.model_dump_json(), enrollment.id, *_OPEN),
                )
                if cur.rowcount == 1:
                    exited.append(enrollment)
        return exited

    # ------------------------------------------------------------------
    # Store API
    async def create_if_absent(self, enrollment: Enrollment, allow_overlap: bool = False) -> bool:
        columns = "(id, automation_id, lead_id, status, enrolled_at, resumes_at, touched_at, claim_token, claimed_at, data)"
        if allow_overlap:
            rowcount = await asyncio.to_thread(
                self._execute,
                f"INSERT INTO enrollments {columns} VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                *self._row_values(enrollment),
            )
        else:
            # One statement, so the existence check and the insert cannot interleave.
            rowcount = await asyncio.to_thread(
                self._execute,
                f"""
                INSERT INTO enrollments {columns}
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM enrollments
                    WHERE automation_id = ? AND lead_id = ? AND status IN (?, ?)
                )
                """,
                *self._row_values(enrollment),
                enrollment.automation_id,
                enrollment.lead_id,
                *_OPEN,
            )
        return rowcount == 1

    async def get(self, enrollment_id: str) -> Optional[Enrollment]:
        rows = await asyncio.to_thread(self._fetchall, "SELECT * FROM enrollments WHERE id = ?", enrollment_id)
        return self._to_enrollment(rows[0]) if rows else None

    async def save(self, enrollment: Enrollment, expected_token: Optional[str]) -> bool:
        values = self._row_values(enrollment)
        rowcount = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET automation_id = ?, lead_id = ?, status = ?, enrolled_at = ?,
                resumes_at = ?, touched_at = ?, claim_token = ?, claimed_at = ?, data = ?
            WHERE id = ? AND claim_token IS ?
            """,
            *values[1:],
            enrollment.id,
            expected_token,
        )
        return rowcount == 1

    async def claim(self, enrollment_id: str, token: str, now: datetime, claim_ttl_seconds: int) -> Optional[Enrollment]:
        return await asyncio.to_thread(self._claim_sync, enrollment_id, token, now, claim_ttl_seconds, False)

    async def claim_due(self, enrollment_id: str, token: str, now: datetime, claim_ttl_seconds: int) -> Optional[Enrollment]:
        return await asyncio.to_thread(self._claim_sync, enrollment_id, token, now, claim_ttl_seconds, True)

    async def release(self, enrollment_id: str, token: str) -> bool:
        rowcount = await asyncio.to_thread(
            self._execute,
            "UPDATE enrollments SET claim_token = NULL, claimed_at = NULL WHERE id = ? AND claim_token = ?",
            enrollment_id,
            token,
        )
        return rowcount == 1

    async def exit_open(
        self, automation_id: str, reason: str, now: datetime, lead_id: Optional[str] = None
    ) -> List[Enrollment]:
        return await asyncio.to_thread(self._exit_open_sync, automation_id, reason, now, lead_id)

    async def find_open(self, automation_id: str, lead_id: str) -> List[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM enrollments WHERE automation_id = ? AND lead_id = ? AND status IN (?, ?)",
            automation_id,
            lead_id,
            *_OPEN,
        )
        return [self._to_enrollment(row) for row in rows]

    async def latest_for_lead(self, automation_id: str, lead_id: str) -> Optional[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM enrollments WHERE automation_id = ? AND lead_id = ? ORDER BY enrolled_at DESC LIMIT 1",
            automation_id,
            lead_id,
        )
        return self._to_enrollment(rows[0]) if rows else None

    async def list_for_automation(self, automation_id: str) -> List[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM enrollments WHERE automation_id = ? ORDER BY enrolled_at",
            automation_id,
        )
        return [self._to_enrollment(row) for row in rows]

    async def list_due(self, now: datetime, limit: int = 100) -> List[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM enrollments
            WHERE status = ? AND resumes_at IS NOT NULL AND resumes_at <= ?
            ORDER BY resumes_at LIMIT ?
            """,
            EnrollmentStatus.WAITING.value,
            _ts(now),
            limit,
        )
        return [self._to_enrollment(row) for row in rows]

    async def list_stalled(
        self, now: datetime, grace_seconds: int, claim_ttl_seconds: int, limit: int = 100
    ) -> List[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT * FROM enrollments
            WHERE status = ? AND (
                (claim_token IS NULL AND touched_at <= ?)
                OR (claim_token IS NOT NULL AND (claimed_at IS NULL OR claimed_at <= ?))
            )
            ORDER BY touched_at LIMIT ?
            """,
            EnrollmentStatus.ACTIVE.value,
            _ts(now - timedelta(seconds=grace_seconds)),
            _ts(now - timedelta(seconds=claim_ttl_seconds)),
            limit,
        )
        return [self._to_enrollment(row) for row in rows]

    async def append_log(self, entry: StepExecutionLog) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO step_logs (id, automation_id, enrollment_id, data) VALUES (?, ?, ?, ?)",
            entry.id,
            entry.automation_id,
            entry.enrollment_id,
            entry.model_dump_json(),
        )

    async def list_logs(
        self, automation_id: Optional[str] = None, enrollment_id: Optional[str] = None
    ) -> List[StepExecutionLog]:
        clauses, params = [], []
        if automation_id is not None:
            clauses.append("automation_id = ?")
            params.append(automation_id)
        if enrollment_id is not None:
            clauses.append("enrollment_id = ?")
            params.append(enrollment_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(self._fetchall, f"SELECT data FROM step_logs {where} ORDER BY seq", *params)
        return [StepExecutionLog.model_validate_json(row["data"]) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
