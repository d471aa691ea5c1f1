"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..contracts import Enrollment, EnrollmentStatus, Workflow, WorkflowStatus
from .repository import WorkflowRepository

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def _ts(value: datetime | None) -> str | None:
    """Fixed-width UTC text so timestamps compare lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


_NON_TERMINAL = (EnrollmentStatus.ACTIVE.value, EnrollmentStatus.WAITING.value)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows and enrollments using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_versions (
                    workflow_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (workflow_id, version)
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS enrollments (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    workflow_version INTEGER NOT NULL,
                    tenant_id TEXT NOT NULL,
                    contact_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    resume_at TEXT,
                    revision INTEGER NOT NULL,
                    enrolled_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS ix_enrollments_contact "
                "ON enrollments (workflow_id, contact_id, status)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS ix_enrollments_due "
                "ON enrollments (status, resume_at)"
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS stat_events (
                    enrollment_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    PRIMARY KEY (enrollment_id, kind)
                )
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _save_workflow(self, workflow: Workflow) -> None:
        data = workflow.model_dump_json()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                cur.execute(
                    """
                    INSERT INTO workflows (id, tenant_id, status, version, data)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        tenant_id = excluded.tenant_id,
                        status = excluded.status,
                        version = excluded.version,
                        data = excluded.data
                    """,
                    (
                        workflow.id,
                        workflow.tenant_id,
                        workflow.status.value,
                        workflow.version,
                        data,
                    ),
                )
                cur.execute(
                    """
                    INSERT INTO workflow_versions (workflow_id, version, data)
                    VALUES (?, ?, ?)
                    ON CONFLICT(workflow_id, version) DO UPDATE SET data = excluded.data
                    """,
                    (workflow.id, workflow.version, data),
                )
                cur.execute("COMMIT")
            except Exception:
                cur.execute("ROLLBACK")
                raise

    def _create_enrollment(self, enrollment: Enrollment, exclusive: bool) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                if exclusive:
                    cur.execute(
                        "SELECT 1 FROM enrollments WHERE workflow_id = ? "
                        "AND contact_id = ? AND status IN (?, ?) LIMIT 1",
                        (enrollment.workflow_id, enrollment.contact_id, *_NON_TERMINAL),
                    )
                    if cur.fetchone() is not None:
                        cur.execute("ROLLBACK")
                        return False
                cur.execute(
                    """
                    INSERT INTO enrollments (
                        id, workflow_id, workflow_version, tenant_id, contact_id,
                        status, resume_at, revision, enrolled_at, updated_at, data
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        enrollment.id,
                        enrollment.workflow_id,
                        enrollment.workflow_version,
                        enrollment.tenant_id,
                        enrollment.contact_id,
                        enrollment.status.value,
                        _ts(enrollment.resume_at),
                        enrollment.revision,
                        _ts(enrollment.enrolled_at),
                        _ts(enrollment.updated_at),
                        enrollment.model_dump_json(),
                    ),
                )
                cur.execute("COMMIT")
                return True
            except Exception:
                cur.execute("ROLLBACK")
                raise

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(self._save_workflow, workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM workflows WHERE id = ?", workflow_id
        )
        return Workflow.model_validate_json(row["data"]) if row else None

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT data FROM workflow_versions WHERE workflow_id = ? AND version = ?",
            workflow_id,
            version,
        )
        return Workflow.model_validate_json(row["data"]) if row else None

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
    ) -> list[Workflow]:
        query = "SELECT data FROM workflows WHERE 1 = 1"
        params: list[Any] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        if status is not None:
            query += " AND status = ?"
            params.append(WorkflowStatus(status).value)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Workflow.model_validate_json(r["data"]) for r in rows]

    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        return await asyncio.to_thread(self._create_enrollment, enrollment, exclusive)

    async def save_enrollment(self, enrollment: Enrollment) -> bool:
        expected = enrollment.revision
        stored = enrollment.model_copy(update={"revision": expected + 1})
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments
            SET status = ?, resume_at = ?, revision = ?, updated_at = ?, data = ?
            WHERE id = ? AND revision = ?
            """,
            stored.status.value,
            _ts(stored.resume_at),
            stored.revision,
            _ts(stored.updated_at),
            stored.model_dump_json(),
            enrollment.id,
            expected,
        )
        if updated != 1:
            return False
        enrollment.revision = expected + 1
        return True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM enrollments WHERE id = ?", enrollment_id
        )
        return Enrollment.model_validate_json(row["data"]) if row else None

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
        contact_id: str | None = None,
        enrolled_after: datetime | None = None,
        enrolled_before: datetime | None = None,
    ) -> list[Enrollment]:
        query = "SELECT data FROM enrollments WHERE 1 = 1"
        params: list[Any] = []
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if status is not None:
            query += " AND status = ?"
            params.append(EnrollmentStatus(status).value)
        if contact_id is not None:
            query += " AND contact_id = ?"
            params.append(contact_id)
        if enrolled_after is not None:
            query += " AND enrolled_at >= ?"
            params.append(_ts(enrolled_after))
        if enrolled_before is not None:
            query += " AND enrolled_at < ?"
            params.append(_ts(enrolled_before))
        query += " ORDER BY enrolled_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Enrollment.model_validate_json(r["data"]) for r in rows]

    async def due_enrollments(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[Enrollment]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT data FROM enrollments
            WHERE (status IN (?, ?) AND resume_at IS NOT NULL AND resume_at <= ?)
               OR (status = ? AND resume_at IS NULL AND updated_at <= ?)
            ORDER BY COALESCE(resume_at, updated_at)
            LIMIT ?
            """,
            *_NON_TERMINAL,
            _ts(now),
            EnrollmentStatus.ACTIVE.value,
            _ts(stale_before),
            limit,
        )
        return [Enrollment.model_validate_json(r["data"]) for r in rows]

    async def record_stat_event(
        self, workflow_id: str, enrollment_id: str, kind: str, occurred_at: datetime
    ) -> bool:
        inserted = await asyncio.to_thread(
            self._execute,
            "INSERT OR IGNORE INTO stat_events (enrollment_id, kind, workflow_id, occurred_at) "
            "VALUES (?, ?, ?, ?)",
            enrollment_id,
            kind,
            workflow_id,
            _ts(occurred_at),
        )
        return inserted == 1

    async def count_stat_events(
        self,
        workflow_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, int]:
        query = "SELECT kind, COUNT(*) AS n FROM stat_events WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if since is not None:
            query += " AND occurred_at >= ?"
            params.append(_ts(since))
        if until is not None:
            query += " AND occurred_at < ?"
            params.append(_ts(until))
        query += " GROUP BY kind"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return {r["kind"]: r["n"] for r in rows}
