"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

from ..contracts import Enrollment, EnrollmentStatus, Workflow, WorkflowStatus
from .repository import WorkflowRepository

_NON_TERMINAL = [EnrollmentStatus.ACTIVE.value, EnrollmentStatus.WAITING.value]


def _load(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows and enrollments using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_versions (
                workflow_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (workflow_id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                workflow_version INTEGER NOT NULL,
                tenant_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                status TEXT NOT NULL,
                resume_at TIMESTAMPTZ,
                revision INTEGER NOT NULL,
                enrolled_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_enrollments_contact "
            "ON enrollments (workflow_id, contact_id, status)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS ix_enrollments_due "
            "ON enrollments (status, resume_at)"
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS stat_events (
                enrollment_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                occurred_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (enrollment_id, kind)
            )
            """
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        data = workflow.model_dump_json()
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO workflows (id, tenant_id, status, version, data)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (id) DO UPDATE SET
                        tenant_id = EXCLUDED.tenant_id,
                        status = EXCLUDED.status,
                        version = EXCLUDED.version,
                        data = EXCLUDED.data
                    """,
                    workflow.id,
                    workflow.tenant_id,
                    workflow.status.value,
                    workflow.version,
                    data,
                )
                await conn.execute(
                    """
                    INSERT INTO workflow_versions (workflow_id, version, data)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (workflow_id, version) DO UPDATE SET data = EXCLUDED.data
                    """,
                    workflow.id,
                    workflow.version,
                    data,
                )
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return Workflow.model_validate(_load(row["data"])) if row else None

    async def get_workflow_version(
        self, workflow_id: str, version: int
    ) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM workflow_versions WHERE workflow_id = $1 AND version = $2",
                workflow_id,
                version,
            )
        finally:
            await conn.close()
        return Workflow.model_validate(_load(row["data"])) if row else None

    async def list_workflows(
        self,
        tenant_id: str | None = None,
        status: WorkflowStatus | None = None,
    ) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data FROM workflows
                WHERE ($1::text IS NULL OR tenant_id = $1)
                  AND ($2::text IS NULL OR status = $2)
                """,
                tenant_id,
                WorkflowStatus(status).value if status is not None else None,
            )
        finally:
            await conn.close()
        return [Workflow.model_validate(_load(r["data"])) for r in rows]

    # ------------------------------------------------------------------
    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> bool:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if exclusive:
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))",
                        f"{enrollment.workflow_id}:{enrollment.contact_id}",
                    )
                    existing = await conn.fetchval(
                        """
                        SELECT 1 FROM enrollments
                        WHERE workflow_id = $1 AND contact_id = $2
                          AND status = ANY($3::text[])
                        LIMIT 1
                        """,
                        enrollment.workflow_id,
                        enrollment.contact_id,
                        _NON_TERMINAL,
                    )
                    if existing:
                        return False
                await conn.execute(
                    """
                    INSERT INTO enrollments (
                        id, workflow_id, workflow_version, tenant_id, contact_id,
                        status, resume_at, revision, enrolled_at, updated_at, data
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    """,
                    enrollment.id,
                    enrollment.workflow_id,
                    enrollment.workflow_version,
                    enrollment.tenant_id,
                    enrollment.contact_id,
                    enrollment.status.value,
                    enrollment.resume_at,
                    enrollment.revision,
                    enrollment.enrolled_at,
                    enrollment.updated_at,
                    enrollment.model_dump_json(),
                )
            return True
        finally:
            await conn.close()

    async def save_enrollment(self, enrollment: Enrollment) -> bool:
        expected = enrollment.revision
        stored = enrollment.model_copy(update={"revision": expected + 1})
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                UPDATE enrollments
                SET status = $1, resume_at = $2, revision = $3, updated_at = $4, data = $5
                WHERE id = $6 AND revision = $7
                """,
                stored.status.value,
                stored.resume_at,
                stored.revision,
                stored.updated_at,
                stored.model_dump_json(),
                enrollment.id,
                expected,
            )
        finally:
            await conn.close()
        if result != "UPDATE 1":
            return False
        enrollment.revision = expected + 1
        return True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM enrollments WHERE id = $1", enrollment_id
            )
        finally:
            await conn.close()
        return Enrollment.model_validate(_load(row["data"])) if row else None

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
        contact_id: str | None = None,
        enrolled_after: datetime | None = None,
        enrolled_before: datetime | None = None,
    ) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data FROM enrollments
                WHERE ($1::text IS NULL OR workflow_id = $1)
                  AND ($2::text IS NULL OR status = $2)
                  AND ($3::text IS NULL OR contact_id = $3)
                  AND ($4::timestamptz IS NULL OR enrolled_at >= $4)
                  AND ($5::timestamptz IS NULL OR enrolled_at < $5)
                ORDER BY enrolled_at
                """,
                workflow_id,
                EnrollmentStatus(status).value if status is not None else None,
                contact_id,
                enrolled_after,
                enrolled_before,
            )
        finally:
            await conn.close()
        return [Enrollment.model_validate(_load(r["data"])) for r in rows]

    async def due_enrollments(
        self, now: datetime, stale_before: datetime, limit: int = 100
    ) -> list[Enrollment]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT data FROM enrollments
                WHERE (status = ANY($1::text[]) AND resume_at IS NOT NULL AND resume_at <= $2)
                   OR (status = $3 AND resume_at IS NULL AND updated_at <= $4)
                ORDER BY COALESCE(resume_at, updated_at)
                LIMIT $5
                """,
                _NON_TERMINAL,
                now,
                EnrollmentStatus.ACTIVE.value,
                stale_before,
                limit,
            )
        finally:
            await conn.close()
        return [Enrollment.model_validate(_load(r["data"])) for r in rows]

    # ------------------------------------------------------------------
    async def record_stat_event(
        self, workflow_id: str, enrollment_id: str, kind: str, occurred_at: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            result = await conn.execute(
                """
                INSERT INTO stat_events (enrollment_id, kind, workflow_id, occurred_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT DO NOTHING
                """,
                enrollment_id,
                kind,
                workflow_id,
                occurred_at,
            )
        finally:
            await conn.close()
        return result == "INSERT 0 1"

    async def count_stat_events(
        self,
        workflow_id: str,
        since: datetime | None = None,
        until: datetime | None = None,
    ) -> dict[str, int]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT kind, COUNT(*) AS n FROM stat_events
                WHERE workflow_id = $1
                  AND ($2::timestamptz IS NULL OR occurred_at >= $2)
                  AND ($3::timestamptz IS NULL OR occurred_at < $3)
                GROUP BY kind
                """,
                workflow_id,
                since,
                until,
            )
        finally:
            await conn.close()
        return {r["kind"]: r["n"] for r in rows}
