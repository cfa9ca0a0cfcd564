"""SQLite-backed persistence for bulk job records and per-item results."""
from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

import aiosqlite

from ..errors import InvalidTransitionError, JobNotFoundError
from .models import (
    TERMINAL_STATUSES,
    ItemError,
    ItemResult,
    ItemStatus,
    JobOptions,
    JobProgress,
    JobRecord,
    JobStatus,
    can_transition,
    utcnow_iso,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        job_id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        item_ids TEXT NOT NULL,
        options TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL DEFAULT 'pending',
        total INTEGER NOT NULL DEFAULT 0,
        completed INTEGER NOT NULL DEFAULT 0,
        failed INTEGER NOT NULL DEFAULT 0,
        current_batch INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        error TEXT,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_jobs_owner_status ON jobs (owner_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_jobs_status_updated ON jobs (status, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS job_results (
        job_id TEXT NOT NULL REFERENCES jobs(job_id) ON DELETE CASCADE,
        item_id TEXT NOT NULL,
        status TEXT NOT NULL,
        strategy TEXT,
        payload TEXT,
        error TEXT,
        processed_at TEXT,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (job_id, item_id)
    )
    """,
)

_UPSERT_RESULT_SQL = """
    INSERT INTO job_results (job_id, item_id, status, strategy, payload, error, processed_at, updated_at)
    VALUES (?,?,?,?,?,?,?,?)
    ON CONFLICT (job_id, item_id) DO UPDATE SET
        status = excluded.status,
        strategy = COALESCE(excluded.strategy, job_results.strategy),
        payload = excluded.payload,
        error = excluded.error,
        processed_at = excluded.processed_at,
        updated_at = excluded.updated_at
"""

# Counters are incremented in place and clamped so completed + failed never
# exceeds total; current_batch only moves forward.
_PROGRESS_SQL = """
    UPDATE jobs SET
        completed = MIN(completed + :dc, total - failed),
        failed = MIN(failed + :df, total - MIN(completed + :dc, total - failed)),
        current_batch = MAX(current_batch, COALESCE(:cb, current_batch)),
        updated_at = :now,
        version = version + 1
    WHERE job_id = :job_id
"""


class JobStore:
    """Async SQLite store for job lifecycle tracking.

    Every public method runs under one ``asyncio.Lock`` so a multi-statement
    write (result row + counters) is never observed half-applied by a
    concurrent status poll sharing the connection.
    """

    def __init__(self, db_path: str = "bulk_jobs.db") -> None:
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the connection and create tables if they don't exist."""
        async with self._lock:
            if self._db is not None:
                return
            db = await aiosqlite.connect(self.db_path)
            await db.execute("PRAGMA foreign_keys = ON")
            for stmt in _SCHEMA:
                await db.execute(stmt)
            await db.commit()
            self._db = db

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.initialize()
        return self._db

    # ── Create / read ────────────────────────────────────────────────

    async def create_job(
        self,
        owner_id: str,
        item_ids: Sequence[str],
        options: JobOptions | None = None,
    ) -> JobRecord:
        """Insert a new pending job and return its record."""
        items = list(dict.fromkeys(item_ids))
        rec = JobRecord(
            job_id=uuid.uuid4().hex[:12],
            owner_id=owner_id,
            item_ids=items,
            options=options or JobOptions(),
            progress=JobProgress(total=len(items)),
        )
        db = await self._conn()
        async with self._lock:
            await db.execute(
                "INSERT INTO jobs (job_id, owner_id, item_ids, options, status, total, "
                "created_at, updated_at) VALUES (?,?,?,?,?,?,?,?)",
                (
                    rec.job_id,
                    rec.owner_id,
                    json.dumps(rec.item_ids),
                    rec.options.model_dump_json(),
                    rec.status.value,
                    rec.progress.total,
                    rec.created_at,
                    rec.updated_at,
                ),
            )
            await db.commit()
        return rec

    async def get_job(
        self,
        job_id: str,
        owner_id: str | None = None,
        *,
        include_results: bool = True,
    ) -> Optional[JobRecord]:
        """Fetch a single job by ID, optionally scoped to *owner_id*."""
        db = await self._conn()
        sql = "SELECT * FROM jobs WHERE job_id = ?"
        params: List[Any] = [job_id]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        async with self._lock:
            async with db.execute(sql, params) as cur:
                row = await cur.fetchone()
                desc = cur.description
            if row is None:
                return None
            results: Dict[str, ItemResult] = {}
            if include_results:
                async with db.execute(
                    "SELECT * FROM job_results WHERE job_id = ?", (job_id,)
                ) as cur:
                    result_rows = await cur.fetchall()
                    result_desc = cur.description
                results = {
                    r.item_id: r for r in (self._row_to_result(rr, result_desc) for rr in result_rows)
                }
        return self._row_to_record(row, desc, results)

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        """Cheap status lookup used by the scheduler's cancellation check."""
        db = await self._conn()
        async with self._lock:
            async with db.execute("SELECT status FROM jobs WHERE job_id = ?", (job_id,)) as cur:
                row = await cur.fetchone()
        return JobStatus(row[0]) if row else None

    async def list_jobs(
        self,
        owner_id: str | None = None,
        *,
        statuses: Iterable[JobStatus] | None = None,
        updated_since: str | None = None,
        limit: int = 50,
    ) -> List[JobRecord]:
        """List jobs newest first, without per-item results."""
        clauses: List[str] = []
        params: List[Any] = []
        if owner_id is not None:
            clauses.append("owner_id = ?")
            params.append(owner_id)
        status_values = [JobStatus(s).value for s in statuses or ()]
        if status_values and updated_since is not None:
            clauses.append(
                f"(status IN ({','.join('?' * len(status_values))}) OR updated_at >= ?)"
            )
            params.extend(status_values)
            params.append(updated_since)
        elif status_values:
            clauses.append(f"status IN ({','.join('?' * len(status_values))})")
            params.extend(status_values)
        elif updated_since is not None:
            clauses.append("updated_at >= ?")
            params.append(updated_since)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        db = await self._conn()
        async with self._lock:
            async with db.execute(
                f"SELECT * FROM jobs{where} ORDER BY created_at DESC LIMIT ?", params
            ) as cur:
                rows = await cur.fetchall()
                desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    async def count_jobs(self, statuses: Iterable[JobStatus] | None = None) -> int:
        status_values = [JobStatus(s).value for s in statuses or ()]
        sql = "SELECT COUNT(*) FROM jobs"
        if status_values:
            sql += f" WHERE status IN ({','.join('?' * len(status_values))})"
        db = await self._conn()
        async with self._lock:
            async with db.execute(sql, status_values) as cur:
                row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def find_stale_jobs(self, older_than: str, limit: int = 10) -> List[JobRecord]:
        """Return pending/running jobs whose last write predates *older_than*."""
        db = await self._conn()
        async with self._lock:
            async with db.execute(
                "SELECT * FROM jobs WHERE status IN (?, ?) AND updated_at < ? "
                "ORDER BY created_at ASC LIMIT ?",
                (JobStatus.pending.value, JobStatus.running.value, older_than, limit),
            ) as cur:
                rows = await cur.fetchall()
                desc = cur.description
        return [self._row_to_record(r, desc) for r in rows]

    # ── Status ───────────────────────────────────────────────────────

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        *,
        error: str | None = None,
        expected: JobStatus | None = None,
    ) -> bool:
        """Move a job to *status*, validating the state-machine edge.

        With *expected* set, the write is a compare-and-swap: it only applies
        if the job is still in that state and returns False otherwise (no
        exception).  Without it, an illegal edge raises
        ``InvalidTransitionError``; re-applying the current status is a no-op
        returning False.
        """
        status = JobStatus(status)
        db = await self._conn()
        async with self._lock:
            async with db.execute("SELECT status FROM jobs WHERE job_id = ?", (job_id,)) as cur:
                row = await cur.fetchone()
            if row is None:
                raise JobNotFoundError(f"Job '{job_id}' not found")
            current = JobStatus(row[0])
            if expected is not None and current != JobStatus(expected):
                return False
            if current == status:
                return False
            if not can_transition(current, status):
                if expected is not None:
                    return False
                raise InvalidTransitionError(
                    f"Job '{job_id}' cannot move from {current.value} to {status.value}"
                )

            now = utcnow_iso()
            sets = ["status = ?", "updated_at = ?", "version = version + 1"]
            vals: List[Any] = [status.value, now]
            if status == JobStatus.running:
                sets.append("started_at = COALESCE(started_at, ?)")
                vals.append(now)
            if status in TERMINAL_STATUSES:
                sets.append("completed_at = ?")
                vals.append(now)
            if error is not None:
                sets.append("error = ?")
                vals.append(error)
            vals.extend([job_id, current.value])
            cur = await db.execute(
                f"UPDATE jobs SET {', '.join(sets)} WHERE job_id = ? AND status = ?", vals
            )
            await db.commit()
            return cur.rowcount > 0

    # ── Progress / results ───────────────────────────────────────────

    async def update_progress(
        self,
        job_id: str,
        *,
        completed: int = 0,
        failed: int = 0,
        current_batch: int | None = None,
    ) -> None:
        """Apply counter increments against the persisted progress."""
        db = await self._conn()
        async with self._lock:
            await db.execute(
                _PROGRESS_SQL,
                {
                    "dc": max(0, completed),
                    "df": max(0, failed),
                    "cb": current_batch,
                    "now": utcnow_iso(),
                    "job_id": job_id,
                },
            )
            await db.commit()

    async def upsert_result(self, job_id: str, result: ItemResult) -> None:
        """Insert or replace the result row for ``result.item_id``."""
        db = await self._conn()
        async with self._lock:
            await self._write_result(db, job_id, result)
            await db.execute(
                "UPDATE jobs SET updated_at = ?, version = version + 1 WHERE job_id = ?",
                (utcnow_iso(), job_id),
            )
            await db.commit()

    async def record_item_outcome(self, job_id: str, result: ItemResult) -> None:
        """Upsert a terminal item result and bump the matching counter in one transaction."""
        if not result.is_terminal:
            raise ValueError(f"Item result for {result.item_id} is not terminal: {result.status.value}")
        done = result.status == ItemStatus.completed
        db = await self._conn()
        async with self._lock:
            try:
                await self._write_result(db, job_id, result)
                await db.execute(
                    _PROGRESS_SQL,
                    {
                        "dc": 1 if done else 0,
                        "df": 0 if done else 1,
                        "cb": None,
                        "now": utcnow_iso(),
                        "job_id": job_id,
                    },
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    async def _write_result(db: aiosqlite.Connection, job_id: str, result: ItemResult) -> None:
        await db.execute(
            _UPSERT_RESULT_SQL,
            (
                job_id,
                result.item_id,
                result.status.value,
                result.strategy,
                json.dumps(result.payload) if result.payload is not None else None,
                result.error.model_dump_json() if result.error is not None else None,
                result.processed_at,
                utcnow_iso(),
            ),
        )

    @staticmethod
    def _row_to_result(row, description) -> ItemResult:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        return ItemResult(
            item_id=d["item_id"],
            status=ItemStatus(d["status"]),
            strategy=d.get("strategy"),
            payload=json.loads(d["payload"]) if d.get("payload") else None,
            error=ItemError.model_validate_json(d["error"]) if d.get("error") else None,
            processed_at=d.get("processed_at"),
        )

    @staticmethod
    def _row_to_record(row, description, results: Dict[str, ItemResult] | None = None) -> JobRecord:
        cols = [d[0] for d in description]
        d = dict(zip(cols, row))
        return JobRecord(
            job_id=d["job_id"],
            owner_id=d["owner_id"],
            item_ids=json.loads(d["item_ids"]),
            options=JobOptions.model_validate_json(d.get("options") or "{}"),
            status=JobStatus(d["status"]),
            progress=JobProgress(
                total=d["total"],
                completed=d["completed"],
                failed=d["failed"],
                current_batch=d["current_batch"],
            ),
            results=results or {},
            created_at=d["created_at"],
            updated_at=d["updated_at"],
            started_at=d.get("started_at"),
            completed_at=d.get("completed_at"),
            error=d.get("error"),
            version=d["version"],
        )
