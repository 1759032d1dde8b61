"""Sync job queue — the job state machine over ``sync_jobs``.

States::

    pending -> running -> done
                       -> failed      (retries exhausted, or terminal error)
                       -> pending     (retryable error, with backoff)
                       -> deferred    (budget exhausted, retry_count kept)
    deferred -> pending               (promote_deferred once not_before passes)
    running  -> pending               (lease expired, retry_count kept)
    pending  -> cancelled             (cancel)

A partial unique index allows at most one pending/running/deferred job per
dedupe key. ``claim`` is a single ``UPDATE ... WHERE id IN (SELECT ...)
RETURNING`` statement, so concurrent claimers never receive the same row;
each claimed row carries a lease that the sweeper reclaims if the worker
disappears.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import aiosqlite

from solesync.core.config import QueueConfig
from solesync.core.exceptions import StorageError
from solesync.core.models import (
    PRIORITY_BACKGROUND,
    JobStatus,
    Provider,
    SyncJob,
    make_dedupe_key,
    normalize_sku,
    utcnow,
)
from solesync.ingestion.store import SqliteStore, format_ts, parse_ts

logger = logging.getLogger(__name__)

_ACTIVE = "('pending', 'running', 'deferred')"


def _owner_clause(worker_id: str | None) -> tuple[str, tuple]:
    if worker_id is None:
        return "", ()
    return " AND worker_id = ?", (worker_id,)


def _job_filters(
    status: JobStatus | None, provider: Provider | None, sku: str | None
) -> tuple[str, list]:
    where = ""
    params: list = []
    if status is not None:
        where += " AND status = ?"
        params.append(JobStatus(status).value)
    if provider is not None:
        where += " AND provider = ?"
        params.append(Provider(provider).value)
    if sku is not None:
        where += " AND sku = ?"
        params.append(normalize_sku(sku))
    return where, params


class SyncQueue:
    """Persistent priority queue of SyncJobs with leases and backoff."""

    def __init__(self, store: SqliteStore, config: QueueConfig) -> None:
        self._store = store
        self._config = config

    @property
    def config(self) -> QueueConfig:
        return self._config

    # --- Enqueue ---

    async def enqueue(
        self,
        provider: Provider,
        sku: str,
        size: str | None = None,
        priority: int = PRIORITY_BACKGROUND,
        now: datetime | None = None,
    ) -> int:
        """Create a job, or return the id of the active job for the same key.

        Idempotent per dedupe key. When the existing job is still pending
        and the new request has a higher priority, the job is promoted.
        """
        provider = Provider(provider)
        sku = normalize_sku(sku)
        size = size.strip() if size and size.strip() else None
        key = make_dedupe_key(provider, sku, size)
        ts = format_ts(now or utcnow())

        async with self._store.transaction(table="sync_jobs") as db:
            async with db.execute(
                f"""INSERT INTO sync_jobs
                    (provider, sku, size, dedupe_key, priority, status,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
                    ON CONFLICT (dedupe_key) WHERE status IN {_ACTIVE} DO NOTHING
                    RETURNING id""",
                (provider.value, sku, size, key, priority, ts, ts),
            ) as cursor:
                row = await cursor.fetchone()
            if row is not None:
                logger.info("Enqueued job %d (%s, priority %d)", row["id"], key, priority)
                return row["id"]

            async with db.execute(
                f"""SELECT id, status, priority FROM sync_jobs
                    WHERE dedupe_key = ? AND status IN {_ACTIVE}""",
                (key,),
            ) as cursor:
                existing = await cursor.fetchone()
            if existing is None:
                raise StorageError(
                    f"Dedupe conflict for {key} but no active job found",
                    context={"operation": "insert", "table": "sync_jobs"},
                )
            if existing["status"] == JobStatus.PENDING and priority > existing["priority"]:
                await db.execute(
                    "UPDATE sync_jobs SET priority = ?, updated_at = ? WHERE id = ?",
                    (priority, ts, existing["id"]),
                )
                logger.info(
                    "Raised priority of job %d to %d", existing["id"], priority
                )
            else:
                logger.debug("Job for %s already active as %d", key, existing["id"])
            return existing["id"]

    # --- Claim ---

    async def claim(
        self,
        limit: int,
        provider: Provider | None = None,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> list[SyncJob]:
        """Atomically move up to `limit` runnable pending jobs to running.

        Ordered by priority descending, then creation time ascending.
        """
        if limit < 1:
            return []
        now = now or utcnow()
        ts = format_ts(now)
        lease = format_ts(now + timedelta(seconds=self._config.processing_timeout_seconds))

        provider_clause = ""
        params: list = [lease, ts, ts, worker_id, ts]
        if provider is not None:
            provider_clause = " AND provider = ?"
            params.append(Provider(provider).value)
        params.append(limit)

        rows = await self._store.write(
            f"""UPDATE sync_jobs
                SET status = 'running', leased_until = ?, started_at = ?,
                    updated_at = ?, worker_id = ?
                WHERE id IN (
                    SELECT id FROM sync_jobs
                    WHERE status = 'pending'
                      AND (not_before IS NULL OR not_before <= ?){provider_clause}
                    ORDER BY priority DESC, created_at ASC, id ASC
                    LIMIT ?
                )
                RETURNING *""",
            params,
            table="sync_jobs",
        )
        jobs = sorted(
            (self._row_to_job(r) for r in rows),
            key=lambda j: (-j.priority, j.created_at, j.id),
        )
        if jobs:
            logger.info("Claimed %d jobs (worker=%s)", len(jobs), worker_id)
        return jobs

    # --- Transitions ---

    async def defer(
        self,
        job_id: int,
        not_before: datetime,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Park a running job until `not_before`. Does not consume a retry."""
        owner, owner_params = _owner_clause(worker_id)
        rows = await self._store.write(
            f"""UPDATE sync_jobs
               SET status = 'deferred', not_before = ?, leased_until = NULL,
                   worker_id = NULL, updated_at = ?
               WHERE id = ? AND status = 'running'{owner}
               RETURNING id""",
            (format_ts(not_before), format_ts(now or utcnow()), job_id, *owner_params),
            table="sync_jobs",
        )
        return bool(rows)

    async def complete(
        self, job_id: int, worker_id: str | None = None, now: datetime | None = None
    ) -> bool:
        """Mark a running job done.

        With `worker_id`, only the worker holding the lease can complete it.
        """
        ts = format_ts(now or utcnow())
        owner, owner_params = _owner_clause(worker_id)
        rows = await self._store.write(
            f"""UPDATE sync_jobs
               SET status = 'done', completed_at = ?, updated_at = ?,
                   leased_until = NULL, last_error = NULL
               WHERE id = ? AND status = 'running'{owner}
               RETURNING id""",
            (ts, ts, job_id, *owner_params),
            table="sync_jobs",
        )
        if not rows:
            logger.warning("Job %d was not running under %s when completed", job_id, worker_id)
        return bool(rows)

    async def renew_lease(
        self, job_id: int, worker_id: str | None = None, now: datetime | None = None
    ) -> bool:
        """Push a running job's lease out by another processing timeout.

        Returns False when the job is no longer running under `worker_id`.
        """
        now = now or utcnow()
        lease = now + timedelta(seconds=self._config.processing_timeout_seconds)
        owner, owner_params = _owner_clause(worker_id)
        rows = await self._store.write(
            f"""UPDATE sync_jobs
               SET leased_until = ?, updated_at = ?
               WHERE id = ? AND status = 'running'{owner}
               RETURNING id""",
            (format_ts(lease), format_ts(now), job_id, *owner_params),
            table="sync_jobs",
        )
        return bool(rows)

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the next attempt after `retry_count` prior failures."""
        seconds = min(
            self._config.backoff_base_seconds * (2**retry_count),
            self._config.backoff_max_seconds,
        )
        return timedelta(seconds=seconds)

    async def record_failure(
        self,
        job_id: int,
        error: str,
        retryable: bool = True,
        worker_id: str | None = None,
        now: datetime | None = None,
    ) -> SyncJob | None:
        """Count a failed attempt.

        Retryable failures go back to pending with exponential backoff until
        ``max_attempts`` is reached; then, or for terminal errors, the job
        fails with ``last_error`` set. Returns the updated job, or None if
        the job was not running (or, with `worker_id`, is leased to another
        worker).
        """
        now = now or utcnow()
        ts = format_ts(now)
        owner, owner_params = _owner_clause(worker_id)
        async with self._store.transaction(table="sync_jobs") as db:
            async with db.execute(
                f"SELECT retry_count FROM sync_jobs WHERE id = ? AND status = 'running'{owner}",
                (job_id, *owner_params),
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                logger.warning("Job %d was not running when failure recorded", job_id)
                return None

            prior = row["retry_count"]
            attempts = prior + 1
            if retryable and attempts < self._config.max_attempts:
                not_before = format_ts(now + self.backoff(prior))
                sql = """UPDATE sync_jobs
                         SET status = 'pending', retry_count = ?, not_before = ?,
                             last_error = ?, leased_until = NULL, worker_id = NULL,
                             updated_at = ?
                         WHERE id = ? RETURNING *"""
                params = (attempts, not_before, error, ts, job_id)
            else:
                sql = """UPDATE sync_jobs
                         SET status = 'failed', retry_count = ?, last_error = ?,
                             leased_until = NULL, completed_at = ?, updated_at = ?
                         WHERE id = ? RETURNING *"""
                params = (attempts, error, ts, ts, job_id)
            async with db.execute(sql, params) as cursor:
                updated = await cursor.fetchone()

        job = self._row_to_job(updated)
        if job.status == JobStatus.FAILED:
            logger.warning("Job %d failed after %d attempts: %s", job_id, attempts, error)
        else:
            logger.info(
                "Job %d retry %d scheduled at %s", job_id, attempts, job.not_before
            )
        return job

    async def cancel(self, job_id: int, now: datetime | None = None) -> bool:
        """Cancel a pending job. Running jobs cannot be cancelled."""
        ts = format_ts(now or utcnow())
        rows = await self._store.write(
            """UPDATE sync_jobs
               SET status = 'cancelled', completed_at = ?, updated_at = ?
               WHERE id = ? AND status = 'pending'
               RETURNING id""",
            (ts, ts, job_id),
            table="sync_jobs",
        )
        return bool(rows)

    # --- Sweeps ---

    async def promote_deferred(self, now: datetime | None = None) -> int:
        ts = format_ts(now or utcnow())
        rows = await self._store.write(
            """UPDATE sync_jobs SET status = 'pending', updated_at = ?
               WHERE status = 'deferred' AND (not_before IS NULL OR not_before <= ?)
               RETURNING id""",
            (ts, ts),
            table="sync_jobs",
        )
        if rows:
            logger.info("Promoted %d deferred jobs", len(rows))
        return len(rows)

    async def sweep_expired_leases(self, now: datetime | None = None) -> int:
        """Return abandoned running jobs to pending without consuming a retry."""
        ts = format_ts(now or utcnow())
        rows = await self._store.write(
            """UPDATE sync_jobs
               SET status = 'pending', leased_until = NULL, worker_id = NULL,
                   updated_at = ?
               WHERE status = 'running' AND leased_until < ?
               RETURNING id""",
            (ts, ts),
            table="sync_jobs",
        )
        if rows:
            logger.warning("Reclaimed %d jobs with expired leases", len(rows))
        return len(rows)

    # --- Queries ---

    async def get(self, job_id: int) -> SyncJob | None:
        row = await self._store.fetch_one(
            "SELECT * FROM sync_jobs WHERE id = ?", (job_id,), table="sync_jobs"
        )
        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        provider: Provider | None = None,
        sku: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncJob]:
        where, params = _job_filters(status, provider, sku)
        rows = await self._store.fetch_all(
            f"""SELECT * FROM sync_jobs WHERE 1=1{where}
                ORDER BY priority DESC, created_at ASC, id ASC LIMIT ? OFFSET ?""",
            [*params, limit, offset],
            table="sync_jobs",
        )
        return [self._row_to_job(r) for r in rows]

    async def count_jobs(
        self,
        status: JobStatus | None = None,
        provider: Provider | None = None,
        sku: str | None = None,
    ) -> int:
        where, params = _job_filters(status, provider, sku)
        row = await self._store.fetch_one(
            f"SELECT COUNT(*) AS n FROM sync_jobs WHERE 1=1{where}", params, table="sync_jobs"
        )
        return row["n"] if row else 0

    async def latest_for_sku(self, sku: str) -> dict[Provider, SyncJob]:
        """Most recently updated job per provider for a SKU, any size."""
        rows = await self._store.fetch_all(
            """SELECT * FROM (
                   SELECT *, ROW_NUMBER() OVER (
                       PARTITION BY provider ORDER BY updated_at DESC, id DESC
                   ) AS rn
                   FROM sync_jobs WHERE sku = ?
               ) WHERE rn = 1""",
            (normalize_sku(sku),),
            table="sync_jobs",
        )
        return {Provider(r["provider"]): self._row_to_job(r) for r in rows}

    async def counts(self) -> dict[JobStatus, int]:
        rows = await self._store.fetch_all(
            "SELECT status, COUNT(*) AS n FROM sync_jobs GROUP BY status",
            table="sync_jobs",
        )
        counts = {status: 0 for status in JobStatus}
        for r in rows:
            counts[JobStatus(r["status"])] = r["n"]
        return counts

    @staticmethod
    def _row_to_job(row: aiosqlite.Row) -> SyncJob:
        return SyncJob(
            id=row["id"],
            provider=Provider(row["provider"]),
            sku=row["sku"],
            size=row["size"],
            priority=row["priority"],
            status=JobStatus(row["status"]),
            retry_count=row["retry_count"],
            not_before=parse_ts(row["not_before"]),
            leased_until=parse_ts(row["leased_until"]),
            worker_id=row["worker_id"],
            last_error=row["last_error"],
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
            started_at=parse_ts(row["started_at"]),
            completed_at=parse_ts(row["completed_at"]),
        )
