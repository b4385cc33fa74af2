"""
Postgres-backed pipeline job queue.

Job ids are derived from (job type, match id, optional suffix), and enqueueing is an
`INSERT ... ON CONFLICT DO NOTHING`, so scheduling the same job twice is a no-op even
after it already ran. Workers claim due rows with `FOR UPDATE SKIP LOCKED`; a claimed
job carries a deadline (`locked_until`) after which the reaper hands it back for retry.

Statuses: pending -> running -> completed | retry (failed, waiting for backoff) | dead
(dead-letter set, retry limit reached).
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import text

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.logger import get_logger
from app.core.timeutils import ensure_aware_utc, to_utc, utcnow

log = get_logger("jobs.queue")

JOB_TYPES = ("analysis", "predictions", "live-monitor", "settlement", "backfill")
RETRYABLE_STATUSES = ("retry", "dead")
_ERROR_MAX_LEN = 8000


def job_id(job_type: str, match_id, suffix: str | None = None) -> str:
    if job_type not in JOB_TYPES:
        raise ValueError(f"unknown job type {job_type}")
    base = f"{job_type}-{match_id}"
    return f"{base}-{suffix}" if suffix else base


def backoff_delay(attempts: int, base_seconds: int) -> timedelta:
    return timedelta(seconds=base_seconds * (2 ** max(0, attempts - 1)))


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    match_id: int | None
    attempts: int
    max_attempts: int
    run_at: datetime | None = None
    payload: dict = field(default_factory=dict)


def _row_to_job(row) -> Job:
    payload = row.payload
    if isinstance(payload, str):
        payload = json.loads(payload)
    return Job(
        id=row.id,
        job_type=row.job_type,
        match_id=int(row.match_id) if row.match_id is not None else None,
        attempts=int(row.attempts or 0),
        max_attempts=int(row.max_attempts or 0),
        run_at=to_utc(row.run_at),
        payload=payload or {},
    )


class JobQueue:
    def __init__(
        self,
        session_factory=SessionLocal,
        *,
        max_attempts: int | None = None,
        backoff_base_seconds: int | None = None,
        clock=utcnow,
    ):
        self._session_factory = session_factory
        self.max_attempts = int(max_attempts or settings.job_max_attempts)
        self.backoff_base_seconds = int(backoff_base_seconds or settings.job_backoff_base_seconds)
        self._clock = clock

    async def enqueue(
        self,
        job_type: str,
        match_id,
        execute_at: datetime,
        idempotency_key: str | None = None,
        *,
        suffix: str | None = None,
        payload: dict | None = None,
    ) -> bool:
        """Returns True when a new job row was created; past execution times run immediately."""
        jid = idempotency_key or job_id(job_type, match_id, suffix)
        now = self._clock()
        run_at = max(ensure_aware_utc(execute_at), now)
        async with self._session_factory() as session:
            res = await session.execute(
                text(
                    """
                    INSERT INTO pipeline_jobs(id, job_type, match_id, payload, status, run_at, attempts, max_attempts)
                    VALUES(:id, :job_type, :match_id, CAST(:payload AS jsonb), 'pending', :run_at, 0, :max_attempts)
                    ON CONFLICT (id) DO NOTHING
                    RETURNING id
                    """
                ),
                {
                    "id": jid,
                    "job_type": job_type,
                    "match_id": match_id,
                    "payload": json.dumps(payload or {}),
                    "run_at": run_at,
                    "max_attempts": self.max_attempts,
                },
            )
            created = res.first() is not None
            await session.commit()
        if created:
            log.info("job_enqueued id=%s run_at=%s", jid, run_at.isoformat())
        else:
            log.debug("job_enqueue_noop id=%s", jid)
        return created

    async def claim(self, job_type: str, limit: int, deadline_seconds: int) -> list[Job]:
        if limit <= 0:
            return []
        async with self._session_factory() as session:
            res = await session.execute(
                text(
                    """
                    UPDATE pipeline_jobs j
                    SET status='running',
                        attempts=j.attempts + 1,
                        started_at=now(),
                        locked_until=now() + (:deadline * interval '1 second'),
                        updated_at=now()
                    WHERE j.id IN (
                      SELECT id
                      FROM pipeline_jobs
                      WHERE job_type=:job_type
                        AND status IN ('pending', 'retry')
                        AND run_at <= now()
                      ORDER BY run_at
                      LIMIT :limit
                      FOR UPDATE SKIP LOCKED
                    )
                    RETURNING j.id, j.job_type, j.match_id, j.payload, j.attempts, j.max_attempts, j.run_at
                    """
                ),
                {"job_type": job_type, "limit": int(limit), "deadline": int(deadline_seconds)},
            )
            jobs = [_row_to_job(row) for row in res.fetchall()]
            await session.commit()
        return jobs

    async def complete(self, job: Job, result: dict | None = None) -> None:
        async with self._session_factory() as session:
            await session.execute(
                text(
                    """
                    UPDATE pipeline_jobs
                    SET status='completed', finished_at=now(), locked_until=NULL, last_error=NULL,
                        result=CAST(:result AS jsonb), updated_at=now()
                    WHERE id=:id AND status='running'
                    """
                ),
                {"id": job.id, "result": json.dumps(result or {}, default=str)},
            )
            await session.commit()

    async def fail(self, job: Job, error: str) -> str:
        """Reschedule with exponential backoff, or move to the dead-letter set; returns the new status."""
        error = (error or "")[-_ERROR_MAX_LEN:]
        if job.attempts >= job.max_attempts:
            status = "dead"
            run_at = self._clock()
        else:
            status = "retry"
            run_at = self._clock() + backoff_delay(job.attempts, self.backoff_base_seconds)
        async with self._session_factory() as session:
            await session.execute(
                text(
                    """
                    UPDATE pipeline_jobs
                    SET status=:status, run_at=:run_at, last_error=:error, locked_until=NULL,
                        dead_at = CASE WHEN :status = 'dead' THEN now() ELSE NULL END,
                        updated_at=now()
                    WHERE id=:id AND status='running'
                    """
                ),
                {"id": job.id, "status": status, "run_at": run_at, "error": error},
            )
            await session.commit()
        if status == "dead":
            log.error("job_dead_lettered id=%s attempts=%s error=%s", job.id, job.attempts, error.splitlines()[:1])
            await self._check_dead_letter_threshold()
        else:
            log.warning("job_retry_scheduled id=%s attempts=%s run_at=%s", job.id, job.attempts, run_at.isoformat())
        return status

    async def _check_dead_letter_threshold(self) -> None:
        count = await self.dead_letter_count()
        threshold = int(settings.dead_letter_alert_threshold)
        if threshold > 0 and count >= threshold:
            log.error("dead_letter_threshold_exceeded count=%s threshold=%s", count, threshold)

    async def reap_expired(self) -> int:
        """Running jobs past their deadline are failed back into retry (or dead-lettered)."""
        async with self._session_factory() as session:
            res = await session.execute(
                text(
                    """
                    UPDATE pipeline_jobs
                    SET status = CASE WHEN attempts >= max_attempts THEN 'dead' ELSE 'retry' END,
                        dead_at = CASE WHEN attempts >= max_attempts THEN now() ELSE NULL END,
                        run_at = now(),
                        locked_until = NULL,
                        last_error = 'deadline exceeded',
                        updated_at = now()
                    WHERE status='running' AND locked_until < now()
                    RETURNING id, status
                    """
                )
            )
            rows = res.fetchall()
            await session.commit()
        for row in rows:
            log.warning("job_deadline_exceeded id=%s new_status=%s", row.id, row.status)
        return len(rows)

    async def retry_job(self, jid: str) -> dict | None:
        """Re-enqueue a failed job by id, whether it sits in the retry set or the dead-letter set."""
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    text(
                        """
                        WITH prev AS (
                          SELECT id, status FROM pipeline_jobs
                          WHERE id=:id AND status IN ('retry', 'dead')
                          FOR UPDATE
                        )
                        UPDATE pipeline_jobs j
                        SET status='pending', run_at=now(), attempts=0, dead_at=NULL, updated_at=now()
                        FROM prev
                        WHERE j.id=prev.id
                        RETURNING j.id, j.job_type, j.match_id, prev.status AS previous_status
                        """
                    ),
                    {"id": jid},
                )
            ).first()
            await session.commit()
        if row is None:
            return None
        source = "dead_letter" if row.previous_status == "dead" else "failed"
        log.info("job_retried id=%s source=%s", row.id, source)
        return {"id": row.id, "job_type": row.job_type, "match_id": row.match_id, "source": source}

    async def cancel_match_jobs(self, match_id) -> int:
        async with self._session_factory() as session:
            res = await session.execute(
                text(
                    """
                    DELETE FROM pipeline_jobs
                    WHERE match_id=:match_id AND status IN ('pending', 'retry')
                    """
                ),
                {"match_id": match_id},
            )
            await session.commit()
        removed = int(res.rowcount or 0)
        if removed:
            log.info("match_jobs_cancelled match_id=%s removed=%s", match_id, removed)
        return removed

    async def has_active(self, job_type: str, match_id) -> bool:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    text(
                        """
                        SELECT 1 AS ok FROM pipeline_jobs
                        WHERE job_type=:job_type AND match_id=:match_id
                          AND status IN ('pending', 'running', 'retry')
                        LIMIT 1
                        """
                    ),
                    {"job_type": job_type, "match_id": match_id},
                )
            ).first()
        return row is not None

    async def dead_letter(self, *, limit: int = 50, offset: int = 0) -> list[dict]:
        async with self._session_factory() as session:
            res = await session.execute(
                text(
                    """
                    SELECT id, job_type, match_id, payload, attempts, last_error, dead_at
                    FROM pipeline_jobs
                    WHERE status='dead'
                    ORDER BY dead_at DESC NULLS LAST
                    LIMIT :limit OFFSET :offset
                    """
                ),
                {"limit": int(limit), "offset": int(offset)},
            )
            rows = res.fetchall()
        return [
            {
                "id": row.id,
                "job_type": row.job_type,
                "match_id": row.match_id,
                "payload": row.payload,
                "attempts": int(row.attempts or 0),
                "error": row.last_error,
                "dead_at": row.dead_at.isoformat() if row.dead_at is not None else None,
            }
            for row in rows
        ]

    async def dead_letter_count(self) -> int:
        async with self._session_factory() as session:
            row = (await session.execute(text("SELECT COUNT(*) AS cnt FROM pipeline_jobs WHERE status='dead'"))).first()
        return int(row.cnt or 0) if row else 0

    async def purge_dead_letter(self, *, older_than_days: int | None = None) -> int:
        days = int(older_than_days if older_than_days is not None else settings.dead_letter_retention_days)
        cutoff = self._clock() - timedelta(days=days)
        async with self._session_factory() as session:
            res = await session.execute(
                text("DELETE FROM pipeline_jobs WHERE status='dead' AND dead_at < :cutoff"),
                {"cutoff": cutoff},
            )
            await session.commit()
        return int(res.rowcount or 0)
