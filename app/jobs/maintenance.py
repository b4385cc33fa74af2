from __future__ import annotations

from datetime import timedelta

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logger import get_logger
from app.core.timeutils import utcnow

log = get_logger("jobs.maintenance")

COMPLETED_JOB_RETENTION_DAYS = 14


async def _cleanup_api_cache(session: AsyncSession) -> dict:
    res_err = await session.execute(
        text(
            """
            DELETE FROM api_cache
            WHERE (payload ? 'errors')
              AND payload->'errors' IS NOT NULL
              AND payload->'errors'::text NOT IN ('{}','[]','null')
            """
        )
    )
    res = await session.execute(text("DELETE FROM api_cache WHERE expires_at <= now()"))
    return {
        "api_cache_deleted_error": int(res_err.rowcount or 0),
        "api_cache_deleted_expired": int(res.rowcount or 0),
    }


async def _cleanup_job_runs(session: AsyncSession) -> dict:
    days = int(settings.job_runs_retention_days or 0)
    if days <= 0:
        return {"job_runs_deleted": 0}
    cutoff = utcnow() - timedelta(days=days)
    res = await session.execute(
        text(
            """
            DELETE FROM job_runs
            WHERE finished_at IS NOT NULL
              AND finished_at < :cutoff
            """
        ),
        {"cutoff": cutoff},
    )
    return {"job_runs_deleted": int(res.rowcount or 0)}


async def _cleanup_pipeline_jobs(session: AsyncSession) -> dict:
    # Completed rows are kept long enough to keep enqueue idempotent around each match.
    completed_cutoff = utcnow() - timedelta(days=COMPLETED_JOB_RETENTION_DAYS)
    res = await session.execute(
        text("DELETE FROM pipeline_jobs WHERE status='completed' AND finished_at < :cutoff"),
        {"cutoff": completed_cutoff},
    )
    dead_days = int(settings.dead_letter_retention_days or 0)
    dead_deleted = 0
    if dead_days > 0:
        res_dead = await session.execute(
            text("DELETE FROM pipeline_jobs WHERE status='dead' AND dead_at < :cutoff"),
            {"cutoff": utcnow() - timedelta(days=dead_days)},
        )
        dead_deleted = int(res_dead.rowcount or 0)
    return {"completed_jobs_deleted": int(res.rowcount or 0), "dead_letter_deleted": dead_deleted}


async def run(session: AsyncSession) -> dict:
    log.info("maintenance start")
    out: dict = {}
    out.update(await _cleanup_api_cache(session))
    out.update(await _cleanup_job_runs(session))
    out.update(await _cleanup_pipeline_jobs(session))
    await session.commit()
    log.info("maintenance done %s", out)
    return out
