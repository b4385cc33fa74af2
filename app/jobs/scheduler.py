"""
Kickoff-relative job planning.

Every non-terminal match gets the same job set, keyed by deterministic ids:

    analysis-<id>                T - 6h
    predictions-<id>             T - 30m
    predictions-<id>-retry       T - 5m
    live-monitor-<id>            T

Execution times already in the past are enqueued for immediate execution. Only the match
status gates scheduling, never the kickoff time, so a catch-up pass after downtime still
produces every job that has not run yet.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.logger import get_logger
from app.core.timeutils import utcnow
from app.data.mappers import LIVE, SCHEDULED
from app.services.matches import Match, overdue_matches, upcoming_matches

log = get_logger("jobs.scheduler")


class SchedulingError(RuntimeError):
    pass


@dataclass(frozen=True)
class PlannedJob:
    job_type: str
    execute_at: datetime
    suffix: str | None = None
    payload: dict = field(default_factory=dict)


def plan_match_jobs(match: Match, *, now: datetime | None = None) -> list[PlannedJob]:
    if not match.schedulable:
        return []
    now = now or utcnow()
    if match.status == LIVE:
        return [PlannedJob("live-monitor", now, payload={"poll": 0})]
    if match.status != SCHEDULED:
        return []
    kickoff = match.kickoff
    return [
        PlannedJob("analysis", kickoff - timedelta(minutes=int(settings.analysis_offset_minutes))),
        PlannedJob("predictions", kickoff - timedelta(minutes=int(settings.predictions_offset_minutes))),
        PlannedJob(
            "predictions",
            kickoff - timedelta(minutes=int(settings.predictions_retry_offset_minutes)),
            suffix="retry",
            payload={"final": True},
        ),
        PlannedJob("live-monitor", kickoff, payload={"poll": 0}),
    ]


class MatchScheduler:
    def __init__(
        self,
        queue,
        session_factory=SessionLocal,
        *,
        retries: int | None = None,
        backoff_seconds: float | None = None,
        clock=utcnow,
        sleep=asyncio.sleep,
    ):
        self.queue = queue
        self._session_factory = session_factory
        self.retries = int(retries if retries is not None else settings.scheduling_retries)
        self.backoff_seconds = float(backoff_seconds if backoff_seconds is not None else settings.scheduling_backoff_seconds)
        self._clock = clock
        self._sleep = sleep

    async def schedule_match(self, match: Match) -> list[str]:
        """Enqueue the match's job set; returns the ids of newly created jobs."""
        now = self._clock()
        created = []
        for planned in plan_match_jobs(match, now=now):
            if await self.queue.enqueue(
                planned.job_type,
                match.id,
                planned.execute_at,
                suffix=planned.suffix,
                payload=planned.payload,
            ):
                created.append(f"{planned.job_type}-{match.id}" + (f"-{planned.suffix}" if planned.suffix else ""))
        if created:
            log.info("match_scheduled match_id=%s kickoff=%s created=%s", match.id, match.kickoff.isoformat(), created)
        return created

    async def schedule_with_backoff(self, match: Match) -> list[str]:
        attempt = 0
        while True:
            try:
                return await self.schedule_match(match)
            except Exception as exc:
                if attempt >= self.retries:
                    log.error(
                        "scheduling_retries_exhausted match_id=%s attempts=%s error=%s", match.id, attempt + 1, exc
                    )
                    raise SchedulingError(f"could not schedule match {match.id}: {exc}") from exc
                delay = self.backoff_seconds * (2 ** attempt)
                log.warning("scheduling_retry match_id=%s attempt=%s delay=%.1fs error=%s", match.id, attempt + 1, delay, exc)
                await self._sleep(delay)
                attempt += 1

    async def resume_live_monitor(self, match: Match) -> bool:
        """A live or kicked-off match without an active monitor job gets a fresh polling chain."""
        if await self.queue.has_active("live-monitor", match.id):
            return False
        chain = f"resume{self._clock():%Y%m%d%H%M}"
        created = await self.queue.enqueue(
            "live-monitor", match.id, self._clock(), suffix=chain, payload={"poll": 0, "chain": chain}
        )
        if created:
            log.warning("live_monitor_resumed match_id=%s chain=%s", match.id, chain)
        return created

    async def catch_up(self) -> dict:
        now = self._clock()
        async with self._session_factory() as session:
            matches = await upcoming_matches(session, now=now, window_hours=int(settings.catch_up_window_hours))
            stuck = await overdue_matches(session, now=now)

        created = 0
        failed: list[int] = []
        for match in matches:
            try:
                created += len(await self.schedule_with_backoff(match))
            except SchedulingError:
                failed.append(match.id)

        resumed = 0
        for match in stuck:
            try:
                if await self.resume_live_monitor(match):
                    resumed += 1
            except Exception as exc:
                log.error("live_monitor_resume_failed match_id=%s error=%s", match.id, exc)
                failed.append(match.id)

        result = {"matches": len(matches), "created": created, "live_resumed": resumed, "failed": failed}
        log.info(
            "catch_up_done matches=%s created=%s live_resumed=%s failed=%s", len(matches), created, resumed, len(failed)
        )
        if failed:
            raise SchedulingError(f"catch-up could not schedule matches {failed}")
        return result

    async def cancel_match(self, match_id: int) -> int:
        return await self.queue.cancel_match_jobs(match_id)
