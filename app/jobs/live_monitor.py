from __future__ import annotations

from datetime import timedelta

from app.core.config import settings
from app.core.logger import get_logger
from app.core.timeutils import utcnow
from app.data.mappers import CANCELLED, FINISHED, POSTPONED, normalize_status, parse_score
from app.data.providers.api_football import ApiFootballError, get_fixture
from app.services.matches import get_match, update_match_state

log = get_logger("jobs.live_monitor")


def _poll_suffix(chain: str | None, poll: int) -> str:
    return f"{chain}-poll-{poll}" if chain else f"poll-{poll}"


async def run(job, ctx) -> dict:
    payload = job.payload or {}
    poll = int(payload.get("poll", 0))
    chain = payload.get("chain")

    async with ctx.session_factory() as session:
        match = await get_match(session, job.match_id)
        if match is None:
            return {"skipped": "match_not_found"}
        if match.status in (POSTPONED, CANCELLED):
            return {"stopped": match.status}
        status = match.status
        if status != FINISHED:
            fixture = await get_fixture(session, match.id, circuit=ctx.circuit, budget=ctx.budget)
            if fixture is None:
                await session.commit()
                raise ApiFootballError(f"fixture {match.id} not returned by API-Football")
            status = normalize_status(((fixture.get("fixture") or {}).get("status") or {}).get("short"))
            goals = fixture.get("goals") or {}
            changed = await update_match_state(
                session,
                match.id,
                status=status,
                home_score=parse_score(goals.get("home")),
                away_score=parse_score(goals.get("away")),
            )
            await session.commit()
            if changed:
                log.info("match_status_changed match_id=%s from=%s to=%s", match.id, match.status, status)

    if status == FINISHED:
        await ctx.queue.enqueue("settlement", match.id, utcnow())
        return {"match_id": match.id, "status": status, "settlement_enqueued": True}
    if status in (POSTPONED, CANCELLED):
        await ctx.scheduler.cancel_match(match.id)
        return {"match_id": match.id, "status": status, "stopped": True}

    next_poll = poll + 1
    if next_poll >= int(settings.live_max_polls):
        log.warning("live_monitor_max_polls match_id=%s polls=%s status=%s", match.id, next_poll, status)
        return {"match_id": match.id, "status": status, "exhausted": True}

    await ctx.queue.enqueue(
        "live-monitor",
        match.id,
        utcnow() + timedelta(seconds=int(settings.live_poll_interval_seconds)),
        suffix=_poll_suffix(chain, next_poll),
        payload={"poll": next_poll, "chain": chain} if chain else {"poll": next_poll},
    )
    return {"match_id": match.id, "status": status, "next_poll": next_poll}
