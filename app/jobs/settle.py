from __future__ import annotations

from app.core.logger import get_logger
from app.services.settlement import settle_match

log = get_logger("jobs.settle")


async def run(job, ctx) -> dict:
    # SettlementRetryableError propagates to the queue's retry path.
    async with ctx.session_factory() as session:
        result = await settle_match(session, job.match_id)

    if not result.settled:
        return {"match_id": job.match_id, "status": result.status, "reason": result.reason}

    await ctx.invalidator.match_settled(result.match_id, result.home_score, result.away_score, result.output())
    return {
        "match_id": result.match_id,
        "status": result.status,
        "predictions": len(result.lines),
        "quotas": [result.quotas.home, result.quotas.draw, result.quotas.away],
    }
