from __future__ import annotations

from app.core.config import settings
from app.core.logger import get_logger
from app.core.timeutils import utcnow
from app.jobs import predictions
from app.llm.registry import configured_model_ids
from app.services.matches import matches_missing_pipeline_data, unsettled_finished_matches

log = get_logger("jobs.backfill")


async def scan(ctx, session) -> dict:
    """Enqueue hour-stamped jobs for upcoming matches with gaps and finished matches never settled."""
    now = utcnow()
    stamp = f"backfill{now:%Y%m%d%H}"
    gaps = await matches_missing_pipeline_data(
        session, now=now, window_hours=int(settings.backfill_window_hours), model_ids=configured_model_ids()
    )
    unsettled = await unsettled_finished_matches(session)

    analysis_jobs = 0
    prediction_jobs = 0
    for gap in gaps:
        if not gap["has_analysis"] and await ctx.queue.enqueue("analysis", gap["match_id"], now, suffix=stamp):
            analysis_jobs += 1
        if gap["missing_models"] and await ctx.queue.enqueue(
            "backfill", gap["match_id"], now, suffix=stamp, payload={"missing_models": gap["missing_models"]}
        ):
            prediction_jobs += 1

    settlement_jobs = 0
    for match in unsettled:
        if await ctx.queue.enqueue("settlement", match.id, now, suffix=stamp):
            settlement_jobs += 1

    log.info(
        "backfill_scan_done gaps=%s analysis=%s predictions=%s settlement=%s",
        len(gaps),
        analysis_jobs,
        prediction_jobs,
        settlement_jobs,
    )
    return {
        "gaps": len(gaps),
        "analysis_jobs": analysis_jobs,
        "prediction_jobs": prediction_jobs,
        "settlement_jobs": settlement_jobs,
    }


async def run(job, ctx) -> dict:
    return await predictions.run(job, ctx)
