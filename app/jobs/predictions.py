from __future__ import annotations

import asyncio

from app.core.config import settings
from app.core.logger import get_logger
from app.core.timeutils import utcnow
from app.data.mappers import SCHEDULED
from app.llm.prompts import build_user_prompt
from app.llm.registry import configured_model_ids
from app.services.budget import record_model_usage
from app.services.cache_invalidation import match_predictions_key
from app.services.matches import get_analysis, get_match, predicted_model_ids, upsert_prediction

log = get_logger("jobs.predictions")


class AnalysisMissingError(RuntimeError):
    pass


async def run(job, ctx) -> dict:
    """
    Collect one prediction per configured model slot for a match.

    Slots that already have a stored prediction are skipped, so the T-5m retry and backfill
    runs only fill gaps. Individual model failures never fail the job.
    """
    final = bool((job.payload or {}).get("final"))
    async with ctx.session_factory() as session:
        match = await get_match(session, job.match_id)
        if match is None:
            return {"skipped": "match_not_found"}
        if match.status != SCHEDULED:
            log.info("predictions_skipped match_id=%s status=%s", match.id, match.status)
            return {"skipped": f"status={match.status}"}
        if match.kickoff <= utcnow():
            log.warning("predictions_skipped_kickoff_passed match_id=%s kickoff=%s", match.id, match.kickoff.isoformat())
            return {"skipped": "kickoff_passed"}

        analysis = await get_analysis(session, match.id)
        if analysis is None:
            raise AnalysisMissingError(f"match {match.id} has no analysis yet")
        existing = await predicted_model_ids(session, match.id)

    slots = [m for m in configured_model_ids() if m not in existing]
    if not slots:
        return {"match_id": match.id, "stored": 0, "already_predicted": len(existing)}

    health = await ctx.health.snapshot()
    disabled = {model_id for model_id, row in health.items() if not row.active}
    prompt = build_user_prompt([match], {str(match.id): analysis})
    sem = asyncio.Semaphore(max(1, int(settings.llm_concurrency)))
    counts = {"stored": 0, "fallbacks": 0}
    failures: dict[str, str] = {}

    async def _slot(model_id: str):
        async with sem:
            outcome = await ctx.orchestrator.predict(model_id, prompt, [str(match.id)], disabled=disabled)
        if not outcome.success or str(match.id) not in outcome.result.predictions:
            failures[outcome.slot_model_id] = outcome.result.failure.value if outcome.result.failure else "unknown"
            return
        # committed per slot: finished slots survive a job timeout
        async with ctx.session_factory() as session:
            await upsert_prediction(session, match_id=match.id, outcome=outcome)
            await record_model_usage(session, model_id=outcome.served_by, cost_usd=outcome.result.cost_usd)
            await session.commit()
        counts["stored"] += 1
        if outcome.used_fallback:
            counts["fallbacks"] += 1

    try:
        await asyncio.gather(*(_slot(m) for m in slots))
    finally:
        if counts["stored"]:
            await ctx.invalidator.invalidate(
                f"predictions:{match.id}:{job.id}:{job.attempts}", [match_predictions_key(match.id)]
            )

    stored = counts["stored"]
    if final and stored == 0 and not existing:
        log.error("predictions_all_models_failed match_id=%s slots=%s failures=%s", match.id, len(slots), failures)
    log.info(
        "predictions_done match_id=%s slots=%s stored=%s fallbacks=%s failed=%s",
        match.id,
        len(slots),
        stored,
        counts["fallbacks"],
        len(failures),
    )
    return {
        "match_id": match.id,
        "slots": len(slots),
        "stored": stored,
        "fallbacks": counts["fallbacks"],
        "failures": failures,
    }
