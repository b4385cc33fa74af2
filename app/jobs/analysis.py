from __future__ import annotations

import httpx

from app.core.logger import get_logger
from app.data.mappers import SCHEDULED
from app.data.providers.api_football import ApiFootballError, extract_analysis, get_fixture_odds, get_fixture_prediction
from app.services.matches import get_match, upsert_analysis

log = get_logger("jobs.analysis")


class AnalysisUnavailableError(RuntimeError):
    pass


async def run(job, ctx) -> dict:
    async with ctx.session_factory() as session:
        match = await get_match(session, job.match_id)
        if match is None:
            return {"skipped": "match_not_found"}
        if match.status != SCHEDULED:
            log.info("analysis_skipped match_id=%s status=%s", match.id, match.status)
            return {"skipped": f"status={match.status}"}

        # Circuit-open and budget-exceeded propagate: the queue defers the job.
        prediction = await get_fixture_prediction(session, match.id, circuit=ctx.circuit, budget=ctx.budget)
        try:
            odds = await get_fixture_odds(session, match.id, circuit=ctx.circuit, budget=ctx.budget)
        except (httpx.HTTPError, ApiFootballError) as exc:
            log.warning("analysis_odds_unavailable match_id=%s error=%s", match.id, exc)
            odds = None

        if prediction is None and odds is None:
            await session.commit()
            raise AnalysisUnavailableError(f"no prediction or odds data for match {match.id}")

        analysis = extract_analysis(prediction, odds)
        await upsert_analysis(session, match.id, analysis, {"prediction": prediction, "odds": odds})
        await session.commit()

    log.info(
        "analysis_stored match_id=%s pct=%s/%s/%s odds=%s",
        match.id,
        analysis["home_win_pct"],
        analysis["draw_pct"],
        analysis["away_win_pct"],
        analysis["odds_home"] is not None,
    )
    return {"match_id": match.id, "has_odds": analysis["odds_home"] is not None}
