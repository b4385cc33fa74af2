from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import get_logger
from app.services.scoring import Quotas, calculate_quotas, score_prediction

log = get_logger("services.settlement")


class SettlementRetryableError(RuntimeError):
    """Upstream pipeline state is incomplete; the job queue should retry."""


@dataclass(frozen=True)
class SettlementLine:
    model_id: str
    home_score: int
    away_score: int
    points: int

    def as_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "home_score": self.home_score,
            "away_score": self.away_score,
            "points": self.points,
        }


@dataclass
class SettlementResult:
    match_id: int
    status: str
    reason: str | None = None
    home_score: int | None = None
    away_score: int | None = None
    quotas: Quotas | None = None
    lines: list[SettlementLine] = field(default_factory=list)

    @property
    def settled(self) -> bool:
        return self.status == "settled"

    def output(self) -> list[dict]:
        return [line.as_dict() for line in self.lines]


async def _lock_match(session: AsyncSession, match_id: int):
    return (
        await session.execute(
            text(
                """
                SELECT id, status, home_score, away_score, settled_at
                FROM matches
                WHERE id=:id
                FOR UPDATE
                """
            ),
            {"id": match_id},
        )
    ).first()


async def _lock_predictions(session: AsyncSession, match_id: int) -> list:
    res = await session.execute(
        text(
            """
            SELECT model_id, predicted_home, predicted_away
            FROM predictions
            WHERE match_id=:id
              AND predicted_home IS NOT NULL
              AND predicted_away IS NOT NULL
            ORDER BY model_id
            FOR UPDATE
            """
        ),
        {"id": match_id},
    )
    return res.fetchall()


async def _has_analysis(session: AsyncSession, match_id: int) -> bool:
    row = (
        await session.execute(text("SELECT 1 AS ok FROM match_analysis WHERE match_id=:id"), {"id": match_id})
    ).first()
    return row is not None


async def settle_match(session: AsyncSession, match_id: int) -> SettlementResult:
    """
    Score every stored prediction of a finished match.

    The match row and its predictions are locked FOR UPDATE, so concurrent attempts for
    the same match serialize; points are always overwritten with the values derived from
    the current result, so a rerun yields identical rows.
    """
    match = await _lock_match(session, match_id)
    if match is None:
        await session.rollback()
        return SettlementResult(match_id=match_id, status="skipped", reason="match_not_found")
    if match.status != "finished" or match.home_score is None or match.away_score is None:
        await session.rollback()
        return SettlementResult(match_id=match_id, status="skipped", reason=f"match_not_finished status={match.status}")

    predictions = await _lock_predictions(session, match_id)
    if not predictions:
        await session.rollback()
        log.info("settlement_skipped_no_predictions match_id=%s", match_id)
        return SettlementResult(match_id=match_id, status="skipped", reason="no_predictions")

    if not await _has_analysis(session, match_id):
        await session.rollback()
        raise SettlementRetryableError(f"match {match_id} has predictions but no stored analysis")

    actual_home, actual_away = int(match.home_score), int(match.away_score)
    quotas = calculate_quotas((int(p.predicted_home), int(p.predicted_away)) for p in predictions)
    lines: list[SettlementLine] = []
    for pred in predictions:
        breakdown = score_prediction(int(pred.predicted_home), int(pred.predicted_away), actual_home, actual_away, quotas)
        await session.execute(
            text(
                """
                UPDATE predictions
                SET points=:points,
                    tendency_points=:tendency_points,
                    goal_diff_bonus=:goal_diff_bonus,
                    exact_score_bonus=:exact_score_bonus,
                    status='scored',
                    scored_at=COALESCE(scored_at, now())
                WHERE match_id=:match_id AND model_id=:model_id
                """
            ),
            {
                "points": breakdown.total,
                "tendency_points": breakdown.tendency_points,
                "goal_diff_bonus": breakdown.goal_diff_bonus,
                "exact_score_bonus": breakdown.exact_score_bonus,
                "match_id": match_id,
                "model_id": pred.model_id,
            },
        )
        lines.append(
            SettlementLine(
                model_id=pred.model_id,
                home_score=int(pred.predicted_home),
                away_score=int(pred.predicted_away),
                points=breakdown.total,
            )
        )

    await session.execute(
        text(
            """
            UPDATE matches
            SET quota_home=:qh, quota_draw=:qd, quota_away=:qa,
                settled_at=COALESCE(settled_at, now())
            WHERE id=:id
            """
        ),
        {"qh": quotas.home, "qd": quotas.draw, "qa": quotas.away, "id": match_id},
    )
    await session.commit()
    log.info(
        "settlement_done match_id=%s score=%s-%s predictions=%s quotas=%s/%s/%s",
        match_id,
        actual_home,
        actual_away,
        len(lines),
        quotas.home,
        quotas.draw,
        quotas.away,
    )
    return SettlementResult(
        match_id=match_id,
        status="settled",
        home_score=actual_home,
        away_score=actual_away,
        quotas=quotas,
        lines=lines,
    )


async def settlement_output(session: AsyncSession, match_id: int) -> list[dict]:
    res = await session.execute(
        text(
            """
            SELECT model_id, predicted_home, predicted_away, points
            FROM predictions
            WHERE match_id=:id AND status='scored'
            ORDER BY points DESC, model_id
            """
        ),
        {"id": match_id},
    )
    return [
        {
            "model_id": row.model_id,
            "home_score": int(row.predicted_home),
            "away_score": int(row.predicted_away),
            "points": int(row.points or 0),
        }
        for row in res.fetchall()
    ]
