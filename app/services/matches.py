from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.timeutils import to_utc
from app.data.mappers import FINISHED, LIVE, SCHEDULED, TERMINAL_STATUSES


@dataclass(frozen=True)
class Match:
    id: int
    home_team: str
    away_team: str
    competition: str | None
    kickoff: datetime
    status: str
    home_score: int | None = None
    away_score: int | None = None
    settled_at: datetime | None = None

    @property
    def schedulable(self) -> bool:
        return self.status not in TERMINAL_STATUSES


@dataclass(frozen=True)
class MatchAnalysis:
    match_id: int
    home_win_pct: float | None = None
    draw_pct: float | None = None
    away_win_pct: float | None = None
    odds_home: float | None = None
    odds_draw: float | None = None
    odds_away: float | None = None
    h2h_summary: str | None = None
    advice: str | None = None


_MATCH_COLUMNS = "id, home_team, away_team, competition, kickoff, status, home_score, away_score, settled_at"


def _row_to_match(row) -> Match:
    return Match(
        id=int(row.id),
        home_team=row.home_team,
        away_team=row.away_team,
        competition=row.competition,
        kickoff=to_utc(row.kickoff),
        status=row.status,
        home_score=int(row.home_score) if row.home_score is not None else None,
        away_score=int(row.away_score) if row.away_score is not None else None,
        settled_at=to_utc(row.settled_at),
    )


async def get_match(session: AsyncSession, match_id: int) -> Match | None:
    row = (
        await session.execute(text(f"SELECT {_MATCH_COLUMNS} FROM matches WHERE id=:id"), {"id": int(match_id)})
    ).first()
    return _row_to_match(row) if row else None


async def upcoming_matches(session: AsyncSession, *, now: datetime, window_hours: int, lookback_hours: int = 6) -> list[Match]:
    """Non-terminal matches kicking off inside the window, including ones that kicked off recently."""
    res = await session.execute(
        text(
            f"""
            SELECT {_MATCH_COLUMNS}
            FROM matches
            WHERE status IN ('scheduled', 'live')
              AND kickoff >= :since
              AND kickoff <= :until
            ORDER BY kickoff
            """
        ),
        {"since": now - timedelta(hours=lookback_hours), "until": now + timedelta(hours=window_hours)},
    )
    return [_row_to_match(r) for r in res.fetchall()]


async def overdue_matches(session: AsyncSession, *, now: datetime) -> list[Match]:
    """Live matches, plus scheduled ones whose kickoff has passed however long ago."""
    res = await session.execute(
        text(
            f"""
            SELECT {_MATCH_COLUMNS}
            FROM matches
            WHERE status = :live
               OR (status = :scheduled AND kickoff < :now)
            ORDER BY kickoff
            """
        ),
        {"live": LIVE, "scheduled": SCHEDULED, "now": now},
    )
    return [_row_to_match(r) for r in res.fetchall()]


async def unsettled_finished_matches(session: AsyncSession, *, limit: int = 100) -> list[Match]:
    res = await session.execute(
        text(
            f"""
            SELECT {_MATCH_COLUMNS}
            FROM matches m
            WHERE m.status=:status
              AND m.settled_at IS NULL
              AND EXISTS (SELECT 1 FROM predictions p WHERE p.match_id = m.id)
            ORDER BY m.kickoff
            LIMIT :limit
            """
        ),
        {"status": FINISHED, "limit": int(limit)},
    )
    return [_row_to_match(r) for r in res.fetchall()]


async def matches_missing_pipeline_data(session: AsyncSession, *, now: datetime, window_hours: int, model_ids: list[str]) -> list[dict]:
    """Scheduled matches in the window that lack analysis or a prediction from any of `model_ids`."""
    res = await session.execute(
        text(
            """
            SELECT m.id,
                   (a.match_id IS NOT NULL) AS has_analysis,
                   COALESCE(array_agg(p.model_id) FILTER (WHERE p.model_id IS NOT NULL), '{}') AS predicted
            FROM matches m
            LEFT JOIN match_analysis a ON a.match_id = m.id
            LEFT JOIN predictions p ON p.match_id = m.id
            WHERE m.status=:status
              AND m.kickoff > :now
              AND m.kickoff <= :until
            GROUP BY m.id, a.match_id
            ORDER BY m.id
            """
        ),
        {"status": SCHEDULED, "now": now, "until": now + timedelta(hours=window_hours)},
    )
    wanted = set(model_ids)
    out = []
    for row in res.fetchall():
        missing = sorted(wanted - set(row.predicted or []))
        if not row.has_analysis or missing:
            out.append({"match_id": int(row.id), "has_analysis": bool(row.has_analysis), "missing_models": missing})
    return out


async def update_match_state(session: AsyncSession, match_id: int, *, status: str, home_score: int | None, away_score: int | None) -> bool:
    """Returns True when the stored status changed."""
    row = (
        await session.execute(
            text(
                """
                WITH prev AS (SELECT id, status FROM matches WHERE id=:id FOR UPDATE)
                UPDATE matches m
                SET status=:status,
                    home_score=COALESCE(:home, m.home_score),
                    away_score=COALESCE(:away, m.away_score),
                    updated_at=now()
                FROM prev
                WHERE m.id=prev.id
                RETURNING prev.status AS previous_status
                """
            ),
            {"id": int(match_id), "status": status, "home": home_score, "away": away_score},
        )
    ).first()
    return row is not None and row.previous_status != status


async def get_analysis(session: AsyncSession, match_id: int) -> MatchAnalysis | None:
    row = (
        await session.execute(
            text(
                """
                SELECT match_id, home_win_pct, draw_pct, away_win_pct,
                       odds_home, odds_draw, odds_away, h2h_summary, advice
                FROM match_analysis
                WHERE match_id=:id
                """
            ),
            {"id": int(match_id)},
        )
    ).first()
    if row is None:
        return None
    return MatchAnalysis(
        match_id=int(row.match_id),
        home_win_pct=row.home_win_pct,
        draw_pct=row.draw_pct,
        away_win_pct=row.away_win_pct,
        odds_home=row.odds_home,
        odds_draw=row.odds_draw,
        odds_away=row.odds_away,
        h2h_summary=row.h2h_summary,
        advice=row.advice,
    )


async def upsert_analysis(session: AsyncSession, match_id: int, analysis: dict, raw: dict) -> None:
    await session.execute(
        text(
            """
            INSERT INTO match_analysis(
              match_id, home_win_pct, draw_pct, away_win_pct, odds_home, odds_draw, odds_away,
              h2h_summary, advice, raw, fetched_at
            )
            VALUES(
              :match_id, :home_win_pct, :draw_pct, :away_win_pct, :odds_home, :odds_draw, :odds_away,
              :h2h_summary, :advice, CAST(:raw AS jsonb), now()
            )
            ON CONFLICT (match_id) DO UPDATE SET
              home_win_pct=EXCLUDED.home_win_pct,
              draw_pct=EXCLUDED.draw_pct,
              away_win_pct=EXCLUDED.away_win_pct,
              odds_home=EXCLUDED.odds_home,
              odds_draw=EXCLUDED.odds_draw,
              odds_away=EXCLUDED.odds_away,
              h2h_summary=EXCLUDED.h2h_summary,
              advice=EXCLUDED.advice,
              raw=EXCLUDED.raw,
              fetched_at=now()
            """
        ),
        {
            "match_id": int(match_id),
            "home_win_pct": analysis.get("home_win_pct"),
            "draw_pct": analysis.get("draw_pct"),
            "away_win_pct": analysis.get("away_win_pct"),
            "odds_home": analysis.get("odds_home"),
            "odds_draw": analysis.get("odds_draw"),
            "odds_away": analysis.get("odds_away"),
            "h2h_summary": analysis.get("h2h_summary"),
            "advice": analysis.get("advice"),
            "raw": json.dumps(raw, ensure_ascii=False, default=str),
        },
    )


async def predicted_model_ids(session: AsyncSession, match_id: int) -> set[str]:
    res = await session.execute(text("SELECT model_id FROM predictions WHERE match_id=:id"), {"id": int(match_id)})
    return {row.model_id for row in res.fetchall()}


async def upsert_prediction(session: AsyncSession, *, match_id: int, outcome) -> None:
    """One row per (match, slot model); a scored row is never overwritten."""
    result = outcome.result
    pred = result.predictions[str(match_id)]
    await session.execute(
        text(
            """
            INSERT INTO predictions(
              match_id, model_id, predicted_home, predicted_away,
              used_fallback, served_by, relative_cost, cost_usd, raw_response, status, created_at
            )
            VALUES(
              :match_id, :model_id, :home, :away,
              :used_fallback, :served_by, :relative_cost, :cost_usd, :raw, 'pending', now()
            )
            ON CONFLICT (match_id, model_id) DO UPDATE SET
              predicted_home=EXCLUDED.predicted_home,
              predicted_away=EXCLUDED.predicted_away,
              used_fallback=EXCLUDED.used_fallback,
              served_by=EXCLUDED.served_by,
              relative_cost=EXCLUDED.relative_cost,
              cost_usd=EXCLUDED.cost_usd,
              raw_response=EXCLUDED.raw_response
            WHERE predictions.status <> 'scored'
            """
        ),
        {
            "match_id": int(match_id),
            "model_id": outcome.slot_model_id,
            "home": int(pred.home),
            "away": int(pred.away),
            "used_fallback": bool(outcome.used_fallback),
            "served_by": outcome.served_by,
            "relative_cost": float(outcome.relative_cost),
            "cost_usd": float(result.cost_usd or 0.0),
            "raw": (result.raw_response or "")[:4000],
        },
    )
