"""
Kicktipp quota scoring.

The tendency quota for an outcome is derived from the share P of predictions that
called it:  quota = MAX / (10 * P) - MAX / 10 + MIN, rounded and clamped to [MIN, MAX].
An outcome nobody called is worth MAX; with no predictions every quota is MIN.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable

QUOTA_MIN = 2
QUOTA_MAX = 6
GOAL_DIFF_BONUS = 1
EXACT_SCORE_BONUS = 3
MAX_POINTS = 10

HOME = "H"
DRAW = "D"
AWAY = "A"


def tendency(home: int, away: int) -> str:
    if home > away:
        return HOME
    if home < away:
        return AWAY
    return DRAW


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def quota_for_share(share: float) -> int:
    if share <= 0:
        return QUOTA_MAX
    raw = QUOTA_MAX / (10 * share) - QUOTA_MAX / 10 + QUOTA_MIN
    return max(QUOTA_MIN, min(QUOTA_MAX, _round_half_up(raw)))


@dataclass(frozen=True)
class Quotas:
    home: int
    draw: int
    away: int

    def for_tendency(self, value: str) -> int:
        return {HOME: self.home, DRAW: self.draw, AWAY: self.away}[value]


def calculate_quotas(predicted: Iterable[tuple[int, int]]) -> Quotas:
    counts = {HOME: 0, DRAW: 0, AWAY: 0}
    for home, away in predicted:
        counts[tendency(home, away)] += 1
    total = sum(counts.values())
    if total == 0:
        return Quotas(QUOTA_MIN, QUOTA_MIN, QUOTA_MIN)
    return Quotas(
        home=quota_for_share(counts[HOME] / total),
        draw=quota_for_share(counts[DRAW] / total),
        away=quota_for_share(counts[AWAY] / total),
    )


@dataclass(frozen=True)
class PointsBreakdown:
    tendency_points: int
    goal_diff_bonus: int
    exact_score_bonus: int
    total: int


def score_prediction(pred_home: int, pred_away: int, actual_home: int, actual_away: int, quotas: Quotas) -> PointsBreakdown:
    actual = tendency(actual_home, actual_away)
    if tendency(pred_home, pred_away) != actual:
        return PointsBreakdown(0, 0, 0, 0)
    tendency_points = quotas.for_tendency(actual)
    goal_diff = GOAL_DIFF_BONUS if (pred_home - pred_away) == (actual_home - actual_away) else 0
    exact = EXACT_SCORE_BONUS if (pred_home, pred_away) == (actual_home, actual_away) else 0
    total = min(MAX_POINTS, tendency_points + goal_diff + exact)
    return PointsBreakdown(tendency_points, goal_diff, exact, total)
