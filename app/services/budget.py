from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import CacheUnavailable, guarded
from app.core.logger import get_logger
from app.core.timeutils import seconds_until_next_utc_midnight, utc_date, utc_day_window, utcnow

log = get_logger("services.budget")

_STATUS_LOG_EVERY = 10
_STATUS_LOG_RATIO = 0.9


class BudgetExceededError(RuntimeError):
    def __init__(self, *, provider: str, used: int, limit: int, resets_at: datetime):
        super().__init__(f"daily budget exceeded for {provider}: used={used} limit={limit} resets_at={resets_at.isoformat()}")
        self.provider = provider
        self.used = int(used)
        self.limit = int(limit)
        self.resets_at = resets_at


@dataclass(frozen=True)
class BudgetDecision:
    allowed: bool
    used: int
    limit: int
    resets_at: datetime
    degraded: bool = False

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    def as_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "resets_at": self.resets_at.isoformat(),
            "degraded": self.degraded,
        }


class BudgetEnforcer:
    """
    Daily request quota per provider backend.

    The counter key is provider + UTC date. Every increment carries `EXPIRE ... NX` in the
    same transaction, so only the first one of the day sets the TTL and Redis drops the key
    at the next UTC midnight. When Redis is unreachable the call is allowed and a
    degraded-mode warning is logged.
    """

    def __init__(self, cache, limits: dict[str, int], *, clock=utcnow):
        self.cache = cache
        self.limits = dict(limits)
        self._clock = clock

    @staticmethod
    def key(provider: str, now: datetime) -> str:
        return f"budget:{provider}:{utc_date(now).isoformat()}"

    def limit(self, provider: str) -> int:
        return int(self.limits.get(provider, 0))

    async def check_and_increment(self, provider: str) -> BudgetDecision:
        now = self._clock()
        _, resets_at = utc_day_window(now)
        limit = self.limit(provider)
        key = self.key(provider, now)
        try:
            # INCR and EXPIRE NX run in one MULTI, so the counter never outlives its day
            pipe = self.cache.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, seconds_until_next_utc_midnight(now), nx=True)
            used, _ = await guarded(pipe.execute())
            used = int(used)
        except CacheUnavailable as exc:
            log.warning("budget_degraded_mode provider=%s error=%s; allowing call", provider, exc)
            return BudgetDecision(allowed=True, used=0, limit=limit, resets_at=resets_at, degraded=True)

        if limit > 0 and used > limit:
            log.warning("budget_exceeded provider=%s used=%s limit=%s", provider, used, limit)
            raise BudgetExceededError(provider=provider, used=used, limit=limit, resets_at=resets_at)

        if used % _STATUS_LOG_EVERY == 0 or (limit > 0 and used >= limit * _STATUS_LOG_RATIO):
            log.info("budget_status provider=%s used=%s limit=%s", provider, used, limit)
        return BudgetDecision(allowed=True, used=used, limit=limit, resets_at=resets_at)

    async def status(self, provider: str) -> BudgetDecision:
        now = self._clock()
        _, resets_at = utc_day_window(now)
        limit = self.limit(provider)
        try:
            raw = await guarded(self.cache.get(self.key(provider, now)))
        except CacheUnavailable:
            return BudgetDecision(allowed=True, used=0, limit=limit, resets_at=resets_at, degraded=True)
        used = int(raw or 0)
        return BudgetDecision(allowed=limit <= 0 or used < limit, used=used, limit=limit, resets_at=resets_at)


async def record_model_usage(session: AsyncSession, *, model_id: str, cost_usd: float, day=None) -> None:
    await session.execute(
        text(
            """
            INSERT INTO model_usage(date, model_id, predictions_count, total_cost, updated_at)
            VALUES(:date, :model_id, 1, :cost, now())
            ON CONFLICT (date, model_id) DO UPDATE SET
              predictions_count = model_usage.predictions_count + 1,
              total_cost = model_usage.total_cost + EXCLUDED.total_cost,
              updated_at = now()
            """
        ),
        {"date": day or utc_date(utcnow()), "model_id": model_id, "cost": float(cost_usd or 0.0)},
    )


async def daily_spend(session: AsyncSession, *, day=None) -> dict:
    res = await session.execute(
        text(
            """
            SELECT model_id, predictions_count, total_cost
            FROM model_usage
            WHERE date=:date
            ORDER BY total_cost DESC
            """
        ),
        {"date": day or utc_date(utcnow())},
    )
    rows = res.fetchall()
    total = sum(float(r.total_cost or 0) for r in rows)
    return {
        "total_cost": round(total, 6),
        "by_model": [
            {"model_id": r.model_id, "predictions": int(r.predictions_count or 0), "cost": float(r.total_cost or 0)}
            for r in rows
        ],
    }
