from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import text

from app.core.config import settings
from app.core.db import SessionLocal
from app.core.logger import get_logger
from app.core.timeutils import to_utc, utcnow

log = get_logger("services.model_health")

_REASON_MAX_LEN = 500


@dataclass(frozen=True)
class ModelHealth:
    model_id: str
    active: bool
    auto_disabled: bool
    consecutive_failures: int
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    failure_reason: str | None = None

    def as_dict(self) -> dict:
        return {
            "model_id": self.model_id,
            "active": self.active,
            "auto_disabled": self.auto_disabled,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "failure_reason": self.failure_reason,
        }


class ModelHealthTracker:
    """
    Consecutive-failure bookkeeping on the `models` table.

    A model is auto-disabled when its counter reaches `threshold`. Recovery re-enables it
    after `cooldown_minutes` with the counter at `threshold - 1`, so one more failure
    disables it again: a single probe.
    """

    def __init__(
        self,
        session_factory=SessionLocal,
        *,
        invalidator=None,
        threshold: int | None = None,
        cooldown_minutes: int | None = None,
    ):
        self._session_factory = session_factory
        self.invalidator = invalidator
        self.threshold = int(threshold or settings.auto_disable_threshold)
        self.cooldown_minutes = int(cooldown_minutes or settings.auto_disable_cooldown_minutes)

    async def _notify(self, model_id: str, active: bool, changed_at) -> None:
        if self.invalidator is not None:
            await self.invalidator.model_changed(model_id, active, changed_at)

    async def sync_registry(self, specs) -> int:
        """Insert registry models missing from the table; never touches health columns."""
        async with self._session_factory() as session:
            for spec in specs:
                await session.execute(
                    text(
                        """
                        INSERT INTO models(id, backend, display_name, tier, active)
                        VALUES(:id, :backend, :name, :tier, true)
                        ON CONFLICT (id) DO UPDATE SET
                          backend=EXCLUDED.backend,
                          display_name=EXCLUDED.display_name,
                          tier=EXCLUDED.tier
                        """
                    ),
                    {"id": spec.id, "backend": spec.backend, "name": spec.display_name, "tier": spec.tier},
                )
            await session.commit()
        return len(specs)

    async def snapshot(self) -> dict[str, ModelHealth]:
        async with self._session_factory() as session:
            res = await session.execute(
                text(
                    """
                    SELECT id, active, auto_disabled, consecutive_failures,
                           last_failure_at, last_success_at, failure_reason
                    FROM models
                    ORDER BY id
                    """
                )
            )
            rows = res.fetchall()
        return {
            row.id: ModelHealth(
                model_id=row.id,
                active=bool(row.active),
                auto_disabled=bool(row.auto_disabled),
                consecutive_failures=int(row.consecutive_failures or 0),
                last_failure_at=to_utc(row.last_failure_at),
                last_success_at=to_utc(row.last_success_at),
                failure_reason=row.failure_reason,
            )
            for row in rows
        }

    async def record_success(self, model_id: str) -> None:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    text(
                        """
                        WITH prev AS (
                          SELECT id, auto_disabled FROM models WHERE id=:id FOR UPDATE
                        )
                        UPDATE models m
                        SET consecutive_failures=0,
                            last_success_at=now(),
                            failure_reason=NULL,
                            active = CASE WHEN prev.auto_disabled THEN true ELSE m.active END,
                            auto_disabled=false,
                            updated_at=now()
                        FROM prev
                        WHERE m.id=prev.id
                        RETURNING prev.auto_disabled AS was_disabled, m.updated_at
                        """
                    ),
                    {"id": model_id},
                )
            ).first()
            await session.commit()
        if row is not None and row.was_disabled:
            log.info("model_reenabled_on_success model=%s", model_id)
            await self._notify(model_id, True, row.updated_at)

    async def record_failure(self, model_id: str, reason: str) -> bool:
        """Atomic increment; returns True when this failure disabled the model."""
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    text(
                        """
                        UPDATE models
                        SET consecutive_failures = consecutive_failures + 1,
                            last_failure_at = now(),
                            failure_reason = :reason,
                            auto_disabled = CASE WHEN consecutive_failures + 1 >= :threshold THEN true ELSE auto_disabled END,
                            active = CASE WHEN consecutive_failures + 1 >= :threshold THEN false ELSE active END,
                            updated_at = now()
                        WHERE id=:id
                        RETURNING consecutive_failures, updated_at
                        """
                    ),
                    {"id": model_id, "reason": (reason or "")[:_REASON_MAX_LEN], "threshold": self.threshold},
                )
            ).first()
            await session.commit()
        if row is None:
            log.warning("model_failure_unknown_model model=%s", model_id)
            return False
        disabled_now = int(row.consecutive_failures) == self.threshold
        if disabled_now:
            log.warning(
                "model_auto_disabled model=%s failures=%s reason=%s", model_id, row.consecutive_failures, reason
            )
            await self._notify(model_id, False, row.updated_at)
        return disabled_now

    async def set_active(self, model_id: str, active: bool) -> ModelHealth | None:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    text(
                        """
                        UPDATE models
                        SET active=:active,
                            auto_disabled=false,
                            consecutive_failures = CASE WHEN :active THEN 0 ELSE consecutive_failures END,
                            updated_at=now()
                        WHERE id=:id
                        RETURNING id, active, auto_disabled, consecutive_failures,
                                  last_failure_at, last_success_at, failure_reason, updated_at
                        """
                    ),
                    {"id": model_id, "active": bool(active)},
                )
            ).first()
            await session.commit()
        if row is None:
            return None
        log.info("model_active_set model=%s active=%s", model_id, bool(active))
        await self._notify(model_id, bool(active), row.updated_at)
        return ModelHealth(
            model_id=row.id,
            active=bool(row.active),
            auto_disabled=bool(row.auto_disabled),
            consecutive_failures=int(row.consecutive_failures or 0),
            last_failure_at=to_utc(row.last_failure_at),
            last_success_at=to_utc(row.last_success_at),
            failure_reason=row.failure_reason,
        )

    async def recover(self, now: datetime | None = None) -> list[str]:
        cutoff = (now or utcnow()) - timedelta(minutes=self.cooldown_minutes)
        async with self._session_factory() as session:
            res = await session.execute(
                text(
                    """
                    UPDATE models
                    SET active=true,
                        auto_disabled=false,
                        consecutive_failures=:probe,
                        updated_at=now()
                    WHERE auto_disabled=true
                      AND last_failure_at IS NOT NULL
                      AND last_failure_at < :cutoff
                    RETURNING id, updated_at
                    """
                ),
                {"probe": max(0, self.threshold - 1), "cutoff": cutoff},
            )
            rows = res.fetchall()
            await session.commit()
        for row in rows:
            log.info("model_recovered model=%s probe_failures=%s", row.id, self.threshold - 1)
            await self._notify(row.id, True, row.updated_at)
        return [row.id for row in rows]
