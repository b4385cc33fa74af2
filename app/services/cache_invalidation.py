from __future__ import annotations

import json

from app.core.cache import CacheUnavailable, guarded
from app.core.logger import get_logger
from app.core.timeutils import utcnow

log = get_logger("services.cache_invalidation")

NAMESPACE = "stats"
CHANNEL = f"{NAMESPACE}:invalidate"
_MARKER_TTL_SECONDS = 7 * 24 * 3600


def overall_key() -> str:
    return f"{NAMESPACE}:overall"


def leaderboard_key() -> str:
    return f"{NAMESPACE}:leaderboard"


def match_predictions_key(match_id) -> str:
    return f"{NAMESPACE}:match:{match_id}:predictions"


def model_key(model_id: str) -> str:
    return f"{NAMESPACE}:model:{model_id}"


class CacheInvalidator:
    """Deletes stats keys and publishes the event once per event id."""

    def __init__(self, cache, *, marker_ttl_seconds: int = _MARKER_TTL_SECONDS):
        self.cache = cache
        self.marker_ttl_seconds = int(marker_ttl_seconds)

    async def invalidate(self, event_id: str, keys: list[str], payload: dict | None = None) -> bool:
        try:
            first = await guarded(
                self.cache.set(f"invalidation:{event_id}", utcnow().isoformat(), nx=True, ex=self.marker_ttl_seconds)
            )
            if not first:
                log.debug("cache_invalidation_duplicate event=%s", event_id)
                return False
            if keys:
                await guarded(self.cache.delete(*keys))
            await guarded(self.cache.publish(CHANNEL, json.dumps({"event": event_id, "keys": keys, "payload": payload or {}})))
        except CacheUnavailable as exc:
            log.warning("cache_invalidation_failed event=%s error=%s", event_id, exc)
            return False
        log.info("cache_invalidated event=%s keys=%s", event_id, len(keys))
        return True

    async def match_settled(self, match_id, home_score: int, away_score: int, lines: list[dict] | None = None) -> bool:
        keys = [overall_key(), leaderboard_key(), match_predictions_key(match_id)]
        payload = {"match_id": str(match_id), "settlement": lines or []}
        return await self.invalidate(f"settlement:{match_id}:{home_score}-{away_score}", keys, payload)

    async def model_changed(self, model_id: str, active: bool, changed_at) -> bool:
        state = "enabled" if active else "disabled"
        stamp = changed_at.isoformat() if hasattr(changed_at, "isoformat") else str(changed_at)
        keys = [overall_key(), leaderboard_key(), model_key(model_id)]
        return await self.invalidate(f"model:{model_id}:{state}:{stamp}", keys)
