"""
Per-service circuit breaker with dual persistence.

closed -> open after `failure_threshold` consecutive failures; open -> half-open once
`reset_timeout_seconds` elapsed since the last failure, letting a single probe through;
half-open -> closed on probe success, -> open on probe failure.

State is written to Redis (fresh for `cache_ttl_seconds`) and mirrored to the
`circuit_breaker_states` table. Reads prefer Redis and fall back to the table when Redis
is down or cold. With neither store reachable the breaker reports open.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.cache import CacheUnavailable, guarded
from app.core.config import settings
from app.core.db import SessionLocal
from app.core.logger import get_logger
from app.core.timeutils import to_utc, utcnow

log = get_logger("services.circuit_breaker")

_DURABLE_TIMEOUT_SECONDS = 2.0


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitOpenError(RuntimeError):
    def __init__(self, service: str, retry_after: float):
        super().__init__(f"circuit open for {service}; retry in {retry_after:.0f}s")
        self.service = service
        self.retry_after = retry_after


@dataclass(frozen=True)
class CircuitConfig:
    failure_threshold: int = 5
    reset_timeout_seconds: int = 60


@dataclass
class BreakerState:
    service: str
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    successes: int = 0
    last_failure_at: datetime | None = None
    last_state_change: datetime | None = None
    total_failures: int = 0
    total_successes: int = 0
    last_error: str | None = field(default=None, compare=False)

    def to_json(self) -> str:
        return json.dumps(
            {
                "service": self.service,
                "state": self.state.value,
                "failures": self.failures,
                "successes": self.successes,
                "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
                "last_state_change": self.last_state_change.isoformat() if self.last_state_change else None,
                "total_failures": self.total_failures,
                "total_successes": self.total_successes,
                "last_error": self.last_error,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> "BreakerState":
        data = json.loads(raw)

        def _ts(value):
            return to_utc(datetime.fromisoformat(value)) if value else None

        return cls(
            service=data["service"],
            state=CircuitState(data.get("state") or "closed"),
            failures=int(data.get("failures") or 0),
            successes=int(data.get("successes") or 0),
            last_failure_at=_ts(data.get("last_failure_at")),
            last_state_change=_ts(data.get("last_state_change")),
            total_failures=int(data.get("total_failures") or 0),
            total_successes=int(data.get("total_successes") or 0),
            last_error=data.get("last_error"),
        )

    def as_dict(self) -> dict:
        return json.loads(self.to_json())


def default_circuit_configs() -> dict[str, CircuitConfig]:
    threshold = int(settings.circuit_failure_threshold)
    return {
        "api-football": CircuitConfig(threshold, int(settings.circuit_api_football_reset_timeout_seconds)),
        "together": CircuitConfig(threshold, int(settings.circuit_reset_timeout_seconds)),
        "synthetic": CircuitConfig(threshold, int(settings.circuit_reset_timeout_seconds)),
    }


class SqlCircuitStore:
    """Durable mirror of breaker state; source of truth across Redis restarts."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory

    async def load(self, service: str) -> BreakerState | None:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    text(
                        """
                        SELECT service, state, failures, successes, last_failure_at, last_state_change,
                               total_failures, total_successes
                        FROM circuit_breaker_states
                        WHERE service=:service
                        """
                    ),
                    {"service": service},
                )
            ).first()
        if row is None:
            return None
        return BreakerState(
            service=row.service,
            state=CircuitState(row.state),
            failures=int(row.failures or 0),
            successes=int(row.successes or 0),
            last_failure_at=to_utc(row.last_failure_at),
            last_state_change=to_utc(row.last_state_change),
            total_failures=int(row.total_failures or 0),
            total_successes=int(row.total_successes or 0),
        )

    async def save(self, state: BreakerState) -> None:
        async with self._session_factory() as session:
            await session.execute(
                text(
                    """
                    INSERT INTO circuit_breaker_states(
                      service, state, failures, successes, last_failure_at, last_state_change,
                      total_failures, total_successes, updated_at
                    )
                    VALUES(:service, :state, :failures, :successes, :last_failure_at, :last_state_change,
                           :total_failures, :total_successes, now())
                    ON CONFLICT (service) DO UPDATE SET
                      state=EXCLUDED.state,
                      failures=EXCLUDED.failures,
                      successes=EXCLUDED.successes,
                      last_failure_at=EXCLUDED.last_failure_at,
                      last_state_change=EXCLUDED.last_state_change,
                      total_failures=EXCLUDED.total_failures,
                      total_successes=EXCLUDED.total_successes,
                      updated_at=now()
                    """
                ),
                {
                    "service": state.service,
                    "state": state.state.value,
                    "failures": state.failures,
                    "successes": state.successes,
                    "last_failure_at": state.last_failure_at,
                    "last_state_change": state.last_state_change,
                    "total_failures": state.total_failures,
                    "total_successes": state.total_successes,
                },
            )
            await session.commit()

    async def services(self) -> list[str]:
        async with self._session_factory() as session:
            res = await session.execute(text("SELECT service FROM circuit_breaker_states ORDER BY service"))
            return [row.service for row in res.fetchall()]


class CircuitBreaker:
    def __init__(
        self,
        cache,
        store,
        *,
        configs: dict[str, CircuitConfig] | None = None,
        default_config: CircuitConfig | None = None,
        cache_ttl_seconds: int | None = None,
        clock=utcnow,
    ):
        self.cache = cache
        self.store = store
        self.configs = dict(configs or {})
        self.default_config = default_config or CircuitConfig()
        self.cache_ttl_seconds = int(cache_ttl_seconds or settings.circuit_cache_ttl_seconds)
        self._clock = clock

    def config(self, service: str) -> CircuitConfig:
        return self.configs.get(service, self.default_config)

    @staticmethod
    def _key(service: str) -> str:
        return f"circuit:{service}"

    @staticmethod
    def _probe_key(service: str) -> str:
        return f"circuit:{service}:probe"

    async def _durable(self, coro):
        return await asyncio.wait_for(coro, _DURABLE_TIMEOUT_SECONDS)

    async def _write_cache(self, state: BreakerState) -> bool:
        try:
            await guarded(self.cache.set(self._key(state.service), state.to_json(), ex=self.cache_ttl_seconds))
            return True
        except CacheUnavailable as exc:
            log.warning("circuit_cache_write_failed service=%s error=%s", state.service, exc)
            return False

    async def _read(self, service: str) -> BreakerState | None:
        """Current state; None only when neither store answered."""
        cache_ok = True
        raw = None
        try:
            raw = await guarded(self.cache.get(self._key(service)))
        except CacheUnavailable as exc:
            cache_ok = False
            log.warning("circuit_cache_unavailable service=%s error=%s", service, exc)
        if raw:
            return BreakerState.from_json(raw)

        try:
            durable = await self._durable(self.store.load(service))
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            if not cache_ok:
                log.error("circuit_state_unreachable service=%s error=%s; reporting open", service, exc)
                return None
            log.warning("circuit_durable_unavailable service=%s error=%s", service, exc)
            return BreakerState(service=service)

        if durable is None:
            return BreakerState(service=service)
        log.info(
            "circuit_state_recovered service=%s state=%s failures=%s source=durable (recovered from durable store)",
            service,
            durable.state.value,
            durable.failures,
        )
        if cache_ok:
            await self._write_cache(durable)
        return durable

    async def _persist(self, state: BreakerState) -> None:
        await self._write_cache(state)
        try:
            await self._durable(self.store.save(state))
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
            log.warning("circuit_durable_write_failed service=%s error=%s", state.service, exc)

    async def release_probe(self, service: str) -> None:
        """Frees the half-open probe slot; also used when a probing caller never made its call."""
        try:
            await guarded(self.cache.delete(self._probe_key(service)))
        except CacheUnavailable:
            pass

    async def _acquire_probe(self, service: str) -> bool:
        ttl = max(1, int(self.config(service).reset_timeout_seconds))
        try:
            return bool(await guarded(self.cache.set(self._probe_key(service), "1", nx=True, ex=ttl)))
        except CacheUnavailable:
            # The state itself came from the durable store; let this caller probe.
            return True

    def _transition(self, state: BreakerState, new_state: CircuitState) -> None:
        if state.state is new_state:
            return
        log.warning(
            "circuit_transition service=%s from=%s to=%s failures=%s",
            state.service,
            state.state.value,
            new_state.value,
            state.failures,
        )
        state.state = new_state
        state.last_state_change = self._clock()

    def _retry_after(self, state: BreakerState) -> float:
        since = state.last_failure_at or state.last_state_change
        if since is None:
            return 0.0
        elapsed = (self._clock() - since).total_seconds()
        return max(0.0, self.config(state.service).reset_timeout_seconds - elapsed)

    async def is_open(self, service: str) -> bool:
        state = await self._read(service)
        if state is None:
            return True
        if state.state is CircuitState.OPEN:
            if self._retry_after(state) > 0:
                return True
            self._transition(state, CircuitState.HALF_OPEN)
            await self._persist(state)
        if state.state is CircuitState.HALF_OPEN:
            return not await self._acquire_probe(service)
        return False

    async def check(self, service: str) -> None:
        if await self.is_open(service):
            state = await self._read(service)
            retry_after = self._retry_after(state) if state is not None else float(self.config(service).reset_timeout_seconds)
            raise CircuitOpenError(service, retry_after)

    async def record_success(self, service: str) -> None:
        state = await self._read(service) or BreakerState(service=service)
        state.total_successes += 1
        if state.state is CircuitState.HALF_OPEN:
            self._transition(state, CircuitState.CLOSED)
            state.failures = 0
            state.successes = 0
            await self.release_probe(service)
        else:
            state.failures = 0
            state.successes += 1
        await self._persist(state)

    async def record_failure(self, service: str, error: str | BaseException | None = None) -> None:
        state = await self._read(service) or BreakerState(service=service)
        state.failures += 1
        state.total_failures += 1
        state.last_failure_at = self._clock()
        state.last_error = str(error)[:500] if error is not None else None
        if state.state is CircuitState.HALF_OPEN:
            self._transition(state, CircuitState.OPEN)
            await self.release_probe(service)
        elif state.state is CircuitState.CLOSED and state.failures >= self.config(service).failure_threshold:
            self._transition(state, CircuitState.OPEN)
        await self._persist(state)

    async def reset(self, service: str) -> BreakerState:
        previous = await self._read(service) or BreakerState(service=service)
        state = BreakerState(
            service=service,
            last_state_change=self._clock(),
            total_failures=previous.total_failures,
            total_successes=previous.total_successes,
        )
        await self.release_probe(service)
        await self._persist(state)
        log.info("circuit_reset service=%s", service)
        return state

    async def status(self, service: str) -> dict:
        state = await self._read(service)
        if state is None:
            return {"service": service, "state": "unknown", "reported_open": True}
        out = state.as_dict()
        out["reported_open"] = state.state is CircuitState.OPEN and self._retry_after(state) > 0
        out["retry_after_seconds"] = self._retry_after(state) if state.state is CircuitState.OPEN else 0.0
        return out
