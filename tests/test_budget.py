import asyncio
from datetime import datetime, timezone

import pytest
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.services.budget import BudgetEnforcer, BudgetExceededError


class _FakePipeline:
    def __init__(self, redis, transaction):
        self.redis = redis
        self.transaction = transaction
        self.ops: list[tuple] = []

    def incr(self, key):
        self.ops.append(("incr", key))
        return self

    def expire(self, key, seconds, nx=False):
        self.ops.append(("expire", key, int(seconds), nx))
        return self

    async def execute(self):
        if self.redis.fail:
            raise RedisTimeoutError("timed out")
        self.redis.transactions.append((self.transaction, [op[0] for op in self.ops]))
        out = []
        for op in self.ops:
            if op[0] == "incr":
                self.redis.data[op[1]] = int(self.redis.data.get(op[1], 0)) + 1
                out.append(self.redis.data[op[1]])
            else:
                _, key, seconds, nx = op
                if nx and key in self.redis.expiries:
                    out.append(False)
                    continue
                self.redis.expiries[key] = seconds
                out.append(True)
        return out


class _FakeRedis:
    def __init__(self, *, fail=False):
        self.data: dict[str, int] = {}
        self.expiries: dict[str, int] = {}
        self.transactions: list[tuple[bool, list[str]]] = []
        self.fail = fail

    def pipeline(self, transaction=True):
        return _FakePipeline(self, transaction)

    async def get(self, key):
        if self.fail:
            raise RedisTimeoutError("timed out")
        value = self.data.get(key)
        return str(value) if value is not None else None


class _Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def test_counter_expires_at_next_utc_midnight():
    async def _run():
        cache = _FakeRedis()
        clock = _Clock(datetime(2026, 10, 17, 23, 0, tzinfo=timezone.utc))
        budget = BudgetEnforcer(cache, {"together": 10}, clock=clock)

        first = await budget.check_and_increment("together")
        await budget.check_and_increment("together")

        key = "budget:together:2026-10-17"
        assert first.used == 1
        assert first.resets_at == datetime(2026, 10, 18, tzinfo=timezone.utc)
        assert cache.data[key] == 2
        # expiry is set once, on the first increment of the day
        assert cache.expiries == {key: 3600}

    asyncio.run(_run())


def test_exceeding_limit_raises_with_reset_time():
    async def _run():
        budget = BudgetEnforcer(
            _FakeRedis(), {"api-football": 2}, clock=_Clock(datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc))
        )
        await budget.check_and_increment("api-football")
        second = await budget.check_and_increment("api-football")
        assert second.remaining == 0

        with pytest.raises(BudgetExceededError) as err:
            await budget.check_and_increment("api-football")
        assert err.value.used == 3
        assert err.value.limit == 2
        assert err.value.resets_at == datetime(2026, 10, 18, tzinfo=timezone.utc)

        status = await budget.status("api-football")
        assert status.allowed is False
        assert status.used == 3

    asyncio.run(_run())


def test_new_utc_day_uses_fresh_counter():
    async def _run():
        cache = _FakeRedis()
        clock = _Clock(datetime(2026, 10, 17, 23, 59, tzinfo=timezone.utc))
        budget = BudgetEnforcer(cache, {"together": 1}, clock=clock)
        await budget.check_and_increment("together")

        clock.now = datetime(2026, 10, 18, 0, 1, tzinfo=timezone.utc)
        decision = await budget.check_and_increment("together")
        assert decision.used == 1
        assert "budget:together:2026-10-18" in cache.data

    asyncio.run(_run())


def test_fails_open_when_redis_is_unreachable():
    async def _run():
        budget = BudgetEnforcer(_FakeRedis(fail=True), {"together": 1})
        decision = await budget.check_and_increment("together")
        assert decision.allowed is True
        assert decision.degraded is True
        assert (await budget.status("together")).degraded is True

    asyncio.run(_run())


def test_zero_limit_means_unlimited():
    async def _run():
        budget = BudgetEnforcer(_FakeRedis(), {})
        for _ in range(5):
            decision = await budget.check_and_increment("synthetic")
        assert decision.used == 5
        assert decision.as_dict()["limit"] == 0

    asyncio.run(_run())


def test_counter_without_ttl_gets_one_on_next_increment():
    async def _run():
        cache = _FakeRedis()
        key = "budget:together:2026-10-17"
        # counter from an increment whose expiry never landed
        cache.data[key] = 4
        budget = BudgetEnforcer(cache, {"together": 10}, clock=_Clock(datetime(2026, 10, 17, 22, 0, tzinfo=timezone.utc)))

        decision = await budget.check_and_increment("together")
        assert decision.used == 5
        assert cache.expiries == {key: 7200}
        assert cache.transactions == [(True, ["incr", "expire"])]

    asyncio.run(_run())
