import asyncio
from datetime import datetime, timezone

import pytest

from app.llm.fallback import FallbackOrchestrator
from app.llm.registry import MODEL_FALLBACKS, REGISTRY, FallbackConfigError, validate_fallback_graph
from app.llm.types import FailureKind, PredictionResult, ScorePrediction
from app.services.budget import BudgetExceededError


def _ok(model_id):
    return PredictionResult(
        model_id=model_id,
        predictions={"1": ScorePrediction(match_id="1", home=2, away=1)},
        raw_response='{"home_score": 2, "away_score": 1}',
        success=True,
    )


class _Provider:
    def __init__(self, model_id, backend, outcome):
        self.id = model_id
        self.backend = backend
        self.outcome = outcome
        self.calls = 0

    async def predict(self, prompt, match_ids):
        self.calls += 1
        if self.outcome is None:
            return _ok(self.id)
        return PredictionResult.failed(self.id, self.outcome, "boom")


class _Circuit:
    def __init__(self, open_services=()):
        self.open_services = set(open_services)
        self.failures: list[str] = []
        self.successes: list[str] = []
        self.released: list[str] = []

    async def is_open(self, service):
        return service in self.open_services

    async def record_failure(self, service, error=None):
        self.failures.append(service)

    async def record_success(self, service):
        self.successes.append(service)

    async def release_probe(self, service):
        self.released.append(service)


class _Budget:
    def __init__(self, exhausted=()):
        self.exhausted = set(exhausted)
        self.calls: list[str] = []

    async def check_and_increment(self, provider):
        self.calls.append(provider)
        if provider in self.exhausted:
            raise BudgetExceededError(provider=provider, used=11, limit=10, resets_at=datetime(2026, 10, 18, tzinfo=timezone.utc))


class _Health:
    def __init__(self, threshold=3):
        self.threshold = threshold
        self.failures: dict[str, int] = {}
        self.disabled: set[str] = set()

    async def record_success(self, model_id):
        self.failures[model_id] = 0

    async def record_failure(self, model_id, reason):
        self.failures[model_id] = self.failures.get(model_id, 0) + 1
        if self.failures[model_id] >= self.threshold:
            self.disabled.add(model_id)
        return model_id in self.disabled


def _orchestrator(providers, fallbacks, *, circuit=None, budget=None, health=None, max_depth=1):
    return FallbackOrchestrator(
        providers={p.id: p for p in providers},
        fallbacks=fallbacks,
        circuit=circuit or _Circuit(),
        budget=budget or _Budget(),
        health=health or _Health(),
        max_depth=max_depth,
    )


def test_shipped_fallback_graph_is_valid():
    graph = validate_fallback_graph(MODEL_FALLBACKS, REGISTRY, max_depth=1)
    assert graph["kimi-k2.5-syn"] == "kimi-k2-instruct"


def test_fallback_graph_rejects_cycles_depth_and_dangling_ids():
    registry = {"a": object(), "b": object(), "c": object()}
    with pytest.raises(FallbackConfigError, match="cycle"):
        validate_fallback_graph({"a": "b", "b": "a"}, registry, max_depth=3)
    with pytest.raises(FallbackConfigError, match="deeper"):
        validate_fallback_graph({"a": "b", "b": "c"}, registry, max_depth=1)
    with pytest.raises(FallbackConfigError, match="not a registered model"):
        validate_fallback_graph({"a": "zzz"}, registry, max_depth=1)
    with pytest.raises(FallbackConfigError, match="itself"):
        validate_fallback_graph({"a": "a"}, registry, max_depth=1)
    assert dict(validate_fallback_graph({"a": "b", "b": "c"}, registry, max_depth=2)) == {"a": "b", "b": "c"}


def test_primary_success_does_not_touch_fallback():
    async def _run():
        primary = _Provider("kimi-k2.5-syn", "synthetic", None)
        backup = _Provider("kimi-k2-instruct", "together", None)
        orch = _orchestrator([primary, backup], {"kimi-k2.5-syn": "kimi-k2-instruct"})
        outcome = await orch.predict("kimi-k2.5-syn", "prompt", ["1"])
        assert outcome.success
        assert outcome.used_fallback is False
        assert outcome.served_by == "kimi-k2.5-syn"
        assert outcome.relative_cost == 1.0
        assert backup.calls == 0

    asyncio.run(_run())


def test_service_failure_falls_back_and_trips_circuit_bookkeeping():
    async def _run():
        circuit = _Circuit()
        primary = _Provider("deepseek-r1-0528-syn", "synthetic", FailureKind.API_ERROR)
        backup = _Provider("deepseek-r1", "together", None)
        orch = _orchestrator([primary, backup], {"deepseek-r1-0528-syn": "deepseek-r1"}, circuit=circuit)
        outcome = await orch.predict("deepseek-r1-0528-syn", "prompt", ["1"])
        assert outcome.success
        assert outcome.used_fallback is True
        assert outcome.served_by == "deepseek-r1"
        assert outcome.slot_model_id == "deepseek-r1-0528-syn"
        assert [a.model_id for a in outcome.attempts] == ["deepseek-r1-0528-syn", "deepseek-r1"]
        assert circuit.failures == ["synthetic"]
        assert circuit.successes == ["together"]

    asyncio.run(_run())


def test_disabled_model_is_skipped_in_favor_of_fallback():
    async def _run():
        primary = _Provider("kimi-k2.5-syn", "synthetic", None)
        backup = _Provider("kimi-k2-instruct", "together", None)
        orch = _orchestrator([primary, backup], {"kimi-k2.5-syn": "kimi-k2-instruct"})
        outcome = await orch.predict("kimi-k2.5-syn", "prompt", ["1"], disabled={"kimi-k2.5-syn"})
        assert outcome.success
        assert outcome.served_by == "kimi-k2-instruct"
        assert outcome.skipped == ["kimi-k2.5-syn"]
        assert primary.calls == 0

    asyncio.run(_run())


def test_disabled_model_without_fallback_fails():
    async def _run():
        primary = _Provider("glm-4.6", "together", None)
        orch = _orchestrator([primary], {})
        outcome = await orch.predict("glm-4.6", "prompt", ["1"], disabled={"glm-4.6"})
        assert not outcome.success
        assert outcome.attempts == []
        assert primary.calls == 0

    asyncio.run(_run())


def test_three_parse_failures_disable_model_then_fallback_serves_slot():
    async def _run():
        health = _Health(threshold=3)
        primary = _Provider("kimi-k2.5-syn", "synthetic", FailureKind.PARSE_FAILURE)
        backup = _Provider("kimi-k2-instruct", "together", FailureKind.PARSE_FAILURE)
        orch = _orchestrator([primary, backup], {"kimi-k2.5-syn": "kimi-k2-instruct"}, health=health, max_depth=0)
        for _ in range(3):
            outcome = await orch.predict("kimi-k2.5-syn", "prompt", ["1"], disabled=frozenset(health.disabled))
            assert not outcome.success
        assert health.disabled == {"kimi-k2.5-syn"}

        backup.outcome = None
        orch.max_depth = 1
        outcome = await orch.predict("kimi-k2.5-syn", "prompt", ["1"], disabled=frozenset(health.disabled))
        assert outcome.success
        assert outcome.served_by == "kimi-k2-instruct"
        assert primary.calls == 3

    asyncio.run(_run())


def test_budget_and_circuit_refusals_do_not_count_against_model_health():
    async def _run():
        health = _Health(threshold=1)
        budget = _Budget(exhausted={"together"})
        circuit = _Circuit(open_services={"synthetic"})
        syn = _Provider("minimax-m2-syn", "synthetic", None)
        tog = _Provider("glm-4.6", "together", None)
        orch = _orchestrator([syn, tog], {}, circuit=circuit, budget=budget, health=health)

        refused = await orch.predict("minimax-m2-syn", "prompt", ["1"])
        assert refused.result.failure is FailureKind.CIRCUIT_OPEN
        over = await orch.predict("glm-4.6", "prompt", ["1"])
        assert over.result.failure is FailureKind.BUDGET_EXCEEDED
        assert syn.calls == 0 and tog.calls == 0
        assert health.disabled == set()
        assert circuit.released == ["together"]

    asyncio.run(_run())


def test_cycle_at_runtime_is_not_followed_twice():
    async def _run():
        a = _Provider("deepseek-v3.1", "together", FailureKind.TIMEOUT)
        b = _Provider("deepseek-v3-0324-syn", "synthetic", FailureKind.TIMEOUT)
        orch = _orchestrator([a, b], {"deepseek-v3.1": "deepseek-v3-0324-syn", "deepseek-v3-0324-syn": "deepseek-v3.1"}, max_depth=5)
        outcome = await orch.predict("deepseek-v3.1", "prompt", ["1"])
        assert not outcome.success
        assert a.calls == 1 and b.calls == 1

    asyncio.run(_run())


def test_missing_provider_is_reported_as_api_error():
    async def _run():
        orch = _orchestrator([], {})
        outcome = await orch.predict("glm-4.6", "prompt", ["1"])
        assert outcome.result.failure is FailureKind.API_ERROR
        assert "missing API key" in outcome.result.error

    asyncio.run(_run())
