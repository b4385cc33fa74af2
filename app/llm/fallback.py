from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from app.core.logger import get_logger
from app.llm.providers import LLMProvider
from app.llm.registry import REGISTRY
from app.llm.types import NON_MODEL_FAILURES, FailureKind, PredictionResult
from app.services.budget import BudgetExceededError

log = get_logger("llm.fallback")

# Failures that reflect the upstream service rather than the model's output.
_SERVICE_FAILURES = frozenset({FailureKind.TIMEOUT, FailureKind.API_ERROR})


@dataclass
class FallbackOutcome:
    slot_model_id: str
    result: PredictionResult
    used_fallback: bool = False
    served_by: str | None = None
    relative_cost: float = 1.0
    attempts: list[PredictionResult] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.result.success)


def relative_cost(primary_id: str, served_id: str) -> float:
    primary = REGISTRY.get(primary_id)
    served = REGISTRY.get(served_id)
    if primary is None or served is None:
        return 1.0
    base = primary.estimate_cost()
    if base <= 0:
        return 1.0
    return round(served.estimate_cost() / base, 4)


class FallbackOrchestrator:
    """
    Runs one logical model slot: the primary model, then at most `max_depth` mapped
    substitutes. Circuit, budget and model-health bookkeeping wrap every attempt.
    """

    def __init__(
        self,
        *,
        providers: Mapping[str, LLMProvider],
        fallbacks: Mapping[str, str],
        circuit,
        budget,
        health,
        max_depth: int = 1,
    ):
        self.providers = providers
        self.fallbacks = fallbacks
        self.circuit = circuit
        self.budget = budget
        self.health = health
        self.max_depth = int(max_depth)

    async def _attempt(self, model_id: str, prompt: str, match_ids: list[str]) -> PredictionResult:
        provider = self.providers.get(model_id)
        if provider is None:
            return PredictionResult.failed(model_id, FailureKind.API_ERROR, "no provider configured (missing API key)")

        service = provider.backend
        if await self.circuit.is_open(service):
            return PredictionResult.failed(model_id, FailureKind.CIRCUIT_OPEN, f"circuit open for {service}")
        try:
            await self.budget.check_and_increment(service)
        except BudgetExceededError as exc:
            # a half-open probe taken by is_open() goes back, no call was made
            await self.circuit.release_probe(service)
            return PredictionResult.failed(model_id, FailureKind.BUDGET_EXCEEDED, str(exc))

        result = await provider.predict(prompt, match_ids)

        if result.failure in _SERVICE_FAILURES:
            await self.circuit.record_failure(service, result.error)
        else:
            await self.circuit.record_success(service)

        if result.success:
            await self.health.record_success(model_id)
        elif result.failure not in NON_MODEL_FAILURES:
            await self.health.record_failure(model_id, f"{result.failure.value}: {result.error}")

        log.info(
            "llm_attempt model=%s success=%s failure=%s duration_ms=%s",
            model_id,
            result.success,
            result.failure.value if result.failure else None,
            result.duration_ms,
        )
        return result

    async def predict(
        self,
        slot_model_id: str,
        prompt: str,
        match_ids: list[str],
        *,
        disabled: frozenset[str] | set[str] = frozenset(),
    ) -> FallbackOutcome:
        attempted: set[str] = set()
        attempts: list[PredictionResult] = []
        skipped: list[str] = []
        current = slot_model_id
        depth = 0
        last: PredictionResult | None = None

        while True:
            attempted.add(current)
            if current in disabled:
                skipped.append(current)
                log.info("llm_model_disabled_skip model=%s slot=%s", current, slot_model_id)
            else:
                last = await self._attempt(current, prompt, match_ids)
                attempts.append(last)
                if last.success:
                    used = current != slot_model_id
                    if used:
                        log.info("llm_fallback_used slot=%s served_by=%s", slot_model_id, current)
                    return FallbackOutcome(
                        slot_model_id=slot_model_id,
                        result=last,
                        used_fallback=used,
                        served_by=current,
                        relative_cost=relative_cost(slot_model_id, current) if used else 1.0,
                        attempts=attempts,
                        skipped=skipped,
                    )

            target = self.fallbacks.get(current)
            if target is None or depth >= self.max_depth:
                break
            if target in attempted:
                log.error("llm_fallback_cycle_blocked slot=%s from=%s to=%s", slot_model_id, current, target)
                break
            current = target
            depth += 1

        if last is None:
            last = PredictionResult.failed(slot_model_id, FailureKind.API_ERROR, "model disabled and no fallback available")
        return FallbackOutcome(slot_model_id=slot_model_id, result=last, attempts=attempts, skipped=skipped)
