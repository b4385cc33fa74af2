"""
Pipeline coordinator: builds the process-wide components once and passes them explicitly
to the job handlers (fixtures -> analysis -> predictions -> live monitoring -> settlement ->
cache invalidation).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from app.core.cache import redis_client
from app.core.config import settings
from app.core.db import SessionLocal
from app.core.logger import get_logger
from app.jobs import analysis, backfill, live_monitor, predictions, settle
from app.jobs.queue import JOB_TYPES, JobQueue
from app.jobs.scheduler import MatchScheduler
from app.jobs.worker import WorkerPool
from app.llm.fallback import FallbackOrchestrator
from app.llm.providers import LLMProvider, build_provider
from app.llm.registry import MODEL_FALLBACKS, MODELS, REGISTRY, has_api_key, validate_fallback_graph
from app.services.budget import BudgetEnforcer
from app.services.cache_invalidation import CacheInvalidator
from app.services.circuit_breaker import CircuitBreaker, SqlCircuitStore, default_circuit_configs
from app.services.model_health import ModelHealthTracker

log = get_logger("pipeline")

HANDLERS = {
    "analysis": analysis.run,
    "predictions": predictions.run,
    "live-monitor": live_monitor.run,
    "settlement": settle.run,
    "backfill": backfill.run,
}


def job_deadlines() -> dict[str, int]:
    base = int(settings.job_deadline_seconds)
    out = {name: base for name in JOB_TYPES}
    out["predictions"] = int(settings.predictions_job_deadline_seconds)
    out["backfill"] = int(settings.predictions_job_deadline_seconds)
    return out


@dataclass
class Pipeline:
    session_factory: Any
    cache: Any
    circuit: CircuitBreaker
    budget: BudgetEnforcer
    invalidator: CacheInvalidator
    health: ModelHealthTracker
    orchestrator: FallbackOrchestrator
    queue: JobQueue
    scheduler: MatchScheduler
    workers: WorkerPool
    fallbacks: Mapping[str, str]

    async def startup(self) -> None:
        synced = await self.health.sync_registry(MODELS)
        log.info(
            "pipeline_started models=%s providers=%s fallbacks=%s",
            synced,
            len(self.orchestrator.providers),
            len(self.fallbacks),
        )


def build_pipeline(
    session_factory=SessionLocal,
    cache=None,
    *,
    providers: Mapping[str, LLMProvider] | None = None,
) -> Pipeline:
    """Raises FallbackConfigError on a malformed fallback graph; callers treat that as fatal."""
    fallbacks = validate_fallback_graph(MODEL_FALLBACKS, REGISTRY, max_depth=int(settings.max_fallback_depth))
    cache = cache if cache is not None else redis_client()
    if providers is None:
        providers = {spec.id: build_provider(spec) for spec in MODELS if has_api_key(spec)}

    circuit = CircuitBreaker(cache, SqlCircuitStore(session_factory), configs=default_circuit_configs())
    budget = BudgetEnforcer(cache, settings.daily_limits)
    invalidator = CacheInvalidator(cache)
    health = ModelHealthTracker(session_factory, invalidator=invalidator)
    orchestrator = FallbackOrchestrator(
        providers=providers,
        fallbacks=fallbacks,
        circuit=circuit,
        budget=budget,
        health=health,
        max_depth=int(settings.max_fallback_depth),
    )
    queue = JobQueue(session_factory)
    scheduler = MatchScheduler(queue, session_factory)
    workers = WorkerPool(queue, HANDLERS, concurrency=settings.worker_concurrency, deadlines=job_deadlines())
    pipeline = Pipeline(
        session_factory=session_factory,
        cache=cache,
        circuit=circuit,
        budget=budget,
        invalidator=invalidator,
        health=health,
        orchestrator=orchestrator,
        queue=queue,
        scheduler=scheduler,
        workers=workers,
        fallbacks=fallbacks,
    )
    workers.context = pipeline
    return pipeline
