import asyncio

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app import pipeline as pipeline_mod
from app.jobs import maintenance
from app.jobs.queue import JOB_TYPES
from app.llm.registry import FallbackConfigError


class _FakeResult:
    def __init__(self, rowcount=0):
        self.rowcount = rowcount


class _FakeSession:
    def __init__(self):
        self.calls: list[tuple[str, dict | None]] = []
        self.commits = 0

    async def execute(self, stmt, params=None):
        self.calls.append((str(stmt), dict(params) if params is not None else None))
        return _FakeResult(rowcount=1)

    async def commit(self):
        self.commits += 1


def test_build_pipeline_wires_one_handler_per_queue():
    built = pipeline_mod.build_pipeline(lambda: None, cache=object(), providers={})
    assert set(pipeline_mod.HANDLERS) == set(JOB_TYPES)
    assert built.workers.context is built
    assert built.scheduler.queue is built.queue
    assert built.orchestrator.circuit is built.circuit
    assert built.health.invalidator is built.invalidator
    assert built.fallbacks["deepseek-v3-0324-syn"] == "deepseek-v3.1"
    assert set(built.circuit.configs) == {"api-football", "together", "synthetic"}


def test_malformed_fallback_graph_aborts_startup(monkeypatch):
    monkeypatch.setattr(pipeline_mod, "MODEL_FALLBACKS", {"deepseek-r1": "deepseek-r1-0528-syn", "deepseek-r1-0528-syn": "deepseek-r1"})
    with pytest.raises(FallbackConfigError):
        pipeline_mod.build_pipeline(lambda: None, cache=object(), providers={})


def test_job_deadlines_cover_every_queue():
    deadlines = pipeline_mod.job_deadlines()
    assert set(deadlines) == set(JOB_TYPES)
    assert deadlines["predictions"] >= deadlines["analysis"]


def test_register_pipeline_jobs():
    from app.main import register_pipeline_jobs

    sched = AsyncIOScheduler()
    register_pipeline_jobs(sched)
    ids = {job.id for job in sched.get_jobs()}
    assert {f"worker:{t}" for t in JOB_TYPES} <= ids
    assert {"job_reaper", "catch_up", "backfill", "model_recovery", "maintenance"} <= ids


def test_maintenance_cleans_cache_runs_and_old_jobs():
    session = _FakeSession()
    out = asyncio.run(maintenance.run(session))
    assert out["completed_jobs_deleted"] == 1
    assert out["dead_letter_deleted"] == 1
    assert any("DELETE FROM pipeline_jobs WHERE status='completed'" in sql for sql, _ in session.calls)
    assert any("DELETE FROM job_runs" in sql for sql, _ in session.calls)
    assert session.commits == 1
