import asyncio
from datetime import datetime
from contextlib import asynccontextmanager
from typing import Optional
import json
import traceback
import hashlib
import os
import time

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import logging
from fastapi import FastAPI, Depends, Query, Header, HTTPException, Response, Request
from sqlalchemy import text, bindparam
from sqlalchemy.types import Integer, String as SAString
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import close_redis
from app.core.config import settings
from app.core.db import SessionLocal, get_session, init_db, engine
from app.core.http import init_http_clients, close_http_clients
from app.core.timeutils import utcnow
from app.jobs import backfill, maintenance
from app.jobs.queue import JOB_TYPES
from app.llm.registry import REGISTRY, configured_model_ids
from app.pipeline import Pipeline, build_pipeline
from app.services.budget import daily_spend
from app.services.matches import get_match
from app.services.settlement import settlement_output

scheduler = AsyncIOScheduler()
logger = logging.getLogger(__name__)
APP_STARTED_AT = utcnow()
JOB_LOCKS: dict[str, asyncio.Lock] = {}
JOB_STATUS: dict[str, dict] = {}
RUN_NOW_RATE: dict[str, list[float]] = {}
RUN_NOW_LAST: dict[str, float] = {}
PIPELINE: Pipeline | None = None


def _advisory_key(name: str) -> int:
    digest = hashlib.blake2b(f"kickoff-oracle:{name}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFF_FFFF_FFFF_FFFF


async def _try_advisory_lock(conn, key: int) -> bool:
    try:
        row = (await conn.execute(text("SELECT pg_try_advisory_lock(:k) AS ok"), {"k": int(key)})).first()
        return bool(row.ok) if row else False
    except Exception as e:
        logger.warning("advisory_lock_failed key=%s error=%s", key, e)
        return False


async def _advisory_unlock(conn, key: int) -> None:
    try:
        await conn.execute(text("SELECT pg_advisory_unlock(:k)"), {"k": int(key)})
    except Exception as e:
        logger.warning("advisory_unlock_failed key=%s error=%s", key, e)


def _require_admin(x_admin_token: str | None = Header(default=None, alias="X-Admin-Token")):
    token = (settings.admin_token or "").strip()
    if not token:
        raise HTTPException(status_code=403, detail="Admin token is not configured")
    if x_admin_token != token:
        raise HTTPException(status_code=403, detail="Forbidden")


def _validate_runtime_config(*, for_scheduler: bool) -> None:
    env = (settings.app_env or "dev").strip().lower()
    has_llm_key = bool(settings.provider_key("together") or settings.provider_key("synthetic"))
    if env in {"prod", "production"}:
        if not (settings.admin_token or "").strip():
            raise RuntimeError("ADMIN_TOKEN is required in prod")
        if not has_llm_key:
            raise RuntimeError("TOGETHER_API_KEY or SYNTHETIC_API_KEY is required in prod")
    elif for_scheduler and not has_llm_key:
        logger.warning("no LLM provider key configured; predictions jobs will store nothing")


def _pipeline() -> Pipeline:
    if PIPELINE is None:
        raise HTTPException(status_code=503, detail="pipeline is not started")
    return PIPELINE


async def start_pipeline() -> Pipeline:
    """Builds the components once per process; a malformed fallback graph aborts startup."""
    global PIPELINE
    if PIPELINE is None:
        PIPELINE = build_pipeline(SessionLocal)
        await PIPELINE.startup()
    return PIPELINE


def _get_lock(name: str) -> asyncio.Lock:
    lock = JOB_LOCKS.get(name)
    if lock is None:
        lock = asyncio.Lock()
        JOB_LOCKS[name] = lock
    return lock


def _set_status(store: dict, key: str, **values):
    cur = store.get(key) or {}
    cur.update(values)
    store[key] = cur


def _serialize_status(store: dict) -> dict:
    out: dict = {}
    for k, v in store.items():
        row = dict(v)
        for ts_key in ("started_at", "finished_at"):
            ts = row.get(ts_key)
            if isinstance(ts, datetime):
                row[ts_key] = ts.isoformat()
        out[k] = row
    return out


def _create_task(coro, *, label: str):
    task = asyncio.create_task(coro)

    def _done(t: asyncio.Task):
        try:
            t.result()
        except Exception:
            logger.exception("background_task_failed label=%s", label)

    task.add_done_callback(_done)
    return task


async def _catch_up(session: AsyncSession) -> dict:
    return await _pipeline().scheduler.catch_up()


async def _backfill_scan(session: AsyncSession) -> dict:
    return await backfill.scan(_pipeline(), session)


async def _model_recovery(session: AsyncSession) -> dict:
    recovered = await _pipeline().health.recover()
    return {"recovered": recovered}


PERIODIC_JOBS = {
    "catch_up": _catch_up,
    "backfill": _backfill_scan,
    "model_recovery": _model_recovery,
    "maintenance": maintenance.run,
}


def _base_job_meta(job_name: str) -> dict:
    return {
        "job": job_name,
        "app_env": settings.app_env,
        "models": len(configured_model_ids()),
    }


async def _db_job_run_start(job_name: str, triggered_by: str | None, meta: Optional[dict], *, session: AsyncSession) -> int | None:
    try:
        meta_obj = _base_job_meta(job_name)
        if meta:
            meta_obj.update(meta)
        res = await session.execute(
            text(
                """
                INSERT INTO job_runs(job_name, status, triggered_by, started_at, meta)
                VALUES(:job, 'running', :by, now(), CAST(:meta AS jsonb))
                RETURNING id
                """
            ),
            {"job": job_name, "by": triggered_by, "meta": json.dumps(meta_obj)},
        )
        rid = res.scalar_one()
        await session.commit()
        return int(rid)
    except Exception:
        logger.exception("job_runs_start_failed job=%s", job_name)
        return None


async def _db_job_run_finish(
    run_id: int | None,
    status: str,
    error: str | None = None,
    meta: Optional[dict] = None,
    *,
    session: AsyncSession,
):
    if run_id is None:
        return
    try:
        await session.execute(
            text(
                """
                UPDATE job_runs
                SET status=:status, finished_at=now(), error=:error,
                    meta = COALESCE(meta, '{}'::jsonb) || CAST(:meta AS jsonb)
                WHERE id=:id
                """
            ),
            {"id": run_id, "status": status, "error": error, "meta": json.dumps(meta or {}, default=str)},
        )
        await session.commit()
    except Exception:
        logger.exception("job_runs_finish_failed id=%s status=%s", run_id, status)


async def _run_job(job_name: str, job_fn, triggered_by: str | None = None, meta: Optional[dict] = None):
    lock = _get_lock(job_name)
    if lock.locked():
        logger.warning("job_skip_already_running job=%s", job_name)
        return
    async with lock:
        key = _advisory_key(job_name)
        async with engine.connect() as lock_conn:
            if not await _try_advisory_lock(lock_conn, key):
                logger.warning("job_skip_advisory_lock job=%s", job_name)
                return
            try:
                async with SessionLocal() as session:
                    run_id = await _db_job_run_start(job_name, triggered_by, meta=meta, session=session)
                    _set_status(
                        JOB_STATUS,
                        job_name,
                        status="running",
                        started_at=utcnow(),
                        finished_at=None,
                        error=None,
                    )
                    t0 = time.perf_counter()
                    try:
                        result = await job_fn(session)
                        dur_ms = int((time.perf_counter() - t0) * 1000)
                        _set_status(JOB_STATUS, job_name, status="ok", finished_at=utcnow(), error=None)
                        await _db_job_run_finish(
                            run_id,
                            "ok",
                            None,
                            meta={"duration_ms": dur_ms, "result": result} if isinstance(result, dict) else {"duration_ms": dur_ms},
                            session=session,
                        )
                    except Exception:
                        logger.exception("job_failed job=%s", job_name)
                        tb = traceback.format_exc(limit=50)
                        dur_ms = int((time.perf_counter() - t0) * 1000)
                        _set_status(JOB_STATUS, job_name, status="failed", finished_at=utcnow(), error="exception")
                        await session.rollback()
                        await _db_job_run_finish(run_id, "failed", tb[-8000:], meta={"duration_ms": dur_ms}, session=session)
            finally:
                await _advisory_unlock(lock_conn, key)


async def _worker_tick(job_type: str) -> None:
    try:
        await _pipeline().workers.tick(job_type)
    except Exception:
        logger.exception("worker_tick_failed queue=%s", job_type)


async def _reaper_tick() -> None:
    try:
        await _pipeline().queue.reap_expired()
    except Exception:
        logger.exception("job_reaper_failed")


def register_pipeline_jobs(sched: AsyncIOScheduler) -> None:
    """Worker ticks per queue plus the periodic pipeline runs; shared by web and runner processes."""
    tick = max(1, int(settings.worker_tick_seconds))
    for job_type in JOB_TYPES:
        sched.add_job(
            _worker_tick,
            IntervalTrigger(seconds=tick),
            args=[job_type],
            id=f"worker:{job_type}",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=tick * 2,
        )
    sched.add_job(
        _reaper_tick,
        IntervalTrigger(seconds=60),
        id="job_reaper",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=60,
    )

    async def _scheduled_catch_up():
        await _run_job("catch_up", _catch_up, triggered_by="scheduler")

    async def _scheduled_backfill():
        await _run_job("backfill", _backfill_scan, triggered_by="scheduler")

    async def _scheduled_model_recovery():
        await _run_job("model_recovery", _model_recovery, triggered_by="scheduler")

    async def _scheduled_maintenance():
        await _run_job("maintenance", maintenance.run, triggered_by="scheduler")

    sched.add_job(
        _scheduled_catch_up,
        IntervalTrigger(minutes=int(settings.catch_up_interval_minutes)),
        id="catch_up",
        next_run_time=utcnow(),
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    sched.add_job(
        _scheduled_backfill,
        IntervalTrigger(minutes=int(settings.backfill_interval_minutes)),
        id="backfill",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    sched.add_job(
        _scheduled_model_recovery,
        IntervalTrigger(minutes=int(settings.recovery_interval_minutes)),
        id="model_recovery",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )
    sched.add_job(
        _scheduled_maintenance,
        CronTrigger.from_crontab(settings.job_maintenance_cron),
        id="maintenance",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
    )


async def shutdown_pipeline() -> None:
    global PIPELINE
    if PIPELINE is not None:
        await PIPELINE.workers.drain()
    PIPELINE = None
    try:
        await close_http_clients()
    except Exception:
        logger.exception("http_client_close_failed")
    await close_redis()
    try:
        await engine.dispose()
    except Exception:
        logger.exception("engine_dispose_failed")


@asynccontextmanager
async def lifespan(_: FastAPI):
    await init_db()
    await init_http_clients()
    _validate_runtime_config(for_scheduler=bool(settings.scheduler_enabled))
    await start_pipeline()

    if settings.scheduler_enabled:
        workers_raw = os.getenv("UVICORN_WORKERS") or os.getenv("WEB_CONCURRENCY") or "1"
        try:
            workers = int(workers_raw)
        except ValueError:
            workers = 1
        env = (settings.app_env or "dev").strip().lower()
        if workers > 1:
            logger.error("scheduler_refuse_multiworker workers=%s", workers)
            raise RuntimeError("scheduler is not allowed with UVICORN_WORKERS/WEB_CONCURRENCY > 1; run a separate scheduler service")
        if env in {"prod", "production"} and not settings.allow_web_scheduler:
            logger.error("scheduler_refuse_in_web_process env=%s", env)
            raise RuntimeError("scheduler in web process is disabled in prod; set ALLOW_WEB_SCHEDULER=true or run a separate scheduler service")
        register_pipeline_jobs(scheduler)
        scheduler.start()
    try:
        yield
    finally:
        if settings.scheduler_enabled:
            scheduler.shutdown(wait=False)
        await shutdown_pipeline()


app = FastAPI(title="Kickoff Oracle", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"ok": True, "started_at": APP_STARTED_AT.isoformat()}


@app.post("/api/v1/run-now")
async def api_run_now(
    request: Request,
    job: str = Query(..., description="catch_up | backfill | model_recovery | maintenance"),
    _: None = Depends(_require_admin),
    x_admin_actor: str | None = Header(default=None, alias="X-Admin-Actor"),
):
    """Trigger a periodic pipeline run on demand."""
    job_fn = PERIODIC_JOBS.get(job)
    if job_fn is None:
        raise HTTPException(status_code=400, detail=f"job must be one of: {', '.join(PERIODIC_JOBS)}")
    token_key = (settings.admin_token or "").strip()
    now_ts = time.time()
    last = RUN_NOW_LAST.get(token_key)
    if last is not None and (now_ts - last) < 3.0:
        raise HTTPException(status_code=429, detail="Too Many Requests (min interval)")
    RUN_NOW_LAST[token_key] = now_ts

    window = [t for t in (RUN_NOW_RATE.get(token_key) or []) if (now_ts - t) <= 60.0]
    window.append(now_ts)
    RUN_NOW_RATE[token_key] = window
    if len(window) > 20:
        raise HTTPException(status_code=429, detail="Too Many Requests (per minute)")

    actor = (x_admin_actor or "").strip() or "unknown"
    client_ip = request.client.host if request.client else None
    skipped = _get_lock(job).locked()
    if not skipped:
        _create_task(
            _run_job(job, job_fn, triggered_by=f"manual:{actor}", meta={"actor": actor, "client_ip": client_ip}),
            label=f"run-now:{job}",
        )
    logger.info("run_now_triggered job=%s actor=%s skipped=%s", job, actor, skipped)
    return {"ok": True, "started": job, "skipped": skipped}


@app.post("/api/v1/admin/jobs/{job_id}/retry")
async def api_retry_job(job_id: str, _: None = Depends(_require_admin)):
    """Re-enqueue a failed job whether it sits in the retry set or the dead-letter set."""
    retried = await _pipeline().queue.retry_job(job_id)
    if retried is None:
        raise HTTPException(status_code=404, detail=f"no failed job with id {job_id}")
    return {"ok": True, **retried}


@app.get("/api/v1/admin/jobs/dead-letter")
async def api_dead_letter(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: None = Depends(_require_admin),
    *,
    response: Response,
):
    queue = _pipeline().queue
    count = await queue.dead_letter_count()
    response.headers["X-Total-Count"] = str(count)
    return {
        "count": count,
        "alert_threshold": int(settings.dead_letter_alert_threshold),
        "items": await queue.dead_letter(limit=limit, offset=offset),
    }


@app.delete("/api/v1/admin/jobs/dead-letter")
async def api_dead_letter_cleanup(
    older_than_days: Optional[int] = Query(None, ge=0),
    _: None = Depends(_require_admin),
):
    deleted = await _pipeline().queue.purge_dead_letter(older_than_days=older_than_days)
    return {"ok": True, "deleted": deleted}


@app.get("/api/v1/admin/circuits")
async def api_circuits(_: None = Depends(_require_admin)):
    circuit = _pipeline().circuit
    services = set(circuit.configs)
    try:
        services.update(await circuit.store.services())
    except Exception:
        logger.exception("circuit_services_list_failed")
    return {"circuits": [await circuit.status(service) for service in sorted(services)]}


@app.post("/api/v1/admin/circuits/{service}/reset")
async def api_circuit_reset(service: str, _: None = Depends(_require_admin)):
    circuit = _pipeline().circuit
    if service not in circuit.configs:
        raise HTTPException(status_code=404, detail=f"unknown service {service}")
    state = await circuit.reset(service)
    return {"ok": True, "circuit": state.as_dict()}


@app.get("/api/v1/admin/budgets")
async def api_budgets(_: None = Depends(_require_admin), session: AsyncSession = Depends(get_session)):
    budget = _pipeline().budget
    providers = [(await budget.status(p)).as_dict() | {"provider": p} for p in sorted(budget.limits)]
    spend = await daily_spend(session)
    limit_usd = float(settings.llm_daily_budget_usd)
    return {
        "providers": providers,
        "llm_spend": spend | {"budget_usd": limit_usd, "over_budget": spend["total_cost"] > limit_usd},
    }


@app.get("/api/v1/admin/models")
async def api_models(_: None = Depends(_require_admin)):
    snapshot = await _pipeline().health.snapshot()
    configured = set(configured_model_ids())
    out = []
    for model_id, spec in REGISTRY.items():
        row = snapshot.get(model_id)
        item = {
            "model_id": model_id,
            "backend": spec.backend,
            "display_name": spec.display_name,
            "tier": spec.tier,
            "reasoning": spec.reasoning,
            "configured": model_id in configured,
            "fallback": _pipeline().fallbacks.get(model_id),
        }
        if row is not None:
            item.update(row.as_dict())
        out.append(item)
    return out


async def _set_model_active(model_id: str, active: bool) -> dict:
    if model_id not in REGISTRY:
        raise HTTPException(status_code=404, detail=f"unknown model {model_id}")
    row = await _pipeline().health.set_active(model_id, active)
    if row is None:
        raise HTTPException(status_code=404, detail=f"model {model_id} is not synced")
    return {"ok": True, "model": row.as_dict()}


@app.post("/api/v1/admin/models/{model_id}/enable")
async def api_model_enable(model_id: str, _: None = Depends(_require_admin)):
    return await _set_model_active(model_id, True)


@app.post("/api/v1/admin/models/{model_id}/disable")
async def api_model_disable(model_id: str, _: None = Depends(_require_admin)):
    return await _set_model_active(model_id, False)


@app.get("/api/v1/matches/{match_id}/settlement")
async def api_match_settlement(match_id: int, session: AsyncSession = Depends(get_session)):
    match = await get_match(session, match_id)
    if match is None:
        raise HTTPException(status_code=404, detail="match not found")
    if match.settled_at is None:
        raise HTTPException(status_code=409, detail=f"match is not settled (status={match.status})")
    return {
        "match_id": match.id,
        "home_score": match.home_score,
        "away_score": match.away_score,
        "settled_at": match.settled_at.isoformat(),
        "predictions": await settlement_output(session, match.id),
    }


@app.get("/api/v1/jobs/status")
async def api_jobs_status(_: None = Depends(_require_admin)):
    return {
        "jobs": _serialize_status(JOB_STATUS),
        "workers": _pipeline().workers.status(),
    }


@app.get("/api/v1/jobs/runs")
async def api_job_runs(
    job_name: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    _: None = Depends(_require_admin),
    *,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    status_norm = None
    if status:
        status_norm = status.strip().lower()
        if status_norm not in {"running", "ok", "failed"}:
            raise HTTPException(status_code=400, detail="status must be one of: running, ok, failed")

    count_row = (
        await session.execute(
            text(
                """
                SELECT COUNT(*) AS cnt
                FROM job_runs
                WHERE (:job IS NULL OR job_name = :job)
                  AND (:status IS NULL OR lower(status) = :status)
                """
            ).bindparams(
                bindparam("job", type_=SAString),
                bindparam("status", type_=SAString),
            ),
            {"job": job_name, "status": status_norm},
        )
    ).first()
    response.headers["X-Total-Count"] = str(int(count_row.cnt or 0) if count_row else 0)

    res = await session.execute(
        text(
            """
            SELECT id, job_name, status, triggered_by, started_at, finished_at, error, meta
            FROM job_runs
            WHERE (:job IS NULL OR job_name = :job)
              AND (:status IS NULL OR lower(status) = :status)
            ORDER BY started_at DESC
            LIMIT :limit OFFSET :offset
            """
        ).bindparams(
            bindparam("job", type_=SAString),
            bindparam("status", type_=SAString),
            bindparam("limit", type_=Integer),
            bindparam("offset", type_=Integer),
        ),
        {"job": job_name, "status": status_norm, "limit": limit, "offset": offset},
    )
    out = []
    for row in res.fetchall():
        duration = None
        if row.started_at and row.finished_at:
            duration = (row.finished_at - row.started_at).total_seconds()
        out.append(
            {
                "id": int(row.id),
                "job_name": row.job_name,
                "status": row.status,
                "triggered_by": row.triggered_by,
                "started_at": row.started_at.isoformat() if row.started_at is not None else None,
                "finished_at": row.finished_at.isoformat() if row.finished_at is not None else None,
                "duration_seconds": duration,
                "error": row.error,
                "meta": row.meta,
            }
        )
    return out
