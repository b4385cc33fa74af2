from datetime import datetime, timezone
from types import SimpleNamespace

from app.core.db import get_session
from app.services.circuit_breaker import BreakerState, CircuitConfig
from app.services.model_health import ModelHealth


class _Queue:
    def __init__(self):
        self.retried: list[str] = []
        self.purged: list[int | None] = []

    async def retry_job(self, jid):
        self.retried.append(jid)
        if jid != "analysis-5":
            return None
        return {"id": jid, "job_type": "analysis", "match_id": 5, "source": "dead_letter"}

    async def dead_letter_count(self):
        return 1

    async def dead_letter(self, *, limit=50, offset=0):
        return [{"id": "analysis-5", "job_type": "analysis", "match_id": 5, "attempts": 5, "error": "HTTP 503"}]

    async def purge_dead_letter(self, *, older_than_days=None):
        self.purged.append(older_than_days)
        return 2


class _Circuit:
    configs = {"together": CircuitConfig(), "api-football": CircuitConfig()}

    def __init__(self):
        self.store = SimpleNamespace(services=self._services)
        self.reset_calls: list[str] = []

    async def _services(self):
        return ["synthetic"]

    async def status(self, service):
        return {"service": service, "state": "closed", "reported_open": False}

    async def reset(self, service):
        self.reset_calls.append(service)
        return BreakerState(service=service)


class _Health:
    def __init__(self):
        self.changes: list[tuple[str, bool]] = []

    async def snapshot(self):
        return {"glm-4.6": ModelHealth("glm-4.6", active=False, auto_disabled=True, consecutive_failures=3)}

    async def set_active(self, model_id, active):
        self.changes.append((model_id, active))
        return ModelHealth(model_id, active=active, auto_disabled=False, consecutive_failures=0)


def _install(monkeypatch):
    from app import main

    pipeline = SimpleNamespace(
        queue=_Queue(),
        circuit=_Circuit(),
        health=_Health(),
        fallbacks={"kimi-k2.5-syn": "kimi-k2-instruct"},
        workers=SimpleNamespace(status=lambda: {"analysis": {"running": 0, "concurrency": 1}}),
    )
    monkeypatch.setattr(main, "PIPELINE", pipeline)
    return pipeline


def test_admin_endpoints_require_token(api_client, monkeypatch):
    _install(monkeypatch)
    resp = api_client.post("/api/v1/admin/jobs/analysis-5/retry", headers={"X-Admin-Token": "wrong"})
    assert resp.status_code == 403


def test_pipeline_not_started_is_503(api_client, monkeypatch):
    from app import main

    monkeypatch.setattr(main, "PIPELINE", None)
    assert api_client.get("/api/v1/admin/jobs/dead-letter").status_code == 503


def test_retry_job(api_client, monkeypatch):
    pipeline = _install(monkeypatch)
    ok = api_client.post("/api/v1/admin/jobs/analysis-5/retry")
    assert ok.status_code == 200
    assert ok.json()["source"] == "dead_letter"

    missing = api_client.post("/api/v1/admin/jobs/predictions-9/retry")
    assert missing.status_code == 404
    assert pipeline.queue.retried == ["analysis-5", "predictions-9"]


def test_dead_letter_listing_and_cleanup(api_client, monkeypatch):
    pipeline = _install(monkeypatch)
    listing = api_client.get("/api/v1/admin/jobs/dead-letter?limit=10")
    assert listing.status_code == 200
    assert listing.headers["X-Total-Count"] == "1"
    assert listing.json()["items"][0]["id"] == "analysis-5"

    cleanup = api_client.delete("/api/v1/admin/jobs/dead-letter?older_than_days=7")
    assert cleanup.json() == {"ok": True, "deleted": 2}
    api_client.delete("/api/v1/admin/jobs/dead-letter")
    assert pipeline.queue.purged == [7, None]


def test_circuit_listing_and_reset(api_client, monkeypatch):
    pipeline = _install(monkeypatch)
    circuits = api_client.get("/api/v1/admin/circuits").json()["circuits"]
    assert [c["service"] for c in circuits] == ["api-football", "synthetic", "together"]

    reset = api_client.post("/api/v1/admin/circuits/together/reset")
    assert reset.status_code == 200
    assert reset.json()["circuit"]["state"] == "closed"
    assert api_client.post("/api/v1/admin/circuits/unknown/reset").status_code == 404
    assert pipeline.circuit.reset_calls == ["together"]


def test_models_listing_and_toggle(api_client, monkeypatch):
    pipeline = _install(monkeypatch)
    models = {m["model_id"]: m for m in api_client.get("/api/v1/admin/models").json()}
    assert models["glm-4.6"]["auto_disabled"] is True
    assert models["kimi-k2.5-syn"]["fallback"] == "kimi-k2-instruct"

    enabled = api_client.post("/api/v1/admin/models/glm-4.6/enable")
    assert enabled.json()["model"]["active"] is True
    assert api_client.post("/api/v1/admin/models/not-a-model/disable").status_code == 404
    assert pipeline.health.changes == [("glm-4.6", True)]


def test_jobs_status_reports_workers(api_client, monkeypatch):
    _install(monkeypatch)
    body = api_client.get("/api/v1/jobs/status").json()
    assert body["workers"]["analysis"]["concurrency"] == 1


def test_match_settlement_endpoint(api_client, monkeypatch):
    from app import main
    from app.main import app
    from app.services.matches import Match

    settled = Match(
        id=3,
        home_team="Home FC",
        away_team="Away United",
        competition=None,
        kickoff=datetime(2026, 10, 17, 15, 30, tzinfo=timezone.utc),
        status="finished",
        home_score=2,
        away_score=1,
        settled_at=datetime(2026, 10, 17, 17, 40, tzinfo=timezone.utc),
    )
    pending = Match(
        id=4,
        home_team="Home FC",
        away_team="Away United",
        competition=None,
        kickoff=datetime(2026, 10, 17, 15, 30, tzinfo=timezone.utc),
        status="live",
    )

    async def _get_match(_session, match_id):
        return {3: settled, 4: pending}.get(match_id)

    async def _output(_session, match_id):
        return [{"model_id": "deepseek-r1", "home_score": 2, "away_score": 1, "points": 7}]

    async def _session():
        yield None

    monkeypatch.setattr(main, "get_match", _get_match)
    monkeypatch.setattr(main, "settlement_output", _output)
    app.dependency_overrides[get_session] = _session

    ok = api_client.get("/api/v1/matches/3/settlement")
    assert ok.status_code == 200
    assert ok.json()["predictions"][0]["points"] == 7
    assert api_client.get("/api/v1/matches/4/settlement").status_code == 409
    assert api_client.get("/api/v1/matches/5/settlement").status_code == 404


class _Budget:
    limits = {"together": 5000, "api-football": 100}

    async def status(self, provider):
        from app.services.budget import BudgetDecision

        used = {"together": 12, "api-football": 100}[provider]
        return BudgetDecision(
            allowed=used < self.limits[provider],
            used=used,
            limit=self.limits[provider],
            resets_at=datetime(2026, 10, 18, tzinfo=timezone.utc),
        )


def test_budgets_report_counters_and_llm_spend(api_client, monkeypatch):
    from app import main
    from app.main import app

    pipeline = _install(monkeypatch)
    pipeline.budget = _Budget()

    async def _spend(_session):
        return {"total_cost": 1.25, "by_model": []}

    async def _session():
        yield None

    monkeypatch.setattr(main, "daily_spend", _spend)
    monkeypatch.setattr(main.settings, "llm_daily_budget_usd", 1.0)
    app.dependency_overrides[get_session] = _session

    body = api_client.get("/api/v1/admin/budgets").json()
    by_provider = {p["provider"]: p for p in body["providers"]}
    assert by_provider["api-football"]["allowed"] is False
    assert by_provider["together"]["remaining"] == 4988
    assert body["llm_spend"]["over_budget"] is True


def test_run_now_starts_job_and_rate_limits(api_client, monkeypatch):
    from app import main

    started: list[str] = []

    def _fake_create_task(coro, *, label):
        coro.close()
        started.append(label)

    monkeypatch.setattr(main, "_create_task", _fake_create_task)
    monkeypatch.setattr(main, "RUN_NOW_LAST", {})
    monkeypatch.setattr(main, "RUN_NOW_RATE", {})

    assert api_client.post("/api/v1/run-now?job=rebuild").status_code == 400

    ok = api_client.post("/api/v1/run-now?job=catch_up", headers={"X-Admin-Actor": "ops"})
    assert ok.status_code == 200
    assert ok.json() == {"ok": True, "started": "catch_up", "skipped": False}
    assert api_client.post("/api/v1/run-now?job=backfill").status_code == 429
    assert started == ["run-now:catch_up"]


def test_health_is_public(api_client):
    resp = api_client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
