import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from app.jobs.queue import Job, JobQueue, backoff_delay, job_id

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


class _FakeResult:
    def __init__(self, rows=None, *, rowcount: int = 0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def first(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class _FakeSession:
    def __init__(self, results=None):
        self.calls: list[tuple[str, dict | None]] = []
        self.results = list(results or [])
        self.commits = 0

    async def execute(self, stmt, params=None):
        self.calls.append((str(stmt), dict(params) if params is not None else None))
        if self.results:
            return self.results.pop(0)
        return _FakeResult()

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _queue(session, **kwargs):
    return JobQueue(lambda: session, max_attempts=3, backoff_base_seconds=30, clock=lambda: NOW, **kwargs)


def test_job_ids_are_deterministic():
    assert job_id("analysis", 42) == "analysis-42"
    assert job_id("predictions", 42, "retry") == "predictions-42-retry"
    assert job_id("live-monitor", 42, "p3") == "live-monitor-42-p3"
    with pytest.raises(ValueError):
        job_id("unknown", 42)


def test_backoff_doubles_per_attempt():
    assert backoff_delay(1, 30) == timedelta(seconds=30)
    assert backoff_delay(2, 30) == timedelta(seconds=60)
    assert backoff_delay(4, 30) == timedelta(seconds=240)


def test_enqueue_is_insert_on_conflict_and_clamps_past_times():
    session = _FakeSession([_FakeResult([SimpleNamespace(id="analysis-7")]), _FakeResult([])])
    queue = _queue(session)

    async def _run():
        first = await queue.enqueue("analysis", 7, NOW - timedelta(hours=2))
        second = await queue.enqueue("analysis", 7, NOW - timedelta(hours=2))
        return first, second

    first, second = asyncio.run(_run())
    assert (first, second) == (True, False)
    sql, params = session.calls[0]
    assert "ON CONFLICT (id) DO NOTHING" in sql
    assert params["id"] == "analysis-7"
    assert params["run_at"] == NOW
    assert params["max_attempts"] == 3
    assert json.loads(params["payload"]) == {}


def test_enqueue_keeps_future_times_and_payload():
    session = _FakeSession([_FakeResult([SimpleNamespace(id="predictions-7-retry")])])
    queue = _queue(session)
    at = NOW + timedelta(minutes=25)
    asyncio.run(queue.enqueue("predictions", 7, at, suffix="retry", payload={"final": True}))
    _, params = session.calls[0]
    assert params["id"] == "predictions-7-retry"
    assert params["run_at"] == at
    assert json.loads(params["payload"]) == {"final": True}


def test_claim_uses_skip_locked_and_maps_rows():
    row = SimpleNamespace(
        id="settlement-9",
        job_type="settlement",
        match_id=9,
        payload='{"source": "live-monitor"}',
        attempts=1,
        max_attempts=3,
        run_at=datetime(2026, 10, 17, 11, 59),
    )
    session = _FakeSession([_FakeResult([row])])
    jobs = asyncio.run(_queue(session).claim("settlement", 2, 120))

    sql, params = session.calls[0]
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert params == {"job_type": "settlement", "limit": 2, "deadline": 120}
    assert jobs == [
        Job(
            id="settlement-9",
            job_type="settlement",
            match_id=9,
            attempts=1,
            max_attempts=3,
            run_at=datetime(2026, 10, 17, 11, 59, tzinfo=timezone.utc),
            payload={"source": "live-monitor"},
        )
    ]
    assert session.commits == 1


def test_claim_with_no_free_slots_does_not_query():
    session = _FakeSession()
    assert asyncio.run(_queue(session).claim("analysis", 0, 60)) == []
    assert session.calls == []


def test_fail_schedules_backoff_retry():
    session = _FakeSession()
    job = Job(id="analysis-1", job_type="analysis", match_id=1, attempts=2, max_attempts=3)
    status = asyncio.run(_queue(session).fail(job, "HTTP 503"))
    assert status == "retry"
    _, params = session.calls[0]
    assert params["status"] == "retry"
    assert params["run_at"] == NOW + timedelta(seconds=60)
    assert params["error"] == "HTTP 503"


def test_fail_on_last_attempt_moves_to_dead_letter():
    session = _FakeSession([_FakeResult(), _FakeResult([SimpleNamespace(cnt=1)])])
    job = Job(id="analysis-1", job_type="analysis", match_id=1, attempts=3, max_attempts=3)
    status = asyncio.run(_queue(session).fail(job, "HTTP 503"))
    assert status == "dead"
    sql, params = session.calls[0]
    assert params["status"] == "dead"
    assert "dead_at" in sql
    assert "COUNT(*)" in session.calls[1][0]


def test_retry_job_reports_source():
    dead = SimpleNamespace(id="analysis-1", job_type="analysis", match_id=1, previous_status="dead")
    failed = SimpleNamespace(id="settlement-2", job_type="settlement", match_id=2, previous_status="retry")
    session = _FakeSession([_FakeResult([dead]), _FakeResult([failed]), _FakeResult([])])
    queue = _queue(session)

    async def _run():
        return await queue.retry_job("analysis-1"), await queue.retry_job("settlement-2"), await queue.retry_job("nope")

    first, second, missing = asyncio.run(_run())
    assert first["source"] == "dead_letter"
    assert second["source"] == "failed"
    assert missing is None
    assert "status IN ('retry', 'dead')" in session.calls[0][0]


def test_reap_expired_and_cancel():
    session = _FakeSession(
        [
            _FakeResult([SimpleNamespace(id="predictions-3", status="retry")]),
            _FakeResult(rowcount=2),
        ]
    )
    queue = _queue(session)

    async def _run():
        return await queue.reap_expired(), await queue.cancel_match_jobs(3)

    reaped, cancelled = asyncio.run(_run())
    assert (reaped, cancelled) == (1, 2)
    assert "locked_until < now()" in session.calls[0][0]
    assert "DELETE FROM pipeline_jobs" in session.calls[1][0]
    assert session.calls[1][1] == {"match_id": 3}


def test_purge_dead_letter_uses_retention_cutoff():
    session = _FakeSession([_FakeResult(rowcount=4)])
    deleted = asyncio.run(_queue(session).purge_dead_letter(older_than_days=7))
    assert deleted == 4
    assert session.calls[0][1] == {"cutoff": NOW - timedelta(days=7)}
