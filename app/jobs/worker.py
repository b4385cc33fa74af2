from __future__ import annotations

import asyncio
import traceback

from app.core.logger import get_logger

log = get_logger("jobs.worker")


class WorkerPool:
    """
    Per-queue bounded execution.

    Each `tick(job_type)` claims at most as many due jobs as that queue has free slots and
    runs them as tasks. A handler exceeding the job deadline is cancelled, which frees the
    slot, and the job is failed back to the queue for a backoff retry.
    """

    def __init__(self, queue, handlers: dict, *, concurrency: dict[str, int], deadlines: dict[str, int], context=None):
        self.queue = queue
        self.handlers = handlers
        self.concurrency = dict(concurrency)
        self.deadlines = dict(deadlines)
        self.context = context
        self._running: dict[str, set[asyncio.Task]] = {name: set() for name in handlers}

    def running(self, job_type: str) -> int:
        return len(self._running.get(job_type) or ())

    def status(self) -> dict:
        return {
            name: {"running": self.running(name), "concurrency": int(self.concurrency.get(name, 1))}
            for name in self.handlers
        }

    async def tick(self, job_type: str) -> int:
        free = int(self.concurrency.get(job_type, 1)) - self.running(job_type)
        if free <= 0:
            return 0
        deadline = int(self.deadlines[job_type])
        jobs = await self.queue.claim(job_type, free, deadline)
        for job in jobs:
            task = asyncio.create_task(self._execute(job, deadline))
            bucket = self._running.setdefault(job_type, set())
            bucket.add(task)
            task.add_done_callback(bucket.discard)
        return len(jobs)

    async def _execute(self, job, deadline: int) -> None:
        handler = self.handlers[job.job_type]
        log.info("job_started id=%s attempt=%s", job.id, job.attempts)
        try:
            result = await asyncio.wait_for(handler(job, self.context), deadline)
        except asyncio.TimeoutError:
            log.warning("job_timeout id=%s deadline=%ss", job.id, deadline)
            await self.queue.fail(job, f"deadline exceeded after {deadline}s")
        except Exception as exc:
            log.exception("job_failed id=%s", job.id)
            tb = traceback.format_exc(limit=30)
            await self.queue.fail(job, f"{exc.__class__.__name__}: {exc}\n{tb}")
        else:
            await self.queue.complete(job, result if isinstance(result, dict) else None)
            log.info("job_completed id=%s", job.id)

    async def drain(self, timeout: float = 10.0) -> None:
        tasks = [t for bucket in self._running.values() for t in bucket]
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            log.warning("worker_drain_cancelled tasks=%s", len(pending))
