import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from app.core.config import settings
from app.core.db import init_db
from app.core.http import init_http_clients
from app.main import _validate_runtime_config, register_pipeline_jobs, shutdown_pipeline, start_pipeline

logger = logging.getLogger(__name__)


async def main() -> None:
    await init_db()
    await init_http_clients()
    _validate_runtime_config(for_scheduler=True)

    if not settings.scheduler_enabled:
        logger.warning("SCHEDULER_ENABLED=false; scheduler runner exiting")
        return

    await start_pipeline()
    scheduler = AsyncIOScheduler()
    register_pipeline_jobs(scheduler)
    scheduler.start()
    logger.info("scheduler_runner_started")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await shutdown_pipeline()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
