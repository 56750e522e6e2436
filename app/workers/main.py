"""
Worker process entry point.

Running locally:
    python -m app.workers.main

Queues and concurrency come from WORKER_QUEUES / WORKER_CONCURRENCY. Any
number of worker processes may run side by side against the same database.
SIGINT / SIGTERM stop claiming new jobs; jobs already running finish first.
"""

import asyncio
import logging
import signal

from app.catalog import build_default_catalog
from app.config import settings
from app.database import AsyncSessionLocal, Base, engine
from app.logging_config import configure_logging
from app.providers import close_providers, get_provider_registry
from app.workers.handlers import build_housekeeping, build_job_handlers
from app.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


async def run_worker() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    pool = WorkerPool(
        AsyncSessionLocal,
        build_job_handlers(),
        settings=settings,
        catalog=build_default_catalog(),
        providers=get_provider_registry(),
        housekeeping=build_housekeeping(settings),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C still interrupts
            pass

    try:
        await pool.run(stop)
    finally:
        await close_providers()
        await engine.dispose()


def main() -> None:
    configure_logging(settings)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
