"""Standalone dispatcher process.

Usage:
    agenda-worker
    python -m agenda.worker

Several workers may run against the same database; job leases keep them
from executing the same job twice.
"""

import asyncio
import signal

import structlog

from agenda.config import settings
from agenda.database import async_session, engine
from agenda.log_config import configure_error_tracking, configure_logging
from agenda.services.context import SchedulerContext
from agenda.services.dispatcher import Dispatcher
from agenda.services.job_store import SqlJobStore
from agenda.services.notifications import ResendEmailGateway, close_http_client

logger = structlog.get_logger()


async def run_worker() -> None:
    ctx = SchedulerContext(
        session_factory=async_session,
        store=SqlJobStore(async_session),
        gateway=ResendEmailGateway(),
        settings=settings,
    )
    dispatcher = Dispatcher(ctx)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    dispatcher.start()
    logger.info("worker_started", worker_id=dispatcher.worker_id, env=settings.APP_ENV)
    try:
        await stop.wait()
    finally:
        await dispatcher.shutdown()
        await close_http_client()
        await engine.dispose()
        logger.info("worker_stopped", worker_id=dispatcher.worker_id)


def main() -> None:
    configure_logging()
    configure_error_tracking("agenda-worker")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
