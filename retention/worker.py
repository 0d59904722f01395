"""
Dedicated worker process entrypoint.

Run with:
    python -m retention.worker

Drains the task queue until SIGINT/SIGTERM.  Producers run elsewhere and
share nothing with this process except the queue broker and database.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from retention.analytics.sentiment import SentimentEstimator
from retention.config import Settings, load_settings
from retention.core.logging import configure_logging
from retention.database import Database
from retention.handlers import TaskHandlers
from retention.queue.backend import QueueBackend, build_queue_backend
from retention.queue.client import QueueClient
from retention.queue.pool import HandlerRegistry, WorkerPool

logger = logging.getLogger(__name__)


@dataclass
class WorkerApp:
    settings: Settings
    database: Database
    backend: QueueBackend
    client: QueueClient
    estimator: SentimentEstimator
    pool: WorkerPool

    async def close(self) -> None:
        await self.estimator.aclose()
        self.backend.close()
        self.database.dispose()


def build_worker(
    settings: Settings,
    backend: Optional[QueueBackend] = None,
    database: Optional[Database] = None,
) -> WorkerApp:
    """Wire database, queue, handlers and pool from ``settings``."""
    database = database or Database(settings.database_url)
    backend = backend or build_queue_backend(settings)
    client = QueueClient(backend, settings)
    estimator = SentimentEstimator(settings)
    handlers = TaskHandlers(database, client, settings, estimator)
    registry = handlers.register(HandlerRegistry())
    pool = WorkerPool(backend, registry, settings)
    return WorkerApp(settings, database, backend, client, estimator, pool)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    """Install SIGINT/SIGTERM handlers that request a graceful shutdown."""
    loop = asyncio.get_running_loop()

    def _request_stop() -> None:
        if not stop_event.is_set():
            logger.info("Shutdown signal received, stopping worker...")
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            # Windows fallback
            signal.signal(sig, lambda _s, _f: _request_stop())


async def run_until_idle(app: WorkerApp, max_tasks: int = 1000) -> int:
    """Process eligible tasks one at a time until none remain.  Returns the count."""
    processed = 0
    while processed < max_tasks:
        outcome = await app.pool.process_next()
        if outcome is None:
            break
        processed += 1
    return processed


async def run_worker_forever(app: WorkerApp, stop_event: asyncio.Event) -> None:
    """
    Keep the pool alive with retry/backoff around session crashes.
    """
    initial_backoff = max(0.5, app.settings.session_retry_initial_seconds)
    max_backoff = max(initial_backoff, app.settings.session_retry_max_seconds)
    backoff = initial_backoff

    while not stop_event.is_set():
        try:
            await app.pool.run(stop_event)
            return
        except asyncio.CancelledError:
            raise
        except Exception:
            if stop_event.is_set():
                return
            logger.exception("Worker session crashed; retrying in %.1fs", backoff)
            await asyncio.sleep(backoff)
            backoff = min(max_backoff, backoff * 2.0)


async def main_async(settings: Optional[Settings] = None) -> None:
    settings = settings or load_settings()
    app = build_worker(settings)
    app.database.init()

    try:
        if settings.run_once:
            count = await run_until_idle(app)
            logger.info("Worker run-once mode processed %d task(s)", count)
            return

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        logger.info("Starting worker in continuous mode.")
        await run_worker_forever(app, stop_event)
    finally:
        await app.close()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    asyncio.run(main_async(settings))


if __name__ == "__main__":
    main()
