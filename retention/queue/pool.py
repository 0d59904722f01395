"""
Worker pool: pulls tasks across priority classes and runs their handlers.

Per slot::

    Idle → Dequeuing → Executing → Idle
                                 → Failed → retry scheduled (transient, budget left)
                                 → Failed → dead-lettered (permanent, or budget spent)

Queue choice is weighted-random per dequeue (6:3:1 by default), so
critical work is preferred while low-priority work still drains.  A
semaphore caps in-flight executions across all classes.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Set, Union

from retention.config import Settings
from retention.domain.enums import TaskKind
from retention.metrics import TaskMetrics
from retention.queue.backend import QueueBackend
from retention.queue.errors import (
    FailureClass,
    TransientFault,
    UnknownTaskKind,
    classify_failure,
)
from retention.queue.task import Task

logger = logging.getLogger(__name__)

Handler = Callable[[Task], Awaitable[None]]


class TaskOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"


class HandlerRegistry:
    """Maps task kinds to async handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def register(self, kind: Union[TaskKind, str], handler: Handler) -> None:
        key = kind.value if isinstance(kind, TaskKind) else str(kind)
        if key in self._handlers:
            raise ValueError(f"Handler already registered for {key}")
        self._handlers[key] = handler

    def resolve(self, kind: str) -> Optional[Handler]:
        return self._handlers.get(kind)

    def kinds(self) -> List[str]:
        return sorted(self._handlers)


def weighted_queue_order(
    weights: Dict[str, int],
    rng: random.Random,
    strict: bool = False,
) -> List[str]:
    """
    Order in which queues are polled for one dequeue.

    Strict mode always tries heavier queues first.  Otherwise queues are
    drawn without replacement with probability proportional to weight.
    """
    if strict:
        return sorted(weights, key=lambda name: (-weights[name], name))

    remaining = dict(weights)
    order: List[str] = []
    while remaining:
        total = sum(remaining.values())
        pick = rng.random() * total
        acc = 0.0
        chosen = next(iter(remaining))
        for name, weight in remaining.items():
            acc += weight
            if pick < acc:
                chosen = name
                break
        order.append(chosen)
        del remaining[chosen]
    return order


class WorkerPool:
    def __init__(
        self,
        backend: QueueBackend,
        registry: HandlerRegistry,
        settings: Settings,
        metrics: Optional[TaskMetrics] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._settings = settings
        self.metrics = metrics or TaskMetrics()
        self._rng = rng or random.Random()
        self._inflight: Set[asyncio.Task] = set()

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def queue_order(self) -> List[str]:
        return weighted_queue_order(
            self._settings.queue_weights, self._rng, strict=self._settings.strict_priority
        )

    # ------------------------------------------------------------------
    # Single step
    # ------------------------------------------------------------------

    def _fetch(self) -> Optional[Task]:
        reclaimed = self._backend.requeue_inflight()
        if reclaimed:
            logger.warning("Reclaimed %d task(s) whose lease expired", reclaimed)
        self._backend.promote_due()
        return self._backend.dequeue(self.queue_order())

    async def process_next(self) -> Optional[TaskOutcome]:
        """Dequeue and execute at most one task.  None when nothing is eligible."""
        task = await asyncio.to_thread(self._fetch)
        if task is None:
            return None
        return await self.execute(task)

    async def execute(self, task: Task) -> TaskOutcome:
        handler = self._registry.resolve(task.kind)
        if handler is None:
            return await self._fail(task, UnknownTaskKind(f"No handler for task kind {task.kind!r}"))

        logger.debug("Executing %s id=%s attempt=%d", task.kind, task.id, task.attempt)
        try:
            await asyncio.wait_for(handler(task), timeout=self._settings.task_timeout_seconds)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            return await self._fail(
                task,
                TransientFault(f"timed out after {self._settings.task_timeout_seconds:.0f}s"),
            )
        except Exception as exc:
            return await self._fail(task, exc)

        await asyncio.to_thread(self._backend.ack, task)
        self.metrics.record_success()
        logger.info("Task %s id=%s succeeded", task.kind, task.id)
        return TaskOutcome.SUCCEEDED

    async def _fail(self, task: Task, exc: BaseException) -> TaskOutcome:
        error = f"{type(exc).__name__}: {exc}"
        failure = classify_failure(exc)

        if failure is FailureClass.PERMANENT:
            await asyncio.to_thread(self._backend.dead_letter, task, error)
            self.metrics.record_dead_letter()
            logger.error("Task %s id=%s failed permanently: %s", task.kind, task.id, error)
            return TaskOutcome.DEAD

        if task.retried >= task.max_retry:
            reason = f"retries exhausted ({task.retried}/{task.max_retry}): {error}"
            await asyncio.to_thread(self._backend.dead_letter, task, reason)
            self.metrics.record_dead_letter()
            logger.error("Task %s id=%s dead-lettered: %s", task.kind, task.id, reason)
            return TaskOutcome.DEAD

        delay = self._settings.retry.delay_for(task.attempt)
        eligible_at = self._backend.now() + delay
        await asyncio.to_thread(self._backend.retry, task, eligible_at, error)
        self.metrics.record_retry()
        logger.warning(
            "Task %s id=%s attempt %d failed (%s); retrying in %.0fs",
            task.kind, task.id, task.attempt, error, delay,
        )
        return TaskOutcome.RETRY_SCHEDULED

    # ------------------------------------------------------------------
    # Long-running loop
    # ------------------------------------------------------------------

    async def run(self, stop_event: asyncio.Event) -> None:
        """Pull and execute tasks until ``stop_event`` is set, then drain."""
        slots = asyncio.Semaphore(self._settings.concurrency)
        recovered = await asyncio.to_thread(self._backend.requeue_inflight)
        if recovered:
            logger.warning("Re-queued %d unacknowledged task(s) from a previous run", recovered)
        logger.info(
            "Worker pool started: concurrency=%d queues=%s",
            self._settings.concurrency, self._settings.queue_weights,
        )

        try:
            while not stop_event.is_set():
                await slots.acquire()
                try:
                    task = await asyncio.to_thread(self._fetch)
                except Exception:
                    slots.release()
                    logger.exception("Dequeue failed")
                    await self._idle(stop_event)
                    continue

                if task is None:
                    slots.release()
                    await self._idle(stop_event)
                    continue

                running = asyncio.create_task(self._run_slot(task, slots))
                self._inflight.add(running)
                running.add_done_callback(self._inflight.discard)
        finally:
            await self.drain()

    async def _run_slot(self, task: Task, slots: asyncio.Semaphore) -> None:
        try:
            await self.execute(task)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Broker trouble while recording the outcome; the task stays
            # in flight and is redelivered once its lease expires.
            logger.exception("Failed to record outcome for task %s", task.id)
        finally:
            slots.release()

    async def _idle(self, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self._settings.poll_interval_seconds)
        except asyncio.TimeoutError:
            return

    async def drain(self) -> None:
        """Wait for in-flight executions, cancelling any that overrun the timeout."""
        if not self._inflight:
            return
        pending = list(self._inflight)
        logger.info("Waiting for %d in-flight task(s)...", len(pending))
        _, still_running = await asyncio.wait(
            pending, timeout=self._settings.shutdown_timeout_seconds
        )
        for t in still_running:
            t.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning("Cancelled %d task(s) at shutdown; they will be redelivered", len(still_running))
