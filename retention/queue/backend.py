"""
Durable queue storage (Redis preferred, in-memory for dev and tests).

Storage model
-------------
- one pending list per priority class
- a "scheduled" set of (eligible_at, task_id) for delayed tasks and retries
- an "inflight" list of dequeued-but-unacknowledged ids, each holding a
  lease (``lease_seconds`` from dequeue).  Only an expired lease is
  reclaimed by ``requeue_inflight``, so a worker that dies before ``ack``
  gets its task redelivered while live workers keep theirs
- a "dead" set of permanently failed tasks, kept for inspection and replay

The broker serialises ``dequeue`` so two workers never receive the same
task instance.  Every other move between structures is a single Redis
transaction, so a crash leaves the task where it was, never nowhere.
"""

from __future__ import annotations

import heapq
import logging
import threading
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

import redis

from retention.config import Settings
from retention.domain.enums import Priority
from retention.queue.errors import QueueUnavailableError
from retention.queue.task import Task, decode_task, encode_task

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

DEFAULT_LEASE_SECONDS = 90.0

# Added to the task timeout so a lease outlives the slowest legal execution.
LEASE_MARGIN_SECONDS = 30.0

# What decode_task raises on a damaged envelope
_DECODE_ERRORS = (ValueError, KeyError, TypeError)


class QueueBackend:
    backend: str = "none"

    def now(self) -> float:
        raise NotImplementedError

    def ping(self) -> None:
        raise NotImplementedError

    def push(self, task: Task) -> None:
        """Make ``task`` immediately eligible on its priority queue."""
        raise NotImplementedError

    def schedule(self, task: Task, eligible_at: float) -> None:
        """Hold ``task`` invisible until ``eligible_at``."""
        raise NotImplementedError

    def promote_due(self) -> int:
        """Move scheduled tasks whose deadline has passed onto their queues."""
        raise NotImplementedError

    def dequeue(self, queue_order: Sequence[str]) -> Optional[Task]:
        """Pop from the first non-empty queue in ``queue_order`` and lease it."""
        raise NotImplementedError

    def ack(self, task: Task) -> None:
        raise NotImplementedError

    def retry(self, task: Task, eligible_at: float, error: str) -> Task:
        raise NotImplementedError

    def dead_letter(self, task: Task, reason: str) -> Task:
        raise NotImplementedError

    def dead_letters(self) -> List[Task]:
        raise NotImplementedError

    def replay(self, task_id: str) -> Optional[Task]:
        """Move a dead task back onto its queue with a fresh retry budget."""
        raise NotImplementedError

    def requeue_inflight(self) -> int:
        """Return in-flight tasks whose lease has expired to their queues."""
        raise NotImplementedError

    def size(self, queue: str) -> int:
        raise NotImplementedError

    def scheduled_count(self) -> int:
        raise NotImplementedError

    def enqueue(self, task: Task) -> None:
        if task.not_before is not None and task.not_before > self.now():
            self.schedule(task, task.not_before)
        else:
            self.push(task)

    def close(self) -> None:
        return None


def _fresh_for_replay(task: Task) -> Task:
    return replace(task, retried=0, not_before=None, failed_at=None)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class MemoryQueueBackend(QueueBackend):
    backend = "memory"

    def __init__(self, clock: Clock = time.time, lease_seconds: float = DEFAULT_LEASE_SECONDS) -> None:
        self._clock = clock
        self._lease_seconds = lease_seconds
        self._lock = threading.Lock()
        self._queues: Dict[str, Deque[Task]] = {p.value: deque() for p in Priority}
        self._scheduled: List[Tuple[float, int, Task]] = []
        self._seq = 0
        self._inflight: Dict[str, Tuple[float, Task]] = {}
        self._dead: Dict[str, Task] = {}

    def now(self) -> float:
        return self._clock()

    def ping(self) -> None:
        return None

    def push(self, task: Task) -> None:
        with self._lock:
            self._queues.setdefault(task.queue, deque()).appendleft(task)

    def schedule(self, task: Task, eligible_at: float) -> None:
        with self._lock:
            self._seq += 1
            heapq.heappush(self._scheduled, (eligible_at, self._seq, task))

    def promote_due(self) -> int:
        now = self.now()
        moved = 0
        with self._lock:
            while self._scheduled and self._scheduled[0][0] <= now:
                _, _, task = heapq.heappop(self._scheduled)
                self._queues.setdefault(task.queue, deque()).appendleft(task)
                moved += 1
        return moved

    def dequeue(self, queue_order: Sequence[str]) -> Optional[Task]:
        deadline = self.now() + self._lease_seconds
        with self._lock:
            for name in queue_order:
                q = self._queues.get(name)
                if q:
                    task = q.pop()
                    self._inflight[task.id] = (deadline, task)
                    return task
        return None

    def ack(self, task: Task) -> None:
        with self._lock:
            self._inflight.pop(task.id, None)

    def retry(self, task: Task, eligible_at: float, error: str) -> Task:
        updated = task.with_retry(eligible_at, error)
        with self._lock:
            self._inflight.pop(task.id, None)
            self._seq += 1
            heapq.heappush(self._scheduled, (eligible_at, self._seq, updated))
        return updated

    def dead_letter(self, task: Task, reason: str) -> Task:
        updated = task.with_failure(reason, self.now())
        with self._lock:
            self._inflight.pop(task.id, None)
            self._dead[task.id] = updated
        return updated

    def dead_letters(self) -> List[Task]:
        with self._lock:
            return sorted(self._dead.values(), key=lambda t: t.failed_at or 0.0)

    def replay(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._dead.pop(task_id, None)
            if task is None:
                return None
            fresh = _fresh_for_replay(task)
            self._queues.setdefault(fresh.queue, deque()).appendleft(fresh)
            return fresh

    def requeue_inflight(self) -> int:
        now = self.now()
        with self._lock:
            expired = [tid for tid, (deadline, _) in self._inflight.items() if deadline <= now]
            for tid in expired:
                _, task = self._inflight.pop(tid)
                self._queues.setdefault(task.queue, deque()).append(task)
        return len(expired)

    def size(self, queue: str) -> int:
        with self._lock:
            return len(self._queues.get(queue, ()))

    def scheduled_count(self) -> int:
        with self._lock:
            return len(self._scheduled)

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class RedisQueueBackend(QueueBackend):
    """
    Keys (under ``namespace``)::

        task:<id>        encoded envelope
        queue:<class>    pending ids, LPUSH in / RPOP out
        scheduled        ZSET id -> eligible_at
        inflight         list of leased ids
        leases           ZSET id -> lease deadline
        dead             ZSET id -> failed_at
    """

    backend = "redis"

    def __init__(
        self,
        url: str = "",
        namespace: str = "retention",
        client=None,
        clock: Clock = time.time,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ) -> None:
        if client is None:
            client = redis.from_url(
                url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=5,
            )
        self._client = client
        self._ns = namespace
        self._clock = clock
        self._lease_seconds = lease_seconds

    # -- keys -------------------------------------------------------------

    def _task_key(self, task_id: str) -> str:
        return f"{self._ns}:task:{task_id}"

    def _queue_key(self, queue: str) -> str:
        return f"{self._ns}:queue:{queue}"

    @property
    def _scheduled_key(self) -> str:
        return f"{self._ns}:scheduled"

    @property
    def _inflight_key(self) -> str:
        return f"{self._ns}:inflight"

    @property
    def _leases_key(self) -> str:
        return f"{self._ns}:leases"

    @property
    def _dead_key(self) -> str:
        return f"{self._ns}:dead"

    # -- helpers ----------------------------------------------------------

    def _load(self, task_id: str) -> Optional[Task]:
        raw = self._client.get(self._task_key(task_id))
        if raw is None:
            return None
        return decode_task(raw)

    def _release(self, pipe, task_id: str) -> None:
        pipe.lrem(self._inflight_key, 1, task_id)
        pipe.zrem(self._leases_key, task_id)

    def _bury_corrupt(self, task_id: str, source_key: str, exc: Exception) -> None:
        """Dead-letter an id whose envelope cannot be decoded."""
        logger.error(
            "Task %s has a corrupt envelope (ValidationFault: %s); dead-lettering", task_id, exc
        )
        with self._client.pipeline(transaction=True) as pipe:
            if source_key == self._inflight_key:
                self._release(pipe, task_id)
            else:
                pipe.zrem(source_key, task_id)
            pipe.zadd(self._dead_key, {task_id: self.now()})
            pipe.execute()

    # -- interface --------------------------------------------------------

    def now(self) -> float:
        return self._clock()

    def ping(self) -> None:
        self._client.ping()

    def push(self, task: Task) -> None:
        with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._task_key(task.id), encode_task(task))
            pipe.lpush(self._queue_key(task.queue), task.id)
            pipe.execute()

    def schedule(self, task: Task, eligible_at: float) -> None:
        with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._task_key(task.id), encode_task(task))
            pipe.zadd(self._scheduled_key, {task.id: eligible_at})
            pipe.execute()

    def promote_due(self) -> int:
        due = self._client.zrangebyscore(self._scheduled_key, "-inf", self.now())
        return sum(1 for task_id in due if self._promote(task_id))

    def _promote(self, task_id: str) -> bool:
        with self._client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(self._scheduled_key)
                if pipe.zscore(self._scheduled_key, task_id) is None:
                    return False
                raw = pipe.get(self._task_key(task_id))
                if raw is None:
                    logger.warning("Scheduled task %s has no stored body; dropping", task_id)
                    pipe.multi()
                    pipe.zrem(self._scheduled_key, task_id)
                    pipe.execute()
                    return False
                try:
                    task = decode_task(raw)
                except _DECODE_ERRORS as exc:
                    pipe.unwatch()
                    self._bury_corrupt(task_id, self._scheduled_key, exc)
                    return False
                pipe.multi()
                pipe.zrem(self._scheduled_key, task_id)
                pipe.lpush(self._queue_key(task.queue), task_id)
                pipe.execute()
                return True
            except redis.exceptions.WatchError:
                # Another worker touched the schedule; the next pass retries.
                return False

    def dequeue(self, queue_order: Sequence[str]) -> Optional[Task]:
        for name in queue_order:
            while True:
                task_id = self._client.lmove(
                    self._queue_key(name), self._inflight_key, "RIGHT", "LEFT"
                )
                if task_id is None:
                    break
                self._client.zadd(self._leases_key, {task_id: self.now() + self._lease_seconds})
                try:
                    task = self._load(task_id)
                except _DECODE_ERRORS as exc:
                    self._bury_corrupt(task_id, self._inflight_key, exc)
                    continue
                if task is None:
                    logger.warning("Dequeued task %s has no stored body; dropping", task_id)
                    with self._client.pipeline(transaction=True) as pipe:
                        self._release(pipe, task_id)
                        pipe.execute()
                    continue
                return task
        return None

    def ack(self, task: Task) -> None:
        with self._client.pipeline(transaction=True) as pipe:
            self._release(pipe, task.id)
            pipe.delete(self._task_key(task.id))
            pipe.execute()

    def retry(self, task: Task, eligible_at: float, error: str) -> Task:
        updated = task.with_retry(eligible_at, error)
        with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._task_key(updated.id), encode_task(updated))
            pipe.zadd(self._scheduled_key, {updated.id: eligible_at})
            self._release(pipe, task.id)
            pipe.execute()
        return updated

    def dead_letter(self, task: Task, reason: str) -> Task:
        updated = task.with_failure(reason, self.now())
        with self._client.pipeline(transaction=True) as pipe:
            pipe.set(self._task_key(updated.id), encode_task(updated))
            pipe.zadd(self._dead_key, {updated.id: updated.failed_at})
            self._release(pipe, task.id)
            pipe.execute()
        return updated

    def dead_letters(self) -> List[Task]:
        tasks = []
        for task_id in self._client.zrange(self._dead_key, 0, -1):
            try:
                task = self._load(task_id)
            except _DECODE_ERRORS:
                logger.warning("Dead task %s has a corrupt envelope; skipping", task_id)
                continue
            if task is not None:
                tasks.append(task)
        return tasks

    def replay(self, task_id: str) -> Optional[Task]:
        with self._client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(self._dead_key)
                if pipe.zscore(self._dead_key, task_id) is None:
                    return None
                raw = pipe.get(self._task_key(task_id))
                if raw is None:
                    return None
                try:
                    fresh = _fresh_for_replay(decode_task(raw))
                except _DECODE_ERRORS:
                    logger.warning("Dead task %s has a corrupt envelope; cannot replay", task_id)
                    return None
                pipe.multi()
                pipe.zrem(self._dead_key, task_id)
                pipe.set(self._task_key(task_id), encode_task(fresh))
                pipe.lpush(self._queue_key(fresh.queue), task_id)
                pipe.execute()
                return fresh
            except redis.exceptions.WatchError:
                return None

    def requeue_inflight(self) -> int:
        now = self.now()
        leased = set(self._client.zrange(self._leases_key, 0, -1))
        for task_id in self._client.lrange(self._inflight_key, 0, -1):
            if task_id not in leased:
                # Dequeued a moment ago, or the dequeuer died before leasing:
                # start the clock now instead of reclaiming immediately.
                self._client.zadd(self._leases_key, {task_id: now + self._lease_seconds}, nx=True)

        expired = self._client.zrangebyscore(self._leases_key, "-inf", now)
        return sum(1 for task_id in expired if self._reclaim(task_id, now))

    def _reclaim(self, task_id: str, now: float) -> bool:
        with self._client.pipeline(transaction=True) as pipe:
            try:
                pipe.watch(self._leases_key)
                deadline = pipe.zscore(self._leases_key, task_id)
                if deadline is None or deadline > now:
                    return False
                raw = pipe.get(self._task_key(task_id))
                try:
                    task = decode_task(raw) if raw is not None else None
                except _DECODE_ERRORS as exc:
                    pipe.unwatch()
                    self._bury_corrupt(task_id, self._inflight_key, exc)
                    return False
                pipe.multi()
                self._release(pipe, task_id)
                if task is not None:
                    pipe.rpush(self._queue_key(task.queue), task_id)
                pipe.execute()
                return task is not None
            except redis.exceptions.WatchError:
                return False

    def size(self, queue: str) -> int:
        return int(self._client.llen(self._queue_key(queue)))

    def scheduled_count(self) -> int:
        return int(self._client.zcard(self._scheduled_key))

    def close(self) -> None:
        try:
            self._client.close()
        except (AttributeError, redis.exceptions.RedisError):
            return None


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_queue_backend(settings: Settings) -> QueueBackend:
    """Redis when ``REDIS_URL`` is set, otherwise a process-local queue."""
    lease = settings.task_timeout_seconds + LEASE_MARGIN_SECONDS
    if not settings.redis_url:
        logger.warning("REDIS_URL not set; using in-memory queue (single process only)")
        return MemoryQueueBackend(lease_seconds=lease)

    backend = RedisQueueBackend(
        settings.redis_url, namespace=settings.queue_namespace, lease_seconds=lease
    )
    try:
        backend.ping()
    except (redis.exceptions.RedisError, OSError) as exc:
        raise QueueUnavailableError(f"Redis unreachable at startup: {exc}") from exc
    return backend
