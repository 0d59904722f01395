"""
Lightweight runtime metrics for the worker pool.

Uses in-process counters so it works without extra dependencies.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Deque, Dict, Optional


class TaskMetrics:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processed = 0
        self._succeeded = 0
        self._retried = 0
        self._dead_lettered = 0
        self._failure_timestamps: Deque[float] = deque()
        self._last_success_at: Optional[float] = None

    def record_success(self, ts: Optional[float] = None) -> None:
        now = ts if ts is not None else time.time()
        with self._lock:
            self._processed += 1
            self._succeeded += 1
            self._last_success_at = now

    def record_retry(self, ts: Optional[float] = None) -> None:
        with self._lock:
            self._processed += 1
            self._retried += 1
            self._record_failure_locked(ts)

    def record_dead_letter(self, ts: Optional[float] = None) -> None:
        with self._lock:
            self._processed += 1
            self._dead_lettered += 1
            self._record_failure_locked(ts)

    def snapshot(self) -> Dict[str, float | int | None]:
        now = time.time()
        with self._lock:
            self._prune_locked(now)
            return {
                "processed": self._processed,
                "succeeded": self._succeeded,
                "retried": self._retried,
                "dead_lettered": self._dead_lettered,
                "failures_last_hour": len(self._failure_timestamps),
                "last_success_at": self._last_success_at,
            }

    def _record_failure_locked(self, ts: Optional[float]) -> None:
        now = ts if ts is not None else time.time()
        self._failure_timestamps.append(now)
        self._prune_locked(now)

    def _prune_locked(self, now: float) -> None:
        cutoff = now - 3600.0
        while self._failure_timestamps and self._failure_timestamps[0] < cutoff:
            self._failure_timestamps.popleft()
