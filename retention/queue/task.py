"""
Task envelope and wire codec.

A ``Task`` is immutable once enqueued; retry bookkeeping produces a new
envelope via ``dataclasses.replace``.  The payload is opaque bytes (the
JSON encoding of the kind's payload model) and is base64-wrapped inside the
JSON envelope so arbitrary bytes survive storage.
"""

from __future__ import annotations

import base64
import json
import uuid
from dataclasses import asdict, dataclass, replace
from typing import Optional

from retention.domain.enums import Priority


@dataclass(frozen=True)
class Task:
    kind: str
    payload: bytes
    priority: Priority = Priority.DEFAULT
    not_before: Optional[float] = None      # epoch seconds; None = immediately eligible
    id: str = ""
    max_retry: int = 5
    retried: int = 0
    enqueued_at: float = 0.0
    last_error: Optional[str] = None
    failed_at: Optional[float] = None

    @property
    def queue(self) -> str:
        return self.priority.value

    @property
    def attempt(self) -> int:
        """1-based number of the execution currently in progress."""
        return self.retried + 1

    def with_retry(self, eligible_at: float, error: str) -> "Task":
        return replace(self, retried=self.retried + 1, not_before=eligible_at, last_error=error)

    def with_failure(self, error: str, failed_at: float) -> "Task":
        return replace(self, last_error=error, failed_at=failed_at)


def new_task_id() -> str:
    return uuid.uuid4().hex


def encode_task(task: Task) -> str:
    doc = asdict(task)
    doc["payload"] = base64.b64encode(task.payload).decode("ascii")
    doc["priority"] = task.priority.value
    return json.dumps(doc, separators=(",", ":"))


def decode_task(raw: str) -> Task:
    doc = json.loads(raw)
    doc["payload"] = base64.b64decode(doc["payload"])
    doc["priority"] = Priority(doc["priority"])
    return Task(**doc)
