"""
Producer-side enqueue API.

``QueueClient.enqueue`` validates the payload against its kind's model,
encodes it, and hands it to the backend.  It returns the task id once the
task is durably queued; it says nothing about whether it ran.  Encoding
problems raise ``SerializationError`` and broker trouble raises
``QueueUnavailableError``, both synchronously, so callers can choose to
degrade (skip background work) instead of failing their own request.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Mapping, Optional, Union

import pydantic
import redis

from retention.config import Settings
from retention.domain.enums import NotificationType, Priority, TaskKind
from retention.domain.models import PAYLOAD_MODELS
from retention.queue.backend import QueueBackend
from retention.queue.errors import QueueUnavailableError, SerializationError
from retention.queue.task import Task, new_task_id

logger = logging.getLogger(__name__)

Payload = Union[Mapping[str, Any], pydantic.BaseModel]
Delay = Union[float, timedelta]

DAILY_ANALYSIS_DELAY = timedelta(hours=24)


def _seconds(delay: Delay) -> float:
    if isinstance(delay, timedelta):
        return delay.total_seconds()
    return float(delay)


def _epoch(run_at: Union[float, datetime]) -> float:
    if isinstance(run_at, datetime):
        if run_at.tzinfo is None:
            run_at = run_at.replace(tzinfo=timezone.utc)
        return run_at.timestamp()
    return float(run_at)


def encode_payload(kind: str, payload: Payload) -> bytes:
    """Validate ``payload`` against ``kind`` and return its JSON bytes."""
    try:
        model = PAYLOAD_MODELS.get(TaskKind(kind))
    except ValueError:
        model = None

    try:
        if isinstance(payload, pydantic.BaseModel):
            if model is not None and not isinstance(payload, model):
                raise SerializationError(
                    f"{type(payload).__name__} is not the payload model for {kind}"
                )
            doc = payload.model_dump(mode="json")
        elif model is not None:
            doc = model.model_validate(dict(payload)).model_dump(mode="json")
        else:
            doc = dict(payload)
        return json.dumps(doc, separators=(",", ":"), allow_nan=False).encode("utf-8")
    except SerializationError:
        raise
    except (pydantic.ValidationError, TypeError, ValueError) as exc:
        raise SerializationError(f"Cannot encode {kind} payload: {exc}") from exc


class QueueClient:
    """Typed enqueue API over a ``QueueBackend``."""

    def __init__(self, backend: QueueBackend, settings: Settings) -> None:
        self._backend = backend
        self._settings = settings

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    def enqueue(
        self,
        kind: Union[TaskKind, str],
        payload: Payload,
        priority: Priority = Priority.DEFAULT,
        run_at: Optional[Union[float, datetime]] = None,
        run_after: Optional[Delay] = None,
        max_retry: Optional[int] = None,
    ) -> str:
        """Queue a task and return its id.

        ``run_at`` (epoch seconds or datetime) and ``run_after`` (seconds or
        timedelta) are mutually exclusive; either hides the task from workers
        until the deadline passes.
        """
        if run_at is not None and run_after is not None:
            raise ValueError("run_at and run_after are mutually exclusive")

        kind_value = kind.value if isinstance(kind, TaskKind) else str(kind)
        body = encode_payload(kind_value, payload)

        now = self._backend.now()
        not_before: Optional[float] = None
        if run_at is not None:
            not_before = _epoch(run_at)
        elif run_after is not None:
            not_before = now + max(0.0, _seconds(run_after))

        task = Task(
            kind=kind_value,
            payload=body,
            priority=Priority(priority),
            not_before=not_before,
            id=new_task_id(),
            max_retry=self._settings.retry.max_retry if max_retry is None else max(0, max_retry),
            enqueued_at=now,
        )

        try:
            self._backend.enqueue(task)
        except (redis.exceptions.RedisError, OSError) as exc:
            raise QueueUnavailableError(f"Queue broker unavailable: {exc}") from exc

        logger.debug(
            "Enqueued %s id=%s queue=%s not_before=%s",
            task.kind, task.id, task.queue, task.not_before,
        )
        return task.id

    # -- typed helpers ----------------------------------------------------

    def enqueue_survey_processing(self, response_id: int, user_id: int, language: str = "en") -> str:
        return self.enqueue(
            TaskKind.PROCESS_SURVEY,
            {"response_id": response_id, "user_id": user_id, "language": language},
        )

    def enqueue_churn_calculation(
        self,
        user_id: int,
        company_id: int,
        run_after: Optional[Delay] = None,
    ) -> str:
        delay = self._settings.churn_calculation_delay_seconds if run_after is None else run_after
        return self.enqueue(
            TaskKind.CALCULATE_CHURN,
            {"user_id": user_id, "company_id": company_id},
            run_after=delay,
        )

    def enqueue_notification(
        self,
        user_id: int,
        notification_type: Union[NotificationType, str],
        message: str,
        risk_score: Optional[float] = None,
        actions: Optional[List[str]] = None,
    ) -> str:
        payload = {
            "user_id": user_id,
            "type": getattr(notification_type, "value", notification_type),
            "message": message,
            "risk_score": risk_score,
            "actions": "\n".join(actions) if actions else None,
        }
        return self.enqueue(TaskKind.SEND_NOTIFICATION, payload, priority=Priority.CRITICAL)

    def enqueue_survey_invitation(self, survey_id: int, user_id: int, email: str) -> str:
        return self.enqueue(
            TaskKind.SURVEY_INVITATION,
            {"survey_id": survey_id, "user_id": user_id, "email": email},
        )

    def schedule_daily_churn_analysis(self, company_id: int) -> str:
        """Company-wide churn run (user_id 0) on the low queue, 24 h from now."""
        return self.enqueue(
            TaskKind.CALCULATE_CHURN,
            {"user_id": 0, "company_id": company_id},
            priority=Priority.LOW,
            run_after=DAILY_ANALYSIS_DELAY,
        )

    # -- dead-letter surface ----------------------------------------------

    def dead_letters(self) -> List[Task]:
        return self._backend.dead_letters()

    def replay(self, task_id: str) -> bool:
        task = self._backend.replay(task_id)
        if task is None:
            return False
        logger.info("Replayed dead task %s (%s)", task.id, task.kind)
        return True
