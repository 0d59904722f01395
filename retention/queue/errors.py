"""
Fault taxonomy for the task pipeline.

Handlers raise (or let escape) exceptions; the worker pool runs them
through ``classify_failure`` to decide between retry and dead-letter.
Producers only ever see ``EnqueueError`` subclasses.
"""

from __future__ import annotations

import json
import smtplib
from enum import Enum

import httpx
import pydantic
import redis


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# ---------------------------------------------------------------------------
# Handler-side faults
# ---------------------------------------------------------------------------

class TaskFault(Exception):
    """Base class for faults raised while executing a task."""
    failure_class = FailureClass.TRANSIENT


class ValidationFault(TaskFault):
    """Payload could not be decoded into the shape its kind declares."""
    failure_class = FailureClass.PERMANENT


class TransientFault(TaskFault):
    """Timeout, network error or unavailable dependency; safe to retry."""
    failure_class = FailureClass.TRANSIENT


class DomainFault(TaskFault):
    """The referenced data does not allow the task to complete."""
    failure_class = FailureClass.PERMANENT


class NotFoundError(DomainFault):
    def __init__(self, entity: str, key: object) -> None:
        super().__init__(f"{entity} {key} not found")
        self.entity = entity
        self.key = key


class UnknownTaskKind(ValidationFault):
    pass


# ---------------------------------------------------------------------------
# Producer-side errors
# ---------------------------------------------------------------------------

class EnqueueError(Exception):
    """Base class for synchronous enqueue failures."""


class SerializationError(EnqueueError):
    """The payload cannot be encoded for its task kind."""


class QueueUnavailableError(EnqueueError):
    """The queue broker could not be reached."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_PERMANENT_TYPES = (
    pydantic.ValidationError,
    json.JSONDecodeError,
    UnicodeDecodeError,
)

_TRANSIENT_TYPES = (
    httpx.TransportError,
    httpx.TimeoutException,
    smtplib.SMTPException,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
    TimeoutError,
    OSError,
)


def classify_failure(exc: BaseException) -> FailureClass:
    """Decide whether ``exc`` is worth retrying.

    Unrecognised exceptions are retried; the attempt ceiling bounds them.
    """
    if isinstance(exc, TaskFault):
        return exc.failure_class
    if isinstance(exc, _PERMANENT_TYPES):
        return FailureClass.PERMANENT
    if isinstance(exc, _TRANSIENT_TYPES):
        return FailureClass.TRANSIENT
    return FailureClass.TRANSIENT
