"""Tests for retention.queue.client."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest
import redis

from retention.domain.enums import NotificationType, Priority, TaskKind
from retention.domain.models import CalculateChurnPayload, ProcessSurveyPayload
from retention.queue.client import encode_payload
from retention.queue.errors import QueueUnavailableError, SerializationError

ORDER = ["critical", "default", "low"]


def _only_task(backend, promote=False):
    if promote:
        backend.promote_due()
    task = backend.dequeue(ORDER)
    assert task is not None
    return task


class TestEncodePayload:
    def test_dict_is_validated(self):
        body = encode_payload("churn:calculate", {"user_id": 3, "company_id": 1})
        assert json.loads(body) == {"user_id": 3, "company_id": 1}

    def test_model_instance(self):
        body = encode_payload("survey:process", ProcessSurveyPayload(response_id=1, user_id=2))
        assert json.loads(body) == {"response_id": 1, "user_id": 2, "language": "en"}

    def test_wrong_model_rejected(self):
        with pytest.raises(SerializationError):
            encode_payload("survey:process", CalculateChurnPayload(user_id=1, company_id=1))

    @pytest.mark.parametrize("payload", [
        {"user_id": "abc", "company_id": 1},
        {"user_id": 1},
        {"user_id": 1, "company_id": 1, "extra": True},
        {"user_id": -1, "company_id": 1},
    ])
    def test_invalid_dict_rejected(self, payload):
        with pytest.raises(SerializationError):
            encode_payload("churn:calculate", payload)

    def test_unknown_kind_must_still_be_json(self):
        assert json.loads(encode_payload("custom:thing", {"a": 1})) == {"a": 1}
        with pytest.raises(SerializationError):
            encode_payload("custom:thing", {"a": float("nan")})


class TestEnqueue:
    def test_returns_id_and_queues_immediately(self, client, backend, clock):
        task_id = client.enqueue(TaskKind.PROCESS_SURVEY, {"response_id": 1, "user_id": 2})
        assert task_id
        task = _only_task(backend)
        assert task.id == task_id
        assert task.kind == "survey:process"
        assert task.max_retry == 3
        assert task.enqueued_at == clock()

    def test_ids_are_unique(self, client):
        ids = {client.enqueue("churn:calculate", {"user_id": 1, "company_id": 1}) for _ in range(20)}
        assert len(ids) == 20

    def test_serialization_error_enqueues_nothing(self, client, backend):
        with pytest.raises(SerializationError):
            client.enqueue(TaskKind.CALCULATE_CHURN, {"user_id": "x", "company_id": 1})
        assert backend.size("default") == 0

    def test_broker_failure_raises_queue_unavailable(self, client, backend, monkeypatch):
        def down(task):
            raise redis.exceptions.ConnectionError("connection refused")

        monkeypatch.setattr(backend, "enqueue", down)
        with pytest.raises(QueueUnavailableError):
            client.enqueue(TaskKind.CALCULATE_CHURN, {"user_id": 1, "company_id": 1})

    def test_run_at_and_run_after_exclusive(self, client):
        with pytest.raises(ValueError):
            client.enqueue("churn:calculate", {"user_id": 1, "company_id": 1}, run_at=1.0, run_after=1.0)

    def test_run_after_timedelta(self, client, backend, clock):
        client.enqueue("churn:calculate", {"user_id": 1, "company_id": 1}, run_after=timedelta(minutes=2))
        assert backend.scheduled_count() == 1
        clock.advance(119)
        backend.promote_due()
        assert backend.dequeue(ORDER) is None
        clock.advance(1)
        assert _only_task(backend, promote=True).not_before == clock()

    def test_run_at_datetime(self, client, backend, clock):
        at = datetime.fromtimestamp(clock() + 60, tz=timezone.utc)
        client.enqueue("churn:calculate", {"user_id": 1, "company_id": 1}, run_at=at)
        assert backend.scheduled_count() == 1

    def test_explicit_max_retry(self, client, backend):
        client.enqueue("churn:calculate", {"user_id": 1, "company_id": 1}, max_retry=0)
        assert _only_task(backend).max_retry == 0


class TestTypedHelpers:
    def test_churn_calculation_defaults_to_configured_delay(self, client, backend, clock):
        client.enqueue_churn_calculation(user_id=5, company_id=2)
        task = backend._scheduled[0][2]
        assert task.not_before == clock() + 300
        assert json.loads(task.payload) == {"user_id": 5, "company_id": 2}

    def test_churn_calculation_immediate(self, client, backend):
        client.enqueue_churn_calculation(user_id=5, company_id=2, run_after=0)
        assert backend.size("default") == 1

    def test_notification_is_critical(self, client, backend):
        client.enqueue_notification(
            7, NotificationType.HIGH_CHURN_RISK, "Employee has high churn risk: 0.91",
            risk_score=0.91, actions=["Schedule 1-on-1 meeting", "Mentorship"],
        )
        task = _only_task(backend)
        assert task.priority is Priority.CRITICAL
        assert json.loads(task.payload) == {
            "user_id": 7,
            "type": "high_churn_risk",
            "message": "Employee has high churn risk: 0.91",
            "risk_score": 0.91,
            "actions": "Schedule 1-on-1 meeting\nMentorship",
        }

    def test_survey_invitation(self, client, backend):
        client.enqueue_survey_invitation(survey_id=3, user_id=4, email="a@example.com")
        task = _only_task(backend)
        assert task.kind == "survey:invitation"
        assert task.priority is Priority.DEFAULT

    def test_daily_analysis_on_low_queue(self, client, backend, clock):
        client.schedule_daily_churn_analysis(company_id=9)
        clock.advance(24 * 3600 - 1)
        backend.promote_due()
        assert backend.size("low") == 0
        clock.advance(1)
        task = _only_task(backend, promote=True)
        assert task.priority is Priority.LOW
        assert json.loads(task.payload) == {"user_id": 0, "company_id": 9}


def test_replay_dead_letter(client, backend):
    client.enqueue("churn:calculate", {"user_id": 1, "company_id": 1})
    task = backend.dequeue(ORDER)
    backend.dead_letter(task, "boom")
    assert [t.id for t in client.dead_letters()] == [task.id]

    assert client.replay(task.id) is True
    assert client.replay(task.id) is False
    assert backend.size("default") == 1
