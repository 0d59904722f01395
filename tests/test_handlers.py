"""
Tests for retention.handlers against an in-memory SQLite database.

External channels are replaced with recording fakes; the sentiment
estimator runs without a classifier token, so scores come from the
lexicon and are deterministic.
"""

from __future__ import annotations

import json
import smtplib
import warnings
from datetime import datetime, timedelta, timezone

import pytest
import redis

from retention.analytics.sentiment import SentimentEstimator
from retention.database import get_attrition_history, get_response, utcnow
from retention.handlers import TaskHandlers
from retention.queue.client import encode_payload
from retention.queue.errors import DomainFault, NotFoundError, TransientFault, ValidationFault
from retention.queue.pool import HandlerRegistry
from retention.queue.task import Task, new_task_id

from conftest import FIXED_NOW

ORDER = ["critical", "default", "low"]


class RecordingNotifier:
    def __init__(self, result=True):
        self.alerts = []
        self.result = result

    async def send(self, alert):
        self.alerts.append(alert)
        return self.result


class RecordingMailer:
    sent = []
    configs = []
    error = None

    def __init__(self, config):
        RecordingMailer.configs.append(config)

    async def send(self, to_addr, subject, body, html_body=False):
        if RecordingMailer.error is not None:
            raise RecordingMailer.error
        RecordingMailer.sent.append((to_addr, subject, body))


@pytest.fixture(autouse=True)
def _reset_mailer():
    RecordingMailer.sent = []
    RecordingMailer.configs = []
    RecordingMailer.error = None


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def build_handlers(database, client, notifier):
    def _build(settings):
        return TaskHandlers(
            database,
            client,
            settings,
            estimator=SentimentEstimator(settings),
            notifier=notifier,
            mailer_factory=RecordingMailer,
            clock=lambda: FIXED_NOW,
        )
    return _build


@pytest.fixture
def handlers(build_handlers, settings):
    return build_handlers(settings)


def task_for(kind, payload):
    return Task(kind=kind, payload=encode_payload(kind, payload), id=new_task_id())


def rows_for(database, user_id):
    db = database.session()
    try:
        return get_attrition_history(db, user_id)
    finally:
        db.close()


def test_register_covers_every_kind(handlers):
    registry = handlers.register(HandlerRegistry())
    assert registry.kinds() == [
        "churn:calculate",
        "notification:send",
        "survey:invitation",
        "survey:process",
    ]


# ---------------------------------------------------------------------------
# survey:process
# ---------------------------------------------------------------------------

class TestProcessSurvey:
    @pytest.mark.asyncio
    async def test_scores_and_queues_churn(self, handlers, seed, database, backend):
        company = seed.company()
        user = seed.user(company)
        survey = seed.survey(company)
        response = seed.response(survey, user, answers=["I am happy", "great team"])

        await handlers.process_survey(task_for("survey:process", {
            "response_id": response.id, "user_id": user.id, "language": "en",
        }))

        db = database.session()
        try:
            assert get_response(db, response.id).sentiment == pytest.approx(0.4)
        finally:
            db.close()

        follow_up = backend.dequeue(ORDER)
        assert follow_up.kind == "churn:calculate"
        assert json.loads(follow_up.payload) == {"user_id": user.id, "company_id": company.id}

    @pytest.mark.asyncio
    async def test_missing_response_is_domain_fault(self, handlers):
        with pytest.raises(NotFoundError):
            await handlers.process_survey(task_for("survey:process", {"response_id": 999, "user_id": 1}))

    @pytest.mark.asyncio
    async def test_garbage_payload_is_validation_fault(self, handlers):
        task = Task(kind="survey:process", payload=b"\xff not json", id="t1")
        with pytest.raises(ValidationFault):
            await handlers.process_survey(task)

    @pytest.mark.asyncio
    async def test_broker_down_on_follow_up_is_transient(self, handlers, seed, backend, monkeypatch):
        company = seed.company()
        user = seed.user(company)
        response = seed.response(seed.survey(company), user)

        def down(task):
            raise redis.exceptions.ConnectionError("refused")

        monkeypatch.setattr(backend, "enqueue", down)
        with pytest.raises(TransientFault):
            await handlers.process_survey(task_for("survey:process", {
                "response_id": response.id, "user_id": user.id,
            }))


# ---------------------------------------------------------------------------
# churn:calculate
# ---------------------------------------------------------------------------

def seed_disengaged(seed):
    company = seed.company()
    surveys = [seed.survey(company, title=f"Pulse {i}") for i in range(4)]
    user = seed.user(company, last_login_at=FIXED_NOW - timedelta(days=10))
    for s in (-0.8, -0.6, -0.9):
        seed.response(surveys[0], user, sentiment=s, created_at=FIXED_NOW - timedelta(days=20))
    return company, user


class TestCalculateChurn:
    @pytest.mark.asyncio
    async def test_high_risk_persists_and_alerts(self, handlers, seed, database, backend):
        company, user = seed_disengaged(seed)

        await handlers.calculate_churn(task_for("churn:calculate", {
            "user_id": user.id, "company_id": company.id,
        }))

        rows = rows_for(database, user.id)
        assert len(rows) == 1
        assert rows[0].risk_score > 0.9
        assert rows[0].factors == [
            "Low sentiment scores",
            "Poor survey participation",
            "Reduced activity",
            "Frequent negative feedback",
        ]
        assert rows[0].created_at == FIXED_NOW

        alert = backend.dequeue(["critical"])
        body = json.loads(alert.payload)
        assert body["user_id"] == user.id
        assert body["type"] == "high_churn_risk"
        assert body["message"].startswith("Employee has high churn risk: 0.9")
        assert body["risk_score"] == pytest.approx(rows[0].risk_score)
        assert body["actions"].split("\n")[0] == "Schedule 1-on-1 meeting"

    @pytest.mark.asyncio
    async def test_rerun_appends_identical_rows(self, handlers, seed, database):
        company, user = seed_disengaged(seed)
        task = task_for("churn:calculate", {"user_id": user.id, "company_id": company.id})

        await handlers.calculate_churn(task)
        await handlers.calculate_churn(task)

        rows = rows_for(database, user.id)
        assert len(rows) == 2
        assert rows[0].risk_score == rows[1].risk_score
        assert rows[0].factors == rows[1].factors

    @pytest.mark.asyncio
    async def test_engaged_user_no_alert(self, handlers, seed, database, backend):
        company = seed.company()
        survey = seed.survey(company)
        user = seed.user(company)
        seed.response(survey, user, sentiment=0.8)

        await handlers.calculate_churn(task_for("churn:calculate", {
            "user_id": user.id, "company_id": company.id,
        }))

        rows = rows_for(database, user.id)
        assert rows[0].risk_score < 0.5
        assert rows[0].factors == []
        assert backend.size("critical") == 0

    @pytest.mark.asyncio
    async def test_threshold_is_configurable(self, build_handlers, make_settings, seed, backend):
        company = seed.company()
        survey = seed.survey(company)
        user = seed.user(company)
        seed.response(survey, user, sentiment=0.8)

        handlers = build_handlers(make_settings(churn_alert_threshold=0.0))
        await handlers.calculate_churn(task_for("churn:calculate", {
            "user_id": user.id, "company_id": company.id,
        }))
        assert backend.size("critical") == 1

    @pytest.mark.asyncio
    async def test_user_zero_scores_whole_company(self, handlers, seed, database):
        company = seed.company()
        other = seed.company(name="Other")
        a = seed.user(company, name="Asha")
        b = seed.user(company, name="Bala")
        outsider = seed.user(other, name="Chen")

        await handlers.calculate_churn(task_for("churn:calculate", {
            "user_id": 0, "company_id": company.id,
        }))

        assert len(rows_for(database, a.id)) == 1
        assert len(rows_for(database, b.id)) == 1
        assert rows_for(database, outsider.id) == []

    @pytest.mark.asyncio
    async def test_unknown_company(self, handlers, seed):
        user = seed.user(seed.company())
        with pytest.raises(DomainFault):
            await handlers.calculate_churn(task_for("churn:calculate", {
                "user_id": user.id, "company_id": 424242,
            }))

    @pytest.mark.asyncio
    async def test_inactive_since_joining(self, handlers, seed, database):
        company = seed.company()
        seed.survey(company)
        user = seed.user(company, created_at=FIXED_NOW - timedelta(days=45))

        await handlers.calculate_churn(task_for("churn:calculate", {
            "user_id": user.id, "company_id": company.id,
        }))
        factors = rows_for(database, user.id)[0].factors
        assert "Reduced activity" in factors
        assert "Poor survey participation" in factors


# ---------------------------------------------------------------------------
# notification:send
# ---------------------------------------------------------------------------

class TestSendNotification:
    @pytest.mark.asyncio
    async def test_delivers_alert(self, handlers, seed, notifier):
        user = seed.user(seed.company(), name="Priya")
        await handlers.send_notification(task_for("notification:send", {
            "user_id": user.id,
            "type": "high_churn_risk",
            "message": "Employee has high churn risk: 0.91",
            "risk_score": 0.91,
            "actions": "Mentorship\nRecognition program",
        }))

        [alert] = notifier.alerts
        assert alert.employee_name == "Priya"
        assert alert.risk_score == 0.91
        assert alert.actions == ("Mentorship", "Recognition program")

    @pytest.mark.asyncio
    async def test_undelivered_is_not_an_error(self, build_handlers, settings, seed, notifier):
        notifier.result = False
        user = seed.user(seed.company())
        await build_handlers(settings).send_notification(task_for("notification:send", {
            "user_id": user.id, "type": "high_churn_risk", "message": "m",
        }))
        assert notifier.alerts[0].risk_score == 0.0
        assert notifier.alerts[0].actions == ()

    @pytest.mark.asyncio
    async def test_unknown_user(self, handlers):
        with pytest.raises(NotFoundError):
            await handlers.send_notification(task_for("notification:send", {
                "user_id": 77, "type": "high_churn_risk", "message": "m",
            }))


# ---------------------------------------------------------------------------
# survey:invitation
# ---------------------------------------------------------------------------

class TestSurveyInvitation:
    @pytest.mark.asyncio
    async def test_uses_company_smtp(self, handlers, seed):
        company = seed.company(
            smtp_host="smtp.acme.test", smtp_port=2525,
            smtp_user="hr@acme.test", smtp_password="secret",
        )
        survey = seed.survey(company, title="Quarterly pulse")
        user = seed.user(company)

        await handlers.survey_invitation(task_for("survey:invitation", {
            "survey_id": survey.id, "user_id": user.id, "email": "asha@example.com",
        }))

        [config] = RecordingMailer.configs
        assert (config.host, config.port, config.user) == ("smtp.acme.test", 2525, "hr@acme.test")
        [(to_addr, subject, body)] = RecordingMailer.sent
        assert to_addr == "asha@example.com"
        assert subject == "New Survey: Quarterly pulse"
        assert f"http://app.test/survey/{survey.id}?token={user.id}" in body

    @pytest.mark.asyncio
    async def test_falls_back_to_process_smtp(self, build_handlers, make_settings, seed):
        company = seed.company()
        survey = seed.survey(company)
        handlers = build_handlers(make_settings(
            smtp_host="smtp.default.test", smtp_user="noreply@default.test", smtp_password="pw",
        ))

        await handlers.survey_invitation(task_for("survey:invitation", {
            "survey_id": survey.id, "user_id": 1, "email": "x@example.com",
        }))
        assert RecordingMailer.configs[0].host == "smtp.default.test"
        assert len(RecordingMailer.sent) == 1

    @pytest.mark.asyncio
    async def test_no_smtp_anywhere_is_domain_fault(self, handlers, seed):
        survey = seed.survey(seed.company())
        with pytest.raises(DomainFault):
            await handlers.survey_invitation(task_for("survey:invitation", {
                "survey_id": survey.id, "user_id": 1, "email": "x@example.com",
            }))
        assert RecordingMailer.sent == []

    @pytest.mark.asyncio
    async def test_smtp_failure_is_transient(self, handlers, seed):
        company = seed.company(smtp_host="h", smtp_user="u", smtp_password="p")
        survey = seed.survey(company)
        RecordingMailer.error = smtplib.SMTPServerDisconnected("gone")

        with pytest.raises(TransientFault):
            await handlers.survey_invitation(task_for("survey:invitation", {
                "survey_id": survey.id, "user_id": 1, "email": "x@example.com",
            }))


def test_utcnow_is_naive_utc_without_deprecation():
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        stamp = utcnow()
    assert stamp.tzinfo is None
    assert abs(stamp - datetime.now(timezone.utc).replace(tzinfo=None)) < timedelta(seconds=5)
