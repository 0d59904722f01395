"""
Task handlers - one coroutine per ``TaskKind``.

Every handler decodes its payload first (bad payload → ValidationFault),
runs blocking database work in a thread, and tolerates duplicate or
out-of-order execution: re-running ``calculate_churn`` simply appends
another risk row.
"""

from __future__ import annotations

import asyncio
import json
import logging
import smtplib
from datetime import datetime
from typing import Callable, List, Optional, Type, TypeVar

import pydantic

from retention.alerts.notifiers import (
    ChurnAlert,
    Notifier,
    SmtpConfig,
    SmtpMailer,
    build_alert_notifier,
)
from retention.analytics.churn import assess, extract_features
from retention.analytics.sentiment import SentimentEstimator
from retention.config import Settings
from retention.database import (
    Database,
    count_company_surveys,
    count_surveys_answered,
    create_attrition_risk,
    get_company,
    get_response,
    get_responses_by_user,
    get_survey,
    get_user,
    get_users_by_company,
    update_response_sentiment,
    utcnow,
)
from retention.domain.enums import NotificationType, TaskKind
from retention.domain.models import (
    CalculateChurnPayload,
    ChurnAssessment,
    ProcessSurveyPayload,
    SendNotificationPayload,
    SurveyInvitationPayload,
)
from retention.queue.client import QueueClient
from retention.queue.errors import DomainFault, EnqueueError, TransientFault, ValidationFault
from retention.queue.pool import HandlerRegistry
from retention.queue.task import Task

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=pydantic.BaseModel)

# Persisted risk rows keep at most this many factor labels.
MAX_PERSISTED_FACTORS = 4

INVITATION_TEMPLATE = """
Hi there!

You have been invited to participate in a new survey: "{title}"

Please click the link below to complete the survey:
{link}

This survey will help us improve your work experience.

Thank you!
HR Team
"""


def decode_payload(task: Task, model: Type[P]) -> P:
    try:
        return model.model_validate(json.loads(task.payload.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, pydantic.ValidationError) as exc:
        raise ValidationFault(f"Invalid {task.kind} payload: {exc}") from exc


class TaskHandlers:
    def __init__(
        self,
        database: Database,
        client: QueueClient,
        settings: Settings,
        estimator: SentimentEstimator,
        notifier: Optional[Notifier] = None,
        mailer_factory: Callable[[SmtpConfig], SmtpMailer] = SmtpMailer,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = database
        self._client = client
        self._settings = settings
        self._estimator = estimator
        self._notifier = notifier or build_alert_notifier(settings)
        self._mailer_factory = mailer_factory
        self._clock = clock

    def register(self, registry: HandlerRegistry) -> HandlerRegistry:
        registry.register(TaskKind.PROCESS_SURVEY, self.process_survey)
        registry.register(TaskKind.CALCULATE_CHURN, self.calculate_churn)
        registry.register(TaskKind.SEND_NOTIFICATION, self.send_notification)
        registry.register(TaskKind.SURVEY_INVITATION, self.survey_invitation)
        return registry

    async def _enqueue(self, fn, *args, **kwargs) -> str:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except EnqueueError as exc:
            raise TransientFault(f"Follow-up enqueue failed: {exc}") from exc

    # ------------------------------------------------------------------
    # survey:process
    # ------------------------------------------------------------------

    async def process_survey(self, task: Task) -> None:
        payload = decode_payload(task, ProcessSurveyPayload)

        def _load():
            db = self._db.session()
            try:
                response = get_response(db, payload.response_id)
                user = get_user(db, response.user_id)
                return " ".join(response.responses or []), user.id, user.company_id
            finally:
                db.close()

        text, user_id, company_id = await asyncio.to_thread(_load)
        if user_id != payload.user_id:
            logger.warning(
                "Response %d belongs to user %d, payload said %d; using stored owner",
                payload.response_id, user_id, payload.user_id,
            )

        score = await self._estimator.estimate(text, payload.language)

        def _store() -> None:
            db = self._db.session()
            try:
                update_response_sentiment(db, payload.response_id, score)
            finally:
                db.close()

        await asyncio.to_thread(_store)
        logger.info("Response %d sentiment=%.3f", payload.response_id, score)

        await self._enqueue(self._client.enqueue_churn_calculation, user_id, company_id, run_after=0)

    # ------------------------------------------------------------------
    # churn:calculate
    # ------------------------------------------------------------------

    def _score_users(self, payload: CalculateChurnPayload, now: datetime) -> List[ChurnAssessment]:
        db = self._db.session()
        try:
            company = get_company(db, payload.company_id)
            if payload.user_id == 0:
                users = get_users_by_company(db, company.id)
            else:
                users = [get_user(db, payload.user_id)]
            surveys_total = count_company_surveys(db, company.id)

            results = []
            for user in users:
                responses = get_responses_by_user(db, user.id)
                features = extract_features(
                    sentiments=[r.sentiment or 0.0 for r in responses],
                    last_response_at=responses[-1].created_at if responses else None,
                    surveys_answered=count_surveys_answered(db, user.id),
                    surveys_total=surveys_total,
                    now=now,
                    joined_at=user.created_at,
                    last_login_at=user.last_login_at,
                )
                assessment = assess(user.id, features, company.language or "en", created_at=now)
                create_attrition_risk(
                    db,
                    user.id,
                    assessment.risk_score,
                    assessment.factors[:MAX_PERSISTED_FACTORS],
                    created_at=now,
                )
                results.append(assessment)
            return results
        finally:
            db.close()

    async def calculate_churn(self, task: Task) -> None:
        payload = decode_payload(task, CalculateChurnPayload)
        assessments = await asyncio.to_thread(self._score_users, payload, self._clock())

        threshold = self._settings.churn_alert_threshold
        for a in assessments:
            logger.info("Churn risk user=%d score=%.2f factors=%s", a.user_id, a.risk_score, a.factors)
            if a.risk_score <= threshold:
                continue
            await self._enqueue(
                self._client.enqueue_notification,
                a.user_id,
                NotificationType.HIGH_CHURN_RISK,
                f"Employee has high churn risk: {a.risk_score:.2f}",
                risk_score=a.risk_score,
                actions=a.suggestions,
            )
            logger.info("High churn risk for user %d; notification queued", a.user_id)

    # ------------------------------------------------------------------
    # notification:send
    # ------------------------------------------------------------------

    async def send_notification(self, task: Task) -> None:
        payload = decode_payload(task, SendNotificationPayload)

        def _load_name() -> str:
            db = self._db.session()
            try:
                return get_user(db, payload.user_id).name
            finally:
                db.close()

        name = await asyncio.to_thread(_load_name)
        alert = ChurnAlert(
            employee_name=name,
            message=payload.message,
            risk_score=payload.risk_score if payload.risk_score is not None else 0.0,
            notification_type=payload.type,
            actions=tuple(a for a in (payload.actions or "").split("\n") if a.strip()),
        )
        delivered = await self._notifier.send(alert)
        logger.info(
            "Notification %s for user %d delivered=%s", payload.type, payload.user_id, delivered
        )

    # ------------------------------------------------------------------
    # survey:invitation
    # ------------------------------------------------------------------

    def _smtp_for_company(self, company) -> SmtpConfig:
        s = self._settings
        if company.smtp_user:
            return SmtpConfig(
                host=company.smtp_host or "",
                port=company.smtp_port or 587,
                user=company.smtp_user,
                password=company.smtp_password or "",
                timeout=s.notify_timeout_seconds,
            )
        return SmtpConfig(
            host=s.smtp_host,
            port=s.smtp_port,
            user=s.smtp_user,
            password=s.smtp_password,
            timeout=s.notify_timeout_seconds,
        )

    async def survey_invitation(self, task: Task) -> None:
        payload = decode_payload(task, SurveyInvitationPayload)

        def _load():
            db = self._db.session()
            try:
                survey = get_survey(db, payload.survey_id)
                company = get_company(db, survey.company_id)
                return survey.title, self._smtp_for_company(company)
            finally:
                db.close()

        title, smtp = await asyncio.to_thread(_load)
        if not smtp.configured:
            raise DomainFault(f"SMTP not configured for survey {payload.survey_id}")

        link = f"{self._settings.frontend_url}/survey/{payload.survey_id}?token={payload.user_id}"
        subject = f"New Survey: {title}"
        body = INVITATION_TEMPLATE.format(title=title, link=link)

        try:
            await self._mailer_factory(smtp).send(payload.email, subject, body)
        except (smtplib.SMTPException, OSError) as exc:
            raise TransientFault(f"Failed to send survey invitation to {payload.email}: {exc}") from exc
        logger.info("Survey invitation sent to %s", payload.email)
