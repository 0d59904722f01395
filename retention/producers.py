"""
Producer-side entry points called by the CRUD layer.

These run inside request handling.  Background work is optional from the
caller's point of view: if the queue is down the request still succeeds
and the failure is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from retention.analytics.sentiment import SentimentEstimator
from retention.core.context import RequestContext
from retention.database import (
    Database,
    create_survey,
    create_survey_response,
    get_company,
    get_users_by_company,
)
from retention.domain.enums import UserRole
from retention.queue.client import QueueClient
from retention.queue.errors import EnqueueError

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    survey_id: int
    invitations_queued: int
    invitations_failed: int


@dataclass
class SubmissionResult:
    response_id: int
    sentiment: float
    churn_task_id: Optional[str]


def publish_survey(
    ctx: RequestContext,
    database: Database,
    client: QueueClient,
    title: str,
    questions: Sequence[str],
) -> PublishResult:
    """Create a survey for the caller's company and invite every employee."""
    db = database.session()
    try:
        survey = create_survey(db, ctx.company_id, title, questions)
        employees = [
            u for u in get_users_by_company(db, ctx.company_id)
            if u.role != UserRole.HR_ADMIN.value
        ]
    finally:
        db.close()

    queued = failed = 0
    for employee in employees:
        try:
            client.enqueue_survey_invitation(survey.id, employee.id, employee.email)
            queued += 1
        except EnqueueError as exc:
            failed += 1
            logger.error("Failed to enqueue survey invitation for %s: %s", employee.email, exc)

    logger.info("Survey %d published; invitations queued=%d failed=%d", survey.id, queued, failed)
    return PublishResult(survey_id=survey.id, invitations_queued=queued, invitations_failed=failed)


async def submit_survey_response(
    ctx: RequestContext,
    database: Database,
    client: QueueClient,
    estimator: SentimentEstimator,
    survey_id: int,
    answers: Sequence[str],
) -> SubmissionResult:
    """
    Store the caller's answers with their sentiment and queue a churn run.

    The response language is the company's configured language, falling
    back to the caller's request language.
    """
    db = database.session()
    try:
        company = get_company(db, ctx.company_id)
        language = company.language or ctx.language
    finally:
        db.close()

    sentiment = await estimator.estimate(" ".join(answers), language)

    db = database.session()
    try:
        response = create_survey_response(db, survey_id, ctx.user_id, answers, sentiment=sentiment)
    finally:
        db.close()

    task_id: Optional[str] = None
    try:
        task_id = client.enqueue_churn_calculation(ctx.user_id, ctx.company_id)
    except EnqueueError as exc:
        logger.error("Skipping background churn calculation for user %d: %s", ctx.user_id, exc)

    return SubmissionResult(response_id=response.id, sentiment=sentiment, churn_task_id=task_id)
