"""
retention.domain.models - Canonical Pydantic / dataclass models.

Task payload models define the exact wire shape each ``TaskKind``
carries; a payload that fails its model is a permanent validation fault.

Import pattern::

    from retention.domain.models import ChurnFeatures, CalculateChurnPayload
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field

from retention.domain.enums import TaskKind


# ---------------------------------------------------------------------------
# Churn scoring inputs / outputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChurnFeatures:
    """
    Behavioral features aggregated per user from stored survey responses.
    Recomputed on every scoring run; never persisted.
    """
    avg_sentiment:      float = 0.0     # [-1, 1]
    response_rate:      float = 0.0     # [0, 1]
    days_inactive:      int = 0
    negative_responses: int = 0
    total_responses:    int = 0
    last_login_days:    int = 0


@dataclass
class ChurnAssessment:
    """Result of one scoring run for a single user."""
    user_id:     int
    risk_score:  float
    factors:     List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    features:    Optional[ChurnFeatures] = None
    created_at:  Optional[datetime] = None


# ---------------------------------------------------------------------------
# Task payloads
# ---------------------------------------------------------------------------

class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class ProcessSurveyPayload(_Payload):
    response_id: int = Field(ge=0)
    user_id: int = Field(ge=0)
    language: str = "en"


class CalculateChurnPayload(_Payload):
    user_id: int = Field(ge=0)          # 0 = every user in the company
    company_id: int = Field(ge=0)


class SendNotificationPayload(_Payload):
    user_id: int = Field(ge=0)
    type: str
    message: str
    risk_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    actions: Optional[str] = None       # newline-separated recommended actions


class SurveyInvitationPayload(_Payload):
    survey_id: int = Field(ge=0)
    user_id: int = Field(ge=0)
    email: str


PAYLOAD_MODELS: Dict[TaskKind, Type[_Payload]] = {
    TaskKind.PROCESS_SURVEY:    ProcessSurveyPayload,
    TaskKind.CALCULATE_CHURN:   CalculateChurnPayload,
    TaskKind.SEND_NOTIFICATION: SendNotificationPayload,
    TaskKind.SURVEY_INVITATION: SurveyInvitationPayload,
}
