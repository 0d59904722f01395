"""
retention.analytics.churn - Churn-risk scoring.

Pipeline::

    stored responses ──► extract_features() ──► ChurnFeatures
                                             ├─► risk_score()  ∈ [0, 1]
                                             ├─► risk_factors() (≤ 5 labels)
                                             └─► retention_suggestions() (≤ 4)

The score is a weighted sum of four normalised sub-scores squashed through
a logistic curve centred at 0.4, so co-occurring signals push the score up
faster than any single one.  Factors are independent threshold checks.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from retention.analytics.lexicon import LanguageTable, default_suggestions
from retention.domain.models import ChurnAssessment, ChurnFeatures

# Sub-score weights (sum = 1.0)
WEIGHT_SENTIMENT  = 0.50
WEIGHT_RESPONSE   = 0.15
WEIGHT_ACTIVITY   = 0.15
WEIGHT_ENGAGEMENT = 0.20

# Logistic squashing
SIGMOID_STEEPNESS = 8.0
SIGMOID_MIDPOINT  = 0.4

ACTIVITY_SATURATION_DAYS = 30

# Factor thresholds
LOW_SENTIMENT_THRESHOLD     = -0.2
POOR_PARTICIPATION_RATE     = 0.5
REDUCED_ACTIVITY_DAYS       = 7
NEGATIVE_FEEDBACK_RATIO     = 0.6
INFREQUENT_LOGIN_DAYS       = 3

# A single response counts as negative below this sentiment
NEGATIVE_RESPONSE_SENTIMENT = -0.1

FACTOR_LOW_SENTIMENT      = "Low sentiment scores"
FACTOR_POOR_PARTICIPATION = "Poor survey participation"
FACTOR_REDUCED_ACTIVITY   = "Reduced activity"
FACTOR_NEGATIVE_FEEDBACK  = "Frequent negative feedback"
FACTOR_INFREQUENT_USAGE   = "Infrequent system usage"

MAX_SUGGESTIONS = 4


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _negative_ratio(features: ChurnFeatures) -> float:
    if features.total_responses <= 0:
        return 0.0
    return features.negative_responses / features.total_responses


# ---------------------------------------------------------------------------
# Score
# ---------------------------------------------------------------------------

def weighted_risk(features: ChurnFeatures) -> float:
    """Linear combination of the four sub-scores, before squashing."""
    sentiment = (1.0 - _clamp(features.avg_sentiment, -1.0, 1.0)) / 2.0
    response = 1.0 - _clamp(features.response_rate, 0.0, 1.0)
    activity = min(max(features.days_inactive, 0) / ACTIVITY_SATURATION_DAYS, 1.0)
    engagement = _clamp(_negative_ratio(features), 0.0, 1.0)

    return (
        sentiment * WEIGHT_SENTIMENT
        + response * WEIGHT_RESPONSE
        + activity * WEIGHT_ACTIVITY
        + engagement * WEIGHT_ENGAGEMENT
    )


def risk_score(features: ChurnFeatures) -> float:
    r = weighted_risk(features)
    squashed = 1.0 / (1.0 + math.exp(-SIGMOID_STEEPNESS * (r - SIGMOID_MIDPOINT)))
    return _clamp(squashed, 0.0, 1.0)


# ---------------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------------

def risk_factors(features: ChurnFeatures) -> List[str]:
    """Labels for every threshold the features cross, in evaluation order."""
    factors: List[str] = []
    if features.avg_sentiment < LOW_SENTIMENT_THRESHOLD:
        factors.append(FACTOR_LOW_SENTIMENT)
    if features.response_rate < POOR_PARTICIPATION_RATE:
        factors.append(FACTOR_POOR_PARTICIPATION)
    if features.days_inactive > REDUCED_ACTIVITY_DAYS:
        factors.append(FACTOR_REDUCED_ACTIVITY)
    if features.total_responses > 0 and _negative_ratio(features) > NEGATIVE_FEEDBACK_RATIO:
        factors.append(FACTOR_NEGATIVE_FEEDBACK)
    if features.last_login_days > INFREQUENT_LOGIN_DAYS:
        factors.append(FACTOR_INFREQUENT_USAGE)
    return factors


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------

_FACTOR_CATEGORY = {
    FACTOR_LOW_SENTIMENT:      "sentiment",
    FACTOR_POOR_PARTICIPATION: "response",
    FACTOR_REDUCED_ACTIVITY:   "activity",
    FACTOR_NEGATIVE_FEEDBACK:  "engagement",
}


def retention_suggestions(
    features: ChurnFeatures,
    language: str = "en",
    table: Optional[LanguageTable] = None,
) -> List[str]:
    """Recommended actions for the factors present, capped at four."""
    templates = (table or default_suggestions()).get(language)
    result: List[str] = []
    for factor in risk_factors(features):
        category = _FACTOR_CATEGORY.get(factor)
        if category is None:
            continue
        result.extend(templates.get(category, ()))
    return result[:MAX_SUGGESTIONS]


# ---------------------------------------------------------------------------
# Feature extraction
# ---------------------------------------------------------------------------

def _whole_days(since: Optional[datetime], now: datetime) -> int:
    if since is None:
        return 0
    return max(0, (now - since).days)


def extract_features(
    sentiments: Sequence[float],
    last_response_at: Optional[datetime],
    surveys_answered: int,
    surveys_total: int,
    now: datetime,
    joined_at: Optional[datetime] = None,
    last_login_at: Optional[datetime] = None,
) -> ChurnFeatures:
    """
    Aggregate one user's stored responses into ``ChurnFeatures``.

    ``sentiments`` is the per-response sentiment list.  With no company
    surveys the participation rate is treated as full.
    """
    total = len(sentiments)
    clamped = [_clamp(s, -1.0, 1.0) for s in sentiments]
    avg = sum(clamped) / total if total else 0.0
    negatives = sum(1 for s in clamped if s < NEGATIVE_RESPONSE_SENTIMENT)

    if surveys_total > 0:
        rate = _clamp(surveys_answered / surveys_total, 0.0, 1.0)
    else:
        rate = 1.0

    activity_anchor = last_response_at if last_response_at is not None else joined_at

    return ChurnFeatures(
        avg_sentiment=avg,
        response_rate=rate,
        days_inactive=_whole_days(activity_anchor, now),
        negative_responses=negatives,
        total_responses=total,
        last_login_days=_whole_days(last_login_at, now),
    )


def assess(
    user_id: int,
    features: ChurnFeatures,
    language: str = "en",
    created_at: Optional[datetime] = None,
) -> ChurnAssessment:
    return ChurnAssessment(
        user_id=user_id,
        risk_score=risk_score(features),
        factors=_dedupe(risk_factors(features)),
        suggestions=retention_suggestions(features, language),
        features=features,
        created_at=created_at,
    )


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
