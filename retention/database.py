"""
SQLAlchemy persistence layer for the retention pipeline.

Only the tables and lookups the worker needs live here: companies, users,
surveys, survey responses and the append-only attrition-risk history.
Lookups raise ``NotFoundError`` for missing rows.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from sqlalchemy import (
    create_engine, Column, Integer, Float, String, Boolean,
    DateTime, Index, ForeignKey, JSON, func,
)
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from retention.domain.enums import UserRole
from retention.queue.errors import NotFoundError

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Company(Base):
    """Tenant record; carries optional per-company SMTP credentials."""
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    plan = Column(String(16), default="free")
    language = Column(String(8), default="en")
    smtp_host = Column(String(255), nullable=True)
    smtp_port = Column(Integer, default=587)
    smtp_user = Column(String(255), nullable=True)
    smtp_password = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=utcnow)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    role = Column(String(16), default=UserRole.EMPLOYEE.value)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Survey(Base):
    __tablename__ = "surveys"

    id = Column(Integer, primary_key=True, autoincrement=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    questions = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)


class SurveyResponse(Base):
    """
    One employee's answers to one survey.  ``sentiment`` is in [-1, 1] and
    is attached by the sentiment estimator.
    """
    __tablename__ = "survey_responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    survey_id = Column(Integer, ForeignKey("surveys.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    responses = Column(JSON, nullable=False, default=list)
    sentiment = Column(Float, default=0.0)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_response_user_ts", "user_id", "created_at"),
    )


class AttritionRisk(Base):
    """Append-only: each scoring run inserts a new row."""
    __tablename__ = "attrition_risks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    risk_score = Column(Float, nullable=False, default=0.0)
    factors = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_risk_user_ts", "user_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Database handle
# ---------------------------------------------------------------------------

class Database:
    """Owns the engine and session factory for one database URL."""

    def __init__(self, url: str) -> None:
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.url = url
        self.engine = create_engine(url, **kwargs)
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

    def init(self) -> None:
        """Create all tables if they don't exist."""
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        """Get a database session. Caller must close it."""
        return self._session_factory()

    def dispose(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def _require(row, entity: str, key: object):
    if row is None:
        raise NotFoundError(entity, key)
    return row


def get_user(db: Session, user_id: int) -> User:
    return _require(db.get(User, user_id), "user", user_id)


def get_company(db: Session, company_id: int) -> Company:
    return _require(db.get(Company, company_id), "company", company_id)


def get_survey(db: Session, survey_id: int) -> Survey:
    return _require(db.get(Survey, survey_id), "survey", survey_id)


def get_response(db: Session, response_id: int) -> SurveyResponse:
    return _require(db.get(SurveyResponse, response_id), "survey response", response_id)


def get_responses_by_user(db: Session, user_id: int) -> List[SurveyResponse]:
    """All responses for a user, oldest first."""
    return (
        db.query(SurveyResponse)
        .filter(SurveyResponse.user_id == user_id)
        .order_by(SurveyResponse.created_at.asc(), SurveyResponse.id.asc())
        .all()
    )


def get_users_by_company(db: Session, company_id: int) -> List[User]:
    return (
        db.query(User)
        .filter(User.company_id == company_id)
        .order_by(User.id.asc())
        .all()
    )


def count_company_surveys(db: Session, company_id: int) -> int:
    return db.query(func.count(Survey.id)).filter(Survey.company_id == company_id).scalar() or 0


def count_surveys_answered(db: Session, user_id: int) -> int:
    return (
        db.query(func.count(func.distinct(SurveyResponse.survey_id)))
        .filter(SurveyResponse.user_id == user_id)
        .scalar()
        or 0
    )


def get_attrition_history(db: Session, user_id: int) -> List[AttritionRisk]:
    """Risk rows for a user, oldest first."""
    return (
        db.query(AttritionRisk)
        .filter(AttritionRisk.user_id == user_id)
        .order_by(AttritionRisk.created_at.asc(), AttritionRisk.id.asc())
        .all()
    )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def create_attrition_risk(
    db: Session,
    user_id: int,
    risk_score: float,
    factors: Sequence[str],
    created_at: Optional[datetime] = None,
) -> AttritionRisk:
    row = AttritionRisk(
        user_id=user_id,
        risk_score=risk_score,
        factors=list(factors),
        created_at=created_at or utcnow(),
    )
    db.add(row)
    db.commit()
    return row


def update_response_sentiment(db: Session, response_id: int, sentiment: float) -> SurveyResponse:
    row = get_response(db, response_id)
    row.sentiment = sentiment
    db.commit()
    return row


def create_survey(db: Session, company_id: int, title: str, questions: Sequence[str]) -> Survey:
    row = Survey(company_id=company_id, title=title, questions=list(questions), is_active=True)
    db.add(row)
    db.commit()
    return row


def create_survey_response(
    db: Session,
    survey_id: int,
    user_id: int,
    responses: Sequence[str],
    sentiment: float = 0.0,
    created_at: Optional[datetime] = None,
) -> SurveyResponse:
    row = SurveyResponse(
        survey_id=survey_id,
        user_id=user_id,
        responses=list(responses),
        sentiment=sentiment,
        created_at=created_at or utcnow(),
    )
    db.add(row)
    db.commit()
    return row
