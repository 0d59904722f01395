"""
Pytest configuration and shared fixtures.

Fixtures available to all tests:
  • clock - controllable epoch clock (seconds)
  • settings - Settings with short timeouts and no external services
  • backend - MemoryQueueBackend driven by ``clock``
  • client - QueueClient over ``backend``
  • database - in-memory SQLite with all tables created
  • seed - helpers to insert companies, users, surveys, responses
"""

from __future__ import annotations

import os
import sys
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from retention.config import RetryPolicy, Settings  # noqa: E402
from retention.database import (  # noqa: E402
    Company,
    Database,
    Survey,
    SurveyResponse,
    User,
)
from retention.queue.backend import MemoryQueueBackend  # noqa: E402
from retention.queue.client import QueueClient  # noqa: E402

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        concurrency=4,
        poll_interval_seconds=0.01,
        shutdown_timeout_seconds=1.0,
        task_timeout_seconds=5.0,
        session_retry_initial_seconds=0.5,
        retry=RetryPolicy(max_retry=3, base_seconds=10.0, max_seconds=600.0),
        churn_calculation_delay_seconds=300.0,
        frontend_url="http://app.test",
    )


@pytest.fixture
def backend(clock) -> MemoryQueueBackend:
    return MemoryQueueBackend(clock=clock)


@pytest.fixture
def client(backend, settings) -> QueueClient:
    return QueueClient(backend, settings)


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.init()
    yield db
    db.dispose()


class Seeder:
    def __init__(self, database: Database) -> None:
        self._db = database

    def _add(self, row):
        session = self._db.session()
        try:
            session.add(row)
            session.commit()
            return row
        finally:
            session.close()

    def company(self, name: str = "Acme", language: str = "en", **smtp) -> Company:
        return self._add(Company(name=name, language=language, **smtp))

    def user(
        self,
        company: Company,
        name: str = "Asha",
        email: Optional[str] = None,
        role: str = "employee",
        created_at: datetime = FIXED_NOW - timedelta(days=90),
        last_login_at: Optional[datetime] = None,
    ) -> User:
        return self._add(User(
            name=name,
            email=email or f"{name.lower()}@example.com",
            role=role,
            company_id=company.id,
            created_at=created_at,
            last_login_at=last_login_at,
        ))

    def survey(self, company: Company, title: str = "Pulse check") -> Survey:
        return self._add(Survey(company_id=company.id, title=title, questions=["How are you?"]))

    def response(
        self,
        survey: Survey,
        user: User,
        answers: Optional[List[str]] = None,
        sentiment: float = 0.0,
        created_at: datetime = FIXED_NOW - timedelta(days=1),
    ) -> SurveyResponse:
        return self._add(SurveyResponse(
            survey_id=survey.id,
            user_id=user.id,
            responses=answers or ["fine"],
            sentiment=sentiment,
            created_at=created_at,
        ))


@pytest.fixture
def seed(database) -> Seeder:
    return Seeder(database)


@pytest.fixture
def make_settings(settings):
    def _factory(**overrides) -> Settings:
        return replace(settings, **overrides)
    return _factory
