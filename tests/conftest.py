"""Pytest configuration and shared fixtures."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fundflow.core.config import Settings
from fundflow.db.base import Base
from fundflow.db import models  # noqa: F401  registers tables on Base.metadata
from tests.fakes import RecordingNotifier


@pytest.fixture
def settings():
    """Settings with email delivery off and default thresholds."""
    return Settings(
        email_notifications_enabled=False,
        approval_threshold_usd=5000,
        approval_threshold_percent=10,
        frontend_url="http://fundflow.test",
    )


@pytest.fixture
def db_engine():
    """Fresh in-memory SQLite database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """Database session bound to the per-test engine."""
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def approval_service(db_session, notifier, settings):
    """Approval service wired to the test session and a recording notifier."""
    from fundflow.core.approval import ApprovalService

    return ApprovalService(db_session, notifier=notifier, settings=settings)
