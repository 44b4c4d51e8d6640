"""Pytest fixtures: sqlite DB, authenticated client, factories for emails and verdicts."""
import os
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("SECRET_KEY", "test-secret")

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from jobtrail.auth import get_current_user_for_sse, get_current_user_required
from jobtrail.database import get_db, get_sync_db
from jobtrail.email_classifier import ClassificationOutcome, EmailVerdict
from jobtrail.gmail_service import FetchedEmail
from jobtrail.main import app
from jobtrail.models import Base, User


@pytest.fixture
def db_urls(tmp_path):
    """
    File-based sqlite so sync sessions (fixtures, services) and async app
    sessions see the same data.
    """
    db_path = tmp_path / "test.db"
    return f"sqlite:///{db_path}", f"sqlite+aiosqlite:///{db_path}"


@pytest.fixture
def db_engine(db_urls):
    sync_url, _ = db_urls
    engine = create_engine(sync_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    u = User(email="me@example.com", name="Me")
    db_session.add(u)
    db_session.commit()
    db_session.refresh(u)
    return u


@pytest.fixture
def client(db_urls, session_factory):
    _, async_url = db_urls
    async_engine = create_async_engine(async_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    AsyncSessionLocal = async_sessionmaker(async_engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with AsyncSessionLocal() as session:
            yield session

    def override_get_sync_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_db] = override_get_sync_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def auth_client(client, user):
    """Client whose requests act as `user`."""
    async def override_user():
        return user

    app.dependency_overrides[get_current_user_required] = override_user
    app.dependency_overrides[get_current_user_for_sse] = override_user
    return client


def _make_email(
    msg_id: str = "m1",
    subject: str = "Thanks for applying",
    body: str = "",
    sender: str = "Acme Careers <jobs@acme.com>",
    date: datetime = datetime(2024, 3, 1, 9, 0),
) -> FetchedEmail:
    return FetchedEmail(
        id=msg_id,
        thread_id=f"t-{msg_id}",
        subject=subject,
        sender=sender,
        date=date,
        snippet=subject,
        body=body,
    )


def _make_outcome(
    type: str = "application",
    company: str = "Acme",
    role: str = "Senior Engineer",
    confidence: float = 0.9,
    location: str = None,
) -> ClassificationOutcome:
    return ClassificationOutcome(
        verdict=EmailVerdict(type=type, company=company, role=role, location=location, confidence=confidence)
    )


@pytest.fixture
def make_email():
    return _make_email


@pytest.fixture
def make_outcome():
    return _make_outcome
