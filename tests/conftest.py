"""Root conftest for all tests.

Every test gets a fresh in-memory SQLite database bound to the session
factory used by the application.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from ridesync.config.settings import settings
from ridesync.db import session as db_session_module
from ridesync.db.models import Base, Bike, GearMapping, OAuthCredential, ProviderLink, User
from ridesync.db.session import get_session

TEST_SECRET = "test-secret"


@pytest.fixture(autouse=True)
def db_engine(monkeypatch):
    """Bind the application's session factory to an isolated in-memory database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    monkeypatch.setattr(db_session_module, "_engine", engine)
    monkeypatch.setattr(
        db_session_module,
        "_SessionLocal",
        sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False),
    )
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    """Fail loudly if a test reaches a provider without mocking it."""
    import httpx
    import requests

    def _blocked(*args, **kwargs):
        raise AssertionError(f"Unexpected network call: {args[:1]}")

    monkeypatch.setattr(httpx, "get", _blocked)
    monkeypatch.setattr(requests, "post", _blocked)


@pytest.fixture
def make_user():
    def _make_user(active_data_source: str | None = None) -> str:
        user_id = str(uuid.uuid4())
        with get_session() as session:
            session.add(User(id=user_id, email=f"{user_id}@example.com", active_data_source=active_data_source))
        return user_id

    return _make_user


@pytest.fixture
def link_provider():
    def _link_provider(
        user_id: str,
        provider: str,
        provider_user_id: str,
        *,
        access_token: str = "access-token",
        refresh_token: str | None = "refresh-token",
        expires_at: datetime | None = None,
    ) -> None:
        with get_session() as session:
            session.add(ProviderLink(user_id=user_id, provider=provider, provider_user_id=provider_user_id))
            session.add(
                OAuthCredential(
                    user_id=user_id,
                    provider=provider,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expires_at=expires_at or datetime.now(timezone.utc) + timedelta(hours=1),
                )
            )

    return _link_provider


@pytest.fixture
def add_bike():
    def _add_bike(user_id: str, name: str = "Bike", gear_id: str | None = None) -> str:
        bike_id = str(uuid.uuid4())
        with get_session() as session:
            session.add(Bike(id=bike_id, user_id=user_id, name=name))
            session.flush()
            if gear_id is not None:
                session.add(GearMapping(user_id=user_id, provider_gear_id=gear_id, bike_id=bike_id))
        return bike_id

    return _add_bike


@pytest.fixture
def client():
    from ridesync.main import app

    return TestClient(app)


@pytest.fixture
def auth_headers(monkeypatch):
    monkeypatch.setattr(settings, "auth_secret_key", TEST_SECRET)
    monkeypatch.setattr(settings, "auth_algorithm", "HS256")

    def _auth_headers(user_id: str) -> dict[str, str]:
        token = jwt.encode(
            {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            TEST_SECRET,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return _auth_headers
