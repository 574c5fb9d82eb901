import json
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from ridesync.db import session as db_session_module
from ridesync.db.models import Base, OAuthCredential
from ridesync.db.session import as_utc, get_session
from ridesync.integrations.token_service import get_valid_token


def _response(status_code, payload):
    resp = requests.Response()
    resp.status_code = status_code
    resp._content = json.dumps(payload).encode()
    resp.url = "https://example.test/oauth/token"
    return resp


def _credential(user_id, provider):
    with get_session() as session:
        return session.execute(
            select(OAuthCredential).where(OAuthCredential.user_id == user_id, OAuthCredential.provider == provider)
        ).scalar_one()


def test_valid_token_returned_without_refresh(make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "111", access_token="still-good", expires_at=datetime.now(timezone.utc) + timedelta(hours=1))

    assert get_valid_token(user_id, "strava") == "still-good"


def test_expired_token_refreshed_once_and_persisted(monkeypatch, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "111", access_token="old", expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
    new_expiry = int((datetime.now(timezone.utc) + timedelta(hours=6)).timestamp())
    calls = []

    def mock_post(url, data=None, **kwargs):
        calls.append(data)
        return _response(200, {"access_token": "new", "refresh_token": "rotated", "expires_at": new_expiry})

    monkeypatch.setattr(requests, "post", mock_post)

    assert get_valid_token(user_id, "strava") == "new"
    assert len(calls) == 1
    assert calls[0]["grant_type"] == "refresh_token"
    assert calls[0]["refresh_token"] == "refresh-token"

    stored = _credential(user_id, "strava")
    assert stored.access_token == "new"
    assert stored.refresh_token == "rotated"
    assert int(as_utc(stored.expires_at).timestamp()) == new_expiry

    # Second call sees the fresh token and does not refresh again
    assert get_valid_token(user_id, "strava") == "new"
    assert len(calls) == 1


def test_token_inside_safety_margin_is_refreshed(monkeypatch, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "garmin", "g-1", access_token="old", expires_at=datetime.now(timezone.utc) + timedelta(seconds=30))

    monkeypatch.setattr(requests, "post", lambda *a, **k: _response(200, {"access_token": "new", "expires_in": 7200}))

    assert get_valid_token(user_id, "garmin") == "new"


def test_garmin_refresh_keeps_refresh_token_when_none_returned(monkeypatch, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "garmin", "g-1", refresh_token="keep-me", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

    monkeypatch.setattr(requests, "post", lambda *a, **k: _response(200, {"access_token": "fresh"}))

    assert get_valid_token(user_id, "garmin") == "fresh"
    stored = _credential(user_id, "garmin")
    assert stored.refresh_token == "keep-me"
    assert as_utc(stored.expires_at) > datetime.now(timezone.utc) + timedelta(minutes=50)


def test_refresh_failure_reports_unavailable(monkeypatch, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "111", access_token="old", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

    monkeypatch.setattr(requests, "post", lambda *a, **k: _response(400, {"message": "Bad Request", "errors": ["invalid"]}))

    assert get_valid_token(user_id, "strava") is None
    # Credential is left in place; the user reconnects through the OAuth flow
    assert _credential(user_id, "strava").access_token == "old"


def test_network_error_reports_unavailable(monkeypatch, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "111", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

    def mock_post(*args, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(requests, "post", mock_post)

    assert get_valid_token(user_id, "strava") is None


def test_missing_credential_reports_unavailable(make_user):
    assert get_valid_token(make_user(), "garmin") is None


def test_expired_token_without_refresh_token_is_unavailable(make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "garmin", "g-1", refresh_token=None, expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

    assert get_valid_token(user_id, "garmin") is None


def _raw_response(status_code, body):
    resp = requests.Response()
    resp.status_code = status_code
    resp._content = body
    resp.url = "https://example.test/oauth/token"
    return resp


def test_non_json_refresh_body_reports_unavailable(monkeypatch, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "111", access_token="old", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

    monkeypatch.setattr(requests, "post", lambda *a, **k: _raw_response(200, b"<html>gateway</html>"))

    assert get_valid_token(user_id, "strava") is None
    assert _credential(user_id, "strava").access_token == "old"


def test_unparseable_garmin_expiry_reports_unavailable(monkeypatch, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "garmin", "g-1", access_token="old", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))

    monkeypatch.setattr(requests, "post", lambda *a, **k: _response(200, {"access_token": "a", "expires_in": "soon"}))

    assert get_valid_token(user_id, "garmin") is None
    assert _credential(user_id, "garmin").access_token == "old"


@pytest.fixture
def file_db(tmp_path, monkeypatch):
    """File-backed database so each thread gets its own connection."""
    engine = create_engine(f"sqlite:///{tmp_path / 'tokens.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    monkeypatch.setattr(db_session_module, "_engine", engine)
    monkeypatch.setattr(
        db_session_module,
        "_SessionLocal",
        sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False),
    )
    yield engine
    engine.dispose()


def test_concurrent_callers_share_one_refresh(monkeypatch, file_db, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "111", access_token="old", expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
    new_expiry = int((datetime.now(timezone.utc) + timedelta(hours=6)).timestamp())
    calls = []

    def mock_post(url, data=None, **kwargs):
        calls.append(data)
        # Hold the refresh open long enough for the other caller to queue on the lock
        time.sleep(0.2)
        return _response(200, {"access_token": "new", "refresh_token": "rotated", "expires_at": new_expiry})

    monkeypatch.setattr(requests, "post", mock_post)

    start = threading.Barrier(2)
    results = []
    errors = []

    def worker():
        start.wait()
        try:
            results.append(get_valid_token(user_id, "strava"))
        except Exception as e:  # surfaced by the assertions below
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert results == ["new", "new"]
    assert len(calls) == 1

    with get_session() as session:
        count = session.execute(
            select(func.count()).select_from(OAuthCredential).where(OAuthCredential.user_id == user_id)
        ).scalar_one()
    assert count == 1
    stored = _credential(user_id, "strava")
    assert stored.access_token == "new"
    assert stored.refresh_token == "rotated"
    assert int(as_utc(stored.expires_at).timestamp()) == new_expiry
