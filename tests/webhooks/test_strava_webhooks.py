from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import func, select

from ridesync.config.settings import settings
from ridesync.db.models import OAuthCredential, ProviderLink, Ride, User
from ridesync.db.session import get_session
from ridesync.ingestion.backfill import BackfillWindow, import_strava_activities
from ridesync.ingestion.normalize import RideFields
from ridesync.ingestion.rides import find_ride, upsert_ride
from ridesync.integrations.providers import Provider


def _event(aspect_type="create", object_id=555, owner_id=1001, object_type="activity", updates=None):
    return {
        "object_type": object_type,
        "object_id": object_id,
        "aspect_type": aspect_type,
        "owner_id": owner_id,
        "subscription_id": 1,
        "event_time": 1716000000,
        "updates": updates or {},
    }


def _detail(activity_id=555, sport_type="Ride", name="Evening Ride", gear_id=None):
    return {
        "id": activity_id,
        "name": name,
        "type": sport_type,
        "sport_type": sport_type,
        "start_date": "2024-05-18T17:00:00Z",
        "moving_time": 2700,
        "distance": 25000.0,
        "total_elevation_gain": 300.0,
        "average_heartrate": 150.4,
        "gear_id": gear_id,
    }


@pytest.fixture
def strava_detail(monkeypatch):
    """Serve a mutable activity detail from the Strava detail endpoint."""
    state = {"detail": _detail(), "calls": 0}

    def mock_get(url, headers=None, params=None, timeout=None):
        state["calls"] += 1
        return httpx.Response(200, json=state["detail"], request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", mock_get)
    return state


@pytest.fixture
def linked_user(make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "1001")
    return user_id


def _ride_count():
    with get_session() as session:
        return session.execute(select(func.count()).select_from(Ride)).scalar_one()


def test_verification_echoes_challenge(client, monkeypatch):
    monkeypatch.setattr(settings, "strava_webhook_verify_token", "s3cret")

    resp = client.get("/webhooks/strava", params={"hub.mode": "subscribe", "hub.challenge": "abc", "hub.verify_token": "s3cret"})

    assert resp.status_code == 200
    assert resp.json() == {"hub.challenge": "abc"}


def test_verification_rejects_wrong_token(client, monkeypatch):
    monkeypatch.setattr(settings, "strava_webhook_verify_token", "s3cret")

    resp = client.get("/webhooks/strava", params={"hub.mode": "subscribe", "hub.challenge": "abc", "hub.verify_token": "nope"})

    assert resp.status_code == 403


def test_verification_unconfigured(client, monkeypatch):
    monkeypatch.setattr(settings, "strava_webhook_verify_token", "")

    resp = client.get("/webhooks/strava", params={"hub.mode": "subscribe", "hub.challenge": "abc", "hub.verify_token": ""})

    assert resp.status_code == 500


def test_create_event_writes_ride(client, strava_detail, linked_user, add_bike):
    bike_id = add_bike(linked_user)

    resp = client.post("/webhooks/strava", json=_event())

    assert resp.status_code == 200
    assert resp.text == "EVENT_RECEIVED"
    with get_session() as session:
        ride = find_ride(session, Provider.STRAVA, "555")
        assert ride.user_id == linked_user
        assert ride.notes == "Evening Ride"
        assert ride.average_hr == 150
        assert ride.bike_id == bike_id


def test_duplicate_and_update_events_keep_one_ride(client, strava_detail, linked_user):
    client.post("/webhooks/strava", json=_event())
    client.post("/webhooks/strava", json=_event())
    strava_detail["detail"] = _detail(name="Renamed Ride")
    client.post("/webhooks/strava", json=_event(aspect_type="update", updates={"title": "Renamed Ride"}))

    assert _ride_count() == 1
    with get_session() as session:
        assert find_ride(session, Provider.STRAVA, "555").notes == "Renamed Ride"


def test_delete_event_removes_ride(client, linked_user):
    with get_session() as session:
        upsert_ride(
            session,
            user_id=linked_user,
            provider=Provider.STRAVA,
            external_activity_id="555",
            fields=RideFields(datetime(2024, 5, 18, tzinfo=timezone.utc), 1, 1.0, 1.0, None, "Ride", None),
        )

    resp = client.post("/webhooks/strava", json=_event(aspect_type="delete"))

    assert resp.status_code == 200
    assert _ride_count() == 0


def test_non_cycling_activity_ignored(client, strava_detail, linked_user):
    strava_detail["detail"] = _detail(sport_type="Run")

    client.post("/webhooks/strava", json=_event())

    assert _ride_count() == 0


def test_unknown_athlete_dropped(client, strava_detail):
    resp = client.post("/webhooks/strava", json=_event(owner_id=424242))

    assert resp.status_code == 200
    assert strava_detail["calls"] == 0
    assert _ride_count() == 0


def test_other_active_data_source_skips_import(client, strava_detail, make_user, link_provider):
    user_id = make_user(active_data_source="garmin")
    link_provider(user_id, "strava", "1001")

    client.post("/webhooks/strava", json=_event())

    assert strava_detail["calls"] == 0
    assert _ride_count() == 0


def test_provider_error_still_acknowledged(client, monkeypatch, linked_user):
    def failing_get(url, headers=None, params=None, timeout=None):
        return httpx.Response(500, json={"message": "boom"}, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx, "get", failing_get)

    resp = client.post("/webhooks/strava", json=_event())

    assert resp.status_code == 200
    assert _ride_count() == 0


def test_malformed_body_acknowledged(client):
    resp = client.post("/webhooks/strava", content=b"not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 200
    assert resp.text == "EVENT_RECEIVED"


def _link_state(user_id):
    with get_session() as session:
        links = session.execute(select(func.count()).select_from(ProviderLink).where(ProviderLink.user_id == user_id)).scalar_one()
        creds = session.execute(select(func.count()).select_from(OAuthCredential).where(OAuthCredential.user_id == user_id)).scalar_one()
        active = session.get(User, user_id).active_data_source
    return links, creds, active


def test_athlete_deauthorization_event_removes_link(client, make_user, link_provider):
    revoking = make_user(active_data_source="strava")
    other = make_user(active_data_source="strava")
    link_provider(revoking, "strava", "1001")
    link_provider(revoking, "garmin", "g-1")
    link_provider(other, "strava", "2002")

    resp = client.post(
        "/webhooks/strava",
        json=_event(object_type="athlete", aspect_type="update", object_id=1001, updates={"authorized": "false"}),
    )

    assert resp.status_code == 200
    assert _link_state(revoking) == (1, 1, None)
    assert _link_state(other) == (1, 1, "strava")


def test_deauthorization_endpoint(client, make_user, link_provider):
    user_id = make_user(active_data_source="garmin")
    link_provider(user_id, "strava", "1001")

    resp = client.post("/webhooks/strava/deauthorization", json={"athlete_id": 1001})

    assert resp.status_code == 200
    assert _link_state(user_id) == (0, 0, "garmin")


def test_deauthorization_for_unknown_athlete_is_noop(client, make_user, link_provider):
    user_id = make_user()
    link_provider(user_id, "strava", "1001")

    resp = client.post("/webhooks/strava/deauthorization", json={"athlete_id": 999})

    assert resp.status_code == 200
    assert _link_state(user_id) == (1, 1, None)


def test_webhook_ride_skipped_by_later_backfill(client, monkeypatch, strava_detail, linked_user):
    client.post("/webhooks/strava", json=_event())
    assert _ride_count() == 1

    list_calls = []

    def mock_get(url, headers=None, params=None, timeout=None):
        request = httpx.Request("GET", url)
        if url.endswith("/athlete/activities"):
            list_calls.append(params["page"])
            page = [_detail(name="Evening Ride (from history)")] if params["page"] == 1 else []
            return httpx.Response(200, json=page, request=request)
        return httpx.Response(200, json=_detail(), request=request)

    monkeypatch.setattr(httpx, "get", mock_get)
    end = datetime(2024, 6, 1, tzinfo=timezone.utc)

    result = import_strava_activities(linked_user, BackfillWindow(start=end - timedelta(days=30), end=end))

    assert list_calls == [1]
    assert result.outcome == "accepted"
    assert result.cycling_activities == 1
    assert result.skipped == 1
    assert result.imported == 0
    assert _ride_count() == 1
    with get_session() as session:
        assert find_ride(session, Provider.STRAVA, "555").notes == "Evening Ride"
