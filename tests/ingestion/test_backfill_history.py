from datetime import datetime, timedelta, timezone

from ridesync.db.session import get_session
from ridesync.ingestion.backfill_history import (
    find_request,
    list_history,
    record_delivery,
    record_request,
    resubmission_block_reason,
    sweep_backfill_requests,
    ytd_resume_point,
)
from ridesync.integrations.providers import Provider

PERIOD_START = datetime(2023, 1, 1, tzinfo=timezone.utc)
PERIOD_END = datetime(2023, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


def _record(user_id, period="2023", status="in_progress", provider=Provider.GARMIN, **kwargs):
    with get_session() as session:
        record_request(
            session,
            user_id=user_id,
            provider=provider,
            period=period,
            status=status,
            period_start=kwargs.pop("period_start", PERIOD_START),
            period_end=kwargs.pop("period_end", PERIOD_END),
            **kwargs,
        )


def _status(user_id, period="2023"):
    with get_session() as session:
        return find_request(session, user_id, Provider.GARMIN, period).status


def test_closed_year_blocked_unless_failed(make_user):
    user_id = make_user()
    with get_session() as session:
        assert resubmission_block_reason(session, user_id, Provider.GARMIN, "2023") is None

    for status, blocked in (("in_progress", True), ("completed", True), ("failed", False)):
        _record(user_id, status=status)
        with get_session() as session:
            reason = resubmission_block_reason(session, user_id, Provider.GARMIN, "2023")
        assert (reason is not None) is blocked


def test_ytd_blocked_only_while_in_progress(make_user):
    user_id = make_user()
    _record(user_id, period="ytd", status="in_progress")
    with get_session() as session:
        assert resubmission_block_reason(session, user_id, Provider.GARMIN, "ytd") is not None

    _record(user_id, period="ytd", status="completed")
    with get_session() as session:
        assert resubmission_block_reason(session, user_id, Provider.GARMIN, "ytd") is None


def test_ytd_resume_point_from_completed_run(make_user):
    user_id = make_user()
    up_to = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(minutes=1)
    _record(user_id, period="ytd", status="completed", backfilled_up_to=up_to)

    with get_session() as session:
        assert ytd_resume_point(session, user_id, Provider.GARMIN) == up_to


def test_deliveries_counted_against_open_request(make_user):
    user_id = make_user()
    _record(user_id)

    with get_session() as session:
        record_delivery(session, user_id, Provider.GARMIN, datetime(2023, 3, 1, tzinfo=timezone.utc))
        record_delivery(session, user_id, Provider.GARMIN, datetime(2023, 7, 1, tzinfo=timezone.utc))
        record_delivery(session, user_id, Provider.GARMIN, datetime(2024, 2, 1, tzinfo=timezone.utc))

    with get_session() as session:
        row = find_request(session, user_id, Provider.GARMIN, "2023")
        assert row.rides_found == 2
        assert row.last_activity_received_at is not None


def test_sweep_completes_idle_requests(make_user):
    user_id = make_user()
    _record(user_id)
    with get_session() as session:
        record_delivery(session, user_id, Provider.GARMIN, datetime(2023, 3, 1, tzinfo=timezone.utc))

    assert sweep_backfill_requests() == {"completed": 0, "failed": 0}
    assert _status(user_id) == "in_progress"

    stats = sweep_backfill_requests(now=datetime.now(timezone.utc) + timedelta(minutes=11))
    assert stats["completed"] == 1
    assert _status(user_id) == "completed"


def test_sweep_completes_requests_that_never_received_activities(make_user):
    user_id = make_user()
    _record(user_id)

    sweep_backfill_requests(now=datetime.now(timezone.utc) + timedelta(minutes=31))

    assert _status(user_id) == "completed"


def test_sweep_fails_stuck_requests(make_user):
    user_id = make_user()
    _record(user_id)
    later = datetime.now(timezone.utc) + timedelta(hours=25)
    with get_session() as session:
        row = find_request(session, user_id, Provider.GARMIN, "2023")
        row.last_activity_received_at = later - timedelta(minutes=1)

    sweep_backfill_requests(now=later)

    assert _status(user_id) == "failed"


def test_history_newest_first_and_filtered(make_user):
    user_id = make_user()
    _record(user_id, period="2022", status="completed")
    _record(user_id, period="2023", status="in_progress")
    _record(user_id, period="2023", status="completed", provider=Provider.STRAVA, rides_found=4)

    with get_session() as session:
        everything = list_history(session, user_id)
        garmin_only = list_history(session, user_id, Provider.GARMIN)

    assert [(r.provider, r.year) for r in everything] == [("strava", "2023"), ("garmin", "2023"), ("garmin", "2022")]
    assert [r.year for r in garmin_only] == ["2023", "2022"]
