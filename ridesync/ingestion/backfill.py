"""Backfill orchestration.

Two strategies:
- Garmin (push-style): the window is split into chunks no longer than the
  provider's span limit and one backfill trigger is sent per chunk, in
  order. Garmin later redelivers the activities through the ping webhook.
- Strava (pull-style): activities are listed page by page inside the
  window and written synchronously.

Window validation happens before any token lookup or network call. A
missing or unrefreshable token yields a failed result flagged
``reconnect_required`` instead of an exception.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal

import httpx
from loguru import logger
from pydantic import ValidationError

from ridesync.config.settings import settings
from ridesync.db.session import get_session
from ridesync.ingestion import backfill_history
from ridesync.ingestion.backfill_history import YEAR_TO_DATE
from ridesync.ingestion.gear import GearResolver
from ridesync.ingestion.normalize import is_cycling, normalize_strava_activity
from ridesync.ingestion.rides import ride_exists, upsert_ride
from ridesync.integrations.garmin.client import GarminClient
from ridesync.integrations.providers import Provider
from ridesync.integrations.strava.client import StravaClient
from ridesync.integrations.token_service import get_valid_token

BackfillOutcome = Literal["accepted", "duplicate", "failed"]

MIN_BACKFILL_DAYS = 1
MAX_BACKFILL_DAYS = 365
MIN_BACKFILL_YEAR = 2000

RECONNECT_MESSAGES = {
    Provider.STRAVA: "Strava not connected or token expired. Please reconnect your Strava account.",
    Provider.GARMIN: "Garmin not connected or token expired. Please reconnect your Garmin account.",
}

_MIN_START_PATTERN = re.compile(r"min start time of ([0-9T:.\-]+Z)")


class BackfillWindowError(ValueError):
    """Raised when a requested backfill window is invalid."""


@dataclass(frozen=True)
class BackfillWindow:
    start: datetime
    end: datetime
    period: str | None = None  # "YYYY" or "ytd"; None for day-count windows

    @property
    def days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400


@dataclass
class UnmappedGear:
    gear_id: str
    ride_count: int


@dataclass
class BackfillResult:
    """Aggregate outcome of one backfill request.

    Garmin results fill the chunk counters; Strava results fill the import
    counters. Both carry warnings (non-fatal notes such as duplicate chunks)
    and errors (per-chunk or per-page failures).
    """

    provider: Provider
    outcome: BackfillOutcome
    message: str = ""
    reconnect_required: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    # push-style
    chunks_total: int = 0
    chunks_accepted: int = 0
    chunks_duplicate: int = 0
    chunks_failed: int = 0
    # pull-style
    total_activities: int = 0
    cycling_activities: int = 0
    imported: int = 0
    skipped: int = 0
    unmapped_gears: list[UnmappedGear] = field(default_factory=list)


def resolve_window(
    *,
    days: int | None = None,
    year: str | int | None = None,
    now: datetime | None = None,
    ytd_resume_from: datetime | None = None,
) -> BackfillWindow:
    """Turn a day count or a year into a concrete UTC window.

    Args:
        days: Rolling window ending now, 1..365
        year: A year between 2000 and the current year, or "ytd"
        now: Reference instant (defaults to current time)
        ytd_resume_from: End of the last completed year-to-date window; a
            new year-to-date window starts one second after it

    Raises:
        BackfillWindowError: When the input is missing, ambiguous or out of range
    """
    now = now or datetime.now(timezone.utc)
    if (days is None) == (year is None):
        raise BackfillWindowError("Provide exactly one of 'days' or 'year'")

    if days is not None:
        if not MIN_BACKFILL_DAYS <= days <= MAX_BACKFILL_DAYS:
            raise BackfillWindowError(f"days must be between {MIN_BACKFILL_DAYS} and {MAX_BACKFILL_DAYS}")
        return BackfillWindow(start=now - timedelta(days=days), end=now)

    year_label = str(year).strip().lower()
    if year_label == YEAR_TO_DATE:
        start = datetime(now.year, 1, 1, tzinfo=timezone.utc)
        if ytd_resume_from is not None and ytd_resume_from >= start:
            start = ytd_resume_from + timedelta(seconds=1)
        if start >= now:
            raise BackfillWindowError("Year-to-date backfill is already up to date")
        return BackfillWindow(start=start, end=now, period=YEAR_TO_DATE)

    try:
        year_value = int(year_label)
    except ValueError as e:
        raise BackfillWindowError(f"Invalid year: {year}") from e
    if not MIN_BACKFILL_YEAR <= year_value <= now.year:
        raise BackfillWindowError(f"year must be between {MIN_BACKFILL_YEAR} and {now.year}, or 'ytd'")

    start = datetime(year_value, 1, 1, tzinfo=timezone.utc)
    end = min(datetime(year_value, 12, 31, 23, 59, 59, tzinfo=timezone.utc), now)
    return BackfillWindow(start=start, end=end, period=str(year_value))


def _extract_min_start(error_text: str) -> datetime | None:
    match = _MIN_START_PATTERN.search(error_text or "")
    if not match:
        return None
    try:
        return datetime.fromisoformat(match.group(1).replace("Z", "+00:00"))
    except ValueError:
        return None


def _classify_garmin_chunks(result: BackfillResult) -> None:
    if result.chunks_total and result.chunks_duplicate == result.chunks_total:
        result.outcome = "duplicate"
        result.message = "All requested periods already have pending backfill requests. Activities will arrive shortly."
    elif result.chunks_accepted > 0:
        result.outcome = "accepted"
        result.message = (
            f"Backfill requested for {result.chunks_accepted} period(s). "
            "Activities will be delivered via webhook over the next few minutes."
        )
    else:
        result.outcome = "failed"
        result.message = "Failed to request any backfill periods from Garmin."


def request_garmin_backfill(user_id: str, window: BackfillWindow) -> BackfillResult:
    """Trigger asynchronous Garmin backfill for the window, one chunk at a time.

    Chunk outcomes: 202 accepted, 409 duplicate of a pending request, 400
    with a provider minimum start date moves the cursor forward, anything
    else is a failed chunk. Failures never stop the remaining chunks.
    """
    result = BackfillResult(provider=Provider.GARMIN, outcome="failed")

    access_token = get_valid_token(user_id, Provider.GARMIN)
    if access_token is None:
        result.reconnect_required = True
        result.message = RECONNECT_MESSAGES[Provider.GARMIN]
        return result

    client = GarminClient(access_token)
    chunk = timedelta(days=settings.garmin_backfill_chunk_days)
    cursor = window.start

    logger.info(f"[BACKFILL] Garmin backfill start: user_id={user_id}, {window.start.isoformat()} -> {window.end.isoformat()}")
    while cursor < window.end:
        chunk_end = min(cursor + chunk, window.end)
        label = cursor.date().isoformat()

        try:
            resp = client.request_activity_backfill(cursor, chunk_end)
        except httpx.HTTPError as e:
            result.chunks_total += 1
            result.chunks_failed += 1
            result.errors.append(f"Error for period {label}: {e}")
            logger.error(f"[BACKFILL] Garmin chunk error: user_id={user_id}, period={label}, error={e}")
            cursor = chunk_end
            continue

        if resp.status_code == 400:
            min_start = _extract_min_start(resp.text)
            if min_start is not None and min_start > cursor:
                result.warnings.append(f"Adjusted start to {min_start.date().isoformat()} (earliest date Garmin allows)")
                logger.warning(f"[BACKFILL] Garmin minimum start date {min_start.isoformat()}, moving cursor from {label}")
                cursor = min_start
                continue

        result.chunks_total += 1
        if resp.status_code == 202:
            result.chunks_accepted += 1
        elif resp.status_code == 409:
            result.chunks_duplicate += 1
            result.warnings.append(f"Duplicate request for period {label}")
        else:
            result.chunks_failed += 1
            result.errors.append(f"Failed for period {label}: {resp.status_code}")
            logger.error(f"[BACKFILL] Garmin chunk failed: user_id={user_id}, period={label}, status={resp.status_code}, body={resp.text[:200]}")
        cursor = chunk_end

    _classify_garmin_chunks(result)
    logger.info(
        f"[BACKFILL] Garmin backfill done: user_id={user_id}, outcome={result.outcome}, accepted={result.chunks_accepted}, "
        f"duplicate={result.chunks_duplicate}, failed={result.chunks_failed}"
    )
    return result


def import_strava_activities(user_id: str, window: BackfillWindow) -> BackfillResult:
    """Synchronously import Strava cycling activities inside the window.

    Pages are fetched sequentially up to the configured page cap. Existing
    rides are skipped, new ones are written with the resolved bike, and gear
    ids without a mapping are reported with their ride counts.
    """
    result = BackfillResult(provider=Provider.STRAVA, outcome="failed")

    access_token = get_valid_token(user_id, Provider.STRAVA)
    if access_token is None:
        result.reconnect_required = True
        result.message = RECONNECT_MESSAGES[Provider.STRAVA]
        return result

    client = StravaClient(access_token)
    per_page = settings.strava_backfill_page_size
    pages_fetched = 0
    unmapped: Counter[str] = Counter()

    for page in range(1, settings.strava_backfill_max_pages + 1):
        try:
            activities = client.list_activities(after=window.start, before=window.end, page=page, per_page=per_page)
        except (httpx.HTTPError, ValidationError) as e:
            result.errors.append(f"Failed to fetch page {page}: {e}")
            logger.error(f"[BACKFILL] Strava page fetch failed: user_id={user_id}, page={page}, error={e}")
            continue

        pages_fetched += 1
        result.total_activities += len(activities)

        for activity in activities:
            if not is_cycling(activity.effective_sport_type):
                continue
            result.cycling_activities += 1
            try:
                with get_session() as session:
                    resolver = GearResolver(session)
                    if activity.gear_id and resolver.lookup_mapping(user_id, activity.gear_id) is None:
                        unmapped[activity.gear_id] += 1
                    if ride_exists(session, Provider.STRAVA, str(activity.id)):
                        result.skipped += 1
                        continue
                    upsert_ride(
                        session,
                        user_id=user_id,
                        provider=Provider.STRAVA,
                        external_activity_id=str(activity.id),
                        fields=normalize_strava_activity(activity),
                        bike_id=resolver.resolve(user_id, activity.gear_id, allow_single_bike_fallback=True),
                    )
                result.imported += 1
            except Exception as e:
                result.errors.append(f"Failed to import activity {activity.id}: {e}")
                logger.exception(f"[BACKFILL] Strava activity import failed: user_id={user_id}, activity_id={activity.id}")

        if len(activities) < per_page:
            break

    result.unmapped_gears = [UnmappedGear(gear_id=gear_id, ride_count=count) for gear_id, count in unmapped.most_common()]
    if pages_fetched == 0:
        result.outcome = "failed"
        result.message = "Failed to fetch activities from Strava."
    else:
        result.outcome = "accepted"
        result.message = f"Imported {result.imported} new rides, skipped {result.skipped} existing rides."

    logger.info(
        f"[BACKFILL] Strava backfill done: user_id={user_id}, total={result.total_activities}, "
        f"cycling={result.cycling_activities}, imported={result.imported}, skipped={result.skipped}, errors={len(result.errors)}"
    )
    return result


def _record_history(user_id: str, window: BackfillWindow, result: BackfillResult) -> None:
    if window.period is None or result.reconnect_required:
        return

    up_to = window.end if window.period == YEAR_TO_DATE else None
    if result.provider == Provider.GARMIN:
        status = {"accepted": "in_progress", "duplicate": "completed", "failed": "failed"}[result.outcome]
        rides_found = None
    else:
        status = "completed" if result.outcome == "accepted" else "failed"
        rides_found = result.imported

    with get_session() as session:
        backfill_history.record_request(
            session,
            user_id=user_id,
            provider=result.provider,
            period=window.period,
            status=status,
            period_start=window.start,
            period_end=window.end,
            rides_found=rides_found,
            backfilled_up_to=up_to if status != "failed" else None,
        )


def request_backfill(
    user_id: str,
    provider: Provider | str,
    *,
    days: int | None = None,
    year: str | int | None = None,
) -> BackfillResult:
    """Run a backfill for one user and provider.

    Args:
        user_id: Internal user ID
        provider: Provider to backfill from
        days: Rolling window size (1..365)
        year: Closed year or "ytd"

    Returns:
        BackfillResult with outcome accepted, duplicate or failed

    Raises:
        BackfillWindowError: Before any network call when the window is invalid
    """
    provider = Provider(provider)

    ytd_resume_from = None
    if year is not None and str(year).strip().lower() == YEAR_TO_DATE:
        with get_session() as session:
            ytd_resume_from = backfill_history.ytd_resume_point(session, user_id, provider)

    window = resolve_window(days=days, year=year, ytd_resume_from=ytd_resume_from)

    if provider == Provider.GARMIN:
        result = request_garmin_backfill(user_id, window)
    else:
        result = import_strava_activities(user_id, window)

    _record_history(user_id, window, result)
    return result
