"""BackfillRequest bookkeeping.

History rows record one backfill per (user, provider, period) and are what
callers consult to avoid resubmitting a period. For Garmin, whose backfill
completes asynchronously, webhook deliveries are attributed to the
in-progress request covering them and a periodic sweep closes requests
once deliveries stop.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from ridesync.config.settings import settings
from ridesync.db.models import BackfillRequest
from ridesync.db.session import as_utc, get_session
from ridesync.integrations.providers import Provider

BackfillStatus = Literal["requested", "in_progress", "completed", "failed"]

YEAR_TO_DATE = "ytd"
OPEN_STATUSES = ("requested", "in_progress")


def find_request(session: Session, user_id: str, provider: Provider, period: str) -> BackfillRequest | None:
    return session.execute(
        select(BackfillRequest).where(
            BackfillRequest.user_id == user_id,
            BackfillRequest.provider == provider.value,
            BackfillRequest.year == period,
        )
    ).scalar_one_or_none()


def resubmission_block_reason(session: Session, user_id: str, provider: Provider, period: str) -> str | None:
    """Explain why a period must not be requested again, or None if allowed.

    Closed years may only be retried after a failure. Year-to-date is always
    re-runnable unless a run is still open.
    """
    existing = find_request(session, user_id, provider, period)
    if existing is None:
        return None
    if period == YEAR_TO_DATE:
        if existing.status in OPEN_STATUSES:
            return "A year-to-date backfill is already in progress. Please wait for it to complete."
        return None
    if existing.status != "failed":
        return f"Backfill for {period} is already {existing.status.replace('_', ' ')}."
    return None


def ytd_resume_point(session: Session, user_id: str, provider: Provider) -> datetime | None:
    """End of the last completed year-to-date window, if any."""
    existing = find_request(session, user_id, provider, YEAR_TO_DATE)
    if existing is None or existing.status != "completed":
        return None
    resume = as_utc(existing.backfilled_up_to)
    if resume is None or resume.year != datetime.now(timezone.utc).year:
        return None
    return resume


def record_request(
    session: Session,
    *,
    user_id: str,
    provider: Provider,
    period: str,
    status: BackfillStatus,
    period_start: datetime,
    period_end: datetime,
    rides_found: int | None = None,
    backfilled_up_to: datetime | None = None,
) -> BackfillRequest:
    """Create or update the history row for (user, provider, period)."""
    now = datetime.now(timezone.utc)
    row = find_request(session, user_id, provider, period)
    if row is None:
        row = BackfillRequest(user_id=user_id, provider=provider.value, year=period)
        session.add(row)
        row.created_at = now

    row.status = status
    row.period_start = period_start
    row.period_end = period_end
    row.updated_at = now
    row.requested_at = now
    if status == "in_progress":
        row.rides_found = 0
        row.last_activity_received_at = None
        row.completed_at = None
    if rides_found is not None:
        row.rides_found = rides_found
    if backfilled_up_to is not None:
        row.backfilled_up_to = backfilled_up_to
    if status == "completed":
        row.completed_at = now

    session.flush()
    logger.info(f"[BACKFILL] History updated: user_id={user_id}, provider={provider.value}, period={period}, status={status}")
    return row


def list_history(session: Session, user_id: str, provider: Provider | None = None) -> list[BackfillRequest]:
    stmt = select(BackfillRequest).where(BackfillRequest.user_id == user_id)
    if provider is not None:
        stmt = stmt.where(BackfillRequest.provider == provider.value)
    return list(session.execute(stmt.order_by(BackfillRequest.updated_at.desc())).scalars())


def record_delivery(session: Session, user_id: str, provider: Provider, activity_start: datetime) -> None:
    """Attribute a webhook-delivered activity to the open request covering it."""
    rows = session.execute(
        select(BackfillRequest).where(
            BackfillRequest.user_id == user_id,
            BackfillRequest.provider == provider.value,
            BackfillRequest.status == "in_progress",
        )
    ).scalars().all()

    now = datetime.now(timezone.utc)
    activity_start = as_utc(activity_start)
    for row in rows:
        start, end = as_utc(row.period_start), as_utc(row.period_end)
        if start is None or end is None or not (start <= activity_start <= end):
            continue
        row.rides_found = (row.rides_found or 0) + 1
        row.last_activity_received_at = now
        row.updated_at = now
        logger.debug(f"[BACKFILL] Delivery attributed to period={row.year}: user_id={user_id}, rides_found={row.rides_found}")


def sweep_backfill_requests(now: datetime | None = None) -> dict[str, int]:
    """Close asynchronous backfill requests whose deliveries have stopped.

    - completed: no delivery for ``backfill_idle_minutes`` after the last one,
      or none at all within ``backfill_stale_minutes``
    - failed: still open after ``backfill_stuck_hours``

    Returns:
        Counts of rows moved to each status
    """
    now = now or datetime.now(timezone.utc)
    idle = timedelta(minutes=settings.backfill_idle_minutes)
    stale = timedelta(minutes=settings.backfill_stale_minutes)
    stuck = timedelta(hours=settings.backfill_stuck_hours)
    stats = {"completed": 0, "failed": 0}

    with get_session() as session:
        rows = session.execute(select(BackfillRequest).where(BackfillRequest.status == "in_progress")).scalars().all()
        for row in rows:
            requested = as_utc(row.requested_at or row.created_at)
            last_delivery = as_utc(row.last_activity_received_at)

            if last_delivery is not None and now - last_delivery >= idle:
                new_status = "completed"
            elif last_delivery is None and now - requested >= stale:
                new_status = "completed"
            elif now - requested >= stuck:
                new_status = "failed"
            else:
                continue

            row.status = new_status
            row.updated_at = now
            if new_status == "completed":
                row.completed_at = now
                if row.year == YEAR_TO_DATE:
                    row.backfilled_up_to = as_utc(row.period_end)
            stats[new_status] += 1
            logger.info(
                f"[BACKFILL] Sweep marked {new_status}: user_id={row.user_id}, provider={row.provider}, "
                f"period={row.year}, rides_found={row.rides_found}"
            )

    if stats["completed"] or stats["failed"]:
        logger.info(f"[SCHEDULER] Backfill sweep: {stats}")
    return stats
