"""Caller-facing backfill endpoints.

The fetch endpoint is the only synchronous surface of ingestion: it
validates the window, refuses periods that are already done or still
running, runs the backfill and reports the aggregate outcome. History and
status endpoints let clients diagnose rides that never arrived.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ridesync.api.dependencies.auth import RequestContext, get_request_context
from ridesync.db.models import BackfillRequest, Ride
from ridesync.db.session import get_db
from ridesync.ingestion import backfill_history
from ridesync.ingestion.backfill import BackfillResult, BackfillWindowError, request_backfill
from ridesync.ingestion.links import get_provider_user_id
from ridesync.integrations.providers import Provider
from ridesync.integrations.strava.client import StravaClient
from ridesync.integrations.token_service import get_valid_token

router = APIRouter(tags=["backfill"])

STATUS_WINDOW_DAYS = 30
STATUS_RIDE_LIMIT = 50


def _result_payload(result: BackfillResult) -> dict[str, Any]:
    if result.provider == Provider.GARMIN:
        return {
            "success": result.outcome == "accepted",
            "message": result.message,
            "chunksRequested": result.chunks_accepted,
            "warnings": result.warnings + result.errors,
        }
    return {
        "success": result.outcome == "accepted",
        "message": result.message,
        "totalActivities": result.total_activities,
        "cyclingActivities": result.cycling_activities,
        "imported": result.imported,
        "skipped": result.skipped,
        "unmappedGears": [{"gearId": g.gear_id, "rideCount": g.ride_count} for g in result.unmapped_gears],
        "errors": result.errors,
    }


def _ride_external_column(provider: Provider):
    return Ride.strava_activity_id if provider == Provider.STRAVA else Ride.garmin_activity_id


@router.get("/{provider}/backfill/fetch")
def fetch_backfill(
    provider: Provider,
    days: int | None = Query(default=None),
    year: str | None = Query(default=None),
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    """Run a backfill for the caller.

    Query params: ``days`` (1..365) or ``year`` (YYYY or "ytd").

    Returns:
        200 with the aggregate result, 409 when every sub-request was a
        duplicate or the period is already done or running, 400 on an
        invalid window, missing connection, or total failure
    """
    if year is not None:
        reason = backfill_history.resubmission_block_reason(db, ctx.user_id, provider, year.strip().lower())
        if reason is not None:
            logger.info(f"[BACKFILL] Blocked resubmission: user_id={ctx.user_id}, provider={provider.value}, year={year}")
            return JSONResponse(
                status_code=status.HTTP_409_CONFLICT,
                content={"error": "Backfill already requested", "message": reason},
            )
    # Release the request session before the long-running backfill opens its own
    db.close()

    try:
        result = request_backfill(ctx.user_id, provider, days=days, year=year)
    except BackfillWindowError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    if result.reconnect_required:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"success": False, "error": result.message})
    if result.outcome == "duplicate":
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"error": "Backfill already in progress", "message": result.message, "details": result.warnings},
        )
    if result.outcome == "failed":
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "error": result.message, "details": result.errors},
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content=_result_payload(result))


@router.get("/{provider}/backfill/status")
def backfill_status(
    provider: Provider,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Recent rides imported from the provider plus the provider's total ride count."""
    column = _ride_external_column(provider)
    since = datetime.now(timezone.utc) - timedelta(days=STATUS_WINDOW_DAYS)
    recent = db.execute(
        select(Ride)
        .where(Ride.user_id == ctx.user_id, column.is_not(None), Ride.start_time >= since)
        .order_by(Ride.start_time.desc())
        .limit(STATUS_RIDE_LIMIT)
    ).scalars()
    total = db.execute(select(func.count()).select_from(Ride).where(Ride.user_id == ctx.user_id, column.is_not(None))).scalar_one()

    return {
        "success": True,
        "recentRides": [
            {
                "id": ride.id,
                "externalId": getattr(ride, column.key),
                "startTime": ride.start_time.isoformat(),
                "rideType": ride.ride_type,
                "distanceMiles": ride.distance_miles,
                "notes": ride.notes,
                "bikeId": ride.bike_id,
                "createdAt": ride.created_at.isoformat(),
            }
            for ride in recent
        ],
        "totalRides": total,
    }


@router.get("/{provider}/backfill/provider-user-id")
def provider_user_id(
    provider: Provider,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    external_id = get_provider_user_id(db, ctx.user_id, provider)
    if external_id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{provider.value} account not linked")
    return {"success": True, "provider": provider.value, "providerUserId": external_id}


def _history_item(row: BackfillRequest) -> dict[str, Any]:
    def iso(value: datetime | None) -> str | None:
        return value.isoformat() if value is not None else None

    return {
        "id": row.id,
        "provider": row.provider,
        "year": row.year,
        "status": row.status,
        "ridesFound": row.rides_found,
        "backfilledUpTo": iso(row.backfilled_up_to),
        "createdAt": iso(row.created_at),
        "updatedAt": iso(row.updated_at),
        "completedAt": iso(row.completed_at),
    }


@router.get("/backfill/history")
def backfill_history_list(
    provider: Provider | None = Query(default=None),
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Prior backfill requests for the caller, newest first."""
    rows = backfill_history.list_history(db, ctx.user_id, provider)
    return {"success": True, "requests": [_history_item(row) for row in rows]}


@router.get("/strava/gear/{gear_id}")
def strava_gear(gear_id: str, ctx: RequestContext = Depends(get_request_context)) -> dict[str, Any]:
    """Look up Strava gear details so the user can map it to a bike."""
    access_token = get_valid_token(ctx.user_id, Provider.STRAVA)
    if access_token is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Strava not connected or token expired")

    try:
        gear = StravaClient(access_token).fetch_gear(gear_id)
    except httpx.HTTPStatusError as e:
        if e.response.status_code == status.HTTP_404_NOT_FOUND:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Gear not found") from e
        logger.error(f"[STRAVA] Gear lookup failed: gear_id={gear_id}, status={e.response.status_code}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Strava gear lookup failed") from e
    except httpx.HTTPError as e:
        logger.error(f"[STRAVA] Gear lookup error: gear_id={gear_id}, error={e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Strava gear lookup failed") from e

    return {"id": gear.id, "name": gear.name, "brand": gear.brand_name, "model": gear.model_name}
