"""Garmin webhook endpoints.

Rules: always ACK, no logic inline. Each handler parses the notification,
schedules processing as a background task and returns 200.

Activity notifications should be configured in ping mode. Push mode
payloads carry no user id, so they are acknowledged and dropped.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from ridesync.ingestion.events import from_garmin_ping, from_garmin_push
from ridesync.ingestion.processor import process_activity_events, process_deauthorizations, process_permission_changes
from ridesync.integrations.garmin.schemas import GarminActivityPing
from ridesync.integrations.providers import Provider
from ridesync.webhooks.common import acknowledged, invalid_payload_response, read_json_payload

router = APIRouter(prefix="/webhooks/garmin", tags=["webhooks", "garmin"])


def _items(payload: dict[str, Any], *keys: str) -> list[dict[str, Any]]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


@router.post("/deregistration")
async def garmin_deregistration(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Handle users disconnecting from Garmin: {"deregistrations": [{"userId": ...}]}."""
    payload = await read_json_payload(request, "[GARMIN_WEBHOOK]")
    if payload is None:
        return invalid_payload_response()

    user_ids = [str(item["userId"]) for item in _items(payload, "deregistrations") if item.get("userId") is not None]
    logger.info(f"[GARMIN_WEBHOOK] Deregistration for {len(user_ids)} user(s)")
    if user_ids:
        background_tasks.add_task(process_deauthorizations, Provider.GARMIN, user_ids)
    return acknowledged(received=len(user_ids))


@router.post("/permissions")
async def garmin_permissions(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Handle permission changes: {"userPermissionsChange": [{"userId": ..., "permissions": [...]}]}."""
    payload = await read_json_payload(request, "[GARMIN_WEBHOOK]")
    if payload is None:
        return invalid_payload_response()

    changes = _items(payload, "userPermissionsChange")
    logger.info(f"[GARMIN_WEBHOOK] Permission change for {len(changes)} user(s)")
    if changes:
        background_tasks.add_task(process_permission_changes, changes)
    return acknowledged(received=len(changes))


@router.post("/activities")
async def garmin_activities_push(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Handle push-mode activity payloads: {"activities": [...]}.

    Push payloads cannot be attributed to a user; they are acknowledged and
    dropped during processing.
    """
    payload = await read_json_payload(request, "[GARMIN_WEBHOOK]")
    if payload is None:
        return invalid_payload_response()

    events = [event for event in (from_garmin_push(item) for item in _items(payload, "activities")) if event is not None]
    logger.info(f"[GARMIN_WEBHOOK] Push-mode delivery with {len(events)} activity(ies)")
    if events:
        background_tasks.add_task(process_activity_events, events)
    return acknowledged(received=len(events))


@router.post("/activities-ping")
async def garmin_activities_ping(request: Request, background_tasks: BackgroundTasks) -> JSONResponse:
    """Handle ping-mode notifications: {"activityDetails": [{"userId", "summaryId", ...}]}.

    Each ping is resolved to a user and its detail fetched in the background.
    """
    payload = await read_json_payload(request, "[GARMIN_WEBHOOK]")
    if payload is None:
        return invalid_payload_response()

    events = []
    for item in _items(payload, "activityDetails", "activities"):
        try:
            events.append(from_garmin_ping(GarminActivityPing.model_validate(item)))
        except ValidationError as e:
            logger.error(f"[GARMIN_WEBHOOK] Skipping malformed ping: {e.error_count()} validation error(s)")

    logger.info(f"[GARMIN_WEBHOOK] Ping with {len(events)} activity notification(s)")
    if events:
        background_tasks.add_task(process_activity_events, events)
    return acknowledged(received=len(events))
