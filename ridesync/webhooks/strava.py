"""Strava webhook endpoints.

Strava expects a 200 within two seconds, so handlers only parse the event,
schedule processing as a background task and answer. Processing runs after
the response has been sent.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, Response
from loguru import logger
from pydantic import ValidationError

from ridesync.config.settings import settings
from ridesync.ingestion.events import from_strava_event
from ridesync.ingestion.processor import process_activity_event, process_deauthorizations
from ridesync.integrations.providers import Provider
from ridesync.integrations.strava.schemas import StravaWebhookEvent
from ridesync.webhooks.common import acknowledged, invalid_payload_response, read_json_payload

router = APIRouter(prefix="/webhooks/strava", tags=["webhooks", "strava"])

EVENT_RECEIVED = "EVENT_RECEIVED"


@router.get("")
def webhook_verification(
    hub_mode: str | None = Query(default=None, alias="hub.mode"),
    hub_challenge: str | None = Query(default=None, alias="hub.challenge"),
    hub_verify_token: str | None = Query(default=None, alias="hub.verify_token"),
) -> dict[str, str]:
    """Handle Strava webhook subscription verification.

    Args:
        hub_mode: Must be "subscribe"
        hub_challenge: Challenge string to echo back
        hub_verify_token: Must match STRAVA_WEBHOOK_VERIFY_TOKEN

    Returns:
        JSON with hub.challenge if verification succeeds

    Raises:
        HTTPException: 500 if no verify token is configured, 403 on mismatch
    """
    if not settings.strava_webhook_verify_token:
        logger.error("[STRAVA_WEBHOOK] STRAVA_WEBHOOK_VERIFY_TOKEN is not configured, cannot verify subscription")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook verification not configured")

    if hub_mode != "subscribe" or hub_verify_token != settings.strava_webhook_verify_token or hub_challenge is None:
        logger.warning(f"[STRAVA_WEBHOOK] Verification rejected: mode={hub_mode}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed")

    logger.info("[STRAVA_WEBHOOK] Subscription verified")
    return {"hub.challenge": hub_challenge}


@router.post("")
async def webhook_event(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Receive a Strava activity or athlete event.

    Always answers 200 EVENT_RECEIVED. Activity events are processed in the
    background; athlete events revoking authorization remove the link.
    """
    payload = await read_json_payload(request, "[STRAVA_WEBHOOK]")
    if payload is None:
        return PlainTextResponse(EVENT_RECEIVED)

    try:
        event = StravaWebhookEvent.model_validate(payload)
    except ValidationError as e:
        logger.error(f"[STRAVA_WEBHOOK] Malformed event: {e.error_count()} validation error(s)")
        return PlainTextResponse(EVENT_RECEIVED)

    logger.info(
        f"[STRAVA_WEBHOOK] Received {event.object_type}.{event.aspect_type}: object_id={event.object_id}, owner_id={event.owner_id}"
    )

    if event.object_type == "athlete":
        if (event.updates or {}).get("authorized") == "false":
            background_tasks.add_task(process_deauthorizations, Provider.STRAVA, [str(event.owner_id)])
        return PlainTextResponse(EVENT_RECEIVED)

    activity_event = from_strava_event(event)
    if activity_event is None:
        logger.debug(f"[STRAVA_WEBHOOK] Ignoring unsupported event {event.object_type}.{event.aspect_type}")
    else:
        background_tasks.add_task(process_activity_event, activity_event)
    return PlainTextResponse(EVENT_RECEIVED)


@router.post("/deauthorization")
async def webhook_deauthorization(request: Request, background_tasks: BackgroundTasks) -> Response:
    """Handle an explicit deauthorization notice: {"athlete_id": <id>}."""
    payload = await read_json_payload(request, "[STRAVA_WEBHOOK]")
    if payload is None or payload.get("athlete_id") is None:
        return invalid_payload_response()

    athlete_id = str(payload["athlete_id"])
    logger.info(f"[STRAVA_WEBHOOK] Deauthorization received for athlete {athlete_id}")
    background_tasks.add_task(process_deauthorizations, Provider.STRAVA, [athlete_id])
    return acknowledged()
