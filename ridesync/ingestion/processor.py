"""Webhook event processing.

Every function here runs after the webhook response has been sent. They
catch and log all errors: the provider has already been acknowledged and
there is nobody left to report a failure to.
"""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from ridesync.db.session import get_session
from ridesync.ingestion import backfill_history
from ridesync.ingestion.events import EventKind, NormalizedActivityEvent
from ridesync.ingestion.gear import GearResolver
from ridesync.ingestion.links import accepts_provider, remove_provider_link, resolve_user_id
from ridesync.ingestion.normalize import is_cycling, normalize_garmin_activity, normalize_strava_activity
from ridesync.ingestion.rides import delete_ride_by_external_id, upsert_ride
from ridesync.integrations.garmin.client import GarminClient
from ridesync.integrations.garmin.schemas import GarminActivity
from ridesync.integrations.providers import Provider
from ridesync.integrations.strava.client import StravaClient
from ridesync.integrations.token_service import get_valid_token

ACTIVITY_EXPORT_PERMISSION = "ACTIVITY_EXPORT"

_LOG_TAGS = {Provider.STRAVA: "[STRAVA_WEBHOOK]", Provider.GARMIN: "[GARMIN_WEBHOOK]"}


def _resolve_user(event: NormalizedActivityEvent) -> str | None:
    tag = _LOG_TAGS[event.provider]
    with get_session() as session:
        user_id = resolve_user_id(session, event.provider, event.external_user_id)
        if user_id is None:
            logger.info(f"{tag} No linked user for {event.provider.value} user {event.external_user_id}, dropping event")
            return None
        if event.provider == Provider.STRAVA and not accepts_provider(session, user_id, event.provider):
            logger.info(f"{tag} User {user_id} prefers another data source, skipping activity {event.external_activity_id}")
            return None
    return user_id


def _process_strava_event(event: NormalizedActivityEvent, user_id: str) -> None:
    if event.kind == EventKind.DELETE:
        with get_session() as session:
            delete_ride_by_external_id(session, Provider.STRAVA, event.external_activity_id, user_id=user_id)
        return

    access_token = get_valid_token(user_id, Provider.STRAVA)
    if access_token is None:
        logger.warning(f"[STRAVA_WEBHOOK] No valid token for user_id={user_id}, cannot fetch activity {event.external_activity_id}")
        return

    activity = StravaClient(access_token).fetch_activity(event.external_activity_id)
    if not is_cycling(activity.effective_sport_type):
        logger.debug(f"[STRAVA_WEBHOOK] Skipping non-cycling activity {activity.id} ({activity.effective_sport_type})")
        return

    fields = normalize_strava_activity(activity)
    with get_session() as session:
        bike_id = GearResolver(session).resolve(user_id, activity.gear_id, allow_single_bike_fallback=True)
        upsert_ride(
            session,
            user_id=user_id,
            provider=Provider.STRAVA,
            external_activity_id=event.external_activity_id,
            fields=fields,
            bike_id=bike_id,
        )


def _process_garmin_event(event: NormalizedActivityEvent, user_id: str) -> None:
    detail = event.detail
    if detail is None:
        access_token = get_valid_token(user_id, Provider.GARMIN)
        if access_token is None:
            logger.warning(f"[GARMIN_WEBHOOK] No Garmin token for user_id={user_id}, cannot fetch summary {event.external_activity_id}")
            return
        detail = GarminClient(access_token).fetch_activity_detail(event.external_activity_id, event.callback_url)

    activity = GarminActivity.model_validate({**detail, "summaryId": event.external_activity_id})
    fields = normalize_garmin_activity(activity)
    with get_session() as session:
        upsert_ride(
            session,
            user_id=user_id,
            provider=Provider.GARMIN,
            external_activity_id=event.external_activity_id,
            fields=fields,
            update_bike=False,
        )
        backfill_history.record_delivery(session, user_id, Provider.GARMIN, fields.start_time)


def process_activity_event(event: NormalizedActivityEvent) -> None:
    """Apply one normalized activity event to the ride store.

    Unattributable events (no external user id) are logged and dropped.
    """
    tag = _LOG_TAGS[event.provider]
    if event.external_user_id is None:
        logger.warning(
            f"{tag} Activity {event.external_activity_id} has no user id and cannot be attributed, dropping. "
            "Configure the Garmin activity endpoint for ping mode."
        )
        return

    try:
        user_id = _resolve_user(event)
        if user_id is None:
            return
        if event.provider == Provider.STRAVA:
            _process_strava_event(event, user_id)
        else:
            _process_garmin_event(event, user_id)
    except httpx.HTTPStatusError as e:
        logger.error(
            f"{tag} Provider API error for activity {event.external_activity_id}: "
            f"{e.response.status_code} - {e.response.text[:200]}"
        )
    except (httpx.HTTPError, ValidationError, LookupError) as e:
        logger.error(f"{tag} Could not process activity {event.external_activity_id}: {type(e).__name__}: {e}")
    except Exception:
        logger.exception(f"{tag} Unexpected error processing activity {event.external_activity_id}")


def process_activity_events(events: list[NormalizedActivityEvent]) -> None:
    for event in events:
        process_activity_event(event)


def process_deauthorizations(provider: Provider, provider_user_ids: list[str]) -> None:
    """Remove links and credentials for each revoking provider user."""
    tag = _LOG_TAGS[provider]
    for provider_user_id in provider_user_ids:
        try:
            with get_session() as session:
                remove_provider_link(session, provider, provider_user_id)
        except Exception:
            logger.exception(f"{tag} Failed to remove link for {provider.value} user {provider_user_id}")


def process_permission_changes(changes: list[dict[str, Any]]) -> None:
    """Warn when a Garmin user no longer grants activity export. The link is kept."""
    for change in changes:
        provider_user_id = change.get("userId")
        permissions = change.get("permissions") or []
        if ACTIVITY_EXPORT_PERMISSION in permissions:
            logger.info(f"[GARMIN_WEBHOOK] Permissions updated for Garmin user {provider_user_id}: {permissions}")
            continue
        try:
            with get_session() as session:
                user_id = resolve_user_id(session, Provider.GARMIN, str(provider_user_id))
        except Exception:
            logger.exception(f"[GARMIN_WEBHOOK] Failed to resolve Garmin user {provider_user_id}")
            continue
        logger.warning(
            f"[GARMIN_WEBHOOK] Garmin user {provider_user_id} (user_id={user_id}) revoked {ACTIVITY_EXPORT_PERMISSION}; "
            "activities will stop arriving until it is granted again"
        )
