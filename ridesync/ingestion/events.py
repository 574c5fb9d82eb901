"""Provider webhook payloads normalized to one event shape.

Two providers and three delivery modes feed the same processing path:
- Strava activity events (create/update/delete, detail fetched afterwards)
- Garmin ping notifications (user and summary id, detail fetched afterwards)
- Garmin push payloads (full detail, no user id)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ridesync.integrations.garmin.schemas import GarminActivityPing
from ridesync.integrations.providers import Provider
from ridesync.integrations.strava.schemas import StravaWebhookEvent


class EventKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class NormalizedActivityEvent:
    """One activity change from any provider.

    ``external_user_id`` is None when the payload cannot be attributed to a
    user (Garmin push mode). ``detail`` carries the activity payload when
    the provider delivered it inline; otherwise it is fetched during
    processing.
    """

    kind: EventKind
    provider: Provider
    external_user_id: str | None
    external_activity_id: str
    detail: dict[str, Any] | None = None
    callback_url: str | None = field(default=None, compare=False)


def from_strava_event(event: StravaWebhookEvent) -> NormalizedActivityEvent | None:
    """Return the activity event, or None for non-activity objects."""
    if event.object_type != "activity":
        return None
    try:
        kind = EventKind(event.aspect_type)
    except ValueError:
        return None
    return NormalizedActivityEvent(
        kind=kind,
        provider=Provider.STRAVA,
        external_user_id=str(event.owner_id),
        external_activity_id=str(event.object_id),
    )


def from_garmin_ping(ping: GarminActivityPing) -> NormalizedActivityEvent:
    # Ping mode does not distinguish new from edited activities; both upsert
    return NormalizedActivityEvent(
        kind=EventKind.CREATE,
        provider=Provider.GARMIN,
        external_user_id=ping.user_id,
        external_activity_id=ping.summary_id,
        callback_url=ping.callback_url,
    )


def from_garmin_push(item: dict[str, Any]) -> NormalizedActivityEvent | None:
    """Wrap a push-mode activity. Push payloads are never attributed to a user."""
    summary_id = item.get("summaryId")
    if summary_id is None:
        return None
    return NormalizedActivityEvent(
        kind=EventKind.CREATE,
        provider=Provider.GARMIN,
        external_user_id=None,
        external_activity_id=str(summary_id),
        detail=item,
    )
