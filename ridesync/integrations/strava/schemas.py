from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class StravaActivity(BaseModel):
    """Activity as returned by Strava's list and detail endpoints."""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str | None = None
    type: str | None = None
    sport_type: str | None = None
    start_date: datetime
    moving_time: int = 0
    elapsed_time: int = 0
    distance: float = 0.0
    total_elevation_gain: float = 0.0
    average_heartrate: float | None = None
    gear_id: str | None = None

    @property
    def effective_sport_type(self) -> str:
        # Older payloads only carry the legacy "type" field
        return self.sport_type or self.type or ""


class StravaGear(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str | None = None
    brand_name: str | None = None
    model_name: str | None = None


class StravaWebhookEvent(BaseModel):
    """Strava push subscription event.

    ``object_type`` is "activity" or "athlete"; ``aspect_type`` is
    "create", "update" or "delete". ``owner_id`` is the athlete id.
    """

    model_config = ConfigDict(extra="ignore")

    object_type: str
    object_id: int
    aspect_type: str
    owner_id: int
    subscription_id: int | None = None
    event_time: int | None = None
    updates: dict[str, Any] | None = None
