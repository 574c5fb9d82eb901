"""Activity normalization.

Pure mapping from provider activity payloads to canonical ride fields.
No I/O happens here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from ridesync.integrations.garmin.schemas import GarminActivity
from ridesync.integrations.strava.schemas import StravaActivity

METERS_TO_MILES = 0.000621371
METERS_TO_FEET = 3.28084

CYCLING_SPORT_TYPES = frozenset(
    {
        "Ride",
        "MountainBikeRide",
        "GravelRide",
        "VirtualRide",
        "EBikeRide",
        "EMountainBikeRide",
        "Handcycle",
    }
)


@dataclass(frozen=True)
class RideFields:
    """Mutable ride fields produced by normalization."""

    start_time: datetime
    duration_seconds: int
    distance_miles: float
    elevation_gain_feet: float
    average_hr: int | None
    ride_type: str
    notes: str | None
    provider_gear_id: str | None = None


def is_cycling(sport_type: str | None) -> bool:
    return sport_type in CYCLING_SPORT_TYPES


def round_heart_rate(value: float | None) -> int | None:
    """Round half up to the nearest beat."""
    if value is None:
        return None
    return int(math.floor(value + 0.5))


def parse_start_time(value: str | datetime | int | float, offset_seconds: int | None = None) -> datetime:
    """Parse a provider start time into an aware UTC instant.

    Accepts an ISO-8601 string or datetime, or Unix seconds. Unix seconds
    are already UTC; ``offset_seconds`` only describes the athlete's local
    clock and is used when a naive ISO value has to be interpreted as local.
    """
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        local_tz = timezone(timedelta(seconds=offset_seconds or 0))
        parsed = parsed.replace(tzinfo=local_tz)
    return parsed.astimezone(timezone.utc)


def normalize_strava_activity(activity: StravaActivity) -> RideFields:
    """Map a Strava activity to canonical ride fields.

    Callers filter with ``is_cycling`` first; the sport type passes through
    unchanged as the ride type.
    """
    return RideFields(
        start_time=parse_start_time(activity.start_date),
        duration_seconds=activity.moving_time,
        distance_miles=activity.distance * METERS_TO_MILES,
        elevation_gain_feet=activity.total_elevation_gain * METERS_TO_FEET,
        average_hr=round_heart_rate(activity.average_heartrate),
        ride_type=activity.effective_sport_type,
        notes=activity.name,
        provider_gear_id=activity.gear_id,
    )


def normalize_garmin_activity(activity: GarminActivity) -> RideFields:
    """Map a Garmin activity summary to canonical ride fields.

    Missing distance is stored as zero. Elevation prefers the total gain and
    falls back to the plain gain field.
    """
    elevation_m = activity.total_elevation_gain_in_meters
    if elevation_m is None:
        elevation_m = activity.elevation_gain_in_meters

    return RideFields(
        start_time=parse_start_time(activity.start_time_in_seconds, activity.start_time_offset_in_seconds),
        duration_seconds=activity.duration_in_seconds,
        distance_miles=(activity.distance_in_meters or 0.0) * METERS_TO_MILES,
        elevation_gain_feet=(elevation_m or 0.0) * METERS_TO_FEET,
        average_hr=round_heart_rate(activity.average_heart_rate),
        ride_type=activity.activity_type or "CYCLING",
        notes=activity.activity_name,
    )
