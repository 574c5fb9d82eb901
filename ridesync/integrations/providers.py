from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import NamedTuple


class Provider(str, Enum):
    """Supported activity providers.

    Strava is pull-style (webhooks carry change notifications, backfill is a
    synchronous list). Garmin is push-style (webhooks deliver or announce
    activities, backfill is asynchronous redelivery).
    """

    STRAVA = "strava"
    GARMIN = "garmin"


class TokenGrant(NamedTuple):
    """Result of a successful refresh-token exchange."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime


class TokenRefreshError(Exception):
    """Raised when a provider refuses or fails a refresh-token exchange."""
