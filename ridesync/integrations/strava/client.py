from __future__ import annotations

import datetime as dt

import httpx

from ridesync.config.settings import settings
from ridesync.integrations.strava.schemas import StravaActivity, StravaGear


class StravaClient:
    """Thin Strava API client.

    - One HTTP call per method
    - Pagination is controlled by the caller
    - Errors surface as httpx exceptions
    """

    def __init__(self, access_token: str):
        self._access_token = access_token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    def fetch_activity(self, activity_id: int | str) -> StravaActivity:
        """Fetch full detail for a single activity."""
        resp = httpx.get(
            f"{settings.strava_api_base_url}/activities/{activity_id}",
            headers=self._headers(),
            timeout=15,
        )
        resp.raise_for_status()
        return StravaActivity(**resp.json())

    def list_activities(
        self,
        *,
        after: dt.datetime,
        before: dt.datetime,
        page: int,
        per_page: int,
    ) -> list[StravaActivity]:
        """Fetch ONE page of the athlete's activities inside [after, before]."""
        resp = httpx.get(
            f"{settings.strava_api_base_url}/athlete/activities",
            headers=self._headers(),
            params={
                "after": int(after.timestamp()),
                "before": int(before.timestamp()),
                "page": page,
                "per_page": per_page,
            },
            timeout=15,
        )
        resp.raise_for_status()

        payload = resp.json()
        if not payload:
            return []
        return [StravaActivity(**raw) for raw in payload]

    def fetch_gear(self, gear_id: str) -> StravaGear:
        resp = httpx.get(
            f"{settings.strava_api_base_url}/gear/{gear_id}",
            headers=self._headers(),
            timeout=15,
        )
        resp.raise_for_status()
        return StravaGear(**resp.json())
