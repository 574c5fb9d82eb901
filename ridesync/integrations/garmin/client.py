"""Garmin Wellness API client.

Thin client for the two calls ingestion needs:
- Backfill trigger (asynchronous; Garmin redelivers through webhooks)
- Activity detail fetch for ping-mode notifications
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx
from loguru import logger

from ridesync.config.settings import settings


class GarminClient:
    """Thin Garmin API client.

    The backfill trigger returns the raw response: 202, 409 and 400 are all
    meaningful outcomes that the orchestrator classifies.
    """

    def __init__(self, access_token: str):
        self._access_token = access_token

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
        }

    def request_activity_backfill(self, start: datetime, end: datetime) -> httpx.Response:
        """Ask Garmin to redeliver activity summaries for [start, end).

        Raises:
            httpx.HTTPError: On transport failure only
        """
        params = {
            "summaryStartTimeInSeconds": int(start.timestamp()),
            "summaryEndTimeInSeconds": int(end.timestamp()),
        }
        logger.debug(f"[BACKFILL] Garmin backfill request: {params}")
        return httpx.get(
            f"{settings.garmin_api_base_url}/rest/backfill/activities",
            headers=self._headers(),
            params=params,
            timeout=30,
        )

    def fetch_activity_detail(self, summary_id: str, callback_url: str | None = None) -> dict[str, Any]:
        """Fetch one activity summary by id.

        Uses the notification's callback URL when present; detail responses
        may be a list of summaries, in which case only the one carrying the
        requested summaryId is returned.

        Raises:
            httpx.HTTPStatusError: On non-2xx response
            LookupError: When the response holds no matching summary
        """
        url = callback_url or f"{settings.garmin_api_base_url}/rest/activities/{summary_id}"
        resp = httpx.get(url, headers=self._headers(), timeout=15)
        resp.raise_for_status()

        payload = resp.json()
        if isinstance(payload, dict):
            if payload.get("summaryId") is None:
                return payload
            payload = [payload]
        for item in payload or []:
            if str(item.get("summaryId")) == str(summary_id):
                return item
        raise LookupError(f"Garmin returned no activity for summaryId={summary_id}")
