from __future__ import annotations

from datetime import datetime, timezone

import requests
from loguru import logger

from ridesync.config.settings import settings
from ridesync.integrations.providers import TokenGrant, TokenRefreshError


def refresh_access_token(refresh_token: str) -> TokenGrant:
    """Exchange a Strava refresh token for a new access token.

    Strava returns an absolute ``expires_at`` epoch and may rotate the
    refresh token.

    Raises:
        TokenRefreshError: On transport failure, non-2xx response or an
            unparseable token body
    """
    logger.debug("[TOKEN] Refreshing Strava access token")
    try:
        resp = requests.post(
            settings.strava_token_url,
            data={
                "client_id": settings.strava_client_id,
                "client_secret": settings.strava_client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            timeout=10,
        )
        resp.raise_for_status()
    except requests.HTTPError as e:
        logger.error(f"[TOKEN] Strava token refresh failed: {e.response.status_code} - {e.response.text}")
        raise TokenRefreshError(f"Strava refresh rejected: {e.response.status_code}") from e
    except requests.RequestException as e:
        logger.error(f"[TOKEN] Strava token refresh request error: {e}")
        raise TokenRefreshError("Strava refresh request failed") from e

    try:
        token_data = resp.json()
        return TokenGrant(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token") or refresh_token,
            expires_at=datetime.fromtimestamp(int(token_data["expires_at"]), tz=timezone.utc),
        )
    except (AttributeError, KeyError, OSError, OverflowError, TypeError, ValueError) as e:
        logger.error(f"[TOKEN] Strava token response could not be parsed: {type(e).__name__}: {e}")
        raise TokenRefreshError("Malformed Strava token response") from e
