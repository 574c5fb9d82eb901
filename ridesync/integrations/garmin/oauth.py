from __future__ import annotations

from datetime import datetime, timedelta, timezone

import requests
from loguru import logger

from ridesync.config.settings import settings
from ridesync.integrations.providers import TokenGrant, TokenRefreshError

DEFAULT_EXPIRES_IN_SECONDS = 3600


def refresh_access_token(refresh_token: str) -> TokenGrant:
    """Exchange a Garmin refresh token for a new access token.

    Garmin returns a relative ``expires_in``. When no new refresh token is
    returned the current one stays valid and is kept.

    Raises:
        TokenRefreshError: On transport failure, non-2xx response or an
            unparseable token body
    """
    logger.debug("[TOKEN] Refreshing Garmin access token")
    try:
        resp = requests.post(
            settings.garmin_token_url,
            data={
                "grant_type": "refresh_token",
                "client_id": settings.garmin_client_id,
                "client_secret": settings.garmin_client_secret,
                "refresh_token": refresh_token,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=10,
        )
        resp.raise_for_status()
    except requests.HTTPError as e:
        logger.error(f"[TOKEN] Garmin token refresh failed: {e.response.status_code} - {e.response.text}")
        raise TokenRefreshError(f"Garmin refresh rejected: {e.response.status_code}") from e
    except requests.RequestException as e:
        logger.error(f"[TOKEN] Garmin token refresh request error: {e}")
        raise TokenRefreshError("Garmin refresh request failed") from e

    try:
        token_data = resp.json()
        access_token = token_data.get("access_token")
        expires_in = int(token_data.get("expires_in") or DEFAULT_EXPIRES_IN_SECONDS)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    except (AttributeError, OverflowError, TypeError, ValueError) as e:
        logger.error(f"[TOKEN] Garmin token response could not be parsed: {type(e).__name__}: {e}")
        raise TokenRefreshError("Malformed Garmin token response") from e
    if not access_token:
        raise TokenRefreshError("Garmin token response missing access_token")

    return TokenGrant(
        access_token=access_token,
        refresh_token=token_data.get("refresh_token") or refresh_token,
        expires_at=expires_at,
    )
