"""Token lifecycle management for provider OAuth credentials.

``get_valid_token`` is the only entry point callers use before an outbound
provider request. It never raises for provider-side problems: a missing
link or a failed refresh both come back as ``None`` ("unavailable"), and
callers short-circuit to a reconnect-required outcome.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from loguru import logger
from sqlalchemy import select

from ridesync.config.settings import settings
from ridesync.db.models import OAuthCredential
from ridesync.db.session import as_utc, get_session
from ridesync.integrations.garmin import oauth as garmin_oauth
from ridesync.integrations.providers import Provider, TokenGrant, TokenRefreshError
from ridesync.integrations.strava import oauth as strava_oauth


class CredentialSnapshot(NamedTuple):
    access_token: str
    refresh_token: str | None
    expires_at: datetime


def _refresher(provider: Provider) -> Callable[[str], TokenGrant]:
    if provider == Provider.STRAVA:
        return strava_oauth.refresh_access_token
    return garmin_oauth.refresh_access_token


# One lock per (user, provider) so concurrent callers share a single refresh
_refresh_locks: dict[tuple[str, str], threading.Lock] = {}
_refresh_locks_guard = threading.Lock()


def _lock_for(user_id: str, provider: Provider) -> threading.Lock:
    with _refresh_locks_guard:
        return _refresh_locks.setdefault((user_id, provider.value), threading.Lock())


def _load_credential(user_id: str, provider: Provider) -> CredentialSnapshot | None:
    with get_session() as session:
        row = session.execute(
            select(OAuthCredential).where(
                OAuthCredential.user_id == user_id,
                OAuthCredential.provider == provider.value,
            )
        ).scalar_one_or_none()
        if row is None:
            return None
        return CredentialSnapshot(row.access_token, row.refresh_token, as_utc(row.expires_at))


def _is_fresh(credential: CredentialSnapshot) -> bool:
    buffer = timedelta(seconds=settings.token_refresh_buffer_seconds)
    return credential.expires_at > datetime.now(timezone.utc) + buffer


def _store_grant(user_id: str, provider: Provider, grant: TokenGrant) -> None:
    with get_session() as session:
        row = session.execute(
            select(OAuthCredential).where(
                OAuthCredential.user_id == user_id,
                OAuthCredential.provider == provider.value,
            )
        ).scalar_one_or_none()
        if row is None:
            # Link was revoked while the refresh was in flight; do not resurrect it
            logger.info(f"[TOKEN] Credential removed during refresh: user_id={user_id}, provider={provider.value}")
            return
        row.access_token = grant.access_token
        row.refresh_token = grant.refresh_token
        row.expires_at = grant.expires_at


def get_valid_token(user_id: str, provider: Provider | str) -> str | None:
    """Return a currently valid access token, refreshing it if needed.

    Args:
        user_id: Internal user ID
        provider: Provider the token is for

    Returns:
        Access token string, or None when the user has no credential for the
        provider or the refresh exchange failed.
    """
    provider = Provider(provider)
    credential = _load_credential(user_id, provider)
    if credential is None:
        logger.info(f"[TOKEN] No credential stored: user_id={user_id}, provider={provider.value}")
        return None
    if _is_fresh(credential):
        return credential.access_token

    with _lock_for(user_id, provider):
        # Another caller may have refreshed while we waited for the lock
        credential = _load_credential(user_id, provider)
        if credential is None:
            return None
        if _is_fresh(credential):
            return credential.access_token
        if not credential.refresh_token:
            logger.warning(f"[TOKEN] Token expired and no refresh token: user_id={user_id}, provider={provider.value}")
            return None

        try:
            grant = _refresher(provider)(credential.refresh_token)
        except TokenRefreshError as e:
            logger.warning(f"[TOKEN] Refresh failed, user must reconnect: user_id={user_id}, provider={provider.value}, error={e}")
            return None

        _store_grant(user_id, provider, grant)
        logger.info(f"[TOKEN] Refreshed access token: user_id={user_id}, provider={provider.value}, expires_at={grant.expires_at.isoformat()}")
        return grant.access_token
