"""Provider link lookups and revocation handling."""

from __future__ import annotations

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from ridesync.db.models import OAuthCredential, ProviderLink, User
from ridesync.integrations.providers import Provider


def resolve_user_id(session: Session, provider: Provider, provider_user_id: str) -> str | None:
    """Map a provider user id to the internal user id, or None when unlinked."""
    return session.execute(
        select(ProviderLink.user_id).where(
            ProviderLink.provider == provider.value,
            ProviderLink.provider_user_id == str(provider_user_id),
        )
    ).scalar_one_or_none()


def get_provider_user_id(session: Session, user_id: str, provider: Provider) -> str | None:
    return session.execute(
        select(ProviderLink.provider_user_id).where(
            ProviderLink.user_id == user_id,
            ProviderLink.provider == provider.value,
        )
    ).scalar_one_or_none()


def accepts_provider(session: Session, user_id: str, provider: Provider) -> bool:
    """True unless the user chose a different provider as active data source."""
    active = session.execute(select(User.active_data_source).where(User.id == user_id)).scalar_one_or_none()
    return active is None or active == provider.value


def remove_provider_link(session: Session, provider: Provider, provider_user_id: str) -> str | None:
    """Remove the link and credential for a revoking provider account.

    Clears the user's active data source when it pointed at this provider.
    Unknown provider user ids modify nothing.

    Returns:
        Internal user ID whose link was removed, or None
    """
    user_id = resolve_user_id(session, provider, provider_user_id)
    if user_id is None:
        logger.info(f"[LINKS] Revocation for unknown {provider.value} user {provider_user_id}, nothing to remove")
        return None

    session.execute(delete(OAuthCredential).where(OAuthCredential.user_id == user_id, OAuthCredential.provider == provider.value))
    session.execute(delete(ProviderLink).where(ProviderLink.user_id == user_id, ProviderLink.provider == provider.value))

    user = session.get(User, user_id)
    if user is not None and user.active_data_source == provider.value:
        user.active_data_source = None
        logger.info(f"[LINKS] Cleared active data source for user_id={user_id}")

    logger.info(f"[LINKS] Removed {provider.value} link: user_id={user_id}, provider_user_id={provider_user_id}")
    return user_id
