from __future__ import annotations

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ridesync.db.models import Bike, GearMapping


class GearResolver:
    """Maps provider gear ids to internal bike ids for one session."""

    def __init__(self, session: Session):
        self._session = session

    def lookup_mapping(self, user_id: str, provider_gear_id: str | None) -> str | None:
        """Return the mapped bike id, or None when the gear is unmapped."""
        if not provider_gear_id:
            return None
        return self._session.execute(
            select(GearMapping.bike_id).where(
                GearMapping.user_id == user_id,
                GearMapping.provider_gear_id == provider_gear_id,
            )
        ).scalar_one_or_none()

    def single_bike_id(self, user_id: str) -> str | None:
        """Return the user's only bike, or None for zero or several bikes."""
        count = self._session.execute(select(func.count()).select_from(Bike).where(Bike.user_id == user_id)).scalar_one()
        if count != 1:
            return None
        return self._session.execute(select(Bike.id).where(Bike.user_id == user_id)).scalar_one()

    def resolve(
        self,
        user_id: str,
        provider_gear_id: str | None,
        *,
        allow_single_bike_fallback: bool = False,
    ) -> str | None:
        """Resolve the bike for an activity.

        Args:
            user_id: Internal user ID
            provider_gear_id: Gear id reported by the provider, may be None
            allow_single_bike_fallback: Assign the user's only bike when no
                mapping exists

        Returns:
            Bike ID or None
        """
        bike_id = self.lookup_mapping(user_id, provider_gear_id)
        if bike_id is not None:
            return bike_id
        if not allow_single_bike_fallback:
            return None

        bike_id = self.single_bike_id(user_id)
        if bike_id is not None:
            logger.debug(f"[GEAR] Auto-assigned single bike: user_id={user_id}, gear_id={provider_gear_id}, bike_id={bike_id}")
        return bike_id
