"""Idempotent ride writer.

Rides are keyed on (provider, external activity id). Upserting the same key
twice updates the existing row; a concurrent insert of the same key loses
the unique-constraint race inside a savepoint and falls back to an update.
"""

from __future__ import annotations

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import InstrumentedAttribute, Session

from ridesync.db.models import Ride
from ridesync.ingestion.normalize import RideFields
from ridesync.integrations.providers import Provider


def _external_id_column(provider: Provider) -> InstrumentedAttribute:
    if provider == Provider.STRAVA:
        return Ride.strava_activity_id
    return Ride.garmin_activity_id


def find_ride(session: Session, provider: Provider, external_activity_id: str) -> Ride | None:
    column = _external_id_column(provider)
    return session.execute(select(Ride).where(column == str(external_activity_id))).scalar_one_or_none()


def ride_exists(session: Session, provider: Provider, external_activity_id: str) -> bool:
    column = _external_id_column(provider)
    return session.execute(select(Ride.id).where(column == str(external_activity_id))).first() is not None


def _apply_fields(ride: Ride, fields: RideFields, provider: Provider, bike_id: str | None, update_bike: bool) -> None:
    ride.start_time = fields.start_time
    ride.duration_seconds = fields.duration_seconds
    ride.distance_miles = fields.distance_miles
    ride.elevation_gain_feet = fields.elevation_gain_feet
    ride.average_hr = fields.average_hr
    ride.ride_type = fields.ride_type
    ride.notes = fields.notes
    if provider == Provider.STRAVA:
        ride.strava_gear_id = fields.provider_gear_id
    if update_bike:
        ride.bike_id = bike_id


def upsert_ride(
    session: Session,
    *,
    user_id: str,
    provider: Provider,
    external_activity_id: str,
    fields: RideFields,
    bike_id: str | None = None,
    update_bike: bool = True,
) -> Ride:
    """Create or update the ride for (provider, external_activity_id).

    Args:
        session: Open session; the caller owns the transaction
        user_id: Owning user ID
        provider: Provider the activity came from
        external_activity_id: Provider activity ID
        fields: Normalized ride fields
        bike_id: Bike resolved for the activity
        update_bike: When False an existing ride keeps its current bike;
            used for providers without gear data so a user's manual
            assignment is not cleared

    Returns:
        The persisted Ride
    """
    external_activity_id = str(external_activity_id)
    column_name = _external_id_column(provider).key

    ride = find_ride(session, provider, external_activity_id)
    if ride is None:
        ride = Ride(user_id=user_id, **{column_name: external_activity_id})
        _apply_fields(ride, fields, provider, bike_id, update_bike=True)
        try:
            with session.begin_nested():
                session.add(ride)
        except IntegrityError:
            logger.info(
                f"[RIDE_WRITER] Concurrent insert detected, updating instead: provider={provider.value}, external_id={external_activity_id}"
            )
            ride = find_ride(session, provider, external_activity_id)
            if ride is None:
                raise
        else:
            logger.info(f"[RIDE_WRITER] Created ride: provider={provider.value}, external_id={external_activity_id}, user_id={user_id}")
            return ride

    if ride.user_id != user_id:
        logger.warning(
            f"[RIDE_WRITER] Activity already owned by another user, updating fields only: "
            f"provider={provider.value}, external_id={external_activity_id}, owner={ride.user_id}, incoming={user_id}"
        )
    _apply_fields(ride, fields, provider, bike_id, update_bike)
    session.flush()
    logger.info(f"[RIDE_WRITER] Updated ride: provider={provider.value}, external_id={external_activity_id}")
    return ride


def delete_ride_by_external_id(
    session: Session,
    provider: Provider,
    external_activity_id: str,
    user_id: str | None = None,
) -> int:
    """Delete the ride for (provider, external_activity_id).

    Deleting an id that was never stored is a no-op, so a delete that
    overtakes its create is harmless.

    Returns:
        Number of rows removed
    """
    column = _external_id_column(provider)
    stmt = delete(Ride).where(column == str(external_activity_id))
    if user_id is not None:
        stmt = stmt.where(Ride.user_id == user_id)
    result = session.execute(stmt)
    logger.info(f"[RIDE_WRITER] Deleted {result.rowcount} ride(s): provider={provider.value}, external_id={external_activity_id}")
    return result.rowcount
