from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """User row owned by the account service.

    Only the fields this service reads or writes are mapped:
    - id: User ID (string UUID format)
    - email: User email (optional)
    - active_data_source: Provider the user chose as primary ("strava" | "garmin"), or None
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid, index=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    active_data_source: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Bike(Base):
    """Bike owned by a user. Read-only here; used for single-bike gear fallback."""

    __tablename__ = "bikes"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Ride(Base):
    """Canonical ride record.

    Stores:
    - start_time, duration_seconds, distance_miles, elevation_gain_feet
    - average_hr (optional), ride_type, notes (optional)
    - bike_id: nullable bike reference
    - strava_activity_id / garmin_activity_id: at most one set, unique when present
    - strava_gear_id: provider gear id seen on the Strava activity, kept for later mapping

    Uniqueness on the external activity id columns is the idempotence key
    for every ingestion path.
    """

    __tablename__ = "rides"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid, index=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    distance_miles: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    elevation_gain_feet: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_hr: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ride_type: Mapped[str] = mapped_column(String, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    bike_id: Mapped[str | None] = mapped_column(String, ForeignKey("bikes.id", ondelete="SET NULL"), nullable=True)
    strava_activity_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    garmin_activity_id: Mapped[str | None] = mapped_column(String, nullable=True, unique=True)
    strava_gear_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "strava_activity_id IS NULL OR garmin_activity_id IS NULL",
            name="ck_rides_single_provider",
        ),
        Index("idx_rides_user_start", "user_id", "start_time"),
    )


class ProviderLink(Base):
    """Link between an internal user and a provider account.

    (provider, provider_user_id) is globally unique and a user holds at most
    one link per provider.
    """

    __tablename__ = "provider_links"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    provider_user_id: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("provider", "provider_user_id", name="uq_provider_link_external"),
        UniqueConstraint("user_id", "provider", name="uq_provider_link_user_provider"),
    )


class OAuthCredential(Base):
    """OAuth token pair for one (user, provider).

    Mutated in place on every refresh; no history is kept.
    """

    __tablename__ = "oauth_credentials"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_oauth_credential_user_provider"),)


class GearMapping(Base):
    """User-configured mapping from a provider gear id to a bike."""

    __tablename__ = "gear_mappings"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider_gear_id: Mapped[str] = mapped_column(String, nullable=False)
    bike_id: Mapped[str] = mapped_column(String, ForeignKey("bikes.id", ondelete="CASCADE"), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "provider_gear_id", name="uq_gear_mapping_user_gear"),)


class BackfillRequest(Base):
    """History of backfill requests per (user, provider, period).

    Stores:
    - year: "YYYY" for a closed year or "ytd" for year-to-date
    - status: requested | in_progress | completed | failed
    - rides_found: activities imported (Strava) or received via webhook (Garmin)
    - backfilled_up_to: end of the last year-to-date window, for incremental re-runs
    - last_activity_received_at: last Garmin delivery attributed to this request
    - requested_at: when the current run was submitted
    """

    __tablename__ = "backfill_requests"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String, nullable=False)
    year: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="requested")
    rides_found: Mapped[int | None] = mapped_column(Integer, nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    backfilled_up_to: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_received_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", "year", name="uq_backfill_request_user_provider_year"),
        Index("idx_backfill_requests_status", "provider", "status"),
    )
