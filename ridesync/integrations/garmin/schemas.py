from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class GarminActivity(BaseModel):
    """Garmin activity summary (push payload item or detail response)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    summary_id: str = Field(alias="summaryId")
    user_id: str | None = Field(default=None, alias="userId")
    activity_name: str | None = Field(default=None, alias="activityName")
    activity_type: str | None = Field(default=None, alias="activityType")
    start_time_in_seconds: int = Field(alias="startTimeInSeconds")
    start_time_offset_in_seconds: int | None = Field(default=None, alias="startTimeOffsetInSeconds")
    duration_in_seconds: int = Field(default=0, alias="durationInSeconds")
    distance_in_meters: float | None = Field(default=None, alias="distanceInMeters")
    total_elevation_gain_in_meters: float | None = Field(default=None, alias="totalElevationGainInMeters")
    elevation_gain_in_meters: float | None = Field(default=None, alias="elevationGainInMeters")
    average_heart_rate: float | None = Field(default=None, alias="averageHeartRateInBeatsPerMinute")


class GarminActivityPing(BaseModel):
    """One entry of a ping-mode notification.

    Ping entries identify the user and the activity but carry no activity
    data; ``callback_url`` points at the detail when Garmin provides one.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)

    user_id: str = Field(alias="userId")
    summary_id: str = Field(alias="summaryId")
    user_access_token: str | None = Field(default=None, alias="userAccessToken")
    upload_timestamp_in_seconds: int | None = Field(default=None, alias="uploadTimestampInSeconds")
    callback_url: str | None = Field(default=None, alias="callbackURL")
