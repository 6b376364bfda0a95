# calsync/schemas/schedule.py
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Weekday = Literal["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
WEEKDAYS: List[str] = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


class AvailabilityRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    days: List[Weekday]
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")


class ScheduleOverride(BaseModel):
    """A date-specific exception; startTime == endTime means unavailable all day."""

    model_config = ConfigDict(populate_by_name=True)

    date: str
    start_time: str = Field(alias="startTime")
    end_time: str = Field(alias="endTime")


class ExternalSchedule(BaseModel):
    """A schedule as the provider returns it from /schedules."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[int] = None
    name: str
    time_zone: str = Field(alias="timeZone")
    availability: List[AvailabilityRule] = Field(default_factory=list)
    is_default: bool = Field(default=False, alias="isDefault")
    overrides: Optional[List[ScheduleOverride]] = None


class ScheduleUpdate(BaseModel):
    """Local edit of a schedule (PATCH /schedules/{id})."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    time_zone: Optional[str] = Field(default=None, alias="timeZone")
    availability: Optional[List[AvailabilityRule]] = None
    overrides: Optional[List[ScheduleOverride]] = None
    is_default: Optional[bool] = Field(default=None, alias="isDefault")

    default_duration: Optional[int] = None
    minimum_duration: Optional[int] = None
    maximum_duration: Optional[int] = None
    allow_custom_duration: Optional[bool] = None
    buffer_before: Optional[int] = Field(default=None, ge=0)
    buffer_after: Optional[int] = Field(default=None, ge=0)
    minimum_notice: Optional[int] = Field(default=None, ge=0)
    slot_interval: Optional[int] = Field(default=None, gt=0)
