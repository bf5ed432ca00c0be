import datetime as dt
from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from checkwatch.models import ReadinessLevel, Role
from checkwatch.services.schedule import (
    TIME_PATTERN,
    WORK_DAYS_PATTERN,
    is_end_time_after_start,
    normalize_work_days,
)


def _check_time(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must use zero-padded HH:MM format.")
    return value


def _check_work_days(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.replace(" ", "")
    if not WORK_DAYS_PATTERN.match(value):
        raise ValueError("Work days must be a comma separated list of 0-6.")
    return normalize_work_days(value)


class TeamCreate(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    leader_id: int = Field(ge=1)
    supervisor_id: int | None = Field(default=None, ge=1)
    work_days: str = "1,2,3,4,5"
    check_in_start: str = "06:00"
    check_in_end: str = "10:00"

    _validate_times = field_validator("check_in_start", "check_in_end")(_check_time)
    _validate_work_days = field_validator("work_days")(_check_work_days)

    @model_validator(mode="after")
    def _validate_window(self) -> "TeamCreate":
        if not is_end_time_after_start(self.check_in_start, self.check_in_end):
            raise ValueError("check_in_end must be after check_in_start.")
        return self


class TeamUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=255)
    description: str | None = Field(default=None, max_length=1000)
    leader_id: int | None = Field(default=None, ge=1)
    supervisor_id: int | None = Field(default=None, ge=1)
    work_days: str | None = None
    check_in_start: str | None = None
    check_in_end: str | None = None
    is_active: bool | None = None

    _validate_times = field_validator("check_in_start", "check_in_end")(_check_time)
    _validate_work_days = field_validator("work_days")(_check_work_days)


class TeamRead(BaseModel):
    id: int
    company_id: int
    name: str
    description: str | None
    leader_id: int
    supervisor_id: int | None
    work_days: str
    check_in_start: str
    check_in_end: str
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ScheduleOverrideFields(BaseModel):
    work_days: str | None = None
    check_in_start: str | None = None
    check_in_end: str | None = None

    _validate_times = field_validator("check_in_start", "check_in_end")(_check_time)
    _validate_work_days = field_validator("work_days")(_check_work_days)

    @model_validator(mode="after")
    def _validate_override_window(self):  # type: ignore[no-untyped-def]
        fields_set = self.model_fields_set
        start_set = "check_in_start" in fields_set
        end_set = "check_in_end" in fields_set
        if start_set != end_set:
            raise ValueError("check_in_start and check_in_end must be set or cleared together.")
        if (self.check_in_start is None) != (self.check_in_end is None):
            raise ValueError("check_in_start and check_in_end must be set or cleared together.")
        if self.check_in_start is not None and not is_end_time_after_start(self.check_in_start, self.check_in_end):
            raise ValueError("check_in_end must be after check_in_start.")
        return self


class PersonCreate(ScheduleOverrideFields):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    role: Role = Role.WORKER
    team_id: int | None = Field(default=None, ge=1)


class PersonUpdate(ScheduleOverrideFields):
    first_name: str | None = Field(default=None, min_length=1, max_length=100)
    last_name: str | None = Field(default=None, min_length=1, max_length=100)
    email: str | None = Field(default=None, max_length=255)
    role: Role | None = None
    team_id: int | None = Field(default=None, ge=1)
    is_active: bool | None = None


class PersonRead(BaseModel):
    id: int
    company_id: int
    first_name: str
    last_name: str
    email: str | None
    role: Role
    is_active: bool
    team_id: int | None
    team_assigned_at: datetime | None
    work_days: str | None
    check_in_start: str | None
    check_in_end: str | None
    effective_team_id: int | None
    effective_transfer_date: date | None
    transfer_initiated_by: int | None
    transfer_status: str = "NONE"

    model_config = ConfigDict(from_attributes=True)


class HolidayCreate(BaseModel):
    name: str = Field(min_length=2, max_length=255)
    date: dt.date
    is_recurring: bool = False


class HolidayUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=255)
    date: dt.date | None = None
    is_recurring: bool | None = None


class HolidayRead(BaseModel):
    id: int
    company_id: int
    name: str
    date: dt.date
    is_recurring: bool

    model_config = ConfigDict(from_attributes=True)


class MissedCheckInRead(BaseModel):
    id: int
    person_id: int
    team_id: int
    missed_date: date
    schedule_window: str
    team_leader_id_at_miss: int | None
    team_leader_name_at_miss: str | None
    worker_role_at_miss: Role | None
    day_of_week: int | None
    week_of_month: int | None
    days_since_last_check_in: int | None
    days_since_last_miss: int | None
    check_in_streak_before: int | None
    recent_readiness_avg: float | None
    misses_in_last_30d: int | None
    misses_in_last_60d: int | None
    misses_in_last_90d: int | None
    baseline_completion_rate: float | None
    is_first_miss_in_30d: bool | None
    is_increasing_frequency: bool | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class MissedCheckInListResponse(BaseModel):
    items: list[MissedCheckInRead]
    total: int
    page: int
    limit: int


class CheckInSubmitRequest(BaseModel):
    hours_slept: float = Field(ge=0, le=15)
    sleep_quality: int = Field(ge=1, le=10)
    stress_level: int = Field(ge=1, le=10)
    physical_condition: int = Field(ge=1, le=10)
    pain_level: int | None = Field(default=None, ge=0, le=10)
    notes: str | None = Field(default=None, max_length=500)


class CheckInRead(BaseModel):
    id: int
    person_id: int
    check_in_date: date
    hours_slept: float
    sleep_quality: int
    stress_level: int
    physical_condition: int
    pain_level: int | None
    notes: str | None
    readiness_score: int
    readiness_level: ReadinessLevel
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class EffectiveScheduleRead(BaseModel):
    work_days: list[int]
    check_in_start: str
    check_in_end: str


class CheckInStatusRead(BaseModel):
    date: str
    is_work_day: bool
    is_holiday: bool
    holiday_name: str | None
    is_within_window: bool
    can_check_in: bool
    has_checked_in_today: bool
    schedule: EffectiveScheduleRead | None
    team_id: int | None
    team_name: str | None
    message: str


class ReadinessDistributionRead(BaseModel):
    green: int
    yellow: int
    red: int

    model_config = ConfigDict(from_attributes=True)


class AnalyticsSummaryRead(BaseModel):
    total_check_ins: int
    avg_readiness: int
    worker_count: int
    avg_compliance_rate: int
    readiness_distribution: ReadinessDistributionRead

    model_config = ConfigDict(from_attributes=True)


class DailyTrendRead(BaseModel):
    date: str
    check_ins: int
    expected_workers: int
    avg_readiness: int
    compliance_rate: int
    submit_time: str | None
    green: int
    yellow: int
    red: int

    model_config = ConfigDict(from_attributes=True)


class CheckInRecordRead(BaseModel):
    name: str
    date: str
    readiness_score: int
    readiness_level: ReadinessLevel
    submit_time: str

    model_config = ConfigDict(from_attributes=True)


class TeamAnalyticsRead(BaseModel):
    period: Literal["7d", "30d", "90d"]
    summary: AnalyticsSummaryRead
    trends: list[DailyTrendRead]
    records: list[CheckInRecordRead]

    model_config = ConfigDict(from_attributes=True)
