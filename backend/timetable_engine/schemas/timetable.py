from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from timetable_engine.schemas.settings import (
    DayOfWeek,
    TIME_PATTERN,
    normalize_day,
    parse_time_to_minutes,
)

MIN_SLOT_MINUTES = 30
MAX_SLOT_MINUTES = 180
ROOM_NUMBER_MAX_LENGTH = 20


def normalize_room_number(value: str) -> str:
    cleaned = (value or "").strip().upper()
    if not cleaned:
        raise ValueError("Room number cannot be empty or whitespace")
    if len(cleaned) > ROOM_NUMBER_MAX_LENGTH:
        raise ValueError(f"Room number cannot exceed {ROOM_NUMBER_MAX_LENGTH} characters")
    return cleaned


def _validate_time(value: str) -> str:
    value = value.strip()
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    return value


def _validate_bounds(start_time: str, end_time: str) -> None:
    start = parse_time_to_minutes(start_time)
    end = parse_time_to_minutes(end_time)
    if end <= start:
        raise ValueError(f"Start time {start_time} must be before end time {end_time}")
    duration = end - start
    if duration < MIN_SLOT_MINUTES:
        raise ValueError(f"Period duration must be at least {MIN_SLOT_MINUTES} minutes")
    if duration > MAX_SLOT_MINUTES:
        raise ValueError(
            f"Period duration of {duration} minutes exceeds maximum allowed {MAX_SLOT_MINUTES} minutes"
        )


class TimeSlot(BaseModel):
    """One cell of the weekly grid.

    Periods are discrete and never overlap inside a day, so two slots overlap
    exactly when they share ``day_of_week`` and ``period_number``.
    """

    model_config = ConfigDict(frozen=True)

    day_of_week: DayOfWeek
    period_number: int = Field(ge=1)
    start_time: str
    end_time: str

    @field_validator("day_of_week", mode="before")
    @classmethod
    def validate_day(cls, value: DayOfWeek | str) -> DayOfWeek:
        return normalize_day(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        return _validate_time(value)

    @model_validator(mode="after")
    def validate_order(self) -> "TimeSlot":
        _validate_bounds(self.start_time, self.end_time)
        return self

    @property
    def key(self) -> tuple[DayOfWeek, int]:
        return (self.day_of_week, self.period_number)

    @property
    def duration_minutes(self) -> int:
        return parse_time_to_minutes(self.end_time) - parse_time_to_minutes(self.start_time)

    def overlaps(self, other: "TimeSlot") -> bool:
        return self.key == other.key

    def __str__(self) -> str:
        return f"{self.day_of_week.value} period {self.period_number} ({self.start_time}-{self.end_time})"


class TimetableEntryPayload(BaseModel):
    """A scheduled entry as the engine sees it, detached from any session."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=36)
    section_id: str = Field(min_length=1, max_length=36)
    subject_id: str = Field(min_length=1, max_length=36)
    teacher_id: str = Field(min_length=1, max_length=36)
    room_number: str
    time_slot: TimeSlot

    @field_validator("room_number")
    @classmethod
    def validate_room_number(cls, value: str) -> str:
        return normalize_room_number(value)

    @property
    def slot_key(self) -> tuple[DayOfWeek, int]:
        return self.time_slot.key


class CreateEntryCommand(BaseModel):
    section_id: str = Field(min_length=1, max_length=36)
    subject_id: str = Field(min_length=1, max_length=36)
    teacher_id: str = Field(min_length=1, max_length=36)
    day_of_week: DayOfWeek
    period_number: int = Field(ge=1)
    start_time: str
    end_time: str
    room_number: str

    @field_validator("day_of_week", mode="before")
    @classmethod
    def validate_day(cls, value: DayOfWeek | str) -> DayOfWeek:
        return normalize_day(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        return _validate_time(value)

    @field_validator("room_number")
    @classmethod
    def validate_room_number(cls, value: str) -> str:
        return normalize_room_number(value)

    @model_validator(mode="after")
    def validate_order(self) -> "CreateEntryCommand":
        _validate_bounds(self.start_time, self.end_time)
        return self

    def time_slot(self) -> TimeSlot:
        return TimeSlot(
            day_of_week=self.day_of_week,
            period_number=self.period_number,
            start_time=self.start_time,
            end_time=self.end_time,
        )


class UpdateEntryCommand(BaseModel):
    entry_id: str = Field(min_length=1, max_length=36)
    subject_id: str = Field(min_length=1, max_length=36)
    teacher_id: str = Field(min_length=1, max_length=36)
    start_time: str
    end_time: str
    room_number: str
    day_of_week: DayOfWeek | None = None
    period_number: int | None = Field(default=None, ge=1)

    @field_validator("day_of_week", mode="before")
    @classmethod
    def validate_day(cls, value: DayOfWeek | str | None) -> DayOfWeek | None:
        if value is None:
            return None
        return normalize_day(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, value: str) -> str:
        return _validate_time(value)

    @field_validator("room_number")
    @classmethod
    def validate_room_number(cls, value: str) -> str:
        return normalize_room_number(value)

    @model_validator(mode="after")
    def validate_order(self) -> "UpdateEntryCommand":
        _validate_bounds(self.start_time, self.end_time)
        return self


class CheckSlotAvailabilityQuery(BaseModel):
    section_id: str = Field(min_length=1, max_length=36)
    teacher_id: str = Field(min_length=1, max_length=36)
    room_number: str | None = None
    day_of_week: DayOfWeek
    period_number: int = Field(ge=1)
    exclude_entry_id: str | None = Field(default=None, min_length=1, max_length=36)

    @field_validator("day_of_week", mode="before")
    @classmethod
    def validate_day(cls, value: DayOfWeek | str) -> DayOfWeek:
        day = normalize_day(value)
        if day == DayOfWeek.sunday:
            raise ValueError("Cannot schedule classes on Sunday")
        return day

    @field_validator("room_number")
    @classmethod
    def validate_room_number(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return normalize_room_number(value)


class ScheduledPeriod(BaseModel):
    entry_id: str
    section_id: str
    subject_id: str
    teacher_id: str
    room_number: str
    day_of_week: DayOfWeek
    period_number: int
    start_time: str
    end_time: str
    duration_minutes: int

    @classmethod
    def from_entry(cls, entry: TimetableEntryPayload) -> "ScheduledPeriod":
        return cls(
            entry_id=entry.id,
            section_id=entry.section_id,
            subject_id=entry.subject_id,
            teacher_id=entry.teacher_id,
            room_number=entry.room_number,
            day_of_week=entry.time_slot.day_of_week,
            period_number=entry.time_slot.period_number,
            start_time=entry.time_slot.start_time,
            end_time=entry.time_slot.end_time,
            duration_minutes=entry.time_slot.duration_minutes,
        )


class DaySchedule(BaseModel):
    day_of_week: DayOfWeek
    periods: list[ScheduledPeriod] = Field(default_factory=list)


class SectionTimetable(BaseModel):
    section_id: str
    section_name: str | None = None
    class_name: str | None = None
    home_room: str | None = None
    total_periods: int = 0
    days: list[DaySchedule] = Field(default_factory=list)


class TeacherScheduleStatistics(BaseModel):
    total_periods_per_week: int = 0
    periods_per_day: dict[str, int] = Field(default_factory=dict)
    total_sections: int = 0
    total_subjects: int = 0
    busiest_day: DayOfWeek | None = None
    average_periods_per_day: float = 0.0


class TeacherTimetable(BaseModel):
    teacher_id: str
    days: list[DaySchedule] = Field(default_factory=list)
    statistics: TeacherScheduleStatistics = Field(default_factory=TeacherScheduleStatistics)
