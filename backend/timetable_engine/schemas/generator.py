from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from timetable_engine.schemas.conflict import ConflictType
from timetable_engine.schemas.settings import MAX_TEACHING_DAYS, DayOfWeek, working_days
from timetable_engine.schemas.timetable import (
    MAX_SLOT_MINUTES,
    MIN_SLOT_MINUTES,
    ScheduledPeriod,
    TimetableEntryPayload,
)


class Requirement(BaseModel):
    subject_id: str = Field(min_length=1, max_length=36)
    teacher_id: str = Field(min_length=1, max_length=36)
    weekly_periods: int = Field(ge=0)
    subject_name: str | None = None


class GridShape(BaseModel):
    periods_per_day: int = Field(ge=1)
    period_duration_minutes: int = Field(ge=MIN_SLOT_MINUTES, le=MAX_SLOT_MINUTES)
    days_per_week: int = Field(default=6, ge=1, le=MAX_TEACHING_DAYS)

    @property
    def days(self) -> tuple[DayOfWeek, ...]:
        return working_days(self.days_per_week)

    @property
    def capacity(self) -> int:
        return self.periods_per_day * self.days_per_week


class UnplacedRequirement(BaseModel):
    subject_id: str
    teacher_id: str
    unplaced_periods: int
    blocked_by: list[ConflictType] = Field(default_factory=list)
    reason: str


class GenerationPlan(BaseModel):
    """Entries staged by one successful generator run, not yet committed."""

    section_id: str
    entries: list[TimetableEntryPayload] = Field(default_factory=list)
    backtracks: int = 0
    runtime_ms: int = 0
    warnings: list[str] = Field(default_factory=list)


class GenerateTimetableRequest(BaseModel):
    section_id: str = Field(min_length=1, max_length=36)
    periods_per_day: int | None = Field(default=None, ge=1)
    period_duration: int | None = Field(default=None, ge=1)
    days_per_week: int | None = Field(default=None, ge=1, le=MAX_TEACHING_DAYS)
    overwrite_existing: bool = False

    @field_validator("section_id")
    @classmethod
    def strip_section_id(cls, value: str) -> str:
        return value.strip()


class GenerationResult(BaseModel):
    section_id: str
    success: bool
    entries: list[ScheduledPeriod] = Field(default_factory=list)
    unplaced: list[UnplacedRequirement] = Field(default_factory=list)
    entries_created: int = 0
    entries_removed: int = 0
    backtracks: int = 0
    attempts: int = 1
    runtime_ms: int = 0
    warnings: list[str] = Field(default_factory=list)
    message: str = ""
