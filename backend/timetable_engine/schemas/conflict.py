from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

from timetable_engine.schemas.settings import DayOfWeek
from timetable_engine.schemas.timetable import TimeSlot, TimetableEntryPayload, normalize_room_number


class ConflictType(str, Enum):
    section = "Section"
    teacher = "Teacher"
    room = "Room"


class ConflictDetail(BaseModel):
    type: ConflictType
    conflicting_entry_id: str
    description: str
    day_of_week: DayOfWeek
    period_number: int
    start_time: str
    end_time: str
    conflicting_section_id: Optional[str] = None
    conflicting_teacher_id: Optional[str] = None
    conflicting_subject_id: Optional[str] = None
    conflicting_room_number: Optional[str] = None

    @classmethod
    def for_entry(cls, conflict_type: ConflictType, entry: TimetableEntryPayload, description: str) -> "ConflictDetail":
        slot = entry.time_slot
        return cls(
            type=conflict_type,
            conflicting_entry_id=entry.id,
            description=description,
            day_of_week=slot.day_of_week,
            period_number=slot.period_number,
            start_time=slot.start_time,
            end_time=slot.end_time,
            conflicting_section_id=entry.section_id,
            conflicting_teacher_id=entry.teacher_id,
            conflicting_subject_id=entry.subject_id,
            conflicting_room_number=entry.room_number,
        )

    @property
    def time_range(self) -> str:
        return f"{self.start_time} - {self.end_time}"


class SlotAvailabilityRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    section_id: str = Field(min_length=1, max_length=36)
    teacher_id: str = Field(min_length=1, max_length=36)
    room_number: Optional[str] = None
    time_slot: TimeSlot
    exclude_entry_id: Optional[str] = None

    @field_validator("room_number")
    @classmethod
    def validate_room_number(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return normalize_room_number(value)


@dataclass(frozen=True)
class ConflictingEntries:
    """At most one existing entry per dimension occupying the requested slot."""

    section_entry: TimetableEntryPayload | None = None
    teacher_entry: TimetableEntryPayload | None = None
    room_entry: TimetableEntryPayload | None = None


class SlotAvailabilityResult(BaseModel):
    is_available: bool
    conflicts: List[ConflictDetail] = Field(default_factory=list)
    message: str = ""

    @classmethod
    def from_conflicts(cls, conflicts: List[ConflictDetail]) -> "SlotAvailabilityResult":
        if not conflicts:
            return cls(is_available=True, conflicts=[], message="Time slot is available for scheduling")
        seen: list[str] = []
        for conflict in conflicts:
            label = conflict.type.value.lower()
            if label not in seen:
                seen.append(label)
        return cls(
            is_available=False,
            conflicts=list(conflicts),
            message=f"Time slot has conflicts: {', '.join(seen)}",
        )

    def conflict_of(self, conflict_type: ConflictType) -> Optional[ConflictDetail]:
        return next((item for item in self.conflicts if item.type == conflict_type), None)


class EntryCommandResult(BaseModel):
    success: bool
    entry_id: Optional[str] = None
    conflicts: List[ConflictDetail] = Field(default_factory=list)
    message: str = ""


class DoubleBooking(BaseModel):
    id: str
    conflict_type: Literal["section_conflict", "teacher_conflict", "room_conflict"]
    description: str
    day_of_week: DayOfWeek
    period_number: int
    affected_entries: List[str]


class ConflictReport(BaseModel):
    conflicts: List[DoubleBooking] = Field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.conflicts
