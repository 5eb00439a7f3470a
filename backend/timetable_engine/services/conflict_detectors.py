from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from timetable_engine.schemas.conflict import (
    ConflictDetail,
    ConflictingEntries,
    ConflictType,
    SlotAvailabilityRequest,
)


class ConflictDetector(ABC):
    """Checks a candidate placement against one resource dimension."""

    conflict_type: ConflictType

    @abstractmethod
    def detect(self, request: SlotAvailabilityRequest, entries: ConflictingEntries) -> ConflictDetail | None:
        raise NotImplementedError


class SectionConflictDetector(ConflictDetector):
    conflict_type = ConflictType.section

    def detect(self, request: SlotAvailabilityRequest, entries: ConflictingEntries) -> ConflictDetail | None:
        existing = entries.section_entry
        if existing is None:
            return None
        return ConflictDetail.for_entry(
            self.conflict_type,
            existing,
            (
                f"Section {request.section_id} is already scheduled with teacher {existing.teacher_id} "
                f"for subject {existing.subject_id} at {existing.time_slot}"
            ),
        )


class TeacherConflictDetector(ConflictDetector):
    conflict_type = ConflictType.teacher

    def detect(self, request: SlotAvailabilityRequest, entries: ConflictingEntries) -> ConflictDetail | None:
        existing = entries.teacher_entry
        if existing is None:
            return None
        return ConflictDetail.for_entry(
            self.conflict_type,
            existing,
            (
                f"Teacher {request.teacher_id} is already assigned to section {existing.section_id} "
                f"in room {existing.room_number} at {existing.time_slot}"
            ),
        )


class RoomConflictDetector(ConflictDetector):
    conflict_type = ConflictType.room

    def detect(self, request: SlotAvailabilityRequest, entries: ConflictingEntries) -> ConflictDetail | None:
        existing = entries.room_entry
        if existing is None:
            return None
        return ConflictDetail.for_entry(
            self.conflict_type,
            existing,
            f"Room {existing.room_number} is already booked for section {existing.section_id} at {existing.time_slot}",
        )


class CompositeConflictStrategy:
    """Runs every registered detector and keeps the hits in registration order."""

    def __init__(self, detectors: Iterable[ConflictDetector]) -> None:
        self._detectors: list[ConflictDetector] = list(detectors)

    @property
    def detectors(self) -> tuple[ConflictDetector, ...]:
        return tuple(self._detectors)

    def register(self, detector: ConflictDetector) -> None:
        self._detectors.append(detector)

    def detect_conflicts(self, request: SlotAvailabilityRequest, entries: ConflictingEntries) -> list[ConflictDetail]:
        conflicts: list[ConflictDetail] = []
        for detector in self._detectors:
            detail = detector.detect(request, entries)
            if detail is not None:
                conflicts.append(detail)
        return conflicts


def default_conflict_strategy() -> CompositeConflictStrategy:
    return CompositeConflictStrategy(
        [
            SectionConflictDetector(),
            TeacherConflictDetector(),
            RoomConflictDetector(),
        ]
    )
