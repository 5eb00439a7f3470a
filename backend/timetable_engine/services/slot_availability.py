from __future__ import annotations

from timetable_engine.schemas.conflict import ConflictingEntries, SlotAvailabilityRequest, SlotAvailabilityResult
from timetable_engine.services.conflict_detectors import CompositeConflictStrategy, default_conflict_strategy
from timetable_engine.services.entry_store import EntryStore


class SlotAvailabilityService:
    """Answers "can this section, teacher and room take this slot?" without writing anything."""

    def __init__(self, store: EntryStore, strategy: CompositeConflictStrategy | None = None) -> None:
        self.store = store
        self.strategy = strategy or default_conflict_strategy()

    def find_conflicting_entries(self, request: SlotAvailabilityRequest) -> ConflictingEntries:
        slot = request.time_slot
        exclude_id = request.exclude_entry_id
        room_entry = None
        if request.room_number:
            room_entry = self.store.find_room_entry(request.room_number, slot, exclude_id)
        return ConflictingEntries(
            section_entry=self.store.find_section_entry(request.section_id, slot, exclude_id),
            teacher_entry=self.store.find_teacher_entry(request.teacher_id, slot, exclude_id),
            room_entry=room_entry,
        )

    def check_availability(self, request: SlotAvailabilityRequest) -> SlotAvailabilityResult:
        entries = self.find_conflicting_entries(request)
        return SlotAvailabilityResult.from_conflicts(self.strategy.detect_conflicts(request, entries))
