from conftest import make_entry, make_slot
from timetable_engine.schemas.conflict import ConflictType, SlotAvailabilityRequest
from timetable_engine.schemas.settings import DayOfWeek
from timetable_engine.services.entry_store import InMemoryEntryStore
from timetable_engine.services.slot_availability import SlotAvailabilityService


def _request(**overrides):
    data = {"section_id": "S2", "teacher_id": "T1", "room_number": "101", "time_slot": make_slot()}
    data.update(overrides)
    return SlotAvailabilityRequest(**data)


def test_free_slot_is_available():
    service = SlotAvailabilityService(InMemoryEntryStore())

    result = service.check_availability(_request())

    assert result.is_available is True
    assert result.conflicts == []
    assert result.message == "Time slot is available for scheduling"


def test_teacher_and_room_conflicts_are_reported_together():
    store = InMemoryEntryStore([make_entry("e1", section_id="S1", teacher_id="T1", room="101")])
    service = SlotAvailabilityService(store)

    result = service.check_availability(_request())

    assert result.is_available is False
    assert [item.type for item in result.conflicts] == [ConflictType.teacher, ConflictType.room]
    assert all(item.conflicting_entry_id == "e1" for item in result.conflicts)
    assert result.message == "Time slot has conflicts: teacher, room"
    assert result.conflict_of(ConflictType.section) is None


def test_other_period_same_day_does_not_conflict():
    store = InMemoryEntryStore([make_entry("e1", section_id="S2", teacher_id="T1", room="101")])
    service = SlotAvailabilityService(store)

    result = service.check_availability(
        _request(time_slot=make_slot(DayOfWeek.monday, 2, "08:45", "09:30"))
    )

    assert result.is_available is True


def test_excluded_entry_never_conflicts_with_itself():
    store = InMemoryEntryStore([make_entry("e1", section_id="S2", teacher_id="T1", room="101")])
    service = SlotAvailabilityService(store)

    assert service.check_availability(_request()).is_available is False
    assert service.check_availability(_request(exclude_entry_id="e1")).is_available is True


def test_room_lookup_is_skipped_without_room():
    store = InMemoryEntryStore([make_entry("e1", section_id="S9", teacher_id="T9", room="101")])
    service = SlotAvailabilityService(store)

    result = service.check_availability(_request(room_number=None))

    assert result.is_available is True


def test_sql_store_answers_the_same_way(store):
    store.insert_entries([make_entry("e1", section_id="S1", teacher_id="T1", room="101")])
    service = SlotAvailabilityService(store)

    result = service.check_availability(_request(section_id="S1", teacher_id="T5", room_number="205"))

    assert [item.type for item in result.conflicts] == [ConflictType.section]
    assert result.conflicts[0].conflicting_teacher_id == "T1"
