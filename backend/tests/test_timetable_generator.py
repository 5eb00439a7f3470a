import itertools
import threading
from collections import Counter

import pytest

from conftest import make_entry, make_slot
from timetable_engine.core.exceptions import (
    ConcurrentBookingError,
    GenerationCancelledError,
    InfeasibleScheduleError,
    TimetableIntegrityError,
    TimetableValidationError,
)
from timetable_engine.schemas.conflict import ConflictType
from timetable_engine.schemas.generator import GridShape, Requirement
from timetable_engine.schemas.settings import DayOfWeek
from timetable_engine.services.conflict_service import find_double_bookings
from timetable_engine.services.entry_store import InMemoryEntryStore
from timetable_engine.services.timetable_generator import TimetableGenerator, expand_units, merge_requirements


def _req(subject_id, teacher_id, weekly_periods):
    return Requirement(subject_id=subject_id, teacher_id=teacher_id, weekly_periods=weekly_periods)


def _placements(plan):
    return [
        (entry.subject_id, entry.time_slot.day_of_week, entry.time_slot.period_number, entry.room_number)
        for entry in plan.entries
    ]


def test_math_and_science_share_teacher_without_double_booking(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=6, period_duration_minutes=45, days_per_week=5)

    plan = generator.generate(
        "S1",
        [_req("MATH", "TeacherA", 5), _req("SCIENCE", "TeacherA", 5)],
        grid,
        home_room="101",
    )

    assert len(plan.entries) == 10
    teacher_slots = [entry.slot_key for entry in plan.entries if entry.teacher_id == "TeacherA"]
    assert len(teacher_slots) == len(set(teacher_slots))
    assert find_double_bookings(plan.entries).is_clean
    math_days = {entry.time_slot.day_of_week for entry in plan.entries if entry.subject_id == "MATH"}
    assert len(math_days) == 5
    assert plan.backtracks == 0


def test_subject_larger_than_grid_fails_before_searching(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=6, period_duration_minutes=45, days_per_week=5)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("ART", "TeacherB", 31)], grid, home_room="101")

    error = exc_info.value
    assert error.reason == "capacity"
    assert error.backtracks == 0
    assert len(error.unplaced) == 1
    assert error.unplaced[0].subject_id == "ART"
    assert error.unplaced[0].unplaced_periods == 31


def test_total_overflow_reports_the_tail_units(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 2), _req("B", "T2", 1)], grid, home_room="101")

    assert [(item.subject_id, item.unplaced_periods) for item in exc_info.value.unplaced] == [("B", 1)]


def test_generation_is_deterministic(settings):
    requirements = [_req("ENG", "T1", 4), _req("MATH", "T2", 6), _req("ART", "T3", 2)]
    grid = GridShape(periods_per_day=4, period_duration_minutes=45, days_per_week=5)
    external = [make_entry("x1", section_id="S9", teacher_id="T2", room="201")]

    first = TimetableGenerator(InMemoryEntryStore(external), settings).generate("S1", requirements, grid, home_room="101")
    second = TimetableGenerator(InMemoryEntryStore(external), settings).generate("S1", requirements, grid, home_room="101")

    assert _placements(first) == _placements(second)


def test_subject_is_spread_across_days(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=4, period_duration_minutes=45, days_per_week=3)

    plan = generator.generate("S1", [_req("MATH", "T1", 6)], grid, home_room="101")

    per_day = Counter(entry.time_slot.day_of_week for entry in plan.entries)
    assert per_day == {DayOfWeek.monday: 2, DayOfWeek.tuesday: 2, DayOfWeek.wednesday: 2}


def test_period_times_follow_school_clock(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=5, period_duration_minutes=45, days_per_week=1)

    plan = generator.generate("S1", [_req("MATH", "T1", 5)], grid, home_room="101")

    times = {entry.time_slot.period_number: (entry.time_slot.start_time, entry.time_slot.end_time) for entry in plan.entries}
    assert times[1] == ("08:00", "08:45")
    assert times[4] == ("10:15", "11:00")
    assert times[5] == ("11:30", "12:15")


def test_zero_period_requirements_are_skipped(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    plan = generator.generate("S1", [_req("A", "T1", 0), _req("B", "T2", 2)], grid, home_room="101")

    assert {entry.subject_id for entry in plan.entries} == {"B"}
    assert plan.warnings == ["Subject A has no weekly periods and was skipped"]


def test_duplicate_requirements_are_summed():
    merged, warnings = merge_requirements([_req("A", "T1", 2), _req("B", "T2", 1), _req("A", "T1", 1)])

    assert [(item.subject_id, item.weekly_periods) for item in merged] == [("A", 3), ("B", 1)]
    assert warnings == []
    assert [unit.subject_id for unit in expand_units(merged)] == ["A", "A", "A", "B"]


def test_duplicate_subject_with_another_teacher_is_rejected():
    with pytest.raises(TimetableValidationError):
        merge_requirements([_req("A", "T1", 2), _req("A", "T2", 1)])


def test_empty_requirement_list_is_rejected(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(TimetableValidationError):
        generator.generate("S1", [], grid, home_room="101")


def test_missing_rooms_are_rejected(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(TimetableValidationError):
        generator.generate("S1", [_req("A", "T1", 1)], grid, home_room=None)


def _blocked_second_period():
    # T2 teaches elsewhere in period 2, so B can only take period 1.
    return [
        make_entry("x1", section_id="S9", teacher_id="T2", room="201", slot=make_slot(period=2, start="08:45", end="09:30"))
    ]


def test_search_backtracks_around_external_bookings(settings):
    generator = TimetableGenerator(InMemoryEntryStore(_blocked_second_period()), settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    plan = generator.generate("S1", [_req("A", "T1", 1), _req("B", "T2", 1)], grid, home_room="101")

    placements = {entry.subject_id: entry.time_slot.period_number for entry in plan.entries}
    assert placements == {"A": 2, "B": 1}
    assert plan.backtracks == 1


def test_backtrack_budget_exhaustion_reports_blockers(settings):
    tight = settings.model_copy(update={"generation_backtrack_budget": 0})
    generator = TimetableGenerator(InMemoryEntryStore(_blocked_second_period()), tight)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 1), _req("B", "T2", 1)], grid, home_room="101")

    error = exc_info.value
    assert error.reason == "budget"
    assert error.backtracks == 1
    assert len(error.unplaced) == 1
    fragment = error.unplaced[0]
    assert fragment.subject_id == "B"
    assert fragment.blocked_by == [ConflictType.section, ConflictType.teacher]
    assert fragment.reason == "Teacher T2 has no free slot for 1 more periods of subject B"


def test_teacher_without_free_slots_fails_before_searching(settings):
    store = InMemoryEntryStore([make_entry("x1", section_id="S9", teacher_id="T1", room="201")])
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=1, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 1)], grid, home_room="101")

    assert exc_info.value.reason == "capacity"
    assert exc_info.value.backtracks == 0
    assert exc_info.value.unplaced[0].blocked_by == [ConflictType.teacher]
    assert exc_info.value.unplaced[0].reason == "Teacher T1 has no free slot for 1 more periods of subject A"


def test_busy_home_room_falls_back_to_pool(settings):
    store = InMemoryEntryStore([make_entry("x1", section_id="S9", teacher_id="T9", room="101")])
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=1, period_duration_minutes=45, days_per_week=1)

    plan = generator.generate("S1", [_req("A", "T1", 1)], grid, home_room="101", fallback_rooms=["103", "102"])

    assert plan.entries[0].room_number == "102"
    assert plan.warnings == ["Home room 101 was busy; 1 periods were placed in other rooms"]


def test_no_free_room_is_a_room_blocker(settings):
    store = InMemoryEntryStore([make_entry("x1", section_id="S9", teacher_id="T9", room="101")])
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=1, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 1)], grid, home_room="101")

    fragment = exc_info.value.unplaced[0]
    assert fragment.blocked_by == [ConflictType.room]
    assert fragment.reason == "No room is free for 1 more periods of subject A"


def test_cancellation_leaves_store_unchanged(settings):
    store = InMemoryEntryStore()
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(GenerationCancelledError):
        generator.generate("S1", [_req("A", "T1", 2)], grid, home_room="101", cancel_event=cancel_event)

    assert len(store) == 0


def test_timeout_stops_the_search(settings):
    ticks = itertools.count(0, 100)
    generator = TimetableGenerator(InMemoryEntryStore(), settings, clock=lambda: next(ticks))
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 2)], grid, home_room="101")

    assert exc_info.value.reason == "timeout"
    assert exc_info.value.unplaced[0].unplaced_periods == 2
    assert exc_info.value.unplaced[0].reason.startswith("Search stopped (timeout)")


def test_generator_never_writes_to_the_store(settings):
    store = InMemoryEntryStore()
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    generator.generate("S1", [_req("A", "T1", 2)], grid, home_room="101")

    assert len(store) == 0


def _period_entry(entry_id, period, teacher_id, room, section_id="S9"):
    slot = make_slot(period=period, start=f"{7 + period:02d}:00", end=f"{7 + period:02d}:45")
    return make_entry(entry_id, section_id=section_id, teacher_id=teacher_id, room=room, slot=slot)


def test_teacher_busy_all_monday_fails_on_free_slot_count(settings):
    monday = [_period_entry(f"x{period}", period, "T1", f"20{period}") for period in range(1, 7)]
    generator = TimetableGenerator(InMemoryEntryStore(monday), settings)
    grid = GridShape(periods_per_day=6, period_duration_minutes=45, days_per_week=5)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 25)], grid, home_room="101")

    error = exc_info.value
    assert error.reason == "capacity"
    assert error.backtracks == 0
    assert [(item.subject_id, item.unplaced_periods) for item in error.unplaced] == [("A", 1)]
    assert error.unplaced[0].blocked_by == [ConflictType.teacher]


def test_booked_section_slots_count_against_capacity(settings):
    store = InMemoryEntryStore([_period_entry("x1", 1, "T9", "201", section_id="S1")])
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 2)], grid, home_room="101")

    assert exc_info.value.reason == "capacity"
    assert exc_info.value.unplaced[0].blocked_by == [ConflictType.section]
    assert exc_info.value.unplaced[0].unplaced_periods == 1


def test_same_subject_periods_are_not_retried_in_swapped_slots(settings):
    # Room 101 is taken in periods 1-2, leaving three slots for four periods.
    store = InMemoryEntryStore([_period_entry(f"x{period}", period, "T9", "101") for period in (1, 2)])
    tight = settings.model_copy(update={"generation_backtrack_budget": 8})
    generator = TimetableGenerator(store, tight)
    grid = GridShape(periods_per_day=5, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("A", "T1", 3), _req("B", "T2", 1)], grid, home_room="101")

    assert exc_info.value.reason == "exhausted"
    assert exc_info.value.backtracks == 7
    assert [item.subject_id for item in exc_info.value.unplaced] == ["B"]


class _LateWriterStore(InMemoryEntryStore):
    """Books a clashing entry for T1 between the generator's two reads."""

    def __init__(self):
        super().__init__()
        self.teacher_reads = 0

    def list_for_teachers(self, teacher_ids):
        self.teacher_reads += 1
        if self.teacher_reads == 2:
            self.insert_entries([make_entry("late", section_id="S9", teacher_id="T1", room="201")])
        return super().list_for_teachers(teacher_ids)


def test_plan_colliding_with_a_late_booking_is_a_concurrent_booking(settings):
    store = _LateWriterStore()
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(ConcurrentBookingError):
        generator.generate("S1", [_req("A", "T1", 1)], grid, home_room="101")

    assert store.teacher_reads == 2


class _DoubleBookedStore(InMemoryEntryStore):
    def list_for_teachers(self, teacher_ids):
        clash = make_entry("x2", section_id="S8", teacher_id="T1", room="202")
        return super().list_for_teachers(teacher_ids) + [clash]


def test_double_booked_store_is_an_integrity_error(settings):
    store = _DoubleBookedStore([make_entry("x1", section_id="S9", teacher_id="T1", room="201")])
    generator = TimetableGenerator(store, settings)
    grid = GridShape(periods_per_day=2, period_duration_minutes=45, days_per_week=1)

    with pytest.raises(TimetableIntegrityError):
        generator.generate("S1", [_req("A", "T1", 1)], grid, home_room="101")


def test_requirement_above_grid_capacity_is_not_a_validation_error(settings):
    generator = TimetableGenerator(InMemoryEntryStore(), settings)
    grid = GridShape(periods_per_day=6, period_duration_minutes=45, days_per_week=5)

    with pytest.raises(InfeasibleScheduleError) as exc_info:
        generator.generate("S1", [_req("ART", "TB", 80)], grid, home_room="101")

    assert exc_info.value.unplaced[0].unplaced_periods == 80
