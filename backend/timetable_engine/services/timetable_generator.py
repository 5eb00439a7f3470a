from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from dataclasses import dataclass
from time import perf_counter
from typing import Callable, Iterable, NoReturn

from timetable_engine.core.config import Settings, get_settings
from timetable_engine.core.exceptions import (
    ConcurrentBookingError,
    GenerationCancelledError,
    InfeasibleScheduleError,
    TimetableValidationError,
)
from timetable_engine.schemas.conflict import ConflictType, SlotAvailabilityRequest
from timetable_engine.schemas.generator import GenerationPlan, GridShape, Requirement, UnplacedRequirement
from timetable_engine.schemas.settings import DAY_INDEX, DayOfWeek
from timetable_engine.schemas.timetable import TimeSlot, TimetableEntryPayload, normalize_room_number
from timetable_engine.services.conflict_detectors import CompositeConflictStrategy
from timetable_engine.services.conflict_service import assert_no_double_bookings, find_double_bookings
from timetable_engine.services.entry_store import EntryStore, InMemoryEntryStore
from timetable_engine.services.schedule_policy import SchedulePolicy
from timetable_engine.services.slot_availability import SlotAvailabilityService

logger = logging.getLogger(__name__)

BLOCKER_ORDER = (ConflictType.section, ConflictType.teacher, ConflictType.room)


@dataclass(frozen=True)
class PlacementUnit:
    """One period of one requirement still to be placed."""

    subject_id: str
    teacher_id: str
    occurrence: int


@dataclass
class _SearchOutcome:
    placed: list[TimetableEntryPayload]
    deepest: list[TimetableEntryPayload]
    backtracks: int


class _SearchAborted(Exception):
    def __init__(self, reason: str, outcome: _SearchOutcome):
        super().__init__(reason)
        self.reason = reason
        self.outcome = outcome


def merge_requirements(requirements: Iterable[Requirement]) -> tuple[list[Requirement], list[str]]:
    """Sum duplicate subject rows and drop the ones with nothing to place.

    Returns the merged requirements in first-seen order plus warnings for the
    rows that were skipped.
    """
    rows = list(requirements)
    if not rows:
        raise TimetableValidationError("At least one subject requirement is required")

    merged: dict[str, Requirement] = {}
    for row in rows:
        current = merged.get(row.subject_id)
        if current is None:
            merged[row.subject_id] = row
            continue
        if current.teacher_id != row.teacher_id:
            raise TimetableValidationError(
                f"Subject {row.subject_id} is assigned to more than one teacher",
                details={"subject_id": row.subject_id, "teacher_ids": [current.teacher_id, row.teacher_id]},
            )
        merged[row.subject_id] = current.model_copy(
            update={"weekly_periods": current.weekly_periods + row.weekly_periods}
        )

    warnings: list[str] = []
    kept: list[Requirement] = []
    for requirement in merged.values():
        if requirement.weekly_periods == 0:
            warnings.append(f"Subject {requirement.subject_id} has no weekly periods and was skipped")
            continue
        kept.append(requirement)
    return kept, warnings


def expand_units(requirements: Iterable[Requirement]) -> list[PlacementUnit]:
    ordered = sorted(requirements, key=lambda item: (-item.weekly_periods, item.subject_id))
    return [
        PlacementUnit(subject_id=item.subject_id, teacher_id=item.teacher_id, occurrence=index)
        for item in ordered
        for index in range(item.weekly_periods)
    ]


def _group_units(units: Iterable[PlacementUnit]) -> Counter:
    counts: Counter = Counter()
    for unit in units:
        counts[(unit.subject_id, unit.teacher_id)] += 1
    return counts


class TimetableGenerator:
    """Backtracking placement of subject periods into a section's weekly grid.

    Every placement is checked through :class:`SlotAvailabilityService` against
    an in-memory working set, so the generator can only stage entries the
    availability check would also accept. Nothing is written to the store;
    callers commit the returned plan.
    """

    def __init__(
        self,
        store: EntryStore,
        settings: Settings | None = None,
        strategy: CompositeConflictStrategy | None = None,
        clock: Callable[[], float] = perf_counter,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.strategy = strategy
        self.clock = clock

    def generate(
        self,
        section_id: str,
        requirements: Iterable[Requirement],
        grid: GridShape,
        *,
        home_room: str | None,
        fallback_rooms: Iterable[str] = (),
        cancel_event: threading.Event | None = None,
    ) -> GenerationPlan:
        started = self.clock()
        merged, warnings = merge_requirements(requirements)
        rooms = self._room_order(home_room, fallback_rooms)
        units = expand_units(merged)

        logger.info(
            "TIMETABLE GENERATOR START | section_id=%s | requirements=%s | units=%s | grid=%sx%s | rooms=%s",
            section_id,
            len(merged),
            len(units),
            grid.days_per_week,
            grid.periods_per_day,
            len(rooms),
        )
        if not units:
            return GenerationPlan(section_id=section_id, warnings=warnings)

        self._check_capacity(section_id, merged, units, grid)

        policy = SchedulePolicy.from_settings(self.settings, period_minutes=grid.period_duration_minutes)
        slots_by_day = {
            day: [policy.time_slot(day, period) for period in range(1, grid.periods_per_day + 1)]
            for day in grid.days
        }

        snapshot = self._snapshot(section_id, merged, rooms)
        assert_no_double_bookings(snapshot.values())
        working = InMemoryEntryStore(snapshot.values())
        self._check_free_slots(section_id, units, slots_by_day, working)
        availability = SlotAvailabilityService(working, self.strategy)

        try:
            outcome = self._search(
                section_id, units, slots_by_day, rooms, working, availability, cancel_event, started
            )
        except _SearchAborted as aborted:
            self._raise_infeasible(
                section_id,
                units,
                slots_by_day,
                rooms,
                working,
                aborted.outcome,
                aborted.reason,
            )

        self._audit(section_id, merged, rooms, snapshot, outcome.placed)

        if home_room and home_room.strip():
            home = rooms[0]
            moved = sum(1 for entry in outcome.placed if entry.room_number != home)
            if moved:
                warnings.append(f"Home room {home} was busy; {moved} periods were placed in other rooms")

        runtime_ms = int((self.clock() - started) * 1000)
        logger.info(
            "TIMETABLE GENERATOR COMPLETE | section_id=%s | placed=%s | backtracks=%s | runtime_ms=%s",
            section_id,
            len(outcome.placed),
            outcome.backtracks,
            runtime_ms,
        )
        return GenerationPlan(
            section_id=section_id,
            entries=outcome.placed,
            backtracks=outcome.backtracks,
            runtime_ms=runtime_ms,
            warnings=warnings,
        )

    def _room_order(self, home_room: str | None, fallback_rooms: Iterable[str]) -> list[str]:
        home = normalize_room_number(home_room) if home_room and home_room.strip() else None
        pool = sorted({normalize_room_number(room) for room in fallback_rooms if room and room.strip()})
        ordered = [home] if home else []
        ordered.extend(room for room in pool if room != home)
        if not ordered:
            raise TimetableValidationError("Section has no home room and no active rooms are available")
        return ordered

    def _check_capacity(
        self,
        section_id: str,
        requirements: list[Requirement],
        units: list[PlacementUnit],
        grid: GridShape,
    ) -> None:
        capacity = grid.capacity
        oversized = [item for item in requirements if item.weekly_periods > capacity]
        if oversized:
            fragments = [
                UnplacedRequirement(
                    subject_id=item.subject_id,
                    teacher_id=item.teacher_id,
                    unplaced_periods=item.weekly_periods,
                    blocked_by=[ConflictType.section],
                    reason=(
                        f"Subject {item.subject_id} needs {item.weekly_periods} periods "
                        f"but the grid only has {capacity} slots"
                    ),
                )
                for item in oversized
            ]
        elif len(units) > capacity:
            overflow = _group_units(units[capacity:])
            fragments = [
                UnplacedRequirement(
                    subject_id=subject_id,
                    teacher_id=teacher_id,
                    unplaced_periods=count,
                    blocked_by=[ConflictType.section],
                    reason=(
                        f"Section {section_id} needs {len(units)} periods in total "
                        f"but the grid only has {capacity} slots"
                    ),
                )
                for (subject_id, teacher_id), count in overflow.items()
            ]
        else:
            return

        self._raise_capacity(section_id, fragments, f"grid capacity is {capacity}")

    def _check_free_slots(
        self,
        section_id: str,
        units: list[PlacementUnit],
        slots_by_day: dict[DayOfWeek, list[TimeSlot]],
        working: InMemoryEntryStore,
    ) -> None:
        """Compare the slots left open by existing bookings with the units to place."""
        open_slots = [
            slot
            for day_slots in slots_by_day.values()
            for slot in day_slots
            if working.find_section_entry(section_id, slot) is None
        ]
        if len(units) > len(open_slots):
            fragments = [
                UnplacedRequirement(
                    subject_id=subject_id,
                    teacher_id=teacher_id,
                    unplaced_periods=count,
                    blocked_by=[ConflictType.section],
                    reason=f"Section {section_id} has no free slot for {count} more periods of subject {subject_id}",
                )
                for (subject_id, teacher_id), count in _group_units(units[len(open_slots):]).items()
            ]
            self._raise_capacity(section_id, fragments, f"only {len(open_slots)} slots are free")

        fragments = []
        shortfalls = []
        for teacher_id in dict.fromkeys(unit.teacher_id for unit in units):
            teacher_units = [unit for unit in units if unit.teacher_id == teacher_id]
            free = sum(1 for slot in open_slots if working.find_teacher_entry(teacher_id, slot) is None)
            if len(teacher_units) <= free:
                continue
            shortfalls.append(f"teacher {teacher_id} has {free} free slots for {len(teacher_units)} periods")
            for (subject_id, _), count in _group_units(teacher_units[free:]).items():
                fragments.append(
                    UnplacedRequirement(
                        subject_id=subject_id,
                        teacher_id=teacher_id,
                        unplaced_periods=count,
                        blocked_by=[ConflictType.teacher],
                        reason=(
                            f"Teacher {teacher_id} has no free slot for {count} more periods of subject {subject_id}"
                        ),
                    )
                )
        if fragments:
            self._raise_capacity(section_id, fragments, "; ".join(shortfalls))

    @staticmethod
    def _raise_capacity(section_id: str, fragments: list[UnplacedRequirement], detail: str) -> NoReturn:
        total = sum(item.unplaced_periods for item in fragments)
        logger.warning(
            "TIMETABLE GENERATOR CAPACITY EXCEEDED | section_id=%s | detail=%s | unplaced=%s",
            section_id,
            detail,
            total,
        )
        raise InfeasibleScheduleError(
            f"Could not place {total} periods for section {section_id}: {detail}",
            unplaced=fragments,
            backtracks=0,
            reason="capacity",
        )

    def _snapshot(
        self, section_id: str, requirements: list[Requirement], rooms: list[str]
    ) -> dict[str, TimetableEntryPayload]:
        snapshot: dict[str, TimetableEntryPayload] = {}
        for entry in self.store.list_for_section(section_id):
            snapshot[entry.id] = entry
        for entry in self.store.list_for_teachers({item.teacher_id for item in requirements}):
            snapshot[entry.id] = entry
        for entry in self.store.list_for_rooms(rooms):
            snapshot[entry.id] = entry
        return snapshot

    def _audit(
        self,
        section_id: str,
        requirements: list[Requirement],
        rooms: list[str],
        snapshot: dict[str, TimetableEntryPayload],
        placed: list[TimetableEntryPayload],
    ) -> None:
        """Re-read the store and check the plan against what is booked now."""
        current = self._snapshot(section_id, requirements, rooms)
        entries = [*current.values(), *placed]
        report = find_double_bookings(entries)
        if report.is_clean:
            return
        late = set(current) - set(snapshot)
        clashes = [item for item in report.conflicts if late.intersection(item.affected_entries)]
        if clashes:
            logger.warning(
                "TIMETABLE GENERATOR PLAN STALE | section_id=%s | clashes=%s",
                section_id,
                len(clashes),
            )
            raise ConcurrentBookingError(
                f"Entries booked during generation collide with the plan for section {section_id}",
                details={"conflicts": [item.id for item in clashes]},
            )
        assert_no_double_bookings(entries)

    def _resolve_slot(
        self,
        availability: SlotAvailabilityService,
        working: InMemoryEntryStore,
        section_id: str,
        teacher_id: str,
        slot: TimeSlot,
        rooms: list[str],
    ) -> tuple[str | None, list[ConflictType]]:
        result = availability.check_availability(
            SlotAvailabilityRequest(
                section_id=section_id,
                teacher_id=teacher_id,
                room_number=rooms[0],
                time_slot=slot,
            )
        )
        if result.is_available:
            return rooms[0], []
        blockers = [item.type for item in result.conflicts]
        if blockers != [ConflictType.room]:
            return None, blockers
        for room in rooms[1:]:
            if working.find_room_entry(room, slot) is None:
                return room, []
        return None, blockers

    @staticmethod
    def _candidates(
        unit: PlacementUnit,
        slots_by_day: dict[DayOfWeek, list[TimeSlot]],
        subject_days: Counter,
    ) -> list[TimeSlot]:
        days = sorted(slots_by_day, key=lambda day: (subject_days[(unit.subject_id, day)], DAY_INDEX[day]))
        return [slot for day in days for slot in slots_by_day[day]]

    def _search(
        self,
        section_id: str,
        units: list[PlacementUnit],
        slots_by_day: dict[DayOfWeek, list[TimeSlot]],
        rooms: list[str],
        working: InMemoryEntryStore,
        availability: SlotAvailabilityService,
        cancel_event: threading.Event | None,
        started: float,
    ) -> _SearchOutcome:
        budget = self.settings.generation_backtrack_budget
        timeout = self.settings.generation_timeout_seconds
        candidates: list[list[TimeSlot] | None] = [None] * len(units)
        cursors = [0] * len(units)
        # Slots given up by an earlier unit of the same subject; later units of
        # that subject skip them.
        abandoned: list[set[tuple[DayOfWeek, int]]] = [set() for _ in units]
        block_start = [depth - unit.occurrence for depth, unit in enumerate(units)]
        subject_days: Counter = Counter()
        outcome = _SearchOutcome(placed=[], deepest=[], backtracks=0)

        def undo_last() -> TimetableEntryPayload:
            entry = outcome.placed.pop()
            working.delete_entry(entry.id)
            subject_days[(entry.subject_id, entry.time_slot.day_of_week)] -= 1
            return entry

        depth = 0
        while depth < len(units):
            if cancel_event is not None and cancel_event.is_set():
                while outcome.placed:
                    undo_last()
                logger.warning(
                    "TIMETABLE GENERATOR CANCELLED | section_id=%s | depth=%s | backtracks=%s",
                    section_id,
                    depth,
                    outcome.backtracks,
                )
                raise GenerationCancelledError(section_id, placed_units=depth)
            if self.clock() - started > timeout:
                raise _SearchAborted("timeout", outcome)

            unit = units[depth]
            if candidates[depth] is None:
                candidates[depth] = self._candidates(unit, slots_by_day, subject_days)
                cursors[depth] = 0

            staged: TimetableEntryPayload | None = None
            options = candidates[depth]
            skipped = set().union(*abandoned[block_start[depth]:depth])
            while cursors[depth] < len(options):
                slot = options[cursors[depth]]
                cursors[depth] += 1
                if slot.key in skipped:
                    continue
                room, _ = self._resolve_slot(availability, working, section_id, unit.teacher_id, slot, rooms)
                if room is None:
                    continue
                staged = TimetableEntryPayload(
                    id=str(uuid.uuid4()),
                    section_id=section_id,
                    subject_id=unit.subject_id,
                    teacher_id=unit.teacher_id,
                    room_number=room,
                    time_slot=slot,
                )
                break

            if staged is not None:
                working.insert_entries([staged])
                outcome.placed.append(staged)
                subject_days[(staged.subject_id, staged.time_slot.day_of_week)] += 1
                if len(outcome.placed) > len(outcome.deepest):
                    outcome.deepest = list(outcome.placed)
                depth += 1
                continue

            candidates[depth] = None
            abandoned[depth].clear()
            if depth == 0:
                raise _SearchAborted("exhausted", outcome)
            outcome.backtracks += 1
            if outcome.backtracks > budget:
                raise _SearchAborted("budget", outcome)
            depth -= 1
            abandoned[depth].add(undo_last().time_slot.key)

        return outcome

    def _raise_infeasible(
        self,
        section_id: str,
        units: list[PlacementUnit],
        slots_by_day: dict[DayOfWeek, list[TimeSlot]],
        rooms: list[str],
        working: InMemoryEntryStore,
        outcome: _SearchOutcome,
        reason: str,
    ) -> NoReturn:
        # Diagnose against the deepest partial assignment the search reached.
        for entry in outcome.placed:
            working.delete_entry(entry.id)
        deepest = outcome.deepest
        working.insert_entries(deepest)
        availability = SlotAvailabilityService(working, self.strategy)

        fragments: list[UnplacedRequirement] = []
        for (subject_id, teacher_id), count in _group_units(units[len(deepest):]).items():
            blockers: set[ConflictType] = set()
            free_slots = 0
            for day_slots in slots_by_day.values():
                for slot in day_slots:
                    room, hits = self._resolve_slot(availability, working, section_id, teacher_id, slot, rooms)
                    if room is None:
                        blockers.update(hits)
                    else:
                        free_slots += 1
            blocked_by = [item for item in BLOCKER_ORDER if item in blockers]
            fragments.append(
                UnplacedRequirement(
                    subject_id=subject_id,
                    teacher_id=teacher_id,
                    unplaced_periods=count,
                    blocked_by=blocked_by,
                    reason=self._describe(section_id, subject_id, teacher_id, count, blocked_by, free_slots, reason),
                )
            )

        total = sum(item.unplaced_periods for item in fragments)
        logger.warning(
            "TIMETABLE GENERATOR INFEASIBLE | section_id=%s | reason=%s | unplaced=%s | backtracks=%s",
            section_id,
            reason,
            total,
            outcome.backtracks,
        )
        raise InfeasibleScheduleError(
            f"Could not place {total} periods for section {section_id} ({reason})",
            unplaced=fragments,
            backtracks=outcome.backtracks,
            reason=reason,
        )

    @staticmethod
    def _describe(
        section_id: str,
        subject_id: str,
        teacher_id: str,
        count: int,
        blocked_by: list[ConflictType],
        free_slots: int,
        reason: str,
    ) -> str:
        if free_slots and reason in {"budget", "timeout"}:
            return f"Search stopped ({reason}) before placing {count} more periods of subject {subject_id}"
        if ConflictType.teacher in blocked_by:
            return f"Teacher {teacher_id} has no free slot for {count} more periods of subject {subject_id}"
        if ConflictType.room in blocked_by and ConflictType.section not in blocked_by:
            return f"No room is free for {count} more periods of subject {subject_id}"
        return f"Section {section_id} has no free slot for {count} more periods of subject {subject_id}"
