from collections import defaultdict
from typing import Iterable, List

from timetable_engine.core.exceptions import TimetableIntegrityError
from timetable_engine.schemas.conflict import ConflictReport, DoubleBooking
from timetable_engine.schemas.settings import DAY_INDEX
from timetable_engine.schemas.timetable import TimetableEntryPayload


def find_double_bookings(entries: Iterable[TimetableEntryPayload]) -> ConflictReport:
    conflicts: List[DoubleBooking] = []

    # Bucket by day so the pairwise scan stays within one day's entries
    entries_by_day = defaultdict(list)
    for entry in entries:
        entries_by_day[entry.time_slot.day_of_week].append(entry)

    for day in sorted(entries_by_day, key=DAY_INDEX.__getitem__):
        day_entries = sorted(entries_by_day[day], key=lambda item: (item.time_slot.period_number, item.id))
        n = len(day_entries)
        for i in range(n):
            e1 = day_entries[i]
            for j in range(i + 1, n):
                e2 = day_entries[j]
                if not e1.time_slot.overlaps(e2.time_slot):
                    continue
                period = e1.time_slot.period_number
                if e1.section_id == e2.section_id:
                    conflicts.append(DoubleBooking(
                        id=f"sec-{e1.id}-{e2.id}",
                        conflict_type="section_conflict",
                        description=f"Section overlap for {e1.section_id}: {e1.subject_id} and {e2.subject_id}",
                        day_of_week=day,
                        period_number=period,
                        affected_entries=[e1.id, e2.id],
                    ))
                if e1.teacher_id == e2.teacher_id:
                    conflicts.append(DoubleBooking(
                        id=f"tch-{e1.id}-{e2.id}",
                        conflict_type="teacher_conflict",
                        description=f"Teacher overlap for {e1.teacher_id}: sections {e1.section_id} and {e2.section_id}",
                        day_of_week=day,
                        period_number=period,
                        affected_entries=[e1.id, e2.id],
                    ))
                if e1.room_number == e2.room_number:
                    conflicts.append(DoubleBooking(
                        id=f"room-{e1.id}-{e2.id}",
                        conflict_type="room_conflict",
                        description=f"Room overlap in {e1.room_number}: sections {e1.section_id} and {e2.section_id}",
                        day_of_week=day,
                        period_number=period,
                        affected_entries=[e1.id, e2.id],
                    ))

    return ConflictReport(conflicts=conflicts)


def assert_no_double_bookings(entries: Iterable[TimetableEntryPayload]) -> None:
    report = find_double_bookings(entries)
    if report.is_clean:
        return
    raise TimetableIntegrityError(
        f"Found {len(report.conflicts)} double bookings",
        details={"conflicts": [item.model_dump(mode="json") for item in report.conflicts]},
    )
