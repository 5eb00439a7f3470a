from __future__ import annotations

import logging
from collections.abc import Generator, Iterable
from contextlib import contextmanager
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from timetable_engine.core.exceptions import ConcurrentBookingError, ResourceNotFoundError, StoreFailure
from timetable_engine.models.timetable import TimetableEntry
from timetable_engine.schemas.settings import DAY_INDEX, DayOfWeek
from timetable_engine.schemas.timetable import TimeSlot, TimetableEntryPayload

logger = logging.getLogger(__name__)

SlotKey = tuple[DayOfWeek, int]


def entry_sort_key(entry: TimetableEntryPayload) -> tuple[int, int, str]:
    return (DAY_INDEX[entry.time_slot.day_of_week], entry.time_slot.period_number, entry.section_id)


class EntryStore(Protocol):
    """Persistence collaborator consumed by availability checks and generation."""

    def get_entry(self, entry_id: str) -> TimetableEntryPayload | None: ...

    def find_section_entry(
        self, section_id: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None: ...

    def find_teacher_entry(
        self, teacher_id: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None: ...

    def find_room_entry(
        self, room_number: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None: ...

    def insert_entries(self, entries: Iterable[TimetableEntryPayload]) -> list[TimetableEntryPayload]: ...

    def update_entry(self, entry: TimetableEntryPayload) -> TimetableEntryPayload: ...

    def delete_entry(self, entry_id: str) -> bool: ...

    def delete_all_for_section(self, section_id: str) -> int: ...

    def list_for_section(self, section_id: str) -> list[TimetableEntryPayload]: ...

    def list_for_teacher(self, teacher_id: str) -> list[TimetableEntryPayload]: ...

    def list_for_teachers(self, teacher_ids: Iterable[str]) -> list[TimetableEntryPayload]: ...

    def list_for_rooms(self, room_numbers: Iterable[str]) -> list[TimetableEntryPayload]: ...


class InMemoryEntryStore:
    """Dictionary-backed store. Also serves as the generator's working set.

    Each dimension keeps a ``(resource, day, period) -> entry id`` index, so an
    insert that would double-book is rejected the same way the SQL unique
    constraints reject it.
    """

    def __init__(self, entries: Iterable[TimetableEntryPayload] = ()) -> None:
        self._entries: dict[str, TimetableEntryPayload] = {}
        self._by_section: dict[tuple[str, SlotKey], str] = {}
        self._by_teacher: dict[tuple[str, SlotKey], str] = {}
        self._by_room: dict[tuple[str, SlotKey], str] = {}
        self.insert_entries(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(
        self,
        index: dict[tuple[str, SlotKey], str],
        resource: str,
        slot: TimeSlot,
        exclude_id: str | None,
    ) -> TimetableEntryPayload | None:
        entry_id = index.get((resource, slot.key))
        if entry_id is None or entry_id == exclude_id:
            return None
        return self._entries[entry_id]

    def get_entry(self, entry_id: str) -> TimetableEntryPayload | None:
        return self._entries.get(entry_id)

    def find_section_entry(
        self, section_id: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None:
        return self._lookup(self._by_section, section_id, slot, exclude_id)

    def find_teacher_entry(
        self, teacher_id: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None:
        return self._lookup(self._by_teacher, teacher_id, slot, exclude_id)

    def find_room_entry(
        self, room_number: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None:
        return self._lookup(self._by_room, room_number, slot, exclude_id)

    def _index_keys(self, entry: TimetableEntryPayload) -> list[tuple[dict, tuple[str, SlotKey]]]:
        key = entry.slot_key
        return [
            (self._by_section, (entry.section_id, key)),
            (self._by_teacher, (entry.teacher_id, key)),
            (self._by_room, (entry.room_number, key)),
        ]

    def _add(self, entry: TimetableEntryPayload) -> None:
        if entry.id in self._entries:
            raise ConcurrentBookingError(f"Entry {entry.id} already exists", details={"entry_id": entry.id})
        for index, index_key in self._index_keys(entry):
            holder = index.get(index_key)
            if holder is not None:
                raise ConcurrentBookingError(
                    f"Slot {entry.time_slot} is already held by entry {holder}",
                    details={"entry_id": entry.id, "conflicting_entry_id": holder},
                )
        self._entries[entry.id] = entry
        for index, index_key in self._index_keys(entry):
            index[index_key] = entry.id

    def _remove(self, entry: TimetableEntryPayload) -> None:
        for index, index_key in self._index_keys(entry):
            if index.get(index_key) == entry.id:
                del index[index_key]
        del self._entries[entry.id]

    def insert_entries(self, entries: Iterable[TimetableEntryPayload]) -> list[TimetableEntryPayload]:
        inserted: list[TimetableEntryPayload] = []
        try:
            for entry in entries:
                self._add(entry)
                inserted.append(entry)
        except ConcurrentBookingError:
            for entry in inserted:
                self._remove(entry)
            raise
        return inserted

    def update_entry(self, entry: TimetableEntryPayload) -> TimetableEntryPayload:
        current = self._entries.get(entry.id)
        if current is None:
            raise ResourceNotFoundError("Timetable entry", entry.id)
        self._remove(current)
        try:
            self._add(entry)
        except ConcurrentBookingError:
            self._add(current)
            raise
        return entry

    def delete_entry(self, entry_id: str) -> bool:
        current = self._entries.get(entry_id)
        if current is None:
            return False
        self._remove(current)
        return True

    def delete_all_for_section(self, section_id: str) -> int:
        doomed = [entry for entry in self._entries.values() if entry.section_id == section_id]
        for entry in doomed:
            self._remove(entry)
        return len(doomed)

    def list_for_section(self, section_id: str) -> list[TimetableEntryPayload]:
        return sorted((e for e in self._entries.values() if e.section_id == section_id), key=entry_sort_key)

    def list_for_teacher(self, teacher_id: str) -> list[TimetableEntryPayload]:
        return self.list_for_teachers([teacher_id])

    def list_for_teachers(self, teacher_ids: Iterable[str]) -> list[TimetableEntryPayload]:
        wanted = set(teacher_ids)
        return sorted((e for e in self._entries.values() if e.teacher_id in wanted), key=entry_sort_key)

    def list_for_rooms(self, room_numbers: Iterable[str]) -> list[TimetableEntryPayload]:
        wanted = set(room_numbers)
        return sorted((e for e in self._entries.values() if e.room_number in wanted), key=entry_sort_key)


def to_payload(row: TimetableEntry) -> TimetableEntryPayload:
    return TimetableEntryPayload(
        id=row.id,
        section_id=row.section_id,
        subject_id=row.subject_id,
        teacher_id=row.teacher_id,
        room_number=row.room_number,
        time_slot=TimeSlot(
            day_of_week=row.day_of_week,
            period_number=row.period_number,
            start_time=row.start_time,
            end_time=row.end_time,
        ),
    )


def _apply_payload(row: TimetableEntry, entry: TimetableEntryPayload) -> TimetableEntry:
    row.section_id = entry.section_id
    row.subject_id = entry.subject_id
    row.teacher_id = entry.teacher_id
    row.room_number = entry.room_number
    row.day_of_week = entry.time_slot.day_of_week
    row.period_number = entry.time_slot.period_number
    row.start_time = entry.time_slot.start_time
    row.end_time = entry.time_slot.end_time
    return row


class SqlAlchemyEntryStore:
    """Entry store on top of a SQLAlchemy session.

    Writes are flushed, never committed; the caller owns the transaction so a
    wipe-and-regenerate either lands completely or not at all.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    @contextmanager
    def _guard(self, operation: str) -> Generator[None, None, None]:
        try:
            yield
        except IntegrityError as exc:
            logger.warning("ENTRY STORE CONFLICT | operation=%s | error=%s", operation, exc.orig)
            raise ConcurrentBookingError(
                "Another writer booked the same section, teacher or room slot",
                details={"operation": operation},
            ) from exc
        except SQLAlchemyError as exc:
            logger.exception("ENTRY STORE FAILURE | operation=%s", operation)
            raise StoreFailure(
                "Timetable entry store is unavailable",
                details={"operation": operation},
            ) from exc

    def _find(self, column, value: str, slot: TimeSlot, exclude_id: str | None) -> TimetableEntryPayload | None:
        query = select(TimetableEntry).where(
            column == value,
            TimetableEntry.day_of_week == slot.day_of_week,
            TimetableEntry.period_number == slot.period_number,
        )
        if exclude_id is not None:
            query = query.where(TimetableEntry.id != exclude_id)
        row = self.db.execute(query.limit(1)).scalars().first()
        return to_payload(row) if row is not None else None

    def get_entry(self, entry_id: str) -> TimetableEntryPayload | None:
        with self._guard("get_entry"):
            row = self.db.get(TimetableEntry, entry_id)
            return to_payload(row) if row is not None else None

    def find_section_entry(
        self, section_id: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None:
        with self._guard("find_section_entry"):
            return self._find(TimetableEntry.section_id, section_id, slot, exclude_id)

    def find_teacher_entry(
        self, teacher_id: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None:
        with self._guard("find_teacher_entry"):
            return self._find(TimetableEntry.teacher_id, teacher_id, slot, exclude_id)

    def find_room_entry(
        self, room_number: str, slot: TimeSlot, exclude_id: str | None = None
    ) -> TimetableEntryPayload | None:
        with self._guard("find_room_entry"):
            return self._find(TimetableEntry.room_number, room_number, slot, exclude_id)

    def insert_entries(self, entries: Iterable[TimetableEntryPayload]) -> list[TimetableEntryPayload]:
        payloads = list(entries)
        with self._guard("insert_entries"):
            self.db.add_all(_apply_payload(TimetableEntry(id=entry.id), entry) for entry in payloads)
            self.db.flush()
        return payloads

    def update_entry(self, entry: TimetableEntryPayload) -> TimetableEntryPayload:
        with self._guard("update_entry"):
            row = self.db.get(TimetableEntry, entry.id)
            if row is None:
                raise ResourceNotFoundError("Timetable entry", entry.id)
            _apply_payload(row, entry)
            self.db.flush()
            return to_payload(row)

    def delete_entry(self, entry_id: str) -> bool:
        with self._guard("delete_entry"):
            row = self.db.get(TimetableEntry, entry_id)
            if row is None:
                return False
            self.db.delete(row)
            self.db.flush()
            return True

    def delete_all_for_section(self, section_id: str) -> int:
        with self._guard("delete_all_for_section"):
            rows = self.db.execute(select(TimetableEntry).where(TimetableEntry.section_id == section_id)).scalars().all()
            for row in rows:
                self.db.delete(row)
            self.db.flush()
            return len(rows)

    def _list(self, *criteria) -> list[TimetableEntryPayload]:
        rows = self.db.execute(select(TimetableEntry).where(*criteria)).scalars().all()
        return sorted((to_payload(row) for row in rows), key=entry_sort_key)

    def list_for_section(self, section_id: str) -> list[TimetableEntryPayload]:
        with self._guard("list_for_section"):
            return self._list(TimetableEntry.section_id == section_id)

    def list_for_teacher(self, teacher_id: str) -> list[TimetableEntryPayload]:
        with self._guard("list_for_teacher"):
            return self._list(TimetableEntry.teacher_id == teacher_id)

    def list_for_teachers(self, teacher_ids: Iterable[str]) -> list[TimetableEntryPayload]:
        wanted = sorted(set(teacher_ids))
        if not wanted:
            return []
        with self._guard("list_for_teachers"):
            return self._list(TimetableEntry.teacher_id.in_(wanted))

    def list_for_rooms(self, room_numbers: Iterable[str]) -> list[TimetableEntryPayload]:
        wanted = sorted(set(room_numbers))
        if not wanted:
            return []
        with self._guard("list_for_rooms"):
            return self._list(TimetableEntry.room_number.in_(wanted))
