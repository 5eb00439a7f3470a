from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from time import perf_counter
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from timetable_engine.core.config import Settings, get_settings
from timetable_engine.core.exceptions import (
    AppError,
    ConcurrentBookingError,
    InfeasibleScheduleError,
    ResourceNotFoundError,
    StoreFailure,
    TimetableValidationError,
)
from timetable_engine.models.room import Room
from timetable_engine.models.section import Section, SectionSubject
from timetable_engine.schemas.conflict import EntryCommandResult, SlotAvailabilityRequest, SlotAvailabilityResult
from timetable_engine.schemas.generator import GenerateTimetableRequest, GenerationResult, GridShape, Requirement
from timetable_engine.schemas.settings import DAY_INDEX, DayOfWeek, normalize_day, working_days
from timetable_engine.schemas.timetable import (
    CheckSlotAvailabilityQuery,
    CreateEntryCommand,
    DaySchedule,
    ScheduledPeriod,
    SectionTimetable,
    TeacherScheduleStatistics,
    TeacherTimetable,
    TimeSlot,
    TimetableEntryPayload,
    UpdateEntryCommand,
)
from timetable_engine.services.entry_store import EntryStore, SqlAlchemyEntryStore, entry_sort_key
from timetable_engine.services.schedule_policy import SchedulePolicy
from timetable_engine.services.slot_availability import SlotAvailabilityService
from timetable_engine.services.timetable_generator import TimetableGenerator

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validated(model: type[ModelT], **data: Any) -> ModelT:
    try:
        return model(**data)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False)
        first = errors[0]["msg"] if errors else "Invalid input"
        raise TimetableValidationError(first, details={"errors": errors}) from exc


def _group_by_day(entries: list[TimetableEntryPayload], days: tuple[DayOfWeek, ...]) -> list[DaySchedule]:
    buckets: dict[DayOfWeek, list[ScheduledPeriod]] = {day: [] for day in days}
    for entry in sorted(entries, key=entry_sort_key):
        buckets.setdefault(entry.time_slot.day_of_week, []).append(ScheduledPeriod.from_entry(entry))
    return [
        DaySchedule(day_of_week=day, periods=buckets[day])
        for day in sorted(buckets, key=DAY_INDEX.__getitem__)
    ]


class TimetableService:
    """Application commands over the entry store.

    Store calls only flush; this service owns commit and rollback. Scheduling
    conflicts come back as results, everything else is raised.
    """

    def __init__(self, db: Session, settings: Settings | None = None, store: EntryStore | None = None) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.store = store or SqlAlchemyEntryStore(db)
        self.availability = SlotAvailabilityService(self.store)
        self.policy = SchedulePolicy.from_settings(self.settings)

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            raise ConcurrentBookingError(
                "Another writer booked the same section, teacher or room slot",
                details={"operation": "commit"},
            ) from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("TIMETABLE COMMIT FAILED")
            raise StoreFailure("Timetable entry store is unavailable", details={"operation": "commit"}) from exc

    def _require_section(self, section_id: str) -> Section:
        try:
            section = self.db.get(Section, section_id)
        except SQLAlchemyError as exc:
            raise StoreFailure("Section lookup failed", details={"section_id": section_id}) from exc
        if section is None:
            raise ResourceNotFoundError("Section", section_id)
        return section

    def _working_days(self) -> tuple[DayOfWeek, ...]:
        return working_days(self.settings.working_days_per_week)

    def _periods_per_day(self, value: int) -> int:
        limit = self.settings.max_periods_per_day
        if value > limit:
            raise TimetableValidationError(
                f"At most {limit} periods per day are allowed",
                details={"value": value, "max_periods_per_day": limit},
            )
        return value

    def _period_minutes(self, value: int) -> int:
        low, high = self.settings.min_period_minutes, self.settings.max_period_minutes
        if not low <= value <= high:
            raise TimetableValidationError(
                f"Period duration must be between {low} and {high} minutes",
                details={"value": value, "min_period_minutes": low, "max_period_minutes": high},
            )
        return value

    def check_slot_availability(
        self,
        section_id: str,
        teacher_id: str,
        room_number: str | None,
        day_of_week: DayOfWeek | str,
        period_number: int,
        exclude_entry_id: str | None = None,
    ) -> SlotAvailabilityResult:
        query = _validated(
            CheckSlotAvailabilityQuery,
            section_id=section_id,
            teacher_id=teacher_id,
            room_number=room_number,
            day_of_week=day_of_week,
            period_number=period_number,
            exclude_entry_id=exclude_entry_id,
        )
        self._periods_per_day(query.period_number)
        request = SlotAvailabilityRequest(
            section_id=query.section_id,
            teacher_id=query.teacher_id,
            room_number=query.room_number,
            time_slot=self.policy.time_slot(query.day_of_week, query.period_number),
            exclude_entry_id=query.exclude_entry_id,
        )
        return self.availability.check_availability(request)

    def _reject(self, operation: str, entry_id: str | None, result: SlotAvailabilityResult) -> EntryCommandResult:
        logger.warning(
            "TIMETABLE ENTRY REJECTED | operation=%s | entry_id=%s | conflicts=%s",
            operation,
            entry_id,
            ",".join(item.type.value for item in result.conflicts),
        )
        return EntryCommandResult(success=False, entry_id=entry_id, conflicts=result.conflicts, message=result.message)

    def _write_entry(self, operation: str, request: SlotAvailabilityRequest, write) -> EntryCommandResult | None:
        """Run ``write`` and commit, reporting a lost race as conflicts when the re-check finds them."""
        try:
            write()
            self._commit()
        except ConcurrentBookingError:
            self.db.rollback()
            result = self.availability.check_availability(request)
            if result.conflicts:
                return self._reject(operation, request.exclude_entry_id, result)
            raise
        except AppError:
            self.db.rollback()
            raise
        return None

    def create_entry(
        self,
        section_id: str,
        subject_id: str,
        teacher_id: str,
        day_of_week: DayOfWeek | str,
        period_number: int,
        start_time: str,
        end_time: str,
        room_number: str,
    ) -> EntryCommandResult:
        command = _validated(
            CreateEntryCommand,
            section_id=section_id,
            subject_id=subject_id,
            teacher_id=teacher_id,
            day_of_week=day_of_week,
            period_number=period_number,
            start_time=start_time,
            end_time=end_time,
            room_number=room_number,
        )
        slot = command.time_slot()
        request = SlotAvailabilityRequest(
            section_id=command.section_id,
            teacher_id=command.teacher_id,
            room_number=command.room_number,
            time_slot=slot,
        )
        result = self.availability.check_availability(request)
        if not result.is_available:
            return self._reject("create", None, result)

        entry = TimetableEntryPayload(
            id=str(uuid.uuid4()),
            section_id=command.section_id,
            subject_id=command.subject_id,
            teacher_id=command.teacher_id,
            room_number=command.room_number,
            time_slot=slot,
        )
        rejected = self._write_entry("create", request, lambda: self.store.insert_entries([entry]))
        if rejected is not None:
            return rejected

        logger.info(
            "TIMETABLE ENTRY CREATED | entry_id=%s | section_id=%s | teacher_id=%s | room=%s | slot=%s",
            entry.id,
            entry.section_id,
            entry.teacher_id,
            entry.room_number,
            slot,
        )
        return EntryCommandResult(success=True, entry_id=entry.id, message="Timetable entry created successfully")

    def update_entry(
        self,
        entry_id: str,
        subject_id: str,
        teacher_id: str,
        start_time: str,
        end_time: str,
        room_number: str,
        day_of_week: DayOfWeek | str | None = None,
        period_number: int | None = None,
    ) -> EntryCommandResult:
        command = _validated(
            UpdateEntryCommand,
            entry_id=entry_id,
            subject_id=subject_id,
            teacher_id=teacher_id,
            start_time=start_time,
            end_time=end_time,
            room_number=room_number,
            day_of_week=day_of_week,
            period_number=period_number,
        )
        current = self.store.get_entry(command.entry_id)
        if current is None:
            raise ResourceNotFoundError("Timetable entry", command.entry_id)

        slot = _validated(
            TimeSlot,
            day_of_week=command.day_of_week or current.time_slot.day_of_week,
            period_number=command.period_number or current.time_slot.period_number,
            start_time=command.start_time,
            end_time=command.end_time,
        )
        request = SlotAvailabilityRequest(
            section_id=current.section_id,
            teacher_id=command.teacher_id,
            room_number=command.room_number,
            time_slot=slot,
            exclude_entry_id=current.id,
        )
        result = self.availability.check_availability(request)
        if not result.is_available:
            return self._reject("update", current.id, result)

        updated = TimetableEntryPayload(
            id=current.id,
            section_id=current.section_id,
            subject_id=command.subject_id,
            teacher_id=command.teacher_id,
            room_number=command.room_number,
            time_slot=slot,
        )
        rejected = self._write_entry("update", request, lambda: self.store.update_entry(updated))
        if rejected is not None:
            return rejected

        logger.info("TIMETABLE ENTRY UPDATED | entry_id=%s | slot=%s", updated.id, slot)
        return EntryCommandResult(success=True, entry_id=updated.id, message="Timetable entry updated successfully")

    def delete_entry(self, entry_id: str, reason: str | None = None) -> EntryCommandResult:
        if not entry_id or not entry_id.strip():
            raise TimetableValidationError("Entry id is required")
        try:
            removed = self.store.delete_entry(entry_id)
            if not removed:
                raise ResourceNotFoundError("Timetable entry", entry_id)
            self._commit()
        except AppError:
            self.db.rollback()
            raise
        logger.info("TIMETABLE ENTRY DELETED | entry_id=%s | reason=%s", entry_id, reason or "-")
        return EntryCommandResult(success=True, entry_id=entry_id, message="Timetable entry deleted successfully")

    def delete_section_timetable(self, section_id: str) -> int:
        if not section_id or not section_id.strip():
            raise TimetableValidationError("Section id is required")
        try:
            removed = self.store.delete_all_for_section(section_id)
            self._commit()
        except AppError:
            self.db.rollback()
            raise
        logger.info("TIMETABLE SECTION CLEARED | section_id=%s | removed=%s", section_id, removed)
        return removed

    def _load_requirements(self, section_id: str) -> list[Requirement]:
        try:
            rows = (
                self.db.execute(
                    select(SectionSubject)
                    .where(SectionSubject.section_id == section_id)
                    .order_by(SectionSubject.subject_id, SectionSubject.teacher_id)
                )
                .scalars()
                .all()
            )
        except SQLAlchemyError as exc:
            raise StoreFailure("Section subject lookup failed", details={"section_id": section_id}) from exc
        return [
            _validated(
                Requirement,
                subject_id=row.subject_id,
                teacher_id=row.teacher_id,
                weekly_periods=row.weekly_periods,
                subject_name=row.subject_name,
            )
            for row in rows
        ]

    def _load_room_pool(self) -> list[str]:
        try:
            return list(
                self.db.execute(select(Room.room_number).where(Room.is_active.is_(True)).order_by(Room.room_number))
                .scalars()
                .all()
            )
        except SQLAlchemyError as exc:
            raise StoreFailure("Room lookup failed") from exc

    def _clear_for_generation(self, section_id: str, overwrite_existing: bool) -> int:
        existing = self.store.list_for_section(section_id)
        if not existing:
            return 0
        if not overwrite_existing:
            raise TimetableValidationError(
                f"Section {section_id} already has {len(existing)} timetable entries; "
                "confirm overwrite to regenerate",
                details={"section_id": section_id, "existing_entries": len(existing)},
            )
        return self.store.delete_all_for_section(section_id)

    def generate_timetable(
        self,
        section_id: str,
        periods_per_day: int | None = None,
        period_duration: int | None = None,
        *,
        days_per_week: int | None = None,
        overwrite_existing: bool = False,
        cancel_event: threading.Event | None = None,
    ) -> GenerationResult:
        payload = _validated(
            GenerateTimetableRequest,
            section_id=section_id,
            periods_per_day=periods_per_day,
            period_duration=period_duration,
            days_per_week=days_per_week,
            overwrite_existing=overwrite_existing,
        )
        grid = _validated(
            GridShape,
            periods_per_day=self._periods_per_day(payload.periods_per_day or self.settings.default_periods_per_day),
            period_duration_minutes=self._period_minutes(payload.period_duration or self.settings.default_period_minutes),
            days_per_week=payload.days_per_week or self.settings.working_days_per_week,
        )
        section = self._require_section(payload.section_id)
        requirements = self._load_requirements(section.id)
        room_pool = self._load_room_pool()
        generator = TimetableGenerator(self.store, self.settings)

        started = perf_counter()
        logger.info(
            "TIMETABLE GENERATION START | section_id=%s | grid=%sx%s | period_minutes=%s | overwrite=%s",
            section.id,
            grid.days_per_week,
            grid.periods_per_day,
            grid.period_duration_minutes,
            payload.overwrite_existing,
        )

        max_attempts = self.settings.generation_commit_attempts
        last_error: ConcurrentBookingError | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                removed = self._clear_for_generation(section.id, payload.overwrite_existing)
                plan = generator.generate(
                    section.id,
                    requirements,
                    grid,
                    home_room=section.home_room,
                    fallback_rooms=room_pool,
                    cancel_event=cancel_event,
                )
                self.store.insert_entries(plan.entries)
                self._commit()
            except ConcurrentBookingError as exc:
                self.db.rollback()
                last_error = exc
                logger.warning(
                    "TIMETABLE GENERATION COMMIT RETRY | section_id=%s | attempt=%s | max_attempts=%s",
                    section.id,
                    attempt,
                    max_attempts,
                )
                continue
            except InfeasibleScheduleError as exc:
                self.db.rollback()
                elapsed_ms = int((perf_counter() - started) * 1000)
                logger.warning(
                    "TIMETABLE GENERATION INFEASIBLE | section_id=%s | reason=%s | backtracks=%s | wall_ms=%s",
                    section.id,
                    exc.reason,
                    exc.backtracks,
                    elapsed_ms,
                )
                return GenerationResult(
                    section_id=section.id,
                    success=False,
                    unplaced=exc.unplaced,
                    backtracks=exc.backtracks,
                    attempts=attempt,
                    runtime_ms=elapsed_ms,
                    message=exc.message,
                )
            except AppError:
                self.db.rollback()
                raise
            except Exception:
                self.db.rollback()
                logger.exception("TIMETABLE GENERATION FAILED | section_id=%s | attempt=%s", section.id, attempt)
                raise

            elapsed_ms = int((perf_counter() - started) * 1000)
            logger.info(
                "TIMETABLE GENERATION COMPLETE | section_id=%s | created=%s | removed=%s | backtracks=%s | attempts=%s | wall_ms=%s",
                section.id,
                len(plan.entries),
                removed,
                plan.backtracks,
                attempt,
                elapsed_ms,
            )
            warnings = list(plan.warnings)
            if not section.home_room:
                warnings.insert(0, f"Section {section.id} has no home room; periods were placed in pool rooms")
            return GenerationResult(
                section_id=section.id,
                success=True,
                entries=[ScheduledPeriod.from_entry(entry) for entry in sorted(plan.entries, key=entry_sort_key)],
                entries_created=len(plan.entries),
                entries_removed=removed,
                backtracks=plan.backtracks,
                attempts=attempt,
                runtime_ms=elapsed_ms,
                warnings=warnings,
                message=f"Generated {len(plan.entries)} timetable entries for section {section.id}",
            )

        raise StoreFailure(
            f"Could not commit the timetable for section {section.id} after {max_attempts} attempts",
            details={"section_id": section.id, "attempts": max_attempts},
        ) from last_error

    def get_timetable(self, section_id: str) -> SectionTimetable:
        section = self._require_section(section_id)
        entries = self.store.list_for_section(section.id)
        return SectionTimetable(
            section_id=section.id,
            section_name=section.name,
            class_name=section.class_name,
            home_room=section.home_room,
            total_periods=len(entries),
            days=_group_by_day(entries, self._working_days()),
        )

    def get_section_day_schedule(self, section_id: str, day_of_week: DayOfWeek | str) -> DaySchedule:
        try:
            day = normalize_day(day_of_week)
        except ValueError as exc:
            raise TimetableValidationError(f"Unknown day of week: {day_of_week}") from exc
        section = self._require_section(section_id)
        entries = [entry for entry in self.store.list_for_section(section.id) if entry.time_slot.day_of_week == day]
        return DaySchedule(day_of_week=day, periods=[ScheduledPeriod.from_entry(entry) for entry in entries])

    def get_teacher_timetable(self, teacher_id: str) -> TeacherTimetable:
        if not teacher_id or not teacher_id.strip():
            raise TimetableValidationError("Teacher id is required")
        entries = self.store.list_for_teacher(teacher_id)
        days = self._working_days()
        return TeacherTimetable(
            teacher_id=teacher_id,
            days=_group_by_day(entries, days),
            statistics=self._teacher_statistics(entries, days),
        )

    @staticmethod
    def _teacher_statistics(
        entries: list[TimetableEntryPayload], days: tuple[DayOfWeek, ...]
    ) -> TeacherScheduleStatistics:
        per_day: Counter = Counter({day: 0 for day in days})
        for entry in entries:
            per_day[entry.time_slot.day_of_week] += 1
        ordered_days = sorted(per_day, key=DAY_INDEX.__getitem__)
        busiest = None
        if entries:
            busiest = max(ordered_days, key=lambda day: (per_day[day], -DAY_INDEX[day]))
        return TeacherScheduleStatistics(
            total_periods_per_week=len(entries),
            periods_per_day={day.value: per_day[day] for day in ordered_days},
            total_sections=len({entry.section_id for entry in entries}),
            total_subjects=len({entry.subject_id for entry in entries}),
            busiest_day=busiest,
            average_periods_per_day=round(len(entries) / len(days), 2) if days else 0.0,
        )
