from __future__ import annotations

from dataclasses import dataclass

from timetable_engine.core.config import Settings, get_settings
from timetable_engine.core.exceptions import TimetableValidationError
from timetable_engine.schemas.settings import DayOfWeek, minutes_to_time, parse_time_to_minutes
from timetable_engine.schemas.timetable import TimeSlot

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class SchedulePolicy:
    """Period clock for one school day.

    Periods run back to back from ``school_start_minutes``; a single break of
    ``break_minutes`` follows period ``break_after_period``.
    """

    school_start_minutes: int
    period_minutes: int
    break_after_period: int
    break_minutes: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None, period_minutes: int | None = None) -> "SchedulePolicy":
        settings = settings or get_settings()
        return cls(
            school_start_minutes=parse_time_to_minutes(settings.school_start_time),
            period_minutes=period_minutes or settings.default_period_minutes,
            break_after_period=settings.break_after_period,
            break_minutes=settings.break_duration_minutes,
        )

    def period_bounds(self, period_number: int) -> tuple[str, str]:
        if period_number < 1:
            raise TimetableValidationError("Period number must be at least 1", details={"period_number": period_number})
        start = self.school_start_minutes + (period_number - 1) * self.period_minutes
        if self.break_after_period > 0 and period_number > self.break_after_period:
            start += self.break_minutes
        end = start + self.period_minutes
        if end >= MINUTES_PER_DAY:
            raise TimetableValidationError(
                f"Period {period_number} would end after midnight",
                details={"period_number": period_number, "period_minutes": self.period_minutes},
            )
        return minutes_to_time(start), minutes_to_time(end)

    def time_slot(self, day_of_week: DayOfWeek, period_number: int) -> TimeSlot:
        start_time, end_time = self.period_bounds(period_number)
        return TimeSlot(
            day_of_week=day_of_week,
            period_number=period_number,
            start_time=start_time,
            end_time=end_time,
        )
