from __future__ import annotations

import re
from enum import Enum


class DayOfWeek(str, Enum):
    monday = "Monday"
    tuesday = "Tuesday"
    wednesday = "Wednesday"
    thursday = "Thursday"
    friday = "Friday"
    saturday = "Saturday"
    sunday = "Sunday"


WEEK_DAYS: tuple[DayOfWeek, ...] = tuple(DayOfWeek)
DAY_INDEX: dict[DayOfWeek, int] = {day: index for index, day in enumerate(WEEK_DAYS)}

DAY_SHORT_MAP = {
    "Mon": DayOfWeek.monday,
    "Tue": DayOfWeek.tuesday,
    "Wed": DayOfWeek.wednesday,
    "Thu": DayOfWeek.thursday,
    "Fri": DayOfWeek.friday,
    "Sat": DayOfWeek.saturday,
    "Sun": DayOfWeek.sunday,
}

# Teaching weeks run Monday to Saturday at most.
MAX_TEACHING_DAYS = 6

TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def parse_time_to_minutes(value: str) -> int:
    if not TIME_PATTERN.match(value):
        raise ValueError("Time must be in HH:MM 24-hour format")
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def minutes_to_time(value: int) -> str:
    hours = value // 60
    minutes = value % 60
    return f"{hours:02d}:{minutes:02d}"


def normalize_day(value: DayOfWeek | str) -> DayOfWeek:
    if isinstance(value, DayOfWeek):
        return value
    cleaned = value.strip()
    if cleaned in DAY_SHORT_MAP:
        return DAY_SHORT_MAP[cleaned]
    return DayOfWeek(cleaned.capitalize())


def working_days(count: int) -> tuple[DayOfWeek, ...]:
    if not 1 <= count <= MAX_TEACHING_DAYS:
        raise ValueError(f"Working days must be between 1 and {MAX_TEACHING_DAYS}")
    return WEEK_DAYS[:count]
