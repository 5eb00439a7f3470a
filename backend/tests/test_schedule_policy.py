import pytest

from timetable_engine.core.config import Settings
from timetable_engine.core.exceptions import TimetableValidationError
from timetable_engine.schemas.settings import DayOfWeek
from timetable_engine.services.schedule_policy import SchedulePolicy


def test_policy_reads_settings_defaults():
    policy = SchedulePolicy.from_settings(Settings(_env_file=None))

    assert policy.school_start_minutes == 8 * 60
    assert policy.period_minutes == 45
    assert policy.break_after_period == 4
    assert policy.break_minutes == 30


def test_break_shifts_later_periods():
    policy = SchedulePolicy(school_start_minutes=8 * 60, period_minutes=40, break_after_period=2, break_minutes=15)

    assert policy.period_bounds(1) == ("08:00", "08:40")
    assert policy.period_bounds(2) == ("08:40", "09:20")
    assert policy.period_bounds(3) == ("09:35", "10:15")


def test_time_slot_for_period():
    policy = SchedulePolicy.from_settings(Settings(_env_file=None, school_start_time="09:00"), period_minutes=60)

    slot = policy.time_slot(DayOfWeek.thursday, 2)

    assert str(slot) == "Thursday period 2 (10:00-11:00)"
    assert slot.duration_minutes == 60


def test_period_past_midnight_is_rejected():
    policy = SchedulePolicy(school_start_minutes=22 * 60, period_minutes=60, break_after_period=0, break_minutes=0)

    assert policy.period_bounds(1) == ("22:00", "23:00")
    with pytest.raises(TimetableValidationError):
        policy.period_bounds(2)
    with pytest.raises(TimetableValidationError):
        policy.period_bounds(0)
