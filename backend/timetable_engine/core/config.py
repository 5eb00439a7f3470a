from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from timetable_engine.schemas.settings import MAX_TEACHING_DAYS, TIME_PATTERN
from timetable_engine.schemas.timetable import MAX_SLOT_MINUTES, MIN_SLOT_MINUTES


BACKEND_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


class Settings(BaseSettings):
    # Resolve to backend/.env so the engine picks up the same file from any cwd.
    model_config = SettingsConfigDict(env_file=str(BACKEND_ENV_FILE), env_file_encoding="utf-8")

    project_name: str = "Timetable Engine"

    database_url: str = "sqlite+pysqlite:///./timetable.db"
    database_echo: bool = False

    school_start_time: str = "08:00"
    default_periods_per_day: int = 8
    default_period_minutes: int = 45
    break_after_period: int = 4
    break_duration_minutes: int = 30
    working_days_per_week: int = 6

    max_periods_per_day: int = 10
    min_period_minutes: int = 30
    max_period_minutes: int = 120

    generation_backtrack_budget: int = 20_000
    generation_timeout_seconds: float = 10.0
    generation_commit_attempts: int = 3

    @field_validator("school_start_time")
    @classmethod
    def validate_school_start_time(cls, value: str) -> str:
        value = value.strip()
        if not TIME_PATTERN.match(value):
            raise ValueError("school_start_time must be in HH:MM 24-hour format")
        return value

    @field_validator("working_days_per_week")
    @classmethod
    def validate_working_days(cls, value: int) -> int:
        if not 1 <= value <= MAX_TEACHING_DAYS:
            raise ValueError(f"working_days_per_week must be between 1 and {MAX_TEACHING_DAYS}")
        return value

    @model_validator(mode="after")
    def validate_relationships(self) -> "Settings":
        if self.min_period_minutes > self.max_period_minutes:
            raise ValueError("min_period_minutes cannot exceed max_period_minutes")
        if self.min_period_minutes < MIN_SLOT_MINUTES or self.max_period_minutes > MAX_SLOT_MINUTES:
            raise ValueError(f"Period bounds must lie within {MIN_SLOT_MINUTES}-{MAX_SLOT_MINUTES} minutes")
        if self.max_periods_per_day < 1:
            raise ValueError("max_periods_per_day must be at least 1")
        if self.generation_commit_attempts < 1:
            raise ValueError("generation_commit_attempts must be at least 1")
        if self.generation_backtrack_budget < 0:
            raise ValueError("generation_backtrack_budget cannot be negative")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
