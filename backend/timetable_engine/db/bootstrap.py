from __future__ import annotations

import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

import timetable_engine.models  # noqa: F401
from timetable_engine.db.base import Base

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "timetable_entries": {
        "id",
        "section_id",
        "subject_id",
        "teacher_id",
        "day_of_week",
        "period_number",
        "start_time",
        "end_time",
        "room_number",
    },
    "sections": {"id", "name", "home_room"},
    "section_subjects": {"id", "section_id", "subject_id", "teacher_id", "weekly_periods"},
    "rooms": {"id", "room_number", "is_active"},
}

# One unique constraint per conflict dimension; commits rely on them to settle races.
REQUIRED_SLOT_CONSTRAINTS: dict[str, set[str]] = {
    "timetable_entries": {
        "uq_timetable_entries_section_slot",
        "uq_timetable_entries_teacher_slot",
        "uq_timetable_entries_room_slot",
    },
}


def _assert_required_columns(engine: Engine) -> None:
    with engine.begin() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())
        missing_tables = [name for name in REQUIRED_COLUMNS if name not in table_names]
        if missing_tables:
            raise RuntimeError(f"Missing required tables: {', '.join(sorted(missing_tables))}")

        missing_columns: list[str] = []
        for table_name, required in REQUIRED_COLUMNS.items():
            existing = {item["name"] for item in inspector.get_columns(table_name)}
            for column_name in sorted(required - existing):
                missing_columns.append(f"{table_name}.{column_name}")
        if missing_columns:
            raise RuntimeError(f"Missing required columns: {', '.join(missing_columns)}")


def _assert_slot_constraints(engine: Engine) -> None:
    with engine.begin() as connection:
        inspector = inspect(connection)
        missing: list[str] = []
        for table_name, required in REQUIRED_SLOT_CONSTRAINTS.items():
            existing = {item["name"] for item in inspector.get_unique_constraints(table_name)}
            existing |= {item["name"] for item in inspector.get_indexes(table_name) if item.get("unique")}
            for name in sorted(required - existing):
                missing.append(f"{table_name}.{name}")
        if missing:
            raise RuntimeError(f"Missing slot uniqueness constraints: {', '.join(missing)}")


def ensure_runtime_schema(engine: Engine | None = None) -> None:
    if engine is None:
        from timetable_engine.db.session import engine as default_engine

        engine = default_engine
    try:
        Base.metadata.create_all(bind=engine)
        _assert_required_columns(engine)
        _assert_slot_constraints(engine)
    except Exception as exc:  # pragma: no cover - runtime environment dependent
        logger.exception("Runtime schema bootstrap failed")
        raise RuntimeError("Runtime schema bootstrap failed") from exc
