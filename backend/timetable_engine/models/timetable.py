import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum as SAEnum, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from timetable_engine.db.base import Base
from timetable_engine.schemas.settings import DayOfWeek


class TimetableEntry(Base):
    __tablename__ = "timetable_entries"
    __table_args__ = (
        UniqueConstraint("section_id", "day_of_week", "period_number", name="uq_timetable_entries_section_slot"),
        UniqueConstraint("teacher_id", "day_of_week", "period_number", name="uq_timetable_entries_teacher_slot"),
        UniqueConstraint("room_number", "day_of_week", "period_number", name="uq_timetable_entries_room_slot"),
        Index("ix_timetable_entries_day_period", "day_of_week", "period_number"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    section_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(36), nullable=False)
    teacher_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    day_of_week: Mapped[DayOfWeek] = mapped_column(SAEnum(DayOfWeek, name="day_of_week"), nullable=False)
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    room_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())
