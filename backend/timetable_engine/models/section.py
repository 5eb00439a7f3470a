import uuid
from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from timetable_engine.db.base import Base


class Section(Base):
    __tablename__ = "sections"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    class_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    home_room: Mapped[str | None] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SectionSubject(Base):
    __tablename__ = "section_subjects"
    __table_args__ = (
        UniqueConstraint("section_id", "subject_id", "teacher_id", name="uq_section_subjects_section_subject_teacher"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    section_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(36), nullable=False)
    subject_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    teacher_id: Mapped[str] = mapped_column(String(36), nullable=False)
    weekly_periods: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
