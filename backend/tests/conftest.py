import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timetable_engine.core.config import Settings
from timetable_engine.db.base import Base
from timetable_engine.models.room import Room
from timetable_engine.models.section import Section, SectionSubject
from timetable_engine.schemas.settings import DayOfWeek
from timetable_engine.schemas.timetable import TimeSlot, TimetableEntryPayload
from timetable_engine.services.entry_store import SqlAlchemyEntryStore
from timetable_engine.services.timetable_service import TimetableService


@pytest.fixture()
def engine():
    # one shared in-memory connection per test
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def db(engine):
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+pysqlite://",
        generation_backtrack_budget=500,
        generation_timeout_seconds=30.0,
    )


@pytest.fixture()
def store(db):
    return SqlAlchemyEntryStore(db)


@pytest.fixture()
def service(db, settings):
    return TimetableService(db, settings=settings)


def make_slot(day=DayOfWeek.monday, period=1, start="08:00", end="08:45"):
    return TimeSlot(day_of_week=day, period_number=period, start_time=start, end_time=end)


def make_entry(entry_id, section_id="S1", subject_id="MATH", teacher_id="T1", room="101", slot=None):
    return TimetableEntryPayload(
        id=entry_id,
        section_id=section_id,
        subject_id=subject_id,
        teacher_id=teacher_id,
        room_number=room,
        time_slot=slot or make_slot(),
    )


def seed_section(db, section_id="S1", home_room="101", subjects=(), rooms=(), name="A", class_name="Grade 8"):
    db.add(Section(id=section_id, name=name, class_name=class_name, home_room=home_room))
    for subject_id, teacher_id, weekly_periods in subjects:
        db.add(
            SectionSubject(
                section_id=section_id,
                subject_id=subject_id,
                subject_name=subject_id.title(),
                teacher_id=teacher_id,
                weekly_periods=weekly_periods,
            )
        )
    for room_number in rooms:
        db.add(Room(room_number=room_number))
    db.commit()
