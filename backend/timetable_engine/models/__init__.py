from timetable_engine.models.room import Room  # noqa: F401
from timetable_engine.models.section import Section, SectionSubject  # noqa: F401
from timetable_engine.models.timetable import TimetableEntry  # noqa: F401
