from __future__ import annotations

from datetime import date, datetime

from icalendar import Calendar

from calendar_export import sessions_to_ics
from calendar_import import parse_ics_bytes
from calendar_rules import commitment_applies, commitment_interval
from models import StudySession, Task
from preservation import make_plan

ICS = b"""BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Test//EN
BEGIN:VEVENT
UID:lecture-1
SUMMARY:Lecture
DTSTART:20300107T090000
DTEND:20300107T110000
RRULE:FREQ=WEEKLY;BYDAY=MO,WE;UNTIL=20300301T000000
EXDATE:20300114T090000
END:VEVENT
BEGIN:VEVENT
UID:trip-1
SUMMARY:Trip
DTSTART;VALUE=DATE:20300110
DTEND;VALUE=DATE:20300112
END:VEVENT
BEGIN:VEVENT
UID:dentist-1
SUMMARY:Dentist
LOCATION:Main St
DTSTART:20300108T140000
DTEND:20300108T150000
END:VEVENT
BEGIN:VEVENT
UID:late-1
SUMMARY:Late shift
DTSTART:20300109T220000
DTEND:20300110T000000
END:VEVENT
BEGIN:VEVENT
UID:conf-1
SUMMARY:Conference
DTSTART:20300115T200000
DTEND:20300117T100000
END:VEVENT
BEGIN:VEVENT
UID:broken-1
SUMMARY:No end
DTSTART:20300120T100000
END:VEVENT
END:VCALENDAR
"""


def _by_title(commitments):
    return {c.title: c for c in commitments}


def test_import_orders_by_first_date() -> None:
    commitments = parse_ics_bytes(ICS)
    assert [c.title for c in commitments] == ["Lecture", "Dentist", "Late shift", "Trip", "Conference"]
    assert all(c.category == "imported" for c in commitments)


def test_import_weekly_rule() -> None:
    lecture = _by_title(parse_ics_bytes(ICS))["Lecture"]

    assert lecture.recurring
    assert lecture.days_of_week == [0, 2]
    assert (lecture.start_time, lecture.end_time) == ("09:00", "11:00")
    assert lecture.date_range.start_date == date(2030, 1, 7)
    assert lecture.date_range.end_date == date(2030, 3, 1)
    assert lecture.deleted_occurrences == [date(2030, 1, 14)]
    assert not commitment_applies(lecture, date(2030, 1, 14))
    assert commitment_applies(lecture, date(2030, 1, 16))
    assert not commitment_applies(lecture, date(2030, 3, 4))


def test_import_one_time_events() -> None:
    found = _by_title(parse_ics_bytes(ICS))

    dentist = found["Dentist"]
    assert not dentist.recurring
    assert dentist.specific_dates == [date(2030, 1, 8)]
    assert dentist.location == "Main St"

    assert found["Late shift"].end_time == "24:00"
    assert commitment_interval(found["Late shift"], date(2030, 1, 9)) == (22 * 60, 24 * 60)

    trip = found["Trip"]
    assert trip.is_all_day
    assert trip.specific_dates == [date(2030, 1, 10), date(2030, 1, 11)]

    conference = found["Conference"]
    assert conference.is_all_day
    assert conference.specific_dates == [date(2030, 1, 15), date(2030, 1, 16), date(2030, 1, 17)]


def test_export_writes_floating_times_and_skips_skipped() -> None:
    day = date(2030, 1, 7)
    sessions = [
        StudySession(task_id="t1", session_number=1, start_time="09:00", end_time="10:30", allocated_hours=1.5),
        StudySession(task_id="t1", session_number=2, start_time="11:00", end_time="12:00", allocated_hours=1,
                     status="skipped"),
        StudySession(task_id="t1", session_number=3, start_time="23:00", end_time="24:00", allocated_hours=1,
                     done=True, status="completed"),
    ]
    task = Task(id="t1", title="Essay", deadline=date(2030, 1, 10), estimated_hours=4)

    cal = Calendar.from_ical(sessions_to_ics([make_plan(day, sessions, 6)], [task]))
    events = list(cal.walk("VEVENT"))

    assert [str(e.get("UID")) for e in events] == ["t1-1@study-plan-scheduler", "t1-3@study-plan-scheduler"]
    assert str(events[0].get("SUMMARY")) == "Study: Essay"
    assert events[0].get("DTSTART").dt == datetime(2030, 1, 7, 9, 0)
    assert events[0].get("DTSTART").dt.tzinfo is None
    assert events[1].get("DTEND").dt == datetime(2030, 1, 8, 0, 0)
    assert "(done)" in str(events[1].get("DESCRIPTION"))
