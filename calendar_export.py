from __future__ import annotations
from datetime import date, datetime, time, timedelta
from typing import Dict, List
from icalendar import Calendar, Event as IcsEvent
from calendar_rules import parse_clock
from models import StudyPlan, Task


def _at(day: date, clock: str) -> datetime:
    # floating local time; "24:00" rolls over to the next midnight
    minutes = parse_clock(clock)
    return datetime.combine(day, time.min) + timedelta(minutes=minutes)


def sessions_to_ics(plans: List[StudyPlan], tasks: List[Task]) -> bytes:
    """
    Export every non-skipped session as a VEVENT. Times are written without
    a timezone so calendar apps show them at the same local clock time.
    """
    cal = Calendar()
    cal.add("PRODID", "-//Study Plan Scheduler//Local//")
    cal.add("version", "2.0")
    cal.add("X-WR-CALNAME", "Study Plan")

    titles: Dict[str, str] = {t.id: t.title for t in tasks}
    for plan in sorted(plans, key=lambda p: p.date):
        for session in plan.sessions:
            if session.is_skipped or not session.start_time or not session.end_time:
                continue
            event = IcsEvent()
            event.add("uid", f"{session.task_id}-{session.session_number}@study-plan-scheduler")
            event.add("summary", f"Study: {titles.get(session.task_id, session.task_id)}")
            event.add("dtstart", _at(plan.date, session.start_time))
            event.add("dtend", _at(plan.date, session.end_time))
            description = f"Session {session.session_number}, {session.allocated_hours:g}h planned"
            if session.done:
                description += " (done)"
            elif session.is_manual_override and session.original_date:
                description += f" (moved from {session.original_date.isoformat()})"
            event.add("description", description + ".")
            cal.add_component(event)

    return cal.to_ical()
