from __future__ import annotations
import logging
from datetime import datetime, date, time, timedelta
from typing import List, Optional
from uuid import uuid4
from icalendar import Calendar
from calendar_rules import format_clock
from models import DateRange, FixedCommitment


logger = logging.getLogger(__name__)

WEEKDAY_CODES = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}


def _to_local(value) -> date | datetime | None:
    dt_value = getattr(value, "dt", value)
    if isinstance(dt_value, datetime):
        if dt_value.tzinfo:
            dt_value = dt_value.astimezone().replace(tzinfo=None)
        return dt_value
    if isinstance(dt_value, date):
        return dt_value
    return None


def _as_date(value: date | datetime) -> date:
    return value.date() if isinstance(value, datetime) else value


def _clock(value: datetime) -> str:
    return format_clock(value.hour * 60 + value.minute)


def _exdates(component) -> List[date]:
    raw = component.get("EXDATE")
    if raw is None:
        return []
    groups = raw if isinstance(raw, list) else [raw]
    out = set()
    for group in groups:
        for item in getattr(group, "dts", []):
            value = _to_local(item)
            if value is not None:
                out.add(_as_date(value))
    return sorted(out)


def _end_of(component, start: date | datetime) -> Optional[date | datetime]:
    dtend = component.get("DTEND")
    if dtend is not None:
        return _to_local(dtend)
    duration = component.get("DURATION")
    if duration is not None:
        return start + duration.dt
    if not isinstance(start, datetime):
        return start + timedelta(days=1)
    return None


def _span_dates(start: date, end: date) -> List[date]:
    days = []
    d = start
    while d < end:
        days.append(d)
        d += timedelta(days=1)
    return days or [start]


def _weekly_commitment(base: dict, rrule, start: date | datetime, end: date | datetime) -> FixedCommitment:
    freq = (rrule.get("FREQ") or ["WEEKLY"])[0]
    if freq == "DAILY":
        days = list(range(7))
    else:
        days = sorted({WEEKDAY_CODES[code[-2:]] for code in rrule.get("BYDAY", []) if code[-2:] in WEEKDAY_CODES})
        days = days or [_as_date(start).weekday()]

    until = None
    if rrule.get("UNTIL"):
        until = _as_date(_to_local(rrule["UNTIL"][0]))

    if isinstance(start, datetime) and isinstance(end, datetime):
        base.update(start_time=_clock(start), end_time=_end_clock(start, end))
    else:
        base.update(is_all_day=True)
    return FixedCommitment(
        recurring=True,
        days_of_week=days,
        date_range=DateRange(start_date=_as_date(start), end_date=until),
        **base,
    )


def _end_clock(start: datetime, end: datetime) -> str:
    if end.date() > start.date() and end.time() == time.min:
        return "24:00"
    return _clock(end)


def parse_ics_bytes(data: bytes) -> List[FixedCommitment]:
    """
    Read VEVENTs as fixed commitments. Weekly and daily RRULEs become
    recurring commitments (BYDAY/UNTIL honoured, EXDATE becomes deleted
    occurrences); other events become one-time commitments. A timed event
    spanning several days blocks each of those days entirely.
    """
    cal = Calendar.from_ical(data)
    out: List[FixedCommitment] = []

    for component in cal.walk("VEVENT"):
        dtstart = component.get("DTSTART")
        if dtstart is None:
            continue
        start = _to_local(dtstart)
        if start is None:
            continue
        end = _end_of(component, start)
        if end is None or isinstance(end, datetime) != isinstance(start, datetime) or end <= start:
            logger.debug("Skipping event without a usable end: %s", component.get("SUMMARY"))
            continue

        base = {
            "id": str(component.get("UID") or uuid4()),
            "title": str(component.get("SUMMARY", "Untitled")),
            "location": str(component.get("LOCATION", "")),
            "description": str(component.get("DESCRIPTION", "")),
            "category": "imported",
            "deleted_occurrences": _exdates(component),
        }

        rrule = component.get("RRULE")
        if rrule is not None and (rrule.get("FREQ") or [""])[0] in ("WEEKLY", "DAILY"):
            out.append(_weekly_commitment(base, rrule, start, end))
            continue
        if rrule is not None:
            logger.debug("Unsupported RRULE %s, importing first occurrence only", rrule.to_ical())

        if not isinstance(start, datetime):
            out.append(FixedCommitment(
                recurring=False,
                specific_dates=_span_dates(start, _as_date(end)),
                is_all_day=True,
                **base,
            ))
            continue

        end_clock = _end_clock(start, end)
        if start.date() == end.date() or (end_clock == "24:00" and end.date() == start.date() + timedelta(days=1)):
            out.append(FixedCommitment(
                recurring=False,
                specific_dates=[start.date()],
                start_time=_clock(start),
                end_time=end_clock,
                **base,
            ))
        else:
            last = end.date() if end.time() > time.min else end.date() - timedelta(days=1)
            out.append(FixedCommitment(
                recurring=False,
                specific_dates=_span_dates(start.date(), last + timedelta(days=1)),
                is_all_day=True,
                **base,
            ))

    return sorted(out, key=lambda c: (c.date_range.start_date if c.date_range else min(c.specific_dates), c.title))
