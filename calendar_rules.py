from __future__ import annotations
from datetime import date, timedelta
from typing import Iterator, List, NamedTuple, Optional, Tuple
from models import FixedCommitment, Settings, Task


MINUTES_PER_DAY = 24 * 60


class StudyWindow(NamedTuple):
    start_hour: int
    end_hour: int

    @property
    def start_minute(self) -> int:
        return self.start_hour * 60

    @property
    def end_minute(self) -> int:
        return self.end_hour * 60


def parse_clock(value: str) -> int:
    """
    Minutes since midnight for an "HH:MM" string. Raises ValueError when the
    string is not a clock time.
    """
    hours, sep, minutes = value.strip().partition(":")
    if not sep or not hours.isdigit() or not minutes.isdigit():
        raise ValueError(f"Not a HH:MM time: {value!r}")
    return int(hours) * 60 + int(minutes)


def format_clock(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def overlaps(start1: int, end1: int, start2: int, end2: int) -> bool:
    return start1 < end2 and start2 < end1


def commitment_applies(commitment: FixedCommitment, day: date) -> bool:
    if day in commitment.deleted_occurrences:
        return False

    if not commitment.recurring:
        return day in commitment.specific_dates

    if day.weekday() not in commitment.days_of_week:
        return False
    window = commitment.date_range
    if window is not None:
        if day < window.start_date:
            return False
        if window.end_date is not None and day > window.end_date:
            return False
    return True


def commitments_for_day(commitments: List[FixedCommitment], day: date) -> List[FixedCommitment]:
    return [c for c in commitments if commitment_applies(c, day)]


def is_all_day_on(commitment: FixedCommitment, day: date) -> bool:
    override = commitment.modified_occurrences.get(day)
    if override is not None and override.is_all_day is not None:
        return override.is_all_day
    return commitment.is_all_day


def commitment_interval(commitment: FixedCommitment, day: date) -> Optional[Tuple[int, int]]:
    """
    Busy interval in minutes for one occurrence, with any per-date override
    applied. All-day occurrences block the whole day; commitments without a
    usable time range block nothing.
    """
    if is_all_day_on(commitment, day):
        return (0, MINUTES_PER_DAY)

    start, end = commitment.start_time, commitment.end_time
    override = commitment.modified_occurrences.get(day)
    if override is not None:
        start = override.start_time or start
        end = override.end_time or end
    if not start or not end:
        return None
    try:
        start_min, end_min = parse_clock(start), parse_clock(end)
    except ValueError:
        return None
    if end_min <= start_min:
        return None
    return (start_min, end_min)


def commitment_intervals(commitments: List[FixedCommitment], day: date) -> List[Tuple[int, int]]:
    out = []
    for c in commitments_for_day(commitments, day):
        interval = commitment_interval(c, day)
        if interval is not None:
            out.append(interval)
    return sorted(out)


def effective_window(day: date, settings: Settings) -> StudyWindow:
    for override in settings.date_specific_study_windows:
        if override.is_active and override.date == day:
            return StudyWindow(override.start_hour, override.end_hour)
    for override in settings.day_specific_study_windows:
        if override.is_active and override.day_of_week == day.weekday():
            return StudyWindow(override.start_hour, override.end_hour)
    return StudyWindow(settings.study_window_start_hour, settings.study_window_end_hour)


def daily_base_hours(day: date, settings: Settings) -> float:
    for override in settings.day_specific_study_hours:
        if override.is_active and override.day_of_week == day.weekday():
            return override.study_hours
    return settings.daily_available_hours


def is_work_day(day: date, settings: Settings) -> bool:
    return day.weekday() in settings.work_days


def daily_capacity(day: date, settings: Settings, commitments: List[FixedCommitment]) -> float:
    """Study hours left on a day once counted commitments are subtracted."""
    if not is_work_day(day, settings):
        return 0.0

    blocked = 0
    for c in commitments_for_day(commitments, day):
        if is_all_day_on(c, day):
            return 0.0
        if not c.counts_toward_daily_hours:
            continue
        interval = commitment_interval(c, day)
        if interval is not None:
            blocked += interval[1] - interval[0]
    return max(0.0, daily_base_hours(day, settings) - blocked / 60)


def effective_deadline(task: Task, settings: Settings) -> date:
    return task.deadline - timedelta(days=settings.buffer_days)


def date_range(start: date, end: date) -> Iterator[date]:
    d = start
    while d <= end:
        yield d
        d += timedelta(days=1)


def eligible_days(start: date, end: date, settings: Settings) -> List[date]:
    return [d for d in date_range(start, end) if is_work_day(d, settings)]
