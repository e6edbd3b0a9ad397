from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Dict, List, NamedTuple, Optional, Tuple
from pydantic import BaseModel
from calendar_rules import (
    StudyWindow,
    commitment_intervals,
    daily_capacity,
    effective_deadline,
    effective_window,
    eligible_days,
    format_clock,
    parse_clock,
)
from conflicts import ConflictPreventionEngine
from lifecycle import credited_hours
from models import (
    FixedCommitment,
    Settings,
    StudyPlan,
    StudySession,
    Task,
    UnscheduledTask,
)
from preservation import is_preserved, make_plan


logger = logging.getLogger(__name__)

MORNING_END = 12 * 60
AFTERNOON_END = 17 * 60
URGENT_DAYS = 3
FEASIBILITY_MIN_SHARE = 0.5
FREQUENCY_DAYS_PER_WEEK = {"weekly": 1, "3x-week": 3, "flexible": 4}

Interval = Tuple[int, int]


class GenerationResult(NamedTuple):
    plans: List[StudyPlan]
    unscheduled: List[UnscheduledTask]


class FeasibilityReport(BaseModel):
    task_id: str
    requested_hours: float
    scheduled_hours: float
    unscheduled_hours: float
    blocked: bool
    reason: Optional[str] = None


class _Shape(NamedTuple):
    min_minutes: int
    max_minutes: int


def _minutes(session: StudySession) -> int:
    try:
        return parse_clock(session.end_time) - parse_clock(session.start_time)
    except ValueError:
        return int(round(session.allocated_hours * 60))


def _busy_intervals(
    day: date,
    sessions: List[StudySession],
    settings: Settings,
    commitments: List[FixedCommitment],
) -> List[Interval]:
    busy = list(commitment_intervals(commitments, day))
    for avoided in settings.avoid_time_ranges:
        try:
            busy.append((parse_clock(avoided.start), parse_clock(avoided.end)))
        except ValueError:
            continue
    for s in sessions:
        if s.is_skipped:
            continue
        try:
            busy.append((parse_clock(s.start_time), parse_clock(s.end_time)))
        except ValueError:
            continue
    return sorted(busy)


def _free_gaps(busy: List[Interval], start: int, end: int, buffer: int) -> List[Interval]:
    # every busy interval is followed by `buffer` minutes of rest
    gaps: List[Interval] = []
    cursor = start
    for b_start, b_end in busy:
        if b_start > cursor:
            gap_end = min(b_start, end)
            if gap_end > cursor:
                gaps.append((cursor, gap_end))
        cursor = max(cursor, b_end + buffer)
        if cursor >= end:
            break
    if cursor < end:
        gaps.append((cursor, end))
    return gaps


def _clip(gaps: List[Interval], ranges: List[Interval]) -> List[Interval]:
    out = []
    for lo, hi in ranges:
        for g_start, g_end in gaps:
            start, end = max(g_start, lo), min(g_end, hi)
            if end > start:
                out.append((start, end))
    return sorted(out)


def _preferred_ranges(task: Task, window: StudyWindow) -> List[Interval]:
    bounds = {
        "morning": (window.start_minute, MORNING_END),
        "afternoon": (MORNING_END, AFTERNOON_END),
        "evening": (AFTERNOON_END, window.end_minute),
    }
    return [bounds[slot] for slot in task.preferred_time_slots if bounds[slot][0] < bounds[slot][1]]


def find_next_available_slot(
    day: date,
    minutes: int,
    sessions: List[StudySession],
    settings: Settings,
    commitments: List[FixedCommitment],
    not_before: int | None = None,
) -> Optional[Tuple[str, str]]:
    """
    Earliest start on `day` where `minutes` of study fit inside the study
    window without touching a commitment, an avoided range or another session.
    """
    window = effective_window(day, settings)
    start = window.start_minute if not_before is None else max(window.start_minute, not_before)
    busy = _busy_intervals(day, sessions, settings, commitments)
    for g_start, g_end in _free_gaps(busy, start, window.end_minute, settings.buffer_time_between_sessions):
        if g_end - g_start >= minutes:
            return format_clock(g_start), format_clock(g_start + minutes)
    return None


class _Day:
    def __init__(
        self,
        day: date,
        settings: Settings,
        commitments: List[FixedCommitment],
        locked: List[StudySession],
        not_before: int | None,
    ) -> None:
        self.date = day
        self.settings = settings
        self.commitments = commitments
        self.window = effective_window(day, settings)
        self.available_hours = daily_capacity(day, settings, commitments)
        self.not_before = not_before
        self.locked = locked
        self.new: List[StudySession] = []
        self.blocked: List[Interval] = []
        used = sum(_minutes(s) for s in locked if not s.is_skipped)
        self.free_minutes = max(0, int(round(self.available_hours * 60)) - used)

    @property
    def sessions(self) -> List[StudySession]:
        return self.locked + self.new

    def gaps(self, exclude: List[StudySession] | None = None) -> List[Interval]:
        others = [s for s in self.sessions if not exclude or all(s is not x for x in exclude)]
        busy = sorted(_busy_intervals(self.date, others, self.settings, self.commitments) + self.blocked)
        start = self.window.start_minute
        if self.not_before is not None:
            start = max(start, self.not_before)
        return _free_gaps(busy, start, self.window.end_minute, self.settings.buffer_time_between_sessions)


def _find_slot(book: _Day, task: Task, want: int, floor: int) -> Optional[Interval]:
    gaps = book.gaps()
    preferred = _preferred_ranges(task, book.window)
    pools = [_clip(gaps, preferred), gaps] if preferred else [gaps]
    for pool in pools:
        for g_start, g_end in pool:
            if g_end - g_start >= want:
                return g_start, want
    for pool in pools:
        widest = max(pool, key=lambda g: g[1] - g[0], default=None)
        if widest is not None and widest[1] - widest[0] >= floor:
            return widest[0], widest[1] - widest[0]
    return None


def _fill_day(
    book: _Day,
    task: Task,
    want: int,
    task_left: int,
    shape: _Shape,
    engine: ConflictPreventionEngine,
) -> int:
    """Place up to `want` minutes of `task` on one day; return minutes placed."""
    placed = 0
    while placed < want and book.free_minutes > 0:
        chunk = min(want - placed, shape.max_minutes, book.free_minutes)
        if chunk < shape.min_minutes and task_left - placed >= shape.min_minutes:
            break
        slot = _find_slot(book, task, chunk, min(shape.min_minutes, chunk))
        if slot is None:
            break
        start, length = slot
        start_time, end_time = format_clock(start), format_clock(start + length)
        verdict = engine.is_time_slot_available(book.date, start_time, end_time, book.sessions)
        if not verdict.is_valid:
            logger.debug(
                "Rejected %s %s-%s for %s: %s",
                book.date, start_time, end_time, task.id,
                "; ".join(c.message for c in verdict.conflicts),
            )
            book.blocked.append((start, start + length))
            continue
        book.new.append(StudySession(
            task_id=task.id,
            session_number=1,
            start_time=start_time,
            end_time=end_time,
            allocated_hours=length / 60,
        ))
        book.free_minutes -= length
        placed += length
    return placed


def _shape(task: Task, settings: Settings) -> _Shape:
    max_hours = settings.max_consecutive_hours
    if task.max_session_length:
        max_hours = min(max_hours, task.max_session_length)
    min_minutes = task.min_work_block or settings.min_session_length
    return _Shape(min_minutes, max(min_minutes, int(round(max_hours * 60))))


def _front_share(task: Task, settings: Settings, today: date) -> float:
    mode = settings.study_plan_mode
    if mode == "eisenhower":
        urgent = (effective_deadline(task, settings) - today).days <= URGENT_DAYS
        return 1.0 if task.importance or urgent else 0.0
    if mode == "balanced":
        return 0.6 if task.importance else 0.2
    return 0.0


def _split_evenly(total: int, count: int) -> List[int]:
    base, extra = divmod(total, count)
    return [base + (1 if i < extra else 0) for i in range(count)]


def _spaced(days: List[date], count: int) -> List[date]:
    n = len(days)
    if count >= n:
        return list(days)
    if count == 1:
        return [days[0]]
    return [days[round(i * (n - 1) / (count - 1))] for i in range(count)]


def _targets(
    task: Task,
    days: List[date],
    books: Dict[date, _Day],
    minutes: int,
    shape: _Shape,
    settings: Settings,
    today: date,
) -> Dict[date, int]:
    targets = {d: 0 for d in days}
    front_left = int(round(minutes * _front_share(task, settings, today)))
    spread = minutes - front_left
    for d in days:
        if front_left <= 0:
            break
        take = min(front_left, books[d].free_minutes)
        targets[d] += take
        front_left -= take
    spread += front_left

    if spread > 0:
        count = len(days)
        if spread < count * shape.min_minutes:
            count = max(1, spread // shape.min_minutes)
        for d, amount in zip(_spaced(days, count), _split_evenly(spread, count)):
            targets[d] += amount
    return targets


def _thin_days(task: Task, days: List[date], books: Dict[date, _Day], minutes: int) -> List[date]:
    per_week = FREQUENCY_DAYS_PER_WEEK.get(task.target_frequency or "daily")
    if per_week is None:
        return days
    if task.target_frequency == "flexible" and task.importance:
        per_week = 5

    weeks: Dict[Tuple[int, int], List[date]] = {}
    for d in days:
        weeks.setdefault(tuple(d.isocalendar()[:2]), []).append(d)
    chosen: List[date] = []
    for week_days in weeks.values():
        chosen.extend(sorted(week_days, key=lambda d: (-books[d].free_minutes, d))[:per_week])
    chosen.sort()

    if sum(books[d].free_minutes for d in chosen) < minutes:
        logger.debug("frequency_deadline_conflict for %s: using every available day", task.id)
        return days
    return chosen


def _place_spread(
    task: Task,
    days: List[date],
    books: Dict[date, _Day],
    minutes: int,
    settings: Settings,
    today: date,
    engine: ConflictPreventionEngine,
) -> int:
    usable = [d for d in days if books[d].free_minutes > 0]
    if not usable:
        return minutes
    shape = _shape(task, settings)
    candidates = _thin_days(task, usable, books, minutes)
    targets = _targets(task, candidates, books, minutes, shape, settings, today)

    left = minutes
    for d in candidates:
        if targets[d] > 0 and left > 0:
            left -= _fill_day(books[d], task, min(targets[d], left), left, shape, engine)

    pools = [candidates] if candidates == usable else [candidates, usable]
    for pool in pools:
        for d in pool:
            if left <= 0:
                return 0
            left -= _fill_day(books[d], task, left, left, shape, engine)
    return max(0, left)


def _place_one_sitting(
    task: Task,
    days: List[date],
    books: Dict[date, _Day],
    minutes: int,
    engine: ConflictPreventionEngine,
) -> int:
    ordered = days if task.importance else list(reversed(days))
    whole = _Shape(minutes, minutes)
    for d in ordered:
        if books[d].free_minutes < minutes:
            continue
        if _fill_day(books[d], task, minutes, minutes, whole, engine) == minutes:
            return 0
    return minutes


def _combine_adjacent(book: _Day, shapes: Dict[str, _Shape]) -> None:
    merged: List[StudySession] = []
    for s in sorted(book.new, key=lambda s: parse_clock(s.start_time)):
        prev = merged[-1] if merged else None
        if (
            prev is not None
            and prev.task_id == s.task_id
            and prev.end_time == s.start_time
            and _minutes(prev) + _minutes(s) <= shapes[s.task_id].max_minutes
        ):
            prev.end_time = s.end_time
            prev.allocated_hours = _minutes(prev) / 60
        else:
            merged.append(s)
    book.new = merged


def _try_extend(
    book: _Day,
    session: StudySession,
    extra: int,
    shape: _Shape,
    engine: ConflictPreventionEngine,
    exclude: List[StudySession],
) -> bool:
    start, end = parse_clock(session.start_time), parse_clock(session.end_time)
    if end - start + extra > shape.max_minutes or book.free_minutes < extra:
        return False
    if not any(g_start <= start and end + extra <= g_end for g_start, g_end in book.gaps(exclude=exclude)):
        return False
    end_time = format_clock(end + extra)
    others = [s for s in book.sessions if all(s is not x for x in exclude)]
    if not engine.is_time_slot_available(book.date, session.start_time, end_time, others).is_valid:
        return False
    session.end_time = end_time
    session.allocated_hours = (end + extra - start) / 60
    book.free_minutes -= extra
    return True


def _absorb_slivers(
    books: Dict[date, _Day],
    task_id: str,
    shape: _Shape,
    engine: ConflictPreventionEngine,
) -> int:
    """
    Fold sessions shorter than the minimum into another session of the same
    task. Returns the minutes that could not be folded and were dropped.
    """
    dropped = 0
    while True:
        placed = [(book, s) for book in books.values() for s in book.new if s.task_id == task_id]
        if len(placed) < 2:
            return dropped
        slivers = [(book, s) for book, s in placed if _minutes(s) < shape.min_minutes]
        if not slivers:
            return dropped

        book, sliver = slivers[0]
        extra = _minutes(sliver)
        book.new = [s for s in book.new if s is not sliver]
        book.free_minutes += extra
        hosts = sorted(
            (pair for pair in placed if pair[1] is not sliver),
            key=lambda pair: (pair[0].date != book.date, pair[0].date),
        )
        if not any(_try_extend(b, s, extra, shape, engine, exclude=[s]) for b, s in hosts):
            logger.debug("Dropped %d minute sliver of %s on %s", extra, task_id, book.date)
            dropped += extra


def _task_order(task: Task, settings: Settings, index: int):
    return (not task.importance, effective_deadline(task, settings), task.created_at, index)


def generate_plan(
    tasks: List[Task],
    settings: Settings,
    commitments: List[FixedCommitment],
    previous_plans: List[StudyPlan] | None = None,
    today: date | None = None,
    now: datetime | None = None,
) -> GenerationResult:
    """
    Build the full plan set from `today` to the latest effective deadline.

    Sessions from `previous_plans` that carry progress or a manual placement
    are kept where they are and count toward their task; everything else is
    planned from scratch. Hours that cannot be placed before a task's
    effective deadline are reported in `unscheduled` rather than raised.
    """
    if today is None:
        today = now.date() if now is not None else date.today()
    engine = ConflictPreventionEngine(settings, commitments, today=today)
    known = {t.id for t in tasks}

    locked: Dict[date, List[StudySession]] = {}
    for plan in previous_plans or []:
        for s in plan.sessions:
            if s.task_id in known and is_preserved(s, plan.date, today):
                locked.setdefault(plan.date, []).append(s.model_copy(deep=True))
    all_locked = [s for sessions in locked.values() for s in sessions]

    remaining: Dict[str, int] = {}
    pending: List[Task] = []
    for task in tasks:
        if task.status == "completed":
            continue
        mine = [s for s in all_locked if s.task_id == task.id]
        in_flight = sum(s.allocated_hours for s in mine if not s.is_finished)
        left = int(round((task.estimated_hours - credited_hours(mine, settings) - in_flight) * 60))
        if left > 0:
            pending.append(task)
            remaining[task.id] = left

    books: Dict[date, _Day] = {}
    if pending:
        horizon_end = max(effective_deadline(t, settings) for t in pending)
        not_before = None
        if now is not None and now.date() == today:
            not_before = now.hour * 60 + now.minute + (1 if now.second or now.microsecond else 0)
        for d in eligible_days(today, horizon_end, settings):
            books[d] = _Day(
                d, settings, commitments, locked.pop(d, []),
                not_before if d == today else None,
            )

    order = sorted(enumerate(pending), key=lambda pair: _task_order(pair[1], settings, pair[0]))
    shapes: Dict[str, _Shape] = {}
    leftover: Dict[str, int] = {}
    for _, task in order:
        minutes = remaining[task.id]
        shapes[task.id] = _shape(task, settings)
        first = max(today, task.start_date or today)
        last = effective_deadline(task, settings)
        days = [d for d in books if first <= d <= last]
        if task.is_one_time_task:
            shapes[task.id] = _Shape(minutes, minutes)
            leftover[task.id] = _place_one_sitting(task, days, books, minutes, engine)
        else:
            leftover[task.id] = _place_spread(task, days, books, minutes, settings, today, engine)
        logger.debug("Placed %d of %d minutes for %s", minutes - leftover[task.id], minutes, task.id)

    for book in books.values():
        _combine_adjacent(book, shapes)
    for task in pending:
        if not task.is_one_time_task:
            leftover[task.id] += _absorb_slivers(books, task.id, shapes[task.id], engine)

    next_number: Dict[str, int] = {}
    for s in all_locked:
        next_number[s.task_id] = max(next_number.get(s.task_id, 0), s.session_number)
    fresh = sorted(
        ((book.date, s) for book in books.values() for s in book.new),
        key=lambda pair: (pair[0], pair[1].start_time),
    )
    for _, s in fresh:
        next_number[s.task_id] = next_number.get(s.task_id, 0) + 1
        s.session_number = next_number[s.task_id]

    plans = [make_plan(d, book.sessions, book.available_hours) for d, book in books.items() if book.sessions]
    for d, sessions in locked.items():
        plans.append(make_plan(d, sessions, daily_capacity(d, settings, commitments)))
    plans.sort(key=lambda p: p.date)

    unscheduled = [
        UnscheduledTask(
            task_id=task.id,
            task_title=task.title,
            unscheduled_minutes=leftover[task.id],
            importance=task.importance,
            deadline=task.deadline,
        )
        for task in pending
        if leftover.get(task.id, 0) > 1
    ]
    logger.debug("Generated %d plans with %d unscheduled tasks", len(plans), len(unscheduled))
    return GenerationResult(plans, unscheduled)


def assess_add_task_feasibility(
    task: Task,
    tasks: List[Task],
    settings: Settings,
    commitments: List[FixedCommitment],
    previous_plans: List[StudyPlan] | None = None,
    today: date | None = None,
    now: datetime | None = None,
) -> FeasibilityReport:
    """
    Dry-run a new task against the current workload. The task is blocked when
    nothing, or less than half of it, fits before its effective deadline.
    """
    requested = int(round(task.estimated_hours * 60))
    result = generate_plan(tasks + [task], settings, commitments, previous_plans, today=today, now=now)
    missing = next((u.unscheduled_minutes for u in result.unscheduled if u.task_id == task.id), 0)
    scheduled = max(0, requested - missing)

    blocked = False
    reason = None
    if requested > 0 and scheduled == 0:
        blocked = True
        reason = "No study time is available before the deadline"
    elif scheduled < requested * FEASIBILITY_MIN_SHARE:
        blocked = True
        reason = f"Only {scheduled / 60:.1f}h of {requested / 60:.1f}h fits before the deadline"
    elif missing > 0:
        reason = f"{missing / 60:.1f}h will stay unscheduled"

    return FeasibilityReport(
        task_id=task.id,
        requested_hours=round(requested / 60, 2),
        scheduled_hours=round(scheduled / 60, 2),
        unscheduled_hours=round(missing / 60, 2),
        blocked=blocked,
        reason=reason,
    )
