from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Dict, FrozenSet, List, Optional
from calendar_rules import parse_clock
from models import (
    RescheduleRecord,
    Settings,
    SkipMetadata,
    StudySession,
    Task,
)


logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "scheduled": frozenset({"in_progress", "completed", "skipped", "missed"}),
    "in_progress": frozenset({"completed", "skipped", "missed"}),
    "missed": frozenset({
        "rescheduled",
        "redistributed",
        "skipped_user",
        "skipped_system",
        "failed_redistribution",
    }),
    "rescheduled": frozenset({"in_progress", "completed", "skipped", "missed"}),
    "redistributed": frozenset({"in_progress", "completed", "skipped", "missed"}),
    "failed_redistribution": frozenset({
        "rescheduled",
        "redistributed",
        "skipped_user",
        "skipped_system",
    }),
    "completed": frozenset(),
    "skipped": frozenset(),
    "skipped_user": frozenset(),
    "skipped_system": frozenset(),
}
TERMINAL = frozenset(k for k, v in TRANSITIONS.items() if not v)
MOVABLE = frozenset({"scheduled", "missed", "rescheduled", "redistributed", "failed_redistribution"})


class SessionTransitionError(ValueError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move a session from {current!r} to {target!r}")
        self.current = current
        self.target = target


def check_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, frozenset()):
        raise SessionTransitionError(current, target)


def _interval(session: StudySession) -> Optional[tuple]:
    try:
        return parse_clock(session.start_time), parse_clock(session.end_time)
    except ValueError:
        return None


def derive_runtime_status(session: StudySession, plan_date: date, now: datetime) -> str:
    """
    Status as seen at wall-clock time `now`. "missed" and the implicit
    "in_progress" of a session whose slot is running are never stored.
    """
    if session.done or session.status == "completed":
        return "completed"
    if session.status in TERMINAL or session.status in ("missed", "failed_redistribution"):
        return session.status
    if session.status == "in_progress":
        return "in_progress" if plan_date >= now.date() else "missed"

    today = now.date()
    if plan_date < today:
        return "missed"
    if plan_date == today:
        interval = _interval(session)
        minute = now.hour * 60 + now.minute
        if interval and interval[0] <= minute < interval[1]:
            return "in_progress"
    return session.status


def start(session: StudySession, plan_date: date, now: datetime) -> StudySession:
    current = derive_runtime_status(session, plan_date, now)
    if current != "in_progress":
        check_transition(current, "in_progress")
    return session.model_copy(update={"status": "in_progress"})


def mark_done(
    session: StudySession,
    plan_date: date,
    now: datetime,
    actual_hours: float | None = None,
) -> StudySession:
    current = derive_runtime_status(session, plan_date, now)
    # a missed session can still be logged as done after the fact
    if current not in ("missed", "failed_redistribution"):
        check_transition(current, "completed")
    logger.debug("Session %s-%s completed", session.task_id, session.session_number)
    return session.model_copy(update={
        "status": "completed",
        "done": True,
        "actual_hours": session.allocated_hours if actual_hours is None else actual_hours,
        "completed_at": now,
    })


def skip(
    session: StudySession,
    plan_date: date,
    now: datetime,
    partial_hours: float | None = None,
    reason: str = "user_choice",
) -> StudySession:
    current = derive_runtime_status(session, plan_date, now)
    target = "skipped_user" if current in ("missed", "failed_redistribution") else "skipped"
    check_transition(current, target)
    return session.model_copy(update={
        "status": target,
        "skip_metadata": SkipMetadata(skipped_at=now, reason=reason, partial_hours=partial_hours),
    })


def undo(session: StudySession) -> StudySession:
    """Revert a completed or skipped session to scheduled."""
    if not session.is_finished:
        raise SessionTransitionError(session.status, "scheduled")
    return session.model_copy(update={
        "status": "scheduled",
        "done": False,
        "actual_hours": None,
        "completed_at": None,
        "skip_metadata": None,
    })


def _moved(
    session: StudySession,
    plan_date: date,
    new_date: date,
    start_time: str,
    end_time: str,
    now: datetime,
    reason: str,
) -> Dict[str, object]:
    minutes = parse_clock(end_time) - parse_clock(start_time)
    record = RescheduleRecord(
        from_date=plan_date,
        from_start=session.start_time,
        from_end=session.end_time,
        to_date=new_date,
        to_start=start_time,
        to_end=end_time,
        timestamp=now,
        reason=reason,
    )
    return {
        "start_time": start_time,
        "end_time": end_time,
        "allocated_hours": minutes / 60,
        "original_time": session.original_time or session.start_time,
        "original_date": session.original_date or plan_date,
        "rescheduled_at": now,
        "reschedule_history": session.reschedule_history + [record],
    }


def move(
    session: StudySession,
    plan_date: date,
    new_date: date,
    start_time: str,
    end_time: str,
    now: datetime,
) -> StudySession:
    """
    Manual drag/move. The session becomes a sticky manual override; a missed
    session becomes "rescheduled", anything else keeps its status.
    """
    current = derive_runtime_status(session, plan_date, now)
    if current not in MOVABLE:
        raise SessionTransitionError(current, "rescheduled")
    if parse_clock(end_time) <= parse_clock(start_time):
        raise ValueError(f"End time {end_time} is not after start time {start_time}")

    update = _moved(session, plan_date, new_date, start_time, end_time, now, "manual")
    update["is_manual_override"] = True
    if current in ("missed", "failed_redistribution"):
        update["status"] = "rescheduled"
    return session.model_copy(update=update)


def mark_redistributed(
    session: StudySession,
    plan_date: date,
    new_date: date,
    start_time: str,
    end_time: str,
    now: datetime,
) -> StudySession:
    current = derive_runtime_status(session, plan_date, now)
    check_transition(current, "redistributed")
    update = _moved(session, plan_date, new_date, start_time, end_time, now, "redistribution")
    update["status"] = "redistributed"
    return session.model_copy(update=update)


def mark_failed_redistribution(session: StudySession, plan_date: date, now: datetime) -> StudySession:
    current = derive_runtime_status(session, plan_date, now)
    check_transition(current, "failed_redistribution")
    record = RescheduleRecord(
        from_date=plan_date,
        from_start=session.start_time,
        from_end=session.end_time,
        to_date=plan_date,
        to_start=session.start_time,
        to_end=session.end_time,
        timestamp=now,
        reason="redistribution",
        success=False,
    )
    return session.model_copy(update={
        "status": "failed_redistribution",
        "reschedule_history": session.reschedule_history + [record],
    })


def skip_credit(session: StudySession, settings: Settings) -> float:
    meta = session.skip_metadata
    if settings.credit_partial_skip_hours and meta is not None and meta.partial_hours is not None:
        return meta.partial_hours
    return session.allocated_hours


def credited_hours(sessions: List[StudySession], settings: Settings) -> float:
    """Hours a task no longer needs scheduled: done work plus skipped sessions."""
    total = 0.0
    for s in sessions:
        if s.done or s.status == "completed":
            total += s.allocated_hours
        elif s.is_skipped:
            total += skip_credit(s, settings)
    return total


def evaluate_task_completion(
    task: Task,
    sessions: List[StudySession],
    settings: Settings,
) -> Optional[Task]:
    """
    Return the task marked completed when its sessions say it is finished,
    else None.

    A task is finished once every one of its sessions is done or skipped. The
    final estimate becomes the credited hours. A task whose only session was
    skipped credits nothing unless partial hours were recorded and
    `credit_partial_skip_hours` is on.
    """
    if task.status == "completed" or not sessions:
        return None
    if not all(s.is_finished for s in sessions):
        return None

    if len(sessions) == 1 and sessions[0].is_skipped:
        only = sessions[0]
        meta = only.skip_metadata
        credit = 0.0
        if settings.credit_partial_skip_hours and meta is not None and meta.partial_hours:
            credit = meta.partial_hours
    else:
        credit = credited_hours(sessions, settings)

    logger.debug("Task %s completed with %.2fh credited", task.id, credit)
    return task.model_copy(update={"status": "completed", "estimated_hours": round(credit, 4)})
