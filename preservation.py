from __future__ import annotations
import logging
from datetime import date
from typing import Dict, List, Optional, Tuple
from models import StudyPlan, StudySession


logger = logging.getLogger(__name__)

EPSILON = 1e-9


def is_preserved(session: StudySession, plan_date: date | None = None, today: date | None = None) -> bool:
    """
    True when a session carries progress or a user decision that regeneration
    must keep. In-progress sessions and manual overrides on dates already
    behind `today` no longer count: their hours are re-planned instead.
    """
    if session.done or session.status == "completed" or session.is_skipped:
        return True
    if session.status != "in_progress" and not session.is_manual_override:
        return False
    return today is None or plan_date is None or plan_date >= today


def make_plan(day: date, sessions: List[StudySession], available_hours: float) -> StudyPlan:
    ordered = sorted(sessions, key=lambda s: (s.start_time, s.task_id, s.session_number))
    total = round(sum(s.allocated_hours for s in ordered if not s.is_skipped), 4)
    return StudyPlan(
        id=f"plan-{day.isoformat()}",
        date=day,
        sessions=ordered,
        total_study_hours=total,
        available_hours=round(available_hours, 4),
        is_overloaded=total > 0 and total >= available_hours - EPSILON,
    )


def _carry(previous: StudySession, fresh: StudySession) -> StudySession:
    if previous.done or previous.status == "completed":
        fields = (
            "done", "status", "actual_hours", "completed_at",
            "allocated_hours", "start_time", "end_time",
        )
    elif previous.is_skipped:
        fields = ("status", "skip_metadata", "allocated_hours", "start_time", "end_time")
    elif previous.is_manual_override:
        fields = (
            "status", "start_time", "end_time", "allocated_hours",
            "original_time", "original_date", "is_manual_override",
            "rescheduled_at", "reschedule_history",
        )
    else:
        fields = ("status", "start_time", "end_time", "allocated_hours")
    update = {name: getattr(previous, name) for name in fields}
    return fresh.model_copy(update=update, deep=True)


def merge_plans(
    previous: List[StudyPlan],
    new: List[StudyPlan],
    today: date | None = None,
) -> List[StudyPlan]:
    """
    Reconcile freshly generated plans with the plans they replace.

    Sessions are paired by (task_id, session_number). A paired session whose
    previous copy was done, skipped, in progress or manually moved keeps the
    previous outcome and stays on the previous date. Preserved sessions the
    new plans no longer contain are carried over unchanged. Everything else
    takes the new placement.
    """
    kept: Dict[Tuple[str, int], Tuple[date, StudySession]] = {}
    available: Dict[date, float] = {}
    for plan in previous:
        available[plan.date] = plan.available_hours
        for s in plan.sessions:
            if is_preserved(s, plan.date, today):
                kept[s.key] = (plan.date, s)

    by_date: Dict[date, List[StudySession]] = {}
    paired = set()
    for plan in new:
        available[plan.date] = plan.available_hours
        for s in plan.sessions:
            hit: Optional[Tuple[date, StudySession]] = kept.get(s.key)
            if hit is None:
                by_date.setdefault(plan.date, []).append(s)
                continue
            kept_date, kept_session = hit
            paired.add(s.key)
            if kept_date != plan.date:
                logger.debug("Relocating session %s-%s to %s", s.task_id, s.session_number, kept_date)
            by_date.setdefault(kept_date, []).append(_carry(kept_session, s))

    for key, (kept_date, kept_session) in kept.items():
        if key not in paired:
            by_date.setdefault(kept_date, []).append(kept_session.model_copy(deep=True))

    return [
        make_plan(day, sessions, available.get(day, 0.0))
        for day, sessions in sorted(by_date.items())
        if sessions
    ]
