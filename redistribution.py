from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Dict, List, Optional, Tuple
from pydantic import BaseModel, Field
from calendar_rules import daily_capacity, parse_clock
from conflicts import ConflictPreventionEngine, ConflictValidationResult, session_id
from lifecycle import derive_runtime_status, mark_failed_redistribution, mark_redistributed
from models import FixedCommitment, Settings, StudyPlan, StudySession, Task
from planner import find_next_available_slot
from preservation import make_plan


logger = logging.getLogger(__name__)

EPSILON = 1e-6


class RedistributionResult(BaseModel):
    plans: List[StudyPlan]
    moved: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    rolled_back: bool = False
    validation: Optional[ConflictValidationResult] = None


def collect_missed_sessions(
    plans: List[StudyPlan],
    tasks: List[Task],
    now: datetime,
) -> List[Tuple[date, StudySession]]:
    """Missed sessions of unfinished tasks, excluding manual overrides."""
    open_tasks = {t.id for t in tasks if t.status != "completed"}
    missed = []
    for plan in plans:
        for s in plan.sessions:
            if s.task_id not in open_tasks or s.is_manual_override:
                continue
            if derive_runtime_status(s, plan.date, now) == "missed":
                missed.append((plan.date, s))
    return missed


def redistribution_priority(session: StudySession, task: Task, plan_date: date, today: date) -> float:
    score = 1000.0 if task.importance else 0.0

    days_left = (task.deadline - today).days
    if days_left <= 1:
        score += 500
    elif days_left <= 3:
        score += 400
    elif days_left <= 7:
        score += 300
    elif days_left <= 14:
        score += 200
    else:
        score += max(0, 100 - days_left)

    score += min(200, (today - plan_date).days * 10)
    score += min(100, session.allocated_hours * 20)
    return score


def redistribute_missed_sessions(
    plans: List[StudyPlan],
    tasks: List[Task],
    settings: Settings,
    commitments: List[FixedCommitment],
    now: datetime | None = None,
) -> RedistributionResult:
    """
    Move missed sessions onto free slots of existing plans dated today or later.

    The whole attempt is validated before and after; if the result has
    conflicts the original plans are returned untouched.
    """
    now = now or datetime.now()
    today = now.date()
    engine = ConflictPreventionEngine(settings, commitments, today=today)

    missed = collect_missed_sessions(plans, tasks, now)
    if not missed:
        return RedistributionResult(plans=[p.model_copy(deep=True) for p in plans])

    before = engine.validate_before_redistribution(plans, [s for _, s in missed])
    if not before.can_proceed:
        logger.warning("Redistribution blocked: %s", "; ".join(c.message for c in before.conflicts))
        return RedistributionResult(plans=[p.model_copy(deep=True) for p in plans], validation=before)

    by_task = {t.id: t for t in tasks}
    missed.sort(key=lambda pair: -redistribution_priority(pair[1], by_task[pair[1].task_id], pair[0], today))

    working: Dict[date, List[StudySession]] = {
        p.date: [s.model_copy(deep=True) for s in p.sessions] for p in plans
    }
    available = {p.date: p.available_hours for p in plans}
    targets = sorted(d for d in working if d >= today)
    minute_now = now.hour * 60 + now.minute + 1

    moved: List[str] = []
    failed: List[str] = []
    for source_date, original in missed:
        source = working[source_date]
        session = next(s for s in source if s.key == original.key)
        hours = session.allocated_hours
        minutes = parse_clock(session.end_time) - parse_clock(session.start_time)

        placed = False
        for target_date in targets:
            day = working[target_date]
            used = sum(s.allocated_hours for s in day if not s.is_skipped)
            if used + hours > daily_capacity(target_date, settings, commitments) + EPSILON:
                continue
            slot = find_next_available_slot(
                target_date, minutes, day, settings, commitments,
                not_before=minute_now if target_date == today else None,
            )
            if slot is None:
                continue
            if not engine.is_time_slot_available(target_date, slot[0], slot[1], day).is_valid:
                continue
            relocated = mark_redistributed(session, source_date, target_date, slot[0], slot[1], now)
            source.remove(session)
            day.append(relocated)
            moved.append(session_id(session))
            placed = True
            break

        if not placed:
            source[source.index(session)] = mark_failed_redistribution(session, source_date, now)
            failed.append(session_id(session))

    rebuilt = [
        make_plan(d, sessions, available[d])
        for d, sessions in sorted(working.items())
        if sessions
    ]
    result_plans, rolled_back = engine.rollback_on_conflict(plans, rebuilt)
    if rolled_back:
        moved, failed = [], []
    logger.debug("Redistributed %d sessions, %d failed", len(moved), len(failed))
    return RedistributionResult(
        plans=result_plans,
        moved=moved,
        failed=failed,
        rolled_back=rolled_back,
        validation=engine.validate_after_redistribution(result_plans),
    )
