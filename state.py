from __future__ import annotations
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple
from pydantic import BaseModel, Field
from calendar_rules import daily_capacity
from conflicts import ConflictPreventionEngine, session_id, validate_settings_change
import lifecycle
from models import FixedCommitment, ScheduleState, Settings, StudyPlan, StudySession, Task
from planner import assess_add_task_feasibility, generate_plan
from preservation import make_plan, merge_plans
from redistribution import redistribute_missed_sessions


logger = logging.getLogger(__name__)


class AddTask(BaseModel):
    task: Task
    force: bool = False  # accept even when feasibility says it will not fit


class UpdateTask(BaseModel):
    task_id: str
    changes: Dict[str, Any]


class DeleteTask(BaseModel):
    task_id: str


class AddCommitment(BaseModel):
    commitment: FixedCommitment


class UpdateCommitment(BaseModel):
    commitment: FixedCommitment


class DeleteCommitment(BaseModel):
    commitment_id: str


class DeleteCommitmentOccurrence(BaseModel):
    commitment_id: str
    date: date


class UpdateSettings(BaseModel):
    settings: Settings


class RegeneratePlan(BaseModel):
    pass


class SessionRef(BaseModel):
    task_id: str
    session_number: int


class StartSession(SessionRef):
    pass


class MarkSessionDone(SessionRef):
    actual_hours: Optional[float] = Field(default=None, ge=0)


class SkipSession(SessionRef):
    partial_hours: Optional[float] = Field(default=None, ge=0)


class UndoSession(SessionRef):
    pass


class MoveSession(SessionRef):
    new_date: date
    start_time: str
    end_time: str


class TimerCompleted(SessionRef):
    elapsed_seconds: int = Field(ge=0)


class RedistributeMissed(BaseModel):
    pass


class Outcome(NamedTuple):
    state: ScheduleState
    report: Any = None


def _task(state: ScheduleState, task_id: str) -> Task:
    for t in state.tasks:
        if t.id == task_id:
            return t
    raise LookupError(f"Unknown task {task_id!r}")


def _replace_task(state: ScheduleState, task: Task) -> None:
    state.tasks = [task if t.id == task.id else t for t in state.tasks]


def _locate(state: ScheduleState, ref: SessionRef) -> Tuple[StudyPlan, int]:
    for plan in state.plans:
        for i, s in enumerate(plan.sessions):
            if s.task_id == ref.task_id and s.session_number == ref.session_number:
                return plan, i
    raise LookupError(f"Unknown session {ref.task_id}-{ref.session_number}")


def _rebuild(state: ScheduleState, by_date: Dict[date, List[StudySession]]) -> None:
    available = {p.date: p.available_hours for p in state.plans}
    state.plans = [
        make_plan(
            d,
            sessions,
            available[d] if d in available else daily_capacity(d, state.settings, state.commitments),
        )
        for d, sessions in sorted(by_date.items())
        if sessions
    ]


def _sessions_by_date(state: ScheduleState) -> Dict[date, List[StudySession]]:
    return {p.date: list(p.sessions) for p in state.plans}


def regenerate(state: ScheduleState, now: datetime) -> ScheduleState:
    """Generate a fresh plan set and merge it against the current one."""
    today = now.date()
    result = generate_plan(
        state.tasks, state.settings, state.commitments,
        previous_plans=state.plans, today=today, now=now,
    )
    state.plans = merge_plans(state.plans, result.plans, today=today)
    state.unscheduled = result.unscheduled
    state.last_generated_on = today
    return state


def _settle_task(state: ScheduleState, task_id: str) -> None:
    """
    Complete the task when its sessions are all finished. A task with hours
    the last generation could not place stays open so the shortfall is still
    reported.
    """
    task = _task(state, task_id)
    if any(u.task_id == task_id for u in state.unscheduled):
        return
    mine = [s for p in state.plans for s in p.sessions if s.task_id == task_id]
    completed = lifecycle.evaluate_task_completion(task, mine, state.settings)
    if completed is None:
        return
    _replace_task(state, completed)
    logger.info("Task %s completed", task_id)


def _add_task(state: ScheduleState, cmd: AddTask, now: datetime) -> Outcome:
    if any(t.id == cmd.task.id for t in state.tasks):
        raise ValueError(f"Task {cmd.task.id!r} already exists")
    report = assess_add_task_feasibility(
        cmd.task, state.tasks, state.settings, state.commitments,
        previous_plans=state.plans, today=now.date(), now=now,
    )
    if report.blocked and not cmd.force:
        logger.info("Task %s rejected: %s", cmd.task.id, report.reason)
        return Outcome(state, report)
    state.tasks.append(cmd.task)
    return Outcome(regenerate(state, now), report)


def _update_task(state: ScheduleState, cmd: UpdateTask, now: datetime) -> Outcome:
    current = _task(state, cmd.task_id)
    updated = Task.model_validate({**current.model_dump(), **cmd.changes, "id": current.id})
    if current.status == "completed" and "estimated_hours" in cmd.changes:
        mine = [s for p in state.plans for s in p.sessions if s.task_id == current.id]
        if updated.estimated_hours > lifecycle.credited_hours(mine, state.settings) + 1e-6:
            updated = updated.model_copy(update={"status": "pending"})
    _replace_task(state, updated)
    regenerate(state, now)
    if "estimated_hours" in cmd.changes:
        # an estimate cut down to the work already credited finishes the task
        _settle_task(state, current.id)
    return Outcome(state)


def _delete_task(state: ScheduleState, cmd: DeleteTask, now: datetime) -> Outcome:
    _task(state, cmd.task_id)
    state.tasks = [t for t in state.tasks if t.id != cmd.task_id]
    by_date = {
        d: [s for s in sessions if s.task_id != cmd.task_id]
        for d, sessions in _sessions_by_date(state).items()
    }
    _rebuild(state, by_date)
    return Outcome(regenerate(state, now))


def _commitment_index(state: ScheduleState, commitment_id: str) -> int:
    for i, c in enumerate(state.commitments):
        if c.id == commitment_id:
            return i
    raise LookupError(f"Unknown commitment {commitment_id!r}")


def _add_commitment(state: ScheduleState, cmd: AddCommitment, now: datetime) -> Outcome:
    state.commitments.append(cmd.commitment)
    return Outcome(regenerate(state, now))


def _update_commitment(state: ScheduleState, cmd: UpdateCommitment, now: datetime) -> Outcome:
    state.commitments[_commitment_index(state, cmd.commitment.id)] = cmd.commitment
    return Outcome(regenerate(state, now))


def _delete_commitment(state: ScheduleState, cmd: DeleteCommitment, now: datetime) -> Outcome:
    del state.commitments[_commitment_index(state, cmd.commitment_id)]
    return Outcome(regenerate(state, now))


def _delete_occurrence(state: ScheduleState, cmd: DeleteCommitmentOccurrence, now: datetime) -> Outcome:
    i = _commitment_index(state, cmd.commitment_id)
    commitment = state.commitments[i]
    if cmd.date not in commitment.deleted_occurrences:
        state.commitments[i] = commitment.model_copy(
            update={"deleted_occurrences": commitment.deleted_occurrences + [cmd.date]}
        )
    return Outcome(regenerate(state, now))


def _update_settings(state: ScheduleState, cmd: UpdateSettings, now: datetime) -> Outcome:
    report = validate_settings_change(state.plans, cmd.settings)
    state.settings = cmd.settings
    return Outcome(regenerate(state, now), report)


def _regenerate(state: ScheduleState, cmd: RegeneratePlan, now: datetime) -> Outcome:
    return Outcome(regenerate(state, now))


def _update_session(
    state: ScheduleState,
    ref: SessionRef,
    change: Callable[[StudySession, date], StudySession],
) -> StudySession:
    plan, i = _locate(state, ref)
    updated = change(plan.sessions[i], plan.date)
    by_date = _sessions_by_date(state)
    by_date[plan.date][i] = updated
    _rebuild(state, by_date)
    return updated


def _start_session(state: ScheduleState, cmd: StartSession, now: datetime) -> Outcome:
    _task(state, cmd.task_id)
    _update_session(state, cmd, lambda s, d: lifecycle.start(s, d, now))
    task = _task(state, cmd.task_id)
    if task.status == "pending":
        _replace_task(state, task.model_copy(update={"status": "in_progress"}))
    return Outcome(state)


def _mark_done(state: ScheduleState, cmd: MarkSessionDone, now: datetime) -> Outcome:
    _task(state, cmd.task_id)
    _update_session(state, cmd, lambda s, d: lifecycle.mark_done(s, d, now, cmd.actual_hours))
    _settle_task(state, cmd.task_id)
    return Outcome(state)


def _timer_completed(state: ScheduleState, cmd: TimerCompleted, now: datetime) -> Outcome:
    actual = round(cmd.elapsed_seconds / 3600, 4)
    return _mark_done(
        state,
        MarkSessionDone(task_id=cmd.task_id, session_number=cmd.session_number, actual_hours=actual),
        now,
    )


def _skip(state: ScheduleState, cmd: SkipSession, now: datetime) -> Outcome:
    _task(state, cmd.task_id)
    _update_session(state, cmd, lambda s, d: lifecycle.skip(s, d, now, cmd.partial_hours))
    _settle_task(state, cmd.task_id)
    return Outcome(state)


def _undo(state: ScheduleState, cmd: UndoSession, now: datetime) -> Outcome:
    task = _task(state, cmd.task_id)
    _update_session(state, cmd, lambda s, d: lifecycle.undo(s))
    if task.status == "completed":
        _replace_task(state, task.model_copy(update={"status": "pending"}))
        return Outcome(regenerate(state, now))
    return Outcome(state)


def _move(state: ScheduleState, cmd: MoveSession, now: datetime) -> Outcome:
    plan, i = _locate(state, cmd)
    session = plan.sessions[i]
    engine = ConflictPreventionEngine(state.settings, state.commitments, today=now.date())
    existing = next((p.sessions for p in state.plans if p.date == cmd.new_date), [])
    verdict = engine.is_time_slot_available(
        cmd.new_date, cmd.start_time, cmd.end_time, existing,
        exclude_session_id=session_id(session),
    )
    if not verdict.is_valid:
        logger.info("Move of %s rejected", session_id(session))
        return Outcome(state, verdict)

    moved = lifecycle.move(session, plan.date, cmd.new_date, cmd.start_time, cmd.end_time, now)
    by_date = _sessions_by_date(state)
    del by_date[plan.date][i]
    by_date.setdefault(cmd.new_date, []).append(moved)
    _rebuild(state, by_date)
    return Outcome(state, verdict)


def _redistribute(state: ScheduleState, cmd: RedistributeMissed, now: datetime) -> Outcome:
    result = redistribute_missed_sessions(
        state.plans, state.tasks, state.settings, state.commitments, now=now,
    )
    state.plans = result.plans
    return Outcome(state, result)


_HANDLERS: Dict[type, Callable[[ScheduleState, Any, datetime], Outcome]] = {
    AddTask: _add_task,
    UpdateTask: _update_task,
    DeleteTask: _delete_task,
    AddCommitment: _add_commitment,
    UpdateCommitment: _update_commitment,
    DeleteCommitment: _delete_commitment,
    DeleteCommitmentOccurrence: _delete_occurrence,
    UpdateSettings: _update_settings,
    RegeneratePlan: _regenerate,
    StartSession: _start_session,
    MarkSessionDone: _mark_done,
    TimerCompleted: _timer_completed,
    SkipSession: _skip,
    UndoSession: _undo,
    MoveSession: _move,
    RedistributeMissed: _redistribute,
}


def apply(state: ScheduleState, command: BaseModel, now: datetime | None = None) -> Outcome:
    """
    Apply one command to a snapshot and return the next snapshot plus any
    report (feasibility, conflicts, redistribution). `state` is never mutated;
    a rejected command hands back an unchanged copy.
    """
    handler = _HANDLERS.get(type(command))
    if handler is None:
        raise TypeError(f"Unsupported command {type(command).__name__}")
    now = now or datetime.now()
    return handler(state.model_copy(deep=True), command, now)
