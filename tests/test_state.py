from __future__ import annotations

from datetime import date, datetime, time, timedelta

import pytest

import state as engine
from conflicts import ConflictValidationResult
from lifecycle import SessionTransitionError
from models import FixedCommitment, ScheduleState, Settings, StudySession, Task
from planner import FeasibilityReport
from preservation import make_plan
from redistribution import RedistributionResult

TODAY = date(2030, 1, 7)


def _task(task_id: str = "a", hours: float = 4.0, days: int = 3, **kwargs) -> Task:
    return Task(
        id=task_id,
        title=task_id.upper(),
        deadline=TODAY + timedelta(days=days),
        estimated_hours=hours,
        created_at=datetime(2030, 1, 1),
        **kwargs,
    )


def _empty(**settings) -> ScheduleState:
    return ScheduleState(settings=Settings(daily_available_hours=2, **settings))


def _with(task: Task, now: datetime, **settings) -> ScheduleState:
    outcome = engine.apply(_empty(**settings), engine.AddTask(task=task), now)
    return outcome.state


def _sessions(state: ScheduleState, task_id: str = "a"):
    return [(p.date, s) for p in state.plans for s in p.sessions if s.task_id == task_id]


def _task_in(state: ScheduleState, task_id: str = "a") -> Task:
    return next(t for t in state.tasks if t.id == task_id)


def test_add_task_schedules_and_leaves_input_alone(early_morning) -> None:
    before = _empty()

    outcome = engine.apply(before, engine.AddTask(task=_task()), early_morning)

    assert isinstance(outcome.report, FeasibilityReport)
    assert not outcome.report.blocked
    assert sum(s.allocated_hours for _, s in _sessions(outcome.state)) == pytest.approx(4.0)
    assert outcome.state.last_generated_on == TODAY
    assert before.tasks == [] and before.plans == []


def test_infeasible_task_is_rejected_unless_forced(early_morning) -> None:
    big = _task(hours=10, days=1)

    rejected = engine.apply(_empty(), engine.AddTask(task=big), early_morning)
    forced = engine.apply(_empty(), engine.AddTask(task=big, force=True), early_morning)

    assert rejected.report.blocked
    assert rejected.state.tasks == []
    assert [t.id for t in forced.state.tasks] == ["a"]
    assert forced.state.unscheduled[0].unscheduled_minutes == 360


def test_duplicate_task_id_is_an_error(early_morning) -> None:
    current = _with(_task(), early_morning)
    with pytest.raises(ValueError):
        engine.apply(current, engine.AddTask(task=_task()), early_morning)


def test_manual_move_survives_adding_a_task(early_morning) -> None:
    current = _with(_task(), early_morning)
    target = TODAY + timedelta(days=2)

    moved = engine.apply(
        current,
        engine.MoveSession(task_id="a", session_number=1, new_date=target, start_time="20:00", end_time="21:00"),
        early_morning,
    )
    assert moved.report.is_valid

    after = engine.apply(moved.state, engine.AddTask(task=_task("b", hours=1)), early_morning).state

    day, session = next((d, s) for d, s in _sessions(after) if s.session_number == 1)
    assert day == target
    assert (session.start_time, session.end_time) == ("20:00", "21:00")
    assert session.is_manual_override
    assert sum(s.allocated_hours for _, s in _sessions(after)) == pytest.approx(4.0)
    assert _sessions(after, "b")


def test_rejected_move_changes_nothing(early_morning) -> None:
    current = _with(_task(), early_morning)

    outcome = engine.apply(
        current,
        engine.MoveSession(task_id="a", session_number=1, new_date=TODAY, start_time="04:00", end_time="05:00"),
        early_morning,
    )

    assert isinstance(outcome.report, ConflictValidationResult)
    assert not outcome.report.is_valid
    assert outcome.state.plans == current.plans


def test_skipping_the_only_session_completes_with_no_credit(early_morning) -> None:
    current = _with(_task(hours=1, is_one_time_task=True), early_morning)

    after = engine.apply(current, engine.SkipSession(task_id="a", session_number=1), early_morning).state

    task = _task_in(after)
    assert task.status == "completed"
    assert task.estimated_hours == 0
    assert [s.status for _, s in _sessions(after)] == ["skipped"]


def test_partial_skip_credit_when_enabled(early_morning) -> None:
    current = _with(_task(hours=1, is_one_time_task=True), early_morning, credit_partial_skip_hours=True)

    after = engine.apply(
        current, engine.SkipSession(task_id="a", session_number=1, partial_hours=0.5), early_morning
    ).state

    assert _task_in(after).estimated_hours == pytest.approx(0.5)


def test_marking_every_session_done_completes_the_task(early_morning) -> None:
    current = _with(_task(hours=2, is_one_time_task=True), early_morning)

    after = engine.apply(current, engine.MarkSessionDone(task_id="a", session_number=1), early_morning).state

    task = _task_in(after)
    assert task.status == "completed"
    assert task.estimated_hours == pytest.approx(2.0)


def test_timer_completion_records_elapsed_time(early_morning) -> None:
    current = _with(_task(hours=1, is_one_time_task=True), early_morning)

    after = engine.apply(
        current, engine.TimerCompleted(task_id="a", session_number=1, elapsed_seconds=1800), early_morning
    ).state

    _, session = _sessions(after)[0]
    assert session.done and session.actual_hours == pytest.approx(0.5)


def test_undo_reopens_a_completed_task(early_morning) -> None:
    current = _with(_task(hours=1, is_one_time_task=True), early_morning)
    done = engine.apply(current, engine.MarkSessionDone(task_id="a", session_number=1), early_morning).state

    after = engine.apply(done, engine.UndoSession(task_id="a", session_number=1), early_morning).state

    assert _task_in(after).status == "pending"
    pending = [s for _, s in _sessions(after) if not s.is_finished]
    assert sum(s.allocated_hours for s in pending) == pytest.approx(1.0)


def test_raising_the_estimate_keeps_done_work(early_morning) -> None:
    current = _with(_task(), early_morning)
    done = engine.apply(current, engine.MarkSessionDone(task_id="a", session_number=1), early_morning).state

    after = engine.apply(done, engine.UpdateTask(task_id="a", changes={"estimated_hours": 6}), early_morning).state

    sessions = [s for _, s in _sessions(after)]
    assert [s.session_number for s in sessions if s.done] == [1]
    assert sum(s.allocated_hours for s in sessions if not s.is_finished) == pytest.approx(5.0)
    assert after.unscheduled == []


def test_start_session_marks_task_in_progress(early_morning) -> None:
    current = _with(_task(), early_morning)

    after = engine.apply(current, engine.StartSession(task_id="a", session_number=1), early_morning).state

    assert _task_in(after).status == "in_progress"
    assert _sessions(after)[0][1].status == "in_progress"


def test_regenerating_twice_is_stable(early_morning) -> None:
    current = _with(_task(), early_morning)
    current = engine.apply(current, engine.AddTask(task=_task("b", hours=2, days=2)), early_morning).state

    once = engine.apply(current, engine.RegeneratePlan(), early_morning).state
    twice = engine.apply(once, engine.RegeneratePlan(), early_morning).state

    assert twice.plans == once.plans


def test_unknown_session_and_bad_transition(early_morning) -> None:
    current = _with(_task(hours=2, is_one_time_task=True), early_morning)
    with pytest.raises(LookupError):
        engine.apply(current, engine.SkipSession(task_id="a", session_number=9), early_morning)

    done = engine.apply(current, engine.MarkSessionDone(task_id="a", session_number=1), early_morning).state
    with pytest.raises(SessionTransitionError):
        engine.apply(done, engine.SkipSession(task_id="a", session_number=1), early_morning)


def test_unsupported_command_is_a_type_error(early_morning) -> None:
    with pytest.raises(TypeError):
        engine.apply(_empty(), engine.SessionRef(task_id="a", session_number=1), early_morning)


def test_deleting_a_commitment_occurrence_frees_the_day(early_morning) -> None:
    monday_trip = FixedCommitment(id="trip", title="Trip", recurring=True, days_of_week=[0], is_all_day=True)
    base = engine.apply(_empty(), engine.AddCommitment(commitment=monday_trip), early_morning).state
    task = _task(hours=1, days=1, is_one_time_task=True, importance=True)
    current = engine.apply(base, engine.AddTask(task=task), early_morning).state
    assert [d for d, _ in _sessions(current)] == [TODAY + timedelta(days=1)]

    after = engine.apply(
        current, engine.DeleteCommitmentOccurrence(commitment_id="trip", date=TODAY), early_morning
    ).state

    assert after.commitments[0].deleted_occurrences == [TODAY]
    assert [d for d, _ in _sessions(after)] == [TODAY]


def test_delete_task_removes_its_sessions(early_morning) -> None:
    current = _with(_task(), early_morning)

    after = engine.apply(current, engine.DeleteTask(task_id="a"), early_morning).state

    assert after.tasks == []
    assert after.plans == []


def test_settings_change_reports_and_regenerates(early_morning) -> None:
    current = _with(_task(), early_morning)

    outcome = engine.apply(current, engine.UpdateSettings(settings=Settings(daily_available_hours=4)), early_morning)

    assert isinstance(outcome.report, ConflictValidationResult)
    assert outcome.report.can_proceed
    assert outcome.state.settings.daily_available_hours == 4
    assert sum(s.allocated_hours for _, s in _sessions(outcome.state)) == pytest.approx(4.0)


def test_redistribute_missed_through_apply() -> None:
    now = datetime.combine(TODAY, time(12, 0))
    missed = StudySession(task_id="a", session_number=1, start_time="09:00", end_time="10:00", allocated_hours=1)
    later = StudySession(task_id="a", session_number=2, start_time="06:00", end_time="07:00", allocated_hours=1)
    current = ScheduleState(
        tasks=[_task(hours=2)],
        plans=[
            make_plan(TODAY - timedelta(days=1), [missed], 6),
            make_plan(TODAY + timedelta(days=1), [later], 6),
        ],
    )

    outcome = engine.apply(current, engine.RedistributeMissed(), now)

    assert isinstance(outcome.report, RedistributionResult)
    assert outcome.report.moved == ["a-1"]
    assert [p.date for p in outcome.state.plans] == [TODAY + timedelta(days=1)]


def test_commitment_update_and_delete_reshape_the_plan(early_morning) -> None:
    morning = FixedCommitment(
        id="gym", title="Gym", recurring=True, days_of_week=list(range(7)), start_time="06:00", end_time="07:00",
        counts_toward_daily_hours=False,
    )
    current = engine.apply(_empty(), engine.AddCommitment(commitment=morning), early_morning).state
    current = engine.apply(current, engine.AddTask(task=_task(hours=1, is_one_time_task=True)), early_morning).state
    assert _sessions(current)[0][1].start_time == "07:00"

    later = morning.model_copy(update={"start_time": "06:00", "end_time": "08:00"})
    updated = engine.apply(current, engine.UpdateCommitment(commitment=later), early_morning).state
    assert _sessions(updated)[0][1].start_time == "08:00"

    removed = engine.apply(updated, engine.DeleteCommitment(commitment_id="gym"), early_morning).state
    assert removed.commitments == []
    assert _sessions(removed)[0][1].start_time == "06:00"

    with pytest.raises(LookupError):
        engine.apply(removed, engine.DeleteCommitment(commitment_id="gym"), early_morning)


def test_regeneration_keeps_an_overdue_shortfall_open(early_morning) -> None:
    yesterday = TODAY - timedelta(days=1)
    done = StudySession(
        task_id="a", session_number=1, start_time="09:00", end_time="11:00",
        allocated_hours=2, status="completed", done=True, actual_hours=2,
    )
    current = ScheduleState(tasks=[_task(days=-1)], plans=[make_plan(yesterday, [done], 6)])

    after = engine.apply(current, engine.RegeneratePlan(), early_morning).state

    task = _task_in(after)
    assert task.status == "pending"
    assert task.estimated_hours == 4
    assert [(u.task_id, u.unscheduled_minutes) for u in after.unscheduled] == [("a", 120)]
    assert [s for _, s in _sessions(after)] == [done]


def test_lowering_the_estimate_to_done_work_completes_the_task(early_morning) -> None:
    current = _with(_task(), early_morning)
    done = engine.apply(current, engine.MarkSessionDone(task_id="a", session_number=1), early_morning).state

    after = engine.apply(done, engine.UpdateTask(task_id="a", changes={"estimated_hours": 1}), early_morning).state

    task = _task_in(after)
    assert task.status == "completed"
    assert task.estimated_hours == pytest.approx(1.0)
    assert [s.session_number for _, s in _sessions(after)] == [1]


def test_stale_in_progress_session_is_planned_again(early_morning) -> None:
    yesterday = TODAY - timedelta(days=1)
    started = StudySession(
        task_id="a", session_number=1, start_time="09:00", end_time="11:00",
        allocated_hours=2, status="in_progress",
    )
    current = ScheduleState(tasks=[_task(hours=2)], plans=[make_plan(yesterday, [started], 6)])

    after = engine.apply(current, engine.RegeneratePlan(), early_morning).state

    upcoming = [s for d, s in _sessions(after) if d >= TODAY]
    assert sum(s.allocated_hours for s in upcoming) == pytest.approx(2.0)
    assert all(d >= TODAY for d, _ in _sessions(after))
    assert after.unscheduled == []


def test_move_into_the_past_is_rejected(early_morning) -> None:
    current = _with(_task(), early_morning)

    outcome = engine.apply(
        current,
        engine.MoveSession(
            task_id="a", session_number=1, new_date=TODAY - timedelta(days=1), start_time="09:00", end_time="10:00",
        ),
        early_morning,
    )

    assert not outcome.report.is_valid
    assert outcome.report.has_type("invalid_time_slot")
    assert outcome.state.plans == current.plans
