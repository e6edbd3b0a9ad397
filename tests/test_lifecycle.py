from __future__ import annotations

from datetime import date, datetime, time, timedelta

import pytest

from lifecycle import (
    SessionTransitionError,
    check_transition,
    credited_hours,
    derive_runtime_status,
    evaluate_task_completion,
    mark_done,
    mark_failed_redistribution,
    mark_redistributed,
    move,
    skip,
    start,
    undo,
)
from models import Settings, SkipMetadata, StudySession, Task

TODAY = date(2030, 1, 7)
NOON = datetime.combine(TODAY, time(12, 0))
YESTERDAY = TODAY - timedelta(days=1)


def _session(number: int = 1, start_time: str = "09:00", end_time: str = "10:00", **kwargs) -> StudySession:
    return StudySession(
        task_id="t1",
        session_number=number,
        start_time=start_time,
        end_time=end_time,
        allocated_hours=1.0,
        **kwargs,
    )


def _task(**kwargs) -> Task:
    return Task(id="t1", title="Essay", deadline=TODAY + timedelta(days=3), estimated_hours=2, **kwargs)


def test_runtime_status_is_derived_from_the_clock() -> None:
    assert derive_runtime_status(_session(), YESTERDAY, NOON) == "missed"
    assert derive_runtime_status(_session(), TODAY, NOON) == "scheduled"
    assert derive_runtime_status(_session(start_time="11:30", end_time="12:30"), TODAY, NOON) == "in_progress"
    assert derive_runtime_status(_session(), TODAY + timedelta(days=1), NOON) == "scheduled"
    assert derive_runtime_status(_session(done=True, status="completed"), YESTERDAY, NOON) == "completed"
    assert derive_runtime_status(_session(status="in_progress"), YESTERDAY, NOON) == "missed"


def test_stored_status_never_becomes_missed() -> None:
    session = _session()
    derive_runtime_status(session, YESTERDAY, NOON)
    assert session.status == "scheduled"


def test_transition_table_rejects_leaving_terminal_states() -> None:
    check_transition("scheduled", "in_progress")
    with pytest.raises(SessionTransitionError):
        check_transition("completed", "scheduled")
    with pytest.raises(SessionTransitionError):
        check_transition("scheduled", "redistributed")


def test_start_then_mark_done() -> None:
    running = start(_session(), TODAY, NOON)
    finished = mark_done(running, TODAY, NOON, actual_hours=0.5)

    assert running.status == "in_progress"
    assert finished.status == "completed" and finished.done
    assert finished.actual_hours == 0.5
    assert finished.completed_at == NOON


def test_missed_session_can_be_logged_as_done() -> None:
    finished = mark_done(_session(), YESTERDAY, NOON)
    assert finished.done
    assert finished.actual_hours == 1.0


def test_skip_records_metadata_and_target_status() -> None:
    skipped = skip(_session(), TODAY, NOON, partial_hours=0.25)
    missed_skip = skip(_session(), YESTERDAY, NOON)

    assert skipped.status == "skipped"
    assert skipped.skip_metadata.partial_hours == 0.25
    assert skipped.skip_metadata.skipped_at == NOON
    assert missed_skip.status == "skipped_user"


def test_finished_sessions_cannot_be_skipped() -> None:
    with pytest.raises(SessionTransitionError):
        skip(_session(done=True, status="completed"), TODAY, NOON)


def test_undo_resets_outcome() -> None:
    reverted = undo(mark_done(_session(), TODAY, NOON))

    assert reverted.status == "scheduled"
    assert not reverted.done
    assert reverted.actual_hours is None and reverted.completed_at is None
    with pytest.raises(SessionTransitionError):
        undo(_session())


def test_move_makes_a_sticky_override() -> None:
    target = TODAY + timedelta(days=2)

    moved = move(_session(), YESTERDAY, target, "20:00", "21:30", NOON)

    assert moved.status == "rescheduled"
    assert moved.is_manual_override
    assert moved.allocated_hours == 1.5
    assert moved.original_time == "09:00" and moved.original_date == YESTERDAY
    assert moved.reschedule_history[-1].to_date == target
    assert moved.reschedule_history[-1].reason == "manual"


def test_move_keeps_status_of_upcoming_session() -> None:
    moved = move(_session(), TODAY, TODAY, "14:00", "15:00", NOON)
    assert moved.status == "scheduled"


def test_move_rejects_bad_input() -> None:
    with pytest.raises(ValueError):
        move(_session(), TODAY, TODAY, "15:00", "14:00", NOON)
    with pytest.raises(SessionTransitionError):
        move(_session(status="skipped"), TODAY, TODAY, "14:00", "15:00", NOON)


def test_redistribution_outcomes_only_apply_to_missed_sessions() -> None:
    moved = mark_redistributed(_session(), YESTERDAY, TODAY, "13:00", "14:00", NOON)
    failed = mark_failed_redistribution(_session(), YESTERDAY, NOON)

    assert moved.status == "redistributed"
    assert moved.reschedule_history[-1].reason == "redistribution"
    assert failed.status == "failed_redistribution"
    assert not failed.reschedule_history[-1].success
    with pytest.raises(SessionTransitionError):
        mark_redistributed(_session(), TODAY + timedelta(days=1), TODAY, "13:00", "14:00", NOON)


def test_credited_hours_counts_done_and_skipped() -> None:
    sessions = [
        _session(1, done=True, status="completed"),
        _session(2, status="skipped", skip_metadata=SkipMetadata(skipped_at=NOON, partial_hours=0.25)),
        _session(3),
    ]
    assert credited_hours(sessions, Settings()) == pytest.approx(2.0)
    assert credited_hours(sessions, Settings(credit_partial_skip_hours=True)) == pytest.approx(1.25)


def test_task_completes_only_when_every_session_is_finished() -> None:
    done = _session(1, done=True, status="completed")

    assert evaluate_task_completion(_task(), [done, _session(2)], Settings()) is None

    completed = evaluate_task_completion(_task(), [done, _session(2, status="skipped")], Settings())
    assert completed.status == "completed"
    assert completed.estimated_hours == pytest.approx(2.0)


def test_skip_only_task_credits_nothing_by_default() -> None:
    skipped = _session(status="skipped", skip_metadata=SkipMetadata(skipped_at=NOON, partial_hours=0.5))

    plain = evaluate_task_completion(_task(), [skipped], Settings())
    partial = evaluate_task_completion(_task(), [skipped], Settings(credit_partial_skip_hours=True))

    assert plain.estimated_hours == 0
    assert partial.estimated_hours == pytest.approx(0.5)


def test_completed_task_is_left_alone() -> None:
    assert evaluate_task_completion(_task(status="completed"), [_session(done=True)], Settings()) is None
