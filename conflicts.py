from __future__ import annotations
import logging
from datetime import date
from typing import List, Literal, Optional, Tuple
from pydantic import BaseModel, Field
from calendar_rules import (
    MINUTES_PER_DAY,
    commitment_interval,
    commitments_for_day,
    daily_base_hours,
    effective_window,
    is_all_day_on,
    is_work_day,
    overlaps,
    parse_clock,
)
from models import FixedCommitment, Settings, StudyPlan, StudySession


logger = logging.getLogger(__name__)

Severity = Literal["low", "medium", "high", "critical"]
ConflictType = Literal[
    "session_overlap",
    "commitment_conflict",
    "daily_limit_exceeded",
    "invalid_time_slot",
    "all_day_conflict",
]

BLOCKING_SEVERITIES = frozenset({"high", "critical"})
REDISTRIBUTION_WARN_RATIO = 0.8
DENSITY_WARN_RATIO = 0.9
EPSILON = 1e-6


class ConflictDetails(BaseModel):
    type: ConflictType
    message: str
    severity: Severity
    session_id: Optional[str] = None
    conflicting_session_id: Optional[str] = None
    conflicting_commitment_id: Optional[str] = None
    suggestion: Optional[str] = None


class ConflictValidationResult(BaseModel):
    is_valid: bool = True
    conflicts: List[ConflictDetails] = Field(default_factory=list)
    warnings: List[ConflictDetails] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    can_proceed: bool = True

    def has_type(self, kind: str) -> bool:
        return any(c.type == kind for c in self.conflicts)


def session_id(session: StudySession) -> str:
    return f"{session.task_id}-{session.session_number}"


def _active_sessions(sessions: List[StudySession]) -> List[StudySession]:
    return [s for s in sessions if not s.is_skipped]


def _timed(session: StudySession) -> Optional[Tuple[int, int]]:
    if not session.start_time or not session.end_time:
        return None
    try:
        return parse_clock(session.start_time), parse_clock(session.end_time)
    except ValueError:
        return None


def _allocated(sessions: List[StudySession]) -> float:
    return sum(s.allocated_hours for s in _active_sessions(sessions))


def _none_blocking(conflicts: List[ConflictDetails], blocking=BLOCKING_SEVERITIES) -> bool:
    return not any(c.severity in blocking for c in conflicts)


class ConflictPreventionEngine:
    """
    Validation layer for placements. Every check reports through a
    ConflictValidationResult; nothing here raises for a bad placement.
    """

    def __init__(
        self,
        settings: Settings,
        commitments: List[FixedCommitment],
        today: date | None = None,
    ) -> None:
        self.settings = settings
        self.commitments = commitments
        self.today = today or date.today()

    def validate_before_redistribution(
        self,
        plans: List[StudyPlan],
        sessions_to_move: List[StudySession],
    ) -> ConflictValidationResult:
        conflicts: List[ConflictDetails] = []
        warnings: List[ConflictDetails] = []
        suggestions: List[str] = []

        future = [p for p in plans if p.date >= self.today]
        if not future:
            conflicts.append(ConflictDetails(
                type="invalid_time_slot",
                message="No future study days available for redistribution",
                severity="critical",
                suggestion="Add more study days to your schedule",
            ))

        to_move = sum(s.allocated_hours for s in sessions_to_move)
        capacity = sum(
            max(0.0, daily_base_hours(p.date, self.settings) - _allocated(p.sessions))
            for p in future
        )
        if to_move > capacity + EPSILON:
            conflicts.append(ConflictDetails(
                type="daily_limit_exceeded",
                message=f"Need {to_move:.1f}h but only {capacity:.1f}h available",
                severity="critical",
                suggestion="Consider increasing daily available hours or extending deadlines",
            ))
        elif capacity > 0 and to_move > capacity * REDISTRIBUTION_WARN_RATIO:
            warnings.append(ConflictDetails(
                type="daily_limit_exceeded",
                message=f"Redistribution will use {to_move / capacity * 100:.0f}% of available capacity",
                severity="medium",
                suggestion="Schedule may become very tight",
            ))

        for plan in future:
            plan_conflicts, _ = self.validate_plan(plan)
            conflicts.extend(plan_conflicts)

        if conflicts:
            suggestions.append("Resolve existing conflicts or free up capacity before moving sessions")

        return ConflictValidationResult(
            is_valid=_none_blocking(conflicts),
            conflicts=conflicts,
            warnings=warnings,
            suggestions=suggestions,
            can_proceed=_none_blocking(conflicts, blocking={"critical"}),
        )

    def validate_after_redistribution(self, plans: List[StudyPlan]) -> ConflictValidationResult:
        conflicts: List[ConflictDetails] = []
        warnings: List[ConflictDetails] = []
        suggestions: List[str] = []

        for plan in plans:
            plan_conflicts, plan_warnings = self.validate_plan(plan)
            conflicts.extend(plan_conflicts)
            warnings.extend(plan_warnings)

        for plan in plans:
            base = daily_base_hours(plan.date, self.settings)
            total = _allocated(plan.sessions)
            if base > 0 and total / base > DENSITY_WARN_RATIO:
                warnings.append(ConflictDetails(
                    type="daily_limit_exceeded",
                    message=f"Day {plan.date.isoformat()} is {total / base * 100:.0f}% utilized",
                    severity="low",
                    suggestion="Consider spreading sessions across more days",
                ))

        if conflicts:
            suggestions.append("Review and resolve scheduling conflicts before proceeding")
        if warnings:
            suggestions.append("Consider optimizing schedule for better balance")

        return ConflictValidationResult(
            is_valid=not conflicts,
            conflicts=conflicts,
            warnings=warnings,
            suggestions=suggestions,
            can_proceed=_none_blocking(conflicts),
        )

    def is_time_slot_available(
        self,
        day: date,
        start_time: str,
        end_time: str,
        existing_sessions: List[StudySession],
        exclude_session_id: str | None = None,
    ) -> ConflictValidationResult:
        conflicts: List[ConflictDetails] = []
        warnings: List[ConflictDetails] = []

        try:
            start, end = parse_clock(start_time), parse_clock(end_time)
        except ValueError:
            conflicts.append(ConflictDetails(
                type="invalid_time_slot",
                message=f"Invalid time range {start_time!r} - {end_time!r}",
                severity="high",
            ))
            return ConflictValidationResult(
                is_valid=False,
                conflicts=conflicts,
                suggestions=["Find alternative time slot"],
                can_proceed=False,
            )

        if not (0 <= start < end <= MINUTES_PER_DAY):
            conflicts.append(ConflictDetails(
                type="invalid_time_slot",
                message="Invalid time range",
                severity="high",
            ))

        window = effective_window(day, self.settings)
        if start < window.start_minute or end > window.end_minute:
            conflicts.append(ConflictDetails(
                type="invalid_time_slot",
                message=f"Time slot outside study window ({window.start_hour}:00 - {window.end_hour}:00)",
                severity="high",
            ))

        if not is_work_day(day, self.settings):
            conflicts.append(ConflictDetails(
                type="invalid_time_slot",
                message="Date is not a work day",
                severity="high",
            ))

        if day < self.today:
            conflicts.append(ConflictDetails(
                type="invalid_time_slot",
                message=f"Date {day.isoformat()} is in the past",
                severity="high",
                suggestion="Choose today or a later date",
            ))

        others = [
            s for s in _active_sessions(existing_sessions)
            if exclude_session_id is None or session_id(s) != exclude_session_id
        ]
        for other in others:
            interval = _timed(other)
            if interval and overlaps(start, end, *interval):
                conflicts.append(ConflictDetails(
                    type="session_overlap",
                    message=f"Overlaps with existing session ({other.start_time} - {other.end_time})",
                    conflicting_session_id=session_id(other),
                    severity="high",
                    suggestion="Choose a different time slot",
                ))

        conflicts.extend(self._commitment_conflicts(day, start, end))

        total = sum(s.allocated_hours for s in others) + (end - start) / 60
        limit = daily_base_hours(day, self.settings)
        if total > limit + EPSILON:
            conflicts.append(ConflictDetails(
                type="daily_limit_exceeded",
                message=f"Would exceed daily limit ({total:.1f}h > {limit:g}h)",
                severity="medium",
                suggestion="Reduce session length or choose a different day",
            ))

        for avoided in self.settings.avoid_time_ranges:
            try:
                a_start, a_end = parse_clock(avoided.start), parse_clock(avoided.end)
            except ValueError:
                continue
            if overlaps(start, end, a_start, a_end):
                warnings.append(ConflictDetails(
                    type="invalid_time_slot",
                    message=f"Slot touches a time range you prefer to avoid ({avoided.start} - {avoided.end})",
                    severity="medium",
                ))

        return ConflictValidationResult(
            is_valid=not conflicts,
            conflicts=conflicts,
            warnings=warnings,
            suggestions=["Find alternative time slot"] if conflicts else [],
            can_proceed=_none_blocking(conflicts),
        )

    def rollback_on_conflict(
        self,
        original: List[StudyPlan],
        working: List[StudyPlan],
    ) -> Tuple[List[StudyPlan], bool]:
        """
        Keep the working plans only when they validate cleanly; otherwise hand
        back a deep copy of the original plans.
        """
        report = self.validate_after_redistribution(working)
        if report.is_valid:
            return working, False

        logger.warning(
            "Rollback performed due to %d conflict(s): %s",
            len(report.conflicts),
            "; ".join(c.message for c in report.conflicts),
        )
        return [p.model_copy(deep=True) for p in original], True

    def validate_plan(self, plan: StudyPlan) -> Tuple[List[ConflictDetails], List[ConflictDetails]]:
        conflicts: List[ConflictDetails] = []
        warnings: List[ConflictDetails] = []

        timed = [(s, _timed(s)) for s in _active_sessions(plan.sessions)]
        timed = [(s, iv) for s, iv in timed if iv is not None]

        for i, (first, first_iv) in enumerate(timed):
            for second, second_iv in timed[i + 1:]:
                if overlaps(*first_iv, *second_iv):
                    conflicts.append(ConflictDetails(
                        type="session_overlap",
                        message=(
                            f"Sessions overlap on {plan.date.isoformat()}: "
                            f"{first.start_time}-{first.end_time} and {second.start_time}-{second.end_time}"
                        ),
                        session_id=session_id(first),
                        conflicting_session_id=session_id(second),
                        severity="high",
                        suggestion="Adjust session times to avoid overlap",
                    ))

        for session, (start, end) in timed:
            for conflict in self._commitment_conflicts(plan.date, start, end):
                conflict.session_id = session_id(session)
                conflicts.append(conflict)

        total = _allocated(plan.sessions)
        limit = daily_base_hours(plan.date, self.settings)
        if total > limit + EPSILON:
            warnings.append(ConflictDetails(
                type="daily_limit_exceeded",
                message=f"Day exceeds available hours: {total:.1f}h > {limit:g}h",
                severity="medium",
                suggestion="Consider redistributing some sessions to other days",
            ))

        return conflicts, warnings

    def _commitment_conflicts(self, day: date, start: int, end: int) -> List[ConflictDetails]:
        conflicts: List[ConflictDetails] = []
        for c in commitments_for_day(self.commitments, day):
            if is_all_day_on(c, day):
                conflicts.append(ConflictDetails(
                    type="all_day_conflict",
                    message=f"Conflicts with all-day commitment: {c.title}",
                    conflicting_commitment_id=c.id,
                    severity="high",
                    suggestion="Choose a different day",
                ))
                continue
            interval = commitment_interval(c, day)
            if interval and overlaps(start, end, *interval):
                conflicts.append(ConflictDetails(
                    type="commitment_conflict",
                    message=f"Conflicts with {c.title}",
                    conflicting_commitment_id=c.id,
                    severity="high",
                    suggestion="Choose a different time slot",
                ))
        return conflicts


def validate_settings_change(
    plans: List[StudyPlan],
    new_settings: Settings,
) -> ConflictValidationResult:
    """
    Report manually placed sessions that the new settings would no longer
    allow. Auto-scheduled sessions are ignored since regeneration moves them.
    """
    conflicts: List[ConflictDetails] = []
    suggestions: List[str] = []

    for plan in plans:
        window = effective_window(plan.date, new_settings)
        for session in plan.sessions:
            if not session.is_manual_override or session.is_finished:
                continue
            interval = _timed(session)
            if interval and (interval[0] < window.start_minute or interval[1] > window.end_minute):
                conflicts.append(ConflictDetails(
                    type="invalid_time_slot",
                    message=(
                        "Manually rescheduled session conflicts with new study window "
                        f"({window.start_hour}:00-{window.end_hour}:00)"
                    ),
                    session_id=session_id(session),
                    severity="medium",
                ))
            if not is_work_day(plan.date, new_settings):
                conflicts.append(ConflictDetails(
                    type="invalid_time_slot",
                    message="Manually rescheduled session is on a day you no longer want to study",
                    session_id=session_id(session),
                    severity="medium",
                ))

    if conflicts:
        suggestions.append("Keep your manual reschedules and only regenerate auto-scheduled sessions")
        suggestions.append("Review conflicting sessions and adjust them to fit your new settings")
        if any("window" in c.message for c in conflicts):
            suggestions.append("Expand your study window to accommodate existing manual reschedules")
        if any("no longer" in c.message for c in conflicts):
            suggestions.append("Add back work days that have manually scheduled sessions, or move those sessions")

    return ConflictValidationResult(
        is_valid=not conflicts,
        conflicts=conflicts,
        suggestions=suggestions,
        can_proceed=True,
    )
