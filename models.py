from __future__ import annotations
from pydantic import BaseModel, Field
from datetime import date, datetime
from typing import Dict, List, Literal, Optional, Tuple


SessionStatus = Literal[
    "scheduled",
    "in_progress",
    "completed",
    "skipped",
    "missed",
    "rescheduled",
    "redistributed",
    "failed_redistribution",
    "skipped_user",
    "skipped_system",
]
SKIPPED_STATUSES = frozenset({"skipped", "skipped_user", "skipped_system"})

TimeOfDay = Literal["morning", "afternoon", "evening"]
Frequency = Literal["daily", "3x-week", "weekly", "flexible"]
PlanMode = Literal["even", "eisenhower", "balanced"]


class Task(BaseModel):
    id: str
    title: str
    deadline: date
    importance: bool = False
    estimated_hours: float = Field(ge=0)
    status: Literal["pending", "in_progress", "completed"] = "pending"
    created_at: datetime = Field(default_factory=datetime.now)
    start_date: Optional[date] = None
    min_work_block: Optional[int] = Field(default=None, ge=1)  # minutes
    max_session_length: Optional[float] = Field(default=None, gt=0)  # hours
    is_one_time_task: bool = False
    preferred_time_slots: List[TimeOfDay] = Field(default_factory=list)
    target_frequency: Optional[Frequency] = None
    category: str = ""
    description: str = ""


class DateRange(BaseModel):
    start_date: date
    end_date: Optional[date] = None


class OccurrenceOverride(BaseModel):
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    title: Optional[str] = None
    category: Optional[str] = None
    is_all_day: Optional[bool] = None


class FixedCommitment(BaseModel):
    id: str
    title: str
    recurring: bool = True
    days_of_week: List[int] = Field(default_factory=list)  # 0=Mon ... 6=Sun
    specific_dates: List[date] = Field(default_factory=list)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    is_all_day: bool = False
    date_range: Optional[DateRange] = None
    counts_toward_daily_hours: bool = True
    deleted_occurrences: List[date] = Field(default_factory=list)
    modified_occurrences: Dict[date, OccurrenceOverride] = Field(default_factory=dict)
    category: str = ""
    location: str = ""
    description: str = ""
    created_at: datetime = Field(default_factory=datetime.now)


class SkipMetadata(BaseModel):
    skipped_at: datetime
    reason: Literal["user_choice", "conflict", "overload"] = "user_choice"
    partial_hours: Optional[float] = Field(default=None, ge=0)


class RescheduleRecord(BaseModel):
    from_date: date
    from_start: str
    from_end: str
    to_date: date
    to_start: str
    to_end: str
    timestamp: datetime
    reason: Literal["missed", "manual", "conflict", "redistribution"]
    success: bool = True


class StudySession(BaseModel):
    task_id: str
    session_number: int = Field(ge=1)
    start_time: str = ""
    end_time: str = ""
    allocated_hours: float = Field(ge=0)
    status: SessionStatus = "scheduled"
    done: bool = False
    actual_hours: Optional[float] = None
    completed_at: Optional[datetime] = None
    original_time: Optional[str] = None
    original_date: Optional[date] = None
    is_manual_override: bool = False
    rescheduled_at: Optional[datetime] = None
    skip_metadata: Optional[SkipMetadata] = None
    reschedule_history: List[RescheduleRecord] = Field(default_factory=list)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.task_id, self.session_number)

    @property
    def is_skipped(self) -> bool:
        return self.status in SKIPPED_STATUSES

    @property
    def is_finished(self) -> bool:
        """Done or skipped: the session no longer needs scheduling."""
        return self.done or self.status == "completed" or self.is_skipped


class StudyPlan(BaseModel):
    id: str
    date: date
    sessions: List[StudySession] = Field(default_factory=list)
    total_study_hours: float = 0.0
    available_hours: float = 0.0
    is_overloaded: bool = False


class TimeRange(BaseModel):
    start: str
    end: str


class DateSpecificStudyWindow(BaseModel):
    date: date
    start_hour: int = Field(ge=0, le=24)
    end_hour: int = Field(ge=0, le=24)
    is_active: bool = True


class DaySpecificStudyWindow(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    start_hour: int = Field(ge=0, le=24)
    end_hour: int = Field(ge=0, le=24)
    is_active: bool = True


class DaySpecificStudyHours(BaseModel):
    day_of_week: int = Field(ge=0, le=6)
    study_hours: float = Field(ge=0, le=24)
    is_active: bool = True


class Settings(BaseModel):
    daily_available_hours: float = Field(default=6, gt=0, le=24)
    work_days: List[int] = Field(default_factory=lambda: list(range(7)))  # 0=Mon ... 6=Sun
    buffer_days: int = Field(default=0, ge=0)
    min_session_length: int = Field(default=15, ge=1)  # minutes
    buffer_time_between_sessions: int = Field(default=0, ge=0)  # minutes
    study_window_start_hour: int = Field(default=6, ge=0, le=23)
    study_window_end_hour: int = Field(default=23, ge=1, le=24)
    max_consecutive_hours: float = Field(default=4, gt=0)
    avoid_time_ranges: List[TimeRange] = Field(default_factory=list)
    study_plan_mode: PlanMode = "even"
    date_specific_study_windows: List[DateSpecificStudyWindow] = Field(default_factory=list)
    day_specific_study_windows: List[DaySpecificStudyWindow] = Field(default_factory=list)
    day_specific_study_hours: List[DaySpecificStudyHours] = Field(default_factory=list)
    credit_partial_skip_hours: bool = False


class UnscheduledTask(BaseModel):
    task_id: str
    task_title: str
    unscheduled_minutes: int
    importance: bool = False
    deadline: date

    @property
    def unscheduled_hours(self) -> float:
        return self.unscheduled_minutes / 60


class ScheduleState(BaseModel):
    tasks: List[Task] = Field(default_factory=list)
    commitments: List[FixedCommitment] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)
    plans: List[StudyPlan] = Field(default_factory=list)
    unscheduled: List[UnscheduledTask] = Field(default_factory=list)
    last_generated_on: Optional[date] = None
    profile: str = "default"
