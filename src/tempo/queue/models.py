from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Mapping
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tempo.dates import normalize_date, parse_iso_date, utc_now

MIN_TASK_DURATION = 5


class TaskPriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskSource(str, Enum):
    MANUAL = "manual"
    IMPORT = "import"
    GENERATED = "generated"
    SESSION_RESIDUE = "session-residue"


class TaskStatus(str, Enum):
    BACKLOG = "backlog"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    DISCARDED = "discarded"


class SuggestionStrategy(str, Enum):
    PRIORITY = "priority"
    QUICK_WINS = "quick-wins"
    DUE_DATE = "due-date"
    BALANCED = "balanced"


def _coerce_due_date(value: object) -> object:
    if value is None or value == "":
        return None
    if isinstance(value, (str, date)):
        normalized = normalize_date(value)
        if parse_iso_date(normalized) is None:
            raise ValueError(f"due date must be YYYY-MM-DD, got {value!r}")
        return normalized
    return value


# ── Tasks ────────────────────────────────────────────────────────────────


class QueueTask(BaseModel):
    """A backlog task.

    ``effective_priority`` and ``age_in_days`` are filled in on every read by
    :class:`tempo.queue.service.QueueService` and are never persisted.
    """

    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: uuid4().hex)
    title: str = Field(..., min_length=1)
    duration: int = Field(..., ge=MIN_TASK_DURATION)
    priority: TaskPriority = TaskPriority.MEDIUM
    frog: bool = False
    due_date: str | None = None
    tags: list[str] = Field(default_factory=list)
    source: TaskSource = TaskSource.MANUAL
    status: TaskStatus = TaskStatus.BACKLOG
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    scheduled_for: str | None = None
    scheduled_session_id: str | None = None
    source_session_date: str | None = None
    source_block_id: str | None = None

    effective_priority: int = Field(default=0, exclude=True)
    age_in_days: int = Field(default=0, exclude=True)

    _due = field_validator("due_date", mode="before")(
        lambda cls, v: _coerce_due_date(v)
    )


class NewQueueTask(BaseModel):
    """Fields accepted when creating a backlog task."""

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    title: str = Field(..., min_length=1)
    duration: int = Field(..., ge=MIN_TASK_DURATION)
    priority: TaskPriority = TaskPriority.MEDIUM
    frog: bool = False
    due_date: str | None = None
    tags: list[str] = Field(default_factory=list)
    source: TaskSource = TaskSource.MANUAL
    description: str | None = None
    source_session_date: str | None = None
    source_block_id: str | None = None

    _due = field_validator("due_date", mode="before")(
        lambda cls, v: _coerce_due_date(v)
    )


class QueueTaskPatch(BaseModel):
    """Mutable task fields; ``None`` means "leave unchanged"."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1)
    duration: int | None = Field(default=None, ge=MIN_TASK_DURATION)
    priority: TaskPriority | None = None
    frog: bool | None = None
    due_date: str | None = None
    tags: list[str] | None = None
    description: str | None = None
    status: TaskStatus | None = None

    _due = field_validator("due_date", mode="before")(
        lambda cls, v: _coerce_due_date(v)
    )


# ── Settings ─────────────────────────────────────────────────────────────


class QueueSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    strategy: SuggestionStrategy = SuggestionStrategy.PRIORITY
    default_duration: int = Field(default=25, ge=MIN_TASK_DURATION)
    show_completed: bool = False


class QueueSettingsPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    strategy: SuggestionStrategy | None = None
    default_duration: int | None = Field(default=None, ge=MIN_TASK_DURATION)
    show_completed: bool | None = None


# ── Results ──────────────────────────────────────────────────────────────


class SessionSuggestion(BaseModel):
    tasks: list[QueueTask]
    strategy: SuggestionStrategy
    available_minutes: int
    total_duration: int
    utilization_percent: int
    frogs_included: int


class QueueStats(BaseModel):
    total: int = 0
    backlog: int = 0
    scheduled: int = 0
    completed: int = 0
    discarded: int = 0
    frogs: int = 0
    overdue: int = 0
    backlog_minutes: int = 0
    by_priority: dict[str, int] = Field(default_factory=dict)


# ── Effective priority ───────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class PriorityScoring:
    """Tunable weights for :func:`calculate_effective_priority`.

    Aging is uncapped: a ``low`` task (25) overtakes a fresh ``high`` task (75)
    after ten days at the default rate.
    """

    weights: Mapping[TaskPriority, int] = field(
        default_factory=lambda: {
            TaskPriority.URGENT: 100,
            TaskPriority.HIGH: 75,
            TaskPriority.MEDIUM: 50,
            TaskPriority.LOW: 25,
        }
    )
    frog_bonus: int = 15
    overdue_bonus: int = 60
    due_today_bonus: int = 50
    due_tomorrow_bonus: int = 30
    due_this_week_bonus: int = 20
    aging_rate: int = 5


PRIORITY_SCORING = PriorityScoring()


def age_in_days(created_at: datetime, today: date) -> int:
    return max(0, (today - created_at.date()).days)


def due_date_bonus(
    due_date: str | None, today: date, scoring: PriorityScoring = PRIORITY_SCORING
) -> int:
    due = parse_iso_date(due_date) if due_date else None
    if due is None:
        return 0
    days_left = (due - today).days
    if days_left < 0:
        return scoring.overdue_bonus
    if days_left == 0:
        return scoring.due_today_bonus
    if days_left == 1:
        return scoring.due_tomorrow_bonus
    if days_left <= 7:
        return scoring.due_this_week_bonus
    return 0


def calculate_effective_priority(
    task: QueueTask, *, today: date, scoring: PriorityScoring = PRIORITY_SCORING
) -> int:
    """weight(priority) + frog bonus + due-date bonus + age_in_days * aging_rate."""
    score = scoring.weights.get(task.priority, 0)
    if task.frog:
        score += scoring.frog_bonus
    score += due_date_bonus(task.due_date, today, scoring)
    score += age_in_days(task.created_at, today) * scoring.aging_rate
    return score


__all__ = [
    "MIN_TASK_DURATION",
    "NewQueueTask",
    "PRIORITY_SCORING",
    "PriorityScoring",
    "QueueSettings",
    "QueueSettingsPatch",
    "QueueStats",
    "QueueTask",
    "QueueTaskPatch",
    "SessionSuggestion",
    "SuggestionStrategy",
    "TaskPriority",
    "TaskSource",
    "TaskStatus",
    "age_in_days",
    "calculate_effective_priority",
    "due_date_bonus",
]
