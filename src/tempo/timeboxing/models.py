"""Session, story-block and time-box models plus the proposal shapes fed to the builder.

Stored records use camelCase keys (``storyBlocks``, ``totalDuration``) so a
session written by this package and one materialized by an external layout
service share a single wire shape.  Python code uses the snake_case names.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from tempo.dates import normalize_date, parse_iso_date, utc_now
from tempo.queue.models import TaskPriority

from .constants import DURATION_RULES


class _WireModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ── Statuses ─────────────────────────────────────────────────────────────


class TimeBoxType(str, Enum):
    WORK = "work"
    SHORT_BREAK = "short-break"
    LONG_BREAK = "long-break"

    @property
    def is_break(self) -> bool:
        return self is not TimeBoxType.WORK


class TimeBoxStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TimeBoxTaskStatus(str, Enum):
    TODO = "todo"
    COMPLETED = "completed"


class SessionStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    ARCHIVED = "archived"


# ── Materialized session ─────────────────────────────────────────────────


class TimeBoxTask(_WireModel):
    """A task as carried by a work time-box."""

    title: str = Field(..., min_length=1)
    duration: int = Field(..., ge=1)
    status: TimeBoxTaskStatus = TimeBoxTaskStatus.TODO
    frog: bool = False
    task_id: str | None = None
    original_title: str | None = None


class TimeBox(_WireModel):
    type: TimeBoxType
    duration: int = Field(..., ge=0)
    status: TimeBoxStatus = TimeBoxStatus.TODO
    tasks: list[TimeBoxTask] = Field(default_factory=list)
    actual_duration: int | None = Field(default=None, ge=0)
    start_time: datetime | None = None

    @model_validator(mode="after")
    def _check_tasks(self) -> "TimeBox":
        if self.type.is_break and self.tasks:
            raise ValueError("break time-boxes cannot carry tasks")
        carried = sum(task.duration for task in self.tasks)
        if carried > self.duration:
            raise ValueError(
                f"tasks sum to {carried} minutes but the time-box is {self.duration}"
            )
        return self

    @property
    def is_work(self) -> bool:
        return self.type is TimeBoxType.WORK


class StoryBlock(_WireModel):
    """A named group of time-boxes; totals and progress are always derived."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    title: str = Field(..., min_length=1)
    timeboxes: list[TimeBox] = Field(default_factory=list)
    total_duration: int = 0
    progress: int = Field(default=0, ge=0, le=100)
    task_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _derive(self) -> "StoryBlock":
        return self.recalculate()

    def recalculate(self) -> "StoryBlock":
        self.total_duration = sum(box.duration for box in self.timeboxes)
        work = [box for box in self.timeboxes if box.is_work]
        done = sum(1 for box in work if box.status is TimeBoxStatus.COMPLETED)
        self.progress = round(done / len(work) * 100) if work else 0
        return self

    @property
    def work_boxes(self) -> list[TimeBox]:
        return [box for box in self.timeboxes if box.is_work]


class Session(_WireModel):
    """One calendar day's plan; ``date`` is the unique key."""

    date: str
    story_blocks: list[StoryBlock] = Field(default_factory=list)
    status: SessionStatus = SessionStatus.PLANNED
    total_duration: int = 0
    last_updated: datetime = Field(default_factory=utc_now)

    @field_validator("date", mode="before")
    @classmethod
    def _normalize_date(cls, value: object) -> object:
        if isinstance(value, str) or hasattr(value, "isoformat"):
            value = normalize_date(value)  # type: ignore[arg-type]
        if not isinstance(value, str) or parse_iso_date(value) is None:
            raise ValueError(f"session date must be YYYY-MM-DD, got {value!r}")
        return value

    @model_validator(mode="after")
    def _derive(self) -> "Session":
        return self.recalculate()

    def recalculate(self) -> "Session":
        for block in self.story_blocks:
            block.recalculate()
        self.total_duration = sum(
            box.duration for block in self.story_blocks for box in block.work_boxes
        )
        return self

    def work_boxes(self) -> list[TimeBox]:
        return [box for block in self.story_blocks for box in block.work_boxes]

    def find_block(self, block_id: str) -> StoryBlock | None:
        return next((b for b in self.story_blocks if b.id == block_id), None)


# ── Proposals (builder / splitter input) ─────────────────────────────────


class ProposedTask(_WireModel):
    """One task in a proposed layout.

    ``break_after`` marks a rest interval scheduled right after this task.
    Split parts share the ``id`` of the task they came from.
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    title: str = Field(..., min_length=1)
    duration: int = Field(..., ge=1, le=24 * 60)
    frog: bool = False
    priority: TaskPriority = TaskPriority.MEDIUM
    original_title: str | None = None
    break_after: TimeBoxType | None = None

    @field_validator("break_after")
    @classmethod
    def _break_only(cls, value: TimeBoxType | None) -> TimeBoxType | None:
        if value is TimeBoxType.WORK:
            raise ValueError("break_after must be a break type")
        return value

    @property
    def root_title(self) -> str:
        return self.original_title or self.title


class ProposedStory(_WireModel):
    title: str = Field(..., min_length=1)
    tasks: list[ProposedTask] = Field(default_factory=list)
    estimated_duration: int = 0
    original_title: str | None = None
    max_task_duration: int | None = Field(
        default=None, ge=DURATION_RULES.min_duration
    )

    def matches(self, name: str) -> bool:
        return name in {self.title, self.original_title}

    @property
    def work_duration(self) -> int:
        return sum(task.duration for task in self.tasks)


__all__ = [
    "ProposedStory",
    "ProposedTask",
    "Session",
    "SessionStatus",
    "StoryBlock",
    "TimeBox",
    "TimeBoxStatus",
    "TimeBoxTask",
    "TimeBoxTaskStatus",
    "TimeBoxType",
]
