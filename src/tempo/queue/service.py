from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Callable, Iterable

from pydantic import ValidationError

from tempo.dates import normalize_date, parse_iso_date, utc_now
from tempo.storage.kv import KeyValueStore
from tempo.sync import DataChangedNotifier

from .bulk_import import parse_bulk_tasks
from .models import (
    PRIORITY_SCORING,
    NewQueueTask,
    PriorityScoring,
    QueueSettings,
    QueueSettingsPatch,
    QueueStats,
    QueueTask,
    QueueTaskPatch,
    SessionSuggestion,
    SuggestionStrategy,
    TaskPriority,
    TaskSource,
    TaskStatus,
    age_in_days,
    calculate_effective_priority,
)

logger = logging.getLogger(__name__)

QUEUE_TASKS_KEY = "queue-tasks"
QUEUE_SETTINGS_KEY = "queue-settings"


class QueueService:
    """Owns backlog records.

    All tasks live in one collection record (``queue-tasks``); every write
    reads the collection, changes it and replaces it whole.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        defaults: QueueSettings | None = None,
        notifier: DataChangedNotifier | None = None,
        now: Callable[[], datetime] = utc_now,
        scoring: PriorityScoring = PRIORITY_SCORING,
    ) -> None:
        self._kv = kv
        self._defaults = defaults or QueueSettings()
        self._notifier = notifier or DataChangedNotifier()
        self._now = now
        self._scoring = scoring

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_all_tasks(self) -> list[QueueTask]:
        return await self._load()

    async def get_backlog_tasks(self) -> list[QueueTask]:
        return [t for t in await self._load() if t.status is TaskStatus.BACKLOG]

    async def get_task(self, task_id: str) -> QueueTask | None:
        return next((t for t in await self._load() if t.id == task_id), None)

    async def get_scheduled_tasks_for_date(
        self, session_date: str | date
    ) -> list[QueueTask]:
        target = normalize_date(session_date)
        return [
            t
            for t in await self._load()
            if t.status is TaskStatus.SCHEDULED and t.scheduled_for == target
        ]

    # ── Creation ─────────────────────────────────────────────────────────

    async def create_task(self, new_task: NewQueueTask) -> QueueTask:
        tasks = await self._load()
        task = self._build(new_task, status=TaskStatus.BACKLOG)
        tasks.append(task)
        await self._save(tasks)
        logger.info(
            "Created backlog task id=%s source=%s",
            task.id,
            task.source.value,
            extra={"event": "task_created", "task_id": task.id},
        )
        return self._decorate(task)

    async def create_bulk_tasks(
        self,
        text: str | Iterable[str],
        *,
        default_priority: TaskPriority = TaskPriority.MEDIUM,
    ) -> list[QueueTask]:
        settings = await self.get_settings()
        parsed = parse_bulk_tasks(
            text,
            default_duration=settings.default_duration,
            default_priority=default_priority,
        )
        if not parsed:
            return []
        tasks = await self._load()
        created = [
            self._build(
                NewQueueTask(
                    title=line.title,
                    duration=line.duration,
                    priority=line.priority,
                    frog=line.frog,
                    source=TaskSource.IMPORT,
                ),
                status=TaskStatus.BACKLOG,
            )
            for line in parsed
        ]
        tasks.extend(created)
        await self._save(tasks)
        logger.info("Bulk imported %s backlog tasks", len(created))
        return [self._decorate(task) for task in created]

    async def reconcile_session_tasks(
        self,
        session_date: str | date,
        *,
        completed_ids: Iterable[str] = (),
        residue: Iterable[NewQueueTask] = (),
        discard_ids: Iterable[str] = (),
    ) -> list[str]:
        """Settle the backlog copies of a closed-out session's tasks.

        Scheduled copies for ``session_date`` become ``completed`` or
        ``discarded`` when their id is listed.  A residue entry whose id matches
        a scheduled copy turns that copy back into a backlog task; any other
        residue entry is appended as a new task.  Copies the session no longer
        mentions are unscheduled.  Returns the ids of every task put back in
        the backlog.
        """
        target = normalize_date(session_date)
        tasks = await self._load()
        copies = {
            task.id: task
            for task in tasks
            if task.status is TaskStatus.SCHEDULED and task.scheduled_for == target
        }
        scheduled = len(copies)
        done, dropped = set(completed_ids), set(discard_ids)
        now = self._now()
        returned: list[str] = []

        for entry in residue:
            task = copies.pop(entry.id, None) if entry.id else None
            if task is None:
                task = self._build(
                    entry.model_copy(
                        update={"id": None, "source": TaskSource.SESSION_RESIDUE}
                    ),
                    status=TaskStatus.BACKLOG,
                )
                tasks.append(task)
            else:
                _return_to_backlog(task, now)
                task.source = TaskSource.SESSION_RESIDUE
                task.duration = entry.duration
                task.source_session_date = entry.source_session_date
                task.source_block_id = entry.source_block_id
            returned.append(task.id)

        for task in copies.values():
            if task.id in done:
                task.status = TaskStatus.COMPLETED
                task.completed_at = now
                task.updated_at = now
            elif task.id in dropped:
                task.status = TaskStatus.DISCARDED
                task.updated_at = now
            else:
                _return_to_backlog(task, now)
                returned.append(task.id)

        if not returned and not copies:
            return []
        await self._save(tasks)
        logger.info(
            "Reconciled session tasks date=%s scheduled=%s returned=%s",
            target,
            scheduled,
            len(returned),
            extra={"event": "session_tasks_reconciled", "session_date": target},
        )
        return returned

    async def record_scheduled_tasks(
        self, entries: Iterable[NewQueueTask], *, session_date: str | date
    ) -> list[str]:
        """Upsert session tasks into the backlog as ``scheduled`` for ``session_date``."""
        target = normalize_date(session_date)
        tasks = await self._load()
        by_id = {task.id: task for task in tasks}
        now = self._now()
        ids: list[str] = []
        for entry in entries:
            existing = by_id.get(entry.id) if entry.id else None
            if existing is None:
                existing = self._build(entry, status=TaskStatus.SCHEDULED)
                tasks.append(existing)
                by_id[existing.id] = existing
            existing.status = TaskStatus.SCHEDULED
            existing.scheduled_for = target
            existing.scheduled_session_id = f"session-{target}"
            existing.updated_at = now
            ids.append(existing.id)
        await self._save(tasks)
        return ids

    # ── Updates ──────────────────────────────────────────────────────────

    async def update_task(self, task_id: str, patch: QueueTaskPatch) -> QueueTask | None:
        updates = patch.model_dump(exclude_none=True)
        now = self._now()
        return await self._mutate(
            task_id, lambda task: _apply_patch(task, updates, completed_at=now)
        )

    async def delete_task(self, task_id: str) -> bool:
        tasks = await self._load()
        remaining = [t for t in tasks if t.id != task_id]
        if len(remaining) == len(tasks):
            return False
        await self._save(remaining)
        return True

    async def discard_task(self, task_id: str) -> QueueTask | None:
        return await self._mutate(
            task_id, lambda task: setattr(task, "status", TaskStatus.DISCARDED)
        )

    async def complete_task(self, task_id: str) -> QueueTask | None:
        def _complete(task: QueueTask) -> None:
            task.status = TaskStatus.COMPLETED
            task.completed_at = self._now()

        return await self._mutate(task_id, _complete)

    async def update_priority(
        self, task_id: str, priority: TaskPriority
    ) -> QueueTask | None:
        return await self._mutate(
            task_id, lambda task: setattr(task, "priority", priority)
        )

    async def toggle_frog(self, task_id: str) -> QueueTask | None:
        return await self._mutate(task_id, lambda task: setattr(task, "frog", not task.frog))

    async def set_due_date(
        self, task_id: str, due_date: str | date | None
    ) -> QueueTask | None:
        normalized = normalize_date(due_date) if due_date else None
        if normalized is not None and parse_iso_date(normalized) is None:
            raise ValueError(f"due date must be YYYY-MM-DD, got {due_date!r}")
        return await self._mutate(
            task_id, lambda task: setattr(task, "due_date", normalized)
        )

    async def schedule_task(
        self, task_id: str, session_date: str | date
    ) -> QueueTask | None:
        target = normalize_date(session_date)

        def _schedule(task: QueueTask) -> None:
            task.status = TaskStatus.SCHEDULED
            task.scheduled_for = target
            task.scheduled_session_id = f"session-{target}"

        return await self._mutate(task_id, _schedule)

    async def unschedule_task(self, task_id: str) -> QueueTask | None:
        return await self._mutate(
            task_id, lambda task: _return_to_backlog(task, self._now())
        )

    # ── Suggestions & stats ──────────────────────────────────────────────

    async def suggest(
        self,
        available_minutes: int,
        strategy: SuggestionStrategy | None = None,
    ) -> SessionSuggestion:
        chosen = strategy or (await self.get_settings()).strategy
        candidates = sort_for_strategy(await self.get_backlog_tasks(), chosen)
        selected: list[QueueTask] = []
        total = 0
        for task in candidates:
            if total + task.duration <= available_minutes:
                selected.append(task)
                total += task.duration
        utilization = (
            round(total / available_minutes * 100) if available_minutes > 0 else 0
        )
        logger.debug(
            "Suggested %s tasks strategy=%s total=%s available=%s",
            len(selected),
            chosen.value,
            total,
            available_minutes,
            extra={"strategy": chosen.value},
        )
        return SessionSuggestion(
            tasks=selected,
            strategy=chosen,
            available_minutes=available_minutes,
            total_duration=total,
            utilization_percent=utilization,
            frogs_included=sum(1 for t in selected if t.frog),
        )

    async def get_stats(self) -> QueueStats:
        tasks = await self._load()
        today = self._now().date()
        stats = QueueStats(total=len(tasks))
        for task in tasks:
            match task.status:
                case TaskStatus.BACKLOG:
                    stats.backlog += 1
                    stats.backlog_minutes += task.duration
                    stats.by_priority[task.priority.value] = (
                        stats.by_priority.get(task.priority.value, 0) + 1
                    )
                    if task.frog:
                        stats.frogs += 1
                    due = parse_iso_date(task.due_date) if task.due_date else None
                    if due is not None and due < today:
                        stats.overdue += 1
                case TaskStatus.SCHEDULED:
                    stats.scheduled += 1
                case TaskStatus.COMPLETED:
                    stats.completed += 1
                case TaskStatus.DISCARDED:
                    stats.discarded += 1
        return stats

    # ── Settings ─────────────────────────────────────────────────────────

    async def get_settings(self) -> QueueSettings:
        record = await self._kv.get(QUEUE_SETTINGS_KEY)
        if record is None:
            return self._defaults.model_copy()
        return QueueSettings.model_validate(
            {**self._defaults.model_dump(mode="json"), **record}
        )

    async def save_settings(self, patch: QueueSettingsPatch) -> QueueSettings:
        current = await self.get_settings()
        merged = current.model_copy(update=patch.model_dump(exclude_none=True))
        await self._kv.set(QUEUE_SETTINGS_KEY, merged.model_dump(mode="json"))
        self._notifier.notify(source="queue.settings")
        return merged

    # ── Internals ────────────────────────────────────────────────────────

    async def _mutate(
        self, task_id: str, change: Callable[[QueueTask], object]
    ) -> QueueTask | None:
        tasks = await self._load()
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            return None
        change(task)
        task.updated_at = self._now()
        await self._save(tasks)
        return self._decorate(task)

    def _build(self, new_task: NewQueueTask, *, status: TaskStatus) -> QueueTask:
        now = self._now()
        data = new_task.model_dump(exclude_none=True)
        return QueueTask(**data, status=status, created_at=now, updated_at=now)

    def _decorate(self, task: QueueTask) -> QueueTask:
        today = self._now().date()
        task.age_in_days = age_in_days(task.created_at, today)
        task.effective_priority = calculate_effective_priority(
            task, today=today, scoring=self._scoring
        )
        return task

    async def _load(self) -> list[QueueTask]:
        record = await self._kv.get(QUEUE_TASKS_KEY)
        tasks: list[QueueTask] = []
        for raw in (record or {}).get("tasks", []):
            try:
                tasks.append(self._decorate(QueueTask.model_validate(raw)))
            except ValidationError:
                logger.warning("Skipping unreadable backlog task %r", raw, exc_info=True)
        return tasks

    async def _save(self, tasks: list[QueueTask]) -> None:
        await self._kv.set(
            QUEUE_TASKS_KEY, {"tasks": [t.model_dump(mode="json") for t in tasks]}
        )
        self._notifier.notify(source="queue.tasks")


def sort_for_strategy(
    tasks: Iterable[QueueTask], strategy: SuggestionStrategy
) -> list[QueueTask]:
    """Order tasks for greedy selection; ties fall back to effective priority, age, id."""

    def tie_break(task: QueueTask) -> tuple:
        return (-task.effective_priority, task.created_at, task.id)

    match strategy:
        case SuggestionStrategy.QUICK_WINS:
            key = lambda t: (t.duration, *tie_break(t))  # noqa: E731
        case SuggestionStrategy.DUE_DATE:
            key = lambda t: (t.due_date is None, t.due_date or "", *tie_break(t))  # noqa: E731
        case SuggestionStrategy.BALANCED:
            key = lambda t: (not t.frog, *tie_break(t))  # noqa: E731
        case _:
            key = tie_break
    return sorted(tasks, key=key)


def _return_to_backlog(task: QueueTask, now: datetime) -> None:
    task.status = TaskStatus.BACKLOG
    task.scheduled_for = None
    task.scheduled_session_id = None
    task.updated_at = now


def _apply_patch(
    task: QueueTask, updates: dict[str, object], *, completed_at: datetime
) -> None:
    for field, value in updates.items():
        setattr(task, field, value)
    if task.status is TaskStatus.COMPLETED and task.completed_at is None:
        task.completed_at = completed_at


__all__ = [
    "QUEUE_SETTINGS_KEY",
    "QUEUE_TASKS_KEY",
    "QueueService",
    "sort_for_strategy",
]
