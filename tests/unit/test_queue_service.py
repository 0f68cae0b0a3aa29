"""Unit tests for ``tempo.queue.service`` and effective-priority scoring.

Covers:
- Effective priority weights, due-date boosts and uncapped aging
- CRUD, scheduling and computed-field persistence rules
- ``suggest`` under each strategy, budget and greedy-fit properties
- Bulk import through the service, stats and persisted settings
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from tempo.queue.models import (
    NewQueueTask,
    QueueSettings,
    QueueSettingsPatch,
    QueueTask,
    QueueTaskPatch,
    SuggestionStrategy,
    TaskPriority,
    TaskSource,
    TaskStatus,
    calculate_effective_priority,
)
from tempo.queue.service import QUEUE_TASKS_KEY, QueueService
from tempo.sync import DataChangedNotifier

NOW = datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)
TODAY = NOW.date()

# ── Helpers ──────────────────────────────────────────────────────────────


def _task(**kwargs) -> QueueTask:
    kwargs.setdefault("title", "task")
    kwargs.setdefault("duration", 25)
    kwargs.setdefault("created_at", NOW)
    return QueueTask(**kwargs)


async def _seed(kv, *tasks: QueueTask) -> None:
    await kv.set(QUEUE_TASKS_KEY, {"tasks": [t.model_dump(mode="json") for t in tasks]})


# ── Effective priority ───────────────────────────────────────────────────


class TestEffectivePriority:
    @pytest.mark.parametrize(
        ("priority", "expected"),
        [
            (TaskPriority.URGENT, 100),
            (TaskPriority.HIGH, 75),
            (TaskPriority.MEDIUM, 50),
            (TaskPriority.LOW, 25),
        ],
    )
    def test_weights(self, priority: TaskPriority, expected: int) -> None:
        assert calculate_effective_priority(_task(priority=priority), today=TODAY) == expected

    def test_frog_and_due_boosts(self) -> None:
        base = _task(priority=TaskPriority.MEDIUM, frog=True)
        assert calculate_effective_priority(base, today=TODAY) == 65
        for offset, bonus in [(-2, 60), (0, 50), (1, 30), (5, 20), (9, 0)]:
            due = (TODAY + timedelta(days=offset)).isoformat()
            task = _task(priority=TaskPriority.LOW, due_date=due)
            assert calculate_effective_priority(task, today=TODAY) == 25 + bonus

    def test_old_low_task_outranks_fresh_high(self) -> None:
        fresh_high = _task(priority=TaskPriority.HIGH)
        old_low = _task(priority=TaskPriority.LOW, created_at=NOW - timedelta(days=11))
        assert calculate_effective_priority(old_low, today=TODAY) > calculate_effective_priority(
            fresh_high, today=TODAY
        )

    def test_aging_is_not_capped(self) -> None:
        older = _task(created_at=NOW - timedelta(days=100))
        old = _task(created_at=NOW - timedelta(days=50))
        assert calculate_effective_priority(older, today=TODAY) > calculate_effective_priority(
            old, today=TODAY
        )


# ── CRUD ─────────────────────────────────────────────────────────────────


class TestTaskOperations:
    async def test_create_and_read_back(self, queue_service) -> None:
        created = await queue_service.create_task(
            NewQueueTask(title="Write", duration=30, priority=TaskPriority.HIGH)
        )
        assert created.status is TaskStatus.BACKLOG
        assert created.effective_priority == 75
        assert await queue_service.get_task(created.id) == created

    async def test_computed_fields_are_not_persisted(self, kv, queue_service) -> None:
        await queue_service.create_task(NewQueueTask(title="Write", duration=30))
        record = await kv.get(QUEUE_TASKS_KEY)
        assert "effective_priority" not in record["tasks"][0]
        assert "age_in_days" not in record["tasks"][0]

    async def test_age_is_recomputed_on_read(self, kv) -> None:
        await _seed(kv, _task(id="a", created_at=NOW - timedelta(days=3)))
        service = QueueService(kv, now=lambda: NOW)
        task = await service.get_task("a")
        assert task.age_in_days == 3
        assert task.effective_priority == 50 + 15

    async def test_update_patch_leaves_unset_fields(self, queue_service) -> None:
        created = await queue_service.create_task(
            NewQueueTask(title="Write", duration=30, tags=["docs"])
        )
        updated = await queue_service.update_task(
            created.id, QueueTaskPatch(duration=45, due_date="March 20, 2025")
        )
        assert updated.duration == 45
        assert updated.due_date == "2025-03-20"
        assert updated.title == "Write"
        assert updated.tags == ["docs"]

    async def test_missing_task_returns_none_or_false(self, queue_service) -> None:
        assert await queue_service.get_task("nope") is None
        assert await queue_service.update_priority("nope", TaskPriority.LOW) is None
        assert await queue_service.delete_task("nope") is False

    async def test_status_operations(self, queue_service) -> None:
        a = await queue_service.create_task(NewQueueTask(title="a", duration=10))
        b = await queue_service.create_task(NewQueueTask(title="b", duration=10))

        assert (await queue_service.complete_task(a.id)).completed_at is not None
        assert (await queue_service.discard_task(b.id)).status is TaskStatus.DISCARDED
        assert await queue_service.get_backlog_tasks() == []

    async def test_frog_priority_due_date(self, queue_service) -> None:
        task = await queue_service.create_task(NewQueueTask(title="a", duration=10))
        assert (await queue_service.toggle_frog(task.id)).frog is True
        assert (await queue_service.toggle_frog(task.id)).frog is False
        assert (await queue_service.update_priority(task.id, TaskPriority.URGENT)).priority is TaskPriority.URGENT
        assert (await queue_service.set_due_date(task.id, date(2025, 3, 13))).due_date == "2025-03-13"
        assert (await queue_service.set_due_date(task.id, None)).due_date is None
        with pytest.raises(ValueError):
            await queue_service.set_due_date(task.id, "whenever")

    async def test_schedule_and_unschedule(self, queue_service) -> None:
        task = await queue_service.create_task(NewQueueTask(title="a", duration=10))
        await queue_service.schedule_task(task.id, "2025-03-13")
        [scheduled] = await queue_service.get_scheduled_tasks_for_date(date(2025, 3, 13))
        assert scheduled.scheduled_session_id == "session-2025-03-13"

        back = await queue_service.unschedule_task(task.id)
        assert back.status is TaskStatus.BACKLOG
        assert back.scheduled_for is None

    async def test_record_scheduled_tasks_upserts(self, queue_service) -> None:
        existing = await queue_service.create_task(NewQueueTask(title="a", duration=10))
        ids = await queue_service.record_scheduled_tasks(
            [
                NewQueueTask(id=existing.id, title="a", duration=10),
                NewQueueTask(id="new", title="b", duration=20, source=TaskSource.GENERATED),
            ],
            session_date="2025-03-12",
        )
        assert ids == [existing.id, "new"]
        tasks = {t.id: t for t in await queue_service.get_all_tasks()}
        assert len(tasks) == 2
        assert all(t.status is TaskStatus.SCHEDULED for t in tasks.values())
        assert tasks["new"].scheduled_for == "2025-03-12"

    async def test_reconcile_session_tasks(self, queue_service) -> None:
        await queue_service.record_scheduled_tasks(
            [
                NewQueueTask(id=name, title=name, duration=30)
                for name in ("done", "left", "dropped", "forgotten")
            ],
            session_date="2025-03-12",
        )
        other_day = await queue_service.record_scheduled_tasks(
            [NewQueueTask(id="tomorrow", title="tomorrow", duration=10)],
            session_date="2025-03-13",
        )

        returned = await queue_service.reconcile_session_tasks(
            "2025-03-12",
            completed_ids={"done"},
            residue=[
                NewQueueTask(id="left", title="left", duration=15, source_block_id="b1"),
                NewQueueTask(title="loose end", duration=5),
            ],
            discard_ids={"dropped"},
        )

        tasks = {t.title: t for t in await queue_service.get_all_tasks()}
        assert len(tasks) == 6
        assert set(returned) == {"left", "forgotten", tasks["loose end"].id}
        assert tasks["done"].status is TaskStatus.COMPLETED
        assert tasks["done"].completed_at == NOW
        assert tasks["dropped"].status is TaskStatus.DISCARDED
        assert tasks["left"].status is TaskStatus.BACKLOG
        assert tasks["left"].duration == 15
        assert tasks["left"].source is TaskSource.SESSION_RESIDUE
        assert tasks["left"].source_block_id == "b1"
        assert tasks["forgotten"].status is TaskStatus.BACKLOG
        assert tasks["forgotten"].scheduled_for is None
        assert tasks["loose end"].source is TaskSource.SESSION_RESIDUE
        assert tasks["tomorrow"].id == other_day[0]
        assert tasks["tomorrow"].status is TaskStatus.SCHEDULED

    async def test_reconcile_without_copies_writes_nothing(self, queue_service) -> None:
        assert await queue_service.reconcile_session_tasks("2025-03-12") == []
        assert await queue_service.get_all_tasks() == []

    async def test_writes_notify(self, kv) -> None:
        calls: list[int] = []
        service = QueueService(kv, notifier=DataChangedNotifier(lambda: calls.append(1)))
        task = await service.create_task(NewQueueTask(title="a", duration=10))
        await service.toggle_frog(task.id)
        assert len(calls) == 2


# ── Suggestions ──────────────────────────────────────────────────────────


@pytest.fixture()
def backlog() -> list[QueueTask]:
    return [
        _task(id="report", title="report", duration=60, priority=TaskPriority.HIGH),
        _task(id="email", title="email", duration=10, priority=TaskPriority.LOW),
        _task(id="frog", title="frog", duration=45, priority=TaskPriority.MEDIUM, frog=True),
        _task(id="taxes", title="taxes", duration=30, priority=TaskPriority.LOW, due_date="2025-03-13"),
        _task(id="call", title="call", duration=15, priority=TaskPriority.URGENT),
        _task(id="done", title="done", duration=5, status=TaskStatus.COMPLETED),
    ]


class TestSuggest:
    async def test_priority_strategy(self, kv, queue_service, backlog) -> None:
        await _seed(kv, *backlog)
        suggestion = await queue_service.suggest(90, SuggestionStrategy.PRIORITY)
        # call 100, report 75, frog 65, taxes 55, email 25
        assert [t.id for t in suggestion.tasks] == ["call", "report", "email"]
        assert suggestion.total_duration == 85
        assert suggestion.utilization_percent == 94
        assert suggestion.frogs_included == 0

    async def test_quick_wins_strategy(self, kv, queue_service, backlog) -> None:
        await _seed(kv, *backlog)
        suggestion = await queue_service.suggest(60, SuggestionStrategy.QUICK_WINS)
        assert [t.id for t in suggestion.tasks] == ["email", "call", "taxes"]

    async def test_due_date_strategy(self, kv, queue_service, backlog) -> None:
        await _seed(kv, *backlog)
        suggestion = await queue_service.suggest(200, SuggestionStrategy.DUE_DATE)
        assert [t.id for t in suggestion.tasks][0] == "taxes"
        assert [t.id for t in suggestion.tasks][1:] == ["call", "report", "frog", "email"]

    async def test_balanced_strategy_puts_frogs_first(self, kv, queue_service, backlog) -> None:
        await _seed(kv, *backlog)
        suggestion = await queue_service.suggest(60, SuggestionStrategy.BALANCED)
        assert [t.id for t in suggestion.tasks] == ["frog", "call"]
        assert suggestion.frogs_included == 1

    async def test_uses_saved_strategy_by_default(self, kv, queue_service, backlog) -> None:
        await _seed(kv, *backlog)
        await queue_service.save_settings(QueueSettingsPatch(strategy=SuggestionStrategy.QUICK_WINS))
        suggestion = await queue_service.suggest(10)
        assert suggestion.strategy is SuggestionStrategy.QUICK_WINS
        assert [t.id for t in suggestion.tasks] == ["email"]

    async def test_zero_budget(self, kv, queue_service, backlog) -> None:
        await _seed(kv, *backlog)
        suggestion = await queue_service.suggest(0)
        assert suggestion.tasks == []
        assert suggestion.utilization_percent == 0

    @pytest.mark.parametrize("budget", [0, 5, 10, 24, 25, 55, 70, 100, 159, 160, 500])
    @pytest.mark.parametrize("strategy", list(SuggestionStrategy))
    async def test_never_exceeds_budget(self, kv, queue_service, backlog, budget, strategy) -> None:
        await _seed(kv, *backlog)
        suggestion = await queue_service.suggest(budget, strategy)
        assert suggestion.total_duration <= budget
        assert suggestion.total_duration == sum(t.duration for t in suggestion.tasks)

    @pytest.mark.parametrize("budget", [5, 10, 24, 25, 55, 70, 100, 159])
    async def test_quick_wins_leaves_nothing_that_fits(self, kv, queue_service, backlog, budget) -> None:
        await _seed(kv, *backlog)
        suggestion = await queue_service.suggest(budget, SuggestionStrategy.QUICK_WINS)
        chosen = {t.id for t in suggestion.tasks}
        remaining = budget - suggestion.total_duration
        leftovers = [
            t for t in await queue_service.get_backlog_tasks() if t.id not in chosen
        ]
        assert all(t.duration > remaining for t in leftovers)


# ── Bulk import, stats, settings ─────────────────────────────────────────


class TestBulkStatsSettings:
    async def test_bulk_import_example(self, queue_service) -> None:
        created = await queue_service.create_bulk_tasks(
            "Write report - 45m\nCall client (1h)\nfrog: review PR - 20m"
        )
        assert [(t.title, t.duration) for t in created] == [
            ("Write report", 45),
            ("Call client", 60),
            ("review PR", 20),
        ]
        assert created[2].frog is True
        assert created[2].priority is TaskPriority.HIGH
        assert all(t.source is TaskSource.IMPORT for t in created)

    async def test_bulk_import_uses_saved_default_duration(self, kv) -> None:
        service = QueueService(kv, defaults=QueueSettings(default_duration=30))
        [task] = await service.create_bulk_tasks(["Plan week"])
        assert task.duration == 30
        await service.save_settings(QueueSettingsPatch(default_duration=15))
        [task] = await service.create_bulk_tasks(["Plan month"])
        assert task.duration == 15

    async def test_stats(self, kv, queue_service, backlog) -> None:
        overdue = _task(id="late", duration=10, due_date="2025-03-01")
        await _seed(kv, *backlog, overdue)
        stats = await queue_service.get_stats()
        assert stats.total == 7
        assert stats.backlog == 6
        assert stats.completed == 1
        assert stats.frogs == 1
        assert stats.overdue == 1
        assert stats.backlog_minutes == 60 + 10 + 45 + 30 + 15 + 10
        assert stats.by_priority["low"] == 2

    async def test_settings_round_trip(self, queue_service) -> None:
        assert (await queue_service.get_settings()).strategy is SuggestionStrategy.PRIORITY
        saved = await queue_service.save_settings(QueueSettingsPatch(show_completed=True))
        assert saved.show_completed is True
        assert saved.default_duration == 25
        assert await queue_service.get_settings() == saved
