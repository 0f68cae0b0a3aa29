"""Date-driven status rules for stored sessions.

Which statuses a session may hold depends only on its date relative to today:

- future: ``planned``
- today: ``planned``, ``in-progress``, ``completed``
- past: ``completed``, ``incomplete``, ``archived``

Rule violations are returned as data with an optional auto-fix coroutine.
Only error-severity fixes are applied by :meth:`run_auto_transitions`;
warnings and infos are left for the caller to surface.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Awaitable, Callable, Iterable

from tempo.dates import local_today, normalize_date, parse_iso_date
from tempo.queue.models import NewQueueTask, TaskPriority, TaskSource
from tempo.queue.service import QueueService
from tempo.timeboxing.constants import DURATION_RULES
from tempo.timeboxing.models import (
    Session,
    SessionStatus,
    TimeBoxStatus,
    TimeBoxTask,
    TimeBoxTaskStatus,
)

from .store import SessionStore

logger = logging.getLogger(__name__)

FUTURE_STATUSES = frozenset({SessionStatus.PLANNED})
TODAY_STATUSES = frozenset(
    {SessionStatus.PLANNED, SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED}
)
PAST_STATUSES = frozenset(
    {SessionStatus.COMPLETED, SessionStatus.INCOMPLETE, SessionStatus.ARCHIVED}
)

RULE_INVALID_STATUS = "invalid-status-for-date"
RULE_STALE_IN_PROGRESS = "stale-in-progress"
RULE_OLD_INCOMPLETE = "old-incomplete"


class ViolationSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


AutoFix = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class RuleViolation:
    session_date: str
    rule: str
    message: str
    severity: ViolationSeverity
    auto_fix: AutoFix | None = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class AutoTransitionResult:
    transitioned: int
    violations: list[RuleViolation]


@dataclass(frozen=True)
class CloseoutResult:
    success: bool
    extracted_task_ids: list[str] = field(default_factory=list)
    new_status: SessionStatus | None = None
    error: str | None = None


@dataclass(frozen=True)
class SessionStats:
    story_blocks: int
    work_boxes: int
    completed_work_boxes: int
    tasks: int
    completed_tasks: int
    frog_tasks: int
    planned_minutes: int
    completed_minutes: int
    progress_percent: int


def legal_statuses(session_date: date, today: date) -> frozenset[SessionStatus]:
    if session_date > today:
        return FUTURE_STATUSES
    if session_date == today:
        return TODAY_STATUSES
    return PAST_STATUSES


def has_progress(session: Session) -> bool:
    return any(
        box.status in (TimeBoxStatus.COMPLETED, TimeBoxStatus.IN_PROGRESS)
        for box in session.work_boxes()
    )


def is_complete(session: Session) -> bool:
    work = session.work_boxes()
    return bool(work) and all(box.status is TimeBoxStatus.COMPLETED for box in work)


class SessionLifecycleManager:
    def __init__(
        self,
        store: SessionStore,
        queue: QueueService | None = None,
        *,
        today: Callable[[], date] = local_today,
        old_incomplete_days: int = 30,
    ) -> None:
        self._store = store
        self._queue = queue
        self._today = today
        self._old_incomplete_days = old_incomplete_days

    # ── Pure rules ───────────────────────────────────────────────────────

    def legal_statuses_for(self, session: Session) -> frozenset[SessionStatus]:
        return legal_statuses(_session_day(session), self._today())

    def suggested_status(self, session: Session) -> SessionStatus:
        day = _session_day(session)
        today = self._today()
        if day > today:
            return SessionStatus.PLANNED
        if is_complete(session):
            return SessionStatus.COMPLETED
        progressed = has_progress(session)
        if day < today:
            return SessionStatus.INCOMPLETE if progressed else SessionStatus.ARCHIVED
        return SessionStatus.IN_PROGRESS if progressed else SessionStatus.PLANNED

    def validate_session(self, session: Session) -> list[RuleViolation]:
        day = _session_day(session)
        today = self._today()
        violations: list[RuleViolation] = []

        legal = legal_statuses(day, today)
        if session.status not in legal:
            suggested = self.suggested_status(session)
            violations.append(
                RuleViolation(
                    session_date=session.date,
                    rule=RULE_INVALID_STATUS,
                    message=(
                        f"Status '{session.status.value}' is not valid for "
                        f"{session.date}; expected one of "
                        f"{sorted(s.value for s in legal)} (suggested: {suggested.value})"
                    ),
                    severity=ViolationSeverity.ERROR,
                    auto_fix=self._fix_to_suggested(session.date),
                )
            )

        if session.status is SessionStatus.IN_PROGRESS and day < today:
            violations.append(
                RuleViolation(
                    session_date=session.date,
                    rule=RULE_STALE_IN_PROGRESS,
                    message=f"Session {session.date} is still in progress",
                    severity=ViolationSeverity.WARNING,
                    auto_fix=self._fix_to_status(
                        session.date, SessionStatus.INCOMPLETE
                    ),
                )
            )

        if (
            session.status is SessionStatus.INCOMPLETE
            and (today - day).days > self._old_incomplete_days
        ):
            violations.append(
                RuleViolation(
                    session_date=session.date,
                    rule=RULE_OLD_INCOMPLETE,
                    message=(
                        f"Session {session.date} has been incomplete for more than "
                        f"{self._old_incomplete_days} days"
                    ),
                    severity=ViolationSeverity.INFO,
                    auto_fix=self._fix_to_status(session.date, SessionStatus.ARCHIVED),
                )
            )
        return violations

    # ── Sweeps & queries ─────────────────────────────────────────────────

    async def run_auto_transitions(self) -> AutoTransitionResult:
        transitioned = 0
        found: list[RuleViolation] = []
        for session in await self._store.list_sessions():
            violations = self.validate_session(session)
            found.extend(violations)
            for violation in violations:
                if violation.severity is not ViolationSeverity.ERROR:
                    continue
                if violation.auto_fix is None:
                    continue
                await violation.auto_fix()
                transitioned += 1
                logger.info(
                    "Auto-fixed session date=%s rule=%s",
                    violation.session_date,
                    violation.rule,
                    extra={
                        "event": "session_auto_fixed",
                        "session_date": violation.session_date,
                        "rule": violation.rule,
                        "severity": violation.severity.value,
                    },
                )
        logger.info(
            "Auto-transition sweep applied=%s violations=%s", transitioned, len(found)
        )
        return AutoTransitionResult(transitioned=transitioned, violations=found)

    async def sessions_needing_attention(self) -> list[Session]:
        """Past sessions that were never finished or archived, oldest first."""
        today = self._today()
        settled = {SessionStatus.COMPLETED, SessionStatus.ARCHIVED}
        return [
            session
            for session in await self._store.list_sessions()
            if _session_day(session) < today and session.status not in settled
        ]

    async def attention_count(self) -> int:
        return len(await self.sessions_needing_attention())

    def session_stats(self, session: Session) -> SessionStats:
        work = session.work_boxes()
        tasks = [task for box in work for task in box.tasks]
        completed_boxes = [b for b in work if b.status is TimeBoxStatus.COMPLETED]
        return SessionStats(
            story_blocks=len(session.story_blocks),
            work_boxes=len(work),
            completed_work_boxes=len(completed_boxes),
            tasks=len(tasks),
            completed_tasks=sum(
                1 for t in tasks if t.status is TimeBoxTaskStatus.COMPLETED
            ),
            frog_tasks=sum(1 for t in tasks if t.frog),
            planned_minutes=session.total_duration,
            completed_minutes=sum(b.duration for b in completed_boxes),
            progress_percent=(
                round(len(completed_boxes) / len(work) * 100) if work else 0
            ),
        )

    # ── Closeout ─────────────────────────────────────────────────────────

    async def closeout_session(
        self,
        session_date: str | date,
        *,
        extract_to_backlog: bool = True,
        focus_block_ids: Iterable[str] | None = None,
    ) -> CloseoutResult:
        """Finish a session and settle its tasks in the backlog.

        Finished tasks are marked ``completed`` in the backlog.  Unfinished
        tasks from the focus blocks (all blocks when ``focus_block_ids`` is
        None) go back to the backlog as session residue when
        ``extract_to_backlog`` is set; other unfinished tasks are discarded.
        The session ends up ``completed`` whatever its actual progress.
        """
        key_date = normalize_date(session_date)
        session = await self._store.get_session(key_date)
        if session is None:
            return CloseoutResult(success=False, error=f"Session {key_date} not found")

        completed_ids, residue, discard_ids = _closeout_plan(
            session, focus_block_ids, extract_to_backlog=extract_to_backlog
        )
        extracted: list[str] = []
        if self._queue is not None:
            extracted = await self._queue.reconcile_session_tasks(
                key_date,
                completed_ids=completed_ids,
                residue=residue,
                discard_ids=discard_ids,
            )
        elif residue:
            logger.warning(
                "Closeout of %s has %s unfinished tasks but no backlog is configured",
                key_date,
                len(residue),
            )

        updated = await self._store.update_session_status(
            key_date, SessionStatus.COMPLETED
        )
        logger.info(
            "Closed out session date=%s extracted=%s",
            key_date,
            len(extracted),
            extra={"event": "session_closed_out", "session_date": key_date},
        )
        return CloseoutResult(
            success=updated is not None,
            extracted_task_ids=extracted,
            new_status=updated.status if updated else None,
        )

    # ── Auto-fix factories ───────────────────────────────────────────────

    def _fix_to_suggested(self, session_date: str) -> AutoFix:
        async def _fix() -> Session | None:
            current = await self._store.get_session(session_date)
            if current is None:
                return None
            status = self.suggested_status(current)
            if current.status is status:
                return current
            return await self._store.update_session_status(session_date, status)

        return _fix

    def _fix_to_status(self, session_date: str, status: SessionStatus) -> AutoFix:
        async def _fix() -> Session | None:
            current = await self._store.get_session(session_date)
            if current is None or current.status is status:
                return current
            return await self._store.update_session_status(session_date, status)

        return _fix


def _session_day(session: Session) -> date:
    day = parse_iso_date(session.date)
    if day is None:
        raise ValueError(f"Session has an invalid date: {session.date!r}")
    return day


def _closeout_plan(
    session: Session,
    focus_block_ids: Iterable[str] | None,
    *,
    extract_to_backlog: bool,
) -> tuple[set[str], list[NewQueueTask], set[str]]:
    """Split a session's tasks into completed ids, residue entries and discarded ids.

    Split parts share a task id; the id counts as finished only when every
    part is.  Residue for a tracked id carries the minutes still left.
    """
    focus = set(focus_block_ids) if focus_block_ids is not None else None
    finished: dict[str, bool] = {}
    leftovers: dict[str, NewQueueTask] = {}
    untracked: list[NewQueueTask] = []
    for block in session.story_blocks:
        in_focus = focus is None or block.id in focus
        for box in block.work_boxes:
            for task in box.tasks:
                done = (
                    task.status is TimeBoxTaskStatus.COMPLETED
                    or box.status is TimeBoxStatus.COMPLETED
                )
                if task.task_id is not None:
                    finished[task.task_id] = finished.get(task.task_id, True) and done
                if done or not in_focus:
                    continue
                if task.task_id is None:
                    untracked.append(_residue_entry(session, block.id, task))
                elif task.task_id in leftovers:
                    leftovers[task.task_id].duration += task.duration
                else:
                    leftovers[task.task_id] = _residue_entry(session, block.id, task)

    completed_ids = {task_id for task_id, done in finished.items() if done}
    unfinished = {task_id for task_id, done in finished.items() if not done}
    if not extract_to_backlog:
        return completed_ids, [], unfinished
    residue = [
        entry for task_id, entry in leftovers.items() if task_id in unfinished
    ]
    return completed_ids, [*residue, *untracked], unfinished - set(leftovers)


def _residue_entry(session: Session, block_id: str, task: TimeBoxTask) -> NewQueueTask:
    return NewQueueTask(
        id=task.task_id,
        title=task.original_title or task.title,
        duration=DURATION_RULES.round_to_nearest_block(task.duration),
        priority=TaskPriority.HIGH if task.frog else TaskPriority.MEDIUM,
        frog=task.frog,
        source=TaskSource.SESSION_RESIDUE,
        source_session_date=session.date,
        source_block_id=block_id,
    )


__all__ = [
    "AutoTransitionResult",
    "CloseoutResult",
    "PAST_STATUSES",
    "RuleViolation",
    "SessionLifecycleManager",
    "SessionStats",
    "TODAY_STATUSES",
    "FUTURE_STATUSES",
    "ViolationSeverity",
    "has_progress",
    "is_complete",
    "legal_statuses",
]
