"""Build and persist a session from proposed stories.

The builder owns the retry protocol:

1. one proactive :func:`split_for_retry` pass,
2. a total-duration check that fails at once on malformed input,
3. up to ``max_attempts`` materialize-and-save attempts, where transient
   errors are retried unchanged and structural errors trigger a split
   targeted at the blamed block first.

A successful attempt saves the session and records every task in the backlog
as ``scheduled``.  If the backlog write fails, the session write is undone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Protocol, Sequence

from tempo.dates import normalize_date
from tempo.queue.models import NewQueueTask, TaskSource
from tempo.queue.service import QueueService
from tempo.sessions.store import SessionStore

from .constants import DURATION_RULES, DurationRules
from .errors import (
    InvalidSessionDurationError,
    SessionCreationError,
    StructuralViolationError,
    TransientMaterializationError,
)
from .layout import LocalSessionMaterializer, SessionMaterializer
from .models import ProposedStory, Session, SessionStatus
from .splitter import SplitViolation, split_for_retry

logger = logging.getLogger(__name__)


class TaskExtractor(Protocol):
    """Turns free-text task lines into story proposals."""

    async def extract(self, lines: Sequence[str]) -> list[ProposedStory]: ...


@dataclass
class StoryTitleMap:
    """Maps every title a retry error might mention back to its story."""

    owners: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, stories: Sequence[ProposedStory]) -> "StoryTitleMap":
        owners: dict[str, str] = {}
        for story in stories:
            owners[story.title] = story.title
            if story.original_title:
                owners[story.original_title] = story.title
            for task in story.tasks:
                owners[f"{story.title}: {task.title}"] = story.title
                owners[f"{story.title}: {task.root_title}"] = story.title
        # Bare task titles are ambiguous across stories; first owner wins.
        for story in stories:
            for task in story.tasks:
                owners.setdefault(task.title, story.title)
                owners.setdefault(task.root_title, story.title)
        return cls(owners=owners)

    def resolve(self, name: str | None) -> str | None:
        if not name:
            return None
        if name in self.owners:
            return self.owners[name]
        folded = name.strip().casefold()
        return next(
            (owner for title, owner in self.owners.items() if title.casefold() == folded),
            None,
        )


class SessionBuilder:
    def __init__(
        self,
        *,
        store: SessionStore,
        queue: QueueService,
        materializer: SessionMaterializer | None = None,
        extractor: TaskExtractor | None = None,
        rules: DurationRules = DURATION_RULES,
        max_attempts: int = 10,
        transient_retry_delay_s: float = 2.0,
        structural_retry_delay_s: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._queue = queue
        self._materializer = materializer or LocalSessionMaterializer(rules)
        self._extractor = extractor
        self._rules = rules
        self._max_attempts = max(1, int(max_attempts))
        self._transient_delay_s = transient_retry_delay_s
        self._structural_delay_s = structural_retry_delay_s
        self._sleep = sleep

    async def create_session_from_text(
        self, lines: Sequence[str], *, start_time: datetime
    ) -> Session:
        if self._extractor is None:
            raise RuntimeError("No task extractor configured for text session creation")
        stories = await self._extractor.extract(lines)
        return await self.create_session(stories, start_time=start_time)

    async def create_session(
        self,
        stories: Sequence[ProposedStory],
        *,
        start_time: datetime,
        session_date: str | None = None,
    ) -> Session:
        target_date = normalize_date(session_date or start_time)
        working = split_for_retry(stories, rules=self._rules)

        total = sum(story.estimated_duration for story in working)
        if not self._rules.is_valid_total(total):
            raise InvalidSessionDurationError(
                total,
                f"Total session duration {total} minutes must be at least "
                f"{self._rules.min_duration} and a multiple of {self._rules.block_size}",
            )

        titles = StoryTitleMap.build(working)
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            logger.debug(
                "Session attempt %s/%s date=%s",
                attempt,
                self._max_attempts,
                target_date,
                extra={
                    "session_date": target_date,
                    "attempt": attempt,
                    "max_attempts": self._max_attempts,
                },
            )
            try:
                blocks = await self._materializer.materialize(working, start_time)
                session = Session(
                    date=target_date,
                    story_blocks=blocks,
                    status=SessionStatus.PLANNED,
                )
                saved = await self._persist(session, working)
                logger.info(
                    "Created session date=%s blocks=%s total=%s attempts=%s",
                    saved.date,
                    len(saved.story_blocks),
                    saved.total_duration,
                    attempt,
                    extra={
                        "event": "session_created",
                        "session_date": saved.date,
                        "attempt": attempt,
                    },
                )
                return saved
            except TransientMaterializationError as exc:
                last_error = exc
                delay = self._transient_delay_s
                logger.warning(
                    "Transient layout error on attempt %s/%s: %s",
                    attempt,
                    self._max_attempts,
                    exc,
                    extra={
                        "session_date": target_date,
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                    },
                )
            except StructuralViolationError as exc:
                last_error = exc
                delay = self._structural_delay_s
                owner = titles.resolve(exc.block)
                if owner is None:
                    logger.warning(
                        "Structural violation for unknown block=%r; re-splitting all",
                        exc.block,
                    )
                else:
                    logger.info(
                        "Structural violation block=%s attempt=%s: %s",
                        owner,
                        attempt,
                        exc,
                        extra={
                            "session_date": target_date,
                            "attempt": attempt,
                            "block": owner,
                        },
                    )
                working = split_for_retry(
                    working, SplitViolation(block=owner, message=str(exc)), self._rules
                )
                titles = StoryTitleMap.build(working)
            if attempt < self._max_attempts:
                await self._sleep(delay)

        logger.error(
            "Session creation failed date=%s after %s attempts: %s",
            target_date,
            self._max_attempts,
            last_error,
            extra={
                "event": "session_creation_failed",
                "session_date": target_date,
                "attempt": self._max_attempts,
                "max_attempts": self._max_attempts,
            },
        )
        raise SessionCreationError(
            attempts=self._max_attempts, last_error=last_error
        ) from last_error

    async def _persist(
        self, session: Session, stories: Sequence[ProposedStory]
    ) -> Session:
        previous = (
            await self._store.get_session(session.date)
            if await self._store.session_exists(session.date)
            else None
        )
        saved = await self._store.save_session(session)
        try:
            await self._queue.record_scheduled_tasks(
                _scheduled_entries(stories), session_date=saved.date
            )
        except Exception:
            logger.exception(
                "Backlog update failed for session date=%s; rolling back", saved.date
            )
            if previous is None:
                await self._store.remove_session(saved.date)
            else:
                await self._store.save_session(previous)
            raise
        return saved


def _scheduled_entries(stories: Sequence[ProposedStory]) -> list[NewQueueTask]:
    """One backlog entry per original task; split parts are summed back together."""
    entries: dict[str, NewQueueTask] = {}
    for story in stories:
        for task in story.tasks:
            entry = entries.get(task.id)
            if entry is None:
                entries[task.id] = NewQueueTask(
                    id=task.id,
                    title=task.root_title,
                    duration=max(task.duration, DURATION_RULES.min_duration),
                    priority=task.priority,
                    frog=task.frog,
                    source=TaskSource.GENERATED,
                    tags=[story.original_title or story.title],
                )
            else:
                entry.duration += task.duration
    return list(entries.values())


__all__ = ["SessionBuilder", "StoryTitleMap", "TaskExtractor"]
