"""Demo data for development and tests.

Nothing in the engine constructs a seed provider on its own; it is only
consulted by :class:`tempo.sessions.store.SessionStore` when one is passed in.
"""

from __future__ import annotations

from datetime import date
from typing import Callable, Protocol

from tempo.dates import local_today, normalize_date
from tempo.timeboxing.models import (
    Session,
    SessionStatus,
    StoryBlock,
    TimeBox,
    TimeBoxTask,
    TimeBoxType,
)


class SeedDataProvider(Protocol):
    def session_for(self, session_date: str) -> Session | None: ...


class DemoSeedDataProvider:
    """Provides a two-story demo session for today's date only."""

    def __init__(self, *, today: Callable[[], date] = local_today) -> None:
        self._today = today

    def session_for(self, session_date: str) -> Session | None:
        if session_date != normalize_date(self._today()):
            return None
        return Session(
            date=session_date,
            status=SessionStatus.PLANNED,
            story_blocks=[
                _demo_story("Inbox zero", ["Triage email", "Reply to threads"]),
                _demo_story("Deep work", ["Draft proposal", "Edit proposal"]),
            ],
        )


def _demo_story(title: str, task_titles: list[str]) -> StoryBlock:
    first, second = task_titles
    return StoryBlock(
        title=title,
        timeboxes=[
            TimeBox(
                type=TimeBoxType.WORK,
                duration=25,
                tasks=[TimeBoxTask(title=first, duration=25)],
            ),
            TimeBox(type=TimeBoxType.SHORT_BREAK, duration=5),
            TimeBox(
                type=TimeBoxType.WORK,
                duration=25,
                tasks=[TimeBoxTask(title=second, duration=25)],
            ),
        ],
    )


__all__ = ["DemoSeedDataProvider", "SeedDataProvider"]
