from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Iterable

from pydantic import ValidationError

from tempo.dates import local_today, normalize_date, parse_iso_date, utc_now
from tempo.storage.kv import KeyValueStore, Record
from tempo.sync import DataChangedNotifier
from tempo.timeboxing.models import (
    Session,
    SessionStatus,
    StoryBlock,
    TimeBox,
    TimeBoxStatus,
    TimeBoxTaskStatus,
)

from .patching import SessionPatch, apply_session_patch
from .seed import SeedDataProvider

logger = logging.getLogger(__name__)

SESSION_KEY_PREFIX = "session-"


def session_key(session_date: str | date) -> str:
    return f"{SESSION_KEY_PREFIX}{normalize_date(session_date)}"


class SessionStore:
    """Owns session records; one whole-record read/replace per write."""

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        notifier: DataChangedNotifier | None = None,
        today: Callable[[], date] = local_today,
        seed_provider: SeedDataProvider | None = None,
    ) -> None:
        self._kv = kv
        self._notifier = notifier or DataChangedNotifier()
        self._today = today
        self._seed_provider = seed_provider

    # ── Reads ────────────────────────────────────────────────────────────

    async def get_session(self, session_date: str | date) -> Session | None:
        key_date = normalize_date(session_date)
        record = await self._kv.get(session_key(key_date))
        if record is None:
            return await self._seed(key_date)
        return _to_session(record, key=session_key(key_date))

    async def session_exists(self, session_date: str | date) -> bool:
        return await self._kv.get(session_key(session_date)) is not None

    async def list_sessions(self) -> list[Session]:
        sessions: list[Session] = []
        for key in await self._kv.list_keys_with_prefix(SESSION_KEY_PREFIX):
            record = await self._kv.get(key)
            if record is None:
                continue
            session = _to_session(record, key=key)
            if session is not None:
                sessions.append(session)
        return sorted(sessions, key=lambda s: s.date)

    async def list_sessions_between(
        self,
        start: str | date,
        end: str | date,
        *,
        statuses: Iterable[SessionStatus] | None = None,
    ) -> list[Session]:
        """Sessions with ``start <= date <= end`` (inclusive), optionally filtered by status."""
        lo, hi = normalize_date(start), normalize_date(end)
        allowed = set(statuses) if statuses is not None else None
        return [
            session
            for session in await self.list_sessions()
            if lo <= session.date <= hi
            and (allowed is None or session.status in allowed)
        ]

    # ── Writes ───────────────────────────────────────────────────────────

    async def save_session(self, session: Session) -> Session:
        stored = session.model_copy(deep=True)
        stored.last_updated = utc_now()
        stored.recalculate()
        await self._kv.set(session_key(stored.date), _to_record(stored))
        logger.debug("Saved session date=%s status=%s", stored.date, stored.status.value)
        self._notifier.notify(source="session.save")
        return stored

    async def update_session(
        self, session_date: str | date, patch: SessionPatch
    ) -> Session | None:
        current = await self.get_session(session_date)
        if current is None:
            return None
        return await self.save_session(apply_session_patch(current, patch))

    async def update_session_status(
        self, session_date: str | date, status: SessionStatus
    ) -> Session | None:
        return await self.update_session(session_date, SessionPatch(status=status))

    async def update_task_status(
        self,
        session_date: str | date,
        block_id: str,
        timebox_index: int,
        task_index: int,
        status: TimeBoxTaskStatus,
    ) -> Session | None:
        session = await self.get_session(session_date)
        box = _find_timebox(session, block_id, timebox_index)
        if session is None or box is None or not 0 <= task_index < len(box.tasks):
            return None
        box.tasks[task_index].status = status
        box.status = _timebox_status_from_tasks(box)
        return await self.save_session(session)

    async def update_timebox_status(
        self,
        session_date: str | date,
        block_id: str,
        timebox_index: int,
        status: TimeBoxStatus,
    ) -> Session | None:
        session = await self.get_session(session_date)
        box = _find_timebox(session, block_id, timebox_index)
        if session is None or box is None:
            return None
        box.status = status
        task_status = (
            TimeBoxTaskStatus.COMPLETED
            if status is TimeBoxStatus.COMPLETED
            else TimeBoxTaskStatus.TODO
        )
        for task in box.tasks:
            task.status = task_status
        return await self.save_session(session)

    async def save_actual_duration(
        self,
        session_date: str | date,
        block_id: str,
        timebox_index: int,
        minutes: int,
    ) -> Session | None:
        session = await self.get_session(session_date)
        box = _find_timebox(session, block_id, timebox_index)
        if session is None or box is None:
            return None
        box.actual_duration = max(0, int(minutes))
        if box.start_time is None:
            box.start_time = utc_now()
        return await self.save_session(session)

    async def archive_session(self, session_date: str | date) -> bool:
        return (
            await self.update_session_status(session_date, SessionStatus.ARCHIVED)
            is not None
        )

    async def unarchive_session(self, session_date: str | date) -> bool:
        session = await self.get_session(session_date)
        if session is None or session.status is not SessionStatus.ARCHIVED:
            return False
        await self.update_session_status(session_date, SessionStatus.PLANNED)
        return True

    async def delete_session(
        self, session_date: str | date, *, permanent: bool = False
    ) -> bool:
        """Archive a session, or remove it outright when ``permanent``.

        Permanent deletion is reserved for today's and future sessions; past
        sessions are history and can only be archived.
        """
        key_date = normalize_date(session_date)
        if not await self.session_exists(key_date):
            return False
        if not permanent:
            return await self.archive_session(key_date)
        parsed = parse_iso_date(key_date)
        if parsed is not None and parsed < self._today():
            raise ValueError(
                f"Cannot permanently delete past session {key_date}; archive it instead"
            )
        await self._kv.delete(session_key(key_date))
        logger.info("Permanently deleted session date=%s", key_date)
        self._notifier.notify(source="session.delete")
        return True

    async def remove_session(self, session_date: str | date) -> None:
        """Unconditional delete used to roll back a failed session creation."""
        await self._kv.delete(session_key(session_date))
        self._notifier.notify(source="session.rollback")

    async def duplicate_session(
        self,
        source_date: str | date,
        target_date: str | date,
        *,
        reset_progress: bool = True,
    ) -> Session | None:
        source = await self.get_session(source_date)
        target = normalize_date(target_date)
        if source is None or await self.session_exists(target):
            return None
        duplicate = source.model_copy(deep=True)
        duplicate.date = target
        duplicate.status = SessionStatus.PLANNED
        if reset_progress:
            for block in duplicate.story_blocks:
                _reset_block(block)
        logger.info("Duplicated session %s -> %s", source.date, target)
        return await self.save_session(duplicate)

    async def _seed(self, session_date: str) -> Session | None:
        if self._seed_provider is None:
            return None
        seeded = self._seed_provider.session_for(session_date)
        if seeded is None:
            return None
        logger.info("Seeding demo session date=%s", session_date)
        return await self.save_session(seeded)


def _find_timebox(
    session: Session | None, block_id: str, timebox_index: int
) -> TimeBox | None:
    if session is None:
        return None
    block = session.find_block(block_id)
    if block is None or not 0 <= timebox_index < len(block.timeboxes):
        return None
    return block.timeboxes[timebox_index]


def _timebox_status_from_tasks(box: TimeBox) -> TimeBoxStatus:
    done = [task.status is TimeBoxTaskStatus.COMPLETED for task in box.tasks]
    if done and all(done):
        return TimeBoxStatus.COMPLETED
    if any(done):
        return TimeBoxStatus.IN_PROGRESS
    return TimeBoxStatus.TODO


def _reset_block(block: StoryBlock) -> None:
    for box in block.timeboxes:
        box.status = TimeBoxStatus.TODO
        box.actual_duration = None
        box.start_time = None
        for task in box.tasks:
            task.status = TimeBoxTaskStatus.TODO


def _to_record(session: Session) -> Record:
    return session.model_dump(mode="json", by_alias=True)


def _to_session(record: Record, *, key: str) -> Session | None:
    try:
        return Session.model_validate(record)
    except ValidationError:
        logger.warning("Skipping unreadable session record key=%s", key, exc_info=True)
        return None


__all__ = ["SESSION_KEY_PREFIX", "SessionStore", "session_key"]
