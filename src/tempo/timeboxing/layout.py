"""Turn proposed stories into story blocks and check the work/break rules.

Two materializers are provided.  ``LocalSessionMaterializer`` lays the
proposal out deterministically.  ``RemoteSessionMaterializer`` hands the
proposal to an external layout service and parses its JSON reply; unparseable
replies surface as :class:`TransientMaterializationError`.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Protocol, Sequence

from pydantic import TypeAdapter, ValidationError

from .constants import DURATION_RULES, DurationRules
from .errors import StructuralViolationError, TransientMaterializationError
from .models import (
    ProposedStory,
    StoryBlock,
    TimeBox,
    TimeBoxTask,
    TimeBoxType,
)
from .splitter import break_minutes

logger = logging.getLogger(__name__)

_STORY_BLOCKS_ADAPTER = TypeAdapter(list[StoryBlock])


class SessionMaterializer(Protocol):
    async def materialize(
        self, stories: Sequence[ProposedStory], start_time: datetime
    ) -> list[StoryBlock]: ...


def find_break_violations(
    block: StoryBlock,
    rules: DurationRules = DURATION_RULES,
    *,
    carried_minutes: int = 0,
) -> list[str]:
    """Return one message per run of work boxes exceeding the uninterrupted-work cap.

    ``carried_minutes`` is unbroken work left over from the preceding block.
    """
    return _scan_work_runs(block, rules, carried_minutes)[0]


def _scan_work_runs(
    block: StoryBlock, rules: DurationRules, run: int
) -> tuple[list[str], int]:
    problems: list[str] = []
    for index, box in enumerate(block.timeboxes):
        if box.type.is_break:
            run = 0
            continue
        run += box.duration
        if run > rules.max_work_without_break:
            problems.append(
                f"Block '{block.title}' has {run} minutes of work without a break "
                f"at time-box {index} (max {rules.max_work_without_break})"
            )
            run = 0
    return problems, run


def validate_story_blocks(
    blocks: Sequence[StoryBlock], rules: DurationRules = DURATION_RULES
) -> None:
    """Check the cap over the whole timeline; work runs continue across blocks."""
    run = 0
    for block in blocks:
        problems, run = _scan_work_runs(block, rules, run)
        if problems:
            raise StructuralViolationError(problems[0], block=block.title)


def insert_block_breaks(
    blocks: Sequence[StoryBlock], rules: DurationRules = DURATION_RULES
) -> int:
    """End every block but the last on a long break; returns how many were added."""
    inserted = 0
    for block in blocks[:-1]:
        if block.timeboxes and not block.timeboxes[-1].type.is_break:
            block.timeboxes.append(
                TimeBox(type=TimeBoxType.LONG_BREAK, duration=rules.long_break)
            )
            block.recalculate()
            inserted += 1
    return inserted


def assign_start_times(blocks: Sequence[StoryBlock], start_time: datetime) -> None:
    cursor = start_time
    for block in blocks:
        for box in block.timeboxes:
            box.start_time = cursor
            cursor += timedelta(minutes=box.duration)


class LocalSessionMaterializer:
    """One work box per task, followed by the task's break box if it has one."""

    def __init__(self, rules: DurationRules = DURATION_RULES) -> None:
        self._rules = rules

    async def materialize(
        self, stories: Sequence[ProposedStory], start_time: datetime
    ) -> list[StoryBlock]:
        blocks = [self._layout_story(story) for story in stories]
        insert_block_breaks(blocks, self._rules)
        validate_story_blocks(blocks, self._rules)
        assign_start_times(blocks, start_time)
        return blocks

    def _layout_story(self, story: ProposedStory) -> StoryBlock:
        timeboxes: list[TimeBox] = []
        task_ids: list[str] = []
        for task in story.tasks:
            timeboxes.append(
                TimeBox(
                    type=TimeBoxType.WORK,
                    duration=task.duration,
                    tasks=[
                        TimeBoxTask(
                            title=task.title,
                            duration=task.duration,
                            frog=task.frog,
                            task_id=task.id,
                            original_title=task.original_title,
                        )
                    ],
                )
            )
            if task.break_after is not None:
                timeboxes.append(
                    TimeBox(
                        type=task.break_after,
                        duration=break_minutes(task.break_after, self._rules),
                    )
                )
            if task.id not in task_ids:
                task_ids.append(task.id)
        return StoryBlock(title=story.title, timeboxes=timeboxes, task_ids=task_ids)


LayoutService = Callable[[dict[str, Any]], Awaitable[str]]


class RemoteSessionMaterializer:
    """Delegates layout to an external service that answers with JSON text."""

    def __init__(
        self, layout_service: LayoutService, rules: DurationRules = DURATION_RULES
    ) -> None:
        self._layout_service = layout_service
        self._rules = rules

    async def materialize(
        self, stories: Sequence[ProposedStory], start_time: datetime
    ) -> list[StoryBlock]:
        request = {
            "startTime": start_time.isoformat(),
            "stories": [
                story.model_dump(mode="json", by_alias=True) for story in stories
            ],
        }
        raw = await self._layout_service(request)
        blocks = parse_session_payload(raw)
        inserted = insert_block_breaks(blocks, self._rules)
        validate_story_blocks(blocks, self._rules)
        if inserted or any(box.start_time is None for b in blocks for box in b.timeboxes):
            assign_start_times(blocks, start_time)
        return blocks


def parse_session_payload(raw: str | bytes | dict | list) -> list[StoryBlock]:
    """Parse ``{"storyBlocks": [...]}`` (or a bare list) into story blocks."""
    payload: Any = raw
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            raise TransientMaterializationError(
                f"Layout response is not valid JSON: {exc}"
            ) from exc
    if isinstance(payload, dict):
        payload = payload.get("storyBlocks", payload.get("story_blocks"))
    if not isinstance(payload, list):
        raise TransientMaterializationError(
            "Layout response has no storyBlocks list"
        )
    try:
        return _STORY_BLOCKS_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        logger.debug("Layout response failed validation: %s", exc)
        raise TransientMaterializationError(
            f"Layout response has an invalid shape ({exc.error_count()} errors)"
        ) from exc


__all__ = [
    "LayoutService",
    "LocalSessionMaterializer",
    "RemoteSessionMaterializer",
    "SessionMaterializer",
    "assign_start_times",
    "find_break_violations",
    "insert_block_breaks",
    "parse_session_payload",
    "validate_story_blocks",
]
