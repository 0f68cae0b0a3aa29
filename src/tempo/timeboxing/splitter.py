"""Task splitting and break insertion for proposed session layouts.

``split_for_retry`` runs once proactively before a session is materialized and
again after every structural violation, each time tightening the per-task cap
of the block that was blamed.  On a layout that already satisfies the rules it
returns an equivalent copy.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from .constants import DURATION_RULES, DurationRules
from .models import ProposedStory, ProposedTask, TimeBoxType

logger = logging.getLogger(__name__)

_PART_TITLE_RE = re.compile(r"^(?P<base>.+) \(Part \d+ of \d+\)$")


@dataclass(frozen=True, slots=True)
class SplitViolation:
    """Which story block a structural error was attributed to."""

    block: str | None
    message: str = ""


def break_minutes(kind: TimeBoxType | None, rules: DurationRules = DURATION_RULES) -> int:
    if kind is TimeBoxType.LONG_BREAK:
        return rules.long_break
    if kind is TimeBoxType.SHORT_BREAK:
        return rules.short_break
    return 0


def recalculate_story_duration(
    tasks: Iterable[ProposedTask], rules: DurationRules = DURATION_RULES
) -> int:
    """Work minutes plus every scheduled break."""
    return sum(task.duration + break_minutes(task.break_after, rules) for task in tasks)


def split_for_retry(
    stories: Sequence[ProposedStory],
    violation: SplitViolation | None = None,
    rules: DurationRules = DURATION_RULES,
) -> list[ProposedStory]:
    target = violation.block if violation else None
    revised: list[ProposedStory] = []
    for story in stories:
        max_task = effective_max_task_duration(story, rules)
        updates: dict[str, object] = {}
        if target is not None and story.matches(target):
            tightened = rules.floor_to_block(max_task // 2)
            logger.debug(
                "Tightening max task duration block=%s %s -> %s",
                story.title,
                max_task,
                tightened,
            )
            max_task = tightened
            updates["max_task_duration"] = tightened

        tasks: list[ProposedTask] = []
        for task in _rejoin_parts(story.tasks):
            tasks.extend(_split_task(task, max_task, rules))
        tasks = _enforce_breaks(tasks, rules)

        updates["tasks"] = tasks
        updates["estimated_duration"] = recalculate_story_duration(tasks, rules)
        revised.append(story.model_copy(update=updates, deep=True))
    return revised


def effective_max_task_duration(
    story: ProposedStory, rules: DurationRules = DURATION_RULES
) -> int:
    cap = story.max_task_duration or rules.max_work_without_break
    return rules.floor_to_block(min(cap, rules.max_work_without_break))


def _rejoin_parts(tasks: Sequence[ProposedTask]) -> list[ProposedTask]:
    """Merge adjacent parts of one split task back into a single task."""
    joined: list[ProposedTask] = []
    for task in tasks:
        previous = joined[-1] if joined else None
        match = (
            _PART_TITLE_RE.match(task.title) if task.original_title is not None else None
        )
        if (
            previous is not None
            and match is not None
            and previous.id == task.id
            and previous.title == match.group("base")
        ):
            joined[-1] = previous.model_copy(
                update={
                    "duration": previous.duration + task.duration,
                    "break_after": task.break_after,
                }
            )
            continue
        if match is not None:
            base = match.group("base")
            task = task.model_copy(
                update={
                    "title": base,
                    "original_title": (
                        task.original_title if task.original_title != base else None
                    ),
                }
            )
        joined.append(task)
    return joined


def _split_task(
    task: ProposedTask, max_task: int, rules: DurationRules
) -> list[ProposedTask]:
    duration = rules.round_to_nearest_block(task.duration)
    if duration <= max_task:
        return [task.model_copy(update={"duration": duration})]

    parts = math.ceil(duration / max_task)
    units, remainder = divmod(duration // rules.block_size, parts)
    original = task.root_title
    pieces: list[ProposedTask] = []
    for index in range(parts):
        part_minutes = (units + (1 if index < remainder else 0)) * rules.block_size
        last = index == parts - 1
        pieces.append(
            task.model_copy(
                update={
                    "title": f"{task.title} (Part {index + 1} of {parts})",
                    "duration": part_minutes,
                    "original_title": original,
                    "break_after": task.break_after if last else TimeBoxType.LONG_BREAK,
                }
            )
        )
    logger.debug(
        "Split task title=%r duration=%s into %s parts", task.title, duration, parts
    )
    return pieces


def _enforce_breaks(
    tasks: list[ProposedTask], rules: DurationRules
) -> list[ProposedTask]:
    laid_out: list[ProposedTask] = []
    run = 0
    for task in tasks:
        if laid_out and run + task.duration > rules.max_work_without_break:
            previous = laid_out[-1]
            laid_out[-1] = previous.model_copy(
                update={"break_after": TimeBoxType.LONG_BREAK}
            )
            run = 0
        laid_out.append(task)
        run += task.duration
        if task.break_after is not None:
            run = 0
    return laid_out


__all__ = [
    "SplitViolation",
    "break_minutes",
    "effective_max_task_duration",
    "recalculate_story_duration",
    "split_for_retry",
]
