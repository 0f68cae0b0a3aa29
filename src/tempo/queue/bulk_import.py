"""Parser for pasted task lists.

Grammar, one task per non-blank line::

    line      := [frog] title [duration] [punct]
    duration  := ("-" | "–" | "—") NUMBER UNIT | "(" NUMBER UNIT ")"
    UNIT      := m | min | mins | minute | minutes | h | hr | hrs | hour | hours
    frog      := the word "frog" anywhere, optionally followed by ":"

Hour values may be decimal (``1.5h``).  A missing duration falls back to the
caller's default.  Frog lines are promoted to ``high`` priority.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable

from .models import MIN_TASK_DURATION, TaskPriority

logger = logging.getLogger(__name__)

_MINUTE_UNITS = frozenset({"m", "min", "mins", "minute", "minutes"})
_HOUR_UNITS = frozenset({"h", "hr", "hrs", "hour", "hours"})

_DURATION_RE = re.compile(
    r"""
    (?:
        [-–—]\s*(?P<dash_value>\d+(?:\.\d+)?)\s*(?P<dash_unit>[a-z]+)
      | \(\s*(?P<paren_value>\d+(?:\.\d+)?)\s*(?P<paren_unit>[a-z]+)\s*\)
    )
    [\s.,;:!]*$
    """,
    re.IGNORECASE | re.VERBOSE,
)
_FROG_RE = re.compile(r"\bfrog\b\s*:?", re.IGNORECASE)
_EDGE_PUNCT_RE = re.compile(r"^[\s\-–—:;,.]+|[\s\-–—:;,.]+$")
_SPACES_RE = re.compile(r"\s{2,}")


@dataclass(frozen=True, slots=True)
class ParsedTaskLine:
    title: str
    duration: int
    frog: bool
    priority: TaskPriority
    duration_given: bool


def parse_duration_marker(line: str) -> tuple[int | None, str]:
    """Return ``(minutes, line_without_marker)``; minutes is None if no marker."""
    match = _DURATION_RE.search(line)
    if match is None:
        return None, line
    value = match.group("dash_value") or match.group("paren_value")
    unit = (match.group("dash_unit") or match.group("paren_unit")).lower()
    if unit in _MINUTE_UNITS:
        minutes = round(float(value))
    elif unit in _HOUR_UNITS:
        minutes = round(float(value) * 60)
    else:
        return None, line
    return minutes, line[: match.start()]


def parse_task_line(
    line: str,
    *,
    default_duration: int,
    default_priority: TaskPriority = TaskPriority.MEDIUM,
) -> ParsedTaskLine | None:
    text = line.strip()
    if not text:
        return None
    minutes, text = parse_duration_marker(text)
    frog = _FROG_RE.search(text) is not None
    if frog:
        text = _FROG_RE.sub(" ", text)
    title = _SPACES_RE.sub(" ", _EDGE_PUNCT_RE.sub("", text))
    if not title:
        logger.debug("Skipping bulk import line without a title: %r", line)
        return None
    return ParsedTaskLine(
        title=title,
        duration=max(MIN_TASK_DURATION, minutes if minutes is not None else default_duration),
        frog=frog,
        priority=TaskPriority.HIGH if frog else default_priority,
        duration_given=minutes is not None,
    )


def parse_bulk_tasks(
    text: str | Iterable[str],
    *,
    default_duration: int,
    default_priority: TaskPriority = TaskPriority.MEDIUM,
) -> list[ParsedTaskLine]:
    lines = text.splitlines() if isinstance(text, str) else list(text)
    parsed: list[ParsedTaskLine] = []
    for line in lines:
        task = parse_task_line(
            line,
            default_duration=default_duration,
            default_priority=default_priority,
        )
        if task is not None:
            parsed.append(task)
    return parsed


__all__ = [
    "ParsedTaskLine",
    "parse_bulk_tasks",
    "parse_duration_marker",
    "parse_task_line",
]
