"""Explicit partial updates for stored sessions.

Field-level precedence: a field set on the patch replaces the stored value;
a field left as ``None`` leaves the stored value untouched.  There is no way
to clear a field through a patch.
"""

from __future__ import annotations

import copy
from datetime import datetime

from pydantic import BaseModel, ConfigDict

from tempo.dates import utc_now
from tempo.timeboxing.models import Session, SessionStatus, StoryBlock


class SessionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: SessionStatus | None = None
    story_blocks: list[StoryBlock] | None = None


def apply_session_patch(
    session: Session, patch: SessionPatch, *, now: datetime | None = None
) -> Session:
    """Return a new session with ``patch`` merged in; ``session`` is not modified."""
    updates = copy.deepcopy(_patch_updates(patch))
    merged = session.model_copy(update=updates, deep=True)
    merged.last_updated = now or utc_now()
    return merged.recalculate()


def _patch_updates(patch: SessionPatch) -> dict[str, object]:
    return {
        name: value
        for name in type(patch).model_fields
        if (value := getattr(patch, name)) is not None
    }


__all__ = ["SessionPatch", "apply_session_patch"]
