"""Duration model for time-boxed sessions.

Pure constants plus the two rounding helpers every layout routine relies on.
These values are *not* user configuration. User configuration lives in
`tempo.core.config`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class DurationRules:
    """Granularity and break rules, all in minutes."""

    block_size: int = 5
    min_duration: int = 5
    max_duration: int = 180
    max_work_without_break: int = 90
    short_break: int = 5
    long_break: int = 15

    def round_to_nearest_block(self, minutes: float) -> int:
        """Round half-up to a multiple of ``block_size``, never below ``min_duration``."""
        rounded = int(math.floor(minutes / self.block_size + 0.5)) * self.block_size
        return max(self.min_duration, rounded)

    def floor_to_block(self, minutes: float) -> int:
        floored = int(math.floor(minutes / self.block_size)) * self.block_size
        return max(self.min_duration, floored)

    def is_valid_total(self, minutes: int) -> bool:
        return minutes >= self.min_duration and minutes % self.block_size == 0


DURATION_RULES = DurationRules()


def round_to_nearest_block(minutes: float) -> int:
    return DURATION_RULES.round_to_nearest_block(minutes)


__all__ = ["DURATION_RULES", "DurationRules", "round_to_nearest_block"]
