"""Error taxonomy for session creation.

Malformed input fails at once, transient materialization errors are retried
unchanged, structural violations are retried after a targeted split, and
:class:`SessionCreationError` wraps whatever was last seen once the attempt
budget runs out.
"""

from __future__ import annotations


class TempoError(Exception):
    """Base class for engine errors."""


class InvalidSessionDurationError(TempoError, ValueError):
    def __init__(self, total_minutes: int, message: str) -> None:
        super().__init__(message)
        self.total_minutes = total_minutes


class TransientMaterializationError(TempoError):
    """The layout response could not be parsed; the same proposal may succeed."""


class StructuralViolationError(TempoError):
    """A block breaks the work/break constraints."""

    def __init__(self, message: str, *, block: str | None = None) -> None:
        super().__init__(message)
        self.block = block


class SessionCreationError(TempoError):
    def __init__(self, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{last_error} (after {attempts} attempts)")
        self.attempts = attempts
        self.last_error = last_error

    @property
    def original_message(self) -> str:
        return str(self.last_error)


__all__ = [
    "InvalidSessionDurationError",
    "SessionCreationError",
    "StructuralViolationError",
    "TempoError",
    "TransientMaterializationError",
]
