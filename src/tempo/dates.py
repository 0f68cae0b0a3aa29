"""Date helpers shared by the session and backlog services.

Session keys and due dates are always ``YYYY-MM-DD``.  Anything else is run
through :func:`normalize_date` first; input that cannot be parsed, or that
leaves the year, month or day to be guessed, is handed back unchanged so the
subsequent key lookup simply misses.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

ISO_DATE_FORMAT = "%Y-%m-%d"

# Two defaults that differ in every date field; a string that names a full
# date parses to the same day under both.
_DEFAULT_A = datetime(1999, 1, 1)
_DEFAULT_B = datetime(2001, 12, 28)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_today() -> date:
    return datetime.now().date()


def normalize_date(value: str | date | datetime) -> str:
    """Return ``value`` as ``YYYY-MM-DD`` or, if it is not a complete date, unchanged."""
    if isinstance(value, datetime):
        return value.date().strftime(ISO_DATE_FORMAT)
    if isinstance(value, date):
        return value.strftime(ISO_DATE_FORMAT)
    raw = (value or "").strip()
    if not raw:
        return value
    try:
        first = date_parser.parse(raw, default=_DEFAULT_A).date()
        second = date_parser.parse(raw, default=_DEFAULT_B).date()
    except (ValueError, OverflowError):
        logger.debug("Unparseable date string %r; returning unchanged", value)
        return value
    if first != second:
        logger.debug("Incomplete date string %r; returning unchanged", value)
        return value
    return first.strftime(ISO_DATE_FORMAT)


def parse_iso_date(value: str) -> date | None:
    try:
        return datetime.strptime(value, ISO_DATE_FORMAT).date()
    except (TypeError, ValueError):
        return None


__all__ = [
    "ISO_DATE_FORMAT",
    "local_today",
    "normalize_date",
    "parse_iso_date",
    "utc_now",
]
