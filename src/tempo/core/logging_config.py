import json
import logging
import os
from datetime import datetime, timezone
from typing import Any

_REDACT_KEYS = {
    "token",
    "authorization",
    "api_key",
    "secret",
    "password",
}

# ---------------------------------------------------------------------------
# StructuredJsonFormatter
# ---------------------------------------------------------------------------

# Fields promoted from a JSON message payload or ``extra={...}`` into the
# top-level envelope.  Keep this list to bounded, low-cardinality keys.
_STRUCTURED_EXTRACT_FIELDS: frozenset[str] = frozenset(
    {
        "event",
        "session_date",
        "block",
        "attempt",
        "max_attempts",
        "rule",
        "severity",
        "strategy",
        "task_id",
    }
)


class StructuredJsonFormatter(logging.Formatter):
    """Format log records as a normalized JSON envelope.

    Every line is a single JSON object with:
    - ``ts``       – RFC3339 UTC timestamp
    - ``level``    – lowercase level name
    - ``logger``   – logger name
    - ``message``  – human-readable message (or redacted JSON if the message
      was itself a JSON object)
    - Structured fields (``session_date``, ``block``, ``attempt``, ``rule``, …)
      lifted from JSON payloads or ``extra=`` kwargs
    - ``exc``      – formatted exception traceback (when present)

    Sensitive keys (``api_key``, ``authorization``, ``secret``, …) are always
    redacted via :func:`_key_is_sensitive`.

    Enable for the root logger by setting ``OBS_LOG_FORMAT=json``; this is done
    automatically by :func:`configure_logging`.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Serialize the log record as a JSON envelope string."""
        try:
            msg = record.getMessage()
        except Exception as exc:
            msg = f"[coerced-log-payload:{type(exc).__name__}] {record.msg!r}"

        ts = (
            datetime.fromtimestamp(record.created, tz=timezone.utc)
            .replace(tzinfo=None)
            .isoformat(timespec="milliseconds")
            + "Z"
        )

        envelope: dict[str, Any] = {
            "ts": ts,
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": msg,
        }

        if msg and msg[0] == "{":
            try:
                payload = json.loads(msg)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                self._extract_into_envelope(envelope, payload)
                envelope["message"] = json.dumps(
                    self._redact_dict(payload), ensure_ascii=False, default=str
                )

        for field in _STRUCTURED_EXTRACT_FIELDS:
            if field not in envelope:
                val = getattr(record, field, None)
                if val is not None:
                    envelope[field] = str(val)

        if record.exc_info:
            envelope["exc"] = self.formatException(record.exc_info)

        return json.dumps(envelope, ensure_ascii=False, default=str)

    @staticmethod
    def _extract_into_envelope(
        envelope: dict[str, Any], payload: dict[str, Any]
    ) -> None:
        for key in _STRUCTURED_EXTRACT_FIELDS:
            if key in envelope:
                continue  # don't overwrite already-set fields
            val = payload.get(key)
            if val is None:
                continue
            envelope[key] = val

    @staticmethod
    def _redact_dict(payload: dict[str, Any]) -> dict[str, Any]:
        """Return a shallow copy of *payload* with sensitive keys replaced by ``"[REDACTED]"``."""
        return {
            k: "[REDACTED]" if _key_is_sensitive(k) else v for k, v in payload.items()
        }


def configure_logging(*, default_level: str | int = "INFO") -> None:
    """
    Configure application logging with sane defaults.

    Key behavior: SQLAlchemy engine chatter is capped at WARNING unless
    ``SQLALCHEMY_LOG_LEVEL`` says otherwise.
    """

    logging.basicConfig(level=_coerce_level(os.getenv("LOG_LEVEL", default_level)))
    _configure_json_stdout()

    logging.getLogger("sqlalchemy.engine").setLevel(
        _coerce_level(os.getenv("SQLALCHEMY_LOG_LEVEL", "WARNING"))
    )
    logging.getLogger("aiosqlite").setLevel(
        _coerce_level(os.getenv("AIOSQLITE_LOG_LEVEL", "WARNING"))
    )


def _configure_json_stdout() -> None:
    """Replace root stream handler formatter with StructuredJsonFormatter.

    Activated when ``OBS_LOG_FORMAT=json`` is set.  Safe to call multiple
    times.
    """
    if (os.getenv("OBS_LOG_FORMAT") or "").strip().lower() != "json":
        return
    formatter = StructuredJsonFormatter()
    for handler in logging.root.handlers:
        if hasattr(handler, "stream"):
            if not isinstance(handler.formatter, StructuredJsonFormatter):
                handler.setFormatter(formatter)


def _coerce_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    name = (value or "").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _key_is_sensitive(key: str) -> bool:
    lowered = key.strip().lower()
    return any(marker in lowered for marker in _REDACT_KEYS)


__all__ = ["StructuredJsonFormatter", "configure_logging"]
