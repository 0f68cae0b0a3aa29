"""Fire-and-forget "data changed" hook invoked after every successful write."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

DataChangedCallback = Callable[[], Awaitable[Any] | Any]


class DataChangedNotifier:
    """Wraps an optional sync-layer callback so writes never see its failures."""

    def __init__(self, callback: DataChangedCallback | None = None) -> None:
        self._callback = callback
        self._pending: set[asyncio.Future[Any]] = set()

    def notify(self, *, source: str = "") -> None:
        if self._callback is None:
            return
        try:
            result = self._callback()
        except Exception:
            logger.exception("notify_data_changed callback failed source=%s", source)
            return
        if inspect.isawaitable(result):
            self._schedule(result, source=source)

    def _schedule(self, awaitable: Awaitable[Any], *, source: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running loop for async notify_data_changed source=%s", source
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        future = asyncio.ensure_future(awaitable, loop=loop)
        self._pending.add(future)

        def _done(fut: asyncio.Future[Any]) -> None:
            self._pending.discard(fut)
            if fut.cancelled():
                return
            exc = fut.exception()
            if exc is not None:
                logger.error(
                    "notify_data_changed callback failed source=%s",
                    source,
                    exc_info=exc,
                )

        future.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for in-flight async notifications (used at shutdown and in tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


__all__ = ["DataChangedCallback", "DataChangedNotifier"]
