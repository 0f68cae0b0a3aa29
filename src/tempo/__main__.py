"""Startup maintenance run: apply lifecycle auto-transitions and report what needs attention."""

import asyncio
import logging

from tempo.core.config import settings
from tempo.core.logging_config import configure_logging
from tempo.core.runtime import initialize_engine, shutdown_engine

logger = logging.getLogger("tempo")


async def main() -> None:
    configure_logging(default_level=settings.log_level)
    engine = await initialize_engine(settings)
    try:
        pending = await engine.lifecycle.sessions_needing_attention()
        for session in pending:
            logger.info(
                "Session needs attention date=%s status=%s",
                session.date,
                session.status.value,
            )
        stats = await engine.queue.get_stats()
        logger.info(
            "Backlog tasks=%s frogs=%s overdue=%s minutes=%s",
            stats.backlog,
            stats.frogs,
            stats.overdue,
            stats.backlog_minutes,
        )
    finally:
        await shutdown_engine()


if __name__ == "__main__":
    asyncio.run(main())
