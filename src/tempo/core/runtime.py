import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from tempo.core.config import Settings, settings
from tempo.queue.models import QueueSettings, SuggestionStrategy
from tempo.queue.service import QueueService
from tempo.sessions.lifecycle import SessionLifecycleManager
from tempo.sessions.seed import DemoSeedDataProvider
from tempo.sessions.store import SessionStore
from tempo.storage.kv import KeyValueStore, SqlAlchemyKeyValueStore, ensure_kv_schema
from tempo.sync import DataChangedCallback, DataChangedNotifier
from tempo.timeboxing.builder import SessionBuilder, TaskExtractor
from tempo.timeboxing.layout import SessionMaterializer

logger = logging.getLogger(__name__)

_engine: "TempoEngine | None" = None
_engine_lock = asyncio.Lock()


@dataclass
class TempoEngine:
    store: SessionStore
    queue: QueueService
    lifecycle: SessionLifecycleManager
    builder: SessionBuilder
    notifier: DataChangedNotifier
    db_engine: AsyncEngine | None = None

    async def close(self) -> None:
        await self.notifier.drain()
        if self.db_engine is not None:
            await self.db_engine.dispose()


def build_engine(
    config: Settings,
    kv_store: KeyValueStore,
    *,
    on_data_changed: DataChangedCallback | None = None,
    materializer: SessionMaterializer | None = None,
    extractor: TaskExtractor | None = None,
) -> TempoEngine:
    """Wire store, backlog, lifecycle and builder around one key-value store."""
    notifier = DataChangedNotifier(on_data_changed)
    seed_provider = None
    if config.is_development and config.seed_demo_data:
        logger.info("Demo seed data enabled (environment=%s)", config.environment)
        seed_provider = DemoSeedDataProvider()

    store = SessionStore(kv_store, notifier=notifier, seed_provider=seed_provider)
    queue = QueueService(
        kv_store,
        defaults=QueueSettings(
            strategy=_coerce_strategy(config.suggestion_strategy),
            default_duration=config.default_task_duration,
        ),
        notifier=notifier,
    )
    lifecycle = SessionLifecycleManager(store, queue)
    builder = SessionBuilder(
        store=store,
        queue=queue,
        materializer=materializer,
        extractor=extractor,
        max_attempts=config.max_session_attempts,
        transient_retry_delay_s=config.transient_retry_delay_s,
        structural_retry_delay_s=config.structural_retry_delay_s,
    )
    return TempoEngine(
        store=store,
        queue=queue,
        lifecycle=lifecycle,
        builder=builder,
        notifier=notifier,
    )


async def _run_startup_auto_transitions(
    *,
    lifecycle: SessionLifecycleManager,
    timeout_s: float = 15.0,
) -> bool:
    """Run the startup lifecycle sweep without aborting engine initialization."""
    try:
        result = await asyncio.wait_for(
            lifecycle.run_auto_transitions(), timeout=timeout_s
        )
        logger.info(
            "Startup auto-transitions completed applied=%s violations=%s",
            result.transitioned,
            len(result.violations),
        )
        return True
    except TimeoutError:
        logger.warning(
            "Startup auto-transitions timed out after %.1fs; continuing startup.",
            timeout_s,
        )
        return False
    except Exception:
        logger.exception("Startup auto-transitions failed; continuing startup.")
        return False


def _coerce_async_database_url(database_url: str) -> str:
    if database_url.startswith("sqlite+aiosqlite://"):
        return database_url
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() != "sqlite" or url.database in (None, "", ":memory:"):
        return
    Path(url.database).parent.mkdir(parents=True, exist_ok=True)


def _coerce_strategy(value: str) -> SuggestionStrategy:
    try:
        return SuggestionStrategy((value or "").strip().lower())
    except ValueError:
        logger.warning("Unknown suggestion strategy %r; using priority", value)
        return SuggestionStrategy.PRIORITY


async def initialize_engine(
    config: Settings | None = None,
    *,
    on_data_changed: DataChangedCallback | None = None,
    materializer: SessionMaterializer | None = None,
    extractor: TaskExtractor | None = None,
) -> TempoEngine:
    """Initialize the engine against the configured database, reusing the singleton."""
    global _engine
    if _engine:
        return _engine

    async with _engine_lock:
        if _engine:
            return _engine
        config = config or settings
        database_url = _coerce_async_database_url(config.database_url)
        _ensure_sqlite_directory(database_url)
        db_engine = create_async_engine(database_url)
        await ensure_kv_schema(db_engine)
        sessionmaker = async_sessionmaker(db_engine, expire_on_commit=False)
        engine = build_engine(
            config,
            SqlAlchemyKeyValueStore(sessionmaker),
            on_data_changed=on_data_changed,
            materializer=materializer,
            extractor=extractor,
        )
        engine.db_engine = db_engine
        await _run_startup_auto_transitions(
            lifecycle=engine.lifecycle,
            timeout_s=config.startup_transition_timeout_s,
        )
        _engine = engine
        return engine


async def shutdown_engine() -> None:
    global _engine
    if _engine is None:
        return
    await _engine.close()
    _engine = None


__all__ = [
    "TempoEngine",
    "build_engine",
    "initialize_engine",
    "shutdown_engine",
]
