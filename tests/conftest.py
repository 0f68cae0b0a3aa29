from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tempo.queue.service import QueueService
from tempo.sessions.store import SessionStore
from tempo.storage.kv import InMemoryKeyValueStore, ensure_kv_schema

TODAY = date(2025, 3, 12)
NOW = datetime(2025, 3, 12, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def today() -> date:
    return TODAY


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture()
def session_store(kv) -> SessionStore:
    return SessionStore(kv, today=lambda: TODAY)


@pytest.fixture()
def queue_service(kv) -> QueueService:
    return QueueService(kv, now=lambda: NOW)


@pytest_asyncio.fixture()
async def sqlite_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    await ensure_kv_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def sqlite_sessionmaker(sqlite_engine):
    return async_sessionmaker(sqlite_engine, expire_on_commit=False)
