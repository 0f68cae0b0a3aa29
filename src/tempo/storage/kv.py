from __future__ import annotations

import copy
import json
import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import DateTime, String, Text, delete, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

logger = logging.getLogger(__name__)

Base = declarative_base()

Record = dict[str, Any]


class KeyValueStore(Protocol):
    """Whole-record persistence: every write replaces the full JSON document."""

    async def get(self, key: str) -> Record | None: ...

    async def set(self, key: str, record: Record) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list_keys_with_prefix(self, prefix: str) -> list[str]: ...


class InMemoryKeyValueStore:
    """Dict-backed store; records are deep-copied in and out."""

    def __init__(self, initial: dict[str, Record] | None = None) -> None:
        self._records: dict[str, Record] = {
            key: copy.deepcopy(value) for key, value in (initial or {}).items()
        }

    async def get(self, key: str) -> Record | None:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def set(self, key: str, record: Record) -> None:
        self._records[key] = copy.deepcopy(record)

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def list_keys_with_prefix(self, prefix: str) -> list[str]:
        return sorted(key for key in self._records if key.startswith(prefix))


class KeyValueRecord(Base):
    __tablename__ = "kv_records"

    key: Mapped[str] = mapped_column(String, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )


class SqlAlchemyKeyValueStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    async def get(self, key: str) -> Record | None:
        async with self._sessionmaker() as session:
            row = await session.get(KeyValueRecord, key)
            return _decode(row) if row else None

    async def set(self, key: str, record: Record) -> None:
        payload = json.dumps(record, ensure_ascii=False, sort_keys=True)
        async with self._sessionmaker() as session:
            row = await session.get(KeyValueRecord, key)
            if row is None:
                row = KeyValueRecord(key=key, value=payload)
                session.add(row)
            else:
                row.value = payload
            row.updated_at = datetime.now(timezone.utc)
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._sessionmaker() as session:
            await session.execute(delete(KeyValueRecord).where(KeyValueRecord.key == key))
            await session.commit()

    async def list_keys_with_prefix(self, prefix: str) -> list[str]:
        async with self._sessionmaker() as session:
            result = await session.execute(
                select(KeyValueRecord.key)
                .where(KeyValueRecord.key.startswith(prefix, autoescape=True))
                .order_by(KeyValueRecord.key)
            )
            return list(result.scalars().all())


async def ensure_kv_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(
            lambda sync_conn: KeyValueRecord.__table__.create(
                sync_conn, checkfirst=True
            )
        )


def _decode(row: KeyValueRecord) -> Record | None:
    try:
        value = json.loads(row.value)
    except ValueError:
        logger.warning("Discarding undecodable kv record key=%s", row.key)
        return None
    return value if isinstance(value, dict) else None


__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueRecord",
    "KeyValueStore",
    "Record",
    "SqlAlchemyKeyValueStore",
    "ensure_kv_schema",
]
