from .kv import (
    InMemoryKeyValueStore,
    KeyValueStore,
    SqlAlchemyKeyValueStore,
    ensure_kv_schema,
)
