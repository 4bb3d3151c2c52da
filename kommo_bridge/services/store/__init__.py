from kommo_bridge.services.store.base import KeyValueStore
from kommo_bridge.services.store.memory import MemoryStore
from kommo_bridge.services.store.redis_store import RedisStore
from kommo_bridge.services.store.sql_store import SqlStore


def build_store(settings) -> KeyValueStore:
    """Pick the backend named by ``settings.session_backend``."""
    backend = (settings.session_backend or "memory").lower()
    if backend == "redis":
        return RedisStore.from_url(settings.redis_url, settings.redis_socket_timeout_seconds)
    if backend == "sql":
        from kommo_bridge.database import SessionLocal

        return SqlStore(SessionLocal, create_tables=True)
    if backend == "memory":
        return MemoryStore()
    raise ValueError(f"Unknown session backend: {settings.session_backend}")


__all__ = ["KeyValueStore", "MemoryStore", "RedisStore", "SqlStore", "build_store"]
