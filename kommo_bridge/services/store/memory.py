import time
from typing import Callable, Optional

from kommo_bridge.services.store.base import KeyValueStore


class MemoryStore(KeyValueStore):
    """Process-local store. Only safe for a single instance."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _expires_at(self, ttl: Optional[float]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        self._data[key] = (value, self._expires_at(ttl))

    async def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        if self._live(key) is not None:
            return False
        self._data[key] = (value, self._expires_at(ttl))
        return True

    async def compare_and_swap(
        self, key: str, expected: Optional[str], new: str, ttl: Optional[float] = None
    ) -> bool:
        if self._live(key) != expected:
            return False
        self._data[key] = (new, self._expires_at(ttl))
        return True

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        if self._live(key) != expected:
            return False
        del self._data[key]
        return True
