from abc import ABC, abstractmethod
from typing import Optional


class KeyValueStore(ABC):
    """Async string key-value store with per-key TTL and atomic conditional writes.

    ``ttl`` is in seconds; ``None`` means the key never expires.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        pass

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        """Write only when the key is missing or expired. True if this call wrote it."""
        pass

    @abstractmethod
    async def compare_and_swap(
        self, key: str, expected: Optional[str], new: str, ttl: Optional[float] = None
    ) -> bool:
        """Replace the value only if it still equals ``expected`` (``None`` = absent)."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def delete_if_equals(self, key: str, expected: str) -> bool:
        pass

    async def close(self) -> None:
        return None
