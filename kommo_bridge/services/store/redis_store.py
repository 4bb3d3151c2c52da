from typing import Optional

import redis.asyncio as redis_async

from kommo_bridge.logging_config import get_logger
from kommo_bridge.services.store.base import KeyValueStore

logger = get_logger("store.redis")

# KEYS[1] key, ARGV[1] expected, ARGV[2] new value, ARGV[3] ttl in ms (0 = none)
COMPARE_AND_SWAP_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  if tonumber(ARGV[3]) > 0 then
    redis.call('SET', KEYS[1], ARGV[2], 'PX', ARGV[3])
  else
    redis.call('SET', KEYS[1], ARGV[2])
  end
  return 1
end
return 0
"""

# KEYS[1] key, ARGV[1] expected
COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def _ttl_ms(ttl: Optional[float]) -> Optional[int]:
    if not ttl:
        return None
    return max(1, int(ttl * 1000))


class RedisStore(KeyValueStore):
    def __init__(self, client):
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, socket_timeout_seconds: float = 0.5) -> "RedisStore":
        client = redis_async.from_url(
            redis_url,
            decode_responses=True,
            socket_connect_timeout=socket_timeout_seconds,
            socket_timeout=socket_timeout_seconds,
        )
        return cls(client)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        await self.client.set(key, value, px=_ttl_ms(ttl))

    async def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        was_set = await self.client.set(key, value, px=_ttl_ms(ttl), nx=True)
        return bool(was_set)

    async def compare_and_swap(
        self, key: str, expected: Optional[str], new: str, ttl: Optional[float] = None
    ) -> bool:
        if expected is None:
            return await self.set_if_absent(key, new, ttl)
        swapped = await self.client.eval(COMPARE_AND_SWAP_SCRIPT, 1, key, expected, new, _ttl_ms(ttl) or 0)
        return int(swapped or 0) == 1

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        deleted = await self.client.eval(COMPARE_AND_DELETE_SCRIPT, 1, key, expected)
        return int(deleted or 0) > 0

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except Exception as exc:
            logger.warning("Redis close failed", extra={"context": {"error": str(exc)}})
