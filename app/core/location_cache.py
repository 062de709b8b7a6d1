import json
import logging
import time
from typing import Any, Dict, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.utils.timeutils import parse_timestamp

logger = logging.getLogger(__name__)


class LocationCache:
    """
    Fast-path store of each bus's most recent position.

    The durable GPS log stays authoritative; this cache is a soft
    dependency. Every operation swallows Redis failures and degrades to
    "absent" so ingestion never blocks on cache availability.
    """

    KEY_PREFIX = "bus:location:"

    def __init__(self, client: Optional[Redis] = None, ttl_seconds: int = 300):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 300) -> "LocationCache":
        if not redis_url:
            logger.info("REDIS_URL not set, location cache disabled")
            return cls(None, ttl_seconds)
        client = Redis.from_url(redis_url, decode_responses=True)
        return cls(client, ttl_seconds)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def _key(self, bus_id: str) -> str:
        return f"{self.KEY_PREFIX}{bus_id}"

    async def set_current(self, bus_id: str, location: Dict[str, Any]) -> bool:
        """
        Store the latest location for a bus.

        Returns False when the cache is unavailable or when the cached
        entry carries a newer timestamp than the incoming one.
        """
        if self.client is None:
            return False

        try:
            incoming_ts = parse_timestamp(location.get("timestamp"))
            existing = await self._read(bus_id)
            if existing and incoming_ts is not None:
                cached_ts = parse_timestamp(existing.get("timestamp"))
                if cached_ts is not None and incoming_ts < cached_ts:
                    logger.info(
                        f"Ignoring out-of-order location for bus {bus_id}: "
                        f"{incoming_ts.isoformat()} < {cached_ts.isoformat()}"
                    )
                    return False

            await self.client.set(
                self._key(bus_id),
                json.dumps(location, default=str),
                ex=self.ttl_seconds
            )
            return True

        except (RedisError, OSError, TypeError, ValueError) as e:
            logger.warning(f"Cache set error (non-critical) for bus {bus_id}: {e}")
            return False

    async def get_current(self, bus_id: str) -> Optional[Dict[str, Any]]:
        if self.client is None:
            return None

        try:
            return await self._read(bus_id)
        except (RedisError, OSError, ValueError) as e:
            logger.warning(f"Cache get error (non-critical) for bus {bus_id}: {e}")
            return None

    async def delete(self, bus_id: str) -> None:
        if self.client is None:
            return

        try:
            await self.client.delete(self._key(bus_id))
        except (RedisError, OSError) as e:
            logger.warning(f"Cache delete error (non-critical) for bus {bus_id}: {e}")

    async def health(self) -> Dict[str, Any]:
        if self.client is None:
            return {"connected": False, "error": "Redis client not configured"}

        try:
            start = time.perf_counter()
            await self.client.ping()
            return {
                "connected": True,
                "ping_ms": round((time.perf_counter() - start) * 1000, 2)
            }
        except (RedisError, OSError) as e:
            return {"connected": False, "error": str(e)}

    async def close(self) -> None:
        if self.client is None:
            return

        try:
            await self.client.aclose()
        except (RedisError, OSError) as e:
            logger.warning(f"Redis disconnection failed: {e}")

    async def _read(self, bus_id: str) -> Optional[Dict[str, Any]]:
        value = await self.client.get(self._key(bus_id))
        return json.loads(value) if value else None
