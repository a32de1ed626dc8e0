# escalate/data/cache.py
import json
import logging
import secrets
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Dict, Any, AsyncIterator
from redis.asyncio import Redis
from redis.exceptions import RedisError

from escalate.errors import LockUnavailable

logger = logging.getLogger(__name__)

ANALYSIS_STALENESS_SECONDS = 24 * 60 * 60

# Delete the lock only while it still holds our token.
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class CacheService:
    def __init__(
        self,
        redis: Redis,
        default_ttl: int = 3600,
        staleness_seconds: int = ANALYSIS_STALENESS_SECONDS,
        metrics_ttl: int = 300,
    ):
        self.redis = redis
        self.default_ttl = default_ttl
        self.staleness_seconds = staleness_seconds
        self.metrics_ttl = metrics_ttl

    # ---------- Generic ----------
    async def get(self, key: str) -> Optional[Any]:
        try:
            val = await self.redis.get(key)
            return json.loads(val) if val else None
        except (RedisError, ValueError) as e:
            logger.error("Cache get error for key %s: %s", key, e)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            await self.redis.set(key, json.dumps(value, default=str), ex=ttl or self.default_ttl)
            return True
        except (RedisError, TypeError) as e:
            logger.error("Cache set error for key %s: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        try:
            await self.redis.delete(key)
            return True
        except RedisError as e:
            logger.error("Cache delete error for key %s: %s", key, e)
            return False

    # ---------- Analysis ----------
    async def get_cached_analysis(self, incident_id: str) -> Optional[Dict[str, Any]]:
        cached = await self.get(f"analysis:{incident_id}")
        if not cached or not cached.get("timestamp"):
            return None
        try:
            stored_at = datetime.fromisoformat(cached["timestamp"])
        except (TypeError, ValueError):
            return None
        if stored_at.tzinfo is None:
            stored_at = stored_at.replace(tzinfo=timezone.utc)
        age = (datetime.now(timezone.utc) - stored_at).total_seconds()
        if age >= self.staleness_seconds:
            return None
        logger.info("Using cached analysis for %s, age: %d minutes", incident_id, round(age / 60))
        return cached

    async def set_cached_analysis(self, incident_id: str, analysis: Dict[str, Any]) -> None:
        data = {
            **analysis,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "cached": True,
        }
        await self.set(f"analysis:{incident_id}", data, ttl=self.staleness_seconds)
        logger.info("Cached analysis for %s", incident_id)

    # ---------- Metrics ----------
    def _metrics_key(self, source: str, start: datetime, end: datetime, incident_id: Optional[str]) -> str:
        key = f"metrics:{source}:{_ms(start)}:{_ms(end)}"
        return f"{key}:{incident_id}" if incident_id else key

    async def get_cached_metrics(
        self, source: str, start: datetime, end: datetime, incident_id: Optional[str] = None
    ) -> Optional[Any]:
        return await self.get(self._metrics_key(source, start, end, incident_id))

    async def set_cached_metrics(
        self,
        source: str,
        start: datetime,
        end: datetime,
        metrics: Any,
        ttl: Optional[int] = None,
        incident_id: Optional[str] = None,
    ) -> None:
        await self.set(self._metrics_key(source, start, end, incident_id), metrics, ttl=ttl or self.metrics_ttl)

    async def invalidate(self, incident_id: str) -> int:
        """Drop every cached entry for an incident. Returns the number of keys removed."""
        removed = 0
        for key in (f"analysis:{incident_id}", f"incident:{incident_id}"):
            removed += int(await self.redis.delete(key))
        async for key in self.redis.scan_iter(match=f"metrics:*:{incident_id}"):
            removed += int(await self.redis.delete(key))
        logger.info("Invalidated cache for incident %s (%d keys)", incident_id, removed)
        return removed

    # ---------- Locks ----------
    async def acquire_lock(self, key: str, ttl: int = 30) -> Optional[str]:
        token = secrets.token_hex(16)
        acquired = await self.redis.set(f"lock:{key}", token, nx=True, ex=ttl)
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        released = await self.redis.eval(RELEASE_SCRIPT, 1, f"lock:{key}", token)
        return bool(released)

    @asynccontextmanager
    async def lock(self, key: str, ttl: int = 30) -> AsyncIterator[str]:
        token = await self.acquire_lock(key, ttl)
        if token is None:
            raise LockUnavailable(key)
        try:
            yield token
        finally:
            try:
                if not await self.release_lock(key, token):
                    logger.warning("Lock %s expired before release", key)
            except RedisError as e:
                logger.error("Failed to release lock %s: %s", key, e)

    # ---------- Health ----------
    async def stats(self) -> Dict[str, Any]:
        try:
            await self.redis.ping()
            return {"connected": True, "keys": await self.redis.dbsize()}
        except RedisError as e:
            return {"connected": False, "error": str(e)}
