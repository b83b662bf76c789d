"""
Redis-based distributed locking service.

Guards stage batch dispatch so duplicate delivery of a classify/extract
entry job cannot fan out a second batch for the same scan. Uses Redis
SET NX PX for atomic acquisition with automatic expiration; an expired
lock means the earlier batch is considered stale.

Usage:
    from ideascan.core.shared.lock_service import lock_service

    lock_id = await lock_service.acquire_lock("scan:123:classify-batch", timeout=7200)
    if lock_id:
        # dispatch the batch; the stage finalizer releases the lock
        ...
"""

import asyncio
import logging
import os
import uuid
from datetime import datetime
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger("ideascan.services.lock")


class LockService:
    """
    Distributed locking service using Redis.

    Lock Key Format:
        ideascan:lock:{resource_name}

    Lock Value Format:
        {lock_id}:{acquired_at}
    """

    def __init__(self, redis_url: Optional[str] = None):
        self._redis: Optional[redis.Redis] = None
        self._redis_loop: Optional[asyncio.AbstractEventLoop] = None
        self._redis_url = redis_url
        self._lock_prefix = "ideascan:lock:"

    async def _get_redis(self) -> redis.Redis:
        """
        Get or create the Redis connection for the running event loop.

        Each Celery task runs its own asyncio.run() loop, so a client bound
        to a previous loop is abandoned rather than reused.
        """
        loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop is not loop:
            self._redis_loop = loop
            url = self._redis_url or os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
            self._redis = redis.from_url(url, decode_responses=True)
        return self._redis

    def _key(self, resource_name: str) -> str:
        return f"{self._lock_prefix}{resource_name}"

    async def acquire_lock(self, resource_name: str, timeout: int = 300) -> Optional[str]:
        """
        Attempt to acquire a lock without waiting.

        Args:
            resource_name: Name of the resource to lock
            timeout: Lock expiration in seconds

        Returns:
            Lock ID string if acquired, None if another holder has it
        """
        r = await self._get_redis()
        lock_id = str(uuid.uuid4())
        lock_value = f"{lock_id}:{datetime.utcnow().isoformat()}"

        acquired = await r.set(self._key(resource_name), lock_value, nx=True, px=timeout * 1000)
        if acquired:
            logger.debug(f"Lock acquired: {resource_name} (id={lock_id[:8]}..., timeout={timeout}s)")
            return lock_id

        logger.debug(f"Lock not available: {resource_name}")
        return None

    async def force_release(self, resource_name: str) -> bool:
        """
        Release a lock regardless of holder.

        Used by stage finalizers, which run in a different task than the
        entry job that acquired the batch lock.
        """
        r = await self._get_redis()
        deleted = await r.delete(self._key(resource_name))
        return deleted == 1

    async def is_locked(self, resource_name: str) -> bool:
        r = await self._get_redis()
        return await r.exists(self._key(resource_name)) == 1

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            self._redis_loop = None


# Global singleton instance
lock_service = LockService()
