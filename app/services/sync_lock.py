import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class SyncLock:
    """
        One sync run of a given type at a time.

        Inside a process an asyncio.Lock per sync type queues concurrent
        triggers. When a Redis client is given, a Redis lock named
        `sync:lock:<type>` is also held so that several service instances
        cannot run the same sync type concurrently either.
    """

    def __init__(self, redis: Optional[Redis] = None, timeout_seconds: int = 900):
        self._redis = redis
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, asyncio.Lock] = {}

    def _local(self, sync_type: str) -> asyncio.Lock:
        if sync_type not in self._locks:
            self._locks[sync_type] = asyncio.Lock()
        return self._locks[sync_type]

    @asynccontextmanager
    async def hold(self, sync_type: str) -> AsyncIterator[None]:
        local = self._local(sync_type)
        if local.locked():
            logger.info("A %s sync is already running, waiting for it to finish", sync_type)
        async with local:
            if self._redis is None:
                yield
                return
            # timeout releases the lock if this process dies mid-run
            lock = self._redis.lock(
                f"sync:lock:{sync_type}",
                timeout=self.timeout_seconds,
                blocking_timeout=self.timeout_seconds,
            )
            async with lock:
                yield
