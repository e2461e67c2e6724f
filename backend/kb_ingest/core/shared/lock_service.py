# backend/kb_ingest/core/shared/lock_service.py
"""
Per-document ingestion locks held in Redis.

A document is ingested by at most one pipeline run at a time: the synchronous
API path, a queued Celery task and a retry of either all take the same lock
before touching the document row or its vectors. A lock that is not
available is reported, never waited on by default, so the caller can answer
"document busy" right away.

Each lock is a Redis key set with NX and a TTL. The value is a random token;
release deletes the key only while it still carries that token, so a lock
that expired and was taken by another worker is left in place.

Usage:
    from kb_ingest.core.shared.lock_service import lock_service, document_lock_name

    async with lock_service.lock(document_lock_name(doc_id), timeout=900) as acquired:
        if not acquired:
            return busy()
        ...
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis

from kb_ingest.config import settings

logger = logging.getLogger("kb_ingest.lock")

KEY_PREFIX = "kb_ingest:lock:"

# Delete KEYS[1] only if it still holds our token
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def document_lock_name(document_id) -> str:
    """Resource name of the ingestion lock for one document."""
    return f"kb:document:{document_id}"


class LockService:
    """Redis lock keyed by resource name, e.g. document_lock_name(doc_id)."""

    def __init__(self, url: Optional[str] = None):
        self._url = url
        self._redis: Optional[redis.Redis] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def _client(self) -> redis.Redis:
        # Celery tasks run each ingestion in a fresh asyncio.run() loop; a client
        # created on an earlier loop cannot be reused there.
        loop = asyncio.get_running_loop()
        if self._redis is None or self._loop is not loop:
            self._redis = redis.from_url(self._url or settings.redis_url, decode_responses=True)
            self._loop = loop
        return self._redis

    async def acquire(
        self,
        resource_name: str,
        timeout: int = 300,
        retry_interval: float = 0.5,
        max_retries: int = 0,
    ) -> Optional[str]:
        """
        Take the lock on `resource_name` for `timeout` seconds.

        Returns:
            The lock token, or None if the resource is still locked after
            `max_retries` extra attempts
        """
        client = await self._client()
        key = KEY_PREFIX + resource_name
        token = uuid.uuid4().hex

        for attempt in range(max_retries + 1):
            if await client.set(key, token, nx=True, ex=timeout):
                logger.debug(f"Locked {resource_name} for {timeout}s")
                return token
            if attempt < max_retries:
                await asyncio.sleep(retry_interval)

        logger.debug(f"{resource_name} is locked ({max_retries + 1} attempts)")
        return None

    async def release(self, resource_name: str, token: str) -> bool:
        client = await self._client()
        released = await client.eval(_RELEASE_SCRIPT, 1, KEY_PREFIX + resource_name, token) == 1
        if not released:
            logger.warning(f"Lock on {resource_name} expired before release")
        return released

    @asynccontextmanager
    async def lock(
        self,
        resource_name: str,
        timeout: int = 300,
        retry_interval: float = 0.5,
        max_retries: int = 0,
    ):
        """Yield True while holding the lock, False if it could not be taken."""
        token = await self.acquire(resource_name, timeout, retry_interval, max_retries)
        try:
            yield token is not None
        finally:
            if token is not None:
                await self.release(resource_name, token)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._loop = None


# Global singleton instance
lock_service = LockService()
