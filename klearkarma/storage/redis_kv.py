from __future__ import annotations

import re
from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis

from klearkarma.storage.kv import KeyInfo, KeyList

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def _escape_glob(prefix: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", prefix)


class RedisKV:
    """Key-value backend over Redis strings.

    Prefix listing uses SCAN with a glob MATCH, so it is not a snapshot:
    keys written during the scan may or may not be returned.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    SCAN_BATCH = 500

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the runtime starts serving."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def put(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        await self.client.set(key, value, ex=ttl_seconds)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def list(self, prefix: str, *, limit: int = 1000) -> KeyList:
        names: List[str] = []
        complete = True
        async for name in self.client.scan_iter(
            match=f"{_escape_glob(prefix)}*", count=self.SCAN_BATCH
        ):
            if len(names) >= limit:
                complete = False
                break
            names.append(name)
        # SCAN order is arbitrary; callers get the same order MemoryKV gives
        names.sort()
        return KeyList(keys=[KeyInfo(name=n) for n in names], list_complete=complete)

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisKV"]
