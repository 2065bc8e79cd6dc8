from __future__ import annotations

import bisect
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol, Tuple


@dataclass(frozen=True)
class KeyInfo:
    name: str
    expiration: Optional[float] = None


@dataclass
class KeyList:
    keys: List[KeyInfo] = field(default_factory=list)
    list_complete: bool = True


class KeyValueBackend(Protocol):
    """The whole contract the record layer needs from its storage.

    No transactions, no secondary indexes and no range scans beyond prefix
    matching. Single-key ``put`` is assumed atomic.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def put(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def list(self, prefix: str, *, limit: int = 1000) -> KeyList: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class MemoryKV:
    """In-process key-value backend with per-key TTL, for tests and local dev."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        # sorted key index so prefix listing is a bisect, not a full scan
        self._sorted: List[str] = []
        self._lock = threading.Lock()

    def _expired(self, expires_at: Optional[float]) -> bool:
        return expires_at is not None and expires_at <= self._clock()

    def _drop(self, key: str) -> None:
        self._data.pop(key, None)
        idx = bisect.bisect_left(self._sorted, key)
        if idx < len(self._sorted) and self._sorted[idx] == key:
            self._sorted.pop(idx)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._expired(expires_at):
                self._drop(key)
                return None
            return value

    async def put(
        self, key: str, value: str, *, ttl_seconds: Optional[int] = None
    ) -> None:
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        expires_at = self._clock() + ttl_seconds if ttl_seconds is not None else None
        with self._lock:
            if key not in self._data:
                bisect.insort(self._sorted, key)
            self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._drop(key)

    async def list(self, prefix: str, *, limit: int = 1000) -> KeyList:
        result: List[KeyInfo] = []
        complete = True
        with self._lock:
            idx = bisect.bisect_left(self._sorted, prefix)
            expired: List[str] = []
            while idx < len(self._sorted):
                name = self._sorted[idx]
                if not name.startswith(prefix):
                    break
                idx += 1
                _, expires_at = self._data[name]
                if self._expired(expires_at):
                    expired.append(name)
                    continue
                if len(result) >= limit:
                    complete = False
                    break
                result.append(KeyInfo(name=name, expiration=expires_at))
            for name in expired:
                self._drop(name)
        return KeyList(keys=result, list_complete=complete)

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None


__all__ = ["KeyInfo", "KeyList", "KeyValueBackend", "MemoryKV"]
