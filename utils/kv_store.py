# Copyright (C) 2025 grodz
#
# This file is part of Cadence.
#
# Cadence is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Remote key-value stores used for backups.

Every backend exposes the same three coroutines:

    await store.get(key)          -> value or None
    await store.set(key, value)
    await store.delete(key)

Values are JSON-serializable objects. Calls go through a RateLimitedQueue
(bounded concurrency, minimum spacing between call starts, per-call timeout)
because hosted stores enforce request-rate limits. A timed-out call raises
KeyValueStoreError and is not retried here.
"""

import asyncio
import json
from time import monotonic as _now
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp
import redis.asyncio as redis
from loguru import logger

from config import KV_CONCURRENCY, KV_MIN_INTERVAL, KV_TIMEOUT

T = TypeVar("T")


class KeyValueStoreError(Exception):
    """A backend call failed or timed out."""


class RateLimitedQueue:
    """Funnel for backend calls.

    At most ``concurrency`` calls run at once, two call starts are at least
    ``min_interval`` seconds apart, and each call is abandoned after ``timeout``.

    Attributes:
        active: Calls currently running
        peak: Highest value ``active`` has reached
    """

    def __init__(self, concurrency: int = KV_CONCURRENCY, min_interval: float = KV_MIN_INTERVAL,
                 timeout: float = KV_TIMEOUT) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.min_interval = min_interval
        self.timeout = timeout
        self.active = 0
        self.peak = 0
        self._semaphore = asyncio.Semaphore(concurrency)
        self._start_lock = asyncio.Lock()
        self._last_start = 0.0

    async def run(self, factory: Callable[[], Awaitable[T]], description: str = "call") -> T:
        async with self._semaphore:
            async with self._start_lock:
                delay = self._last_start + self.min_interval - _now()
                if delay > 0:
                    await asyncio.sleep(delay)
                self._last_start = _now()

            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                return await asyncio.wait_for(factory(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                raise KeyValueStoreError(f"{description} timed out after {self.timeout}s") from e
            finally:
                self.active -= 1


class KeyValueStore:
    """Base class: public calls are queued, subclasses implement ``_get/_set/_delete``."""

    name = "base"

    def __init__(self, queue: Optional[RateLimitedQueue] = None) -> None:
        self.queue = queue or RateLimitedQueue()

    async def _call(self, description: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await self.queue.run(factory, description)
        except KeyValueStoreError:
            raise
        except Exception as e:
            raise KeyValueStoreError(f"{description} failed: {e}") from e

    async def get(self, key: str) -> Any:
        return await self._call(f"{self.name} GET {key}", lambda: self._get(key))

    async def set(self, key: str, value: Any) -> None:
        await self._call(f"{self.name} SET {key}", lambda: self._set(key, value))

    async def delete(self, key: str) -> None:
        await self._call(f"{self.name} DELETE {key}", lambda: self._delete(key))

    async def close(self) -> None:
        pass

    async def _get(self, key: str) -> Any:
        raise NotImplementedError

    async def _set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    async def _delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryKeyValueStore(KeyValueStore):
    """In-process store (tests, or running without persistence across restarts)."""

    name = "memory"

    def __init__(self, queue: Optional[RateLimitedQueue] = None) -> None:
        super().__init__(queue)
        self.data: Dict[str, str] = {}

    async def _get(self, key):
        raw = self.data.get(key)
        return None if raw is None else json.loads(raw)

    async def _set(self, key, value):
        self.data[key] = json.dumps(value)

    async def _delete(self, key):
        self.data.pop(key, None)


class HttpKeyValueStore(KeyValueStore):
    """Replit-style database over HTTP.

    GET {base}/{key} returns the raw value (404 when absent),
    POST {base} with form data key=value stores it, DELETE {base}/{key} removes it.
    """

    name = "http"

    def __init__(self, base_url: str, queue: Optional[RateLimitedQueue] = None) -> None:
        super().__init__(queue)
        self.base_url = base_url.rstrip("/")
        self._session: Optional[aiohttp.ClientSession] = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _get(self, key):
        async with self._client().get(f"{self.base_url}/{key}") as resp:
            if resp.status == 404:
                return None
            resp.raise_for_status()
            raw = await resp.text()
        return json.loads(raw) if raw else None

    async def _set(self, key, value):
        async with self._client().post(self.base_url, data={key: json.dumps(value)}) as resp:
            resp.raise_for_status()

    async def _delete(self, key):
        async with self._client().delete(f"{self.base_url}/{key}") as resp:
            if resp.status != 404:
                resp.raise_for_status()

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()


class RedisKeyValueStore(KeyValueStore):
    """Redis over redis.asyncio (values stored as JSON strings)."""

    name = "redis"

    def __init__(self, url: str, queue: Optional[RateLimitedQueue] = None, prefix: str = "cadence:") -> None:
        super().__init__(queue)
        self.prefix = prefix
        self._client = redis.Redis.from_url(url, decode_responses=True)

    async def _get(self, key):
        raw = await self._client.get(self.prefix + key)
        return None if raw is None else json.loads(raw)

    async def _set(self, key, value):
        await self._client.set(self.prefix + key, json.dumps(value))

    async def _delete(self, key):
        await self._client.delete(self.prefix + key)

    async def close(self):
        await self._client.aclose()


def create_store(settings: Dict[str, Any]) -> Optional[KeyValueStore]:
    """Build the backup store selected in the ``backup`` settings section.

    Returns:
        A store, or None when backups are disabled

    Raises:
        ValueError: unknown backend, or a remote backend without a url
    """
    backup = settings.get("backup", {})
    backend = str(backup.get("backend", "none")).lower()
    url = backup.get("url") or ""
    queue = RateLimitedQueue(
        concurrency=int(backup.get("concurrency", KV_CONCURRENCY)),
        timeout=float(backup.get("timeout", KV_TIMEOUT)),
    )

    if backend == "none":
        logger.info("Backups disabled")
        return None
    if backend == "memory":
        logger.warning("Using in-memory backup store (state is lost on restart)")
        return MemoryKeyValueStore(queue)
    if backend in ("http", "redis") and not url:
        raise ValueError(f"backup backend '{backend}' needs backup.url (or CADENCE_BACKUP_URL)")
    if backend == "http":
        logger.info("Using HTTP key-value backup store")
        return HttpKeyValueStore(url, queue)
    if backend == "redis":
        logger.info("Using Redis backup store")
        return RedisKeyValueStore(url, queue)
    raise ValueError(f"unknown backup backend: {backend}")
