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

"""Periodic backup of guild status and queues to a key-value store.

In-memory sessions are the source of truth. The store is an eventually
consistent mirror, written on a timer and read once at startup.

Two dirty channels per guild:
- status: connection/playback flags (small, compared against the last write)
- queue: the portable queue export (only rewritten when the queue changed)

A guild's mark is cleared only after its write succeeded, so a failed write is
retried on the next tick without affecting other guilds.
"""

import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from config import BACKUP_INTERVAL, BACKUP_KEY_QUEUE, BACKUP_KEY_STATUS
from core.session import get_session
from core.track import IncompatibleQueueVersion
from utils.kv_store import KeyValueStore


def status_key(guild_id: int) -> str:
    return f"{BACKUP_KEY_STATUS}:{guild_id}"


def queue_key(guild_id: int) -> str:
    return f"{BACKUP_KEY_QUEUE}:{guild_id}"


class BackupSynchronizer:
    """Mirrors sessions into a KeyValueStore.

    Usage:
        backup = BackupSynchronizer(store, lambda: sessions)
        await backup.restore(bot)
        backup.start()
        ...
        await backup.stop()   # final flush

    Attributes:
        store: Backend all reads and writes go to
        interval: Seconds between ticks
    """

    def __init__(self, store: KeyValueStore, get_sessions: Callable[[], Dict[int, Any]],
                 interval: float = BACKUP_INTERVAL) -> None:
        self.store = store
        self.get_sessions = get_sessions
        self.interval = interval
        self._status_modified: Set[int] = set()
        self._queue_modified: Set[int] = set()
        self._status_cache: Dict[int, Dict[str, Any]] = {}
        self._task: Optional[asyncio.Task] = None

    # =========================================================================
    # Dirty tracking
    # =========================================================================

    def mark_status_modified(self, guild_id: int) -> None:
        self._status_modified.add(guild_id)

    def mark_queue_modified(self, guild_id: int) -> None:
        self._queue_modified.add(guild_id)

    def get_status_modified_guild_ids(self) -> List[int]:
        """Guilds whose status was marked, or differs from what was last written."""
        sessions = self.get_sessions()
        modified = {gid for gid in self._status_modified if gid in sessions}
        for guild_id, session in sessions.items():
            if self._status_cache.get(guild_id) != session.export_status():
                modified.add(guild_id)
        return sorted(modified)

    def get_queue_modified_guild_ids(self) -> List[int]:
        sessions = self.get_sessions()
        return sorted(gid for gid in self._queue_modified if gid in sessions)

    # =========================================================================
    # Writing
    # =========================================================================

    async def _backup_status_of(self, guild_id: int) -> bool:
        session = self.get_sessions().get(guild_id)
        if session is None:
            return False
        try:
            status = session.export_status()
            await self.store.set(status_key(guild_id), status)
        except Exception as e:
            logger.error(f"Status backup failed for guild {guild_id}, retrying next tick: {e}")
            return False
        self._status_cache[guild_id] = status
        self._status_modified.discard(guild_id)
        return True

    async def _backup_queue_of(self, guild_id: int) -> bool:
        session = self.get_sessions().get(guild_id)
        if session is None:
            return False
        # Clear first: a change made while the write is in flight re-marks the guild
        self._queue_modified.discard(guild_id)
        try:
            await self.store.set(queue_key(guild_id), session.export_queue())
        except Exception as e:
            self._queue_modified.add(guild_id)
            logger.error(f"Queue backup failed for guild {guild_id}, retrying next tick: {e}")
            return False
        return True

    async def backup_status(self) -> int:
        """Write every modified status. Returns how many writes succeeded."""
        guild_ids = self.get_status_modified_guild_ids()
        if not guild_ids:
            return 0
        logger.debug(f"Backing up status of {len(guild_ids)} guild(s)")
        results = await asyncio.gather(*(self._backup_status_of(gid) for gid in guild_ids))
        return sum(results)

    async def backup_queue(self) -> int:
        """Write every modified queue. Returns how many writes succeeded."""
        guild_ids = self.get_queue_modified_guild_ids()
        if not guild_ids:
            return 0
        logger.debug(f"Backing up queue of {len(guild_ids)} guild(s)")
        results = await asyncio.gather(*(self._backup_queue_of(gid) for gid in guild_ids))
        return sum(results)

    async def tick(self) -> None:
        await self.backup_status()
        await self.backup_queue()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception:
                logger.exception("Backup tick failed")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
            logger.info(f"Backup loop started (every {self.interval:.0f}s)")

    async def stop(self, flush: bool = True) -> None:
        """Stop the loop, then write whatever is still dirty."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if flush:
            await self.tick()
        await self.store.close()

    # =========================================================================
    # Reading
    # =========================================================================

    async def _read_all(self, guild_ids: Iterable[int], key_of: Callable[[int], str]) -> Dict[int, Any]:
        guild_ids = list(guild_ids)
        values = await asyncio.gather(
            *(self.store.get(key_of(gid)) for gid in guild_ids), return_exceptions=True
        )
        result = {}
        for guild_id, value in zip(guild_ids, values):
            if isinstance(value, Exception):
                logger.warning(f"Could not read {key_of(guild_id)}: {value}")
            elif value is not None:
                result[guild_id] = value
        return result

    async def get_status_from_backup(self, guild_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        """Stored statuses by guild id. Guilds without a record are left out."""
        statuses = await self._read_all(guild_ids, status_key)
        self._status_cache.update(statuses)
        return statuses

    async def get_queue_from_backup(self, guild_ids: Iterable[int]) -> Dict[int, Any]:
        """Stored queue exports by guild id. Guilds without a record are left out."""
        return await self._read_all(guild_ids, queue_key)

    async def restore(self, bot) -> int:
        """Seed sessions from the store. Returns how many guilds were restored."""
        guild_ids = [guild.id for guild in bot.guilds]
        if not guild_ids:
            return 0

        statuses = await self.get_status_from_backup(guild_ids)
        queues = await self.get_queue_from_backup(guild_ids)
        restored = 0

        for guild_id in guild_ids:
            status = statuses.get(guild_id)
            queue = queues.get(guild_id)
            if status is None and queue is None:
                continue

            bound_channel_id = 0
            if isinstance(status, dict):
                try:
                    bound_channel_id = int(status.get("boundChannelId") or 0)
                except (TypeError, ValueError):
                    bound_channel_id = 0
            session = await get_session(guild_id, bot, bound_channel_id)

            if queue is not None:
                try:
                    await session.import_queue(queue)
                except IncompatibleQueueVersion as e:
                    logger.warning(f"Skipping queue backup of guild {guild_id}: {e}")
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping malformed queue backup of guild {guild_id}: {e}")

            if isinstance(status, dict):
                try:
                    session.import_status(status)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping malformed status backup of guild {guild_id}: {e}")
            elif status is not None:
                logger.warning(f"Skipping malformed status backup of guild {guild_id}")

            # What we just loaded is what the store holds
            self._queue_modified.discard(guild_id)
            self._status_modified.discard(guild_id)
            restored += 1

        logger.info(f"Restored {restored} guild(s) from backup")
        return restored

    async def on_guild_remove(self, guild_id: int) -> None:
        """Best-effort removal of both records of a guild the bot left."""
        self._status_modified.discard(guild_id)
        self._queue_modified.discard(guild_id)
        self._status_cache.pop(guild_id, None)

        results = await asyncio.gather(
            self.store.delete(status_key(guild_id)),
            self.store.delete(queue_key(guild_id)),
            return_exceptions=True,
        )
        for key, result in zip((status_key(guild_id), queue_key(guild_id)), results):
            if isinstance(result, Exception):
                logger.warning(f"Could not delete {key}: {result}")
