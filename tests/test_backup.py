"""Tests for the backup synchronizer (systems/backup.py)."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from conftest import portable_item
from config import QUEUE_FORMAT_VERSION
from core import session as session_module
from systems.backup import BackupSynchronizer, queue_key, status_key
from utils.kv_store import KeyValueStoreError, MemoryKeyValueStore, RateLimitedQueue


class FakeSession:
    """Stands in for a GuildSession: fixed exports, nothing else."""

    def __init__(self, guild_id: int, volume: int = 100):
        self.guild_id = guild_id
        self.status = {"voiceChannelId": "0", "boundChannelId": "0", "volume": volume}
        self.queue = {"version": QUEUE_FORMAT_VERSION, "data": []}

    def export_status(self):
        return dict(self.status)

    def export_queue(self):
        return self.queue


class FailingStore(MemoryKeyValueStore):
    """Memory store whose writes to the listed keys always fail."""

    def __init__(self, failing=(), fail_deletes=False):
        super().__init__(RateLimitedQueue(min_interval=0))
        self.failing = set(failing)
        self.fail_deletes = fail_deletes

    async def _set(self, key, value):
        if key in self.failing:
            raise ConnectionError("store unavailable")
        await super()._set(key, value)

    async def _delete(self, key):
        if self.fail_deletes:
            raise ConnectionError("store unavailable")
        await super()._delete(key)


def _sync(store, sessions) -> BackupSynchronizer:
    return BackupSynchronizer(store, lambda: sessions, interval=10)


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------

class TestStatusBackup:
    @pytest.mark.asyncio
    async def test_unwritten_sessions_count_as_modified(self):
        sessions = {1: FakeSession(1), 2: FakeSession(2)}
        backup = _sync(FailingStore(), sessions)
        assert backup.get_status_modified_guild_ids() == [1, 2]

        assert await backup.backup_status() == 2
        assert backup.get_status_modified_guild_ids() == []

    @pytest.mark.asyncio
    async def test_changed_status_is_detected_without_a_mark(self):
        sessions = {1: FakeSession(1)}
        backup = _sync(FailingStore(), sessions)
        await backup.backup_status()

        sessions[1].status["volume"] = 50
        assert backup.get_status_modified_guild_ids() == [1]

    @pytest.mark.asyncio
    async def test_failure_is_isolated_per_guild(self):
        store = FailingStore(failing={status_key(2)})
        sessions = {1: FakeSession(1), 2: FakeSession(2), 3: FakeSession(3)}
        backup = _sync(store, sessions)
        backup.mark_status_modified(2)

        assert await backup.backup_status() == 2
        assert set(store.data) == {status_key(1), status_key(3)}
        assert backup.get_status_modified_guild_ids() == [2]

        store.failing.clear()
        assert await backup.backup_status() == 1
        assert backup.get_status_modified_guild_ids() == []

    def test_marks_for_unknown_guilds_are_ignored(self):
        backup = _sync(FailingStore(), {})
        backup.mark_status_modified(9)
        assert backup.get_status_modified_guild_ids() == []


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------

class TestQueueBackup:
    @pytest.mark.asyncio
    async def test_only_marked_queues_are_written(self):
        store = FailingStore()
        backup = _sync(store, {1: FakeSession(1), 2: FakeSession(2)})
        backup.mark_queue_modified(2)

        assert await backup.backup_queue() == 1
        assert await store.get(queue_key(2)) == {"version": QUEUE_FORMAT_VERSION, "data": []}
        assert await store.get(queue_key(1)) is None

    @pytest.mark.asyncio
    async def test_failed_write_keeps_the_mark(self):
        store = FailingStore(failing={queue_key(1)})
        backup = _sync(store, {1: FakeSession(1)})
        backup.mark_queue_modified(1)

        assert await backup.backup_queue() == 0
        assert backup.get_queue_modified_guild_ids() == [1]

        store.failing.clear()
        assert await backup.backup_queue() == 1
        assert backup.get_queue_modified_guild_ids() == []

    @pytest.mark.asyncio
    async def test_nothing_to_do(self):
        backup = _sync(FailingStore(), {})
        assert await backup.backup_queue() == 0


# ---------------------------------------------------------------------------
# Reading and restoring
# ---------------------------------------------------------------------------

def _bot(*guild_ids) -> MagicMock:
    bot = MagicMock()
    bot.guilds = [MagicMock(id=gid) for gid in guild_ids]
    return bot


class TestRestore:
    @pytest.mark.asyncio
    async def test_absent_records_are_left_out(self):
        store = FailingStore()
        await store.set(status_key(1), {"volume": 10})
        backup = _sync(store, {})

        assert await backup.get_status_from_backup([1, 2]) == {1: {"volume": 10}}
        assert await backup.get_queue_from_backup([1, 2]) == {}

    @pytest.mark.asyncio
    async def test_restores_sessions(self):
        store = FailingStore()
        await store.set(status_key(1), {
            "voiceChannelId": "0", "boundChannelId": "600", "loopEnabled": True, "volume": 40,
        })
        await store.set(queue_key(1), {
            "version": QUEUE_FORMAT_VERSION, "data": [portable_item(1), portable_item(2)],
        })
        backup = _sync(store, session_module.sessions)

        assert await backup.restore(_bot(1, 2)) == 1
        session = session_module.sessions[1]
        assert len(session.queue) == 2
        assert session.queue.loop_enabled is True
        assert session.player.volume == 40
        assert session.bound_text_channel == 600
        assert 2 not in session_module.sessions
        assert backup.get_queue_modified_guild_ids() == []

    @pytest.mark.asyncio
    async def test_incompatible_queue_is_skipped(self):
        store = FailingStore()
        await store.set(status_key(1), {"voiceChannelId": "0", "volume": 70})
        await store.set(queue_key(1), {
            "version": QUEUE_FORMAT_VERSION + 1, "data": [portable_item(1)],
        })
        backup = _sync(store, session_module.sessions)

        assert await backup.restore(_bot(1)) == 1
        session = session_module.sessions[1]
        assert len(session.queue) == 0
        assert session.player.volume == 70

    @pytest.mark.asyncio
    async def test_no_guilds(self):
        assert await _sync(FailingStore(), {}).restore(_bot()) == 0

    @pytest.mark.asyncio
    async def test_malformed_queue_entry_is_dropped_on_restore(self):
        store = FailingStore()
        await store.set(queue_key(1), {"version": QUEUE_FORMAT_VERSION, "data": [
            portable_item(1), portable_item(2, length=[3]), portable_item(3),
        ]})
        backup = _sync(store, session_module.sessions)

        assert await backup.restore(_bot(1)) == 1
        assert len(session_module.sessions[1].queue) == 2


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    @pytest.mark.asyncio
    async def test_guild_remove_tolerates_delete_failures(self):
        store = FailingStore(fail_deletes=True)
        backup = _sync(store, {1: FakeSession(1)})
        backup.mark_queue_modified(1)

        await backup.on_guild_remove(1)
        assert backup.get_queue_modified_guild_ids() == []

    @pytest.mark.asyncio
    async def test_guild_remove_deletes_both_records(self):
        store = FailingStore()
        await store.set(status_key(1), {})
        await store.set(queue_key(1), {})
        await _sync(store, {}).on_guild_remove(1)
        assert store.data == {}

    @pytest.mark.asyncio
    async def test_stop_flushes_and_closes(self):
        store = FailingStore()
        closed = asyncio.Event()

        async def close():
            closed.set()

        store.close = close
        backup = _sync(store, {1: FakeSession(1)})
        backup.mark_queue_modified(1)
        backup.start()

        await backup.stop(flush=True)
        assert status_key(1) in store.data
        assert queue_key(1) in store.data
        assert closed.is_set()
        assert backup._task is None

    @pytest.mark.asyncio
    async def test_store_errors_are_wrapped(self):
        store = FailingStore(failing={"k"})
        with pytest.raises(KeyValueStoreError):
            await store.set("k", 1)
