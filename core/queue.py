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

"""
Queue Management

Ordered list of QueueEntry objects for one guild. Index 0 is the entry that is
playing (or will play next when idle).

Adding:
- add_queue(): resolve over the network, report to a status message
- add_queue_only(): add with known metadata (imports, backups, playlists)
- process_playlist(): bulk add with progress messages and cooperative cancellation

Loop flags:
- loop_enabled: next() keeps the head in place
- queue_loop_enabled: next() moves the head to the tail
"""

import inspect
import logging
import random
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)
user_logger = logging.getLogger('cadence')

# Import from config
from config import MAX_QUEUE_LENGTH, MESSAGES, PLAYLIST_PROGRESS_EVERY

from core.cancellation import CancellationToken
from core.resolver import create_source
from core.track import (
    QueueEntry, SourceType, Submitter, build_queue_export, format_duration, parse_queue_export,
)
from utils.discord_helpers import safe_edit, sanitize_for_format


class QueueFullError(Exception):
    """The queue already holds MAX_QUEUE_LENGTH entries."""


@contextmanager
def _unbound_cancellation():
    yield CancellationToken()


class QueueManager:
    """
    Per-guild play queue.

    Attributes:
        guild_id: Guild this queue belongs to
        loop_enabled: Repeat the current entry
        queue_loop_enabled: Re-append finished entries to the tail
        equally_playback: Interleave entries by submitter instead of appending
        last_skipped: Unusable items skipped by the last process_playlist() call
        on_change: Called with no arguments after every mutation
        head_active: Returns True while the head entry is playing (or connecting);
                     "first" inserts then go right after it instead of before it
        cancellation_scope: Returns a context manager yielding a bound CancellationToken
    """

    def __init__(self, guild_id: int, on_change: Optional[Callable[[], None]] = None,
                 cancellation_scope: Optional[Callable[[], Any]] = None):
        self.guild_id = guild_id
        self._entries: List[QueueEntry] = []
        self.loop_enabled = False
        self.queue_loop_enabled = False
        self.equally_playback = False
        self.last_skipped = 0
        self.on_change = on_change
        self.head_active: Callable[[], bool] = lambda: False
        self.cancellation_scope = cancellation_scope or _unbound_cancellation

    # =========================================================================
    # Read access
    # =========================================================================

    def __len__(self) -> int:
        return len(self._entries)

    def __getitem__(self, index: int) -> QueueEntry:
        return self._entries[index]

    def __iter__(self):
        return iter(list(self._entries))

    @property
    def entries(self) -> List[QueueEntry]:
        return list(self._entries)

    @property
    def current(self) -> Optional[QueueEntry]:
        return self._entries[0] if self._entries else None

    @property
    def is_empty(self) -> bool:
        return not self._entries

    # =========================================================================
    # Insertion
    # =========================================================================

    def _notify(self):
        if self.on_change:
            self.on_change()

    def _head_offset(self) -> int:
        """Index of the first entry that may be displaced."""
        return 1 if self._entries and self.head_active() else 0

    def _equal_insert_index(self, submitter: Submitter) -> int:
        """
        Round-robin position for a new entry from ``submitter``.

        If the submitter already has k entries waiting, the new one belongs to
        round k+1 and goes in front of the first entry of round k+2 or later.
        """
        start = self._head_offset()
        waiting = self._entries[start:]
        target_round = sum(1 for e in waiting if e.added_by.user_id == submitter.user_id) + 1

        seen: Dict[str, int] = {}
        for offset, entry in enumerate(waiting):
            user_id = entry.added_by.user_id
            seen[user_id] = seen.get(user_id, 0) + 1
            if seen[user_id] > target_round:
                return start + offset
        return len(self._entries)

    def _insert(self, entry: QueueEntry, first: bool = False, offset: int = 0) -> int:
        if len(self._entries) >= MAX_QUEUE_LENGTH:
            raise QueueFullError(f"queue is limited to {MAX_QUEUE_LENGTH} entries")

        if first:
            index = self._head_offset() + offset
        elif self.equally_playback:
            index = self._equal_insert_index(entry.added_by)
        else:
            index = len(self._entries)
        index = min(index, len(self._entries))
        self._entries.insert(index, entry)
        return index

    async def _resolve_entry(self, url: str, added_by: Submitter,
                             got_data: Optional[Dict[str, Any]] = None,
                             source_type: Optional[SourceType] = None) -> QueueEntry:
        source = create_source(url, source_type)
        await source.init(url, prefetched=got_data)
        return QueueEntry(source.url, source.source_type, source.metadata, added_by, source)

    async def add_queue_only(self, url: str, added_by: Submitter, first: bool = False,
                             got_data: Optional[Dict[str, Any]] = None,
                             source_type: Optional[SourceType] = None) -> QueueEntry:
        """
        Add an entry without reporting to the user.

        With ``got_data`` (a portable entry dict) no network lookup is made.

        Raises:
            QueueFullError, ValueError (unsupported url), ResolutionError
        """
        if len(self._entries) >= MAX_QUEUE_LENGTH:
            raise QueueFullError(f"queue is limited to {MAX_QUEUE_LENGTH} entries")
        entry = await self._resolve_entry(url, added_by, got_data, source_type)
        index = self._insert(entry, first)
        logger.debug(f"Guild {self.guild_id}: queued {entry!r} at {index}")
        self._notify()
        return entry

    async def add_queue(self, url: str, added_by: Submitter, first: bool = False, message=None,
                        source_type: Optional[SourceType] = None,
                        cancellable: bool = False) -> Optional[QueueEntry]:
        """
        Resolve and add one url, reporting the outcome on ``message``.

        With ``cancellable``, a cancellation token is bound while the lookup runs;
        if it fires, the lookup still completes but its result is discarded.

        Returns:
            The new entry, or None if it could not be added
        """
        scope = self.cancellation_scope() if cancellable else _unbound_cancellation()
        with scope as cancellation:
            try:
                entry = await self._resolve_entry(url, added_by, None, source_type)
            except Exception as e:
                logger.warning(f"Guild {self.guild_id}: failed to add {url}: {e}")
                await safe_edit(message, MESSAGES['failed_to_add'])
                return None

            if cancellation.cancelled:
                await safe_edit(message, MESSAGES['canceled'])
                return None

            try:
                self._insert(entry, first)
            except QueueFullError as e:
                logger.info(f"Guild {self.guild_id}: {e}")
                await safe_edit(message, MESSAGES['failed_to_add'])
                return None

        self._notify()
        user_logger.info(f"Queued: {entry.title}")
        await safe_edit(message, MESSAGES['song_added'].format(
            title=sanitize_for_format(entry.title),
            length=format_duration(entry.metadata.length),
        ))
        return entry

    async def process_playlist(self, message, cancellation: CancellationToken, first: bool,
                               source_type: Optional[SourceType], items: Iterable[Any],
                               playlist_name: str, total_count: int,
                               normalizer: Callable[[Any], Any],
                               added_by: Optional[Submitter] = None) -> int:
        """
        Bulk add playlist items.

        Each item goes through ``normalizer`` (sync or async) to become a portable
        entry dict, then through add_queue_only() without a network lookup. An
        item whose normalizer or add fails is skipped and counted in last_skipped.
        The token is checked after every item; a cancelled token stops the loop
        without raising.

        Returns:
            Number of entries queued
        """
        items = list(items)
        total = total_count or len(items)
        added_by = added_by or Submitter("0")
        name = sanitize_for_format(playlist_name or "")
        index = 0
        self.last_skipped = 0

        for item in items:
            if len(self._entries) >= MAX_QUEUE_LENGTH:
                logger.info(f"Guild {self.guild_id}: queue full, stopping playlist at {index}")
                break

            try:
                data = normalizer(item)
                if inspect.isawaitable(data):
                    data = await data
                entry = await self._resolve_entry(data["url"], added_by, data, source_type)
                self._insert(entry, first, offset=index)
                index += 1
            except Exception as e:
                self.last_skipped += 1
                logger.debug(f"Guild {self.guild_id}: skipped playlist item: {e}")

            processed = index + self.last_skipped
            if total <= PLAYLIST_PROGRESS_EVERY or processed % PLAYLIST_PROGRESS_EVERY == 0:
                await safe_edit(message, MESSAGES['processing_playlist'].format(
                    name=name, current=processed, total=total,
                ))

            if cancellation.cancelled:
                logger.info(f"Guild {self.guild_id}: playlist '{playlist_name}' cancelled after {index} items")
                break

        if index:
            self._notify()
        return index

    # =========================================================================
    # Import / export
    # =========================================================================

    def export_queue(self) -> Dict[str, Any]:
        return build_queue_export(self._entries)

    async def import_queue(self, data: Any, cancellation: Optional[CancellationToken] = None,
                           message=None) -> int:
        """
        Append the entries of a portable queue export.

        Every entry is built before any is added, so a wrong version or a
        cancellation leaves the queue untouched. Malformed entries are skipped.

        Raises:
            IncompatibleQueueVersion: version mismatch
            ValueError: payload is not a queue export

        Returns:
            Number of entries imported
        """
        items = parse_queue_export(data)
        entries: List[QueueEntry] = []
        for position, (item, submitter) in enumerate(items, start=1):
            if cancellation is not None and cancellation.cancelled:
                logger.info(f"Guild {self.guild_id}: import cancelled, queue unchanged")
                return 0
            try:
                entries.append(
                    await self._resolve_entry(item["url"], submitter, item, item.get("sourceType"))
                )
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Guild {self.guild_id}: skipped imported entry {item.get('url')}: {e}")

            if message and (position % PLAYLIST_PROGRESS_EVERY == 0 or position == len(items)):
                await safe_edit(message, MESSAGES['song_processing_in_progress'].format(
                    current=position, total=len(items),
                ))

        if cancellation is not None and cancellation.cancelled:
            return 0

        count = 0
        try:
            for entry in entries:
                self._insert(entry)
                count += 1
        except QueueFullError:
            logger.warning(f"Guild {self.guild_id}: queue full, dropped {len(entries) - count} imported entries")
        finally:
            if count:
                self._notify()
        logger.info(f"Guild {self.guild_id}: imported {count}/{len(items)} entries")
        return count

    # =========================================================================
    # Mutation
    # =========================================================================

    def next(self) -> Optional[QueueEntry]:
        """
        Advance past the head according to the loop flags.

        Returns:
            The new head, or None if the queue ran out
        """
        if not self._entries:
            return None
        if self.loop_enabled:
            return self._entries[0]

        finished = self._entries.pop(0)
        if self.queue_loop_enabled:
            self._entries.append(finished)
        self._notify()
        return self.current

    def remove(self, index: int) -> QueueEntry:
        """
        Remove the entry at ``index``.

        Raises:
            IndexError: out of range, or the playing head
        """
        if index < self._head_offset() or index >= len(self._entries):
            raise IndexError(f"no removable entry at {index}")
        entry = self._entries.pop(index)
        self._notify()
        return entry

    def move(self, from_index: int, to_index: int) -> QueueEntry:
        start = self._head_offset()
        size = len(self._entries)
        if not (start <= from_index < size and start <= to_index < size):
            raise IndexError(f"cannot move {from_index} to {to_index}")
        entry = self._entries.pop(from_index)
        self._entries.insert(to_index, entry)
        self._notify()
        return entry

    def clear(self) -> int:
        """Drop every waiting entry (the playing head stays). Returns the count removed."""
        start = self._head_offset()
        removed = len(self._entries) - start
        del self._entries[start:]
        if removed:
            self._notify()
        return removed

    def shuffle(self):
        start = self._head_offset()
        waiting = self._entries[start:]
        random.shuffle(waiting)
        self._entries[start:] = waiting
        self._notify()

    def rotate(self) -> Optional[QueueEntry]:
        """Move the head to the tail regardless of loop flags. Returns the new head."""
        if not self._entries:
            return None
        self._entries.append(self._entries.pop(0))
        self._notify()
        return self.current

    def purge_head(self) -> Optional[QueueEntry]:
        """Drop the head regardless of loop flags (used when it cannot be played)."""
        if not self._entries:
            return None
        entry = self._entries.pop(0)
        self._notify()
        return entry

    def __repr__(self) -> str:
        return f"QueueManager(guild={self.guild_id}, entries={len(self._entries)})"
