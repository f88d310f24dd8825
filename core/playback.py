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
Playback Controller

Drives the play/advance cycle for one guild against its QueueManager and
VoiceManager:

    IDLE -> CONNECTING -> PLAYING <-> PAUSED -> (advance) -> PLAYING | IDLE

Owns volume and effect filters at the FFmpeg boundary.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from itertools import count
from time import monotonic as _now
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)
user_logger = logging.getLogger('cadence')


_SESSION_IDS = count(1)


@dataclass(slots=True)
class PlaybackSession:
    """Token that scopes callbacks to a specific play attempt.

    Each playback session receives a unique ``id`` so the track-end callback
    (fired from FFmpeg's thread) can verify it still belongs to the most recent
    play attempt. ``cancelled`` is set when a newer session supersedes it.
    """

    id: int = field(default_factory=lambda: next(_SESSION_IDS))
    entry_id: Optional[int] = None
    started_at: float = field(default_factory=_now)
    cancelled: bool = False

    def cancel(self) -> None:
        """Mark the session as cancelled so callbacks know to exit early."""
        self.cancelled = True


@dataclass
class EffectPrefs:
    """Per-guild audio effect toggles."""

    bass_boost: bool = False
    reverb: bool = False
    loudness_equalization: bool = False

    def enabled(self) -> List[str]:
        return [name for name in ('bass_boost', 'reverb', 'loudness_equalization') if getattr(self, name)]

    def toggle(self, name: str) -> bool:
        if name not in ('bass_boost', 'reverb', 'loudness_equalization'):
            raise ValueError(f"unknown effect: {name}")
        value = not getattr(self, name)
        setattr(self, name, value)
        return value


# Import from config
from config import (
    MESSAGES,
    VOICE_CONNECTION_CHECK_INTERVAL,
    VOICE_CONNECTION_MAX_WAIT,
    VOICE_SETTLE_DELAY,
)
from core.queue import QueueManager
from core.resolver import YouTubeSource
from core.track import QueueEntry, Submitter, format_duration
from systems.voice_manager import PlaybackState, VoiceManager
from utils.context_managers import suppress_callbacks
from utils.discord_helpers import make_stream_source, safe_send, sanitize_for_format


class PlaybackController:
    """
    Play/advance state machine for one guild.

    Attributes:
        state: PlaybackState
        volume: Percent, 0-200
        effects: EffectPrefs applied to every new stream
        add_related: Returns True when related tracks should be auto-queued
        get_text_channel: Returns the channel status messages go to
        on_status_change: Called after state, volume or effect changes
    """

    def __init__(self, guild_id: int, bot, queue: QueueManager, voice: VoiceManager,
                 get_text_channel: Callable = lambda: None,
                 add_related: Callable[[], bool] = lambda: False,
                 on_status_change: Optional[Callable[[], None]] = None,
                 volume: int = 100):
        self.guild_id = guild_id
        self.bot = bot
        self.queue = queue
        self.voice = voice
        self.get_text_channel = get_text_channel
        self.add_related = add_related
        self.on_status_change = on_status_change
        self.effects = EffectPrefs()
        self.volume = volume
        self.state = PlaybackState.IDLE

        self._playback_session: Optional[PlaybackSession] = None
        self._suppress_callback = False
        self._play_generation = 0
        self._audio_source = None
        self._live_abort: Optional[asyncio.Event] = None
        self._consecutive_errors = 0
        self._error_limit = 0

    # =========================================================================
    # State
    # =========================================================================

    @property
    def is_playing(self) -> bool:
        return self.state in (PlaybackState.PLAYING, PlaybackState.PAUSED)

    @property
    def is_paused(self) -> bool:
        return self.state == PlaybackState.PAUSED

    @property
    def is_active(self) -> bool:
        """True while the queue head is playing, paused, or being started."""
        return self.state != PlaybackState.IDLE

    def _set_state(self, state: PlaybackState):
        if self.state != state:
            logger.debug(f"Guild {self.guild_id}: {self.state.name} -> {state.name}")
            self.state = state
            self._status_changed()

    def _status_changed(self):
        if self.on_status_change:
            self.on_status_change()

    def cancel_active_session(self):
        """Invalidate the current playback session so its callback is ignored."""
        if self._playback_session:
            self._playback_session.cancel()
            self._playback_session = None

    def _abort_live_wait(self):
        if self._live_abort is not None:
            self._live_abort.set()

    async def _send(self, content: str):
        await safe_send(self.get_text_channel(), content)

    # =========================================================================
    # Play
    # =========================================================================

    async def play(self):
        """
        Start playing the queue head.

        No-op while already playing (or starting). Entries that fail to resolve
        are reported and skipped; after as many consecutive failures as the
        queue had entries, playback stops instead of looping.
        """
        if self.state != PlaybackState.IDLE:
            return
        if self.queue.is_empty:
            self._set_state(PlaybackState.IDLE)
            return
        if not self.voice.is_connected:
            logger.warning(f"Guild {self.guild_id}: play() called but not connected")
            return

        self._play_generation += 1
        generation = self._play_generation
        self._set_state(PlaybackState.CONNECTING)
        while True:
            entry = self.queue.current
            if entry is None or self.state != PlaybackState.CONNECTING:
                if self.state == PlaybackState.CONNECTING:
                    self._set_state(PlaybackState.IDLE)
                return

            try:
                if not await self._wait_if_upcoming(entry):
                    if not self._superseded(generation, entry):
                        self._set_state(PlaybackState.IDLE)
                    return
                stream = await entry.source.fetch()
                if self._superseded(generation, entry):
                    # stop(), skip() or another play() ran while we were resolving
                    return
                entry.metadata = entry.source.metadata
                if not await self._start_stream(entry, stream, generation):
                    return
            except Exception as e:
                if self._superseded(generation, entry):
                    return
                logger.warning(f"Guild {self.guild_id}: failed to start {entry!r}: {e}")
                if not await self._handle_start_failure(entry, e):
                    return
                continue

            self._consecutive_errors = 0
            user_logger.info(f"Now playing: {entry.title}")
            await self._send(MESSAGES['now_playing'].format(
                title=sanitize_for_format(entry.title),
                length=format_duration(entry.metadata.length),
            ))
            return

    async def _handle_start_failure(self, entry: QueueEntry, error: Exception) -> bool:
        """Report a failed start and drop the entry. Returns False when playback should stop."""
        if self._consecutive_errors == 0:
            self._error_limit = max(len(self.queue), 1)
        self._consecutive_errors += 1

        await self._send(MESSAGES['playback_failed'].format(
            title=sanitize_for_format(entry.title), error=sanitize_for_format(str(error)),
        ))

        if self.queue.queue_loop_enabled:
            # Keep it in the rotation, it may work next time around
            self.queue.rotate()
        else:
            self.queue.purge_head()

        if self.queue.is_empty or self._consecutive_errors >= self._error_limit:
            if not self.queue.is_empty:
                await self._send(MESSAGES['playback_failed_all'])
            self._consecutive_errors = 0
            self._set_state(PlaybackState.IDLE)
            return False
        return True

    async def _wait_if_upcoming(self, entry: QueueEntry) -> bool:
        """
        Block until a scheduled broadcast starts.

        Returns:
            False if the wait was aborted by stop()/disconnect()
        """
        source = entry.source
        if not isinstance(source, YouTubeSource) or not source.available_after:
            return True

        await self._send(MESSAGES['waiting_for_live'].format(title=sanitize_for_format(entry.title)))
        self._live_abort = asyncio.Event()
        try:
            await source.wait_for_live(
                self._live_abort,
                lambda: logger.debug(f"Guild {self.guild_id}: still waiting for {entry.url}"),
            )
            return not self._live_abort.is_set()
        finally:
            self._live_abort = None

    async def _stop_voice_client(self):
        vc = self.voice.voice_client
        state = self.voice.get_voice_state_safe(vc)
        if not state or not any(state):
            return
        # Suppress the callback so stopping doesn't advance the queue
        with suppress_callbacks(self):
            vc.stop()
            waited = 0.0
            while waited < VOICE_CONNECTION_MAX_WAIT:
                await asyncio.sleep(VOICE_CONNECTION_CHECK_INTERVAL)
                waited += VOICE_CONNECTION_CHECK_INTERVAL
                state = self.voice.get_voice_state_safe(vc)
                if not state or not any(state):
                    break

    def _superseded(self, generation: int, entry: QueueEntry) -> bool:
        """True once this play loop no longer owns the queue head."""
        return (
            generation != self._play_generation
            or self.queue.current is not entry
            or self.state != PlaybackState.CONNECTING
        )

    async def _start_stream(self, entry: QueueEntry, stream, generation: int) -> bool:
        """Hand the stream to the voice client. False if superseded while settling."""
        await self._stop_voice_client()
        await asyncio.sleep(VOICE_SETTLE_DELAY)
        if self._superseded(generation, entry):
            return False

        # Create a playback session token so stale callbacks can be ignored safely
        session = PlaybackSession(entry_id=entry.entry_id)
        self._playback_session = session
        loop = asyncio.get_running_loop()

        audio_source = make_stream_source(
            stream.url, stream.headers, self.volume, self.effects.enabled()
        )

        def after_track(error):
            """
            Callback fired when the stream ends.

            Runs in FFmpeg's audio thread: mutate state only through the loop.
            """
            if error:
                logger.error(f"Guild {self.guild_id} playback error: {error}")
            if self._suppress_callback or session.cancelled or self._playback_session is not session:
                logger.debug(f"Guild {self.guild_id}: Ignoring callback from superseded playback session")
                return
            asyncio.run_coroutine_threadsafe(self.on_track_end(session), loop)

        self.voice.voice_client.play(audio_source, after=after_track)
        self._audio_source = audio_source
        self._set_state(PlaybackState.PLAYING)
        return True

    # =========================================================================
    # Advance
    # =========================================================================

    async def on_track_end(self, session: Optional[PlaybackSession] = None):
        """Advance the queue after a track finished on its own."""
        if session is not None and (session.cancelled or self._playback_session is not session):
            return

        self.cancel_active_session()
        self._audio_source = None
        finished = self.queue.current

        try:
            if finished and self.add_related() and len(self.queue) <= 1 and not self.queue.loop_enabled:
                await self._queue_related(finished)
        except Exception:
            logger.exception(f"Guild {self.guild_id}: failed to queue a related track")

        self.queue.next()
        self._set_state(PlaybackState.IDLE)

        if self.queue.is_empty:
            await self._send(MESSAGES['queue_finished'])
            return
        await self.play()

    async def _queue_related(self, finished: QueueEntry):
        related = getattr(finished.source, 'related_videos', None) or []
        candidates = [item for item in related if item.get('url') != finished.url]
        if not candidates:
            return
        pick = random.choice(candidates)
        me = self.bot.user
        submitter = Submitter(str(me.id), me.display_name) if me else Submitter("0")
        entry = await self.queue.add_queue_only(pick['url'], submitter, got_data=pick)
        logger.info(f"Guild {self.guild_id}: queued related track {entry.title}")

    # =========================================================================
    # Controls
    # =========================================================================

    def pause(self) -> bool:
        vc = self.voice.voice_client
        if self.state != PlaybackState.PLAYING or not vc:
            return False
        vc.pause()
        self._set_state(PlaybackState.PAUSED)
        return True

    def resume(self) -> bool:
        vc = self.voice.voice_client
        if self.state != PlaybackState.PAUSED or not vc:
            return False
        vc.resume()
        self._set_state(PlaybackState.PLAYING)
        return True

    async def stop(self):
        """Stop playback and keep the queue (head included)."""
        self._play_generation += 1
        self._abort_live_wait()
        self.cancel_active_session()
        await self._stop_voice_client()
        self._audio_source = None
        self._set_state(PlaybackState.IDLE)

    async def skip(self) -> Optional[QueueEntry]:
        """Drop the head (even with track loop on) and play the next entry."""
        if not self.is_active:
            return None
        skipped = self.queue.current
        await self.stop()
        if self.queue.queue_loop_enabled:
            self.queue.rotate()
        else:
            self.queue.purge_head()
        if not self.queue.is_empty:
            await self.play()
        return skipped

    async def disconnect(self):
        """Tear down the voice connection and force IDLE, whatever state we were in."""
        try:
            await self.stop()
        except Exception:
            logger.exception(f"Guild {self.guild_id}: stop failed during disconnect")
        finally:
            await self.voice.disconnect()
            self._audio_source = None
            self._set_state(PlaybackState.IDLE)

    def set_volume(self, volume: int):
        """
        Set volume in percent (0-200). Applies to the running stream immediately.

        Raises:
            ValueError: volume out of range
        """
        volume = int(volume)
        if not 0 <= volume <= 200:
            raise ValueError(f"volume must be between 0 and 200, got {volume}")
        self.volume = volume
        if self._audio_source is not None and hasattr(self._audio_source, 'volume'):
            self._audio_source.volume = volume / 100
        self._status_changed()

    def toggle_effect(self, name: str) -> bool:
        """Toggle an effect. Takes effect from the next stream."""
        value = self.effects.toggle(name)
        self._status_changed()
        return value
