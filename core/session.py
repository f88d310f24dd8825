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
Guild Session

Per-guild composition of queue, voice connection and playback controller.

Architecture:
- QueueManager: ordered entries, loop flags, import/export
- VoiceManager: the voice connection
- PlaybackController: play/advance cycle, volume, effects

The session serializes connection changes behind a per-guild lock and owns
the registry of cancellation tokens for running bulk tasks.
"""

import asyncio
import logging
import re
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)
user_logger = logging.getLogger('cadence')

# Import from config
from config import COMMAND_PREFIX, DEFAULT_VOLUME, MAX_QUEUE_LENGTH, MESSAGES
from core.cancellation import CancellationToken
from core.playback import PlaybackController
from core.queue import QueueManager
from core.resolver import is_available_raw_audio_url
from core.strategies import extract_playlist, is_playlist_url, is_youtube_url, playlist_entry_to_export
from core.track import SourceType, Submitter
from systems.voice_manager import VoiceManager, VoicePermissionError
from utils.context_managers import bound_cancellation
from utils.discord_helpers import (
    can_connect_to_channel,
    can_move_members,
    format_guild_log,
    safe_delete_message,
    safe_edit,
    safe_reply,
    safe_send,
    sanitize_for_format,
)

_PREFIX_TAG = re.compile(r'^\[(?P<prefix>[^\[\]\s]{1,5})\]')
_DISCORD_MESSAGE_LINK = re.compile(
    r'^https?://(?:www\.|canary\.|ptb\.)?discord(?:app)?\.com/channels/(\d+)/(\d+)/(\d+)$'
)


def prefix_from_nick(nick: Optional[str]) -> str:
    """Prefix from a "[x]" tag at the start of a nickname, the default prefix otherwise."""
    match = _PREFIX_TAG.match(nick or "")
    return match.group('prefix') if match else COMMAND_PREFIX


class GuildSession:
    """
    Everything the bot keeps for one guild.

    Attributes:
        guild_id: Discord guild ID
        prefix: Command prefix (may be overridden by the bot's nickname)
        bound_text_channel: Channel ID status messages go to
        add_related: Auto-queue a related track when the queue runs out
        cancellations: Tokens of bulk tasks that are still running
        queue / voice / player: Components
    """

    def __init__(self, guild_id: int, bot, bound_channel_id: int = 0,
                 on_status_change: Optional[Callable[[int], None]] = None,
                 on_queue_change: Optional[Callable[[int], None]] = None):
        self.guild_id = guild_id
        self.bot = bot
        self.prefix = COMMAND_PREFIX
        self.bound_text_channel = bound_channel_id
        self.add_related = False
        self.cancellations: List[CancellationToken] = []
        self.on_status_change = on_status_change
        self.on_queue_change = on_queue_change

        # Guards the connect decision only
        self._connection_lock = asyncio.Lock()
        self._restore_task: Optional[asyncio.Task] = None

        self.voice = VoiceManager(guild_id)
        self.queue = QueueManager(
            guild_id,
            on_change=self._queue_changed,
            cancellation_scope=lambda: bound_cancellation(self),
        )
        self.player = PlaybackController(
            guild_id, bot, self.queue, self.voice,
            get_text_channel=self.get_text_channel,
            add_related=lambda: self.add_related,
            on_status_change=self._status_changed,
            volume=_session_defaults["volume"],
        )
        self.queue.head_active = lambda: self.player.is_active

    # =========================================================================
    # Change notification
    # =========================================================================

    def _status_changed(self):
        if self.on_status_change:
            self.on_status_change(self.guild_id)

    def _queue_changed(self):
        if self.on_queue_change:
            self.on_queue_change(self.guild_id)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def connection(self):
        return self.voice.voice_client

    @property
    def connecting_voice_channel(self):
        return self.voice.connecting_channel

    @property
    def equally_playback(self) -> bool:
        return self.queue.equally_playback

    @equally_playback.setter
    def equally_playback(self, value: bool):
        self.queue.equally_playback = bool(value)
        self._status_changed()

    def toggle_loop(self) -> bool:
        self.queue.loop_enabled = not self.queue.loop_enabled
        self._status_changed()
        return self.queue.loop_enabled

    def toggle_queue_loop(self) -> bool:
        self.queue.queue_loop_enabled = not self.queue.queue_loop_enabled
        self._status_changed()
        return self.queue.queue_loop_enabled

    def toggle_related(self) -> bool:
        self.add_related = not self.add_related
        self._status_changed()
        return self.add_related

    def get_text_channel(self):
        if not self.bound_text_channel:
            return None
        return self.bot.get_channel(int(self.bound_text_channel))

    def update_bound_channel(self, ctx):
        """Send future status messages to the channel the last command came from."""
        channel_id = ctx.channel.id
        if self.bound_text_channel != channel_id:
            self.bound_text_channel = channel_id
            self._status_changed()

    def update_prefix(self, nick: Optional[str]) -> str:
        """
        Pick the prefix up from a "[x]" tag at the start of the bot's nickname.

        Example: "[!] Cadence" -> "!". Without a tag the default prefix applies.
        """
        prefix = prefix_from_nick(nick)
        if prefix != self.prefix:
            logger.info(f"Guild {self.guild_id}: prefix changed to {prefix!r}")
            self.prefix = prefix
        return self.prefix

    # =========================================================================
    # Cancellation registry
    # =========================================================================

    def bind_cancellation(self, token: CancellationToken) -> CancellationToken:
        if not any(t is token for t in self.cancellations):
            self.cancellations.append(token)
        return token

    def unbind_cancellation(self, token: CancellationToken) -> bool:
        for index, bound in enumerate(self.cancellations):
            if bound is token:
                del self.cancellations[index]
                return True
        return False

    def cancel_all(self) -> bool:
        """Cancel every bound token. True if at least one was not cancelled yet."""
        results = [token.cancel() for token in list(self.cancellations)]
        return any(results)

    # =========================================================================
    # Voice connection
    # =========================================================================

    async def join_voice_channel_only(self, channel_id: Union[int, str]):
        """
        Connect to a voice channel without locking or messaging.

        Raises:
            ValueError: channel not found
            VoicePermissionError, asyncio.TimeoutError, disnake.ClientException
        """
        channel = self.bot.get_channel(int(channel_id))
        if channel is None:
            raise ValueError(f"voice channel {channel_id} not found")
        await self.voice.connect(channel)
        self._status_changed()
        logger.info(f"Guild {self.guild_id}: connected to {channel_id}")

    async def join_voice_channel(self, ctx, reply: bool = False, reply_on_fail: bool = False) -> bool:
        """
        Make sure the bot is in the command author's voice channel.

        Decision table (under the per-guild lock):
        - already in the author's channel: success, nothing to do
        - connected elsewhere and the author can't move members: refuse
        - otherwise: connect (or move)

        Returns:
            True if the bot ends up in the author's channel
        """
        async with self._connection_lock:
            send = (lambda text: safe_reply(ctx.message, text)) if reply else (lambda text: safe_send(ctx.channel, text))
            send_fail = (
                (lambda text: safe_reply(ctx.message, text)) if reply or reply_on_fail else send
            )

            voice_state = getattr(ctx.author, 'voice', None)
            target = voice_state.channel if voice_state else None
            if target is None:
                await send_fail(MESSAGES['issuer_no_voice_channel'])
                return False

            if self.voice.is_in_channel(target):
                return True

            if self.voice.is_connected and not can_move_members(ctx.author):
                await send_fail(MESSAGES['already_joined'])
                return False

            connecting_message = await send(MESSAGES['connecting'])
            if not can_connect_to_channel(target):
                await safe_edit(connecting_message, MESSAGES['unable_to_join_permission'])
                return False

            try:
                await self.join_voice_channel_only(target.id)
            except VoicePermissionError:
                await safe_edit(connecting_message, MESSAGES['unable_to_join_permission'])
                return False
            except Exception as e:
                logger.exception(f"Guild {self.guild_id}: failed to connect to {target.id}")
                failed = MESSAGES['failed_to_connect'].format(error=sanitize_for_format(str(e) or type(e).__name__))
                if not reply and reply_on_fail:
                    await safe_delete_message(connecting_message)
                    await safe_reply(ctx.message, failed)
                else:
                    await safe_edit(connecting_message, failed)
                # Don't leave a half-open connection behind
                await self.player.disconnect()
                return False

            await safe_edit(connecting_message, MESSAGES['connected'].format(
                channel=sanitize_for_format(target.name),
            ))
            user_logger.info(f"{format_guild_log(self.guild_id, self.bot)}: joined {target.name}")
            return True

    # =========================================================================
    # Adding tracks
    # =========================================================================

    async def play_from_url(self, ctx, arg: Union[str, List[str]], first: bool = True,
                            cancellable: bool = False):
        """
        Queue whatever ``arg`` points at and start playback if idle.

        Routing:
        - list of fragments: the first url is played, the rest appended
        - Discord message link: its audio attachment
        - direct audio file url
        - YouTube playlist url: bulk add with a cancellation token
        - anything else: a single YouTube video
        """
        submitter = Submitter.from_member(ctx.author)

        if isinstance(arg, (list, tuple)):
            urls = [
                url for fragment in arg for url in str(fragment).split()
                if url.startswith("http")
            ]
            if urls:
                await self.play_from_url(ctx, urls[0], first=first, cancellable=False)
                for url in urls[1:]:
                    await self.queue.add_queue(url, submitter)
            return

        arg = arg.strip().strip('<>')
        link = _DISCORD_MESSAGE_LINK.match(arg)

        if link:
            await self._play_from_message_link(ctx, link, submitter, first)
        elif is_available_raw_audio_url(arg):
            entry = await self.queue.add_queue(
                arg, submitter, first=first, source_type=SourceType.CUSTOM,
                message=await safe_reply(ctx.message, MESSAGES['please_wait']),
            )
            if entry:
                await self.player.play()
        elif is_playlist_url(arg):
            await self._play_playlist(ctx, arg, submitter)
            await self.player.play()
        elif is_youtube_url(arg):
            entry = await self.queue.add_queue(
                arg, submitter, first=first,
                message=await safe_reply(ctx.message, MESSAGES['please_wait']),
                cancellable=cancellable,
            )
            if entry:
                await self.player.play()
        else:
            await safe_reply(ctx.message, MESSAGES['invalid_url'])

    async def _play_from_message_link(self, ctx, link, submitter: Submitter, first: bool):
        status = await safe_reply(ctx.message, MESSAGES['import_loading'])
        try:
            channel = self.bot.get_channel(int(link.group(2)))
            if channel is None or getattr(channel.guild, 'id', None) != self.guild_id:
                raise ValueError("channel is not in this guild")
            message = await channel.fetch_message(int(link.group(3)))
            attachment = next(
                (a for a in message.attachments if is_available_raw_audio_url(a.url)), None
            )
            if attachment is None:
                raise ValueError("message has no audio attachment")
        except Exception as e:
            logger.warning(f"Guild {self.guild_id}: cannot play from message link: {e}")
            await safe_edit(status, MESSAGES['failed_to_add'])
            return

        entry = await self.queue.add_queue(
            attachment.url, submitter, first=first, source_type=SourceType.CUSTOM, message=status,
        )
        if entry:
            await self.player.play()

    async def _play_playlist(self, ctx, url: str, submitter: Submitter):
        status = await safe_reply(ctx.message, MESSAGES['processing_playlist_before'])
        with bound_cancellation(self) as cancellation:
            try:
                playlist = await extract_playlist(url, MAX_QUEUE_LENGTH - len(self.queue))
                count = await self.queue.process_playlist(
                    status, cancellation, False, SourceType.YOUTUBE,
                    playlist['entries'], playlist['title'], playlist['count'],
                    playlist_entry_to_export, added_by=submitter,
                )
            except Exception:
                logger.exception(f"Guild {self.guild_id}: failed to process playlist {url}")
                await safe_edit(status, MESSAGES['failed_to_add'])
                return

            if cancellation.cancelled:
                await safe_edit(status, MESSAGES['canceled'])
                return

            text = MESSAGES['processing_playlist_completed'].format(
                count=count, name=sanitize_for_format(playlist['title']),
            )
            if self.queue.last_skipped:
                text += MESSAGES['processing_playlist_skipped'].format(skipped=self.queue.last_skipped)
            await safe_edit(status, text)
            user_logger.info(f"{format_guild_log(self.guild_id, self.bot)}: queued {count} tracks from a playlist")

    # =========================================================================
    # Import / export
    # =========================================================================

    def export_status(self) -> Dict[str, Any]:
        playing = self.player.is_playing and not self.player.is_paused
        channel_id = self.voice.channel_id
        return {
            "voiceChannelId": str(channel_id) if playing and channel_id else "0",
            "boundChannelId": str(self.bound_text_channel or 0),
            "loopEnabled": self.queue.loop_enabled,
            "queueLoopEnabled": self.queue.queue_loop_enabled,
            "addRelatedSongs": self.add_related,
            "equallyPlayback": self.queue.equally_playback,
            "volume": self.player.volume,
        }

    def import_status(self, statuses: Dict[str, Any]):
        """
        Apply a status export. A non-"0" voiceChannelId rejoins that channel and
        resumes playback in the background.
        """
        self.queue.loop_enabled = bool(statuses.get("loopEnabled", False))
        self.queue.queue_loop_enabled = bool(statuses.get("queueLoopEnabled", False))
        self.add_related = bool(statuses.get("addRelatedSongs", False))
        self.queue.equally_playback = bool(statuses.get("equallyPlayback", False))
        bound = statuses.get("boundChannelId")
        if bound and bound != "0":
            self.bound_text_channel = int(bound)
        try:
            self.player.set_volume(statuses.get("volume", _session_defaults["volume"]))
        except (TypeError, ValueError) as e:
            logger.warning(f"Guild {self.guild_id}: ignoring stored volume: {e}")

        voice_channel_id = str(statuses.get("voiceChannelId", "0"))
        if voice_channel_id != "0":
            self._restore_task = asyncio.create_task(self._resume_voice(voice_channel_id))

    async def _resume_voice(self, channel_id: str):
        try:
            await self.join_voice_channel_only(channel_id)
            await self.player.play()
        except Exception:
            logger.exception(f"Guild {self.guild_id}: could not resume playback in {channel_id}")

    def export_queue(self) -> Dict[str, Any]:
        return self.queue.export_queue()

    async def import_queue(self, data: Any, cancellation: Optional[CancellationToken] = None,
                           message=None) -> int:
        return await self.queue.import_queue(data, cancellation=cancellation, message=message)

    def __repr__(self) -> str:
        return f"GuildSession(guild={self.guild_id}, queue={len(self.queue)}, state={self.player.state.name})"


# =============================================================================
# Session Management (Global)
# =============================================================================

# Global session storage
sessions: Dict[int, GuildSession] = {}
sessions_lock = asyncio.Lock()

# Dirty-mark hooks installed by the backup synchronizer
_change_listeners: Dict[str, Optional[Callable[[int], None]]] = {"status": None, "queue": None}

# Defaults applied to sessions created from now on
_session_defaults: Dict[str, Any] = {"volume": DEFAULT_VOLUME}


def set_default_volume(volume: int):
    """Volume (0-200) new sessions start with."""
    volume = int(volume)
    if not 0 <= volume <= 200:
        raise ValueError(f"volume must be between 0 and 200, got {volume}")
    _session_defaults["volume"] = volume


def set_change_listeners(on_status_change: Optional[Callable[[int], None]],
                         on_queue_change: Optional[Callable[[int], None]]):
    """Install dirty-mark callbacks on existing and future sessions."""
    _change_listeners["status"] = on_status_change
    _change_listeners["queue"] = on_queue_change
    for session in sessions.values():
        session.on_status_change = on_status_change
        session.on_queue_change = on_queue_change


async def get_session(guild_id: int, bot, bound_channel_id: int = 0) -> GuildSession:
    """
    Get or create the session for a guild (thread-safe).

    Args:
        guild_id: Discord guild ID
        bot: Bot instance
        bound_channel_id: Text channel for status messages of a new session

    Returns:
        GuildSession instance for the guild
    """
    # Fast path - no lock
    if guild_id in sessions:
        return sessions[guild_id]

    # Slow path - need lock for creation
    async with sessions_lock:
        # Double-check
        if guild_id in sessions:
            return sessions[guild_id]

        sessions[guild_id] = GuildSession(
            guild_id, bot, bound_channel_id,
            on_status_change=_change_listeners["status"],
            on_queue_change=_change_listeners["queue"],
        )
        logger.debug(f"Created session for {format_guild_log(guild_id, bot)}")

    return sessions[guild_id]


async def remove_session(guild_id: int) -> Optional[GuildSession]:
    """Drop a guild's session, cancelling its tasks and leaving voice."""
    session = sessions.pop(guild_id, None)
    if session is None:
        return None
    session.cancel_all()
    await session.player.disconnect()
    logger.debug(f"Removed session for guild {guild_id}")
    return session
