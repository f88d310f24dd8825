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
Prefix Commands

Thin command surface over GuildSession. Every command:
- resolves the guild's session with get_session()
- rebinds status messages to the channel the command came from
- delegates to the session / queue / playback controller

Queue positions shown to users are 1-based; position 1 is the playing track.
"""

import asyncio
import io
import json
import logging
import re
from typing import Optional

import aiohttp
import disnake
from disnake.ext import commands

logger = logging.getLogger(__name__)
user_logger = logging.getLogger('cadence')

# Import from our modules
from config import MESSAGES, QUEUE_FILE_EXTENSION, QUEUE_FORMAT_VERSION
from core.resolver import related_available
from core.session import get_session
from core.track import IncompatibleQueueVersion, format_duration
from utils.context_managers import bound_cancellation
from utils.discord_helpers import (
    format_guild_log,
    format_user_log,
    safe_edit,
    safe_reply,
    sanitize_for_format,
)

QUEUE_DISPLAY_COUNT = 10
EFFECT_NAMES = {
    'bass': 'bass_boost',
    'bassboost': 'bass_boost',
    'reverb': 'reverb',
    'loudness': 'loudness_equalization',
    'normalize': 'loudness_equalization',
}

_MESSAGE_LINK = re.compile(r'^https?://(?:www\.|canary\.|ptb\.)?discord(?:app)?\.com/channels/\d+/(\d+)/(\d+)$')


def _on_off(value: bool) -> str:
    return "ON" if value else "OFF"


async def _session_for(ctx, bot):
    """Session of the command's guild, bound to the command's channel."""
    session = await get_session(ctx.guild.id, bot, ctx.channel.id)
    session.update_bound_channel(ctx)
    return session


async def _ensure_connected(session, ctx) -> bool:
    if not session.voice.is_connected:
        await safe_reply(ctx.message, MESSAGES['error_not_connected'])
        return False
    return True


def _parse_position(raw: str, session) -> Optional[int]:
    """Turn a 1-based user position into a queue index, None if invalid."""
    try:
        index = int(raw) - 1
    except (TypeError, ValueError):
        return None
    if not 0 <= index < len(session.queue):
        return None
    return index


def ready_check(ready: asyncio.Event):
    """Global command check that holds commands until startup (backup restore) is done."""
    async def predicate(ctx) -> bool:
        if not ready.is_set():
            logger.debug(f"Holding {ctx.command} until startup completes")
            await ready.wait()
        return True
    return predicate


def setup(bot, ready: Optional[asyncio.Event] = None):
    """
    Register all commands with the bot.

    With ``ready``, every command waits for that event first so nothing
    creates a session while backups are still being restored.

    Command Structure:
    - Playback: join, play, playnext, pause, resume, skip, stop, leave
    - Modes: loop, queueloop, related, equal, effect, volume
    - Queue: queue, remove, move, clear, shuffle, cancel
    - Portability: export, import
    """

    if ready is not None:
        bot.check(ready_check(ready))

    # =========================================================================
    # PLAYBACK COMMANDS
    # =========================================================================

    @bot.command(name='join', aliases=['j', 'connect'])
    @commands.guild_only()
    async def join_command(ctx):
        """Join the author's voice channel."""
        session = await _session_for(ctx, bot)
        await session.join_voice_channel(ctx, reply=True)

    async def _play(ctx, args, first: bool):
        session = await _session_for(ctx, bot)

        if not args:
            # Without arguments: resume if paused, otherwise start the queue
            if session.player.resume():
                await safe_reply(ctx.message, MESSAGES['resumed'])
                return
            if session.queue.is_empty:
                await safe_reply(ctx.message, MESSAGES['queue_empty'])
                return
            if await session.join_voice_channel(ctx, reply=True):
                await session.player.play()
            return

        if not await session.join_voice_channel(ctx, reply_on_fail=True):
            return

        arg = args[0] if len(args) == 1 else list(args)
        await session.play_from_url(ctx, arg, first=first, cancellable=True)
        user_logger.info(f"{format_guild_log(ctx.guild.id, bot)}－{format_user_log(ctx.author, bot)} queued {len(args)} item(s)")

    @bot.command(name='play', aliases=['p'])
    @commands.guild_only()
    async def play_command(ctx, *args: str):
        """Queue urls at the end, or resume / start the queue without arguments."""
        await _play(ctx, args, first=False)

    @bot.command(name='playnext', aliases=['pn', 'pt'])
    @commands.guild_only()
    async def playnext_command(ctx, *args: str):
        """Queue urls right after the playing track."""
        await _play(ctx, args, first=True)

    @bot.command(name='pause')
    @commands.guild_only()
    async def pause_command(ctx):
        """Pause playback."""
        session = await _session_for(ctx, bot)
        if not await _ensure_connected(session, ctx):
            return
        if session.player.pause():
            await safe_reply(ctx.message, MESSAGES['paused'])
        else:
            await safe_reply(ctx.message, MESSAGES['error_not_playing'])

    @bot.command(name='resume', aliases=['unpause'])
    @commands.guild_only()
    async def resume_command(ctx):
        """Resume paused playback."""
        session = await _session_for(ctx, bot)
        if not await _ensure_connected(session, ctx):
            return
        if session.player.resume():
            await safe_reply(ctx.message, MESSAGES['resumed'])
        else:
            await safe_reply(ctx.message, MESSAGES['error_not_playing'])

    @bot.command(name='skip', aliases=['s', 'next'])
    @commands.guild_only()
    async def skip_command(ctx):
        """Skip the playing track."""
        session = await _session_for(ctx, bot)
        if not await _ensure_connected(session, ctx):
            return
        skipped = await session.player.skip()
        if skipped is None:
            await safe_reply(ctx.message, MESSAGES['error_not_playing'])
            return
        await safe_reply(ctx.message, MESSAGES['skipped'].format(title=sanitize_for_format(skipped.title)))

    @bot.command(name='stop')
    @commands.guild_only()
    async def stop_command(ctx):
        """Stop playback but stay connected and keep the queue."""
        session = await _session_for(ctx, bot)
        if not await _ensure_connected(session, ctx):
            return
        await session.player.stop()
        await safe_reply(ctx.message, MESSAGES['stopped'])

    @bot.command(name='leave', aliases=['disconnect', 'dc'])
    @commands.guild_only()
    async def leave_command(ctx):
        """Cancel running tasks, stop playback and leave voice."""
        session = await _session_for(ctx, bot)
        if not await _ensure_connected(session, ctx):
            return
        session.cancel_all()
        await session.player.disconnect()
        await safe_reply(ctx.message, MESSAGES['disconnected'])
        user_logger.info(f"{format_guild_log(ctx.guild.id, bot)}－{format_user_log(ctx.author, bot)} disconnected cadence")

    # =========================================================================
    # MODE COMMANDS
    # =========================================================================

    @bot.command(name='loop', aliases=['repeat'])
    @commands.guild_only()
    async def loop_command(ctx):
        """Toggle looping of the playing track."""
        session = await _session_for(ctx, bot)
        enabled = session.toggle_loop()
        await safe_reply(ctx.message, MESSAGES['loop_state'].format(state=_on_off(enabled)))

    @bot.command(name='queueloop', aliases=['qloop', 'loopqueue'])
    @commands.guild_only()
    async def queueloop_command(ctx):
        """Toggle looping of the whole queue."""
        session = await _session_for(ctx, bot)
        enabled = session.toggle_queue_loop()
        await safe_reply(ctx.message, MESSAGES['queue_loop_state'].format(state=_on_off(enabled)))

    @bot.command(name='related', aliases=['autoplay'])
    @commands.guild_only()
    async def related_command(ctx):
        """Toggle auto-queueing of a related track when the queue runs out."""
        session = await _session_for(ctx, bot)
        enabled = session.toggle_related()
        text = MESSAGES['related_state'].format(state=_on_off(enabled))
        if enabled and not related_available():
            text += MESSAGES['related_unavailable']
        await safe_reply(ctx.message, text)

    @bot.command(name='equal', aliases=['equallyplayback', 'fair'])
    @commands.guild_only()
    async def equal_command(ctx):
        """Toggle round-robin insertion between submitters."""
        session = await _session_for(ctx, bot)
        session.equally_playback = not session.equally_playback
        await safe_reply(ctx.message, MESSAGES['equal_state'].format(state=_on_off(session.equally_playback)))

    @bot.command(name='effect', aliases=['fx'])
    @commands.guild_only()
    async def effect_command(ctx, name: Optional[str] = None):
        """Toggle an audio effect. Applies from the next track."""
        session = await _session_for(ctx, bot)
        effect = EFFECT_NAMES.get((name or "").lower())
        if effect is None:
            await safe_reply(ctx.message, MESSAGES['error_unknown_effect'].format(
                effects=", ".join(f"`{n}`" for n in EFFECT_NAMES),
            ))
            return
        enabled = session.player.toggle_effect(effect)
        await safe_reply(ctx.message, MESSAGES['effect_state'].format(
            effect=effect.replace('_', ' ').capitalize(), state=_on_off(enabled),
        ))

    @bot.command(name='volume', aliases=['vol', 'v'])
    @commands.guild_only()
    async def volume_command(ctx, value: Optional[str] = None):
        """Show or set the volume (0-200)."""
        session = await _session_for(ctx, bot)
        if value is None:
            await safe_reply(ctx.message, MESSAGES['volume_set'].format(volume=session.player.volume))
            return
        try:
            session.player.set_volume(int(value))
        except ValueError:
            await safe_reply(ctx.message, MESSAGES['error_invalid_volume'])
            return
        await safe_reply(ctx.message, MESSAGES['volume_set'].format(volume=session.player.volume))

    # =========================================================================
    # QUEUE COMMANDS
    # =========================================================================

    @bot.command(name='queue', aliases=['q', 'list'])
    @commands.guild_only()
    async def queue_command(ctx):
        """Show the first entries of the queue."""
        session = await _session_for(ctx, bot)
        queue = session.queue
        if queue.is_empty:
            await safe_reply(ctx.message, MESSAGES['queue_empty'])
            return

        total = sum(e.metadata.length for e in queue if not e.metadata.is_live)
        lines = [MESSAGES['queue_header'].format(count=len(queue), length=format_duration(total))]
        for index, entry in enumerate(queue.entries[:QUEUE_DISPLAY_COUNT]):
            marker = "▶️ " if index == 0 and session.player.is_active else ""
            lines.append(MESSAGES['queue_line'].format(
                index=index + 1,
                marker=marker,
                title=sanitize_for_format(entry.title),
                length=format_duration(entry.metadata.length),
                added_by=sanitize_for_format(entry.added_by.display_name),
            ))
        if len(queue) > QUEUE_DISPLAY_COUNT:
            lines.append(MESSAGES['queue_more'].format(more=len(queue) - QUEUE_DISPLAY_COUNT))
        lines.append(MESSAGES['queue_flags'].format(
            loop=_on_off(queue.loop_enabled),
            queue_loop=_on_off(queue.queue_loop_enabled),
            related=_on_off(session.add_related),
            equal=_on_off(queue.equally_playback),
        ))
        await safe_reply(ctx.message, "\n".join(lines))

    @bot.command(name='remove', aliases=['rm', 'delete'])
    @commands.guild_only()
    async def remove_command(ctx, position: Optional[str] = None):
        """Remove the entry at a queue position."""
        session = await _session_for(ctx, bot)
        index = _parse_position(position, session)
        if index is None:
            await safe_reply(ctx.message, MESSAGES['error_invalid_number'])
            return
        try:
            entry = session.queue.remove(index)
        except IndexError:
            await safe_reply(ctx.message, MESSAGES['error_invalid_number'])
            return
        await safe_reply(ctx.message, MESSAGES['removed'].format(title=sanitize_for_format(entry.title)))

    @bot.command(name='move', aliases=['mv'])
    @commands.guild_only()
    async def move_command(ctx, source: Optional[str] = None, target: Optional[str] = None):
        """Move an entry to another queue position."""
        session = await _session_for(ctx, bot)
        from_index = _parse_position(source, session)
        to_index = _parse_position(target, session)
        if from_index is None or to_index is None:
            await safe_reply(ctx.message, MESSAGES['error_invalid_number'])
            return
        try:
            entry = session.queue.move(from_index, to_index)
        except IndexError:
            await safe_reply(ctx.message, MESSAGES['error_invalid_number'])
            return
        await safe_reply(ctx.message, MESSAGES['moved'].format(
            title=sanitize_for_format(entry.title), index=to_index + 1,
        ))

    @bot.command(name='clear', aliases=['cls'])
    @commands.guild_only()
    async def clear_command(ctx):
        """Drop every waiting entry (the playing track stays)."""
        session = await _session_for(ctx, bot)
        removed = session.queue.clear()
        await safe_reply(ctx.message, MESSAGES['queue_cleared'].format(count=removed))

    @bot.command(name='shuffle', aliases=['mix'])
    @commands.guild_only()
    async def shuffle_command(ctx):
        """Shuffle the waiting entries."""
        session = await _session_for(ctx, bot)
        if session.queue.is_empty:
            await safe_reply(ctx.message, MESSAGES['queue_empty'])
            return
        session.queue.shuffle()
        await safe_reply(ctx.message, MESSAGES['shuffled'])

    @bot.command(name='cancel', aliases=['abort'])
    @commands.guild_only()
    async def cancel_command(ctx):
        """Cancel running playlist and import tasks."""
        session = await _session_for(ctx, bot)
        if session.cancel_all():
            await safe_reply(ctx.message, MESSAGES['cancel_sent'])
        else:
            await safe_reply(ctx.message, MESSAGES['nothing_to_cancel'])

    # =========================================================================
    # IMPORT / EXPORT
    # =========================================================================

    @bot.command(name='export')
    @commands.guild_only()
    async def export_command(ctx):
        """Attach the queue as a portable file."""
        session = await _session_for(ctx, bot)
        if session.queue.is_empty:
            await safe_reply(ctx.message, MESSAGES['queue_empty'])
            return
        payload = json.dumps(session.export_queue(), ensure_ascii=False).encode('utf-8')
        file = disnake.File(io.BytesIO(payload), filename=f"exported_queue{QUEUE_FILE_EXTENSION}")
        try:
            await ctx.message.reply(
                MESSAGES['export_done'].format(count=len(session.queue)), file=file,
            )
        except disnake.HTTPException as e:
            logger.warning(f"{format_guild_log(ctx.guild.id, bot)}: export upload failed: {e}")
            await safe_reply(ctx.message, MESSAGES['failed'])

    @bot.command(name='import')
    @commands.guild_only()
    async def import_command(ctx, url: Optional[str] = None):
        """Import a queue exported by this bot, from a message link."""
        session = await _session_for(ctx, bot)
        if not url:
            await safe_reply(ctx.message, MESSAGES['import_invalid_argument'])
            return
        link = _MESSAGE_LINK.match(url.strip('<>'))
        if not link:
            await safe_reply(ctx.message, MESSAGES['import_no_discord_link'])
            return

        status = await safe_reply(ctx.message, MESSAGES['import_loading'])
        try:
            channel = bot.get_channel(int(link.group(1))) or await bot.fetch_channel(int(link.group(1)))
            target = await channel.fetch_message(int(link.group(2)))
        except (disnake.HTTPException, AttributeError, ValueError) as e:
            logger.warning(f"{format_guild_log(ctx.guild.id, bot)}: cannot fetch import message: {e}")
            await safe_edit(status, MESSAGES['failed'])
            return

        if bot.user is None or target.author.id != bot.user.id:
            await safe_edit(status, MESSAGES['import_not_bot_message'])
            return
        attachment = next(
            (a for a in target.attachments if a.filename.endswith(QUEUE_FILE_EXTENSION)), None
        )
        if attachment is None:
            await safe_edit(status, MESSAGES['import_content_missing'])
            return

        with bound_cancellation(session) as cancellation:
            try:
                async with aiohttp.ClientSession() as http:
                    async with http.get(attachment.url) as resp:
                        resp.raise_for_status()
                        raw = json.loads(await resp.text())
                count = await session.import_queue(raw, cancellation=cancellation, message=status)
            except IncompatibleQueueVersion as e:
                await safe_edit(status, MESSAGES['import_version_incompatible'].format(
                    current=QUEUE_FORMAT_VERSION, file=e.found,
                ))
                return
            except (aiohttp.ClientError, ValueError) as e:
                logger.warning(f"{format_guild_log(ctx.guild.id, bot)}: import failed: {e}")
                await safe_edit(status, MESSAGES['failed'])
                return

            if cancellation.cancelled:
                await safe_edit(status, MESSAGES['canceled'])
            else:
                await safe_edit(status, MESSAGES['song_processing_completed'].format(count=count))
        user_logger.info(f"{format_guild_log(ctx.guild.id, bot)}－{format_user_log(ctx.author, bot)} imported {count} tracks")
