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
Discord API Helper Functions

Provides safe wrappers around common Discord API operations with error handling.
All functions gracefully handle None values and Discord API errors.

Utility Functions:
- format_guild_log() / format_user_log(): Human-readable names for log lines
- sanitize_for_format(): Escape braces in user strings to prevent .format() crashes
- safe_send() / safe_reply() / safe_edit() / safe_delete_message(): Messaging
- safe_disconnect(): Gracefully disconnect from voice with error handling
- can_connect_to_channel() / can_move_members(): Permission probes
- make_stream_source(): FFmpeg source for a resolved remote stream
"""

import disnake
import logging
import shlex
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)

# Import config
from config import EFFECT_FILTERS, FFMPEG_BEFORE_OPTIONS, FFMPEG_OPTIONS


# =============================================================================
# LOGGING FORMATTERS
# =============================================================================

def format_guild_log(guild_or_id, bot=None) -> str:
    """
    Format guild for logging with human-readable name.

    Shows guild name in normal mode, adds ID in DEBUG mode for technical details.

    Args:
        guild_or_id: Guild object, guild ID (int), or None (for DMs)
        bot: Bot instance (optional if guild object provided)

    Returns:
        - Normal mode: "ServerName" or "DM" or "Guild #123"
        - DEBUG mode: "ServerName (#123)" or "DM" or "Guild #123"
    """
    if guild_or_id is None:
        return "DM"

    if isinstance(guild_or_id, int):
        guild = bot.get_guild(guild_or_id) if bot else None
        guild_id = guild_or_id
    else:
        guild = guild_or_id
        guild_id = guild.id if guild else None

    if guild and hasattr(guild, 'name'):
        if logger.isEnabledFor(logging.DEBUG):
            return f"{guild.name} (#{guild_id})"
        return guild.name

    # Fallback for unknown guilds (bot kicked, etc.)
    return f"Guild #{guild_id}" if guild_id else "Unknown"


def format_user_log(user_or_id, bot=None) -> str:
    """Format user for logging, same rules as format_guild_log()."""
    if user_or_id is None:
        return "Unknown"

    if isinstance(user_or_id, int):
        user = bot.get_user(user_or_id) if bot else None
        user_id = user_or_id
    else:
        user = user_or_id
        user_id = user.id if user else None

    if user and hasattr(user, 'name'):
        if logger.isEnabledFor(logging.DEBUG):
            return f"{user.name} (#{user_id})"
        return user.name

    return f"User #{user_id}" if user_id else "Unknown"


def sanitize_for_format(text: str) -> str:
    """
    Escape braces in user-controlled strings to prevent .format() crashes.

    Example:
        >>> sanitize_for_format("Song {test}")
        'Song {{test}}'
    """
    return text.replace('{', '{{').replace('}', '}}')


# =============================================================================
# MESSAGING
# =============================================================================

async def safe_send(channel: Optional[disnake.abc.Messageable], content: str) -> Optional[disnake.Message]:
    """
    Safely send message to channel with error handling and mention suppression.

    Returns:
        Message object if sent successfully, None otherwise
    """
    if not channel:
        return None
    try:
        # Suppress all mentions to prevent mass-ping abuse from user-controlled content
        msg = await channel.send(content, allowed_mentions=disnake.AllowedMentions.none())
    except (disnake.NotFound, disnake.Forbidden, disnake.HTTPException) as e:
        logger.debug("Could not send message: %s", e)
        return None
    else:
        return msg


async def safe_reply(message: Optional[disnake.Message], content: str) -> Optional[disnake.Message]:
    """Reply to a message; falls back to a plain send if the reference is gone."""
    if not message:
        return None
    try:
        return await message.reply(content, allowed_mentions=disnake.AllowedMentions.none())
    except disnake.HTTPException as e:
        logger.debug("Could not reply, sending instead: %s", e)
        return await safe_send(message.channel, content)


async def safe_edit(message: Optional[disnake.Message], content: str) -> bool:
    """
    Safely edit a status message.

    Returns:
        bool: True if edited, False if the message is None or the edit failed
    """
    if not message:
        return False
    try:
        await message.edit(content=content, allowed_mentions=disnake.AllowedMentions.none())
    except (disnake.NotFound, disnake.Forbidden, disnake.HTTPException) as e:
        logger.debug("Could not edit message: %s", e)
        return False
    else:
        return True


async def safe_delete_message(message: Optional[disnake.Message]) -> bool:
    """
    Safely delete a message with error handling.

    Returns:
        bool: True if deleted, already deleted (NotFound), or None (no-op)
              False only on permission/API errors
    """
    if not message:
        return True  # No-op success for idempotency
    try:
        await message.delete()
    except disnake.NotFound:
        return True  # Already deleted = success (idempotent)
    except (disnake.Forbidden, disnake.HTTPException) as e:
        logger.debug("Could not delete message: %s", e)
        return False
    else:
        return True


# =============================================================================
# VOICE
# =============================================================================

async def safe_disconnect(voice_client: Optional[disnake.VoiceClient], force: bool = True) -> bool:
    """
    Safely disconnect from voice channel with error handling.

    Returns:
        bool: True if disconnected successfully or None (idempotent no-op), False on error

    Note:
        Logs errors at debug level since disconnect failures are non-critical.
    """
    if not voice_client:
        return True  # No-op success for idempotency
    try:
        await voice_client.disconnect(force=force)
        return True
    except (disnake.ClientException, disnake.HTTPException) as e:
        logger.debug("Disconnect failed (non-critical): %s", e)
        return False
    except Exception as e:
        # Catch aiohttp transport errors during shutdown (e.g., ClientConnectionResetError)
        logger.debug("Disconnect failed with transport error (non-critical): %s", e)
        return False


async def safe_voice_state_change(guild: disnake.Guild, channel: disnake.VoiceChannel, self_deaf: bool = True) -> bool:
    """Safely change bot's voice state (self-deafen) with error handling."""
    try:
        await guild.change_voice_state(channel=channel, self_deaf=self_deaf)
    except (disnake.ClientException, disnake.HTTPException) as e:
        logger.debug("Voice state change failed (non-critical): %s", e)
        return False
    else:
        return True


def can_connect_to_channel(channel: Optional[disnake.VoiceChannel]) -> bool:
    """
    Check if bot has permission to connect to a voice channel.

    Note:
        Requires connect+speak permissions. Falls back to False if guild.me is None.
    """
    if not channel:
        return False
    if not channel.guild.me:
        return False  # Rare startup race - guild not fully ready
    perms = channel.permissions_for(channel.guild.me)
    return bool(perms and perms.connect and perms.speak)


def can_move_members(member: Optional[disnake.Member]) -> bool:
    """Check if a member may pull the bot out of another voice channel."""
    if not member or not hasattr(member, 'guild_permissions'):
        return False
    return bool(member.guild_permissions.move_members)


# =============================================================================
# AUDIO
# =============================================================================

def build_filter_chain(effects: Iterable[str]) -> str:
    """Join the FFmpeg filters for every enabled effect name."""
    return ','.join(EFFECT_FILTERS[name] for name in effects if name in EFFECT_FILTERS)


def make_stream_source(url: str, headers: Optional[Dict[str, str]] = None,
                       volume: int = 100, effects: Iterable[str] = ()):
    """
    Create audio source for a remote stream.

    Creates a fresh source for each playback - audio sources are single-use
    and cannot be reused after consumption.

    Args:
        url: Direct stream or HLS manifest url
        headers: Extra request headers FFmpeg must send (e.g. a user agent)
        volume: Percent, 0-200
        effects: Names of enabled effects (keys of EFFECT_FILTERS)

    Returns:
        PCMVolumeTransformer wrapping an FFmpegPCMAudio
    """
    before_options = FFMPEG_BEFORE_OPTIONS
    if headers:
        header_block = ''.join(f'{key}: {value}\r\n' for key, value in headers.items())
        before_options += f' -headers {shlex.quote(header_block)}'

    options = FFMPEG_OPTIONS
    filters = build_filter_chain(effects)
    if filters:
        options += f' -af {shlex.quote(filters)}'

    logger.debug(f"Creating stream source (filters: {filters or 'none'})")
    source = disnake.FFmpegPCMAudio(url, before_options=before_options, options=options)
    return disnake.PCMVolumeTransformer(source, volume=volume / 100)
