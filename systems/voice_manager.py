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
Voice Management System

Owns the guild's voice connection: connect, move, disconnect, and the
"destroyed" notification when Discord drops the bot from voice.
Provides utilities for safely checking voice client state.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional, Tuple
import disnake

logger = logging.getLogger(__name__)  # For debug/error logs
user_logger = logging.getLogger('cadence')  # For user-facing messages

# Import from config
from config import VOICE_CONNECT_TIMEOUT
from utils.discord_helpers import can_connect_to_channel, safe_disconnect, safe_voice_state_change


class PlaybackState(Enum):
    """
    Current state of voice playback.

    IDLE: Not playing anything (may or may not be connected to voice)
    CONNECTING: Resolving or waiting for a track to start
    PLAYING: Actively playing a track
    PAUSED: Connected with a track loaded, but playback is paused
    """
    IDLE = 0
    CONNECTING = 1
    PLAYING = 2
    PAUSED = 3


class VoicePermissionError(Exception):
    """The bot may not connect to (or speak in) the requested channel."""


class VoiceManager:
    """
    Manages the voice connection for one guild.

    Invariant: at most one voice client is held at a time.
    """

    def __init__(self, guild_id: int):
        self.guild_id = guild_id
        self.voice_client: Optional[disnake.VoiceClient] = None
        self.connecting_channel: Optional[disnake.abc.Connectable] = None

    # =========================================================================
    # Voice State Utilities
    # =========================================================================

    @staticmethod
    def get_voice_state_safe(voice_client: Optional[disnake.VoiceClient]) -> Optional[Tuple[bool, bool]]:
        """
        Safely get voice state.

        Returns:
            Tuple of (is_playing, is_paused) or None if not connected or error
        """
        if not voice_client or not voice_client.is_connected():
            return None

        try:
            return (voice_client.is_playing(), voice_client.is_paused())
        except (disnake.ClientException, RuntimeError) as e:
            logger.debug(f"Voice state check failed: {e}")
            return None

    @property
    def is_connected(self) -> bool:
        return bool(self.voice_client and self.voice_client.is_connected())

    @property
    def channel_id(self) -> Optional[int]:
        if self.is_connected and self.voice_client.channel:
            return self.voice_client.channel.id
        return None

    def is_in_channel(self, channel) -> bool:
        return channel is not None and self.channel_id == channel.id

    # =========================================================================
    # Connection Lifecycle
    # =========================================================================

    async def connect(self, channel) -> disnake.VoiceClient:
        """
        Connect to ``channel``, moving the existing connection if there is one.

        Raises:
            VoicePermissionError: missing connect/speak permission
            asyncio.TimeoutError, disnake.ClientException: transport failures
        """
        if not can_connect_to_channel(channel):
            raise VoicePermissionError(f"no permission to join {getattr(channel, 'name', channel)}")

        self.connecting_channel = channel
        if self.is_in_channel(channel):
            return self.voice_client

        if self.is_connected:
            logger.debug(f"Guild {self.guild_id}: moving to {channel.name}")
            await asyncio.wait_for(self.voice_client.move_to(channel), timeout=VOICE_CONNECT_TIMEOUT)
        else:
            logger.debug(f"Guild {self.guild_id}: connecting to {channel.name}")
            self.voice_client = await channel.connect(timeout=VOICE_CONNECT_TIMEOUT)

        # Self-deafen (bot doesn't need to hear users)
        await safe_voice_state_change(channel.guild, channel, self_deaf=True)
        user_logger.info(f"Connected to {channel.name}")
        return self.voice_client

    async def disconnect(self) -> bool:
        """Tear the connection down. Safe to call when not connected."""
        voice_client, self.voice_client = self.voice_client, None
        self.connecting_channel = None
        if voice_client:
            logger.debug(f"Guild {self.guild_id}: disconnecting")
        return await safe_disconnect(voice_client, force=True)

    def handle_destroyed(self):
        """Forget the connection after Discord dropped it (kick, channel delete, etc.)."""
        if self.voice_client:
            logger.info(f"Guild {self.guild_id}: voice connection destroyed")
        self.voice_client = None
        self.connecting_channel = None
