"""Tests for the guild session (core/session.py)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import COMMAND_PREFIX, MESSAGES
from core import session as session_module
from core.session import GuildSession, get_session, prefix_from_nick, remove_session
from systems.voice_manager import PlaybackState, VoicePermissionError


class FakeVoice:
    """Voice boundary that records connects and can fail on demand."""

    def __init__(self, error: Exception | None = None, delay: float = 0.0):
        self.channel = None
        self.error = error
        self.delay = delay
        self.connect_calls = 0

    @property
    def is_connected(self) -> bool:
        return self.channel is not None

    @property
    def channel_id(self):
        return self.channel.id if self.channel else None

    def is_in_channel(self, channel) -> bool:
        return self.channel is not None and self.channel.id == channel.id

    async def connect(self, channel):
        self.connect_calls += 1
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.channel = channel


def _channel(channel_id: int) -> MagicMock:
    channel = MagicMock()
    channel.id = channel_id
    channel.name = f"voice-{channel_id}"
    return channel


def _ctx(target=None) -> MagicMock:
    ctx = MagicMock()
    ctx.channel.id = 500
    ctx.author.voice = MagicMock(channel=target) if target is not None else None
    return ctx


def _session(voice: FakeVoice, *channels) -> GuildSession:
    bot = MagicMock()
    lookup = {c.id: c for c in channels}
    bot.get_channel.side_effect = lambda channel_id: lookup.get(channel_id)
    session = GuildSession(1, bot)
    session.voice = voice
    session.player.disconnect = AsyncMock()
    return session


@pytest.fixture
def discord_io():
    """Patch every Discord message helper the session uses."""
    with patch("core.session.safe_send", new=AsyncMock(return_value=MagicMock())) as send, \
         patch("core.session.safe_reply", new=AsyncMock(return_value=MagicMock())) as reply, \
         patch("core.session.safe_edit", new=AsyncMock(return_value=True)) as edit, \
         patch("core.session.safe_delete_message", new=AsyncMock(return_value=True)), \
         patch("core.session.can_connect_to_channel", return_value=True) as can_connect, \
         patch("core.session.can_move_members", return_value=False) as can_move:
        yield MagicMock(send=send, reply=reply, edit=edit, can_connect=can_connect, can_move=can_move)


# ---------------------------------------------------------------------------
# Join decision table
# ---------------------------------------------------------------------------

class TestJoinVoiceChannel:
    @pytest.mark.asyncio
    async def test_author_not_in_voice(self, discord_io):
        session = _session(FakeVoice())
        assert await session.join_voice_channel(_ctx()) is False
        discord_io.send.assert_awaited_once()
        assert discord_io.send.await_args.args[1] == MESSAGES['issuer_no_voice_channel']

    @pytest.mark.asyncio
    async def test_failure_replies_when_asked(self, discord_io):
        session = _session(FakeVoice())
        assert await session.join_voice_channel(_ctx(), reply_on_fail=True) is False
        discord_io.reply.assert_awaited_once()
        discord_io.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_in_the_authors_channel(self, discord_io):
        target = _channel(10)
        voice = FakeVoice()
        voice.channel = target
        session = _session(voice, target)

        assert await session.join_voice_channel(_ctx(target)) is True
        assert voice.connect_calls == 0
        discord_io.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_busy_elsewhere_without_move_permission(self, discord_io):
        voice = FakeVoice()
        voice.channel = _channel(11)
        target = _channel(10)
        session = _session(voice, target)

        assert await session.join_voice_channel(_ctx(target)) is False
        assert voice.connect_calls == 0
        assert discord_io.send.await_args.args[1] == MESSAGES['already_joined']

    @pytest.mark.asyncio
    async def test_busy_elsewhere_with_move_permission(self, discord_io):
        discord_io.can_move.return_value = True
        voice = FakeVoice()
        voice.channel = _channel(11)
        target = _channel(10)
        session = _session(voice, target)

        assert await session.join_voice_channel(_ctx(target)) is True
        assert voice.channel is target

    @pytest.mark.asyncio
    async def test_connects(self, discord_io):
        target = _channel(10)
        voice = FakeVoice()
        session = _session(voice, target)

        assert await session.join_voice_channel(_ctx(target), reply=True) is True
        assert voice.connect_calls == 1
        assert discord_io.reply.await_args.args[1] == MESSAGES['connecting']
        assert "voice-10" in discord_io.edit.await_args.args[1]

    @pytest.mark.asyncio
    async def test_missing_permission_is_not_a_transport_failure(self, discord_io):
        target = _channel(10)
        session = _session(FakeVoice(error=VoicePermissionError("no")), target)

        assert await session.join_voice_channel(_ctx(target)) is False
        assert discord_io.edit.await_args.args[1] == MESSAGES['unable_to_join_permission']
        session.player.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permission_probe_fails_before_connecting(self, discord_io):
        discord_io.can_connect.return_value = False
        target = _channel(10)
        voice = FakeVoice()
        session = _session(voice, target)

        assert await session.join_voice_channel(_ctx(target)) is False
        assert voice.connect_calls == 0

    @pytest.mark.asyncio
    async def test_transport_failure_tears_down(self, discord_io):
        target = _channel(10)
        session = _session(FakeVoice(error=asyncio.TimeoutError()), target)

        assert await session.join_voice_channel(_ctx(target)) is False
        assert "TimeoutError" in discord_io.edit.await_args.args[1]
        session.player.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_concurrent_joins_connect_once(self, discord_io):
        target = _channel(10)
        voice = FakeVoice(delay=0.05)
        session = _session(voice, target)

        results = await asyncio.gather(
            session.join_voice_channel(_ctx(target)),
            session.join_voice_channel(_ctx(target)),
        )
        assert results == [True, True]
        assert voice.connect_calls == 1


# ---------------------------------------------------------------------------
# Status export / import
# ---------------------------------------------------------------------------

class TestStatus:
    def _playing_session(self, state: PlaybackState) -> GuildSession:
        voice = FakeVoice()
        voice.channel = _channel(77)
        session = _session(voice)
        session.player.state = state
        return session

    def test_export_keys(self):
        status = _session(FakeVoice()).export_status()
        assert set(status) == {
            "voiceChannelId", "boundChannelId", "loopEnabled", "queueLoopEnabled",
            "addRelatedSongs", "equallyPlayback", "volume",
        }

    def test_voice_channel_only_while_playing(self):
        assert self._playing_session(PlaybackState.PLAYING).export_status()["voiceChannelId"] == "77"
        assert self._playing_session(PlaybackState.PAUSED).export_status()["voiceChannelId"] == "0"
        assert self._playing_session(PlaybackState.IDLE).export_status()["voiceChannelId"] == "0"

    @pytest.mark.asyncio
    async def test_import_applies_flags(self):
        session = _session(FakeVoice())
        session.import_status({
            "voiceChannelId": "0", "boundChannelId": "600", "loopEnabled": True,
            "queueLoopEnabled": True, "addRelatedSongs": True, "equallyPlayback": True,
            "volume": 80,
        })
        assert session.queue.loop_enabled and session.queue.queue_loop_enabled
        assert session.add_related and session.equally_playback
        assert session.bound_text_channel == 600
        assert session.player.volume == 80
        assert session._restore_task is None

    @pytest.mark.asyncio
    async def test_import_rejoins_and_plays(self):
        target = _channel(77)
        voice = FakeVoice()
        session = _session(voice, target)
        session.player.play = AsyncMock()

        session.import_status({"voiceChannelId": "77"})
        await session._restore_task

        assert voice.channel is target
        session.player.play.assert_awaited_once()

    def test_status_changes_are_reported(self):
        on_status = MagicMock()
        session = GuildSession(1, MagicMock(), on_status_change=on_status)
        session.toggle_loop()
        session.equally_playback = True
        assert [c.args for c in on_status.call_args_list] == [(1,), (1,)]


# ---------------------------------------------------------------------------
# Prefix and registry
# ---------------------------------------------------------------------------

class TestPrefix:
    def test_tag_in_nickname(self):
        assert prefix_from_nick("[!] Cadence") == "!"
        assert prefix_from_nick("Cadence") == COMMAND_PREFIX
        assert prefix_from_nick(None) == COMMAND_PREFIX

    def test_session_tracks_nickname(self):
        session = GuildSession(1, MagicMock())
        assert session.update_prefix("[?] DJ") == "?"
        assert session.update_prefix("DJ") == COMMAND_PREFIX


class TestRegistry:
    @pytest.mark.asyncio
    async def test_get_session_creates_once(self):
        bot = MagicMock()
        first, second = await asyncio.gather(get_session(5, bot), get_session(5, bot))
        assert first is second
        assert session_module.sessions == {5: first}

    @pytest.mark.asyncio
    async def test_remove_session_cancels_tasks(self):
        session = await get_session(5, MagicMock())
        session.player.disconnect = AsyncMock()
        token = MagicMock()
        session.cancellations.append(token)

        assert await remove_session(5) is session
        token.cancel.assert_called_once()
        session.player.disconnect.assert_awaited_once()
        assert 5 not in session_module.sessions
        assert await remove_session(5) is None

    @pytest.mark.asyncio
    async def test_change_listeners_reach_new_sessions(self):
        on_status, on_queue = MagicMock(), MagicMock()
        session_module.set_change_listeners(on_status, on_queue)
        try:
            session = await get_session(6, MagicMock())
            assert session.on_status_change is on_status
            assert session.on_queue_change is on_queue
        finally:
            session_module.set_change_listeners(None, None)
