"""Tests for the prefix command surface (handlers/commands.py)."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import MESSAGES
from core.strategies import default_strategies
from handlers.commands import ready_check, setup


def _registering_bot():
    """Bot stand-in that keeps the plain command callbacks by name."""
    bot = MagicMock()
    bot.registered = {}

    def command(name, **kwargs):
        def decorator(func):
            bot.registered[name] = func
            return func
        return decorator

    bot.command.side_effect = command
    return bot


def _ctx() -> MagicMock:
    ctx = MagicMock()
    ctx.guild.id = 1
    ctx.channel.id = 500
    return ctx


# ---------------------------------------------------------------------------
# Startup gate
# ---------------------------------------------------------------------------

class TestReadyCheck:
    @pytest.mark.asyncio
    async def test_commands_wait_for_startup(self):
        ready = asyncio.Event()
        check = asyncio.create_task(ready_check(ready)(_ctx()))
        await asyncio.sleep(0.01)
        assert not check.done()

        ready.set()
        assert await asyncio.wait_for(check, 1) is True

    @pytest.mark.asyncio
    async def test_passes_once_ready(self):
        ready = asyncio.Event()
        ready.set()
        assert await ready_check(ready)(_ctx()) is True

    def test_setup_installs_the_check(self):
        bot = _registering_bot()
        setup(bot, ready=asyncio.Event())
        bot.check.assert_called_once()

    def test_setup_without_gate(self):
        bot = _registering_bot()
        setup(bot)
        bot.check.assert_not_called()
        assert "play" in bot.registered


# ---------------------------------------------------------------------------
# Related toggle
# ---------------------------------------------------------------------------

class TestRelatedCommand:
    async def _toggle(self, strategies) -> str:
        bot = _registering_bot()
        setup(bot)
        with patch("core.resolver._strategies", strategies), \
             patch("handlers.commands.safe_reply", new=AsyncMock()) as reply:
            await bot.registered["related"](_ctx())
        return reply.await_args.args[1]

    @pytest.mark.asyncio
    async def test_warns_without_a_related_source(self):
        text = await self._toggle(default_strategies())
        assert text.endswith(MESSAGES['related_unavailable'])

    @pytest.mark.asyncio
    async def test_no_warning_with_invidious(self):
        text = await self._toggle(default_strategies("https://inv.test"))
        assert text == MESSAGES['related_state'].format(state="ON")
