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
Cadence Music Bot
========================================================
VERSION: 1.0.0
========================================================

A Discord music bot built using the disnake API.
Per-guild playback of YouTube and direct audio urls, with queue
export/import and periodic backup of guild state.
"""

import disnake
from disnake.ext import commands
import asyncio
import logging
import signal
from pathlib import Path
from dotenv import load_dotenv
import os

# Load environment variables
load_dotenv()

# Import configuration early (needed for bot initialization)
from config import BOT_NAME, BOT_TOKEN, COMMAND_PREFIX, LOG_LEVEL, MESSAGES, SUPPRESS_LIBRARY_LOGS

# =============================================================================
# LOGGING SETUP
# =============================================================================

# Map string log level to logging constant
LOG_LEVEL_MAP = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL,
}

# Custom formatter for clean 4-char level names
class CadenceFormatter(logging.Formatter):
    """
    Custom formatter with 4-character level names for clean, aligned logs.

    Maps Python's standard log levels to 4-character names:
    - DEBUG    → [DBUG] - Technical details for debugging
    - INFO     → [INFO] - Normal operation messages
    - WARNING  → [WARN] - Issues that don't stop operation
    - ERROR    → [FAIL] - Recoverable failures
    - CRITICAL → [CRIT] - Catastrophic failures
    """

    LEVEL_NAMES = {
        'DEBUG': 'DBUG',
        'INFO': 'INFO',
        'WARNING': 'WARN',
        'ERROR': 'FAIL',
        'CRITICAL': 'CRIT',
    }

    def format(self, record):
        # Swap the level name for this format call only (other handlers see the original)
        original_levelname = record.levelname
        record.levelname = self.LEVEL_NAMES.get(record.levelname, record.levelname)
        result = super().format(record)
        record.levelname = original_levelname
        return result

# Configure logging with custom formatter
handler = logging.StreamHandler()
handler.setFormatter(CadenceFormatter(
    fmt='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
logging.basicConfig(
    level=LOG_LEVEL_MAP[LOG_LEVEL],
    handlers=[handler]
)
logger = logging.getLogger('cadence')

# Reduce disnake / yt-dlp noise (if enabled)
_library_level = logging.WARNING if SUPPRESS_LIBRARY_LOGS else LOG_LEVEL_MAP[LOG_LEVEL]
for _name in ('disnake', 'disnake.player', 'disnake.voice_client', 'disnake.gateway', 'yt_dlp'):
    logging.getLogger(_name).setLevel(_library_level)

# =============================================================================
# ASYNCIO EXCEPTION HANDLER
# =============================================================================

def custom_exception_handler(loop, context):
    """
    Custom asyncio exception handler to suppress cosmetic aiohttp warnings.

    Suppresses only "Unclosed client session" / "Unclosed connector" (from
    aiohttp during shutdown). Everything else goes to the default handler.
    """
    message = context.get("message", "")

    if message in ["Unclosed client session", "Unclosed connector"]:
        return

    loop.default_exception_handler(context)

# =============================================================================
# BOT SETUP
# =============================================================================

# Import our modules
from core.resolver import configure_strategies
from core.session import prefix_from_nick, remove_session, sessions, set_change_listeners, set_default_volume
from core.strategies import default_strategies
from systems.backup import BackupSynchronizer
from utils.config import ConfigManager, validate_configuration
from utils.discord_helpers import format_guild_log, format_user_log, safe_reply
from utils.kv_store import create_store


async def get_prefix(bot, message):
    """Guild prefix: a "[x]" tag in the bot's nickname overrides the default."""
    if message.guild is None:
        return COMMAND_PREFIX
    nick = message.guild.me.nick if message.guild.me else None
    session = sessions.get(message.guild.id)
    if session is not None:
        return session.update_prefix(nick)
    return prefix_from_nick(nick)


intents = disnake.Intents.default()
intents.message_content = True
intents.voice_states = True
intents.members = True

bot = commands.Bot(
    command_prefix=get_prefix,
    intents=intents,
    help_command=None,
)

config_manager = ConfigManager(Path(os.getenv('CADENCE_CONFIG_DIR', '.')))

# Created in on_ready once settings are loaded
backup: BackupSynchronizer | None = None

# Shutdown flag to prevent on_disconnect from running during intentional shutdown
_is_shutting_down = False

# Initialization flag to prevent on_ready from running setup code on reconnects
_is_initialized = False

# Set once startup (settings, backup restore) finished; commands wait for it
_startup_complete = asyncio.Event()

# =============================================================================
# BOT EVENTS
# =============================================================================

async def _initialize():
    """Load settings, configure media strategies, restore backups, start the backup loop."""
    global backup

    await config_manager.load()

    configure_strategies(
        default_strategies(config_manager.get("sources.invidious_instance")),
        config_manager.get("sources.primary_strategy_count"),
    )
    set_default_volume(config_manager.get("default_volume"))

    try:
        store = create_store(config_manager.settings)
    except ValueError as e:
        logger.error(f"Backups disabled: {e}")
        store = None
    if store is None:
        return

    backup = BackupSynchronizer(store, lambda: sessions, interval=config_manager.get("backup.interval"))
    set_change_listeners(backup.mark_status_modified, backup.mark_queue_modified)
    try:
        await backup.restore(bot)
    except Exception:
        logger.exception("Restoring from backup failed, starting with empty sessions")
    backup.start()


@bot.event
async def on_ready():
    """
    Bot connected to Discord.

    Gateway reconnects fire on_ready again; setup only runs the first time.
    """
    global _is_initialized

    if _is_initialized:
        logger.info("Gateway reconnected via on_ready")
        return

    _is_initialized = True

    # Must be done here since bot.run() creates its own loop
    bot.loop.set_exception_handler(custom_exception_handler)

    # Copyright and license info (as required by GPL 3.0)
    logger.info(f'{BOT_NAME} v1.0.0 - Copyright (C) 2025 grodz')
    logger.info('Licensed under GPL 3.0 - See LICENSE.md for details')

    logger.info(f'Bot connected as {bot.user} in {len(bot.guilds)} guild(s)')

    try:
        await _initialize()
    finally:
        _startup_complete.set()

    logger.info("Press Ctrl+C or send SIGTERM to shutdown")

@bot.event
async def on_disconnect():
    """Gateway dropped. Disnake reconnects on its own unless we are shutting down."""
    if not _is_shutting_down:
        logger.info("Gateway disconnected, waiting for Disnake auto-reconnect...")

@bot.event
async def on_voice_state_update(member, before, after):
    """Forget the voice connection when the bot is kicked or its channel goes away."""
    if bot.user is None or member.id != bot.user.id:
        return
    if before.channel and not after.channel:
        session = sessions.get(member.guild.id)
        if session is None:
            return
        session.voice.handle_destroyed()
        await session.player.disconnect()
        logger.info(f"{format_guild_log(member.guild, bot)}: disconnected from voice")

@bot.event
async def on_member_update(before, after):
    """Pick the prefix tag up as soon as the bot's nickname changes."""
    if bot.user is None or after.id != bot.user.id or before.nick == after.nick:
        return
    session = sessions.get(after.guild.id)
    if session is not None:
        session.update_prefix(after.nick)

@bot.event
async def on_guild_remove(guild):
    """Bot removed from guild - drop its session and its backup records."""
    logger.info(f"Bot removed from {format_guild_log(guild)}")
    await remove_session(guild.id)
    if backup is not None:
        await backup.on_guild_remove(guild.id)

@bot.event
async def on_command_error(ctx, error):
    """Handle command errors gracefully."""
    # Silently ignore typos (CommandNotFound) - these are harmless user mistakes
    if isinstance(error, commands.CommandNotFound):
        logger.debug(f"{format_guild_log(ctx.guild)}: Unknown command from {format_user_log(ctx.author)}: {ctx.message.content}")
        return

    if isinstance(error, commands.NoPrivateMessage):
        return

    if isinstance(error, commands.MissingRequiredArgument):
        await safe_reply(ctx.message, MESSAGES['error_missing_argument'].format(name=error.param.name))
        return

    # For actual errors (code problems, API failures, etc.), log with full traceback
    logger.error(f"Command error in {ctx.command}: {error}", exc_info=error)
    await safe_reply(ctx.message, MESSAGES['error_command_failed'])

# =============================================================================
# GRACEFUL SHUTDOWN
# =============================================================================

async def shutdown_bot():
    """
    Gracefully shutdown the bot.

    Cancels running bulk tasks, flushes the last backup (while the sessions
    still reflect what was playing), then leaves voice and closes the gateway.
    """
    global _is_shutting_down
    if _is_shutting_down:
        return
    _is_shutting_down = True
    logger.info("Initiating graceful shutdown...")

    for session in list(sessions.values()):
        session.cancel_all()

    if backup is not None:
        logger.info("Flushing backup...")
        try:
            await backup.stop(flush=True)
        except Exception as e:
            logger.error(f"Error flushing backup: {e}")

    logger.info(f"Shutting down {len(sessions)} session(s)...")
    for guild_id, session in list(sessions.items()):
        try:
            await session.player.disconnect()
        except Exception as e:
            logger.error(f"{format_guild_log(guild_id, bot)}: Error during shutdown: {e}")

    logger.info("Closing bot connection...")
    logger.info("Shutdown complete")
    await bot.close()

def handle_shutdown_signal(signum, frame):
    """
    Signal handler for SIGTERM and SIGINT.

    Creates a task to run the async shutdown sequence.
    """
    signal_name = signal.Signals(signum).name
    logger.info(f"Received {signal_name} signal, shutting down...")

    if bot.loop and bot.loop.is_running():
        bot.loop.create_task(shutdown_bot())
    else:
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(shutdown_bot())
        except RuntimeError:
            logger.warning("No event loop running, forcing exit")
            os._exit(0)

# =============================================================================
# COMMANDS
# =============================================================================

from handlers.commands import setup as setup_commands
setup_commands(bot, ready=_startup_complete)
logger.info("Prefix commands loaded")

# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    validate_configuration()

    signal.signal(signal.SIGINT, handle_shutdown_signal)
    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    logger.info("Starting bot...")

    try:
        bot.run(BOT_TOKEN)
    except KeyboardInterrupt:
        logger.info("Bot stopped by user (Ctrl+C)")
    except Exception as e:
        logger.error(f"Bot crashed: {e}", exc_info=True)
