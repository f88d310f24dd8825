# Part of Cadence - Licensed under GPL 3.0
# See LICENSE.md for details

r"""
========================================================================================================
CADENCE MUSIC BOT - BASIC SETTINGS
========================================================================================================

This file contains the most commonly customized settings for your bot.

HOW TO CUSTOMIZE:
  1. Find the setting you want to change below
  2. Change 'None' to your desired value (see examples in comments)
  3. Save the file and restart the bot

  Example:
    COMMAND_PREFIX = None        ← Default (uses .env or '>')
    COMMAND_PREFIX = '?'         ← Override to use '?' instead

PRIORITY:
  Python setting (if not None) > .env file > built-in default

FOR ADVANCED SETTINGS:
  - Audio/voice tweaking: See audio_settings.py
  - Internal constants: See advanced.py

========================================================================================================
"""

import os

# =========================================================================================================
# Internal helper functions (used by settings below - scroll down to skip to settings)
# =========================================================================================================

def _str_to_bool(value):
    """Convert string to boolean (for environment variables)."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ('true', '1', 'yes', 'on')

def _get_config(python_value, env_name, default, converter=None):
    """Get configuration value using priority system (Python > .env > default)."""
    if python_value is not None:
        return python_value
    env_value = os.getenv(env_name)
    if env_value is not None:
        return converter(env_value) if converter else env_value
    return default

# =========================================================================================================
# BOT IDENTITY
# =========================================================================================================

BOT_NAME = "Cadence"

# =========================================================================================================
# BASIC CONFIGURATION
# =========================================================================================================

# ----------------------------------------
# Command Prefix
# ----------------------------------------
# Default symbol users type before commands.
# A guild can override it by tagging the bot's nickname, e.g. "[!] Cadence".
#
COMMAND_PREFIX = None  # Leave as None to use .env or default ('>')
COMMAND_PREFIX = _get_config(COMMAND_PREFIX, 'CADENCE_PREFIX', '>')

# Validation
if not COMMAND_PREFIX or len(COMMAND_PREFIX) > 5:
    raise ValueError(f"Invalid COMMAND_PREFIX '{COMMAND_PREFIX}'. Must be 1-5 characters.")
if COMMAND_PREFIX in ['/', '@', '#']:
    raise ValueError(f"COMMAND_PREFIX '{COMMAND_PREFIX}' is reserved by Discord. Choose a different prefix.")

# ----------------------------------------
# Log Level
# ----------------------------------------
# DEBUG, INFO, WARNING, ERROR, CRITICAL
#
LOG_LEVEL = None  # Leave as None to use .env or default ('INFO')
LOG_LEVEL = _get_config(LOG_LEVEL, 'LOG_LEVEL', 'INFO').upper()

if LOG_LEVEL not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
    LOG_LEVEL = 'INFO'

# Keep disnake and yt-dlp at WARNING regardless of LOG_LEVEL
SUPPRESS_LIBRARY_LOGS = None
SUPPRESS_LIBRARY_LOGS = _get_config(SUPPRESS_LIBRARY_LOGS, 'SUPPRESS_LIBRARY_LOGS', True, _str_to_bool)

# =========================================================================================================
# PLAYBACK DEFAULTS
# =========================================================================================================

# ----------------------------------------
# Default Volume
# ----------------------------------------
# Percent, 0-200. 100 = source volume.
#
DEFAULT_VOLUME = None
DEFAULT_VOLUME = _get_config(DEFAULT_VOLUME, 'DEFAULT_VOLUME', 100, int)

# ----------------------------------------
# Maximum Queue Length
# ----------------------------------------
# Playlist imports stop adding once the queue reaches this size.
#
MAX_QUEUE_LENGTH = 999
