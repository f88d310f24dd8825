# Part of Cadence - Licensed under GPL 3.0
# See LICENSE.md for details

r"""
========================================================================================================
CADENCE MUSIC BOT - ADVANCED SETTINGS
========================================================================================================

Internal constants for queue export, media resolution and backups.
DON'T CHANGE THESE unless specifically instructed by documentation/support.

FOR OTHER SETTINGS:
  - Common settings: See basic_settings.py
  - Audio/voice: See audio_settings.py

========================================================================================================
"""

import os

# =========================================================================================================
# BOT TOKEN (DO NOT EDIT)
# =========================================================================================================
#
# Your Discord bot token - ALWAYS set this in .env file for security
#
BOT_TOKEN = os.getenv('DISCORD_BOT_TOKEN', '').strip()

# =========================================================================================================
# PORTABLE QUEUE FORMAT
# =========================================================================================================
#
# Exported queues carry this version. Imports with any other version are rejected.
# Bump it whenever the exported entry layout changes.
#
QUEUE_FORMAT_VERSION = 3
QUEUE_FILE_EXTENSION = '.ymx'

# =========================================================================================================
# MEDIA RESOLUTION
# =========================================================================================================

# ----------------------------------------
# Strategy Fallback
# ----------------------------------------
# Strategies with an index below this count are "primary"; anything higher is a fallback
# path and gets logged as such.
#
PRIMARY_STRATEGY_COUNT = 2

# ----------------------------------------
# Live Broadcast Polling
# ----------------------------------------
# Minimum seconds between two checks of a scheduled (upcoming) live broadcast
#
LIVE_WAIT_FLOOR = 20.0

# User agent sent when the transport opens a direct video url
SECONDARY_USER_AGENT = (
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36'
)

# Raw audio urls accepted as "custom" sources
RAW_AUDIO_EXTENSIONS = ('.mp3', '.wav', '.ogg', '.flac', '.m4a', '.opus', '.webm', '.aac')

# ----------------------------------------
# Playlist Processing
# ----------------------------------------
PLAYLIST_PROGRESS_EVERY = 10  # Edit the progress message every N items

# =========================================================================================================
# BACKUP
# =========================================================================================================

BACKUP_KEY_STATUS = 'status'
BACKUP_KEY_QUEUE = 'queue'
BACKUP_INTERVAL = 60.0  # Seconds between two backup ticks (settings.yaml may override)

KV_CONCURRENCY = 3  # Simultaneous requests to the key-value backend
KV_MIN_INTERVAL = 0.0025  # Seconds between two requests starting
KV_TIMEOUT = 10.0  # Seconds before a backend request counts as failed
