# Part of Cadence - Licensed under GPL 3.0
# See LICENSE.md for details

r"""
========================================================================================================
CADENCE MUSIC BOT - AUDIO SETTINGS
========================================================================================================

Advanced audio and voice connection settings.
Most users won't need to change these.

FOR OTHER SETTINGS:
  - Common settings: See basic_settings.py
  - Internal constants: See advanced.py

========================================================================================================
"""

from typing import Final

# =========================================================================================================
# FFMPEG SETTINGS
# =========================================================================================================

# ----------------------------------------
# FFmpeg Options
# ----------------------------------------
# Remote streams drop connections; let FFmpeg reconnect instead of ending the track early.
#
# Options explained:
#   -reconnect 1 -reconnect_streamed 1 = Reopen the input if the server closes it
#   -reconnect_delay_max 5 = Give up after 5 seconds of failed reconnects
#   -hide_banner -loglevel error -nostdin = Quiet, never read stdin
#
FFMPEG_BEFORE_OPTIONS: Final[str] = (
    '-reconnect 1 -reconnect_streamed 1 -reconnect_delay_max 5 '
    '-hide_banner -loglevel error -nostdin'
)
FFMPEG_OPTIONS: Final[str] = '-vn'

# ----------------------------------------
# Audio Effect Filters
# ----------------------------------------
# FFmpeg -af filter chains applied for each enabled effect toggle
#
EFFECT_FILTERS: Final[dict] = {
    'bass_boost': 'bass=g=10',
    'reverb': 'aecho=1.0:0.7:20:0.5',
    'loudness_equalization': 'loudnorm',
}

# =========================================================================================================
# VOICE CONNECTION TIMING
# =========================================================================================================
#
# DON'T CHANGE THESE unless experiencing specific voice connection issues

VOICE_CONNECT_TIMEOUT = 10.0  # Seconds before a connect attempt counts as failed
VOICE_SETTLE_DELAY = 0.2  # Let voice settle between tracks (200ms)
VOICE_CONNECTION_MAX_WAIT = 0.5  # Max wait for the previous track to stop (500ms)
VOICE_CONNECTION_CHECK_INTERVAL = 0.05  # Check stop state every 50ms
