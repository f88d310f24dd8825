"""
Configuration Package

Internal constants shared by every subsystem. Deploy-time settings that operators
are expected to edit live in settings.yaml (see utils/config.py).

Structure:
  common/basic_settings.py - Prefix, logging, default volume, feature defaults
  common/audio_settings.py - FFmpeg options, voice connection timing, effect filters
  common/advanced.py       - Queue format version, resolver and backup internals
  common/messages.py       - User-facing message table
"""

from .common.basic_settings import *
from .common.audio_settings import *
from .common.advanced import *
from .common.messages import MESSAGES
