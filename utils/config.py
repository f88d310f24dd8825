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

"""Deploy-time configuration for Cadence (settings.yaml + environment)."""

import asyncio
import copy
import os
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Playback Settings:
#   default_volume         - Volume of new sessions in percent (0-200)
#
# Source Settings (sources.*):
#   invidious_instance     - Base url of an Invidious instance used as the
#                            fallback strategy (empty = no fallback)
#   primary_strategy_count - Strategies below this index count as primary;
#                            anything resolved above it is logged as a fallback
#
# Backup Settings (backup.*):
#   backend                - "none", "memory", "http" (Replit-style) or "redis"
#   url                    - Store url for the http/redis backends
#   interval               - Seconds between backup ticks (minimum 10)
#   concurrency            - Simultaneous store requests (1-10)
#   timeout                - Seconds before a store request counts as failed
# =============================================================================

DEFAULT_SETTINGS = {
    "default_volume": 100,
    "sources": {
        "invidious_instance": "",
        "primary_strategy_count": 2,
    },
    "backup": {
        "backend": "none",
        "url": "",
        "interval": 60,
        "concurrency": 3,
        "timeout": 10,
    },
}

BACKUP_BACKENDS = ("none", "memory", "http", "redis")


def deep_merge(user: dict, defaults: dict) -> dict:
    """Merge user config with defaults, preserving nested structure.

    User values override defaults. For nested dicts, merges recursively.
    Unknown keys (not in defaults) are logged as warnings and ignored.
    """
    result = copy.deepcopy(defaults)
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Load YAML file with defaults and error handling.

    If file doesn't exist or is invalid, returns defaults without error.
    Invalid YAML syntax is logged and defaults are used.
    """
    if not path.exists():
        return copy.deepcopy(defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}

        if not isinstance(user, dict):
            logger.warning(f"{path.name} invalid, using defaults")
            return copy.deepcopy(defaults)

        return deep_merge(user, defaults)

    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return copy.deepcopy(defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Save YAML atomically with optional header comment.

    Uses temp-file-then-rename pattern to prevent corruption if the bot
    crashes mid-write.
    """
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            if header:
                f.write(header)
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


class ConfigManager:
    """Manages deploy-time configuration from settings.yaml.

    Priority (highest wins):
    1. DEFAULT_SETTINGS (built-in defaults)
    2. settings.yaml (user customization)
    3. Environment variables (Docker/deployment override)

    Access patterns:
        config_manager.get("key")               # Top-level setting
        config_manager.get("backup.url")        # Dot notation for nested keys

    Attributes:
        config_path: Directory containing settings.yaml
        settings: Loaded settings dict (after validation)
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = config_path
        self.settings: dict = {}

    async def load(self) -> None:
        """Load settings from YAML, apply env overrides, validate.

        Generates settings.yaml with default values if it is missing.
        """
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(load_yaml, settings_path, DEFAULT_SETTINGS)

        if not settings_path.exists():
            header = "# Cadence Settings\n# Edit these values to customize behavior\n\n"
            await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
            logger.debug(f"generated {settings_path.name}")

        self._apply_env_overrides()
        self._validate_settings()

        logger.debug("config loaded")

    def _clamp(self, section: dict, key: str, default: Any, min_val, max_val=None, cast=int) -> None:
        value = section.get(key)
        try:
            v = cast(value)
        except (ValueError, TypeError):
            logger.warning(f"{key}={value!r} invalid, using default")
            section[key] = default
            return
        clamped = max(min_val, v) if max_val is None else max(min_val, min(max_val, v))
        if clamped != v:
            range_str = f"{min_val}+" if max_val is None else f"{min_val}-{max_val}"
            logger.warning(f"{key}={v} out of range, clamped to {clamped} (valid: {range_str})")
        section[key] = clamped

    def _validate_settings(self) -> None:
        """Validate and clamp settings after loading from all sources.

        Validation steps:
        1. Null-restore: YAML "key:" with no value becomes None, restore defaults
        2. default_volume: 0-200
        3. sources.primary_strategy_count: 1+
        4. backup.backend: one of BACKUP_BACKENDS, else "none"
        5. backup.interval >= 10, backup.concurrency 1-10, backup.timeout >= 1
        """
        for key in list(self.settings):
            if self.settings[key] is None and key in DEFAULT_SETTINGS:
                self.settings[key] = copy.deepcopy(DEFAULT_SETTINGS[key])
        for section in ("sources", "backup"):
            sect = self.settings.get(section)
            defaults = DEFAULT_SETTINGS[section]
            if not isinstance(sect, dict):
                logger.warning(f"{section} section invalid, using defaults")
                self.settings[section] = copy.deepcopy(defaults)
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = defaults[key]

        self._clamp(self.settings, "default_volume", DEFAULT_SETTINGS["default_volume"], 0, 200)

        sources = self.settings["sources"]
        self._clamp(sources, "primary_strategy_count", 2, 1)
        sources["invidious_instance"] = str(sources.get("invidious_instance") or "").rstrip("/")

        backup = self.settings["backup"]
        backend = str(backup.get("backend", "none")).lower()
        if backend not in BACKUP_BACKENDS:
            logger.warning(f"backup.backend={backend!r} invalid, backups disabled")
            backend = "none"
        backup["backend"] = backend
        self._clamp(backup, "interval", 60, 10, cast=float)
        self._clamp(backup, "concurrency", 3, 1, 10)
        self._clamp(backup, "timeout", 10, 1, cast=float)

    def _apply_env_overrides(self) -> None:
        """Override settings with environment variables.

        The env_map dict maps ENV_VAR_NAME -> (setting_key, converter), with dot
        notation for nested keys. Invalid values are logged and ignored.
        """
        def lower(x: str) -> str:
            return x.strip().lower()

        env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
            "DEFAULT_VOLUME": ("default_volume", int),
            "CADENCE_INVIDIOUS_INSTANCE": ("sources.invidious_instance", str),
            "CADENCE_PRIMARY_STRATEGY_COUNT": ("sources.primary_strategy_count", int),
            "CADENCE_BACKUP_BACKEND": ("backup.backend", lower),
            "CADENCE_BACKUP_URL": ("backup.url", str),
            "CADENCE_BACKUP_INTERVAL": ("backup.interval", float),
        }

        for env_key, (setting_key, converter) in env_map.items():
            if value := os.getenv(env_key):
                try:
                    converted = converter(value)
                    if "." in setting_key:
                        parts = setting_key.split(".")
                        target = self.settings
                        for part in parts[:-1]:
                            target = target.setdefault(part, {})
                            if not isinstance(target, dict):
                                # Corrupted YAML: expected dict but got scalar
                                logger.warning(f"invalid config structure for {setting_key}")
                                break
                        else:
                            target[parts[-1]] = converted
                    else:
                        self.settings[setting_key] = converted
                    logger.debug(f"{env_key} overrides {setting_key}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"invalid env var {env_key}: {e}")

        # A url without an explicit backend picks the backend from its scheme
        backup = self.settings.get("backup", {})
        if isinstance(backup, dict) and backup.get("url") and not os.getenv("CADENCE_BACKUP_BACKEND"):
            if str(backup.get("backend", "none")).lower() == "none":
                url = str(backup["url"])
                backup["backend"] = "redis" if url.startswith(("redis://", "rediss://")) else "http"

    def get(self, key: str, default=None) -> Any:
        """Get a setting value, with dot notation for nested keys ("backup.url")."""
        target: Any = self.settings
        for part in key.split("."):
            if not isinstance(target, dict) or part not in target:
                return default
            target = target[part]
        return target


def validate_configuration() -> None:
    """Pre-flight checks before the bot connects, exit on failure.

    Checks performed:
    - DISCORD_BOT_TOKEN is set and has valid format (3 dot-separated sections)
    - ffmpeg is on PATH (playback needs it)
    """
    errors = []

    token = os.getenv("DISCORD_BOT_TOKEN", "").strip()
    if not token:
        errors.append("DISCORD_BOT_TOKEN not set - add it to .env")
    else:
        parts = token.split(".")
        if len(parts) != 3 or any(not part for part in parts):
            errors.append(
                "DISCORD_BOT_TOKEN format appears invalid.\n"
                "Token should have three dot-separated sections.\n"
                "Get a fresh token from: https://discord.com/developers/applications"
            )

    if shutil.which("ffmpeg") is None:
        errors.append("ffmpeg not found on PATH - install it to play audio")

    if errors:
        for error in errors:
            logger.error(error)
        sys.exit(1)
