"""Tests for deploy-time settings (utils/config.py)."""

from __future__ import annotations

import pytest
import yaml

from utils.config import DEFAULT_SETTINGS, ConfigManager, deep_merge, validate_configuration

_ENV_VARS = (
    "DEFAULT_VOLUME", "CADENCE_INVIDIOUS_INSTANCE", "CADENCE_PRIMARY_STRATEGY_COUNT",
    "CADENCE_BACKUP_BACKEND", "CADENCE_BACKUP_URL", "CADENCE_BACKUP_INTERVAL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path, data: dict):
    (tmp_path / "settings.yaml").write_text(yaml.dump(data), encoding="utf-8")


class TestLoad:
    @pytest.mark.asyncio
    async def test_missing_file_is_generated(self, tmp_path):
        manager = ConfigManager(tmp_path)
        await manager.load()

        assert manager.settings == DEFAULT_SETTINGS
        written = yaml.safe_load((tmp_path / "settings.yaml").read_text(encoding="utf-8"))
        assert written == DEFAULT_SETTINGS

    @pytest.mark.asyncio
    async def test_values_are_clamped(self, tmp_path):
        _write(tmp_path, {
            "default_volume": 500,
            "sources": {"primary_strategy_count": 0},
            "backup": {"interval": 1, "concurrency": 50, "backend": "carrier-pigeon"},
        })
        manager = ConfigManager(tmp_path)
        await manager.load()

        assert manager.get("default_volume") == 200
        assert manager.get("sources.primary_strategy_count") == 1
        assert manager.get("backup.interval") == 10
        assert manager.get("backup.concurrency") == 10
        assert manager.get("backup.backend") == "none"

    @pytest.mark.asyncio
    async def test_empty_values_fall_back_to_defaults(self, tmp_path):
        (tmp_path / "settings.yaml").write_text("default_volume: abc\nbackup:\n", encoding="utf-8")
        manager = ConfigManager(tmp_path)
        await manager.load()

        assert manager.get("default_volume") == 100
        assert manager.get("backup") == DEFAULT_SETTINGS["backup"]

    @pytest.mark.asyncio
    async def test_invidious_instance_loses_trailing_slash(self, tmp_path):
        _write(tmp_path, {"sources": {"invidious_instance": "https://inv.test/"}})
        manager = ConfigManager(tmp_path)
        await manager.load()
        assert manager.get("sources.invidious_instance") == "https://inv.test"


class TestEnvironment:
    @pytest.mark.asyncio
    async def test_redis_url_selects_redis(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CADENCE_BACKUP_URL", "redis://cache:6379/0")
        manager = ConfigManager(tmp_path)
        await manager.load()

        assert manager.get("backup.backend") == "redis"
        assert manager.get("backup.url") == "redis://cache:6379/0"

    @pytest.mark.asyncio
    async def test_other_url_selects_http(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CADENCE_BACKUP_URL", "https://kv.test/db")
        manager = ConfigManager(tmp_path)
        await manager.load()
        assert manager.get("backup.backend") == "http"

    @pytest.mark.asyncio
    async def test_explicit_backend_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CADENCE_BACKUP_URL", "redis://cache:6379/0")
        monkeypatch.setenv("CADENCE_BACKUP_BACKEND", " Memory ")
        manager = ConfigManager(tmp_path)
        await manager.load()
        assert manager.get("backup.backend") == "memory"

    @pytest.mark.asyncio
    async def test_invalid_value_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DEFAULT_VOLUME", "loud")
        monkeypatch.setenv("CADENCE_BACKUP_INTERVAL", "30")
        manager = ConfigManager(tmp_path)
        await manager.load()

        assert manager.get("default_volume") == 100
        assert manager.get("backup.interval") == 30


class TestHelpers:
    def test_deep_merge_ignores_unknown_keys(self):
        merged = deep_merge({"backup": {"url": "x", "extra": 1}, "mystery": True}, DEFAULT_SETTINGS)
        assert merged["backup"]["url"] == "x"
        assert "extra" not in merged["backup"]
        assert "mystery" not in merged
        assert DEFAULT_SETTINGS["backup"]["url"] == ""

    def test_get_with_missing_key(self):
        manager = ConfigManager(None)
        manager.settings = {"backup": {"url": "x"}}
        assert manager.get("backup.url") == "x"
        assert manager.get("backup.missing", 5) == 5
        assert manager.get("backup.url.deeper") is None


class TestValidateConfiguration:
    def test_bad_token_exits(self, monkeypatch):
        monkeypatch.setenv("DISCORD_BOT_TOKEN", "not-a-token")
        with pytest.raises(SystemExit):
            validate_configuration()

    def test_missing_ffmpeg_exits(self, monkeypatch):
        monkeypatch.setenv("DISCORD_BOT_TOKEN", "a.b.c")
        monkeypatch.setattr("utils.config.shutil.which", lambda name: None)
        with pytest.raises(SystemExit):
            validate_configuration()

    def test_valid(self, monkeypatch):
        monkeypatch.setenv("DISCORD_BOT_TOKEN", "a.b.c")
        monkeypatch.setattr("utils.config.shutil.which", lambda name: "/usr/bin/ffmpeg")
        validate_configuration()
