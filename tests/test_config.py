"""Tests for configuration models, files and the config store."""

import json

import pytest
from pydantic import ValidationError

from fastapi_bot_trap.config import (
    BanDurations,
    BotTrapConfig,
    ConfigPatch,
    ConfigStore,
    load_config_file,
)
from fastapi_bot_trap.events import EventLog, EventType
from fastapi_bot_trap.exceptions import ConfigError, StoreError


class TestBotTrapConfig:
    """Tests for the configuration model."""

    def test_defaults(self):
        config = BotTrapConfig()

        assert config.rate_limit == 80
        assert config.rate_window_seconds == 60
        assert config.honeypots == ["/bot-trap"]
        assert config.whitelist == []
        assert ("Chrome", 120) in config.browser_block
        assert config.test_mode is False
        assert config.maze_enabled and config.maze_auto_ban
        assert config.maze_auto_ban_threshold == 50
        assert config.maze_path_prefix == "/maze/"
        assert config.automation_detection_enabled
        assert config.automation_auto_ban is False
        assert config.automation_detection_threshold == 0.8

    def test_ban_durations(self):
        durations = BanDurations()

        assert durations.get("honeypot") == 86400
        assert durations.get("rate_limit") == 3600
        assert durations.get("rate") == 3600
        assert durations.get("browser") == 21600
        assert durations.get("maze_crawler") == 86400
        assert durations.get("something-new") == durations.admin

    def test_frozen(self):
        with pytest.raises(ValidationError):
            BotTrapConfig().rate_limit = 5

    def test_validation(self):
        with pytest.raises(ValidationError):
            BotTrapConfig(rate_limit=0)
        with pytest.raises(ValidationError):
            BotTrapConfig(maze_path_prefix="maze/")

    def test_geo_codes_normalised(self):
        assert BotTrapConfig(geo_risk=["ru", " cn ", ""]).geo_risk == ["RU", "CN"]


class TestConfigPatch:
    """Tests for partial updates."""

    def test_only_set_fields_change(self):
        config = BotTrapConfig(rate_limit=10, honeypots=["/trap"])

        updated = ConfigPatch(rate_limit=20).apply(config)

        assert updated.rate_limit == 20
        assert updated.honeypots == ["/trap"]

    def test_partial_ban_durations(self):
        updated = ConfigPatch.model_validate({"ban_durations": {"honeypot": 60}}).apply(BotTrapConfig())

        assert updated.ban_durations.honeypot == 60
        assert updated.ban_durations.rate_limit == 3600

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            ConfigPatch.model_validate({"rate_limt": 5})

    def test_patched_values_validated(self):
        with pytest.raises(ValidationError):
            ConfigPatch(maze_path_prefix="nope").apply(BotTrapConfig())


class TestLoadConfigFile:
    """Tests for load_config_file."""

    def test_yaml(self, tmp_path):
        path = tmp_path / "bot_trap.yaml"
        path.write_text("rate_limit: 25\nhoneypots:\n  - /trap\n  - /wp-admin.php\n")

        config = load_config_file(path)

        assert config.rate_limit == 25
        assert config.honeypots == ["/trap", "/wp-admin.php"]

    def test_toml(self, tmp_path):
        path = tmp_path / "bot_trap.toml"
        path.write_text('test_mode = true\ngeo_risk = ["ru"]\n\n[ban_durations]\nhoneypot = 120\n')

        config = load_config_file(path)

        assert config.test_mode is True
        assert config.geo_risk == ["RU"]
        assert config.ban_durations.honeypot == 120

    def test_json(self, tmp_path):
        path = tmp_path / "bot_trap.json"
        path.write_text(json.dumps({"whitelist": ["10.0.0.0/8"]}))

        assert load_config_file(path).whitelist == ["10.0.0.0/8"]

    def test_empty_yaml_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yml"
        path.write_text("")

        assert load_config_file(path) == BotTrapConfig()

    @pytest.mark.parametrize(
        "name,content",
        [
            ("bad.yaml", "rate_limit: [unclosed"),
            ("bad.json", "{"),
            ("invalid.json", '{"rate_limit": -1}'),
            ("config.ini", "[section]"),
        ],
    )
    def test_errors(self, tmp_path, name, content):
        path = tmp_path / name
        path.write_text(content)

        with pytest.raises(ConfigError):
            load_config_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config_file(tmp_path / "missing.yaml")


class TestConfigStore:
    """Tests for ConfigStore."""

    @pytest.mark.asyncio
    async def test_missing_config_gives_defaults(self, store):
        defaults = BotTrapConfig(rate_limit=5)
        assert await ConfigStore(store, defaults=defaults).load("default") == defaults

    @pytest.mark.asyncio
    async def test_save_and_load(self, store):
        config_store = ConfigStore(store)
        config = BotTrapConfig(rate_limit=7, geo_risk=["CN"])

        await config_store.save("blog", config)

        assert await config_store.load("blog") == config
        assert await config_store.load("shop") == BotTrapConfig()

    @pytest.mark.asyncio
    async def test_corrupt_config_gives_defaults(self, store):
        await store.set("config:default", b'{"rate_limit": "lots"}')
        assert await ConfigStore(store).load("default") == BotTrapConfig()

    @pytest.mark.asyncio
    async def test_store_error_propagates(self, failing_store):
        with pytest.raises(StoreError):
            await ConfigStore(failing_store).load("default")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value,expected", [("1", True), ("true", True), ("TRUE", True), ("0", False), ("no", False)])
    async def test_env_overrides_test_mode(self, store, monkeypatch, value, expected):
        config_store = ConfigStore(store)
        await config_store.save("default", BotTrapConfig(test_mode=not expected))
        monkeypatch.setenv("BOT_TRAP_TEST_MODE", value)

        assert (await config_store.load("default")).test_mode is expected

    @pytest.mark.asyncio
    async def test_update_persists(self, store):
        config_store = ConfigStore(store)

        updated = await config_store.update("default", ConfigPatch(rate_limit=3))

        assert updated.rate_limit == 3
        assert (await config_store.load("default")).rate_limit == 3

    @pytest.mark.asyncio
    async def test_update_does_not_persist_env_test_mode(self, store, monkeypatch):
        config_store = ConfigStore(store)
        monkeypatch.setenv("BOT_TRAP_TEST_MODE", "1")

        await config_store.update("default", ConfigPatch(rate_limit=5))
        monkeypatch.delenv("BOT_TRAP_TEST_MODE")

        config = await config_store.load("default")
        assert config.rate_limit == 5
        assert config.test_mode is False

    @pytest.mark.asyncio
    async def test_update_keeps_stored_test_mode_under_env_off(self, store, monkeypatch):
        event_log = EventLog(store)
        config_store = ConfigStore(store, event_log=event_log)
        await config_store.save("default", BotTrapConfig(test_mode=True))
        monkeypatch.setenv("BOT_TRAP_TEST_MODE", "0")

        await config_store.update("default", ConfigPatch(rate_limit=5))
        monkeypatch.delenv("BOT_TRAP_TEST_MODE")

        assert (await config_store.load("default")).test_mode is True
        assert await event_log.recent() == []

    @pytest.mark.asyncio
    async def test_test_mode_toggle_is_audited(self, store):
        event_log = EventLog(store)
        config_store = ConfigStore(store, event_log=event_log)

        await config_store.update("default", ConfigPatch(test_mode=True), admin="ops")

        events = await event_log.recent()
        assert len(events) == 1
        assert events[0].event is EventType.ADMIN_ACTION
        assert events[0].reason == "test_mode_toggle"
        assert events[0].admin == "ops"

    @pytest.mark.asyncio
    async def test_noop_update_writes_nothing(self, store):
        config_store = ConfigStore(store)

        await config_store.update("default", ConfigPatch())

        assert await store.get("config:default") is None
