"""Per-site configuration for FastAPI Bot Trap.

The admission pipeline reads an immutable ``BotTrapConfig`` snapshot once per
request. Snapshots live in the key-value store under ``config:{site_id}`` and
fall back to defaults, which can themselves come from a YAML, TOML or JSON
file. Updates go through ``ConfigPatch``: one optional field per setting,
only the fields that are set get replaced.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import toml
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from fastapi_bot_trap.events import EventLog, EventLogEntry, EventType
from fastapi_bot_trap.exceptions import ConfigError
from fastapi_bot_trap.store import KeyValueStore

logger = logging.getLogger(__name__)

CONFIG_PREFIX = "config:"
TEST_MODE_ENV = "BOT_TRAP_TEST_MODE"


class BanDurations(BaseModel):
    """Ban duration in seconds for each ban reason."""

    honeypot: int = Field(default=86400, ge=0)      # 24 hours
    rate_limit: int = Field(default=3600, ge=0)     # 1 hour
    browser: int = Field(default=21600, ge=0)       # 6 hours
    admin: int = Field(default=21600, ge=0)         # 6 hours
    maze_crawler: int = Field(default=86400, ge=0)
    automation: int = Field(default=21600, ge=0)

    def get(self, reason: str) -> int:
        """Duration for ``reason``, falling back to the admin duration."""
        if reason == "rate":
            reason = "rate_limit"
        if reason in type(self).model_fields:
            return getattr(self, reason)
        return self.admin


class BotTrapConfig(BaseModel):
    """Configuration snapshot for one site."""

    model_config = ConfigDict(frozen=True)

    ban_durations: BanDurations = Field(default_factory=BanDurations)

    # Rate limiting
    rate_limit: int = Field(default=80, ge=1)
    rate_window_seconds: int = Field(default=60, ge=1)

    # Paths and addresses
    honeypots: List[str] = Field(default_factory=lambda: ["/bot-trap"])
    whitelist: List[str] = Field(default_factory=list)
    path_whitelist: List[str] = Field(default_factory=list)

    # Browser version tables: (family, minimum major version)
    browser_block: List[Tuple[str, int]] = Field(default_factory=lambda: [
        ("Chrome", 120),
        ("Firefox", 115),
        ("Safari", 15),
    ])
    browser_whitelist: List[Tuple[str, int]] = Field(default_factory=list)

    # ISO country codes that get an extra challenge
    geo_risk: List[str] = Field(default_factory=list)

    test_mode: bool = False

    # Link maze
    maze_enabled: bool = True
    maze_auto_ban: bool = True
    maze_auto_ban_threshold: int = Field(default=50, ge=1)
    maze_path_prefix: str = "/maze/"

    # Client-side automation detection
    automation_detection_enabled: bool = True
    automation_auto_ban: bool = False
    automation_detection_threshold: float = Field(default=0.8, ge=0.0)

    @field_validator("geo_risk")
    @classmethod
    def normalise_country_codes(cls, v):
        return [code.strip().upper() for code in v if code.strip()]

    @field_validator("maze_path_prefix")
    @classmethod
    def validate_maze_prefix(cls, v):
        if not v.startswith("/"):
            raise ValueError(f"maze_path_prefix must start with '/': {v!r}")
        return v

    def get_ban_duration(self, reason: str) -> int:
        return self.ban_durations.get(reason)


class BanDurationsPatch(BaseModel):
    """Optional replacement for individual ban durations."""

    honeypot: Optional[int] = Field(default=None, ge=0)
    rate_limit: Optional[int] = Field(default=None, ge=0)
    browser: Optional[int] = Field(default=None, ge=0)
    admin: Optional[int] = Field(default=None, ge=0)
    maze_crawler: Optional[int] = Field(default=None, ge=0)
    automation: Optional[int] = Field(default=None, ge=0)


class ConfigPatch(BaseModel):
    """Partial configuration update; unset fields leave the current value alone."""

    model_config = ConfigDict(extra="forbid")

    ban_durations: Optional[BanDurationsPatch] = None
    rate_limit: Optional[int] = Field(default=None, ge=1)
    rate_window_seconds: Optional[int] = Field(default=None, ge=1)
    honeypots: Optional[List[str]] = None
    whitelist: Optional[List[str]] = None
    path_whitelist: Optional[List[str]] = None
    browser_block: Optional[List[Tuple[str, int]]] = None
    browser_whitelist: Optional[List[Tuple[str, int]]] = None
    geo_risk: Optional[List[str]] = None
    test_mode: Optional[bool] = None
    maze_enabled: Optional[bool] = None
    maze_auto_ban: Optional[bool] = None
    maze_auto_ban_threshold: Optional[int] = Field(default=None, ge=1)
    maze_path_prefix: Optional[str] = None
    automation_detection_enabled: Optional[bool] = None
    automation_auto_ban: Optional[bool] = None
    automation_detection_threshold: Optional[float] = Field(default=None, ge=0.0)

    def apply(self, config: BotTrapConfig) -> BotTrapConfig:
        """Return a new config with the set fields of this patch applied."""
        updates = self.model_dump(exclude_none=True, exclude={"ban_durations"})
        if self.ban_durations is not None:
            durations = config.ban_durations.model_dump()
            durations.update(self.ban_durations.model_dump(exclude_none=True))
            updates["ban_durations"] = durations
        # Round-trip through validation so patched values obey the same rules
        merged = config.model_dump()
        merged.update(updates)
        return BotTrapConfig.model_validate(merged)


def _env_flag(value: str) -> bool:
    return value == "1" or value.lower() == "true"


def load_config_file(path: Union[str, Path]) -> BotTrapConfig:
    """Load a ``BotTrapConfig`` from a YAML, TOML or JSON file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data: Dict[str, Any] = yaml.safe_load(text) or {}
        elif suffix == ".toml":
            data = toml.loads(text)
        elif suffix == ".json":
            data = json.loads(text)
        else:
            raise ConfigError(f"Unsupported config format: {suffix or path.name}")
    except (yaml.YAMLError, toml.TomlDecodeError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    try:
        return BotTrapConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {path}: {e}") from e


class ConfigStore:
    """Loads and saves per-site config snapshots in the key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        defaults: Optional[BotTrapConfig] = None,
        event_log: Optional[EventLog] = None,
    ):
        self.store = store
        self.defaults = defaults or BotTrapConfig()
        self.event_log = event_log or EventLog(store)

    @staticmethod
    def _key(site_id: str) -> str:
        return f"{CONFIG_PREFIX}{site_id}"

    async def _load_stored(self, site_id: str) -> BotTrapConfig:
        config = self.defaults
        raw = await self.store.get(self._key(site_id))
        if raw is not None:
            try:
                config = BotTrapConfig.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(f"Ignoring invalid stored config for site {site_id!r}: {e}")
        return config

    async def load(self, site_id: str) -> BotTrapConfig:
        """Return the site's config, or the defaults if none is stored.

        A corrupt record falls back to the defaults. ``StoreError`` is not
        caught: the pipeline uses it to detect an unavailable store. The
        ``BOT_TRAP_TEST_MODE`` environment variable overrides ``test_mode``
        in the returned config only; it is never persisted.
        """
        config = await self._load_stored(site_id)
        env_test_mode = os.environ.get(TEST_MODE_ENV)
        if env_test_mode is not None:
            config = config.model_copy(update={"test_mode": _env_flag(env_test_mode)})
        return config

    async def save(self, site_id: str, config: BotTrapConfig) -> None:
        await self.store.set(self._key(site_id), config.model_dump_json().encode("utf-8"))

    async def update(
        self, site_id: str, patch: ConfigPatch, admin: Optional[str] = None
    ) -> BotTrapConfig:
        """Apply ``patch`` to the stored config and persist the result."""
        current = await self._load_stored(site_id)
        updated = patch.apply(current)
        if updated == current:
            return current

        await self.save(site_id, updated)
        if updated.test_mode != current.test_mode:
            await self.event_log.log(EventLogEntry(
                event=EventType.ADMIN_ACTION,
                reason="test_mode_toggle",
                outcome=f"{current.test_mode} -> {updated.test_mode}",
                admin=admin,
            ))
        return updated
