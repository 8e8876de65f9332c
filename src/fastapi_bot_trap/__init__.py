"""FastAPI Bot Trap - stateful bot admission control for FastAPI apps.

Every request is classified as allow, challenge or block by an ordered chain
of checks: whitelists, honeypot paths, per-IP rate limits, bans, a link maze
crawler trap, a JavaScript challenge, browser version and geography checks.
Offenders are banned for a configurable time, and a test mode evaluates the
whole chain without enforcing anything.

Key Components:
    - BotTrap: wires the pipeline and its state around one key-value store
    - AdmissionPipeline: the ordered allow / challenge / block decision chain
    - BotTrapMiddleware: guards a whole application
    - bot_trap_shield: guards individual endpoints

Usage:
    ```python
    from fastapi import FastAPI
    from fastapi_bot_trap import BotTrap, SQLiteKeyValueStore

    app = FastAPI()
    trap = BotTrap(SQLiteKeyValueStore("bot_trap.db"), secret="change-me")
    trap.install(app)
    ```
"""

from fastapi_bot_trap.automation import (
    AutomationReport,
    AutomationReportResult,
    AutomationScoreAggregator,
)
from fastapi_bot_trap.ban import BanEntry, BanLedger, BanReason, BanRecord
from fastapi_bot_trap.challenge import ChallengeTokenIssuer
from fastapi_bot_trap.config import (
    BanDurations,
    BotTrapConfig,
    ConfigPatch,
    ConfigStore,
    load_config_file,
)
from fastapi_bot_trap.events import EventLog, EventLogEntry, EventType
from fastapi_bot_trap.exceptions import BotTrapError, ConfigError, StoreError
from fastapi_bot_trap.maze import CrawlerTrapTracker, MazeHitResult
from fastapi_bot_trap.metrics import MetricName, MetricsRecorder
from fastapi_bot_trap.middleware import BotTrapMiddleware
from fastapi_bot_trap.pipeline import (
    AdmissionDecision,
    AdmissionOutcome,
    AdmissionPipeline,
    RequestContext,
    Stage,
)
from fastapi_bot_trap.rate import RateWindowCounter
from fastapi_bot_trap.shield import AdmissionShield, bot_trap_shield
from fastapi_bot_trap.store import KeyValueStore, MemoryKeyValueStore, SQLiteKeyValueStore
from fastapi_bot_trap.trap import BotTrap
from fastapi_bot_trap.whitelist import is_whitelisted

__version__ = "0.1.0"

__all__ = [
    "AdmissionDecision",
    "AdmissionOutcome",
    "AdmissionPipeline",
    "AdmissionShield",
    "AutomationReport",
    "AutomationReportResult",
    "AutomationScoreAggregator",
    "BanDurations",
    "BanEntry",
    "BanLedger",
    "BanReason",
    "BanRecord",
    "BotTrap",
    "BotTrapConfig",
    "BotTrapError",
    "BotTrapMiddleware",
    "ChallengeTokenIssuer",
    "ConfigError",
    "ConfigPatch",
    "ConfigStore",
    "CrawlerTrapTracker",
    "EventLog",
    "EventLogEntry",
    "EventType",
    "KeyValueStore",
    "MazeHitResult",
    "MemoryKeyValueStore",
    "MetricName",
    "MetricsRecorder",
    "RateWindowCounter",
    "RequestContext",
    "SQLiteKeyValueStore",
    "Stage",
    "StoreError",
    "bot_trap_shield",
    "is_whitelisted",
    "load_config_file",
]
