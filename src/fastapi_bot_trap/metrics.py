"""Named counters kept in the key-value store.

Rendering (Prometheus text or otherwise) is left to the host application;
this module only counts.
"""

import logging
from enum import Enum
from typing import Optional

from fastapi_bot_trap.exceptions import StoreError
from fastapi_bot_trap.store import KeyValueStore, increment_int, read_int

logger = logging.getLogger(__name__)

METRICS_PREFIX = "metrics:"


class MetricName(str, Enum):
    """Counters incremented by the admission pipeline."""
    REQUESTS_TOTAL = "requests_total"
    BANS_TOTAL = "bans_total"
    BLOCKS_TOTAL = "blocks_total"
    CHALLENGES_TOTAL = "challenges_total"
    WHITELISTED_TOTAL = "whitelisted_total"
    TEST_MODE_ACTIONS = "test_mode_actions_total"
    MAZE_HITS = "maze_hits_total"
    AUTOMATION_DETECTIONS = "automation_detections_total"
    AUTOMATION_AUTO_BANS = "automation_auto_bans_total"


def metric_key(name: MetricName, label: Optional[str] = None) -> str:
    if label:
        return f"{METRICS_PREFIX}{name.value}:{label}"
    return f"{METRICS_PREFIX}{name.value}"


class MetricsRecorder:
    """Best-effort counter increments; a failing store only loses counts."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def increment(self, name: MetricName, label: Optional[str] = None) -> None:
        key = metric_key(name, label)
        try:
            await increment_int(self.store, key)
        except StoreError as e:
            logger.warning(f"Could not increment metric {key}: {e}")

    async def get(self, name: MetricName, label: Optional[str] = None) -> int:
        key = metric_key(name, label)
        try:
            return await read_int(self.store, key)
        except StoreError as e:
            logger.warning(f"Could not read metric {key}: {e}")
            return 0
