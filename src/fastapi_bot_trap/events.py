"""Structured event log for bans, challenges, blocks and admin actions.

Events are appended to hour-sized JSON buckets (``eventlog:{ts // 3600}``)
in the key-value store and mirrored to the ``fastapi_bot_trap.events``
logger. There is no retention sweep.
"""

import logging
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from fastapi_bot_trap.exceptions import StoreError
from fastapi_bot_trap.store import KeyValueStore

logger = logging.getLogger(__name__)

EVENTLOG_PREFIX = "eventlog:"
BUCKET_SECONDS = 3600


class EventType(str, Enum):
    """Kinds of events recorded in the event log."""
    BAN = "Ban"
    UNBAN = "Unban"
    CHALLENGE = "Challenge"
    BLOCK = "Block"
    ADMIN_ACTION = "AdminAction"


class EventLogEntry(BaseModel):
    """A single event log record."""

    ts: int = Field(default_factory=lambda: int(time.time()))
    event: EventType
    ip: Optional[str] = None
    reason: Optional[str] = None
    outcome: Optional[str] = None
    admin: Optional[str] = None


_bucket_adapter = TypeAdapter(List[EventLogEntry])


def bucket_key(ts: int) -> str:
    return f"{EVENTLOG_PREFIX}{ts // BUCKET_SECONDS}"


class EventLog:
    """Append-only, hour-bucketed event log."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def _read_bucket(self, key: str) -> List[EventLogEntry]:
        raw = await self.store.get(key)
        if raw is None:
            return []
        try:
            return _bucket_adapter.validate_json(raw)
        except ValidationError:
            logger.warning(f"Discarding corrupt event bucket {key!r}")
            return []

    async def log(self, entry: EventLogEntry) -> None:
        """Append ``entry`` to its bucket. Store failures are logged and dropped."""
        logger.info(
            f"{entry.event.value} ip={entry.ip} reason={entry.reason} outcome={entry.outcome}"
        )
        key = bucket_key(entry.ts)
        try:
            entries = await self._read_bucket(key)
            entries.append(entry)
            await self.store.set(key, _bucket_adapter.dump_json(entries))
        except StoreError as e:
            logger.warning(f"Could not persist {entry.event.value} event: {e}")

    async def recent(self, hours: int = 24, limit: Optional[int] = None) -> List[EventLogEntry]:
        """Return events from the last ``hours`` hours, newest first."""
        now = int(time.time())
        cutoff = now - hours * BUCKET_SECONDS
        events: List[EventLogEntry] = []
        try:
            for offset in range(hours + 1):
                bucket_ts = now - offset * BUCKET_SECONDS
                for entry in await self._read_bucket(bucket_key(bucket_ts)):
                    if entry.ts >= cutoff:
                        events.append(entry)
        except StoreError as e:
            logger.warning(f"Could not read event log: {e}")
        events.sort(key=lambda e: e.ts, reverse=True)
        return events[:limit] if limit is not None else events
