"""Ban ledger: per-(site, IP) ban records with expiry.

Expiry is enforced only on the read path. A record found expired, or one
that no longer deserializes, is deleted by the read that finds it; there is
no background sweeper.

Every store failure is fail-open: an unreadable ban counts as "not banned"
and a failed write is logged and dropped.
"""

import logging
import time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ValidationError

from fastapi_bot_trap.exceptions import StoreError
from fastapi_bot_trap.store import KeyValueStore

logger = logging.getLogger(__name__)

BAN_PREFIX = "ban:"


class BanReason(str, Enum):
    """Why an IP was banned."""
    HONEYPOT = "honeypot"
    RATE_LIMIT = "rate_limit"
    BROWSER = "browser"
    ADMIN = "admin"
    MAZE_CRAWLER = "maze_crawler"
    AUTOMATION = "automation"


class BanRecord(BaseModel):
    """Stored ban record."""

    reason: BanReason
    expires: int

    def is_active(self, now: Optional[float] = None) -> bool:
        return self.expires > (time.time() if now is None else now)


class BanEntry(BaseModel):
    """A ban record together with the IP it applies to."""

    ip: str
    reason: BanReason
    expires: int


def ban_key(site_id: str, ip: str) -> str:
    return f"{BAN_PREFIX}{site_id}:{ip}"


class BanLedger:
    """Creates, checks and removes bans."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def _read_active(self, key: str) -> Optional[BanRecord]:
        """Read the record at ``key``, deleting it if expired or corrupt."""
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            record = BanRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"Deleting undeserializable ban record {key!r}")
            await self.store.delete(key)
            return None
        if not record.is_active():
            logger.debug(f"Ban {key!r} expired at {record.expires}, deleting")
            await self.store.delete(key)
            return None
        return record

    async def get_ban(self, site_id: str, ip: str) -> Optional[BanRecord]:
        """Return the active ban for ``ip`` or None."""
        try:
            return await self._read_active(ban_key(site_id, ip))
        except StoreError as e:
            logger.warning(f"Ban check for {ip} failed open: {e}")
            return None

    async def is_banned(self, site_id: str, ip: str) -> bool:
        return await self.get_ban(site_id, ip) is not None

    async def ban(
        self, site_id: str, ip: str, reason: BanReason, duration_seconds: int
    ) -> BanRecord:
        """Ban ``ip`` for ``duration_seconds`` from now.

        Re-banning replaces the expiry instead of extending it.
        """
        record = BanRecord(reason=reason, expires=int(time.time()) + int(duration_seconds))
        try:
            await self.store.set(ban_key(site_id, ip), record.model_dump_json().encode("utf-8"))
            logger.info(f"Banned {ip} on {site_id} for {duration_seconds}s ({reason.value})")
        except StoreError as e:
            logger.warning(f"Could not persist ban for {ip} ({reason.value}): {e}")
        return record

    async def unban(self, site_id: str, ip: str) -> None:
        try:
            await self.store.delete(ban_key(site_id, ip))
            logger.info(f"Unbanned {ip} on {site_id}")
        except StoreError as e:
            logger.warning(f"Could not remove ban for {ip}: {e}")

    async def list_bans(self, site_id: str) -> List[BanEntry]:
        """Return all active bans for a site, pruning stale records on the way."""
        prefix = f"{BAN_PREFIX}{site_id}:"
        entries: List[BanEntry] = []
        try:
            for key in await self.store.list_keys(prefix):
                record = await self._read_active(key)
                if record is not None:
                    entries.append(BanEntry(
                        ip=key[len(prefix):],
                        reason=record.reason,
                        expires=record.expires,
                    ))
        except StoreError as e:
            logger.warning(f"Ban listing for {site_id} incomplete: {e}")
        entries.sort(key=lambda entry: entry.expires)
        return entries
