"""Fixed-window request counter per (site, IP).

Each IP has one record holding the current window id and the number of
requests seen in it. A request in a new window starts again from zero; there
is no decay or token-bucket smoothing.
"""

import logging
import time
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from fastapi_bot_trap.exceptions import StoreError
from fastapi_bot_trap.store import KeyValueStore

logger = logging.getLogger(__name__)

RATE_PREFIX = "rate:"


class RateCounterState(BaseModel):
    """Stored counter state."""

    window: int
    count: int = Field(default=0, ge=0)


def rate_key(site_id: str, ip: str) -> str:
    return f"{RATE_PREFIX}{site_id}:{ip}"


class RateWindowCounter:
    """Per-IP fixed window rate limiter backed by the key-value store."""

    def __init__(self, store: KeyValueStore, window_seconds: int = 60):
        if window_seconds < 1:
            raise ValueError("window_seconds must be at least 1")
        self.store = store
        self.window_seconds = window_seconds

    def current_window(self, window_seconds: Optional[int] = None) -> int:
        return int(time.time()) // (window_seconds or self.window_seconds)

    async def _current_count(self, key: str, window: int, prune: bool) -> int:
        raw = await self.store.get(key)
        if raw is None:
            return 0
        try:
            state = RateCounterState.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"Discarding corrupt rate counter {key!r}")
            if prune:
                await self.store.delete(key)
            return 0
        return state.count if state.window == window else 0

    async def check_and_increment(
        self, site_id: str, ip: str, limit: int, window_seconds: Optional[int] = None
    ) -> bool:
        """Count this request and report whether it is within ``limit``.

        Requests over the limit are still counted, so every further request
        in the window keeps failing. A store read failure allows the request.
        """
        key = rate_key(site_id, ip)
        window = self.current_window(window_seconds)
        try:
            count = await self._current_count(key, window, prune=True)
        except StoreError as e:
            logger.warning(f"Rate check for {ip} failed open: {e}")
            return True

        count += 1
        state = RateCounterState(window=window, count=count)
        try:
            await self.store.set(key, state.model_dump_json().encode("utf-8"))
        except StoreError as e:
            logger.warning(f"Could not persist rate counter for {ip}: {e}")
        return count <= limit

    async def peek(
        self, site_id: str, ip: str, limit: int, window_seconds: Optional[int] = None
    ) -> bool:
        """Answer what ``check_and_increment`` would, without writing anything."""
        key = rate_key(site_id, ip)
        window = self.current_window(window_seconds)
        try:
            count = await self._current_count(key, window, prune=False)
        except StoreError as e:
            logger.warning(f"Rate peek for {ip} failed open: {e}")
            return True
        return count + 1 <= limit
