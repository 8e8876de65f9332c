"""Link maze crawler trap.

Every page under the maze prefix links to more maze pages, so the structure
never ends. Humans rarely go more than a page or two deep; crawlers that
follow every link rack up hits in ``maze_hits:{ip}`` until the configured
threshold bans them.
"""

import hashlib
import html
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from fastapi_bot_trap.ban import BanLedger, BanReason
from fastapi_bot_trap.exceptions import StoreError
from fastapi_bot_trap.metrics import MetricName, MetricsRecorder
from fastapi_bot_trap.store import KeyValueStore, read_int

logger = logging.getLogger(__name__)

MAZE_HITS_PREFIX = "maze_hits:"
LINKS_PER_PAGE = 8

_WORDS = (
    "archive", "catalog", "index", "records", "notes", "report", "summary",
    "ledger", "digest", "listing", "register", "journal", "bulletin", "review",
    "dossier", "almanac",
)


def maze_hits_key(ip: str) -> str:
    return f"{MAZE_HITS_PREFIX}{ip}"


def is_maze_path(path: str, prefix: str) -> bool:
    return path.startswith(prefix) or path == prefix.rstrip("/")


@dataclass
class MazeHitResult:
    """Hit count after a maze request and whether it triggers a ban."""
    hits: int
    should_ban: bool


def maze_links(path: str, prefix: str, count: int = LINKS_PER_PAGE) -> List[Tuple[str, str]]:
    """Deterministic ``(href, title)`` pairs one level deeper than ``path``."""
    seed = hashlib.sha256(path.encode("utf-8")).hexdigest()
    base = prefix.rstrip("/")
    links = []
    for i in range(count):
        digest = hashlib.sha256(f"{seed}:{i}".encode("utf-8")).hexdigest()
        word = _WORDS[int(digest[:2], 16) % len(_WORDS)]
        links.append((f"{base}/{digest[:12]}", f"{word.title()} {int(digest[2:6], 16)}"))
    return links


def render_maze_page(path: str, prefix: str) -> str:
    items = "\n".join(
        f'<li><a href="{html.escape(href)}">{html.escape(title)}</a></li>'
        for href, title in maze_links(path, prefix)
    )
    return (
        "<!DOCTYPE html>\n<html><head><title>Index</title>"
        '<meta name="robots" content="noindex, nofollow"></head>'
        f"<body><h1>Index</h1><ul>\n{items}\n</ul></body></html>\n"
    )


class CrawlerTrapTracker:
    """Counts maze hits per IP and escalates deep crawlers to bans."""

    def __init__(self, store: KeyValueStore, ledger: BanLedger, metrics: MetricsRecorder):
        self.store = store
        self.ledger = ledger
        self.metrics = metrics

    @staticmethod
    def _should_ban(hits: int, threshold: int, auto_ban: bool) -> bool:
        # The request that brings the count to the threshold is the one that bans
        return auto_ban and hits >= threshold

    async def _read_hits(self, ip: str) -> int:
        try:
            return await read_int(self.store, maze_hits_key(ip))
        except StoreError as e:
            logger.warning(f"Maze hit read for {ip} failed open: {e}")
            return 0

    async def record_hit(
        self,
        site_id: str,
        ip: str,
        threshold: int,
        auto_ban: bool,
        ban_duration: int,
    ) -> MazeHitResult:
        """Count a maze request from ``ip`` and ban it once the threshold is reached."""
        hits = await self._read_hits(ip) + 1
        try:
            await self.store.set(maze_hits_key(ip), str(hits).encode("utf-8"))
        except StoreError as e:
            logger.warning(f"Could not persist maze hit for {ip}: {e}")
        await self.metrics.increment(MetricName.MAZE_HITS)

        result = MazeHitResult(hits=hits, should_ban=self._should_ban(hits, threshold, auto_ban))
        if result.should_ban:
            logger.info(f"Maze crawler {ip} reached {hits} hits (threshold {threshold})")
            await self.ledger.ban(site_id, ip, BanReason.MAZE_CRAWLER, ban_duration)
        return result

    async def peek(self, ip: str, threshold: int, auto_ban: bool) -> MazeHitResult:
        """What ``record_hit`` would report, without writing."""
        hits = await self._read_hits(ip) + 1
        return MazeHitResult(hits=hits, should_ban=self._should_ban(hits, threshold, auto_ban))

    async def top_crawlers(self, limit: Optional[int] = 10) -> List[Tuple[str, int]]:
        """``(ip, hits)`` pairs ordered by hit count, deepest crawler first."""
        crawlers: List[Tuple[str, int]] = []
        try:
            for key in await self.store.list_keys(MAZE_HITS_PREFIX):
                hits = await read_int(self.store, key)
                if hits:
                    crawlers.append((key[len(MAZE_HITS_PREFIX):], hits))
        except StoreError as e:
            logger.warning(f"Maze statistics incomplete: {e}")
        crawlers.sort(key=lambda item: item[1], reverse=True)
        return crawlers[:limit] if limit is not None else crawlers
