"""Admission pipeline: classifies each request as allow, challenge or block.

Checks run cheapest first and the first decisive stage wins:

 1. path whitelist                -> allow
 2. IP / CIDR whitelist           -> allow
 3. test mode                     -> stages 4-10 evaluated read-only, always allow
 4. honeypot path                 -> ban (honeypot), block
 5. rate limit exceeded           -> ban (rate_limit), block
 6. already banned                -> block
 7. link maze path                -> maze page, or ban (maze_crawler) and block
 8. JS challenge not passed       -> challenge
 9. outdated browser              -> ban (browser), block
10. high-risk geography           -> challenge
11. otherwise                     -> allow

Enforce mode and test mode walk the same chain through ``_first_verdict``;
test mode swaps every write (ban, rate counter, maze counter) for a read, so
both modes pick the same branch for the same state.

If the store cannot even serve the site config, every stateful check is
skipped and the request is allowed.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from fastapi import Request, Response, status

from fastapi_bot_trap.ban import BanLedger, BanReason
from fastapi_bot_trap.browser import is_outdated_browser
from fastapi_bot_trap.challenge import ChallengeTokenIssuer
from fastapi_bot_trap.config import BotTrapConfig, ConfigStore
from fastapi_bot_trap.events import EventLog, EventLogEntry, EventType
from fastapi_bot_trap.exceptions import StoreError
from fastapi_bot_trap.geo import is_high_risk_geo
from fastapi_bot_trap.maze import CrawlerTrapTracker, is_maze_path, render_maze_page
from fastapi_bot_trap.metrics import MetricName, MetricsRecorder
from fastapi_bot_trap.rate import RateWindowCounter
from fastapi_bot_trap.utils import extract_client_ip
from fastapi_bot_trap.whitelist import is_honeypot, is_path_whitelisted, is_whitelisted

logger = logging.getLogger(__name__)

TEST_MODE_HEADER = "X-Bot-Trap-Test-Mode"


class AdmissionOutcome(str, Enum):
    """Terminal admission decisions."""
    ALLOW = "allow"
    CHALLENGE = "challenge"
    BLOCK = "block"


class Stage(str, Enum):
    """Pipeline stage that produced a decision."""
    STORE_UNAVAILABLE = "store_unavailable"
    PATH_WHITELIST = "path_whitelist"
    IP_WHITELIST = "ip_whitelist"
    HONEYPOT = "honeypot"
    RATE_LIMIT = "rate_limit"
    BANNED = "banned"
    MAZE = "maze"
    CHALLENGE = "challenge"
    OUTDATED_BROWSER = "outdated_browser"
    GEO_RISK = "geo_risk"
    DEFAULT = "default"


@dataclass
class RequestContext:
    """The parts of a request the pipeline looks at."""
    ip: str
    path: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    site_id: str = "default"

    def __post_init__(self):
        self.headers = {name.lower(): value for name, value in self.headers.items()}

    @classmethod
    def from_request(cls, request: Request, site_id: str = "default") -> "RequestContext":
        return cls(
            ip=extract_client_ip(request),
            path=request.url.path,
            method=request.method,
            headers=dict(request.headers.items()),
            site_id=site_id,
        )

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    @property
    def cookie_header(self) -> Optional[str]:
        return self.headers.get("cookie")


@dataclass
class AdmissionDecision:
    """Result of evaluating one request.

    ``content`` of None means the request should continue to the application.
    """
    outcome: AdmissionOutcome
    stage: Stage
    reason: Optional[str] = None
    status_code: int = status.HTTP_200_OK
    content: Optional[str] = None
    media_type: str = "text/plain"
    headers: Dict[str, str] = field(default_factory=dict)
    test_mode: bool = False
    would_be: Optional[AdmissionOutcome] = None

    @property
    def passes_through(self) -> bool:
        return self.content is None

    def to_response(self) -> Response:
        return Response(
            content=self.content or "",
            status_code=self.status_code,
            media_type=self.media_type,
            headers=self.headers,
        )

    def apply_headers(self, response: Response) -> Response:
        for name, value in self.headers.items():
            response.headers[name] = value
        return response


@dataclass
class _Verdict:
    outcome: AdmissionOutcome
    stage: Stage
    reason: str
    status_code: int = status.HTTP_200_OK
    content: Optional[str] = None
    media_type: str = "text/plain"
    headers: Dict[str, str] = field(default_factory=dict)
    ban_reason: Optional[BanReason] = None
    # set when the stage itself already wrote the ban
    ban_recorded: bool = False


class AdmissionPipeline:
    """Runs the ordered admission checks for one request at a time."""

    def __init__(
        self,
        config_store: ConfigStore,
        ledger: BanLedger,
        rate_counter: RateWindowCounter,
        issuer: ChallengeTokenIssuer,
        tracker: CrawlerTrapTracker,
        metrics: MetricsRecorder,
        event_log: EventLog,
        report_path: str = "/automation-report",
    ):
        self.config_store = config_store
        self.ledger = ledger
        self.rate_counter = rate_counter
        self.issuer = issuer
        self.tracker = tracker
        self.metrics = metrics
        self.event_log = event_log
        self.report_path = report_path

    async def evaluate(self, ctx: RequestContext) -> AdmissionDecision:
        try:
            config = await self.config_store.load(ctx.site_id)
        except StoreError as e:
            logger.warning(f"Store unavailable, bypassing bot trap for {ctx.ip}: {e}")
            return AdmissionDecision(
                AdmissionOutcome.ALLOW, Stage.STORE_UNAVAILABLE, reason="store_unavailable"
            )

        await self.metrics.increment(MetricName.REQUESTS_TOTAL)

        if is_path_whitelisted(ctx.path, config.path_whitelist):
            await self.metrics.increment(MetricName.WHITELISTED_TOTAL)
            return AdmissionDecision(AdmissionOutcome.ALLOW, Stage.PATH_WHITELIST, reason="path_whitelisted")

        if is_whitelisted(ctx.ip, config.whitelist):
            await self.metrics.increment(MetricName.WHITELISTED_TOTAL)
            return AdmissionDecision(AdmissionOutcome.ALLOW, Stage.IP_WHITELIST, reason="ip_whitelisted")

        if config.test_mode:
            verdict = await self._first_verdict(ctx, config, enforce=False)
            return await self._shadow(ctx, config, verdict)

        verdict = await self._first_verdict(ctx, config, enforce=True)
        if verdict is None:
            return AdmissionDecision(AdmissionOutcome.ALLOW, Stage.DEFAULT)
        return await self._enforce(ctx, config, verdict)

    async def _first_verdict(
        self, ctx: RequestContext, config: BotTrapConfig, enforce: bool
    ) -> Optional[_Verdict]:
        """Walk stages 4-10 and return the first decisive verdict.

        With ``enforce`` False nothing is written: the rate counter and maze
        tracker are only peeked.
        """
        site_id, ip = ctx.site_id, ctx.ip

        if is_honeypot(ctx.path, config.honeypots):
            return _Verdict(
                AdmissionOutcome.BLOCK, Stage.HONEYPOT, "honeypot",
                status_code=status.HTTP_403_FORBIDDEN,
                content="Blocked: Honeypot",
                ban_reason=BanReason.HONEYPOT,
            )

        if enforce:
            within_limit = await self.rate_counter.check_and_increment(
                site_id, ip, config.rate_limit, config.rate_window_seconds
            )
        else:
            within_limit = await self.rate_counter.peek(
                site_id, ip, config.rate_limit, config.rate_window_seconds
            )
        if not within_limit:
            window = config.rate_window_seconds
            retry_after = window - int(time.time()) % window
            return _Verdict(
                AdmissionOutcome.BLOCK, Stage.RATE_LIMIT, "rate_limit",
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content="Blocked: Rate limit",
                headers={"Retry-After": str(retry_after)},
                ban_reason=BanReason.RATE_LIMIT,
            )

        ban = await self.ledger.get_ban(site_id, ip)
        if ban is not None:
            return _Verdict(
                AdmissionOutcome.BLOCK, Stage.BANNED, ban.reason.value,
                status_code=status.HTTP_403_FORBIDDEN,
                content=f"Blocked: Banned ({ban.reason.value})",
            )

        if config.maze_enabled and is_maze_path(ctx.path, config.maze_path_prefix):
            if enforce:
                hit = await self.tracker.record_hit(
                    site_id, ip,
                    config.maze_auto_ban_threshold,
                    config.maze_auto_ban,
                    config.get_ban_duration(BanReason.MAZE_CRAWLER.value),
                )
            else:
                hit = await self.tracker.peek(ip, config.maze_auto_ban_threshold, config.maze_auto_ban)
            if hit.should_ban:
                return _Verdict(
                    AdmissionOutcome.BLOCK, Stage.MAZE, "maze_crawler",
                    status_code=status.HTTP_403_FORBIDDEN,
                    content="Blocked: Maze crawler",
                    ban_reason=BanReason.MAZE_CRAWLER,
                    ban_recorded=enforce,
                )
            return _Verdict(
                AdmissionOutcome.ALLOW, Stage.MAZE, "maze",
                content=render_maze_page(ctx.path, config.maze_path_prefix),
                media_type="text/html",
            )

        if self.issuer.needs_challenge_with_whitelist(
            ctx.cookie_header, ctx.user_agent, ip, config.browser_whitelist
        ):
            return _Verdict(
                AdmissionOutcome.CHALLENGE, Stage.CHALLENGE, "js_verification",
                content=self.issuer.render_challenge_page(ip, self.report_path),
                media_type="text/html",
            )

        if is_outdated_browser(ctx.user_agent, config.browser_block):
            return _Verdict(
                AdmissionOutcome.BLOCK, Stage.OUTDATED_BROWSER, "browser",
                status_code=status.HTTP_403_FORBIDDEN,
                content="Blocked: Outdated browser",
                ban_reason=BanReason.BROWSER,
            )

        if is_high_risk_geo(ctx.headers, config.geo_risk):
            return _Verdict(
                AdmissionOutcome.CHALLENGE, Stage.GEO_RISK, "geo_risk",
                content=self.issuer.render_challenge_page(ip, self.report_path),
                media_type="text/html",
            )

        return None

    async def _enforce(
        self, ctx: RequestContext, config: BotTrapConfig, verdict: _Verdict
    ) -> AdmissionDecision:
        if verdict.ban_reason is not None:
            if not verdict.ban_recorded:
                await self.ledger.ban(
                    ctx.site_id, ctx.ip, verdict.ban_reason,
                    config.get_ban_duration(verdict.ban_reason.value),
                )
            await self.metrics.increment(MetricName.BANS_TOTAL, verdict.ban_reason.value)
            await self.event_log.log(EventLogEntry(
                event=EventType.BAN, ip=ctx.ip, reason=verdict.ban_reason.value, outcome="banned",
            ))

        if verdict.outcome is AdmissionOutcome.BLOCK:
            await self.metrics.increment(MetricName.BLOCKS_TOTAL)
            await self.event_log.log(EventLogEntry(
                event=EventType.BLOCK, ip=ctx.ip, reason=verdict.reason, outcome="blocked",
            ))
        elif verdict.outcome is AdmissionOutcome.CHALLENGE:
            await self.metrics.increment(MetricName.CHALLENGES_TOTAL)
            await self.event_log.log(EventLogEntry(
                event=EventType.CHALLENGE, ip=ctx.ip, reason=verdict.reason, outcome="challenged",
            ))

        logger.debug(f"{ctx.ip} {ctx.path}: {verdict.outcome.value} at {verdict.stage.value}")
        return AdmissionDecision(
            outcome=verdict.outcome,
            stage=verdict.stage,
            reason=verdict.reason,
            status_code=verdict.status_code,
            content=verdict.content,
            media_type=verdict.media_type,
            headers=dict(verdict.headers),
        )

    async def _shadow(
        self, ctx: RequestContext, config: BotTrapConfig, verdict: Optional[_Verdict]
    ) -> AdmissionDecision:
        """Record what enforce mode would have done and let the request through."""
        if verdict is None:
            return AdmissionDecision(
                AdmissionOutcome.ALLOW, Stage.DEFAULT,
                test_mode=True, would_be=AdmissionOutcome.ALLOW,
            )

        if verdict.outcome is AdmissionOutcome.ALLOW:
            return AdmissionDecision(
                outcome=AdmissionOutcome.ALLOW,
                stage=verdict.stage,
                reason=verdict.reason,
                content=verdict.content,
                media_type=verdict.media_type,
                test_mode=True,
                would_be=AdmissionOutcome.ALLOW,
            )

        would = f"would_{verdict.outcome.value}"
        await self.metrics.increment(MetricName.TEST_MODE_ACTIONS)
        if verdict.ban_reason is not None:
            await self.event_log.log(EventLogEntry(
                event=EventType.BAN, ip=ctx.ip, reason=verdict.ban_reason.value, outcome="would_ban",
            ))
        event = EventType.BLOCK if verdict.outcome is AdmissionOutcome.BLOCK else EventType.CHALLENGE
        await self.event_log.log(EventLogEntry(event=event, ip=ctx.ip, reason=verdict.reason, outcome=would))

        logger.info(f"TEST MODE: {ctx.ip} {ctx.path} {would} ({verdict.reason})")
        # a would-be maze ban still gets the maze page
        content, media_type = None, "text/plain"
        if verdict.stage is Stage.MAZE:
            content, media_type = render_maze_page(ctx.path, config.maze_path_prefix), "text/html"
        return AdmissionDecision(
            outcome=AdmissionOutcome.ALLOW,
            stage=verdict.stage,
            reason=verdict.reason,
            content=content,
            media_type=media_type,
            headers={TEST_MODE_HEADER: f"{would}; reason={verdict.reason}"},
            test_mode=True,
            would_be=verdict.outcome,
        )
