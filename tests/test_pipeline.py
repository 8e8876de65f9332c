"""Tests for the admission pipeline."""

from unittest.mock import patch

import pytest

from fastapi_bot_trap.ban import BanReason, ban_key
from fastapi_bot_trap.config import BotTrapConfig
from fastapi_bot_trap.events import EventType
from fastapi_bot_trap.maze import maze_hits_key
from fastapi_bot_trap.metrics import MetricName
from fastapi_bot_trap.pipeline import TEST_MODE_HEADER, AdmissionOutcome, Stage
from fastapi_bot_trap.rate import RateCounterState, rate_key
from fastapi_bot_trap.store import MemoryKeyValueStore
from fastapi_bot_trap.trap import BotTrap
from tests.mocks.bot_trap_mocks import OLD_CHROME_UA, TEST_SECRET, make_context

IP = "203.0.113.7"
NOW = 1_700_000_040


def make_trap(store, **config) -> BotTrap:
    return BotTrap(store, secret=TEST_SECRET, defaults=BotTrapConfig(**config))


async def evaluate(trap: BotTrap, **kwargs):
    kwargs.setdefault("token", trap.issuer.issue(kwargs.get("ip", IP)))
    return await trap.pipeline.evaluate(make_context(**kwargs))


class TestAllowPaths:
    """Requests that reach the application."""

    @pytest.mark.asyncio
    async def test_verified_modern_browser_allowed(self, store):
        trap = make_trap(store)

        decision = await evaluate(trap)

        assert decision.outcome is AdmissionOutcome.ALLOW
        assert decision.stage is Stage.DEFAULT
        assert decision.passes_through
        assert await trap.metrics.get(MetricName.REQUESTS_TOTAL) == 1

    @pytest.mark.asyncio
    async def test_path_whitelist_skips_everything(self, store):
        trap = make_trap(store, path_whitelist=["/static/*"], honeypots=["/static/trap"])

        decision = await evaluate(trap, path="/static/trap", token=None)

        assert decision.outcome is AdmissionOutcome.ALLOW
        assert decision.stage is Stage.PATH_WHITELIST
        assert not await trap.ledger.is_banned("default", IP)
        assert await trap.metrics.get(MetricName.WHITELISTED_TOTAL) == 1

    @pytest.mark.asyncio
    async def test_ip_whitelist_skips_honeypot(self, store):
        trap = make_trap(store, whitelist=["203.0.113.0/24"])

        decision = await evaluate(trap, path="/bot-trap")

        assert decision.stage is Stage.IP_WHITELIST
        assert await store.list_keys("ban:") == []

    @pytest.mark.asyncio
    async def test_whitelisted_ip_ignores_existing_ban(self, store):
        trap = make_trap(store, whitelist=[IP])
        await trap.ledger.ban("default", IP, BanReason.ADMIN, 600)

        decision = await evaluate(trap)

        assert decision.outcome is AdmissionOutcome.ALLOW
        assert decision.stage is Stage.IP_WHITELIST

    @pytest.mark.asyncio
    async def test_unavailable_store_allows(self, failing_store):
        trap = make_trap(failing_store)

        decision = await evaluate(trap, path="/bot-trap", token=None)

        assert decision.outcome is AdmissionOutcome.ALLOW
        assert decision.stage is Stage.STORE_UNAVAILABLE
        assert decision.passes_through


class TestBlocking:
    """Requests that are blocked, and the bans they create."""

    @pytest.mark.asyncio
    async def test_honeypot_bans(self, store):
        trap = make_trap(store)

        decision = await evaluate(trap, path="/bot-trap")

        assert decision.outcome is AdmissionOutcome.BLOCK
        assert decision.stage is Stage.HONEYPOT
        assert decision.status_code == 403
        assert decision.content == "Blocked: Honeypot"
        ban = await trap.ledger.get_ban("default", IP)
        assert ban.reason is BanReason.HONEYPOT
        assert await trap.metrics.get(MetricName.BANS_TOTAL, "honeypot") == 1
        assert await trap.metrics.get(MetricName.BLOCKS_TOTAL) == 1

    @pytest.mark.asyncio
    async def test_ban_uses_configured_duration(self, store):
        trap = make_trap(store, ban_durations={"honeypot": 120})

        with patch("time.time", return_value=NOW):
            await evaluate(trap, path="/bot-trap")
            ban = await trap.ledger.get_ban("default", IP)

        assert ban.expires == NOW + 120

    @pytest.mark.asyncio
    async def test_banned_ip_blocked_everywhere(self, store):
        trap = make_trap(store)
        await trap.ledger.ban("default", IP, BanReason.ADMIN, 600)

        decision = await evaluate(trap, path="/articles/1")

        assert decision.stage is Stage.BANNED
        assert decision.status_code == 403
        assert decision.content == "Blocked: Banned (admin)"

    @pytest.mark.asyncio
    async def test_rate_limit(self, store):
        trap = make_trap(store, rate_limit=2)

        with patch("time.time", return_value=NOW + 15):
            decisions = [await evaluate(trap) for _ in range(4)]

        assert [d.outcome for d in decisions[:2]] == [AdmissionOutcome.ALLOW] * 2
        for decision in decisions[2:]:
            assert decision.stage is Stage.RATE_LIMIT
            assert decision.status_code == 429
            assert decision.headers["Retry-After"] == "45"
        ban = await trap.ledger.get_ban("default", IP)
        assert ban.reason is BanReason.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_honeypot_wins_over_rate_limit(self, store):
        trap = make_trap(store, rate_limit=1)

        with patch("time.time", return_value=NOW):
            await evaluate(trap)
            decision = await evaluate(trap, path="/bot-trap")

        assert decision.stage is Stage.HONEYPOT
        assert await store.list_keys("ban:") == [ban_key("default", IP)]
        assert (await trap.ledger.get_ban("default", IP)).reason is BanReason.HONEYPOT
        assert await trap.metrics.get(MetricName.BANS_TOTAL, "rate_limit") == 0

    @pytest.mark.asyncio
    async def test_outdated_browser(self, store):
        trap = make_trap(store)

        decision = await evaluate(trap, user_agent=OLD_CHROME_UA)

        assert decision.stage is Stage.OUTDATED_BROWSER
        assert decision.status_code == 403
        assert (await trap.ledger.get_ban("default", IP)).reason is BanReason.BROWSER

    @pytest.mark.asyncio
    async def test_bans_are_per_site(self, store):
        trap = make_trap(store)

        await evaluate(trap, path="/bot-trap", site_id="blog")
        decision = await evaluate(trap, site_id="shop")

        assert decision.outcome is AdmissionOutcome.ALLOW


class TestChallenges:
    """Challenge and maze responses."""

    @pytest.mark.asyncio
    async def test_unverified_client_challenged(self, store):
        trap = make_trap(store)

        decision = await evaluate(trap, token=None)

        assert decision.outcome is AdmissionOutcome.CHALLENGE
        assert decision.stage is Stage.CHALLENGE
        assert decision.status_code == 200
        assert decision.media_type == "text/html"
        assert trap.issuer.issue(IP) in decision.content
        assert await trap.metrics.get(MetricName.CHALLENGES_TOTAL) == 1
        assert await store.list_keys("ban:") == []

    @pytest.mark.asyncio
    async def test_whitelisted_browser_skips_challenge(self, store):
        trap = make_trap(store, browser_whitelist=[("Chrome", 120)])

        decision = await evaluate(trap, token=None)

        assert decision.stage is Stage.DEFAULT

    @pytest.mark.asyncio
    async def test_high_risk_geo_challenged_without_ban(self, store):
        trap = make_trap(store, geo_risk=["RU"])

        decision = await evaluate(trap, headers={"CF-IPCountry": "ru"})

        assert decision.outcome is AdmissionOutcome.CHALLENGE
        assert decision.stage is Stage.GEO_RISK
        assert await store.list_keys("ban:") == []

    @pytest.mark.asyncio
    async def test_maze_pages_then_ban(self, store):
        trap = make_trap(store, maze_auto_ban_threshold=3)

        decisions = [await evaluate(trap, path=f"/maze/page{i}") for i in range(3)]

        for decision in decisions[:2]:
            assert decision.outcome is AdmissionOutcome.ALLOW
            assert decision.stage is Stage.MAZE
            assert decision.media_type == "text/html"
            assert not decision.passes_through
        assert decisions[2].outcome is AdmissionOutcome.BLOCK
        assert decisions[2].status_code == 403
        assert (await trap.ledger.get_ban("default", IP)).reason is BanReason.MAZE_CRAWLER
        assert await trap.metrics.get(MetricName.BANS_TOTAL, "maze_crawler") == 1

    @pytest.mark.asyncio
    async def test_maze_disabled(self, store):
        trap = make_trap(store, maze_enabled=False)

        decision = await evaluate(trap, path="/maze/page")

        assert decision.stage is Stage.DEFAULT
        assert await store.get(maze_hits_key(IP)) is None


class TestTestMode:
    """Test mode evaluates everything and enforces nothing."""

    @pytest.mark.asyncio
    async def test_honeypot_would_block(self, store):
        trap = make_trap(store, test_mode=True)

        decision = await evaluate(trap, path="/bot-trap")

        assert decision.outcome is AdmissionOutcome.ALLOW
        assert decision.passes_through
        assert decision.test_mode
        assert decision.would_be is AdmissionOutcome.BLOCK
        assert decision.headers[TEST_MODE_HEADER] == "would_block; reason=honeypot"
        assert await store.list_keys("ban:") == []
        assert await trap.metrics.get(MetricName.TEST_MODE_ACTIONS) == 1

        events = await trap.event_log.recent()
        assert {(e.event, e.outcome) for e in events} == {
            (EventType.BAN, "would_ban"),
            (EventType.BLOCK, "would_block"),
        }

    @pytest.mark.asyncio
    async def test_challenge_would_challenge(self, store):
        trap = make_trap(store, test_mode=True)

        decision = await evaluate(trap, token=None)

        assert decision.passes_through
        assert decision.headers[TEST_MODE_HEADER] == "would_challenge; reason=js_verification"

    @pytest.mark.asyncio
    async def test_nothing_is_written(self, store):
        trap = make_trap(store, test_mode=True, rate_limit=1, maze_auto_ban_threshold=1)

        for path in ("/", "/", "/bot-trap", "/maze/a", "/maze/b"):
            decision = await evaluate(trap, path=path, user_agent=OLD_CHROME_UA)
            assert decision.outcome is AdmissionOutcome.ALLOW

        assert await store.list_keys("ban:") == []
        assert await store.list_keys("rate:") == []
        assert await store.list_keys("maze_hits:") == []

    @pytest.mark.asyncio
    async def test_rate_limit_reported_from_existing_counter(self, store):
        trap = make_trap(store, test_mode=True, rate_limit=3)

        with patch("time.time", return_value=NOW):
            state = RateCounterState(window=NOW // 60, count=3)
            await store.set(rate_key("default", IP), state.model_dump_json().encode())
            decision = await evaluate(trap)

        assert decision.headers[TEST_MODE_HEADER] == "would_block; reason=rate_limit"
        assert RateCounterState.model_validate_json(await store.get(rate_key("default", IP))).count == 3

    @pytest.mark.asyncio
    async def test_existing_ban_reported_not_enforced(self, store):
        trap = make_trap(store, test_mode=True)
        await trap.ledger.ban("default", IP, BanReason.ADMIN, 600)

        decision = await evaluate(trap)

        assert decision.passes_through
        assert decision.headers[TEST_MODE_HEADER] == "would_block; reason=admin"

    @pytest.mark.asyncio
    async def test_maze_page_still_served(self, store):
        trap = make_trap(store, test_mode=True)

        decision = await evaluate(trap, path="/maze/a")

        assert decision.stage is Stage.MAZE
        assert decision.content is not None
        assert decision.test_mode
        assert await store.get(maze_hits_key(IP)) is None

    @pytest.mark.asyncio
    async def test_maze_page_served_when_maze_would_ban(self, store):
        trap = make_trap(store, test_mode=True, maze_auto_ban_threshold=1)

        decision = await evaluate(trap, path="/maze/a")

        assert decision.outcome is AdmissionOutcome.ALLOW
        assert decision.would_be is AdmissionOutcome.BLOCK
        assert decision.media_type == "text/html"
        assert 'href="/maze/' in decision.content
        assert decision.headers[TEST_MODE_HEADER] == "would_block; reason=maze_crawler"
        assert await store.list_keys("ban:") == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "path,user_agent,token",
        [
            ("/", None, None),
            ("/bot-trap", None, "valid"),
            ("/", OLD_CHROME_UA, "valid"),
            ("/maze/x", None, "valid"),
            ("/articles", None, "valid"),
        ],
    )
    async def test_same_branch_as_enforce_mode(self, path, user_agent, token):
        enforced = make_trap(MemoryKeyValueStore(), maze_auto_ban_threshold=1)
        shadowed = make_trap(MemoryKeyValueStore(), maze_auto_ban_threshold=1, test_mode=True)
        kwargs = {"path": path}
        if user_agent:
            kwargs["user_agent"] = user_agent
        kwargs["token"] = enforced.issuer.issue(IP) if token else None

        real = await evaluate(enforced, **kwargs)
        shadow = await evaluate(shadowed, **kwargs)

        assert shadow.stage is real.stage
        assert shadow.would_be is real.outcome

    @pytest.mark.asyncio
    async def test_env_variable_enables_test_mode(self, store, monkeypatch):
        trap = make_trap(store)
        monkeypatch.setenv("BOT_TRAP_TEST_MODE", "1")

        decision = await evaluate(trap, path="/bot-trap")

        assert decision.test_mode
        assert await store.list_keys("ban:") == []
