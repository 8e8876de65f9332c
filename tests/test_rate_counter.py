"""Tests for the fixed-window rate counter."""

from unittest.mock import patch

import pytest

from fastapi_bot_trap.rate import RateCounterState, RateWindowCounter, rate_key

# Start of a 60 second window
WINDOW_START = 1_700_000_040


class TestRateWindowCounter:
    """Tests for RateWindowCounter."""

    def test_window_must_be_positive(self, store):
        with pytest.raises(ValueError):
            RateWindowCounter(store, window_seconds=0)

    def test_current_window(self, store):
        counter = RateWindowCounter(store)
        with patch("time.time", return_value=WINDOW_START + 59):
            assert counter.current_window() == WINDOW_START // 60
            assert counter.current_window(10) == (WINDOW_START + 59) // 10

    @pytest.mark.asyncio
    async def test_requests_up_to_limit_pass(self, store):
        counter = RateWindowCounter(store)

        with patch("time.time", return_value=WINDOW_START):
            results = [
                await counter.check_and_increment("default", "1.2.3.4", limit=3)
                for _ in range(5)
            ]

        assert results == [True, True, True, False, False]

    @pytest.mark.asyncio
    async def test_over_limit_requests_are_still_counted(self, store):
        counter = RateWindowCounter(store)

        with patch("time.time", return_value=WINDOW_START):
            for _ in range(5):
                await counter.check_and_increment("default", "1.2.3.4", limit=3)

        state = RateCounterState.model_validate_json(await store.get(rate_key("default", "1.2.3.4")))
        assert state.count == 5
        assert state.window == WINDOW_START // 60

    @pytest.mark.asyncio
    async def test_new_window_starts_from_zero(self, store):
        counter = RateWindowCounter(store)

        with patch("time.time", return_value=WINDOW_START):
            for _ in range(3):
                await counter.check_and_increment("default", "1.2.3.4", limit=2)

        with patch("time.time", return_value=WINDOW_START + 60):
            assert await counter.check_and_increment("default", "1.2.3.4", limit=2)

    @pytest.mark.asyncio
    async def test_counters_are_per_site_and_ip(self, store):
        counter = RateWindowCounter(store)

        with patch("time.time", return_value=WINDOW_START):
            assert await counter.check_and_increment("default", "1.2.3.4", limit=1)
            assert await counter.check_and_increment("default", "5.6.7.8", limit=1)
            assert await counter.check_and_increment("blog", "1.2.3.4", limit=1)
            assert not await counter.check_and_increment("default", "1.2.3.4", limit=1)

    @pytest.mark.asyncio
    async def test_corrupt_counter_restarts(self, store):
        counter = RateWindowCounter(store)
        await store.set(rate_key("default", "1.2.3.4"), b"[1, 2")

        assert await counter.check_and_increment("default", "1.2.3.4", limit=1)

    @pytest.mark.asyncio
    async def test_peek_does_not_write(self, store):
        counter = RateWindowCounter(store)

        with patch("time.time", return_value=WINDOW_START):
            assert await counter.peek("default", "1.2.3.4", limit=1)
            assert await store.get(rate_key("default", "1.2.3.4")) is None

            await counter.check_and_increment("default", "1.2.3.4", limit=1)
            before = await store.get(rate_key("default", "1.2.3.4"))
            assert not await counter.peek("default", "1.2.3.4", limit=1)
            assert await store.get(rate_key("default", "1.2.3.4")) == before

    @pytest.mark.asyncio
    async def test_peek_agrees_with_check(self, store):
        counter = RateWindowCounter(store)

        with patch("time.time", return_value=WINDOW_START):
            for _ in range(4):
                predicted = await counter.peek("default", "1.2.3.4", limit=2)
                actual = await counter.check_and_increment("default", "1.2.3.4", limit=2)
                assert predicted == actual

    @pytest.mark.asyncio
    async def test_failing_store_allows(self, failing_store):
        counter = RateWindowCounter(failing_store)

        assert await counter.check_and_increment("default", "1.2.3.4", limit=1)
        assert await counter.peek("default", "1.2.3.4", limit=1)
