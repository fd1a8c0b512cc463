"""
Tests for market data ingestion: throttling, significance filter, feeds and the watchdog.
"""

import asyncio

import pytest

from conftest import ScriptedAdapter
from engine_ingest import (
    FeedMode,
    FeedState,
    MarketDataIngestor,
    QuoteMessage,
    RecomputeThrottle,
    StateMessage,
    VenueFeed,
)
from errors import ConnectivityError
from exchanges import SimulatedExchange
from exchanges.base import AssetPair


def _drain(queue):
    messages = []
    while not queue.empty():
        messages.append(queue.get_nowait())
    return messages


async def _cancel(task):
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class DownAdapter(ScriptedAdapter):
    """Venue whose REST endpoint is unreachable"""

    async def quote(self, symbol):
        raise ConnectivityError(f"[{self.name}] unreachable")


class TestRecomputeThrottle:
    """Tests for RecomputeThrottle"""

    def test_first_change_fires_immediately(self):
        throttle = RecomputeThrottle(0.5)
        assert throttle.signal(100.0)
        assert throttle.time_until_flush(100.0) is None

    def test_changes_inside_interval_are_coalesced(self):
        throttle = RecomputeThrottle(0.5)
        throttle.signal(100.0)

        assert not throttle.signal(100.1)
        assert not throttle.signal(100.2)
        assert throttle.time_until_flush(100.2) == pytest.approx(0.3)

    def test_trailing_flush(self):
        """Coalesced changes produce exactly one signal once the interval has passed"""
        throttle = RecomputeThrottle(0.5)
        throttle.signal(100.0)
        throttle.signal(100.1)

        assert not throttle.flush(100.3)
        assert throttle.flush(100.5)
        assert not throttle.flush(100.6)
        assert throttle.time_until_flush(100.6) is None

    def test_quiet_period_resets(self):
        throttle = RecomputeThrottle(0.5)
        throttle.signal(100.0)
        assert throttle.signal(101.0)

    def test_nothing_pending_never_flushes(self):
        throttle = RecomputeThrottle(0.5)
        assert not throttle.flush(100.0)
        throttle.signal(100.0)
        assert not throttle.flush(200.0)


class TestIngest:
    """Tests for MarketDataIngestor.ingest"""

    @pytest.fixture
    def ctx(self, make_context, two_venues):
        return make_context(list(two_venues))

    @pytest.fixture
    def signals(self):
        return []

    @pytest.fixture
    def ingestor(self, ctx, signals):
        return MarketDataIngestor(ctx, on_recompute=lambda: signals.append(True))

    def _msg(self, clock, price, venue="venue_a", observed_at=None):
        observed_at = clock.now if observed_at is None else observed_at
        return QuoteMessage(venue, "BTC/USDT", price, observed_at, clock.now)

    def test_first_quote_is_written(self, ctx, ingestor, signals, clock):
        assert ingestor.ingest(self._msg(clock, 50000.0))

        assert ctx.store.get("venue_a", "BTC/USDT").price == 50000.0
        assert signals == [True]
        assert ctx.metrics.value("arb_price_updates_total", venue="venue_a") == 1

    def test_insignificant_change_only_refreshes(self, ctx, ingestor, signals, clock):
        """A move below the threshold keeps the price but counts as a fresh observation"""
        ingestor.ingest(self._msg(clock, 50000.0))
        clock.advance(5)

        assert not ingestor.ingest(self._msg(clock, 50000.1))

        quote = ctx.store.get("venue_a", "BTC/USDT")
        assert quote.price == 50000.0
        assert quote.observed_at == clock.now
        assert signals == [True]
        assert ctx.metrics.value("arb_price_updates_suppressed_total", venue="venue_a") == 1

    def test_significant_change_is_written(self, ctx, ingestor, clock):
        ingestor.ingest(self._msg(clock, 50000.0))
        clock.advance(1)

        assert ingestor.ingest(self._msg(clock, 50010.0))
        assert ctx.store.get("venue_a", "BTC/USDT").price == 50010.0

    @pytest.mark.parametrize("price", [0.0, -5.0, float("nan"), float("inf"), None, "50000"])
    def test_invalid_price_dropped(self, ctx, ingestor, signals, clock, price):
        assert not ingestor.ingest(self._msg(clock, price))
        assert ctx.store.get("venue_a", "BTC/USDT") is None
        assert signals == []

    def test_future_timestamp_clamped(self, ctx, ingestor, clock):
        ingestor.ingest(self._msg(clock, 50000.0, observed_at=clock.now + 60))
        assert ctx.store.get("venue_a", "BTC/USDT").observed_at == clock.now

    def test_burst_is_throttled(self, ctx, ingestor, signals, clock):
        """Several significant changes inside the interval signal once, then flush once"""
        ingestor.ingest(self._msg(clock, 50000.0))
        clock.advance(0.1)
        ingestor.ingest(self._msg(clock, 50100.0, venue="venue_b"))
        clock.advance(0.1)
        ingestor.ingest(self._msg(clock, 50200.0))

        assert signals == [True]
        clock.advance(0.5)
        assert ingestor.throttle.flush(clock.now)

    def test_state_messages_update_metrics(self, ctx, ingestor):
        ingestor.handle(StateMessage("venue_a", FeedState.STREAMING))
        assert ctx.metrics.value("arb_feed_state", venue="venue_a") == 3

    def test_health_report(self, ctx, ingestor, clock):
        ingestor.ingest(self._msg(clock, 50000.0))
        clock.advance(2)

        report = ingestor.health()

        assert report["venue_a"]["seconds_since_update"] == 2.0
        assert report["venue_a"]["fresh_symbols"] == 1
        assert report["venue_b"]["stale_symbols"] == 1
        assert report["venue_b"]["seconds_since_update"] is None
        assert report["venue_a"]["state"] == "disconnected"


class TestVenueFeed:
    """Tests for VenueFeed"""

    @pytest.mark.asyncio
    async def test_streaming_feed(self):
        venue = SimulatedExchange("sim", seed=1, tick_interval=0.01)
        queue = asyncio.Queue()
        feed = VenueFeed(venue, ["BTC/USDT", "ETH/USDT"], queue)

        task = asyncio.create_task(feed.run())
        await asyncio.sleep(0.05)
        await _cancel(task)

        messages = _drain(queue)
        assert messages[0] == StateMessage("sim", FeedState.CONNECTING)
        assert messages[1] == StateMessage("sim", FeedState.STREAMING)
        quotes = [m for m in messages if isinstance(m, QuoteMessage)]
        assert {q.symbol for q in quotes} == {"BTC/USDT", "ETH/USDT"}
        assert feed.mode == FeedMode.STREAM

    @pytest.mark.asyncio
    async def test_falls_back_to_polling(self):
        """A venue without a stream is polled over REST"""
        venue = SimulatedExchange("sim", streaming=False)
        queue = asyncio.Queue()
        feed = VenueFeed(venue, ["BTC/USDT"], queue, poll_interval=0.01)

        task = asyncio.create_task(feed.run())
        await asyncio.sleep(0.05)
        await _cancel(task)

        assert feed.mode == FeedMode.POLL
        quotes = [m for m in _drain(queue) if isinstance(m, QuoteMessage)]
        assert len(quotes) >= 2
        assert quotes[0].price == pytest.approx(venue.price("BTC/USDT"), rel=0.01)

    @pytest.mark.asyncio
    async def test_poll_once_all_failing_raises(self):
        venue = SimulatedExchange("sim", streaming=False)
        feed = VenueFeed(venue, ["DOGE/USDT"], asyncio.Queue())

        with pytest.raises(ConnectivityError):
            await feed.poll_once()

    @pytest.mark.asyncio
    async def test_reconnects_after_error(self):
        """A failing session is retried after the reconnect delay"""
        venue = SimulatedExchange("sim", streaming=False)
        queue = asyncio.Queue()
        feed = VenueFeed(venue, ["DOGE/USDT"], queue, reconnect_delay=0.01)

        task = asyncio.create_task(feed.run())
        await asyncio.sleep(0.05)
        await _cancel(task)

        assert feed.reconnects >= 2
        states = [m for m in _drain(queue) if isinstance(m, StateMessage)]
        assert StateMessage("sim", FeedState.RECONNECTING, "error") in states

    @pytest.mark.asyncio
    async def test_force_reconnect(self, make_context):
        venue = SimulatedExchange("sim", seed=1, tick_interval=0.01)
        ctx = make_context([])
        feed = VenueFeed(venue, ["BTC/USDT"], asyncio.Queue(), reconnect_delay=0.0, metrics=ctx.metrics)

        assert not feed.force_reconnect()

        task = asyncio.create_task(feed.run())
        await asyncio.sleep(0.03)
        assert feed.force_reconnect("watchdog")
        await asyncio.sleep(0.03)
        await _cancel(task)

        assert feed.reconnects == 1
        assert ctx.metrics.value("arb_feed_reconnects_total", venue="sim", reason="watchdog") == 1


class TestMarketDataIngestor:
    """Tests for the running ingestor"""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, make_context, two_venues):
        """ScriptedAdapter has no stream, so both venues are polled into the store"""
        ctx = make_context(list(two_venues), poll_interval=0.01)
        signals = []
        ingestor = MarketDataIngestor(ctx, on_recompute=lambda: signals.append(True))

        await ingestor.start()
        try:
            await asyncio.sleep(0.05)
        finally:
            await ingestor.stop()

        assert ctx.store.get("venue_a", "BTC/USDT").price == 50000.0
        assert ctx.store.get("venue_b", "BTC/USDT").price == 50200.0
        assert signals
        assert all(feed.mode == FeedMode.POLL for feed in ingestor.feeds.values())
        assert all(feed.state == FeedState.DISCONNECTED for feed in ingestor.feeds.values())

    @pytest.mark.asyncio
    async def test_watchdog_restarts_quiet_venues(self, make_context, two_venues, clock):
        ctx = make_context(list(two_venues), poll_interval=0.01, reconnect_delay=0.0)
        ingestor = MarketDataIngestor(ctx)

        await ingestor.start()
        try:
            await asyncio.sleep(0.03)
            assert ingestor.check_health(now=clock.now + 10) == []

            restarted = ingestor.check_health(now=clock.now + ctx.config.max_update_age + 1)
            await asyncio.sleep(0.03)
        finally:
            await ingestor.stop()

        assert restarted == ["venue_a", "venue_b"]
        assert all(feed.reconnects == 1 for feed in ingestor.feeds.values())
        assert ctx.metrics.value("arb_feed_reconnects_total", venue="venue_a", reason="watchdog") == 1

    @pytest.mark.asyncio
    async def test_poll_once(self, make_context, two_venues, clock):
        down = DownAdapter("venue_c", {"BTC/USDT": AssetPair("BTC", "USDT")}, clock=clock)
        ctx = make_context(list(two_venues) + [down])
        ingestor = MarketDataIngestor(ctx)

        written = await ingestor.poll_once()

        assert written == 2
        assert ctx.store.get("venue_a", "BTC/USDT").price == 50000.0
        assert ctx.store.get("venue_c", "BTC/USDT") is None

    @pytest.mark.asyncio
    async def test_poll_once_selected_venues(self, make_context, two_venues):
        ctx = make_context(list(two_venues))
        ingestor = MarketDataIngestor(ctx)

        assert await ingestor.poll_once(["venue_b", "unknown"]) == 1
        assert ctx.store.venues() == ["venue_b"]
