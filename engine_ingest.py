"""
Market Data Ingestor

One long-lived feed task per venue keeps the price state store fresh.
Feeds never touch shared state directly: they post quote and
connection-state messages onto a queue that a single consumer task
drains, applying the change-significance filter and the recompute
throttle.

Feed lifecycle:
  DISCONNECTED -> CONNECTING -> STREAMING -> (error/close) -> RECONNECTING -> CONNECTING

A watchdog force-reconnects any feed that has gone quiet for longer than
the max update age, whatever its socket claims.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Union

from errors import ArbitrageError, ConnectivityError, NotSupportedError
from exchanges.base import ExchangeAdapter

logger = logging.getLogger(__name__)


class FeedState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"


class FeedMode(Enum):
    STREAM = "stream"
    POLL = "poll"


@dataclass(frozen=True)
class QuoteMessage:
    venue: str
    symbol: str
    price: float
    observed_at: float
    received_at: float


@dataclass(frozen=True)
class StateMessage:
    venue: str
    state: FeedState
    reason: Optional[str] = None


FeedMessage = Union[QuoteMessage, StateMessage]


class RecomputeThrottle:
    """
    At most one recompute signal per interval.

    The first change after a quiet period fires immediately; changes
    arriving inside the interval are coalesced into one trailing signal
    once the interval has elapsed.
    """

    def __init__(self, interval: float):
        self.interval = interval
        self._last_emit: Optional[float] = None
        self._pending = False

    def signal(self, now: float) -> bool:
        """Record a change; True if a recompute should fire now"""
        if self._last_emit is None or now - self._last_emit >= self.interval:
            self._last_emit = now
            self._pending = False
            return True
        self._pending = True
        return False

    def flush(self, now: float) -> bool:
        """True if a coalesced signal is due"""
        if self._pending and now - self._last_emit >= self.interval:
            self._last_emit = now
            self._pending = False
            return True
        return False

    def time_until_flush(self, now: float) -> Optional[float]:
        if not self._pending:
            return None
        return max(0.0, self._last_emit + self.interval - now)


class VenueFeed:
    """Connection state machine for one venue"""

    def __init__(
        self,
        adapter: ExchangeAdapter,
        symbols: List[str],
        queue: "asyncio.Queue[FeedMessage]",
        reconnect_delay: float = 3.0,
        poll_interval: float = 1.0,
        call_timeout: float = 5.0,
        metrics=None,
        clock: Callable[[], float] = time.time,
    ):
        self.adapter = adapter
        self.venue = adapter.name
        self.symbols = symbols
        self.queue = queue
        self.reconnect_delay = reconnect_delay
        self.poll_interval = poll_interval
        self.call_timeout = call_timeout
        self.metrics = metrics
        self.clock = clock

        self.state = FeedState.DISCONNECTED
        self.mode = FeedMode.STREAM
        self.reconnects = 0
        self._session: Optional[asyncio.Task] = None
        self._reconnect_reason: Optional[str] = None

    def _set_state(self, state: FeedState, reason: Optional[str] = None):
        if state == self.state:
            return
        self.state = state
        self.queue.put_nowait(StateMessage(self.venue, state, reason))

    def _on_update(self, symbol: str, price: float, observed_at: Optional[float] = None):
        now = self.clock()
        if self.state != FeedState.STREAMING:
            self._set_state(FeedState.STREAMING)
        self.queue.put_nowait(QuoteMessage(
            venue=self.venue,
            symbol=symbol,
            price=price,
            observed_at=now if observed_at is None else observed_at,
            received_at=now,
        ))

    async def run(self):
        """Connect, stream, and reconnect after a fixed delay, forever"""
        while True:
            self._set_state(FeedState.CONNECTING)
            self._session = asyncio.create_task(self._run_session())
            try:
                await self._session
                reason = "closed"
                logger.warning(f"[{self.venue}] Feed ended")
            except asyncio.CancelledError:
                if self._reconnect_reason is None:
                    self._session.cancel()
                    raise
                reason, self._reconnect_reason = self._reconnect_reason, None
                logger.warning(f"[{self.venue}] Feed restarted ({reason})")
            except Exception as e:
                reason = "error"
                logger.warning(f"[{self.venue}] Feed error: {e}")

            self.reconnects += 1
            if self.metrics is not None:
                self.metrics.record_reconnect(self.venue, reason)
            self._set_state(FeedState.RECONNECTING, reason)
            logger.info(f"[{self.venue}] Reconnecting in {self.reconnect_delay}s (attempt {self.reconnects})...")
            await asyncio.sleep(self.reconnect_delay)

    def force_reconnect(self, reason: str = "watchdog") -> bool:
        """Tear down the current session; run() reconnects it"""
        if self._session is None or self._session.done():
            return False
        self._reconnect_reason = reason
        self._session.cancel()
        return True

    async def _run_session(self):
        if self.mode == FeedMode.STREAM:
            try:
                await self.adapter.subscribe(self.symbols, self._on_update)
                return
            except NotSupportedError:
                logger.info(f"[{self.venue}] No streaming feed, polling every {self.poll_interval}s")
                self.mode = FeedMode.POLL
        await self._poll_forever()

    async def _poll_forever(self):
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self):
        """Fetch every symbol once over REST"""
        failures = 0
        for symbol in self.symbols:
            try:
                tick = await asyncio.wait_for(self.adapter.quote(symbol), timeout=self.call_timeout)
            except asyncio.TimeoutError:
                failures += 1
                logger.warning(f"[{self.venue}] Quote for {symbol} timed out")
                continue
            except ArbitrageError as e:
                failures += 1
                logger.warning(f"[{self.venue}] Quote for {symbol} failed: {e}")
                continue
            self._on_update(symbol, tick.price, tick.as_of)

        if self.symbols and failures == len(self.symbols):
            raise ConnectivityError(f"[{self.venue}] All {failures} quote requests failed")


class MarketDataIngestor:
    """Owns the venue feeds and writes accepted quotes into the price store"""

    def __init__(self, ctx, on_recompute: Optional[Callable[[], None]] = None):
        self.ctx = ctx
        cfg = ctx.config
        self.on_recompute = on_recompute
        self.queue: "asyncio.Queue[FeedMessage]" = asyncio.Queue()
        self.throttle = RecomputeThrottle(cfg.broadcast_throttle)
        self.feeds: Dict[str, VenueFeed] = {
            venue: VenueFeed(
                adapter,
                sorted(ctx.markets.get(venue, {})),
                self.queue,
                reconnect_delay=cfg.reconnect_delay,
                poll_interval=cfg.poll_interval,
                call_timeout=cfg.call_timeout,
                metrics=ctx.metrics,
                clock=ctx.store.clock,
            )
            for venue, adapter in ctx.adapters.items()
        }
        self._last_received: Dict[str, float] = {}
        self._tasks: List[asyncio.Task] = []
        self.running = False

    @property
    def clock(self):
        return self.ctx.store.clock

    async def start(self):
        """Start one task per venue feed plus the consumer and watchdog"""
        self.running = True
        now = self.clock()
        for venue, feed in self.feeds.items():
            self._last_received[venue] = now
            self._tasks.append(asyncio.create_task(feed.run(), name=f"feed-{venue}"))
        self._tasks.append(asyncio.create_task(self._consume(), name="ingest-consumer"))
        self._tasks.append(asyncio.create_task(self._health_loop(), name="ingest-watchdog"))
        logger.info(f"Ingesting {len(self.feeds)} venues: {', '.join(self.feeds)}")

    async def stop(self):
        self.running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        for venue, feed in self.feeds.items():
            feed.state = FeedState.DISCONNECTED
            self.ctx.metrics.record_feed_state(venue, FeedState.DISCONNECTED.value)
        logger.info("Ingestor stopped")

    async def _consume(self):
        while True:
            timeout = self.throttle.time_until_flush(self.clock())
            try:
                message = await asyncio.wait_for(self.queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                message = None

            if message is not None:
                try:
                    self.handle(message)
                except Exception as e:
                    logger.error(f"Failed to handle {message}: {e}")

            if self.throttle.flush(self.clock()):
                self._notify()

    def handle(self, message: FeedMessage):
        if isinstance(message, StateMessage):
            self.ctx.metrics.record_feed_state(message.venue, message.state.value)
            logger.debug(f"[{message.venue}] Feed {message.state.value}")
        else:
            self.ingest(message)

    def ingest(self, message: QuoteMessage) -> bool:
        """
        Apply one quote. Returns True if it was written.

        Changes below the significance threshold only refresh the stored
        quote's timestamp and never signal a recompute.
        """
        price = message.price
        if not isinstance(price, (int, float)) or not math.isfinite(price) or price <= 0:
            logger.debug(f"[{message.venue}] Dropped invalid price for {message.symbol}: {price!r}")
            return False

        self._last_received[message.venue] = message.received_at
        # A venue timestamp ahead of our clock is not trusted
        observed_at = min(message.observed_at, message.received_at)
        store = self.ctx.store

        current = store.get(message.venue, message.symbol)
        if current is not None:
            change = abs(price - current.price) / current.price
            if change < self.ctx.config.price_change_threshold:
                store.touch(message.venue, message.symbol, observed_at)
                self.ctx.metrics.record_price_update(message.venue, accepted=False)
                return False

        if not store.update(message.venue, message.symbol, price, observed_at):
            return False
        self.ctx.metrics.record_price_update(message.venue)
        if self.throttle.signal(message.received_at):
            self._notify()
        return True

    def _notify(self):
        if self.on_recompute is None:
            return
        try:
            self.on_recompute()
        except Exception as e:
            logger.error(f"Recompute callback error: {e}")

    async def poll_once(self, venues: Optional[List[str]] = None) -> int:
        """Fetch every tracked symbol over REST right now, bypassing the feeds"""
        selected = [v for v in (venues or list(self.feeds)) if v in self.feeds]
        results = await asyncio.gather(
            *(self._poll_venue(venue) for venue in selected), return_exceptions=True
        )
        written = 0
        for venue, result in zip(selected, results):
            if isinstance(result, BaseException):
                logger.warning(f"[{venue}] Refresh failed: {result}")
            else:
                written += result
        return written

    async def _poll_venue(self, venue: str) -> int:
        feed = self.feeds[venue]
        written = 0
        for symbol in feed.symbols:
            try:
                tick = await asyncio.wait_for(feed.adapter.quote(symbol), timeout=feed.call_timeout)
            except (asyncio.TimeoutError, ArbitrageError) as e:
                logger.warning(f"[{venue}] Quote for {symbol} failed: {e or 'timeout'}")
                continue
            now = self.clock()
            if self.ingest(QuoteMessage(venue, symbol, tick.price, tick.as_of, now)):
                written += 1
        return written

    def check_health(self, now: Optional[float] = None) -> List[str]:
        """Force-reconnect venues silent for longer than the max update age"""
        now = self.clock() if now is None else now
        max_age = self.ctx.config.max_update_age
        restarted = []
        for venue, feed in self.feeds.items():
            last = self._last_received.get(venue)
            if last is None:
                continue
            age = now - last
            self.ctx.metrics.record_staleness(venue, age)
            if age <= max_age:
                continue
            logger.warning(f"[{venue}] No updates for {age:.1f}s, forcing reconnect")
            if feed.force_reconnect("watchdog"):
                restarted.append(venue)
            # Give the new connection a full window before checking again
            self._last_received[venue] = now
        return restarted

    async def _health_loop(self):
        while True:
            await asyncio.sleep(self.ctx.config.health_check_interval)
            try:
                self.check_health()
            except Exception as e:
                logger.error(f"Health check error: {e}")

    def health(self) -> Dict[str, dict]:
        """Per-venue feed report"""
        now = self.clock()
        report = {}
        for venue, feed in self.feeds.items():
            last = self._last_received.get(venue)
            stale = sum(1 for s in feed.symbols if self.ctx.store.is_stale(venue, s, now=now))
            report[venue] = {
                "state": feed.state.value,
                "mode": feed.mode.value,
                "seconds_since_update": None if last is None else round(now - last, 3),
                "reconnects": feed.reconnects,
                "fresh_symbols": len(feed.symbols) - stale,
                "stale_symbols": stale,
            }
        return report
