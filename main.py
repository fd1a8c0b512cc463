"""
Crypto Arbitrage Engine - Main Entry Point

Prices the same assets across several venues, detects direct
(cross-venue) and triangular (single-venue) opportunities net of fees,
and executes them as sequential multi-leg trades.

Features:
- One feed task per venue (websocket streaming, REST polling fallback)
- Staleness-aware price snapshot
- Ranked direct and triangular opportunities
- Per-trade execution state machine with paper and live modes
- Prometheus metrics export
"""
import asyncio
import logging
import signal
from typing import List, Optional, Union

import config
from context import EngineConfig, EngineContext, TradingMode
from engine import ArbitrageDetector
from engine_execution import ExecutionRequest, ExecutionResult, TradeExecutionCoordinator
from engine_ingest import MarketDataIngestor
from engine_state import Snapshot
from exchanges import (
    BinanceExchange,
    CcxtExchangeAdapter,
    ExchangeAdapter,
    KrakenExchange,
    create_simulated_exchanges,
)
from opportunity import Opportunity

logger = logging.getLogger(__name__)

VENUE_CLASSES = {
    "binance": BinanceExchange,
    "kraken": KrakenExchange,
}


class ArbitrageBot:
    """Wires the ingestor, detector and execution coordinator around one context"""

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self.detector = ArbitrageDetector(ctx)
        self._recompute = asyncio.Event()
        self.ingestor = MarketDataIngestor(ctx, on_recompute=self._recompute.set)
        self.coordinator = TradeExecutionCoordinator(ctx)

        self.tasks: List[asyncio.Task] = []
        self.running = False

    async def start(self):
        """Start the venue feeds and the detection tick"""
        self.running = True
        logger.info("=" * 60)
        logger.info("CRYPTO ARBITRAGE ENGINE STARTING")
        logger.info(f"Venues: {', '.join(self.ctx.adapters) or 'none'}")
        logger.info(f"Trading mode: {self.ctx.trading_mode.value.upper()}")
        logger.info("=" * 60)

        await self.ingestor.start()
        self.tasks.append(asyncio.create_task(self._detection_loop(), name="detection"))

    async def stop(self):
        """Stop feeds, the detection tick and venue sessions"""
        self.running = False
        logger.info("Shutting down...")

        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()
        await self.ingestor.stop()

        for adapter in self.ctx.adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"[{adapter.name}] Close failed: {e}")

        logger.info("Bot stopped")

    async def _detection_loop(self):
        """Detect on every throttled recompute signal, or at least once per tick"""
        interval = self.ctx.config.detection_interval
        while True:
            try:
                await asyncio.wait_for(self._recompute.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            self._recompute.clear()
            try:
                self.detector.detect()
            except Exception as e:
                logger.error(f"Detection tick failed: {e}", exc_info=True)

    # ===== OPERATIONS =====

    async def refresh_prices(self) -> Snapshot:
        """Poll every venue now, rerun detection and return the snapshot"""
        await self.ingestor.poll_once()
        self.detector.detect()
        return self.ctx.store.snapshot()

    def get_current_opportunities(self) -> List[Opportunity]:
        """Latest ranked detection result"""
        return list(self.detector.opportunities)

    async def execute_trade(self, request: ExecutionRequest) -> ExecutionResult:
        """Run one trade to its terminal state"""
        return await self.coordinator.execute(request)

    def set_trading_mode(self, mode: Union[TradingMode, str]) -> TradingMode:
        """Switch between paper and live policies for subsequent trades"""
        if isinstance(mode, str):
            try:
                mode = TradingMode(mode.strip().lower())
            except ValueError:
                raise ValueError(f"Invalid trading mode {mode!r}, expected 'live' or 'paper'") from None
        if not isinstance(mode, TradingMode):
            raise ValueError(f"Invalid trading mode {mode!r}")
        if mode != self.ctx.trading_mode:
            logger.warning(f"Trading mode {self.ctx.trading_mode.value} -> {mode.value}")
        self.ctx.trading_mode = mode
        return mode

    def get_state(self) -> dict:
        """Current state for status reporting"""
        return {
            "running": self.running,
            "trading_mode": self.ctx.trading_mode.value,
            "feeds": self.ingestor.health(),
            "detector": self.detector.get_state(),
            "execution": self.coordinator.get_state(),
        }


def build_adapters(market_mode: str, sandbox: bool = config.USE_SANDBOX,
                   timeout: float = config.API_CALL_TIMEOUT) -> List[ExchangeAdapter]:
    """Venue adapters for the configured market mode"""
    if market_mode == "simulation":
        logger.info("Running in SIMULATION MODE with mock venues")
        return create_simulated_exchanges()
    if market_mode != "exchanges":
        raise ValueError(f"Unknown market mode {market_mode!r}, expected 'exchanges' or 'simulation'")

    adapters = []
    for name, settings in config.VENUES.items():
        if not settings["enabled"]:
            continue
        venue_class = VENUE_CLASSES.get(name)
        if venue_class is None:
            adapters.append(CcxtExchangeAdapter.from_settings(name, sandbox=sandbox, timeout=timeout))
        else:
            adapters.append(venue_class(sandbox=sandbox, timeout=timeout))
    return adapters


async def close_unused(adapters: List[ExchangeAdapter], ctx: EngineContext):
    """Close sessions of adapters the context left out"""
    for adapter in adapters:
        if ctx.adapters.get(adapter.name) is adapter:
            continue
        try:
            await adapter.close()
        except Exception as e:
            logger.warning(f"[{adapter.name}] Close failed: {e}")


async def run(engine_config: Optional[EngineConfig] = None, market_mode: str = config.MARKET_MODE):
    engine_config = engine_config or EngineConfig.from_env()
    adapters = build_adapters(market_mode, timeout=engine_config.call_timeout)
    ctx = await EngineContext.create(adapters, engine_config)
    await close_unused(adapters, ctx)
    if not ctx.adapters:
        logger.error("No venue could be loaded, exiting")
        return

    if engine_config.metrics_port:
        ctx.metrics.serve(engine_config.metrics_port)

    bot = ArbitrageBot(ctx)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still ends asyncio.run
            pass

    await bot.start()
    try:
        await stop.wait()
        logger.info("Received shutdown signal...")
    finally:
        await bot.stop()


def main():
    """Main entry point"""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s',
        datefmt='%H:%M:%S'
    )
    # Reduce noise from libraries
    logging.getLogger('websockets').setLevel(logging.WARNING)
    logging.getLogger('ccxt').setLevel(logging.WARNING)

    print(f"""
    ===============================================================
      CRYPTO ARBITRAGE ENGINE
      Market data:  {config.MARKET_MODE}
      Trading mode: {config.TRADING_MODE}
      Metrics:      http://localhost:{config.METRICS_PORT}/metrics
    ===============================================================
    """)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
