"""
Engine context: validated configuration plus every shared collaborator,
built once at startup and passed explicitly to the ingestor, detector and
execution coordinator.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

import config
from engine_metrics import MetricsEngine
from engine_state import PriceStateStore
from exchanges.base import AssetPair, ExchangeAdapter, VenueProfile

logger = logging.getLogger(__name__)


class TradingMode(Enum):
    LIVE = "live"
    PAPER = "paper"


class EngineConfig(BaseModel):
    """Validated runtime settings (times in seconds, thresholds in percent)"""
    trading_mode: TradingMode = TradingMode.PAPER
    default_capital: float = Field(100.0, gt=0)
    min_profit_threshold: float = 0.0
    triangular_min_profit_threshold: float = 0.0
    execution_min_profit_threshold: float = 0.0
    max_arbitrage_profit: float = Field(1.0, gt=0)
    quote_currency: str = Field("USDT", min_length=1)
    max_triangular_cycles: int = Field(20, ge=0)
    trading_pairs: List[str] = Field(default_factory=list)

    max_quote_age: float = Field(30.0, gt=0)
    max_update_age: float = Field(30.0, gt=0)
    price_change_threshold: float = Field(0.0001, ge=0)  # relative, 0.0001 = 0.01%
    broadcast_throttle: float = Field(0.5, ge=0)
    health_check_interval: float = Field(10.0, gt=0)
    reconnect_delay: float = Field(3.0, ge=0)
    poll_interval: float = Field(1.0, gt=0)
    detection_interval: float = Field(1.0, gt=0)

    call_timeout: float = Field(5.0, gt=0)
    balance_tolerance: float = Field(0.001, ge=0, lt=1)
    metrics_port: int = Field(8000, ge=0, le=65535)

    @field_validator('trading_mode', mode='before')
    @classmethod
    def parse_trading_mode(cls, v):
        if isinstance(v, str):
            return TradingMode(v.strip().lower())
        return v

    @field_validator('quote_currency')
    @classmethod
    def upper_quote(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build from the module-level defaults in config.py"""
        return cls(
            trading_mode=config.TRADING_MODE,
            default_capital=config.DEFAULT_CAPITAL,
            min_profit_threshold=config.MIN_PROFIT_THRESHOLD,
            triangular_min_profit_threshold=config.TRIANGULAR_MIN_PROFIT_THRESHOLD,
            execution_min_profit_threshold=config.EXECUTION_MIN_PROFIT_THRESHOLD,
            max_arbitrage_profit=config.MAX_ARBITRAGE_PROFIT,
            quote_currency=config.QUOTE_CURRENCY,
            max_triangular_cycles=config.MAX_TRIANGULAR_CYCLES,
            trading_pairs=list(config.TRADING_PAIRS),
            max_quote_age=config.MAX_QUOTE_AGE,
            max_update_age=config.WS_MAX_UPDATE_AGE,
            price_change_threshold=config.PRICE_CHANGE_THRESHOLD,
            broadcast_throttle=config.BROADCAST_THROTTLE,
            health_check_interval=config.HEALTH_CHECK_INTERVAL,
            reconnect_delay=config.RECONNECT_DELAY,
            poll_interval=config.PRICE_POLL_INTERVAL,
            detection_interval=config.DETECTION_INTERVAL,
            call_timeout=config.API_CALL_TIMEOUT,
            balance_tolerance=config.BALANCE_TOLERANCE,
            metrics_port=config.METRICS_PORT,
        )


class TradeHistory(ABC):
    """Durable storage for finalized execution results, keyed by trade id"""

    def record_pending(self, trade_id: str, opportunity) -> None:
        """Optional interim record when a trade starts"""

    @abstractmethod
    def record(self, result) -> None:
        """Store a finalized ExecutionResult"""


class LoggingTradeHistory(TradeHistory):
    """Writes finalized trades to the log only"""

    def record(self, result) -> None:
        logger.info(
            f"[{result.trade_id}] {result.status.value.upper()} | profit {result.profit:.6f} "
            f"({result.profit_percent:.4f}%) | legs {len(result.leg_results)}"
        )


class InMemoryTradeHistory(TradeHistory):
    """Keeps the most recent results in memory (paper trading, tests)"""

    def __init__(self, max_size: int = 1000):
        self.max_size = max_size
        self.pending: Dict[str, object] = {}
        self.results: "OrderedDict[str, object]" = OrderedDict()

    def record_pending(self, trade_id: str, opportunity) -> None:
        self.pending[trade_id] = opportunity

    def record(self, result) -> None:
        self.pending.pop(result.trade_id, None)
        self.results[result.trade_id] = result
        while len(self.results) > self.max_size:
            self.results.popitem(last=False)


@dataclass
class EngineContext:
    config: EngineConfig
    adapters: Dict[str, ExchangeAdapter]
    profiles: Dict[str, VenueProfile]
    markets: Dict[str, Dict[str, AssetPair]]
    store: PriceStateStore
    metrics: MetricsEngine
    history: TradeHistory = field(default_factory=LoggingTradeHistory)
    trading_mode: TradingMode = TradingMode.PAPER

    @classmethod
    async def create(
        cls,
        adapters: List[ExchangeAdapter],
        config: Optional[EngineConfig] = None,
        history: Optional[TradeHistory] = None,
        metrics: Optional[MetricsEngine] = None,
    ) -> "EngineContext":
        """Load venue metadata and assemble the context.

        Venues whose metadata cannot be loaded are left out with an error
        logged; the engine runs on the rest.
        """
        config = config or EngineConfig.from_env()
        wanted = set(config.trading_pairs)

        loaded_adapters: Dict[str, ExchangeAdapter] = {}
        profiles: Dict[str, VenueProfile] = {}
        markets: Dict[str, Dict[str, AssetPair]] = {}
        for adapter in adapters:
            try:
                venue_markets = await asyncio.wait_for(adapter.load_markets(), timeout=config.call_timeout)
            except asyncio.TimeoutError:
                logger.error(f"[{adapter.name}] Timed out loading markets, venue disabled")
                continue
            except Exception as e:
                logger.error(f"[{adapter.name}] Failed to load markets, venue disabled: {e}")
                continue

            if wanted:
                venue_markets = {s: p for s, p in venue_markets.items() if p.symbol in wanted}
            if not venue_markets:
                logger.warning(f"[{adapter.name}] No configured pairs listed, venue disabled")
                continue

            loaded_adapters[adapter.name] = adapter
            profiles[adapter.name] = adapter.profile()
            markets[adapter.name] = venue_markets
            logger.info(f"[{adapter.name}] Tracking {len(venue_markets)} pairs")

        return cls(
            config=config,
            adapters=loaded_adapters,
            profiles=profiles,
            markets=markets,
            store=PriceStateStore(max_age=config.max_quote_age),
            metrics=metrics or MetricsEngine(),
            history=history or LoggingTradeHistory(),
            trading_mode=config.trading_mode,
        )

    def pair_for(self, venue: str, symbol: str) -> Optional[AssetPair]:
        return self.markets.get(venue, {}).get(symbol)
