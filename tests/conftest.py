"""
Pytest configuration and fixtures for the arbitrage engine tests.
"""

import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

import pytest

from context import EngineConfig, EngineContext, InMemoryTradeHistory, TradingMode
from engine_metrics import MetricsEngine
from engine_state import PriceStateStore
from errors import NotSupportedError
from exchanges.base import (
    AssetPair,
    Balance,
    ExchangeAdapter,
    Fill,
    OrderFill,
    OrderRequest,
    OrderSide,
    QuoteTick,
    VenueProfile,
)


class FakeClock:
    """Manually advanced time source"""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedAdapter(ExchangeAdapter):
    """
    In-memory venue whose order responses can be scripted.

    Each entry of `script` is consumed by one submit_order call: an
    exception is raised, an OrderFill is returned as is, a callable is
    called with the order. When the script is empty the order fills at
    the current price with the fee charged in the received asset.
    """

    def __init__(
        self,
        name: str,
        markets: Dict[str, AssetPair],
        prices: Optional[Dict[str, float]] = None,
        balances: Optional[Dict[str, float]] = None,
        fee: float = 0.001,
        trading: bool = True,
        min_notional: float = 0.0,
        min_capital: float = 0.0,
        max_capital: float = 1_000_000.0,
        lot_steps: Optional[Dict[str, float]] = None,
        min_quantities: Optional[Dict[str, float]] = None,
        raise_to_minimum: Optional[bool] = None,
        clock_sync: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(name)
        self.markets = dict(markets)
        self.prices = dict(prices or {})
        self.balances = dict(balances or {})
        self.fee = fee
        self.trading = trading
        self.min_notional = min_notional
        self.min_capital = min_capital
        self.max_capital = max_capital
        self.lot_steps = dict(lot_steps or {})
        self.min_quantities = dict(min_quantities or {})
        self.raise_to_minimum = raise_to_minimum
        self.clock_sync = clock_sync
        self.clock = clock

        self.script: List[object] = []
        self.orders: List[OrderRequest] = []
        self.quote_calls: List[str] = []
        self.clock_syncs = 0
        self.closed = False

    async def load_markets(self) -> Dict[str, AssetPair]:
        return dict(self.markets)

    def profile(self) -> VenueProfile:
        return VenueProfile(
            venue=self.name,
            fee_rate=self.fee,
            min_notional=self.min_notional,
            min_capital=self.min_capital,
            max_capital=self.max_capital,
            lot_steps=dict(self.lot_steps),
            default_lot_step=0.00000001,
            min_quantities=dict(self.min_quantities),
            raise_to_minimum=self.raise_to_minimum,
        )

    def trading_enabled(self) -> bool:
        return self.trading

    async def quote(self, symbol: str) -> QuoteTick:
        self.quote_calls.append(symbol)
        return QuoteTick(price=self.prices[symbol], as_of=self.clock())

    async def balance(self, asset: str) -> Balance:
        return Balance(free=self.balances.get(asset, 0.0))

    async def sync_clock(self):
        if not self.clock_sync:
            raise NotSupportedError(f"{self.name} cannot resync its clock")
        self.clock_syncs += 1

    async def submit_order(self, order: OrderRequest) -> OrderFill:
        self.orders.append(order)
        if self.script:
            step = self.script.pop(0)
            if isinstance(step, Exception):
                raise step
            if callable(step):
                return step(order)
            return step
        return self.fill_at_price(order)

    def fill_at_price(self, order: OrderRequest) -> OrderFill:
        price = self.prices[order.symbol]
        quantity = order.quantity if order.quantity is not None else order.notional / price
        if order.side == OrderSide.BUY:
            spend, receive = quantity * price, quantity
        else:
            spend, receive = quantity, quantity * price
        fee = receive * self.fee
        self.balances[order.spend_asset] = self.balances.get(order.spend_asset, 0.0) - spend
        self.balances[order.receive_asset] = self.balances.get(order.receive_asset, 0.0) + receive - fee
        return OrderFill(
            order_id=f"{self.name}-{len(self.orders)}",
            filled_quantity=quantity,
            avg_fill_price=price,
            fills=(Fill(price=price, quantity=quantity),),
            fee=fee,
            fee_asset=order.receive_asset,
        )

    async def close(self):
        self.closed = True


BTC_USDT = AssetPair("BTC", "USDT")
ETH_USDT = AssetPair("ETH", "USDT")
ETH_BTC = AssetPair("ETH", "BTC")
SOL_USDT = AssetPair("SOL", "USDT")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_context(clock):
    """Factory building an EngineContext around ready adapters (no market loading)"""

    def _make(adapters, trading_mode: TradingMode = TradingMode.PAPER, **overrides) -> EngineContext:
        settings = {"trading_pairs": [], "max_arbitrage_profit": 5.0}
        settings.update(overrides)
        config = EngineConfig(trading_mode=trading_mode, **settings)
        return EngineContext(
            config=config,
            adapters={a.name: a for a in adapters},
            profiles={a.name: a.profile() for a in adapters},
            markets={a.name: dict(a.markets) for a in adapters},
            store=PriceStateStore(max_age=config.max_quote_age, clock=clock),
            metrics=MetricsEngine(),
            history=InMemoryTradeHistory(),
            trading_mode=trading_mode,
        )

    return _make


@pytest.fixture
def two_venues(clock):
    """Two venues listing BTC/USDT with 0.1% fees"""
    venue_a = ScriptedAdapter(
        "venue_a",
        {"BTC/USDT": BTC_USDT},
        prices={"BTC/USDT": 50000.0},
        balances={"USDT": 10000.0, "BTC": 1.0},
        clock=clock,
    )
    venue_b = ScriptedAdapter(
        "venue_b",
        {"BTC/USDT": BTC_USDT},
        prices={"BTC/USDT": 50200.0},
        balances={"USDT": 10000.0, "BTC": 1.0},
        clock=clock,
    )
    return venue_a, venue_b


@pytest.fixture
def tri_venue(clock):
    """One venue with a USDT -> BTC -> ETH -> USDT cycle"""
    return ScriptedAdapter(
        "tri",
        {"BTC/USDT": BTC_USDT, "ETH/USDT": ETH_USDT, "ETH/BTC": ETH_BTC},
        prices={"BTC/USDT": 50000.0, "ETH/USDT": 3000.0, "ETH/BTC": 0.0595},
        balances={"USDT": 10000.0},
        clock=clock,
    )


@pytest.fixture
def detected_at() -> datetime:
    return datetime(2024, 1, 1, 12, 0, 0)
