"""Simulated exchange for paper trading when real connections are not wanted"""
import asyncio
import itertools
import logging
import random
import time
from typing import Dict, List, Optional

from config import DEFAULT_LOT_STEP, LOT_STEPS, TRADING_PAIRS
from errors import ConnectivityError, InsufficientBalanceError, NotSupportedError, OrderRejectedError
from exchanges.base import (
    AssetPair,
    Balance,
    ExchangeAdapter,
    Fill,
    OrderFill,
    OrderRequest,
    OrderSide,
    PriceCallback,
    QuoteTick,
    VenueProfile,
)

logger = logging.getLogger(__name__)


# Market table and realistic base prices for simulation
BASE_MARKETS = {
    "BTC/USDT": (AssetPair("BTC", "USDT"), 97500.0),
    "ETH/USDT": (AssetPair("ETH", "USDT"), 3250.0),
    "SOL/USDT": (AssetPair("SOL", "USDT"), 245.0),
    "XRP/USDT": (AssetPair("XRP", "USDT"), 3.15),
    "BNB/USDT": (AssetPair("BNB", "USDT"), 690.0),
    "ADA/USDT": (AssetPair("ADA", "USDT"), 1.05),
    "ETH/BTC": (AssetPair("ETH", "BTC"), 0.0333),  # ETH price in BTC
    "SOL/BTC": (AssetPair("SOL", "BTC"), 0.00251),  # SOL price in BTC
    "XRP/BTC": (AssetPair("XRP", "BTC"), 0.0000323),  # XRP price in BTC
    "BNB/BTC": (AssetPair("BNB", "BTC"), 0.00708),
    "SOL/ETH": (AssetPair("SOL", "ETH"), 0.0754),
}

DEFAULT_BALANCES = {"USDT": 10000.0, "BTC": 0.1, "ETH": 2.0, "SOL": 20.0, "XRP": 1000.0}


class SimulatedExchange(ExchangeAdapter):
    """
    In-memory venue with random-walk prices, balances and instant fills.
    Useful for paper trading and for running the pipeline without network.
    """

    def __init__(
        self,
        name: str,
        price_offset_percent: float = 0.0,
        fee: float = 0.001,
        markets: Optional[Dict[str, tuple]] = None,
        balances: Optional[Dict[str, float]] = None,
        volatility: float = 0.001,
        seed: Optional[int] = None,
        trading: bool = True,
        streaming: bool = True,
        min_notional: float = 5.0,
        min_capital: float = 15.0,
        max_capital: float = 5000.0,
        lot_steps: Optional[Dict[str, float]] = None,
        tick_interval: Optional[float] = None,
    ):
        """
        Args:
            name: Venue name
            price_offset_percent: Base price offset to simulate different venue prices
                                  e.g., 0.05 means prices are 0.05% higher than base
            volatility: Max relative move per random-walk step (0.001 = 0.1%)
            trading: Whether orders are accepted (False mimics missing credentials)
            streaming: Whether subscribe() streams; False forces REST polling
            tick_interval: Fixed stream interval, random 100-500ms when None
        """
        super().__init__(name)
        self.price_offset = price_offset_percent / 100
        self.fee = fee
        table = markets if markets is not None else BASE_MARKETS
        self.pairs: Dict[str, AssetPair] = {symbol: pair for symbol, (pair, _) in table.items()}
        self.current_prices: Dict[str, float] = {symbol: price for symbol, (_, price) in table.items()}
        self.balances: Dict[str, float] = dict(balances if balances is not None else DEFAULT_BALANCES)
        self.volatility = volatility
        self.trading = trading
        self.streaming = streaming
        self.min_notional = min_notional
        self.min_capital = min_capital
        self.max_capital = max_capital
        self.lot_steps = dict(lot_steps if lot_steps is not None else LOT_STEPS)
        self.tick_interval = tick_interval
        self.orders: List[OrderRequest] = []
        self._random = random.Random(seed)
        self._order_ids = itertools.count(1)

    async def load_markets(self) -> Dict[str, AssetPair]:
        return dict(self.pairs)

    def profile(self) -> VenueProfile:
        return VenueProfile(
            venue=self.name,
            fee_rate=self.fee,
            min_notional=self.min_notional,
            min_capital=self.min_capital,
            max_capital=self.max_capital,
            lot_steps=dict(self.lot_steps),
            default_lot_step=DEFAULT_LOT_STEP,
        )

    def trading_enabled(self) -> bool:
        return self.trading

    def price(self, symbol: str) -> float:
        """Current price including the venue offset"""
        if symbol not in self.current_prices:
            raise ConnectivityError(f"[{self.name}] Unknown symbol {symbol}")
        return self.current_prices[symbol] * (1 + self.price_offset)

    def set_price(self, symbol: str, price: float):
        """Pin a symbol's venue price (offset included)"""
        self.current_prices[symbol] = price / (1 + self.price_offset)

    def step(self):
        """Advance the random walk by one move for every market"""
        for symbol, price in self.current_prices.items():
            movement = self._random.uniform(-self.volatility, self.volatility)
            self.current_prices[symbol] = price * (1 + movement)

    async def quote(self, symbol: str) -> QuoteTick:
        return QuoteTick(price=self.price(symbol), as_of=time.time())

    async def balance(self, asset: str) -> Balance:
        return Balance(free=self.balances.get(asset, 0.0))

    async def sync_clock(self):
        logger.debug(f"[{self.name}] Clock sync requested (simulated venue has no offset)")

    async def submit_order(self, order: OrderRequest) -> OrderFill:
        if not self.trading:
            raise OrderRejectedError(f"[{self.name}] Trading is disabled")
        if order.symbol not in self.pairs:
            raise OrderRejectedError(f"[{self.name}] Unknown symbol {order.symbol}")

        price = self.price(order.symbol)
        pair = self.pairs[order.symbol]
        quantity = order.quantity if order.quantity is not None else order.notional / price
        if order.side == OrderSide.BUY:
            spend, receive = quantity * price, quantity
        else:
            spend, receive = quantity, quantity * price

        notional = quantity * price
        if notional < self.min_notional:
            raise OrderRejectedError(
                f"[{self.name}] Notional {notional:.4f} {pair.quote} below minimum {self.min_notional}"
            )

        spend_asset, receive_asset = order.spend_asset, order.receive_asset
        available = self.balances.get(spend_asset, 0.0)
        if spend > available * (1 + 1e-9):
            raise InsufficientBalanceError(
                f"[{self.name}] Need {spend:.8f} {spend_asset}, have {available:.8f}"
            )

        fee = receive * self.fee
        self.balances[spend_asset] = max(0.0, available - spend)
        self.balances[receive_asset] = self.balances.get(receive_asset, 0.0) + receive - fee
        self.orders.append(order)

        order_id = f"{self.name}-{next(self._order_ids)}"
        logger.info(f"[{self.name}] Filled {order.side.value} {quantity:.8f} {pair.base} @ {price:.8f}")
        return OrderFill(
            order_id=order_id,
            filled_quantity=quantity,
            avg_fill_price=price,
            fills=(Fill(price=price, quantity=quantity),),
            fee=fee,
            fee_asset=receive_asset,
        )

    async def subscribe(self, symbols: List[str], on_update: PriceCallback):
        """Stream random-walk prices until cancelled"""
        if not self.streaming:
            raise NotSupportedError(f"{self.name} has no streaming feed")

        logger.info(f"[{self.name}] SIMULATION MODE - Generating mock prices")
        while True:
            self.step()
            now = time.time()
            for symbol in symbols:
                if symbol in self.current_prices:
                    on_update(symbol, self.price(symbol), now)

            # Update every 100-500ms for realistic feel
            interval = self.tick_interval or self._random.uniform(0.1, 0.5)
            await asyncio.sleep(interval)


def create_simulated_exchanges() -> List[SimulatedExchange]:
    """
    Create a set of simulated venues with slight price differences.
    The offsets create opportunities for the arbitrage engine to detect.
    """
    markets = {s: v for s, v in BASE_MARKETS.items() if s in TRADING_PAIRS}
    return [
        SimulatedExchange("binance-sim", price_offset_percent=0.0, fee=0.001, markets=markets,
                          min_notional=10.0, min_capital=20.0),
        SimulatedExchange("kraken-sim", price_offset_percent=0.35, fee=0.0026, markets=markets),   # Higher
        SimulatedExchange("gateio-sim", price_offset_percent=-0.3, fee=0.002, markets=markets),    # Lower
    ]
