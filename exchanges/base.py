"""Exchange adapter contract and the venue value types it speaks in"""
import json
import logging
import ssl
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from config import SKIP_SSL_VERIFY
from errors import ConnectivityError, NotSupportedError

logger = logging.getLogger(__name__)

# on_update(venue_symbol, price, observed_at)
PriceCallback = Callable[[str, float, Optional[float]], None]


@dataclass(frozen=True)
class AssetPair:
    """Base/quote assets of a market, taken from venue metadata"""
    base: str
    quote: str

    @property
    def symbol(self) -> str:
        """Unified symbol (e.g., "BTC/USDT")"""
        return f"{self.base}/{self.quote}"

    def other(self, asset: str) -> str:
        """The asset on the other side of the pair"""
        if asset == self.base:
            return self.quote
        if asset == self.quote:
            return self.base
        raise KeyError(f"{asset} is not part of {self.symbol}")

    def __str__(self) -> str:
        return self.symbol


@dataclass
class VenueProfile:
    """Static trading constraints of one venue"""
    venue: str
    fee_rate: float
    min_notional: float = 0.0
    min_capital: float = 0.0
    max_capital: float = float("inf")
    lot_steps: Dict[str, float] = field(default_factory=dict)
    default_lot_step: float = 0.01
    min_quantities: Dict[str, float] = field(default_factory=dict)
    # None: follow the trading mode (paper raises, live aborts)
    raise_to_minimum: Optional[bool] = None

    def lot_step(self, asset: str) -> float:
        return self.lot_steps.get(asset, self.default_lot_step)

    def min_quantity(self, asset: str) -> float:
        return self.min_quantities.get(asset, 0.0)


@dataclass(frozen=True)
class QuoteTick:
    price: float
    as_of: float


@dataclass(frozen=True)
class Balance:
    free: float
    locked: float = 0.0

    @property
    def total(self) -> float:
        return self.free + self.locked


class OrderSide(Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass(frozen=True)
class OrderRequest:
    """Market order for one leg.

    Sells are sized in base quantity, buys may instead carry the quote
    notional to spend. Exactly one of ``quantity``/``notional`` is set.
    """
    symbol: str
    pair: AssetPair
    side: OrderSide
    quantity: Optional[float] = None
    notional: Optional[float] = None
    order_type: str = "market"
    client_order_id: Optional[str] = None

    def __post_init__(self):
        if (self.quantity is None) == (self.notional is None):
            raise ValueError("exactly one of quantity or notional must be set")
        amount = self.quantity if self.quantity is not None else self.notional
        if amount <= 0:
            raise ValueError(f"order size must be positive, got {amount}")

    @property
    def spend_asset(self) -> str:
        return self.pair.quote if self.side == OrderSide.BUY else self.pair.base

    @property
    def receive_asset(self) -> str:
        return self.pair.base if self.side == OrderSide.BUY else self.pair.quote


@dataclass(frozen=True)
class Fill:
    price: float
    quantity: float


@dataclass(frozen=True)
class OrderFill:
    """What the venue reports back for a submitted order"""
    order_id: str
    filled_quantity: float
    avg_fill_price: Optional[float] = None
    fills: Tuple[Fill, ...] = ()
    quote_quantity: Optional[float] = None  # cumulative quote amount
    fee: float = 0.0
    fee_asset: Optional[str] = None

    @property
    def has_fill_data(self) -> bool:
        return self.filled_quantity > 0 and (
            bool(self.fills) or self.quote_quantity is not None or self.avg_fill_price is not None
        )

    def quote_amount(self) -> Optional[float]:
        """Quote value actually exchanged, from fills when available"""
        if self.fills:
            return sum(f.price * f.quantity for f in self.fills)
        if self.quote_quantity is not None:
            return self.quote_quantity
        if self.avg_fill_price is not None:
            return self.avg_fill_price * self.filled_quantity
        return None

    def weighted_price(self) -> Optional[float]:
        amount = self.quote_amount()
        if amount is None or self.filled_quantity <= 0:
            return None
        return amount / self.filled_quantity


class ExchangeAdapter(ABC):
    """Uniform capability set every venue implementation provides in full.

    Operations a venue does not offer raise NotSupportedError.
    """

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    async def load_markets(self) -> Dict[str, AssetPair]:
        """Venue symbol -> AssetPair, from venue metadata"""

    @abstractmethod
    def profile(self) -> VenueProfile:
        """Trading constraints (fees, lot steps, minimums)"""

    @abstractmethod
    async def quote(self, symbol: str) -> QuoteTick:
        """Last price for a venue symbol"""

    @abstractmethod
    async def balance(self, asset: str) -> Balance:
        """Free and locked amount of an asset"""

    @abstractmethod
    async def submit_order(self, order: OrderRequest) -> OrderFill:
        """Place a market order and return its fill report"""

    @abstractmethod
    def trading_enabled(self) -> bool:
        """Whether orders can be placed (credentials present)"""

    async def subscribe(self, symbols: List[str], on_update: PriceCallback):
        """Stream prices until the connection ends.

        Returns or raises when the stream is over; reconnecting is up to
        the caller.
        """
        raise NotSupportedError(f"{self.name} has no streaming feed")

    async def sync_clock(self):
        """Resynchronize the local clock offset with the venue"""
        raise NotSupportedError(f"{self.name} cannot resync its clock")

    async def close(self):
        pass


class WebSocketFeedMixin:
    """Streaming subscribe over a public websocket ticker channel"""

    name: str
    ws_url: str

    def _ws_url(self, symbols: List[str]) -> str:
        return self.ws_url

    def _subscribe_messages(self, symbols: List[str]) -> Iterable[Dict[str, Any]]:
        return ()

    def _parse_message(self, data: Any) -> List[Tuple[str, float, Optional[float]]]:
        """Exchange-specific message -> [(venue_symbol, price, observed_at)]"""
        raise NotImplementedError

    async def subscribe(self, symbols: List[str], on_update: PriceCallback):
        ssl_context = None
        if SKIP_SSL_VERIFY:
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        url = self._ws_url(symbols)
        try:
            logger.info(f"[{self.name}] Connecting to WebSocket...")
            async with websockets.connect(url, ssl=ssl_context) as ws:
                logger.info(f"[{self.name}] Connected! Subscribing to {len(symbols)} feeds...")
                for payload in self._subscribe_messages(symbols):
                    await ws.send(json.dumps(payload))

                async for message in ws:
                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        logger.warning(f"[{self.name}] Invalid JSON: {message[:100]}")
                        continue
                    for symbol, price, observed_at in self._parse_message(data):
                        on_update(symbol, price, observed_at or time.time())
        except ConnectionClosed as e:
            raise ConnectivityError(f"[{self.name}] connection closed: {e}") from e
        except OSError as e:
            raise ConnectivityError(f"[{self.name}] connection failed: {e}") from e
        raise ConnectivityError(f"[{self.name}] stream ended")
