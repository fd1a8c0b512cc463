"""Opportunity types produced by the detector and consumed by the execution coordinator"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple, Union

from exchanges.base import AssetPair, OrderSide


@dataclass(frozen=True)
class Leg:
    """One step of a trade plan.

    A synthetic leg has no tradable pair of its own; ``via`` names the two
    USDT markets (sell symbol, buy symbol) it is routed through.
    """
    pair: AssetPair
    symbol: str
    venue: str
    action: str  # "buy", "trade" or "sell"
    price: float
    side: Optional[OrderSide] = None
    is_synthetic: bool = False
    via: Optional[Tuple[str, str]] = None

    def to_dict(self) -> dict:
        return {
            "pair": self.pair.symbol,
            "symbol": self.symbol,
            "venue": self.venue,
            "action": self.action,
            "side": self.side.value if self.side else None,
            "price": self.price,
            "is_synthetic": self.is_synthetic,
            "via": list(self.via) if self.via else None,
        }


@dataclass(frozen=True)
class DirectOpportunity:
    """Buy on one venue, sell the same asset on another"""
    pair: AssetPair
    buy_venue: str
    sell_venue: str
    buy_symbol: str
    sell_symbol: str
    buy_price: float
    sell_price: float
    buy_price_with_fee: float
    sell_price_with_fee: float
    coin_amount: float
    net_profit: float
    profit_percent: float
    capital: float
    detected_at: datetime

    kind = "direct"
    expected_legs = 2

    @property
    def legs(self) -> Tuple[Leg, ...]:
        return (
            Leg(self.pair, self.buy_symbol, self.buy_venue, "buy", self.buy_price, OrderSide.BUY),
            Leg(self.pair, self.sell_symbol, self.sell_venue, "sell", self.sell_price, OrderSide.SELL),
        )

    @property
    def venues(self) -> Tuple[str, ...]:
        return (self.buy_venue, self.sell_venue)

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "pair": self.pair.symbol,
            "buy_venue": self.buy_venue,
            "sell_venue": self.sell_venue,
            "buy_price": self.buy_price,
            "sell_price": self.sell_price,
            "buy_price_with_fee": self.buy_price_with_fee,
            "sell_price_with_fee": self.sell_price_with_fee,
            "coin_amount": self.coin_amount,
            "net_profit": round(self.net_profit, 6),
            "profit_percent": round(self.profit_percent, 4),
            "capital": self.capital,
            "timestamp": self.detected_at.isoformat(),
        }


@dataclass(frozen=True)
class TriangularOpportunity:
    """Closed three-leg cycle on a single venue (e.g. USDT -> X -> Y -> USDT)"""
    venue: str
    legs: Tuple[Leg, ...]
    capital: float
    final_amount: float
    profit: float
    profit_percent: float
    quote_asset: str
    detected_at: datetime

    kind = "triangular"
    expected_legs = 3

    @property
    def venues(self) -> Tuple[str, ...]:
        return (self.venue,)

    @property
    def path(self) -> str:
        assets = [self.quote_asset]
        current = self.quote_asset
        for leg in self.legs:
            current = leg.pair.other(current)
            assets.append(current)
        return " -> ".join(assets)

    @property
    def has_synthetic_leg(self) -> bool:
        return any(leg.is_synthetic for leg in self.legs)

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "venue": self.venue,
            "path": self.path,
            "legs": [leg.to_dict() for leg in self.legs],
            "capital": self.capital,
            "final_amount": self.final_amount,
            "profit": round(self.profit, 6),
            "profit_percent": round(self.profit_percent, 4),
            "timestamp": self.detected_at.isoformat(),
        }


Opportunity = Union[DirectOpportunity, TriangularOpportunity]
