"""
Triangular Arbitrage Engine

Detects arbitrage opportunities within a single venue by trading through
three pairs in a cycle.

Example cycle:
  USDT -> BTC -> ETH -> USDT
  1. Buy BTC with USDT (BTC/USDT)
  2. Trade BTC for ETH (ETH/BTC, a buy of ETH)
  3. Sell ETH for USDT (ETH/USDT)

When the venue lists no pair linking the two middle assets, the middle
step is a synthetic leg routed through USDT: sell the first asset at its
USDT price, then buy the second at its USDT price, paying the fee twice.

If the product of exchange rates yields more USDT than you started with, profit!
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional, Tuple

from engine_state import Quote
from exchanges.base import AssetPair, OrderSide
from opportunity import Leg, TriangularOpportunity

logger = logging.getLogger(__name__)

LEVERAGED_SUFFIXES = ("UP", "DOWN", "BULL", "BEAR", "3L", "3S")


def is_leveraged_token(asset: str) -> bool:
    """BTCUP, ETHBULL, XRP3L... (plain assets such as JUP are kept)"""
    return any(asset.endswith(s) and len(asset) > len(s) + 1 for s in LEVERAGED_SUFFIXES)


@dataclass(frozen=True)
class TriangularPath:
    """A candidate cycle: quote -> crypto1 -> crypto2 -> quote"""
    venue: str
    quote_currency: str
    crypto1: str
    crypto2: str
    first_symbol: str  # crypto1/quote
    last_symbol: str   # crypto2/quote
    cross_symbol: Optional[str] = None  # None for a synthetic middle leg
    cross_pair: Optional[AssetPair] = None
    cross_side: Optional[OrderSide] = None

    @property
    def is_synthetic(self) -> bool:
        return self.cross_symbol is None

    def __str__(self):
        middle = self.cross_symbol or f"{self.crypto1}->{self.quote_currency}->{self.crypto2}"
        return f"BUY {self.first_symbol} -> {middle} -> SELL {self.last_symbol}"


class TriangularArbitrageEngine:
    """
    Detects triangular arbitrage opportunities on a single venue.

    Candidate cycles are derived from venue metadata and cached per venue;
    every tick they are priced against the current fresh quotes.
    """

    def __init__(
        self,
        quote_currency: str = "USDT",
        min_profit_threshold: float = 0.0,
        max_plausible_profit: float = 1.0,
        max_cycles: int = 20,
    ):
        """
        Args:
            quote_currency: Currency every cycle starts and ends in
            min_profit_threshold: Profit % a cycle must exceed to be emitted
            max_plausible_profit: Candidates beyond this % are rejected as bad data
            max_cycles: Candidate cycles explored per venue
        """
        self.quote_currency = quote_currency
        self.min_profit_threshold = min_profit_threshold
        self.max_plausible_profit = max_plausible_profit
        self.max_cycles = max_cycles

        # venue -> (market set the paths were built from, paths)
        self._paths: Dict[str, Tuple[FrozenSet[str], List[TriangularPath]]] = {}
        self.rejected_count = 0

    def paths_for(self, venue: str, markets: Dict[str, AssetPair]) -> List[TriangularPath]:
        key = frozenset(markets)
        cached = self._paths.get(venue)
        if cached is None or cached[0] != key:
            paths = self._compute_triangular_paths(venue, markets)
            self._paths[venue] = (key, paths)
            logger.info(
                f"[{venue}] Computed {len(paths)} triangular paths "
                f"({sum(p.is_synthetic for p in paths)} synthetic)"
            )
        return self._paths[venue][1]

    def _compute_triangular_paths(self, venue: str, markets: Dict[str, AssetPair]) -> List[TriangularPath]:
        """
        Real cross-pair cycles first (both directions), then synthetic
        ones for asset pairs with no market between them, capped at
        max_cycles.
        """
        anchors: Dict[str, str] = {}
        for symbol, pair in sorted(markets.items()):
            if pair.quote == self.quote_currency and not is_leveraged_token(pair.base):
                anchors.setdefault(pair.base, symbol)

        # (from_asset, to_asset) -> (symbol, pair, side)
        cross: Dict[Tuple[str, str], Tuple[str, AssetPair, OrderSide]] = {}
        for symbol, pair in sorted(markets.items()):
            if pair.base in anchors and pair.quote in anchors:
                cross.setdefault((pair.base, pair.quote), (symbol, pair, OrderSide.SELL))
                cross.setdefault((pair.quote, pair.base), (symbol, pair, OrderSide.BUY))

        assets = sorted(anchors)
        real: List[TriangularPath] = []
        synthetic: List[TriangularPath] = []
        for crypto1 in assets:
            for crypto2 in assets:
                if crypto1 == crypto2:
                    continue
                link = cross.get((crypto1, crypto2))
                if link is not None:
                    symbol, pair, side = link
                    real.append(TriangularPath(
                        venue=venue,
                        quote_currency=self.quote_currency,
                        crypto1=crypto1,
                        crypto2=crypto2,
                        first_symbol=anchors[crypto1],
                        last_symbol=anchors[crypto2],
                        cross_symbol=symbol,
                        cross_pair=pair,
                        cross_side=side,
                    ))
                else:
                    synthetic.append(TriangularPath(
                        venue=venue,
                        quote_currency=self.quote_currency,
                        crypto1=crypto1,
                        crypto2=crypto2,
                        first_symbol=anchors[crypto1],
                        last_symbol=anchors[crypto2],
                    ))

        return (real + synthetic)[:self.max_cycles]

    def find_opportunities(
        self,
        venue: str,
        quotes: Dict[str, Quote],
        markets: Dict[str, AssetPair],
        fee: float,
        capital: float,
        now: Optional[datetime] = None,
    ) -> List[TriangularOpportunity]:
        """Price every candidate cycle of a venue against its fresh quotes"""
        now = now or datetime.now()
        found = []
        for path in self.paths_for(venue, markets):
            opportunity = self._calculate_triangular_profit(path, quotes, markets, fee, capital, now)
            if opportunity is not None:
                found.append(opportunity)
        found.sort(key=lambda o: o.profit_percent, reverse=True)
        return found

    def _calculate_triangular_profit(
        self,
        path: TriangularPath,
        quotes: Dict[str, Quote],
        markets: Dict[str, AssetPair],
        fee: float,
        capital: float,
        now: datetime,
    ) -> Optional[TriangularOpportunity]:
        """
        Simulate the cycle multiplicatively.

        Returns the opportunity if profitable and plausible, None otherwise.
        """
        first = quotes.get(path.first_symbol)
        last = quotes.get(path.last_symbol)
        middle = quotes.get(path.cross_symbol) if not path.is_synthetic else None
        if first is None or last is None or (not path.is_synthetic and middle is None):
            return None

        p1, p3 = first.price, last.price
        amount = capital / p1 * (1 - fee)

        if path.is_synthetic:
            amount = (amount * p1 * (1 - fee)) / p3 * (1 - fee)
            middle_leg = Leg(
                pair=AssetPair(path.crypto1, path.crypto2),
                symbol=AssetPair(path.crypto1, path.crypto2).symbol,
                venue=path.venue,
                action="trade",
                price=p1 / p3,
                side=OrderSide.SELL,
                is_synthetic=True,
                via=(path.first_symbol, path.last_symbol),
            )
        else:
            p2 = middle.price
            if path.cross_side == OrderSide.SELL:
                amount = amount * p2 * (1 - fee)
            else:
                amount = amount / p2 * (1 - fee)
            middle_leg = Leg(
                pair=path.cross_pair,
                symbol=path.cross_symbol,
                venue=path.venue,
                action="trade",
                price=p2,
                side=path.cross_side,
            )

        final_amount = amount * p3 * (1 - fee)
        profit = final_amount - capital
        profit_percent = profit / capital * 100

        if not math.isfinite(profit_percent):
            self._reject(path, profit_percent)
            return None

        # Losing cycles are dropped quietly, before the plausibility bound
        if profit_percent <= self.min_profit_threshold:
            return None

        if abs(profit_percent) > self.max_plausible_profit:
            self._reject(path, profit_percent)
            return None

        legs = (
            Leg(markets[path.first_symbol], path.first_symbol, path.venue, "buy", p1, OrderSide.BUY),
            middle_leg,
            Leg(markets[path.last_symbol], path.last_symbol, path.venue, "sell", p3, OrderSide.SELL),
        )
        return TriangularOpportunity(
            venue=path.venue,
            legs=legs,
            capital=capital,
            final_amount=final_amount,
            profit=profit,
            profit_percent=profit_percent,
            quote_asset=path.quote_currency,
            detected_at=now,
        )

    def _reject(self, path: TriangularPath, profit_percent: float):
        self.rejected_count += 1
        logger.warning(
            f"[{path.venue}] Rejected implausible cycle {path}: {profit_percent:.4f}% "
            f"(bound {self.max_plausible_profit}%)"
        )

    def get_state(self) -> dict:
        """Current state for status reporting"""
        return {
            "paths_computed": {venue: len(paths) for venue, (_, paths) in self._paths.items()},
            "rejected_implausible": self.rejected_count,
        }
