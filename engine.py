"""Arbitrage detection engine"""
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional

from engine_state import Quote, Snapshot, filter_fresh
from engine_triangular import TriangularArbitrageEngine
from exchanges.base import AssetPair, VenueProfile
from opportunity import DirectOpportunity, Opportunity

logger = logging.getLogger(__name__)

HISTORY_SIZE = 100


def find_direct_opportunities(
    snapshot: Snapshot,
    markets: Dict[str, Dict[str, AssetPair]],
    profiles: Dict[str, VenueProfile],
    capital: float,
    min_profit_threshold: float = 0.0,
    now: Optional[datetime] = None,
) -> List[DirectOpportunity]:
    """
    Cross-venue arbitrage for every pair quoted on two or more venues.

    buy_with_fee = price * (1 + fee), sell_with_fee = price * (1 - fee).
    The cheapest buy and the richest sell must be on different venues;
    the opportunity is emitted only if its profit % exceeds the threshold.
    """
    now = now or datetime.now()

    # pair -> [(venue, symbol, quote)]
    by_pair: Dict[AssetPair, List[tuple]] = defaultdict(list)
    for venue in sorted(snapshot):
        venue_markets = markets.get(venue, {})
        for symbol, quote in snapshot[venue].items():
            pair = venue_markets.get(symbol)
            if pair is not None and venue in profiles:
                by_pair[pair].append((venue, symbol, quote))

    opportunities = []
    for pair, quoted in by_pair.items():
        if len(quoted) < 2:
            continue

        best_buy = best_sell = None
        for venue, symbol, quote in quoted:
            fee = profiles[venue].fee_rate
            buy_with_fee = quote.price * (1 + fee)
            sell_with_fee = quote.price * (1 - fee)
            if best_buy is None or buy_with_fee < best_buy[3]:
                best_buy = (venue, symbol, quote, buy_with_fee)
            if best_sell is None or sell_with_fee > best_sell[3]:
                best_sell = (venue, symbol, quote, sell_with_fee)

        if best_buy[0] == best_sell[0]:
            continue

        buy_with_fee, sell_with_fee = best_buy[3], best_sell[3]
        coin_amount = capital / buy_with_fee
        net_profit = coin_amount * sell_with_fee - capital
        profit_percent = net_profit / capital * 100
        if profit_percent <= min_profit_threshold:
            continue

        opportunities.append(DirectOpportunity(
            pair=pair,
            buy_venue=best_buy[0],
            sell_venue=best_sell[0],
            buy_symbol=best_buy[1],
            sell_symbol=best_sell[1],
            buy_price=best_buy[2].price,
            sell_price=best_sell[2].price,
            buy_price_with_fee=buy_with_fee,
            sell_price_with_fee=sell_with_fee,
            coin_amount=coin_amount,
            net_profit=net_profit,
            profit_percent=profit_percent,
            capital=capital,
            detected_at=now,
        ))

    opportunities.sort(key=lambda o: o.profit_percent, reverse=True)
    return opportunities


class ArbitrageDetector:
    """
    Turns a price snapshot into a ranked list of opportunities.

    Runs on a single periodic tick; stale quotes are dropped before any
    computation so a venue with an old price simply drops out of the tick.
    """

    def __init__(self, ctx, triangular: Optional[TriangularArbitrageEngine] = None):
        self.ctx = ctx
        cfg = ctx.config
        self.triangular = triangular or TriangularArbitrageEngine(
            quote_currency=cfg.quote_currency,
            min_profit_threshold=cfg.triangular_min_profit_threshold,
            max_plausible_profit=cfg.max_arbitrage_profit,
            max_cycles=cfg.max_triangular_cycles,
        )
        # Current opportunities
        self.opportunities: List[Opportunity] = []
        # Historical opportunities (last 100)
        self.history: List[Opportunity] = []
        self.last_tick: Optional[datetime] = None
        self._on_opportunity_callbacks: List[Callable[[Opportunity], None]] = []

    def on_opportunity(self, callback: Callable[[Opportunity], None]):
        """Register callback for new opportunities"""
        self._on_opportunity_callbacks.append(callback)

    def detect(self, snapshot: Optional[Snapshot] = None, now: Optional[float] = None) -> List[Opportunity]:
        """Run one detection tick and return opportunities ranked by profit %"""
        started = time.perf_counter()
        cfg = self.ctx.config
        now = self.ctx.store.clock() if now is None else now
        if snapshot is None:
            snapshot = self.ctx.store.snapshot()
        fresh = filter_fresh(snapshot, cfg.max_quote_age, now)
        detected_at = datetime.fromtimestamp(now)

        found: List[Opportunity] = list(find_direct_opportunities(
            fresh,
            self.ctx.markets,
            self.ctx.profiles,
            cfg.default_capital,
            cfg.min_profit_threshold,
            detected_at,
        ))
        for venue, quotes in fresh.items():
            if venue not in self.ctx.profiles:
                continue
            found.extend(self._triangular_for(venue, quotes, detected_at))

        found.sort(key=lambda o: o.profit_percent, reverse=True)
        self.opportunities = found
        self.last_tick = detected_at
        self._publish(found)
        self.ctx.metrics.record_detection(time.perf_counter() - started)
        return found

    def _triangular_for(self, venue: str, quotes: Dict[str, Quote], detected_at: datetime):
        return self.triangular.find_opportunities(
            venue,
            quotes,
            self.ctx.markets.get(venue, {}),
            self.ctx.profiles[venue].fee_rate,
            self.ctx.config.default_capital,
            detected_at,
        )

    def _publish(self, found: List[Opportunity]):
        best: Dict[str, float] = {"direct": 0.0, "triangular": 0.0}
        for opp in found:
            best[opp.kind] = max(best[opp.kind], opp.profit_percent)
            self.ctx.metrics.record_opportunity(opp.kind)

            self.history.append(opp)
            if len(self.history) > HISTORY_SIZE:
                self.history.pop(0)

            for callback in self._on_opportunity_callbacks:
                try:
                    callback(opp)
                except Exception as e:
                    logger.error(f"Opportunity callback error: {e}")

        for kind, profit in best.items():
            self.ctx.metrics.record_best_opportunity(kind, profit)

        if found:
            top = found[0]
            logger.info(
                f"Tick: {len(found)} opportunities | best {top.kind} "
                f"{'/'.join(top.venues)} {top.profit_percent:.4f}%"
            )
        else:
            logger.debug("Tick: no opportunities")

    def get_state(self) -> dict:
        """Current state for status reporting"""
        return {
            "opportunities": [o.to_dict() for o in self.opportunities],
            "history": [o.to_dict() for o in self.history[-20:]],
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "triangular": self.triangular.get_state(),
        }
