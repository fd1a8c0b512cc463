"""
Price State Store

Holds the latest quote per (venue, symbol). Written by the ingestion
tasks, read by the detector and the health monitor. Staleness is judged
lazily at read time; nothing is evicted in the background.
"""
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from errors import StaleDataError

Snapshot = Dict[str, Dict[str, "Quote"]]


@dataclass(frozen=True)
class Quote:
    venue: str
    symbol: str
    price: float
    observed_at: float

    def age(self, now: float) -> float:
        return max(0.0, now - self.observed_at)

    def to_dict(self) -> dict:
        return {
            "venue": self.venue,
            "symbol": self.symbol,
            "price": self.price,
            "observed_at": self.observed_at,
        }


class PriceStateStore:
    """Thread-safe last-write-wins map of (venue, symbol) -> Quote"""

    def __init__(self, max_age: float = 30.0, clock: Callable[[], float] = time.time):
        self.max_age = max_age
        self.clock = clock
        self._lock = threading.Lock()
        self._quotes: Dict[str, Dict[str, Quote]] = {}

    def update(self, venue: str, symbol: str, price: float, observed_at: Optional[float] = None) -> bool:
        """
        Store a quote.

        Returns False (and keeps the stored quote) when the write is older
        than what is already held, so observed_at never moves backwards.
        """
        if not price > 0:
            raise ValueError(f"[{venue}] Invalid price for {symbol}: {price}")
        observed_at = self.clock() if observed_at is None else observed_at
        quote = Quote(venue=venue, symbol=symbol, price=float(price), observed_at=observed_at)

        with self._lock:
            venue_quotes = self._quotes.setdefault(venue, {})
            current = venue_quotes.get(symbol)
            if current is not None and current.observed_at > observed_at:
                return False
            venue_quotes[symbol] = quote
        return True

    def touch(self, venue: str, symbol: str, observed_at: Optional[float] = None) -> bool:
        """Refresh a quote's timestamp without changing its price"""
        observed_at = self.clock() if observed_at is None else observed_at
        with self._lock:
            current = self._quotes.get(venue, {}).get(symbol)
            if current is None or current.observed_at >= observed_at:
                return False
            self._quotes[venue][symbol] = Quote(venue, symbol, current.price, observed_at)
        return True

    def get(self, venue: str, symbol: str) -> Optional[Quote]:
        with self._lock:
            return self._quotes.get(venue, {}).get(symbol)

    def snapshot(self) -> Snapshot:
        """Point-in-time copy of every quote, taken under one lock"""
        with self._lock:
            return {venue: dict(quotes) for venue, quotes in self._quotes.items()}

    def is_stale(self, venue: str, symbol: str, max_age: Optional[float] = None, now: Optional[float] = None) -> bool:
        """A missing quote counts as stale"""
        quote = self.get(venue, symbol)
        if quote is None:
            return True
        max_age = self.max_age if max_age is None else max_age
        now = self.clock() if now is None else now
        return quote.age(now) > max_age

    def fresh_quote(self, venue: str, symbol: str, max_age: Optional[float] = None) -> Quote:
        quote = self.get(venue, symbol)
        if quote is None:
            raise StaleDataError(f"[{venue}] No quote for {symbol}")
        max_age = self.max_age if max_age is None else max_age
        age = quote.age(self.clock())
        if age > max_age:
            raise StaleDataError(f"[{venue}] Quote for {symbol} is {age:.1f}s old")
        return quote

    def fresh_snapshot(self, max_age: Optional[float] = None, now: Optional[float] = None) -> Snapshot:
        """Snapshot with stale quotes (and venues left empty) removed"""
        max_age = self.max_age if max_age is None else max_age
        now = self.clock() if now is None else now
        return filter_fresh(self.snapshot(), max_age, now)

    def last_update(self, venue: str) -> Optional[float]:
        with self._lock:
            quotes = self._quotes.get(venue)
            if not quotes:
                return None
            return max(q.observed_at for q in quotes.values())

    def venues(self):
        with self._lock:
            return list(self._quotes)


def filter_fresh(snapshot: Snapshot, max_age: float, now: float) -> Snapshot:
    fresh: Snapshot = {}
    for venue, quotes in snapshot.items():
        kept = {symbol: q for symbol, q in quotes.items() if q.age(now) <= max_age}
        if kept:
            fresh[venue] = kept
    return fresh
