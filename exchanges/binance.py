"""Binance adapter: ccxt REST plus the public miniTicker stream"""
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from config import VENUES
from exchanges.base import WebSocketFeedMixin
from exchanges.ccxt_adapter import CcxtExchangeAdapter

logger = logging.getLogger(__name__)


class BinanceExchange(WebSocketFeedMixin, CcxtExchangeAdapter):
    """Binance spot venue with a combined-stream price feed"""

    def __init__(self, sandbox: bool = False, timeout: float = 5.0, client: Optional[Any] = None):
        settings = VENUES["binance"]
        super().__init__(
            name="binance",
            ccxt_id=settings["ccxt_id"],
            fee=settings["fee"],
            api_key=os.getenv(settings["api_key_env"]),
            api_secret=os.getenv(settings["api_secret_env"]),
            sandbox=sandbox,
            min_notional=settings["min_notional"],
            min_capital=settings["min_capital"],
            max_capital=settings["max_capital"],
            timeout=timeout,
            client=client,
        )
        self.ws_url = settings["ws_url"]
        self._stream_symbols: Dict[str, str] = {}

    def _ws_url(self, symbols: List[str]) -> str:
        """Binance uses URL-based subscription, no message needed"""
        self._stream_symbols = {self.market_ids.get(s, s.replace("/", "")).upper(): s for s in symbols}
        streams = "/".join(f"{market_id.lower()}@miniTicker" for market_id in self._stream_symbols)
        return f"{self.ws_url}/{streams}"

    def _parse_message(self, data: Any) -> List[Tuple[str, float, Optional[float]]]:
        """Parse Binance miniTicker message"""
        # {"e":"24hrMiniTicker","E":1672515782136,"s":"BTCUSDT","c":"50000.00",...}
        if not isinstance(data, dict) or "s" not in data or "c" not in data:
            return []

        symbol = self._stream_symbols.get(data["s"].upper())
        if not symbol:
            return []

        try:
            price = float(data["c"])
        except (TypeError, ValueError):
            logger.debug(f"[{self.name}] Bad price in {data}")
            return []
        event_time = data.get("E")
        return [(symbol, price, event_time / 1000 if event_time else None)]
