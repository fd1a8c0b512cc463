"""Kraken adapter: ccxt REST plus the v2 ticker websocket"""
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Tuple

from config import VENUES
from exchanges.base import WebSocketFeedMixin
from exchanges.ccxt_adapter import CcxtExchangeAdapter

logger = logging.getLogger(__name__)


class KrakenExchange(WebSocketFeedMixin, CcxtExchangeAdapter):
    """Kraken spot venue with a v2 ticker feed"""

    def __init__(self, sandbox: bool = False, timeout: float = 5.0, client: Optional[Any] = None):
        settings = VENUES["kraken"]
        super().__init__(
            name="kraken",
            ccxt_id=settings["ccxt_id"],
            fee=settings["fee"],
            api_key=os.getenv(settings["api_key_env"]),
            api_secret=os.getenv(settings["api_secret_env"]),
            # Kraken has no spot sandbox
            sandbox=False,
            min_notional=settings["min_notional"],
            min_capital=settings["min_capital"],
            max_capital=settings["max_capital"],
            timeout=timeout,
            client=client,
        )
        self.ws_url = settings["ws_url"]
        self._stream_symbols: Dict[str, str] = {}

    def _subscribe_messages(self, symbols: List[str]) -> Iterable[Dict[str, Any]]:
        # v2 speaks "BTC/USD" style names, matching ccxt unified symbols
        self._stream_symbols = {s: s for s in symbols}
        return [{
            "method": "subscribe",
            "params": {
                "channel": "ticker",
                "symbol": list(self._stream_symbols),
            },
        }]

    def _parse_message(self, data: Any) -> List[Tuple[str, float, Optional[float]]]:
        """Parse Kraken v2 ticker message"""
        # Skip status, heartbeat and subscription acks
        if not isinstance(data, dict) or data.get("channel") != "ticker":
            return []
        if data.get("type") not in ("update", "snapshot"):
            return []

        updates = []
        for ticker in data.get("data") or []:
            symbol = self._stream_symbols.get(ticker.get("symbol"))
            last = ticker.get("last")
            if not symbol or last is None:
                continue
            try:
                updates.append((symbol, float(last), None))
            except (TypeError, ValueError):
                logger.debug(f"[{self.name}] Bad price in {ticker}")
        return updates
