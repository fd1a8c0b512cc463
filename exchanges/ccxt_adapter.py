"""Exchange adapter over ccxt's async REST clients"""
import logging
import os
import time
from typing import Any, Dict, Optional

import ccxt.async_support as ccxt
from ccxt.base.decimal_to_precision import TICK_SIZE

from config import DEFAULT_LOT_STEP, LOT_STEPS, VENUES
from errors import (
    ArbitrageError,
    AuthenticationError,
    ConnectivityError,
    InsufficientBalanceError,
    NotSupportedError,
    OrderRejectedError,
)
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

logger = logging.getLogger(__name__)


def translate_error(venue: str, error: Exception) -> ArbitrageError:
    """Map a ccxt exception onto the engine's error taxonomy"""
    message = f"[{venue}] {type(error).__name__}: {error}"
    # InvalidNonce is a NetworkError in ccxt, but it means a stale timestamp
    if isinstance(error, (ccxt.InvalidNonce, ccxt.AuthenticationError)):
        return AuthenticationError(message)
    if isinstance(error, ccxt.InsufficientFunds):
        return InsufficientBalanceError(message)
    if isinstance(error, ccxt.InvalidOrder):
        return OrderRejectedError(message)
    if isinstance(error, ccxt.NotSupported):
        return NotSupportedError(message)
    if isinstance(error, ccxt.NetworkError):
        return ConnectivityError(message)
    if isinstance(error, ccxt.ExchangeError):
        return OrderRejectedError(message)
    return ConnectivityError(message)


class CcxtExchangeAdapter(ExchangeAdapter):
    """REST quote/balance/order access to one venue through ccxt"""

    def __init__(
        self,
        name: str,
        ccxt_id: str,
        fee: float,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        sandbox: bool = False,
        min_notional: float = 0.0,
        min_capital: float = 0.0,
        max_capital: float = float("inf"),
        timeout: float = 5.0,
        client: Optional[Any] = None,
    ):
        super().__init__(name)
        self.ccxt_id = ccxt_id
        self.fee = fee
        self.min_notional = min_notional
        self.min_capital = min_capital
        self.max_capital = max_capital
        self._has_credentials = bool(api_key and api_secret)

        if client is None:
            exchange_class = getattr(ccxt, ccxt_id)
            options = {"enableRateLimit": True, "timeout": int(timeout * 1000)}
            if self._has_credentials:
                options.update({"apiKey": api_key, "secret": api_secret})
            client = exchange_class(options)
            if sandbox:
                try:
                    client.set_sandbox_mode(True)
                except ccxt.NotSupported:
                    logger.warning(f"[{name}] No sandbox available, using production endpoints")
        self.client = client

        self.markets: Dict[str, AssetPair] = {}
        self.market_ids: Dict[str, str] = {}
        self._lot_steps: Dict[str, float] = {}
        self._min_quantities: Dict[str, float] = {}

    @classmethod
    def from_settings(cls, name: str, sandbox: bool = False, timeout: float = 5.0,
                      client: Optional[Any] = None) -> "CcxtExchangeAdapter":
        """REST-only adapter for a venue listed in config.VENUES"""
        settings = VENUES[name]
        return cls(
            name=name,
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

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def load_markets(self) -> Dict[str, AssetPair]:
        try:
            raw = await self.client.load_markets()
        except Exception as e:
            raise translate_error(self.name, e) from e

        markets: Dict[str, AssetPair] = {}
        for symbol, market in raw.items():
            if not market.get("spot", True) or market.get("active") is False:
                continue
            base, quote = market.get("base"), market.get("quote")
            if not base or not quote:
                continue
            markets[symbol] = AssetPair(base=base, quote=quote)
            self.market_ids[symbol] = market.get("id") or symbol

            step = self._amount_step(market)
            if step and step > 0:
                # Different quote markets may disagree; keep the coarsest
                self._lot_steps[base] = max(step, self._lot_steps.get(base, 0.0))
            min_amount = ((market.get("limits") or {}).get("amount") or {}).get("min")
            if min_amount:
                self._min_quantities[base] = max(float(min_amount), self._min_quantities.get(base, 0.0))

        self.markets = markets
        logger.info(f"[{self.name}] Loaded {len(markets)} spot markets")
        return markets

    def _amount_step(self, market: Dict[str, Any]) -> Optional[float]:
        precision = (market.get("precision") or {}).get("amount")
        if precision is None:
            return None
        if getattr(self.client, "precisionMode", None) == TICK_SIZE:
            return float(precision)
        return 10 ** -int(precision)

    def profile(self) -> VenueProfile:
        lot_steps = dict(LOT_STEPS)
        lot_steps.update(self._lot_steps)
        return VenueProfile(
            venue=self.name,
            fee_rate=self.fee,
            min_notional=self.min_notional,
            min_capital=self.min_capital,
            max_capital=self.max_capital,
            lot_steps=lot_steps,
            default_lot_step=DEFAULT_LOT_STEP,
            min_quantities=dict(self._min_quantities),
        )

    def trading_enabled(self) -> bool:
        return self._has_credentials

    # ------------------------------------------------------------------
    # Market data / account
    # ------------------------------------------------------------------

    async def quote(self, symbol: str) -> QuoteTick:
        try:
            ticker = await self.client.fetch_ticker(symbol)
        except Exception as e:
            raise translate_error(self.name, e) from e
        price = ticker.get("last") or ticker.get("close")
        if not price:
            raise ConnectivityError(f"[{self.name}] No price in ticker for {symbol}")
        timestamp = ticker.get("timestamp")
        as_of = timestamp / 1000 if timestamp else time.time()
        return QuoteTick(price=float(price), as_of=as_of)

    async def balance(self, asset: str) -> Balance:
        try:
            balances = await self.client.fetch_balance()
        except Exception as e:
            raise translate_error(self.name, e) from e
        entry = balances.get(asset) or {}
        return Balance(free=float(entry.get("free") or 0.0), locked=float(entry.get("used") or 0.0))

    async def sync_clock(self):
        try:
            offset = await self.client.load_time_difference()
        except Exception as e:
            raise translate_error(self.name, e) from e
        logger.info(f"[{self.name}] Clock resynchronized (offset {offset} ms)")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def submit_order(self, order: OrderRequest) -> OrderFill:
        params = {}
        if order.client_order_id:
            params["clientOrderId"] = order.client_order_id

        try:
            if order.notional is not None:
                response = await self._buy_with_cost(order, params)
            else:
                response = await self.client.create_order(
                    order.symbol, order.order_type, order.side.value, order.quantity, None, params
                )
        except ArbitrageError:
            raise
        except Exception as e:
            raise translate_error(self.name, e) from e

        return self._parse_order(response, order)

    async def _buy_with_cost(self, order: OrderRequest, params: Dict[str, Any]) -> Dict[str, Any]:
        if order.side != OrderSide.BUY:
            raise OrderRejectedError(f"[{self.name}] Notional sizing is only valid for buys")
        try:
            return await self.client.create_market_buy_order_with_cost(order.symbol, order.notional, params)
        except ccxt.NotSupported:
            tick = await self.quote(order.symbol)
            quantity = order.notional / tick.price
            logger.debug(f"[{self.name}] Cost orders unsupported, buying {quantity} {order.pair.base}")
            return await self.client.create_order(
                order.symbol, order.order_type, order.side.value, quantity, None, params
            )

    def _parse_order(self, response: Dict[str, Any], order: OrderRequest) -> OrderFill:
        fills = []
        for trade in response.get("trades") or []:
            price, amount = trade.get("price"), trade.get("amount")
            if price and amount:
                fills.append(Fill(price=float(price), quantity=float(amount)))

        fee_total, fee_asset = 0.0, None
        fee = response.get("fee") or {}
        if fee.get("cost") is not None:
            fee_total, fee_asset = float(fee["cost"]), fee.get("currency")
        elif response.get("fees"):
            for entry in response["fees"]:
                if entry.get("cost") is None:
                    continue
                if fee_asset is None:
                    fee_asset = entry.get("currency")
                if entry.get("currency") == fee_asset:
                    fee_total += float(entry["cost"])

        cost = response.get("cost")
        average = response.get("average")
        return OrderFill(
            order_id=str(response.get("id") or order.client_order_id or ""),
            filled_quantity=float(response.get("filled") or 0.0),
            avg_fill_price=float(average) if average else None,
            fills=tuple(fills),
            quote_quantity=float(cost) if cost else None,
            fee=fee_total,
            fee_asset=fee_asset,
        )

    async def close(self):
        await self.client.close()
