"""
Trade Execution Coordinator

Executes one opportunity as a strict sequence of market orders:

  Pending -> per leg {CheckBalance -> Normalize -> Submit -> Confirm} -> Completed | Failed

Each leg's input is the previous leg's actual output. A failure after
some legs have filled leaves those legs in the result and stops; nothing
is unwound automatically, so a Failed trade may hold inventory that needs
manual reconciliation.

Submit outcomes are explicit: a real fill, a simulated estimate (paper
venues without credentials, or a venue that returned no fill data) or a
failure. Simulated legs are tagged as such in every result.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from context import TradingMode
from errors import (
    ArbitrageError,
    AuthenticationError,
    ConnectivityError,
    InsufficientBalanceError,
    NotSupportedError,
    OrderRejectedError,
    StaleDataError,
    ValidationError,
)
from exchanges.base import AssetPair, ExchangeAdapter, OrderFill, OrderRequest, OrderSide, VenueProfile
from opportunity import DirectOpportunity, Leg, Opportunity, TriangularOpportunity

logger = logging.getLogger(__name__)

RESULT_CACHE_SIZE = 1000


class TradeStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class FillKind(Enum):
    REAL = "real"
    SIMULATED = "simulated"


# ============================================================
# QUANTITY NORMALIZATION
# ============================================================

def round_to_step(quantity: float, step: float) -> float:
    """Round down to a multiple of step; never returns more than quantity"""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    if quantity <= 0:
        return 0.0
    q, s = Decimal(str(quantity)), Decimal(str(step))
    return float((q / s).to_integral_value(rounding=ROUND_FLOOR) * s)


def ceil_to_step(quantity: float, step: float) -> float:
    """Round up to a multiple of step"""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    if quantity <= 0:
        return 0.0
    q, s = Decimal(str(quantity)), Decimal(str(step))
    return float((q / s).to_integral_value(rounding=ROUND_CEILING) * s)


# ============================================================
# REQUEST / RESULT TYPES
# ============================================================

@dataclass(frozen=True)
class ExecutionRequest:
    opportunity: Opportunity
    capital: Optional[float] = None
    trade_id: Optional[str] = None


@dataclass(frozen=True)
class LegResult:
    """One order that actually executed (or was simulated)"""
    leg: Leg
    leg_index: int
    venue: str
    input_amount: float
    result_amount: float
    realized_price: float
    order_id: Optional[str]
    kind: FillKind
    fee: float = 0.0

    @property
    def simulated(self) -> bool:
        return self.kind == FillKind.SIMULATED

    def to_dict(self) -> dict:
        return {
            "leg": self.leg.to_dict(),
            "leg_index": self.leg_index,
            "venue": self.venue,
            "input_amount": round(self.input_amount, 8),
            "result_amount": round(self.result_amount, 8),
            "realized_price": self.realized_price,
            "order_id": self.order_id,
            "kind": self.kind.value,
            "fee": self.fee,
        }


@dataclass(frozen=True)
class FailureReason:
    code: str
    message: str
    leg_index: Optional[int] = None
    venue: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "leg_index": self.leg_index,
            "venue": self.venue,
        }


@dataclass
class ExecutionResult:
    """Owned by the coordinator running the trade until finalized"""
    trade_id: str
    opportunity: Opportunity
    capital: float
    status: TradeStatus = TradeStatus.PENDING
    leg_results: List[LegResult] = field(default_factory=list)
    final_amount: Optional[float] = None
    profit: float = 0.0
    profit_percent: float = 0.0
    failure_reason: Optional[FailureReason] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def simulated(self) -> bool:
        return any(r.simulated for r in self.leg_results)

    @property
    def is_terminal(self) -> bool:
        return self.status != TradeStatus.PENDING

    def finalize(
        self,
        status: TradeStatus,
        final_amount: Optional[float] = None,
        failure_reason: Optional[FailureReason] = None,
    ):
        if self.is_terminal:
            raise RuntimeError(f"Trade {self.trade_id} already finalized as {self.status.value}")
        if status == TradeStatus.PENDING:
            raise ValueError("Cannot finalize as pending")
        self.status = status
        self.failure_reason = failure_reason
        self.finished_at = datetime.now()
        if final_amount is not None:
            self.final_amount = final_amount
            self.profit = final_amount - self.capital
            self.profit_percent = self.profit / self.capital * 100 if self.capital else 0.0

    def to_dict(self) -> dict:
        return {
            "trade_id": self.trade_id,
            "type": self.opportunity.kind,
            "status": self.status.value,
            "capital": self.capital,
            "final_amount": self.final_amount,
            "profit": round(self.profit, 8),
            "profit_percent": round(self.profit_percent, 4),
            "simulated": self.simulated,
            "legs": [r.to_dict() for r in self.leg_results],
            "failure_reason": self.failure_reason.to_dict() if self.failure_reason else None,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# Submit step outcomes

@dataclass(frozen=True)
class RealFill:
    fill: OrderFill
    output_amount: float
    price: float


@dataclass(frozen=True)
class SimulatedFill:
    output_amount: float
    price: float
    reason: str
    order_id: Optional[str] = None


@dataclass(frozen=True)
class FailedSubmit:
    error: ArbitrageError


SubmitOutcome = Union[RealFill, SimulatedFill, FailedSubmit]


class LegFailed(Exception):
    """Internal: aborts the leg sequence with a structured reason"""

    def __init__(self, reason: FailureReason):
        super().__init__(reason.message)
        self.reason = reason


# ============================================================
# COORDINATOR
# ============================================================

class TradeExecutionCoordinator:
    """
    Runs execution requests against the venue adapters.

    Several trades may run at once; balance check through submit is
    serialized per (venue, asset) so two trades never size their orders
    from the same stale balance.
    """

    def __init__(self, ctx):
        self.ctx = ctx
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._results: "OrderedDict[str, ExecutionResult]" = OrderedDict()

        self.total_trades = 0
        self.successful_trades = 0
        self.total_profit = 0.0

    @property
    def trading_mode(self) -> TradingMode:
        return self.ctx.trading_mode

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Run a trade to its terminal state.

        A trade id already in flight is joined, a recently finished one
        returns its cached result; orders are never submitted twice.
        """
        trade_id = request.trade_id or f"trade-{uuid.uuid4().hex[:12]}"

        cached = self._results.get(trade_id)
        if cached is not None:
            logger.info(f"[{trade_id}] Already finished, returning cached result")
            return cached

        task = self._inflight.get(trade_id)
        if task is None:
            task = asyncio.create_task(self._run_trade(trade_id, request), name=trade_id)
            self._inflight[trade_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(trade_id, None))
        else:
            logger.info(f"[{trade_id}] Already running, joining")

        # The trade keeps running to a terminal state even if the caller goes away
        return await asyncio.shield(task)

    async def _run_trade(self, trade_id: str, request: ExecutionRequest) -> ExecutionResult:
        opportunity = request.opportunity
        capital = request.capital if request.capital is not None else getattr(opportunity, "capital", 0.0)
        result = ExecutionResult(trade_id=trade_id, opportunity=opportunity, capital=capital)
        self._record_pending(trade_id, opportunity)
        logger.info(f"[{trade_id}] Starting {getattr(opportunity, 'kind', '?')} trade ({self.trading_mode.value})")

        try:
            self._validate(opportunity, capital)
            result.capital = self._adjust_capital(opportunity, capital)
            final_amount = await self._run_legs(result)
            result.finalize(TradeStatus.COMPLETED, final_amount=final_amount)
            logger.info(
                f"[{trade_id}] COMPLETED | {result.capital:.4f} -> {final_amount:.4f} "
                f"| profit {result.profit:.6f} ({result.profit_percent:.4f}%)"
                f"{' [simulated]' if result.simulated else ''}"
            )
        except LegFailed as e:
            result.finalize(TradeStatus.FAILED, failure_reason=e.reason)
            logger.error(f"[{trade_id}] FAILED at leg {e.reason.leg_index} on {e.reason.venue}: {e.reason.message}")
        except ArbitrageError as e:
            result.finalize(TradeStatus.FAILED, failure_reason=FailureReason(e.code, str(e)))
            logger.error(f"[{trade_id}] FAILED before any order: {e}")
        except asyncio.CancelledError:
            result.finalize(TradeStatus.FAILED, failure_reason=FailureReason("cancelled", "Trade cancelled"))
            self._hand_off(result)
            raise
        except Exception as e:
            result.finalize(TradeStatus.FAILED, failure_reason=FailureReason("internal_error", repr(e)))
            self._hand_off(result)
            raise

        self._hand_off(result)
        return result

    # ------------------------------------------------------------------
    # Validation and capital
    # ------------------------------------------------------------------

    def _validate(self, opportunity: Opportunity, capital: float):
        if not isinstance(opportunity, (DirectOpportunity, TriangularOpportunity)):
            raise ValidationError(f"Unsupported opportunity type {type(opportunity).__name__}")
        if len(opportunity.legs) != opportunity.expected_legs:
            raise ValidationError(
                f"{opportunity.kind} opportunity needs {opportunity.expected_legs} legs, "
                f"got {len(opportunity.legs)}"
            )
        minimum = self.ctx.config.execution_min_profit_threshold
        if opportunity.profit_percent < minimum:
            raise ValidationError(f"Profit {opportunity.profit_percent:.4f}% below minimum {minimum}%")
        if not capital or capital <= 0:
            raise ValidationError(f"Capital must be positive, got {capital}")

        for leg in opportunity.legs:
            if leg.venue not in self.ctx.adapters:
                raise ValidationError(f"Unknown venue {leg.venue}")
            if leg.is_synthetic and not leg.via:
                raise ValidationError(f"Synthetic leg {leg.symbol} has no routing markets")
            if self.trading_mode == TradingMode.LIVE and not self.ctx.adapters[leg.venue].trading_enabled():
                raise ValidationError(f"[{leg.venue}] Trading is not enabled (missing credentials)")

    def _may_raise_to_minimum(self, profile: VenueProfile) -> bool:
        if profile.raise_to_minimum is not None:
            return profile.raise_to_minimum
        return self.trading_mode == TradingMode.PAPER

    def _adjust_capital(self, opportunity: Opportunity, capital: float) -> float:
        """Clamp to the first venue's capital range and minimum notional"""
        venue = opportunity.legs[0].venue
        profile = self.ctx.profiles[venue]
        adjusted = capital

        if adjusted > profile.max_capital:
            logger.info(f"[{venue}] Capital {adjusted} clamped to maximum {profile.max_capital}")
            adjusted = profile.max_capital

        minimum = max(profile.min_capital, profile.min_notional)
        if adjusted < minimum:
            if not self._may_raise_to_minimum(profile):
                raise OrderRejectedError(
                    f"[{venue}] Capital {adjusted} below venue minimum {minimum} ({self.trading_mode.value} mode)"
                )
            logger.info(f"[{venue}] Capital {adjusted} raised to minimum {minimum}")
            adjusted = minimum
        return adjusted

    # ------------------------------------------------------------------
    # Legs
    # ------------------------------------------------------------------

    async def _run_legs(self, result: ExecutionResult) -> float:
        amount = result.capital
        for index, leg in enumerate(result.opportunity.legs):
            if leg.is_synthetic:
                amount = await self._run_synthetic_leg(result, index, leg, amount)
            else:
                amount = await self._run_leg(result, index, leg, amount, leg.price)
        return amount

    async def _run_synthetic_leg(self, result: ExecutionResult, index: int, leg: Leg, amount: float) -> float:
        """Sell the held asset for the quote currency, then buy the next asset with the actual proceeds"""
        sell_symbol, buy_symbol = leg.via
        markets = self.ctx.markets.get(leg.venue, {})
        sell_pair, buy_pair = markets.get(sell_symbol), markets.get(buy_symbol)
        if sell_pair is None or buy_pair is None:
            raise LegFailed(FailureReason(
                ValidationError.code, f"Routing markets {leg.via} not listed", index, leg.venue
            ))

        sell_leg = Leg(sell_pair, sell_symbol, leg.venue, "trade", leg.price, OrderSide.SELL, is_synthetic=True)
        proceeds = await self._run_leg(result, index, sell_leg, amount, None)
        buy_leg = Leg(buy_pair, buy_symbol, leg.venue, "trade", leg.price, OrderSide.BUY, is_synthetic=True)
        return await self._run_leg(result, index, buy_leg, proceeds, None)

    async def _run_leg(
        self,
        result: ExecutionResult,
        index: int,
        leg: Leg,
        amount: float,
        fallback_price: Optional[float],
    ) -> float:
        """
        Execute one order spending `amount` of the leg's spend asset.

        `fallback_price` is used when the store holds no fresh quote; with
        None the venue is asked directly.
        """
        venue = leg.venue
        try:
            leg_result = await self._execute_order(result.trade_id, index, leg, amount, fallback_price)
        except ArbitrageError as e:
            raise LegFailed(FailureReason(e.code, str(e), index, venue)) from e
        except asyncio.TimeoutError as e:
            error = ConnectivityError(f"[{venue}] Venue call timed out")
            raise LegFailed(FailureReason(error.code, str(error), index, venue)) from e

        result.leg_results.append(leg_result)
        self.ctx.metrics.record_leg(venue, leg_result.kind.value)
        if leg_result.result_amount <= 0:
            raise LegFailed(FailureReason(
                OrderRejectedError.code, f"Leg produced no {self._receive_asset(leg)}", index, venue
            ))
        return leg_result.result_amount

    async def _execute_order(
        self, trade_id: str, index: int, leg: Leg, amount: float, fallback_price: Optional[float]
    ) -> LegResult:
        venue = leg.venue
        adapter = self.ctx.adapters[venue]
        profile = self.ctx.profiles[venue]
        spend_asset = self._spend_asset(leg)
        price = await self._reference_price(adapter, leg.symbol, fallback_price)

        if not adapter.trading_enabled():
            # Only reachable in paper mode, live mode rejects this in validation
            outcome = self._estimate(leg, amount, price, profile.fee_rate, "trading disabled")
            return self._leg_result(leg, index, amount, outcome)

        async with self._locks[(venue, spend_asset)]:
            spend, available = await self._check_balance(adapter, profile, leg, spend_asset, amount, price)
            order = self._normalize(trade_id, index, leg, profile, spend, available, price)
            outcome = await self._submit(trade_id, adapter, order, leg, price, profile.fee_rate)

        if isinstance(outcome, FailedSubmit):
            raise outcome.error
        spent = order.quantity if order.quantity is not None else order.notional
        return self._leg_result(leg, index, spent, outcome)

    async def _reference_price(self, adapter: ExchangeAdapter, symbol: str, fallback: Optional[float]) -> float:
        try:
            return self.ctx.store.fresh_quote(adapter.name, symbol).price
        except StaleDataError:
            if fallback:
                return fallback
        tick = await asyncio.wait_for(adapter.quote(symbol), timeout=self.ctx.config.call_timeout)
        return tick.price

    async def _check_balance(
        self,
        adapter: ExchangeAdapter,
        profile: VenueProfile,
        leg: Leg,
        asset: str,
        required: float,
        price: float,
    ) -> Tuple[float, float]:
        """(amount to spend, free balance); shrunk in paper mode, strict in live mode"""
        balance = await asyncio.wait_for(adapter.balance(asset), timeout=self.ctx.config.call_timeout)
        available = balance.free
        if available >= required:
            return required, available

        tolerance = self.ctx.config.balance_tolerance
        materially_short = available < required * (1 - tolerance)
        if materially_short and self.trading_mode == TradingMode.LIVE:
            raise InsufficientBalanceError(
                f"[{adapter.name}] Need {required:.8f} {asset}, have {available:.8f}"
            )

        if materially_short:
            usd = self._usd_value(adapter.name, asset, available, leg, price)
            if available <= 0 or (usd is not None and usd < profile.min_notional):
                raise InsufficientBalanceError(
                    f"[{adapter.name}] Available {available:.8f} {asset} below venue minimum notional"
                )
            logger.warning(f"[{adapter.name}] Shrinking {leg.symbol} leg to available {available:.8f} {asset}")
        return available, available

    def _normalize(
        self,
        trade_id: str,
        index: int,
        leg: Leg,
        profile: VenueProfile,
        amount: float,
        available: float,
        price: float,
    ) -> OrderRequest:
        """Round down to the lot step and enforce venue minimums"""
        pair = leg.pair
        client_order_id = f"{trade_id}-{index}-{leg.side.value}"
        min_notional_quote = self._min_notional_in(leg, profile, pair.quote, price)

        if leg.side == OrderSide.SELL:
            step = profile.lot_step(pair.base)
            quantity = round_to_step(amount, step)
            needed = max(profile.min_quantity(pair.base), min_notional_quote / price)
            if quantity <= 0 or quantity < needed - 1e-12:
                quantity = self._bump(leg, profile, quantity, needed, step, available, pair.base)
            return OrderRequest(leg.symbol, pair, OrderSide.SELL, quantity=quantity, client_order_id=client_order_id)

        step = profile.lot_step(pair.quote)
        notional = round_to_step(amount, step)
        needed = max(min_notional_quote, profile.min_quantity(pair.base) * price)
        if notional <= 0 or notional < needed - 1e-12:
            notional = self._bump(leg, profile, notional, needed, step, available, pair.quote)
        return OrderRequest(leg.symbol, pair, OrderSide.BUY, notional=notional, client_order_id=client_order_id)

    def _bump(
        self,
        leg: Leg,
        profile: VenueProfile,
        size: float,
        needed: float,
        step: float,
        available: float,
        asset: str,
    ) -> float:
        """Raise an undersized order to the venue minimum, when policy and balance allow"""
        bumped = ceil_to_step(max(needed, step), step)
        if not self._may_raise_to_minimum(profile):
            raise OrderRejectedError(
                f"[{leg.venue}] {leg.symbol} size {size:.8f} {asset} below minimum {bumped:.8f}"
            )
        if bumped > available:
            raise OrderRejectedError(
                f"[{leg.venue}] {leg.symbol} minimum {bumped:.8f} {asset} exceeds available {available:.8f}"
            )
        logger.warning(f"[{leg.venue}] Raising {leg.symbol} order from {size:.8f} to minimum {bumped:.8f} {asset}")
        return bumped

    async def _submit(
        self,
        trade_id: str,
        adapter: ExchangeAdapter,
        order: OrderRequest,
        leg: Leg,
        price: float,
        fee_rate: float,
    ) -> SubmitOutcome:
        """Place the order, retrying once after a clock resync on authentication failure"""
        timeout = self.ctx.config.call_timeout
        for attempt in (1, 2):
            try:
                fill = await asyncio.wait_for(adapter.submit_order(order), timeout=timeout)
            except AuthenticationError as e:
                if attempt == 2:
                    return FailedSubmit(e)
                logger.warning(f"[{trade_id}] [{adapter.name}] {e}; resyncing clock and retrying once")
                self.ctx.metrics.record_auth_retry(adapter.name)
                await self._resync_clock(adapter)
                continue
            except asyncio.TimeoutError:
                # The order may still have reached the venue
                return FailedSubmit(ConnectivityError(
                    f"[{adapter.name}] Order {order.client_order_id} timed out after {timeout}s"
                ))
            except ArbitrageError as e:
                return FailedSubmit(e)
            return self._realize(order, fill, leg, price, fee_rate)
        raise AssertionError("unreachable")

    async def _resync_clock(self, adapter: ExchangeAdapter):
        try:
            await asyncio.wait_for(adapter.sync_clock(), timeout=self.ctx.config.call_timeout)
        except NotSupportedError:
            logger.info(f"[{adapter.name}] Clock resync not supported, retrying as is")
        except (ArbitrageError, asyncio.TimeoutError) as e:
            logger.warning(f"[{adapter.name}] Clock resync failed: {e}")

    def _realize(self, order: OrderRequest, fill: OrderFill, leg: Leg, price: float, fee_rate: float) -> SubmitOutcome:
        """Leg output from the venue's fills; an estimate only when there are none"""
        if not fill.has_fill_data:
            spent = order.quantity if order.quantity is not None else order.notional
            estimate = self._estimate(leg, spent, price, fee_rate, "no fill data")
            return SimulatedFill(estimate.output_amount, estimate.price, estimate.reason, fill.order_id)

        receive_asset = order.receive_asset
        if order.side == OrderSide.BUY:
            received = fill.filled_quantity
        else:
            received = fill.quote_amount()
        # Fees charged in another asset (e.g. BNB) do not reduce the proceeds
        if fill.fee and fill.fee_asset == receive_asset:
            received -= fill.fee
        return RealFill(fill=fill, output_amount=received, price=fill.weighted_price())

    def _estimate(self, leg: Leg, amount: float, price: float, fee_rate: float, reason: str) -> SimulatedFill:
        if leg.side == OrderSide.BUY:
            output = amount / price * (1 - fee_rate)
        else:
            output = amount * price * (1 - fee_rate)
        return SimulatedFill(output_amount=output, price=price, reason=reason)

    def _leg_result(self, leg: Leg, index: int, spent: float, outcome: SubmitOutcome) -> LegResult:
        if isinstance(outcome, RealFill):
            return LegResult(
                leg=leg,
                leg_index=index,
                venue=leg.venue,
                input_amount=spent,
                result_amount=outcome.output_amount,
                realized_price=outcome.price,
                order_id=outcome.fill.order_id,
                kind=FillKind.REAL,
                fee=outcome.fill.fee,
            )
        logger.info(f"[{leg.venue}] {leg.symbol} leg simulated ({outcome.reason})")
        return LegResult(
            leg=leg,
            leg_index=index,
            venue=leg.venue,
            input_amount=spent,
            result_amount=outcome.output_amount,
            realized_price=outcome.price,
            order_id=outcome.order_id,
            kind=FillKind.SIMULATED,
        )

    # ------------------------------------------------------------------
    # Asset helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _spend_asset(leg: Leg) -> str:
        return leg.pair.quote if leg.side == OrderSide.BUY else leg.pair.base

    @staticmethod
    def _receive_asset(leg: Leg) -> str:
        return leg.pair.base if leg.side == OrderSide.BUY else leg.pair.quote

    def _usd_price(self, venue: str, asset: str) -> Optional[float]:
        """Price of an asset in the quote currency from the store, if known"""
        quote_currency = self.ctx.config.quote_currency
        if asset == quote_currency:
            return 1.0
        target = AssetPair(asset, quote_currency)
        for symbol, pair in self.ctx.markets.get(venue, {}).items():
            if pair == target:
                quote = self.ctx.store.get(venue, symbol)
                return quote.price if quote else None
        return None

    def _usd_value(self, venue: str, asset: str, amount: float, leg: Leg, price: float) -> Optional[float]:
        if asset == leg.pair.base and leg.pair.quote == self.ctx.config.quote_currency:
            return amount * price
        usd = self._usd_price(venue, asset)
        return amount * usd if usd is not None else None

    def _min_notional_in(self, leg: Leg, profile: VenueProfile, asset: str, price: float) -> float:
        """Venue minimum notional (quote-currency terms) expressed in `asset`"""
        if not profile.min_notional:
            return 0.0
        usd = self._usd_price(leg.venue, asset)
        if usd is None:
            # Unknown conversion, only the venue's own filters apply
            return 0.0
        return profile.min_notional / usd

    # ------------------------------------------------------------------
    # History and stats
    # ------------------------------------------------------------------

    def _record_pending(self, trade_id: str, opportunity: Opportunity):
        try:
            self.ctx.history.record_pending(trade_id, opportunity)
        except Exception as e:
            logger.error(f"[{trade_id}] Trade history rejected pending record: {e}")

    def _hand_off(self, result: ExecutionResult):
        self.total_trades += 1
        if result.status == TradeStatus.COMPLETED:
            self.successful_trades += 1
            self.total_profit += result.profit
        self.ctx.metrics.record_trade(result.status.value)

        self._results[result.trade_id] = result
        while len(self._results) > RESULT_CACHE_SIZE:
            self._results.popitem(last=False)

        try:
            self.ctx.history.record(result)
        except Exception as e:
            logger.error(f"[{result.trade_id}] Trade history rejected result: {e}")

    def get_stats(self) -> dict:
        return {
            "total_trades": self.total_trades,
            "successful_trades": self.successful_trades,
            "success_rate": (self.successful_trades / self.total_trades * 100) if self.total_trades else 0.0,
            "total_profit": self.total_profit,
            "mode": self.trading_mode.value,
        }

    def get_state(self) -> dict:
        """Current state for status reporting"""
        return {
            "stats": self.get_stats(),
            "in_flight": sorted(self._inflight),
            "recent_trades": [r.to_dict() for r in list(self._results.values())[-20:]],
        }
