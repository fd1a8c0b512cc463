"""
Tests for venue adapters: ccxt error mapping and parsing, stream messages, the simulator.
"""

import ccxt.async_support as ccxt
import pytest
from ccxt.base.decimal_to_precision import DECIMAL_PLACES, TICK_SIZE

import config
from errors import (
    AuthenticationError,
    ConnectivityError,
    InsufficientBalanceError,
    NotSupportedError,
    OrderRejectedError,
)
from exchanges import BinanceExchange, CcxtExchangeAdapter, KrakenExchange, SimulatedExchange
from exchanges.base import AssetPair, OrderFill, OrderRequest, OrderSide
from exchanges.ccxt_adapter import translate_error

BTC_USDT = AssetPair("BTC", "USDT")


class FakeCcxtClient:
    """Just enough of a ccxt async client for the adapter"""

    def __init__(self, markets=None, precision_mode=TICK_SIZE, cost_orders=True):
        self.precisionMode = precision_mode
        self.markets = markets or {}
        self.cost_orders = cost_orders
        self.ticker = {"last": 50000.0, "timestamp": 1_700_000_000_000}
        self.balances = {"USDT": {"free": 1000.0, "used": 25.0}}
        self.order_response = {}
        self.calls = []
        self.closed = False

    async def load_markets(self):
        return self.markets

    async def fetch_ticker(self, symbol):
        self.calls.append(("fetch_ticker", symbol))
        return self.ticker

    async def fetch_balance(self):
        return self.balances

    async def load_time_difference(self):
        self.calls.append(("load_time_difference",))
        return 42

    async def create_market_buy_order_with_cost(self, symbol, cost, params=None):
        self.calls.append(("create_market_buy_order_with_cost", symbol, cost, params))
        if not self.cost_orders:
            raise ccxt.NotSupported("createMarketBuyOrderWithCost() is not supported")
        return self.order_response

    async def create_order(self, symbol, type, side, amount, price=None, params=None):
        self.calls.append(("create_order", symbol, type, side, amount, params))
        return self.order_response

    async def close(self):
        self.closed = True


def _market(base, quote, amount_precision, min_amount=None, active=True, spot=True, market_id=None):
    return {
        "id": market_id or f"{base}{quote}",
        "base": base,
        "quote": quote,
        "active": active,
        "spot": spot,
        "precision": {"amount": amount_precision},
        "limits": {"amount": {"min": min_amount}},
    }


class TestTranslateError:
    """Tests for translate_error"""

    @pytest.mark.parametrize("error,expected", [
        (ccxt.AuthenticationError("bad key"), AuthenticationError),
        (ccxt.InvalidNonce("timestamp ahead"), AuthenticationError),
        (ccxt.InsufficientFunds("balance"), InsufficientBalanceError),
        (ccxt.InvalidOrder("LOT_SIZE"), OrderRejectedError),
        (ccxt.NotSupported("no"), NotSupportedError),
        (ccxt.RequestTimeout("slow"), ConnectivityError),
        (ccxt.NetworkError("down"), ConnectivityError),
        (ccxt.ExchangeError("other"), OrderRejectedError),
        (RuntimeError("unexpected"), ConnectivityError),
    ])
    def test_mapping(self, error, expected):
        translated = translate_error("venue", error)
        assert type(translated) is expected
        assert "[venue]" in str(translated)


class TestCcxtExchangeAdapter:
    """Tests for CcxtExchangeAdapter against a fake client"""

    @pytest.fixture
    def client(self):
        return FakeCcxtClient(markets={
            "BTC/USDT": _market("BTC", "USDT", 0.00001, min_amount=0.0001),
            "ETH/BTC": _market("ETH", "BTC", 0.001),
            "ETH/USDT": _market("ETH", "USDT", 0.0001),
            "XRP/USDT": _market("XRP", "USDT", 1.0, active=False),
            "BTC/USDT:USDT": _market("BTC", "USDT", 0.001, spot=False),
        })

    @pytest.fixture
    def adapter(self, client):
        return CcxtExchangeAdapter("venue", "binance", fee=0.001, client=client)

    @pytest.mark.asyncio
    async def test_load_markets(self, adapter):
        markets = await adapter.load_markets()

        assert markets == {
            "BTC/USDT": BTC_USDT,
            "ETH/BTC": AssetPair("ETH", "BTC"),
            "ETH/USDT": AssetPair("ETH", "USDT"),
        }
        assert adapter.market_ids["BTC/USDT"] == "BTCUSDT"

        profile = adapter.profile()
        assert profile.lot_step("BTC") == 0.00001
        # Coarsest step across the ETH markets wins
        assert profile.lot_step("ETH") == 0.001
        assert profile.min_quantity("BTC") == 0.0001
        assert profile.fee_rate == 0.001

    @pytest.mark.asyncio
    async def test_decimal_places_precision(self):
        client = FakeCcxtClient(
            markets={"BTC/USD": _market("BTC", "USD", 8)}, precision_mode=DECIMAL_PLACES
        )
        adapter = CcxtExchangeAdapter("venue", "kraken", fee=0.0026, client=client)

        await adapter.load_markets()

        assert adapter.profile().lot_step("BTC") == pytest.approx(1e-8)

    @pytest.mark.asyncio
    async def test_quote_and_balance(self, adapter, client):
        tick = await adapter.quote("BTC/USDT")
        assert tick.price == 50000.0
        assert tick.as_of == 1_700_000_000.0

        balance = await adapter.balance("USDT")
        assert (balance.free, balance.locked, balance.total) == (1000.0, 25.0, 1025.0)
        assert (await adapter.balance("DOGE")).free == 0.0

    @pytest.mark.asyncio
    async def test_empty_ticker(self, adapter, client):
        client.ticker = {"last": None, "close": None}
        with pytest.raises(ConnectivityError):
            await adapter.quote("BTC/USDT")

    @pytest.mark.asyncio
    async def test_notional_buy_uses_cost_order(self, adapter, client):
        client.order_response = {
            "id": "123",
            "filled": 0.002,
            "average": 50000.0,
            "cost": 100.0,
            "trades": [{"price": 49990.0, "amount": 0.001}, {"price": 50010.0, "amount": 0.001}],
            "fee": {"cost": 0.000002, "currency": "BTC"},
        }
        order = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY, notional=100.0, client_order_id="t-0-buy")

        fill = await adapter.submit_order(order)

        assert client.calls[-1] == ("create_market_buy_order_with_cost", "BTC/USDT", 100.0,
                                    {"clientOrderId": "t-0-buy"})
        assert fill.order_id == "123"
        assert fill.filled_quantity == 0.002
        assert fill.quote_amount() == pytest.approx(100.0)
        assert fill.weighted_price() == pytest.approx(50000.0)
        assert (fill.fee, fill.fee_asset) == (0.000002, "BTC")

    @pytest.mark.asyncio
    async def test_cost_orders_unsupported_fall_back_to_quantity(self, client):
        client.cost_orders = False
        client.order_response = {"id": "9", "filled": 0.002, "average": 50000.0}
        adapter = CcxtExchangeAdapter("venue", "kraken", fee=0.0026, client=client)
        order = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY, notional=100.0)

        fill = await adapter.submit_order(order)

        name, symbol, _, side, amount, _ = client.calls[-1]
        assert (name, symbol, side) == ("create_order", "BTC/USDT", "buy")
        assert amount == pytest.approx(0.002)
        assert fill.quote_amount() == pytest.approx(100.0)

    @pytest.mark.asyncio
    async def test_sell_by_quantity_with_fee_list(self, adapter, client):
        client.order_response = {
            "id": "7",
            "filled": 0.01,
            "cost": 500.0,
            "fees": [{"cost": 0.2, "currency": "USDT"}, {"cost": 0.3, "currency": "USDT"}],
        }
        order = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.SELL, quantity=0.01)

        fill = await adapter.submit_order(order)

        assert client.calls[-1][0] == "create_order"
        assert fill.quote_amount() == 500.0
        assert (fill.fee, fill.fee_asset) == (0.5, "USDT")

    @pytest.mark.asyncio
    async def test_order_errors_translated(self, adapter, client):
        async def reject(*args, **kwargs):
            raise ccxt.InsufficientFunds("Account has insufficient balance")

        client.create_order = reject
        order = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.SELL, quantity=0.01)

        with pytest.raises(InsufficientBalanceError):
            await adapter.submit_order(order)

    @pytest.mark.asyncio
    async def test_sync_clock_and_close(self, adapter, client):
        await adapter.sync_clock()
        await adapter.close()

        assert ("load_time_difference",) in client.calls
        assert client.closed

    def test_trading_needs_credentials(self, client):
        assert not CcxtExchangeAdapter("venue", "binance", fee=0.001, client=client).trading_enabled()
        assert CcxtExchangeAdapter(
            "venue", "binance", fee=0.001, api_key="k", api_secret="s", client=client
        ).trading_enabled()


class TestRestOnlyVenues:
    """Tests for venues configured without a websocket feed"""

    @pytest.mark.parametrize("name,fee", [("gateio", 0.002), ("bybit", 0.001), ("mexc", 0.002)])
    @pytest.mark.asyncio
    async def test_from_settings(self, name, fee, monkeypatch):
        monkeypatch.setenv(config.VENUES[name]["api_key_env"], "key")
        monkeypatch.setenv(config.VENUES[name]["api_secret_env"], "secret")
        client = FakeCcxtClient(markets={"BTC/USDT": _market("BTC", "USDT", 0.0001)})

        adapter = CcxtExchangeAdapter.from_settings(name, client=client)
        await adapter.load_markets()

        assert adapter.name == name
        assert adapter.ccxt_id == name
        assert adapter.trading_enabled()
        profile = adapter.profile()
        assert profile.fee_rate == pytest.approx(fee)
        assert profile.min_notional == config.VENUES[name]["min_notional"]
        assert profile.lot_step("BTC") == 0.0001

    @pytest.mark.asyncio
    async def test_polled_not_streamed(self):
        adapter = CcxtExchangeAdapter.from_settings("bybit", client=FakeCcxtClient())

        with pytest.raises(NotSupportedError):
            await adapter.subscribe(["BTC/USDT"], lambda *args: None)
        tick = await adapter.quote("BTC/USDT")
        assert tick.price == 50000.0

    def test_unknown_venue(self):
        with pytest.raises(KeyError):
            CcxtExchangeAdapter.from_settings("nowhere", client=FakeCcxtClient())


class TestOrderTypes:
    """Tests for OrderRequest and OrderFill"""

    def test_exactly_one_size(self):
        with pytest.raises(ValueError):
            OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY)
        with pytest.raises(ValueError):
            OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY, quantity=1.0, notional=100.0)
        with pytest.raises(ValueError):
            OrderRequest("BTC/USDT", BTC_USDT, OrderSide.SELL, quantity=0.0)

    def test_assets(self):
        buy = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY, notional=100.0)
        assert (buy.spend_asset, buy.receive_asset) == ("USDT", "BTC")
        sell = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.SELL, quantity=0.1)
        assert (sell.spend_asset, sell.receive_asset) == ("BTC", "USDT")

    def test_fill_data(self):
        assert not OrderFill(order_id="1", filled_quantity=0.0).has_fill_data
        assert not OrderFill(order_id="1", filled_quantity=0.1).has_fill_data
        fill = OrderFill(order_id="1", filled_quantity=0.1, avg_fill_price=50000.0)
        assert fill.has_fill_data
        assert fill.quote_amount() == 5000.0

    def test_asset_pair_other(self):
        assert BTC_USDT.other("BTC") == "USDT"
        assert BTC_USDT.other("USDT") == "BTC"
        with pytest.raises(KeyError):
            BTC_USDT.other("ETH")


class TestStreamParsing:
    """Tests for venue websocket message parsing"""

    def test_binance_mini_ticker(self):
        venue = BinanceExchange(client=FakeCcxtClient())
        venue.market_ids = {"BTC/USDT": "BTCUSDT", "ETH/USDT": "ETHUSDT"}

        url = venue._ws_url(["BTC/USDT", "ETH/USDT"])
        assert url.endswith("/btcusdt@miniTicker/ethusdt@miniTicker")

        updates = venue._parse_message({"e": "24hrMiniTicker", "E": 1672515782136, "s": "BTCUSDT", "c": "50000.10"})
        assert updates == [("BTC/USDT", 50000.10, 1672515782.136)]

    def test_binance_ignores_unknown_and_malformed(self):
        venue = BinanceExchange(client=FakeCcxtClient())
        venue._ws_url(["BTC/USDT"])

        assert venue._parse_message({"s": "DOGEUSDT", "c": "0.1"}) == []
        assert venue._parse_message({"s": "BTCUSDT", "c": "n/a"}) == []
        assert venue._parse_message({"result": None, "id": 1}) == []
        assert venue._parse_message([1, 2]) == []

    def test_kraken_ticker(self):
        venue = KrakenExchange(client=FakeCcxtClient())
        (subscribe,) = venue._subscribe_messages(["BTC/USDT", "ETH/USDT"])
        assert subscribe["params"] == {"channel": "ticker", "symbol": ["BTC/USDT", "ETH/USDT"]}

        message = {
            "channel": "ticker",
            "type": "update",
            "data": [{"symbol": "BTC/USDT", "last": 50100.5}, {"symbol": "SOL/USDT", "last": 150.0}],
        }
        assert venue._parse_message(message) == [("BTC/USDT", 50100.5, None)]

    def test_kraken_skips_control_messages(self):
        venue = KrakenExchange(client=FakeCcxtClient())
        venue._subscribe_messages(["BTC/USDT"])

        assert venue._parse_message({"channel": "heartbeat"}) == []
        assert venue._parse_message({"method": "subscribe", "success": True}) == []
        assert venue._parse_message({"channel": "status", "type": "update", "data": []}) == []


class TestSimulatedExchange:
    """Tests for SimulatedExchange"""

    @pytest.fixture
    def venue(self):
        return SimulatedExchange("sim", price_offset_percent=0.5, seed=7)

    @pytest.mark.asyncio
    async def test_prices_include_offset(self, venue):
        tick = await venue.quote("BTC/USDT")
        assert tick.price == pytest.approx(97500.0 * 1.005)

        venue.set_price("BTC/USDT", 100000.0)
        assert venue.price("BTC/USDT") == pytest.approx(100000.0)

    @pytest.mark.asyncio
    async def test_unknown_symbol(self, venue):
        with pytest.raises(ConnectivityError):
            await venue.quote("DOGE/USDT")

    def test_random_walk_is_bounded(self, venue):
        before = venue.price("ETH/USDT")
        venue.step()
        assert abs(venue.price("ETH/USDT") / before - 1) <= venue.volatility

    @pytest.mark.asyncio
    async def test_buy_fill_updates_balances(self, venue):
        venue.set_price("BTC/USDT", 50000.0)
        order = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY, notional=1000.0)

        fill = await venue.submit_order(order)

        assert fill.filled_quantity == pytest.approx(0.02)
        assert fill.fee == pytest.approx(0.00002)
        assert fill.fee_asset == "BTC"
        assert venue.balances["USDT"] == pytest.approx(9000.0)
        assert venue.balances["BTC"] == pytest.approx(0.1 + 0.02 - 0.00002)

    @pytest.mark.asyncio
    async def test_rejections(self, venue):
        tiny = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY, notional=1.0)
        with pytest.raises(OrderRejectedError):
            await venue.submit_order(tiny)

        too_big = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.SELL, quantity=5.0)
        with pytest.raises(InsufficientBalanceError):
            await venue.submit_order(too_big)

        venue.trading = False
        ok = OrderRequest("BTC/USDT", BTC_USDT, OrderSide.BUY, notional=100.0)
        with pytest.raises(OrderRejectedError):
            await venue.submit_order(ok)
        assert venue.orders == []

    @pytest.mark.asyncio
    async def test_streaming_can_be_disabled(self):
        venue = SimulatedExchange("sim", streaming=False)
        with pytest.raises(NotSupportedError):
            await venue.subscribe(["BTC/USDT"], lambda *args: None)

    @pytest.mark.asyncio
    async def test_load_markets_and_profile(self, venue):
        markets = await venue.load_markets()
        assert markets["ETH/BTC"] == AssetPair("ETH", "BTC")

        profile = venue.profile()
        assert profile.lot_step("BTC") == 0.00001
        assert profile.min_notional == 5.0
