"""Exchange adapters"""
from .base import (
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
from .ccxt_adapter import CcxtExchangeAdapter
from .binance import BinanceExchange
from .kraken import KrakenExchange
from .simulator import SimulatedExchange, create_simulated_exchanges

__all__ = [
    "AssetPair",
    "Balance",
    "ExchangeAdapter",
    "Fill",
    "OrderFill",
    "OrderRequest",
    "OrderSide",
    "QuoteTick",
    "VenueProfile",
    "CcxtExchangeAdapter",
    "BinanceExchange",
    "KrakenExchange",
    "SimulatedExchange",
    "create_simulated_exchanges",
]
