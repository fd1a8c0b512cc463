"""Configuration for the arbitrage engine"""
import os


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value in (None, ""):
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ============================================================
# OPERATION MODE
# ============================================================
# Trading mode governs the minimum-size and balance policies of the
# execution coordinator:
# - "paper": shrink/raise order sizes to what the venue accepts
# - "live": abort the trade instead
TRADING_MODE = os.getenv("TRADING_MODE", "paper")

# Market data source:
# - "exchanges": real venues through ccxt (REST) + websockets (streaming)
# - "simulation": in-memory random-walk venues (no network needed)
MARKET_MODE = os.getenv("MARKET_MODE", "simulation")

# Trading pairs to monitor (unified BASE/QUOTE format)
TRADING_PAIRS = [
    "BTC/USDT",
    "ETH/USDT",
    "SOL/USDT",
    "XRP/USDT",
    "BNB/USDT",
    "ADA/USDT",
    "ETH/BTC",
    "SOL/BTC",
    "XRP/BTC",
    "BNB/BTC",
    "SOL/ETH",
]

QUOTE_CURRENCY = os.getenv("QUOTE_CURRENCY", "USDT")

# ============================================================
# DETECTION
# ============================================================
DEFAULT_CAPITAL = _env_float("DEFAULT_CAPITAL", 100.0)  # USDT

# Minimum profit percentage to flag as opportunity (strictly greater than)
MIN_PROFIT_THRESHOLD = _env_float("MIN_PROFIT_THRESHOLD", 0.0)
TRIANGULAR_MIN_PROFIT_THRESHOLD = _env_float("TRIANGULAR_ARBITRAGE_THRESHOLD", 0.0)

# Triangular results beyond this are treated as bad data and rejected
MAX_ARBITRAGE_PROFIT = _env_float("MAX_ARBITRAGE_PROFIT", 1.0)  # percent

# Candidate cycles explored per venue on every tick
MAX_TRIANGULAR_CYCLES = _env_int("MAX_TRIANGULAR_CYCLES", 20)

DETECTION_INTERVAL = _env_float("DETECTION_INTERVAL", 1.0)  # seconds

# ============================================================
# MARKET DATA
# ============================================================
MAX_QUOTE_AGE = _env_float("MAX_QUOTE_AGE", 30.0)  # seconds
WS_MAX_UPDATE_AGE = _env_int("WS_MAX_UPDATE_AGE", 30000) / 1000  # seconds
PRICE_CHANGE_THRESHOLD = _env_float("PRICE_CHANGE_THRESHOLD", 0.01) / 100  # 0.01%
BROADCAST_THROTTLE = _env_int("BROADCAST_THROTTLE_MS", 500) / 1000  # seconds
HEALTH_CHECK_INTERVAL = _env_int("HEALTH_CHECK_INTERVAL", 10000) / 1000  # seconds
RECONNECT_DELAY = _env_int("WS_RECONNECT_DELAY", 3000) / 1000  # seconds
PRICE_POLL_INTERVAL = _env_int("PRICE_UPDATE_INTERVAL", 1000) / 1000  # seconds

# Set to True if you're behind a proxy/firewall with SSL inspection
# This will disable certificate verification (not recommended for production)
SKIP_SSL_VERIFY = _env_bool("SKIP_SSL_VERIFY", False)

# ============================================================
# EXECUTION
# ============================================================
EXECUTION_MIN_PROFIT_THRESHOLD = _env_float("EXECUTION_MIN_PROFIT_THRESHOLD", 0.0)
API_CALL_TIMEOUT = _env_int("API_BASE_TIMEOUT", 5000) / 1000  # seconds
BALANCE_TOLERANCE = _env_float("BALANCE_TOLERANCE", 0.001)  # 0.1%

# Per-venue static trading constraints
VENUES = {
    "binance": {
        "ccxt_id": "binance",
        "enabled": _env_bool("BINANCE_ENABLED", True),
        "fee": _env_float("BINANCE_FEE", 0.001),  # 0.1%
        "ws_url": "wss://stream.binance.com:9443/ws",
        "min_notional": 10.0,
        "min_capital": 20.0,
        "max_capital": 5000.0,
        "api_key_env": "BINANCE_API_KEY",
        "api_secret_env": "BINANCE_API_SECRET",
    },
    "kraken": {
        "ccxt_id": "kraken",
        "enabled": _env_bool("KRAKEN_ENABLED", False),
        "fee": _env_float("KRAKEN_FEE", 0.0026),  # 0.26%
        "ws_url": "wss://ws.kraken.com/v2",
        "min_notional": 5.0,
        "min_capital": 15.0,
        "max_capital": 5000.0,
        "api_key_env": "KRAKEN_API_KEY",
        "api_secret_env": "KRAKEN_API_SECRET",
    },
    # REST-only venues, prices come from the polling fallback
    "gateio": {
        "ccxt_id": "gateio",
        "enabled": _env_bool("GATEIO_ENABLED", True),
        "fee": _env_float("GATEIO_FEE", 0.002),  # 0.2%
        "min_notional": 3.0,
        "min_capital": 10.0,
        "max_capital": 5000.0,
        "api_key_env": "GATEIO_API_KEY",
        "api_secret_env": "GATEIO_API_SECRET",
    },
    "bybit": {
        "ccxt_id": "bybit",
        "enabled": _env_bool("BYBIT_ENABLED", False),
        "fee": _env_float("BYBIT_FEE", 0.001),  # 0.1%
        "min_notional": 5.0,
        "min_capital": 10.0,
        "max_capital": 5000.0,
        "api_key_env": "BYBIT_API_KEY",
        "api_secret_env": "BYBIT_API_SECRET",
    },
    "mexc": {
        "ccxt_id": "mexc",
        "enabled": _env_bool("MEXC_ENABLED", False),
        "fee": _env_float("MEXC_FEE", 0.002),  # 0.2%
        "min_notional": 5.0,
        "min_capital": 10.0,
        "max_capital": 5000.0,
        "api_key_env": "MEXC_API_KEY",
        "api_secret_env": "MEXC_API_SECRET",
    },
}

# Use exchange sandboxes where ccxt supports them
USE_SANDBOX = _env_bool("USE_SANDBOX", TRADING_MODE != "live")

# Quantity step per asset, used when a venue does not publish its own filters
LOT_STEPS = {
    "USDT": 0.01,
    "BTC": 0.00001,
    "ETH": 0.001,
    "BNB": 0.01,
    "XRP": 0.1,
    "ADA": 0.1,
    "DOT": 0.01,
    "LINK": 0.01,
    "LTC": 0.001,
    "BCH": 0.001,
    "XLM": 1.0,
    "DOGE": 1.0,
    "SHIB": 1000.0,
    "PEPE": 1000000.0,
    "MATIC": 0.1,
    "SOL": 0.001,
    "AVAX": 0.001,
    "UNI": 0.01,
    "ATOM": 0.01,
    "NEAR": 0.01,
    "ALGO": 0.1,
    "VET": 1.0,
}
DEFAULT_LOT_STEP = 0.01

# Prometheus exporter
METRICS_PORT = _env_int("METRICS_PORT", 8000)
