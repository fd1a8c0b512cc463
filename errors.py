"""Error taxonomy shared by the price layer, detector and execution coordinator."""


class ArbitrageError(Exception):
    """Base class for every error the engine raises on purpose."""

    code = "arbitrage_error"


class ConnectivityError(ArbitrageError):
    """Raised when a venue cannot be reached or a venue call times out."""

    code = "connectivity"


class AuthenticationError(ArbitrageError):
    """Raised when a venue rejects a request's signature or timestamp."""

    code = "authentication"


class StaleDataError(ArbitrageError):
    """Raised when a quote is older than the configured max age."""

    code = "stale_data"


class InsufficientBalanceError(ArbitrageError):
    """Raised when the spendable balance cannot cover a leg."""

    code = "insufficient_balance"


class OrderRejectedError(ArbitrageError):
    """Raised when an order violates a venue constraint (lot size, min notional...)."""

    code = "order_rejected"


class ValidationError(ArbitrageError):
    """Raised for malformed opportunities or requests, before any network call."""

    code = "validation"


class NotSupportedError(ArbitrageError):
    """Raised by adapters for operations their venue does not offer."""

    code = "not_supported"
