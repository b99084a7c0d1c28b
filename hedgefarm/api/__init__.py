"""
Venue API Module.

Provides the exchange capability and its venue implementations:
- Exchange capability protocol (open/close/query positions, balance)
- Error classification (transient vs fatal), retry backoff, circuit breaker
- Request signing (ED25519)
- Backpack perpetuals REST client
- Paper venue for simulation and tests

Usage:
    from hedgefarm.api import PaperExchange, PaperMarket, Side

    market = PaperMarket()
    exchange = PaperExchange("wallet_1", Decimal("100"), market)
    snapshot = await exchange.open_position("BTC", Side.LONG, Decimal("200"), 2.0)
"""

# Capability
from .exchange import (
    Side,
    PositionSnapshot,
    CloseOutcome,
    ExchangeCapability,
)

# Error handling
from .exchange_errors import (
    ErrorSeverity,
    ErrorCategory,
    RetryStrategy,
    ErrorInfo,
    ERROR_MAPPINGS,
    classify_error,
    ExchangeError,
    TransientExchangeError,
    FatalExchangeError,
    raise_for_code,
    RetryConfig,
    calculate_backoff,
    retry_async,
    CircuitBreaker,
)

# Authentication
from .auth import BackpackAuth, build_signing_payload

# Venues
from .backpack_client import BackpackClient, market_symbol
from .paper_exchange import PaperExchange, PaperMarket
from .factory import UnsupportedVenueError, create_exchange, create_exchanges

__all__ = [
    # Capability
    "Side",
    "PositionSnapshot",
    "CloseOutcome",
    "ExchangeCapability",
    # Errors
    "ErrorSeverity",
    "ErrorCategory",
    "RetryStrategy",
    "ErrorInfo",
    "ERROR_MAPPINGS",
    "classify_error",
    "ExchangeError",
    "TransientExchangeError",
    "FatalExchangeError",
    "raise_for_code",
    "RetryConfig",
    "calculate_backoff",
    "retry_async",
    "CircuitBreaker",
    # Auth
    "BackpackAuth",
    "build_signing_payload",
    # Venues
    "BackpackClient",
    "market_symbol",
    "PaperExchange",
    "PaperMarket",
    "UnsupportedVenueError",
    "create_exchange",
    "create_exchanges",
]
