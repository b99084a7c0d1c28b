"""
Exchange Error Handling.

Classifies venue failures so callers can decide whether to retry:
- Transient: network, timeout, rate limit, server errors (retry with backoff)
- Fatal: rejected order, insufficient margin, auth/signature failures (never retry)

Also provides:
- Exponential backoff calculation with jitter
- Async retry loop for transient errors
- Circuit breaker for a misbehaving venue
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = auto()       # Informational, can continue
    MEDIUM = auto()    # Warning, may need attention
    HIGH = auto()      # Error, operation failed
    CRITICAL = auto()  # Critical, operator action required


class ErrorCategory(Enum):
    """Categories of venue errors."""
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    AUTHENTICATION = "authentication"
    INSUFFICIENT_MARGIN = "insufficient_margin"
    ORDER_REJECTED = "order_rejected"
    INVALID_PARAMETER = "invalid_parameter"
    POSITION_NOT_FOUND = "position_not_found"
    UNKNOWN = "unknown"


class RetryStrategy(Enum):
    """Retry strategies for different error types."""
    NO_RETRY = auto()             # Do not retry
    EXPONENTIAL_BACKOFF = auto()  # Exponential wait
    RATE_LIMIT_WAIT = auto()      # Wait for rate limit reset


@dataclass
class ErrorInfo:
    """Detailed information about an error."""
    code: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    retry_strategy: RetryStrategy
    retry_after: Optional[float] = None  # Suggested wait time

    @property
    def transient(self) -> bool:
        return self.retry_strategy != RetryStrategy.NO_RETRY


def _transient(code: str, message: str, category: ErrorCategory,
               retry_after: Optional[float] = None,
               strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF) -> ErrorInfo:
    return ErrorInfo(code, message, category, ErrorSeverity.MEDIUM, strategy, retry_after)


def _fatal(code: str, message: str, category: ErrorCategory,
           severity: ErrorSeverity = ErrorSeverity.HIGH) -> ErrorInfo:
    return ErrorInfo(code, message, category, severity, RetryStrategy.NO_RETRY)


# Error code mappings (venue codes and HTTP-level codes share one table)
ERROR_MAPPINGS: Dict[str, ErrorInfo] = {
    # Transient
    "TOO_MANY_REQUESTS": _transient(
        "TOO_MANY_REQUESTS", "Rate limit exceeded", ErrorCategory.RATE_LIMIT,
        retry_after=5.0, strategy=RetryStrategy.RATE_LIMIT_WAIT,
    ),
    "HTTP_429": _transient(
        "HTTP_429", "Rate limit exceeded", ErrorCategory.RATE_LIMIT,
        retry_after=5.0, strategy=RetryStrategy.RATE_LIMIT_WAIT,
    ),
    "TIMEOUT": _transient("TIMEOUT", "Request timed out", ErrorCategory.TIMEOUT),
    "CONNECTION": _transient("CONNECTION", "Connection failed", ErrorCategory.NETWORK),
    "SERVICE_UNAVAILABLE": _transient(
        "SERVICE_UNAVAILABLE", "Venue unavailable", ErrorCategory.SERVER, retry_after=10.0,
    ),
    "INTERNAL_ERROR": _transient("INTERNAL_ERROR", "Venue internal error", ErrorCategory.SERVER),
    "HTTP_5XX": _transient("HTTP_5XX", "Venue server error", ErrorCategory.SERVER),
    "CIRCUIT_OPEN": _transient(
        "CIRCUIT_OPEN", "Venue circuit breaker open", ErrorCategory.SERVER, retry_after=30.0,
    ),

    # Fatal
    "UNAUTHORIZED": _fatal(
        "UNAUTHORIZED", "Authentication failed", ErrorCategory.AUTHENTICATION,
        ErrorSeverity.CRITICAL,
    ),
    "INVALID_SIGNATURE": _fatal(
        "INVALID_SIGNATURE", "Request signature rejected", ErrorCategory.AUTHENTICATION,
        ErrorSeverity.CRITICAL,
    ),
    "INSUFFICIENT_MARGIN": _fatal(
        "INSUFFICIENT_MARGIN", "Insufficient margin for order", ErrorCategory.INSUFFICIENT_MARGIN,
    ),
    "INSUFFICIENT_FUNDS": _fatal(
        "INSUFFICIENT_FUNDS", "Insufficient funds for order", ErrorCategory.INSUFFICIENT_MARGIN,
    ),
    "ORDER_REJECTED": _fatal("ORDER_REJECTED", "Order rejected", ErrorCategory.ORDER_REJECTED),
    "INVALID_ORDER": _fatal("INVALID_ORDER", "Invalid order", ErrorCategory.ORDER_REJECTED),
    "INVALID_CLIENT_REQUEST": _fatal(
        "INVALID_CLIENT_REQUEST", "Invalid request parameters", ErrorCategory.INVALID_PARAMETER,
    ),
    "RESOURCE_NOT_FOUND": _fatal(
        "RESOURCE_NOT_FOUND", "Position not found", ErrorCategory.POSITION_NOT_FOUND,
        ErrorSeverity.MEDIUM,
    ),
}


def classify_error(code: str, message: Optional[str] = None) -> ErrorInfo:
    """
    Classify a venue error code into ErrorInfo.

    Unknown codes are treated as fatal: blindly retrying an order call with
    an unrecognised outcome risks a duplicate position.
    """
    info = ERROR_MAPPINGS.get(code)
    if info is not None:
        if message:
            return ErrorInfo(
                code=info.code,
                message=message,
                category=info.category,
                severity=info.severity,
                retry_strategy=info.retry_strategy,
                retry_after=info.retry_after,
            )
        return info

    return ErrorInfo(
        code=code,
        message=message or f"Unknown error: {code}",
        category=ErrorCategory.UNKNOWN,
        severity=ErrorSeverity.HIGH,
        retry_strategy=RetryStrategy.NO_RETRY,
    )


class ExchangeError(Exception):
    """Base exception for venue errors."""

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        venue: str = "",
        error_info: Optional[ErrorInfo] = None,
        response: Optional[Dict[str, Any]] = None,
    ):
        self.code = code
        self.venue = venue
        self.response = response
        self.error_info = error_info or classify_error(code, message)
        self.attempts = 1  # Calls made before giving up
        super().__init__(f"{venue or 'exchange'} error {code}: {self.error_info.message}")

    @property
    def is_transient(self) -> bool:
        """Check if the call may be retried."""
        return self.error_info.transient

    @property
    def category(self) -> ErrorCategory:
        return self.error_info.category


class TransientExchangeError(ExchangeError):
    """Network, timeout, rate-limit or server error. Retryable."""
    pass


class FatalExchangeError(ExchangeError):
    """Rejected order, insufficient margin, auth failure. Not retryable."""
    pass


def raise_for_code(
    code: str,
    message: Optional[str] = None,
    venue: str = "",
    response: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Classify an error code and raise the matching exception type.

    Raises:
        TransientExchangeError or FatalExchangeError
    """
    info = classify_error(code, message)
    if info.transient:
        raise TransientExchangeError(code, message, venue, info, response)
    raise FatalExchangeError(code, message, venue, info, response)


T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True  # Add randomness to prevent thundering herd


def calculate_backoff(
    attempt: int,
    strategy: RetryStrategy,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Calculate backoff time for retry.

    Args:
        attempt: Current attempt number (0-indexed)
        strategy: Retry strategy to use
        config: Retry configuration
        retry_after: Explicit wait time from error

    Returns:
        Seconds to wait before retry
    """
    if strategy == RetryStrategy.NO_RETRY:
        return 0.0

    if strategy == RetryStrategy.RATE_LIMIT_WAIT and retry_after:
        delay = retry_after
    else:
        delay = config.base_delay * (config.exponential_base ** attempt)

    delay = min(delay, config.max_delay)

    # Add jitter (up to 25% of delay)
    if config.jitter and delay > 0:
        delay += delay * 0.25 * random.random()

    return delay


async def retry_async(
    call: Callable[[], Awaitable[T]],
    config: RetryConfig,
    description: str = "",
) -> Tuple[T, int]:
    """
    Await `call()`, retrying transient errors with backoff.

    Makes at most `config.max_retries + 1` calls. The number of calls made
    is stored on a raised error as `attempts`.

    Returns:
        (result, attempts)
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call(), attempt

        except ExchangeError as e:
            e.attempts = attempt
            if not e.is_transient or attempt > config.max_retries:
                raise

            backoff = calculate_backoff(
                attempt - 1,
                e.error_info.retry_strategy,
                config,
                e.error_info.retry_after,
            )
            logger.warning(
                f"{description or 'Call'} failed ({e.code}), retry {attempt}/"
                f"{config.max_retries} in {backoff:.1f}s"
            )
            await asyncio.sleep(backoff)


class CircuitBreaker:
    """
    Circuit breaker for preventing cascading failures against one venue.

    States:
    - CLOSED: Normal operation, requests flow through
    - OPEN: Failures exceeded threshold, requests blocked
    - HALF_OPEN: Testing if service recovered
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_calls: int = 3,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls

        self._failure_count = 0
        self._last_failure_time = 0.0
        self._state = "closed"
        self._half_open_calls = 0

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (blocking requests)."""
        if self._state == "open":
            if time.time() - self._last_failure_time >= self.reset_timeout:
                self._state = "half_open"
                self._half_open_calls = 0
                return False
            return True
        return False

    def record_success(self) -> None:
        """Record a successful call."""
        if self._state == "half_open":
            self._half_open_calls += 1
            if self._half_open_calls >= self.half_open_max_calls:
                self._state = "closed"
                self._failure_count = 0
                logger.info("Circuit breaker closed after successful recovery")
        elif self._state == "closed":
            self._failure_count = 0

    def record_failure(self) -> None:
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = time.time()

        if self._state == "half_open":
            self._state = "open"
            logger.warning("Circuit breaker re-opened after half-open failure")
        elif self._failure_count >= self.failure_threshold:
            self._state = "open"
            logger.warning(
                f"Circuit breaker opened after {self._failure_count} failures"
            )

    def reset(self) -> None:
        """Reset circuit breaker to closed state."""
        self._failure_count = 0
        self._state = "closed"
        self._half_open_calls = 0
