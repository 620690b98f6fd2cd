from .logger import setup_logging, get_logger, poller_logger, fetch_logger, pnl_logger
from .retry import RetryConfig, retry_async
from .rate_limiter import RateGate, RateLimitConfig, RateWindow
from .validation import (
    InvalidAddressError,
    validate_eth_address,
    safe_checksum_address,
    validate_label,
)

__all__ = [
    # Logger
    "setup_logging",
    "get_logger",
    "poller_logger",
    "fetch_logger",
    "pnl_logger",

    # Retry
    "RetryConfig",
    "retry_async",

    # Rate Gate
    "RateGate",
    "RateLimitConfig",
    "RateWindow",

    # Validation
    "InvalidAddressError",
    "validate_eth_address",
    "safe_checksum_address",
    "validate_label",
]
