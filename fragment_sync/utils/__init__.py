"""Utility modules."""

from fragment_sync.utils.logging import get_logger, setup_logging
from fragment_sync.utils.rate_limit import AsyncRateLimiter
from fragment_sync.utils.retry import async_retry, is_transient

__all__ = ["get_logger", "setup_logging", "AsyncRateLimiter", "async_retry", "is_transient"]
