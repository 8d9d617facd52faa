"""
Resilience utilities for the identity service.

Provides:
- Store error types carrying the underlying failure message
- Retry logic for transient (busy/locked) store failures
"""
import functools
import logging
import time
from typing import Callable, TypeVar, Optional
from dataclasses import dataclass

from config.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar('T')


class StoreError(Exception):
    """Raised when a read or write against the contact store fails."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(message)


class StoreTimeoutError(StoreError):
    """Raised when the store stayed busy past the configured timeout."""


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    retryable_exceptions: tuple = (Exception,)


DEFAULT_RETRY_CONFIG = RetryConfig()


def retry_sync(
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
):
    """
    Decorator for sync functions with retry logic.

    Args:
        config: Retry configuration
        on_retry: Optional callback on each retry (retry_num, exception)
    """
    cfg = config or DEFAULT_RETRY_CONFIG

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            last_exception = None

            for attempt in range(cfg.max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except cfg.retryable_exceptions as e:
                    last_exception = e

                    if attempt < cfg.max_retries:
                        delay = min(
                            cfg.base_delay * (cfg.exponential_base ** attempt),
                            cfg.max_delay
                        )
                        logger.warning(
                            f"Retry {attempt + 1}/{cfg.max_retries} for {func.__name__}: {e}. "
                            f"Waiting {delay:.2f}s..."
                        )

                        if on_retry:
                            on_retry(attempt + 1, e)

                        time.sleep(delay)
                    else:
                        logger.error(
                            f"All {cfg.max_retries} retries exhausted for {func.__name__}: {e}"
                        )

            raise last_exception

        return wrapper
    return decorator


def is_busy_error(error: Exception) -> bool:
    """Check whether a SQLite error means the database was locked or busy."""
    error_str = str(error).lower()
    return "locked" in error_str or "busy" in error_str


# Reads are safe to repeat; writes are never retried
STORE_RETRY = RetryConfig(
    max_retries=settings.store_read_retries,
    base_delay=0.05,
    max_delay=1.0,
    retryable_exceptions=(StoreTimeoutError,),
)
