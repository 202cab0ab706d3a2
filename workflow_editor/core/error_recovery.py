"""Retries for transient storage failures."""

import logging
import random
import time
from functools import wraps
from typing import Callable, Optional, Tuple, Type

from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from .exceptions import WorkflowEditorError
from .logging import get_logger, log_with_context

logger = get_logger(__name__)

# Database errors worth another attempt
TRANSIENT_DATABASE_ERRORS: Tuple[Type[Exception], ...] = (
    OperationalError,
    DisconnectionError,
    PoolTimeoutError,
)


def is_transient(error: Exception) -> bool:
    """Whether ``error`` may succeed when the operation is repeated."""
    if isinstance(error, WorkflowEditorError):
        return error.recoverable
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return isinstance(error, TRANSIENT_DATABASE_ERRORS)


class RetryConfig:
    """Attempt limit and exponential backoff for ``with_retry``."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        classify: Callable[[Exception], bool] = is_transient
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.classify = classify

    def get_delay(self, attempt: int) -> float:
        """Sleep before attempt ``attempt + 1``; capped at ``max_delay``, jitter scales it into [50%, 100%]."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Repeat a synchronous call while it fails with a transient error."""
    config = config or RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    transient = config.classify(e)
                    if not transient or attempt >= config.max_attempts:
                        log_with_context(
                            logger, logging.ERROR,
                            f"{func.__name__} failed after {attempt} attempt(s): {e}",
                            operation=func.__name__,
                            error_type=type(e).__name__,
                            attempts=attempt,
                            transient=transient,
                        )
                        raise
                    delay = config.get_delay(attempt)
                    log_with_context(
                        logger, logging.WARNING,
                        f"{func.__name__} attempt {attempt}/{config.max_attempts} failed, retrying in {delay:.2f}s",
                        operation=func.__name__,
                        error_type=type(e).__name__,
                        attempt=attempt,
                    )
                    time.sleep(delay)
                    attempt += 1
        return wrapper

    return decorator
