"""
Retry with exponential backoff for registry reads.

Only listing calls go through here. Deletions are never retried: their first
failure goes straight to the deletion scheduler, which stops new work.
"""

import random
import time
from dataclasses import dataclass
from enum import Enum
from functools import wraps
from typing import Callable, TypeVar

from registry_cleaner.error_utils import ActionableError, ErrorCategory
from registry_cleaner.logging_utils import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryableErrorType(Enum):
    """How a failed registry call is treated"""

    NETWORK = "network"  # connection errors, timeouts
    TEMPORARY = "temporary"  # 5xx, rate limiting, anything unrecognised
    PERMANENT = "permanent"  # other 4xx, authentication, bad configuration


NETWORK_HINTS = (
    "connection",
    "timed out",
    "timeout",
    "refused",
    "reset",
    "unreachable",
    "name resolution",
    "broken pipe",
)

CATEGORY_TYPES = {
    ErrorCategory.CONNECTION: RetryableErrorType.NETWORK,
    ErrorCategory.TIMEOUT: RetryableErrorType.NETWORK,
    ErrorCategory.NETWORK: RetryableErrorType.TEMPORARY,
    ErrorCategory.AUTHENTICATION: RetryableErrorType.PERMANENT,
    ErrorCategory.PERMISSION: RetryableErrorType.PERMANENT,
    ErrorCategory.CONFIGURATION: RetryableErrorType.PERMANENT,
}


def classify_error(error: Exception) -> RetryableErrorType:
    """Classify a failed registry call.

    A wrapping error is classified by its __cause__, so object names in the
    wrapper's message (digests, tags) never influence the decision.
    """
    cause = error.__cause__ or error

    status = getattr(cause, "status_code", None)
    if isinstance(status, int):
        if status == 429 or status >= 500:
            return RetryableErrorType.TEMPORARY
        return RetryableErrorType.PERMANENT

    if isinstance(cause, ActionableError):
        return CATEGORY_TYPES.get(cause.category, RetryableErrorType.TEMPORARY)

    if isinstance(cause, (ConnectionError, TimeoutError)):
        return RetryableErrorType.NETWORK
    text = str(cause).lower()
    if any(hint in text for hint in NETWORK_HINTS):
        return RetryableErrorType.NETWORK

    return RetryableErrorType.TEMPORARY


@dataclass
class RetryPolicy:
    """Backoff settings (retry section of config.yaml)"""
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config(cls, config_manager) -> "RetryPolicy":
        return cls(
            max_retries=config_manager.get_max_retries(),
            initial_delay=config_manager.get_retry_initial_delay(),
            max_delay=config_manager.get_retry_max_delay(),
            exponential_base=config_manager.get_retry_exponential_base(),
            jitter=config_manager.get_retry_jitter(),
        )

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (zero based) failed attempt"""
        delay = min(self.initial_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            spread = delay * 0.1
            delay = max(0.1, delay + random.uniform(-spread, spread))
        return delay


def retry_with_backoff(policy: RetryPolicy) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator retrying network and temporary failures according to policy.

    Permanent failures and the last failure are re-raised unchanged.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            attempt = 0
            while True:
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    error_type = classify_error(e)
                    if error_type is RetryableErrorType.PERMANENT:
                        logger.error(f"{func.__name__} failed ({error_type.value}): {e}")
                        raise
                    if attempt >= policy.max_retries:
                        logger.error(f"{func.__name__} gave up after {attempt + 1} attempts ({error_type.value}): {e}")
                        raise

                    delay = policy.delay(attempt)
                    logger.warning(
                        f"{func.__name__} attempt {attempt + 1}/{policy.max_retries + 1} failed "
                        f"({error_type.value}): {e}. Retrying in {delay:.2f}s"
                    )
                    time.sleep(delay)
                    attempt += 1
                    continue

                if attempt:
                    logger.info(f"{func.__name__} succeeded on attempt {attempt + 1}")
                return result

        return wrapper

    return decorator
