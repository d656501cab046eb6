"""Exponential backoff for provider calls.

Whether an error is worth another attempt is decided by the error
taxonomy: anything ``error_handler`` classifies as a retryable
``ProviderError`` (throttling, timeouts, network errors, dependency
violations) is retried, everything else is raised on the first failure.
"""

import time
import random
from typing import Callable, Iterator, Optional, TypeVar
from functools import wraps
from fleetform.utils.errors import EngineError, ProviderError, error_handler
from fleetform.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

JITTER_FRACTION = 0.1


def is_retryable(error: Exception) -> bool:
    """Check whether a raw or classified exception is transient."""
    if not isinstance(error, EngineError):
        error = error_handler.handle_exception(error)
    return isinstance(error, ProviderError) and error.retryable


class RetryStrategy:
    """Backoff policy: ``base_delay * exponential_base ** attempt``, capped.

    Defaults: 4 retries (5 attempts), 1s doubling to a 30s cap, plus up
    to 10% jitter.
    """

    def __init__(
        self,
        max_retries: int = 4,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Retries after the first attempt
            base_delay: Seconds before the first retry
            max_delay: Cap on a single delay
            exponential_base: Growth factor between delays
            jitter: Whether to add up to 10% random jitter
            sleep: Function used to wait between attempts
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep or time.sleep

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, attempt: int) -> float:
        """Delay after the 0-indexed ``attempt`` failed."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * JITTER_FRACTION)
        return delay

    def delays(self) -> Iterator[float]:
        """The full backoff schedule, one delay per retry."""
        for attempt in range(self.max_retries):
            yield self.get_delay(attempt)

    def execute_with_retry(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call ``func`` until it succeeds, fails permanently, or retries run out.

        Raises:
            The last exception raised by ``func``
        """
        schedule = self.delays()
        attempt = 1
        while True:
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                if not is_retryable(e):
                    raise
                delay = next(schedule, None)
                if delay is None:
                    if self.max_retries:
                        logger.error(f"Giving up after {self.max_attempts} attempts: {_describe(e)}")
                    raise
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} failed ({_describe(e)}); "
                    f"retrying in {delay:.2f}s"
                )
                self.sleep(delay)
                attempt += 1
                continue

            if attempt > 1:
                logger.info(f"Succeeded on attempt {attempt}/{self.max_attempts}")
            return result


def _describe(error: Exception) -> str:
    if isinstance(error, EngineError):
        return error.message
    return error_handler.handle_exception(error).message


def with_retry(
    max_retries: int = 4,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator form of RetryStrategy for module-level API helpers.

    Example:
        @with_retry(max_retries=3)
        def _describe_target_health(client, arn, member_id):
            ...
    """
    strategy = RetryStrategy(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter
    )

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return strategy.execute_with_retry(func, *args, **kwargs)
        return wrapper

    return decorator


def no_retry() -> RetryStrategy:
    """Strategy that makes a single attempt."""
    return RetryStrategy(max_retries=0, jitter=False)
