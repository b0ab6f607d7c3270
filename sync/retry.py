"""Bounded retry with exponential backoff for classified errors."""
import logging
import time
from typing import Callable, Iterator, Optional, TypeVar

from sync.cancellation import CancellationToken
from sync.errors import ClassifiedError, ErrorDomain, classify_exception

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delays(
    retry_count: int,
    initial_delay: float,
    max_delay: float
) -> Iterator[float]:
    """
    Yield the delay before each retry, doubling up to max_delay.

    Args:
        retry_count: Number of retries (delays yielded)
        initial_delay: Delay before the first retry in seconds
        max_delay: Upper bound for any single delay

    Yields:
        Delay in seconds
    """
    delay = initial_delay
    for _ in range(retry_count):
        yield min(delay, max_delay)
        delay = min(delay * 2, max_delay)


def call_with_retry(
    func: Callable[[], T],
    domain: ErrorDomain,
    retry_count: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 5.0,
    token: Optional[CancellationToken] = None,
    on_retry: Optional[Callable[[int, ClassifiedError, float], None]] = None,
    operation: str = 'operation'
) -> T:
    """
    Call func, retrying retryable ClassifiedErrors with exponential backoff.

    Non-retryable errors and cancellations are raised immediately. Exceptions
    that are not ClassifiedErrors are classified under domain first. The
    backoff wait observes the cancellation token.

    Args:
        func: Zero-argument callable to invoke
        domain: Domain used to classify unexpected exceptions
        retry_count: Maximum number of retries after the first attempt
        initial_delay: Delay before the first retry in seconds
        max_delay: Upper bound for any single delay
        token: Cancellation token observed between attempts
        on_retry: Called with (attempt, error, delay) before each backoff
        operation: Name used in log messages

    Returns:
        Result of func

    Raises:
        ClassifiedError: Last error once retries are exhausted, or the
            cancellation error if the token fires during backoff
    """
    delays = backoff_delays(retry_count, initial_delay, max_delay)
    attempt = 0

    while True:
        attempt += 1
        if token is not None:
            token.raise_if_cancelled(domain)

        try:
            return func()
        except Exception as exc:
            error = classify_exception(exc, domain)
            if error is not exc:
                logger.debug(f"{operation}: classified {type(exc).__name__} as {error.code}")

            if not error.retryable or error.is_cancellation:
                raise error from (None if error is exc else exc)

            delay = next(delays, None)
            if delay is None:
                logger.error(
                    f"{operation} failed after {attempt} attempts: {error.message}"
                )
                raise error from (None if error is exc else exc)

            logger.warning(
                f"{operation} failed (attempt {attempt}/{retry_count + 1}): "
                f"{error.message}. Retrying in {delay:.2f} seconds..."
            )
            if on_retry is not None:
                on_retry(attempt, error, delay)

            if token is not None:
                if token.wait(delay):
                    raise ClassifiedError.cancelled(
                        domain, token.reason or 'cancelled during backoff'
                    ) from error
            else:
                time.sleep(delay)
