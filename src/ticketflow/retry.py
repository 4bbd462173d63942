"""Retry with exponential backoff, built on tenacity."""

import time
from collections.abc import Callable
from typing import TypeVar

from tenacity import RetryCallState, Retrying, stop_after_attempt, wait_exponential

from ticketflow.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class RetryError(Exception):
    """Raised when an operation still fails after the final attempt.

    Attributes:
        attempts: Number of attempts made
        last_error: Exception raised by the final attempt
    """

    def __init__(self, message: str, attempts: int, last_error: BaseException | None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def _log_before_sleep(description: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0
        logger.warning(
            f"{description} failed (attempt {state.attempt_number}/{max_attempts}), "
            f"retrying in {delay:g}s: {error}",
        )

    return before_sleep


def retry_with_backoff(
    operation: Callable[[], T],
    max_attempts: int,
    base_delay: float,
    sleep: Callable[[float], None] = time.sleep,
    description: str = "Operation",
) -> T:
    """Run an operation, retrying with exponential backoff.

    The delay before attempt ``n + 1`` is ``base_delay * 2 ** (n - 1)``, so with
    three attempts the waits are ``base_delay`` then ``2 * base_delay``.

    Args:
        operation: Zero-argument callable to run
        max_attempts: Total attempts, including the first (>= 1)
        base_delay: Delay in seconds after the first failure
        sleep: Sleep function; injectable so tests can observe delays
        description: Label used in log and error messages

    Returns:
        Whatever the operation returns on its first successful attempt

    Raises:
        RetryError: If all max_attempts attempts raise
    """
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0),
        sleep=sleep,
        before_sleep=_log_before_sleep(description, max_attempts),
        reraise=True,
    )
    try:
        return retrying(operation)
    except Exception as e:
        raise RetryError(
            f"{description} failed after {max_attempts} attempts: {e}",
            attempts=max_attempts,
            last_error=e,
        ) from e
