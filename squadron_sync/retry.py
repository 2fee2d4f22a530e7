"""
Retry utilities for directory service operations.

Remote calls return tagged results instead of raising. This module defines
those results, classifies failures into transient and permanent classes, and
provides the executor that retries transient failures and paces calls to
stay under the directory service's rate ceiling.
"""

import time
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Tuple, Type, Union

from squadron_sync.clock import Clock

logger = logging.getLogger(__name__)


class FailureCode(Enum):
    """Classified failure codes; values are the HTTP status where one applies."""

    BAD_REQUEST = 400
    FORBIDDEN = 403
    NOT_FOUND = 404
    CONFLICT = 409
    RATE_LIMITED = 429
    SERVER_ERROR = 500
    CONNECTION_ERROR = 0

    @property
    def is_transient(self) -> bool:
        return self in (FailureCode.RATE_LIMITED, FailureCode.SERVER_ERROR,
                        FailureCode.CONNECTION_ERROR)


@dataclass(frozen=True)
class Success:
    value: Any = None


@dataclass(frozen=True)
class TransientFailure:
    code: FailureCode
    error: str = ''


@dataclass(frozen=True)
class PermanentFailure:
    code: FailureCode
    last_error: str = ''
    attempts: int = 1


Result = Union[Success, TransientFailure, PermanentFailure]


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def classify_status(status_code: int) -> FailureCode:
    """
    Map an HTTP status code onto a failure code.

    Args:
        status_code: HTTP status returned by the directory service

    Returns:
        FailureCode for the status; unknown 4xx statuses are bad requests,
        unknown 5xx statuses are server errors
    """
    if status_code == 429:
        return FailureCode.RATE_LIMITED
    if 500 <= status_code < 600:
        return FailureCode.SERVER_ERROR
    for code in FailureCode:
        if code.value == status_code:
            return code
    return FailureCode.BAD_REQUEST


def failure_for_status(status_code: int, error: str) -> Result:
    """Build the tagged failure for an HTTP error status."""
    code = classify_status(status_code)
    if code.is_transient:
        return TransientFailure(code, error)
    return PermanentFailure(code, error)


def is_retryable_error(exception: Exception) -> bool:
    """
    Determine if an exception should trigger a retry.

    Args:
        exception: Exception to check

    Returns:
        True if the exception indicates a transient failure
    """
    if isinstance(exception, (ConnectionError, TimeoutError)):
        return True

    status_code = getattr(exception, 'status_code', None)
    if status_code is not None:
        return classify_status(status_code).is_transient

    error_msg = str(exception).lower()
    transient_patterns = [
        'timeout',
        'connection reset',
        'connection refused',
        'network is unreachable',
        'temporary failure',
        'service unavailable',
        'too many requests',
        'rate limit exceeded',
    ]
    return any(pattern in error_msg for pattern in transient_patterns)


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call a function that raises on failure, retrying on the given exceptions.

    Used for setup steps (authentication) where an exception is the natural
    failure signal. Per-entity operations go through RetryExecutor instead.

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

    last_exception = None
    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result
        except exceptions as e:
            last_exception = e
            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")
            sleep(delay)

    raise MaxRetriesExceeded(max_attempts, last_exception)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry


class RetryExecutor:
    """
    Executes directory operations with bounded retry and call pacing.

    Transient failures are retried up to max_attempts with a fixed wait
    between attempts. Permanent failures come back immediately. Exhausted
    retries are demoted to PermanentFailure. Nothing is raised: one entity's
    failure never aborts a run.
    """

    def __init__(
        self,
        clock: Clock,
        max_attempts: int = 3,
        retry_wait_seconds: float = 2.0,
        inter_call_delay_seconds: float = 0.5
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.clock = clock
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds
        self.inter_call_delay_seconds = inter_call_delay_seconds
        self._last_call_end = None

    def execute(self, operation: Callable[[], Result], label: str = 'operation') -> Result:
        """
        Run an operation until it succeeds, fails permanently, or runs out of attempts.

        Args:
            operation: Zero-argument callable returning a Result
            label: Description used in log messages

        Returns:
            Success or PermanentFailure
        """
        self._pace()
        last = None
        try:
            for attempt in range(1, self.max_attempts + 1):
                try:
                    result = operation()
                except Exception as e:
                    logger.error(f"{label} raised {type(e).__name__}: {e}")
                    result = TransientFailure(FailureCode.SERVER_ERROR, str(e))

                if isinstance(result, Success):
                    if attempt > 1:
                        logger.info(f"{label} succeeded on attempt {attempt}")
                    return result

                if isinstance(result, PermanentFailure):
                    logger.debug(f"{label} failed permanently: {result.code.name} {result.last_error}")
                    return PermanentFailure(result.code, result.last_error, attempt)

                last = result
                if attempt < self.max_attempts:
                    logger.warning(f"{label} failed on attempt {attempt} with "
                                   f"{result.code.name}, retrying in {self.retry_wait_seconds}s")
                    self.clock.sleep(self.retry_wait_seconds)
        finally:
            self._last_call_end = self.clock.monotonic()

        logger.warning(f"{label} failed after {self.max_attempts} attempts: "
                       f"{last.code.name} {last.error}")
        return PermanentFailure(last.code, last.error, self.max_attempts)

    def _pace(self) -> None:
        """Hold the next call until the inter-call delay has passed."""
        if self._last_call_end is None or self.inter_call_delay_seconds <= 0:
            return
        waited = self.clock.monotonic() - self._last_call_end
        if waited < self.inter_call_delay_seconds:
            self.clock.sleep(self.inter_call_delay_seconds - waited)
