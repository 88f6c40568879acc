# src/s3_unzipper/retry.py

"""
Retry/backoff executor for storage and transform operations.

`with_retry` runs a zero-argument callable under a `RetryPolicy` using
tenacity's `Retrying` loop. Failures that exhaust the policy, or that the
policy does not consider transient, surface as `RetryExhaustedError`; hard
resource limits are never retried and propagate untouched so they can abort
the archive.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, Optional, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt

from .exceptions import (
    OperationTimeoutError,
    ResourceLimitExceededError,
    RetryExhaustedError,
)
from .models import RetryPolicy
from .redaction import redact_context

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.1

DEFAULT_RETRYABLE_ERRORS = frozenset(
    {
        "NetworkingError",
        "TimeoutError",
        "Timeout",
        "Throttling",
        "ThrottlingException",
        "ServiceUnavailable",
        "InternalError",
        "SlowDown",
        "RequestTimeout",
        "TooManyRequests",
        "Connection",
        "ECONNRESET",
        "ETIMEDOUT",
    }
)

# Right after an upload notification a GET can still miss the object
STORAGE_RETRYABLE_ERRORS = DEFAULT_RETRYABLE_ERRORS | {
    "NoSuchKey",
    "S3_OBJECT_NOT_FOUND",
    "BandwidthLimitExceeded",
}

TRANSFORM_RETRYABLE_ERRORS = frozenset({"TimeoutError", "EMFILE", "ENOMEM", "MemoryError"})

DEFAULT_POLICY = RetryPolicy(
    name="default",
    max_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    backoff_multiplier=2.0,
    timeout=60.0,
    retryable_errors=DEFAULT_RETRYABLE_ERRORS,
)

TRANSFORM_POLICY = RetryPolicy(
    name="csv_transform",
    max_attempts=2,
    base_delay=1.0,
    max_delay=5.0,
    backoff_multiplier=2.0,
    timeout=30.0,
    retryable_errors=TRANSFORM_RETRYABLE_ERRORS,
)


def storage_policy(config: Any = None) -> RetryPolicy:
    """Storage I/O policy, tuned from the app config when one is given."""
    if config is None:
        return RetryPolicy(
            name="storage",
            max_attempts=4,
            base_delay=0.5,
            max_delay=16.0,
            backoff_multiplier=2.0,
            timeout=45.0,
            retryable_errors=STORAGE_RETRYABLE_ERRORS,
        )
    return RetryPolicy(
        name="storage",
        max_attempts=config.storage_retry_max_attempts,
        base_delay=config.storage_retry_base_delay_ms / 1000,
        max_delay=config.storage_retry_max_delay_ms / 1000,
        backoff_multiplier=2.0,
        timeout=float(config.s3_operation_timeout_seconds),
        retryable_errors=STORAGE_RETRYABLE_ERRORS,
    )


def compute_backoff_delay(
    attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random
) -> float:
    """
    Delay before retrying after the 0-indexed *attempt*.

    ``min(base * multiplier**attempt, max_delay)`` plus up to 10% jitter, so
    concurrent invocations do not retry in lockstep.
    """
    delay = min(policy.base_delay * policy.backoff_multiplier**attempt, policy.max_delay)
    return delay + delay * JITTER_FRACTION * rng()


def _run_with_timeout(
    operation: Callable[[], T],
    timeout: float,
    name: str,
    on_timeout: Optional[Callable[[], None]] = None,
) -> T:
    """
    Run one attempt on a worker thread with a deadline of *timeout* seconds.

    A thread cannot be killed, so when the deadline passes *on_timeout* is
    called to make the attempt fail fast (typically by closing the stream it
    reads from), and the worker is joined before this returns. At most one
    attempt is ever running.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"retry-{name}")
    future = executor.submit(operation)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        if future.done():
            # The operation itself raised TimeoutError
            raise
        logger.warning(
            "Attempt exceeded its deadline, cancelling",
            extra={"operation": name, "timeout_seconds": timeout},
        )
        if on_timeout is not None:
            on_timeout()
        wait([future])
        error = future.exception()
        if error is None:
            # Completed while being cancelled
            return future.result()
        if isinstance(error, ResourceLimitExceededError):
            raise error
        raise OperationTimeoutError(name, timeout) from error
    finally:
        executor.shutdown(wait=True)


def with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy = DEFAULT_POLICY,
    context: Optional[Dict[str, Any]] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    on_timeout: Optional[Callable[[], None]] = None,
) -> T:
    """
    Run *operation* until it succeeds or *policy* gives up.

    With a policy timeout each attempt runs on a worker thread; *on_timeout*
    cancels an attempt that overruns, and the next attempt starts only once
    the previous one has returned.

    Raises:
        ResourceLimitExceededError: unchanged, on the first occurrence.
        RetryExhaustedError: after the last attempt, or immediately for an
            error the policy does not retry. Chained to the last error.
    """
    log_context = redact_context(context or {})
    operation_name = str((context or {}).get("operation", policy.name))
    attempts = 0

    def attempt() -> T:
        nonlocal attempts
        attempts += 1
        if policy.timeout:
            return _run_with_timeout(operation, policy.timeout, operation_name, on_timeout)
        return operation()

    def backoff(retry_state) -> float:
        return compute_backoff_delay(retry_state.attempt_number - 1, policy, rng)

    def log_before_retry(retry_state) -> None:
        error = retry_state.outcome.exception()
        logger.warning(
            f"Retrying {operation_name} in {retry_state.next_action.sleep:.2f}s due to "
            f"{type(error).__name__} (attempt {retry_state.attempt_number} of {policy.max_attempts})",
            extra={**log_context, "policy": policy.name, "error": str(error)},
        )

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=backoff,
        retry=retry_if_exception(policy.is_retryable),
        before_sleep=log_before_retry,
        sleep=sleep,
        reraise=True,
    )

    try:
        return retrying(attempt)
    except ResourceLimitExceededError:
        raise
    except Exception as e:
        logger.error(
            f"Operation {operation_name} failed after {attempts} attempt(s)",
            extra={
                **log_context,
                "policy": policy.name,
                "error_type": type(e).__name__,
                "retryable": policy.is_retryable(e),
            },
        )
        raise RetryExhaustedError(operation_name, attempts, e) from e
