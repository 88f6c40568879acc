# tests/unit/test_retry.py

import threading
import time

import pytest

from s3_unzipper.exceptions import (
    MemoryLimitExceededError,
    OperationTimeoutError,
    RetryExhaustedError,
    S3AccessDeniedError,
    S3Error,
    S3ObjectNotFoundError,
    S3ThrottlingError,
)
from s3_unzipper.models import RetryPolicy
from s3_unzipper.retry import (
    DEFAULT_RETRYABLE_ERRORS,
    STORAGE_RETRYABLE_ERRORS,
    TRANSFORM_POLICY,
    compute_backoff_delay,
    storage_policy,
    with_retry,
)


@pytest.fixture
def policy() -> RetryPolicy:
    """Three attempts, 1s/2s/4s backoff, no per-attempt timeout."""
    return RetryPolicy(
        name="test",
        max_attempts=3,
        base_delay=1.0,
        max_delay=4.0,
        timeout=None,
        retryable_errors=DEFAULT_RETRYABLE_ERRORS,
    )


class FlakyOperation:
    """Raises the queued errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def test_success_on_first_attempt(policy):
    operation = FlakyOperation()
    sleeps = []

    assert with_retry(operation, policy, sleep=sleeps.append) == "ok"
    assert operation.calls == 1
    assert sleeps == []


def test_transient_errors_are_retried_with_backoff(policy):
    # ARRANGE
    operation = FlakyOperation(S3ThrottlingError("put_object"), S3ThrottlingError("put_object"))
    sleeps = []

    # ACT
    result = with_retry(operation, policy, sleep=sleeps.append, rng=lambda: 0.0)

    # ASSERT
    assert result == "ok"
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]


def test_exhaustion_raises_with_last_error(policy):
    # ARRANGE
    errors = [S3ThrottlingError("put_object") for _ in range(3)]
    operation = FlakyOperation(*errors)

    # ACT
    with pytest.raises(RetryExhaustedError) as exc_info:
        with_retry(operation, policy, {"operation": "upload_entry"}, sleep=lambda s: None)

    # ASSERT
    error = exc_info.value
    assert operation.calls == 3
    assert error.attempts == 3
    assert error.operation == "upload_entry"
    assert error.last_error is errors[-1]
    assert error.__cause__ is errors[-1]


def test_non_retryable_error_fails_immediately(policy):
    operation = FlakyOperation(S3AccessDeniedError("bucket", "key"))

    with pytest.raises(RetryExhaustedError) as exc_info:
        with_retry(operation, policy, sleep=lambda s: None)

    assert operation.calls == 1
    assert isinstance(exc_info.value.last_error, S3AccessDeniedError)


def test_unclassified_error_is_not_retried(policy):
    operation = FlakyOperation(ValueError("boom"))

    with pytest.raises(RetryExhaustedError):
        with_retry(operation, policy, sleep=lambda s: None)

    assert operation.calls == 1


def test_resource_limits_propagate_unchanged(policy):
    error = MemoryLimitExceededError("upload_entry")
    operation = FlakyOperation(error)

    with pytest.raises(MemoryLimitExceededError) as exc_info:
        with_retry(operation, policy, sleep=lambda s: None)

    assert exc_info.value is error
    assert operation.calls == 1


def test_errors_are_matched_by_message(policy):
    operation = FlakyOperation(ConnectionResetError("ECONNRESET by peer"))

    assert with_retry(operation, policy, sleep=lambda s: None) == "ok"
    assert operation.calls == 2


def test_errors_are_matched_by_error_code(policy):
    operation = FlakyOperation(S3Error("S3 get_object failed", error_code="ServiceUnavailable"))

    assert with_retry(operation, policy, sleep=lambda s: None) == "ok"


def test_storage_policy_retries_missing_objects():
    operation = FlakyOperation(S3ObjectNotFoundError("bucket", "input/a.zip"))

    assert with_retry(operation, storage_policy(), sleep=lambda s: None) == "ok"
    assert operation.calls == 2


class StalledOperation:
    """Blocks until cancelled, then fails the way a read on a closed stream does."""

    def __init__(self):
        self.cancelled = threading.Event()
        self.lock = threading.Lock()
        self.calls = 0
        self.cancels = 0
        self.running = 0
        self.peak = 0

    def __call__(self):
        with self.lock:
            self.calls += 1
            self.running += 1
            self.peak = max(self.peak, self.running)
        try:
            if self.cancelled.wait(timeout=2):
                raise ValueError("I/O operation on closed file")
            return "ok"
        finally:
            self.cancelled.clear()
            with self.lock:
                self.running -= 1

    def cancel(self):
        self.cancels += 1
        self.cancelled.set()


def test_slow_attempts_are_cancelled_and_retried():
    # ARRANGE
    policy = RetryPolicy(name="slow", max_attempts=2, base_delay=0, max_delay=0, timeout=0.05)
    operation = StalledOperation()

    # ACT
    with pytest.raises(RetryExhaustedError) as exc_info:
        with_retry(operation, policy, sleep=lambda s: None, on_timeout=operation.cancel)

    # ASSERT
    assert exc_info.value.attempts == 2
    assert isinstance(exc_info.value.last_error, OperationTimeoutError)
    assert isinstance(exc_info.value.last_error.__cause__, ValueError)
    assert operation.cancels == 2
    assert operation.peak == 1
    assert operation.running == 0


def test_attempt_finishing_after_its_deadline_keeps_its_result():
    policy = RetryPolicy(name="late", max_attempts=3, base_delay=0, max_delay=0, timeout=0.05)
    operation = FlakyOperation()

    def late():
        time.sleep(0.2)
        return operation()

    assert with_retry(late, policy, sleep=lambda s: None) == "ok"
    assert operation.calls == 1


def test_timeouts_can_be_excluded():
    policy = RetryPolicy(
        name="slow", max_attempts=3, base_delay=0, max_delay=0, timeout=0.05, retry_on_timeout=False
    )
    operation = StalledOperation()

    with pytest.raises(RetryExhaustedError) as exc_info:
        with_retry(operation, policy, sleep=lambda s: None, on_timeout=operation.cancel)

    assert exc_info.value.attempts == 1
    assert operation.cancels == 1


def test_operations_own_timeout_error_is_not_mistaken_for_the_deadline():
    policy = RetryPolicy(
        name="t", max_attempts=2, base_delay=0, max_delay=0, timeout=5.0,
        retryable_errors=DEFAULT_RETRYABLE_ERRORS,
    )
    operation = FlakyOperation(TimeoutError("socket timed out"))

    assert with_retry(operation, policy, sleep=lambda s: None) == "ok"
    assert operation.calls == 2


class TestBackoff:
    def test_exponential_growth_is_capped(self, policy):
        delays = [compute_backoff_delay(n, policy, rng=lambda: 0.0) for n in range(5)]

        assert delays == [1.0, 2.0, 4.0, 4.0, 4.0]

    def test_jitter_adds_up_to_ten_percent(self, policy):
        assert compute_backoff_delay(0, policy, rng=lambda: 1.0) == pytest.approx(1.1)


class TestPolicies:
    def test_default_storage_policy(self):
        policy = storage_policy()

        assert (policy.max_attempts, policy.base_delay, policy.max_delay, policy.timeout) == (
            4, 0.5, 16.0, 45.0
        )
        assert "NoSuchKey" in policy.retryable_errors
        assert policy.retryable_errors == STORAGE_RETRYABLE_ERRORS

    def test_storage_policy_from_config(self, make_config):
        config = make_config(
            storage_retry_max_attempts=5,
            storage_retry_base_delay_ms=250,
            storage_retry_max_delay_ms=4000,
            s3_operation_timeout_seconds=20,
        )

        policy = storage_policy(config)

        assert policy.max_attempts == 5
        assert policy.base_delay == 0.25
        assert policy.max_delay == 4.0
        assert policy.timeout == 20.0

    def test_transform_policy(self):
        assert TRANSFORM_POLICY.max_attempts == 2
        assert TRANSFORM_POLICY.is_retryable(MemoryError())
        assert not TRANSFORM_POLICY.is_retryable(S3ThrottlingError("put_object"))

    def test_timeout_classification_follows_flag(self):
        error = OperationTimeoutError("op", 1.0)

        assert RetryPolicy(name="a").is_retryable(error)
        assert not RetryPolicy(name="b", retry_on_timeout=False).is_retryable(error)
