"""Tests for resilient_client.retry module."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from resilient_client.errors import ErrorKind, TypedError, create_error
from resilient_client.retry import (
    AI_POLICY,
    DEFAULT_POLICY,
    JITTER_MAX,
    RetryPolicy,
    compute_delay,
    retry_for_kinds,
    retry_with_condition,
    retryable,
    with_retry,
    with_timeout,
)

FAST = RetryPolicy(base_delay=0.001, max_delay=0.01, jitter=False)


class FlakyOperation:
    """Async callable that fails a fixed number of times before succeeding."""

    def __init__(self, failures, error_factory=lambda: RuntimeError("network down"), result="ok"):
        self.failures = failures
        self.error_factory = error_factory
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error_factory()
        return self.result


class TestRetryPolicy:
    """Tests for RetryPolicy dataclass."""

    def test_default_values(self):
        policy = RetryPolicy()
        assert policy.max_retries == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 30.0
        assert policy.backoff_factor == 2.0
        assert policy.jitter is True
        assert policy.on_retry is None

    def test_with_overrides_copies(self):
        policy = DEFAULT_POLICY.with_overrides(max_retries=9)
        assert policy.max_retries == 9
        assert DEFAULT_POLICY.max_retries == 3
        assert policy.max_delay == DEFAULT_POLICY.max_delay

    def test_ai_policy_retries_less(self):
        assert AI_POLICY.max_retries < DEFAULT_POLICY.max_retries
        assert AI_POLICY.base_delay > DEFAULT_POLICY.base_delay


class TestComputeDelay:
    """Tests for backoff calculation."""

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=100.0, backoff_factor=2.0, jitter=False)
        assert [compute_delay(n, policy) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)
        assert compute_delay(10, policy) == 5.0

    def test_monotonically_non_decreasing(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=20.0, backoff_factor=1.5, jitter=False)
        delays = [compute_delay(n, policy) for n in range(1, 20)]
        assert delays == sorted(delays)
        assert delays[-1] == 20.0

    def test_jitter_upper_bound_is_exclusive(self):
        policy = RetryPolicy(base_delay=1.0, jitter=True)
        with patch("resilient_client.retry.random.random", return_value=0.9999999):
            assert compute_delay(1, policy) < 1.0 + JITTER_MAX
        with patch("resilient_client.retry.random.random", return_value=0.0):
            assert compute_delay(1, policy) == 1.0

    def test_jitter_within_bounds(self):
        policy = RetryPolicy(base_delay=1.0, jitter=True)
        for _ in range(50):
            delay = compute_delay(1, policy)
            assert 1.0 <= delay < 1.0 + JITTER_MAX

    def test_retry_after_raises_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=False)
        assert compute_delay(1, policy, retry_after=7.0) == 7.0

    def test_retry_after_beyond_max_delay_ignored(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=False)
        assert compute_delay(1, policy, retry_after=120.0) == 1.0


class TestWithRetry:
    """Tests for with_retry."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        operation = FlakyOperation(0)
        assert await with_retry(operation, FAST) == "ok"
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self):
        seen = []
        policy = RetryPolicy(
            max_retries=3,
            base_delay=0.01,
            jitter=False,
            on_retry=lambda error, attempt: seen.append((error.retry_count, attempt)),
        )
        operation = FlakyOperation(2)

        assert await with_retry(operation, policy) == "ok"
        assert operation.calls == 3
        assert seen == [(1, 1), (2, 2)]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_retries", [0, 1, 2, 4])
    async def test_retry_ceiling(self, max_retries):
        operation = FlakyOperation(100)
        policy = FAST.with_overrides(max_retries=max_retries)

        with pytest.raises(TypedError) as exc_info:
            await with_retry(operation, policy)

        assert operation.calls == max_retries + 1
        assert exc_info.value.kind == ErrorKind.NETWORK_ERROR

    @pytest.mark.asyncio
    async def test_non_retryable_short_circuits(self):
        operation = FlakyOperation(
            100, error_factory=lambda: create_error(ErrorKind.VALIDATION_ERROR, "bad input")
        )

        with pytest.raises(TypedError) as exc_info:
            await with_retry(operation, FAST.with_overrides(max_retries=5))

        assert operation.calls == 1
        assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_raw_errors_are_classified(self):
        operation = FlakyOperation(100, error_factory=lambda: ValueError("weird"))

        with pytest.raises(TypedError) as exc_info:
            await with_retry(operation, FAST)

        assert operation.calls == 1
        assert exc_info.value.kind == ErrorKind.UNKNOWN_ERROR
        assert isinstance(exc_info.value.__cause__, ValueError)

    @pytest.mark.asyncio
    async def test_raw_rate_limit_errors_are_retried(self):
        operation = FlakyOperation(2, error_factory=lambda: RuntimeError("429 Too Many Requests"))

        assert await with_retry(operation, FAST.with_overrides(max_retries=2)) == "ok"
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_error_ceiling_binds_for_reused_error(self):
        error = create_error(ErrorKind.TIMEOUT_ERROR, "slow", max_retries=1)
        operation = FlakyOperation(100, error_factory=lambda: error)

        with pytest.raises(TypedError):
            await with_retry(operation, FAST.with_overrides(max_retries=5))

        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_delays_follow_backoff(self):
        operation = FlakyOperation(3)
        policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=3.0, jitter=False)

        with patch("resilient_client.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            assert await with_retry(operation, policy) == "ok"

        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_concurrent_invocations_are_independent(self):
        first = FlakyOperation(1, result="a")
        second = FlakyOperation(2, result="b")

        results = await asyncio.gather(with_retry(first, FAST), with_retry(second, FAST))

        assert results == ["a", "b"]
        assert (first.calls, second.calls) == (2, 3)


class TestRetryableDecorator:
    """Tests for the retryable decorator."""

    @pytest.mark.asyncio
    async def test_decorated_function_retries(self):
        calls = []

        @retryable(FAST)
        async def load(key):
            calls.append(key)
            if len(calls) < 2:
                raise ConnectionError("reset")
            return key.upper()

        assert await load("photo") == "PHOTO"
        assert calls == ["photo", "photo"]
        assert load.__name__ == "load"


class TestRetryWithCondition:
    """Tests for retry_with_condition and retry_for_kinds."""

    @pytest.mark.asyncio
    async def test_condition_controls_retry(self):
        operation = FlakyOperation(2, error_factory=lambda: KeyError("missing"))

        result = await retry_with_condition(
            operation,
            lambda error, attempt: isinstance(error, KeyError),
            FAST,
        )

        assert result == "ok"
        assert operation.calls == 3

    @pytest.mark.asyncio
    async def test_raw_error_propagates_unclassified(self):
        operation = FlakyOperation(5, error_factory=lambda: KeyError("missing"))

        with pytest.raises(KeyError):
            await retry_with_condition(operation, lambda error, attempt: False, FAST)

        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_retry_for_kinds(self):
        operation = FlakyOperation(
            1, error_factory=lambda: create_error(ErrorKind.VALIDATION_ERROR, "flaky validator")
        )

        with patch("resilient_client.retry.compute_delay", return_value=0):
            result = await retry_for_kinds(operation, [ErrorKind.VALIDATION_ERROR], max_retries=2)

        assert result == "ok"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_retry_for_kinds_ignores_other_kinds(self):
        operation = FlakyOperation(
            1, error_factory=lambda: create_error(ErrorKind.NETWORK_ERROR, "down")
        )

        with pytest.raises(TypedError):
            await retry_for_kinds(operation, [ErrorKind.VALIDATION_ERROR])

        assert operation.calls == 1


class TestWithTimeout:
    """Tests for with_timeout."""

    @pytest.mark.asyncio
    async def test_completes_in_time(self):
        async def quick():
            return 42

        assert await with_timeout(quick(), 1.0) == 42

    @pytest.mark.asyncio
    async def test_expiry_is_timeout_error(self):
        async def slow():
            await asyncio.sleep(10)

        with pytest.raises(TypedError) as exc_info:
            await with_timeout(slow(), 0.01)

        assert exc_info.value.kind == ErrorKind.TIMEOUT_ERROR
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_timeouts_are_retried(self):
        calls = 0

        async def attempt():
            nonlocal calls
            calls += 1

            async def maybe_slow():
                if calls == 1:
                    await asyncio.sleep(10)
                return "done"

            return await with_timeout(maybe_slow(), 0.01)

        assert await with_retry(attempt, FAST) == "done"
        assert calls == 2
