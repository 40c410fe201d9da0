"""
Retry Service Test Suite
Bounded linear backoff with an injected sleep
"""

import pytest

from services.retry_service import RetryService
from tests.card_order_test_foundation import RecordingSleep


class TestLinearBackoff:
    """Test RetryService.run_with_linear_backoff"""

    @pytest.mark.asyncio
    async def test_first_attempt_success(self):
        """Test no sleeping when the first call succeeds"""
        sleep = RecordingSleep()

        async def fetch():
            return "42"

        outcome = await RetryService.run_with_linear_backoff(fetch, 3, 1.0, sleep=sleep)

        assert outcome.succeeded
        assert outcome.value == "42"
        assert outcome.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_exceptions_with_linear_delays(self):
        """Test failures are retried with base_delay * attempt waits"""
        sleep = RecordingSleep()
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise ConnectionError("rpc down")
            return "ok"

        outcome = await RetryService.run_with_linear_backoff(flaky, 5, 1.0, sleep=sleep)

        assert outcome.succeeded
        assert outcome.attempts == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhaustion_returns_last_error(self):
        """Test exhausted retries report the last error without raising"""
        sleep = RecordingSleep()

        async def broken():
            raise TimeoutError("slow node")

        outcome = await RetryService.run_with_linear_backoff(broken, 3, 0.5, sleep=sleep)

        assert not outcome.succeeded
        assert outcome.attempts == 3
        assert isinstance(outcome.last_error, TimeoutError)
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_should_retry_predicate(self):
        """Test a returned value can be rejected as not ready yet"""
        sleep = RecordingSleep()
        values = iter([None, None, {"status": "0x1"}])

        async def receipt():
            return next(values)

        outcome = await RetryService.run_with_linear_backoff(
            receipt, 5, 2.0, should_retry=lambda r: r is None, sleep=sleep
        )

        assert outcome.succeeded
        assert outcome.value == {"status": "0x1"}
        assert sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_unlisted_exceptions_propagate(self):
        """Test exceptions outside the transient set are raised"""
        async def bad():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await RetryService.run_with_linear_backoff(
                bad, 3, 0, exceptions=(ConnectionError,), sleep=RecordingSleep()
            )

    @pytest.mark.asyncio
    async def test_invalid_attempt_count(self):
        """Test max_attempts below one is rejected"""
        async def fetch():
            return 1

        with pytest.raises(ValueError):
            await RetryService.run_with_linear_backoff(fetch, 0, 1.0)
