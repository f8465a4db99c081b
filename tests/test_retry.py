from __future__ import annotations

import pytest

from familiar.errors import ProviderAuthError, ProviderConnectionError, ProviderError, ProviderRateLimitError
from familiar.harness.retry import RetryConfig, compute_delay, is_retryable_error, with_retries


class FakeSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _failing(*errors, result="ok"):
    queue = list(errors)
    attempts = []

    async def _call():
        attempts.append(1)
        if queue:
            raise queue.pop(0)
        return result

    return _call, attempts


class TestClassification:
    @pytest.mark.parametrize(
        "error, expected",
        [
            (ProviderRateLimitError("slow down"), True),
            (ProviderConnectionError("dns"), True),
            (ProviderError("boom", status_code=503), True),
            (ProviderError("bad request", status_code=400), False),
            (ProviderAuthError("nope", status_code=401), False),
            (ConnectionResetError(), True),
            (ValueError("x"), False),
        ],
    )
    def test_is_retryable(self, error, expected) -> None:
        assert is_retryable_error(error) is expected


class TestDelay:
    def test_retry_after_wins_but_is_at_least_one_second(self) -> None:
        config = RetryConfig()
        assert compute_delay(0, config, retry_after=7.5) == 7.5
        assert compute_delay(3, config, retry_after=0.2) == 1.0

    def test_exponential_growth_is_capped(self) -> None:
        config = RetryConfig(base_delay=1.0, max_delay=4.0, jitter_range=0.0)
        assert [compute_delay(n, config) for n in range(4)] == [1.0, 2.0, 4.0, 4.0]

    def test_jitter_stays_in_range(self) -> None:
        config = RetryConfig(base_delay=2.0, jitter_range=0.25)
        for _ in range(50):
            assert 1.5 <= compute_delay(0, config) <= 2.5


class TestWithRetries:
    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self) -> None:
        sleep = FakeSleep()
        retries = []
        call, attempts = _failing(ProviderConnectionError("reset"), ProviderRateLimitError("429", retry_after=2))

        result = await with_retries(
            call,
            RetryConfig(max_retries=3, base_delay=0.5, jitter_range=0.0),
            on_retry=lambda attempt, error, delay: retries.append((attempt, delay)),
            sleep=sleep,
        )

        assert result == "ok"
        assert len(attempts) == 3
        assert sleep.calls == [0.5, 2]
        assert retries == [(1, 0.5), (2, 2)]

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self) -> None:
        sleep = FakeSleep()
        call, attempts = _failing(ProviderAuthError("bad key", status_code=401))
        with pytest.raises(ProviderAuthError):
            await with_retries(call, RetryConfig(), sleep=sleep)
        assert len(attempts) == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        sleep = FakeSleep()
        errors = [ProviderError("down", status_code=500) for _ in range(5)]
        call, attempts = _failing(*errors)
        with pytest.raises(ProviderError, match="down"):
            await with_retries(call, RetryConfig(max_retries=2), sleep=sleep)
        assert len(attempts) == 3
        assert len(sleep.calls) == 2
