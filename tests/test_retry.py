"""Tests for the retry and polling helpers"""

import time

import pytest

from cloudha.core.errors import CloudApiError, TransientCloudError
from cloudha.core.retry import poll_until, retry


class Flaky:
    """Fails with the queued errors, then returns the value"""

    def __init__(self, *errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestRetry:
    async def test_transient_errors_are_retried(self):
        fn = Flaky(TransientCloudError("throttled", 429), TransientCloudError("throttled", 429))

        assert await retry(fn, max_retries=2, interval=0) == "ok"
        assert fn.calls == 3

    async def test_gives_up_after_max_retries(self):
        fn = Flaky(*[TransientCloudError("throttled", 429)] * 3)

        with pytest.raises(TransientCloudError):
            await retry(fn, max_retries=2, interval=0)
        assert fn.calls == 3

    async def test_other_errors_are_not_retried(self):
        fn = Flaky(CloudApiError("bad request", 400))

        with pytest.raises(CloudApiError):
            await retry(fn, max_retries=5, interval=0)
        assert fn.calls == 1

    async def test_retry_on_is_configurable(self):
        fn = Flaky(ValueError("nope"))

        assert await retry(fn, max_retries=1, interval=0, retry_on=(ValueError,)) == "ok"


class TestPollUntil:
    async def test_returns_first_satisfying_result(self):
        values = iter([1, 2, 3, 4])

        async def fn():
            return next(values)

        result, satisfied = await poll_until(fn, lambda v: v >= 3, interval=0, max_attempts=10)
        assert (result, satisfied) == (3, True)

    async def test_attempt_bound(self):
        fn = Flaky(value=0)

        result, satisfied = await poll_until(fn, bool, interval=0, max_attempts=4)
        assert (result, satisfied) == (0, False)
        assert fn.calls == 4

    async def test_deadline_bound(self):
        fn = Flaky(value=False)
        start = time.monotonic()

        _, satisfied = await poll_until(fn, bool, interval=0.01, deadline=start + 0.05)

        assert not satisfied
        assert time.monotonic() - start < 1.0
        assert fn.calls >= 2

    async def test_needs_a_bound(self):
        with pytest.raises(ValueError):
            await poll_until(Flaky(), bool, interval=0)
