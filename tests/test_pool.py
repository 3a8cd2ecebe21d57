import asyncio

import pytest

from reqforge.errors import NotFound, RemoteError
from reqforge.pool import CallPool


class Flaky:
    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


def test_retryable_errors_are_retried_until_success():
    fn = Flaky(2, RemoteError("busy", 503, retryable=True))
    pool = CallPool(max_attempts=3, retry_backoff_ms=0)

    assert asyncio.run(pool.run("flaky", fn, "done")) == "done"
    assert fn.calls == 3


def test_gives_up_after_max_attempts():
    fn = Flaky(5, RemoteError("busy", 503, retryable=True))
    pool = CallPool(max_attempts=2, retry_backoff_ms=0)

    with pytest.raises(RemoteError):
        asyncio.run(pool.run("flaky", fn, "done"))
    assert fn.calls == 2


def test_non_retryable_errors_fail_immediately():
    fn = Flaky(1, RemoteError("bad request", 400))
    with pytest.raises(RemoteError):
        asyncio.run(CallPool(retry_backoff_ms=0).run("bad", fn, "done"))
    assert fn.calls == 1

    other = Flaky(1, NotFound("gone"))
    with pytest.raises(NotFound):
        asyncio.run(CallPool(retry_backoff_ms=0).run("gone", other, "done"))
    assert other.calls == 1


def test_delay_prefers_retry_after_and_backs_off_exponentially():
    pool = CallPool(retry_backoff_ms=100)

    assert pool._delay(1, RemoteError("x", 503, retryable=True)) == pytest.approx(0.1)
    assert pool._delay(3, RemoteError("x", 503, retryable=True)) == pytest.approx(0.4)
    assert pool._delay(1, RemoteError("x", 429, retryable=True, retry_after=2)) == 2
    assert pool._delay(1, RemoteError("x", 429, retryable=True, retry_after=600)) == 30.0


def test_limits_are_clamped_to_one():
    pool = CallPool(max_concurrency=0, max_attempts=0)
    assert pool.max_concurrency == 1
    assert pool.max_attempts == 1


def test_never_more_than_max_concurrency_in_flight():
    state = {"now": 0, "peak": 0}

    async def work():
        state["now"] += 1
        state["peak"] = max(state["peak"], state["now"])
        await asyncio.sleep(0.005)
        state["now"] -= 1

    async def main():
        pool = CallPool(max_concurrency=3)
        await asyncio.gather(*[pool.run(f"w{i}", work) for i in range(12)])

    asyncio.run(main())
    assert state["peak"] == 3
