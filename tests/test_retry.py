import pytest
from unittest.mock import AsyncMock

from advisor.providers.base_provider import ProviderAuthError, ProviderTransientError
from advisor.utils.retry import backoff_delays, retry


@pytest.mark.asyncio
async def test_retries_listed_exceptions_then_succeeds():
    func = AsyncMock(side_effect=[ProviderTransientError("1"), ProviderTransientError("2"), "ok"])
    wrapped = retry(exceptions=(ProviderTransientError,), max_retries=2, initial_delay=0, label="flaky")(func)

    assert await wrapped("payload") == "ok"
    assert func.await_count == 3
    func.assert_awaited_with("payload")


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    func = AsyncMock(side_effect=ProviderTransientError("down"))
    wrapped = retry(exceptions=(ProviderTransientError,), max_retries=1, initial_delay=0)(func)

    with pytest.raises(ProviderTransientError):
        await wrapped()
    assert func.await_count == 2


@pytest.mark.asyncio
async def test_other_exceptions_are_not_retried():
    func = AsyncMock(side_effect=ProviderAuthError("bad key"))
    wrapped = retry(exceptions=(ProviderTransientError,), max_retries=3, initial_delay=0)(func)

    with pytest.raises(ProviderAuthError):
        await wrapped()
    assert func.await_count == 1


@pytest.mark.asyncio
async def test_zero_retries_runs_once():
    func = AsyncMock(side_effect=ProviderTransientError("down"))
    wrapped = retry(exceptions=(ProviderTransientError,), max_retries=0)(func)

    with pytest.raises(ProviderTransientError):
        await wrapped()
    assert func.await_count == 1


def test_backoff_schedule_grows_and_caps():
    delays = backoff_delays(1.0, backoff_factor=2.0, max_delay=3.0, jitter=False)
    assert [next(delays) for _ in range(4)] == [1.0, 2.0, 3.0, 3.0]


def test_backoff_jitter_stays_within_bounds():
    delays = backoff_delays(2.0, backoff_factor=1.0)
    for _ in range(20):
        assert 1.0 <= next(delays) <= 3.0
