import pytest

from storage_api.errors import SecurityError
from storage_api.utils.decorators import async_retry


async def test_async_retry_retries_matching_errors():
    calls = []

    @async_retry(max_attempts=3, delay=0, exceptions=(OSError,))
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise OSError("Input/output error")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


async def test_async_retry_gives_up_after_max_attempts():
    calls = []

    @async_retry(max_attempts=2, delay=0, exceptions=(OSError,))
    async def broken():
        calls.append(1)
        raise OSError("Input/output error")

    with pytest.raises(OSError):
        await broken()
    assert len(calls) == 2


@pytest.mark.parametrize("error", [PermissionError("denied"), SecurityError("escape")])
async def test_async_retry_never_retries_excluded_errors(error):
    calls = []

    @async_retry(max_attempts=3, delay=0, exceptions=(OSError, SecurityError), no_retry=(SecurityError, PermissionError))
    async def refused():
        calls.append(1)
        raise error

    with pytest.raises(type(error)):
        await refused()
    assert len(calls) == 1
