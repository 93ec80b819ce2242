"""Bounded retries around external calls."""

import asyncio

import httpx
import pytest

from errandhub.config import settings
from errandhub.errors import ExternalServiceError, PermanentServiceError, TransientServiceError
from errandhub.retry import call_external, classify_http_error


class Flaky:
    def __init__(self, *errors: Exception, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self, *args, **kwargs):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.mark.asyncio
async def test_transient_failure_then_success():
    fn = Flaky(TransientServiceError("503"))
    assert await call_external("op", fn) == "ok"
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_gives_up_after_budget():
    fn = Flaky(*[TransientServiceError("429")] * 5)
    with pytest.raises(ExternalServiceError, match="unavailable"):
        await call_external("op", fn)
    assert fn.calls == settings.external_max_attempts


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried():
    fn = Flaky(PermanentServiceError("400"))
    with pytest.raises(ExternalServiceError):
        await call_external("op", fn)
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_unexpected_errors_propagate():
    fn = Flaky(KeyError("boom"))
    with pytest.raises(KeyError):
        await call_external("op", fn)
    assert fn.calls == 1


@pytest.mark.asyncio
async def test_timeout_counts_as_transient():
    calls = 0

    async def slow():
        nonlocal calls
        calls += 1
        await asyncio.sleep(1)

    with pytest.raises(ExternalServiceError):
        await call_external("slow", slow, attempts=2, timeout=0.01)
    assert calls == 2


@pytest.mark.parametrize(
    "status, expected",
    [(429, TransientServiceError), (503, TransientServiceError), (404, PermanentServiceError)],
)
def test_classify_http_status(status, expected):
    request = httpx.Request("GET", "https://provider.test/")
    response = httpx.Response(status, request=request)
    exc = httpx.HTTPStatusError("failed", request=request, response=response)
    assert isinstance(classify_http_error(exc), expected)


def test_classify_transport_error():
    exc = httpx.ConnectError("refused")
    assert isinstance(classify_http_error(exc), TransientServiceError)
