"""HTTP-backed providers against a mocked transport."""

import json

import httpx
import pytest

from errandhub.adapters.chat import HttpChatGateway
from errandhub.adapters.geocoding import CachingGeocoder, NominatimGeocoder
from errandhub.adapters.identity import FormatOnlyVerifier, HttpIdentityVerifier
from errandhub.errors import PermanentServiceError, TransientServiceError
from errandhub.geo import Coordinate, Place
from tests.fakes import FakeGeocoder


def _client(handler, base_url: str = "https://provider.test") -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_nominatim_forward_and_reverse():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/search":
            assert request.url.params["q"] == "12 Marina Road"
            return httpx.Response(
                200, json=[{"lat": "6.45", "lon": "3.39", "display_name": "Marina, Lagos"}]
            )
        return httpx.Response(200, json={"display_name": "Ikeja, Lagos"})

    geocoder = NominatimGeocoder("https://provider.test", "test", client=_client(handler))

    place = await geocoder.resolve_address("12 Marina Road")
    assert place == Place(Coordinate(6.45, 3.39), "Marina, Lagos")
    assert await geocoder.reverse_resolve(Coordinate(6.6, 3.35)) == "Ikeja, Lagos"


@pytest.mark.asyncio
async def test_nominatim_no_match():
    geocoder = NominatimGeocoder(
        "https://provider.test", "test", client=_client(lambda r: httpx.Response(200, json=[]))
    )
    assert await geocoder.resolve_address("nowhere") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, expected", [(429, TransientServiceError), (400, PermanentServiceError)]
)
async def test_nominatim_errors_are_classified(status, expected):
    geocoder = NominatimGeocoder(
        "https://provider.test", "test", client=_client(lambda r: httpx.Response(status))
    )
    with pytest.raises(expected):
        await geocoder.resolve_address("anywhere")


@pytest.mark.asyncio
async def test_caching_geocoder_hits_inner_once():
    inner = FakeGeocoder({"marina": Place(Coordinate(6.45, 3.39), "Marina")})
    cached = CachingGeocoder(inner, max_entries=2)

    assert await cached.resolve_address("Marina") == await cached.resolve_address(" marina ")
    assert inner.forward_calls == ["Marina"]

    await cached.reverse_resolve(Coordinate(6.5, 3.3))
    await cached.reverse_resolve(Coordinate(6.5, 3.3))
    assert len(inner.reverse_calls) == 1


@pytest.mark.asyncio
async def test_caching_geocoder_evicts_oldest():
    inner = FakeGeocoder()
    cached = CachingGeocoder(inner, max_entries=2)
    for text in ("a", "b", "c", "a"):
        await cached.resolve_address(text)
    assert inner.forward_calls == ["a", "b", "c", "a"]


@pytest.mark.asyncio
async def test_caching_geocoder_keeps_recently_used():
    inner = FakeGeocoder()
    cached = CachingGeocoder(inner, max_entries=2)
    for text in ("a", "b", "a", "c", "a", "b"):
        await cached.resolve_address(text)
    assert inner.forward_calls == ["a", "b", "c", "b"]


@pytest.mark.asyncio
async def test_identity_verifier():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"accepted": False, "reason": "Name mismatch"})

    verifier = HttpIdentityVerifier("https://provider.test", "k", client=_client(handler))
    check = await verifier.verify_identity("12345678901", "Ada Obi")

    assert check.accepted is False
    assert check.reason == "Name mismatch"
    assert seen["national_id"] == "12345678901"
    assert seen["claimed_name"] == "Ada Obi"


@pytest.mark.asyncio
async def test_format_only_verifier():
    verifier = FormatOnlyVerifier()
    assert (await verifier.verify_identity("12345678901", "Ada")).accepted
    assert not (await verifier.verify_identity("1234", "Ada")).accepted


@pytest.mark.asyncio
async def test_chat_gateway_calls():
    calls: list[tuple[str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        calls.append((request.url.path, payload))
        if request.url.path == "/createChannel":
            return httpx.Response(200, json={"channel_id": 42})
        if request.url.path == "/deleteChannel":
            return httpx.Response(503)
        return httpx.Response(200)

    gateway = HttpChatGateway("https://gateway.test", "t", client=_client(handler))

    await gateway.send_message("cust-1", "hello", {"reply_markup": {"action": "x"}})
    ref = await gateway.create_channel("Task tk_1", ["cust-1", "rider-1"])
    assert ref == "42"
    with pytest.raises(TransientServiceError):
        await gateway.delete_channel(ref)

    assert calls[0] == (
        "/sendMessage",
        {"chat_id": "cust-1", "text": "hello", "reply_markup": {"action": "x"}},
    )
    assert calls[1][1]["members"] == ["cust-1", "rider-1"]
