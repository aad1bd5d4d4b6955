"""
Unit tests for the resilient HTTP client and the scraper connector
"""

import httpx
import pytest
from core.exceptions import AuthenticationError, RateLimitError, SourceUnavailableError
from ingestion.connectors.http_client import ResilientHTTPClient
from ingestion.connectors.scraper_connector import ScraperConnector
from models.base import EntityType


def make_client(handler, **kwargs):
    transport = httpx.MockTransport(handler)
    kwargs.setdefault("max_retries", 3)
    kwargs.setdefault("retry_delay", 0)
    return ResilientHTTPClient(
        source_name="ra",
        client=httpx.AsyncClient(transport=transport),
        **kwargs
    )


class Sequence:
    """Handler returning queued responses and counting calls"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = 0

    def __call__(self, request):
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.mark.asyncio
async def test_server_error_is_retried_then_succeeds():
    handler = Sequence(httpx.Response(503), httpx.Response(200, json={"ok": True}))
    client = make_client(handler)

    assert await client.get_json("https://scraper.test/x") == {"ok": True}
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_server_error_exhausts_retries():
    handler = Sequence(httpx.Response(500, text="boom"))
    client = make_client(handler)

    with pytest.raises(SourceUnavailableError) as exc_info:
        await client.get("https://scraper.test/x", context={"city": "berlin"})

    assert handler.calls == 3
    assert exc_info.value.context["status_code"] == 500
    assert exc_info.value.source == "ra"
    assert exc_info.value.city == "berlin"


@pytest.mark.asyncio
async def test_network_error_becomes_source_unavailable():
    handler = Sequence(httpx.ConnectError("Connection refused"))
    client = make_client(handler)

    with pytest.raises(SourceUnavailableError) as exc_info:
        await client.get("https://scraper.test/x")

    assert handler.calls == 3
    assert isinstance(exc_info.value.original_exception, httpx.ConnectError)


@pytest.mark.asyncio
async def test_authentication_error_is_not_retried():
    handler = Sequence(httpx.Response(401))
    client = make_client(handler)

    with pytest.raises(AuthenticationError):
        await client.get("https://scraper.test/x")
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after():
    handler = Sequence(httpx.Response(429, headers={"Retry-After": "0"}))
    client = make_client(handler, max_retries=2)

    with pytest.raises(RateLimitError) as exc_info:
        await client.get("https://scraper.test/x")
    assert handler.calls == 2
    assert exc_info.value.retry_after == 0


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    handler = Sequence(httpx.Response(404))
    client = make_client(handler)

    with pytest.raises(SourceUnavailableError) as exc_info:
        await client.get("https://scraper.test/x")
    assert handler.calls == 1
    assert exc_info.value.context["status_code"] == 404


@pytest.mark.asyncio
async def test_invalid_json():
    handler = Sequence(httpx.Response(200, text="<html>"))
    client = make_client(handler)

    with pytest.raises(SourceUnavailableError, match="parse JSON"):
        await client.get_json("https://scraper.test/x")


@pytest.mark.asyncio
async def test_circuit_breaker_opens_after_threshold():
    handler = Sequence(httpx.Response(404))
    client = make_client(handler, circuit_breaker_threshold=2)

    for _ in range(2):
        with pytest.raises(SourceUnavailableError):
            await client.get("https://scraper.test/x")

    with pytest.raises(SourceUnavailableError, match="Circuit breaker is open"):
        await client.get("https://scraper.test/x")
    assert handler.calls == 2


@pytest.mark.asyncio
async def test_scraper_connector_paginates():
    pages = {
        "1": {"data": [{"id": "e1"}, {"id": "e2"}], "has_next": True},
        "2": {"data": [{"id": "e3"}], "has_next": False},
    }
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=pages[request.url.params["page"]])

    connector = ScraperConnector("ra", base_url="https://scraper.test/", http=make_client(handler))
    records = await connector.fetch("berlin", EntityType.EVENT)

    assert [r["id"] for r in records] == ["e1", "e2", "e3"]
    assert seen[0].url.path == "/sources/ra/events"
    assert seen[0].url.params["city"] == "berlin"


@pytest.mark.asyncio
async def test_scraper_connector_accepts_bare_lists():
    def handler(request):
        return httpx.Response(200, json=[{"id": "v1", "name": "Tresor"}])

    connector = ScraperConnector("tm", base_url="https://scraper.test", http=make_client(handler))
    records = await connector.fetch("berlin", EntityType.VENUE)

    assert records == [{"id": "v1", "name": "Tresor"}]
