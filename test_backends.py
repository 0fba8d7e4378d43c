"""
Tests for the content backends against a local HTTP server, and for plugin discovery.
"""

import pytest
from aiohttp import web
from aiohttp import test_utils

from bountywatch.core import plugin_loader
from bountywatch.core.config import Settings
from bountywatch.core.errors import FetchError, FetchErrorKind
from bountywatch.core.resilience import CredentialPool
from bountywatch.plugins.algora.backends import (
    FirecrawlBackend,
    FirecrawlSelfHostedBackend,
    HttpBackend,
)
from conftest import bounty_card, bounty_page

PAGE = bounty_page(bounty_card("acme", "widgets", 1, "Fix flaky upload test", "100"))


def site(received=None, scrape_status=200, scrape_body=None):
    received = received if received is not None else []

    async def bounties(request):
        return web.Response(text=PAGE, content_type="text/html")

    async def empty(request):
        return web.Response(text="  ", content_type="text/html")

    async def unavailable(request):
        return web.Response(status=503, text="try later")

    async def scrape(request):
        received.append({"headers": dict(request.headers), "body": await request.json()})
        body = scrape_body if scrape_body is not None else {
            "success": True,
            "data": {
                "markdown": "# Bounties",
                "html": PAGE,
                "json": {"bounties": []},
                "metadata": {"statusCode": 200},
            },
        }
        headers = {"Retry-After": "12"} if scrape_status == 429 else None
        return web.json_response(body, status=scrape_status, headers=headers)

    async def health(request):
        return web.json_response({"status": "ok"})

    app = web.Application()
    app.router.add_get("/acme/bounties", bounties)
    app.router.add_get("/empty/bounties", empty)
    app.router.add_get("/down/bounties", unavailable)
    app.router.add_post("/v1/scrape", scrape)
    app.router.add_get("/health", health)
    return app


async def test_http_backend_fetches_page():
    async with test_utils.TestServer(site()) as server:
        backend = HttpBackend()
        try:
            content = await backend.fetch(str(server.make_url("/acme/bounties")), 5, "acme")
        finally:
            await backend.close()

    assert content.backend == "http"
    assert content.resource_id == "acme"
    assert content.html == PAGE
    assert content.status_code == 200


@pytest.mark.parametrize(
    "path, kind, status",
    [
        ("/down/bounties", FetchErrorKind.HTTP, 503),
        ("/empty/bounties", FetchErrorKind.INVALID_RESPONSE, None),
    ],
)
async def test_http_backend_failures(path, kind, status):
    async with test_utils.TestServer(site()) as server:
        backend = HttpBackend()
        try:
            with pytest.raises(FetchError) as excinfo:
                await backend.fetch(str(server.make_url(path)), 5, "acme")
        finally:
            await backend.close()

    assert excinfo.value.kind is kind
    assert excinfo.value.status == status
    assert excinfo.value.backend == "http"


async def test_firecrawl_backend_uses_api_key_and_json_format():
    received = []
    pool = CredentialPool(["fc-secret"])
    async with test_utils.TestServer(site(received)) as server:
        backend = FirecrawlBackend(pool, str(server.make_url("/")))
        try:
            content = await backend.fetch("https://algora.io/acme/bounties?status=open", 5, "acme")
        finally:
            await backend.close()

    (request,) = received
    assert request["headers"]["Authorization"] == "Bearer fc-secret"
    assert request["body"]["url"] == "https://algora.io/acme/bounties?status=open"
    assert "json" in request["body"]["formats"]
    assert "jsonOptions" in request["body"]
    assert content.markdown == "# Bounties"
    assert content.structured == {"bounties": []}
    assert content.status_code == 200


async def test_firecrawl_rate_limit_cools_the_key():
    now = [0.0]
    pool = CredentialPool(["fc-secret"], clock=lambda: now[0])
    async with test_utils.TestServer(site(scrape_status=429, scrape_body={"error": "rate limited"})) as server:
        backend = FirecrawlBackend(pool, str(server.make_url("/")))
        try:
            with pytest.raises(FetchError) as excinfo:
                await backend.fetch("https://algora.io/acme/bounties", 5, "acme")
        finally:
            await backend.close()

    assert excinfo.value.rate_limited
    assert excinfo.value.retry_after == 12
    assert not pool.has_ready()


async def test_firecrawl_unsuccessful_scrape_is_invalid():
    body = {"success": False, "error": "page blocked"}
    async with test_utils.TestServer(site(scrape_body=body)) as server:
        backend = FirecrawlSelfHostedBackend(str(server.make_url("/")))
        try:
            with pytest.raises(FetchError) as excinfo:
                await backend.fetch("https://algora.io/acme/bounties", 5, "acme")
        finally:
            await backend.close()

    assert excinfo.value.kind is FetchErrorKind.INVALID_RESPONSE
    assert "page blocked" in str(excinfo.value)


async def test_firecrawl_upstream_error_status():
    body = {"success": True, "data": {"markdown": "Not found", "metadata": {"statusCode": 404}}}
    async with test_utils.TestServer(site(scrape_body=body)) as server:
        backend = FirecrawlSelfHostedBackend(str(server.make_url("/")))
        try:
            with pytest.raises(FetchError) as excinfo:
                await backend.fetch("https://algora.io/acme/bounties", 5, "acme")
        finally:
            await backend.close()

    assert excinfo.value.status == 404


async def test_self_hosted_health_probe():
    async with test_utils.TestServer(site()) as server:
        healthy = FirecrawlSelfHostedBackend(str(server.make_url("/")))
        missing = FirecrawlSelfHostedBackend(str(server.make_url("/nowhere")))
        try:
            assert await healthy.is_available()
            assert not await missing.is_available()
        finally:
            await healthy.close()
            await missing.close()


async def test_firecrawl_without_keys_is_unavailable():
    assert not await FirecrawlBackend(CredentialPool([])).is_available()


def test_plugin_discovery():
    plugin_loader.refresh_registry()
    available = plugin_loader.list_available()

    assert {"http", "playwright", "firecrawl", "firecrawl_self_hosted"} <= set(available)
    assert plugin_loader.get("http") is HttpBackend
    with pytest.raises(KeyError):
        plugin_loader.get("carrier-pigeon")


def test_build_backends_in_order():
    backends = plugin_loader.build_backends(
        ["http", "firecrawl"], Settings(), CredentialPool(["fc-secret"])
    )

    assert [b.name for b in backends] == ["http", "firecrawl"]
    assert isinstance(backends[1], FirecrawlBackend)
    assert len(backends[1].credentials) == 1
