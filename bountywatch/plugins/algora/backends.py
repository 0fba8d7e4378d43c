"""
Content backends for Algora bounty pages.

Each class performs a single attempt and raises FetchError on failure. They
are registered by ``name`` and listed in order under ``fetch.backends``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Any, Dict, Optional

from bountywatch.core.config import Settings
from bountywatch.core.errors import FetchError
from bountywatch.core.infra.http import HttpClient
from bountywatch.core.infra.sel import PlaywrightClient, PlaywrightError, PlaywrightTimeout
from bountywatch.core.interfaces import Backend, Capabilities
from bountywatch.core.models import RawContent
from bountywatch.core.resilience import CredentialPool


logger = logging.getLogger(__name__)

BROWSER_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

SCRAPE_TAGS = {
    "includeTags": ["h1", "h2", "h3", "h4", "h5", "h6", "p", "a", "div", "span"],
    "excludeTags": ["script", "style", "nav", "footer", "aside"],
}

BOUNTY_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "bounties": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "amount": {"type": "string"},
                    "issue_url": {"type": "string"},
                    "status": {"type": "string"},
                    "tech": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["issue_url"],
            },
        }
    },
}


class HttpBackend(Backend):
    """Plain GET of the page; cheap, but sees only server-rendered markup."""

    name = "http"
    capabilities = Capabilities(fetches_static_html=True)

    def __init__(self, http: Optional[HttpClient] = None):
        # a single attempt; retries belong to the orchestrator
        self.http = http or HttpClient(max_retries=1, default_headers=BROWSER_HEADERS, name=self.name)

    async def fetch(self, endpoint: str, timeout: float, resource_id: str = "") -> RawContent:
        resp = await self.http.request("GET", endpoint, timeout=timeout)
        if not resp.text.strip():
            raise FetchError.invalid(f"empty body from {endpoint}", backend=self.name)
        return RawContent(
            resource_id=resource_id,
            endpoint=endpoint,
            backend=self.name,
            html=resp.text,
            status_code=resp.status,
        )

    async def close(self) -> None:
        await self.http.close()


class PlaywrightBackend(Backend):
    """Rendered DOM capture in headless Chromium, plus ``__NEXT_DATA__``."""

    name = "playwright"
    capabilities = Capabilities(renders_client_side_scripts=True, extracts_structured_data=True)

    def __init__(self, client: Optional[PlaywrightClient] = None, wait_for_selector: Optional[str] = None):
        self.client = client or PlaywrightClient(stealth=True)
        self.wait_for_selector = wait_for_selector

    @classmethod
    def from_settings(cls, settings: Settings, credentials: Optional[CredentialPool] = None) -> "PlaywrightBackend":
        pw = settings.playwright
        client = PlaywrightClient(
            headless=pw.headless,
            browser_type=pw.browser_type,
            stealth=pw.stealth,
            timeout=settings.fetch.timeout * 1000,
        )
        return cls(client, wait_for_selector=pw.wait_for_selector)

    async def fetch(self, endpoint: str, timeout: float, resource_id: str = "") -> RawContent:
        try:
            page = await asyncio.wait_for(
                self.client.render(
                    endpoint,
                    wait_for_selector=self.wait_for_selector,
                    timeout=timeout * 1000,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, PlaywrightTimeout) as e:
            raise FetchError.timeout(f"render of {endpoint} timed out", backend=self.name) from e
        except PlaywrightError as e:
            raise FetchError.network(str(e).splitlines()[0], backend=self.name) from e

        if page.status is not None and page.status >= 400:
            raise FetchError.http(page.status, f"HTTP {page.status} for {endpoint}", backend=self.name)
        if not page.html:
            raise FetchError.invalid(f"empty render of {endpoint}", backend=self.name)
        return RawContent(
            resource_id=resource_id,
            endpoint=endpoint,
            backend=self.name,
            html=page.html,
            structured=page.next_data,
            status_code=page.status,
        )

    async def close(self) -> None:
        await self.client.stop()


class _FirecrawlBase(Backend):
    """Shared request/response handling for Firecrawl's ``/v1/scrape``."""

    formats = ["markdown", "html"]

    def __init__(self, base_url: str, *, wait_for_ms: int = 2000, http: Optional[HttpClient] = None):
        self.base_url = base_url.rstrip("/")
        self.wait_for_ms = wait_for_ms
        self.http = http or HttpClient(max_retries=1, name=self.name)

    def _payload(self, endpoint: str, timeout: float) -> Dict[str, Any]:
        return {
            "url": endpoint,
            "formats": list(self.formats),
            "onlyMainContent": True,
            "waitFor": self.wait_for_ms,
            "timeout": int(timeout * 1000),
            **SCRAPE_TAGS,
        }

    async def _scrape(self, endpoint: str, timeout: float, headers: Dict[str, str], resource_id: str) -> RawContent:
        body = await self.http.post_json(
            f"{self.base_url}/v1/scrape",
            self._payload(endpoint, timeout),
            headers=headers,
            timeout=timeout,
        )
        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            raise FetchError.invalid(f"scrape unsuccessful: {error or 'no data'}", backend=self.name)

        data = body.get("data") or {}
        markdown, html = data.get("markdown"), data.get("html")
        if not (markdown or html):
            raise FetchError.invalid(f"empty scrape result for {endpoint}", backend=self.name)

        status = (data.get("metadata") or {}).get("statusCode")
        if isinstance(status, int) and status >= 400:
            raise FetchError.http(status, f"upstream HTTP {status} for {endpoint}", backend=self.name)
        return RawContent(
            resource_id=resource_id,
            endpoint=endpoint,
            backend=self.name,
            html=html,
            markdown=markdown,
            structured=data.get("json"),
            status_code=status,
        )

    async def close(self) -> None:
        await self.http.close()


class FirecrawlSelfHostedBackend(_FirecrawlBase):
    """Self-hosted Firecrawl instance; skipped while its health probe fails."""

    name = "firecrawl_self_hosted"
    capabilities = Capabilities(renders_client_side_scripts=True)
    HEALTH_TTL = 60.0

    def __init__(
        self,
        base_url: str = "http://localhost:3002",
        *,
        secret: Optional[str] = None,
        wait_for_ms: int = 2000,
        health_timeout: float = 5.0,
        http: Optional[HttpClient] = None,
    ):
        super().__init__(base_url, wait_for_ms=wait_for_ms, http=http)
        self.secret = secret
        self.health_timeout = health_timeout
        self._health: Optional[bool] = None
        self._health_checked_at = 0.0
        self._health_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, credentials: Optional[CredentialPool] = None) -> "FirecrawlSelfHostedBackend":
        fc = settings.firecrawl
        return cls(
            fc.self_hosted_url,
            secret=os.getenv("FIRECRAWL_SELF_HOSTED_SECRET") or None,
            wait_for_ms=fc.wait_for_ms,
            health_timeout=fc.health_timeout,
        )

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret}"} if self.secret else {}

    async def is_available(self) -> bool:
        async with self._health_lock:
            if self._health is not None and time.monotonic() - self._health_checked_at < self.HEALTH_TTL:
                return self._health
            try:
                await self.http.request(
                    "GET", f"{self.base_url}/health", timeout=self.health_timeout, headers=self._headers()
                )
                healthy = True
            except FetchError as e:
                logger.warning("Self-hosted Firecrawl at %s unhealthy: %s", self.base_url, e)
                healthy = False
            self._health, self._health_checked_at = healthy, time.monotonic()
            return healthy

    async def fetch(self, endpoint: str, timeout: float, resource_id: str = "") -> RawContent:
        return await self._scrape(endpoint, timeout, self._headers(), resource_id)


class FirecrawlBackend(_FirecrawlBase):
    """Metered Firecrawl API with round-robin API keys and LLM extraction."""

    name = "firecrawl"
    capabilities = Capabilities(
        renders_client_side_scripts=True, extracts_structured_data=True, metered=True
    )
    formats = ["markdown", "html", "json"]

    def __init__(
        self,
        credentials: CredentialPool,
        base_url: str = "https://api.firecrawl.dev",
        *,
        wait_for_ms: int = 2000,
        http: Optional[HttpClient] = None,
    ):
        super().__init__(base_url, wait_for_ms=wait_for_ms, http=http)
        self.credentials = credentials

    @classmethod
    def from_settings(cls, settings: Settings, credentials: Optional[CredentialPool] = None) -> "FirecrawlBackend":
        fc = settings.firecrawl
        pool = credentials if credentials is not None else CredentialPool.from_env(cooldown=fc.credential_cooldown)
        return cls(pool, fc.external_url, wait_for_ms=fc.wait_for_ms)

    def _payload(self, endpoint: str, timeout: float) -> Dict[str, Any]:
        payload = super()._payload(endpoint, timeout)
        payload["jsonOptions"] = {
            "schema": BOUNTY_SCHEMA,
            "prompt": "Extract every bounty listed on the page with its GitHub issue URL, title, reward amount, status and tech tags.",
        }
        return payload

    async def is_available(self) -> bool:
        return len(self.credentials) > 0

    async def fetch(self, endpoint: str, timeout: float, resource_id: str = "") -> RawContent:
        credential = self.credentials.next()
        if credential is None:
            raise FetchError.invalid("no Firecrawl API keys configured", backend=self.name)
        try:
            return await self._scrape(
                endpoint, timeout, {"Authorization": f"Bearer {credential.secret}"}, resource_id
            )
        except FetchError as e:
            if e.rate_limited:
                self.credentials.mark_rate_limited(credential, e.retry_after)
            raise
