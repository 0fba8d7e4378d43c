"""
http.py – Async HTTP client built on *aiohttp* with smart retries,
          transparent 429 / 5xx back-off and per-instance default headers.

Every failure surfaces as :class:`~bountywatch.core.errors.FetchError`
(timeout / http / network), never as a raw aiohttp exception.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

import aiohttp

from ..errors import FetchError
from ..resilience import backoff_delay

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "bounty-watch/1.0 (+https://github.com/bounty-watch/bounty-watch)"


@dataclass
class HttpResponse:
    status: int
    text: str
    headers: Mapping[str, str]


class HttpClient:
    """
    Thin wrapper over *aiohttp.ClientSession* adding:

    * global & per-request headers (keeps user-agent in one place)
    * exponential back-off **with jitter** for 429 / 5xx / network errors
    * transparent parsing of *Retry-After* header
    * async context-manager support

    ``max_retries=1`` disables retrying; the fetch orchestrator uses that for
    backends because it runs its own retry and fallback loop.
    """

    def __init__(
        self,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        default_headers: Optional[Mapping[str, str]] = None,
        name: str = "http",
    ) -> None:
        self._external_session = session
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._own_session: Optional[aiohttp.ClientSession] = None
        self._default_headers: Dict[str, str] = {"User-Agent": DEFAULT_USER_AGENT}
        self._default_headers.update(default_headers or {})
        self.name = name

    # ---------------------------------------------- #
    # Async context-manager
    async def __aenter__(self) -> "HttpClient":  # noqa: D401
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        await self.close()

    # ---------------------------------------------- #
    # Session management
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._external_session:
            return self._external_session
        if self._own_session is None or self._own_session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._own_session = aiohttp.ClientSession(timeout=timeout)
        return self._own_session

    async def close(self) -> None:
        if self._own_session and not self._own_session.closed:
            await self._own_session.close()
            self._own_session = None

    # ---------------------------------------------- #
    # Internal helpers
    @staticmethod
    def _parse_retry_after(header_val: str | None) -> Optional[float]:
        """Return seconds given a Retry-After header value."""
        if not header_val:
            return None
        header_val = header_val.strip()
        # seconds
        if header_val.isdigit():
            return float(header_val)
        # HTTP-date
        try:
            retry_at = parsedate_to_datetime(header_val).timestamp()
        except (TypeError, ValueError):
            return None
        return max(0.0, retry_at - time.time())

    def _merge_headers(self, extra: Mapping[str, str] | None) -> Dict[str, str]:
        merged: Dict[str, str] = {**self._default_headers}
        if extra:
            merged.update(extra)
        return merged

    async def _attempt(self, method: str, url: str, timeout: Optional[float], **kwargs) -> HttpResponse:
        """One request; maps every failure onto FetchError."""
        session = await self._ensure_session()
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        try:
            async with session.request(method, url, **kwargs) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    raise FetchError.http(
                        resp.status,
                        f"HTTP {resp.status} for {url}",
                        backend=self.name,
                        retry_after=self._parse_retry_after(resp.headers.get("Retry-After")),
                    )
                return HttpResponse(status=resp.status, text=body, headers=dict(resp.headers))
        except asyncio.TimeoutError as e:
            raise FetchError.timeout(f"timed out fetching {url}", backend=self.name) from e
        except aiohttp.ClientError as e:
            raise FetchError.network(f"{type(e).__name__}: {e}", backend=self.name) from e

    async def request(
        self,
        method: str,
        url: str,
        *,
        timeout: Optional[float] = None,
        retry_for_status: tuple[int, ...] = (429, 500, 502, 503, 504),
        **kwargs,
    ) -> HttpResponse:
        """Perform a request with retries; returns the buffered response."""
        kwargs["headers"] = self._merge_headers(kwargs.pop("headers", None))

        for attempt in range(1, self._max_retries + 1):
            try:
                return await self._attempt(method, url, timeout, **kwargs)
            except FetchError as e:
                retryable = e.status is None or e.status in retry_for_status
                # final attempt – re-raise
                if attempt == self._max_retries or not retryable:
                    if self._max_retries > 1:
                        logger.error("HTTP %s %s failed after %d attempts: %s", method, url, attempt, e)
                    raise

                if e.retry_after is not None:
                    sleep_seconds = min(e.retry_after, self._max_delay)
                else:
                    sleep_seconds = backoff_delay(attempt - 1, self._base_delay, self._max_delay)

                logger.warning(
                    "HTTP %s %s failed (attempt %d/%d – will retry in %.1fs): %s",
                    method,
                    url,
                    attempt,
                    self._max_retries,
                    sleep_seconds,
                    str(e).splitlines()[0],
                )
                await asyncio.sleep(sleep_seconds)

        # Should never hit here
        raise RuntimeError("Unreachable retry loop")

    # ---------------------------------------------- #
    # Public helpers
    async def get_text(self, url: str, **kwargs) -> str:
        return (await self.request("GET", url, **kwargs)).text

    async def get_json(self, url: str, **kwargs) -> Any:
        resp = await self.request("GET", url, **kwargs)
        return self._decode_json(resp, url)

    async def post_json(self, url: str, data: Any, **kwargs) -> Any:
        resp = await self.request("POST", url, json=data, **kwargs)
        if not resp.text.strip():
            return None
        return self._decode_json(resp, url)

    def _decode_json(self, resp: HttpResponse, url: str) -> Any:
        try:
            return json.loads(resp.text) if resp.text else None
        except ValueError as e:
            raise FetchError.invalid(f"non-JSON body from {url}", backend=self.name) from e

    # ---------------------------------------------- #
    # Mutators
    def update_default_headers(self, headers: Mapping[str, str]) -> None:
        self._default_headers.update(headers)
