"""
webhook.py – aiohttp web app receiving "page changed" notifications.

    POST /webhook   {"watch_url": "https://algora.io/acme/bounties?status=open"}
    GET  /health    coalescer state

Payloads are mapped to a resource id with a regex; anything that cannot be
mapped to a known resource is rejected with a 4xx, never dropped silently.
"""

from __future__ import annotations

import hmac
import json
import logging
import re
from typing import Callable, Collection, Optional

from aiohttp import web

from ..coalescer import EventCoalescer

logger = logging.getLogger(__name__)

URL_KEYS = ("watch_url", "url", "resource_url", "message")


class WebhookHandler:
    def __init__(
        self,
        coalescer: EventCoalescer,
        known_ids: Callable[[], Collection[str]],
        *,
        url_pattern: str = r"algora\.io/([^/?#]+)/bounties",
        secret: Optional[str] = None,
    ):
        self.coalescer = coalescer
        self.known_ids = known_ids
        self.pattern = re.compile(url_pattern)
        self.secret = secret

    def resource_id_from(self, payload: object) -> Optional[str]:
        if not isinstance(payload, dict):
            return None
        for key in URL_KEYS:
            value = payload.get(key)
            if isinstance(value, str):
                match = self.pattern.search(value)
                if match:
                    return match.group(1)
        return None

    @staticmethod
    def _error(status: int, message: str) -> web.Response:
        return web.json_response({"success": False, "error": message}, status=status)

    async def handle_webhook(self, request: web.Request) -> web.Response:
        if self.secret:
            provided = request.headers.get("X-Webhook-Secret", "")
            if not hmac.compare_digest(provided.encode(), self.secret.encode()):
                logger.warning("Rejected webhook from %s: bad secret", request.remote)
                return self._error(401, "unauthorized")

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return self._error(400, "body is not valid JSON")

        resource_id = self.resource_id_from(payload)
        if resource_id is None:
            logger.warning("Webhook payload without a recognizable resource URL: %.200s", payload)
            return self._error(400, "no resource URL matching the configured pattern")
        if resource_id not in self.known_ids():
            logger.warning("Webhook for unknown resource %s", resource_id)
            return self._error(404, f"unknown resource: {resource_id}")

        self.coalescer.signal(resource_id)
        due = self.coalescer.seconds_until_due() or 0.0
        detected_at = payload.get("timestamp") if isinstance(payload, dict) else None
        logger.info("Change signal for %s (detected at %s)", resource_id, detected_at or "unknown")
        return web.json_response(
            {
                "success": True,
                "resource": resource_id,
                "queued": sorted(self.coalescer.pending),
                "will_trigger_in": f"{due:.0f}s",
            },
            status=202,
        )

    async def handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "coalescer": self.coalescer.status()})


def create_app(handler: WebhookHandler) -> web.Application:
    app = web.Application()
    app.router.add_post("/webhook", handler.handle_webhook)
    app.router.add_get("/health", handler.handle_health)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start serving ``app``; the caller must ``await runner.cleanup()``."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Webhook endpoint listening on http://%s:%d/webhook", host, port)
    return runner
