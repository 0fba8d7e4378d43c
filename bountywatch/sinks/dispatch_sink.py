"""
Dispatch sink – forwards coalesced change batches to a downstream job runner.

The payload follows GitHub's ``repository_dispatch`` shape:

    {"event_type": "bounty_changed",
     "client_payload": {"changed_resource_ids": [...], "timestamp": "...", "batch_size": 2}}
"""

import logging
from typing import Optional

from ..core.config import DispatchSettings
from ..core.infra.http import HttpClient
from ..core.interfaces import Sink
from ..core.models import PendingChangeBatch, utcnow


logger = logging.getLogger(__name__)


class DispatchSink(Sink):
    """POSTs change batches; raises FetchError so the driver can requeue."""

    name = "DispatchSink"

    def __init__(
        self,
        url: str,
        *,
        event_type: str = "bounty_changed",
        token: Optional[str] = None,
        timeout: float = 10.0,
        http: Optional[HttpClient] = None,
    ):
        self.url = url
        self.event_type = event_type
        headers = {"Accept": "application/vnd.github.v3+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        # the coalescer driver owns retrying, so one attempt per delivery
        self.http = http or HttpClient(timeout=timeout, max_retries=1, name="dispatch")
        self.http.update_default_headers(headers)

    @classmethod
    def from_settings(cls, settings: DispatchSettings, token: Optional[str]) -> "DispatchSink":
        return cls(settings.url, event_type=settings.event_type, token=token, timeout=settings.timeout)

    def payload(self, batch: PendingChangeBatch) -> dict:
        return {
            "event_type": self.event_type,
            "client_payload": {
                "changed_resource_ids": sorted(batch.resource_ids),
                "timestamp": utcnow().isoformat(),
                "batch_size": batch.size,
            },
        }

    async def handle(self, item: PendingChangeBatch) -> None:
        await self.http.post_json(self.url, self.payload(item))
        logger.info("Dispatched %s for %d resources: %s", self.event_type, item.size, ", ".join(sorted(item.resource_ids)))

    async def __call__(self, batch: PendingChangeBatch) -> None:
        await self.handle(batch)

    async def close(self) -> None:
        await self.http.close()
