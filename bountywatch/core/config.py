"""
Configuration loading: the watched resource list plus settings sections.

The file is YAML (JSON is valid YAML, so ``.json`` files load the same way):

    resources:
      - id: acme
        endpoint: https://algora.io/acme/bounties?status=open
        tier: critical
    fetch:
      backends: [firecrawl_self_hosted, firecrawl, http]
      workers: 3

The legacy ``organizations:`` list (``handle`` / ``url`` / ``scrape_interval``)
is accepted in place of ``resources:``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError
from .models import WatchedResource

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://algora.io/{id}/bounties?status=open"


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class FetchSettings(_Section):
    backends: List[str] = Field(default_factory=lambda: ["firecrawl_self_hosted", "firecrawl", "http"])
    # used for cheap polling; must be lightweight static-html backends
    cheap_backends: List[str] = Field(default_factory=lambda: ["http"])
    attempts_per_backend: int = Field(default=2, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    workers: int = Field(default=3, ge=1)
    dispatch_delay: float = Field(default=0.5, ge=0)
    circuit_threshold: int = Field(default=6, ge=1)
    run_deadline_seconds: Optional[float] = Field(default=1800.0, gt=0)


class FirecrawlSettings(_Section):
    self_hosted_url: str = "http://localhost:3002"
    external_url: str = "https://api.firecrawl.dev"
    wait_for_ms: int = 2000
    credential_cooldown: float = 60.0
    health_timeout: float = 5.0


class PlaywrightSettings(_Section):
    headless: bool = True
    browser_type: str = "chromium"
    wait_for_selector: Optional[str] = None
    stealth: bool = True


class AlgoraSettings(_Section):
    api_url: str = "https://console.algora.io/api/trpc/bounty.list"
    page_size: int = 100
    max_pages: int = 20
    enabled: bool = True


class CoalescerSettings(_Section):
    quiet_window_seconds: float = Field(default=120.0, gt=0)
    max_window_seconds: float = Field(default=600.0, gt=0)
    poll_interval_seconds: int = Field(default=15, ge=1)

    @model_validator(mode="after")
    def _max_covers_quiet(self) -> "CoalescerSettings":
        if self.max_window_seconds < self.quiet_window_seconds:
            raise ValueError("max_window_seconds must be at least quiet_window_seconds")
        return self


class ScanSettings(_Section):
    full_scan_cron: str = "0 4 * * 0"
    targeted_interval_minutes: int = Field(default=15, ge=1)
    timezone: str = "UTC"


class StoreSettings(_Section):
    path: str = "data/bountywatch.db"


class OutputSettings(_Section):
    dir: str = "output"


class DispatchSettings(_Section):
    url: Optional[str] = None
    event_type: str = "bounty_changed"
    token_env: str = "GITHUB_TOKEN"
    max_requeues: int = Field(default=3, ge=0)
    timeout: float = 10.0


class WebhookSettings(_Section):
    host: str = "0.0.0.0"
    port: int = 8080
    secret_env: str = "WEBHOOK_SECRET"
    url_pattern: str = r"algora\.io/([^/?#]+)/bounties"


class Settings(_Section):
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    firecrawl: FirecrawlSettings = Field(default_factory=FirecrawlSettings)
    playwright: PlaywrightSettings = Field(default_factory=PlaywrightSettings)
    algora: AlgoraSettings = Field(default_factory=AlgoraSettings)
    coalescer: CoalescerSettings = Field(default_factory=CoalescerSettings)
    scan: ScanSettings = Field(default_factory=ScanSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)
    dispatch: DispatchSettings = Field(default_factory=DispatchSettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)


class WatchConfig(BaseModel):
    resources: List[WatchedResource]
    settings: Settings = Field(default_factory=Settings)

    @property
    def active_resources(self) -> List[WatchedResource]:
        return [r for r in self.resources if r.active]

    def by_id(self) -> Dict[str, WatchedResource]:
        return {r.id: r for r in self.resources}


def _normalize_entry(entry: Dict[str, Any]) -> Dict[str, Any]:
    """Map legacy organization keys onto WatchedResource fields."""
    data = dict(entry)
    if "id" not in data and "handle" in data:
        data["id"] = data.pop("handle")
    if "endpoint" not in data and "url" in data:
        data["endpoint"] = data.pop("url")
    if "poll_interval_seconds" not in data and "scrape_interval" in data:
        data["poll_interval_seconds"] = data.pop("scrape_interval")
    if "id" in data and "endpoint" not in data:
        data["endpoint"] = DEFAULT_ENDPOINT.format(id=data["id"])
    return data


def parse_resources(entries: Any) -> List[WatchedResource]:
    """Validate entries one by one. Malformed entries are logged and skipped."""
    if not isinstance(entries, list):
        raise ConfigError("resource list must be a list")

    resources: List[WatchedResource] = []
    seen = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.warning("Skipping resource #%d: expected a mapping, got %s", index, type(entry).__name__)
            continue
        try:
            resource = WatchedResource(**_normalize_entry(entry))
        except (ValidationError, TypeError) as e:
            logger.warning("Skipping malformed resource #%d (%s): %s", index, entry.get("id") or entry.get("handle"), e)
            continue
        if resource.id in seen:
            logger.warning("Duplicate resource id %r at #%d – keeping the first", resource.id, index)
            continue
        seen.add(resource.id)
        resources.append(resource)
    return resources


def load_config(path: str) -> WatchConfig:
    """Load resources and settings from ``path``. Raises ConfigError."""
    try:
        with Path(path).open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must be a mapping")

    entries = data.get("resources", data.get("organizations"))
    if entries is None:
        raise ConfigError(f"no 'resources' list in {path}")
    resources = parse_resources(entries)

    sections = {
        k: v for k, v in data.items()
        if k not in ("resources", "organizations") and v is not None
    }
    try:
        settings = Settings(**sections)
    except ValidationError as e:
        raise ConfigError(f"invalid settings in {path}: {e}") from e

    logger.info(
        "Loaded %d resources (%d active) from %s",
        len(resources),
        sum(1 for r in resources if r.active),
        path,
    )
    return WatchConfig(resources=resources, settings=settings)
