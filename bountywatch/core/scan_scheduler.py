"""
Scan Scheduler – decides between a full and a targeted scan for each run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Mapping, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from croniter import croniter

from .errors import ConfigError
from .models import Fingerprint, ScanKind, WatchedResource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanPlan:
    kind: ScanKind
    # resources that get a full fetch + extraction + diff
    full_scan: Tuple[str, ...] = ()
    # resources that get a cheap signature check first (targeted runs only)
    cheap_poll: Tuple[str, ...] = ()
    reason: str = ""
    retire: Tuple[str, ...] = ()

    @property
    def resource_ids(self) -> Tuple[str, ...]:
        return tuple(sorted(set(self.full_scan) | set(self.cheap_poll)))


class ScanPolicy:
    """Full scan when forced, never run, or the calendar trigger fired; else targeted."""

    def __init__(self, full_scan_cron: str = "0 4 * * 0", timezone: str = "UTC"):
        if not croniter.is_valid(full_scan_cron):
            raise ConfigError(f"Invalid cron expression: {full_scan_cron}")
        self.full_scan_cron = full_scan_cron
        self.tz = ZoneInfo(timezone)

    def next_full_scan_after(self, when: datetime) -> datetime:
        return croniter(self.full_scan_cron, when.astimezone(self.tz)).get_next(datetime)

    def full_scan_due(self, last_full_scan_at: Optional[datetime], now: datetime) -> bool:
        if last_full_scan_at is None:
            return True
        return self.next_full_scan_after(last_full_scan_at) <= now

    @staticmethod
    def poll_due(resource: WatchedResource, fingerprint: Optional[Fingerprint], now: datetime) -> bool:
        if fingerprint is None:
            return True
        return fingerprint.last_checked_at + timedelta(seconds=resource.poll_interval_seconds) <= now

    def plan(
        self,
        resources: Sequence[WatchedResource],
        fingerprints: Mapping[str, Fingerprint],
        pending: Iterable[str],
        last_full_scan_at: Optional[datetime],
        now: datetime,
        force_full: bool = False,
    ) -> ScanPlan:
        active = {r.id: r for r in resources if r.active}
        pending = set(pending)

        unknown = pending - active.keys()
        if unknown:
            logger.warning("Ignoring signals for unknown or inactive resources: %s", ", ".join(sorted(unknown)))

        if force_full or self.full_scan_due(last_full_scan_at, now):
            if force_full:
                reason = "forced"
            elif last_full_scan_at is None:
                reason = "no full scan recorded"
            else:
                reason = f"calendar trigger {self.full_scan_cron!r} fired since {last_full_scan_at.isoformat()}"
            # stored state for resources no longer configured is retired by full scans only
            configured = {r.id for r in resources}
            retire = tuple(sorted(set(fingerprints) - configured))
            return ScanPlan(ScanKind.FULL, full_scan=tuple(sorted(active)), reason=reason, retire=retire)

        flagged = pending & active.keys()
        cheap = [
            rid for rid, r in sorted(active.items())
            if rid not in flagged and self.poll_due(r, fingerprints.get(rid), now)
        ]
        return ScanPlan(
            ScanKind.TARGETED,
            full_scan=tuple(sorted(flagged)),
            cheap_poll=tuple(cheap),
            reason=f"{len(flagged)} signalled, {len(cheap)} due for polling",
        )
