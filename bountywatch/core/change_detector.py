"""
Change Detector – cheap content signatures and full entity diffs.

Neither mode writes anything: both return the fingerprint the caller should
persist if, and only if, the rest of the resource's processing succeeds.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from .models import (
    ChangeSet,
    Entity,
    EntitySnapshot,
    EntityUpdate,
    Fingerprint,
    ResourceDiff,
)

logger = logging.getLogger(__name__)

DOLLAR_RE = re.compile(r"\$\d+")
BOUNTY_CARD = 'data-testid="bounty-card"'


def cheap_signature(content: str) -> str:
    """Hash of marker counts plus length; stable across cosmetic page churn."""
    lowered = content.lower()
    markers = "-".join(
        str(n) for n in (lowered.count("bounty"), len(DOLLAR_RE.findall(content)), lowered.count("open"))
    )
    return hashlib.sha256(f"{markers}{len(content)}".encode("utf-8")).hexdigest()[:16]


def estimate_entity_count(content: str) -> int:
    cards = content.count(BOUNTY_CARD)
    if cards:
        return cards
    return len(DOLLAR_RE.findall(content))


@dataclass(frozen=True)
class CheapCheck:
    resource_id: str
    signature: str
    previous_signature: Optional[str]
    entity_count_estimate: int

    @property
    def maybe_changed(self) -> bool:
        return self.previous_signature is None or self.signature != self.previous_signature


def _changed_fields(old: Entity, new: Entity) -> List[str]:
    before, after = old.compared_fields(), new.compared_fields()
    return [name for name in before if before[name] != after[name]]


class ChangeDetector:
    """Stateless; safe to share between concurrent resources."""

    # ------------------------------------------------------------------ #
    # Cheap mode
    def check(
        self,
        resource_id: str,
        previous: Optional[Fingerprint],
        content: str,
        now: datetime,
    ) -> Tuple[CheapCheck, Fingerprint]:
        """Compare a content signature against the stored one.

        A mismatch means "maybe changed" and nothing more; entity counts and
        ``last_changed_at`` are left to full mode.
        """
        result = CheapCheck(
            resource_id=resource_id,
            signature=cheap_signature(content),
            previous_signature=previous.signature if previous and previous.signature else None,
            entity_count_estimate=estimate_entity_count(content),
        )
        if previous is None:
            fingerprint = Fingerprint(
                resource_id=resource_id,
                signature=result.signature,
                last_checked_at=now,
                entity_count_estimate=result.entity_count_estimate,
            )
        else:
            fingerprint = previous.model_copy(
                update={"signature": result.signature, "last_checked_at": now}
            )
        return result, fingerprint

    # ------------------------------------------------------------------ #
    # Full mode
    def detect(
        self,
        resource_id: str,
        previous_fp: Optional[Fingerprint],
        previous_snapshot: Optional[EntitySnapshot],
        new_snapshot: EntitySnapshot,
        now: datetime,
        *,
        signature: Optional[str] = None,
    ) -> Tuple[ResourceDiff, Fingerprint]:
        """Diff two snapshots by entity id.

        With no previous fingerprint (or one that never recorded a full
        snapshot) every entity is reported as added and ``is_first_run`` is
        set. ``signature`` replaces the stored cheap signature when given.
        """
        first_run = previous_fp is None or (
            previous_snapshot is None and previous_fp.snapshot_signature is None
        )
        old = previous_snapshot.entities if previous_snapshot is not None and not first_run else {}
        new = new_snapshot.entities

        added = [new[i] for i in sorted(new.keys() - old.keys())]
        removed = [old[i] for i in sorted(old.keys() - new.keys())]
        updated = []
        for entity_id in sorted(old.keys() & new.keys()):
            fields = _changed_fields(old[entity_id], new[entity_id])
            if fields:
                updated.append(EntityUpdate(old=old[entity_id], new=new[entity_id], fields=fields))

        reidentified = bool(old) and bool(new) and not (old.keys() & new.keys())
        if reidentified:
            logger.warning(
                "%s: no entity ids overlap with the previous snapshot (%d -> %d); id scheme may have changed",
                resource_id, len(old), len(new),
            )

        diff = ResourceDiff(
            resource_id=resource_id,
            added=added,
            removed=removed,
            updated=updated,
            is_first_run=first_run,
            suspected_reidentification=reidentified,
        )

        if signature is None:
            signature = previous_fp.signature if previous_fp else ""
        previous_changed = previous_fp.last_changed_at if previous_fp else None
        fingerprint = Fingerprint(
            resource_id=resource_id,
            signature=signature,
            last_checked_at=now,
            last_changed_at=now if diff.has_changes else previous_changed,
            entity_count_estimate=len(new_snapshot),
            snapshot_signature=new_snapshot.signature(),
        )
        return diff, fingerprint

    def retired_diff(self, resource_id: str, previous_snapshot: Optional[EntitySnapshot]) -> ResourceDiff:
        """Diff for a resource that left the watched set: everything removed."""
        entities = previous_snapshot.entities if previous_snapshot else {}
        return ResourceDiff(
            resource_id=resource_id,
            removed=[entities[i] for i in sorted(entities)],
        )

    # ------------------------------------------------------------------ #
    # Run level
    @staticmethod
    def summarize(
        added: int, removed: int, updated: int, resources_added: int, resources_removed: int
    ) -> str:
        parts = []
        if added:
            parts.append(f"{added} bounties added")
        if removed:
            parts.append(f"{removed} bounties removed")
        if updated:
            parts.append(f"{updated} bounties updated")
        if resources_added:
            parts.append(f"{resources_added} organizations added")
        if resources_removed:
            parts.append(f"{resources_removed} organizations removed")
        return ", ".join(parts) if parts else "No changes detected"

    def merge(
        self,
        diffs: Iterable[ResourceDiff],
        resources_added: Sequence[str] = (),
        resources_removed: Sequence[str] = (),
    ) -> ChangeSet:
        diffs = sorted(diffs, key=lambda d: d.resource_id)
        added = [e for d in diffs for e in d.added]
        removed = [e for d in diffs for e in d.removed]
        updated = [u for d in diffs for u in d.updated]
        return ChangeSet(
            added=added,
            removed=removed,
            updated=updated,
            resources_added=sorted(resources_added),
            resources_removed=sorted(resources_removed),
            first_run_resources=[d.resource_id for d in diffs if d.is_first_run],
            reidentified_resources=[d.resource_id for d in diffs if d.suspected_reidentification],
            summary=self.summarize(
                len(added), len(removed), len(updated), len(resources_added), len(resources_removed)
            ),
        )
