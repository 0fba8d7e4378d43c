"""
Core data models for the bounty watcher.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Reward amount recorded when a bounty listing carries no parseable amount.
UNKNOWN_AMOUNT = -1


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Tier(str, Enum):
    CRITICAL = "critical"
    ACTIVE = "active"
    EMERGING = "emerging"
    BACKGROUND = "background"


TIER_ALIASES = {
    "highly-active": Tier.CRITICAL,
    "highly_active": Tier.CRITICAL,
    "platform": Tier.BACKGROUND,
}

DEFAULT_POLL_INTERVALS = {
    Tier.CRITICAL: 900,
    Tier.ACTIVE: 3600,
    Tier.EMERGING: 14400,
    Tier.BACKGROUND: 86400,
}


def _normalize_tier(value: Any) -> Any:
    if isinstance(value, Tier):
        return value
    if isinstance(value, str):
        value = value.strip().lower()
        if value in TIER_ALIASES:
            return TIER_ALIASES[value]
        try:
            return Tier(value)
        except ValueError:
            # leave it for field validation to reject
            return value
    return value


class EntityStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"


STATUS_ALIASES = {
    "inprogress": EntityStatus.IN_PROGRESS,
    "in-progress": EntityStatus.IN_PROGRESS,
    "claimed": EntityStatus.IN_PROGRESS,
    "paid": EntityStatus.COMPLETED,
}


class WatchedResource(BaseModel):
    """One bounty page being watched. Immutable for the length of a run."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    endpoint: str
    tier: Tier = Tier.ACTIVE
    poll_interval_seconds: int = Field(default=0, ge=0)
    display_name: Optional[str] = None
    active: bool = True

    @model_validator(mode="before")
    @classmethod
    def _default_interval(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            data["tier"] = _normalize_tier(data.get("tier", Tier.ACTIVE))
            if not data.get("poll_interval_seconds") and data["tier"] in DEFAULT_POLL_INTERVALS:
                data["poll_interval_seconds"] = DEFAULT_POLL_INTERVALS[data["tier"]]
        return data

    @field_validator("endpoint")
    @classmethod
    def _endpoint_is_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"endpoint must be an http(s) URL: {value!r}")
        return value


class Fingerprint(BaseModel):
    """Last known state of a resource, persisted between runs."""

    resource_id: str
    signature: str = ""
    last_checked_at: datetime
    last_changed_at: Optional[datetime] = None
    entity_count_estimate: int = 0
    snapshot_signature: Optional[str] = None

    @model_validator(mode="after")
    def _changed_not_after_checked(self) -> "Fingerprint":
        if self.last_changed_at and self.last_changed_at > self.last_checked_at:
            raise ValueError("last_changed_at must not be later than last_checked_at")
        return self


class Entity(BaseModel):
    """A single bounty."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    reward_amount_minor_units: int = UNKNOWN_AMOUNT
    currency: str = "USD"
    status: EntityStatus = EntityStatus.OPEN
    tags: FrozenSet[str] = frozenset()
    source_url: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_alias(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            return STATUS_ALIASES.get(value, value)
        return value

    def compared_fields(self) -> Dict[str, Any]:
        """Fields that make an entity count as updated when they differ."""
        return {
            "title": self.title,
            "amount": self.reward_amount_minor_units,
            "status": self.status,
            "tags": self.tags,
        }


class EntitySnapshot(BaseModel):
    """Every entity observed on one resource at one point in time."""

    resource_id: str
    entities: Dict[str, Entity] = Field(default_factory=dict)
    captured_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_entities(
        cls, resource_id: str, entities: List[Entity], captured_at: Optional[datetime] = None
    ) -> "EntitySnapshot":
        by_id: Dict[str, Entity] = {}
        for entity in entities:
            # first occurrence wins
            by_id.setdefault(entity.id, entity)
        return cls(
            resource_id=resource_id,
            entities=by_id,
            captured_at=captured_at or utcnow(),
        )

    @property
    def ids(self) -> FrozenSet[str]:
        return frozenset(self.entities)

    def __len__(self) -> int:
        return len(self.entities)

    def signature(self) -> str:
        """Stable hash over the compared fields of every entity."""
        rows = []
        for entity_id in sorted(self.entities):
            fields = self.entities[entity_id].compared_fields()
            rows.append([
                entity_id,
                fields["title"],
                fields["amount"],
                fields["status"].value,
                sorted(fields["tags"]),
            ])
        digest = hashlib.sha256(json.dumps(rows, ensure_ascii=False).encode("utf-8"))
        return digest.hexdigest()[:16]


class EntityUpdate(BaseModel):
    old: Entity
    new: Entity
    fields: List[str]


class ResourceDiff(BaseModel):
    """Result of a full-mode detection for a single resource."""

    resource_id: str
    added: List[Entity] = Field(default_factory=list)
    removed: List[Entity] = Field(default_factory=list)
    updated: List[EntityUpdate] = Field(default_factory=list)
    is_first_run: bool = False
    suspected_reidentification: bool = False

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.updated)


class ChangeSet(BaseModel):
    """Run-level semantic difference handed to the output stage."""

    model_config = ConfigDict(frozen=True)

    added: List[Entity] = Field(default_factory=list)
    removed: List[Entity] = Field(default_factory=list)
    updated: List[EntityUpdate] = Field(default_factory=list)
    resources_added: List[str] = Field(default_factory=list)
    resources_removed: List[str] = Field(default_factory=list)
    first_run_resources: List[str] = Field(default_factory=list)
    reidentified_resources: List[str] = Field(default_factory=list)
    summary: str = "No changes detected"

    @property
    def has_changes(self) -> bool:
        return bool(
            self.added
            or self.removed
            or self.updated
            or self.resources_added
            or self.resources_removed
        )


class PendingChangeBatch(BaseModel):
    """Deduplicated set of resources flagged by push signals."""

    model_config = ConfigDict(frozen=True)

    resource_ids: FrozenSet[str]
    window_opened_at: datetime
    emitted_at: datetime = Field(default_factory=utcnow)

    @property
    def size(self) -> int:
        return len(self.resource_ids)


class RawContent(BaseModel):
    """Content retrieved for a resource by one backend."""

    resource_id: str
    endpoint: str
    backend: str
    html: Optional[str] = None
    markdown: Optional[str] = None
    structured: Optional[Any] = None
    status_code: Optional[int] = None
    fetched_at: datetime = Field(default_factory=utcnow)

    @property
    def text(self) -> str:
        """Best available textual body, markup preferred."""
        return self.html or self.markdown or ""


class ScanKind(str, Enum):
    TARGETED = "targeted"
    FULL = "full"


class OutcomeState(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FIRST_RUN = "first_run"
    ERRORED = "errored"
    SKIPPED = "skipped"


class ResourceOutcome(BaseModel):
    resource_id: str
    state: OutcomeState
    error: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    entity_count: int = 0
    backend: Optional[str] = None


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"


EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.FATAL: 1,
    RunStatus.PARTIAL: 2,
}


class RunSummary(BaseModel):
    """Everything a run produced; serialized as the diff output document."""

    run_id: str
    kind: ScanKind
    status: RunStatus
    started_at: datetime
    finished_at: datetime = Field(default_factory=utcnow)
    change_set: ChangeSet = Field(default_factory=ChangeSet)
    outcomes: Dict[str, ResourceOutcome] = Field(default_factory=dict)
    fingerprints: Dict[str, Fingerprint] = Field(default_factory=dict)
    error: Optional[str] = None

    def ids_in(self, state: OutcomeState) -> List[str]:
        return sorted(rid for rid, o in self.outcomes.items() if o.state == state)

    def counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in OutcomeState}
        for outcome in self.outcomes.values():
            counts[outcome.state.value] += 1
        return counts

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]
