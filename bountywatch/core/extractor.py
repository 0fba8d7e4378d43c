"""
Entity Extractor – turns RawContent into an EntitySnapshot.

Strategies are tried in order and the first non-empty result wins. The
parsing helpers shared by the strategies (amounts, titles, tags, ids) live
here as plain functions.
"""

from __future__ import annotations

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional, Sequence

from .errors import ExtractionError, FetchError
from .interfaces import ExtractionStrategy
from .models import (
    UNKNOWN_AMOUNT,
    STATUS_ALIASES,
    EntitySnapshot,
    EntityStatus,
    RawContent,
    WatchedResource,
)

logger = logging.getLogger(__name__)

ISSUE_URL_RE = re.compile(r"github\.com/([^/\s\"'<>()]+)/([^/\s\"'<>()]+)/issues/(\d+)")
AMOUNT_RE = re.compile(r"\$\s?(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)\s*([kK])?\b")

# repo name fragment -> implied tags
LANGUAGE_TAGS = {
    "zio": ["scala", "functional"],
    "react": ["javascript", "frontend"],
    "vue": ["javascript", "frontend"],
    "angular": ["javascript", "typescript", "frontend"],
    "spring": ["java", "backend"],
    "django": ["python", "backend"],
    "rails": ["ruby", "backend"],
    "express": ["javascript", "nodejs", "backend"],
}

TECH_TAGS = (
    "api", "frontend", "backend", "database", "ui", "ux", "performance",
    "security", "testing", "documentation", "bug", "feature", "enhancement",
    "typescript", "javascript", "python", "java", "scala", "rust", "go",
    "react", "vue", "angular", "svelte", "docker", "kubernetes",
)


def entity_id(owner: str, repo: str, number: Any) -> str:
    return f"{owner}/{repo}#{int(number)}"


def issue_url(owner: str, repo: str, number: Any) -> str:
    return f"https://github.com/{owner}/{repo}/issues/{int(number)}"


def parse_amount(text: Optional[str]) -> int:
    """``"$1,234.56"`` -> ``123456``; anything unparseable -> UNKNOWN_AMOUNT."""
    if not text:
        return UNKNOWN_AMOUNT
    match = AMOUNT_RE.search(text)
    if not match:
        return UNKNOWN_AMOUNT
    try:
        value = Decimal(match.group(1).replace(",", ""))
    except InvalidOperation:
        return UNKNOWN_AMOUNT
    if match.group(2):
        value *= 1000
    return int((value * 100).to_integral_value())


def major_to_minor(value: Any) -> int:
    """Numeric major-unit amount (dollars) to minor units."""
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        return UNKNOWN_AMOUNT


def normalize_status(value: Any) -> EntityStatus:
    if isinstance(value, str):
        key = value.strip().lower()
        if key in STATUS_ALIASES:
            return STATUS_ALIASES[key]
        try:
            return EntityStatus(key)
        except ValueError:
            pass
    return EntityStatus.OPEN


def clean_title(title: Optional[str]) -> str:
    if not title:
        return ""
    title = re.sub(r"^\s*\[.*?\]\s*", "", title)
    title = re.sub(r"\s*·\s*Algora.*$", "", title)
    title = re.sub(r"\s*\|\s*.*$", "", title)
    return " ".join(title.split())


def derive_tags(title: str, repo: Optional[str] = None, explicit: Iterable[str] = ()) -> frozenset:
    """Explicit tech list if given, else repo name plus keywords found in the title."""
    tags = {t.strip().lower() for t in explicit if isinstance(t, str) and t.strip()}
    if tags:
        return frozenset(tags)
    if repo:
        repo_lower = repo.lower()
        tags.add(repo_lower)
        for pattern, implied in LANGUAGE_TAGS.items():
            if pattern in repo_lower:
                tags.update(implied)
    words = set(re.findall(r"[a-z0-9]+", (title or "").lower()))
    tags.update(tag for tag in TECH_TAGS if tag in words)
    return frozenset(tags)


class EntityExtractor:
    """Runs the configured strategies in order over one resource's content."""

    def __init__(self, strategies: Sequence[ExtractionStrategy]):
        if not strategies:
            raise ValueError("at least one extraction strategy is required")
        self.strategies = list(strategies)

    async def extract(self, resource: WatchedResource, raw: RawContent) -> EntitySnapshot:
        for strategy in self.strategies:
            try:
                entities = await strategy.extract(resource, raw)
            except FetchError as e:
                logger.warning("Strategy %s failed for %s: %s", strategy.name, resource.id, e)
                continue
            if entities:
                snapshot = EntitySnapshot.from_entities(resource.id, entities, captured_at=raw.fetched_at)
                logger.debug(
                    "%s: %d entities via %s (%s backend)",
                    resource.id, len(snapshot), strategy.name, raw.backend,
                )
                return snapshot
        raise ExtractionError(
            f"no bounties resolvable for {resource.id} from {raw.backend} content"
        )

    async def close(self) -> None:
        for strategy in self.strategies:
            await strategy.close()
