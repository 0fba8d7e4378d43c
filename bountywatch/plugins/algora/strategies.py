"""
Extraction strategies for Algora bounty pages.

1. ``StructuredDataStrategy`` – embedded JSON (``__NEXT_DATA__`` or the
   Firecrawl ``json`` format), walked for bounty-shaped records.
2. ``IssueLinkStrategy`` – GitHub issue links in HTML or markdown, with the
   title, amount and tags harvested from the surrounding block.
3. ``AlgoraApiStrategy`` – the public bounty API, paginated by cursor.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional

from bs4 import BeautifulSoup
from bs4.element import Tag
from pydantic import ValidationError

from bountywatch.core.config import AlgoraSettings
from bountywatch.core.extractor import (
    AMOUNT_RE,
    ISSUE_URL_RE,
    clean_title,
    derive_tags,
    entity_id,
    issue_url,
    major_to_minor,
    normalize_status,
    parse_amount,
)
from bountywatch.core.infra.http import HttpClient
from bountywatch.core.interfaces import ExtractionStrategy
from bountywatch.core.models import UNKNOWN_AMOUNT, Entity, RawContent, WatchedResource


logger = logging.getLogger(__name__)

NEXT_DATA_RE = re.compile(
    r'<script[^>]+id=["\']__NEXT_DATA__["\'][^>]*>(.*?)</script>', re.DOTALL | re.IGNORECASE
)
# parent levels searched for a bounty's enclosing block
MAX_BLOCK_DEPTH = 6
MARKDOWN_CONTEXT_LINES = 5


def _first_issue_match(*candidates: Any) -> Optional[re.Match]:
    for candidate in candidates:
        if isinstance(candidate, str):
            match = ISSUE_URL_RE.search(candidate)
            if match:
                return match
    return None


def entity_from_record(record: Dict[str, Any]) -> Optional[Entity]:
    """Build an Entity from an Algora-API-like or LLM-extracted dict.

    Returns None when the record carries no stable issue reference.
    """
    task = record.get("task") if isinstance(record.get("task"), dict) else {}
    source = ((task.get("source") or {}).get("data") or {}) if isinstance(task.get("source"), dict) else {}

    owner, repo, number = task.get("repo_owner"), task.get("repo_name"), task.get("number")
    if not (owner and repo and number is not None):
        match = _first_issue_match(
            task.get("url"),
            source.get("html_url"),
            record.get("issue_url"),
            record.get("url"),
            record.get("html_url"),
        )
        if not match:
            return None
        owner, repo, number = match.groups()

    try:
        eid = entity_id(owner, repo, number)
    except (TypeError, ValueError):
        return None

    reward = record.get("reward") if isinstance(record.get("reward"), dict) else {}
    if isinstance(reward.get("amount"), (int, float)):
        amount = int(reward["amount"])
    elif record.get("reward_formatted"):
        amount = parse_amount(str(record["reward_formatted"]))
    elif isinstance(record.get("amount"), (int, float)):
        amount = major_to_minor(record["amount"])
    else:
        amount = parse_amount(str(record.get("amount") or ""))

    title = clean_title(task.get("title") or record.get("title") or source.get("title"))
    explicit = list(record.get("tech") or []) + list(task.get("tech") or [])
    try:
        return Entity(
            id=eid,
            title=title or eid,
            reward_amount_minor_units=amount,
            currency=str(reward.get("currency") or "USD").upper(),
            status=normalize_status(record.get("status") or task.get("status")),
            tags=derive_tags(title, repo, explicit),
            source_url=issue_url(owner, repo, number),
            created_at=record.get("created_at"),
            updated_at=record.get("updated_at"),
        )
    except ValidationError as e:
        logger.debug("Dropping malformed record %s: %s", eid, e)
        return None


def _looks_like_bounty(node: Dict[str, Any]) -> bool:
    if isinstance(node.get("task"), dict):
        return True
    return any(
        isinstance(node.get(key), str) and ISSUE_URL_RE.search(node[key])
        for key in ("issue_url", "url", "html_url")
    ) and any(key in node for key in ("reward", "reward_formatted", "amount", "title"))


def walk_records(node: Any) -> Iterator[Dict[str, Any]]:
    """Depth-first walk yielding bounty-shaped dicts (not descending into them)."""
    if isinstance(node, dict):
        if _looks_like_bounty(node):
            yield node
            return
        for value in node.values():
            yield from walk_records(value)
    elif isinstance(node, list):
        for value in node:
            yield from walk_records(value)


class StructuredDataStrategy(ExtractionStrategy):
    name = "structured"

    @staticmethod
    def _embedded(raw: RawContent) -> Optional[Any]:
        if raw.structured is not None:
            return raw.structured
        if raw.html:
            match = NEXT_DATA_RE.search(raw.html)
            if match:
                try:
                    return json.loads(match.group(1))
                except ValueError:
                    logger.debug("Unparseable __NEXT_DATA__ in %s", raw.endpoint)
        return None

    async def extract(self, resource: WatchedResource, raw: Optional[RawContent]) -> List[Entity]:
        data = self._embedded(raw) if raw else None
        if data is None:
            return []
        entities = [e for e in map(entity_from_record, walk_records(data)) if e]
        return entities


class IssueLinkStrategy(ExtractionStrategy):
    name = "issue_links"

    # ---------------------------------------------------------------- HTML
    @staticmethod
    def _enclosing_block(link: Tag) -> Tag:
        """Widest ancestor that still belongs to this one issue."""
        own = ISSUE_URL_RE.search(link.get("href", "")).group(0)
        block = link
        for _ in range(MAX_BLOCK_DEPTH):
            parent = block.parent
            if parent is None or parent.name in ("body", "html", "[document]"):
                break
            others = {
                m.group(0)
                for a in parent.find_all("a", href=True)
                for m in [ISSUE_URL_RE.search(a["href"])]
                if m
            }
            if others - {own}:
                break
            block = parent
            if parent.get("data-testid") == "bounty-card":
                break
        return block

    @staticmethod
    def _html_title(link: Tag, block: Tag) -> str:
        text = link.get_text(" ", strip=True)
        if len(text) > 10 and not ISSUE_URL_RE.search(text):
            return text
        heading = block.find(["h1", "h2", "h3", "h4", "h5", "h6"])
        if heading and heading.get_text(strip=True):
            return heading.get_text(" ", strip=True)
        for line in block.get_text("\n", strip=True).splitlines():
            if len(line) > 10 and not AMOUNT_RE.search(line) and not ISSUE_URL_RE.search(line):
                return line
        return ""

    def _from_html(self, html: str) -> List[Entity]:
        soup = BeautifulSoup(html, "html.parser")
        entities: List[Entity] = []
        for link in soup.find_all("a", href=True):
            match = ISSUE_URL_RE.search(link["href"])
            if not match:
                continue
            owner, repo, number = match.groups()
            block = self._enclosing_block(link)
            block_text = block.get_text(" ", strip=True)
            title = clean_title(self._html_title(link, block))
            eid = entity_id(owner, repo, number)
            entities.append(Entity(
                id=eid,
                title=title or eid,
                reward_amount_minor_units=parse_amount(block_text),
                tags=derive_tags(title, repo),
                source_url=issue_url(owner, repo, number),
            ))
        return entities

    # ------------------------------------------------------------ markdown
    @staticmethod
    def _markdown_title(lines: List[str], line: str) -> str:
        link_text = re.search(r"\[([^\]]{10,})\]\(\S*github\.com/[^)]+/issues/\d+\)", line)
        if link_text:
            return link_text.group(1)
        for candidate in lines:
            candidate = candidate.strip()
            if re.match(r"^#|^\*\*|^\[", candidate) and 10 < len(candidate) < 100:
                return re.sub(r"\].*$", "", re.sub(r"^[#*\[]+\s*", "", candidate)).strip("* ")
        return ""

    def _from_markdown(self, markdown: str) -> List[Entity]:
        lines = markdown.splitlines()
        entities: List[Entity] = []
        for index, line in enumerate(lines):
            for match in ISSUE_URL_RE.finditer(line):
                owner, repo, number = match.groups()
                lo, hi = max(0, index - MARKDOWN_CONTEXT_LINES), index + MARKDOWN_CONTEXT_LINES + 1
                context = lines[lo:hi]
                # nearest amount to the link line wins
                amount = UNKNOWN_AMOUNT
                for distance in range(MARKDOWN_CONTEXT_LINES + 1):
                    for near in {index - distance, index + distance}:
                        if lo <= near < min(hi, len(lines)) and amount == UNKNOWN_AMOUNT:
                            amount = parse_amount(lines[near])
                title = clean_title(self._markdown_title(context, line))
                eid = entity_id(owner, repo, number)
                entities.append(Entity(
                    id=eid,
                    title=title or eid,
                    reward_amount_minor_units=amount,
                    tags=derive_tags(title, repo),
                    source_url=issue_url(owner, repo, number),
                ))
        return entities

    async def extract(self, resource: WatchedResource, raw: Optional[RawContent]) -> List[Entity]:
        if raw is None:
            return []
        entities: List[Entity] = []
        if raw.html:
            entities = self._from_html(raw.html)
        if not entities and raw.markdown:
            entities = self._from_markdown(raw.markdown)
        return entities


class AlgoraApiStrategy(ExtractionStrategy):
    """Query the canonical bounty list for the resource's organization."""

    name = "algora_api"

    def __init__(
        self,
        api_url: str = "https://console.algora.io/api/trpc/bounty.list",
        *,
        page_size: int = 100,
        max_pages: int = 20,
        timeout: float = 30.0,
        http: Optional[HttpClient] = None,
    ):
        self.api_url = api_url
        self.page_size = page_size
        self.max_pages = max_pages
        self.timeout = timeout
        self.http = http or HttpClient(max_retries=2, name=self.name)

    @classmethod
    def from_settings(cls, settings: AlgoraSettings, timeout: float = 30.0) -> "AlgoraApiStrategy":
        return cls(settings.api_url, page_size=settings.page_size, max_pages=settings.max_pages, timeout=timeout)

    async def _page(self, org: str, cursor: Optional[str]) -> Dict[str, Any]:
        params = {"json": {"org": org, "limit": self.page_size, "status": "open"}}
        if cursor:
            params["json"]["cursor"] = cursor
        body = await self.http.get_json(
            self.api_url, params={"input": json.dumps(params)}, timeout=self.timeout
        )
        try:
            return body["result"]["data"]["json"]
        except (KeyError, TypeError):
            return {}

    async def extract(self, resource: WatchedResource, raw: Optional[RawContent]) -> List[Entity]:
        entities: List[Entity] = []
        cursor: Optional[str] = None
        for _ in range(self.max_pages):
            page = await self._page(resource.id, cursor)
            items = page.get("items") or []
            entities.extend(e for e in map(entity_from_record, items) if e)
            cursor = page.get("next_cursor")
            if not cursor or not items:
                break
        else:
            logger.warning("%s: stopped paging bounty API after %d pages", resource.id, self.max_pages)
        return entities

    async def close(self) -> None:
        await self.http.close()


def default_strategies(settings: AlgoraSettings, timeout: float = 30.0) -> List[ExtractionStrategy]:
    strategies: List[ExtractionStrategy] = [StructuredDataStrategy(), IssueLinkStrategy()]
    if settings.enabled:
        strategies.append(AlgoraApiStrategy.from_settings(settings, timeout=timeout))
    return strategies
