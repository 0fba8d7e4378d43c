"""
Shared fixtures: a controllable clock, scripted backends and page builders.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

import pytest

from bountywatch.core.coalescer import Clock
from bountywatch.core.errors import FetchError
from bountywatch.core.interfaces import Backend, Capabilities
from bountywatch.core.models import Entity, RawContent, WatchedResource

# a Monday
START = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeClock(Clock):
    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


Response = Union[str, FetchError, Callable[[str], str]]


class FakeBackend(Backend):
    """Plays back scripted responses; the last one repeats forever."""

    def __init__(
        self,
        name: str,
        responses: List[Response],
        *,
        capabilities: Capabilities = Capabilities(fetches_static_html=True),
        available: bool = True,
    ):
        self.name = name
        self.capabilities = capabilities
        self.responses = list(responses)
        self.available = available
        self.calls: List[str] = []
        self.closed = False

    async def fetch(self, endpoint: str, timeout: float, resource_id: str = "") -> RawContent:
        self.calls.append(resource_id)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if callable(item):
            item = item(resource_id)
        if isinstance(item, FetchError):
            raise item
        return RawContent(resource_id=resource_id, endpoint=endpoint, backend=self.name, html=item)

    async def is_available(self) -> bool:
        return self.available

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_resource(resource_id: str, **kwargs) -> WatchedResource:
    kwargs.setdefault("endpoint", f"https://algora.io/{resource_id}/bounties?status=open")
    return WatchedResource(id=resource_id, **kwargs)


def make_entity(entity_id: str, title: str = "Fix the widget renderer", amount: int = 10000, **kwargs) -> Entity:
    return Entity(id=entity_id, title=title, reward_amount_minor_units=amount, **kwargs)


def bounty_card(owner: str, repo: str, number: int, title: str, amount: str) -> str:
    return (
        '<div data-testid="bounty-card">'
        f"<h3>{title}</h3>"
        f"<span>${amount}</span>"
        f'<a href="https://github.com/{owner}/{repo}/issues/{number}">View issue</a>'
        "</div>"
    )


def bounty_page(*cards: str, heading: Optional[str] = "Open bounties") -> str:
    header = f"<h1>{heading}</h1>" if heading else ""
    return f"<html><body>{header}<main>{''.join(cards)}</main></body></html>"


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
