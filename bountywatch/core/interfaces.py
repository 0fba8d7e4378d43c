"""
Core interfaces for the watcher.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, List, Optional

from .models import Entity, RawContent, WatchedResource

if TYPE_CHECKING:
    from .config import Settings
    from .resilience import CredentialPool


@dataclass(frozen=True)
class Capabilities:
    """What a content backend is able to do."""

    fetches_static_html: bool = False
    renders_client_side_scripts: bool = False
    extracts_structured_data: bool = False
    # draws on the shared credential pool
    metered: bool = False


class Backend(ABC):
    """One way of retrieving content for a resource.

    A backend performs exactly one attempt per ``fetch`` call; retrying and
    falling back to other backends is the orchestrator's job.
    """

    #: registry key, referenced from ``fetch.backends`` in the config
    name: str = ""
    capabilities: Capabilities = Capabilities()

    @classmethod
    def from_settings(cls, settings: "Settings", credentials: Optional["CredentialPool"] = None) -> "Backend":
        """Build the backend from the loaded settings."""
        return cls()

    @abstractmethod
    async def fetch(self, endpoint: str, timeout: float, resource_id: str = "") -> RawContent:
        """Retrieve content, raising FetchError on failure."""
        ...

    async def is_available(self) -> bool:
        """Whether the backend should be tried at all this time."""
        return True

    async def close(self) -> None:
        pass

    async def __aenter__(self) -> "Backend":
        return self

    async def __aexit__(self, *_) -> None:
        await self.close()


class ExtractionStrategy(ABC):
    """Turns raw content into entities. An empty list means "not applicable"."""

    name: str = ""

    @abstractmethod
    async def extract(self, resource: WatchedResource, raw: Optional[RawContent]) -> List[Entity]:
        ...

    async def close(self) -> None:
        pass


class Sink(ABC):
    """Abstract base class for output sinks."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name for this sink."""
        pass

    @abstractmethod
    async def handle(self, item: Any) -> None:
        """Handle an item."""
        pass
