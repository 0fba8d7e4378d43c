"""
Error taxonomy shared by every stage of a scan.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class BountyWatchError(Exception):
    """Base class for all errors raised by the watcher."""


class ConfigError(BountyWatchError):
    """Resource list or settings unreadable. Fatal for the run."""


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    HTTP = "http"
    NETWORK = "network"
    INVALID_RESPONSE = "invalid_response"


class FetchError(BountyWatchError):
    """A single fetch attempt failed. Recoverable through retry and fallback."""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str = "",
        *,
        status: Optional[int] = None,
        backend: Optional[str] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        self.kind = kind
        self.status = status
        self.backend = backend
        self.retry_after = retry_after
        super().__init__(message or self._default_message())

    def _default_message(self) -> str:
        if self.kind is FetchErrorKind.HTTP:
            return f"HTTP {self.status}"
        return self.kind.value

    @property
    def rate_limited(self) -> bool:
        return self.kind is FetchErrorKind.HTTP and self.status == 429

    @classmethod
    def timeout(cls, message: str = "", **kwargs) -> "FetchError":
        return cls(FetchErrorKind.TIMEOUT, message, **kwargs)

    @classmethod
    def http(cls, status: int, message: str = "", **kwargs) -> "FetchError":
        return cls(FetchErrorKind.HTTP, message, status=status, **kwargs)

    @classmethod
    def network(cls, message: str = "", **kwargs) -> "FetchError":
        return cls(FetchErrorKind.NETWORK, message, **kwargs)

    @classmethod
    def invalid(cls, message: str = "", **kwargs) -> "FetchError":
        return cls(FetchErrorKind.INVALID_RESPONSE, message, **kwargs)

    def __str__(self) -> str:
        base = super().__str__()
        return f"[{self.backend}] {base}" if self.backend else base


class CircuitOpenError(FetchError):
    """The resource failed too often this run; no further attempts are made."""

    def __init__(self, resource_id: str, failures: int) -> None:
        self.resource_id = resource_id
        self.failures = failures
        super().__init__(
            FetchErrorKind.NETWORK,
            f"circuit open for {resource_id} after {failures} consecutive failures",
        )


class ExtractionError(BountyWatchError):
    """Content was retrieved but no entity could be resolved from it."""


class PersistenceError(BountyWatchError):
    """Fingerprint store unreadable or unwritable."""
