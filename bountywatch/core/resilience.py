"""
resilience.py – per-run failure bookkeeping for the fetch pipeline.

* ``backoff_delay`` – capped exponential back-off **with jitter**
* ``StripedLock`` – N locks keyed by hash, so unrelated resources never contend
* ``CircuitBreaker`` – per-resource consecutive failure counter
* ``CredentialPool`` – round-robin API keys with rate-limit cool-down

State lives in explicit objects that the orchestrator owns for one run; nothing
here is module-global.
"""

from __future__ import annotations

import logging
import os
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    *,
    jitter: Optional[Callable[[float, float], float]] = None,
) -> float:
    """Seconds to wait before retry ``attempt`` (0-based)."""
    jitter = jitter or random.uniform
    exponential = min(base_delay * 2 ** attempt, max_delay)
    return exponential + jitter(0, base_delay)


class StripedLock:
    """Fixed pool of locks; a key always maps to the same stripe."""

    def __init__(self, stripes: int = 16) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


class CircuitBreaker:
    """Opens a resource after ``threshold`` consecutive failed attempts.

    Failures are counted per attempt across every backend; any success resets
    the count. Once open, a resource stays open until ``reset()`` (start of
    the next run).
    """

    def __init__(self, threshold: int = 6, stripes: int = 16) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self._threshold = threshold
        self._locks = StripedLock(stripes)
        self._failures: Dict[str, int] = {}
        self._open: Dict[str, float] = {}

    @property
    def threshold(self) -> int:
        return self._threshold

    def record_failure(self, resource_id: str) -> bool:
        """Count a failed attempt. Returns True if this call opened the circuit."""
        with self._locks.for_key(resource_id):
            count = self._failures.get(resource_id, 0) + 1
            self._failures[resource_id] = count
            if count >= self._threshold and resource_id not in self._open:
                self._open[resource_id] = time.monotonic()
                logger.warning(
                    "CIRCUIT_OPEN: %s skipped for the rest of this run after %d consecutive failures",
                    resource_id,
                    count,
                )
                return True
            return False

    def record_success(self, resource_id: str) -> None:
        with self._locks.for_key(resource_id):
            self._failures[resource_id] = 0

    def is_open(self, resource_id: str) -> bool:
        with self._locks.for_key(resource_id):
            return resource_id in self._open

    def failures(self, resource_id: str) -> int:
        with self._locks.for_key(resource_id):
            return self._failures.get(resource_id, 0)

    def reset(self) -> None:
        if self._open:
            logger.info("CIRCUIT_RESET: re-enabling %d resources", len(self._open))
        self._failures.clear()
        self._open.clear()

    def get_stats(self) -> Dict[str, object]:
        return {
            "open": sorted(self._open),
            "failures": {k: v for k, v in self._failures.items() if v},
            "threshold": self._threshold,
        }


@dataclass
class Credential:
    """One API key plus its rate-limit state."""

    name: str
    secret: str = field(repr=False)
    cooling_until: float = 0.0
    uses: int = 0
    rate_limited: int = 0


class CredentialPool:
    """Round-robin credential rotation for metered backends."""

    DEFAULT_COOLDOWN = 60.0

    def __init__(
        self,
        secrets: Iterable[str],
        *,
        clock: Callable[[], float] = time.monotonic,
        cooldown: float = DEFAULT_COOLDOWN,
    ) -> None:
        self._credentials: List[Credential] = [
            Credential(name=f"key{i + 1}", secret=s)
            for i, s in enumerate(s for s in secrets if s)
        ]
        self._clock = clock
        self._cooldown = cooldown
        self._index = 0
        self._lock = threading.Lock()

    @classmethod
    def from_env(cls, prefix: str = "FIRECRAWL_API_KEY", extra: int = 4, **kwargs) -> "CredentialPool":
        """Collect ``PREFIX``, ``PREFIX_2`` … ``PREFIX_{extra + 1}`` from the environment."""
        names = [prefix] + [f"{prefix}_{i}" for i in range(2, extra + 2)]
        return cls([os.getenv(n, "") for n in names], **kwargs)

    def __len__(self) -> int:
        return len(self._credentials)

    def next(self) -> Optional[Credential]:
        """Next usable credential in rotation; the soonest-ready one if all are cooling."""
        with self._lock:
            if not self._credentials:
                return None
            now = self._clock()
            count = len(self._credentials)
            for offset in range(count):
                cred = self._credentials[(self._index + offset) % count]
                if cred.cooling_until <= now:
                    self._index = (self._index + offset + 1) % count
                    cred.uses += 1
                    return cred
            cred = min(self._credentials, key=lambda c: c.cooling_until)
            self._index = (self._credentials.index(cred) + 1) % count
            cred.uses += 1
            return cred

    def mark_rate_limited(self, credential: Credential, retry_after: Optional[float] = None) -> None:
        with self._lock:
            credential.rate_limited += 1
            credential.cooling_until = self._clock() + (
                retry_after if retry_after is not None else self._cooldown
            )
        logger.warning(
            "Credential %s rate limited – cooling for %.0fs",
            credential.name,
            retry_after if retry_after is not None else self._cooldown,
        )

    def has_ready(self) -> bool:
        with self._lock:
            now = self._clock()
            return any(c.cooling_until <= now for c in self._credentials)

    def get_stats(self) -> Dict[str, object]:
        return {
            "total": len(self._credentials),
            "uses": {c.name: c.uses for c in self._credentials},
            "rate_limited": {c.name: c.rate_limited for c in self._credentials},
        }
