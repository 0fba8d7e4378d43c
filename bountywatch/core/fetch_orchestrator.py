"""
Fetch Orchestrator – ordered backend fallback, retry with back-off, a
per-resource circuit breaker and bounded, deadline-aware concurrency.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Generic,
    List,
    Optional,
    Sequence,
    TypeVar,
)

from .config import FetchSettings
from .errors import CircuitOpenError, FetchError, FetchErrorKind
from .interfaces import Backend
from .models import RawContent, WatchedResource
from .resilience import CircuitBreaker, CredentialPool, backoff_delay

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUSES = frozenset({408, 425, 429})


def is_retryable(error: FetchError) -> bool:
    """Client errors other than throttling are not worth repeating on the same backend."""
    if error.kind is not FetchErrorKind.HTTP or error.status is None:
        return True
    return error.status in RETRYABLE_STATUSES or error.status >= 500


@dataclass
class WorkResult(Generic[T]):
    """What happened to one resource's unit of work."""

    resource_id: str
    value: Optional[T] = None
    error: Optional[BaseException] = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.skipped and self.error is None


class FetchOrchestrator:
    def __init__(
        self,
        backends: Sequence[Backend],
        *,
        cheap_backends: Sequence[Backend] = (),
        attempts_per_backend: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        timeout: float = 30.0,
        workers: int = 3,
        dispatch_delay: float = 0.5,
        breaker: Optional[CircuitBreaker] = None,
        credentials: Optional[CredentialPool] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Optional[Callable[[float, float], float]] = None,
    ):
        if not backends:
            raise ValueError("at least one backend is required")
        self.backends = list(backends)
        self.cheap_backends = list(cheap_backends)
        self.attempts_per_backend = max(1, attempts_per_backend)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self.workers = max(1, workers)
        self.dispatch_delay = dispatch_delay
        self.breaker = breaker or CircuitBreaker()
        self.credentials = credentials
        self._sleep = sleep
        self._jitter = jitter

    @classmethod
    def from_settings(
        cls,
        settings: FetchSettings,
        backends: Sequence[Backend],
        *,
        cheap_backends: Sequence[Backend] = (),
        credentials: Optional[CredentialPool] = None,
        **kwargs,
    ) -> "FetchOrchestrator":
        return cls(
            backends,
            cheap_backends=cheap_backends,
            attempts_per_backend=settings.attempts_per_backend,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            timeout=settings.timeout,
            workers=settings.workers,
            dispatch_delay=settings.dispatch_delay,
            breaker=CircuitBreaker(settings.circuit_threshold),
            credentials=credentials,
            **kwargs,
        )

    # ------------------------------------------------------------------ #
    # Single resource
    def _retry_delay(self, error: FetchError, attempt: int) -> float:
        if error.rate_limited and error.retry_after is not None:
            return min(error.retry_after, self.max_delay)
        return backoff_delay(attempt, self.base_delay, self.max_delay, jitter=self._jitter)

    def _can_rotate(self, backend: Backend, error: FetchError) -> bool:
        return (
            error.rate_limited
            and backend.capabilities.metered
            and self.credentials is not None
            and self.credentials.has_ready()
        )

    async def _attempt(self, backend: Backend, resource: WatchedResource) -> RawContent:
        try:
            return await asyncio.wait_for(
                backend.fetch(resource.endpoint, self.timeout, resource.id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise FetchError.timeout(
                f"no response from {resource.endpoint} within {self.timeout:.0f}s", backend=backend.name
            ) from e

    async def fetch(
        self, resource: WatchedResource, backends: Optional[Sequence[Backend]] = None
    ) -> RawContent:
        """Content for ``resource`` from the first backend that succeeds.

        Raises the last FetchError when every backend is exhausted, or
        CircuitOpenError once the resource has failed too often this run.
        """
        rid = resource.id
        chain = list(backends) if backends is not None else self.backends
        last_error: Optional[FetchError] = None

        for backend in chain:
            if self.breaker.is_open(rid):
                raise CircuitOpenError(rid, self.breaker.failures(rid))
            if not await backend.is_available():
                logger.info("%s: backend %s unavailable, skipping", rid, backend.name)
                continue

            for attempt in range(self.attempts_per_backend):
                try:
                    content = await self._attempt(backend, resource)
                except FetchError as e:
                    last_error = e
                    opened = self.breaker.record_failure(rid)
                    if opened:
                        raise CircuitOpenError(rid, self.breaker.failures(rid)) from e

                    final = attempt + 1 >= self.attempts_per_backend or not is_retryable(e)
                    if final:
                        logger.warning(
                            "%s: %s failed (attempt %d/%d), moving on: %s",
                            rid, backend.name, attempt + 1, self.attempts_per_backend, e,
                        )
                        break
                    if self._can_rotate(backend, e):
                        logger.warning(
                            "%s: %s rate limited (attempt %d/%d) – rotating credential",
                            rid, backend.name, attempt + 1, self.attempts_per_backend,
                        )
                        continue
                    delay = self._retry_delay(e, attempt)
                    logger.warning(
                        "%s: %s failed (attempt %d/%d – will retry in %.1fs): %s",
                        rid, backend.name, attempt + 1, self.attempts_per_backend, delay, e,
                    )
                    await self._sleep(delay)
                else:
                    self.breaker.record_success(rid)
                    return content

        if last_error is None:
            last_error = FetchError.invalid(f"no available backend for {rid}")
        raise last_error

    # ------------------------------------------------------------------ #
    # Many resources
    async def run(
        self,
        resources: Sequence[WatchedResource],
        work: Callable[[WatchedResource], Awaitable[T]],
        *,
        deadline: Optional[float] = None,
    ) -> Dict[str, WorkResult[T]]:
        """Run ``work`` for every resource with at most ``workers`` in flight.

        Exceptions are captured per resource. When ``deadline`` seconds pass,
        unfinished work is cancelled and reported as skipped.
        """
        if not resources:
            return {}

        loop = asyncio.get_running_loop()
        semaphore = asyncio.Semaphore(self.workers)
        dispatch_lock = asyncio.Lock()
        last_dispatch = [float("-inf")]

        async def guarded(resource: WatchedResource) -> T:
            async with semaphore:
                async with dispatch_lock:
                    wait = last_dispatch[0] + self.dispatch_delay - loop.time()
                    if wait > 0:
                        await self._sleep(wait)
                    last_dispatch[0] = loop.time()
                return await work(resource)

        tasks = {
            resource.id: asyncio.create_task(guarded(resource), name=f"resource-{resource.id}")
            for resource in resources
        }
        _, pending = await asyncio.wait(tasks.values(), timeout=deadline)
        if pending:
            logger.warning("Run deadline of %.0fs reached – cancelling %d resources", deadline, len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        results: Dict[str, WorkResult[T]] = {}
        for rid, task in tasks.items():
            if task in pending or task.cancelled():
                results[rid] = WorkResult(rid, skipped=True)
            elif task.exception() is not None:
                results[rid] = WorkResult(rid, error=task.exception())
            else:
                results[rid] = WorkResult(rid, value=task.result())
        return results

    async def close(self) -> None:
        seen = set()
        for backend in self.backends + self.cheap_backends:
            if id(backend) in seen:
                continue
            seen.add(id(backend))
            await backend.close()
