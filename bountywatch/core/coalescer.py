"""
Event Coalescer – debounces "resource changed" signals into batches.

States: ``idle`` and ``window_open(opened_at, last_signal_at)``. A signal
opens or extends the window; ``poll()`` emits once the quiet window has
passed since the last signal, or the max window since the window opened.
State is in memory only; the periodic full scan covers anything lost.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Sequence, Set

from .models import PendingChangeBatch, utcnow

logger = logging.getLogger(__name__)

BatchHandler = Callable[[PendingChangeBatch], Awaitable[None]]


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return utcnow()


class CoalescerState(str, Enum):
    IDLE = "idle"
    WINDOW_OPEN = "window_open"


class EventCoalescer:
    def __init__(
        self,
        quiet_window: float = 120.0,
        max_window: float = 600.0,
        clock: Optional[Clock] = None,
    ):
        if max_window < quiet_window:
            raise ValueError("max_window must be >= quiet_window")
        self.quiet_window = timedelta(seconds=quiet_window)
        self.max_window = timedelta(seconds=max_window)
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._pending: Set[str] = set()
        self._opened_at: Optional[datetime] = None
        self._last_signal_at: Optional[datetime] = None

    @property
    def state(self) -> CoalescerState:
        with self._lock:
            return CoalescerState.WINDOW_OPEN if self._opened_at else CoalescerState.IDLE

    @property
    def pending(self) -> frozenset:
        with self._lock:
            return frozenset(self._pending)

    def _add(self, resource_ids, now: datetime) -> None:
        if self._opened_at is None:
            self._opened_at = now
        self._last_signal_at = now
        self._pending.update(resource_ids)

    def signal(self, resource_id: str) -> bool:
        """Record a change signal. Returns False if the id was already pending."""
        with self._lock:
            is_new = resource_id not in self._pending
            self._add([resource_id], self.clock.now())
        logger.debug("Signal for %s (%s)", resource_id, "queued" if is_new else "already pending")
        return is_new

    def _due_at(self) -> Optional[datetime]:
        if self._opened_at is None:
            return None
        return min(self._last_signal_at + self.quiet_window, self._opened_at + self.max_window)

    def seconds_until_due(self) -> Optional[float]:
        with self._lock:
            due = self._due_at()
            if due is None:
                return None
            return max(0.0, (due - self.clock.now()).total_seconds())

    def poll(self) -> Optional[PendingChangeBatch]:
        """Emit and reset if the window has elapsed, else None."""
        with self._lock:
            due = self._due_at()
            now = self.clock.now()
            if due is None or now < due:
                return None
            batch = PendingChangeBatch(
                resource_ids=frozenset(self._pending),
                window_opened_at=self._opened_at,
                emitted_at=now,
            )
            self._pending.clear()
            self._opened_at = self._last_signal_at = None
        logger.info("Emitting batch of %d resources: %s", batch.size, ", ".join(sorted(batch.resource_ids)))
        return batch

    def requeue(self, batch: PendingChangeBatch) -> None:
        """Put a batch's ids back after a failed delivery."""
        with self._lock:
            self._add(batch.resource_ids, self.clock.now())
        logger.info("Requeued %d resources", batch.size)

    def status(self) -> Dict[str, object]:
        due = self.seconds_until_due()
        with self._lock:
            return {
                "state": (CoalescerState.WINDOW_OPEN if self._opened_at else CoalescerState.IDLE).value,
                "pending": sorted(self._pending),
                "window_opened_at": self._opened_at.isoformat() if self._opened_at else None,
                "will_trigger_in": due,
            }


class CoalescerDriver:
    """Polls the coalescer and delivers emitted batches to handlers.

    Delivery is at-least-once: every handler receives every batch, and if any
    of them fails the whole batch is requeued, so handlers that succeeded see
    those ids again on the next window. A resource that has been requeued
    ``max_requeues`` times is dropped with an ERROR log instead.
    """

    def __init__(
        self,
        coalescer: EventCoalescer,
        handlers: Sequence[BatchHandler],
        max_requeues: int = 3,
    ):
        self.coalescer = coalescer
        self.handlers = list(handlers)
        self.max_requeues = max_requeues
        self._requeues: Dict[str, int] = {}

    async def tick(self) -> Optional[PendingChangeBatch]:
        batch = self.coalescer.poll()
        if batch is None:
            return None

        failed = False
        for handler in self.handlers:
            try:
                await handler(batch)
            except Exception as e:
                logger.warning(
                    "Delivery of batch %s to %s failed: %s",
                    sorted(batch.resource_ids), getattr(handler, "__name__", type(handler).__name__), e,
                )
                failed = True

        if failed:
            self._retry(batch)
            return batch

        for resource_id in batch.resource_ids:
            self._requeues.pop(resource_id, None)
        return batch

    def _retry(self, batch: PendingChangeBatch) -> None:
        retry, dropped = set(), set()
        for resource_id in batch.resource_ids:
            count = self._requeues.get(resource_id, 0)
            if count >= self.max_requeues:
                dropped.add(resource_id)
                self._requeues.pop(resource_id, None)
            else:
                self._requeues[resource_id] = count + 1
                retry.add(resource_id)

        if dropped:
            logger.error(
                "Giving up on %d resources after %d requeues, full scan will pick them up: %s",
                len(dropped), self.max_requeues, ", ".join(sorted(dropped)),
            )
        if retry:
            self.coalescer.requeue(
                PendingChangeBatch(resource_ids=frozenset(retry), window_opened_at=batch.window_opened_at)
            )
