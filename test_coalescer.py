"""
Tests for the debounce state machine and its driver.
"""

import pytest

from bountywatch.core.coalescer import CoalescerDriver, CoalescerState, EventCoalescer
from bountywatch.core.errors import FetchError


@pytest.fixture
def coalescer(clock):
    return EventCoalescer(quiet_window=120, max_window=600, clock=clock)


def test_two_signals_then_silence_emit_one_batch(coalescer, clock):
    coalescer.signal("A")
    clock.advance(10)
    coalescer.signal("B")

    clock.advance(119)
    assert coalescer.poll() is None

    clock.advance(1)
    batch = coalescer.poll()
    assert batch is not None
    assert batch.resource_ids == {"A", "B"}
    assert batch.size == 2
    assert coalescer.state is CoalescerState.IDLE
    assert coalescer.poll() is None


def test_repeated_signal_is_deduplicated(coalescer, clock):
    assert coalescer.signal("A") is True
    assert coalescer.signal("A") is False

    clock.advance(120)
    batch = coalescer.poll()
    assert batch.resource_ids == {"A"}


def test_max_window_bounds_a_continuous_stream(coalescer, clock):
    coalescer.signal("A")
    for _ in range(5):
        clock.advance(100)
        assert coalescer.poll() is None
        coalescer.signal("A")

    # 600s after the window opened, although the last signal was 100s ago
    clock.advance(100)
    batch = coalescer.poll()
    assert batch is not None
    assert batch.resource_ids == {"A"}


def test_seconds_until_due(coalescer, clock):
    assert coalescer.seconds_until_due() is None
    coalescer.signal("A")
    clock.advance(20)
    assert coalescer.seconds_until_due() == 100
    assert coalescer.status()["state"] == "window_open"
    assert coalescer.status()["pending"] == ["A"]


def test_requeue_reopens_window(coalescer, clock):
    coalescer.signal("A")
    clock.advance(120)
    batch = coalescer.poll()

    coalescer.requeue(batch)

    assert coalescer.state is CoalescerState.WINDOW_OPEN
    assert coalescer.pending == {"A"}
    clock.advance(120)
    assert coalescer.poll().resource_ids == {"A"}


def test_max_window_must_cover_quiet_window(clock):
    with pytest.raises(ValueError):
        EventCoalescer(quiet_window=300, max_window=60, clock=clock)


async def test_driver_delivers_batches(coalescer, clock):
    delivered = []

    async def handler(batch):
        delivered.append(batch)

    driver = CoalescerDriver(coalescer, [handler])
    assert await driver.tick() is None

    coalescer.signal("A")
    clock.advance(120)
    await driver.tick()

    assert [b.resource_ids for b in delivered] == [{"A"}]
    assert coalescer.state is CoalescerState.IDLE


async def test_driver_requeues_then_gives_up(coalescer, clock, caplog):
    attempts = []

    async def handler(batch):
        attempts.append(batch.resource_ids)
        raise FetchError.http(502, "job runner unavailable")

    driver = CoalescerDriver(coalescer, [handler], max_requeues=1)
    coalescer.signal("A")

    clock.advance(120)
    await driver.tick()
    assert coalescer.pending == {"A"}

    clock.advance(120)
    with caplog.at_level("ERROR"):
        await driver.tick()

    assert attempts == [{"A"}, {"A"}]
    assert coalescer.pending == frozenset()
    assert "Giving up on 1 resources" in caplog.text


async def test_driver_success_resets_requeue_count(coalescer, clock):
    outcomes = [FetchError.network("down"), None, FetchError.network("down"), None]

    async def handler(batch):
        outcome = outcomes.pop(0)
        if outcome is not None:
            raise outcome

    driver = CoalescerDriver(coalescer, [handler], max_requeues=1)
    for _ in range(2):
        coalescer.signal("A")
        clock.advance(120)
        await driver.tick()
        assert coalescer.pending == {"A"}
        clock.advance(120)
        await driver.tick()
        assert coalescer.pending == frozenset()

    assert outcomes == []


async def test_failing_handler_does_not_starve_later_handlers(coalescer, clock):
    seen = []

    async def broken(batch):
        raise FetchError.http(502, "job runner unavailable")

    async def scan(batch):
        seen.append(batch.resource_ids)

    driver = CoalescerDriver(coalescer, [broken, scan], max_requeues=1)
    coalescer.signal("A")

    clock.advance(120)
    await driver.tick()
    assert seen == [{"A"}]
    assert coalescer.pending == {"A"}

    # at-least-once: the requeued batch reaches every handler again
    clock.advance(120)
    await driver.tick()
    assert seen == [{"A"}, {"A"}]
    assert coalescer.pending == frozenset()
