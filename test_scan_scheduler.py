"""
Tests for choosing between full and targeted scans.
"""

from datetime import datetime, timedelta, timezone

import pytest

from bountywatch.core.errors import ConfigError
from bountywatch.core.models import Fingerprint, ScanKind, Tier
from bountywatch.core.scan_scheduler import ScanPolicy
from conftest import START, make_resource

# START is Monday 2024-01-01; the default trigger fires Sunday 04:00
SUNDAY_0400 = datetime(2024, 1, 7, 4, 0, tzinfo=timezone.utc)


def checked(resource_id: str, at: datetime) -> Fingerprint:
    return Fingerprint(resource_id=resource_id, signature="sig", last_checked_at=at)


@pytest.fixture
def policy():
    return ScanPolicy()


def test_never_run_means_full_scan(policy):
    resources = [make_resource("a"), make_resource("b")]

    plan = policy.plan(resources, {}, [], None, START)

    assert plan.kind is ScanKind.FULL
    assert plan.full_scan == ("a", "b")
    assert plan.cheap_poll == ()
    assert plan.reason == "no full scan recorded"


def test_calendar_trigger(policy):
    resources = [make_resource("a")]

    before = policy.plan(resources, {}, [], START, SUNDAY_0400 - timedelta(minutes=1))
    after = policy.plan(resources, {}, [], START, SUNDAY_0400)

    assert before.kind is ScanKind.TARGETED
    assert after.kind is ScanKind.FULL
    assert policy.next_full_scan_after(START) == SUNDAY_0400


def test_forced_full_scan(policy):
    plan = policy.plan([make_resource("a")], {}, [], START, START + timedelta(hours=1), force_full=True)

    assert plan.kind is ScanKind.FULL
    assert plan.reason == "forced"


def test_targeted_scan_selects_pending_and_due(policy):
    now = START + timedelta(hours=3)
    resources = [
        make_resource("pending"),
        make_resource("due", tier=Tier.CRITICAL),
        make_resource("fresh", tier=Tier.BACKGROUND),
        make_resource("never"),
    ]
    fingerprints = {
        "pending": checked("pending", now - timedelta(minutes=1)),
        "due": checked("due", now - timedelta(minutes=20)),
        "fresh": checked("fresh", now - timedelta(hours=2)),
    }

    plan = policy.plan(resources, fingerprints, ["pending", "unknown"], START, now)

    assert plan.kind is ScanKind.TARGETED
    assert plan.full_scan == ("pending",)
    assert plan.cheap_poll == ("due", "never")
    assert plan.resource_ids == ("due", "never", "pending")


def test_inactive_resources_are_left_alone(policy):
    resources = [make_resource("a"), make_resource("paused", active=False)]
    fingerprints = {"paused": checked("paused", START - timedelta(days=30))}

    targeted = policy.plan(resources, fingerprints, ["paused"], START, START + timedelta(hours=2))
    full = policy.plan(resources, fingerprints, [], None, START)

    assert "paused" not in targeted.resource_ids
    assert "paused" not in full.resource_ids
    assert full.retire == ()


def test_full_scan_retires_unconfigured_state(policy):
    fingerprints = {"gone": checked("gone", START), "a": checked("a", START)}

    plan = policy.plan([make_resource("a")], fingerprints, [], None, START)

    assert plan.retire == ("gone",)


def test_targeted_scan_never_retires(policy):
    fingerprints = {"gone": checked("gone", START)}

    plan = policy.plan([make_resource("a")], fingerprints, [], START, START + timedelta(hours=2))

    assert plan.kind is ScanKind.TARGETED
    assert plan.retire == ()


def test_invalid_cron_is_rejected():
    with pytest.raises(ConfigError):
        ScanPolicy("not a cron")
