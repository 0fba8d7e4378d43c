"""
Tests for cheap signatures and full entity diffs.
"""

from datetime import timedelta

from bountywatch.core.change_detector import ChangeDetector, cheap_signature, estimate_entity_count
from bountywatch.core.models import EntitySnapshot, EntityStatus, Fingerprint
from conftest import START, bounty_card, bounty_page, make_entity


def snapshot(*entities) -> EntitySnapshot:
    return EntitySnapshot.from_entities("acme", list(entities), captured_at=START)


def test_first_run_reports_everything_added():
    detector = ChangeDetector()
    new = snapshot(make_entity("acme/a#1"), make_entity("acme/a#2"))

    diff, fp = detector.detect("acme", None, None, new, START)

    assert diff.is_first_run
    assert [e.id for e in diff.added] == ["acme/a#1", "acme/a#2"]
    assert diff.removed == [] and diff.updated == []
    assert fp.last_checked_at == START
    assert fp.last_changed_at == START
    assert fp.entity_count_estimate == 2
    assert fp.snapshot_signature == new.signature()


def test_cheap_only_fingerprint_still_counts_as_first_run():
    detector = ChangeDetector()
    cheap_fp = Fingerprint(resource_id="acme", signature="abc", last_checked_at=START)

    diff, _ = detector.detect("acme", cheap_fp, None, snapshot(make_entity("acme/a#1")), START)

    assert diff.is_first_run
    assert len(diff.added) == 1


def test_amount_change_and_new_bounty():
    detector = ChangeDetector()
    old = snapshot(make_entity("x#1", amount=10000))
    new = snapshot(make_entity("x#1", amount=15000), make_entity("x#2"))
    _, previous_fp = detector.detect("acme", None, None, old, START)

    later = START + timedelta(hours=1)
    diff, fp = detector.detect("acme", previous_fp, old, new, later)

    assert not diff.is_first_run
    assert [e.id for e in diff.added] == ["x#2"]
    assert diff.removed == []
    assert len(diff.updated) == 1
    assert diff.updated[0].fields == ["amount"]
    assert diff.updated[0].old.reward_amount_minor_units == 10000
    assert diff.updated[0].new.reward_amount_minor_units == 15000
    assert fp.last_changed_at == later


def test_added_removed_updated_are_disjoint():
    detector = ChangeDetector()
    old = snapshot(
        make_entity("a#1"),
        make_entity("a#2", status=EntityStatus.OPEN),
        make_entity("a#3"),
    )
    new = snapshot(
        make_entity("a#2", status=EntityStatus.COMPLETED),
        make_entity("a#3"),
        make_entity("a#4"),
    )
    _, previous_fp = detector.detect("acme", None, None, old, START)

    diff, _ = detector.detect("acme", previous_fp, old, new, START + timedelta(minutes=5))

    added = {e.id for e in diff.added}
    removed = {e.id for e in diff.removed}
    updated = {u.new.id for u in diff.updated}
    assert added == new.ids - old.ids == {"a#4"}
    assert removed == old.ids - new.ids == {"a#1"}
    assert updated == {"a#2"}
    assert diff.updated[0].fields == ["status"]
    assert not (added & removed or added & updated or removed & updated)


def test_detect_is_idempotent():
    detector = ChangeDetector()
    old = snapshot(make_entity("a#1"))
    new = snapshot(make_entity("a#1", title="Renamed bounty title"), make_entity("a#2"))
    _, previous_fp = detector.detect("acme", None, None, old, START)
    now = START + timedelta(hours=2)

    first_diff, first_fp = detector.detect("acme", previous_fp, old, new, now)
    second_diff, second_fp = detector.detect("acme", first_fp, new, new, now)

    assert first_diff.has_changes
    assert not second_diff.has_changes
    assert second_fp == first_fp


def test_unchanged_keeps_last_changed_at():
    detector = ChangeDetector()
    snap = snapshot(make_entity("a#1"))
    _, first_fp = detector.detect("acme", None, None, snap, START)

    diff, fp = detector.detect("acme", first_fp, snap, snap, START + timedelta(days=1))

    assert not diff.has_changes
    assert fp.last_changed_at == START
    assert fp.last_checked_at == START + timedelta(days=1)


def test_disjoint_ids_are_flagged_as_reidentification():
    detector = ChangeDetector()
    old = snapshot(make_entity("acme/a#1"), make_entity("acme/a#2"))
    new = snapshot(make_entity("acme-renamed/a#1"), make_entity("acme-renamed/a#2"))
    _, previous_fp = detector.detect("acme", None, None, old, START)

    diff, _ = detector.detect("acme", previous_fp, old, new, START + timedelta(hours=1))

    assert diff.suspected_reidentification
    assert len(diff.added) == 2 and len(diff.removed) == 2


def test_cheap_check():
    detector = ChangeDetector()
    page = bounty_page(bounty_card("acme", "w", 1, "Fix flaky upload test", "150"))

    first, fp = detector.check("acme", None, page, START)
    assert first.maybe_changed
    assert first.previous_signature is None
    assert fp.signature == cheap_signature(page)
    assert fp.entity_count_estimate == 1

    same, fp2 = detector.check("acme", fp, page, START + timedelta(minutes=15))
    assert not same.maybe_changed
    assert fp2.last_checked_at == START + timedelta(minutes=15)

    grown = page.replace("</main>", bounty_card("acme", "w", 2, "Write migration guide", "80") + "</main>")
    changed, _ = detector.check("acme", fp2, grown, START + timedelta(minutes=30))
    assert changed.maybe_changed


def test_cheap_signature_shape():
    assert cheap_signature("abc") == cheap_signature("abc")
    assert len(cheap_signature("abc")) == 16
    assert estimate_entity_count("$10 and $20, no cards") == 2


def test_merge_builds_run_level_change_set():
    detector = ChangeDetector()
    old = snapshot(make_entity("x#1", amount=10000))
    new = snapshot(make_entity("x#1", amount=15000), make_entity("x#2"))
    _, previous_fp = detector.detect("acme", None, None, old, START)
    diff, _ = detector.detect("acme", previous_fp, old, new, START)
    retired = detector.retired_diff("gone", snapshot(make_entity("gone/r#5")))

    change_set = detector.merge([diff, retired], resources_added=[], resources_removed=["gone"])

    assert [e.id for e in change_set.added] == ["x#2"]
    assert [e.id for e in change_set.removed] == ["gone/r#5"]
    assert change_set.resources_removed == ["gone"]
    assert change_set.summary == "1 bounties added, 1 bounties removed, 1 bounties updated, 1 organizations removed"
    assert change_set.has_changes


def test_merge_without_changes():
    change_set = ChangeDetector().merge([])
    assert not change_set.has_changes
    assert change_set.summary == "No changes detected"
