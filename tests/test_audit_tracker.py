from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock, call

import pytest

from release_audit.audit.models import FAILURE_REASON_VERIFICATION
from release_audit.audit.tracker import AuditTracker

DIGEST = "sha256:" + "ab" * 32
OTHER_DIGEST = "sha256:" + "cd" * 32


@pytest.fixture
def queue() -> MagicMock:
    return MagicMock()


@pytest.fixture
def tracker(queue, clock) -> AuditTracker:
    return AuditTracker(queue, clock=clock)


def test_sync_creates_record_and_enqueues(tracker, queue, release_factory, tag_factory, clock):
    release = release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),))

    tracker.sync(release)

    record = tracker.get("4.10.0")
    assert record is not None
    assert record.digest_id == DIGEST
    assert record.location == f"registry.example/repo@{DIGEST}"
    assert record.release_name == "4.10.0-0.ci"
    assert record.source_namespace == "ocp"
    assert record.source_name == "4.10.0-0.ci"
    assert record.observed_at == clock.now
    assert record.failure is None
    queue.add.assert_called_once_with("4.10.0")


def test_sync_ignores_non_stable_release(tracker, queue, release_factory, tag_factory):
    release = release_factory(
        tags=(tag_factory("4.10.0", image_id=DIGEST),),
        publish_as="Integration",
    )

    tracker.sync(release)

    assert len(tracker) == 0
    queue.add.assert_not_called()


def test_sync_skips_tags_without_source_name_or_auditable_phase(
    tracker, queue, release_factory, tag_factory
):
    release = release_factory(
        tags=(
            tag_factory("no-source", image_id=DIGEST, source=False),
            tag_factory("", image_id=DIGEST),
            tag_factory("pending", image_id=DIGEST, phase="Pending"),
            tag_factory("ready", image_id=DIGEST, phase="Ready"),
            tag_factory("rejected", image_id=DIGEST, phase="Rejected"),
        )
    )

    tracker.sync(release)

    assert [record.name for record in tracker.records()] == ["ready", "rejected"]
    assert queue.add.call_args_list == [call("ready"), call("rejected")]


def test_sync_without_image_id_tracks_empty_digest(tracker, release_factory, tag_factory):
    tracker.sync(release_factory(tags=(tag_factory("4.10.0"),)))

    record = tracker.get("4.10.0")
    assert record.digest_id == ""
    assert record.location == "registry.example/repo:4.10.0"


def test_resync_without_changes_does_not_enqueue(tracker, queue, release_factory, tag_factory):
    release = release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),))
    tracker.sync(release)
    queue.reset_mock()

    tracker.sync(release)

    queue.add.assert_not_called()


def test_get_returns_independent_copy(tracker, release_factory, tag_factory):
    tracker.sync(release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),)))
    tracker.set_failure("4.10.0", "broken")

    copy = tracker.get("4.10.0")
    copy.failure.message = "mutated"
    copy.digest_id = "sha256:other"

    stored = tracker.get("4.10.0")
    assert stored.failure.message == "broken"
    assert stored.digest_id == DIGEST


def test_get_unknown_returns_none(tracker):
    assert tracker.get("missing") is None


def test_set_failure_refreshes_observed_at(tracker, release_factory, tag_factory, clock):
    tracker.sync(release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),)))
    clock.advance(timedelta(hours=1))

    tracker.set_failure("4.10.0", "verification failed")

    record = tracker.get("4.10.0")
    assert record.failure.reason == FAILURE_REASON_VERIFICATION
    assert record.failure.message == "verification failed"
    assert record.observed_at == clock.now


def test_set_failure_unknown_tag_is_noop(tracker):
    tracker.set_failure("missing", "message")

    assert len(tracker) == 0


def test_drift_enqueues_but_keeps_failure(tracker, queue, release_factory, tag_factory):
    # Drift alone does not clear a sticky failure; only the cooldown does.
    tracker.sync(release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),)))
    tracker.set_failure("4.10.0", "bad")
    queue.reset_mock()

    tracker.sync(release_factory(tags=(tag_factory("4.10.0", image_id=OTHER_DIGEST),)))

    queue.add.assert_called_once_with("4.10.0")
    record = tracker.get("4.10.0")
    assert record.failure is not None
    assert record.digest_id == DIGEST


def test_cooldown_clears_failure_only_after_twelve_hours(
    tracker, queue, release_factory, tag_factory, clock
):
    release = release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),))
    tracker.sync(release)
    tracker.set_failure("4.10.0", "bad")
    queue.reset_mock()

    clock.advance(timedelta(hours=11, minutes=59))
    tracker.sync(release)
    assert tracker.get("4.10.0").failure is not None
    queue.add.assert_not_called()

    clock.advance(timedelta(minutes=2))
    tracker.sync(release)
    record = tracker.get("4.10.0")
    assert record.failure is None
    assert record.observed_at == clock.now
    queue.add.assert_called_once_with("4.10.0")


def test_custom_cooldown(queue, clock, release_factory, tag_factory):
    tracker = AuditTracker(queue, clock=clock, failure_cooldown=timedelta(minutes=5))
    release = release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),))
    tracker.sync(release)
    tracker.set_failure("4.10.0", "bad")

    clock.advance(timedelta(minutes=6))
    tracker.sync(release)

    assert tracker.get("4.10.0").failure is None


def test_sync_removes_stale_tags_of_same_release_only(
    tracker, release_factory, tag_factory
):
    r1 = release_factory(
        name="r1",
        tags=(tag_factory("r1-a", image_id=DIGEST), tag_factory("r1-b", image_id=DIGEST)),
    )
    r2 = release_factory(
        name="r2",
        tags=(tag_factory("r2-a", image_id=DIGEST), tag_factory("r2-b", image_id=DIGEST)),
    )
    tracker.sync(r1)
    tracker.sync(r2)

    tracker.sync(release_factory(name="r1", tags=(tag_factory("r1-a", image_id=DIGEST),)))

    assert [record.name for record in tracker.records()] == ["r1-a", "r2-a", "r2-b"]


def test_sync_removes_record_when_phase_leaves_auditable_set(
    tracker, release_factory, tag_factory
):
    tracker.sync(release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST),)))

    tracker.sync(
        release_factory(tags=(tag_factory("4.10.0", image_id=DIGEST, phase="Failed"),))
    )

    assert tracker.get("4.10.0") is None
