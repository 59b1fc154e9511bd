"""Tests for operation progress records."""

import pytest

from shelfsync.domain.entities.operation import (
    OperationItemStatus,
    OperationProgress,
    OperationProgressState,
    OperationStats,
)
from shelfsync.domain.exceptions import MalformedEventError


def test_progress_from_payload():
    progress = OperationProgress.from_payload(
        {"itemId": "b1", "status": "processing", "message": "Looking up", "current": 2, "total": 5},
        "enrich-progress",
    )

    assert progress == OperationProgress(
        item_id="b1",
        status=OperationItemStatus.PROCESSING,
        current=2,
        total=5,
        message="Looking up",
    )


def test_missing_counts_default_to_zero():
    progress = OperationProgress.from_payload({"itemId": "b1", "status": "done"})
    assert (progress.current, progress.total) == (0, 0)


@pytest.mark.parametrize(
    ("status", "active"),
    [("pending", True), ("processing", True), ("done", False), ("skipped", False), ("error", False)],
)
def test_item_status_activity(status, active):
    assert OperationItemStatus(status).is_active is active


def test_malformed_error_names_event():
    with pytest.raises(MalformedEventError) as exc_info:
        OperationProgress.from_payload({"itemId": "b1", "status": "done", "current": 1.5}, "scan-progress")

    assert exc_info.value.event_name == "scan-progress"
    assert "current" in exc_info.value.reason


def test_stats_from_payload():
    stats = OperationStats.from_payload({"total": 4, "processed": 3, "skipped": 1, "errors": 0})

    assert stats == OperationStats(total=4, processed=3, skipped=1, errors=0)
    assert not stats.cancelled


def test_stats_reject_non_object():
    with pytest.raises(MalformedEventError):
        OperationStats.from_payload([1, 2, 3], "sync-complete")


def test_empty_state():
    state = OperationProgressState.empty()
    assert not state.running
    assert state.snapshot is None
    assert state.active_ids == frozenset()
