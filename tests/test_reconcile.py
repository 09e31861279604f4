"""Tests for the tracker/index reconciliation sweep."""

import pytest

from backlog_cleaner.cleaner.reconcile import reconcile_index
from backlog_cleaner.models import EmbeddingVector

from conftest import FakeEmbedder, FakeIndex, FakeTracker, make_issue


def _drifted():
    tracker = FakeTracker([make_issue("PROJ-1"), make_issue("PROJ-2"), make_issue("PROJ-3")])
    index = FakeIndex()
    for key in ("PROJ-1", "PROJ-8", "PROJ-9"):
        index.vectors[key] = EmbeddingVector(id=key, values=[1.0, 0.0])
    return tracker, index


class TestReconcileIndex:
    @pytest.mark.asyncio
    async def test_report_only(self):
        tracker, index = _drifted()

        report = await reconcile_index(tracker, index, FakeEmbedder(), "PROJ")

        assert report.tracker_count == 3
        assert report.index_count == 3
        assert report.missing_vectors == ["PROJ-2", "PROJ-3"]
        assert report.orphan_vectors == ["PROJ-8", "PROJ-9"]
        assert report.removed_orphans == []
        assert set(index.vectors) == {"PROJ-1", "PROJ-8", "PROJ-9"}

    @pytest.mark.asyncio
    async def test_apply_repairs_drift(self):
        tracker, index = _drifted()

        report = await reconcile_index(tracker, index, FakeEmbedder(), "PROJ", apply=True)

        assert report.removed_orphans == ["PROJ-8", "PROJ-9"]
        assert report.reindexed == ["PROJ-2", "PROJ-3"]
        assert set(index.vectors) == {"PROJ-1", "PROJ-2", "PROJ-3"}

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_sweep(self):
        tracker, index = _drifted()
        embedder = FakeEmbedder(failing={"PROJ-2"})

        report = await reconcile_index(tracker, index, embedder, "PROJ", apply=True)

        assert report.reindexed == ["PROJ-3"]
        assert "PROJ-2" not in index.vectors

    @pytest.mark.asyncio
    async def test_orphan_delete_failure_reported(self):
        tracker, index = _drifted()
        index.fail_delete = True

        report = await reconcile_index(tracker, index, FakeEmbedder(), "PROJ", apply=True)

        assert report.removed_orphans == []
        assert report.reindexed == ["PROJ-2", "PROJ-3"]
