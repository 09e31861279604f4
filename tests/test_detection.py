"""Tests for pairwise duplicate detection."""

import pytest

from backlog_cleaner.cleaner.detection import (
    DuplicateDetector,
    duplicate_explanation,
    find_similar,
    issue_from_match,
)
from backlog_cleaner.cleaner.indexing import build_vector
from backlog_cleaner.models import EmbeddingVector, IndexMatch, VectorMetadata

from conftest import FakeEmbedder, FakeIndex, make_issue


def _indexed(*keys):
    """FakeIndex holding one distinct vector per key."""
    index = FakeIndex()
    for i, key in enumerate(keys):
        index.vectors[key] = EmbeddingVector(id=key, values=[float(i + 1), 0.0, 0.0])
    return index


def _script(index, key, *scores):
    index.scripted[key] = [IndexMatch(id=key, score=1.0)] + [
        IndexMatch(id=other, score=score) for other, score in scores
    ]


class TestDuplicateExplanation:
    def test_two_decimals(self):
        a, b = make_issue("PROJ-1"), make_issue("PROJ-2")
        assert duplicate_explanation(a, b, 0.8234) == (
            "Issues 'PROJ-1' and 'PROJ-2' are duplicates based on a similarity score of 0.82."
        )


class TestDuplicateDetector:
    @pytest.mark.asyncio
    async def test_pairs_issue_with_close_neighbour(self):
        issues = [make_issue("PROJ-1"), make_issue("PROJ-2"), make_issue("PROJ-3")]
        index = _indexed("PROJ-1", "PROJ-2", "PROJ-3")
        _script(index, "PROJ-1", ("PROJ-2", 0.82), ("PROJ-3", 0.40))
        _script(index, "PROJ-3", ("PROJ-1", 0.40))

        groups = await DuplicateDetector(index, threshold=0.75).detect(issues)

        assert len(groups) == 1
        assert groups[0].keys == ("PROJ-1", "PROJ-2")
        assert groups[0].similarity_score == 0.82
        assert "0.82" in groups[0].explanation

    @pytest.mark.asyncio
    async def test_threshold_is_inclusive(self):
        issues = [make_issue("PROJ-1"), make_issue("PROJ-2")]
        index = _indexed("PROJ-1", "PROJ-2")
        _script(index, "PROJ-1", ("PROJ-2", 0.75))

        groups = await DuplicateDetector(index, threshold=0.75).detect(issues)

        assert [g.keys for g in groups] == [("PROJ-1", "PROJ-2")]

    @pytest.mark.asyncio
    async def test_below_threshold_ignored(self):
        issues = [make_issue("PROJ-1"), make_issue("PROJ-2")]
        index = _indexed("PROJ-1", "PROJ-2")
        _script(index, "PROJ-1", ("PROJ-2", 0.7499))
        _script(index, "PROJ-2", ("PROJ-1", 0.7499))

        assert await DuplicateDetector(index, threshold=0.75).detect(issues) == []

    @pytest.mark.asyncio
    async def test_groups_are_disjoint(self):
        issues = [make_issue(k) for k in ("PROJ-1", "PROJ-2", "PROJ-3", "PROJ-4")]
        index = _indexed(*[i.key for i in issues])
        _script(index, "PROJ-1", ("PROJ-2", 0.95), ("PROJ-3", 0.90))
        _script(index, "PROJ-3", ("PROJ-1", 0.90), ("PROJ-2", 0.88), ("PROJ-4", 0.80))
        _script(index, "PROJ-4", ("PROJ-3", 0.80))

        groups = await DuplicateDetector(index, threshold=0.75).detect(issues)

        assert [g.keys for g in groups] == [("PROJ-1", "PROJ-2"), ("PROJ-3", "PROJ-4")]
        seen = [k for g in groups for k in g.keys]
        assert len(seen) == len(set(seen))

    @pytest.mark.asyncio
    async def test_already_linked_pairs_skipped(self):
        issues = [make_issue("PROJ-1"), make_issue("PROJ-2", duplicate_of=["PROJ-1"]), make_issue("PROJ-3")]
        index = _indexed("PROJ-1", "PROJ-2", "PROJ-3")
        _script(index, "PROJ-1", ("PROJ-2", 0.97), ("PROJ-3", 0.81))

        groups = await DuplicateDetector(index, threshold=0.75).detect(issues)

        assert [g.keys for g in groups] == [("PROJ-1", "PROJ-3")]

    @pytest.mark.asyncio
    async def test_neighbours_outside_input_ignored(self):
        issues = [make_issue("PROJ-1"), make_issue("PROJ-2")]
        index = _indexed("PROJ-1", "PROJ-2", "OTHER-1")
        _script(index, "PROJ-1", ("OTHER-1", 0.99))
        _script(index, "PROJ-2", ("OTHER-1", 0.99))

        assert await DuplicateDetector(index, threshold=0.75).detect(issues) == []

    @pytest.mark.asyncio
    async def test_missing_vector_reported_and_skipped(self):
        issues = [make_issue("PROJ-1"), make_issue("PROJ-2"), make_issue("PROJ-3")]
        index = _indexed("PROJ-1", "PROJ-3")
        _script(index, "PROJ-1", ("PROJ-3", 0.9))

        report = await DuplicateDetector(index, threshold=0.75).run(issues)

        assert report.unindexed_keys == ["PROJ-2"]
        assert report.issues_examined == 3
        assert report.threshold == 0.75
        assert [g.keys for g in report.groups] == [("PROJ-1", "PROJ-3")]

    @pytest.mark.asyncio
    async def test_self_match_never_pairs(self):
        issues = [make_issue("PROJ-1")]
        index = _indexed("PROJ-1")
        _script(index, "PROJ-1")

        assert await DuplicateDetector(index, threshold=0.0).detect(issues) == []

    @pytest.mark.asyncio
    async def test_top_k_passed_to_query(self):
        issues = [make_issue("PROJ-1"), make_issue("PROJ-2")]
        index = _indexed("PROJ-1", "PROJ-2")
        _script(index, "PROJ-1", ("PROJ-2", 0.9))

        groups = await DuplicateDetector(index, threshold=0.75, top_k=1).detect(issues)

        assert groups == []


class TestFindSimilar:
    def _index(self):
        index = FakeIndex()
        # FakeEmbedder.embed("abc") == [3.0, 1.0, 0.5]
        for issue, values in [
            (make_issue("PROJ-1", summary="Login broken", issue_type="Bug", duplicate_of=["PROJ-9"]), [3.0, 1.0, 0.5]),
            (make_issue("PROJ-2", summary="Dark mode"), [0.0, 1.0, 0.0]),
            (make_issue("PROJ-3", summary="Export CSV"), [3.0, 0.0, 0.0]),
        ]:
            index.vectors[issue.key] = build_vector(issue, values)
        return index

    @pytest.mark.asyncio
    async def test_best_matches_first_with_similarity(self):
        issues = await find_similar("abc", FakeEmbedder(), self._index(), top_k=2)

        assert [i.key for i in issues] == ["PROJ-1", "PROJ-3"]
        assert issues[0].similarity == pytest.approx(1.0)
        assert issues[0].similarity > issues[1].similarity
        assert issues[0].summary == "Login broken"
        assert issues[0].issue_type == "Bug"
        assert issues[0].duplicate_link_keys() == {"PROJ-9"}

    @pytest.mark.asyncio
    async def test_blank_text_rejected(self):
        index = self._index()
        with pytest.raises(ValueError):
            await find_similar("   ", FakeEmbedder(), index)

    @pytest.mark.asyncio
    async def test_top_k_must_be_positive(self):
        with pytest.raises(ValueError, match="top_k"):
            await find_similar("abc", FakeEmbedder(), self._index(), top_k=0)

    def test_match_without_metadata(self):
        issue = issue_from_match(IndexMatch(id="PROJ-7", score=0.5))
        assert issue.key == "PROJ-7"
        assert issue.summary == ""
        assert issue.similarity == 0.5

    def test_parent_key_restored(self):
        meta = VectorMetadata(issue_key="PROJ-8", summary="Child", issue_type="Sub-task", parent_key="PROJ-1")
        issue = issue_from_match(IndexMatch(id="PROJ-8", score=0.9, metadata=meta))
        assert issue.parent_key == "PROJ-1"
