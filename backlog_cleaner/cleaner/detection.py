"""Pairwise duplicate detection over the vector index."""

from __future__ import annotations

import logging

from backlog_cleaner.cleaner.embeddings import EmbeddingGateway
from backlog_cleaner.cleaner.vector_index import VectorIndex
from backlog_cleaner.config import settings
from backlog_cleaner.models import (
    DUPLICATE_LINK_TYPE,
    DetectionReport,
    DuplicateGroup,
    IndexMatch,
    Issue,
    IssueLink,
    VectorMetadata,
)

logger = logging.getLogger(__name__)


def duplicate_explanation(first: Issue, second: Issue, score: float) -> str:
    return (
        f"Issues '{first.key}' and '{second.key}' are duplicates "
        f"based on a similarity score of {score:.2f}."
    )


class DuplicateDetector:
    """Groups issues into disjoint near-duplicate pairs.

    Issues are visited in input order; each one is paired with its best
    remaining neighbour at or above the threshold. Neighbours must be in
    the input batch, not yet grouped, and not already linked as Duplicate.
    """

    def __init__(
        self,
        index: VectorIndex,
        threshold: float | None = None,
        top_k: int = 0,
    ):
        self.index = index
        self.threshold = settings.similarity_threshold if threshold is None else threshold
        self.top_k = top_k or settings.detection_top_k

    async def detect(self, issues: list[Issue]) -> list[DuplicateGroup]:
        report = await self.run(issues)
        return report.groups

    async def run(self, issues: list[Issue]) -> DetectionReport:
        by_key = {issue.key: issue for issue in issues}
        grouped: set[str] = set()
        groups: list[DuplicateGroup] = []
        unindexed: list[str] = []

        for issue in issues:
            if issue.key in grouped:
                continue

            stored = await self.index.fetch(issue.key)
            if stored is None:
                unindexed.append(issue.key)
                continue

            matches = await self.index.query(stored.values, top_k=self.top_k)
            match = self._first_candidate(issue, matches, by_key, grouped)
            if match is None:
                continue

            partner = by_key[match.id]
            groups.append(
                DuplicateGroup(
                    issues=[issue, partner],
                    explanation=duplicate_explanation(issue, partner, match.score),
                    similarity_score=match.score,
                )
            )
            grouped.update((issue.key, partner.key))

        if unindexed:
            logger.warning(
                "Issues missing from the vector index were skipped",
                extra={"count": len(unindexed), "issue_keys": unindexed},
            )
        logger.info(
            "Duplicate detection finished",
            extra={"issues": len(issues), "groups": len(groups)},
        )
        return DetectionReport(
            groups=groups,
            issues_examined=len(issues),
            unindexed_keys=unindexed,
            threshold=self.threshold,
        )

    def _first_candidate(
        self,
        issue: Issue,
        matches: list[IndexMatch],
        by_key: dict[str, Issue],
        grouped: set[str],
    ) -> IndexMatch | None:
        linked = issue.duplicate_link_keys()
        for match in matches:
            if match.id == issue.key or match.score < self.threshold:
                continue
            if match.id in grouped or match.id not in by_key:
                continue
            # Links may be recorded on either side only
            if match.id in linked or issue.key in by_key[match.id].duplicate_link_keys():
                continue
            return match
        return None


def issue_from_match(match: IndexMatch) -> Issue:
    """Rebuild a display Issue from a stored match, scored by similarity."""
    meta = match.metadata or VectorMetadata(issue_key=match.id)
    return Issue(
        key=match.id,
        summary=meta.summary,
        description=meta.description,
        issue_type=meta.issue_type or "Unknown",
        project_key=meta.project_key,
        parent_key=meta.parent_key or None,
        links=[IssueLink(type_name=DUPLICATE_LINK_TYPE, outward_key=key) for key in meta.duplicate_links],
        similarity=match.score,
    )


async def find_similar(
    text: str,
    embedder: EmbeddingGateway,
    index: VectorIndex,
    top_k: int = 3,
) -> list[Issue]:
    """Indexed issues closest to free text, best match first.

    Blank text is rejected by the embedder with ValueError before any
    request is made.
    """
    if top_k < 1:
        raise ValueError("top_k must be at least 1")
    vector = await embedder.embed(text)
    matches = await index.query(vector, top_k=top_k)
    issues = [issue_from_match(m) for m in sorted(matches, key=lambda m: m.score, reverse=True)]
    logger.info("Similar issue search finished", extra={"matches": len(issues), "top_k": top_k})
    return issues
