"""Reconciliation sweep between the tracker's backlog and the vector index."""

from __future__ import annotations

import logging

from backlog_cleaner.cleaner.embeddings import EmbeddingGateway
from backlog_cleaner.cleaner.indexing import reindex_issue
from backlog_cleaner.cleaner.jira_client import JiraClient
from backlog_cleaner.cleaner.vector_index import VectorIndex
from backlog_cleaner.errors import BacklogCleanerError
from backlog_cleaner.models import ReconciliationReport

logger = logging.getLogger(__name__)


async def reconcile_index(
    tracker: JiraClient,
    index: VectorIndex,
    embedder: EmbeddingGateway,
    project_key: str = "",
    apply: bool = False,
) -> ReconciliationReport:
    """Compare live issues with stored vectors.

    Reports issues without a vector and vectors without an issue. With
    ``apply`` the orphans are deleted and the missing issues re-indexed;
    a failure on one key is logged and the sweep moves on.
    """
    issues = await tracker.fetch_all_issues(project_key)
    live = {issue.key for issue in issues}
    stored = set(await index.list_ids())

    report = ReconciliationReport(
        tracker_count=len(live),
        index_count=len(stored),
        missing_vectors=[issue.key for issue in issues if issue.key not in stored],
        orphan_vectors=sorted(stored - live),
    )
    if not apply:
        return report

    for key in report.orphan_vectors:
        try:
            await index.delete_one(key)
        except BacklogCleanerError as e:
            logger.warning("Could not remove orphan vector", extra={"issue_key": key, "error": str(e)})
            continue
        report.removed_orphans.append(key)

    for key in report.missing_vectors:
        try:
            await reindex_issue(key, tracker, embedder, index)
        except BacklogCleanerError as e:
            logger.warning("Could not index missing issue", extra={"issue_key": key, "error": str(e)})
            continue
        report.reindexed.append(key)

    logger.info(
        "Reconciliation applied",
        extra={"removed": len(report.removed_orphans), "reindexed": len(report.reindexed)},
    )
    return report
