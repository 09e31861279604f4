"""Bulk indexing: fetch the backlog, embed every issue, upsert the vectors."""

from __future__ import annotations

import asyncio
import logging

from backlog_cleaner.cleaner.embeddings import EmbeddingGateway
from backlog_cleaner.cleaner.jira_client import JiraClient
from backlog_cleaner.cleaner.progress import ProgressTracker
from backlog_cleaner.cleaner.vector_index import VectorIndex
from backlog_cleaner.config import settings
from backlog_cleaner.errors import BacklogCleanerError, ProviderError, RetryExhaustedError
from backlog_cleaner.models import EmbeddingVector, IndexingProgress, Issue, VectorMetadata

logger = logging.getLogger(__name__)


def build_vector(issue: Issue, values: list[float]) -> EmbeddingVector:
    return EmbeddingVector(id=issue.key, values=values, metadata=VectorMetadata.from_issue(issue))


class IndexingPipeline:
    """Keeps the vector index in step with the tracker's backlog.

    Only one run may be processing at a time; a second start is rejected
    with IndexingInProgressError and leaves the progress record untouched.
    """

    def __init__(
        self,
        tracker: JiraClient,
        embedder: EmbeddingGateway,
        index: VectorIndex,
        progress: ProgressTracker,
        concurrency: int = 0,
        batch_size: int = 0,
    ):
        self.tracker = tracker
        self.embedder = embedder
        self.index = index
        self.progress = progress
        self.concurrency = concurrency or settings.index_concurrency
        self.batch_size = batch_size or settings.upsert_batch_size

    async def run(self, project_key: str = "") -> IndexingProgress:
        """Index the whole backlog and return the final progress snapshot."""
        self.progress.begin()
        return await self.run_claimed(project_key)

    async def run_claimed(self, project_key: str = "") -> IndexingProgress:
        """Like run(), for callers that already claimed the progress record."""
        try:
            issues = await self.tracker.fetch_all_issues(project_key)
            self.progress.reset(len(issues))
            vectors = await self._embed_all(issues)
            if vectors:
                await self.index.upsert_many(vectors, batch_size=self.batch_size)
            self.progress.complete()
            logger.info(
                "Indexing completed",
                extra={"total": len(issues), "indexed": len(vectors)},
            )
        except BacklogCleanerError as e:
            logger.error("Indexing failed", extra={"error": str(e)})
            self.progress.fail(str(e))
        except Exception as e:
            self.progress.fail(f"Unexpected error: {e}")
            raise
        return self.progress.snapshot()

    async def _embed_all(self, issues: list[Issue]) -> list[EmbeddingVector]:
        sem = asyncio.Semaphore(self.concurrency)

        async def _embed_one(issue: Issue) -> EmbeddingVector | None:
            async with sem:
                try:
                    values = await self.embedder.embed_issue(issue)
                except (ProviderError, RetryExhaustedError, ValueError) as e:
                    logger.warning(
                        "Skipping issue that could not be embedded",
                        extra={"issue_key": issue.key, "error": str(e)},
                    )
                    return None
                except Exception:
                    # One issue never aborts the run or outlives it.
                    logger.exception(
                        "Unexpected failure embedding issue, skipping",
                        extra={"issue_key": issue.key},
                    )
                    return None
            self.progress.advance(issue)
            return build_vector(issue, values)

        results = await asyncio.gather(*[_embed_one(issue) for issue in issues])
        return [v for v in results if v is not None]

    async def reindex_issue(self, key: str) -> Issue:
        return await reindex_issue(key, self.tracker, self.embedder, self.index)


async def reindex_issue(
    key: str,
    tracker: JiraClient,
    embedder: EmbeddingGateway,
    index: VectorIndex,
) -> Issue:
    """Re-embed one issue from its current tracker state and upsert it."""
    issue = await tracker.get_issue(key)
    values = await embedder.embed_issue(issue)
    await index.upsert(build_vector(issue, values))
    logger.info("Re-indexed issue", extra={"issue_key": key})
    return issue
