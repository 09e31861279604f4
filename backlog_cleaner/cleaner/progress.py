"""Progress record for the bulk indexing pipeline."""

from __future__ import annotations

from backlog_cleaner.errors import IndexingInProgressError
from backlog_cleaner.models import IndexingProgress, IndexingStatus, Issue


class ProgressTracker:
    """Single-writer progress record; readers only ever get snapshots.

    ``begin`` checks and claims the processing state without awaiting, so
    two starts scheduled on the same loop cannot both succeed.
    """

    def __init__(self) -> None:
        self._progress = IndexingProgress()
        self._processed: list[Issue] = []

    @property
    def is_processing(self) -> bool:
        return self._progress.status == IndexingStatus.PROCESSING

    @property
    def processed_issues(self) -> tuple[Issue, ...]:
        """Issues embedded during the most recent run, in completion order."""
        return tuple(self._processed)

    def begin(self) -> None:
        if self.is_processing:
            raise IndexingInProgressError("Indexing is already in progress")
        self._progress = IndexingProgress(status=IndexingStatus.PROCESSING)
        self._processed = []

    def reset(self, total: int) -> None:
        self._progress = IndexingProgress(total=total, status=IndexingStatus.PROCESSING)
        self._processed = []

    def advance(self, issue: Issue) -> None:
        self._processed.append(issue)
        self._progress = self._progress.model_copy(
            update={"completed": self._progress.completed + 1}
        )

    def complete(self) -> None:
        self._progress = self._progress.model_copy(
            update={"status": IndexingStatus.COMPLETED, "error_message": None}
        )

    def fail(self, message: str) -> None:
        self._progress = self._progress.model_copy(
            update={"status": IndexingStatus.ERROR, "error_message": message}
        )

    def snapshot(self) -> IndexingProgress:
        return self._progress.model_copy()
