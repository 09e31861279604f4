"""Caller-facing operations. Every operation returns an OperationResult payload."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Mapping

from backlog_cleaner.cleaner.detection import DuplicateDetector, find_similar
from backlog_cleaner.cleaner.embeddings import EmbeddingGateway
from backlog_cleaner.cleaner.indexing import IndexingPipeline, reindex_issue
from backlog_cleaner.cleaner.jira_client import JiraClient
from backlog_cleaner.cleaner.progress import ProgressTracker
from backlog_cleaner.cleaner.providers import ClassificationClient
from backlog_cleaner.cleaner.reconcile import reconcile_index
from backlog_cleaner.cleaner.recommender import ActionRecommender, validate_suggestion
from backlog_cleaner.cleaner.resolution import ResolutionExecutor
from backlog_cleaner.cleaner.retry import RetryPolicy
from backlog_cleaner.cleaner.session import ReviewSession
from backlog_cleaner.cleaner.vector_index import VectorIndex
from backlog_cleaner.config import Settings, missing_tracker_fields, require_tracker_config, settings
from backlog_cleaner.errors import BacklogCleanerError, IndexingInProgressError
from backlog_cleaner.models import (
    ActionSuggestion,
    IgnoreSuggestion,
    IndexingStatus,
    Issue,
    NeedsDisposition,
    OperationResult,
    SubtaskDisposition,
)

logger = logging.getLogger(__name__)


def operation(func: Callable[..., Awaitable[OperationResult]]) -> Callable[..., Awaitable[OperationResult]]:
    """Turn raised errors into ``error`` payloads."""

    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> OperationResult:
        try:
            return await func(*args, **kwargs)
        except (BacklogCleanerError, ValueError) as e:
            logger.warning("Operation failed", extra={"operation": func.__name__, "error": str(e)})
            return OperationResult.error(str(e), error_type=type(e).__name__)
        except Exception as e:
            logger.exception("Unexpected failure", extra={"operation": func.__name__})
            return OperationResult.error(f"Unexpected error: {e}", error_type=type(e).__name__)

    return wrapper


def _parse_dispositions(
    dispositions: Mapping[str, str] | str | None,
) -> SubtaskDisposition | dict[str, SubtaskDisposition] | None:
    if dispositions is None or dispositions == "":
        return None
    if isinstance(dispositions, str):
        return SubtaskDisposition(dispositions)
    return {key: SubtaskDisposition(value) for key, value in dispositions.items()}


def _pair_of(suggestion: ActionSuggestion, pair: tuple[str, str] | None) -> tuple[str, str] | None:
    if pair is not None:
        return pair
    if suggestion.action == 1:
        return (suggestion.keep_issue_key, suggestion.delete_issue_key)
    if suggestion.action == 2 and len(suggestion.delete_issue_keys) == 2:
        return (suggestion.delete_issue_keys[0], suggestion.delete_issue_keys[1])
    if suggestion.action == 3:
        return (suggestion.parent_issue_key, suggestion.subtask_issue_key)
    return None


class BacklogCleaner:
    """Wires the pipeline components together for one process.

    Holds the process-lifetime state: the indexing progress record and the
    review session. External clients are built lazily from settings unless
    injected.
    """

    def __init__(
        self,
        config: Settings | None = None,
        progress: ProgressTracker | None = None,
        session: ReviewSession | None = None,
        index: VectorIndex | None = None,
        embedder: EmbeddingGateway | None = None,
        classifier: Any = None,
        tracker_factory: Callable[[], JiraClient] | None = None,
    ):
        self.config = config or settings
        self.progress = progress or ProgressTracker()
        self.session = session or ReviewSession()
        self._index = index
        self._embedder = embedder
        self._classifier = classifier
        self._tracker_factory = tracker_factory or self._default_tracker
        self._indexing_task: asyncio.Task | None = None

    # --- Collaborators ---

    def _default_tracker(self) -> JiraClient:
        c = self.config
        return JiraClient(
            base_url=c.jira_base_url,
            email=c.jira_email,
            api_token=c.jira_api_token,
            page_size=c.jira_page_size,
            timeout_seconds=c.jira_timeout_seconds,
            search_api=c.jira_search_api,
        )

    def _retry_policy(self) -> RetryPolicy:
        c = self.config
        return RetryPolicy(c.retry_attempts, c.retry_initial_delay, c.retry_max_delay)

    @property
    def index(self) -> VectorIndex:
        if self._index is None:
            self._index = VectorIndex.from_settings(self.config)
        return self._index

    @property
    def embedder(self) -> EmbeddingGateway:
        if self._embedder is None:
            c = self.config
            self._embedder = EmbeddingGateway(
                api_key=c.embedding_api_key,
                base_url=c.embedding_base_url,
                model=c.embedding_model,
                timeout_seconds=c.embedding_timeout_seconds,
                retry_policy=self._retry_policy(),
            )
        return self._embedder

    @property
    def classifier(self) -> Any:
        if self._classifier is None:
            self._classifier = ClassificationClient(self.config, self._retry_policy())
        return self._classifier

    async def _get_issues(self, tracker: JiraClient, keys: list[str]) -> list[Issue]:
        return [await tracker.get_issue(key) for key in keys]

    # --- Configuration ---

    @operation
    async def validate_config(self) -> OperationResult:
        missing = missing_tracker_fields(self.config)
        if missing:
            return OperationResult.error("Incomplete Jira configuration.", missing=missing)

        project_key = self.config.project_key
        async with self._tracker_factory() as tracker:
            project = await tracker.get_project(project_key)
        if project is None:
            return OperationResult.error(f"Project '{project_key}' not found.")
        name = project.get("name", project_key)
        return OperationResult.success(f"Project '{name}' found.", project_title=name)

    # --- Indexing ---

    def _claim_indexing(self) -> OperationResult | None:
        """Claim the progress record, or return the rejection payload."""
        try:
            self.progress.begin()
        except IndexingInProgressError:
            return OperationResult.error(
                "Indexing is already in progress.",
                progress=self.progress.snapshot().model_dump(mode="json"),
            )
        return None

    async def _run_indexing(self, embedder: EmbeddingGateway, index: VectorIndex) -> OperationResult:
        try:
            async with self._tracker_factory() as tracker:
                pipeline = IndexingPipeline(
                    tracker,
                    embedder,
                    index,
                    self.progress,
                    concurrency=self.config.index_concurrency,
                    batch_size=self.config.upsert_batch_size,
                )
                snapshot = await pipeline.run_claimed(self.config.project_key)
        except Exception as e:
            if self.progress.is_processing:
                self.progress.fail(str(e))
            raise

        if snapshot.status == IndexingStatus.ERROR:
            return OperationResult.error(
                snapshot.error_message or "Indexing failed.",
                progress=snapshot.model_dump(mode="json"),
            )
        return OperationResult.success(
            f"Indexed {snapshot.completed} of {snapshot.total} issues.",
            progress=snapshot.model_dump(mode="json"),
        )

    @operation
    async def start_indexing(self) -> OperationResult:
        """Run a full indexing pass and wait for it to finish."""
        require_tracker_config(self.config)
        # Config errors for the clients surface before the progress record is claimed.
        embedder, index = self.embedder, self.index
        rejected = self._claim_indexing()
        if rejected is not None:
            return rejected
        return await self._run_indexing(embedder, index)

    @operation
    async def launch_indexing(self) -> OperationResult:
        """Start an indexing pass in the background and return immediately."""
        require_tracker_config(self.config)
        # Config errors for the clients surface before the progress record is claimed.
        embedder, index = self.embedder, self.index
        rejected = self._claim_indexing()
        if rejected is not None:
            return rejected
        self._indexing_task = asyncio.create_task(self._background_indexing(embedder, index))
        return OperationResult.success("Indexing started.")

    async def _background_indexing(self, embedder: EmbeddingGateway, index: VectorIndex) -> None:
        try:
            await self._run_indexing(embedder, index)
        except Exception:
            logger.exception("Background indexing crashed")

    @operation
    async def indexing_progress(self) -> OperationResult:
        snapshot = self.progress.snapshot()
        return OperationResult.success(
            snapshot.status.value,
            progress=snapshot.model_dump(mode="json"),
            processed_keys=[issue.key for issue in self.progress.processed_issues],
        )

    @operation
    async def reindex_issue(self, key: str) -> OperationResult:
        require_tracker_config(self.config)
        async with self._tracker_factory() as tracker:
            issue = await reindex_issue(key, tracker, self.embedder, self.index)
        return OperationResult.success(f"Issue '{issue.key}' re-indexed.", issue_key=issue.key)

    @operation
    async def reconcile_index(self, apply: bool = False) -> OperationResult:
        require_tracker_config(self.config)
        async with self._tracker_factory() as tracker:
            report = await reconcile_index(
                tracker, self.index, self.embedder, self.config.project_key, apply=apply,
            )
        drift = len(report.missing_vectors) + len(report.orphan_vectors)
        return OperationResult.success(
            f"Found {drift} drifted key(s).", report=report.model_dump(mode="json"),
        )

    # --- Detection and recommendation ---

    @operation
    async def detect_duplicates(self, issue_keys: list[str] | None = None) -> OperationResult:
        """Detect pairs among ``issue_keys`` (or the whole backlog).

        Pairs already settled in this session are left out.
        """
        require_tracker_config(self.config)
        async with self._tracker_factory() as tracker:
            if issue_keys:
                issues = await self._get_issues(tracker, issue_keys)
            else:
                issues = await tracker.fetch_all_issues(self.config.project_key)

        detector = DuplicateDetector(
            self.index,
            threshold=self.config.similarity_threshold,
            top_k=self.config.detection_top_k,
        )
        report = await detector.run(issues)
        report.groups = self.session.offer(report.groups)
        return OperationResult.success(
            f"Found {len(report.groups)} duplicate pair(s).", report=report.model_dump(mode="json"),
        )

    @operation
    async def find_similar(self, text: str, top_k: int = 3) -> OperationResult:
        """Indexed issues closest to free text, each carrying its similarity."""
        issues = await find_similar(text, self.embedder, self.index, top_k=top_k)
        return OperationResult.success(
            f"Found {len(issues)} similar issue(s).",
            issues=[issue.model_dump(mode="json") for issue in issues],
        )

    @operation
    async def recommend_action(self, issue_keys: list[str]) -> OperationResult:
        require_tracker_config(self.config)
        if len(issue_keys) < 2:
            raise ValueError("At least two issues are required for an action suggestion.")
        async with self._tracker_factory() as tracker:
            issues = await self._get_issues(tracker, issue_keys)

        suggestion = await ActionRecommender(self.classifier).recommend(issues)
        return OperationResult.success(suggestion.description, suggestion=suggestion.to_wire())

    # --- Resolution ---

    @operation
    async def execute_action(
        self,
        suggestion: dict,
        dispositions: Mapping[str, str] | str | None = None,
        link_duplicates: bool = False,
        pair: tuple[str, str] | None = None,
    ) -> OperationResult:
        require_tracker_config(self.config)
        validated = validate_suggestion(suggestion, issue_keys=set(pair) if pair else None)
        keys = _pair_of(validated, pair)
        tracked = keys is not None and self.session.is_pending(keys)

        if isinstance(validated, IgnoreSuggestion):
            async with self._tracker_factory() as tracker:
                result = await self._executor(tracker).execute(
                    validated, link_duplicates=link_duplicates, pair=keys,
                )
            if tracked:
                self.session.ignore(keys)
            return OperationResult.success(result.message, result=result.model_dump(mode="json"))

        if tracked:
            self.session.begin_merge(keys)
        succeeded = False
        try:
            async with self._tracker_factory() as tracker:
                outcome = await self._executor(tracker).execute(
                    validated,
                    dispositions=_parse_dispositions(dispositions),
                    link_duplicates=link_duplicates,
                    pair=keys,
                )
            succeeded = not isinstance(outcome, NeedsDisposition)
        finally:
            if tracked:
                self.session.finish_merge(keys, succeeded)

        if isinstance(outcome, NeedsDisposition):
            return OperationResult.needs_input(outcome.message, **outcome.model_dump(mode="json", exclude={"message"}))
        return OperationResult.success(outcome.message, result=outcome.model_dump(mode="json"))

    def _executor(self, tracker: JiraClient) -> ResolutionExecutor:
        return ResolutionExecutor(tracker, self.index, self.embedder)

    @operation
    async def delete_issue(
        self, key: str, dispositions: Mapping[str, str] | str | None = None,
    ) -> OperationResult:
        require_tracker_config(self.config)
        async with self._tracker_factory() as tracker:
            outcome = await self._executor(tracker).delete_issue(key, _parse_dispositions(dispositions))

        if isinstance(outcome, NeedsDisposition):
            return OperationResult.needs_input(outcome.message, **outcome.model_dump(mode="json", exclude={"message"}))

        if outcome.deleted_subtasks:
            message = f"Issue '{key}' and its subtasks have been deleted successfully."
        elif outcome.converted_subtasks:
            message = f"Issue '{key}' has been deleted and its subtasks have been converted to separate tasks."
        else:
            message = f"Issue '{key}' has been deleted successfully."
        return OperationResult.success(message, result=outcome.model_dump(mode="json"))

    @operation
    async def link_duplicates(self, source_key: str, duplicate_key: str) -> OperationResult:
        require_tracker_config(self.config)
        async with self._tracker_factory() as tracker:
            await self._executor(tracker).link_duplicates(source_key, duplicate_key)
        return OperationResult.success(
            f"Issues '{source_key}' and '{duplicate_key}' were linked as duplicates.",
        )

    @operation
    async def mark_not_duplicate(self, first_key: str, second_key: str) -> OperationResult:
        self.session.mark_not_duplicate((first_key, second_key))
        return OperationResult.success(
            f"Pair '{first_key}'/'{second_key}' will not be offered again this session.",
        )
