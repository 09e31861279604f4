"""Resolution executor: apply a suggested action to the tracker and the vector index."""

from __future__ import annotations

import logging
from typing import Mapping, Union

from backlog_cleaner.cleaner.embeddings import EmbeddingGateway
from backlog_cleaner.cleaner.indexing import reindex_issue
from backlog_cleaner.cleaner.jira_client import JiraClient
from backlog_cleaner.cleaner.vector_index import VectorIndex
from backlog_cleaner.errors import BacklogCleanerError, ResolutionError, VectorIndexError
from backlog_cleaner.models import (
    DUPLICATE_LINK_TYPE,
    SUBTASK_TYPE_NAMES,
    ActionSuggestion,
    DeleteOneSuggestion,
    DeletionResult,
    IgnoreSuggestion,
    Issue,
    IssueKind,
    MakeSubtaskSuggestion,
    MergeIntoNewSuggestion,
    NeedsDisposition,
    PendingSubtask,
    ResolutionResult,
    SubtaskDisposition,
)

logger = logging.getLogger(__name__)

Dispositions = Union[SubtaskDisposition, Mapping[str, SubtaskDisposition], None]

SUBTASK_PARENT_KINDS = frozenset({IssueKind.EPIC, IssueKind.STORY, IssueKind.TASK, IssueKind.BUG})


def _disposition_for(key: str, dispositions: Dispositions) -> SubtaskDisposition | None:
    if dispositions is None:
        return None
    if isinstance(dispositions, SubtaskDisposition):
        return dispositions
    value = dispositions.get(key)
    return SubtaskDisposition(value) if value is not None else None


def pending_subtasks(issues: list[Issue], dispositions: Dispositions) -> list[PendingSubtask]:
    """Subtasks of ``issues`` that have no disposition yet."""
    return [
        PendingSubtask(parent_key=issue.key, key=sub.key, summary=sub.summary)
        for issue in issues
        for sub in issue.subtasks
        if _disposition_for(sub.key, dispositions) is None
    ]


def _needs_disposition(issues: list[Issue], pending: list[PendingSubtask]) -> NeedsDisposition:
    keys = sorted({p.parent_key for p in pending}, key=[i.key for i in issues].index)
    names = ", ".join(f"'{k}'" for k in keys)
    return NeedsDisposition(
        issue_keys=keys,
        subtasks=pending,
        message=(
            f"Issue {names} has subtasks. Choose 'delete' or 'convert' for each subtask."
            if len(keys) == 1
            else f"Issues {names} have subtasks. Choose 'delete' or 'convert' for each subtask."
        ),
    )


def pick_subtask_type_id(issue_types: list[dict]) -> str:
    """Pick the project's subtask issue type from create metadata.

    Prefers a type named like a subtask (any locale variant, any case) and
    falls back to the first type the tracker flags as a subtask type.
    """
    for issue_type in issue_types:
        if issue_type.get("name", "").strip().lower() in SUBTASK_TYPE_NAMES:
            return str(issue_type["id"])
    for issue_type in issue_types:
        if issue_type.get("subtask") is True:
            return str(issue_type["id"])
    raise ResolutionError(
        "No subtask issue type found in the project. "
        "Ensure that the project has at least one subtask issue type."
    )


class ResolutionExecutor:
    """Mutates the tracker first, then keeps the vector index in step.

    The two stores are not transactional. Tracker failures abort the action;
    index failures after a committed tracker change are logged and left for
    the reconciliation sweep.
    """

    def __init__(
        self,
        tracker: JiraClient,
        index: VectorIndex,
        embedder: EmbeddingGateway,
        new_issue_type: str = "Task",
    ):
        self.tracker = tracker
        self.index = index
        self.embedder = embedder
        self.new_issue_type = new_issue_type

    async def execute(
        self,
        suggestion: ActionSuggestion,
        dispositions: Dispositions = None,
        link_duplicates: bool = False,
        pair: tuple[str, str] | None = None,
    ) -> ResolutionResult | NeedsDisposition:
        """Apply one action.

        ``link_duplicates`` links merged issues to the new one (action 2) or,
        given ``pair``, records the ignored pair as Duplicate (action 4).
        """
        if isinstance(suggestion, DeleteOneSuggestion):
            return await self._delete_one(suggestion, dispositions)
        if isinstance(suggestion, MergeIntoNewSuggestion):
            return await self._merge_into_new(suggestion, dispositions, link_duplicates)
        if isinstance(suggestion, MakeSubtaskSuggestion):
            return await self._make_subtask(suggestion)
        if isinstance(suggestion, IgnoreSuggestion):
            return await self._ignore(link_duplicates, pair)
        raise ResolutionError(f"Unsupported action: {suggestion!r}")

    # --- Deletion sub-protocol ---

    async def delete_issue(
        self, key: str, dispositions: Dispositions = None,
    ) -> DeletionResult | NeedsDisposition:
        """Delete one issue, handling its subtasks first.

        Without a disposition for every subtask nothing is mutated and a
        NeedsDisposition listing them is returned instead.
        """
        issue = await self.tracker.get_issue(key)
        pending = pending_subtasks([issue], dispositions)
        if pending:
            return _needs_disposition([issue], pending)
        return await self._delete_resolved(issue, dispositions)

    async def _delete_resolved(self, issue: Issue, dispositions: Dispositions) -> DeletionResult:
        result = DeletionResult(issue_key=issue.key)

        for sub in issue.subtasks:
            if _disposition_for(sub.key, dispositions) == SubtaskDisposition.DELETE:
                await self.tracker.delete_issue(sub.key)
                await self._drop_vector(sub.key)
                result.deleted_subtasks.append(sub.key)
            else:
                await self.tracker.update_issue(
                    sub.key, {"parent": None, "issuetype": {"name": self.new_issue_type}},
                )
                await self._reindex(sub.key)
                result.converted_subtasks.append(sub.key)

        await self.tracker.delete_issue(issue.key)
        result.vector_removed = await self._drop_vector(issue.key)
        return result

    async def _drop_vector(self, key: str) -> bool:
        try:
            await self.index.delete_one(key)
        except VectorIndexError as e:
            logger.warning(
                "Issue deleted but its vector could not be removed",
                extra={"issue_key": key, "error": str(e)},
            )
            return False
        return True

    async def _reindex(self, key: str) -> bool:
        try:
            await reindex_issue(key, self.tracker, self.embedder, self.index)
        except BacklogCleanerError as e:
            logger.warning(
                "Issue changed but could not be re-indexed",
                extra={"issue_key": key, "error": str(e)},
            )
            return False
        return True

    # --- Actions ---

    async def _delete_one(
        self, suggestion: DeleteOneSuggestion, dispositions: Dispositions,
    ) -> ResolutionResult | NeedsDisposition:
        outcome = await self.delete_issue(suggestion.delete_issue_key, dispositions)
        if isinstance(outcome, NeedsDisposition):
            return outcome
        return ResolutionResult(
            action=1,
            deleted_keys=[outcome.issue_key, *outcome.deleted_subtasks],
            converted_keys=outcome.converted_subtasks,
            message=(
                f"Issue '{outcome.issue_key}' was deleted; "
                f"'{suggestion.keep_issue_key}' was kept."
            ),
        )

    async def _merge_into_new(
        self,
        suggestion: MergeIntoNewSuggestion,
        dispositions: Dispositions,
        link_duplicates: bool,
    ) -> ResolutionResult | NeedsDisposition:
        olds = [await self.tracker.get_issue(key) for key in suggestion.delete_issue_keys]
        pending = pending_subtasks(olds, dispositions)
        if pending:
            return _needs_disposition(olds, pending)

        project_key = olds[0].project_key
        new_key = await self.tracker.create_issue({
            "project": {"key": project_key},
            "summary": suggestion.create_issue_summary,
            "description": suggestion.create_issue_description,
            "issuetype": {"name": self.new_issue_type},
        })
        await self._reindex(new_key)

        result = ResolutionResult(action=2, created_keys=[new_key])
        if link_duplicates:
            for old in olds:
                await self.tracker.link_issues(DUPLICATE_LINK_TYPE, new_key, old.key)
                result.linked_keys.append(old.key)

        for old in olds:
            outcome = await self._delete_resolved(old, dispositions)
            result.deleted_keys.extend([outcome.issue_key, *outcome.deleted_subtasks])
            result.converted_keys.extend(outcome.converted_subtasks)

        result.message = (
            f"Created '{new_key}' and deleted "
            + ", ".join(f"'{o.key}'" for o in olds)
            + "."
        )
        return result

    async def _make_subtask(self, suggestion: MakeSubtaskSuggestion) -> ResolutionResult:
        parent = await self.tracker.get_issue(suggestion.parent_issue_key)
        original = await self.tracker.get_issue(suggestion.subtask_issue_key)

        if parent.project_key != original.project_key:
            raise ResolutionError(
                f"Issues '{parent.key}' and '{original.key}' belong to different projects."
            )
        if parent.kind not in SUBTASK_PARENT_KINDS:
            raise ResolutionError(
                f"The parent issue type '{parent.issue_type}' does not support subtasks."
            )

        issue_types = await self.tracker.get_create_metadata(parent.project_key)
        subtask_type_id = pick_subtask_type_id(issue_types)

        # Create must succeed before anything is moved or deleted.
        new_key = await self.tracker.create_issue({
            "project": {"key": parent.project_key},
            "parent": {"key": parent.key},
            "summary": original.summary,
            "description": original.description,
            "issuetype": {"id": subtask_type_id},
        })

        # Subtasks cannot nest, so the original's subtasks move up to the parent.
        moved = []
        for sub in original.subtasks:
            await self.tracker.update_issue(sub.key, {"parent": {"key": parent.key}})
            moved.append(sub.key)

        await self.tracker.delete_issue(original.key)
        # Subtasks are outside the indexed backlog, so the new one gets no vector.
        await self._drop_vector(original.key)

        message = (
            f"Subtask '{new_key}' created under '{parent.key}' "
            f"and the original issue '{original.key}' was deleted."
        )
        if moved:
            message += f" Moved {len(moved)} subtask(s) under '{parent.key}'."
        return ResolutionResult(
            action=3,
            created_keys=[new_key],
            deleted_keys=[original.key],
            message=message,
        )

    async def _ignore(self, link_duplicates: bool, pair: tuple[str, str] | None) -> ResolutionResult:
        if not link_duplicates:
            return ResolutionResult(action=4, message="Issues left unchanged.")
        if pair is None:
            raise ResolutionError("Linking ignored issues as duplicates needs the issue pair.")
        await self.link_duplicates(*pair)
        return ResolutionResult(
            action=4,
            linked_keys=list(pair),
            message=f"Issues '{pair[0]}' and '{pair[1]}' were linked as duplicates.",
        )

    async def link_duplicates(self, source_key: str, duplicate_key: str) -> None:
        await self.tracker.link_issues(DUPLICATE_LINK_TYPE, source_key, duplicate_key)
