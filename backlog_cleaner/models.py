"""Pydantic models for the backlog cleaner duplicate pipeline."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# --- Enums ---

class IssueKind(str, Enum):
    EPIC = "epic"
    STORY = "story"
    TASK = "task"
    BUG = "bug"
    SUBTASK = "subtask"
    OTHER = "other"


class IndexingStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class SubtaskDisposition(str, Enum):
    DELETE = "delete"
    CONVERT = "convert"  # drop the parent link and retype as Task


class GroupState(str, Enum):
    PENDING = "pending"
    MERGE_IN_PROGRESS = "merge_in_progress"
    RESOLVED = "resolved"
    MARKED_NOT_DUPLICATE = "marked_not_duplicate"
    IGNORED = "ignored"


class OperationStatus(str, Enum):
    SUCCESS = "success"
    NEEDS_INPUT = "needs_input"
    ERROR = "error"


# Issue type names as Jira instances report them, including the Norwegian locale.
_KIND_ALIASES: dict[str, IssueKind] = {
    "epic": IssueKind.EPIC,
    "story": IssueKind.STORY,
    "historie": IssueKind.STORY,
    "task": IssueKind.TASK,
    "oppgave": IssueKind.TASK,
    "bug": IssueKind.BUG,
    "feil": IssueKind.BUG,
    "sub-task": IssueKind.SUBTASK,
    "subtask": IssueKind.SUBTASK,
    "deloppgave": IssueKind.SUBTASK,
}

SUBTASK_TYPE_NAMES = frozenset(
    name for name, kind in _KIND_ALIASES.items() if kind == IssueKind.SUBTASK
)

DUPLICATE_LINK_TYPE = "Duplicate"


def classify_issue_type(name: str) -> IssueKind:
    """Map a tracker issue-type name onto an IssueKind (case-insensitive)."""
    return _KIND_ALIASES.get(name.strip().lower(), IssueKind.OTHER)


# --- Issues ---

class IssueLink(BaseModel):
    type_name: str
    inward_key: str = ""
    outward_key: str = ""


class SubtaskRef(BaseModel):
    key: str
    summary: str = ""
    issue_type: str = "Sub-task"


class Issue(BaseModel):
    key: str
    summary: str
    description: str = ""
    issue_type: str = "Task"
    project_key: str = ""
    parent_key: str | None = None
    subtasks: list[SubtaskRef] = []
    links: list[IssueLink] = []
    created: datetime | None = None
    similarity: float | None = None  # only set on search results

    @property
    def kind(self) -> IssueKind:
        return classify_issue_type(self.issue_type)

    @model_validator(mode="after")
    def _subtasks_are_leaves(self) -> Issue:
        if self.kind == IssueKind.SUBTASK and self.subtasks:
            raise ValueError(f"Subtask {self.key} cannot have subtasks of its own")
        return self

    def duplicate_link_keys(self) -> set[str]:
        """Keys this issue is already linked to through a Duplicate link, either direction."""
        keys: set[str] = set()
        for link in self.links:
            if link.type_name.lower() != DUPLICATE_LINK_TYPE.lower():
                continue
            for key in (link.inward_key, link.outward_key):
                if key and key != self.key:
                    keys.add(key)
        return keys


# --- Vector index ---

class VectorMetadata(BaseModel):
    """Display payload stored next to each vector (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    issue_key: str
    summary: str = ""
    description: str = ""
    issue_type: str = ""
    parent_key: str = ""
    project_key: str = ""
    duplicate_links: list[str] = []

    @classmethod
    def from_issue(cls, issue: Issue) -> VectorMetadata:
        return cls(
            issue_key=issue.key,
            summary=issue.summary,
            description=issue.description,
            issue_type=issue.issue_type,
            parent_key=issue.parent_key or "",
            project_key=issue.project_key,
            duplicate_links=sorted(issue.duplicate_link_keys()),
        )

    def to_index_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class EmbeddingVector(BaseModel):
    id: str
    values: list[float]
    metadata: VectorMetadata | None = None


class IndexMatch(BaseModel):
    id: str
    score: float
    metadata: VectorMetadata | None = None


# --- Detection ---

class DuplicateGroup(BaseModel):
    issues: list[Issue] = Field(min_length=2, max_length=2)
    explanation: str
    similarity_score: float

    @property
    def keys(self) -> tuple[str, str]:
        return (self.issues[0].key, self.issues[1].key)


class DetectionReport(BaseModel):
    groups: list[DuplicateGroup] = []
    issues_examined: int = 0
    unindexed_keys: list[str] = []  # issues with no stored vector (index drift)
    threshold: float = 0.0


# --- Action suggestions (tagged union on "action") ---

class _SuggestionBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    description: str

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class DeleteOneSuggestion(_SuggestionBase):
    action: Literal[1] = 1
    keep_issue_key: str = Field(min_length=1)
    delete_issue_key: str = Field(min_length=1)


class MergeIntoNewSuggestion(_SuggestionBase):
    action: Literal[2] = 2
    delete_issue_keys: list[str] = Field(min_length=2)
    create_issue_summary: str = Field(min_length=1)
    create_issue_description: str = Field(min_length=1)


class MakeSubtaskSuggestion(_SuggestionBase):
    action: Literal[3] = 3
    parent_issue_key: str = Field(min_length=1)
    subtask_issue_key: str = Field(min_length=1)


class IgnoreSuggestion(_SuggestionBase):
    action: Literal[4] = 4


ActionSuggestion = Annotated[
    Union[DeleteOneSuggestion, MergeIntoNewSuggestion, MakeSubtaskSuggestion, IgnoreSuggestion],
    Field(discriminator="action"),
]

# Wire field names owned by each action, beyond "action" and "description".
ACTION_FIELDS: dict[int, tuple[str, ...]] = {
    1: ("keepIssueKey", "deleteIssueKey"),
    2: ("deleteIssueKeys", "createIssueSummary", "createIssueDescription"),
    3: ("parentIssueKey", "subtaskIssueKey"),
    4: (),
}


# --- Indexing progress ---

class IndexingProgress(BaseModel):
    total: int = 0
    completed: int = 0
    status: IndexingStatus = IndexingStatus.IDLE
    error_message: str | None = None


# --- Resolution ---

class PendingSubtask(BaseModel):
    parent_key: str
    key: str
    summary: str = ""


class NeedsDisposition(BaseModel):
    """Deletion stopped before any mutation: these subtasks need a disposition."""

    issue_keys: list[str] = []
    subtasks: list[PendingSubtask] = []
    message: str = ""


class DeletionResult(BaseModel):
    issue_key: str
    deleted_subtasks: list[str] = []
    converted_subtasks: list[str] = []
    vector_removed: bool = True


class ResolutionResult(BaseModel):
    action: int
    created_keys: list[str] = []
    deleted_keys: list[str] = []
    converted_keys: list[str] = []
    linked_keys: list[str] = []
    message: str = ""


class ReconciliationReport(BaseModel):
    tracker_count: int = 0
    index_count: int = 0
    missing_vectors: list[str] = []  # live issues without a vector
    orphan_vectors: list[str] = []  # vectors whose issue no longer exists
    removed_orphans: list[str] = []
    reindexed: list[str] = []


# --- Caller-facing payload ---

class OperationResult(BaseModel):
    status: OperationStatus
    message: str = ""
    data: dict[str, Any] = {}

    @classmethod
    def success(cls, message: str = "", **data: Any) -> OperationResult:
        return cls(status=OperationStatus.SUCCESS, message=message, data=data)

    @classmethod
    def needs_input(cls, message: str, **data: Any) -> OperationResult:
        return cls(status=OperationStatus.NEEDS_INPUT, message=message, data=data)

    @classmethod
    def error(cls, message: str, **data: Any) -> OperationResult:
        return cls(status=OperationStatus.ERROR, message=message, data=data)
