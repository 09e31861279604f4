"""Shared test configuration and in-memory fakes for the external stores."""

from __future__ import annotations

import math

import pytest

from backlog_cleaner.config import Settings
from backlog_cleaner.errors import ProviderError, TrackerError, VectorIndexError
from backlog_cleaner.models import (
    EmbeddingVector,
    IndexMatch,
    Issue,
    IssueLink,
    SubtaskRef,
)


def make_issue(
    key: str,
    summary: str = "",
    description: str = "",
    issue_type: str = "Task",
    project_key: str = "PROJ",
    subtasks: list[str] | None = None,
    duplicate_of: list[str] | None = None,
    parent_key: str | None = None,
) -> Issue:
    return Issue(
        key=key,
        summary=summary or f"Summary of {key}",
        description=description,
        issue_type=issue_type,
        project_key=project_key,
        parent_key=parent_key,
        subtasks=[SubtaskRef(key=s, summary=f"Subtask {s}") for s in subtasks or []],
        links=[
            IssueLink(type_name="Duplicate", outward_key=other) for other in duplicate_of or []
        ],
    )


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    return dot / norm if norm else 0.0


class FakeTracker:
    """In-memory stand-in for JiraClient. Records every mutation."""

    def __init__(self, issues: list[Issue] | None = None, project_name: str = "Project"):
        self.issues: dict[str, Issue] = {i.key: i for i in issues or []}
        self.project_name = project_name
        self.mutations: list[tuple] = []
        self.issue_types = [
            {"id": "10001", "name": "Task", "subtask": False},
            {"id": "10003", "name": "Sub-task", "subtask": True},
        ]
        self.fail_create = False
        self.fail_fetch = False
        self._next_id = 900

    async def __aenter__(self) -> FakeTracker:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None

    async def fetch_all_issues(self, project_key: str = "") -> list[Issue]:
        if self.fail_fetch:
            raise TrackerError("Jira returned 500 for GET /search: boom", status_code=500)
        return [i for i in self.issues.values() if i.parent_key is None]

    async def get_issue(self, key: str, fields=None) -> Issue:
        if key not in self.issues:
            raise TrackerError(f"Jira returned 404 for GET /issue/{key}: Issue does not exist", status_code=404)
        return self.issues[key]

    async def get_project(self, project_key: str) -> dict | None:
        if project_key != "PROJ":
            return None
        return {"key": project_key, "name": self.project_name}

    async def get_create_metadata(self, project_key: str) -> list[dict]:
        return self.issue_types

    async def create_issue(self, fields: dict) -> str:
        if self.fail_create:
            raise TrackerError("Jira returned 400 for POST /issue: summary: required", status_code=400)
        self._next_id += 1
        key = f"{fields['project']['key']}-{self._next_id}"
        parent = (fields.get("parent") or {}).get("key")
        issue_type = fields["issuetype"].get("name") or (
            "Sub-task" if fields["issuetype"].get("id") == "10003" else "Task"
        )
        self.issues[key] = Issue(
            key=key,
            summary=fields["summary"],
            description=fields.get("description") or "",
            issue_type=issue_type,
            project_key=fields["project"]["key"],
            parent_key=parent,
        )
        if parent:
            owner = self.issues[parent]
            owner.subtasks.append(SubtaskRef(key=key, summary=fields["summary"]))
        self.mutations.append(("create", key, fields))
        return key

    async def update_issue(self, key: str, fields: dict) -> None:
        self.mutations.append(("update", key, fields))
        issue = self.issues[key]
        if "parent" in fields:
            new_parent = (fields["parent"] or {}).get("key")
            if issue.parent_key and issue.parent_key in self.issues:
                old = self.issues[issue.parent_key]
                old.subtasks = [s for s in old.subtasks if s.key != key]
            issue.parent_key = new_parent
            if new_parent:
                self.issues[new_parent].subtasks.append(SubtaskRef(key=key, summary=issue.summary))
        if "issuetype" in fields:
            issue.issue_type = fields["issuetype"]["name"]

    async def delete_issue(self, key: str) -> None:
        issue = self.issues.get(key)
        if issue is None:
            raise TrackerError(f"Jira returned 404 for DELETE /issue/{key}", status_code=404)
        if issue.subtasks:
            raise TrackerError(f"Jira returned 400 for DELETE /issue/{key}: has subtasks", status_code=400)
        if issue.parent_key and issue.parent_key in self.issues:
            parent = self.issues[issue.parent_key]
            parent.subtasks = [s for s in parent.subtasks if s.key != key]
        del self.issues[key]
        self.mutations.append(("delete", key))

    async def link_issues(self, link_type: str, inward_key: str, outward_key: str) -> None:
        self.mutations.append(("link", link_type, inward_key, outward_key))


class FakeIndex:
    """In-memory stand-in for VectorIndex with cosine-similarity queries.

    ``scripted`` maps an issue key to the matches its query should return,
    for tests that need exact scores.
    """

    def __init__(self):
        self.vectors: dict[str, EmbeddingVector] = {}
        self.scripted: dict[str, list[IndexMatch]] = {}
        self.batches: list[list[str]] = []
        self.deleted: list[str] = []
        self.fail_batch: int | None = None
        self.fail_delete = False

    async def upsert(self, vector: EmbeddingVector) -> None:
        await self.upsert_many([vector], batch_size=1)

    async def upsert_many(self, vectors: list[EmbeddingVector], batch_size: int = 100) -> int:
        for batch_index, start in enumerate(range(0, len(vectors), batch_size)):
            batch = vectors[start:start + batch_size]
            if batch_index == self.fail_batch:
                raise VectorIndexError(f"Upsert of batch {batch_index} failed", batch_index=batch_index)
            for v in batch:
                self.vectors[v.id] = v
            self.batches.append([v.id for v in batch])
        return len(vectors)

    async def fetch(self, vector_id: str) -> EmbeddingVector | None:
        return self.vectors.get(vector_id)

    async def query(self, vector: list[float], top_k: int = 5, include_metadata: bool = True) -> list[IndexMatch]:
        for key, stored in self.vectors.items():
            if stored.values == vector and key in self.scripted:
                return self.scripted[key][:top_k]
        scored = [
            IndexMatch(id=key, score=_cosine(vector, stored.values), metadata=stored.metadata)
            for key, stored in self.vectors.items()
        ]
        scored.sort(key=lambda m: m.score, reverse=True)
        return scored[:top_k]

    async def delete_one(self, vector_id: str) -> None:
        if self.fail_delete:
            raise VectorIndexError(f"Delete of {vector_id} failed")
        self.vectors.pop(vector_id, None)
        self.deleted.append(vector_id)

    async def list_ids(self) -> list[str]:
        return list(self.vectors)


class FakeEmbedder:
    """Deterministic embeddings: a fixed vector per issue key, else by text length."""

    def __init__(self, by_key: dict[str, list[float]] | None = None, failing: set[str] | None = None):
        self.by_key = by_key or {}
        self.failing = failing or set()
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        if not text.strip():
            raise ValueError("Cannot embed empty text")
        return [float(len(text)), 1.0, 0.5]

    async def embed_issue(self, issue: Issue) -> list[float]:
        self.calls.append(issue.key)
        if issue.key in self.failing:
            raise ProviderError("Embedding API returned 400: bad input", status_code=400)
        if issue.key in self.by_key:
            return self.by_key[issue.key]
        return await self.embed(f"{issue.summary}\n{issue.description}")


class FakeClassifier:
    def __init__(self, response: str):
        self.response = response
        self.prompts: list[str] = []

    async def complete(self, prompt: str, system_prompt: str = "") -> str:
        self.prompts.append(prompt)
        return self.response


@pytest.fixture
def test_settings():
    return Settings(
        jira_base_url="https://example.atlassian.net",
        jira_email="dev@example.com",
        jira_api_token="token",
        project_key="PROJ",
        embedding_api_key="sk-embed",
        llm_api_key="sk-test",
        pinecone_api_key="pc-key",
        index_concurrency=3,
        upsert_batch_size=2,
    )


@pytest.fixture
def tracker():
    return FakeTracker()


@pytest.fixture
def index():
    return FakeIndex()


@pytest.fixture
def embedder():
    return FakeEmbedder()
