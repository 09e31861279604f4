"""Async Jira REST API (v2) client: the authoritative issue store."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from backlog_cleaner.config import settings
from backlog_cleaner.errors import ConfigError, TrackerError
from backlog_cleaner.models import Issue, IssueLink, SubtaskRef

logger = logging.getLogger(__name__)

ISSUE_FIELDS = (
    "summary",
    "description",
    "issuetype",
    "parent",
    "subtasks",
    "created",
    "issuelinks",
    "project",
)


def backlog_jql(project_key: str) -> str:
    """Every top-level issue of a project, newest first."""
    return (
        f'project = "{project_key}" AND issuetype NOT IN subTaskIssueTypes() '
        "ORDER BY created DESC"
    )


def _parse_datetime(dt_str: str | None) -> datetime | None:
    """Parse Jira's timestamp format (e.g. 2024-01-05T10:00:00.000+0000)."""
    if not dt_str:
        return None
    try:
        return datetime.strptime(dt_str, "%Y-%m-%dT%H:%M:%S.%f%z")
    except ValueError:
        return datetime.fromisoformat(dt_str.replace("Z", "+00:00"))


def _normalize_link(link: dict) -> IssueLink:
    return IssueLink(
        type_name=(link.get("type") or {}).get("name", ""),
        inward_key=(link.get("inwardIssue") or {}).get("key", ""),
        outward_key=(link.get("outwardIssue") or {}).get("key", ""),
    )


def _normalize_issue(issue_data: dict) -> Issue:
    """Transform a raw Jira issue payload into an Issue."""
    fields = issue_data.get("fields") or {}
    issue_type = (fields.get("issuetype") or {}).get("name", "")
    parent = fields.get("parent") or {}

    subtasks = [
        SubtaskRef(
            key=sub.get("key", ""),
            summary=(sub.get("fields") or {}).get("summary", ""),
            issue_type=((sub.get("fields") or {}).get("issuetype") or {}).get("name", "Sub-task"),
        )
        for sub in fields.get("subtasks") or []
    ]

    return Issue(
        key=issue_data.get("key", ""),
        summary=fields.get("summary", "") or "",
        description=fields.get("description", "") or "",
        issue_type=issue_type,
        project_key=(fields.get("project") or {}).get("key", ""),
        parent_key=parent.get("key") or None,
        subtasks=subtasks,
        links=[_normalize_link(link) for link in fields.get("issuelinks") or []],
        created=_parse_datetime(fields.get("created")),
    )


def _error_message(resp: httpx.Response) -> str:
    """Pull Jira's errorMessages / errors out of a failed response."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500]
    if not isinstance(body, dict):
        return resp.text[:500]
    messages = list(body.get("errorMessages") or [])
    messages.extend(f"{k}: {v}" for k, v in (body.get("errors") or {}).items())
    return "; ".join(messages) or resp.text[:500]


class JiraClient:
    """Async context manager wrapping httpx.AsyncClient for the Jira API."""

    def __init__(
        self,
        base_url: str = "",
        email: str = "",
        api_token: str = "",
        page_size: int = 0,
        timeout_seconds: int = 0,
        search_api: str = "",
    ):
        self.base_url = (base_url or settings.jira_base_url).rstrip("/")
        self.email = email or settings.jira_email
        self.api_token = api_token or settings.jira_api_token
        self.page_size = page_size or settings.jira_page_size
        self.timeout_seconds = timeout_seconds or settings.jira_timeout_seconds
        self.search_api = search_api or settings.jira_search_api
        if self.search_api not in ("classic", "jql"):
            raise ConfigError(f"Unknown Jira search API: {self.search_api}")
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> JiraClient:
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/api/2",
            auth=(self.email, self.api_token),
            headers={"Accept": "application/json"},
            timeout=float(self.timeout_seconds),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("JiraClient must be used as async context manager")
        return self._client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            raise TrackerError(f"Jira request timed out: {method} {url}")
        except httpx.TransportError as e:
            raise TrackerError(f"Jira request failed: {e}")
        if resp.status_code >= 400:
            raise TrackerError(
                f"Jira returned {resp.status_code} for {method} {url}: {_error_message(resp)}",
                status_code=resp.status_code,
            )
        return resp

    # --- Reads ---

    async def search(
        self,
        jql: str,
        start_at: int = 0,
        max_results: int = 0,
        fields: tuple[str, ...] = ISSUE_FIELDS,
    ) -> tuple[list[Issue], int]:
        """Run one JQL page against /search. Returns (issues, reported total).

        Jira Cloud has retired /search in favour of /search/jql (see
        search_jql); this offset-paged form is what Jira Server and Data
        Center still serve.
        """
        resp = await self._request(
            "GET",
            "/search",
            params={
                "jql": jql,
                "startAt": str(start_at),
                "maxResults": str(max_results or self.page_size),
                "fields": ",".join(fields),
            },
        )
        body = resp.json()
        issues = [_normalize_issue(item) for item in body.get("issues", [])]
        return issues, int(body.get("total", 0))

    async def search_jql(
        self,
        jql: str,
        next_page_token: str | None = None,
        max_results: int = 0,
        fields: tuple[str, ...] = ISSUE_FIELDS,
    ) -> tuple[list[Issue], str | None]:
        """Run one JQL page against /search/jql.

        Returns (issues, token for the next page); the token is None on the
        last page.
        """
        params = {
            "jql": jql,
            "maxResults": str(max_results or self.page_size),
            "fields": ",".join(fields),
        }
        if next_page_token:
            params["nextPageToken"] = next_page_token
        resp = await self._request("GET", "/search/jql", params=params)
        body = resp.json()
        issues = [_normalize_issue(item) for item in body.get("issues", [])]
        token = body.get("nextPageToken")
        if body.get("isLast") or not token:
            token = None
        return issues, token

    async def fetch_all_issues(self, project_key: str = "") -> list[Issue]:
        """Page through every top-level issue of the project.

        With the classic search API, an empty page before the reported total
        is reached means the result set shifted underneath us and is raised
        as a TrackerError. The jql search API reports no total, so it pages
        until Jira stops handing out tokens.
        """
        project_key = project_key or settings.project_key
        jql = backlog_jql(project_key)
        if self.search_api == "jql":
            issues = await self._fetch_by_token(jql)
        else:
            issues = await self._fetch_by_offset(jql)

        logger.info(
            "Fetched backlog",
            extra={"project_key": project_key, "count": len(issues)},
        )
        return issues

    async def _fetch_by_offset(self, jql: str) -> list[Issue]:
        issues: list[Issue] = []
        total = None

        while total is None or len(issues) < total:
            page, total = await self.search(jql, start_at=len(issues))
            if not page and len(issues) < total:
                raise TrackerError(
                    f"Jira returned an empty page at {len(issues)} of {total} issues"
                )
            issues.extend(page)
        return issues

    async def _fetch_by_token(self, jql: str) -> list[Issue]:
        issues: list[Issue] = []
        seen: set[str] = set()
        token = None

        while True:
            page, token = await self.search_jql(jql, next_page_token=token)
            issues.extend(page)
            if token is None:
                return issues
            if token in seen:
                raise TrackerError(f"Jira repeated page token {token!r} after {len(issues)} issues")
            seen.add(token)

    async def get_issue(self, key: str, fields: tuple[str, ...] = ISSUE_FIELDS) -> Issue:
        resp = await self._request("GET", f"/issue/{key}", params={"fields": ",".join(fields)})
        return _normalize_issue(resp.json())

    async def get_project(self, project_key: str) -> dict | None:
        """Fetch project details. Returns None if the project doesn't exist (404)."""
        try:
            resp = await self._request("GET", f"/project/{project_key}")
        except TrackerError as e:
            if e.status_code == 404:
                return None
            raise
        return resp.json()

    async def get_create_metadata(self, project_key: str) -> list[dict]:
        """Issue types creatable in the project, each with id, name and subtask flag."""
        resp = await self._request(
            "GET",
            "/issue/createmeta",
            params={"projectKeys": project_key, "expand": "projects.issuetypes.fields"},
        )
        projects = resp.json().get("projects", [])
        if not projects:
            raise TrackerError(f"No create metadata for project {project_key}")
        return projects[0].get("issuetypes", [])

    # --- Writes ---

    async def create_issue(self, fields: dict) -> str:
        """Create an issue and return its key."""
        resp = await self._request("POST", "/issue", json={"fields": fields})
        key = resp.json().get("key", "")
        if not key:
            raise TrackerError("Jira created an issue but returned no key")
        logger.info("Created issue", extra={"issue_key": key})
        return key

    async def update_issue(self, key: str, fields: dict) -> None:
        await self._request("PUT", f"/issue/{key}", json={"fields": fields})
        logger.info("Updated issue", extra={"issue_key": key, "fields": sorted(fields)})

    async def delete_issue(self, key: str) -> None:
        """Delete one issue. Subtasks must already be handled by the caller."""
        await self._request("DELETE", f"/issue/{key}", params={"deleteSubtasks": "false"})
        logger.info("Deleted issue", extra={"issue_key": key})

    async def link_issues(self, link_type: str, inward_key: str, outward_key: str) -> None:
        await self._request(
            "POST",
            "/issueLink",
            json={
                "type": {"name": link_type},
                "inwardIssue": {"key": inward_key},
                "outwardIssue": {"key": outward_key},
            },
        )
        logger.info(
            "Linked issues",
            extra={"link_type": link_type, "inward": inward_key, "outward": outward_key},
        )
