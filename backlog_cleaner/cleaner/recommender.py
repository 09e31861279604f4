"""Action recommender: ask the classification model how to resolve a duplicate pair."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from pydantic import TypeAdapter, ValidationError

from backlog_cleaner.errors import SuggestionFormatError, SuggestionValidationError
from backlog_cleaner.models import ACTION_FIELDS, ActionSuggestion, Issue

logger = logging.getLogger(__name__)

_SUGGESTION_ADAPTER: TypeAdapter[Any] = TypeAdapter(ActionSuggestion)

_ALLOWED_FIELDS = frozenset({"action", "description"}).union(
    *(set(fields) for fields in ACTION_FIELDS.values())
)

SYSTEM_PROMPT = (
    "You are a project management assistant that resolves duplicate Jira issues. "
    "Respond with a single JSON object and nothing else."
)

_PROMPT_TEMPLATE = """Analyze the following Jira issues for detail, clarity, and completeness based on these hierarchy rules.

### Hierarchy Rules:
- Epics can have Tasks, Stories, and Bugs as child issues.
- Tasks, Stories, and Bugs can have Subtasks as child issues.
- Subtasks cannot have child issues.

### Possible Actions:
1. Delete One Issue and Keep the Other: remove the least descriptive or redundant issue and keep the more descriptive one.
2. Delete Both Issues and Create a New Issue: remove both issues and create a new, better-formulated issue.
3. Make One Issue a Subtask of the Other: convert one issue into a subtask under the other issue.
4. Ignore Issues: suggest ignoring the duplication; the user may still mark them as duplicates in Jira.

Prioritize actions 1 through 3. Use action 4 only if none of the first three apply.
Never suggest action 3 with a Subtask or an Epic as the parent.

### Response fields (only include the fields of the chosen action):
- Action 1: "keepIssueKey", "deleteIssueKey"
- Action 2: "deleteIssueKeys" (at least two keys), "createIssueSummary", "createIssueDescription"
- Action 3: "parentIssueKey", "subtaskIssueKey"
- Action 4: no extra fields

Every response has "action" (1, 2, 3 or 4) and "description" (what to do and why).

### Issues:
{issues}

Ensure the JSON object is the only output."""


class CompletionClient(Protocol):
    async def complete(self, prompt: str, system_prompt: str = "") -> str: ...


def _describe_issue(issue: Issue) -> str:
    lines = [
        f"- Key: {issue.key}",
        f"  Type: {issue.issue_type or 'Unknown'}",
        f"  Summary: {issue.summary}",
        f"  Description: {issue.description or '(none)'}",
    ]
    if issue.subtasks:
        subtasks = ", ".join(f"{s.key} ({s.summary})" for s in issue.subtasks)
        lines.append(f"  Subtasks: {subtasks}")
    return "\n".join(lines)


def build_prompt(issues: list[Issue]) -> str:
    return _PROMPT_TEMPLATE.format(issues="\n".join(_describe_issue(i) for i in issues))


def extract_json_object(text: str) -> dict:
    """Parse the first balanced ``{...}`` object in ``text``.

    Braces inside JSON strings (including escaped quotes) are ignored
    while balancing. Raises SuggestionFormatError if nothing parses.
    """
    start = text.find("{")
    if start < 0:
        raise SuggestionFormatError("Failed to extract JSON from response.")

    depth = 0
    in_string = False
    escaped = False
    end = -1
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                end = pos + 1
                break

    if end < 0:
        raise SuggestionFormatError("Failed to extract JSON from response: unbalanced braces.")

    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError as e:
        raise SuggestionFormatError(f"Failed to parse suggestion JSON: {e}") from e
    if not isinstance(data, dict):
        raise SuggestionFormatError("Suggestion JSON is not an object.")
    return data


def _is_present(value: Any) -> bool:
    return value is not None and value != "" and value != []


def validate_suggestion(data: dict, issue_keys: set[str] | None = None) -> ActionSuggestion:
    """Check a raw suggestion against the per-action field contract.

    Each action requires its own fields and forbids every other action's.
    When ``issue_keys`` is given, referenced keys must come from that set.
    """
    for field in data:
        if field not in _ALLOWED_FIELDS:
            raise SuggestionValidationError(f"Unknown field '{field}' in suggestion.", field=field)

    action = data.get("action")
    if isinstance(action, bool) or not isinstance(action, int) or action not in ACTION_FIELDS:
        raise SuggestionValidationError(f"Invalid action number: {action}", field="action")

    if not isinstance(data.get("description"), str):
        raise SuggestionValidationError("description must be provided.", field="description")

    for field in ACTION_FIELDS[action]:
        value = data.get(field)
        if field == "deleteIssueKeys":
            if not isinstance(value, list) or len(value) < 2:
                raise SuggestionValidationError(
                    "At least two deleteIssueKeys must be provided for Action 2.", field=field
                )
        elif not _is_present(value):
            raise SuggestionValidationError(
                f"{field} must be provided for Action {action}.", field=field
            )

    for other_action, fields in ACTION_FIELDS.items():
        if other_action == action:
            continue
        for field in fields:
            if field in data:
                raise SuggestionValidationError(
                    f"{field} should not be provided for Action {action}.", field=field
                )

    try:
        suggestion = _SUGGESTION_ADAPTER.validate_python(data)
    except ValidationError as e:
        raise SuggestionValidationError(f"Invalid suggestion: {e}") from e

    _check_keys(suggestion, issue_keys)
    return suggestion


def _check_keys(suggestion: ActionSuggestion, issue_keys: set[str] | None) -> None:
    wire = suggestion.to_wire()
    if suggestion.action == 1 and suggestion.keep_issue_key == suggestion.delete_issue_key:
        raise SuggestionValidationError(
            "keepIssueKey and deleteIssueKey must be different issues.", field="deleteIssueKey"
        )
    if suggestion.action == 3 and suggestion.parent_issue_key == suggestion.subtask_issue_key:
        raise SuggestionValidationError(
            "parentIssueKey and subtaskIssueKey must be different issues.", field="subtaskIssueKey"
        )
    if suggestion.action == 2 and len(set(suggestion.delete_issue_keys)) != len(suggestion.delete_issue_keys):
        raise SuggestionValidationError(
            "deleteIssueKeys must not repeat a key.", field="deleteIssueKeys"
        )

    if issue_keys is None:
        return
    for field in ACTION_FIELDS[suggestion.action]:
        if field in ("createIssueSummary", "createIssueDescription"):
            continue
        value = wire[field]
        for key in value if isinstance(value, list) else [value]:
            if key not in issue_keys:
                raise SuggestionValidationError(
                    f"{field} references {key}, which is not one of the issues under review.",
                    field=field,
                )


class ActionRecommender:
    """Builds the prompt, calls the model once (with transport retries), validates."""

    def __init__(self, client: CompletionClient):
        self.client = client

    async def recommend(self, issues: list[Issue]) -> ActionSuggestion:
        if len(issues) < 2:
            raise ValueError("At least two issues are required for an action suggestion.")

        text = await self.client.complete(build_prompt(issues), SYSTEM_PROMPT)
        suggestion = validate_suggestion(
            extract_json_object(text),
            issue_keys={issue.key for issue in issues},
        )
        logger.info(
            "Action suggestion generated",
            extra={"action": suggestion.action, "issue_keys": [i.key for i in issues]},
        )
        return suggestion
