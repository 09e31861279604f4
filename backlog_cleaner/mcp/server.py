"""FastMCP server exposing backlog cleaner tools."""

import json

from mcp.server.fastmcp import FastMCP

from backlog_cleaner.cleaner.service import BacklogCleaner
from backlog_cleaner.models import OperationResult

mcp = FastMCP("backlog-cleaner")

# One cleaner per server process: it owns the indexing progress and review session.
_cleaner: BacklogCleaner | None = None


def get_cleaner() -> BacklogCleaner:
    global _cleaner
    if _cleaner is None:
        _cleaner = BacklogCleaner()
    return _cleaner


@mcp.tool()
async def validate_config_tool() -> str:
    """Check that the Jira configuration is complete and the project exists."""
    result = await get_cleaner().validate_config()
    return result.model_dump_json(indent=2)


@mcp.tool()
async def start_indexing_tool() -> str:
    """Start embedding every backlog issue into the vector index.

    Runs in the background; poll indexing_progress_tool for status.
    A second start while a run is processing is rejected.
    """
    result = await get_cleaner().launch_indexing()
    return result.model_dump_json(indent=2)


@mcp.tool()
async def indexing_progress_tool() -> str:
    """Report the indexing run's status, counters and processed issue keys."""
    result = await get_cleaner().indexing_progress()
    return result.model_dump_json(indent=2)


@mcp.tool()
async def detect_duplicates_tool(issue_keys: list[str] | None = None) -> str:
    """Find near-duplicate issue pairs by vector similarity.

    Each issue appears in at most one pair. Pairs already resolved, ignored
    or marked as not duplicates in this session are left out.

    Args:
        issue_keys: Issues to check (e.g. ["PROJ-1", "PROJ-2"]). Empty = whole backlog.
    """
    result = await get_cleaner().detect_duplicates(issue_keys or None)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def find_similar_tool(text: str, top_k: int = 3) -> str:
    """Find indexed issues most similar to a piece of free text.

    Useful before filing a new issue: each result carries its similarity
    score, best match first.

    Args:
        text: Summary or description to search with.
        top_k: Number of issues to return (default 3).
    """
    result = await get_cleaner().find_similar(text, top_k=top_k)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def recommend_action_tool(issue_keys: list[str]) -> str:
    """Suggest how to resolve a duplicate pair.

    Actions: 1 delete one and keep the other, 2 merge both into a new issue,
    3 make one a subtask of the other, 4 ignore.

    Args:
        issue_keys: At least two issue keys.
    """
    result = await get_cleaner().recommend_action(issue_keys)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def execute_action_tool(
    suggestion_json: str,
    first_key: str = "",
    second_key: str = "",
    subtask_disposition: str = "",
    link_duplicates: bool = False,
) -> str:
    """Apply a suggested resolution action to the tracker and the vector index.

    If an issue to delete has subtasks and no disposition is given, nothing
    is changed and a needs_input result lists the subtasks.

    Args:
        suggestion_json: The suggestion object as returned by recommend_action_tool.
        first_key: First issue of the reviewed pair (needed to link ignored pairs).
        second_key: Second issue of the reviewed pair.
        subtask_disposition: "delete" or "convert" for subtasks of deleted issues.
        link_duplicates: Link the issues as duplicates (actions 2 and 4).
    """
    pair = (first_key, second_key) if first_key and second_key else None
    try:
        suggestion = json.loads(suggestion_json)
    except json.JSONDecodeError as e:
        return OperationResult.error(f"Invalid suggestion JSON: {e}").model_dump_json(indent=2)
    result = await get_cleaner().execute_action(
        suggestion,
        dispositions=subtask_disposition or None,
        link_duplicates=link_duplicates,
        pair=pair,
    )
    return result.model_dump_json(indent=2)


@mcp.tool()
async def delete_issue_tool(issue_key: str, subtask_disposition: str = "") -> str:
    """Delete an issue and its vector.

    Args:
        issue_key: Issue to delete.
        subtask_disposition: "delete" or "convert" (promote to Task) for its subtasks.
    """
    result = await get_cleaner().delete_issue(issue_key, subtask_disposition or None)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def link_duplicates_tool(source_key: str, duplicate_key: str) -> str:
    """Link two issues with Jira's Duplicate link type."""
    result = await get_cleaner().link_duplicates(source_key, duplicate_key)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def mark_not_duplicate_tool(first_key: str, second_key: str) -> str:
    """Dismiss a detected pair for the rest of this session."""
    result = await get_cleaner().mark_not_duplicate(first_key, second_key)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def reindex_issue_tool(issue_key: str) -> str:
    """Re-embed one issue from its current Jira state."""
    result = await get_cleaner().reindex_issue(issue_key)
    return result.model_dump_json(indent=2)


@mcp.tool()
async def reconcile_index_tool(apply: bool = False) -> str:
    """Report drift between the backlog and the vector index.

    Args:
        apply: Delete orphan vectors and index issues that have no vector.
    """
    result = await get_cleaner().reconcile_index(apply=apply)
    return result.model_dump_json(indent=2)


if __name__ == "__main__":
    mcp.run()
