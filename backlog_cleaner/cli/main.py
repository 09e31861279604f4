"""Typer CLI for backlog-cleaner."""

import asyncio
import json
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler

from backlog_cleaner.cleaner.report import render_result, result_to_json
from backlog_cleaner.models import OperationResult, OperationStatus

app = typer.Typer(
    name="backlog-cleaner",
    help="Backlog Cleaner — find near-duplicate Jira issues and resolve them.",
)
console = Console()


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level (DEBUG, INFO, WARNING, ERROR)"),
):
    """Configure logging for every command."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _cleaner():
    from backlog_cleaner.cleaner.service import BacklogCleaner

    return BacklogCleaner()


def _emit(result: OperationResult, json_output: bool) -> None:
    if json_output:
        console.print(result_to_json(result))
    else:
        render_result(result, console)
    if result.status == OperationStatus.ERROR:
        raise typer.Exit(code=1)
    if result.status == OperationStatus.NEEDS_INPUT:
        raise typer.Exit(code=2)


def _load_suggestion(source: str) -> dict:
    """Read a suggestion from inline JSON or from a file path."""
    path = Path(source)
    text = path.read_text() if path.is_file() else source
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Suggestion is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise typer.BadParameter("Suggestion must be a JSON object")
    return data


@app.command()
def validate(json_output: bool = typer.Option(False, "--json", help="Output raw JSON result")):
    """Check the Jira configuration and that the project exists."""
    result = asyncio.run(_cleaner().validate_config())
    _emit(result, json_output)


@app.command()
def index(json_output: bool = typer.Option(False, "--json", help="Output raw JSON result")):
    """Embed every backlog issue and upsert the vectors into Pinecone."""
    cleaner = _cleaner()

    async def _run():
        with console.status("Indexing backlog..."):
            return await cleaner.start_indexing()

    _emit(asyncio.run(_run()), json_output)


@app.command()
def detect(
    keys: list[str] = typer.Argument(None, help="Issue keys to check (default: the whole backlog)"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON report"),
):
    """Detect near-duplicate issue pairs using the stored vectors."""
    result = asyncio.run(_cleaner().detect_duplicates(keys or None))
    _emit(result, json_output)


@app.command()
def similar(
    text: str = typer.Argument(help="Summary or description to search with"),
    top_k: int = typer.Option(3, "--top-k", "-k", min=1, help="Number of issues to return"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON result"),
):
    """Find indexed issues most similar to a piece of text."""
    result = asyncio.run(_cleaner().find_similar(text, top_k=top_k))
    _emit(result, json_output)


@app.command()
def recommend(
    first: str = typer.Argument(help="First issue key"),
    second: str = typer.Argument(help="Second issue key"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON suggestion"),
):
    """Ask the classification model how to resolve a duplicate pair."""
    result = asyncio.run(_cleaner().recommend_action([first, second]))
    _emit(result, json_output)


@app.command()
def resolve(
    first: str = typer.Argument(help="First issue key"),
    second: str = typer.Argument(help="Second issue key"),
    suggestion: str = typer.Option("", "--suggestion", help="Suggestion JSON (inline or file path); default: ask the model"),
    subtasks: str = typer.Option("", "--subtasks", help="Disposition for subtasks of deleted issues: delete or convert"),
    link: bool = typer.Option(False, "--link", help="Link the issues as duplicates (actions 2 and 4)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Apply without confirmation"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON result"),
):
    """Apply a resolution action to a duplicate pair."""
    if subtasks and subtasks not in ("delete", "convert"):
        raise typer.BadParameter("--subtasks must be 'delete' or 'convert'")

    cleaner = _cleaner()

    async def _run():
        if suggestion:
            chosen = _load_suggestion(suggestion)
        else:
            recommended = await cleaner.recommend_action([first, second])
            if recommended.status != OperationStatus.SUCCESS:
                return recommended
            chosen = recommended.data["suggestion"]
            if not json_output:
                render_result(recommended, console)

        if not yes and not typer.confirm("Apply this action?"):
            return OperationResult.error("Aborted by user.")

        return await cleaner.execute_action(
            chosen,
            dispositions=subtasks or None,
            link_duplicates=link,
            pair=(first, second),
        )

    _emit(asyncio.run(_run()), json_output)


@app.command()
def delete(
    key: str = typer.Argument(help="Issue key to delete"),
    subtasks: str = typer.Option("", "--subtasks", help="Disposition for its subtasks: delete or convert"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON result"),
):
    """Delete an issue (and its vector), handling its subtasks first."""
    if subtasks and subtasks not in ("delete", "convert"):
        raise typer.BadParameter("--subtasks must be 'delete' or 'convert'")
    result = asyncio.run(_cleaner().delete_issue(key, subtasks or None))
    _emit(result, json_output)


@app.command()
def link(
    source: str = typer.Argument(help="Issue that stays"),
    duplicate: str = typer.Argument(help="Issue that duplicates it"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON result"),
):
    """Link two issues as duplicates in Jira."""
    result = asyncio.run(_cleaner().link_duplicates(source, duplicate))
    _emit(result, json_output)


@app.command()
def reindex(
    key: str = typer.Argument(help="Issue key to re-embed"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON result"),
):
    """Re-embed one issue from its current Jira state."""
    result = asyncio.run(_cleaner().reindex_issue(key))
    _emit(result, json_output)


@app.command()
def reconcile(
    apply: bool = typer.Option(False, "--apply", help="Delete orphan vectors and index missing issues"),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON report"),
):
    """Compare the backlog with the vector index and report drift."""
    result = asyncio.run(_cleaner().reconcile_index(apply=apply))
    _emit(result, json_output)


@app.command()
def serve():
    """Run the MCP server over stdio."""
    from backlog_cleaner.mcp.server import mcp

    mcp.run()


if __name__ == "__main__":
    app()
