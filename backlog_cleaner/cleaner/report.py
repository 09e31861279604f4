"""Operation result formatting: JSON output and Rich terminal rendering."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from backlog_cleaner.models import (
    DetectionReport,
    IndexingProgress,
    IndexingStatus,
    Issue,
    OperationResult,
    OperationStatus,
    PendingSubtask,
    ReconciliationReport,
)


_STATUS_STYLES = {
    OperationStatus.SUCCESS: ("bold green", "SUCCESS"),
    OperationStatus.NEEDS_INPUT: ("bold yellow", "INPUT NEEDED"),
    OperationStatus.ERROR: ("bold red", "ERROR"),
}

_PROGRESS_STYLES = {
    IndexingStatus.IDLE: "dim",
    IndexingStatus.PROCESSING: "yellow",
    IndexingStatus.COMPLETED: "green",
    IndexingStatus.ERROR: "red",
}

_ACTION_LABELS = {
    1: "Delete one issue, keep the other",
    2: "Merge both into a new issue",
    3: "Make one issue a subtask of the other",
    4: "Ignore (optionally link as duplicates)",
}


def result_to_json(result: OperationResult) -> str:
    """Serialize an operation result to JSON."""
    return result.model_dump_json(indent=2)


def _score_style(score: float) -> str:
    text = f"{score:.2f}"
    if score >= 0.9:
        return f"[red]{text}[/red]"
    if score >= 0.8:
        return f"[yellow]{text}[/yellow]"
    return f"[cyan]{text}[/cyan]"


def render_detection_report(report: DetectionReport, console: Console) -> None:
    if not report.groups:
        console.print(
            f"[green]No duplicates found[/green] among {report.issues_examined} issues "
            f"(threshold {report.threshold:.2f})."
        )
    else:
        table = Table(title=f"Duplicate Pairs — {len(report.groups)} of {report.issues_examined} issues")
        table.add_column("Score", style="bold")
        table.add_column("First")
        table.add_column("Second")
        table.add_column("Explanation")

        for group in report.groups:
            first, second = group.issues
            table.add_row(
                _score_style(group.similarity_score),
                f"{first.key} [dim]{first.issue_type}[/dim]\n{first.summary[:60]}",
                f"{second.key} [dim]{second.issue_type}[/dim]\n{second.summary[:60]}",
                group.explanation,
            )
        console.print(table)

    if report.unindexed_keys:
        console.print(
            f"[yellow]Warning:[/yellow] {len(report.unindexed_keys)} issue(s) have no vector: "
            + ", ".join(report.unindexed_keys)
        )


def render_suggestion(suggestion: dict, console: Console) -> None:
    action = suggestion.get("action")
    lines = [f"[bold]Action {action}:[/bold] {_ACTION_LABELS.get(action, 'Unknown')}", ""]
    for field, value in suggestion.items():
        if field in ("action", "description"):
            continue
        if isinstance(value, list):
            value = ", ".join(value)
        lines.append(f"{field}: {value}")
    lines.extend(["", suggestion.get("description", "")])
    console.print(Panel("\n".join(lines), title="Suggested Resolution", border_style="cyan"))


def render_pending_subtasks(subtasks: list[PendingSubtask], console: Console) -> None:
    table = Table(title="Subtasks Needing a Disposition")
    table.add_column("Parent", style="bold")
    table.add_column("Subtask")
    table.add_column("Summary")
    for sub in subtasks:
        table.add_row(sub.parent_key, sub.key, sub.summary)
    console.print(table)
    console.print("Re-run with [bold]--subtasks delete[/bold] or [bold]--subtasks convert[/bold].")


def render_progress(progress: IndexingProgress, console: Console) -> None:
    style = _PROGRESS_STYLES.get(progress.status, "")
    line = (
        f"[{style}]{progress.status.value.upper()}[/{style}] "
        f"{progress.completed}/{progress.total} issues embedded"
    )
    if progress.error_message:
        line += f"\n[red]{progress.error_message}[/red]"
    console.print(Panel(line, title="Indexing Progress", border_style=style or "white"))


def render_reconciliation(report: ReconciliationReport, console: Console) -> None:
    table = Table(title=f"Index Drift — {report.tracker_count} issues, {report.index_count} vectors")
    table.add_column("Kind", style="bold")
    table.add_column("Count")
    table.add_column("Keys")
    table.add_row("Missing vector", str(len(report.missing_vectors)), ", ".join(report.missing_vectors[:20]))
    table.add_row("Orphan vector", str(len(report.orphan_vectors)), ", ".join(report.orphan_vectors[:20]))
    if report.removed_orphans or report.reindexed:
        table.add_row("Removed", str(len(report.removed_orphans)), ", ".join(report.removed_orphans[:20]))
        table.add_row("Re-indexed", str(len(report.reindexed)), ", ".join(report.reindexed[:20]))
    console.print(table)


def render_similar_issues(issues: list[Issue], console: Console) -> None:
    if not issues:
        console.print("[dim]No indexed issues to compare against.[/dim]")
        return
    table = Table(title="Similar Issues")
    table.add_column("Score", style="bold")
    table.add_column("Key")
    table.add_column("Type")
    table.add_column("Summary")
    for issue in issues:
        table.add_row(_score_style(issue.similarity or 0.0), issue.key, issue.issue_type, issue.summary[:80])
    console.print(table)


def render_result(result: OperationResult, console: Console | None = None) -> None:
    """Render a Rich-formatted operation result to the console."""
    if console is None:
        console = Console()

    data = result.data
    if "report" in data and "groups" in data["report"]:
        render_detection_report(DetectionReport.model_validate(data["report"]), console)
    elif "report" in data:
        render_reconciliation(ReconciliationReport.model_validate(data["report"]), console)
    if "issues" in data:
        render_similar_issues([Issue.model_validate(i) for i in data["issues"]], console)
    if "progress" in data:
        render_progress(IndexingProgress.model_validate(data["progress"]), console)
    if "suggestion" in data:
        render_suggestion(data["suggestion"], console)
    if result.status == OperationStatus.NEEDS_INPUT and data.get("subtasks"):
        render_pending_subtasks(
            [PendingSubtask.model_validate(s) for s in data["subtasks"]], console,
        )

    style, label = _STATUS_STYLES.get(result.status, ("bold", result.status.value.upper()))
    console.print(f"[{style}]{label}[/{style}] {result.message}")
