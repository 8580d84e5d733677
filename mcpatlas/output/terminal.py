"""Rich terminal output for sync runs and validation results."""
from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from mcpatlas.models import ValidationRequest, ValidationStatus

console = Console()

STATUS_STYLES = {
    ValidationStatus.PENDING: "yellow",
    ValidationStatus.VALIDATING: "cyan",
    ValidationStatus.COMPLETED: "bold green",
    ValidationStatus.FAILED: "bold red",
    ValidationStatus.CANCELLED: "dim",
    ValidationStatus.SKIPPED: "dim",
}


def render_sync_result(result) -> None:
    table = Table(title="Sources", show_edge=False)
    table.add_column("source")
    table.add_column("fetched", justify="right")
    table.add_column("filtered", justify="right")
    table.add_column("errors", justify="right")
    for name, stats in result.source_stats.items():
        errors = f"[red]{stats.errors}[/red]" if stats.errors else "0"
        table.add_row(name, str(stats.fetched), str(stats.filtered), errors)
    console.print(table)

    summary = Text()
    summary.append(f"{result.merged}", style="bold")
    summary.append(" unique servers, ")
    summary.append(f"{result.updated}", style="bold")
    summary.append(f" written ({result.new_servers} new), {result.skipped} skipped, ")
    summary.append(f"{result.errors} errors", style="red" if result.errors else "")
    if result.renamed:
        summary.append(f"\n{result.renamed} renamed repositories followed")
    if result.validated or result.validation_failed or result.needs_config:
        summary.append(
            f"\nvalidation: {result.validated} passed, {result.validation_failed} failed, "
            f"{result.needs_config} need configuration")
    if result.revalidations_queued:
        summary.append(f"\n{result.revalidations_queued} re-validations queued")
    console.print(Panel(summary, title="sync", expand=False))


def render_validation_result(result, target: str = "") -> None:
    if result.success:
        title = Text("PASS", style="bold green")
        body = Text()
        name = result.server_name or target
        body.append(f"{name}", style="bold")
        if result.server_version:
            body.append(f" {result.server_version}")
        body.append(f"\nprotocol {result.protocol_version or '?'}  ")
        body.append(f"{result.duration_ms}ms  backend={result.backend or '?'}")
        if not result.isolated:
            body.append("  (not isolated)", style="yellow")
        body.append(f"\ntools {len(result.tools)}  resources {len(result.resources)}  "
                    f"prompts {len(result.prompts)}")
        for tool in result.tools[:20]:
            body.append(f"\n  - {tool.get('name', '?')}", style="dim")
    else:
        title = Text("FAIL", style="bold red")
        body = Text()
        if target:
            body.append(f"{target}\n", style="bold")
        reason = result.failure_reason.value if result.failure_reason else "unknown"
        body.append(f"{reason}: ", style="red")
        body.append(result.error or "")
    console.print(Panel(body, title=title, expand=False))


def render_request(request: ValidationRequest, audit=None) -> None:
    style = STATUS_STYLES.get(request.status, "")
    body = Text()
    body.append("status ")
    body.append(request.status.value, style=style)
    body.append(f"\nserver {request.server_id}\nrequested by {request.requested_by}")
    if request.is_owner:
        body.append(" (owner)", style="cyan")
    body.append(f"\ncommand {request.install_command or '-'}")
    body.append(f"\nattempts {request.attempts}")
    if request.error:
        body.append("\nerror ", style="red")
        body.append(request.error)
    if request.reviewed_by:
        body.append(f"\nreviewed by {request.reviewed_by} at {request.reviewed_at}")
    console.print(Panel(body, title=f"request {request.id}", expand=False))

    if audit:
        table = Table(show_edge=False)
        table.add_column("when", style="dim")
        table.add_column("actor")
        table.add_column("action")
        table.add_column("details", style="dim")
        for entry in audit:
            details = ", ".join(f"{k}={v}" for k, v in entry.metadata.items())
            table.add_row(entry.created_at, entry.actor, entry.action.value, details)
        console.print(table)


def render_requests(requests_) -> None:
    if not requests_:
        console.print("[dim]No validation requests.[/dim]")
        return
    table = Table(show_edge=False)
    table.add_column("id")
    table.add_column("server")
    table.add_column("requested by")
    table.add_column("status")
    table.add_column("created", style="dim")
    for req in requests_:
        style = STATUS_STYLES.get(req.status, "")
        table.add_row(req.id, req.server_id, req.requested_by,
                      f"[{style}]{req.status.value}[/{style}]" if style else req.status.value,
                      req.created_at)
    console.print(table)


def render_validation_counts(counts: dict) -> None:
    console.print(
        f"checked {counts['checked']}: [green]{counts['validated']} validated[/green], "
        f"[red]{counts['failed']} failed[/red], {counts['needs_config']} need configuration, "
        f"{counts['errors']} errors")
