"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for feature statuses, plan tables, and
reconcile / gate / verification reports.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from plan_guard.models import FeatureStatus, TrackerStatus

if TYPE_CHECKING:
    from plan_guard.feature_verifier import CheckResult, FeatureVerification
    from plan_guard.gates import PipelineResult
    from plan_guard.models import Feature
    from plan_guard.reconciler import ReconcileReport

# Feature status display names and colors
STATUS_DISPLAY: dict[FeatureStatus, tuple[str, str]] = {
    FeatureStatus.PENDING: ("Pending", "dim"),
    FeatureStatus.IN_PROGRESS: ("In Progress", "cyan bold"),
    FeatureStatus.COMPLETED: ("Completed", "green"),
    FeatureStatus.FAILED: ("Failed", "red bold"),
}

# Tracker status display names and colors
TRACKER_DISPLAY: dict[TrackerStatus, tuple[str, str]] = {
    TrackerStatus.OPEN: ("open", "dim"),
    TrackerStatus.IN_PROGRESS: ("in_progress", "cyan"),
    TrackerStatus.CLOSED: ("closed", "green"),
}

# Log level colors
LEVEL_STYLES: dict[str, str] = {
    "debug": "dim",
    "info": "white",
    "warn": "yellow",
    "error": "red bold",
}


def format_status(status: FeatureStatus) -> Text:
    """Format a feature status as colored text."""
    display_name, style = STATUS_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def format_tracker_status(status: Optional[TrackerStatus]) -> Text:
    """Format a tracker status as colored text ('unknown' if missing)."""
    if status is None:
        return Text("unknown", style="yellow")
    display_name, style = TRACKER_DISPLAY.get(status, (status.value, "white"))
    return Text(display_name, style=style)


def format_check(check: CheckResult) -> Text:
    """One-word check result."""
    if check.skipped:
        return Text("skipped", style="dim")
    if check.passed:
        return Text("passed", style="green")
    return Text("TIMEOUT" if check.timed_out else "FAILED", style="red bold")


def get_progress_summary(features: list[Feature]) -> str:
    """Summary like '3/5 completed, 1 in progress'."""
    completed = sum(1 for f in features if f.is_completed)
    parts = [f"{completed}/{len(features)} completed"]
    in_progress = sum(1 for f in features if f.is_in_progress)
    failed = sum(1 for f in features if f.is_failed)
    if in_progress:
        parts.append(f"{in_progress} in progress")
    if failed:
        parts.append(f"{failed} failed")
    return ", ".join(parts)


def show_features(
    features: list[Feature],
    console: Console,
    title: str = "Plan Status",
    tracker_statuses: Optional[dict[str, Optional[TrackerStatus]]] = None,
) -> None:
    """Display table of all features with their statuses."""
    if not features:
        console.print(
            Panel(
                "[dim]No features found.[/dim]\n\n"
                "The plan directory has no manifest.jsonl (or it is empty).",
                title=title,
                border_style="dim",
            )
        )
        return

    table = Table(
        title=title,
        show_header=True,
        header_style="bold",
    )
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title", no_wrap=False)
    table.add_column("Status", no_wrap=True)
    if tracker_statuses is not None:
        table.add_column("Tracker", no_wrap=True)
    table.add_column("Depends On", style="dim")
    table.add_column("Beads", style="dim", no_wrap=True)

    for feature in features:
        row = [feature.id, Text(feature.title), format_status(feature.status)]
        if tracker_statuses is not None:
            row.append(format_tracker_status(tracker_statuses.get(feature.id)))
        row.append(", ".join(feature.depends_on) or "-")
        row.append(feature.beads_id)
        table.add_row(*row)

    console.print(table)
    console.print(f"\n[dim]Progress:[/dim] {get_progress_summary(features)}")


def show_reconcile_report(report: ReconcileReport, console: Console) -> None:
    """Display what a reconciliation pass did."""
    style = "green" if report.ok else "yellow"
    console.print(f"[bold]Reconcile:[/bold] [{style}]{report.outcome.value}[/{style}]")

    if not report.actions and not report.skipped:
        console.print("[dim]Manifest and tracker are consistent.[/dim]")
    for entry in report.actions + report.skipped:
        console.print(f"  {entry.describe()}", markup=False, highlight=False)

    for error in report.errors:
        console.print(f"[red]  error:[/red] {error}", highlight=False)
    for anomaly in report.anomalies:
        console.print(f"[yellow]  manual intervention required:[/yellow] {anomaly}", highlight=False)


def show_verification(verification: FeatureVerification, console: Console) -> None:
    """Display the per-check results for one feature."""
    table = Table(
        title=f"Verification: {verification.feature_id}",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Check", no_wrap=True)
    table.add_column("Result", no_wrap=True)
    for check in verification.checks:
        table.add_row(check.name, format_check(check))
    console.print(table)

    for check in verification.failures:
        if check.output:
            console.print(
                Panel(Text(check.output), title=check.label, border_style="red"),
            )


def show_gate_result(result: PipelineResult, console: Console, err_console: Console) -> None:
    """Passed gates go to stdout; a blocked report goes to stderr."""
    for gate in result.ran:
        console.print(f"  {gate.name}: ", format_check(gate), sep="")

    if result.allowed:
        console.print("[green]All quality gates passed.[/green]")
        for note in result.side_effects:
            console.print(f"[dim]  {note}[/dim]", highlight=False)
        return

    err_console.print(result.report(), markup=False, highlight=False, soft_wrap=True)


def show_log_entries(entries: list[dict[str, Any]], console: Console) -> None:
    """Display audit log entries, oldest first."""
    if not entries:
        console.print("[dim]No log entries.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Level", no_wrap=True)
    table.add_column("Event", style="cyan", no_wrap=True)
    table.add_column("Data")
    for entry in entries:
        level = entry.get("level", "")
        table.add_row(
            str(entry.get("timestamp", ""))[11:19],
            Text(level, style=LEVEL_STYLES.get(level, "white")),
            entry.get("event_type", ""),
            Text(json.dumps(entry.get("data", {}), default=str)),
        )
    console.print(table)
