"""Repair commands.

Commands for reconciling the manifest with the tracker, force-releasing
a stuck plan lock and reading the audit log.
"""
from __future__ import annotations

from typing import Optional

import typer

from plan_guard.cli import common
from plan_guard.cli.app import app
from plan_guard.cli.display import show_log_entries, show_reconcile_report

console = common.get_console()
err_console = common.get_err_console()


# =============================================================================
# Reconcile Command
# =============================================================================


@app.command()
def reconcile() -> None:
    """
    Repair manifest / tracker divergence left by crashes or manual edits.

    Exit codes: 0 consistent, 1 manifest or tracker unusable (nothing
    changed), 2 tracker updates failed or manual intervention required.
    """
    from plan_guard.reconciler import Reconciler

    with common.exit_on_error():
        components = common.build_components()
        with common.plan_lock(components.config, "reconcile"):
            reconciler = Reconciler(
                components.store,
                components.tracker,
                components.runner,
                git=components.git,
                logger=components.logger,
                verification_timeout=components.config.commands.timeout_seconds,
            )
            report = reconciler.reconcile()

    show_reconcile_report(report, console if report.ok else err_console)
    if not report.ok:
        raise typer.Exit(int(report.exit_code))


# =============================================================================
# Unlock Command
# =============================================================================


@app.command()
def unlock(
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Force unlock without confirmation.",
    ),
) -> None:
    """Force-release the plan lock left by a crashed invocation."""
    with common.exit_on_error():
        config = common.load_config()

    lock = common.plan_lock(config, "unlock")
    holder = lock.holder()
    if holder is None and not lock.path.exists():
        console.print("[dim]Plan is not locked.[/dim]")
        return

    if holder is not None:
        console.print(f"Lock held by {holder.describe()}", highlight=False)
    if not force:
        confirm = typer.confirm("Release this lock?")
        if not confirm:
            console.print("Cancelled.")
            raise typer.Exit(0)

    lock.force_release()
    console.print("[green]Plan lock released.[/green]")


# =============================================================================
# Logs Command
# =============================================================================


@app.command()
def logs(
    date: Optional[str] = typer.Option(
        None,
        "--date",
        help="Day to read (YYYY-MM-DD, default today).",
    ),
    level: Optional[str] = typer.Option(
        None,
        "--level",
        "-l",
        help="Only entries of this level (debug, info, warn, error).",
    ),
    event: Optional[str] = typer.Option(
        None,
        "--event",
        "-e",
        help="Only entries of this event type.",
    ),
    limit: int = typer.Option(
        20,
        "--limit",
        "-n",
        min=1,
        help="Show at most this many entries (most recent).",
    ),
) -> None:
    """Show the plan's JSONL audit log."""
    from plan_guard.logger import LogLevel, PlanLogger

    if level is not None and level not in LogLevel.ALL:
        raise typer.BadParameter(
            f"must be one of: {', '.join(LogLevel.ALL)}", param_hint="--level"
        )

    with common.exit_on_error():
        config = common.load_config()

    entries = PlanLogger(config).read_logs(date=date, level=level, event_type=event)
    show_log_entries(entries[-limit:], console)
