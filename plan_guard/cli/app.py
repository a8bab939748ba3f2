"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app and its callback are
defined here; command modules register themselves on import.
"""
from __future__ import annotations

from typing import Optional

import typer

from plan_guard import __version__
from plan_guard.cli.common import get_console, set_config_path, set_plan_dir

# Create Typer app
app = typer.Typer(
    name="plan-guard",
    help="Keep a plan manifest and its issue tracker consistent, and gate sessions on quality",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"plan-guard version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    plan_dir: Optional[str] = typer.Option(
        None,
        "--plan-dir",
        "-d",
        help="Plan directory holding manifest.jsonl (default: $PLAN_DIR or .)",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to plan-guard.yaml (default: ./plan-guard.yaml if present)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    plan-guard - plan manifest / tracker consistency and session gates.

    Exit codes: 0 proceed, 1 fatal error (nothing changed), 2 blocked.
    """
    set_plan_dir(plan_dir)
    set_config_path(config)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Command Registration
# =========================================================================
# Command modules import `app` from here and register top-level commands.
# They must be imported AFTER app is defined.
import plan_guard.cli.plan  # noqa: F401, E402
import plan_guard.cli.session  # noqa: F401, E402
import plan_guard.cli.admin  # noqa: F401, E402


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
