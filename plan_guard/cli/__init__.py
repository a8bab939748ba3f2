"""CLI package for plan-guard.

Modules:
    app.py      - Main Typer app, version callback, command registration
    plan.py     - Read-only plan commands (status, next, verify)
    session.py  - Feature lifecycle and session commands (start, finish, fail, run, gate)
    admin.py    - Repair commands (reconcile, unlock)
    display.py  - Rich formatting utilities (format_status, show_features, etc.)
    common.py   - Shared helpers (get_console, build_components, exit_on_error)

Usage:
    from plan_guard.cli import app, cli_main  # Main exports
"""
from plan_guard.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
