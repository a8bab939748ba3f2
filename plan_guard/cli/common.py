"""Common utilities and global state for the CLI.

Contains global option state, config loading, component wiring and the
error-to-exit-code mapping shared by every command.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator, Optional

import typer
from rich.console import Console
from rich.markup import escape

from plan_guard.errors import PlanGuardError

if TYPE_CHECKING:
    from plan_guard.command_runner import CommandRunner
    from plan_guard.config import PlanGuardConfig
    from plan_guard.git import GitInspector
    from plan_guard.logger import PlanLogger
    from plan_guard.manifest_store import ManifestStore
    from plan_guard.tracker import TrackerClient

# ============================================================================
# Global State
# ============================================================================

# Set via --plan-dir / --config on the main callback
_plan_dir: Optional[str] = None
_config_path: Optional[str] = None

# Console singletons
_console: Optional[Console] = None
_err_console: Optional[Console] = None


def get_plan_dir() -> Optional[str]:
    """Get the plan directory override if set."""
    return _plan_dir


def set_plan_dir(path: Optional[str]) -> None:
    """Set the plan directory override."""
    global _plan_dir
    _plan_dir = path


def get_config_path() -> Optional[str]:
    """Get the config file override if set."""
    return _config_path


def set_config_path(path: Optional[str]) -> None:
    """Set the config file override."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def get_err_console() -> Console:
    """Get or create the stderr console singleton (blocked reports, errors)."""
    global _err_console
    if _err_console is None:
        _err_console = Console(stderr=True)
    return _err_console


# ============================================================================
# Error Handling
# ============================================================================


@contextmanager
def exit_on_error() -> Iterator[None]:
    """Print a PlanGuardError and exit with its code."""
    try:
        yield
    except PlanGuardError as e:
        label = "Error" if e.fatal else "Blocked"
        get_err_console().print(f"[red]{label}:[/red] {escape(str(e))}", highlight=False, soft_wrap=True)
        raise typer.Exit(int(e.exit_code))


# ============================================================================
# Components
# ============================================================================


@dataclass
class Components:
    """Everything a command needs, wired from one config."""
    config: PlanGuardConfig
    logger: PlanLogger
    store: ManifestStore
    tracker: TrackerClient
    runner: CommandRunner
    git: GitInspector


def load_config() -> PlanGuardConfig:
    """
    Load config honoring --config and --plan-dir.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    from plan_guard.config import load_config as _load

    return _load(get_config_path(), get_plan_dir())


def create_tracker(config: PlanGuardConfig, logger: Optional[PlanLogger] = None) -> TrackerClient:
    """Create the tracker client for a config."""
    from plan_guard.tracker import BeadsTracker

    return BeadsTracker(config.tracker, cwd=str(config.repo_root), logger=logger)


def create_runner(config: PlanGuardConfig) -> CommandRunner:
    """Create the command runner for a config."""
    from plan_guard.command_runner import CommandRunner

    return CommandRunner(
        cwd=str(config.repo_root),
        default_timeout=config.commands.timeout_seconds,
        kill_grace_seconds=config.commands.kill_grace_seconds,
    )


def build_components() -> Components:
    """
    Wire config, logger, store, tracker, runner and git inspector.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    from plan_guard.git import GitInspector
    from plan_guard.logger import PlanLogger
    from plan_guard.manifest_store import ManifestStore

    config = load_config()
    logger = PlanLogger(config)
    runner = create_runner(config)
    return Components(
        config=config,
        logger=logger,
        store=ManifestStore(config.plan_path, logger=logger),
        tracker=create_tracker(config, logger),
        runner=runner,
        git=GitInspector.for_config(config, runner),
    )


def plan_lock(config: PlanGuardConfig, command: str):
    """Create the plan lock for a mutating command."""
    from plan_guard.locking import PlanLock

    return PlanLock(
        config.plan_path,
        command=command,
        stale_timeout_minutes=config.lock.stale_timeout_minutes,
    )
