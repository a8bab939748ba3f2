"""Read-only plan commands.

status, next and verify never write the manifest or touch tracker items, so
they run without the plan lock.
"""
from __future__ import annotations

import typer
from rich.markup import escape

from plan_guard.cli import common
from plan_guard.cli.app import app
from plan_guard.cli.display import show_features, show_verification
from plan_guard.errors import ExitCode

console = common.get_console()


@app.command()
def status(
    tracker: bool = typer.Option(
        False,
        "--tracker",
        "-t",
        help="Also show each feature's tracker status.",
    ),
) -> None:
    """
    Show all features of the active plan.

    Examples:
        plan-guard status
        plan-guard --plan-dir dev/plans/auth status --tracker
    """
    with common.exit_on_error():
        components = common.build_components()
        features = components.store.load()

        tracker_statuses = None
        if tracker:
            tracker_statuses = {
                f.id: components.tracker.get_status(f.beads_id) for f in features
            }

        show_features(
            features,
            console,
            title=f"Plan: {components.config.plan_path.name or components.config.plan_path}",
            tracker_statuses=tracker_statuses,
        )


@app.command("next")
def next_feature(
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Print only the feature id.",
    ),
) -> None:
    """
    Show the next feature ready to start.

    Exits 0 with the feature when one is ready, 0 with a message when every
    feature is completed, and 2 when features remain but none is ready.
    """
    from plan_guard.manifest_store import current_feature, ready_features

    with common.exit_on_error():
        components = common.build_components()
        features = components.store.load()

    active = current_feature(features)
    ready = ready_features(features)

    if ready:
        feature = ready[0]
        if quiet:
            console.print(feature.id, highlight=False)
            return
        console.print(f"[bold]Next:[/bold] [cyan]{feature.id}[/cyan] {escape(feature.title)}", highlight=False)
        if feature.file:
            console.print(f"[dim]Prompt:[/dim] {components.config.plan_path / feature.file}")
        if active is not None:
            console.print(
                f"[yellow]Note:[/yellow] {active.id} is still in progress; finish it first."
            )
        return

    if all(f.is_completed for f in features):
        if not quiet:
            console.print("[green]All features completed.[/green]")
        return

    if not quiet:
        if active is not None:
            console.print(f"[yellow]{active.id} is in progress.[/yellow] No other feature is ready.")
        else:
            console.print("[yellow]No feature is ready.[/yellow] Remaining features have unmet "
                          "dependencies or have failed (run 'plan-guard reconcile').")
    raise typer.Exit(int(ExitCode.BLOCKED))


@app.command()
def verify(
    feature_id: str = typer.Argument(
        ...,
        help="Feature to verify.",
    ),
) -> None:
    """
    Run the completion checks for one feature without changing its status.

    Checks: the feature's verification command, a recent commit mentioning the
    feature id, and the build command (if configured).
    """
    from plan_guard.errors import OrchestrationError
    from plan_guard.feature_verifier import FeatureVerifier
    from plan_guard.manifest_store import find_feature

    with common.exit_on_error():
        components = common.build_components()
        feature = find_feature(components.store.load(), feature_id)
        if feature is None:
            raise OrchestrationError(f"Unknown feature: {feature_id}", feature_id=feature_id)

        verifier = FeatureVerifier(
            components.config, components.runner,
            git=components.git, logger=components.logger,
        )
        verification = verifier.verify(feature)

    show_verification(verification, console)
    if not verification.passed:
        raise typer.Exit(int(ExitCode.BLOCKED))
