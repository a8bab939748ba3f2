"""Feature lifecycle and session commands.

start, finish and fail move one feature through its lifecycle; run drives
the whole loop with the configured work command; gate is the session-end
quality gate (suitable as an agent stop hook: blocked reports go to stderr
with exit code 2).

Every command here mutates the plan and runs under the plan lock.
"""
from __future__ import annotations

from typing import Optional

import typer
from rich.markup import escape

from plan_guard.cli import common
from plan_guard.cli.app import app
from plan_guard.cli.display import show_gate_result, show_reconcile_report, show_verification
from plan_guard.errors import ExitCode

console = common.get_console()
err_console = common.get_err_console()


def _orchestrator(components: common.Components, command: str):
    from plan_guard.orchestrator import OrchestrationLoop

    return OrchestrationLoop(
        components.config,
        components.store,
        components.tracker,
        components.runner,
        lock=common.plan_lock(components.config, command),
        logger=components.logger,
    )


@app.command()
def start(
    feature_id: str = typer.Argument(
        ...,
        help="Feature to start.",
    ),
) -> None:
    """
    Mark a feature in progress (tracker first, then manifest).

    Refused while another feature is in progress or any dependency is not
    completed.
    """
    with common.exit_on_error():
        components = common.build_components()
        with common.plan_lock(components.config, "start"):
            feature = _orchestrator(components, "start").start(feature_id)

    console.print(f"[cyan]{feature.id}[/cyan] is in progress: {escape(feature.title)}", highlight=False)
    if feature.file:
        console.print(f"[dim]Prompt:[/dim] {components.config.plan_path / feature.file}")


@app.command()
def finish(
    feature_id: str = typer.Argument(
        ...,
        help="Feature to finish.",
    ),
) -> None:
    """
    Verify an in-progress feature; completed on success, failed otherwise.
    """
    with common.exit_on_error():
        components = common.build_components()
        with common.plan_lock(components.config, "finish"):
            result = _orchestrator(components, "finish").finish(feature_id)

    show_verification(result.verification, console)
    if not result.passed:
        err_console.print(
            f"[red]{feature_id} failed verification and is marked failed.[/red] "
            "Run 'plan-guard reconcile' to reset it for another attempt."
        )
        raise typer.Exit(int(ExitCode.BLOCKED))

    console.print(f"[green]{feature_id} completed.[/green]")
    if not result.tracker_closed:
        console.print("[yellow]Tracker item was not closed; 'plan-guard reconcile' will close it.[/yellow]")


@app.command()
def fail(
    feature_id: str = typer.Argument(
        ...,
        help="Feature to mark failed.",
    ),
) -> None:
    """Mark a feature failed (reconcile resets it to pending for retry)."""
    with common.exit_on_error():
        components = common.build_components()
        with common.plan_lock(components.config, "fail"):
            feature = _orchestrator(components, "fail").fail(feature_id)

    console.print(f"[red]{feature.id} marked failed.[/red]", highlight=False)


@app.command()
def run(
    max_features: Optional[int] = typer.Option(
        None,
        "--max",
        "-m",
        min=1,
        help="Stop after completing this many features.",
    ),
) -> None:
    """
    Reconcile, then work ready features one after another with work.command.

    Stops at the first feature that fails its work or its verification.
    """
    from plan_guard.orchestrator import LoopOutcome

    with common.exit_on_error():
        components = common.build_components()
        # OrchestrationLoop.run takes the plan lock itself
        result = _orchestrator(components, "run").run(max_features=max_features)

    if result.reconcile_report is not None and result.outcome is LoopOutcome.BLOCKED:
        show_reconcile_report(result.reconcile_report, err_console)

    for feature_id in result.completed:
        console.print(f"[green]completed[/green] {feature_id}")

    style = "green" if result.exit_code == ExitCode.OK else "yellow"
    console.print(f"[bold]Run:[/bold] [{style}]{result.outcome.value}[/{style}]")
    if result.message:
        err_console.print(result.message, markup=False, highlight=False, soft_wrap=True)
    if result.exit_code != ExitCode.OK:
        raise typer.Exit(int(result.exit_code))


@app.command()
def gate() -> None:
    """
    Run the session-end quality gates.

    Exits 0 when the session may end, 2 with a report of every failed gate
    on stderr otherwise.
    """
    from plan_guard.compliance import WorkflowCompliance
    from plan_guard.gates import QualityGatePipeline
    from plan_guard.quality_verifier import build_verifier

    with common.exit_on_error():
        components = common.build_components()
        config = components.config
        with common.plan_lock(config, "gate"):
            pipeline = QualityGatePipeline(
                config,
                components.store,
                components.tracker,
                components.runner,
                verifier=build_verifier(config, components.runner),
                compliance=WorkflowCompliance(components.tracker, config.workflow, config.plans_root),
                git=components.git,
                logger=components.logger,
            )
            result = pipeline.run()

    show_gate_result(result, console, err_console)
    if not result.allowed:
        raise typer.Exit(int(result.exit_code))
