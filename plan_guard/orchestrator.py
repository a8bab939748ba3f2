"""
Feature orchestration loop.

Drives features through their lifecycle:

    pending -> in_progress -> completed
                           -> failed -> pending (reset by the reconciler)

Writes are ordered so that a crash at any point leaves a state the
reconciler knows how to repair:

- start:  tracker advanced first, then the manifest
- finish: manifest completed first, then the tracker item closed

An agent can drive the loop step by step (start, then finish), or ``run``
can drive it end to end with a Work Executor doing the actual work.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from plan_guard.errors import CommandFailure, ExitCode, OrchestrationError
from plan_guard.manifest_store import (
    current_feature,
    find_feature,
    ready_features,
    replace_feature,
    unmet_dependencies,
)
from plan_guard.models import Feature, FeatureStatus, TrackerStatus

if TYPE_CHECKING:
    from plan_guard.command_runner import CommandResult, CommandRunner
    from plan_guard.config import PlanGuardConfig
    from plan_guard.feature_verifier import FeatureVerification, FeatureVerifier
    from plan_guard.locking import PlanLock
    from plan_guard.logger import PlanLogger
    from plan_guard.manifest_store import ManifestStore
    from plan_guard.reconciler import ReconcileReport, Reconciler
    from plan_guard.tracker import TrackerClient


# =============================================================================
# Work executors
# =============================================================================


class WorkExecutor(ABC):
    """Capability: perform the work for one feature."""

    @abstractmethod
    def execute(self, feature: Feature, plan_dir: Path) -> CommandResult:
        """Do the work. A failed result marks the feature failed."""


class CommandWorkExecutor(WorkExecutor):
    """
    Runs a configured shell command per feature.

    Placeholders: {feature_id}, {prompt_file}, {plan_dir}, {title}.
    Example: ``claude -p "$(cat {prompt_file})"``
    """

    def __init__(
        self,
        runner: CommandRunner,
        command: str,
        timeout: Optional[float] = None,
    ) -> None:
        self._runner = runner
        self.command = command
        self.timeout = timeout

    def render(self, feature: Feature, plan_dir: Path) -> str:
        prompt_file = plan_dir / feature.file if feature.file else plan_dir
        return self.command.format(
            feature_id=feature.id,
            prompt_file=str(prompt_file),
            plan_dir=str(plan_dir),
            title=feature.title,
        )

    def execute(self, feature: Feature, plan_dir: Path) -> CommandResult:
        return self._runner.run(self.render(feature, plan_dir), timeout=self.timeout)


# =============================================================================
# Results
# =============================================================================


class LoopOutcome(str, Enum):
    """How a ``run`` ended."""
    COMPLETE = "complete"   # every feature completed
    IDLE = "idle"           # stopped with work still ready (max_features reached)
    STALLED = "stalled"     # pending features remain but none is ready
    FAILED = "failed"       # a feature failed work or verification
    BLOCKED = "blocked"     # pre-flight reconciliation did not return ok

    @property
    def exit_code(self) -> ExitCode:
        if self in (LoopOutcome.COMPLETE, LoopOutcome.IDLE):
            return ExitCode.OK
        return ExitCode.BLOCKED


@dataclass
class FinishResult:
    """Result of finishing one feature."""
    feature: Feature
    verification: FeatureVerification
    tracker_closed: bool = False

    @property
    def passed(self) -> bool:
        return self.verification.passed


@dataclass
class LoopResult:
    """Result of an orchestration run."""
    outcome: LoopOutcome
    completed: list[str] = field(default_factory=list)
    failed_feature: Optional[str] = None
    reconcile_report: Optional[ReconcileReport] = None
    message: str = ""

    @property
    def exit_code(self) -> ExitCode:
        return self.outcome.exit_code


# =============================================================================
# Loop
# =============================================================================


class OrchestrationLoop:
    """Moves features through their lifecycle with guarded transitions."""

    def __init__(
        self,
        config: PlanGuardConfig,
        store: ManifestStore,
        tracker: TrackerClient,
        runner: CommandRunner,
        feature_verifier: Optional[FeatureVerifier] = None,
        reconciler: Optional[Reconciler] = None,
        executor: Optional[WorkExecutor] = None,
        lock: Optional[PlanLock] = None,
        logger: Optional[PlanLogger] = None,
    ) -> None:
        """
        Initialize the loop.

        Args:
            config: PlanGuardConfig.
            store: Manifest store for the active plan.
            tracker: Tracker client.
            runner: Command runner shared by verifier and executor.
            feature_verifier: Completion checks (built from config if omitted).
            reconciler: Pre-flight reconciler for ``run`` (built if omitted).
            executor: Work executor for ``run`` (from ``work.command`` if omitted).
            lock: Plan lock for ``run`` (built from config if omitted).
            logger: Optional logger for recording transitions.
        """
        from plan_guard.feature_verifier import FeatureVerifier
        from plan_guard.git import GitInspector
        from plan_guard.locking import PlanLock
        from plan_guard.reconciler import Reconciler

        self._config = config
        self._store = store
        self._tracker = tracker
        self._runner = runner
        git = GitInspector.for_config(config, runner)
        self._feature_verifier = feature_verifier or FeatureVerifier(
            config, runner, git=git, logger=logger
        )
        self._reconciler = reconciler or Reconciler(
            store, tracker, runner,
            git=git,
            logger=logger,
            verification_timeout=config.commands.timeout_seconds,
        )
        if executor is None and config.work.command:
            executor = CommandWorkExecutor(
                runner, config.work.command, timeout=config.work.timeout_seconds
            )
        self._executor = executor
        self._lock = lock or PlanLock(
            config.plan_path, command="run",
            stale_timeout_minutes=config.lock.stale_timeout_minutes,
        )
        self._logger = logger
        self._log_std = logging.getLogger(__name__)

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            self._logger.log(event_type, data, level=level)

    def _require(self, features: list[Feature], feature_id: str) -> Feature:
        feature = find_feature(features, feature_id)
        if feature is None:
            raise OrchestrationError(f"Unknown feature: {feature_id}", feature_id=feature_id)
        return feature

    def _set_status(
        self,
        features: list[Feature],
        feature: Feature,
        status: FeatureStatus,
    ) -> Feature:
        updated = feature.with_status(status)
        self._store.save(replace_feature(features, updated))
        self._log("feature_status", {
            "feature_id": feature.id,
            "from": feature.status.value,
            "to": status.value,
        })
        return updated

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def next_ready(self) -> Optional[Feature]:
        """First pending feature whose dependencies are all completed."""
        ready = ready_features(self._store.load())
        return ready[0] if ready else None

    def start(self, feature_id: str) -> Feature:
        """
        Move a pending feature to in_progress.

        Raises:
            OrchestrationError: Unknown feature, wrong status, another feature
                in progress, unmet dependencies, or the tracker refused.
        """
        features = self._store.load()
        feature = self._require(features, feature_id)

        active = current_feature(features)
        if active is not None and active.id != feature.id:
            raise OrchestrationError(
                f"Cannot start {feature.id}: {active.id} is already in progress",
                feature_id=feature.id,
            )
        if feature.is_in_progress:
            return feature
        if not feature.is_pending:
            raise OrchestrationError(
                f"Cannot start {feature.id}: status is {feature.status.value}"
                + (" (run reconcile to reset it)" if feature.is_failed else ""),
                feature_id=feature.id,
            )

        unmet = unmet_dependencies(features, feature)
        if unmet:
            raise OrchestrationError(
                f"Cannot start {feature.id}: dependencies not completed: {', '.join(unmet)}",
                feature_id=feature.id,
            )

        if not self._tracker.set_status(feature.beads_id, TrackerStatus.IN_PROGRESS):
            raise OrchestrationError(
                f"Cannot start {feature.id}: tracker item {feature.beads_id} "
                "could not be set to in_progress",
                feature_id=feature.id,
            )
        return self._set_status(features, feature, FeatureStatus.IN_PROGRESS)

    def finish(self, feature_id: str) -> FinishResult:
        """
        Verify an in-progress feature and record the outcome.

        Success marks it completed and closes its tracker item; failure marks
        it failed.

        Raises:
            OrchestrationError: Unknown feature or not in progress.
        """
        features = self._store.load()
        feature = self._require(features, feature_id)
        if not feature.is_in_progress:
            raise OrchestrationError(
                f"Cannot finish {feature.id}: status is {feature.status.value}",
                feature_id=feature.id,
            )

        verification = self._feature_verifier.verify(feature)
        if not verification.passed:
            updated = self._set_status(features, feature, FeatureStatus.FAILED)
            return FinishResult(feature=updated, verification=verification)

        updated = self._set_status(features, feature, FeatureStatus.COMPLETED)
        closed = self._tracker.close(feature.beads_id, f"Completed: {feature.id}")
        if not closed:
            # The next reconcile pass closes it
            self._log_std.warning(
                "Feature %s completed but tracker item %s was not closed",
                feature.id, feature.beads_id,
            )
        return FinishResult(feature=updated, verification=verification, tracker_closed=closed)

    def fail(self, feature_id: str) -> Feature:
        """
        Mark a feature failed.

        Raises:
            OrchestrationError: Unknown feature or already completed.
        """
        features = self._store.load()
        feature = self._require(features, feature_id)
        if feature.is_completed:
            raise OrchestrationError(
                f"Cannot fail {feature.id}: it is already completed",
                feature_id=feature.id,
            )
        if feature.is_failed:
            return feature
        return self._set_status(features, feature, FeatureStatus.FAILED)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, max_features: Optional[int] = None) -> LoopResult:
        """
        Work ready features end to end under the plan lock.

        Args:
            max_features: Stop after completing this many features.

        Raises:
            OrchestrationError: No work executor configured.
            PlanLockedError: Another invocation holds the plan lock.
        """
        if self._executor is None:
            raise OrchestrationError(
                "No work command configured; set work.command or drive features "
                "with 'start' and 'finish'"
            )

        with self._lock, self._run_scope():
            report = self._reconciler.reconcile()
            if not report.ok:
                return LoopResult(
                    outcome=LoopOutcome.BLOCKED,
                    reconcile_report=report,
                    message=f"Reconciliation returned {report.outcome.value}",
                )

            result = LoopResult(outcome=LoopOutcome.IDLE, reconcile_report=report)
            while max_features is None or len(result.completed) < max_features:
                feature = self.next_ready()
                if feature is None:
                    break

                self._log("feature_start", {"feature_id": feature.id})
                self.start(feature.id)

                work = self._executor.execute(feature, self._config.plan_path)
                try:
                    work.raise_for_status()
                except CommandFailure as e:
                    self.fail(feature.id)
                    result.outcome = LoopOutcome.FAILED
                    result.failed_feature = feature.id
                    result.message = f"Work for {feature.id} failed: {e}"
                    if e.output.strip():
                        result.message += f"\n{e.output.strip()}"
                    self._log("feature_failed", {
                        "feature_id": feature.id,
                        "stage": "work",
                        "failure_kind": work.failure_kind,
                        "returncode": e.returncode,
                    }, level="warn")
                    return result

                finished = self.finish(feature.id)
                if not finished.passed:
                    result.outcome = LoopOutcome.FAILED
                    result.failed_feature = feature.id
                    result.message = finished.verification.summary()
                    self._log("feature_failed", {
                        "feature_id": feature.id,
                        "stage": "verify",
                    }, level="warn")
                    return result

                result.completed.append(feature.id)
                self._log("feature_complete", {"feature_id": feature.id})

            result.outcome = self._final_outcome()
            self._log("run_complete", {
                "outcome": result.outcome.value,
                "completed": result.completed,
            })
            return result

    def _run_scope(self):
        """Tag every log entry of a run with one run id."""
        if self._logger is None:
            return nullcontext()
        run_id = datetime.now(timezone.utc).strftime("run_%Y%m%d_%H%M%S")
        return self._logger.run_context(run_id)

    def _final_outcome(self) -> LoopOutcome:
        features = self._store.load()
        if all(f.is_completed for f in features):
            return LoopOutcome.COMPLETE
        if ready_features(features):
            return LoopOutcome.IDLE
        return LoopOutcome.STALLED
