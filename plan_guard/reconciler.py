"""
Manifest / tracker reconciliation.

The manifest and the tracker each hold a status per feature and either can
be left behind by a crash, a partial write or an out-of-band edit. A pass
re-derives one consistent pair per feature from what both stores say now:

    (pending, open)          nothing to do
    (completed, closed)      nothing to do
    (in_progress, in_progress)  only legitimate mid-step; after a crash it is
                             resolved by the crash check below

The decision itself is the pure function ``decide``; ``Reconciler`` does the
I/O around it. A pass is atomic at the pass level: a bad manifest or a failed
tracker sync aborts before anything is written or any tracker item changes.

Crash check for (in_progress, in_progress): the feature's verification
command must pass AND the working tree must be clean. That is the strongest
local evidence the work finished before the crash. Anything weaker resets
the feature for retry rather than risk a false "completed".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from plan_guard.errors import ExitCode
from plan_guard.models import Feature, FeatureStatus, TrackerStatus

if TYPE_CHECKING:
    from plan_guard.command_runner import CommandResult, CommandRunner
    from plan_guard.git import GitInspector
    from plan_guard.logger import PlanLogger
    from plan_guard.manifest_store import ManifestStore
    from plan_guard.tracker import TrackerClient


class TrackerAction(str, Enum):
    """Mutation to apply to a tracker item."""
    NONE = "none"
    REOPEN = "reopen"       # set_status(open)
    CLOSE = "close"


@dataclass(frozen=True)
class Decision:
    """What to do with one (manifest, tracker) status pair."""
    new_status: FeatureStatus
    tracker_action: TrackerAction = TrackerAction.NONE
    needs_crash_check: bool = False
    reason: str = ""


_P = FeatureStatus.PENDING
_IP = FeatureStatus.IN_PROGRESS
_C = FeatureStatus.COMPLETED
_F = FeatureStatus.FAILED

_OPEN = TrackerStatus.OPEN
_T_IP = TrackerStatus.IN_PROGRESS
_CLOSED = TrackerStatus.CLOSED

_DECISIONS: dict[tuple[FeatureStatus, TrackerStatus], Decision] = {
    (_P, _OPEN): Decision(_P, reason="consistent"),
    (_P, _T_IP): Decision(
        _P, TrackerAction.REOPEN, reason="crash before manifest update; roll tracker back"
    ),
    (_P, _CLOSED): Decision(_C, reason="tracker already closed; trust it"),
    (_IP, _OPEN): Decision(_P, reason="tracker never advanced or was rolled back"),
    (_IP, _T_IP): Decision(_IP, needs_crash_check=True, reason="ambiguous mid-feature crash"),
    (_IP, _CLOSED): Decision(_C, reason="tracker already closed; trust it"),
    (_C, _OPEN): Decision(_C, TrackerAction.CLOSE, reason="manifest completed; close tracker"),
    (_C, _T_IP): Decision(_C, TrackerAction.CLOSE, reason="manifest completed; close tracker"),
    (_C, _CLOSED): Decision(_C, reason="consistent"),
    (_F, _OPEN): Decision(_P, TrackerAction.REOPEN, reason="retry reset"),
    (_F, _T_IP): Decision(_P, TrackerAction.REOPEN, reason="retry reset"),
    (_F, _CLOSED): Decision(_P, TrackerAction.REOPEN, reason="retry reset"),
}


def decide(local: FeatureStatus, remote: TrackerStatus) -> Decision:
    """
    Decide how to repair one (manifest, tracker) pair.

    Exhaustive over both enums. Decisions with ``needs_crash_check`` must be
    finished with ``resolve_crash``.
    """
    return _DECISIONS[(local, remote)]


def resolve_crash(verified: bool, clean: bool) -> Decision:
    """Resolve an (in_progress, in_progress) pair from the crash check."""
    if verified and clean:
        return Decision(_C, TrackerAction.CLOSE, reason="verified and committed before crash")
    if not verified:
        return Decision(_P, TrackerAction.REOPEN, reason="verification failed; reset for retry")
    return Decision(_P, TrackerAction.REOPEN, reason="uncommitted changes; reset for retry")


# =============================================================================
# Report
# =============================================================================


class ReconcileOutcome(str, Enum):
    """Overall result of a pass."""
    OK = "ok"
    NEEDS_RETRY = "needs_retry"                            # tracker calls failed
    NEEDS_MANUAL_INTERVENTION = "needs_manual_intervention"  # in_progress left behind

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.OK if self is ReconcileOutcome.OK else ExitCode.BLOCKED


@dataclass
class FeatureReconciliation:
    """What a pass saw and did for one feature."""
    feature_id: str
    tracker_id: str
    manifest_before: FeatureStatus
    tracker_before: Optional[TrackerStatus]
    decision: Optional[Decision] = None
    verification: Optional[CommandResult] = None
    working_tree_clean: Optional[bool] = None
    tracker_ok: Optional[bool] = None

    @property
    def skipped(self) -> bool:
        """Tracker status was unknown, so nothing was decided."""
        return self.decision is None

    @property
    def manifest_after(self) -> FeatureStatus:
        return self.decision.new_status if self.decision else self.manifest_before

    @property
    def changed_manifest(self) -> bool:
        return self.manifest_after != self.manifest_before

    @property
    def acted(self) -> bool:
        """Whether the manifest or the tracker was (or should have been) touched."""
        if self.decision is None:
            return False
        return self.changed_manifest or self.decision.tracker_action != TrackerAction.NONE

    def describe(self) -> str:
        tracker = self.tracker_before.value if self.tracker_before else "unknown"
        line = f"{self.feature_id} ({self.tracker_id}): {self.manifest_before.value}/{tracker}"
        if self.decision is None:
            return f"{line} -> skipped (tracker status unknown)"
        action = self.decision.tracker_action
        line = f"{line} -> manifest {self.manifest_after.value}"
        if action != TrackerAction.NONE:
            suffix = "" if self.tracker_ok is not False else " FAILED"
            line = f"{line}, tracker {action.value}{suffix}"
        return f"{line} [{self.decision.reason}]"


@dataclass
class ReconcileReport:
    """Result of one reconciliation pass."""
    outcome: ReconcileOutcome = ReconcileOutcome.OK
    entries: list[FeatureReconciliation] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    anomalies: list[str] = field(default_factory=list)
    manifest_written: bool = False

    @property
    def actions(self) -> list[FeatureReconciliation]:
        return [e for e in self.entries if e.acted]

    @property
    def skipped(self) -> list[FeatureReconciliation]:
        return [e for e in self.entries if e.skipped]

    @property
    def ok(self) -> bool:
        return self.outcome is ReconcileOutcome.OK

    @property
    def exit_code(self) -> ExitCode:
        return self.outcome.exit_code


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """
    Applies ``decide`` to every feature of a plan.

    Pass order:
    1. Load the manifest (invalid manifest aborts with no tracker calls)
    2. Sync the tracker (failure aborts with no writes)
    3. Read each feature's tracker status and decide, running the crash
       check where needed
    4. Persist the manifest once, atomically, if any status changed
    5. Apply tracker actions in manifest order
    6. Flag any feature still in_progress for manual intervention
    """

    def __init__(
        self,
        store: ManifestStore,
        tracker: TrackerClient,
        runner: CommandRunner,
        git: Optional[GitInspector] = None,
        logger: Optional[PlanLogger] = None,
        verification_timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the reconciler.

        Args:
            store: Manifest store for the plan directory.
            tracker: Tracker client.
            runner: Command runner for verification commands.
            git: Git inspector for the clean-tree check (built from runner if omitted).
            logger: Optional logger for recording decisions.
            verification_timeout: Deadline for each verification command.
        """
        from plan_guard.git import GitInspector

        self._store = store
        self._tracker = tracker
        self._runner = runner
        self._git = git or GitInspector(runner)
        self._logger = logger
        self._verification_timeout = verification_timeout
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

    def reconcile(self) -> ReconcileReport:
        """
        Run one reconciliation pass.

        Raises:
            ManifestParseError, ManifestReadError, ManifestValidationError:
                Manifest is unusable.
            TrackerSyncError: Tracker state cannot be trusted.
            ManifestWriteError: The manifest could not be written.
        """
        features = self._store.load()
        self._tracker.sync()

        report = ReconcileReport()
        for feature in features:
            report.entries.append(self._decide_feature(feature))

        updated = [
            feature.with_status(entry.manifest_after) if entry.changed_manifest else feature
            for feature, entry in zip(features, report.entries)
        ]
        if any(entry.changed_manifest for entry in report.entries):
            self._store.save(updated)
            report.manifest_written = True

        for entry in report.entries:
            self._apply_tracker_action(entry, report)

        for entry in report.entries:
            if entry.acted or entry.skipped:
                self._log("reconcile_entry", {"result": entry.describe()})

        for feature in updated:
            if feature.is_in_progress:
                report.anomalies.append(
                    f"{feature.id} is still in_progress after reconciliation; "
                    "manual intervention required"
                )

        if report.anomalies:
            report.outcome = ReconcileOutcome.NEEDS_MANUAL_INTERVENTION
        elif report.errors:
            report.outcome = ReconcileOutcome.NEEDS_RETRY

        self._log("reconcile_complete", {
            "outcome": report.outcome.value,
            "actions": len(report.actions),
            "skipped": len(report.skipped),
            "errors": report.errors,
            "anomalies": report.anomalies,
        }, level="info" if report.ok else "warn")
        return report

    def _decide_feature(self, feature: Feature) -> FeatureReconciliation:
        """Read the tracker status for a feature and decide what to do."""
        remote = self._tracker.get_status(feature.beads_id)
        entry = FeatureReconciliation(
            feature_id=feature.id,
            tracker_id=feature.beads_id,
            manifest_before=feature.status,
            tracker_before=remote,
        )
        if remote is None:
            self._log_std.warning(
                "Tracker status unknown for %s (%s); skipping", feature.id, feature.beads_id
            )
            return entry

        decision = decide(feature.status, remote)
        if decision.needs_crash_check:
            verification = self._runner.run(
                feature.verification, timeout=self._verification_timeout
            )
            clean = self._git.is_clean()
            entry.verification = verification
            entry.working_tree_clean = clean
            decision = resolve_crash(verification.success, clean)
            self._log("crash_check", {
                "feature_id": feature.id,
                "verified": verification.success,
                "timed_out": verification.timed_out,
                "clean": clean,
                "resolution": decision.new_status.value,
            })

        entry.decision = decision
        return entry

    def _apply_tracker_action(
        self,
        entry: FeatureReconciliation,
        report: ReconcileReport,
    ) -> None:
        """Apply the tracker side of a decision, recording failures."""
        if entry.decision is None:
            return

        action = entry.decision.tracker_action
        if action == TrackerAction.NONE:
            return

        if action == TrackerAction.CLOSE:
            entry.tracker_ok = self._tracker.close(
                entry.tracker_id, f"Reconciled: {entry.feature_id} completed"
            )
        else:
            entry.tracker_ok = self._tracker.set_status(entry.tracker_id, TrackerStatus.OPEN)

        if not entry.tracker_ok:
            report.errors.append(
                f"Failed to {action.value} tracker item {entry.tracker_id} "
                f"for {entry.feature_id}"
            )
