"""
Session-end quality gate pipeline.

This module implements the sequence that must pass before a session may
end. Gates run in a fixed order and never short-circuit: every gate runs and
every failure is reported together.

    0. workflow_compliance  active tracker items follow the decomposition rules
    1. uncommitted_changes  working tree is clean (always runs)
    2. active_feature       the in-progress feature verifies and is committed
    3. build                build_command            (if configured)
    4. test                 test_command             (if configured)
    5. lint                 lint_command             (if configured)
    6. format               format_command           (if configured)
    7. static_analysis      static_analysis_command  (if configured)
    8. quality_verifier     external verifier        (if configured)

Unconfigured gates are skipped silently and never show up in a report.

When every gate passes, the pipeline closes tracker items of completed
features that are still open and asks the tracker to close containers whose
children are all closed. Those side effects are best effort: failures are
logged and never turn an allowed result into a blocked one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from plan_guard.errors import ExitCode
from plan_guard.feature_verifier import CheckResult
from plan_guard.manifest_store import completed_features, current_feature
from plan_guard.models import TrackerStatus
from plan_guard.quality_verifier import NoopVerifier, SessionContext

if TYPE_CHECKING:
    from plan_guard.command_runner import CommandRunner
    from plan_guard.compliance import WorkflowCompliance
    from plan_guard.config import PlanGuardConfig
    from plan_guard.feature_verifier import FeatureVerifier
    from plan_guard.git import GitInspector
    from plan_guard.logger import PlanLogger
    from plan_guard.manifest_store import ManifestStore
    from plan_guard.models import Feature
    from plan_guard.quality_verifier import QualityVerifier
    from plan_guard.tracker import TrackerClient


@dataclass
class PipelineResult:
    """Outcome of a full gate run."""
    gates: list[CheckResult] = field(default_factory=list)
    side_effects: list[str] = field(default_factory=list)

    @property
    def failures(self) -> list[CheckResult]:
        return [gate for gate in self.gates if not gate.passed]

    @property
    def allowed(self) -> bool:
        return not self.failures

    @property
    def ran(self) -> list[CheckResult]:
        """Gates that actually ran (skipped ones excluded)."""
        return [gate for gate in self.gates if not gate.skipped]

    @property
    def exit_code(self) -> ExitCode:
        return ExitCode.OK if self.allowed else ExitCode.BLOCKED

    def report(self) -> str:
        """Human-readable blocked report naming every failed gate."""
        if self.allowed:
            return "All quality gates passed."
        sections = ["Cannot complete - quality gates not met:"]
        for gate in self.failures:
            sections.append(f"[{gate.label}]\n{gate.output}".rstrip())
        return "\n\n".join(sections)


class QualityGatePipeline:
    """Runs every configured gate and applies the success side effects."""

    def __init__(
        self,
        config: PlanGuardConfig,
        store: ManifestStore,
        tracker: TrackerClient,
        runner: CommandRunner,
        verifier: Optional[QualityVerifier] = None,
        compliance: Optional[WorkflowCompliance] = None,
        git: Optional[GitInspector] = None,
        feature_verifier: Optional[FeatureVerifier] = None,
        logger: Optional[PlanLogger] = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            config: PlanGuardConfig with gate commands.
            store: Manifest store for the active plan.
            tracker: Tracker client for compliance and side effects.
            runner: Command runner for gate commands.
            verifier: External quality verifier (no-op if omitted).
            compliance: Workflow compliance checker (built from config if omitted).
            git: Git inspector (built from config if omitted).
            feature_verifier: Per-feature verifier for the active_feature gate.
            logger: Optional logger for recording gate results.
        """
        from plan_guard.compliance import WorkflowCompliance
        from plan_guard.feature_verifier import FeatureVerifier
        from plan_guard.git import GitInspector

        self._config = config
        self._store = store
        self._tracker = tracker
        self._runner = runner
        self._verifier = verifier or NoopVerifier()
        self._compliance = compliance or WorkflowCompliance(
            tracker, config.workflow, config.plans_root
        )
        self._git = git or GitInspector.for_config(config, runner)
        self._feature_verifier = feature_verifier or FeatureVerifier(
            config, runner, git=self._git, logger=logger
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

    def run(self) -> PipelineResult:
        """
        Run all gates.

        Raises:
            ManifestError: The manifest is unreadable or invalid; no gate
                runs and nothing is closed.
        """
        features = self._store.load()

        result = PipelineResult()
        result.gates.append(self._gate_workflow_compliance())
        result.gates.append(self._gate_uncommitted_changes())
        result.gates.append(self._gate_active_feature(features))
        for gate_name, command in self._config.gate_commands():
            result.gates.append(CheckResult.from_command(gate_name, self._runner.run(command)))
        result.gates.append(self._gate_quality_verifier(features))

        for gate in result.ran:
            self._log("gate_result", {
                "gate": gate.name,
                "passed": gate.passed,
                "timed_out": gate.timed_out,
            }, level="info" if gate.passed else "warn")

        if result.allowed:
            result.side_effects = self._close_completed(features)
        self._log("gates_complete", {
            "allowed": result.allowed,
            "failed": [gate.name for gate in result.failures],
        })
        return result

    # -------------------------------------------------------------------------
    # Gates
    # -------------------------------------------------------------------------

    def _gate_workflow_compliance(self) -> CheckResult:
        if not self._config.workflow.enabled:
            return CheckResult.skip("workflow_compliance")
        violations = self._compliance.check()
        if not violations:
            return CheckResult(name="workflow_compliance", passed=True)
        lines = ["Workflow violations:"] + [f"  {v}" for v in violations]
        return CheckResult(name="workflow_compliance", passed=False, output="\n".join(lines))

    def _gate_uncommitted_changes(self) -> CheckResult:
        status = self._git.working_tree_status()
        if status.clean:
            return CheckResult(name="uncommitted_changes", passed=True)
        if status.error:
            output = f"Could not read working tree status:\n{status.error}"
        else:
            output = "Uncommitted changes:\n" + "\n".join(status.changes)
        return CheckResult(name="uncommitted_changes", passed=False, output=output)

    def _gate_active_feature(self, features: list[Feature]) -> CheckResult:
        feature = current_feature(features)
        if feature is None:
            return CheckResult.skip("active_feature")
        verification = self._feature_verifier.verify(feature, include_build=False)
        if verification.passed:
            return CheckResult(name="active_feature", passed=True)
        return CheckResult(
            name="active_feature",
            passed=False,
            output=verification.summary(),
            timed_out=any(c.timed_out for c in verification.failures),
        )

    def _gate_quality_verifier(self, features: list[Feature]) -> CheckResult:
        if isinstance(self._verifier, NoopVerifier):
            return CheckResult.skip("quality_verifier")

        active = current_feature(features)
        context = SessionContext(
            plan_dir=str(self._config.plan_path),
            features=[
                {"id": f.id, "title": f.title, "status": f.status.value}
                for f in features
            ],
            current_feature=active.id if active else None,
            recent_commits=self._git.recent_commits(self._config.git.commit_search_depth),
        )
        verdict = self._verifier.evaluate(context)
        if verdict.passed:
            return CheckResult(name="quality_verifier", passed=True)
        issues = verdict.issues or ["verifier reported failure without details"]
        return CheckResult(
            name="quality_verifier",
            passed=False,
            output="\n".join(f"- {issue}" for issue in issues),
        )

    # -------------------------------------------------------------------------
    # Side effects
    # -------------------------------------------------------------------------

    def _close_completed(self, features: list[Feature]) -> list[str]:
        """Close tracker items of completed features, then eligible parents."""
        notes = []
        for feature in completed_features(features):
            status = self._tracker.get_status(feature.beads_id)
            if status is None or status == TrackerStatus.CLOSED:
                continue
            if self._tracker.close(feature.beads_id, f"Session gate: {feature.id} completed"):
                notes.append(f"closed {feature.beads_id} ({feature.id})")
            else:
                self._log_std.warning(
                    "Failed to close tracker item %s for completed feature %s",
                    feature.beads_id, feature.id,
                )
                notes.append(f"failed to close {feature.beads_id} ({feature.id})")

        if self._tracker.close_eligible_parents():
            notes.append("closed eligible parents")
        else:
            self._log_std.warning("Closing eligible parent items failed")
            notes.append("failed to close eligible parents")

        self._log("gate_side_effects", {"notes": notes})
        return notes
