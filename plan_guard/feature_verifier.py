"""
Per-feature verification.

A feature may only be marked completed after three independent checks pass:

1. verification - the feature's own verification command exits 0
2. commit       - a recent commit mentions the feature id
3. build        - the project build command exits 0 (skipped when unset)

All three always run, even after a failure, so a single report shows every
problem at once.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from plan_guard.command_runner import CommandResult, CommandRunner
    from plan_guard.config import PlanGuardConfig
    from plan_guard.git import GitInspector
    from plan_guard.logger import PlanLogger
    from plan_guard.models import Feature


@dataclass
class CheckResult:
    """Outcome of one named check or gate."""
    name: str
    passed: bool
    output: str = ""
    skipped: bool = False
    timed_out: bool = False

    @classmethod
    def from_command(cls, name: str, result: CommandResult) -> CheckResult:
        return cls(
            name=name,
            passed=result.success,
            output="" if result.success else result.describe(),
            timed_out=result.timed_out,
        )

    @classmethod
    def skip(cls, name: str) -> CheckResult:
        return cls(name=name, passed=True, skipped=True)

    @property
    def label(self) -> str:
        """Name with a distinct marker for timeouts."""
        return f"{self.name} (timeout)" if self.timed_out else self.name


@dataclass
class FeatureVerification:
    """All checks for one feature."""
    feature_id: str
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> list[CheckResult]:
        return [check for check in self.checks if not check.passed]

    def summary(self) -> str:
        if self.passed:
            return f"{self.feature_id}: all checks passed"
        parts = [f"{self.feature_id}: {len(self.failures)} check(s) failed"]
        for check in self.failures:
            parts.append(f"- {check.label}\n{check.output}".rstrip())
        return "\n".join(parts)


class FeatureVerifier:
    """Runs the completion checks for a single feature."""

    def __init__(
        self,
        config: PlanGuardConfig,
        runner: CommandRunner,
        git: Optional[GitInspector] = None,
        logger: Optional[PlanLogger] = None,
    ) -> None:
        from plan_guard.git import GitInspector

        self._config = config
        self._runner = runner
        self._git = git or GitInspector.for_config(config, runner)
        self._logger = logger

    def verify(self, feature: Feature, include_build: bool = True) -> FeatureVerification:
        """
        Run every check for ``feature``.

        Args:
            feature: The feature to verify.
            include_build: Also run the global build command.
        """
        verification = FeatureVerification(feature_id=feature.id)
        verification.checks.append(self.check_verification(feature))
        verification.checks.append(self.check_commit(feature))
        if include_build:
            verification.checks.append(self.check_build())

        if self._logger:
            self._logger.log("feature_verified", {
                "feature_id": feature.id,
                "passed": verification.passed,
                "failed_checks": [c.name for c in verification.failures],
            }, level="info" if verification.passed else "warn")
        return verification

    def check_verification(self, feature: Feature) -> CheckResult:
        result = self._runner.run(feature.verification)
        return CheckResult.from_command("verification", result)

    def check_commit(self, feature: Feature) -> CheckResult:
        depth = self._config.git.commit_search_depth
        if self._git.has_commit_referencing(feature.id, depth):
            return CheckResult(name="commit", passed=True)
        return CheckResult(
            name="commit",
            passed=False,
            output=f"No commit found containing feature ID {feature.id} "
                   f"in the last {depth} commits",
        )

    def check_build(self) -> CheckResult:
        command = self._config.build_command.strip()
        if not command:
            return CheckResult.skip("build")
        return CheckResult.from_command("build", self._runner.run(command))
