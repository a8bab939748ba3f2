"""
External quality verifier for the session-end gate.

The verifier is an opaque judgment call (typically an LLM review) that gets
the current session context and answers pass/fail plus a list of issues.
plan-guard does not care how it decides. Two implementations ship:

- NoopVerifier: always passes. Used when no verifier is configured.
- CommandVerifier: runs a configured command, writes the context as JSON to
  its stdin and reads a verdict from its stdout.

Which one runs is decided once by ``build_verifier`` from configuration.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from plan_guard.command_runner import CommandRunner
    from plan_guard.config import PlanGuardConfig


@dataclass
class SessionContext:
    """What the verifier gets to look at."""
    plan_dir: str
    features: list[dict[str, Any]] = field(default_factory=list)
    current_feature: Optional[str] = None
    recent_commits: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_dir": self.plan_dir,
            "features": self.features,
            "current_feature": self.current_feature,
            "recent_commits": self.recent_commits,
        }


@dataclass
class Verdict:
    """Verifier answer."""
    passed: bool
    issues: list[str] = field(default_factory=list)

    @classmethod
    def ok(cls) -> Verdict:
        return cls(passed=True)

    @classmethod
    def failed(cls, issues: list[str]) -> Verdict:
        return cls(passed=False, issues=issues)


class QualityVerifier(ABC):
    """Capability: evaluate(context) -> Verdict."""

    name = "verifier"

    @abstractmethod
    def evaluate(self, context: SessionContext) -> Verdict:
        """Judge the session. Must not raise for a negative judgment."""


class NoopVerifier(QualityVerifier):
    """Always passes."""

    name = "none"

    def evaluate(self, context: SessionContext) -> Verdict:
        return Verdict.ok()


class CommandVerifier(QualityVerifier):
    """
    Verifier backed by an external command.

    The command receives the context as JSON on stdin. If it prints a JSON
    object with a boolean ``passed`` (and optionally a list ``issues``), that
    is the verdict. Otherwise the exit status decides and the output becomes
    the single issue on failure.
    """

    name = "command"

    def __init__(
        self,
        runner: CommandRunner,
        command: str,
        timeout: Optional[float] = None,
    ) -> None:
        self._runner = runner
        self.command = command
        self.timeout = timeout

    def evaluate(self, context: SessionContext) -> Verdict:
        result = self._runner.run(
            self.command,
            timeout=self.timeout,
            input=json.dumps(context.to_dict()),
        )

        if result.timed_out:
            return Verdict.failed([f"Verifier timed out: {result.describe()}"])

        parsed = self._parse_verdict(result.output)
        if parsed is not None:
            if not result.success and parsed.passed:
                return Verdict.failed(parsed.issues or [result.describe()])
            return parsed

        if result.success:
            return Verdict.ok()
        return Verdict.failed([result.describe()])

    def _parse_verdict(self, output: str) -> Optional[Verdict]:
        """Parse a JSON verdict from the command output, if there is one."""
        text = output.strip()
        if not text:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            # Verdict may follow log noise; try the last line
            try:
                data = json.loads(text.splitlines()[-1])
            except json.JSONDecodeError:
                return None
        if not isinstance(data, dict) or not isinstance(data.get("passed"), bool):
            return None
        issues = data.get("issues") or []
        if not isinstance(issues, list):
            issues = [str(issues)]
        return Verdict(passed=data["passed"], issues=[str(i) for i in issues])


def build_verifier(config: PlanGuardConfig, runner: CommandRunner) -> QualityVerifier:
    """Select the verifier implementation from configuration."""
    if config.verifier.kind == "command" and config.verifier.command:
        return CommandVerifier(
            runner,
            config.verifier.command,
            timeout=config.verifier.timeout_seconds,
        )
    return NoopVerifier()
