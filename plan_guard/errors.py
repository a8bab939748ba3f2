"""
Error taxonomy for plan-guard.

This module provides:
- ExitCode constants shared by every CLI command
- PlanGuardError, the base exception carrying the exit code it maps to
- Fatal integrity errors (manifest, tracker sync, configuration)
- Recoverable errors (command failures, orchestration guards, plan locks)

Integrity errors are raised before any mutation happens, so exiting with
ExitCode.FATAL always means "nothing was changed, fix and re-run".
"""

from __future__ import annotations

from enum import IntEnum
from typing import Optional


class ExitCode(IntEnum):
    """Process exit codes for the CLI surface."""

    OK = 0          # Proceed / allow
    FATAL = 1       # Fatal, no mutation performed
    BLOCKED = 2     # Blocked but retryable


class PlanGuardError(Exception):
    """
    Base exception for plan-guard.

    Subclasses set ``exit_code`` so the CLI can map any error to the right
    process status without knowing its concrete type.
    """

    exit_code: ExitCode = ExitCode.BLOCKED

    @property
    def fatal(self) -> bool:
        """True when the error means state could not be trusted."""
        return self.exit_code == ExitCode.FATAL


# =============================================================================
# Fatal integrity errors
# =============================================================================


class ConfigError(PlanGuardError):
    """Raised when configuration is invalid or cannot be loaded."""

    exit_code = ExitCode.FATAL


class ManifestError(PlanGuardError):
    """Base class for malformed or incomplete manifests."""

    exit_code = ExitCode.FATAL


class ManifestParseError(ManifestError):
    """A manifest line is not a valid UTF-8 JSON object."""

    def __init__(self, line: int, detail: str = "", problem: str = "is not valid JSON") -> None:
        message = f"Manifest line {line} {problem}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.line = line
        self.detail = detail


class ManifestReadError(ManifestError):
    """The manifest exists but cannot be read."""


class ManifestValidationError(ManifestError):
    """A manifest record is missing a field or violates an invariant."""

    def __init__(
        self,
        field: str,
        message: str,
        feature_id: Optional[str] = None,
    ) -> None:
        prefix = f"Feature {feature_id}" if feature_id else "Manifest"
        super().__init__(f"{prefix}: invalid '{field}': {message}")
        self.field = field
        self.feature_id = feature_id


class ManifestWriteError(ManifestError):
    """The manifest could not be written; the previous manifest is intact."""


class TrackerSyncError(PlanGuardError):
    """Raised when the tracker cannot be synced, so remote state is untrusted."""

    exit_code = ExitCode.FATAL

    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


# =============================================================================
# Recoverable errors
# =============================================================================


class CommandFailure(PlanGuardError):
    """An external command exited non-zero."""

    def __init__(
        self,
        command: str,
        output: str = "",
        returncode: int = -1,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(message or f"Command failed (exit {returncode}): {command}")
        self.command = command
        self.output = output
        self.returncode = returncode


class CommandTimeout(CommandFailure):
    """An external command exceeded its deadline and was terminated."""

    def __init__(self, command: str, timeout_seconds: float, output: str = "") -> None:
        super().__init__(
            command,
            output=output,
            message=f"Command timed out after {timeout_seconds:g}s: {command}",
        )
        self.timeout_seconds = timeout_seconds


class OrchestrationError(PlanGuardError):
    """A state transition was refused (dependencies, single in-progress rule)."""

    def __init__(self, message: str, feature_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.feature_id = feature_id


class PlanLockedError(PlanGuardError):
    """Another invocation holds the plan directory lock."""

    def __init__(self, message: str, holder: Optional[dict] = None) -> None:
        super().__init__(message)
        self.holder = holder or {}
