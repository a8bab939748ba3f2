"""
Git queries used by the reconciler, gates and feature verifier.

Only read-only status and log queries live here; committing, branching and
pushing are done by whoever performs the work.

plan-guard writes its own bookkeeping files (the plan lock, the manifest
write lock and the JSONL audit log) inside the repository. Those paths are
excluded from the working-tree check, otherwise every invocation would see
its own artifacts as uncommitted changes.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from plan_guard.command_runner import CommandRunner
from plan_guard.locking import LOCK_FILENAME
from plan_guard.manifest_store import WRITE_LOCK_FILENAME

if TYPE_CHECKING:
    from plan_guard.config import PlanGuardConfig


# Lock files may sit in any plan directory, so match them at every depth
DEFAULT_EXCLUDES: tuple[str, ...] = (
    f":(top,exclude,glob)**/{LOCK_FILENAME}*",
    f":(top,exclude,glob)**/{WRITE_LOCK_FILENAME}",
)


def artifact_excludes(config: PlanGuardConfig) -> list[str]:
    """
    Exclude pathspecs for every file plan-guard itself writes.

    The log directory is relative to ``repo_root``, which is also the
    runner's working directory. A log directory outside the repository
    needs no exclusion.
    """
    excludes = list(DEFAULT_EXCLUDES)
    repo_root = Path(config.repo_root).resolve()
    try:
        relative = config.logs_path.resolve().relative_to(repo_root)
    except ValueError:
        return excludes
    if str(relative) != ".":
        excludes.append(f":(exclude){relative.as_posix()}")
    return excludes


@dataclass
class WorkingTreeStatus:
    """Result of `git status --porcelain`."""
    clean: bool
    changes: list[str] = field(default_factory=list)
    error: str = ""


class GitInspector:
    """Read-only git queries through a CommandRunner."""

    def __init__(self, runner: CommandRunner, exclude: Iterable[str] = DEFAULT_EXCLUDES) -> None:
        self._runner = runner
        self._exclude = list(exclude)

    @classmethod
    def for_config(cls, config: PlanGuardConfig, runner: CommandRunner) -> GitInspector:
        """Inspector that ignores the artifacts written under ``config``."""
        return cls(runner, exclude=artifact_excludes(config))

    def status_command(self) -> str:
        """The `git status` invocation, restricted by the exclude pathspecs."""
        pathspecs = " ".join(shlex.quote(spec) for spec in [":/", *self._exclude])
        return f"git status --porcelain --untracked-files=all -- {pathspecs}"

    def working_tree_status(self) -> WorkingTreeStatus:
        """
        Report uncommitted changes.

        A failing git command is reported as not clean, since cleanliness
        could not be proven.
        """
        result = self._runner.run(self.status_command())
        if not result.success:
            return WorkingTreeStatus(
                clean=False,
                error=result.output.strip() or "git status failed",
            )
        changes = [line for line in result.output.splitlines() if line.strip()]
        return WorkingTreeStatus(clean=not changes, changes=changes)

    def uncommitted_changes(self) -> list[str]:
        """Porcelain lines for every uncommitted change."""
        return self.working_tree_status().changes

    def is_clean(self) -> bool:
        return self.working_tree_status().clean

    def recent_commits(self, count: int) -> list[str]:
        """One-line summaries of the last ``count`` commits (newest first)."""
        result = self._runner.run(f"git log --oneline -{int(count)}")
        if not result.success:
            return []
        return [line for line in result.output.splitlines() if line.strip()]

    def has_commit_referencing(self, token: str, depth: int) -> bool:
        """Whether any of the last ``depth`` commits mention ``token``."""
        return any(token in line for line in self.recent_commits(depth))
