"""Shared fixtures: in-memory tracker, scripted command runner, plan factories."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import pytest
from typer.testing import CliRunner

from plan_guard.command_runner import CommandResult
from plan_guard.config import PlanGuardConfig, clear_config_cache
from plan_guard.errors import TrackerSyncError
from plan_guard.models import TrackerItem, TrackerStatus
from plan_guard.tracker import TrackerClient


class FakeTracker(TrackerClient):
    """In-memory tracker that records every mutating call."""

    def __init__(self, statuses: Optional[dict[str, Any]] = None) -> None:
        self.statuses: dict[str, TrackerStatus] = {
            key: TrackerStatus(value) for key, value in (statuses or {}).items()
        }
        self.items: dict[str, TrackerItem] = {}
        self.in_progress_items: list[TrackerItem] = []
        self.calls: list[tuple] = []
        self.fail_close: set[str] = set()
        self.fail_set_status: set[str] = set()
        self.sync_error: Optional[str] = None
        self.parents_ok = True

    def seed(self, statuses: dict[str, str]) -> None:
        for key, value in statuses.items():
            self.statuses[key] = TrackerStatus(value)

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("set_status", "close", "close_eligible_parents")]

    def get_status(self, tracker_id: str) -> Optional[TrackerStatus]:
        return self.statuses.get(tracker_id)

    def set_status(self, tracker_id: str, status: TrackerStatus) -> bool:
        self.calls.append(("set_status", tracker_id, status.value))
        if tracker_id in self.fail_set_status:
            return False
        self.statuses[tracker_id] = status
        return True

    def close(self, tracker_id: str, reason: str) -> bool:
        self.calls.append(("close", tracker_id, reason))
        if tracker_id in self.fail_close:
            return False
        self.statuses[tracker_id] = TrackerStatus.CLOSED
        return True

    def sync(self) -> None:
        self.calls.append(("sync",))
        if self.sync_error:
            raise TrackerSyncError(self.sync_error)

    def get_item(self, tracker_id: str) -> Optional[TrackerItem]:
        return self.items.get(tracker_id)

    def list_in_progress(self) -> list[TrackerItem]:
        return list(self.in_progress_items)

    def close_eligible_parents(self) -> bool:
        self.calls.append(("close_eligible_parents",))
        return self.parents_ok


class FakeRunner:
    """
    Scripted CommandRunner.

    Commands not scripted succeed with empty output, except git queries which
    default to a clean tree and the ``commits`` list.
    """

    def __init__(self) -> None:
        self.results: dict[str, CommandResult] = {}
        self.commits: list[str] = []
        self.changes: list[str] = []
        self.calls: list[str] = []
        self.inputs: dict[str, Optional[str]] = {}

    def script(
        self,
        command: str,
        success: bool = True,
        output: str = "",
        returncode: Optional[int] = None,
        timed_out: bool = False,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        if returncode is None:
            returncode = 0 if success else 1
        self.results[command] = CommandResult(
            command=command,
            success=success,
            output=output,
            returncode=returncode,
            timed_out=timed_out,
            timeout_seconds=timeout_seconds,
        )

    def run(
        self,
        command: str,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        self.calls.append(command)
        self.inputs[command] = input
        if command in self.results:
            return self.results[command]
        if command.startswith("git status"):
            return CommandResult(command, True, "\n".join(self.changes), 0)
        if command.startswith("git log --oneline"):
            return CommandResult(command, True, "\n".join(self.commits), 0)
        return CommandResult(command, True, "", 0)


def feature_record(
    feature_id: str,
    status: str = "pending",
    beads_id: Optional[str] = None,
    depends_on: Optional[list[str]] = None,
    verification: Optional[str] = None,
    **extra: Any,
) -> dict[str, Any]:
    """Manifest line for a feature."""
    record = {
        "id": feature_id,
        "file": f"{feature_id}.md",
        "title": f"Feature {feature_id}",
        "description": "",
        "depends_on": depends_on or [],
        "status": status,
        "verification": verification or f"verify {feature_id}",
        "beads_id": beads_id or f"bd-{feature_id.lower()}",
    }
    record.update(extra)
    return record


@pytest.fixture(autouse=True)
def _reset_config_cache(monkeypatch):
    monkeypatch.delenv("PLAN_DIR", raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def fake_tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_record():
    """Factory for manifest records."""
    return feature_record


@pytest.fixture
def write_manifest(tmp_path: Path):
    """Write records to <tmp_path>/plan/manifest.jsonl and return the plan dir."""
    def _write(records: list[dict[str, Any]], plan_dir: Optional[Path] = None) -> Path:
        plan = plan_dir or tmp_path / "plan"
        plan.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(r, separators=(",", ":")) for r in records]
        (plan / "manifest.jsonl").write_text("\n".join(lines) + ("\n" if lines else ""))
        return plan
    return _write


@pytest.fixture
def make_config(tmp_path: Path):
    """PlanGuardConfig rooted at tmp_path with the plan in ./plan."""
    def _make(**overrides: Any) -> PlanGuardConfig:
        overrides.setdefault("repo_root", str(tmp_path))
        overrides.setdefault("plan_dir", "plan")
        return PlanGuardConfig(**overrides)
    return _make


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()
