"""
Issue tracker access for plan-guard.

This module provides:
- TrackerClient, the interface the reconciler, gates and orchestrator use
- BeadsTracker, which drives the Beads `bd` CLI

Read calls never raise: an item that cannot be fetched (not found, CLI
missing, timeout) is reported as None and callers treat it as "unknown,
skip". Only sync() raises, because a failed sync means remote state cannot
be trusted for the rest of a pass.
"""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from plan_guard.errors import TrackerSyncError
from plan_guard.models import TrackerItem, TrackerStatus

if TYPE_CHECKING:
    from plan_guard.config import TrackerConfig
    from plan_guard.logger import PlanLogger

_logger = logging.getLogger(__name__)


class TrackerClient(ABC):
    """Interface to the external issue tracker."""

    @abstractmethod
    def get_status(self, tracker_id: str) -> Optional[TrackerStatus]:
        """Current status of an item, or None if unknown."""

    @abstractmethod
    def set_status(self, tracker_id: str, status: TrackerStatus) -> bool:
        """Update an item's status. Returns True on success."""

    @abstractmethod
    def close(self, tracker_id: str, reason: str) -> bool:
        """Close an item with a reason. Returns True on success."""

    @abstractmethod
    def sync(self) -> None:
        """
        Synchronize local tracker state with its remote.

        Raises:
            TrackerSyncError: If the sync fails.
        """

    @abstractmethod
    def get_item(self, tracker_id: str) -> Optional[TrackerItem]:
        """Full item including dependencies and dependents, or None."""

    @abstractmethod
    def list_in_progress(self) -> list[TrackerItem]:
        """Items currently in progress. Empty on failure."""

    @abstractmethod
    def close_eligible_parents(self) -> bool:
        """Close container items whose children are all closed."""


class BeadsTracker(TrackerClient):
    """
    TrackerClient backed by the Beads `bd` CLI.

    Command contract:
        bd show <id> --json                 -> [item] or item
        bd update <id> --status=<status>
        bd close <id> --reason=<reason>
        bd sync
        bd list --status=in_progress --json -> [item, ...]
        bd epic close-eligible
    """

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        cwd: Optional[str] = None,
        logger: Optional[PlanLogger] = None,
    ) -> None:
        """
        Initialize the Beads tracker.

        Args:
            config: TrackerConfig with the bd binary and timeouts.
            cwd: Directory to run bd in (the project root).
            logger: Optional logger for recording operations.
        """
        from plan_guard.config import TrackerConfig

        self.config = config or TrackerConfig()
        self.cwd = cwd
        self._logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "beads"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def _run_bd(
        self,
        args: list[str],
        timeout: Optional[int] = None,
    ) -> tuple[bool, str, str]:
        """
        Run a bd CLI command.

        Args:
            args: Arguments to pass to bd.
            timeout: Command timeout in seconds.

        Returns:
            Tuple of (success, stdout, stderr).
        """
        try:
            result = subprocess.run(
                [self.config.binary] + args,
                cwd=self.cwd,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout or self.config.timeout_seconds,
            )
            return result.returncode == 0, result.stdout, result.stderr
        except FileNotFoundError:
            return False, "", f"{self.config.binary} CLI not found"
        except subprocess.TimeoutExpired:
            return False, "", "Command timed out"
        except OSError as e:
            return False, "", str(e)

    def _show(self, tracker_id: str) -> Optional[dict[str, Any]]:
        """Raw `bd show` object for an item."""
        success, stdout, stderr = self._run_bd(["show", tracker_id, "--json"])
        if not success:
            self._log("show_failed", {"id": tracker_id, "error": stderr[:200]}, level="debug")
            return None
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            self._log("show_invalid_json", {"id": tracker_id}, level="warn")
            return None

        if isinstance(data, list):
            data = data[0] if data else None
        return data if isinstance(data, dict) else None

    def get_status(self, tracker_id: str) -> Optional[TrackerStatus]:
        data = self._show(tracker_id)
        if data is None:
            return None
        return TrackerStatus.parse(data.get("status"))

    def get_item(self, tracker_id: str) -> Optional[TrackerItem]:
        data = self._show(tracker_id)
        if data is None:
            return None
        return TrackerItem.from_dict(data)

    def set_status(self, tracker_id: str, status: TrackerStatus) -> bool:
        success, _, stderr = self._run_bd(["update", tracker_id, f"--status={status.value}"])
        if success:
            self._log("status_updated", {"id": tracker_id, "status": status.value})
        else:
            _logger.warning("bd update %s --status=%s failed: %s", tracker_id, status.value, stderr.strip())
            self._log("status_update_failed", {
                "id": tracker_id,
                "status": status.value,
                "error": stderr[:200],
            }, level="warn")
        return success

    def close(self, tracker_id: str, reason: str) -> bool:
        success, _, stderr = self._run_bd(["close", tracker_id, f"--reason={reason}"])
        if success:
            self._log("item_closed", {"id": tracker_id, "reason": reason})
        else:
            _logger.warning("bd close %s failed: %s", tracker_id, stderr.strip())
            self._log("close_failed", {"id": tracker_id, "error": stderr[:200]}, level="warn")
        return success

    def sync(self) -> None:
        success, stdout, stderr = self._run_bd(
            ["sync"], timeout=self.config.sync_timeout_seconds
        )
        if not success:
            _logger.error("bd sync failed: %s", stderr.strip())
            self._log("sync_failed", {"error": stderr[:200]}, level="error")
            raise TrackerSyncError(
                f"Tracker sync failed: {stderr.strip() or 'unknown error'}",
                output=(stdout + stderr).strip(),
            )
        self._log("synced", level="debug")

    def list_in_progress(self) -> list[TrackerItem]:
        success, stdout, stderr = self._run_bd(["list", "--status=in_progress", "--json"])
        if not success:
            self._log("list_failed", {"error": stderr[:200]}, level="warn")
            return []
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError:
            return []
        if not isinstance(data, list):
            return []
        return [TrackerItem.from_dict(item) for item in data if isinstance(item, dict)]

    def close_eligible_parents(self) -> bool:
        success, _, stderr = self._run_bd(["epic", "close-eligible"])
        if not success:
            self._log("close_eligible_failed", {"error": stderr[:200]}, level="warn")
        return success
