"""
Audit log for plan-guard.

Every state change plan-guard makes (manifest writes, tracker calls, gate
verdicts, reconciliation actions) is appended as one JSON object per line to
a per-plan, per-day file:

    <repo_root>/<logs_dir>/<plan>-YYYY-MM-DD.jsonl

Entry shape::

    {"timestamp": "...Z", "level": "info", "event_type": "gate_result",
     "plan": "auth", "data": {...}, "run_id": "run_..."}

``run_id`` is present only for entries written inside ``run_context``.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from plan_guard.config import PlanGuardConfig


class LogLevel:
    """Levels accepted by PlanLogger.log."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    ALL = (DEBUG, INFO, WARN, ERROR)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PlanLogger:
    """
    Append-only JSONL event log for one plan directory.

    Components take an optional PlanLogger and call ``log``; nothing is
    buffered, so an entry is on disk before the next step runs.
    """

    def __init__(self, config: PlanGuardConfig) -> None:
        self._logs_path = config.logs_path
        self.plan = config.plan_path.name or "plan"
        self._run_id: Optional[str] = None

    def path_for(self, date: Optional[str] = None) -> Path:
        """Log file for a YYYY-MM-DD date, today (UTC) when omitted."""
        day = date or _utc_now().strftime("%Y-%m-%d")
        return self._logs_path / f"{self.plan}-{day}.jsonl"

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """Append one event."""
        entry: dict[str, Any] = {
            "timestamp": _utc_now().isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "plan": self.plan,
            "data": data or {},
        }
        if self._run_id:
            entry["run_id"] = self._run_id

        path = self.path_for()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    @contextmanager
    def run_context(self, run_id: str) -> Iterator[PlanLogger]:
        """
        Tag every entry written inside the block with ``run_id``.

        Writes ``run_start`` / ``run_end`` markers around the block, the end
        marker even when the block raises.
        """
        previous = self._run_id
        self._run_id = run_id
        self.log("run_start", {"run_id": run_id})
        try:
            yield self
        finally:
            self.log("run_end", {"run_id": run_id})
            self._run_id = previous

    def _iter_entries(self, date: Optional[str]) -> Iterator[dict[str, Any]]:
        path = self.path_for(date)
        if not path.exists():
            return
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    # A torn final line from a killed process
                    continue
                if isinstance(entry, dict):
                    yield entry

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Entries of one day, oldest first.

        Args:
            date: YYYY-MM-DD, today (UTC) when omitted.
            level: Keep only this level.
            event_type: Keep only this event type.
            limit: Keep only the first ``limit`` matches.
        """
        matches = []
        for entry in self._iter_entries(date):
            if level and entry.get("level") != level:
                continue
            if event_type and entry.get("event_type") != event_type:
                continue
            matches.append(entry)
            if limit and len(matches) >= limit:
                break
        return matches
