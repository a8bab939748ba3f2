"""
Exclusive lock for a plan directory.

Mutating commands (reconcile, start, finish, fail, run, gate) hold this lock
so two invocations never interleave writes to the same manifest or issue
conflicting tracker calls. Different plan directories lock independently.

Lock file format (JSON), at <plan_dir>/.plan-guard.lock:
{
    "pid": 12345,
    "hostname": "dev-machine",
    "command": "reconcile",
    "started_at": "2026-01-17T10:00:00Z"
}

A lock is stale, and reclaimed on the next acquire, when it is older than
the stale timeout or when its process is gone on this same host.

The file is written in full under a temporary name and then hard-linked into
place, so a competing process never observes a half-written lock. An
unreadable lock younger than UNREADABLE_GRACE_SECONDS is still treated as
held.
"""

from __future__ import annotations

import errno
import json
import logging
import os
import socket
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from plan_guard.errors import PlanLockedError

LOCK_FILENAME = ".plan-guard.lock"
UNREADABLE_GRACE_SECONDS = 5.0

# Filesystems without hard links fall back to O_EXCL creation
_NO_LINK_ERRNOS = (errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.EXDEV)


@dataclass
class LockInfo:
    """Information about who holds a lock."""
    pid: int
    hostname: str
    started_at: str
    command: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "command": self.command,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockInfo:
        return cls(
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            started_at=str(data["started_at"]),
            command=str(data.get("command", "")),
        )

    def describe(self) -> str:
        what = f"'{self.command}' " if self.command else ""
        return f"{what}(PID {self.pid} on {self.hostname} since {self.started_at})"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _is_process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # Signal 0 only checks existence
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else
        return True
    except OSError:
        return False
    return True


class PlanLock:
    """
    Lock file guarding one plan directory.

    Usage:
        with PlanLock(plan_dir, command="reconcile"):
            ...

    Raises PlanLockedError on enter if a live holder exists.
    """

    def __init__(
        self,
        plan_dir: Path,
        command: str = "",
        stale_timeout_minutes: int = 240,
    ) -> None:
        """
        Initialize the lock.

        Args:
            plan_dir: Plan directory to lock.
            command: Name of the command taking the lock (recorded for humans).
            stale_timeout_minutes: Minutes before a lock is considered stale (default 4 hours).
        """
        self.plan_dir = Path(plan_dir)
        self.path = self.plan_dir / LOCK_FILENAME
        self.command = command
        self.stale_timeout_minutes = stale_timeout_minutes
        self._held = False
        self._logger = logging.getLogger(__name__)

    @property
    def held(self) -> bool:
        return self._held

    def holder(self) -> Optional[LockInfo]:
        """Read the current holder, or None if unlocked or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return LockInfo.from_dict(data)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError):
            return None

    def is_stale(self, info: LockInfo) -> bool:
        """Check if a lock is stale based on age and process status."""
        try:
            started_at = datetime.fromisoformat(info.started_at.replace("Z", "+00:00"))
        except ValueError:
            return True

        age = datetime.now(timezone.utc) - started_at
        if age >= timedelta(minutes=self.stale_timeout_minutes):
            return True

        if info.hostname == socket.gethostname() and not _is_process_alive(info.pid):
            return True
        return False

    def _create(self) -> bool:
        """Atomically create the lock file. False if it already exists."""
        info = LockInfo(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            started_at=_now_iso(),
            command=self.command,
        )
        fd, tmp_name = tempfile.mkstemp(
            dir=self.plan_dir, prefix=f"{LOCK_FILENAME}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(info.to_dict(), f, indent=2)
            os.chmod(tmp_name, 0o644)
            try:
                os.link(tmp_name, self.path)
            except FileExistsError:
                return False
            except OSError as e:
                if e.errno not in _NO_LINK_ERRNOS:
                    raise
                return self._create_exclusive(info)
            return True
        finally:
            os.unlink(tmp_name)

    def _create_exclusive(self, info: LockInfo) -> bool:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.to_dict(), f, indent=2)
        return True

    def _modified_within(self, seconds: float) -> bool:
        try:
            return time.time() - self.path.stat().st_mtime < seconds
        except FileNotFoundError:
            return False

    def acquire(self) -> None:
        """
        Take the lock, reclaiming a stale one.

        Raises:
            PlanLockedError: A live holder exists.
        """
        self.plan_dir.mkdir(parents=True, exist_ok=True)

        if self._create():
            self._held = True
            self._logger.debug("Acquired plan lock %s (%s)", self.path, self.command)
            return

        info = self.holder()
        if info is None and self._modified_within(UNREADABLE_GRACE_SECONDS):
            raise PlanLockedError(
                f"Plan directory {self.plan_dir} is being locked by another process. "
                "Retry in a few seconds.",
            )
        if info is None:
            self._logger.warning("Removing unreadable lock file %s", self.path)
        elif self.is_stale(info):
            self._logger.warning("Reclaiming stale plan lock held by %s", info.describe())
        else:
            raise PlanLockedError(
                f"Plan directory {self.plan_dir} is locked by {info.describe()}. "
                "Run 'plan-guard unlock' if that process is gone.",
                holder=info.to_dict(),
            )

        self.path.unlink(missing_ok=True)
        if not self._create():
            # Lost the race to another reclaimer
            current = self.holder()
            raise PlanLockedError(
                f"Plan directory {self.plan_dir} was locked concurrently"
                + (f" by {current.describe()}" if current else ""),
                holder=current.to_dict() if current else None,
            )
        self._held = True

    def release(self) -> bool:
        """
        Release the lock if held by this process.

        Returns:
            True if the lock file is gone afterwards.
        """
        if not self._held:
            return not self.path.exists()

        info = self.holder()
        if info is not None and (info.pid != os.getpid() or info.hostname != socket.gethostname()):
            self._logger.warning(
                "Not releasing plan lock %s: now held by %s", self.path, info.describe()
            )
            self._held = False
            return False

        self.path.unlink(missing_ok=True)
        self._held = False
        self._logger.debug("Released plan lock %s", self.path)
        return True

    def force_release(self) -> Optional[LockInfo]:
        """
        Remove the lock regardless of holder.

        Returns:
            The holder that was removed, if any.
        """
        info = self.holder()
        if self.path.exists():
            self.path.unlink(missing_ok=True)
            self._logger.warning(
                "Force-released plan lock %s%s",
                self.path, f" held by {info.describe()}" if info else "",
            )
        self._held = False
        return info

    def __enter__(self) -> PlanLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
