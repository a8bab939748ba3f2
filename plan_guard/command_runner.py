"""
External command execution for plan-guard.

Every process plan-guard spawns (gate commands, verification commands, git
queries, the work executor) goes through CommandRunner.run so tests can swap
in a deterministic fake.

Behavior:
- Commands run through the shell with stdout and stderr merged
- A non-zero exit is reported as success=False, never raised
- An optional deadline terminates the whole process group (SIGTERM, then
  SIGKILL after a grace period) and marks the result as timed out
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from typing import Optional

from plan_guard.errors import CommandFailure, CommandTimeout


@dataclass
class CommandResult:
    """Outcome of one external command."""
    command: str
    success: bool
    output: str = ""
    returncode: int = -1
    timed_out: bool = False
    duration_seconds: float = 0.0
    timeout_seconds: Optional[float] = None

    @property
    def failure_kind(self) -> str:
        """'timeout', 'failure' or '' for a successful command."""
        if self.success:
            return ""
        return "timeout" if self.timed_out else "failure"

    def describe(self) -> str:
        """Diagnostic text for reports: status line plus captured output."""
        if self.success:
            header = f"$ {self.command} (ok)"
        elif self.timed_out:
            header = f"$ {self.command} (TIMEOUT after {self.timeout_seconds:g}s)"
        else:
            header = f"$ {self.command} (exit {self.returncode})"
        output = self.output.strip()
        return f"{header}\n{output}" if output else header

    def raise_for_status(self) -> None:
        """
        Raise if the command did not succeed.

        Raises:
            CommandTimeout: The command hit its deadline.
            CommandFailure: The command exited non-zero or could not start.
        """
        if self.success:
            return
        if self.timed_out:
            raise CommandTimeout(self.command, self.timeout_seconds or 0, self.output)
        raise CommandFailure(self.command, self.output, self.returncode)


class CommandRunner:
    """
    Blocking shell command runner with optional deadlines.

    Each command starts in its own session so a timeout can take down the
    process group, not just the shell that launched it.
    """

    def __init__(
        self,
        cwd: Optional[str] = None,
        default_timeout: Optional[float] = None,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        """
        Initialize CommandRunner.

        Args:
            cwd: Working directory for commands (default: current directory).
            default_timeout: Deadline used when run() gets no explicit timeout.
            kill_grace_seconds: Wait between SIGTERM and SIGKILL on expiry.
        """
        self.cwd = cwd
        self.default_timeout = default_timeout
        self.kill_grace_seconds = kill_grace_seconds
        self._logger = logging.getLogger(__name__)

    def run(
        self,
        command: str,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
        cwd: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a shell command and capture combined output.

        Args:
            command: Shell command line.
            timeout: Deadline in seconds (falls back to default_timeout).
            input: Text written to the command's stdin.
            cwd: Working directory override for this command.

        Returns:
            CommandResult. Never raises for command failures.
        """
        timeout = timeout if timeout is not None else self.default_timeout
        start = time.monotonic()

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                encoding="utf-8",
                errors="replace",
                cwd=cwd or self.cwd,
                start_new_session=True,
            )
        except OSError as e:
            return CommandResult(
                command=command,
                success=False,
                output=f"Failed to start command: {e}",
                duration_seconds=time.monotonic() - start,
            )

        try:
            output, _ = process.communicate(input=input, timeout=timeout)
        except subprocess.TimeoutExpired:
            self._logger.warning(
                "Command timed out after %ss, terminating process group: %s",
                timeout, command,
            )
            output = self._terminate(process)
            return CommandResult(
                command=command,
                success=False,
                output=output,
                returncode=process.returncode if process.returncode is not None else -1,
                timed_out=True,
                duration_seconds=time.monotonic() - start,
                timeout_seconds=timeout,
            )

        return CommandResult(
            command=command,
            success=process.returncode == 0,
            output=output or "",
            returncode=process.returncode,
            duration_seconds=time.monotonic() - start,
            timeout_seconds=timeout,
        )

    def _terminate(self, process: subprocess.Popen) -> str:
        """Terminate a process group and collect whatever output it produced."""
        self._signal_group(process.pid, signal.SIGTERM)
        try:
            output, _ = process.communicate(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            self._signal_group(process.pid, signal.SIGKILL)
            output, _ = process.communicate()
        return output or ""

    def _signal_group(self, pid: int, sig: int) -> None:
        """Send a signal to the process group led by pid."""
        try:
            os.killpg(os.getpgid(pid), sig)
        except (OSError, ProcessLookupError):
            pass
