"""Error types raised by the procbox supervisor.

Lower layers (store, prober, launcher, log reader) raise these; the CLI is
the only place that turns them into user-facing output and exit codes.
"""

from __future__ import annotations

# Exit code for supervisor-level failures (already running, not found, ...)
SUPERVISOR_EXIT_CODE = 3


class ProcboxError(Exception):
    """Base class for supervisor errors."""

    exit_code: int = SUPERVISOR_EXIT_CODE


class DaemonAlreadyRunning(ProcboxError):
    """A live daemon is already registered under this name."""

    def __init__(self, name: str, pid: int):
        self.name = name
        self.pid = pid
        super().__init__(
            f"Process '{name}' is already running (PID: {pid}). "
            f"Use 'procbox stop {name}' first."
        )


class NotRunning(ProcboxError):
    """Stop requested for a name with no live record."""

    def __init__(self, name: str, status: str):
        self.name = name
        self.status = status
        super().__init__(f"Process '{name}' is not running (status: {status})")


class NotFound(ProcboxError):
    """No record exists for this name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Process '{name}' not found")


class LogNotFound(ProcboxError):
    """No log file has been written for this name yet."""

    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path
        super().__init__(f"No logs found for '{name}'")


class OrphanedProcess(ProcboxError):
    """The daemon was spawned but its record could not be persisted.

    The process is running and untracked. Recover with
    ``procbox ps --system`` followed by ``procbox adopt``.
    """

    def __init__(self, name: str, pid: int, reason: str = ""):
        self.name = name
        self.pid = pid
        self.reason = reason
        message = f"Process '{name}' started (PID {pid}) but could not be tracked"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class IOFailure(ProcboxError):
    """Reading or writing the process table or a log file failed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"I/O failure on {path}: {reason}")


class SpawnFailure(ProcboxError):
    """The daemon command could not be started."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to start process '{name}': {reason}")


class SignalFailure(ProcboxError):
    """A stop signal could not be delivered (e.g. permission denied)."""

    def __init__(self, name: str, pid: int, reason: str):
        self.name = name
        self.pid = pid
        self.reason = reason
        super().__init__(f"Failed to signal process '{name}' (PID {pid}): {reason}")
