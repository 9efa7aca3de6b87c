"""Daemon launcher for procbox.

Starts commands as detached children (own session and process group),
points their output at a per-name log file, records them in the process
table and hands each one to a watcher thread that updates the record when
the child exits.

Watchers live in the launching process. When that process exits (the usual
case for a one-shot CLI invocation) the daemons keep running but nobody
observes their exit; reconciliation picks that up on the next read.
"""

from __future__ import annotations

import os
import subprocess
import threading
from datetime import datetime
from pathlib import Path
from typing import IO

from loguru import logger

from procbox.environment import ENV_ACTIVE, ENV_NAME, ENV_PROJECT, env_to_dict
from procbox.errors import (
    DaemonAlreadyRunning,
    IOFailure,
    OrphanedProcess,
    ProcboxError,
    SpawnFailure,
)
from procbox.core.liveness import is_record_alive
from procbox.core.store import ProcessStore
from procbox.models import ProcessRecord, ProcessStatus, SupervisorConfig, now


def log_file_name(name: str) -> str:
    """File name of the log for a daemon name."""
    safe_name = name.replace("/", "_").replace("\\", "_")
    return f"{safe_name}.log"


class DaemonHandle:
    """Handle to a daemon started by this process."""

    def __init__(
        self,
        name: str,
        process: subprocess.Popen,
        log_file: IO[str],
        started_at: datetime,
    ):
        self.name = name
        self.process = process
        self.log_file = log_file
        self.started_at = started_at
        self.stop_requested = False
        self.watcher: threading.Thread | None = None

    @property
    def pid(self) -> int:
        """Get the process ID."""
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        """Get the return code if process has exited."""
        return self.process.returncode

    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self.process.poll() is None

    def close_files(self) -> None:
        """Close the log file handle."""
        if self.log_file and not self.log_file.closed:
            self.log_file.close()


class DaemonLauncher:
    """Starts daemons and watches them until they exit."""

    def __init__(
        self,
        store: ProcessStore,
        logs_dir: Path,
        project: str,
        config: SupervisorConfig | None = None,
    ):
        self.store = store
        self.logs_dir = Path(logs_dir)
        self.project = project
        self.config = config or SupervisorConfig()

        self._handles: dict[int, DaemonHandle] = {}
        self._handles_lock = threading.Lock()

    def log_path(self, name: str) -> Path:
        """Path of the log file for ``name``."""
        return self.logs_dir / log_file_name(name)

    def handle(self, pid: int) -> DaemonHandle | None:
        """Handle for a child of this process, if it is still being watched."""
        with self._handles_lock:
            return self._handles.get(pid)

    def mark_stop_requested(self, pid: int) -> None:
        """Flag a pid whose exit the supervisor asked for (not a crash)."""
        handle = self.handle(pid)
        if handle:
            handle.stop_requested = True

    def start(
        self,
        name: str,
        command: str,
        env: list[str] | None,
        workdir: str | Path,
    ) -> ProcessRecord:
        """Start ``command`` as a background daemon named ``name``.

        Args:
            name: Logical daemon name (table key)
            command: Shell command line, run with ``sh -c``
            env: Ordered ``KEY=VALUE`` list; None inherits the host environment
            workdir: Working directory for the child

        Returns:
            The persisted ``running`` record

        Raises:
            DaemonAlreadyRunning: a live record already holds ``name``
            IOFailure: the log file could not be opened (nothing spawned)
            SpawnFailure: the command could not be started (nothing recorded)
            OrphanedProcess: started, but the record could not be saved
        """
        tolerance = self.config.start_time_tolerance

        # The lock spans check, spawn and record so two launches of the
        # same name can't both pass the check.
        with self.store.locked():
            table = self.store.load()
            existing = table.get(name)
            if existing and existing.status == ProcessStatus.RUNNING:
                if is_record_alive(existing, tolerance):
                    raise DaemonAlreadyRunning(name, existing.pid)
                logger.debug(f"Replacing stale record for '{name}' (PID {existing.pid})")

            log_path = self.log_path(name)
            log_file = self._open_log(name, log_path, command, workdir)

            try:
                process = subprocess.Popen(
                    command,
                    shell=True,
                    cwd=str(workdir),
                    env=self._child_env(name, env),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,  # Own session + process group
                )
            except (OSError, ValueError) as e:
                log_file.close()
                logger.error(f"Failed to start '{name}': {e}")
                raise SpawnFailure(name, str(e)) from e

            started_at = now()
            record = ProcessRecord(
                pid=process.pid,
                name=name,
                command=command,
                start_time=started_at,
                status=ProcessStatus.RUNNING,
                log_file=str(log_path),
                project=self.project,
            )

            handle = DaemonHandle(name, process, log_file, started_at)
            self._watch(handle)

            table.pop(name, None)
            table[name] = record
            try:
                self.store.save(table)
            except IOFailure as e:
                logger.error(f"Process '{name}' (PID {process.pid}) is running but untracked: {e}")
                raise OrphanedProcess(name, process.pid, e.reason) from e

        logger.info(f"Started daemon '{name}' (PID {process.pid}): {command}")
        return record

    def wait_watchers(self, timeout: float | None = None) -> bool:
        """Wait for all watcher threads. Returns True if none is left."""
        with self._handles_lock:
            watchers = [h.watcher for h in self._handles.values() if h.watcher]
        for watcher in watchers:
            watcher.join(timeout)
        with self._handles_lock:
            return not self._handles

    # Internals

    def _open_log(self, name: str, log_path: Path, command: str, workdir: str | Path) -> IO[str]:
        """Open the log in append mode and write the launch banner."""
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "a")
            timestamp = now().isoformat()
            log_file.write(f"\n{'=' * 60}\n")
            log_file.write(f"[{timestamp}] Starting daemon: {name}\n")
            log_file.write(f"Command: {command}\n")
            log_file.write(f"Workdir: {workdir}\n")
            log_file.write(f"{'=' * 60}\n\n")
            log_file.flush()
        except OSError as e:
            logger.error(f"Failed to open log file {log_path}: {e}")
            raise IOFailure(str(log_path), str(e)) from e
        return log_file

    def _child_env(self, name: str, env: list[str] | None) -> dict[str, str]:
        """Child environment plus the markers used to find our daemons."""
        child_env = env_to_dict(env)
        if child_env is None:
            child_env = dict(os.environ)
        child_env[ENV_ACTIVE] = "1"
        child_env[ENV_PROJECT] = self.project
        child_env[ENV_NAME] = name
        return child_env

    def _watch(self, handle: DaemonHandle) -> None:
        """Register a handle and start its watcher thread."""
        watcher = threading.Thread(
            target=self._run_watcher,
            args=(handle,),
            name=f"procbox-watch-{handle.name}-{handle.pid}",
            daemon=True,
        )
        handle.watcher = watcher
        with self._handles_lock:
            self._handles[handle.pid] = handle
        watcher.start()

    def _run_watcher(self, handle: DaemonHandle) -> None:
        """Block until the child exits, then record its terminal status."""
        try:
            exit_code = handle.process.wait()
        finally:
            handle.close_files()

        if exit_code == 0 or handle.stop_requested:
            status = ProcessStatus.STOPPED
        else:
            status = ProcessStatus.CRASHED

        def mark_exited(record: ProcessRecord) -> ProcessRecord | None:
            if record.status != ProcessStatus.RUNNING:
                return None
            return record.model_copy(update={"status": status, "exit_code": exit_code})

        try:
            updated = self.store.update(handle.name, mark_exited, pid=handle.pid)
            if updated is None:
                logger.debug(f"Record for '{handle.name}' no longer tracks PID {handle.pid}")
            else:
                logger.info(
                    f"Daemon '{handle.name}' (PID {handle.pid}) exited with code {exit_code}: "
                    f"{updated.status.value}"
                )
        except ProcboxError as e:
            logger.error(f"Failed to record exit of '{handle.name}' (PID {handle.pid}): {e}")
        finally:
            with self._handles_lock:
                self._handles.pop(handle.pid, None)
