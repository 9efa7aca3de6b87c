"""Process supervisor facade for procbox.

Every operation first reconciles the stored table with the OS (stale
``running`` entries become ``stopped``) and persists what changed, then
acts. The table is accounting, not the source of truth: when a signal has
been delivered but the table can't be written, the OS-level effect stands
and the error is reported. Rebuilding the table by re-probing known PIDs
(``procbox ps --system`` + ``procbox adopt``) is a valid recovery path.
"""

from __future__ import annotations

import os
import signal
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator

import psutil
from loguru import logger

from procbox.config import load_project_config, logs_dir, process_file, project_name
from procbox.errors import (
    DaemonAlreadyRunning,
    IOFailure,
    NotFound,
    NotRunning,
    ProcboxError,
    SignalFailure,
)
from procbox.core.launcher import DaemonLauncher
from procbox.core.liveness import (
    SystemProcess,
    find_system_processes,
    group_alive,
    is_alive,
    is_record_alive,
    leads_group,
    reconcile,
)
from procbox.core.log_utils import LogReader, prune_logs
from procbox.core.store import ProcessStore
from procbox.models import (
    ProcessRecord,
    ProcessStatus,
    ProcessTable,
    SupervisorConfig,
)

# Poll interval while waiting for a signalled process to exit
STOP_POLL_INTERVAL = 0.05


@dataclass
class StopAllReport:
    """Outcome of stopping every running daemon."""

    stopped: list[str] = field(default_factory=list)
    failed: dict[str, ProcboxError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class Supervisor:
    """Start, stop, restart, list and inspect a project's daemons."""

    def __init__(
        self,
        project_root: Path,
        config: SupervisorConfig | None = None,
    ):
        """Initialize the supervisor.

        Args:
            project_root: Project directory; state lives in ``<root>/.procbox``
            config: Supervisor tuning (default: from ``procbox.yaml``)
        """
        self.project_root = Path(project_root)
        self.config = config or load_project_config(self.project_root).supervisor
        self.project = project_name(self.project_root)
        self.logs_dir = logs_dir(self.project_root)

        self.store = ProcessStore(process_file(self.project_root))
        self.launcher = DaemonLauncher(
            store=self.store,
            logs_dir=self.logs_dir,
            project=self.project,
            config=self.config,
        )
        self.reader = LogReader(self.logs_dir, poll_interval=self.config.poll_interval)

    # Reconciliation

    def _reconciled(self) -> ProcessTable:
        """Load the table, heal stale statuses and persist them."""
        with self.store.locked():
            table = self.store.load()
            table, changed = reconcile(table, self.config.start_time_tolerance)
            if changed:
                try:
                    self.store.save(table)
                except IOFailure as e:
                    logger.warning(f"Could not persist reconciled process table: {e}")
        return table

    def _is_alive(self, record: ProcessRecord) -> bool:
        return is_record_alive(record, self.config.start_time_tolerance)

    # Queries

    def list(self, include_stopped: bool = False) -> list[ProcessRecord]:
        """List tracked daemons, running only unless ``include_stopped``."""
        records = list(self._reconciled().values())
        if include_stopped:
            return records
        return [r for r in records if r.is_running and self._is_alive(r)]

    def status(self, name: str) -> ProcessRecord:
        """Get the reconciled record for ``name``.

        Raises:
            NotFound: no record for ``name``
        """
        record = self._reconciled().get(name)
        if record is None:
            raise NotFound(name)
        return record

    # Lifecycle

    def start(
        self,
        name: str,
        command: str,
        workdir: str | Path,
        env: list[str] | None = None,
    ) -> ProcessRecord:
        """Start a daemon.

        Raises:
            DaemonAlreadyRunning: ``name`` is live
            SpawnFailure, IOFailure, OrphanedProcess: see ``DaemonLauncher.start``
        """
        return self.launcher.start(name, command, env, workdir)

    def stop(self, name: str) -> ProcessRecord:
        """Stop a running daemon: SIGTERM, grace period, then SIGKILL.

        The record is marked ``stopped`` whichever signal ended it.

        Raises:
            NotFound: no record for ``name``
            NotRunning: the record is not running (no signal is sent)
            IOFailure: the process was signalled but the table write failed
        """
        record = self.status(name)
        if record.status != ProcessStatus.RUNNING:
            raise NotRunning(name, record.status.value)

        pid = record.pid
        # Launched daemons lead their group; adopted processes may not
        group = leads_group(pid)
        self.launcher.mark_stop_requested(pid)

        logger.info(f"Stopping '{name}' (PID {pid}, grace period: {self.config.stop_grace_period}s)")
        try:
            if self._signal(pid, signal.SIGTERM):
                if not self._wait_exit(pid, self.config.stop_grace_period, group):
                    logger.warning(f"Process '{name}' did not stop gracefully, killing")
                    self._signal(pid, signal.SIGKILL)
                    if not self._wait_exit(pid, self.config.kill_timeout, group):
                        logger.error(f"Process '{name}' (PID {pid}) survived SIGKILL")
        except PermissionError as e:
            handle = self.launcher.handle(pid)
            if handle:
                handle.stop_requested = False
            raise SignalFailure(name, pid, str(e)) from e

        def mark_stopped(current: ProcessRecord) -> ProcessRecord | None:
            if current.status != ProcessStatus.RUNNING:
                return None
            return current.model_copy(update={"status": ProcessStatus.STOPPED})

        try:
            updated = self.store.update(name, mark_stopped, pid=pid)
        except IOFailure:
            logger.error(f"Process '{name}' was signalled but its record could not be updated")
            raise

        logger.info(f"Stopped '{name}' (PID {pid})")
        return updated or record.model_copy(update={"status": ProcessStatus.STOPPED})

    def stop_all(self) -> StopAllReport:
        """Stop every running daemon, continuing past individual failures."""
        report = StopAllReport()

        for record in self.list():
            try:
                self.stop(record.name)
                report.stopped.append(record.name)
            except NotRunning:
                # Exited between listing and stopping
                report.stopped.append(record.name)
            except ProcboxError as e:
                logger.error(f"Failed to stop '{record.name}': {e}")
                report.failed[record.name] = e

        return report

    def restart(
        self,
        name: str,
        workdir: str | Path,
        env: list[str] | None = None,
    ) -> ProcessRecord:
        """Restart a daemon with its recorded command.

        ``workdir``/``env`` are supplied fresh by the caller rather than
        taken from the old launch.

        Raises:
            NotFound: no record for ``name``
        """
        existing = self.status(name)
        command = existing.command

        if existing.status == ProcessStatus.RUNNING:
            try:
                self.stop(name)
            except NotRunning:
                pass
            time.sleep(self.config.restart_delay)

        logger.info(f"Restarting '{name}': {command}")
        return self.start(name, command, workdir, env)

    def remove(self, name: str) -> bool:
        """Remove a record from the table.

        Raises:
            DaemonAlreadyRunning: the record is still live
        """
        with self.store.locked():
            record = self._reconciled().get(name)
            if record is None:
                return False
            if record.status == ProcessStatus.RUNNING:
                raise DaemonAlreadyRunning(name, record.pid)
            removed = self.store.remove(name)

        if removed:
            logger.info(f"Removed process record '{name}'")
        return removed

    def adopt(self, name: str, pid: int) -> ProcessRecord:
        """Track an already-running process under ``name``.

        Used to rebuild the table after an ``OrphanedProcess`` or a lost
        table. Command and start time come from the OS.

        Raises:
            NotFound: ``pid`` is not a live process
            DaemonAlreadyRunning: ``name`` is live under another pid
        """
        if not is_alive(pid):
            raise NotFound(str(pid))

        try:
            proc = psutil.Process(pid)
            command = " ".join(proc.cmdline())
            started_at = datetime.fromtimestamp(proc.create_time()).astimezone()
        except psutil.NoSuchProcess as e:
            raise NotFound(str(pid)) from e
        except psutil.AccessDenied:
            command = ""
            started_at = datetime.now().astimezone()

        with self.store.locked():
            existing = self._reconciled().get(name)
            if existing and existing.status == ProcessStatus.RUNNING and existing.pid != pid:
                raise DaemonAlreadyRunning(name, existing.pid)

            record = ProcessRecord(
                pid=pid,
                name=name,
                command=command,
                start_time=started_at,
                status=ProcessStatus.RUNNING,
                log_file=str(self.launcher.log_path(name)),
                project=self.project,
            )
            self.store.upsert(record)

        logger.info(f"Adopted PID {pid} as '{name}'")
        return record

    # Logs

    def logs(self, name: str, lines: int | None = None) -> list[str]:
        """Last ``lines`` lines of a daemon's log.

        Raises:
            LogNotFound: no log for ``name``
        """
        return self.reader.tail(name, self.config.tail_lines if lines is None else lines)

    def follow(self, name: str, stop: threading.Event | None = None) -> Iterator[str]:
        """Stream new log lines for ``name`` until cancelled by the caller."""
        return self.reader.follow(name, stop=stop)

    def list_logs(self) -> list[str]:
        """Names with a log file."""
        return self.reader.list_logs()

    def log_size(self, name: str) -> int:
        """Size in bytes of a daemon's log."""
        return self.reader.log_size(name)

    def prune_logs(self, max_age: timedelta) -> int:
        """Delete log files not modified within ``max_age``."""
        return prune_logs(self.logs_dir, max_age)

    # System

    def system_processes(self) -> list[SystemProcess]:
        """OS processes carrying this project's launch markers."""
        return find_system_processes(self.project)

    def wait_watchers(self, timeout: float | None = None) -> bool:
        """Wait for this process's watcher threads to finish."""
        return self.launcher.wait_watchers(timeout)

    # Signals

    @staticmethod
    def _signal(pid: int, sig: int) -> bool:
        """Signal the daemon's process group, falling back to the pid alone.

        Returns:
            False if the process was already gone
        """
        try:
            os.killpg(pid, sig)
            return True
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning(f"Not permitted to signal process group {pid}: {e}")

        try:
            os.kill(pid, sig)
            return True
        except ProcessLookupError:
            return False

    @staticmethod
    def _wait_exit(pid: int, timeout: float, group: bool = False) -> bool:
        """Poll until ``pid`` (or its whole process group) is gone.

        Returns:
            False on timeout
        """
        def alive() -> bool:
            return group_alive(pid) if group else is_alive(pid)

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not alive():
                return True
            time.sleep(STOP_POLL_INTERVAL)
        return not alive()
