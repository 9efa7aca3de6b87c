"""Liveness probing and reconciliation for procbox.

A PID is only a liveness fact together with the record's status and start
time. Probing uses the null signal (``os.kill(pid, 0)``), which tells
"no such process" apart from "exists but owned by someone else". Anything
learned this way can be stale a moment later: the process may exit, and its
PID may be recycled, between the probe and whatever the caller does next.
Callers mitigate this by re-probing at every observation point and by
comparing the OS creation time of the PID with the record's ``start_time``;
they can't eliminate it.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

import psutil
from loguru import logger

from procbox.environment import ENV_ACTIVE, ENV_NAME, ENV_PROJECT
from procbox.models import ProcessRecord, ProcessStatus, ProcessTable

# Default slack between the record's start_time and the OS creation time
DEFAULT_START_TOLERANCE = 2.0


@dataclass
class SystemProcess:
    """An OS process carrying procbox launch markers."""

    pid: int
    name: str | None
    command: str
    started_at: datetime


def is_alive(pid: int) -> bool:
    """Check whether ``pid`` currently identifies a live process.

    Zombies (exited, not yet reaped by their parent) count as dead.
    """
    if pid <= 0:
        return False

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to another user
        pass

    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def leads_group(pid: int) -> bool:
    """Whether ``pid`` is the leader of its own process group."""
    try:
        return os.getpgid(pid) == pid
    except ProcessLookupError:
        return False


def group_alive(pgid: int) -> bool:
    """Check whether any live (non-zombie) process remains in group ``pgid``.

    The leader may be gone while its children live on, e.g. when ``sh -c``
    forks the command instead of exec-ing it.
    """
    try:
        os.killpg(pgid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True

    for proc in psutil.process_iter(["pid", "status"]):
        if proc.info["status"] == psutil.STATUS_ZOMBIE:
            continue
        try:
            if os.getpgid(proc.info["pid"]) == pgid:
                return True
        except ProcessLookupError:
            continue
    return False


def process_start_time(pid: int) -> datetime | None:
    """OS creation time of ``pid``, or None if unavailable."""
    try:
        return datetime.fromtimestamp(psutil.Process(pid).create_time()).astimezone()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


def matches_record(
    record: ProcessRecord,
    tolerance: float = DEFAULT_START_TOLERANCE,
) -> bool:
    """Whether the live process behind ``record.pid`` is the one we launched.

    A process created after the record's start time (beyond ``tolerance``)
    is a recycled PID. If the creation time can't be read the PID match is
    accepted.
    """
    created = process_start_time(record.pid)
    if created is None:
        return True
    return (created - record.start_time).total_seconds() <= tolerance


def is_record_alive(
    record: ProcessRecord,
    tolerance: float = DEFAULT_START_TOLERANCE,
) -> bool:
    """Liveness of a record: PID alive and identity matches."""
    return is_alive(record.pid) and matches_record(record, tolerance)


def reconcile(
    table: ProcessTable,
    tolerance: float = DEFAULT_START_TOLERANCE,
) -> tuple[ProcessTable, bool]:
    """Mark ``running`` records whose process is gone as ``stopped``.

    Returns:
        (new table, whether any record changed). The input is not mutated.
    """
    result: ProcessTable = {}
    changed = False

    for name, record in table.items():
        if record.status == ProcessStatus.RUNNING and not is_record_alive(record, tolerance):
            logger.debug(f"Process '{name}' (PID {record.pid}) is no longer alive, marking stopped")
            record = record.model_copy(update={"status": ProcessStatus.STOPPED})
            changed = True
        result[name] = record

    return result, changed


def find_system_processes(project: str | None = None) -> list[SystemProcess]:
    """Find OS processes launched by procbox.

    Matches on the ``PROCBOX_ACTIVE`` environment marker, optionally
    restricted to one project. Used to recover daemons the table lost track
    of. Processes whose environment can't be read are skipped.
    """
    found: list[SystemProcess] = []

    for proc in psutil.process_iter(["pid", "cmdline", "create_time"]):
        try:
            environ = proc.environ()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        except OSError:
            continue

        if environ.get(ENV_ACTIVE) != "1":
            continue
        if project is not None and environ.get(ENV_PROJECT) != project:
            continue

        # Daemons lead their own process group; skip their descendants
        try:
            if os.getpgid(proc.info["pid"]) != proc.info["pid"]:
                continue
        except ProcessLookupError:
            continue

        cmdline = proc.info.get("cmdline") or []
        found.append(
            SystemProcess(
                pid=proc.info["pid"],
                name=environ.get(ENV_NAME),
                command=" ".join(cmdline),
                started_at=datetime.fromtimestamp(proc.info["create_time"]).astimezone(),
            )
        )

    return found
