"""Shared fixtures for procbox tests."""

import os
import shlex
import subprocess
import sys
import time
from pathlib import Path

import psutil
import pytest

from procbox.core.supervisor import Supervisor
from procbox.errors import ProcboxError
from procbox.models import SupervisorConfig

MOCK_JOBS = Path(__file__).parent / "mock_jobs"


def daemon_cmd(*args: str) -> str:
    """Shell command line running the chatty mock daemon."""
    parts = [sys.executable, "-u", str(MOCK_JOBS / "chatty_daemon.py"), *args]
    return " ".join(shlex.quote(p) for p in parts)


def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
    """Poll ``predicate`` until it is truthy or ``timeout`` passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


def group_members(pgid: int) -> list[int]:
    """Live (non-zombie) PIDs in process group ``pgid``."""
    members = []
    for proc in psutil.process_iter(["pid", "status"]):
        if proc.info["status"] == psutil.STATUS_ZOMBIE:
            continue
        try:
            if os.getpgid(proc.info["pid"]) == pgid:
                members.append(proc.info["pid"])
        except ProcessLookupError:
            continue
    return members


def shutdown(supervisor: Supervisor) -> None:
    """Stop everything a test left running."""
    try:
        supervisor.stop_all()
    except ProcboxError:
        pass
    supervisor.wait_watchers(timeout=5)


@pytest.fixture
def fast_config():
    """Supervisor config with short timeouts for tests."""
    return SupervisorConfig(
        stop_grace_period=1.0,
        kill_timeout=1.0,
        restart_delay=0.05,
        poll_interval=0.01,
    )


@pytest.fixture
def project_root(tmp_path):
    """An empty project directory."""
    root = tmp_path / "proj"
    root.mkdir()
    return root


@pytest.fixture
def supervisor(project_root, fast_config):
    """A supervisor for the temp project, torn down with all its daemons."""
    sup = Supervisor(project_root, config=fast_config)
    yield sup
    shutdown(sup)
