"""Tests for the supervisor facade: lifecycle, reconciliation and scenarios."""

import json
import os
import signal
import subprocess
import time
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import daemon_cmd, dead_pid, group_members, wait_until
from procbox.core.liveness import is_alive
from procbox.core.supervisor import Supervisor
from procbox.errors import (
    DaemonAlreadyRunning,
    LogNotFound,
    NotFound,
    NotRunning,
    SignalFailure,
)
from procbox.models import ProcessRecord, ProcessStatus, now


class TestStop:
    """Graceful stop, escalation and idempotence."""

    def test_stop_running_daemon(self, supervisor, project_root):
        record = supervisor.start("web", daemon_cmd(), project_root)

        stopped = supervisor.stop("web")

        assert stopped.status == ProcessStatus.STOPPED
        assert stopped.pid == record.pid
        assert not is_alive(record.pid)
        assert supervisor.status("web").status == ProcessStatus.STOPPED

    def test_graceful_shutdown_is_logged(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)
        assert wait_until(lambda: "ready" in "\n".join(supervisor.logs("web")))

        supervisor.stop("web")
        supervisor.wait_watchers(timeout=5)

        assert "Daemon stopped cleanly." in supervisor.logs("web")

    def test_requested_stop_is_not_a_crash(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)

        supervisor.stop("web")
        assert supervisor.wait_watchers(timeout=5)

        assert supervisor.status("web").status == ProcessStatus.STOPPED

    def test_escalates_to_sigkill(self, supervisor, project_root):
        supervisor.config.stop_grace_period = 0.3
        record = supervisor.start("stubborn", daemon_cmd("0.05", "--ignore-term"), project_root)
        assert wait_until(lambda: "ready" in "\n".join(supervisor.logs("stubborn")))

        started = time.monotonic()
        stopped = supervisor.stop("stubborn")

        assert time.monotonic() - started >= 0.3
        assert stopped.status == ProcessStatus.STOPPED
        assert not is_alive(record.pid)
        assert group_members(record.pid) == []

    def test_escalation_reaches_forked_command(self, supervisor, project_root):
        """The shell dies on SIGTERM but its TERM-ignoring child must not survive."""
        supervisor.config.stop_grace_period = 0.3
        # A trailing command keeps sh from exec-ing the daemon
        command = f"{daemon_cmd('0.05', '--ignore-term')}; echo after"
        record = supervisor.start("forked", command, project_root)
        assert wait_until(lambda: "ready" in "\n".join(supervisor.logs("forked")))
        assert len(group_members(record.pid)) == 2

        stopped = supervisor.stop("forked")

        assert stopped.status == ProcessStatus.STOPPED
        assert group_members(record.pid) == []

    def test_name_is_free_after_forked_stop(self, supervisor, project_root):
        supervisor.config.stop_grace_period = 0.3
        command = f"{daemon_cmd('0.05', '--ignore-term')}; echo after"
        first = supervisor.start("web", command, project_root)
        assert wait_until(lambda: "ready" in "\n".join(supervisor.logs("web")))
        supervisor.stop("web")

        second = supervisor.start("web", daemon_cmd(), project_root)

        assert group_members(first.pid) == []
        assert second.pid in group_members(second.pid)

    def test_stop_twice_sends_no_signal(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)
        supervisor.stop("web")

        with patch("procbox.core.supervisor.os.killpg") as killpg, \
                patch("procbox.core.supervisor.os.kill") as kill:
            with pytest.raises(NotRunning):
                supervisor.stop("web")

        killpg.assert_not_called()
        kill.assert_not_called()

    def test_stop_unknown_name(self, supervisor):
        with pytest.raises(NotFound):
            supervisor.stop("ghost")

    def test_stop_exited_daemon_reports_not_running(self, supervisor, project_root):
        supervisor.start("job", "true", project_root)
        supervisor.wait_watchers(timeout=5)

        with pytest.raises(NotRunning):
            supervisor.stop("job")

    def test_permission_denied_is_signal_failure(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)

        with patch("procbox.core.supervisor.os.killpg", side_effect=PermissionError("denied")), \
                patch("procbox.core.supervisor.os.kill", side_effect=PermissionError("denied")):
            with pytest.raises(SignalFailure):
                supervisor.stop("web")

        assert supervisor.status("web").status == ProcessStatus.RUNNING

    def test_stop_all(self, supervisor, project_root):
        for name in ("a", "b", "c"):
            supervisor.start(name, daemon_cmd(), project_root)

        report = supervisor.stop_all()

        assert report.ok
        assert sorted(report.stopped) == ["a", "b", "c"]
        assert supervisor.list() == []


class TestReconciliation:
    """Stale records are healed on read."""

    def _write_running_record(self, supervisor, name, pid):
        record = ProcessRecord(
            pid=pid,
            name=name,
            command="sleep 30",
            start_time=now(),
            status=ProcessStatus.RUNNING,
            log_file=str(supervisor.launcher.log_path(name)),
            project=supervisor.project,
        )
        supervisor.store.upsert(record)

    def test_dead_record_reported_and_persisted_as_stopped(self, supervisor):
        self._write_running_record(supervisor, "ghost", dead_pid())

        assert supervisor.list() == []
        records = supervisor.list(include_stopped=True)
        assert [(r.name, r.status) for r in records] == [("ghost", ProcessStatus.STOPPED)]

        data = json.loads(supervisor.store.path.read_text())
        assert data[0]["status"] == "stopped"

    def test_reconciliation_survives_a_new_supervisor(self, supervisor, project_root, fast_config):
        """State written by one supervisor is healed by the next one."""
        # A daemon whose launcher is gone: nobody watches its exit
        proc = subprocess.Popen(["sleep", "30"], start_new_session=True)
        self._write_running_record(supervisor, "web", proc.pid)
        assert supervisor.status("web").status == ProcessStatus.RUNNING
        os.killpg(proc.pid, signal.SIGKILL)
        proc.wait()

        fresh = Supervisor(project_root, config=fast_config)

        assert fresh.status("web").status == ProcessStatus.STOPPED
        assert fresh.list() == []

    def test_recycled_pid_is_not_running(self, supervisor):
        # Our own pid, but recorded as launched long before we existed
        record = ProcessRecord(
            pid=os.getpid(),
            name="recycled",
            command="x",
            start_time=now() - timedelta(days=365),
            status=ProcessStatus.RUNNING,
            log_file="/tmp/recycled.log",
            project=supervisor.project,
        )
        supervisor.store.upsert(record)

        assert supervisor.status("recycled").status == ProcessStatus.STOPPED

    def test_status_unknown_name(self, supervisor):
        with pytest.raises(NotFound):
            supervisor.status("ghost")


class TestRestart:
    """Restart with the recorded command."""

    def test_restart_running(self, supervisor, project_root):
        first = supervisor.start("web", daemon_cmd(), project_root)

        second = supervisor.restart("web", project_root)

        assert second.pid != first.pid
        assert second.command == first.command
        assert second.status == ProcessStatus.RUNNING
        assert not is_alive(first.pid)
        assert len(supervisor.store.load()) == 1

    def test_restart_stopped_starts_it(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)
        supervisor.stop("web")

        record = supervisor.restart("web", project_root)

        assert record.status == ProcessStatus.RUNNING
        assert is_alive(record.pid)

    def test_restart_uses_fresh_environment(self, supervisor, project_root):
        supervisor.start("env", 'echo "value=$VALUE"', project_root, ["VALUE=old"])
        supervisor.wait_watchers(timeout=5)

        supervisor.restart("env", project_root, ["VALUE=new"])
        supervisor.wait_watchers(timeout=5)

        assert supervisor.logs("env")[-1] == "value=new"

    def test_restart_unknown(self, supervisor, project_root):
        with pytest.raises(NotFound):
            supervisor.restart("ghost", project_root)


class TestRemoveAndAdopt:
    """Record maintenance."""

    def test_remove_stopped(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)
        supervisor.stop("web")

        assert supervisor.remove("web") is True
        assert supervisor.store.load() == {}

    def test_remove_running_refused(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)

        with pytest.raises(DaemonAlreadyRunning):
            supervisor.remove("web")

    def test_remove_missing(self, supervisor):
        assert supervisor.remove("ghost") is False

    def test_adopt_running_process(self, supervisor):
        proc = subprocess.Popen(["sleep", "30"], start_new_session=True)
        try:
            record = supervisor.adopt("sleeper", proc.pid)

            assert record.pid == proc.pid
            assert "sleep" in record.command
            assert [r.name for r in supervisor.list()] == ["sleeper"]

            supervisor.stop("sleeper")
            assert wait_until(lambda: proc.poll() is not None)
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.wait()

    def test_adopt_dead_pid(self, supervisor):
        with pytest.raises(NotFound):
            supervisor.adopt("ghost", dead_pid())


class TestLogs:
    """Log access through the supervisor."""

    def test_logs_default_line_count(self, supervisor, project_root):
        supervisor.config.tail_lines = 5
        supervisor.start("web", daemon_cmd("0.01"), project_root)
        assert wait_until(lambda: "Heartbeat #20" in "\n".join(supervisor.logs("web", 100)))

        assert len(supervisor.logs("web")) == 5

    def test_logs_unknown(self, supervisor):
        with pytest.raises(LogNotFound):
            supervisor.logs("ghost")

    def test_follow_running_daemon(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd("0.02"), project_root)
        stream = supervisor.follow("web")
        try:
            line = next(stream)
            assert line.startswith("Heartbeat #") or line.startswith("ready")
        finally:
            stream.close()

    def test_list_logs_and_prune(self, supervisor, project_root):
        supervisor.start("web", "echo hi", project_root)
        supervisor.wait_watchers(timeout=5)

        assert supervisor.list_logs() == ["web"]
        assert supervisor.log_size("web") > 0

        assert supervisor.prune_logs(timedelta(days=1)) == 0
        assert supervisor.prune_logs(timedelta(seconds=-1)) == 1
        assert supervisor.list_logs() == []


class TestScenarios:
    """End-to-end flows across several named daemons."""

    def test_web_and_api(self, supervisor, project_root):
        web = supervisor.start("web", daemon_cmd(), project_root)
        api = supervisor.start("api", daemon_cmd(), project_root)

        assert [r.name for r in supervisor.list()] == ["web", "api"]

        supervisor.stop("web")

        running = supervisor.list()
        assert [r.name for r in running] == ["api"]
        assert is_alive(api.pid)
        assert not is_alive(web.pid)
        assert {r.name: r.status for r in supervisor.list(include_stopped=True)} == {
            "web": ProcessStatus.STOPPED,
            "api": ProcessStatus.RUNNING,
        }

    def test_missing_everything(self, supervisor):
        assert supervisor.list() == []
        with pytest.raises(NotFound):
            supervisor.stop("missing")
        with pytest.raises(LogNotFound):
            supervisor.logs("missing")

    def test_names_unique_in_table(self, supervisor, project_root):
        supervisor.start("web", daemon_cmd(), project_root)
        supervisor.restart("web", project_root)
        supervisor.stop("web")
        supervisor.restart("web", project_root)

        data = json.loads(supervisor.store.path.read_text())
        assert [r["name"] for r in data] == ["web"]

    def test_system_processes_finds_daemon(self, supervisor, project_root):
        record = supervisor.start("web", daemon_cmd(), project_root)
        assert wait_until(lambda: "ready" in "\n".join(supervisor.logs("web")))

        found = {p.pid: p for p in supervisor.system_processes()}

        assert record.pid in found
        assert found[record.pid].name == "web"
