"""Pydantic models for procbox configuration and process state."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, Field, field_validator


class ProcessStatus(str, Enum):
    """Status of a tracked daemon."""

    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"  # Exited with a non-zero code the supervisor did not request


def now() -> datetime:
    """Current local time, timezone-aware (serializes as RFC3339)."""
    return datetime.now().astimezone()


class ProcessRecord(BaseModel):
    """One entry in the process table.

    The wire format is the JSON object with the fields ``pid``, ``name``,
    ``command``, ``start_time``, ``status``, ``log_file`` and ``project``.
    ``exit_code`` is only written when the watcher observed one.
    """

    pid: int
    name: str
    command: str
    start_time: datetime
    status: ProcessStatus = ProcessStatus.RUNNING
    log_file: str
    project: str
    exit_code: int | None = None

    @field_validator("start_time")
    @classmethod
    def _ensure_aware(cls, value: datetime) -> datetime:
        # Naive timestamps from older tables are taken as local time
        if value.tzinfo is None:
            return value.astimezone()
        return value

    @property
    def is_running(self) -> bool:
        """Whether the stored status says running (not a liveness probe)."""
        return self.status == ProcessStatus.RUNNING

    def uptime(self, at: datetime | None = None) -> timedelta:
        """Time elapsed since the daemon was launched."""
        return (at or now()) - self.start_time

    def to_json(self) -> dict[str, Any]:
        """Serialize to the table's JSON object form."""
        return self.model_dump(mode="json", exclude_none=True)


# Mapping name -> record, in insertion order. At most one record per name.
ProcessTable = dict[str, ProcessRecord]


def table_from_records(records: Iterable[dict[str, Any]]) -> ProcessTable:
    """Build a table from JSON objects; a repeated name keeps the last entry."""
    table: ProcessTable = {}
    for raw in records:
        record = ProcessRecord.model_validate(raw)
        table.pop(record.name, None)
        table[record.name] = record
    return table


def table_to_records(table: ProcessTable) -> list[dict[str, Any]]:
    """Serialize a table to a JSON-ready list, preserving order."""
    return [record.to_json() for record in table.values()]


class SupervisorConfig(BaseModel):
    """Supervisor tuning."""

    stop_grace_period: float = 5.0  # seconds between SIGTERM and SIGKILL
    kill_timeout: float = 2.0  # seconds to wait after SIGKILL
    restart_delay: float = 0.5  # teardown pause between stop and start
    poll_interval: float = 0.1  # log follow poll interval
    tail_lines: int = 50
    log_retention: str = "7d"
    start_time_tolerance: float = 2.0  # PID reuse guard, seconds


class LaunchConfig(BaseModel):
    """Project launch defaults used by the CLI."""

    cmd: str | None = None
    workdir: str | None = None
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value


class ProjectConfig(BaseModel):
    """Contents of ``procbox.yaml``."""

    launch: LaunchConfig = Field(default_factory=LaunchConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
