"""Launch environment for daemons started from the CLI.

Computes the working directory and the ordered ``KEY=VALUE`` environment
handed to the supervisor. The supervisor itself never looks inside either.
"""

from __future__ import annotations

import os
from pathlib import Path

from procbox.models import LaunchConfig

# Markers that let ``find_system_processes`` recognise our daemons
ENV_ACTIVE = "PROCBOX_ACTIVE"
ENV_PROJECT = "PROCBOX_PROJECT"
ENV_NAME = "PROCBOX_NAME"


def resolve_workdir(project_root: Path, launch: LaunchConfig) -> Path:
    """Working directory for a launch, relative paths taken from the project root."""
    if not launch.workdir:
        return Path(project_root)
    workdir = Path(os.path.expanduser(launch.workdir))
    if not workdir.is_absolute():
        workdir = Path(project_root) / workdir
    return workdir


def build_env(launch: LaunchConfig) -> list[str]:
    """Ordered environment: host variables, then the project's env block."""
    env = dict(os.environ)
    env.update(launch.env)
    return [f"{key}={value}" for key, value in env.items()]


def env_to_dict(env: list[str] | None) -> dict[str, str] | None:
    """Convert an ordered ``KEY=VALUE`` list to a mapping; later keys win.

    ``None`` means "inherit the host environment" and is passed through.
    Entries without ``=`` are kept with an empty value.
    """
    if env is None:
        return None
    result: dict[str, str] = {}
    for entry in env:
        key, _, value = entry.partition("=")
        if key:
            result[key] = value
    return result
