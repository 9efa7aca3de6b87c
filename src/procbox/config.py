"""Configuration loading and project paths for procbox."""

from __future__ import annotations

import os
import re
from pathlib import Path

import yaml
from loguru import logger

from procbox.models import ProjectConfig

CONFIG_FILE_NAME = "procbox.yaml"
STATE_DIR_NAME = ".procbox"
PROCESS_FILE_NAME = "processes.json"
LOGS_DIR_NAME = "logs"


class ConfigError(Exception):
    """Configuration error."""

    pass


def find_project_root(start: Path | None = None) -> Path:
    """Find the project root by walking up from ``start``.

    A directory is a project root if it holds ``procbox.yaml`` or a
    ``.procbox/`` state directory. Falls back to ``start`` itself.
    """
    origin = Path(start or Path.cwd()).resolve()
    for candidate in (origin, *origin.parents):
        if (candidate / CONFIG_FILE_NAME).exists() or (candidate / STATE_DIR_NAME).is_dir():
            return candidate
    return origin


def state_dir(project_root: Path) -> Path:
    """Private state directory of a project."""
    return Path(project_root) / STATE_DIR_NAME


def process_file(project_root: Path) -> Path:
    """Path to the process table."""
    return state_dir(project_root) / PROCESS_FILE_NAME


def logs_dir(project_root: Path) -> Path:
    """Directory holding one log file per daemon name."""
    return state_dir(project_root) / LOGS_DIR_NAME


def project_name(project_root: Path) -> str:
    """Logical project identifier recorded in every process record."""
    return Path(project_root).resolve().name


def ensure_state_dir(project_root: Path) -> Path:
    """Ensure the state and logs directories exist."""
    logs_dir(project_root).mkdir(parents=True, exist_ok=True)
    return state_dir(project_root)


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """

    def replace_env(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)
    return os.path.expandvars(value)


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    return data


def load_project_config(project_root: Path) -> ProjectConfig:
    """Load ``procbox.yaml`` from the project root."""
    path = Path(project_root) / CONFIG_FILE_NAME

    if not path.exists():
        logger.debug(f"Config file not found at {path}, using defaults")
        return ProjectConfig()

    try:
        data = load_yaml_file(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    launch = data.get("launch")
    if isinstance(launch, dict):
        if launch.get("cmd"):
            launch["cmd"] = expand_env_vars(str(launch["cmd"]))
        if isinstance(launch.get("env"), dict):
            launch["env"] = {
                k: expand_env_vars(str(v)) for k, v in launch["env"].items()
            }

    try:
        config = ProjectConfig.model_validate(data)
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e

    logger.debug(f"Loaded config from {path}")
    return config


def create_default_config(project_root: Path) -> Path:
    """Create a starter ``procbox.yaml`` if none exists."""
    path = Path(project_root) / CONFIG_FILE_NAME
    ensure_state_dir(project_root)

    if not path.exists():
        starter = {
            "launch": {"cmd": None, "workdir": ".", "env": {}},
            "supervisor": ProjectConfig().supervisor.model_dump(),
        }
        with open(path, "w") as f:
            yaml.safe_dump(starter, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Created default config at {path}")

    return path
