"""Log reading and pruning utilities for procbox."""

from __future__ import annotations

import os
import re
import threading
import time
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import BinaryIO, Iterator

from loguru import logger

from procbox.core.launcher import log_file_name
from procbox.errors import IOFailure, LogNotFound

DEFAULT_POLL_INTERVAL = 0.1  # seconds


def parse_duration(duration_str: str) -> timedelta:
    """Parse a human-readable duration string.

    Examples:
        "7d" -> 7 days
        "24h" -> 24 hours
        "30m" -> 30 minutes
        "90" -> 90 seconds

    Args:
        duration_str: Duration string like "7d", "12h", "1.5h", "45s"

    Returns:
        The duration as a timedelta
    """
    duration_str = duration_str.strip().lower()

    # If it's just a number, it's seconds
    if duration_str.isdigit():
        return timedelta(seconds=int(duration_str))

    match = re.match(r'^(\d+(?:\.\d+)?)\s*(s|m|h|d|w)?$', duration_str)
    if not match:
        raise ValueError(f"Invalid duration format: {duration_str}")

    number = float(match.group(1))
    unit = match.group(2) or "s"

    multipliers = {
        "s": 1,
        "m": 60,
        "h": 60 * 60,
        "d": 24 * 60 * 60,
        "w": 7 * 24 * 60 * 60,
    }

    return timedelta(seconds=number * multipliers[unit])


def format_bytes(size: int) -> str:
    """Format a byte count, e.g. 1536 -> "1.5 KB"."""
    unit = 1024
    if size < unit:
        return f"{size} B"
    div, exp = unit, 0
    n = size // unit
    while n >= unit:
        div *= unit
        exp += 1
        n //= unit
    return f"{size / div:.1f} {'KMGTPE'[exp]}B"


def prune_logs(logs_dir: Path, max_age: timedelta) -> int:
    """Remove log files older than ``max_age``.

    Age is taken from the last-modified time. Files are removed whether or
    not a process record still refers to them.

    Args:
        logs_dir: Directory containing log files
        max_age: Maximum age to keep

    Returns:
        Number of files removed
    """
    if not logs_dir.exists():
        return 0

    cutoff = datetime.now() - max_age
    removed = 0

    for log_file in logs_dir.iterdir():
        if not log_file.is_file():
            continue
        try:
            mtime = datetime.fromtimestamp(log_file.stat().st_mtime)
            if mtime < cutoff:
                logger.debug(f"Removing old log: {log_file}")
                log_file.unlink()
                removed += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning(f"Failed to check/remove {log_file}: {e}")

    if removed > 0:
        logger.info(f"Cleaned up {removed} old log files")

    return removed


class LogReader:
    """Historical tail and live follow over per-daemon log files."""

    def __init__(self, logs_dir: Path, poll_interval: float = DEFAULT_POLL_INTERVAL):
        """Initialize the reader.

        Args:
            logs_dir: Directory containing ``<name>.log`` files
            poll_interval: Seconds between polls while following
        """
        self.logs_dir = Path(logs_dir)
        self.poll_interval = poll_interval

    def log_path(self, name: str) -> Path:
        """Path of the log file for ``name``."""
        return self.logs_dir / log_file_name(name)

    def exists(self, name: str) -> bool:
        """Whether a log file exists for ``name``."""
        return self.log_path(name).is_file()

    def _require(self, name: str) -> Path:
        path = self.log_path(name)
        if not path.is_file():
            raise LogNotFound(name, str(path))
        return path

    def tail(self, name: str, lines: int) -> list[str]:
        """Return up to the last ``lines`` lines, oldest first.

        Raises:
            LogNotFound: no log file for ``name``
        """
        path = self._require(name)
        if lines <= 0:
            return []

        try:
            with open(path, errors="replace") as f:
                last = deque(f, maxlen=lines)
        except FileNotFoundError as e:
            raise LogNotFound(name, str(path)) from e
        except OSError as e:
            raise IOFailure(str(path), str(e)) from e

        return [line.rstrip("\n") for line in last]

    def follow(
        self,
        name: str,
        stop: threading.Event | None = None,
    ) -> Iterator[str]:
        """Stream lines appended to the log from now on.

        Starts at the current end of file and never ends on its own. Cancel
        it from outside: close the generator, interrupt the caller, or set
        ``stop``. Only complete lines are yielded; a partial trailing line is
        held back until its newline arrives. If the file is truncated, or
        pruned and recreated by a relaunch, reading restarts at the beginning
        of the current file.

        Raises:
            LogNotFound: no log file for ``name``
        """
        path = self._require(name)

        try:
            f = open(path, "rb")
        except FileNotFoundError as e:
            raise LogNotFound(name, str(path)) from e
        except OSError as e:
            raise IOFailure(str(path), str(e)) from e

        f.seek(0, os.SEEK_END)
        return self._stream(f, path, stop)

    def _stream(
        self,
        f: BinaryIO,
        path: Path,
        stop: threading.Event | None,
    ) -> Iterator[str]:
        pending = b""

        try:
            while stop is None or not stop.is_set():
                chunk = f.readline()
                if chunk:
                    pending += chunk
                    if pending.endswith(b"\n"):
                        line, pending = pending[:-1], b""
                        yield line.decode(errors="replace")
                    continue

                try:
                    current = os.stat(path)
                except FileNotFoundError:
                    # Pruned; wait for a relaunch to recreate it
                    time.sleep(self.poll_interval)
                    continue

                opened = os.fstat(f.fileno())
                if (current.st_ino, current.st_dev) != (opened.st_ino, opened.st_dev):
                    logger.debug(f"Log {path} was replaced, following the new file")
                    try:
                        replacement = open(path, "rb")
                    except FileNotFoundError:
                        time.sleep(self.poll_interval)
                        continue
                    except OSError as e:
                        raise IOFailure(str(path), str(e)) from e
                    f.close()
                    f = replacement
                    pending = b""
                    continue

                if current.st_size < f.tell():
                    logger.debug(f"Log {path} shrank, following from the start")
                    f.seek(0)
                    pending = b""
                    continue

                time.sleep(self.poll_interval)
        finally:
            f.close()

    def list_logs(self) -> list[str]:
        """Names that have a log file, sorted."""
        if not self.logs_dir.exists():
            return []
        return sorted(p.stem for p in self.logs_dir.glob("*.log") if p.is_file())

    def log_size(self, name: str) -> int:
        """Size in bytes of the log for ``name``."""
        path = self._require(name)
        return path.stat().st_size
