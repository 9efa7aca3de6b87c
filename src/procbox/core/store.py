"""Durable process table for procbox.

The table is a single JSON file that is always read and rewritten whole.
Every load-mutate-save cycle runs under a writer lock so concurrent
mutations of different names never overwrite each other:

- a re-entrant ``threading.RLock`` serializes threads of the host process
  (foreground commands and watcher threads);
- an exclusive ``fcntl.flock`` on a sidecar ``.lock`` file serializes
  separate procbox processes.

Writes go to a temp file in the same directory and are renamed into place,
so readers never see a torn file.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from loguru import logger
from pydantic import ValidationError

from procbox.errors import IOFailure
from procbox.models import (
    ProcessRecord,
    ProcessTable,
    table_from_records,
    table_to_records,
)


class ProcessStore:
    """File-backed table of named process records."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: Location of the JSON table (e.g. ``.procbox/processes.json``)
        """
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._lock_fd: int | None = None

    # Locking

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the writer lock. Re-entrant within the owning thread."""
        with self._thread_lock:
            if self._depth == 0:
                self._acquire_file_lock()
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._release_file_lock()

    def _acquire_file_lock(self) -> None:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise IOFailure(str(self.lock_path), str(e)) from e
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as e:
            os.close(fd)
            raise IOFailure(str(self.lock_path), str(e)) from e
        self._lock_fd = fd

    def _release_file_lock(self) -> None:
        fd, self._lock_fd = self._lock_fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    # Read / write

    def load(self) -> ProcessTable:
        """Read the persisted table. A missing file is an empty table."""
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise IOFailure(str(self.path), str(e)) from e

        if not raw.strip():
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise IOFailure(str(self.path), f"invalid JSON: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, list):
            raise IOFailure(str(self.path), f"expected a JSON array, got {type(data).__name__}")

        try:
            return table_from_records(data)
        except ValidationError as e:
            raise IOFailure(str(self.path), f"invalid process record: {e}") from e

    def save(self, table: ProcessTable) -> None:
        """Atomically persist the full table."""
        payload = json.dumps(table_to_records(table), indent=2) + "\n"

        with self.locked():
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
                )
            except OSError as e:
                raise IOFailure(str(self.path), str(e)) from e

            try:
                with os.fdopen(fd, "w") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_name, 0o644)
                os.replace(tmp_name, self.path)
            except OSError as e:
                try:
                    os.unlink(tmp_name)
                except FileNotFoundError:
                    pass
                raise IOFailure(str(self.path), str(e)) from e

        logger.debug(f"Saved {len(table)} process records to {self.path}")

    @contextmanager
    def transaction(self) -> Iterator[ProcessTable]:
        """Load the table under the lock and save it when the block exits cleanly.

        Usage:
            with store.transaction() as table:
                table[record.name] = record
        """
        with self.locked():
            table = self.load()
            yield table
            self.save(table)

    # Convenience operations

    def get(self, name: str) -> ProcessRecord | None:
        """Get a record by name (no reconciliation)."""
        return self.load().get(name)

    def upsert(self, record: ProcessRecord) -> None:
        """Insert a record, replacing any record with the same name."""
        with self.transaction() as table:
            # Re-inserting moves the name to the end, like a fresh launch
            table.pop(record.name, None)
            table[record.name] = record

    def remove(self, name: str) -> bool:
        """Remove a record. Returns False if the name was not present."""
        with self.locked():
            table = self.load()
            if name not in table:
                return False
            del table[name]
            self.save(table)
        return True

    def update(
        self,
        name: str,
        mutate: Callable[[ProcessRecord], ProcessRecord | None],
        pid: int | None = None,
    ) -> ProcessRecord | None:
        """Apply ``mutate`` to one record under the lock.

        ``mutate`` returns the replacement record, or None to leave the
        record untouched. When ``pid`` is given the update only applies if
        the stored record still tracks that pid, so a watcher for an old
        launch cannot clobber a newer launch under the same name.

        Returns:
            The stored record after the call, or None if no record matched.
        """
        with self.locked():
            table = self.load()
            current = table.get(name)
            if current is None or (pid is not None and current.pid != pid):
                return None

            updated = mutate(current)
            if updated is None or updated == current:
                return current

            table[name] = updated
            self.save(table)
            return updated
