"""Append-only daily CSV files for hub telemetry.

Files are keyed by ``(scope, identifier, date)`` and named
``{scope}_{sanitizedId}_{YYYY-MM-DD}.csv``. Callers pick the granularity
(per hub, per device, ...); the writer does not care which.

The header line is written exactly once per file, before any data row.
Writes to the same path are serialized with a per-path lock so two workers
appending the first rows of a new file cannot both write the header.
"""
import logging
import os
import re
import threading
from typing import Any, Dict, Iterable, Optional

from error_handler import PersistenceFailure
from metrics import metrics

logger = logging.getLogger(__name__)

VITALS_HEADER = "timestamp,envTemp,heartRate,respRate,bodyTemp,activity"
BLE_HEADER = "timestamp,hr,spo2,temp,battery,samplingRate"
LEGACY_HEADER = "timestamp,device_id,value1,value2,value3,value4,value5,value6"

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def escape_csv_field(value: Any) -> str:
    """Quote a cell if it contains a comma, quote or line break; double embedded quotes."""
    if value is None:
        return ""
    text = str(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def to_csv_line(cells: Iterable[Any]) -> str:
    return ",".join(escape_csv_field(c) for c in cells) + "\n"


def sanitize_id(identifier: Any) -> str:
    """Make a hub/device id safe for a file name (``aa:bb`` -> ``aa-bb``)."""
    if not isinstance(identifier, str) or not identifier.strip():
        return "unknown"
    return _UNSAFE_ID_CHARS.sub("_", identifier.strip().replace(":", "-"))


class HeaderRegistry:
    """Remembers which files already carry a header line.

    The in-memory implementation below is enough for a single process; a
    shared store can be plugged in for multi-instance deployments.
    """

    def contains(self, path: str) -> bool:
        raise NotImplementedError

    def add(self, path: str) -> None:
        raise NotImplementedError


class MemoryHeaderRegistry(HeaderRegistry):
    def __init__(self):
        self._paths = set()
        self._lock = threading.Lock()

    def contains(self, path: str) -> bool:
        with self._lock:
            return path in self._paths

    def add(self, path: str) -> None:
        with self._lock:
            self._paths.add(path)

    def __len__(self):
        with self._lock:
            return len(self._paths)


class DailyCsvWriter:
    """Writes telemetry rows into per-day CSV files under ``base_dir``."""

    def __init__(self, base_dir: str, header_registry: Optional[HeaderRegistry] = None):
        self.base_dir = os.path.abspath(base_dir)
        self.header_registry = header_registry if header_registry is not None else MemoryHeaderRegistry()
        self._path_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def file_path(self, scope: str, identifier: str, date_key: str) -> str:
        file_name = f"{scope}_{sanitize_id(identifier)}_{date_key}.csv"
        return os.path.join(self.base_dir, file_name)

    def _lock_for(self, path: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._path_locks.get(path)
            if lock is None:
                lock = threading.Lock()
                self._path_locks[path] = lock
            return lock

    def _ensure_dir(self) -> None:
        # exist_ok tolerates a concurrent mkdir of the same directory
        os.makedirs(self.base_dir, exist_ok=True)

    def _needs_header(self, path: str) -> bool:
        if self.header_registry.contains(path):
            return False
        # First write to this path in this process; a file left by a previous
        # run already has its header.
        try:
            return os.path.getsize(path) == 0
        except OSError:
            return True

    def append_row(self, scope: str, identifier: str, date_key: str, header: str, cells: Iterable[Any]) -> bool:
        """Append one row, writing the header first if the file is new.

        Returns:
            True if the row was written. A failed write is logged and the row
            is dropped; it never raises.
        """
        path = self.file_path(scope, identifier, date_key)
        line = to_csv_line(cells)
        try:
            self._write(path, header, line)
        except PersistenceFailure as e:
            logger.error(f"CSV write failed, row dropped: {e}", exc_info=True)
            metrics.record_csv_failure(scope)
            return False

        metrics.record_csv_row(scope)
        return True

    def _write(self, path: str, header: str, line: str) -> None:
        # Header check and header+row write form one critical section per path
        with self._lock_for(path):
            try:
                self._ensure_dir()
                write_header = self._needs_header(path)
                with open(path, "a", encoding="utf-8", newline="") as fh:
                    fh.write((header + "\n" + line) if write_header else line)
            except OSError as e:
                raise PersistenceFailure(f"{path}: {e}") from e
            self.header_registry.add(path)

    def append_rows(self, scope: str, identifier: str, header: str, rows: Iterable[tuple]) -> int:
        """Append ``(date_key, cells)`` pairs; returns how many were written."""
        written = 0
        for date_key, cells in rows:
            if self.append_row(scope, identifier, date_key, header, cells):
                written += 1
        return written
