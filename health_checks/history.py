from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Any, Iterable

from health_checks.errors import StorageError
from health_checks.models import Result


DEFAULT_CAPACITY = 20


class HistoryStore(ABC):
    """
    Bounded, per-target sequence of Results (oldest first).

    Appending beyond capacity evicts the oldest entry. Implementations must be safe
    to call from concurrently running target pipelines.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if int(capacity) < 1:
            raise ValueError(f"History capacity must be >= 1, got {capacity!r}")
        self.capacity = int(capacity)

    @abstractmethod
    def append(self, key: str, result: Result) -> None: ...

    @abstractmethod
    def list(self, key: str) -> list[Result]: ...

    @abstractmethod
    def keys(self) -> set[str]: ...

    @abstractmethod
    def prune_keys_not_in(self, keys: Iterable[str]) -> int: ...

    @abstractmethod
    def clear(self) -> None: ...

    def close(self) -> None:
        return None


class MemoryHistoryStore(HistoryStore):
    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        super().__init__(capacity)
        self._lock = threading.Lock()
        self._results: dict[str, deque[Result]] = {}

    def append(self, key: str, result: Result) -> None:
        if not key:
            return
        with self._lock:
            items = self._results.get(key)
            if items is None:
                items = self._results[key] = deque(maxlen=self.capacity)
            items.append(result)

    def list(self, key: str) -> list[Result]:
        with self._lock:
            return list(self._results.get(key) or ())

    def keys(self) -> set[str]:
        with self._lock:
            return set(self._results)

    def prune_keys_not_in(self, keys: Iterable[str]) -> int:
        keep = set(keys)
        with self._lock:
            stale = [k for k in self._results if k not in keep]
            for k in stale:
                del self._results[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._results.clear()


class SqliteHistoryStore(HistoryStore):
    def __init__(self, path: str | Path, capacity: int = DEFAULT_CAPACITY) -> None:
        super().__init__(capacity)
        self.path = str(path)
        self._lock = threading.Lock()
        try:
            self._conn = self._connect(self.path)
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS results ("
                " id INTEGER PRIMARY KEY AUTOINCREMENT,"
                " target_key TEXT NOT NULL,"
                " data TEXT NOT NULL"
                ");"
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_results_key ON results (target_key, id);")
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open history database path={self.path}: {exc}") from exc

    @staticmethod
    def _connect(path: str) -> sqlite3.Connection:
        p = str(path or "").strip()
        if not p:
            raise StorageError("Missing sqlite history path")
        if p != ":memory:":
            Path(p).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
        conn.execute("PRAGMA busy_timeout = 5000;")
        # WAL improves concurrency for a single-host service.
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.Error:
            pass
        return conn

    def append(self, key: str, result: Result) -> None:
        if not key:
            return
        payload = json.dumps(result.to_dict(), ensure_ascii=False, sort_keys=True)
        with self._lock:
            try:
                self._conn.execute("BEGIN")
                self._conn.execute("INSERT INTO results (target_key, data) VALUES (?, ?)", (key, payload))
                self._conn.execute(
                    "DELETE FROM results WHERE target_key = ? AND id NOT IN ("
                    " SELECT id FROM results WHERE target_key = ? ORDER BY id DESC LIMIT ?"
                    ")",
                    (key, key, self.capacity),
                )
                self._conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback()
                raise StorageError(f"Failed to append result for key={key}: {exc}") from exc

    def list(self, key: str) -> list[Result]:
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT data FROM results WHERE target_key = ? ORDER BY id ASC", (key,)
                ).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to list results for key={key}: {exc}") from exc
        out: list[Result] = []
        for (data,) in rows:
            decoded = _json_loads(data)
            if not isinstance(decoded, dict):
                continue
            try:
                out.append(Result.from_dict(decoded))
            except (KeyError, TypeError, ValueError):
                continue
        return out

    def keys(self) -> set[str]:
        with self._lock:
            try:
                rows = self._conn.execute("SELECT DISTINCT target_key FROM results").fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to list history keys: {exc}") from exc
        return {str(r[0]) for r in rows}

    def prune_keys_not_in(self, keys: Iterable[str]) -> int:
        keep = set(keys)
        stale = sorted(self.keys() - keep)
        if not stale:
            return 0
        with self._lock:
            try:
                self._conn.executemany("DELETE FROM results WHERE target_key = ?", [(k,) for k in stale])
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to prune history: {exc}") from exc
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            try:
                self._conn.execute("DELETE FROM results")
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to clear history: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _rollback(self) -> None:
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error:
            pass


def _json_loads(s: Any) -> Any:
    try:
        return json.loads(str(s))
    except ValueError:
        return None


def create_history_store(storage_type: str = "memory", *, path: str | None = None, capacity: int = DEFAULT_CAPACITY) -> HistoryStore:
    kind = str(storage_type or "memory").strip().lower()
    if kind == "memory":
        return MemoryHistoryStore(capacity=capacity)
    if kind == "sqlite":
        if not path:
            raise StorageError("sqlite history storage requires a file path")
        return SqliteHistoryStore(path, capacity=capacity)
    raise StorageError(f"Unknown history storage type: {storage_type!r}")


def compute_availability(results: list[Result]) -> tuple[int, int, float | None]:
    """
    Returns (total, ok_count, ok_percent_or_None_if_total_0)
    """
    total = len(results)
    if total <= 0:
        return 0, 0, None
    ok_count = sum(1 for r in results if r.success)
    return total, ok_count, (ok_count / float(total)) * 100.0


def _percentile(sorted_values: list[float], p: float) -> float | None:
    if not sorted_values:
        return None
    p = float(p)
    if p <= 0:
        return float(sorted_values[0])
    if p >= 100:
        return float(sorted_values[-1])
    # Nearest-rank method.
    k = int(round((p / 100.0) * (len(sorted_values) - 1)))
    k = max(0, min(k, len(sorted_values) - 1))
    return float(sorted_values[k])


def response_time_percentile_ms(results: list[Result], *, percentile: float) -> float | None:
    values = sorted(r.duration * 1000.0 for r in results if r.error is None)
    return _percentile(values, percentile)
