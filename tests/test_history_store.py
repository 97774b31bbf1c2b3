from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from health_checks.errors import StorageError
from health_checks.history import (
    MemoryHistoryStore,
    SqliteHistoryStore,
    compute_availability,
    create_history_store,
    response_time_percentile_ms,
)
from health_checks.models import ConditionOutcome, Result


_T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _result(i: int, *, success: bool = True, duration: float = 0.1) -> Result:
    return Result(
        timestamp=_T0 + timedelta(seconds=i),
        success=success,
        duration=duration,
        condition_outcomes=(ConditionOutcome("[STATUS] == 200", "200 == 200", success),),
        status=200 if success else 502,
        connected=True,
    )


def test_memory_store_evicts_oldest_beyond_capacity() -> None:
    store = MemoryHistoryStore(capacity=20)
    for i in range(25):
        store.append("core_api", _result(i))

    items = store.list("core_api")
    assert len(items) == 20
    assert items[0].timestamp == _T0 + timedelta(seconds=5)
    assert items[-1].timestamp == _T0 + timedelta(seconds=24)


def test_memory_store_unknown_key_is_empty() -> None:
    store = MemoryHistoryStore()
    assert store.list("missing") == []
    assert store.keys() == set()


def test_memory_store_prune_removes_unconfigured_keys() -> None:
    store = MemoryHistoryStore(capacity=5)
    store.append("a", _result(0))
    store.append("b", _result(1))
    store.append("c", _result(2))

    removed = store.prune_keys_not_in(["a", "c"])
    assert removed == 1
    assert store.keys() == {"a", "c"}
    assert store.list("b") == []

    store.clear()
    assert store.keys() == set()


def test_store_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        MemoryHistoryStore(capacity=0)


def test_memory_store_concurrent_appends_stay_bounded() -> None:
    store = MemoryHistoryStore(capacity=20)

    def worker(offset: int) -> None:
        for i in range(200):
            store.append("shared", _result(offset + i))

    threads = [threading.Thread(target=worker, args=(n * 1000,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(store.list("shared")) == 20


def test_sqlite_store_bounds_and_persists(tmp_path: Path) -> None:
    db_path = tmp_path / "history" / "results.db"
    store = SqliteHistoryStore(db_path, capacity=3)
    for i in range(5):
        store.append("core_api", _result(i, success=i % 2 == 0))
    store.append("other", _result(9))
    store.close()

    reopened = SqliteHistoryStore(db_path, capacity=3)
    try:
        items = reopened.list("core_api")
        assert [r.timestamp for r in items] == [_T0 + timedelta(seconds=i) for i in (2, 3, 4)]
        assert [r.success for r in items] == [True, False, True]
        assert items[0].condition_outcomes[0].rendered == "200 == 200"
        assert reopened.keys() == {"core_api", "other"}

        assert reopened.prune_keys_not_in({"core_api"}) == 1
        assert reopened.keys() == {"core_api"}

        reopened.clear()
        assert reopened.list("core_api") == []
    finally:
        reopened.close()


def test_create_history_store_variants(tmp_path: Path) -> None:
    assert isinstance(create_history_store("memory", capacity=7), MemoryHistoryStore)
    store = create_history_store("sqlite", path=str(tmp_path / "h.db"))
    try:
        assert isinstance(store, SqliteHistoryStore)
        assert store.capacity == 20
    finally:
        store.close()

    with pytest.raises(StorageError):
        create_history_store("sqlite")
    with pytest.raises(StorageError):
        create_history_store("postgres")


def test_availability_and_percentiles() -> None:
    results = [_result(i, success=i != 0, duration=(i + 1) / 10.0) for i in range(10)]
    total, ok_count, ok_pct = compute_availability(results)
    assert (total, ok_count) == (10, 9)
    assert ok_pct == pytest.approx(90.0)

    assert compute_availability([]) == (0, 0, None)
    assert response_time_percentile_ms(results, percentile=100) == pytest.approx(1000.0)
    assert response_time_percentile_ms(results, percentile=0) == pytest.approx(100.0)
    assert response_time_percentile_ms([], percentile=95) is None
