from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

import structlog

from health_checks.alerting import AlertState, AlertStateKey, handle_alerting, retain_alert_states
from health_checks.conditions import evaluate_conditions
from health_checks.dispatch import AlertDispatcher
from health_checks.durations import format_duration
from health_checks.executors import execute_check
from health_checks.history import HistoryStore
from health_checks.models import RawCheckResult, Result, Target


logger = structlog.get_logger(__name__)

Executor = Callable[[Target], Awaitable[RawCheckResult]]


def _check_unique_keys(targets: list[Target]) -> None:
    seen: set[str] = set()
    for target in targets:
        if target.key in seen:
            raise ValueError(f"Duplicate target key: {target.key}")
        seen.add(target.key)


@dataclass
class TargetMonitor:
    target: Target
    alert_states: dict[AlertStateKey, AlertState] = field(default_factory=dict)
    task: asyncio.Task[None] | None = None
    # Held for a whole pipeline pass; one tick per target at a time.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class Scheduler:
    """
    Runs one check loop per target.

    Each loop runs its first tick immediately and then waits `interval` seconds after
    the end of every tick, so a target never has two ticks in flight. With the
    monitoring lock enabled, the whole pipeline (execute, evaluate, store, alert,
    dispatch) runs for one target at a time process-wide.
    """

    def __init__(
        self,
        store: HistoryStore,
        dispatcher: AlertDispatcher | None = None,
        *,
        monitoring_lock: bool = True,
        execute: Executor = execute_check,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher or AlertDispatcher()
        self._execute = execute
        self._monitoring_lock = asyncio.Lock() if monitoring_lock else None
        self._config_lock = asyncio.Lock()
        self._monitors: dict[str, TargetMonitor] = {}
        self._stop_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def targets(self) -> list[Target]:
        return [m.target for m in self._monitors.values()]

    def alert_states(self, key: str) -> dict[AlertStateKey, AlertState]:
        monitor = self._monitors.get(key)
        return dict(monitor.alert_states) if monitor else {}

    async def start(self, targets: Iterable[Target]) -> None:
        async with self._config_lock:
            if self._running:
                raise RuntimeError("Scheduler already running")
            new_targets = list(targets)
            _check_unique_keys(new_targets)
            self._install(new_targets, previous={})
            self._start_tasks()

    async def stop(self) -> None:
        async with self._config_lock:
            await self._stop_tasks()

    async def reload(self, targets: Iterable[Target], dispatcher: AlertDispatcher | None = None) -> None:
        """
        Atomically replace the target set.

        The old loops are stopped (in-flight ticks finish) before the new ones start.
        Alert states of retained target keys survive; history of removed keys is pruned.
        """
        new_targets = list(targets)
        _check_unique_keys(new_targets)
        async with self._config_lock:
            was_running = self._running
            await self._stop_tasks()
            previous = dict(self._monitors)
            if dispatcher is not None:
                self.dispatcher = dispatcher
            self._install(new_targets, previous=previous)
            if was_running:
                self._start_tasks()
        logger.info("Reloaded targets", targets=len(new_targets))

    async def run_once(self) -> dict[str, Result]:
        async with self._config_lock:
            monitors = list(self._monitors.values())
        results = await asyncio.gather(*(self._tick(m) for m in monitors))
        return {m.target.key: r for m, r in zip(monitors, results) if r is not None}

    async def run_tick(self, key: str) -> Result | None:
        monitor = self._monitors.get(key)
        if monitor is None:
            raise KeyError(key)
        return await self._tick(monitor)

    def _install(self, targets: list[Target], *, previous: dict[str, TargetMonitor]) -> None:
        monitors: dict[str, TargetMonitor] = {}
        for target in targets:
            old = previous.get(target.key)
            if old is None:
                monitors[target.key] = TargetMonitor(target=target)
                continue
            monitors[target.key] = TargetMonitor(
                target=target,
                alert_states=retain_alert_states(old.alert_states, target),
                lock=old.lock,
            )
        self._monitors = monitors

        try:
            removed = self.store.prune_keys_not_in(monitors.keys())
        except Exception as exc:
            logger.error("Failed to prune history", error=f"{type(exc).__name__}: {exc}")
        else:
            if removed:
                logger.info("Pruned history of removed targets", removed=removed)

    def _start_tasks(self) -> None:
        self._stop_event = asyncio.Event()
        stop = self._stop_event
        for monitor in self._monitors.values():
            monitor.task = asyncio.create_task(self._run(monitor, stop), name=f"monitor:{monitor.target.key}")
        self._running = True
        logger.info("Scheduler started", targets=len(self._monitors), monitoring_lock=self._monitoring_lock is not None)

    async def _stop_tasks(self) -> None:
        if not self._running:
            return
        self._stop_event.set()
        tasks = [m.task for m in self._monitors.values() if m.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for monitor in self._monitors.values():
            monitor.task = None
        self._running = False
        logger.info("Scheduler stopped")

    async def _run(self, monitor: TargetMonitor, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self._tick(monitor, stop=stop)
            try:
                await asyncio.wait_for(stop.wait(), timeout=monitor.target.interval)
            except asyncio.TimeoutError:
                pass

    async def _tick(self, monitor: TargetMonitor, *, stop: asyncio.Event | None = None) -> Result | None:
        async with monitor.lock:
            if self._monitoring_lock is None:
                if stop is not None and stop.is_set():
                    return None
                return await self._pipeline(monitor)
            async with self._monitoring_lock:
                # Stop may have been requested while waiting for the lock.
                if stop is not None and stop.is_set():
                    return None
                return await self._pipeline(monitor)

    async def _pipeline(self, monitor: TargetMonitor) -> Result | None:
        target = monitor.target
        try:
            try:
                raw = await self._execute(target)
            except Exception as exc:
                raw = RawCheckResult(error=f"executor_error: {type(exc).__name__}: {exc}")

            result = Result.from_raw(raw, evaluate_conditions(raw, target.conditions))

            try:
                self.store.append(target.key, result)
            except Exception as exc:
                logger.error("Failed to store result", target=target.key, error=f"{type(exc).__name__}: {exc}")

            logger.info(
                "Checked target",
                target=target.key,
                success=result.success,
                status=result.status,
                duration=format_duration(result.duration),
                error=result.error,
            )

            await handle_alerting(target, result, monitor.alert_states, self.dispatcher)
            return result
        except Exception:
            logger.exception("Unexpected error in check pipeline", target=target.key)
            return None
