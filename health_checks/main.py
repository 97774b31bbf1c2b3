from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path

import structlog

from health_checks.config import MonitorConfig, load_config, load_default_config
from health_checks.dispatch import AlertDispatcher
from health_checks.errors import ConfigurationError, StorageError
from health_checks.history import compute_availability, response_time_percentile_ms
from health_checks.scheduler import Scheduler


logger = structlog.get_logger("health-checks")

DEFAULT_RELOAD_INTERVAL_SECONDS = 30.0


def configure_logging(level: str = "INFO") -> None:
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Avoid leaking secrets (the Telegram token is embedded in the Bot API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_dispatcher(config: MonitorConfig) -> AlertDispatcher:
    return AlertDispatcher(providers=config.providers, maintenance=config.maintenance)


async def _reload_if_modified(config: MonitorConfig, scheduler: Scheduler) -> MonitorConfig:
    if not config.has_been_modified():
        return config
    logger.info("Configuration file has been modified, reloading", path=str(config.file_path))
    try:
        new_config = load_config(config.file_path)
    except ConfigurationError as exc:
        if config.skip_invalid_config_update:
            logger.error("Ignoring invalid configuration update", error=str(exc))
            config.update_last_file_mtime()
            return config
        raise
    if new_config.storage != config.storage:
        logger.warning("Storage configuration changes require a restart; keeping the current history store")
    if new_config.monitoring_lock != config.monitoring_lock:
        logger.warning("Monitoring lock changes require a restart; keeping the current setting")
    await scheduler.reload(new_config.targets, dispatcher=build_dispatcher(new_config))
    return new_config


async def run_loop(config_path: Path | None, once: bool, *, reload_interval_seconds: float = DEFAULT_RELOAD_INTERVAL_SECONDS) -> int:
    config = load_config(config_path) if config_path is not None else load_default_config()
    store = config.create_history_store()
    scheduler = Scheduler(
        store,
        build_dispatcher(config),
        monitoring_lock=config.monitoring_lock,
    )

    if once:
        await scheduler.reload(config.targets)
        results = await scheduler.run_once()
        failed = 0
        for target in config.targets:
            result = results.get(target.key)
            history = store.list(target.key)
            total, ok_count, ok_pct = compute_availability(history)
            if result is None or not result.success:
                failed += 1
            logger.info(
                "Check summary",
                target=target.key,
                success=bool(result and result.success),
                history=total,
                ok=ok_count,
                availability_percent=round(ok_pct, 2) if ok_pct is not None else None,
                p95_ms=response_time_percentile_ms(history, percentile=95),
            )
        store.close()
        return 1 if failed else 0

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except (NotImplementedError, RuntimeError):
            pass

    await scheduler.start(config.targets)
    try:
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=max(1.0, float(reload_interval_seconds)))
            except asyncio.TimeoutError:
                pass
            if shutdown.is_set():
                break
            config = await _reload_if_modified(config, scheduler)
    finally:
        logger.info("Shutting down")
        await scheduler.stop()
        store.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Endpoint health check monitor")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config (default: HEALTH_CHECKS_CONFIG_FILE, then config/config.yaml)",
    )
    parser.add_argument("--once", action="store_true", help="Run one check per target and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    parser.add_argument(
        "--reload-interval",
        type=float,
        default=DEFAULT_RELOAD_INTERVAL_SECONDS,
        help="Seconds between configuration file modification checks",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)

    try:
        return asyncio.run(
            run_loop(
                Path(args.config) if args.config else None,
                once=bool(args.once),
                reload_interval_seconds=float(args.reload_interval),
            )
        )
    except ConfigurationError as exc:
        logger.error("Invalid configuration, refusing to start", error=str(exc))
        return 2
    except StorageError as exc:
        logger.error("Failed to open history storage", error=str(exc))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
