from __future__ import annotations


class MonitorError(Exception):
    pass


class ConfigurationError(MonitorError):
    """Raised while loading configuration; the process must not start with it."""


class StorageError(MonitorError):
    pass


class DispatchError(MonitorError):
    pass
