"""Configuration loading for the health check monitor."""

from __future__ import annotations

import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional, Union

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from health_checks.durations import parse_duration
from health_checks.errors import ConfigurationError
from health_checks.history import DEFAULT_CAPACITY, HistoryStore, create_history_store
from health_checks.maintenance import WEEKDAYS, MaintenanceWindow, load_timezone, parse_hhmm
from health_checks.models import AlertRule, ClientSettings, DnsSettings, Target
from health_checks.providers import (
    AlertDefaults,
    AlertProvider,
    CustomAlertProvider,
    RocketChatAlertProvider,
    TelegramAlertProvider,
)


logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"
DEFAULT_FALLBACK_CONFIG_PATH = "config/config.yml"

DEFAULT_INTERVAL_SECONDS = 60.0
DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_SUCCESS_THRESHOLD = 2

DNS_QUERY_TYPES = {"A", "AAAA", "CNAME", "MX", "NS", "TXT", "SOA", "PTR", "SRV"}

_ENV_RE = re.compile(r"\$\{(\w+)\}|\$(\w+)")


def expand_env(text: str) -> str:
    """Expand $VAR and ${VAR}; unset variables expand to an empty string."""
    return _ENV_RE.sub(lambda m: os.environ.get(m.group(1) or m.group(2), ""), text)


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=_kebab, populate_by_name=True, extra="ignore")


class AlertConfig(_ConfigModel):
    type: str
    enabled: Optional[bool] = None
    failure_threshold: Optional[int] = None
    success_threshold: Optional[int] = None
    send_on_resolved: Optional[bool] = None
    description: Optional[str] = None
    provider_override: Optional[dict[str, Any]] = None

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, v: str) -> str:
        s = str(v or "").strip().lower()
        if not s:
            raise ValueError("alert type is required")
        return s

    def merge_defaults(self, defaults: AlertDefaults) -> AlertConfig:
        updates = {
            name: getattr(defaults, name)
            for name in ("enabled", "failure_threshold", "success_threshold", "send_on_resolved", "description")
            if getattr(self, name) is None and getattr(defaults, name) is not None
        }
        return self.model_copy(update=updates) if updates else self

    def to_rule(self) -> AlertRule:
        return AlertRule(
            type=self.type,
            enabled=True if self.enabled is None else bool(self.enabled),
            failure_threshold=DEFAULT_FAILURE_THRESHOLD if self.failure_threshold is None else int(self.failure_threshold),
            success_threshold=DEFAULT_SUCCESS_THRESHOLD if self.success_threshold is None else int(self.success_threshold),
            send_on_resolved=bool(self.send_on_resolved),
            description=self.description or "",
            provider_override=self.provider_override or None,
        )


class DefaultAlertConfig(_ConfigModel):
    enabled: Optional[bool] = None
    failure_threshold: Optional[int] = None
    success_threshold: Optional[int] = None
    send_on_resolved: Optional[bool] = None
    description: Optional[str] = None

    def to_defaults(self) -> AlertDefaults:
        return AlertDefaults(**self.model_dump())


class ClientConfig(_ConfigModel):
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    insecure: bool = False
    proxy: Optional[str] = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v: Any) -> float:
        seconds = parse_duration(v)
        if seconds <= 0:
            raise ValueError("timeout must be positive")
        return seconds


class DnsConfig(_ConfigModel):
    query_name: str
    query_type: str = "A"

    @field_validator("query_type")
    @classmethod
    def _check_query_type(cls, v: str) -> str:
        s = str(v or "").strip().upper()
        if s not in DNS_QUERY_TYPES:
            raise ValueError(f"invalid dns query-type {v!r}; expected one of {sorted(DNS_QUERY_TYPES)}")
        return s


class ServiceConfig(_ConfigModel):
    name: str
    group: str = ""
    url: str
    method: str = "GET"
    body: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    interval: float = DEFAULT_INTERVAL_SECONDS
    conditions: list[str]
    alerts: list[AlertConfig] = Field(default_factory=list)
    client: ClientConfig = Field(default_factory=ClientConfig)
    dns: Optional[DnsConfig] = None

    @field_validator("name", "url")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        s = str(v or "").strip()
        if not s:
            raise ValueError("must not be empty")
        return s

    @field_validator("interval", mode="before")
    @classmethod
    def _parse_interval(cls, v: Any) -> float:
        seconds = parse_duration(v)
        if seconds <= 0:
            raise ValueError("interval must be positive")
        return seconds

    @field_validator("conditions")
    @classmethod
    def _require_conditions(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one condition is required")
        return [str(c) for c in v]

    def to_target(self) -> Target:
        return Target(
            name=self.name,
            group=self.group,
            url=self.url,
            method=self.method.upper(),
            body=self.body,
            headers=dict(self.headers),
            interval=self.interval,
            conditions=tuple(self.conditions),
            alerts=tuple(a.to_rule() for a in self.alerts),
            client=ClientSettings(timeout=self.client.timeout, insecure=self.client.insecure, proxy=self.client.proxy),
            dns=DnsSettings(query_name=self.dns.query_name, query_type=self.dns.query_type) if self.dns else None,
        )


class CustomProviderConfig(_ConfigModel):
    url: str = ""
    method: str = "POST"
    body: str = ""
    headers: dict[str, str] = Field(default_factory=dict)
    insecure: bool = False
    placeholders: dict[str, dict[str, str]] = Field(default_factory=dict)
    default_alert: Optional[DefaultAlertConfig] = None


class TelegramProviderConfig(_ConfigModel):
    token: str = ""
    id: str = ""
    default_alert: Optional[DefaultAlertConfig] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> str:
        return "" if v is None else str(v)


class RocketChatProviderConfig(_ConfigModel):
    webhook_url: str = ""
    default_alert: Optional[DefaultAlertConfig] = None


class AlertingConfig(_ConfigModel):
    custom: Optional[CustomProviderConfig] = None
    telegram: Optional[TelegramProviderConfig] = None
    rocketchat: Optional[RocketChatProviderConfig] = None

    def build_providers(self) -> dict[str, AlertProvider]:
        providers: dict[str, AlertProvider] = {}
        if self.custom is not None:
            providers["custom"] = CustomAlertProvider(
                url=self.custom.url,
                method=self.custom.method,
                body=self.custom.body,
                headers=dict(self.custom.headers),
                insecure=self.custom.insecure,
                placeholders=dict(self.custom.placeholders),
                default_alert_config=_defaults(self.custom.default_alert),
            )
        if self.telegram is not None:
            providers["telegram"] = TelegramAlertProvider(
                token=self.telegram.token,
                id=self.telegram.id,
                default_alert_config=_defaults(self.telegram.default_alert),
            )
        if self.rocketchat is not None:
            providers["rocketchat"] = RocketChatAlertProvider(
                webhook_url=self.rocketchat.webhook_url,
                default_alert_config=_defaults(self.rocketchat.default_alert),
            )
        return providers


def _defaults(cfg: DefaultAlertConfig | None) -> AlertDefaults | None:
    return cfg.to_defaults() if cfg is not None else None


class MaintenanceConfig(_ConfigModel):
    enabled: bool = True
    start: str
    duration: Union[str, float]
    every: list[str] = Field(default_factory=list)
    timezone: str = "UTC"

    @field_validator("start", mode="before")
    @classmethod
    def _start_as_hhmm(cls, v: Any) -> str:
        # YAML 1.1 reads an unquoted 23:00 as the base-60 integer 1380.
        if isinstance(v, int) and not isinstance(v, bool):
            return f"{v // 60:02d}:{v % 60:02d}"
        return str(v or "")

    def to_window(self) -> MaintenanceWindow:
        every = tuple(str(d).strip().lower() for d in self.every)
        for day in every:
            if day not in WEEKDAYS:
                raise ValueError(f"invalid maintenance day {day!r}")
        return MaintenanceWindow(
            start=parse_hhmm(self.start),
            duration=timedelta(seconds=parse_duration(self.duration)),
            every=every,
            enabled=self.enabled,
            tz=load_timezone(self.timezone),
        )


class StorageConfig(_ConfigModel):
    type: str = "memory"
    file: Optional[str] = None
    capacity: int = DEFAULT_CAPACITY

    @field_validator("type")
    @classmethod
    def _check_type(cls, v: str) -> str:
        s = str(v or "").strip().lower()
        if s not in {"memory", "sqlite"}:
            raise ValueError(f"invalid storage type {v!r}; expected memory or sqlite")
        return s

    @field_validator("capacity")
    @classmethod
    def _check_capacity(cls, v: int) -> int:
        if int(v) < 1:
            raise ValueError("capacity must be >= 1")
        return int(v)


class BasicSecurityConfig(_ConfigModel):
    username: str = ""
    password_sha512: str = ""

    def is_valid(self) -> bool:
        return bool(self.username.strip()) and len(self.password_sha512.strip()) == 128


class SecurityConfig(_ConfigModel):
    basic: Optional[BasicSecurityConfig] = None

    def is_valid(self) -> bool:
        return self.basic is not None and self.basic.is_valid()


class RawConfig(_ConfigModel):
    debug: bool = False
    disable_monitoring_lock: bool = False
    skip_invalid_config_update: bool = False
    services: list[ServiceConfig] = Field(default_factory=list)
    targets: list[ServiceConfig] = Field(default_factory=list)
    alerting: Optional[AlertingConfig] = None
    maintenance: Optional[MaintenanceConfig] = None
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: Optional[SecurityConfig] = None


class MonitorConfig:
    """A validated configuration epoch."""

    def __init__(
        self,
        *,
        targets: list[Target],
        providers: dict[str, AlertProvider],
        maintenance: MaintenanceWindow | None,
        storage: StorageConfig,
        monitoring_lock: bool = True,
        skip_invalid_config_update: bool = False,
        security: SecurityConfig | None = None,
        file_path: Path | None = None,
    ) -> None:
        self.targets = targets
        self.providers = providers
        self.maintenance = maintenance
        self.storage = storage
        self.monitoring_lock = monitoring_lock
        self.skip_invalid_config_update = skip_invalid_config_update
        self.security = security
        self.file_path = file_path
        self.last_file_mtime: int | None = None
        self.update_last_file_mtime()

    def update_last_file_mtime(self) -> None:
        if self.file_path is None:
            return
        try:
            self.last_file_mtime = self.file_path.stat().st_mtime_ns
        except OSError as exc:
            logger.warning("Failed to read config file modification time", path=str(self.file_path), error=str(exc))

    def has_been_modified(self) -> bool:
        if self.file_path is None:
            return False
        try:
            mtime = self.file_path.stat().st_mtime_ns
        except OSError:
            return False
        return mtime != self.last_file_mtime

    def create_history_store(self) -> HistoryStore:
        return create_history_store(self.storage.type, path=self.storage.file, capacity=self.storage.capacity)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def _apply_default_alerts(services: list[ServiceConfig], providers: dict[str, AlertProvider], debug: bool) -> None:
    for alert_type, provider in providers.items():
        defaults = provider.default_alert()
        if defaults is None:
            continue
        for service in services:
            for idx, alert in enumerate(service.alerts):
                if alert.type != alert_type:
                    continue
                if debug:
                    logger.debug(
                        "Parsing alert with provider's default alert",
                        alert_index=idx,
                        provider=alert_type,
                        service=service.name,
                    )
                service.alerts[idx] = alert.merge_defaults(defaults)


def parse_config(text: str, *, file_path: Path | None = None) -> MonitorConfig:
    try:
        data = yaml.safe_load(expand_env(text)) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("Config YAML must be a mapping")

    try:
        raw = RawConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {_format_validation_error(exc)}") from exc

    services = list(raw.services) + list(raw.targets)
    if not services:
        raise ConfigurationError("Configuration should contain at least 1 service")

    if raw.security is not None and not raw.security.is_valid():
        raise ConfigurationError("Invalid security configuration")

    all_providers = raw.alerting.build_providers() if raw.alerting is not None else {}
    providers: dict[str, AlertProvider] = {}
    for alert_type, provider in all_providers.items():
        if provider.is_valid():
            providers[alert_type] = provider
        else:
            logger.warning("Ignoring alert provider because its configuration is invalid", provider=alert_type)
    if raw.alerting is None:
        logger.info("Alerting is not configured")

    # Default alerts are merged before alert defaults are applied, on every (re)load.
    _apply_default_alerts(services, providers, raw.debug)

    targets: list[Target] = []
    seen: set[str] = set()
    for idx, service in enumerate(services):
        try:
            target = service.to_target()
            _ = target.probe_kind
        except ValueError as exc:
            raise ConfigurationError(f"services[{idx}] ({service.name}): {exc}") from exc
        if target.key in seen:
            raise ConfigurationError(f"Duplicate service key: {target.key}")
        seen.add(target.key)
        targets.append(target)

    maintenance = None
    if raw.maintenance is not None:
        try:
            maintenance = raw.maintenance.to_window()
        except ValueError as exc:
            raise ConfigurationError(f"Invalid maintenance configuration: {exc}") from exc

    if raw.storage.type == "sqlite" and not raw.storage.file:
        raise ConfigurationError("storage.file is required when storage.type is sqlite")

    logger.info(
        "Validated configuration",
        services=len(targets),
        providers=sorted(providers),
        ignored_providers=sorted(set(all_providers) - set(providers)),
    )
    return MonitorConfig(
        targets=targets,
        providers=providers,
        maintenance=maintenance,
        storage=raw.storage,
        monitoring_lock=not raw.disable_monitoring_lock,
        skip_invalid_config_update=raw.skip_invalid_config_update,
        security=raw.security,
        file_path=file_path,
    )


def load_config(path: str | Path) -> MonitorConfig:
    p = Path(path)
    logger.info("Reading configuration", path=str(p))
    try:
        text = p.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {p}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Failed to read configuration file {p}: {exc}") from exc
    return parse_config(text, file_path=p)


def load_default_config() -> MonitorConfig:
    path = os.getenv("HEALTH_CHECKS_CONFIG_FILE")
    if path:
        return load_config(path)
    try:
        return load_config(DEFAULT_CONFIG_PATH)
    except ConfigurationError:
        if Path(DEFAULT_CONFIG_PATH).exists():
            raise
        return load_config(DEFAULT_FALLBACK_CONFIG_PATH)
