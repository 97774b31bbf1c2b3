from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Mapping


class ProbeKind(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    ICMP = "icmp"
    DNS = "dns"
    TLS = "tls"


_KEY_REPLACED_CHARS = str.maketrans({" ": "-", "/": "-", "_": "-", ",": "-", ".": "-"})


def sanitize_key_part(value: str) -> str:
    return str(value or "").lower().translate(_KEY_REPLACED_CHARS)


def target_key(group: str, name: str) -> str:
    return f"{sanitize_key_part(group)}_{sanitize_key_part(name)}"


@dataclass(frozen=True)
class ClientSettings:
    timeout: float = 10.0
    insecure: bool = False
    proxy: str | None = None


@dataclass(frozen=True)
class DnsSettings:
    query_name: str
    query_type: str = "A"


@dataclass(frozen=True)
class AlertRule:
    type: str
    enabled: bool = True
    failure_threshold: int = 3
    success_threshold: int = 2
    send_on_resolved: bool = False
    description: str = ""
    provider_override: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if int(self.failure_threshold) < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold!r}")
        if int(self.success_threshold) < 1:
            raise ValueError(f"success_threshold must be >= 1, got {self.success_threshold!r}")


@dataclass(frozen=True)
class Target:
    name: str
    url: str
    conditions: tuple[str, ...]
    group: str = ""
    interval: float = 60.0
    alerts: tuple[AlertRule, ...] = ()
    client: ClientSettings = field(default_factory=ClientSettings)
    method: str = "GET"
    body: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    dns: DnsSettings | None = None

    @property
    def key(self) -> str:
        return target_key(self.group, self.name)

    @property
    def probe_kind(self) -> ProbeKind:
        if self.dns is not None:
            return ProbeKind.DNS
        scheme = self.url.split("://", 1)[0].lower() if "://" in self.url else ""
        if scheme in {"http", "https"}:
            return ProbeKind.HTTP
        if scheme == "tcp":
            return ProbeKind.TCP
        if scheme == "icmp":
            return ProbeKind.ICMP
        if scheme == "tls":
            return ProbeKind.TLS
        raise ValueError(f"Unsupported target url scheme: {self.url!r}")

    def uses_placeholder(self, placeholder: str) -> bool:
        return any(placeholder in c for c in self.conditions)


@dataclass
class RawCheckResult:
    connected: bool = False
    duration: float = 0.0
    status: int | None = None
    body: bytes = b""
    ip: str | None = None
    hostname: str | None = None
    dns_rcode: str | None = None
    dns_answers: tuple[str, ...] = ()
    certificate_expiration: float | None = None
    error: str | None = None


@dataclass(frozen=True)
class ConditionOutcome:
    condition: str
    rendered: str
    success: bool


@dataclass(frozen=True)
class Result:
    timestamp: datetime
    success: bool
    duration: float
    condition_outcomes: tuple[ConditionOutcome, ...] = ()
    status: int | None = None
    ip: str | None = None
    hostname: str | None = None
    dns_rcode: str | None = None
    connected: bool = False
    certificate_expiration: float | None = None
    error: str | None = None

    @classmethod
    def from_raw(
        cls,
        raw: RawCheckResult,
        outcomes: Iterable[ConditionOutcome],
        *,
        timestamp: datetime | None = None,
    ) -> Result:
        outcomes = tuple(outcomes)
        success = raw.error is None and all(o.success for o in outcomes)
        return cls(
            timestamp=timestamp or datetime.now(timezone.utc),
            success=success,
            duration=float(raw.duration),
            condition_outcomes=outcomes,
            status=raw.status,
            ip=raw.ip,
            hostname=raw.hostname,
            dns_rcode=raw.dns_rcode,
            connected=bool(raw.connected and raw.error is None),
            certificate_expiration=raw.certificate_expiration,
            error=raw.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "duration": self.duration,
            "condition_outcomes": [[o.condition, o.rendered, o.success] for o in self.condition_outcomes],
            "status": self.status,
            "ip": self.ip,
            "hostname": self.hostname,
            "dns_rcode": self.dns_rcode,
            "connected": self.connected,
            "certificate_expiration": self.certificate_expiration,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Result:
        ts = datetime.fromisoformat(str(data["timestamp"]))
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        outcomes = tuple(
            ConditionOutcome(condition=str(c), rendered=str(r), success=bool(s))
            for c, r, s in (data.get("condition_outcomes") or [])
        )
        status = data.get("status")
        cert = data.get("certificate_expiration")
        return cls(
            timestamp=ts,
            success=bool(data.get("success")),
            duration=float(data.get("duration") or 0.0),
            condition_outcomes=outcomes,
            status=int(status) if status is not None else None,
            ip=data.get("ip"),
            hostname=data.get("hostname"),
            dns_rcode=data.get("dns_rcode"),
            connected=bool(data.get("connected")),
            certificate_expiration=float(cert) if cert is not None else None,
            error=data.get("error"),
        )
