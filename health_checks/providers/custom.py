from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Mapping

import httpx

from health_checks.errors import DispatchError
from health_checks.models import AlertRule, Result, Target
from health_checks.providers.base import AlertDefaults, AlertProvider, alert_description


TRIGGERED = "TRIGGERED"
RESOLVED = "RESOLVED"


@dataclass(frozen=True)
class CustomAlertProvider(AlertProvider):
    """
    Generic webhook. The url, body and header values may reference:

      [ALERT_DESCRIPTION], [SERVICE_NAME], [SERVICE_GROUP], [SERVICE_URL],
      [ALERT_TRIGGERED_OR_RESOLVED]

    `placeholders` remaps placeholder values, e.g.
    {"ALERT_TRIGGERED_OR_RESOLVED": {"TRIGGERED": "partial_outage", "RESOLVED": "operational"}}.
    """

    type: ClassVar[str] = "custom"

    url: str = ""
    method: str = "POST"
    body: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    insecure: bool = False
    timeout: float = 15.0
    placeholders: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    default_alert_config: AlertDefaults | None = None

    def is_valid(self) -> bool:
        return bool(self.url.strip())

    def _triggered_or_resolved(self, resolved: bool) -> str:
        value = RESOLVED if resolved else TRIGGERED
        mapping = self.placeholders.get("ALERT_TRIGGERED_OR_RESOLVED") or {}
        return str(mapping.get(value, value))

    def _substitute(self, text: str, target: Target, rule: AlertRule, resolved: bool) -> str:
        out = text
        out = out.replace("[ALERT_DESCRIPTION]", alert_description(rule))
        out = out.replace("[SERVICE_NAME]", target.name)
        out = out.replace("[SERVICE_GROUP]", target.group)
        out = out.replace("[SERVICE_URL]", target.url)
        out = out.replace("[ALERT_TRIGGERED_OR_RESOLVED]", self._triggered_or_resolved(resolved))
        return out

    def build_request(self, target: Target, rule: AlertRule, result: Result, *, resolved: bool) -> httpx.Request:
        headers = {k: self._substitute(str(v), target, rule, resolved) for k, v in self.headers.items()}
        body = self._substitute(self.body, target, rule, resolved)
        return httpx.Request(
            (self.method or "POST").upper(),
            self._substitute(self.url, target, rule, resolved),
            headers=headers,
            content=body.encode("utf-8") if body else None,
        )

    async def send(self, target: Target, rule: AlertRule, result: Result, *, resolved: bool) -> None:
        request = self.build_request(target, rule, result, resolved=resolved)
        async with httpx.AsyncClient(verify=not self.insecure, timeout=self.timeout) as client:
            resp = await client.send(request)
        if resp.status_code >= 400:
            raise DispatchError(
                f"{self.type} provider call failed status={resp.status_code} body={resp.text[:300]!r}"
            )
