from __future__ import annotations

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar, Mapping

from health_checks.models import AlertRule, Result, Target


@dataclass(frozen=True)
class AlertDefaults:
    """Provider-level default alert fields; None means the provider has no opinion."""

    enabled: bool | None = None
    failure_threshold: int | None = None
    success_threshold: int | None = None
    send_on_resolved: bool | None = None
    description: str | None = None


class AlertProvider(ABC):
    type: ClassVar[str]

    default_alert_config: AlertDefaults | None = None

    @abstractmethod
    def is_valid(self) -> bool: ...

    def default_alert(self) -> AlertDefaults | None:
        return self.default_alert_config

    @abstractmethod
    async def send(self, target: Target, rule: AlertRule, result: Result, *, resolved: bool) -> None:
        """Deliver one notification; raises DispatchError (or a transport error) on failure."""

    def with_override(self, payload: Mapping[str, Any] | None) -> AlertProvider:
        """
        Return a copy with provider fields replaced by a rule's override payload.

        Keys may use kebab-case (as in YAML); unknown keys are ignored.
        """
        if not payload or not dataclasses.is_dataclass(self):
            return self
        names = {f.name for f in dataclasses.fields(self) if f.init}
        changes = {}
        for raw_key, value in payload.items():
            key = str(raw_key).replace("-", "_")
            if key in names and key != "default_alert_config":
                changes[key] = value
        return dataclasses.replace(self, **changes) if changes else self


def alert_description(rule: AlertRule) -> str:
    return rule.description.strip() if rule.description and rule.description.strip() else "No description provided"


def build_alert_message(target: Target, rule: AlertRule, result: Result, *, resolved: bool) -> str:
    if resolved:
        headline = (
            f"An alert for {target.name} has been resolved after passing successfully "
            f"{rule.success_threshold} time(s) in a row"
        )
    else:
        headline = (
            f"An alert for {target.name} has been triggered due to having failed "
            f"{rule.failure_threshold} time(s) in a row"
        )
    lines = [headline, f"Description: {alert_description(rule)}"]
    if target.group:
        lines.append(f"Group: {target.group}")
    lines.append(f"URL: {target.url}")
    if result.error:
        lines.append(f"Error: {result.error[:500]}")
    if result.condition_outcomes:
        lines.append("Condition results:")
        for outcome in result.condition_outcomes:
            mark = "✅" if outcome.success else "❌"
            lines.append(f"{mark} {outcome.rendered}")
    return "\n".join(lines)
