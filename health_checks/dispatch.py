from __future__ import annotations

from datetime import datetime
from typing import Mapping

import structlog

from health_checks.maintenance import MaintenanceWindow
from health_checks.models import AlertRule, Result, Target
from health_checks.providers import AlertProvider


logger = structlog.get_logger(__name__)


class AlertDispatcher:
    """
    Calls the notification provider matching an alert rule's type.

    Provider failures are logged and absorbed: the alert state transition has already
    been committed and the next threshold crossing is the next chance to notify.
    """

    def __init__(
        self,
        providers: Mapping[str, AlertProvider] | None = None,
        maintenance: MaintenanceWindow | None = None,
    ) -> None:
        self.providers: dict[str, AlertProvider] = dict(providers or {})
        self.maintenance = maintenance

    def provider_for(self, rule: AlertRule) -> AlertProvider | None:
        provider = self.providers.get(rule.type)
        if provider is None or not provider.is_valid():
            return None
        if rule.provider_override:
            provider = provider.with_override(rule.provider_override)
        return provider

    def under_maintenance(self, now: datetime | None = None) -> bool:
        return self.maintenance is not None and self.maintenance.is_active(now)

    async def dispatch(
        self,
        target: Target,
        rule: AlertRule,
        result: Result,
        *,
        resolved: bool,
        now: datetime | None = None,
    ) -> bool:
        action = "resolve" if resolved else "trigger"
        if self.under_maintenance(now):
            logger.info("Alert suppressed by maintenance window", target=target.key, alert_type=rule.type, action=action)
            return False

        provider = self.provider_for(rule)
        if provider is None:
            logger.warning("No valid provider configured for alert type", target=target.key, alert_type=rule.type)
            return False

        logger.info(
            "Sending alert",
            target=target.key,
            alert_type=rule.type,
            action=action,
            description=rule.description,
        )
        try:
            await provider.send(target, rule, result, resolved=resolved)
        except Exception as exc:
            logger.error(
                "Failed to send alert",
                target=target.key,
                alert_type=rule.type,
                action=action,
                error=f"{type(exc).__name__}: {exc}",
            )
            return False
        return True
