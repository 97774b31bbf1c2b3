from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import ClassVar

from health_checks.models import AlertRule, Result, Target
from health_checks.providers.base import AlertDefaults, AlertProvider, alert_description
from health_checks.providers.custom import CustomAlertProvider


# Rocket.Chat renders comparison signs poorly inside attachments.
_COMPARISON_REPLACEMENTS = (
    (re.compile(r"<="), "lte"),
    (re.compile(r">="), "gte"),
    (re.compile(r"<"), "lt"),
    (re.compile(r">"), "gt"),
)


def replace_comparison_signs(text: str) -> str:
    for pattern, replacement in _COMPARISON_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return text


@dataclass(frozen=True)
class RocketChatAlertProvider(AlertProvider):
    type: ClassVar[str] = "rocketchat"

    webhook_url: str = ""
    timeout: float = 15.0
    default_alert_config: AlertDefaults | None = None

    def is_valid(self) -> bool:
        return bool(self.webhook_url.strip())

    def to_custom_provider(self, target: Target, rule: AlertRule, result: Result, *, resolved: bool) -> CustomAlertProvider:
        if resolved:
            message = (
                f"An alert for *{target.name}* has been resolved after passing successfully "
                f"*{rule.success_threshold} time(s)* in a row."
            )
            color = "#36A64F"
        else:
            message = (
                f"An alert for *{target.name}* has been triggered due to having failed "
                f"*{rule.failure_threshold} time(s)* in a row."
            )
            color = "#DD0000"

        results = ""
        for outcome in result.condition_outcomes:
            prefix = "Successful check:" if outcome.success else "Failed check:    "
            results += f"{prefix} - `{outcome.rendered}`\n"
        results = replace_comparison_signs(results)

        payload = {
            "text": "",
            "alias": "health-checks",
            "emoji": ":helmet_with_white_cross:",
            "attachments": [
                {
                    "title": "Health Check Alert",
                    "fallback": f"Health Check - {message}",
                    "text": message,
                    "color": color,
                    "fields": [
                        {"title": "URL", "value": target.url, "short": False},
                        {"title": "Description", "value": alert_description(rule), "short": False},
                        {"title": "Condition results", "value": results, "short": False},
                    ],
                }
            ],
        }
        return CustomAlertProvider(
            url=self.webhook_url,
            method="POST",
            body=json.dumps(payload, ensure_ascii=False),
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )

    async def send(self, target: Target, rule: AlertRule, result: Result, *, resolved: bool) -> None:
        custom = self.to_custom_provider(target, rule, result, resolved=resolved)
        await custom.send(target, rule, result, resolved=resolved)
