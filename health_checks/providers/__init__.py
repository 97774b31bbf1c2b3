from __future__ import annotations

from health_checks.providers.base import AlertDefaults, AlertProvider, build_alert_message
from health_checks.providers.custom import CustomAlertProvider
from health_checks.providers.rocketchat import RocketChatAlertProvider
from health_checks.providers.telegram import TelegramAlertProvider


__all__ = [
    "AlertDefaults",
    "AlertProvider",
    "CustomAlertProvider",
    "RocketChatAlertProvider",
    "TelegramAlertProvider",
    "build_alert_message",
]
