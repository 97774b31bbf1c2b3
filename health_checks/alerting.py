from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from health_checks.models import AlertRule, Result, Target

if TYPE_CHECKING:
    from health_checks.dispatch import AlertDispatcher


logger = structlog.get_logger(__name__)

AlertStateKey = tuple[int, str]


class AlertTransition(str, Enum):
    TRIGGER = "trigger"
    RESOLVE = "resolve"


@dataclass
class AlertState:
    """
    Live threshold tracking for one (target, alert rule) pair.

    Only the owning target's tick mutates it, so it needs no locking.
    """

    failure_count: int = 0
    success_count: int = 0
    triggered: bool = False

    def observe(self, success: bool, rule: AlertRule) -> AlertTransition | None:
        """
        Fold one result into the counters.

        Counting continues past the thresholds, but TRIGGER is returned only on the
        crossing from IDLE, and RESOLVE only on the crossing back while TRIGGERED
        (and only when the rule asks for resolve notifications).
        """
        if success:
            self.success_count += 1
            self.failure_count = 0
            if self.triggered and self.success_count == rule.success_threshold:
                self.triggered = False
                if rule.send_on_resolved:
                    return AlertTransition.RESOLVE
            return None

        self.failure_count += 1
        self.success_count = 0
        if rule.enabled and not self.triggered and self.failure_count == rule.failure_threshold:
            self.triggered = True
            return AlertTransition.TRIGGER
        return None


def alert_state_key(index: int, rule: AlertRule) -> AlertStateKey:
    return index, rule.type


async def handle_alerting(
    target: Target,
    result: Result,
    states: dict[AlertStateKey, AlertState],
    dispatcher: AlertDispatcher | None,
    *,
    now: datetime | None = None,
) -> list[tuple[AlertRule, AlertTransition]]:
    transitions: list[tuple[AlertRule, AlertTransition]] = []
    for index, rule in enumerate(target.alerts):
        state = states.get(alert_state_key(index, rule))
        if state is None:
            state = states[alert_state_key(index, rule)] = AlertState()

        transition = state.observe(result.success, rule)
        if transition is None:
            continue

        transitions.append((rule, transition))
        logger.info(
            "Alert threshold crossed",
            target=target.key,
            alert_type=rule.type,
            transition=transition.value,
            failure_count=state.failure_count,
            success_count=state.success_count,
        )
        if dispatcher is not None:
            await dispatcher.dispatch(
                target,
                rule,
                result,
                resolved=transition is AlertTransition.RESOLVE,
                now=now,
            )
    return transitions


def retain_alert_states(
    states: dict[AlertStateKey, AlertState],
    target: Target,
) -> dict[AlertStateKey, AlertState]:
    wanted = {alert_state_key(i, rule) for i, rule in enumerate(target.alerts)}
    return {k: v for k, v in states.items() if k in wanted}
