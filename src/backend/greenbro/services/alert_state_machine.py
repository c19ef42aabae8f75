"""Alert lifecycle for one (rule, device) pair.

not_firing -> active -> cleared. Cleared is terminal for that instance; the
next firing episode starts a new instance from not_firing.
"""

from datetime import datetime
from enum import Enum

import structlog

from greenbro.core.clock import ensure_utc
from greenbro.models.alert import AlertInstance, AlertSeverity, AlertStatus

logger = structlog.get_logger()


class AlertTransitionError(Exception):
    """Raised when an alert state transition is invalid."""


class AlertState(str, Enum):
    NOT_FIRING = "not_firing"
    ACTIVE = "active"
    CLEARED = "cleared"


# Valid state transitions: from_state -> [to_states]
VALID_TRANSITIONS: dict[AlertState, list[AlertState]] = {
    AlertState.NOT_FIRING: [AlertState.ACTIVE],
    AlertState.ACTIVE: [
        AlertState.ACTIVE,  # Still firing, bump last_seen_at
        AlertState.CLEARED,
    ],
    AlertState.CLEARED: [],  # Terminal state
}


def state_of(instance: AlertInstance | None) -> AlertState:
    if instance is None:
        return AlertState.NOT_FIRING
    return AlertState(AlertStatus(instance.status).value)


def can_transition(from_state: AlertState, to_state: AlertState) -> tuple[bool, str]:
    if to_state in VALID_TRANSITIONS.get(from_state, []):
        return True, ""
    return False, f"Cannot transition alert from {from_state.value} to {to_state.value}"


def ensure_transition(from_state: AlertState, to_state: AlertState) -> None:
    allowed, message = can_transition(from_state, to_state)
    if not allowed:
        raise AlertTransitionError(message)


def resolve_severity(
    current: AlertSeverity,
    incoming: AlertSeverity,
    muted: bool,
) -> AlertSeverity:
    """Severity an active alert should carry after another firing.

    Escalation is withheld while muted; de-escalation always applies.
    """
    current = AlertSeverity(current)
    incoming = AlertSeverity(incoming)
    if muted and incoming.rank > current.rank:
        return current
    return incoming


def apply_firing(
    instance: AlertInstance,
    severity: AlertSeverity,
    message: str,
    now: datetime,
) -> None:
    """Record another firing on an active instance."""
    ensure_transition(state_of(instance), AlertState.ACTIVE)

    muted = instance.is_muted(now)
    new_severity = resolve_severity(instance.severity, severity, muted)
    if muted and new_severity != severity:
        logger.debug(
            "Severity escalation withheld while muted",
            alert_id=str(instance.id),
            severity=AlertSeverity(instance.severity).value,
            requested=AlertSeverity(severity).value,
        )

    instance.severity = new_severity
    instance.message = message
    last_seen = ensure_utc(instance.last_seen_at)
    if last_seen is None or now > last_seen:
        instance.last_seen_at = now


def apply_clear(instance: AlertInstance, now: datetime) -> None:
    ensure_transition(state_of(instance), AlertState.CLEARED)
    instance.status = AlertStatus.CLEARED
    instance.cleared_at = now
