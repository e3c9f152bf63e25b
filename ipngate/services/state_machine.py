"""
IPN event state machine.

    received --> validated --> queued --> processed
        |            |            |
        |            |            +-----> failed
        |            +--> failed
        |            +--> duplicate
        +--> failed
        +--> duplicate

processed, failed and duplicate are terminal. Nothing moves backward.
normalized_payload is present exactly while the event is validated, queued
or processed.
"""
from datetime import datetime, timezone

from ipngate.errors import InvalidTransition


class EventStatus:
    """IPN event status constants."""
    RECEIVED = "received"
    VALIDATED = "validated"
    QUEUED = "queued"
    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE = "duplicate"


ALL_STATUSES = (
    EventStatus.RECEIVED,
    EventStatus.VALIDATED,
    EventStatus.QUEUED,
    EventStatus.PROCESSED,
    EventStatus.FAILED,
    EventStatus.DUPLICATE,
)

TRANSITIONS: dict[str, frozenset[str]] = {
    EventStatus.RECEIVED: frozenset({EventStatus.VALIDATED, EventStatus.FAILED, EventStatus.DUPLICATE}),
    EventStatus.VALIDATED: frozenset({EventStatus.QUEUED, EventStatus.FAILED, EventStatus.DUPLICATE}),
    EventStatus.QUEUED: frozenset({EventStatus.PROCESSED, EventStatus.FAILED}),
    EventStatus.PROCESSED: frozenset(),
    EventStatus.FAILED: frozenset(),
    EventStatus.DUPLICATE: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# Statuses during which the canonical normalized payload is kept on the row
NORMALIZED_STATUSES = frozenset({EventStatus.VALIDATED, EventStatus.QUEUED, EventStatus.PROCESSED})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def check_transition(current: str | None, new: str) -> None:
    """Raise InvalidTransition unless current -> new is an edge (or the initial insert)."""
    if current is None:
        if new != EventStatus.RECEIVED:
            raise InvalidTransition("new", new)
        return
    if not can_transition(current, new):
        raise InvalidTransition(current, new)


def transition(event, new_status: str, normalized_payload: dict | None = None) -> None:
    """
    Move an IPNEvent to new_status.

    Keeps normalized_payload consistent with the status: it must be supplied
    when entering validated, is carried through queued/processed, and is
    cleared on failed/duplicate (the extracted columns stay for audit).
    """
    current = event.status or EventStatus.RECEIVED
    check_transition(current, new_status)

    if new_status == EventStatus.VALIDATED:
        if normalized_payload is None:
            raise ValueError("normalized_payload is required to validate an event")
        event.normalized_payload = normalized_payload
    elif new_status not in NORMALIZED_STATUSES:
        event.normalized_payload = None

    event.status = new_status
    now = datetime.now(timezone.utc)
    event.updated_at = now
    if is_terminal(new_status):
        event.processing_completed_at = now
