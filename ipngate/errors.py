"""
IPN pipeline error taxonomy.

TransportError is the only one raised before an IPNEvent row exists. Every
other error is converted into a recorded status on the event row by the stage
that catches it - financial events are never dropped on an exception path.
"""
from typing import Optional


class IPNError(Exception):
    """Base class for all gateway errors."""
    pass


class TransportError(IPNError):
    """Webhook rejected at the edge (unknown integration, IP, signature, rate limit)."""

    def __init__(self, status_code: int, detail: str, headers: Optional[dict] = None):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail
        self.headers = headers


class ParseError(IPNError):
    """Provider payload could not be mapped to a NormalizedPayment."""
    pass


class ValidationError(IPNError):
    """One or more business rules failed. Carries every failing rule, in order."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = list(errors)


class DuplicateNotification(IPNError):
    """Repeat delivery of a notification that was already accepted."""

    def __init__(self, fingerprint: str, original_event_id=None):
        super().__init__(f"Duplicate of {original_event_id or 'earlier event'}")
        self.fingerprint = fingerprint
        self.original_event_id = original_event_id


class DispatchError(IPNError):
    """Reconciliation queue unavailable - event stays validated and is retried."""
    pass


class InvalidTransition(IPNError):
    """Attempted a status change that is not an edge of the event state machine."""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Invalid IPN status transition {current} -> {requested}")
        self.current = current
        self.requested = requested
