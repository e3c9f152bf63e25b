"""
Tests for ipngate/services/state_machine.py and the IPNEvent model guards.
"""
import uuid

import pytest

from ipngate.errors import InvalidTransition
from ipngate.models.ipn_event import IPNEvent
from ipngate.services.state_machine import (
    ALL_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    EventStatus,
    can_transition,
    check_transition,
    is_terminal,
    transition,
)


def _event(**kwargs) -> IPNEvent:
    return IPNEvent(id=uuid.uuid4(), integration_id=uuid.uuid4(), raw_payload={"a": 1}, **kwargs)


class TestTransitionTable:
    def test_every_status_has_an_entry(self):
        assert set(TRANSITIONS) == set(ALL_STATUSES)

    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {EventStatus.PROCESSED, EventStatus.FAILED, EventStatus.DUPLICATE}
        for status in TERMINAL_STATUSES:
            assert is_terminal(status)

    @pytest.mark.parametrize("current,new", [
        ("received", "validated"),
        ("received", "failed"),
        ("received", "duplicate"),
        ("validated", "queued"),
        ("validated", "failed"),
        ("validated", "duplicate"),
        ("queued", "processed"),
        ("queued", "failed"),
    ])
    def test_allowed_edges(self, current, new):
        assert can_transition(current, new)

    @pytest.mark.parametrize("current,new", [
        ("received", "queued"),      # skips validated
        ("received", "processed"),
        ("validated", "received"),   # backward
        ("queued", "validated"),
        ("queued", "duplicate"),
        ("processed", "failed"),     # out of terminal
        ("failed", "validated"),
        ("duplicate", "queued"),
    ])
    def test_forbidden_edges(self, current, new):
        assert not can_transition(current, new)
        with pytest.raises(InvalidTransition):
            check_transition(current, new)

    def test_initial_status_must_be_received(self):
        check_transition(None, EventStatus.RECEIVED)
        with pytest.raises(InvalidTransition):
            check_transition(None, EventStatus.VALIDATED)


class TestTransition:
    def test_new_event_starts_received(self):
        event = _event()
        assert event.status == EventStatus.RECEIVED
        assert event.validation_errors == []

    def test_validated_requires_normalized_payload(self):
        event = _event()
        with pytest.raises(ValueError):
            transition(event, EventStatus.VALIDATED)

    def test_normalized_payload_follows_status(self):
        event = _event()
        transition(event, EventStatus.VALIDATED, normalized_payload={"amount": 500})
        assert event.normalized_payload == {"amount": 500}

        transition(event, EventStatus.QUEUED)
        assert event.normalized_payload == {"amount": 500}

        transition(event, EventStatus.PROCESSED)
        assert event.normalized_payload == {"amount": 500}
        assert event.processing_completed_at is not None

    def test_duplicate_clears_normalized_payload(self):
        event = _event()
        transition(event, EventStatus.VALIDATED, normalized_payload={"amount": 500})
        transition(event, EventStatus.DUPLICATE)
        assert event.status == EventStatus.DUPLICATE
        assert event.normalized_payload is None

    def test_failed_from_received_has_no_normalized_payload(self):
        event = _event()
        transition(event, EventStatus.FAILED)
        assert event.normalized_payload is None
        assert event.processing_completed_at is not None

    def test_invalid_transition_leaves_status(self):
        event = _event()
        with pytest.raises(InvalidTransition):
            transition(event, EventStatus.QUEUED)
        assert event.status == EventStatus.RECEIVED

    def test_direct_status_assignment_is_guarded(self):
        event = _event()
        transition(event, EventStatus.FAILED)
        with pytest.raises(InvalidTransition):
            event.status = EventStatus.VALIDATED


class TestRawPayloadWriteOnce:
    def test_raw_payload_cannot_be_replaced(self):
        event = _event()
        with pytest.raises(ValueError):
            event.raw_payload = {"tampered": True}
        assert event.raw_payload == {"a": 1}
