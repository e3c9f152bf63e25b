"""
Tests for ipngate/services/dispatcher.py - idempotent queue hand-off.
"""
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update

from ipngate.models.bank_integration import InstitutionBankAccount
from ipngate.models.ipn_event import IPNEvent
from ipngate.models.processing_queue import IPNQueueItem, MatchStatus
from ipngate.services.dispatcher import dispatch, match_institution_account, queue_stats
from ipngate.services.state_machine import EventStatus, transition


async def _validated_event(make_integration, make_event, db, reference="ADM2024-001"):
    integration = await make_integration()
    event = await make_event(
        integration, {"TransID": "QWE123"},
        amount=Decimal("500.00"), currency="KES", bank_reference="QWE123", external_reference=reference,
    )
    transition(event, EventStatus.VALIDATED, normalized_payload={"amount": 500})
    await db.commit()
    return integration, event


async def _count_queue(db) -> int:
    result = await db.execute(select(func.count(IPNQueueItem.id)))
    return result.scalar_one()


class TestDispatch:
    async def test_validated_event_is_queued(self, db, mock_redis, make_integration, make_event):
        _, event = await _validated_event(make_integration, make_event, db)

        assert await dispatch(db, event) is True

        assert event.status == EventStatus.QUEUED
        result = await db.execute(select(IPNQueueItem).where(IPNQueueItem.ipn_event_id == event.id))
        item = result.scalar_one()
        assert item.match_status == MatchStatus.PENDING
        assert item.retry_count == 0

    async def test_redispatch_is_noop(self, db, mock_redis, make_integration, make_event):
        _, event = await _validated_event(make_integration, make_event, db)

        await dispatch(db, event)
        assert await dispatch(db, event) is False
        assert await _count_queue(db) == 1

    @pytest.mark.parametrize("terminal", [EventStatus.FAILED, EventStatus.DUPLICATE])
    async def test_terminal_event_is_noop(self, db, mock_redis, make_integration, make_event, terminal):
        _, event = await _validated_event(make_integration, make_event, db)
        transition(event, terminal)
        await db.commit()

        assert await dispatch(db, event) is False
        assert await _count_queue(db) == 0

    async def test_received_event_is_not_dispatched(self, db, mock_redis, make_integration, make_event):
        integration = await make_integration()
        event = await make_event(integration, {"TransID": "X"})

        assert await dispatch(db, event) is False
        assert event.status == EventStatus.RECEIVED

    async def test_existing_queue_row_is_reused(self, db, mock_redis, make_integration, make_event):
        _, event = await _validated_event(make_integration, make_event, db)
        db.add(IPNQueueItem(id=uuid.uuid4(), ipn_event_id=event.id))
        await db.commit()

        assert await dispatch(db, event) is True
        assert event.status == EventStatus.QUEUED
        assert await _count_queue(db) == 1

    async def test_stale_copy_does_not_overwrite_later_status(self, db, mock_redis, make_integration, make_event):
        _, event = await _validated_event(make_integration, make_event, db)
        # Another worker failed the event; this session's object still says validated
        await db.execute(
            update(IPNEvent)
            .where(IPNEvent.id == event.id)
            .values(status=EventStatus.FAILED, normalized_payload=None)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        assert event.status == EventStatus.VALIDATED

        assert await dispatch(db, event) is False

        assert event.status == EventStatus.FAILED
        assert await _count_queue(db) == 0


class TestInstitutionMatch:
    async def test_longest_prefix_wins(self, db, make_integration):
        integration = await make_integration()
        short = InstitutionBankAccount(
            id=uuid.uuid4(), institution_id=uuid.uuid4(), integration_id=integration.id, account_reference="ADM",
        )
        long = InstitutionBankAccount(
            id=uuid.uuid4(), institution_id=uuid.uuid4(), integration_id=integration.id, account_reference="ADM2024",
        )
        disabled = InstitutionBankAccount(
            id=uuid.uuid4(), institution_id=uuid.uuid4(), integration_id=integration.id,
            account_reference="ADM2024-0", is_enabled=False,
        )
        db.add_all([short, long, disabled])
        await db.commit()

        match = await match_institution_account(db, integration.id, "adm2024-001")
        assert match.id == long.id

    async def test_no_reference(self, db, make_integration):
        integration = await make_integration()
        assert await match_institution_account(db, integration.id, None) is None

    async def test_queue_row_carries_institution(self, db, mock_redis, make_integration, make_event):
        integration, event = await _validated_event(make_integration, make_event, db)
        institution_id = uuid.uuid4()
        db.add(InstitutionBankAccount(
            id=uuid.uuid4(), institution_id=institution_id, integration_id=integration.id, account_reference="ADM",
        ))
        await db.commit()

        await dispatch(db, event)

        result = await db.execute(select(IPNQueueItem.institution_id))
        assert result.scalar_one() == institution_id


class TestQueueStats:
    async def test_counts(self, db, make_integration, make_event):
        integration = await make_integration()
        statuses = [
            MatchStatus.PENDING, MatchStatus.PENDING,
            MatchStatus.PARTIAL_MATCH, MatchStatus.UNMATCHED, MatchStatus.EXCEPTION,
            MatchStatus.MATCHED,
        ]
        for status in statuses:
            event = await make_event(integration, {"n": status})
            db.add(IPNQueueItem(id=uuid.uuid4(), ipn_event_id=event.id, match_status=status))
        await db.commit()

        assert await queue_stats(db) == {"pending": 2, "manual_review": 3}

    async def test_empty(self, db):
        assert await queue_stats(db) == {"pending": 0, "manual_review": 0}
