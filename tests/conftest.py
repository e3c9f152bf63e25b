"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and outbound HTTP.
"""
import os

os.environ.setdefault("APP_SECRET_KEY", "test-secret-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB

from ipngate.database import Base
import ipngate.models  # noqa: F401  (registers every table on Base.metadata)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("ipngate.utils.dedup.get_redis") as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        redis_mock.publish = AsyncMock(return_value=1)
        # pipeline() and pubsub() are synchronous in redis.asyncio
        redis_mock.pipeline = MagicMock(side_effect=RuntimeError("pipeline not mocked"))
        redis_mock.pubsub = MagicMock()
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def make_integration(db):
    """Factory for BankIntegration rows."""
    from ipngate.models.bank_integration import BankIntegration

    async def _make(
        bank_code: str = "mpesa",
        supported_currencies: list | None = None,
        webhook_config: dict | None = None,
        is_active: bool = True,
    ) -> BankIntegration:
        integration = BankIntegration(
            id=uuid.uuid4(),
            bank_code=bank_code,
            bank_name=f"{bank_code.title()} Test",
            provider_type="mobile_money" if bank_code == "mpesa" else "bank_api",
            supported_currencies=["KES"] if supported_currencies is None else supported_currencies,
            webhook_config=webhook_config or {},
            is_active=is_active,
            health_status="unknown",
        )
        db.add(integration)
        await db.commit()
        return integration

    return _make


@pytest.fixture
def make_event(db):
    """Factory for IPNEvent rows in status received."""
    from ipngate.models.ipn_event import IPNEvent

    async def _make(integration, raw_payload: dict, **fields) -> IPNEvent:
        event = IPNEvent(
            id=uuid.uuid4(),
            integration_id=integration.id,
            raw_payload=raw_payload,
            **fields,
        )
        db.add(event)
        await db.commit()
        return event

    return _make


def _mpesa_c2b_payload(
    trans_id: str = "QWE123",
    amount="500.00",
    bill_ref: str = "ADM2024-001",
    msisdn: str = "254712345678",
) -> dict:
    """Daraja C2B confirmation body."""
    payload = {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": "20261018103000",
        "BusinessShortCode": "600638",
        "BillRefNumber": bill_ref,
        "InvoiceNumber": "",
        "OrgAccountBalance": "49197.00",
        "ThirdPartyTransID": "",
        "MSISDN": msisdn,
        "FirstName": "Jane",
        "MiddleName": "W",
        "LastName": "Otieno",
    }
    if amount is not None:
        payload["TransAmount"] = amount
    return payload


def _mpesa_stk_payload(
    result_code: int = 0,
    receipt: str = "NLJ7RT61SV",
    amount=1250.5,
    checkout_id: str = "ws_CO_191220191020363925",
) -> dict:
    """Daraja STK push result callback."""
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20191219102115},
                {"Name": "PhoneNumber", "Value": 254708374149},
            ]
        }
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def c2b_payload():
    """Builder for M-PESA C2B confirmation payloads."""
    return _mpesa_c2b_payload


@pytest.fixture
def stk_payload():
    """Builder for M-PESA STK callback payloads."""
    return _mpesa_stk_payload
