"""
Request and response schemas for the IPN HTTP API.
"""
from typing import Literal, Optional
from pydantic import BaseModel, Field


class WebhookAckResponse(BaseModel):
    success: bool = True
    event_id: str
    status: str = "received"


class MpesaAckResponse(BaseModel):
    """Daraja expects exactly this body, or it retries the callback."""
    ResultCode: int = 0
    ResultDesc: str = "Accepted"


class OutcomeRequest(BaseModel):
    outcome: Literal["processed", "failed"]
    reason: Optional[str] = Field(default=None, max_length=1000)


class OutcomeResponse(BaseModel):
    event_id: str
    status: str


class IPNEventSummary(BaseModel):
    id: str
    integration_id: str
    status: str
    event_type: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    sender_name: Optional[str] = None
    sender_phone: Optional[str] = None
    external_reference: Optional[str] = None
    bank_reference: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class IPNEventListResponse(BaseModel):
    events: list[IPNEventSummary]
    count: int
    limit: int


class IPNStatsResponse(BaseModel):
    today: int
    processed: int
    failed: int
    pending: int
    manual_review: int
    by_status: dict[str, int]


class IntegrationSummary(BaseModel):
    id: str
    bank_code: str
    bank_name: str
    provider_type: str
    is_active: bool
    health_status: str
    last_health_check: Optional[str] = None
