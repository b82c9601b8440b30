"""
Pydantic schemas for the subscription query API.
"""
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    plan: str
    status: str
    provider_customer_id: Optional[str]
    provider_subscription_id: Optional[str]
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    cancel_at_period_end: Optional[bool]
    canceled_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class AccessResponse(BaseModel):
    user_id: UUID
    plan: str
    status: Optional[str]
    tier: str
    has_paid_access: bool
    features: dict[str, Any]
    subscription: Optional[SubscriptionResponse] = None


class SubscriptionHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    change_type: str
    previous_plan: Optional[str]
    new_plan: Optional[str]
    effective_date: datetime
    notes: Optional[str]
    provider_event_id: Optional[str]
    created_at: datetime


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: Optional[UUID]
    provider_invoice_id: str
    amount_cents: int
    currency: str
    status: str
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    receipt_url: Optional[str]
    failure_reason: Optional[str]
    paid_at: Optional[datetime]
    created_at: datetime
