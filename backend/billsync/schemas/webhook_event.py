"""
Pydantic schemas for the webhook event admin API.
"""
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


# ---------------------------------------------------------------------------
# Pagination (reutilizavel)
# ---------------------------------------------------------------------------

class PaginationMeta(BaseModel):
    total: int
    page: int
    pages: int
    limit: int


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------

class WebhookEventListItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider_event_id: Optional[str]
    event_type: str
    status: str
    signature_verified: bool
    is_duplicate: bool
    retry_count: int
    max_retries: int
    next_retry_at: Optional[datetime]
    processing_time_ms: Optional[int]
    response_status: Optional[int]
    error_message: Optional[str]
    associated_customer_id: Optional[str]
    associated_user_id: Optional[UUID]
    associated_subscription_id: Optional[UUID]
    created_at: datetime


class WebhookEventDetail(WebhookEventListItem):
    method: Optional[str]
    headers: Optional[dict[str, Any]]
    raw_payload: Optional[str]
    parsed_data: Optional[dict[str, Any]]
    source_ip: Optional[str]
    user_agent: Optional[str]
    environment: Optional[str]
    provider_subscription_id: Optional[str]
    processing_started_at: Optional[datetime]
    processing_completed_at: Optional[datetime]
    updated_at: datetime


class WebhookEventListResponse(BaseModel):
    items: list[WebhookEventListItem]
    pagination: PaginationMeta


class WebhookTypeStats(BaseModel):
    event_type: str
    total: int
    by_status: dict[str, int]
    avg_processing_time_ms: Optional[float]


class WebhookStatsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    signature_verified: int
    avg_processing_time_ms: Optional[float]
    success_rate: Optional[float]
    by_type: list[WebhookTypeStats]


class WebhookWindowStats(BaseModel):
    total: int
    failed: int
    completed: int
    failure_rate: float
    avg_processing_time_ms: Optional[float]


class WebhookHealthAlert(BaseModel):
    level: str
    message: str


class WebhookHealthResponse(BaseModel):
    status: str
    checked_at: datetime
    last_hour: WebhookWindowStats
    last_24h: WebhookWindowStats
    stuck_pending: int
    stuck_processing: int = 0
    awaiting_retry: int
    retry_exhausted_24h: int
    alerts: list[WebhookHealthAlert]


class WebhookRetryResponse(BaseModel):
    id: UUID
    status: str
    status_code: int
    result: dict[str, Any]


class WebhookCleanupResponse(BaseModel):
    deleted: int
    older_than_days: int
