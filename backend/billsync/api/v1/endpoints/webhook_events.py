"""
Admin endpoints — webhook event log: listagem, detalhe, stats, saude,
retry manual e limpeza por retencao.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.database import get_db
from billsync.core.dependencies import (
    get_webhook_event_service,
    get_webhook_processor,
    require_admin_token,
)
from billsync.core.exceptions import BillingError, WebhookEventNotFound
from billsync.schemas.webhook_event import (
    PaginationMeta,
    WebhookCleanupResponse,
    WebhookEventDetail,
    WebhookEventListItem,
    WebhookEventListResponse,
    WebhookHealthResponse,
    WebhookRetryResponse,
    WebhookStatsResponse,
)
from billsync.services.webhook_event_service import WebhookEventFilters, WebhookEventService
from billsync.services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_token)])


@router.get("", response_model=WebhookEventListResponse)
async def list_webhook_events(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    event_type: Optional[str] = Query(default=None),
    event_status: Optional[str] = Query(default=None, alias="status"),
    customer_id: Optional[str] = Query(default=None),
    user_id: Optional[UUID] = Query(default=None),
    signature_verified: Optional[bool] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    sort: str = Query(default="desc", pattern="^(asc|desc)$"),
    db: AsyncSession = Depends(get_db),
    events: WebhookEventService = Depends(get_webhook_event_service),
) -> WebhookEventListResponse:
    """Paginated webhook log with optional filters."""
    filters = WebhookEventFilters(
        event_type=event_type,
        status=event_status,
        customer_id=customer_id,
        user_id=user_id,
        signature_verified=signature_verified,
        start_date=start_date,
        end_date=end_date,
    )
    items, total = await events.list_events(
        db, filters, page=page, page_size=limit, newest_first=sort == "desc",
    )
    pages = (total + limit - 1) // limit if total else 0
    return WebhookEventListResponse(
        items=[WebhookEventListItem.model_validate(item) for item in items],
        pagination=PaginationMeta(total=total, page=page, pages=pages, limit=limit),
    )


@router.get("/stats", response_model=WebhookStatsResponse)
async def webhook_stats(
    since: Optional[datetime] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    events: WebhookEventService = Depends(get_webhook_event_service),
) -> WebhookStatsResponse:
    """Counts by status/type and average processing time."""
    return WebhookStatsResponse(**await events.get_stats(db, since=since))


@router.get("/health", response_model=WebhookHealthResponse)
async def webhook_health(
    db: AsyncSession = Depends(get_db),
    events: WebhookEventService = Depends(get_webhook_event_service),
) -> WebhookHealthResponse:
    return WebhookHealthResponse(**await events.get_health(db))


@router.delete("", response_model=WebhookCleanupResponse)
async def cleanup_webhook_events(
    older_than_days: int = Query(..., ge=1),
    db: AsyncSession = Depends(get_db),
    events: WebhookEventService = Depends(get_webhook_event_service),
) -> WebhookCleanupResponse:
    """Delete completed/ignored rows older than ``older_than_days``."""
    deleted = await events.cleanup_older_than(db, older_than_days)
    await db.commit()
    logger.info("Admin webhook cleanup: older_than_days=%s deleted=%s", older_than_days, deleted)
    return WebhookCleanupResponse(deleted=deleted, older_than_days=older_than_days)


@router.get("/{event_id}", response_model=WebhookEventDetail)
async def get_webhook_event(
    event_id: UUID,
    db: AsyncSession = Depends(get_db),
    events: WebhookEventService = Depends(get_webhook_event_service),
) -> WebhookEventDetail:
    try:
        event = await events.get_event(db, event_id)
    except WebhookEventNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.detail) from exc
    return WebhookEventDetail.model_validate(event)


@router.post("/{event_id}/retry", response_model=WebhookRetryResponse)
async def retry_webhook_event(
    event_id: UUID,
    db: AsyncSession = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
    events: WebhookEventService = Depends(get_webhook_event_service),
) -> WebhookRetryResponse:
    """Reprocess a failed or pending event from its stored payload."""
    try:
        outcome = await processor.manual_retry(db, event_id)
    except WebhookEventNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.detail) from exc
    except BillingError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.detail) from exc

    event = await events.get_event(db, event_id)
    return WebhookRetryResponse(
        id=event.id,
        status=event.status,
        status_code=outcome.status_code,
        result=outcome.body,
    )
