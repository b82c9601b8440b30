"""
Subscription query endpoints — plano corrente, acesso, historico, pagamentos.

Somente leitura; mutacoes vem dos webhooks e das sweeps.
"""
from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.database import get_db
from billsync.core.dependencies import get_subscription_query_service, require_admin_token
from billsync.schemas.subscription import (
    AccessResponse,
    PaymentResponse,
    SubscriptionHistoryResponse,
    SubscriptionResponse,
)
from billsync.services.subscription_query_service import SubscriptionQueryService

router = APIRouter(dependencies=[Depends(require_admin_token)])


@router.get("/{user_id}", response_model=SubscriptionResponse)
async def get_current_subscription(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
    queries: SubscriptionQueryService = Depends(get_subscription_query_service),
) -> SubscriptionResponse:
    sub = await queries.get_current_subscription(db, user_id)
    if sub is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Usuario sem assinatura corrente.",
        )
    return SubscriptionResponse.model_validate(sub)


@router.get("/{user_id}/access", response_model=AccessResponse)
async def get_access(
    user_id: UUID,
    db: AsyncSession = Depends(get_db),
    queries: SubscriptionQueryService = Depends(get_subscription_query_service),
) -> AccessResponse:
    """Features liberadas pelo plano + status correntes."""
    snapshot = await queries.get_access(db, user_id)
    sub = await queries.get_current_subscription(db, user_id)
    return AccessResponse(
        user_id=snapshot.user_id,
        plan=snapshot.plan.value,
        status=snapshot.status,
        tier=snapshot.tier.name.lower(),
        has_paid_access=snapshot.has_paid_access,
        features=snapshot.features,
        subscription=SubscriptionResponse.model_validate(sub) if sub is not None else None,
    )


@router.get("/{user_id}/history", response_model=list[SubscriptionHistoryResponse])
async def list_history(
    user_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    queries: SubscriptionQueryService = Depends(get_subscription_query_service),
) -> list[SubscriptionHistoryResponse]:
    rows = await queries.list_history(db, user_id, limit=limit)
    return [SubscriptionHistoryResponse.model_validate(row) for row in rows]


@router.get("/{user_id}/payments", response_model=list[PaymentResponse])
async def list_payments(
    user_id: UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    queries: SubscriptionQueryService = Depends(get_subscription_query_service),
) -> list[PaymentResponse]:
    rows = await queries.list_payments(db, user_id, limit=limit)
    return [PaymentResponse.model_validate(row) for row in rows]
