"""
Read side for subscriptions: plano/status correntes, features liberadas,
historico e pagamentos. Nunca muta estado.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.plans import Plan, PlanTier, features_for, parse_plan
from billsync.models.payment import Payment
from billsync.models.subscription import Subscription, SubscriptionStatus
from billsync.models.subscription_history import SubscriptionHistory
from billsync.services.subscription_state_machine import find_current_subscription


@dataclass
class AccessSnapshot:
    """What the user may use right now, derived from current plan + status."""

    user_id: UUID
    plan: Plan
    status: Optional[str]
    tier: PlanTier
    features: dict[str, Any] = field(default_factory=dict)
    has_paid_access: bool = False
    subscription_id: Optional[UUID] = None


class SubscriptionQueryService:
    async def get_current_subscription(
        self, db: AsyncSession, user_id: UUID,
    ) -> Optional[Subscription]:
        return await find_current_subscription(db, user_id)

    async def get_access(self, db: AsyncSession, user_id: UUID) -> AccessSnapshot:
        """
        Gate de acesso: so ``active`` libera o plano pago; ``past_due`` e
        ausencia de assinatura caem para as features do free.
        """
        sub = await self.get_current_subscription(db, user_id)
        plan = parse_plan(sub.plan) if sub is not None else None
        status = sub.status if sub is not None else None

        effective = plan or Plan.FREE
        if status != SubscriptionStatus.ACTIVE.value:
            effective = Plan.FREE

        return AccessSnapshot(
            user_id=user_id,
            plan=plan or Plan.FREE,
            status=status,
            tier=effective.tier,
            features=features_for(effective),
            has_paid_access=effective.is_paid,
            subscription_id=sub.id if sub is not None else None,
        )

    async def list_history(
        self, db: AsyncSession, user_id: UUID, *, limit: int = 100,
    ) -> list[SubscriptionHistory]:
        stmt = (
            select(SubscriptionHistory)
            .where(SubscriptionHistory.user_id == user_id)
            .order_by(SubscriptionHistory.created_at.desc())
            .limit(limit)
        )
        return list((await db.execute(stmt)).scalars().all())

    async def list_payments(
        self, db: AsyncSession, user_id: UUID, *, limit: int = 100,
    ) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list((await db.execute(stmt)).scalars().all())
