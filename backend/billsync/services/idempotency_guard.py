"""
Idempotency guard — impede efeitos duplicados de eventos reentregues.

Tres niveis:
- evento: um ``provider_event_id`` ja ``completed`` nao e reprocessado;
- historico: uma linha por (subscription_id, change_type, provider_event_id),
  e no maximo uma por (subscription_id, change_type) dentro da janela de
  dedupe (first write wins);
- pagamento: uma linha por invoice; ``paid`` sobrescreve ``failed``/``pending``,
  nunca o contrario.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.clock import Clock, utcnow
from billsync.core.config import settings
from billsync.models.payment import Payment, PaymentStatus
from billsync.models.subscription import Subscription
from billsync.models.subscription_history import HistoryChangeType, SubscriptionHistory
from billsync.models.webhook_event import WebhookEvent
from billsync.services.webhook_event_service import WebhookEventService

logger = logging.getLogger(__name__)

_PAYMENT_RANK = {
    PaymentStatus.PENDING.value: 0,
    PaymentStatus.FAILED.value: 1,
    PaymentStatus.PAID.value: 2,
}


class IdempotencyGuard:
    """Duplicate-suppression checks shared by handlers and sweeps."""

    def __init__(
        self,
        events: WebhookEventService,
        *,
        dedup_window_seconds: int = 60,
        clock: Clock = utcnow,
    ) -> None:
        self._events = events
        self._window = timedelta(seconds=dedup_window_seconds)
        self._clock = clock

    @classmethod
    def from_settings(cls, events: WebhookEventService, clock: Clock = utcnow) -> IdempotencyGuard:
        return cls(
            events,
            dedup_window_seconds=settings.HISTORY_DEDUP_WINDOW_SECONDS,
            clock=clock,
        )

    async def already_processed(
        self,
        db: AsyncSession,
        provider_event_id: Optional[str],
        *,
        exclude_id: Optional[UUID] = None,
    ) -> Optional[WebhookEvent]:
        """Completed twin of this logical event, if any."""
        return await self._events.find_duplicate(db, provider_event_id, exclude_id=exclude_id)

    async def record_history(
        self,
        db: AsyncSession,
        subscription: Subscription,
        change_type: HistoryChangeType,
        *,
        previous_plan: Optional[str],
        new_plan: Optional[str],
        notes: Optional[str] = None,
        provider_event_id: Optional[str] = None,
        effective_date: Optional[datetime] = None,
    ) -> Optional[SubscriptionHistory]:
        """
        Append a history row unless an equivalent one already exists.

        Equivalente: mesmo (subscription_id, change_type) e o mesmo
        ``provider_event_id`` em qualquer momento, ou qualquer linha dentro
        da janela de dedupe.

        Returns:
            A linha criada, ou None quando o insert foi suprimido.
        """
        now = self._clock()
        await db.flush()
        same_entry = SubscriptionHistory.created_at >= now - self._window
        if provider_event_id:
            # reentrega apos commit do handler cai fora da janela
            same_entry = or_(same_entry, SubscriptionHistory.provider_event_id == provider_event_id)
        stmt = (
            select(SubscriptionHistory.id)
            .where(
                SubscriptionHistory.subscription_id == subscription.id,
                SubscriptionHistory.change_type == change_type.value,
                same_entry,
            )
            .limit(1)
        )
        existing = (await db.execute(stmt)).scalar_one_or_none()
        if existing is not None:
            logger.info(
                "history_dedup_skip: subscription_id=%s change_type=%s existing=%s",
                subscription.id, change_type.value, existing,
            )
            return None

        entry = SubscriptionHistory(
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            change_type=change_type.value,
            previous_plan=previous_plan,
            new_plan=new_plan,
            effective_date=effective_date or now,
            notes=notes,
            provider_event_id=provider_event_id,
            created_at=now,
        )
        db.add(entry)
        await db.flush()
        return entry

    async def upsert_payment(
        self,
        db: AsyncSession,
        *,
        invoice_id: str,
        user_id: UUID,
        subscription_id: Optional[UUID],
        status: PaymentStatus,
        amount_cents: int = 0,
        currency: str = "usd",
        payment_intent_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        receipt_url: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Payment:
        """Insert or update the single Payment row for ``invoice_id``."""
        now = self._clock()
        stmt = select(Payment).where(Payment.provider_invoice_id == invoice_id)
        payment = (await db.execute(stmt)).scalar_one_or_none()

        if payment is None:
            payment = Payment(
                provider_invoice_id=invoice_id,
                user_id=user_id,
                subscription_id=subscription_id,
                status=status.value,
                amount_cents=amount_cents,
                currency=currency,
                provider_payment_intent_id=payment_intent_id,
                period_start=period_start,
                period_end=period_end,
                receipt_url=receipt_url,
                failure_reason=failure_reason,
                paid_at=now if status == PaymentStatus.PAID else None,
                created_at=now,
                updated_at=now,
            )
            db.add(payment)
            await db.flush()
            return payment

        if _PAYMENT_RANK[status.value] < _PAYMENT_RANK.get(payment.status, 0):
            logger.info(
                "payment_status_kept: invoice=%s current=%s incoming=%s",
                invoice_id, payment.status, status.value,
            )
            return payment

        payment.status = status.value
        payment.amount_cents = amount_cents or payment.amount_cents
        payment.currency = currency or payment.currency
        payment.provider_payment_intent_id = payment_intent_id or payment.provider_payment_intent_id
        payment.subscription_id = subscription_id or payment.subscription_id
        payment.period_start = period_start or payment.period_start
        payment.period_end = period_end or payment.period_end
        payment.receipt_url = receipt_url or payment.receipt_url
        if status == PaymentStatus.PAID:
            payment.failure_reason = None
            payment.paid_at = payment.paid_at or now
        else:
            payment.failure_reason = failure_reason or payment.failure_reason
        payment.updated_at = now
        await db.flush()
        return payment
