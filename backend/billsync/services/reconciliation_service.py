"""
Reconciliation sweeps — jobs agendados que corrigem drift de assinaturas.

Cada sweep:
- roda sob lease single-flight (uma execucao por vez por nome);
- seleciona candidatos com filtro no banco, nunca filtrando em memoria;
- re-aplica o mesmo filtro na linha sob o lock do dono antes de mutar;
- faz commit por linha e so entao emite notificacoes.

Rodar a mesma sweep duas vezes seguidas produz o mesmo estado final.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from billsync.core.clock import Clock, utcnow
from billsync.core.config import settings
from billsync.core.exceptions import LockNotAcquired
from billsync.core.plans import Plan
from billsync.models.subscription import CURRENT_STATUSES, Subscription, SubscriptionStatus
from billsync.models.subscription_history import HistoryChangeType
from billsync.services.idempotency_guard import IdempotencyGuard
from billsync.services.leases import AdvisoryLock, SingleFlight, subscription_lock_key
from billsync.services.notifications import (
    LoggingNotifier,
    NotificationKind,
    Notifier,
    SubscriptionNotification,
    dispatch_notifications,
)
from billsync.services.subscription_state_machine import ensure_free_subscription, ensure_transition
from billsync.services.webhook_event_service import WebhookEventService

logger = logging.getLogger(__name__)

S = SubscriptionStatus

SWEEP_EXPIRY_WARNING = "expiry_warning"
SWEEP_EXPIRE_TO_FREE = "expire_to_free"
SWEEP_ORPHAN_RECOVERY = "orphan_recovery"
SWEEP_FAILED_PAYMENT = "failed_payment_cancel"
SWEEP_WEEKLY_DIGEST = "weekly_digest"
SWEEP_FREE_PLAN_REMINDER = "free_plan_reminder"

RowAction = Callable[[AsyncSession, Subscription, datetime], Awaitable[list[SubscriptionNotification]]]


@dataclass
class SweepReport:
    name: str
    checked: int = 0
    changed: int = 0
    skipped: int = 0
    errors: int = 0
    skipped_run: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _owner_has_subscription(
    statuses: tuple[str, ...] = (S.ACTIVE.value,),
    paid_only: bool = False,
):
    """Correlated EXISTS: o dono da linha tem alguma assinatura em ``statuses``."""
    other = aliased(Subscription)
    conditions = [
        other.user_id == Subscription.user_id,
        other.status.in_(statuses),
    ]
    if paid_only:
        conditions.append(other.plan != Plan.FREE.value)
    return exists(select(other.id).where(*conditions))


class ReconciliationService:
    """
    Scheduled drift correction over Subscription rows.

    Locks sem espera: linha ocupada por um webhook e pulada e volta no
    proximo ciclo.
    """

    def __init__(
        self,
        *,
        guard: IdempotencyGuard,
        locks: AdvisoryLock,
        single_flight: SingleFlight,
        notifier: Optional[Notifier] = None,
        clock: Clock = utcnow,
        expiry_warning_days: int = 3,
        past_due_grace_days: int = 7,
    ) -> None:
        self._guard = guard
        self._locks = locks
        self._single_flight = single_flight
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock
        self._expiry_warning_days = expiry_warning_days
        self._past_due_grace_days = past_due_grace_days

    @classmethod
    def from_settings(
        cls,
        redis: Any,
        *,
        notifier: Optional[Notifier] = None,
        clock: Clock = utcnow,
    ) -> ReconciliationService:
        events = WebhookEventService.from_settings(clock=clock)
        return cls(
            guard=IdempotencyGuard.from_settings(events, clock=clock),
            locks=AdvisoryLock.from_settings(redis, wait=False),
            single_flight=SingleFlight.from_settings(redis),
            notifier=notifier,
            clock=clock,
            expiry_warning_days=settings.EXPIRY_WARNING_DAYS,
            past_due_grace_days=settings.PAST_DUE_GRACE_DAYS,
        )

    # ------------------------------------------------------------------
    # Mutating sweeps
    # ------------------------------------------------------------------

    async def send_expiry_warnings(self, db: AsyncSession) -> SweepReport:
        """Warn paid active subscriptions ending within the warning window, once per period."""
        now = self._clock()
        conditions = [
            Subscription.status == S.ACTIVE.value,
            Subscription.plan != Plan.FREE.value,
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end >= now,
            Subscription.current_period_end <= now + timedelta(days=self._expiry_warning_days),
            or_(
                Subscription.expiry_warning_period_end.is_(None),
                Subscription.expiry_warning_period_end != Subscription.current_period_end,
            ),
        ]

        async def warn(db: AsyncSession, sub: Subscription, now: datetime) -> list[SubscriptionNotification]:
            sub.expiry_warning_sent_at = now
            sub.expiry_warning_period_end = sub.current_period_end
            sub.updated_at = now
            return [
                SubscriptionNotification(
                    NotificationKind.EXPIRY_WARNING,
                    sub.user_id,
                    sub.id,
                    {
                        "plan": sub.plan,
                        "current_period_end": sub.current_period_end,
                        "cancel_at_period_end": bool(sub.cancel_at_period_end),
                    },
                )
            ]

        return await self._run(SWEEP_EXPIRY_WARNING, db, conditions, warn)

    async def expire_to_free(self, db: AsyncSession) -> SweepReport:
        """Expire paid subscriptions past their period end and fall back to free."""
        now = self._clock()
        conditions = [
            Subscription.status.in_(CURRENT_STATUSES),
            Subscription.plan != Plan.FREE.value,
            Subscription.current_period_end.isnot(None),
            Subscription.current_period_end < now,
            # cancel_at_period_end != false (NULL conta como nao-false)
            or_(
                Subscription.cancel_at_period_end.is_(None),
                Subscription.cancel_at_period_end.is_(True),
            ),
        ]

        async def expire(db: AsyncSession, sub: Subscription, now: datetime) -> list[SubscriptionNotification]:
            previous_plan = sub.plan
            ensure_transition(S(sub.status), S.EXPIRED)
            sub.status = S.EXPIRED.value
            sub.updated_at = now
            await db.flush()

            free, _ = await ensure_free_subscription(db, sub.user_id, now)
            await self._guard.record_history(
                db, free, HistoryChangeType.DOWNGRADED,
                previous_plan=previous_plan,
                new_plan=Plan.FREE.value,
                notes="Downgrade automatico para free apos expiracao da assinatura",
            )
            return [
                SubscriptionNotification(
                    NotificationKind.SUBSCRIPTION_EXPIRED,
                    sub.user_id,
                    sub.id,
                    {"previous_plan": previous_plan, "free_subscription_id": free.id},
                )
            ]

        return await self._run(SWEEP_EXPIRE_TO_FREE, db, conditions, expire)

    async def recover_orphans(self, db: AsyncSession) -> SweepReport:
        """
        Give a free subscription to users left with only expired paid rows
        and no current (active or past_due) row.

        Backstop para corridas/falhas parciais do expire-to-free e dos
        handlers de webhook.
        """
        conditions = [
            Subscription.status == S.EXPIRED.value,
            Subscription.plan != Plan.FREE.value,
            # past_due ainda e corrente: pode voltar a active via pagamento
            ~_owner_has_subscription(CURRENT_STATUSES),
        ]

        async def recover(db: AsyncSession, sub: Subscription, now: datetime) -> list[SubscriptionNotification]:
            free, created = await ensure_free_subscription(db, sub.user_id, now)
            if not created:
                return []
            await self._guard.record_history(
                db, free, HistoryChangeType.SYSTEM_RECOVERY,
                previous_plan=sub.plan,
                new_plan=Plan.FREE.value,
                notes=f"Recuperacao: assinatura {sub.id} expirada sem fallback free",
            )
            return [
                SubscriptionNotification(
                    NotificationKind.SUBSCRIPTION_RECOVERED,
                    sub.user_id,
                    free.id,
                    {"expired_subscription_id": sub.id, "previous_plan": sub.plan},
                )
            ]

        return await self._run(SWEEP_ORPHAN_RECOVERY, db, conditions, recover)

    async def cancel_failed_payments(self, db: AsyncSession) -> SweepReport:
        """Cancel subscriptions stuck in past_due beyond the grace period."""
        now = self._clock()
        conditions = [
            Subscription.status == S.PAST_DUE.value,
            Subscription.updated_at < now - timedelta(days=self._past_due_grace_days),
        ]

        async def cancel(db: AsyncSession, sub: Subscription, now: datetime) -> list[SubscriptionNotification]:
            previous_plan = sub.plan
            ensure_transition(S(sub.status), S.CANCELED)
            sub.status = S.CANCELED.value
            sub.canceled_at = now
            sub.cancel_at_period_end = False
            sub.updated_at = now
            await db.flush()

            free, _ = await ensure_free_subscription(db, sub.user_id, now)
            await self._guard.record_history(
                db, free, HistoryChangeType.CANCELED,
                previous_plan=previous_plan,
                new_plan=Plan.FREE.value,
                notes="Cancelada por falha de pagamento; downgrade para free",
            )
            return [
                SubscriptionNotification(
                    NotificationKind.SUBSCRIPTION_CANCELED,
                    sub.user_id,
                    sub.id,
                    {"previous_plan": previous_plan, "reason": "payment_failed"},
                )
            ]

        return await self._run(SWEEP_FAILED_PAYMENT, db, conditions, cancel)

    # ------------------------------------------------------------------
    # Read-only sweeps
    # ------------------------------------------------------------------

    async def send_weekly_digest(self, db: AsyncSession) -> SweepReport:
        """One digest per user with a paid active subscription."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == S.ACTIVE.value,
                Subscription.plan != Plan.FREE.value,
            )
            .order_by(Subscription.user_id, Subscription.created_at.desc())
        )

        def build(sub: Subscription, now: datetime) -> SubscriptionNotification:
            return SubscriptionNotification(
                NotificationKind.WEEKLY_DIGEST,
                sub.user_id,
                sub.id,
                {"plan": sub.plan, "current_period_end": sub.current_period_end},
            )

        return await self._notify_each_user(SWEEP_WEEKLY_DIGEST, db, stmt, build)

    async def send_free_plan_reminders(self, db: AsyncSession) -> SweepReport:
        """Upgrade reminder for users whose only active subscription is free."""
        stmt = (
            select(Subscription)
            .where(
                Subscription.status == S.ACTIVE.value,
                Subscription.plan == Plan.FREE.value,
                ~_owner_has_subscription(paid_only=True),
            )
            .order_by(Subscription.user_id, Subscription.created_at.desc())
        )

        def build(sub: Subscription, now: datetime) -> SubscriptionNotification:
            return SubscriptionNotification(
                NotificationKind.FREE_PLAN_REMINDER,
                sub.user_id,
                sub.id,
                {"days_on_free": max(0, (now - sub.created_at).days)},
            )

        return await self._notify_each_user(SWEEP_FREE_PLAN_REMINDER, db, stmt, build)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(
        self,
        name: str,
        db: AsyncSession,
        conditions: list[Any],
        action: RowAction,
    ) -> SweepReport:
        report = SweepReport(name)
        async with self._single_flight.guard(name) as acquired:
            if not acquired:
                report.skipped_run = True
                return report

            candidates = (
                await db.execute(select(Subscription.id, Subscription.user_id).where(*conditions))
            ).all()
            for sub_id, user_id in candidates:
                report.checked += 1
                await self._process_row(db, report, sub_id, user_id, conditions, action)

        logger.info("sweep_finished: %s", report.as_dict())
        return report

    async def _process_row(
        self,
        db: AsyncSession,
        report: SweepReport,
        sub_id: UUID,
        user_id: UUID,
        conditions: list[Any],
        action: RowAction,
    ) -> None:
        try:
            async with self._locks.hold(subscription_lock_key(user_id)):
                # Re-checa o filtro com a linha fresca, sob o lock
                stmt = (
                    select(Subscription)
                    .where(and_(Subscription.id == sub_id, *conditions))
                    .execution_options(populate_existing=True)
                )
                sub = (await db.execute(stmt)).scalar_one_or_none()
                if sub is None:
                    report.skipped += 1
                    return
                notifications = await action(db, sub, self._clock())
                await db.commit()
        except LockNotAcquired:
            logger.info("sweep_row_locked: sweep=%s subscription_id=%s", report.name, sub_id)
            report.skipped += 1
            return
        except Exception:
            logger.exception("sweep_row_failed: sweep=%s subscription_id=%s", report.name, sub_id)
            await db.rollback()
            report.errors += 1
            return

        if notifications:
            report.changed += 1
            await dispatch_notifications(self._notifier, notifications)
        else:
            report.skipped += 1

    async def _notify_each_user(
        self,
        name: str,
        db: AsyncSession,
        stmt: Any,
        build: Callable[[Subscription, datetime], SubscriptionNotification],
    ) -> SweepReport:
        report = SweepReport(name)
        async with self._single_flight.guard(name) as acquired:
            if not acquired:
                report.skipped_run = True
                return report

            now = self._clock()
            seen: set[UUID] = set()
            notifications: list[SubscriptionNotification] = []
            for sub in (await db.execute(stmt)).scalars().all():
                report.checked += 1
                if sub.user_id in seen:
                    report.skipped += 1
                    continue
                seen.add(sub.user_id)
                notifications.append(build(sub, now))
            report.changed = await dispatch_notifications(self._notifier, notifications)
            report.errors = len(notifications) - report.changed

        logger.info("sweep_finished: %s", report.as_dict())
        return report
