"""
Subscription state machine — aplica eventos do provedor na Subscription.

Status (ciclo de vida) e plano (tier + intervalo) sao eixos independentes.
Regras:
- transicoes de status seguem ALLOWED_TRANSITIONS; canceled/expired so voltam
  a active via evento de nova assinatura (checkout ou subscription.created);
- mudancas de plano sao classificadas (upgraded/downgraded/billing_changed)
  e gravadas no historico, nunca usadas como gate de acesso;
- o periodo e sempre recalculado pelo intervalo do plano (30/365 dias),
  nunca copiado do payload;
- eventos que chegam antes do checkout materializam a assinatura sob demanda.

Cada handler segura o lock do dono da assinatura, faz commit das escritas de
negocio antes de soltar o lock e devolve um HandlerResult.
"""
from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.clock import Clock, utcnow
from billsync.core.config import settings
from billsync.core.exceptions import (
    InvalidStatusTransition,
    PermanentHandlerFailure,
    ProviderNotConfiguredError,
    TransientHandlerFailure,
)
from billsync.core.plans import Plan, PlanChange, classify_plan_change, parse_plan, period_end_for
from billsync.models.payment import PaymentStatus
from billsync.models.subscription import CURRENT_STATUSES, Subscription, SubscriptionStatus
from billsync.models.subscription_history import HistoryChangeType
from billsync.models.user import User
from billsync.models.webhook_event import WebhookEvent
from billsync.services.billing_provider import BillingProviderClient
from billsync.services.event_router import BillingEventType, HandlerResult, Ok, Permanent, Retryable
from billsync.services.idempotency_guard import IdempotencyGuard
from billsync.services.leases import AdvisoryLock, subscription_lock_key
from billsync.services.notifications import NotificationKind, SubscriptionNotification
from billsync.services.signature_verifier import VerifiedEvent

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED, S.EXPIRED}),
    # past_due -> expired: a sweep expire-to-free tambem seleciona past_due
    S.PAST_DUE: frozenset({S.ACTIVE, S.CANCELED, S.EXPIRED}),
    S.INCOMPLETE: frozenset({S.ACTIVE, S.INCOMPLETE_EXPIRED, S.CANCELED}),
    S.CANCELED: frozenset(),
    S.EXPIRED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}

# Terminais que so voltam a active via evento de nova assinatura
REACTIVATABLE = frozenset({S.CANCELED, S.EXPIRED, S.INCOMPLETE_EXPIRED})

PROVIDER_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": S.ACTIVE,
    "trialing": S.ACTIVE,
    "past_due": S.PAST_DUE,
    "unpaid": S.PAST_DUE,
    "paused": S.PAST_DUE,
    "canceled": S.CANCELED,
    "incomplete": S.INCOMPLETE,
    "incomplete_expired": S.INCOMPLETE_EXPIRED,
}

NEW_SUBSCRIPTION_EVENTS = frozenset({
    BillingEventType.CHECKOUT_COMPLETED.value,
    BillingEventType.SUBSCRIPTION_CREATED.value,
})


def can_transition(
    before: SubscriptionStatus,
    after: SubscriptionStatus,
    *,
    via_new_subscription: bool = False,
) -> bool:
    """True if ``before -> after`` is allowed (same status is a no-op)."""
    if before == after:
        return True
    if after in ALLOWED_TRANSITIONS[before]:
        return True
    return via_new_subscription and before in REACTIVATABLE and after == S.ACTIVE


def ensure_transition(
    before: SubscriptionStatus,
    after: SubscriptionStatus,
    *,
    via_new_subscription: bool = False,
) -> None:
    """
    Raises:
        InvalidStatusTransition: se a transicao nao e permitida.
    """
    if not can_transition(before, after, via_new_subscription=via_new_subscription):
        raise InvalidStatusTransition(before.value, after.value)


def map_provider_status(raw: Optional[str]) -> SubscriptionStatus:
    status = PROVIDER_STATUS_MAP.get(raw or "")
    if status is None:
        raise PermanentHandlerFailure(
            f"Status de assinatura desconhecido: {raw}",
            code="unknown_provider_status",
        )
    return status


async def find_current_subscription(db: AsyncSession, user_id: UUID) -> Optional[Subscription]:
    """Newest active/past_due subscription of the user."""
    stmt = (
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(CURRENT_STATUSES),
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def ensure_free_subscription(
    db: AsyncSession,
    user_id: UUID,
    now: datetime,
) -> tuple[Subscription, bool]:
    """
    Return the user's active subscription, creating a free one if none exists.

    Returns:
        (assinatura, criada_agora)
    """
    stmt = (
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == S.ACTIVE.value,
        )
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )
    existing = (await db.execute(stmt)).scalar_one_or_none()
    if existing is not None:
        return existing, False

    free = Subscription(
        user_id=user_id,
        plan=Plan.FREE.value,
        status=S.ACTIVE.value,
        current_period_start=now,
        current_period_end=period_end_for(Plan.FREE, now),
        cancel_at_period_end=False,
        created_at=now,
        updated_at=now,
    )
    db.add(free)
    await db.flush()
    logger.info("free_subscription_created: user_id=%s subscription_id=%s", user_id, free.id)
    return free, True


def _tagged(
    func: Callable[..., Awaitable[HandlerResult]],
) -> Callable[..., Awaitable[HandlerResult]]:
    """Converte falhas classificadas do handler em resultado tagueado."""

    @functools.wraps(func)
    async def wrapper(
        self: SubscriptionStateMachine,
        db: AsyncSession,
        event: VerifiedEvent,
        log: WebhookEvent,
    ) -> HandlerResult:
        try:
            return await func(self, db, event, log)
        except PermanentHandlerFailure as exc:
            return Permanent(exc)
        except TransientHandlerFailure as exc:
            return Retryable(exc)

    return wrapper


def _price_ids(items: Any) -> list[str]:
    """Price ids from a Stripe list object (subscription items or invoice lines)."""
    prices: list[str] = []
    for item in (items or {}).get("data") or []:
        price = item.get("price")
        if isinstance(price, dict) and price.get("id"):
            prices.append(price["id"])
        elif isinstance(price, str):
            prices.append(price)
        details = (item.get("pricing") or {}).get("price_details") or {}
        if details.get("price"):
            prices.append(details["price"])
    return prices


def _metadata(data: dict[str, Any]) -> dict[str, Any]:
    meta = data.get("metadata") or {}
    if not meta:
        meta = (data.get("subscription_details") or {}).get("metadata") or {}
    return meta


def _ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), UTC).replace(tzinfo=None)


class SubscriptionStateMachine:
    """
    Owns every write to Subscription rows triggered by provider events.
    """

    def __init__(
        self,
        *,
        guard: IdempotencyGuard,
        locks: AdvisoryLock,
        provider: Optional[BillingProviderClient] = None,
        price_to_plan: Optional[Mapping[str, str]] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._guard = guard
        self._locks = locks
        self._provider = provider
        self._price_to_plan = dict(price_to_plan or {})
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        *,
        guard: IdempotencyGuard,
        locks: AdvisoryLock,
        provider: Optional[BillingProviderClient] = None,
        clock: Clock = utcnow,
    ) -> SubscriptionStateMachine:
        return cls(
            guard=guard,
            locks=locks,
            provider=provider,
            price_to_plan=settings.price_to_plan,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    @_tagged
    async def handle_checkout_completed(
        self, db: AsyncSession, event: VerifiedEvent, log: WebhookEvent,
    ) -> HandlerResult:
        """checkout.session.completed — cria ou ativa a assinatura paga."""
        data = event.data_object
        if data.get("mode") != "subscription":
            return Ok(note="checkout sem modo subscription")

        metadata = _metadata(data)
        plan = parse_plan(metadata.get("plan"))
        if plan is None:
            raise PermanentHandlerFailure(
                f"Checkout sem plano valido no metadata: {metadata.get('plan')}",
                code="invalid_plan",
            )

        customer_id = data.get("customer")
        provider_sub_id = data.get("subscription")
        user = await self._resolve_user(db, metadata=metadata, customer_id=customer_id)
        log.associated_user_id = user.id
        now = self._clock()

        async with self._locks.hold(subscription_lock_key(user.id)):
            sub = await self._find_by_provider_id(db, provider_sub_id)
            if sub is None:
                sub, _ = await self._upsert_for_user(
                    db, user.id, plan, S.ACTIVE,
                    provider_sub_id=provider_sub_id,
                    customer_id=customer_id,
                    now=now,
                    event=event,
                )
            else:
                await self._apply_plan(db, sub, plan, now, event)
            await self._activate(db, sub, now, event, via_new_subscription=True)
            self._link_customer(user, sub, customer_id)
            self._associate(log, sub)
            await db.commit()

        logger.info(
            "checkout_completed: user_id=%s subscription_id=%s plan=%s",
            user.id, sub.id, plan.value,
        )
        return Ok([
            SubscriptionNotification(
                NotificationKind.SUBSCRIPTION_ACTIVATED,
                user.id,
                sub.id,
                {"plan": sub.plan},
            )
        ])

    @_tagged
    async def handle_subscription_upserted(
        self, db: AsyncSession, event: VerifiedEvent, log: WebhookEvent,
    ) -> HandlerResult:
        """customer.subscription.created/updated — sincroniza status e plano."""
        data = event.data_object
        provider_sub_id = data.get("id")
        if not provider_sub_id:
            raise PermanentHandlerFailure("Evento de assinatura sem id.", code="malformed_event")

        target = map_provider_status(data.get("status"))
        plan = self._plan_from_subscription_payload(data)
        customer_id = data.get("customer")
        via_new = event.type in NEW_SUBSCRIPTION_EVENTS

        user_id = await self._owner_for(db, provider_sub_id, data, customer_id)
        log.associated_user_id = user_id
        now = self._clock()
        notifications: list[SubscriptionNotification] = []

        async with self._locks.hold(subscription_lock_key(user_id)):
            sub = await self._find_by_provider_id(db, provider_sub_id)
            created = False
            if sub is None:
                sub, created = await self._upsert_for_user(
                    db, user_id, plan, target,
                    provider_sub_id=provider_sub_id,
                    customer_id=customer_id,
                    now=now,
                    event=event,
                )
            self._associate(log, sub)

            current = S(sub.status)
            if not created and current in REACTIVATABLE and not (via_new and target == S.ACTIVE):
                logger.warning(
                    "stale_subscription_event: subscription_id=%s status=%s incoming=%s event_id=%s",
                    sub.id, current.value, target.value, event.id,
                )
                await db.commit()
                return Ok(note="assinatura encerrada; evento obsoleto")

            if not created:
                await self._apply_plan(db, sub, plan, now, event)
                if target == S.ACTIVE:
                    await self._activate(db, sub, now, event, via_new_subscription=via_new)
                elif target == S.CANCELED:
                    notifications.extend(await self._cancel(db, sub, now, event))
                else:
                    self._apply_status(sub, target, now, event)

            cancel_flag = bool(data.get("cancel_at_period_end"))
            if sub.cancel_at_period_end != cancel_flag:
                sub.cancel_at_period_end = cancel_flag
                sub.updated_at = now
            await db.commit()

        return Ok(notifications)

    @_tagged
    async def handle_subscription_deleted(
        self, db: AsyncSession, event: VerifiedEvent, log: WebhookEvent,
    ) -> HandlerResult:
        """customer.subscription.deleted — cancela e garante fallback free."""
        data = event.data_object
        provider_sub_id = data.get("id")
        sub = await self._find_by_provider_id(db, provider_sub_id)
        if sub is None:
            logger.info("subscription_deleted_unknown: provider_subscription_id=%s", provider_sub_id)
            return Ok(note="assinatura desconhecida")

        user_id = sub.user_id
        log.associated_user_id = user_id
        now = self._clock()
        async with self._locks.hold(subscription_lock_key(user_id)):
            sub = await self._find_by_provider_id(db, provider_sub_id)
            self._associate(log, sub)
            notifications = await self._cancel(db, sub, now, event)
            await db.commit()
        return Ok(notifications)

    @_tagged
    async def handle_payment_succeeded(
        self, db: AsyncSession, event: VerifiedEvent, log: WebhookEvent,
    ) -> HandlerResult:
        """invoice.payment_succeeded — ativa, renova periodo, registra pagamento."""
        data = event.data_object
        provider_sub_id = data.get("subscription")
        if not provider_sub_id:
            return Ok(note="invoice sem assinatura")
        invoice_id = self._require_invoice_id(data)
        customer_id = data.get("customer")

        user_id = await self._owner_for(db, provider_sub_id, data, customer_id)
        log.associated_user_id = user_id
        now = self._clock()

        async with self._locks.hold(subscription_lock_key(user_id)):
            sub = await self._find_by_provider_id(db, provider_sub_id)
            if sub is None:
                plan = await self._plan_for_invoice(data, provider_sub_id)
                sub, _ = await self._upsert_for_user(
                    db, user_id, plan, S.ACTIVE,
                    provider_sub_id=provider_sub_id,
                    customer_id=customer_id,
                    now=now,
                    event=event,
                )
            self._associate(log, sub)

            if S(sub.status) != S.ACTIVE:
                await self._activate(db, sub, now, event, via_new_subscription=False)
            if sub.status == S.ACTIVE.value:
                self._refresh_period(sub, now)

            await self._guard.upsert_payment(
                db,
                invoice_id=invoice_id,
                user_id=user_id,
                subscription_id=sub.id,
                status=PaymentStatus.PAID,
                amount_cents=int(data.get("amount_paid") or 0),
                currency=data.get("currency") or "usd",
                payment_intent_id=data.get("payment_intent"),
                period_start=sub.current_period_start,
                period_end=sub.current_period_end,
                receipt_url=data.get("hosted_invoice_url"),
            )
            await db.commit()

        return Ok([
            SubscriptionNotification(
                NotificationKind.PAYMENT_SUCCEEDED,
                user_id,
                sub.id,
                {
                    "invoice_id": invoice_id,
                    "amount_cents": int(data.get("amount_paid") or 0),
                    "currency": data.get("currency") or "usd",
                },
            )
        ])

    @_tagged
    async def handle_payment_failed(
        self, db: AsyncSession, event: VerifiedEvent, log: WebhookEvent,
    ) -> HandlerResult:
        """invoice.payment_failed — marca past_due e registra a falha."""
        data = event.data_object
        provider_sub_id = data.get("subscription")
        if not provider_sub_id:
            return Ok(note="invoice sem assinatura")
        invoice_id = self._require_invoice_id(data)
        customer_id = data.get("customer")

        user_id = await self._owner_for(db, provider_sub_id, data, customer_id)
        log.associated_user_id = user_id
        now = self._clock()

        async with self._locks.hold(subscription_lock_key(user_id)):
            sub = await self._find_by_provider_id(db, provider_sub_id)
            if sub is None:
                plan = await self._plan_for_invoice(data, provider_sub_id)
                sub, _ = await self._upsert_for_user(
                    db, user_id, plan, S.PAST_DUE,
                    provider_sub_id=provider_sub_id,
                    customer_id=customer_id,
                    now=now,
                    event=event,
                )
            self._associate(log, sub)
            self._apply_status(sub, S.PAST_DUE, now, event)

            failure = (data.get("last_finalization_error") or {}).get("message")
            await self._guard.upsert_payment(
                db,
                invoice_id=invoice_id,
                user_id=user_id,
                subscription_id=sub.id,
                status=PaymentStatus.FAILED,
                amount_cents=int(data.get("amount_due") or 0),
                currency=data.get("currency") or "usd",
                payment_intent_id=data.get("payment_intent"),
                failure_reason=failure or f"attempt_count={data.get('attempt_count')}",
            )
            await self._guard.record_history(
                db, sub, HistoryChangeType.PAYMENT_FAILED,
                previous_plan=sub.plan,
                new_plan=sub.plan,
                notes=f"Falha no pagamento da invoice {invoice_id}",
                provider_event_id=event.id,
            )
            await db.commit()

        return Ok([
            SubscriptionNotification(
                NotificationKind.PAYMENT_FAILED,
                user_id,
                sub.id,
                {
                    "invoice_id": invoice_id,
                    "attempt_count": data.get("attempt_count"),
                    "next_payment_attempt": _ts(data.get("next_payment_attempt")),
                },
            )
        ])

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _apply_status(
        self,
        sub: Subscription,
        target: SubscriptionStatus,
        now: datetime,
        event: Optional[VerifiedEvent] = None,
        *,
        via_new_subscription: bool = False,
    ) -> bool:
        """
        Move ``sub`` to ``target`` if allowed.

        Transicao invalida (evento fora de ordem) e registrada e ignorada.
        Returns True se o status mudou.
        """
        current = S(sub.status)
        if current == target:
            return False
        try:
            ensure_transition(current, target, via_new_subscription=via_new_subscription)
        except InvalidStatusTransition as exc:
            logger.warning(
                "status_transition_skipped: subscription_id=%s %s event_id=%s",
                sub.id, exc.detail, event.id if event else None,
            )
            return False
        sub.status = target.value
        sub.updated_at = now
        return True

    async def _activate(
        self,
        db: AsyncSession,
        sub: Subscription,
        now: datetime,
        event: VerifiedEvent,
        *,
        via_new_subscription: bool,
    ) -> None:
        previous = S(sub.status)
        if not self._apply_status(sub, S.ACTIVE, now, event, via_new_subscription=via_new_subscription):
            return
        self._refresh_period(sub, now)
        sub.canceled_at = None
        # no maximo uma assinatura corrente por usuario
        await self._retire_other_current(db, sub, now, event)
        if previous != S.INCOMPLETE:
            await self._guard.record_history(
                db, sub, HistoryChangeType.REACTIVATED,
                previous_plan=sub.plan,
                new_plan=sub.plan,
                notes=f"Reativada a partir de {previous.value}",
                provider_event_id=event.id,
            )

    async def _retire_other_current(
        self,
        db: AsyncSession,
        keep: Subscription,
        now: datetime,
        event: VerifiedEvent,
    ) -> None:
        """Cancel the user's other current rows (ex.: fallback free) on activation."""
        stmt = select(Subscription).where(
            Subscription.user_id == keep.user_id,
            Subscription.id != keep.id,
            Subscription.status.in_(CURRENT_STATUSES),
        )
        for other in (await db.execute(stmt)).scalars().all():
            if not self._apply_status(other, S.CANCELED, now, event):
                continue
            other.canceled_at = now
            await self._guard.record_history(
                db, other, HistoryChangeType.CANCELED,
                previous_plan=other.plan,
                new_plan=keep.plan,
                notes=f"Substituida pela assinatura reativada {keep.id}",
                provider_event_id=event.id,
            )

    async def _cancel(
        self,
        db: AsyncSession,
        sub: Subscription,
        now: datetime,
        event: VerifiedEvent,
    ) -> list[SubscriptionNotification]:
        previous_plan = sub.plan
        notifications: list[SubscriptionNotification] = []
        if self._apply_status(sub, S.CANCELED, now, event):
            sub.canceled_at = now
            sub.cancel_at_period_end = False
            await self._guard.record_history(
                db, sub, HistoryChangeType.CANCELED,
                previous_plan=previous_plan,
                new_plan=Plan.FREE.value,
                notes="Cancelada pelo provedor",
                provider_event_id=event.id,
            )
            notifications.append(
                SubscriptionNotification(
                    NotificationKind.SUBSCRIPTION_CANCELED,
                    sub.user_id,
                    sub.id,
                    {"previous_plan": previous_plan},
                )
            )
        if S(sub.status) != S.ACTIVE:
            await ensure_free_subscription(db, sub.user_id, now)
        return notifications

    async def _apply_plan(
        self,
        db: AsyncSession,
        sub: Subscription,
        plan: Optional[Plan],
        now: datetime,
        event: VerifiedEvent,
    ) -> PlanChange:
        if plan is None:
            return PlanChange.NO_CHANGE
        previous = parse_plan(sub.plan)
        change = classify_plan_change(previous, plan)
        if change == PlanChange.NO_CHANGE:
            return change
        sub.plan = plan.value
        sub.updated_at = now
        self._refresh_period(sub, now)
        await self._guard.record_history(
            db, sub, HistoryChangeType(change.value),
            previous_plan=previous.value if previous else None,
            new_plan=plan.value,
            provider_event_id=event.id,
        )
        return change

    async def _upsert_for_user(
        self,
        db: AsyncSession,
        user_id: UUID,
        plan: Optional[Plan],
        status: SubscriptionStatus,
        *,
        provider_sub_id: Optional[str],
        customer_id: Optional[str],
        now: datetime,
        event: VerifiedEvent,
    ) -> tuple[Subscription, bool]:
        """
        Attach the provider subscription to the user's current row, or
        materialize a new one when the user has none.

        Raises:
            PermanentHandlerFailure: criacao necessaria mas plano desconhecido.
        """
        current = await find_current_subscription(db, user_id)
        if current is not None:
            current.provider_subscription_id = provider_sub_id or current.provider_subscription_id
            current.provider_customer_id = customer_id or current.provider_customer_id
            current.updated_at = now
            await self._apply_plan(db, current, plan, now, event)
            return current, False

        if plan is None:
            raise PermanentHandlerFailure(
                f"Price da assinatura {provider_sub_id} nao mapeado para plano.",
                code="unknown_price",
            )
        sub = Subscription(
            user_id=user_id,
            plan=plan.value,
            status=status.value,
            provider_customer_id=customer_id,
            provider_subscription_id=provider_sub_id,
            current_period_start=now,
            current_period_end=period_end_for(plan, now),
            cancel_at_period_end=False,
            created_at=now,
            updated_at=now,
        )
        db.add(sub)
        await db.flush()
        await self._guard.record_history(
            db, sub, HistoryChangeType.CREATED,
            previous_plan=None,
            new_plan=plan.value,
            notes=f"Criada via {event.type}",
            provider_event_id=event.id,
        )
        logger.info(
            "subscription_materialized: user_id=%s subscription_id=%s plan=%s status=%s",
            user_id, sub.id, plan.value, status.value,
        )
        return sub, True

    @staticmethod
    def _refresh_period(sub: Subscription, now: datetime) -> None:
        plan = parse_plan(sub.plan) or Plan.FREE
        sub.current_period_start = now
        sub.current_period_end = period_end_for(plan, now)
        sub.updated_at = now

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _find_by_provider_id(
        self, db: AsyncSession, provider_sub_id: Optional[str],
    ) -> Optional[Subscription]:
        if not provider_sub_id:
            return None
        stmt = (
            select(Subscription)
            .where(Subscription.provider_subscription_id == provider_sub_id)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _owner_for(
        self,
        db: AsyncSession,
        provider_sub_id: str,
        data: dict[str, Any],
        customer_id: Optional[str],
    ) -> UUID:
        sub = await self._find_by_provider_id(db, provider_sub_id)
        if sub is not None:
            return sub.user_id
        user = await self._resolve_user(db, metadata=_metadata(data), customer_id=customer_id)
        return user.id

    async def _resolve_user(
        self,
        db: AsyncSession,
        *,
        metadata: dict[str, Any],
        customer_id: Optional[str],
    ) -> User:
        """
        Link an event to a user: metadata userId, then stored customer id,
        then the provider's customer record.

        Raises:
            PermanentHandlerFailure: nenhum vinculo encontrado.
        """
        user = await self._get_user(db, metadata.get("userId") or metadata.get("user_id"))
        if user is None and customer_id:
            stmt = select(User).where(User.provider_customer_id == customer_id)
            user = (await db.execute(stmt)).scalar_one_or_none()
        if user is None and customer_id and self._provider is not None:
            user = await self._user_from_provider(db, customer_id)
        if user is None:
            raise PermanentHandlerFailure(
                f"Nao foi possivel vincular o evento a um usuario (customer={customer_id}).",
                code="unresolvable_user",
            )
        if customer_id and not user.provider_customer_id:
            user.provider_customer_id = customer_id
        return user

    async def _user_from_provider(self, db: AsyncSession, customer_id: str) -> Optional[User]:
        try:
            customer = await self._provider.retrieve_customer(customer_id)
        except ProviderNotConfiguredError:
            logger.warning("customer_lookup_skipped: Stripe nao configurado (customer=%s)", customer_id)
            return None
        meta = customer.get("metadata") or {}
        user = await self._get_user(db, meta.get("userId") or meta.get("user_id"))
        if user is None and customer.get("email"):
            stmt = select(User).where(User.email == customer["email"])
            user = (await db.execute(stmt)).scalar_one_or_none()
        return user

    @staticmethod
    async def _get_user(db: AsyncSession, raw_user_id: Any) -> Optional[User]:
        if not raw_user_id:
            return None
        try:
            user_id = UUID(str(raw_user_id))
        except ValueError:
            return None
        return await db.get(User, user_id)

    def _plan_from_subscription_payload(self, data: dict[str, Any]) -> Optional[Plan]:
        """Plan from item prices, then metadata; None if unmapped."""
        plan = self._plan_from_prices(_price_ids(data.get("items")))
        if plan is None:
            plan = parse_plan(_metadata(data).get("plan"))
        return plan

    async def _plan_for_invoice(self, data: dict[str, Any], provider_sub_id: str) -> Plan:
        plan = self._plan_from_prices(_price_ids(data.get("lines")))
        if plan is None and self._provider is not None:
            try:
                remote = await self._provider.retrieve_subscription(provider_sub_id)
            except ProviderNotConfiguredError:
                remote = None
            if remote:
                plan = self._plan_from_prices(_price_ids(remote.get("items")))
        if plan is None:
            raise PermanentHandlerFailure(
                f"Invoice {data.get('id')} sem price mapeado para plano.",
                code="unknown_price",
            )
        return plan

    def _plan_from_prices(self, price_ids: list[str]) -> Optional[Plan]:
        for price_id in price_ids:
            plan = parse_plan(self._price_to_plan.get(price_id))
            if plan is not None:
                return plan
        return None

    @staticmethod
    def _require_invoice_id(data: dict[str, Any]) -> str:
        invoice_id = data.get("id")
        if not invoice_id:
            raise PermanentHandlerFailure("Invoice sem id.", code="malformed_event")
        return str(invoice_id)

    @staticmethod
    def _link_customer(user: User, sub: Subscription, customer_id: Optional[str]) -> None:
        if not customer_id:
            return
        sub.provider_customer_id = customer_id
        if not user.provider_customer_id:
            user.provider_customer_id = customer_id

    @staticmethod
    def _associate(log: WebhookEvent, sub: Subscription) -> None:
        log.associated_subscription_id = sub.id
        log.associated_user_id = sub.user_id
        if sub.provider_customer_id and not log.associated_customer_id:
            log.associated_customer_id = sub.provider_customer_id
