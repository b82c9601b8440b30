"""
Event router — mapeia o tipo do evento verificado para o handler.

Handlers devolvem um resultado tagueado (Ok | Retryable | Permanent) para que
o processor trate falhas de forma uniforme.
"""
from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.exceptions import UnknownEventType
from billsync.models.webhook_event import WebhookEvent
from billsync.services.notifications import SubscriptionNotification
from billsync.services.signature_verifier import VerifiedEvent

if TYPE_CHECKING:
    from billsync.services.subscription_state_machine import SubscriptionStateMachine


class BillingEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"


@dataclass
class Ok:
    notifications: list[SubscriptionNotification] = field(default_factory=list)
    note: Optional[str] = None


@dataclass
class Retryable:
    error: Exception


@dataclass
class Permanent:
    error: Exception


HandlerResult = Union[Ok, Retryable, Permanent]
Handler = Callable[[AsyncSession, VerifiedEvent, WebhookEvent], Awaitable[HandlerResult]]


class EventRouter:
    """Pure ``type -> handler`` mapping."""

    def __init__(self, handlers: Mapping[str, Handler]) -> None:
        self._handlers = dict(handlers)

    @classmethod
    def for_state_machine(cls, machine: SubscriptionStateMachine) -> EventRouter:
        return cls({
            BillingEventType.CHECKOUT_COMPLETED.value: machine.handle_checkout_completed,
            BillingEventType.SUBSCRIPTION_CREATED.value: machine.handle_subscription_upserted,
            BillingEventType.SUBSCRIPTION_UPDATED.value: machine.handle_subscription_upserted,
            BillingEventType.SUBSCRIPTION_DELETED.value: machine.handle_subscription_deleted,
            BillingEventType.PAYMENT_SUCCEEDED.value: machine.handle_payment_succeeded,
            BillingEventType.PAYMENT_FAILED.value: machine.handle_payment_failed,
        })

    @property
    def supported_types(self) -> list[str]:
        return sorted(self._handlers)

    def resolve(self, event_type: str) -> Handler:
        handler = self._handlers.get(event_type)
        if handler is None:
            raise UnknownEventType(event_type)
        return handler
