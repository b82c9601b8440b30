"""
Outbound notification hook.

A entrega (email, push, feed) e externa; aqui so definimos o contrato e um
notifier padrao que apenas registra em log.
"""
from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    EXPIRY_WARNING = "expiry_warning"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_RECOVERED = "subscription_recovered"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    WEEKLY_DIGEST = "weekly_digest"
    FREE_PLAN_REMINDER = "free_plan_reminder"


@dataclass(frozen=True)
class SubscriptionNotification:
    kind: NotificationKind
    user_id: UUID
    subscription_id: Optional[UUID] = None
    data: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def notify(self, notification: SubscriptionNotification) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the notification in the application log."""

    async def notify(self, notification: SubscriptionNotification) -> None:
        logger.info(
            "notification: kind=%s user_id=%s subscription_id=%s data=%s",
            notification.kind.value,
            notification.user_id,
            notification.subscription_id,
            notification.data,
        )


async def dispatch_notifications(
    notifier: Notifier,
    notifications: Iterable[SubscriptionNotification],
) -> int:
    """
    Send notifications after the state change was committed.

    Falha de entrega nao desfaz a transicao ja persistida; fica registrada no log.
    """
    sent = 0
    for notification in notifications:
        try:
            await notifier.notify(notification)
            sent += 1
        except Exception:
            logger.exception(
                "notification_failed: kind=%s user_id=%s",
                notification.kind.value,
                notification.user_id,
            )
    return sent
