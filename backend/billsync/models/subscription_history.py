"""
SubscriptionHistory model — ledger de auditoria append-only.
"""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlalchemy import Uuid as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from billsync.core.database import Base


class HistoryChangeType(str, Enum):
    CREATED = "created"
    UPGRADED = "upgraded"
    DOWNGRADED = "downgraded"
    BILLING_CHANGED = "billing_changed"
    CANCELED = "canceled"
    PAYMENT_FAILED = "payment_failed"
    REACTIVATED = "reactivated"
    SYSTEM_RECOVERY = "system_recovery"


class SubscriptionHistory(Base):
    """
    Immutable audit row for a subscription change.

    No maximo uma linha por (subscription_id, change_type) dentro da janela
    de dedupe; ver IdempotencyGuard.record_history.
    """

    __tablename__ = "subscription_history"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    user_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscription_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    change_type = Column(
        String(30),
        nullable=False,
        index=True,
        comment="created|upgraded|downgraded|billing_changed|canceled|payment_failed|reactivated|system_recovery",
    )
    previous_plan = Column(String(20), nullable=True)
    new_plan = Column(String(20), nullable=True)
    effective_date = Column(DateTime, nullable=False)
    notes = Column(Text, nullable=True)
    provider_event_id = Column(String(255), nullable=True, comment="evt_xxx que originou a mudanca")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    subscription = relationship("Subscription", back_populates="history")

    def __repr__(self) -> str:
        return (
            f"<SubscriptionHistory(id={self.id}, change_type='{self.change_type}', "
            f"{self.previous_plan} -> {self.new_plan})>"
        )
