"""
Payment model — uma linha por invoice do provedor.
"""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy import Uuid as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from billsync.core.database import Base


class PaymentStatus(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    PAID = "paid"


class Payment(Base):
    """
    Invoice payment outcome; ``provider_invoice_id`` is the dedup key.
    """

    __tablename__ = "payments"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    user_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    subscription_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    provider_invoice_id = Column(
        String(255),
        nullable=False,
        unique=True,
        index=True,
        comment="in_xxx do Stripe",
    )
    provider_payment_intent_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")
    status = Column(String(20), nullable=False, comment="paid|pending|failed")
    period_start = Column(DateTime, nullable=True)
    period_end = Column(DateTime, nullable=True)
    receipt_url = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    subscription = relationship("Subscription", back_populates="payments")

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, invoice='{self.provider_invoice_id}', "
            f"status='{self.status}')>"
        )
