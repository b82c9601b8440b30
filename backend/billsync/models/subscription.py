"""
Subscription model — plano e status de cobranca por usuario.

Mutado apenas pela state machine (webhooks) e pelas sweeps de reconciliacao.
"""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String
from sqlalchemy import Uuid as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from billsync.core.database import Base


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


# Status que contam como assinatura "corrente" do usuario
CURRENT_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)


class Subscription(Base):
    """
    Tracks current and historical subscriptions per user.

    Invariante: no maximo uma linha ``active`` por usuario.
    """

    __tablename__ = "subscriptions"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    user_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan = Column(
        String(20),
        nullable=False,
        default="free",
        index=True,
        comment="free|pro_monthly|pro_yearly|max_monthly|max_yearly",
    )
    status = Column(
        String(20),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
        index=True,
        comment="active|past_due|canceled|expired|incomplete|incomplete_expired",
    )

    # Stripe IDs
    provider_customer_id = Column(String(255), nullable=True, index=True)
    provider_subscription_id = Column(String(255), nullable=True, unique=True, index=True)

    # Billing period (sempre recalculado a partir do intervalo do plano)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True, index=True)
    cancel_at_period_end = Column(Boolean, default=False, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    # Expiry warning dedupe
    expiry_warning_sent_at = Column(DateTime, nullable=True)
    expiry_warning_period_end = Column(
        DateTime,
        nullable=True,
        comment="current_period_end ja avisado; NULL = nenhum aviso enviado",
    )

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
        index=True,
    )

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    history = relationship(
        "SubscriptionHistory",
        back_populates="subscription",
        order_by="SubscriptionHistory.created_at",
    )
    payments = relationship("Payment", back_populates="subscription")

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan='{self.plan}', status='{self.status}')>"
        )
