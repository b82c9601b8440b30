"""
User model — referencia minima do usuario dono das assinaturas.

Autenticacao e perfil vivem fora deste servico; aqui so guardamos o vinculo
com o cliente do provedor de billing.
"""
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy import Uuid as SQLAlchemyUUID
from sqlalchemy.orm import relationship

from billsync.core.database import Base


class User(Base):
    """
    Billing-side view of a user account.
    """

    __tablename__ = "users"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    provider_customer_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        comment="cus_xxx do Stripe",
    )
    is_active = Column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    subscriptions = relationship(
        "Subscription",
        back_populates="user",
        order_by="Subscription.created_at",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}')>"
