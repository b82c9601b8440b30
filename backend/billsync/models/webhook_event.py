"""
WebhookEvent model — uma linha por tentativa de entrega de webhook.

Criada como ``pending`` no momento em que os bytes chegam, antes da
verificacao de assinatura, para que nenhuma entrega se perca.
"""
from datetime import datetime
from enum import Enum
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy import Uuid as SQLAlchemyUUID

from billsync.core.database import Base


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    IGNORED = "ignored"


# Estados terminais sem acao pendente; unicos removidos pela retencao
PURGEABLE_STATUSES = (WebhookStatus.COMPLETED.value, WebhookStatus.IGNORED.value)


class WebhookEvent(Base):
    """
    Durable log of every inbound billing webhook delivery attempt.

    ``provider_event_id`` identifica o evento logico; reentregas compartilham
    o valor, por isso o indice nao e unico.
    """

    __tablename__ = "webhook_events"

    id = Column(SQLAlchemyUUID(as_uuid=True), primary_key=True, default=uuid4, index=True)
    provider_event_id = Column(
        String(255),
        nullable=True,
        index=True,
        comment="evt_xxx do Stripe; NULL se o corpo nao pode ser lido",
    )
    event_type = Column(
        String(100),
        nullable=False,
        default="unknown",
        index=True,
        comment="checkout.session.completed|customer.subscription.updated|etc",
    )
    status = Column(
        String(20),
        nullable=False,
        default=WebhookStatus.PENDING.value,
        index=True,
        comment="pending|processing|completed|failed|ignored",
    )
    signature_verified = Column(Boolean, default=False, nullable=False)
    is_duplicate = Column(Boolean, default=False, nullable=False)

    # Retry budget
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    next_retry_at = Column(DateTime, nullable=True, index=True)

    # Request capturado
    method = Column(String(10), nullable=False, default="POST")
    headers = Column(JSON, nullable=True)
    raw_payload = Column(Text, nullable=False, default="")
    parsed_data = Column(JSON, nullable=True, comment="Evento completo apos verificacao")
    source_ip = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    environment = Column(String(20), nullable=True)

    # Associacoes oportunisticas
    associated_customer_id = Column(String(255), nullable=True, index=True)
    provider_subscription_id = Column(String(255), nullable=True)
    associated_subscription_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    associated_user_id = Column(
        SQLAlchemyUUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Resultado do processamento
    response_status = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    processing_completed_at = Column(DateTime, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<WebhookEvent(id={self.id}, event_type='{self.event_type}', "
            f"status='{self.status}')>"
        )
