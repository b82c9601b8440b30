"""
Domain errors for billing event ingestion and subscription reconciliation.

Todas derivam de ``BillingError(detail, code)``; endpoints traduzem para
HTTPException usando ``detail``.
"""
from __future__ import annotations


class BillingError(Exception):
    """Domain error for billing operations."""

    def __init__(self, detail: str, code: str = "billing_error") -> None:
        self.detail = detail
        self.code = code
        super().__init__(detail)


class ProviderNotConfiguredError(BillingError):
    """Credenciais do provedor de billing nao configuradas."""

    def __init__(
        self,
        detail: str = "Stripe nao configurado. Defina STRIPE_SECRET_KEY nas variaveis de ambiente.",
    ) -> None:
        super().__init__(detail, code="provider_not_configured")


class SignatureInvalid(BillingError):
    """Assinatura do webhook ausente, invalida ou expirada. Terminal, HTTP 400."""

    def __init__(self, detail: str = "Assinatura do webhook invalida.") -> None:
        super().__init__(detail, code="invalid_webhook_signature")


class UnknownEventType(BillingError):
    """Tipo de evento sem handler. Terminal, evento fica ``ignored``."""

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(
            f"Tipo de evento nao suportado: {event_type}",
            code="unknown_event_type",
        )


class TransientHandlerFailure(BillingError):
    """Falha temporaria (rede, banco, lock ocupado). Reprocessavel via backoff."""

    def __init__(self, detail: str, code: str = "transient_failure") -> None:
        super().__init__(detail, code=code)


class PermanentHandlerFailure(BillingError):
    """Payload malformado ou vinculo usuario/cliente irresolvivel. Sem retry."""

    def __init__(self, detail: str, code: str = "permanent_failure") -> None:
        super().__init__(detail, code=code)


class RetryExhausted(BillingError):
    """Orcamento de retries esgotado; requer intervencao manual."""

    def __init__(self, provider_event_id: str | None, attempts: int) -> None:
        self.provider_event_id = provider_event_id
        self.attempts = attempts
        super().__init__(
            f"Retries esgotados para evento {provider_event_id} apos {attempts} tentativas.",
            code="retry_exhausted",
        )


class InvalidStatusTransition(BillingError):
    """Transicao de status fora do conjunto permitido."""

    def __init__(self, before: str, after: str) -> None:
        self.before = before
        self.after = after
        super().__init__(
            f"Transicao de status invalida: {before} -> {after}",
            code="invalid_status_transition",
        )


class LockNotAcquired(TransientHandlerFailure):
    """Lock consultivo ocupado por outro writer."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Lock ocupado: {key}", code="lock_not_acquired")


class WebhookEventNotFound(BillingError):
    """Registro de webhook inexistente."""

    def __init__(self, detail: str = "Evento de webhook nao encontrado.") -> None:
        super().__init__(detail, code="webhook_event_not_found")
