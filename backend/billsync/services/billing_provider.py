"""
Billing provider client — lookups pontuais no Stripe (cliente e assinatura).

Chamadas usam o retry limitado do SDK (``max_network_retries``); erros de
rede viram TransientHandlerFailure, demais erros da API viram
PermanentHandlerFailure.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Protocol

import stripe

from billsync.core.config import settings
from billsync.core.exceptions import (
    PermanentHandlerFailure,
    ProviderNotConfiguredError,
    TransientHandlerFailure,
)

logger = logging.getLogger(__name__)


class BillingProviderClient(Protocol):
    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        ...

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        ...


class StripeBillingClient:
    """Thin async wrapper over the synchronous Stripe SDK."""

    def __init__(self, *, secret_key: str, max_network_retries: int = 2) -> None:
        self._secret_key = secret_key
        self._max_network_retries = max_network_retries

    @classmethod
    def from_settings(cls) -> StripeBillingClient:
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
        )

    def _configure_stripe(self) -> None:
        """Seta credenciais e retry do SDK antes de cada operacao."""
        if not self._secret_key:
            raise ProviderNotConfiguredError()
        stripe.api_key = self._secret_key
        stripe.max_network_retries = self._max_network_retries

    async def retrieve_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._call(stripe.Customer.retrieve, customer_id)

    async def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._call(stripe.Subscription.retrieve, subscription_id)

    async def _call(self, method: Callable[..., Any], object_id: str) -> dict[str, Any]:
        self._configure_stripe()
        try:
            obj = await asyncio.to_thread(method, object_id)
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            logger.warning("stripe_lookup_transient: id=%s error=%s", object_id, exc)
            raise TransientHandlerFailure(
                f"Falha temporaria consultando Stripe ({object_id}): {exc}",
                code="provider_unavailable",
            ) from exc
        except stripe.StripeError as exc:
            logger.warning("stripe_lookup_failed: id=%s error=%s", object_id, exc)
            raise PermanentHandlerFailure(
                f"Stripe recusou consulta de {object_id}: {exc}",
                code="provider_lookup_failed",
            ) from exc
        return dict(obj)
