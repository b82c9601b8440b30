"""
Webhook signature verification over the raw request bytes.

Sem efeitos colaterais: quem chama registra o resultado no log de eventos.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

import stripe

from billsync.core.exceptions import PermanentHandlerFailure, SignatureInvalid


@dataclass(frozen=True)
class VerifiedEvent:
    """Provider event whose authenticity has been confirmed."""

    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def data_object(self) -> dict[str, Any]:
        obj = (self.payload.get("data") or {}).get("object")
        return obj if isinstance(obj, dict) else {}

    @classmethod
    def from_payload(cls, payload: Any) -> VerifiedEvent:
        """
        Build from an already-parsed event body.

        Raises:
            PermanentHandlerFailure: corpo sem ``id``/``type``.
        """
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("type"):
            raise PermanentHandlerFailure(
                "Evento sem campos obrigatorios id/type.",
                code="malformed_event",
            )
        return cls(id=str(payload["id"]), type=str(payload["type"]), payload=payload)


class WebhookSignatureVerifier:
    """
    Validates the ``Stripe-Signature`` header (``t=...,v1=...``) against the
    shared webhook secret.
    """

    def __init__(self, secret: str, tolerance_seconds: int = 300) -> None:
        self._secret = secret
        self._tolerance = tolerance_seconds

    def verify(self, payload: bytes, sig_header: str | None) -> VerifiedEvent:
        """
        Verify ``payload`` and parse it into a VerifiedEvent.

        Raises:
            SignatureInvalid: segredo ausente, header ausente, assinatura
                incorreta ou timestamp fora da tolerancia.
            PermanentHandlerFailure: assinatura valida mas corpo malformado.
        """
        if not self._secret:
            raise SignatureInvalid("Stripe webhook secret nao configurado.")
        if not sig_header:
            raise SignatureInvalid("Header de assinatura ausente.")

        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("Payload do webhook nao e UTF-8 valido.") from exc

        try:
            stripe.WebhookSignature.verify_header(
                text, sig_header, self._secret, tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise SignatureInvalid(f"Assinatura do webhook invalida: {exc}") from exc

        try:
            body = json.loads(text)
        except ValueError as exc:
            raise PermanentHandlerFailure(
                "Payload assinado nao e JSON valido.",
                code="malformed_event",
            ) from exc

        return VerifiedEvent.from_payload(body)
