"""
Billing webhook endpoint — no auth, uses provider signature verification.

O corpo e lido cru (``request.body()``); parse antes da verificacao
invalidaria a assinatura.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from billsync.core.database import get_db
from billsync.core.dependencies import get_webhook_processor
from billsync.services.webhook_event_service import RawWebhookRequest
from billsync.services.webhook_processor import WebhookProcessor

router = APIRouter()


@router.post("/billing")
async def billing_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    processor: WebhookProcessor = Depends(get_webhook_processor),
) -> JSONResponse:
    """
    Receive one provider delivery.

    200 para sucesso/duplicata/tipo ignorado, 400 para assinatura invalida,
    500 para falha de processamento (o provedor reentrega).
    """
    raw = RawWebhookRequest(
        body=await request.body(),
        headers=dict(request.headers),
        method=request.method,
        source_ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    outcome = await processor.receive(db, raw)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
