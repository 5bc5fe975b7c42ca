from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse

from inboxflow.messaging.application.services.webhook_service import WHATSAPP_OBJECT, WebhookService
from inboxflow.shared.infrastructure.observability.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Messaging: Webhook"])


def get_webhook_service(request: Request) -> WebhookService:
    return request.app.state.container.webhook_service


@router.get("/api/webhook", response_class=PlainTextResponse)
async def whatsapp_verify(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    mode: Optional[str] = None,
    verify_token: Optional[str] = None,
    challenge: Optional[str] = None,
    svc: WebhookService = Depends(get_webhook_service),
):
    echoed = svc.verify_subscription(
        mode=hub_mode or mode,
        token=hub_verify_token or verify_token,
        challenge=hub_challenge if hub_challenge is not None else challenge,
    )
    if echoed is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification_failed")
    return PlainTextResponse(echoed)


@router.post("/api/webhook")
async def whatsapp_inbound(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    svc: WebhookService = Depends(get_webhook_service),
):
    raw = await request.body()

    if not svc.verify_signature(raw, x_hub_signature_256):
        logger.warning("webhook_signature_invalid")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_signature")

    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_json")

    if not isinstance(payload, dict) or payload.get("object") != WHATSAPP_OBJECT:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="unsupported_object")

    await svc.ingest(payload)
    return {"ok": True}
