"""AdSync — Webhook Routes."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse

from adsync.api.deps import Services, get_services
from adsync.core.logging import get_logger

logger = get_logger("api.webhooks")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.get("", response_class=PlainTextResponse)
async def verify_subscription(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    services: Services = Depends(get_services),
):
    """Answer the subscription handshake by echoing `hub.challenge`."""
    return PlainTextResponse(
        services.webhook_handler.verify_challenge(mode, verify_token, challenge)
    )


@router.post("")
async def receive_notification(request: Request, services: Services = Depends(get_services)):
    """Signed change notification. Individual change failures still return 200."""
    handler = services.webhook_handler
    body = await request.body()
    handler.verify_signature(body, request.headers.get("x-hub-signature-256"))
    payload = handler.parse(body)
    report = await handler.process(payload)
    logger.info(
        f"Webhook {payload.object}: {report.entries} entries",
        extra={"entity_type": payload.object},
    )
    return {"received": True}
