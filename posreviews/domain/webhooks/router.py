"""POS webhook router - FastAPI endpoints that receive provider webhooks"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...database import get_db
from ...models_pos import PosProvider
from ...webhook_security import WebhookSignatureError
from .schemas import InboundTestResponse, WebhookAck
from .service import IntegrationNotFound, InvalidPayloadError, WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["POS Webhooks"])


def get_webhook_service(db: Session = Depends(get_db)) -> WebhookService:
    """Dependency injection for WebhookService"""
    return WebhookService(db)


async def _handle(
    service: WebhookService, provider: str, request: Request, url_token: Optional[str] = None
) -> WebhookAck:
    # Signatures are computed over the exact bytes received
    raw_body = await request.body()
    try:
        return await service.handle_webhook(
            provider,
            raw_body,
            request.headers,
            request_url=str(request.url),
            url_token=url_token,
        )
    except InvalidPayloadError as e:
        logger.warning(f"⚠️ Rejected {provider} webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except IntegrationNotFound as e:
        logger.warning(f"⚠️ {e}")
        raise HTTPException(status_code=404, detail="Integration not found")
    except WebhookSignatureError as e:
        logger.warning(f"🚫 {e}")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post("/square", response_model=WebhookAck)
async def square_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    """Square payment, refund and OAuth revocation events"""
    return await _handle(service, PosProvider.SQUARE, request)


@router.post("/shopify", response_model=WebhookAck)
async def shopify_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    """Shopify orders/create, refunds/create and app/uninstalled"""
    return await _handle(service, PosProvider.SHOPIFY, request)


@router.post("/clover", response_model=WebhookAck)
async def clover_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    return await _handle(service, PosProvider.CLOVER, request)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    """Stripe Connect events for in-person and checkout payments"""
    return await _handle(service, PosProvider.STRIPE_POS, request)


@router.post("/woocommerce", response_model=WebhookAck)
async def woocommerce_webhook(
    request: Request, service: WebhookService = Depends(get_webhook_service)
):
    return await _handle(service, PosProvider.WOOCOMMERCE, request)


@router.post("/inbound/{url_token}", response_model=WebhookAck)
async def inbound_webhook(
    url_token: str, request: Request, service: WebhookService = Depends(get_webhook_service)
):
    """Zapier and custom webhooks, authenticated with X-API-Key (+ optional signature)"""
    return await _handle(service, PosProvider.GENERIC_WEBHOOK, request, url_token=url_token)


@router.get("/inbound/{url_token}/test", response_model=InboundTestResponse)
async def inbound_webhook_test(
    url_token: str, service: WebhookService = Depends(get_webhook_service)
):
    """Connectivity check for webhook setup (no authentication, returns no secrets)"""
    try:
        integration = await service.inbound_test(url_token)
    except IntegrationNotFound:
        raise HTTPException(status_code=404, detail="Webhook URL not found")

    return InboundTestResponse(
        success=True,
        provider=integration.provider,
        message="Webhook URL is valid. Send a POST request with X-API-Key to record a transaction.",
    )
