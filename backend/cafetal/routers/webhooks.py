"""Inbound payment-gateway webhooks.

Endpoints:
    POST /api/webhooks/{provider}    Transaction status notification

Always answers 200 {"received": true} once the notification is handled,
including for payments we do not track, so the gateway does not retry.
Store failures answer 503 and the gateway retries the delivery.
Signature verification happens in front of this service.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from cafetal.auth.deps import client_ip
from cafetal.database import get_db
from cafetal.middleware.exceptions import ConcurrentUpdateError, create_error_response
from cafetal.schemas.webhook import WebhookAck, WebhookEvent
from cafetal.services import webhooks as webhook_service
from cafetal.services.context import gateway_context
from cafetal.utils.cache import invalidate_cache

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{provider}", response_model=WebhookAck)
async def receive_gateway_webhook(
    provider: str,
    event: WebhookEvent,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    ctx = gateway_context(
        provider,
        correlation_id=getattr(request.state, "request_id", None),
        ip_address=client_ip(request),
    )
    try:
        result = await webhook_service.reconcile_transaction(db, ctx, event)
        await db.commit()
    except (ConcurrentUpdateError, OperationalError) as e:
        await db.rollback()
        logger.warning("Webhook from %s not applied, asking for redelivery: %s", provider, e)
        return create_error_response(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            message="Notification could not be applied, retry later",
            error_code="RETRY_LATER",
        )

    if result.outcome == "applied":
        await invalidate_cache("payment_reports:*")
        await invalidate_cache("subscription_reports:*")
    return WebhookAck(received=True, outcome=result.outcome)
