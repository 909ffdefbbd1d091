"""Gateway webhook reconciliation.

Deliveries are at-least-once and may arrive duplicated or out of order:

  1. Find the payment by provider transaction id, then by reference
     (the reference exists before the gateway assigns its id).
  2. Unknown payment        → "not_found", acknowledged, nothing written.
  3. Same status as stored  → "duplicate", acknowledged, nothing written.
  4. Illegal move           → "out_of_order", acknowledged, nothing written.
  5. Otherwise the payment service applies the move (one audit entry);
     a completion activates a pending subscription via PaymentCompleted.

Store failures propagate so the endpoint answers 5xx and the gateway
retries the delivery.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cafetal.models.payment import Payment
from cafetal.schemas.webhook import WebhookEvent
from cafetal.services import payments as payment_service
from cafetal.services import subscriptions  # noqa: F401  registers the PaymentCompleted handler
from cafetal.services.context import RequestContext

logger = logging.getLogger(__name__)

HANDLED_EVENTS = ("transaction.updated",)


@dataclass(frozen=True)
class WebhookOutcome:
    outcome: str
    payment_id: str | None = None


async def _find_payment(
    db: AsyncSession,
    transaction_id: str | None,
    reference: str | None,
) -> Payment | None:
    """Lock the payment a notification refers to, if we track it."""
    lookups = []
    if transaction_id:
        lookups.append(Payment.provider_transaction_id == transaction_id)
    if reference:
        lookups.append(Payment.provider_reference == reference)

    for clause in lookups:
        result = await db.execute(
            select(Payment)
            .where(clause)
            .order_by(Payment.created_at)
            .limit(1)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment:
            return payment
    return None


async def reconcile_transaction(
    db: AsyncSession,
    ctx: RequestContext,
    event: WebhookEvent,
) -> WebhookOutcome:
    if event.event not in HANDLED_EVENTS:
        logger.info("Ignoring gateway event %s", event.event)
        return WebhookOutcome("ignored_event")

    data = event.data
    payment = await _find_payment(db, data.id, data.reference)
    if payment is None:
        logger.info(
            "Webhook for untracked transaction id=%s reference=%s; ignored",
            data.id, data.reference,
        )
        return WebhookOutcome("not_found")

    outcome = await payment_service.apply_gateway_status(
        db, ctx, payment, data.status,
        message=data.status_message,
        raw=data.model_dump(exclude_none=True),
        transaction_id=data.id,
        source="webhook",
    )
    return WebhookOutcome(outcome, payment.id)
