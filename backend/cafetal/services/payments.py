"""Payment lifecycle service.

Sole writer of ``payments`` rows.  Every mutation runs inside the
request transaction and writes exactly one audit entry:

  create_payment          → pending                       (audit: create)
  update_payment          → field patch / status move     (audit: update)
  process_with_gateway    → pending → completed | failed  (audit: update)
  refund_payment          → completed → refunded, or partial refund
                                                          (audit: refund)
  refresh_payment_status  → re-query gateway, apply like a webhook
                                                          (audit: webhook_update)
  apply_gateway_status    → idempotent status move from gateway data

Gateway calls are made without holding a row lock.  The row is then
re-read FOR UPDATE and the precondition re-checked before the result is
written, so a webhook racing an admin call cannot apply a second,
conflicting transition.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, time, timedelta
from decimal import Decimal

from sqlalchemy import asc, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cafetal.config import settings
from cafetal.middleware.exceptions import (
    GatewayError,
    GatewayUnavailableError,
    InvalidArgumentError,
    NotFoundError,
    StateConflictError,
)
from cafetal.models.grower import CoffeeGrower
from cafetal.models.payment import (
    PAYMENT_METHODS,
    PAYMENT_STATUSES,
    PAYMENT_TRANSITIONS,
    Payment,
)
from cafetal.models.subscription import Subscription
from cafetal.schemas.payment import PaymentCreate, PaymentFilters, PaymentUpdate
from cafetal.services.context import RequestContext
from cafetal.services.events import PaymentCompleted, publish
from cafetal.services.gateway import (
    GatewayResult,
    PaymentGateway,
    map_provider_status,
    payment_reference,
    reference_for,
)
from cafetal.utils.audit import diff_fields, record_audit, snapshot
from cafetal.utils.locks import flush_versioned, lock_row

logger = logging.getLogger(__name__)

PAYMENT_LOAD_OPTIONS = (
    selectinload(Payment.grower),
    selectinload(Payment.subscription).selectinload(Subscription.plan),
)

AUDITED_FIELDS = (
    "status",
    "provider_transaction_id",
    "provider_reference",
    "payment_date",
    "failure_reason",
    "refund_amount",
    "refund_date",
    "description",
)

SORTABLE_FIELDS = {
    "created_at": Payment.created_at,
    "updated_at": Payment.updated_at,
    "payment_date": Payment.payment_date,
    "amount": Payment.amount,
    "status": Payment.status,
}


# ── Lookups ──────────────────────────────────────────────────

async def get_payment(db: AsyncSession, payment_id: str) -> Payment:
    """Return a payment with its grower and subscription plan loaded."""
    result = await db.execute(
        select(Payment)
        .where(Payment.id == payment_id)
        .options(*PAYMENT_LOAD_OPTIONS)
        .execution_options(populate_existing=True)
    )
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment", payment_id)
    return payment


async def _lock_payment(db: AsyncSession, payment_id: str) -> Payment:
    return await lock_row(db, Payment, payment_id, *PAYMENT_LOAD_OPTIONS, resource="Payment")


async def get_active_grower(db: AsyncSession, grower_id: str) -> CoffeeGrower:
    grower = (
        await db.execute(
            select(CoffeeGrower).where(
                CoffeeGrower.id == grower_id,
                CoffeeGrower.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if not grower:
        raise NotFoundError("Coffee grower", grower_id)
    return grower


# ── Validation ───────────────────────────────────────────────

def validate_currency(currency: str) -> str:
    currency = (currency or "").upper()
    if currency not in settings.currencies:
        raise InvalidArgumentError(
            f"Unsupported currency '{currency}'. Use one of: {', '.join(sorted(settings.currencies))}",
            field="currency",
        )
    return currency


def validate_method(method: str) -> str:
    method = (method or "").upper()
    if method not in PAYMENT_METHODS:
        raise InvalidArgumentError(
            f"Unsupported payment method '{method}'. Use one of: {', '.join(PAYMENT_METHODS)}",
            field="payment_method",
        )
    return method


def _check_transition(payment: Payment, new_status: str) -> None:
    if new_status not in PAYMENT_STATUSES:
        raise InvalidArgumentError(f"Unknown payment status '{new_status}'", field="status")
    if new_status not in PAYMENT_TRANSITIONS[payment.status]:
        raise StateConflictError(
            f"Cannot move payment {payment.id} from '{payment.status}' to '{new_status}'",
            current_status=payment.status,
        )


def _check_refundable(payment: Payment, amount: Decimal | None) -> Decimal:
    """Validate a refund request and return the amount to refund."""
    if payment.status != "completed":
        raise StateConflictError(
            f"Only completed payments can be refunded (payment is '{payment.status}')",
            current_status=payment.status,
        )
    if payment.refund_amount is not None:
        raise StateConflictError(
            f"Payment {payment.id} has already been refunded",
            current_status=payment.status,
        )
    if amount is None:
        return payment.amount
    amount = Decimal(amount)
    if amount <= 0:
        raise InvalidArgumentError("Refund amount must be positive", field="amount")
    if amount > payment.amount:
        raise InvalidArgumentError(
            f"Refund amount {amount} exceeds payment amount {payment.amount}",
            field="amount",
        )
    return amount


# ── Status transition core ───────────────────────────────────

async def _transition(
    db: AsyncSession,
    ctx: RequestContext,
    payment: Payment,
    new_status: str,
    *,
    action: str,
    changes: dict | None = None,
    metadata: dict | None = None,
    details: dict | None = None,
) -> None:
    """Apply a status move plus field changes, audit it, publish events.

    ``payment`` must have been read with ``_lock_payment``.
    """
    old_status = payment.status
    if new_status != old_status:
        _check_transition(payment, new_status)

    before = snapshot(payment, AUDITED_FIELDS)
    for name, value in (changes or {}).items():
        setattr(payment, name, value)
    if metadata:
        payment.extra = {**(payment.extra or {}), **metadata}
    payment.status = new_status
    payment.updated_at = ctx.now()
    await flush_versioned(db, "Payment", payment.id)

    audit_details = {"changes": diff_fields(before, payment)}
    if metadata:
        audit_details["metadata_keys"] = sorted(metadata)
    audit_details.update(details or {})
    await record_audit(
        db, ctx,
        action=action,
        resource_type="payment",
        resource_id=payment.id,
        details=audit_details,
    )

    if new_status != old_status:
        logger.info(
            "Payment %s: %s → %s (%s by %s)",
            payment.id, old_status, new_status, action, ctx.actor_id,
        )
    if new_status == "completed" and old_status != "completed":
        await publish(
            db, ctx,
            PaymentCompleted(
                payment_id=payment.id,
                coffee_grower_id=payment.coffee_grower_id,
                subscription_id=payment.subscription_id,
            ),
        )


# ── Create / update ──────────────────────────────────────────

async def create_payment(
    db: AsyncSession,
    ctx: RequestContext,
    body: PaymentCreate,
) -> Payment:
    """Create a pending payment for a grower (optionally tied to a subscription)."""
    amount = Decimal(body.amount)
    if amount <= 0:
        raise InvalidArgumentError("Amount must be positive", field="amount")
    currency = validate_currency(body.currency)
    method = validate_method(body.payment_method)

    grower = await get_active_grower(db, body.coffee_grower_id)

    if body.subscription_id:
        subscription = (
            await db.execute(select(Subscription).where(Subscription.id == body.subscription_id))
        ).scalar_one_or_none()
        if not subscription:
            raise NotFoundError("Subscription", body.subscription_id)
        if subscription.coffee_grower_id != grower.id:
            raise InvalidArgumentError(
                "Subscription belongs to a different grower", field="subscription_id"
            )

    # Stored up front so a webhook racing the charge call can find it
    payment_id = str(uuid.uuid4())
    now = ctx.now()
    payment = Payment(
        id=payment_id,
        provider_reference=reference_for(payment_id),
        coffee_grower_id=grower.id,
        subscription_id=body.subscription_id,
        amount=amount,
        currency=currency,
        payment_method=method,
        payment_provider=body.payment_provider,
        status="pending",
        description=body.description,
        extra=dict(body.metadata or {}),
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    await db.flush()

    await record_audit(
        db, ctx,
        action="create",
        resource_type="payment",
        resource_id=payment.id,
        details={
            "amount": amount,
            "currency": currency,
            "payment_method": method,
            "subscription_id": body.subscription_id,
        },
    )
    logger.info("Payment %s created for grower %s: %s %s", payment.id, grower.id, amount, currency)
    return await get_payment(db, payment.id)


async def update_payment(
    db: AsyncSession,
    ctx: RequestContext,
    payment_id: str,
    body: PaymentUpdate,
) -> Payment:
    """Patch whitelisted fields; a status change must follow the lifecycle.

    Refunds go through ``refund_payment`` so the refund columns and the
    gateway stay in step.
    """
    payment = await _lock_payment(db, payment_id)
    fields = body.model_dump(exclude_unset=True)

    new_status = fields.pop("status", None) or payment.status
    if new_status == "refunded" and payment.status != "refunded":
        raise StateConflictError(
            "Use the refund operation to refund a payment", current_status=payment.status
        )
    metadata = fields.pop("metadata", None)

    if new_status == "completed" and payment.status != "completed" and not fields.get("payment_date"):
        fields["payment_date"] = ctx.now()

    await _transition(db, ctx, payment, new_status, action="update", changes=fields, metadata=metadata)
    return await get_payment(db, payment_id)


# ── Gateway processing ───────────────────────────────────────

async def _record_failed_attempt(
    db: AsyncSession,
    ctx: RequestContext,
    payment_id: str,
    reason: str,
) -> None:
    """Persist ``failed`` for a charge the gateway errored on.

    Committed here because the caller re-raises right after, which would
    otherwise roll the write back with the request transaction.
    """
    payment = await _lock_payment(db, payment_id)
    if payment.status != "pending":
        return
    await _transition(
        db, ctx, payment, "failed",
        action="update",
        changes={"failure_reason": reason},
        details={"source": "gateway_error"},
    )
    await db.commit()


async def process_with_gateway(
    db: AsyncSession,
    ctx: RequestContext,
    gateway: PaymentGateway,
    payment_id: str,
    method_data: dict | None = None,
) -> Payment:
    """Charge a pending payment through the gateway and record the outcome."""
    payment = await get_payment(db, payment_id)
    if payment.status != "pending":
        raise StateConflictError(
            f"Only pending payments can be processed (payment is '{payment.status}')",
            current_status=payment.status,
        )

    try:
        result = await gateway.charge(payment, method_data or {})
    except GatewayUnavailableError:
        # Outcome unknown at the processor: stay pending, webhook/refresh settles it
        logger.warning("Gateway unavailable while charging payment %s; left pending", payment_id)
        raise
    except GatewayError as e:
        logger.warning("Gateway rejected payment %s: %s", payment_id, e.message)
        await _record_failed_attempt(db, ctx, payment_id, e.message)
        raise
    except Exception as e:
        logger.exception("Unexpected gateway client failure for payment %s", payment_id)
        await _record_failed_attempt(db, ctx, payment_id, f"Gateway client error: {e}")
        raise GatewayError(f"Payment gateway call failed: {e}", gateway.provider) from e

    new_status = result.status
    if new_status is None:
        reason = f"Unrecognised gateway status '{result.provider_status}'"
        await _record_failed_attempt(db, ctx, payment_id, reason)
        raise GatewayError(reason, gateway.provider)

    payment = await _lock_payment(db, payment_id)
    if payment.status != "pending":
        if payment.status == new_status:
            # A webhook already applied the same outcome
            return await get_payment(db, payment_id)
        raise StateConflictError(
            f"Payment {payment_id} changed to '{payment.status}' while the gateway was processing it",
            current_status=payment.status,
        )

    changes = {
        "provider_transaction_id": result.transaction_id,
        "provider_reference": result.reference or payment_reference(payment),
    }
    if new_status == "completed":
        changes["payment_date"] = ctx.now()
    elif new_status == "failed":
        changes["failure_reason"] = result.message or f"Gateway status {result.provider_status}"

    await _transition(
        db, ctx, payment, new_status,
        action="update",
        changes=changes,
        metadata={"gateway_response": result.raw},
        details={"provider_status": result.provider_status, "source": "gateway"},
    )
    return await get_payment(db, payment_id)


async def refund_payment(
    db: AsyncSession,
    ctx: RequestContext,
    gateway: PaymentGateway,
    payment_id: str,
    amount: Decimal | None = None,
    reason: str | None = None,
) -> Payment:
    """Refund a completed payment, fully or partially, exactly once."""
    payment = await get_payment(db, payment_id)
    refund_amount = _check_refundable(payment, amount)

    result = await gateway.refund(payment, refund_amount, reason)
    if not result.refund_accepted:
        logger.warning(
            "Gateway declined refund for payment %s: %s", payment_id, result.provider_status
        )
        raise GatewayError(
            f"Refund declined by gateway: {result.message or result.provider_status}",
            gateway.provider,
        )

    payment = await _lock_payment(db, payment_id)
    try:
        refund_amount = _check_refundable(payment, refund_amount)
    except StateConflictError:
        logger.error(
            "Payment %s changed while its refund was in flight; gateway refund %s needs review",
            payment_id, result.transaction_id,
        )
        raise

    full = refund_amount == payment.amount
    metadata = {"refund_response": result.raw}
    if reason:
        metadata["refund_reason"] = reason

    await _transition(
        db, ctx, payment, "refunded" if full else "completed",
        action="refund",
        changes={"refund_amount": refund_amount, "refund_date": ctx.now()},
        metadata=metadata,
        details={"amount": refund_amount, "full": full, "reason": reason},
    )
    return await get_payment(db, payment_id)


async def apply_gateway_status(
    db: AsyncSession,
    ctx: RequestContext,
    payment: Payment,
    provider_status: str,
    *,
    message: str | None = None,
    raw: dict | None = None,
    transaction_id: str | None = None,
    source: str = "webhook",
) -> str:
    """Apply a gateway-reported status to a locked payment.

    Returns the outcome: ``applied``, ``duplicate`` (same status, no-op),
    ``out_of_order`` (illegal move, ignored) or ``unknown_status``.
    """
    new_status = map_provider_status(provider_status)
    if new_status is None:
        logger.warning(
            "Ignoring unknown gateway status %r for payment %s", provider_status, payment.id
        )
        return "unknown_status"

    if new_status == payment.status:
        logger.info("Payment %s already %s; %s skipped", payment.id, new_status, source)
        return "duplicate"

    if new_status not in PAYMENT_TRANSITIONS[payment.status]:
        logger.info(
            "Ignoring out-of-order %s for payment %s: %s → %s",
            source, payment.id, payment.status, new_status,
        )
        return "out_of_order"

    changes: dict = {}
    if new_status == "completed" and payment.payment_date is None:
        changes["payment_date"] = ctx.now()
    elif new_status == "failed":
        changes["failure_reason"] = message or f"Gateway status {provider_status}"
    if transaction_id and not payment.provider_transaction_id:
        changes["provider_transaction_id"] = transaction_id

    await _transition(
        db, ctx, payment, new_status,
        action="webhook_update",
        changes=changes,
        metadata={"gateway_response": raw} if raw else None,
        details={"provider_status": provider_status, "source": source},
    )
    return "applied"


async def refresh_payment_status(
    db: AsyncSession,
    ctx: RequestContext,
    gateway: PaymentGateway,
    payment_id: str,
) -> Payment:
    """Ask the gateway for the transaction's state and apply it idempotently."""
    payment = await get_payment(db, payment_id)
    if not payment.provider_transaction_id:
        raise StateConflictError(
            f"Payment {payment_id} has no gateway transaction to refresh",
            current_status=payment.status,
        )

    result: GatewayResult = await gateway.get_transaction(payment.provider_transaction_id)

    payment = await _lock_payment(db, payment_id)
    await apply_gateway_status(
        db, ctx, payment, result.provider_status,
        message=result.message,
        raw=result.raw,
        source="refresh",
    )
    return await get_payment(db, payment_id)


# ── Listing ──────────────────────────────────────────────────

def payment_filter_clauses(filters: PaymentFilters) -> list:
    """Translate known filter fields into bound SQL predicates."""
    clauses = []
    if filters.search:
        term = f"%{filters.search.strip()}%"
        clauses.append(
            or_(
                CoffeeGrower.first_name.ilike(term),
                CoffeeGrower.last_name.ilike(term),
                CoffeeGrower.email.ilike(term),
                CoffeeGrower.identification_number.ilike(term),
                Payment.provider_transaction_id.ilike(term),
                Payment.provider_reference.ilike(term),
            )
        )
    if filters.status:
        if filters.status not in PAYMENT_STATUSES:
            raise InvalidArgumentError(f"Unknown payment status '{filters.status}'", field="status")
        clauses.append(Payment.status == filters.status)
    if filters.payment_method:
        clauses.append(Payment.payment_method == filters.payment_method.upper())
    if filters.payment_provider:
        clauses.append(Payment.payment_provider == filters.payment_provider)
    if filters.coffee_grower_id:
        clauses.append(Payment.coffee_grower_id == filters.coffee_grower_id)
    if filters.subscription_id:
        clauses.append(Payment.subscription_id == filters.subscription_id)
    if filters.date_from:
        clauses.append(Payment.created_at >= datetime.combine(filters.date_from, time.min))
    if filters.date_to:
        clauses.append(
            Payment.created_at < datetime.combine(filters.date_to + timedelta(days=1), time.min)
        )
    if filters.min_amount is not None:
        clauses.append(Payment.amount >= filters.min_amount)
    if filters.max_amount is not None:
        clauses.append(Payment.amount <= filters.max_amount)
    return clauses


async def list_payments(
    db: AsyncSession,
    filters: PaymentFilters,
    limit: int = 50,
    offset: int = 0,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> tuple[list[Payment], int]:
    """Return one page of payments and the total matching count."""
    sort_col = SORTABLE_FIELDS.get(sort_by)
    if sort_col is None:
        raise InvalidArgumentError(
            f"Cannot sort by '{sort_by}'. Use one of: {', '.join(SORTABLE_FIELDS)}",
            field="sort_by",
        )
    direction = asc if sort_order == "asc" else desc
    clauses = payment_filter_clauses(filters)

    total = (
        await db.execute(
            select(func.count(Payment.id))
            .select_from(Payment)
            .join(CoffeeGrower, CoffeeGrower.id == Payment.coffee_grower_id)
            .where(*clauses)
        )
    ).scalar() or 0

    result = await db.execute(
        select(Payment)
        .join(CoffeeGrower, CoffeeGrower.id == Payment.coffee_grower_id)
        .where(*clauses)
        .options(*PAYMENT_LOAD_OPTIONS)
        .order_by(direction(sort_col), Payment.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total
