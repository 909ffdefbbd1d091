"""Subscription lifecycle service.

Sole writer of ``subscriptions`` rows:

  create_subscription      → active, or pending + pending payment   (audit: create)
  cancel_subscription      → immediate: cancelled; otherwise scheduled
                             (auto-renew off, stays active)          (audit: cancel)
  reactivate_subscription  → cancelled | suspended | expired → active (audit: update)
  renew_subscription       → one more cycle from the current end date,
                             optional plan switch                     (audit: renew)
  on_payment_completed     → pending → active when its payment completes
                                                                      (audit: update)

One live (active or suspended) subscription per grower.  The service
checks first for a readable error; the partial unique index
``uq_subscriptions_one_live_per_grower`` is what actually enforces it.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import asc, desc, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cafetal.middleware.exceptions import (
    InvalidArgumentError,
    NotFoundError,
    StateConflictError,
)
from cafetal.models.grower import CoffeeGrower
from cafetal.models.plan import SubscriptionPlan
from cafetal.models.subscription import LIVE_STATUSES, SUBSCRIPTION_STATUSES, Subscription
from cafetal.schemas.payment import PaymentCreate
from cafetal.schemas.subscription import SubscriptionCreate, SubscriptionFilters
from cafetal.services import payments as payment_service
from cafetal.services.billing import add_billing_cycle, validate_cycle
from cafetal.services.context import RequestContext
from cafetal.services.events import PaymentCompleted, subscribe
from cafetal.utils.audit import diff_fields, record_audit, snapshot
from cafetal.utils.locks import flush_versioned, lock_row

logger = logging.getLogger(__name__)

SUBSCRIPTION_LOAD_OPTIONS = (
    selectinload(Subscription.grower),
    selectinload(Subscription.plan),
)

AUDITED_FIELDS = (
    "status",
    "plan_id",
    "start_date",
    "end_date",
    "next_billing_date",
    "auto_renew",
    "price",
    "currency",
    "billing_cycle",
    "cancellation_reason",
    "cancelled_at",
)

SORTABLE_FIELDS = {
    "created_at": Subscription.created_at,
    "updated_at": Subscription.updated_at,
    "start_date": Subscription.start_date,
    "end_date": Subscription.end_date,
    "next_billing_date": Subscription.next_billing_date,
    "price": Subscription.price,
    "status": Subscription.status,
}

LIVE_CONFLICT_MESSAGE = "Grower already has an active or suspended subscription"


# ── Lookups ──────────────────────────────────────────────────

async def get_subscription(db: AsyncSession, subscription_id: str) -> Subscription:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .options(*SUBSCRIPTION_LOAD_OPTIONS)
        .execution_options(populate_existing=True)
    )
    subscription = result.scalar_one_or_none()
    if not subscription:
        raise NotFoundError("Subscription", subscription_id)
    return subscription


async def _lock_subscription(db: AsyncSession, subscription_id: str) -> Subscription:
    return await lock_row(
        db, Subscription, subscription_id, *SUBSCRIPTION_LOAD_OPTIONS, resource="Subscription"
    )


async def _get_plan(db: AsyncSession, plan_id: str) -> SubscriptionPlan:
    plan = (
        await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id))
    ).scalar_one_or_none()
    if not plan:
        raise NotFoundError("Subscription plan", plan_id)
    if not plan.is_active:
        raise InvalidArgumentError(f"Plan '{plan.name}' is not available", field="plan_id")
    return plan


async def find_live_subscription(
    db: AsyncSession,
    grower_id: str,
    exclude_id: str | None = None,
) -> Subscription | None:
    stmt = select(Subscription).where(
        Subscription.coffee_grower_id == grower_id,
        Subscription.status.in_(LIVE_STATUSES),
    )
    if exclude_id:
        stmt = stmt.where(Subscription.id != exclude_id)
    return (await db.execute(stmt.limit(1))).scalar_one_or_none()


async def _flush_live(db: AsyncSession, subscription_id: str | None = None) -> None:
    """Flush, turning a one-live-subscription violation into StateConflictError."""
    try:
        await flush_versioned(db, "Subscription", subscription_id or "new")
    except IntegrityError as e:
        message = str(e.orig).lower()
        # PostgreSQL names the index; SQLite names the column
        if "uq_subscriptions_one_live_per_grower" in message or (
            "unique" in message and "coffee_grower_id" in message
        ):
            raise StateConflictError(LIVE_CONFLICT_MESSAGE) from e
        raise


async def _audit(
    db: AsyncSession,
    ctx: RequestContext,
    subscription: Subscription,
    action: str,
    before: dict,
    **details,
) -> None:
    await record_audit(
        db, ctx,
        action=action,
        resource_type="subscription",
        resource_id=subscription.id,
        details={"changes": diff_fields(before, subscription), **details},
    )


# ── Create ───────────────────────────────────────────────────

async def create_subscription(
    db: AsyncSession,
    ctx: RequestContext,
    body: SubscriptionCreate,
) -> Subscription:
    """Subscribe a grower to a plan, capturing the plan's price and cycle.

    With ``require_payment`` the subscription starts ``pending`` and a
    pending payment for the captured price is opened alongside it; it
    turns active when that payment completes.
    """
    grower = await payment_service.get_active_grower(db, body.coffee_grower_id)
    plan = await _get_plan(db, body.plan_id)

    cycle = validate_cycle(body.billing_cycle or plan.billing_cycle)
    price = body.price if body.price is not None else plan.price
    currency = payment_service.validate_currency(body.currency or plan.currency)
    end_date = body.end_date or add_billing_cycle(body.start_date, cycle)
    if end_date <= body.start_date:
        raise InvalidArgumentError("End date must be after the start date", field="end_date")

    if await find_live_subscription(db, grower.id):
        raise StateConflictError(LIVE_CONFLICT_MESSAGE)

    now = ctx.now()
    subscription = Subscription(
        coffee_grower_id=grower.id,
        plan_id=plan.id,
        status="pending" if body.require_payment else "active",
        start_date=body.start_date,
        end_date=end_date,
        next_billing_date=add_billing_cycle(body.start_date, cycle),
        auto_renew=body.auto_renew,
        price=price,
        currency=currency,
        billing_cycle=cycle,
        created_at=now,
        updated_at=now,
    )
    db.add(subscription)
    await _flush_live(db)

    await record_audit(
        db, ctx,
        action="create",
        resource_type="subscription",
        resource_id=subscription.id,
        details={
            "coffee_grower_id": grower.id,
            "plan_id": plan.id,
            "plan_name": plan.name,
            "price": price,
            "billing_cycle": cycle,
            "status": subscription.status,
        },
    )
    logger.info(
        "Subscription %s created for grower %s on plan %s (%s)",
        subscription.id, grower.id, plan.name, subscription.status,
    )

    if body.require_payment:
        await payment_service.create_payment(
            db, ctx,
            PaymentCreate(
                coffee_grower_id=grower.id,
                subscription_id=subscription.id,
                amount=price,
                currency=currency,
                payment_method=body.payment_method,
                description=f"Subscription {plan.name} ({cycle})",
            ),
        )

    return await get_subscription(db, subscription.id)


# ── Cancel / reactivate / renew ──────────────────────────────

async def cancel_subscription(
    db: AsyncSession,
    ctx: RequestContext,
    subscription_id: str,
    reason: str,
    immediate: bool = False,
) -> Subscription:
    """Cancel now, or schedule cancellation for the current end date."""
    reason = (reason or "").strip()
    if not reason:
        raise InvalidArgumentError("A cancellation reason is required", field="reason")

    subscription = await _lock_subscription(db, subscription_id)
    if subscription.status != "active":
        raise StateConflictError(
            f"Only active subscriptions can be cancelled (subscription is '{subscription.status}')",
            current_status=subscription.status,
        )

    before = snapshot(subscription, AUDITED_FIELDS)
    now = ctx.now()
    subscription.cancellation_reason = reason
    subscription.auto_renew = False
    if immediate:
        subscription.status = "cancelled"
        subscription.cancelled_at = now
        subscription.end_date = now.date()
        subscription.next_billing_date = None
    subscription.updated_at = now
    await flush_versioned(db, "Subscription", subscription.id)

    await _audit(db, ctx, subscription, "cancel", before, reason=reason, immediate=immediate)
    logger.info(
        "Subscription %s %s by %s",
        subscription.id,
        "cancelled" if immediate else f"scheduled to cancel on {subscription.end_date}",
        ctx.actor_id,
    )
    return await get_subscription(db, subscription.id)


async def reactivate_subscription(
    db: AsyncSession,
    ctx: RequestContext,
    subscription_id: str,
    new_end_date: date | None = None,
) -> Subscription:
    """Bring a cancelled, suspended or expired subscription back to active."""
    subscription = await _lock_subscription(db, subscription_id)
    if subscription.status == "active":
        raise StateConflictError("Subscription is already active", current_status="active")
    if subscription.status == "pending":
        raise StateConflictError(
            "Pending subscriptions are activated by their payment", current_status="pending"
        )

    if await find_live_subscription(db, subscription.coffee_grower_id, exclude_id=subscription.id):
        raise StateConflictError(LIVE_CONFLICT_MESSAGE, current_status=subscription.status)

    today = ctx.now().date()
    end_date = new_end_date or add_billing_cycle(today, subscription.billing_cycle)
    if end_date <= today:
        raise InvalidArgumentError("New end date must be in the future", field="new_end_date")

    before = snapshot(subscription, AUDITED_FIELDS)
    subscription.status = "active"
    subscription.end_date = end_date
    subscription.next_billing_date = add_billing_cycle(today, subscription.billing_cycle)
    subscription.cancellation_reason = None
    subscription.cancelled_at = None
    subscription.updated_at = ctx.now()
    await _flush_live(db, subscription.id)

    await _audit(db, ctx, subscription, "update", before, operation="reactivate")
    logger.info("Subscription %s reactivated until %s", subscription.id, end_date)
    return await get_subscription(db, subscription.id)


async def renew_subscription(
    db: AsyncSession,
    ctx: RequestContext,
    subscription_id: str,
    plan_id: str | None = None,
    create_payment: bool = False,
    payment_method: str = "CARD",
) -> Subscription:
    """Extend by one billing cycle from the current end date.

    Switching plan captures the new plan's price and billing cycle; the
    new cycle is the one added.
    """
    subscription = await _lock_subscription(db, subscription_id)
    if subscription.status == "pending":
        raise StateConflictError(
            "Pending subscriptions cannot be renewed before their first payment",
            current_status="pending",
        )
    if subscription.status != "active":
        if await find_live_subscription(db, subscription.coffee_grower_id, exclude_id=subscription.id):
            raise StateConflictError(LIVE_CONFLICT_MESSAGE, current_status=subscription.status)

    before = snapshot(subscription, AUDITED_FIELDS)
    previous_plan_id = subscription.plan_id
    if plan_id and plan_id != subscription.plan_id:
        plan = await _get_plan(db, plan_id)
        subscription.plan_id = plan.id
        subscription.plan = plan
        subscription.price = plan.price
        subscription.currency = plan.currency
        subscription.billing_cycle = validate_cycle(plan.billing_cycle)

    period_end = subscription.end_date or subscription.start_date
    new_end = add_billing_cycle(period_end, subscription.billing_cycle)

    subscription.status = "active"
    subscription.end_date = new_end
    subscription.next_billing_date = new_end
    subscription.auto_renew = True
    subscription.cancellation_reason = None
    subscription.cancelled_at = None
    subscription.updated_at = ctx.now()
    await _flush_live(db, subscription.id)

    await _audit(
        db, ctx, subscription, "renew", before,
        previous_plan_id=previous_plan_id,
        period_start=period_end,
    )
    logger.info("Subscription %s renewed until %s", subscription.id, new_end)

    if create_payment:
        await payment_service.create_payment(
            db, ctx,
            PaymentCreate(
                coffee_grower_id=subscription.coffee_grower_id,
                subscription_id=subscription.id,
                amount=subscription.price,
                currency=subscription.currency,
                payment_method=payment_method,
                description=f"Renewal {period_end.isoformat()} → {new_end.isoformat()}",
            ),
        )

    return await get_subscription(db, subscription.id)


# ── Payment completion ───────────────────────────────────────

@subscribe(PaymentCompleted)
async def on_payment_completed(
    db: AsyncSession,
    ctx: RequestContext,
    event: PaymentCompleted,
) -> None:
    """Activate the pending subscription a completed payment pays for."""
    if not event.subscription_id:
        return

    subscription = await _lock_subscription(db, event.subscription_id)
    if subscription.status != "pending":
        logger.debug(
            "Payment %s completed; subscription %s is %s, nothing to activate",
            event.payment_id, subscription.id, subscription.status,
        )
        return

    if await find_live_subscription(db, subscription.coffee_grower_id, exclude_id=subscription.id):
        logger.warning(
            "Payment %s completed but grower %s already has a live subscription; %s stays pending",
            event.payment_id, subscription.coffee_grower_id, subscription.id,
        )
        return

    before = snapshot(subscription, AUDITED_FIELDS)
    try:
        async with db.begin_nested():
            subscription.status = "active"
            subscription.updated_at = ctx.now()
            await db.flush()
    except IntegrityError:
        logger.warning(
            "Subscription %s lost the live-subscription race; left pending", event.subscription_id
        )
        return

    await _audit(
        db, ctx, subscription, "update", before,
        operation="activate",
        payment_id=event.payment_id,
    )
    logger.info("Subscription %s activated by payment %s", subscription.id, event.payment_id)


# ── Listing ──────────────────────────────────────────────────

def subscription_filter_clauses(filters: SubscriptionFilters) -> list:
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
                SubscriptionPlan.name.ilike(term),
            )
        )
    if filters.status:
        if filters.status not in SUBSCRIPTION_STATUSES:
            raise InvalidArgumentError(
                f"Unknown subscription status '{filters.status}'", field="status"
            )
        clauses.append(Subscription.status == filters.status)
    if filters.plan_id:
        clauses.append(Subscription.plan_id == filters.plan_id)
    if filters.billing_cycle:
        clauses.append(Subscription.billing_cycle == validate_cycle(filters.billing_cycle))
    if filters.coffee_grower_id:
        clauses.append(Subscription.coffee_grower_id == filters.coffee_grower_id)
    if filters.date_from:
        clauses.append(Subscription.created_at >= datetime.combine(filters.date_from, time.min))
    if filters.date_to:
        clauses.append(
            Subscription.created_at < datetime.combine(filters.date_to + timedelta(days=1), time.min)
        )
    return clauses


async def list_subscriptions(
    db: AsyncSession,
    filters: SubscriptionFilters,
    limit: int = 50,
    offset: int = 0,
    sort_by: str = "created_at",
    sort_order: str = "desc",
) -> tuple[list[Subscription], int]:
    sort_col = SORTABLE_FIELDS.get(sort_by)
    if sort_col is None:
        raise InvalidArgumentError(
            f"Cannot sort by '{sort_by}'. Use one of: {', '.join(SORTABLE_FIELDS)}",
            field="sort_by",
        )
    direction = asc if sort_order == "asc" else desc
    clauses = subscription_filter_clauses(filters)

    def _joined(stmt):
        return (
            stmt.join(CoffeeGrower, CoffeeGrower.id == Subscription.coffee_grower_id)
            .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
            .where(*clauses)
        )

    total = (
        await db.execute(_joined(select(func.count(Subscription.id)).select_from(Subscription)))
    ).scalar() or 0

    result = await db.execute(
        _joined(select(Subscription))
        .options(*SUBSCRIPTION_LOAD_OPTIONS)
        .order_by(direction(sort_col), Subscription.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total
