"""Administrative subscription endpoints.

Endpoints:
    GET  /api/subscriptions                      List subscriptions (filters, paging, sort)
    GET  /api/subscriptions/stats                Status / plan / cycle distributions
    GET  /api/subscriptions/metrics              MRR, ARR, churn, ARPU, LTV, growth
    GET  /api/subscriptions/{id}                 Subscription with grower and plan
    POST /api/subscriptions                      Subscribe a grower to a plan
    POST /api/subscriptions/{id}/cancel          Cancel now or at period end
    POST /api/subscriptions/{id}/reactivate      Back to active
    POST /api/subscriptions/{id}/renew           Extend by one cycle (optional plan switch)
"""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from cafetal.auth.deps import Actor, get_request_context, require_permission
from cafetal.database import get_db
from cafetal.schemas.common import PaginatedResponse, SortOrder
from cafetal.schemas.metrics import SubscriptionMetrics, SubscriptionStats
from cafetal.schemas.subscription import (
    SubscriptionCancel,
    SubscriptionCreate,
    SubscriptionFilters,
    SubscriptionOut,
    SubscriptionReactivate,
    SubscriptionRenew,
    SubscriptionSortField,
)
from cafetal.services import metrics as metrics_service
from cafetal.services import subscriptions as subscription_service
from cafetal.services.context import RequestContext
from cafetal.utils.cache import cached, invalidate_cache

router = APIRouter()


async def _invalidate_reports(db: AsyncSession) -> None:
    await db.commit()
    await invalidate_cache("subscription_reports:*")
    await invalidate_cache("payment_reports:*")


# ── GET /api/subscriptions ───────────────────────────────────

@router.get("", response_model=PaginatedResponse[SubscriptionOut])
async def list_subscriptions(
    search: str | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    plan_id: str | None = Query(None),
    billing_cycle: str | None = Query(None),
    coffee_grower_id: str | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    sort_by: SubscriptionSortField = Query("created_at"),
    sort_order: SortOrder = Query("desc"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("subscriptions.read")),
):
    filters = SubscriptionFilters(
        search=search,
        status=status_filter,
        plan_id=plan_id,
        billing_cycle=billing_cycle,
        coffee_grower_id=coffee_grower_id,
        date_from=date_from,
        date_to=date_to,
    )
    items, total = await subscription_service.list_subscriptions(
        db, filters, limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order
    )
    return PaginatedResponse(
        items=[SubscriptionOut.model_validate(s) for s in items],
        total=total,
        limit=limit,
        offset=offset,
    )


# ── Reports ──────────────────────────────────────────────────

@router.get("/stats", response_model=SubscriptionStats)
@cached(prefix="subscription_reports")
async def subscription_stats(
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("billing_reports.read")),
):
    return await metrics_service.get_subscription_stats(db)


@router.get("/metrics", response_model=SubscriptionMetrics)
@cached(prefix="subscription_reports")
async def subscription_metrics(
    window_days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("billing_reports.read")),
):
    return await metrics_service.get_subscription_metrics(db, window_days=window_days)


# ── Single subscription ──────────────────────────────────────

@router.get("/{subscription_id}", response_model=SubscriptionOut)
async def get_subscription(
    subscription_id: str,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("subscriptions.read")),
):
    return await subscription_service.get_subscription(db, subscription_id)


@router.post("", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: SubscriptionCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("subscriptions.write")),
):
    subscription = await subscription_service.create_subscription(db, ctx, body)
    await _invalidate_reports(db)
    return subscription


@router.post("/{subscription_id}/cancel", response_model=SubscriptionOut)
async def cancel_subscription(
    subscription_id: str,
    body: SubscriptionCancel,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("subscriptions.write")),
):
    subscription = await subscription_service.cancel_subscription(
        db, ctx, subscription_id, reason=body.reason, immediate=body.immediate
    )
    await _invalidate_reports(db)
    return subscription


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionOut)
async def reactivate_subscription(
    subscription_id: str,
    body: SubscriptionReactivate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("subscriptions.write")),
):
    subscription = await subscription_service.reactivate_subscription(
        db, ctx, subscription_id, new_end_date=body.new_end_date
    )
    await _invalidate_reports(db)
    return subscription


@router.post("/{subscription_id}/renew", response_model=SubscriptionOut)
async def renew_subscription(
    subscription_id: str,
    body: SubscriptionRenew,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("subscriptions.write")),
):
    subscription = await subscription_service.renew_subscription(
        db, ctx, subscription_id,
        plan_id=body.plan_id,
        create_payment=body.create_payment,
        payment_method=body.payment_method,
    )
    await _invalidate_reports(db)
    return subscription
