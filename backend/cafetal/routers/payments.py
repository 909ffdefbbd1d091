"""Administrative payment endpoints.

Endpoints:
    GET  /api/payments                       List payments (filters, paging, sort)
    GET  /api/payments/stats                 Counts, revenue and distributions
    GET  /api/payments/metrics               Success / refund rate, processing time
    GET  /api/payments/{id}                  Payment with grower and plan
    POST /api/payments                       Create a pending payment
    PUT  /api/payments/{id}                  Patch fields / move status
    POST /api/payments/{id}/process          Charge through the gateway
    POST /api/payments/{id}/refund           Full or partial refund
    POST /api/payments/{id}/refresh          Re-query the gateway for its status
"""

from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from cafetal.auth.deps import Actor, get_request_context, require_permission
from cafetal.database import get_db
from cafetal.schemas.common import PaginatedResponse, SortOrder
from cafetal.schemas.metrics import PaymentMetrics, PaymentStats
from cafetal.schemas.payment import (
    PaymentCreate,
    PaymentFilters,
    PaymentOut,
    PaymentSortField,
    PaymentUpdate,
    ProcessPaymentRequest,
    RefundRequest,
)
from cafetal.services import metrics as metrics_service
from cafetal.services import payments as payment_service
from cafetal.services import subscriptions  # noqa: F401  registers the PaymentCompleted handler
from cafetal.services.context import RequestContext
from cafetal.services.gateway import PaymentGateway, get_gateway
from cafetal.utils.cache import cached, invalidate_cache

router = APIRouter()


async def _commit_and_invalidate(db: AsyncSession) -> None:
    """Reports are cleared only once the change is visible to other sessions."""
    await db.commit()
    await invalidate_cache("payment_reports:*")


# ── GET /api/payments ────────────────────────────────────────

@router.get("", response_model=PaginatedResponse[PaymentOut])
async def list_payments(
    search: str | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    payment_method: str | None = Query(None),
    payment_provider: str | None = Query(None),
    coffee_grower_id: str | None = Query(None),
    subscription_id: str | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    min_amount: float | None = Query(None, ge=0),
    max_amount: float | None = Query(None, ge=0),
    sort_by: PaymentSortField = Query("created_at"),
    sort_order: SortOrder = Query("desc"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("payments.read")),
):
    filters = PaymentFilters(
        search=search,
        status=status_filter,
        payment_method=payment_method,
        payment_provider=payment_provider,
        coffee_grower_id=coffee_grower_id,
        subscription_id=subscription_id,
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
    )
    items, total = await payment_service.list_payments(
        db, filters, limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order
    )
    return PaginatedResponse(
        items=[PaymentOut.from_payment(p) for p in items],
        total=total,
        limit=limit,
        offset=offset,
    )


# ── Reports ──────────────────────────────────────────────────

@router.get("/stats", response_model=PaymentStats)
@cached(prefix="payment_reports")
async def payment_stats(
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("billing_reports.read")),
):
    return await metrics_service.get_payment_stats(db, date_from=date_from, date_to=date_to)


@router.get("/metrics", response_model=PaymentMetrics)
@cached(prefix="payment_reports")
async def payment_metrics(
    window_days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("billing_reports.read")),
):
    return await metrics_service.get_payment_metrics(db, window_days=window_days)


# ── Single payment ───────────────────────────────────────────

@router.get("/{payment_id}", response_model=PaymentOut)
async def get_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(require_permission("payments.read")),
):
    payment = await payment_service.get_payment(db, payment_id)
    return PaymentOut.from_payment(payment)


@router.post("", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def create_payment(
    body: PaymentCreate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("payments.write")),
):
    payment = await payment_service.create_payment(db, ctx, body)
    await _commit_and_invalidate(db)
    return PaymentOut.from_payment(payment)


@router.put("/{payment_id}", response_model=PaymentOut)
async def update_payment(
    payment_id: str,
    body: PaymentUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("payments.write")),
):
    payment = await payment_service.update_payment(db, ctx, payment_id, body)
    await _commit_and_invalidate(db)
    return PaymentOut.from_payment(payment)


@router.post("/{payment_id}/process", response_model=PaymentOut)
async def process_payment(
    payment_id: str,
    body: ProcessPaymentRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("payments.write")),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payment = await payment_service.process_with_gateway(
        db, ctx, gateway, payment_id, body.model_dump(exclude_none=True)
    )
    await _commit_and_invalidate(db)
    return PaymentOut.from_payment(payment)


@router.post("/{payment_id}/refund", response_model=PaymentOut)
async def refund_payment(
    payment_id: str,
    body: RefundRequest,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("payments.write")),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payment = await payment_service.refund_payment(
        db, ctx, gateway, payment_id, amount=body.amount, reason=body.reason
    )
    await _commit_and_invalidate(db)
    return PaymentOut.from_payment(payment)


@router.post("/{payment_id}/refresh", response_model=PaymentOut)
async def refresh_payment(
    payment_id: str,
    db: AsyncSession = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context("payments.write")),
    gateway: PaymentGateway = Depends(get_gateway),
):
    payment = await payment_service.refresh_payment_status(db, ctx, gateway, payment_id)
    await _commit_and_invalidate(db)
    return PaymentOut.from_payment(payment)
