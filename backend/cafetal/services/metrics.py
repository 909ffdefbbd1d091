"""Financial reporting over payment and subscription history.

Read-only.  Counts and sums are pushed to SQL; per-period series and
per-subscription normalisation (MRR/ARR) are folded in Python so the
same code runs on PostgreSQL and SQLite.

Formulas:
  success rate   = completed / all payments created in the window
  refund rate    = payments with a refund / payments that reached completed
  MRR            = Σ active price / months-per-cycle
  ARR            = Σ active price × 12 / months-per-cycle  (per subscription)
  churn rate     = cancelled in window / (active + cancelled in window)
  ARPU           = mean price of active subscriptions
  LTV            = mean lifetime (days / 30) × ARPU
  growth rate    = new this window vs the window before
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cafetal.config import settings
from cafetal.models.payment import PAYMENT_STATUSES, Payment
from cafetal.models.plan import SubscriptionPlan
from cafetal.models.subscription import SUBSCRIPTION_STATUSES, Subscription
from cafetal.schemas.metrics import (
    AmountBucket,
    DailyVolume,
    MonthlyNew,
    MonthlyRevenue,
    PaymentMetrics,
    PaymentStats,
    SubscriptionMetrics,
    SubscriptionStats,
)
from cafetal.services.billing import CYCLE_MONTHS
from cafetal.services.context import utcnow

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _money(value) -> float:
    if value is None:
        return 0.0
    return float(Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def _pct(part, whole) -> float:
    if not whole:
        return 0.0
    return round(float(part) / float(whole) * 100, 2)


def _month_start(now: datetime, months_back: int) -> datetime:
    first = now.date().replace(day=1) - relativedelta(months=months_back)
    return datetime.combine(first, time.min)


# ── Payments ─────────────────────────────────────────────────

async def get_payment_stats(
    db: AsyncSession,
    date_from: date | None = None,
    date_to: date | None = None,
    now: datetime | None = None,
) -> PaymentStats:
    """Counts, revenue and distributions, optionally limited by creation date."""
    now = now or utcnow()
    scope = []
    if date_from:
        scope.append(Payment.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        scope.append(Payment.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    status_rows = (
        await db.execute(
            select(Payment.status, func.count(Payment.id), func.sum(Payment.amount))
            .where(*scope)
            .group_by(Payment.status)
        )
    ).all()
    status_distribution = {
        status: AmountBucket(count=count, amount=_money(amount))
        for status, count, amount in status_rows
    }
    counts = {s: 0 for s in PAYMENT_STATUSES}
    for status, bucket in status_distribution.items():
        counts[status] = bucket.count

    method_rows = (
        await db.execute(
            select(Payment.payment_method, func.count(Payment.id), func.sum(Payment.amount))
            .where(Payment.status == "completed", *scope)
            .group_by(Payment.payment_method)
        )
    ).all()
    method_distribution = {
        method: AmountBucket(count=count, amount=_money(amount))
        for method, count, amount in method_rows
    }

    today_start = datetime.combine(now.date(), time.min)
    failed_today = (
        await db.execute(
            select(func.count(Payment.id)).where(
                Payment.status == "failed",
                Payment.created_at >= today_start,
            )
        )
    ).scalar() or 0

    refund_count, refund_total = (
        await db.execute(
            select(func.count(Payment.id), func.sum(Payment.refund_amount))
            .where(Payment.refund_amount.is_not(None), *scope)
        )
    ).one()

    avg_transaction = (
        await db.execute(
            select(func.avg(Payment.amount)).where(Payment.status == "completed", *scope)
        )
    ).scalar()

    revenue_rows = (
        await db.execute(
            select(Payment.payment_date, Payment.amount).where(
                Payment.status == "completed",
                Payment.payment_date >= _month_start(now, 11),
            )
        )
    ).all()
    monthly: dict[str, list] = defaultdict(lambda: [Decimal(0), 0])
    for paid_at, amount in revenue_rows:
        bucket = monthly[paid_at.strftime("%Y-%m")]
        bucket[0] += Decimal(amount)
        bucket[1] += 1

    completed = status_distribution.get("completed")
    return PaymentStats(
        total=sum(counts.values()),
        pending=counts["pending"],
        completed=counts["completed"],
        failed=counts["failed"],
        refunded=counts["refunded"],
        failed_today=failed_today,
        total_revenue=completed.amount if completed else 0.0,
        total_refunds=refund_count or 0,
        total_refund_amount=_money(refund_total),
        average_transaction=_money(avg_transaction),
        status_distribution=status_distribution,
        method_distribution=method_distribution,
        monthly_revenue=[
            MonthlyRevenue(month=month, revenue=_money(revenue), transactions=n)
            for month, (revenue, n) in sorted(monthly.items())
        ],
    )


async def get_payment_metrics(
    db: AsyncSession,
    window_days: int | None = None,
    now: datetime | None = None,
) -> PaymentMetrics:
    """Success, processing time, refund rate and daily volume over a trailing window."""
    now = now or utcnow()
    window_days = window_days or settings.metrics_window_days
    since = now - timedelta(days=window_days)

    rows = (
        await db.execute(
            select(
                Payment.status,
                Payment.amount,
                Payment.created_at,
                Payment.payment_date,
                Payment.refund_amount,
            ).where(Payment.created_at >= since)
        )
    ).all()

    total = len(rows)
    successful = 0
    reached_completed = 0
    with_refund = 0
    processing_minutes: list[float] = []
    daily: dict[str, list] = defaultdict(lambda: [0, Decimal(0)])

    for status, amount, created_at, payment_date, refund_amount in rows:
        if status == "completed":
            successful += 1
        if status in ("completed", "refunded"):
            reached_completed += 1
            if payment_date is not None:
                processing_minutes.append((payment_date - created_at).total_seconds() / 60)
        if refund_amount is not None:
            with_refund += 1
        bucket = daily[created_at.strftime("%Y-%m-%d")]
        bucket[0] += 1
        bucket[1] += Decimal(amount)

    avg_processing = (
        round(sum(processing_minutes) / len(processing_minutes), 2) if processing_minutes else 0.0
    )

    return PaymentMetrics(
        window_days=window_days,
        success_rate=_pct(successful, total),
        average_processing_time=avg_processing,
        refund_rate=_pct(with_refund, reached_completed),
        daily_volume=[
            DailyVolume(date=day, transactions=n, volume=_money(volume))
            for day, (n, volume) in sorted(daily.items())
        ],
    )


# ── Subscriptions ────────────────────────────────────────────

async def get_subscription_stats(
    db: AsyncSession,
    now: datetime | None = None,
) -> SubscriptionStats:
    now = now or utcnow()
    today = now.date()

    status_rows = (
        await db.execute(
            select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
        )
    ).all()
    status_distribution = {status: count for status, count in status_rows}
    counts = {s: status_distribution.get(s, 0) for s in SUBSCRIPTION_STATUSES}

    plan_rows = (
        await db.execute(
            select(SubscriptionPlan.name, func.count(Subscription.id))
            .join(SubscriptionPlan, SubscriptionPlan.id == Subscription.plan_id)
            .group_by(SubscriptionPlan.id, SubscriptionPlan.name)
            .order_by(func.count(Subscription.id).desc())
        )
    ).all()

    cycle_rows = (
        await db.execute(
            select(Subscription.billing_cycle, func.count(Subscription.id))
            .where(Subscription.status == "active")
            .group_by(Subscription.billing_cycle)
        )
    ).all()

    expiring_soon = (
        await db.execute(
            select(func.count(Subscription.id)).where(
                Subscription.status == "active",
                Subscription.end_date >= today,
                Subscription.end_date <= today + timedelta(days=settings.expiring_soon_days),
            )
        )
    ).scalar() or 0

    auto_renew_count = (
        await db.execute(
            select(func.count(Subscription.id)).where(
                Subscription.status == "active",
                Subscription.auto_renew.is_(True),
            )
        )
    ).scalar() or 0

    new_rows = (
        await db.execute(
            select(Subscription.created_at, Subscription.price).where(
                Subscription.created_at >= _month_start(now, 11)
            )
        )
    ).all()
    monthly: dict[str, list] = defaultdict(lambda: [Decimal(0), 0])
    for created_at, price in new_rows:
        bucket = monthly[created_at.strftime("%Y-%m")]
        bucket[0] += Decimal(price)
        bucket[1] += 1

    return SubscriptionStats(
        total=sum(status_distribution.values()),
        pending=counts["pending"],
        active=counts["active"],
        cancelled=counts["cancelled"],
        expired=counts["expired"],
        suspended=counts["suspended"],
        expiring_soon=expiring_soon,
        renewal_rate=_pct(auto_renew_count, counts["active"]),
        status_distribution=status_distribution,
        plan_distribution={name: count for name, count in plan_rows},
        billing_cycle_distribution={cycle: count for cycle, count in cycle_rows},
        monthly_new=[
            MonthlyNew(month=month, revenue=_money(revenue), subscriptions=n)
            for month, (revenue, n) in sorted(monthly.items())
        ],
    )


def monthly_equivalent(price: Decimal, billing_cycle: str) -> Decimal:
    """Price normalised to one month of revenue."""
    return Decimal(price) / CYCLE_MONTHS[billing_cycle]


def annual_equivalent(price: Decimal, billing_cycle: str) -> Decimal:
    """Price normalised to one year of revenue."""
    return Decimal(price) * 12 / CYCLE_MONTHS[billing_cycle]


async def get_subscription_metrics(
    db: AsyncSession,
    window_days: int | None = None,
    now: datetime | None = None,
) -> SubscriptionMetrics:
    """MRR, ARR, churn, ARPU, LTV and growth over a trailing window."""
    now = now or utcnow()
    today = now.date()
    window_days = window_days or settings.metrics_window_days
    since = now - timedelta(days=window_days)
    previous_since = since - timedelta(days=window_days)

    active_rows = (
        await db.execute(
            select(Subscription.price, Subscription.billing_cycle).where(
                Subscription.status == "active"
            )
        )
    ).all()

    mrr = Decimal(0)
    arr = Decimal(0)
    for price, cycle in active_rows:
        if cycle not in CYCLE_MONTHS:
            logger.warning("Skipping subscription with unknown billing cycle %r in MRR", cycle)
            continue
        mrr += monthly_equivalent(price, cycle)
        arr += annual_equivalent(price, cycle)

    active_count = len(active_rows)
    arpu = (
        sum((Decimal(price) for price, _ in active_rows), Decimal(0)) / active_count
        if active_count else Decimal(0)
    )

    churned = (
        await db.execute(
            select(func.count(Subscription.id)).where(
                Subscription.status == "cancelled",
                Subscription.cancelled_at >= since,
            )
        )
    ).scalar() or 0

    lifetime_rows = (
        await db.execute(
            select(Subscription.start_date, Subscription.cancelled_at).where(
                Subscription.status != "pending"
            )
        )
    ).all()
    lifetimes = [
        max(((cancelled_at.date() if cancelled_at else today) - start_date).days, 0)
        for start_date, cancelled_at in lifetime_rows
    ]
    avg_lifetime_months = (
        Decimal(sum(lifetimes)) / len(lifetimes) / 30 if lifetimes else Decimal(0)
    )

    current_new = (
        await db.execute(
            select(func.count(Subscription.id)).where(Subscription.created_at >= since)
        )
    ).scalar() or 0
    previous_new = (
        await db.execute(
            select(func.count(Subscription.id)).where(
                Subscription.created_at >= previous_since,
                Subscription.created_at < since,
            )
        )
    ).scalar() or 0
    if previous_new:
        growth_rate = round((current_new - previous_new) / previous_new * 100, 2)
    else:
        growth_rate = 100.0 if current_new else 0.0

    return SubscriptionMetrics(
        window_days=window_days,
        active_subscriptions=active_count,
        mrr=_money(mrr),
        arr=_money(arr),
        churn_rate=_pct(churned, active_count + churned),
        arpu=_money(arpu),
        ltv=_money(avg_lifetime_months * arpu),
        growth_rate=growth_rate,
    )
