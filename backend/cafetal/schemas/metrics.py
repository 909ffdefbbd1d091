"""Response schemas for billing reports.

All figures are reporting estimates; nothing here is used for billing.
Percentages run from 0 to 100, rounded to 2 decimals.
"""

from pydantic import BaseModel


class AmountBucket(BaseModel):
    count: int
    amount: float


class MonthlyRevenue(BaseModel):
    month: str  # YYYY-MM
    revenue: float
    transactions: int


class DailyVolume(BaseModel):
    date: str  # YYYY-MM-DD
    transactions: int
    volume: float


class MonthlyNew(BaseModel):
    month: str  # YYYY-MM
    revenue: float
    subscriptions: int


class PaymentStats(BaseModel):
    total: int
    pending: int
    completed: int
    failed: int
    refunded: int
    failed_today: int
    total_revenue: float
    total_refunds: int
    total_refund_amount: float
    average_transaction: float
    status_distribution: dict[str, AmountBucket]
    method_distribution: dict[str, AmountBucket]
    monthly_revenue: list[MonthlyRevenue]


class PaymentMetrics(BaseModel):
    window_days: int
    success_rate: float
    average_processing_time: float  # minutes
    refund_rate: float
    daily_volume: list[DailyVolume]


class SubscriptionStats(BaseModel):
    total: int
    pending: int
    active: int
    cancelled: int
    expired: int
    suspended: int
    expiring_soon: int
    renewal_rate: float
    status_distribution: dict[str, int]
    plan_distribution: dict[str, int]
    billing_cycle_distribution: dict[str, int]
    monthly_new: list[MonthlyNew]


class SubscriptionMetrics(BaseModel):
    window_days: int
    active_subscriptions: int
    mrr: float
    arr: float
    churn_rate: float
    arpu: float
    ltv: float
    growth_rate: float
