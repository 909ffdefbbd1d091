"""Financial metrics aggregation tests."""

from datetime import date, datetime
from decimal import Decimal

import pytest
import pytest_asyncio

from cafetal.models.payment import Payment
from cafetal.models.subscription import Subscription
from cafetal.services import metrics as metrics_service

NOW = datetime(2024, 3, 15, 12, 0, 0)


def _payment(grower, amount, status, created_at, paid_minutes=None, refund=None, method="CARD"):
    return Payment(
        coffee_grower_id=grower.id,
        amount=Decimal(amount),
        currency="COP",
        payment_method=method,
        status=status,
        created_at=created_at,
        updated_at=created_at,
        payment_date=(
            created_at.replace(minute=created_at.minute + paid_minutes)
            if paid_minutes is not None else None
        ),
        refund_amount=Decimal(refund) if refund else None,
    )


@pytest_asyncio.fixture
async def payment_history(db_session, grower):
    db_session.add_all([
        _payment(grower, "100000", "completed", datetime(2024, 3, 10, 10, 0), paid_minutes=30),
        _payment(grower, "50000", "completed", datetime(2024, 3, 12, 8, 0), paid_minutes=10,
                 refund="20000", method="PSE"),
        _payment(grower, "30000", "failed", datetime(2024, 3, 15, 9, 0)),
        _payment(grower, "40000", "refunded", datetime(2024, 3, 1, 0, 0), paid_minutes=20,
                 refund="40000"),
        _payment(grower, "10000", "pending", datetime(2024, 3, 14, 16, 0)),
        _payment(grower, "70000", "completed", datetime(2023, 12, 1, 9, 0), paid_minutes=5),
    ])
    await db_session.commit()


def _subscription(grower, plan, status, price, cycle, start, end, created_at,
                  auto_renew=True, cancelled_at=None):
    return Subscription(
        coffee_grower_id=grower.id,
        plan_id=plan.id,
        status=status,
        price=Decimal(price),
        currency="COP",
        billing_cycle=cycle,
        start_date=start,
        end_date=end,
        auto_renew=auto_renew,
        cancelled_at=cancelled_at,
        created_at=created_at,
        updated_at=created_at,
    )


@pytest_asyncio.fixture
async def subscription_history(db_session, grower, other_grower, monthly_plan, yearly_plan):
    db_session.add_all([
        _subscription(
            grower, monthly_plan, "active", "100000", "monthly",
            start=date(2024, 2, 14), end=date(2024, 4, 1),
            created_at=datetime(2024, 3, 1, 9, 0),
        ),
        _subscription(
            other_grower, yearly_plan, "active", "1200000", "yearly",
            start=date(2024, 1, 15), end=date(2025, 1, 15),
            created_at=datetime(2024, 2, 20, 9, 0), auto_renew=False,
        ),
        _subscription(
            grower, monthly_plan, "cancelled", "50000", "monthly",
            start=date(2024, 1, 15), end=date(2024, 3, 5),
            created_at=datetime(2024, 1, 20, 9, 0), auto_renew=False,
            cancelled_at=datetime(2024, 3, 5, 10, 0),
        ),
    ])
    await db_session.commit()


@pytest.mark.unit
@pytest.mark.asyncio
class TestPaymentReports:

    async def test_payment_stats(self, db_session, payment_history):
        stats = await metrics_service.get_payment_stats(db_session, now=NOW)

        assert stats.total == 6
        assert (stats.pending, stats.completed, stats.failed, stats.refunded) == (1, 3, 1, 1)
        assert stats.failed_today == 1
        assert stats.total_revenue == 220000.0
        assert stats.total_refunds == 2
        assert stats.total_refund_amount == 60000.0
        assert stats.average_transaction == 73333.33
        assert stats.method_distribution["CARD"].count == 2
        assert stats.method_distribution["PSE"].amount == 50000.0
        assert [(m.month, m.revenue, m.transactions) for m in stats.monthly_revenue] == [
            ("2023-12", 70000.0, 1),
            ("2024-03", 150000.0, 2),
        ]

    async def test_payment_stats_date_range(self, db_session, payment_history):
        stats = await metrics_service.get_payment_stats(
            db_session, date_from=date(2024, 3, 10), date_to=date(2024, 3, 12), now=NOW
        )
        assert stats.total == 2
        assert stats.total_revenue == 150000.0

    async def test_payment_metrics(self, db_session, payment_history):
        metrics = await metrics_service.get_payment_metrics(db_session, window_days=30, now=NOW)

        assert metrics.window_days == 30
        assert metrics.success_rate == 40.0
        assert metrics.refund_rate == 66.67
        assert metrics.average_processing_time == 20.0
        assert [d.date for d in metrics.daily_volume] == [
            "2024-03-01", "2024-03-10", "2024-03-12", "2024-03-14", "2024-03-15",
        ]

    async def test_empty_history(self, db_session):
        metrics = await metrics_service.get_payment_metrics(db_session, now=NOW)
        assert metrics.success_rate == 0.0
        assert metrics.refund_rate == 0.0
        assert metrics.daily_volume == []


@pytest.mark.unit
@pytest.mark.asyncio
class TestSubscriptionReports:

    async def test_recurring_revenue(self, db_session, subscription_history):
        metrics = await metrics_service.get_subscription_metrics(db_session, window_days=30, now=NOW)

        assert metrics.active_subscriptions == 2
        assert metrics.mrr == 200000.0
        assert metrics.arr == 2400000.0
        assert metrics.arpu == 650000.0
        assert metrics.churn_rate == 33.33
        # lifetimes 30, 60 and 50 days
        assert metrics.ltv == 1011111.11
        assert metrics.growth_rate == 100.0

    async def test_subscription_stats(self, db_session, subscription_history):
        stats = await metrics_service.get_subscription_stats(db_session, now=NOW)

        assert stats.total == 3
        assert (stats.active, stats.cancelled, stats.pending) == (2, 1, 0)
        assert stats.expiring_soon == 1
        assert stats.renewal_rate == 50.0
        assert stats.plan_distribution == {"Finca Basica": 2, "Finca Pro Anual": 1}
        assert stats.billing_cycle_distribution == {"monthly": 1, "yearly": 1}
        assert [m.month for m in stats.monthly_new] == ["2024-01", "2024-02", "2024-03"]

    async def test_no_subscriptions(self, db_session):
        metrics = await metrics_service.get_subscription_metrics(db_session, now=NOW)
        assert metrics.mrr == 0.0
        assert metrics.churn_rate == 0.0
        assert metrics.ltv == 0.0
        assert metrics.growth_rate == 0.0


@pytest.mark.unit
class TestNormalisation:

    @pytest.mark.parametrize(
        "price, cycle, monthly",
        [
            ("90000", "monthly", Decimal("90000")),
            ("90000", "quarterly", Decimal("30000")),
            ("1200000", "yearly", Decimal("100000")),
        ],
    )
    def test_monthly_equivalent(self, price, cycle, monthly):
        assert metrics_service.monthly_equivalent(Decimal(price), cycle) == monthly

    def test_annual_equivalent_per_subscription(self):
        assert metrics_service.annual_equivalent(Decimal("100000"), "quarterly") == Decimal("400000")
