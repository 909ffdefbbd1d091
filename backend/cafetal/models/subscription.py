"""Subscription: a grower's entitlement to a plan over a billing period.

Price, currency and billing cycle are captured when the subscription
is created (or its plan switched at renewal) and do not follow later
plan price changes.

Lifecycle:  pending → active;  active → cancelled | expired | suspended;
            cancelled | suspended | expired → active (reactivate / renew)

At most one subscription per grower may be ``active`` or ``suspended``;
the partial unique index below enforces it in the database.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cafetal.database import Base

SUBSCRIPTION_STATUSES = ("pending", "active", "cancelled", "expired", "suspended")

# Statuses that count against the one-per-grower rule
LIVE_STATUSES = ("active", "suspended")

BILLING_CYCLES = ("monthly", "quarterly", "yearly")

_LIVE_PREDICATE = text("status IN ('active', 'suspended')")


class Subscription(Base):
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Links ────────────────────────────────────────────────
    coffee_grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("coffee_growers.id"), nullable=False, index=True
    )
    plan_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscription_plans.id"), nullable=False, index=True
    )

    # ── Status ───────────────────────────────────────────────
    # pending | active | cancelled | expired | suspended
    status: Mapped[str] = mapped_column(String(20), default="active", index=True)

    # ── Period ───────────────────────────────────────────────
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, index=True)
    next_billing_date: Mapped[date | None] = mapped_column(Date)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)

    # ── Pricing (captured, not live) ─────────────────────────
    price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="COP")
    # monthly | quarterly | yearly
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    # ── Cancellation ─────────────────────────────────────────
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # ── Relationships ────────────────────────────────────────
    grower = relationship("CoffeeGrower", lazy="selectin")
    plan = relationship("SubscriptionPlan", lazy="selectin")
    payments = relationship("Payment", back_populates="subscription", lazy="raise")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "uq_subscriptions_one_live_per_grower",
            "coffee_grower_id",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
    )
