"""Payment: one attempted or completed charge against a grower.

Payments are created pending, settled by the gateway (directly or via
webhook), and optionally refunded once.  Rows are never deleted.

Lifecycle:  pending → completed | failed;  completed → refunded
A partial refund keeps the payment ``completed`` with the refund
columns populated.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cafetal.database import Base

PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")

PAYMENT_METHODS = (
    "CARD",
    "PSE",
    "NEQUI",
    "BANCOLOMBIA_TRANSFER",
    "BANCOLOMBIA_COLLECT",
    "DAVIPLATA",
)

# Legal status moves; a partial refund is not a status move.
PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"completed", "failed"}),
    "completed": frozenset({"refunded"}),
    "failed": frozenset(),
    "refunded": frozenset(),
}


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # ── Links ────────────────────────────────────────────────
    coffee_grower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("coffee_growers.id"), nullable=False, index=True
    )
    subscription_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), index=True
    )

    # ── Amounts ──────────────────────────────────────────────
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="COP")

    # ── Gateway ──────────────────────────────────────────────
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_provider: Mapped[str] = mapped_column(String(30), default="wompi")
    # Filled in once the gateway answers
    provider_transaction_id: Mapped[str | None] = mapped_column(String(100), index=True)
    provider_reference: Mapped[str | None] = mapped_column(String(100), index=True)

    # ── Status ───────────────────────────────────────────────
    # pending | completed | failed | refunded
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime)
    failure_reason: Mapped[str | None] = mapped_column(Text)

    # ── Refund ───────────────────────────────────────────────
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2))
    refund_date: Mapped[datetime | None] = mapped_column(DateTime)

    # ── Metadata ─────────────────────────────────────────────
    description: Mapped[str | None] = mapped_column(Text)
    # "metadata" is reserved on declarative classes
    extra: Mapped[dict | None] = mapped_column("metadata", JSON, default=dict)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # ── Relationships ────────────────────────────────────────
    grower = relationship("CoffeeGrower", lazy="selectin")
    subscription = relationship("Subscription", back_populates="payments", lazy="selectin")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint(
            "refund_amount IS NULL OR (refund_amount > 0 AND refund_amount <= amount)",
            name="ck_payments_refund_bounds",
        ),
    )
