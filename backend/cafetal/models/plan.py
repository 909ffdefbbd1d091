"""SubscriptionPlan: catalogue entry a subscription is bought against.

Plans are maintained by the plan catalogue; billing reads the price and
billing cycle at subscription time and never writes back.
"""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, DateTime, JSON, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cafetal.database import Base


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)

    price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="COP")
    # monthly | quarterly | yearly
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)

    # ["pest_tracking", "harvest_reports", ...]
    features: Mapped[list | None] = mapped_column(JSON, default=list)
    # {"max_farms": 3, "max_users": 5}
    limits_config: Mapped[dict | None] = mapped_column(JSON)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
