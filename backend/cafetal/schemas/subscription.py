"""Pydantic schemas for subscription lifecycle calls and listing."""

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, field_validator

from cafetal.schemas.common import GrowerSummary, PlanSummary

SubscriptionSortField = Literal[
    "created_at", "updated_at", "start_date", "end_date",
    "next_billing_date", "price", "status",
]


class SubscriptionCreate(BaseModel):
    coffee_grower_id: str
    plan_id: str
    start_date: date
    end_date: date | None = None
    billing_cycle: str | None = None
    price: Decimal | None = None
    currency: str | None = None
    auto_renew: bool = True
    require_payment: bool = False
    payment_method: str = "CARD"

    @field_validator("price")
    @classmethod
    def price_positive(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v <= 0:
            raise ValueError("Price must be positive")
        return v


class SubscriptionCancel(BaseModel):
    reason: str
    immediate: bool = False

    @field_validator("reason")
    @classmethod
    def reason_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("A cancellation reason is required")
        return v


class SubscriptionReactivate(BaseModel):
    new_end_date: date | None = None


class SubscriptionRenew(BaseModel):
    plan_id: str | None = None
    create_payment: bool = False
    payment_method: str = "CARD"


class SubscriptionFilters(BaseModel):
    search: str | None = None
    status: str | None = None
    plan_id: str | None = None
    billing_cycle: str | None = None
    coffee_grower_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None


class SubscriptionOut(BaseModel):
    id: str
    coffee_grower_id: str
    plan_id: str
    status: str
    start_date: date
    end_date: date | None = None
    next_billing_date: date | None = None
    auto_renew: bool
    price: float
    currency: str
    billing_cycle: str
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    grower: GrowerSummary | None = None
    plan: PlanSummary | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
