"""Pydantic schemas for payment creation, processing, refunds and listing."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator

from cafetal.schemas.common import GrowerSummary

PaymentSortField = Literal["created_at", "updated_at", "payment_date", "amount", "status"]


class PaymentCreate(BaseModel):
    coffee_grower_id: str
    subscription_id: str | None = None
    amount: Decimal
    currency: str = "COP"
    payment_method: str
    payment_provider: str = "wompi"
    description: str | None = None
    metadata: dict[str, Any] = {}

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("Amount must be positive")
        return v

    @field_validator("currency", "payment_method")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.strip().upper()


class PaymentUpdate(BaseModel):
    """Internal field patch; status moves are checked against the lifecycle."""
    status: str | None = None
    provider_transaction_id: str | None = None
    provider_reference: str | None = None
    payment_date: datetime | None = None
    failure_reason: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None


class ProcessPaymentRequest(BaseModel):
    """Method data forwarded to the gateway (tokens only, never card data)."""
    payment_source_id: str | None = None
    acceptance_token: str | None = None
    customer_email: str | None = None
    payment_method: dict[str, Any] = {}


class RefundRequest(BaseModel):
    amount: Decimal | None = None
    reason: str | None = None

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v: Decimal | None) -> Decimal | None:
        if v is not None and v <= 0:
            raise ValueError("Refund amount must be positive")
        return v


class PaymentFilters(BaseModel):
    """Known list filters; each maps to exactly one bound predicate."""
    search: str | None = None
    status: str | None = None
    payment_method: str | None = None
    payment_provider: str | None = None
    coffee_grower_id: str | None = None
    subscription_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None


class PaymentOut(BaseModel):
    id: str
    coffee_grower_id: str
    subscription_id: str | None = None
    amount: float
    currency: str
    payment_method: str
    payment_provider: str
    provider_transaction_id: str | None = None
    provider_reference: str | None = None
    status: str
    payment_date: datetime | None = None
    failure_reason: str | None = None
    refund_amount: float | None = None
    refund_date: datetime | None = None
    description: str | None = None
    # ORM attribute is "extra"; re-validated response dicts carry "metadata"
    metadata: dict | None = Field(default=None, validation_alias=AliasChoices("extra", "metadata"))
    grower: GrowerSummary | None = None
    plan_name: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @classmethod
    def from_payment(cls, payment) -> "PaymentOut":
        out = cls.model_validate(payment)
        sub = payment.subscription
        if sub is not None and sub.plan is not None:
            out.plan_name = sub.plan.name
        return out
