"""Common schemas used across the application."""

from typing import Generic, Literal, TypeVar

from pydantic import BaseModel

T = TypeVar("T")

SortOrder = Literal["asc", "desc"]


class PaginatedResponse(BaseModel, Generic[T]):
    """Generic paginated response wrapper.

    Usage:
        response_model=PaginatedResponse[PaymentOut]

    Returns:
        {
            "items": [...],
            "total": 150,
            "limit": 50,
            "offset": 0
        }
    """
    items: list[T]
    total: int
    limit: int
    offset: int


class GrowerSummary(BaseModel):
    id: str
    full_name: str
    email: str | None = None
    identification_number: str | None = None

    model_config = {"from_attributes": True}


class PlanSummary(BaseModel):
    id: str
    name: str
    price: float
    currency: str
    billing_cycle: str
    features: list | None = None

    model_config = {"from_attributes": True}
