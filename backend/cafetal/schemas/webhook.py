"""Pydantic schemas for inbound payment-gateway webhooks.

Accepted payload shapes:

    {"event": "transaction.updated",
     "data": {"id": "...", "status": "APPROVED", "reference": "..."}}

    {"event": "transaction.updated",
     "data": {"transaction": {"id": "...", "status": "APPROVED", "reference": "..."}}}
"""

from typing import Any

from pydantic import BaseModel, field_validator


class WebhookTransaction(BaseModel):
    id: str | None = None
    status: str
    reference: str | None = None
    status_message: str | None = None

    model_config = {"extra": "allow"}


class WebhookEvent(BaseModel):
    event: str
    data: WebhookTransaction
    sent_at: str | None = None

    @field_validator("data", mode="before")
    @classmethod
    def unwrap_transaction(cls, v: Any) -> Any:
        if isinstance(v, dict) and isinstance(v.get("transaction"), dict):
            return v["transaction"]
        return v


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str | None = None
