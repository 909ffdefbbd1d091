"""Payment gateway client.

The billing services only talk to the ``PaymentGateway`` interface:

  charge(payment, method_data)          → GatewayResult
  refund(payment, amount, reason)       → GatewayResult
  get_transaction(transaction_id)       → GatewayResult

``WompiGateway`` is the production implementation (Wompi, Colombia).
Tests swap in a deterministic implementation through the
``get_gateway`` dependency.

Error contract:
  - timeout / connection failure  → GatewayUnavailableError (outcome unknown)
  - HTTP error or unusable body   → GatewayError (the processor said no)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal

import httpx

from cafetal.config import settings
from cafetal.middleware.exceptions import GatewayError, GatewayUnavailableError
from cafetal.models.payment import Payment

logger = logging.getLogger(__name__)

# Provider status → local payment status
WOMPI_STATUS_MAP = {
    "APPROVED": "completed",
    "DECLINED": "failed",
    "ERROR": "failed",
    "PENDING": "pending",
}

# Provider statuses meaning a refund / void was accepted
REFUND_ACCEPTED_STATUSES = frozenset({"APPROVED", "VOIDED"})


def map_provider_status(provider_status: str | None) -> str | None:
    """Return the local status for a provider status, or None if unknown."""
    if not provider_status:
        return None
    return WOMPI_STATUS_MAP.get(provider_status.upper())


def reference_for(payment_id: str) -> str:
    return f"CAF-{payment_id}"


def payment_reference(payment: Payment) -> str:
    """Reference we hand to the gateway; webhooks may echo it back."""
    return payment.provider_reference or reference_for(payment.id)


@dataclass
class GatewayResult:
    provider_status: str
    transaction_id: str | None = None
    reference: str | None = None
    message: str | None = None
    raw: dict = field(default_factory=dict)

    @property
    def status(self) -> str | None:
        return map_provider_status(self.provider_status)

    @property
    def refund_accepted(self) -> bool:
        return self.provider_status.upper() in REFUND_ACCEPTED_STATUSES


class PaymentGateway(ABC):
    provider: str = "wompi"

    @abstractmethod
    async def charge(self, payment: Payment, method_data: dict) -> GatewayResult:
        ...

    @abstractmethod
    async def refund(self, payment: Payment, amount: Decimal, reason: str | None) -> GatewayResult:
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> GatewayResult:
        ...


def _to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


class WompiGateway(PaymentGateway):
    provider = "wompi"

    def __init__(
        self,
        base_url: str | None = None,
        private_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.private_key = private_key if private_key is not None else settings.gateway_private_key
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.transport = transport

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.private_key}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, json: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(method, url, headers=self._headers(), json=json)
        except httpx.TimeoutException as e:
            logger.warning("Wompi timeout on %s %s: %s", method, path, e)
            raise GatewayUnavailableError("Payment gateway timed out", self.provider) from e
        except httpx.TransportError as e:
            logger.warning("Wompi transport error on %s %s: %s", method, path, e)
            raise GatewayUnavailableError("Payment gateway unreachable", self.provider) from e

        if resp.status_code >= 400:
            logger.error("Wompi API error %s on %s: %s", resp.status_code, path, resp.text)
            raise GatewayError(
                f"Payment gateway rejected the request (HTTP {resp.status_code})",
                self.provider,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise GatewayError("Payment gateway returned a malformed response", self.provider) from e

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or "status" not in data:
            raise GatewayError("Payment gateway response is missing transaction data", self.provider)
        return data

    def _result(self, data: dict) -> GatewayResult:
        return GatewayResult(
            provider_status=str(data["status"]),
            transaction_id=data.get("id"),
            reference=data.get("reference"),
            message=data.get("status_message"),
            raw=data,
        )

    async def charge(self, payment: Payment, method_data: dict) -> GatewayResult:
        grower = payment.grower
        payload = {
            "amount_in_cents": _to_cents(payment.amount),
            "currency": payment.currency,
            "reference": payment_reference(payment),
            "customer_email": method_data.get("customer_email") or (grower.email if grower else None),
            "payment_method": {"type": payment.payment_method, **method_data.get("payment_method", {})},
        }
        if method_data.get("payment_source_id"):
            payload["payment_source_id"] = method_data["payment_source_id"]
        if method_data.get("acceptance_token"):
            payload["acceptance_token"] = method_data["acceptance_token"]

        data = await self._request("POST", "/transactions", json=payload)
        return self._result(data)

    async def refund(self, payment: Payment, amount: Decimal, reason: str | None) -> GatewayResult:
        if not payment.provider_transaction_id:
            raise GatewayError("Payment has no gateway transaction to refund", self.provider)
        data = await self._request(
            "POST",
            f"/transactions/{payment.provider_transaction_id}/void",
            json={"amount_in_cents": _to_cents(amount)},
        )
        return self._result(data)

    async def get_transaction(self, transaction_id: str) -> GatewayResult:
        data = await self._request("GET", f"/transactions/{transaction_id}")
        return self._result(data)


_gateway: PaymentGateway | None = None


def get_gateway() -> PaymentGateway:
    """FastAPI dependency returning the process-wide gateway client."""
    global _gateway
    if _gateway is None:
        _gateway = WompiGateway()
    return _gateway
