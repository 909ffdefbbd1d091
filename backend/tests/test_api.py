"""HTTP endpoint tests for payments, subscriptions and webhooks."""

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from cafetal.middleware.exceptions import ConcurrentUpdateError
from cafetal.models.audit_log import AuditLog
from cafetal.routers import payments as payments_router
from cafetal.routers import subscriptions as subscriptions_router
from cafetal.routers import webhooks as webhooks_router
from cafetal.services import webhooks as webhook_service


async def _create_payment(client, headers, grower, amount=150000, **extra):
    resp = await client.post(
        "/api/payments",
        json={
            "coffee_grower_id": grower.id,
            "amount": amount,
            "payment_method": "card",
            **extra,
        },
        headers=headers,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def _webhook(status: str, transaction_id: str, reference: str | None = None) -> dict:
    return {
        "event": "transaction.updated",
        "data": {"id": transaction_id, "status": status, "reference": reference},
    }


@pytest.mark.api
@pytest.mark.asyncio
class TestAuthRequired:

    async def test_list_payments_requires_auth(self, client: AsyncClient):
        resp = await client.get("/api/payments")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "HTTP_401"

    async def test_subscription_metrics_requires_auth(self, client: AsyncClient):
        resp = await client.get("/api/subscriptions/metrics")
        assert resp.status_code == 401

    async def test_viewer_cannot_refund(self, client: AsyncClient, viewer_headers):
        resp = await client.post("/api/payments/any/refund", json={}, headers=viewer_headers)
        assert resp.status_code == 403

    async def test_viewer_can_read_reports(self, client: AsyncClient, viewer_headers):
        resp = await client.get("/api/payments/stats", headers=viewer_headers)
        assert resp.status_code == 200
        assert resp.json()["total"] == 0

    async def test_garbage_token(self, client: AsyncClient):
        resp = await client.get(
            "/api/payments", headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert resp.status_code == 401


@pytest.mark.api
@pytest.mark.asyncio
class TestPaymentEndpoints:

    async def test_create_and_get(self, client: AsyncClient, auth_headers, grower):
        created = await _create_payment(
            client, auth_headers, grower, metadata={"invoice": "F-77"}
        )
        assert created["status"] == "pending"
        assert created["payment_method"] == "CARD"
        assert created["metadata"] == {"invoice": "F-77"}
        assert created["grower"]["full_name"] == "Ana Restrepo"

        resp = await client.get(f"/api/payments/{created['id']}", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["amount"] == 150000.0

    async def test_request_id_reaches_audit(self, client: AsyncClient, auth_headers, grower, db_session):
        headers = {**auth_headers, "X-Request-ID": "req-abc"}
        created = await _create_payment(client, headers, grower)

        entry = (
            await db_session.execute(
                select(AuditLog).where(AuditLog.resource_id == created["id"])
            )
        ).scalar_one()
        assert entry.correlation_id == "req-abc"
        assert entry.actor_id == "admin-1"

    async def test_request_id_header_echoed(self, client: AsyncClient):
        resp = await client.get("/health", headers={"X-Request-ID": "trace-1"})
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == "trace-1"

    async def test_negative_amount_is_validation_error(self, client: AsyncClient, auth_headers, grower):
        resp = await client.post(
            "/api/payments",
            json={"coffee_grower_id": grower.id, "amount": -5, "payment_method": "CARD"},
            headers=auth_headers,
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_unknown_grower_is_not_found(self, client: AsyncClient, auth_headers):
        resp = await client.post(
            "/api/payments",
            json={"coffee_grower_id": "nobody", "amount": 1000, "payment_method": "CARD"},
            headers=auth_headers,
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    async def test_process_and_refund(self, client: AsyncClient, auth_headers, grower):
        created = await _create_payment(client, auth_headers, grower)

        resp = await client.post(
            f"/api/payments/{created['id']}/process",
            json={"acceptance_token": "tok-1"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"

        resp = await client.post(
            f"/api/payments/{created['id']}/refund",
            json={"amount": 50000, "reason": "Ajuste"},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["refund_amount"] == 50000.0
        assert resp.json()["status"] == "completed"

        resp = await client.post(
            f"/api/payments/{created['id']}/refund", json={}, headers=auth_headers
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "STATE_CONFLICT"

    async def test_gateway_decline(self, client: AsyncClient, auth_headers, grower, gateway):
        gateway.charges.append("DECLINED")
        created = await _create_payment(client, auth_headers, grower, amount=50000)

        resp = await client.post(
            f"/api/payments/{created['id']}/process", json={}, headers=auth_headers
        )
        body = resp.json()
        assert body["status"] == "failed"
        assert body["failure_reason"]
        assert body["refund_amount"] is None

    async def test_list_with_filters(self, client: AsyncClient, auth_headers, grower):
        await _create_payment(client, auth_headers, grower, amount=1000)
        await _create_payment(client, auth_headers, grower, amount=2000)

        resp = await client.get(
            "/api/payments",
            params={"status": "pending", "sort_by": "amount", "sort_order": "asc", "limit": 1},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["total"] == 2
        assert len(body["items"]) == 1
        assert body["items"][0]["amount"] == 1000.0

    async def test_list_rejects_unknown_sort(self, client: AsyncClient, auth_headers):
        resp = await client.get(
            "/api/payments", params={"sort_by": "grower_id"}, headers=auth_headers
        )
        assert resp.status_code == 422


@pytest.mark.api
@pytest.mark.asyncio
class TestSubscriptionEndpoints:

    async def test_lifecycle(self, client: AsyncClient, auth_headers, grower, monthly_plan):
        resp = await client.post(
            "/api/subscriptions",
            json={
                "coffee_grower_id": grower.id,
                "plan_id": monthly_plan.id,
                "start_date": "2024-01-31",
            },
            headers=auth_headers,
        )
        assert resp.status_code == 201, resp.text
        sub = resp.json()
        assert sub["end_date"] == "2024-02-29"
        assert sub["plan"]["name"] == "Finca Basica"

        resp = await client.post(
            "/api/subscriptions",
            json={
                "coffee_grower_id": grower.id,
                "plan_id": monthly_plan.id,
                "start_date": "2024-03-01",
            },
            headers=auth_headers,
        )
        assert resp.status_code == 409

        resp = await client.post(
            f"/api/subscriptions/{sub['id']}/cancel",
            json={"reason": "Temporada baja", "immediate": True},
            headers=auth_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        resp = await client.post(
            f"/api/subscriptions/{sub['id']}/reactivate", json={}, headers=auth_headers
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"

        resp = await client.post(
            f"/api/subscriptions/{sub['id']}/renew", json={}, headers=auth_headers
        )
        assert resp.status_code == 200

        resp = await client.get(
            "/api/subscriptions", params={"status": "active"}, headers=auth_headers
        )
        assert resp.json()["total"] == 1

    async def test_cancel_requires_reason(self, client: AsyncClient, auth_headers, grower, monthly_plan):
        resp = await client.post(
            "/api/subscriptions",
            json={"coffee_grower_id": grower.id, "plan_id": monthly_plan.id, "start_date": "2024-03-01"},
            headers=auth_headers,
        )
        resp = await client.post(
            f"/api/subscriptions/{resp.json()['id']}/cancel",
            json={"reason": ""},
            headers=auth_headers,
        )
        assert resp.status_code == 422

    async def test_metrics(self, client: AsyncClient, auth_headers, grower, monthly_plan):
        await client.post(
            "/api/subscriptions",
            json={"coffee_grower_id": grower.id, "plan_id": monthly_plan.id, "start_date": "2024-03-01"},
            headers=auth_headers,
        )
        resp = await client.get("/api/subscriptions/metrics", headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["mrr"] == 50000.0

        resp = await client.get("/api/subscriptions/stats", headers=auth_headers)
        assert resp.json()["active"] == 1


@pytest.mark.api
@pytest.mark.asyncio
class TestWebhookEndpoint:

    async def test_unknown_transaction_acknowledged(self, client: AsyncClient, db_session):
        resp = await client.post("/api/webhooks/wompi", json=_webhook("APPROVED", "tx-404"))

        assert resp.status_code == 200
        assert resp.json()["received"] is True
        assert resp.json()["outcome"] == "not_found"
        assert (await db_session.execute(select(func.count(AuditLog.id)))).scalar() == 0

    async def test_replay_writes_one_entry(
        self, client: AsyncClient, auth_headers, grower, gateway, db_session
    ):
        gateway.charges.append("PENDING")
        created = await _create_payment(client, auth_headers, grower)
        resp = await client.post(
            f"/api/payments/{created['id']}/process", json={}, headers=auth_headers
        )
        tx_id = resp.json()["provider_transaction_id"]

        first = await client.post("/api/webhooks/wompi", json=_webhook("APPROVED", tx_id))
        second = await client.post("/api/webhooks/wompi", json=_webhook("APPROVED", tx_id))

        assert first.json()["outcome"] == "applied"
        assert second.status_code == 200
        assert second.json()["outcome"] == "duplicate"

        count = (
            await db_session.execute(
                select(func.count(AuditLog.id)).where(AuditLog.action == "webhook_update")
            )
        ).scalar()
        assert count == 1

        resp = await client.get(f"/api/payments/{created['id']}", headers=auth_headers)
        assert resp.json()["status"] == "completed"

    async def test_activates_pending_subscription(
        self, client: AsyncClient, auth_headers, grower, monthly_plan, gateway
    ):
        resp = await client.post(
            "/api/subscriptions",
            json={
                "coffee_grower_id": grower.id,
                "plan_id": monthly_plan.id,
                "start_date": "2024-03-01",
                "require_payment": True,
            },
            headers=auth_headers,
        )
        sub = resp.json()
        assert sub["status"] == "pending"

        resp = await client.get(
            "/api/payments", params={"subscription_id": sub["id"]}, headers=auth_headers
        )
        payment = resp.json()["items"][0]
        assert payment["plan_name"] == "Finca Basica"

        gateway.charges.append("PENDING")
        resp = await client.post(
            f"/api/payments/{payment['id']}/process", json={}, headers=auth_headers
        )
        reference = resp.json()["provider_reference"]

        resp = await client.post(
            "/api/webhooks/wompi",
            json={
                "event": "transaction.updated",
                "data": {"transaction": {"id": "tx-other", "status": "APPROVED", "reference": reference}},
            },
        )
        assert resp.json()["outcome"] == "applied"

        resp = await client.get(f"/api/subscriptions/{sub['id']}", headers=auth_headers)
        assert resp.json()["status"] == "active"

    async def test_store_failure_asks_for_redelivery(self, client: AsyncClient, monkeypatch):
        async def _conflict(db, ctx, event):
            raise ConcurrentUpdateError("Payment", "p-1")

        monkeypatch.setattr(webhook_service, "reconcile_transaction", _conflict)
        resp = await client.post("/api/webhooks/wompi", json=_webhook("APPROVED", "tx-1"))

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "RETRY_LATER"

    async def test_malformed_payload(self, client: AsyncClient):
        resp = await client.post("/api/webhooks/wompi", json={"event": "transaction.updated"})
        assert resp.status_code == 422


def _record_invalidations(monkeypatch, db_session, module) -> list:
    """Capture (pattern, transaction still open) for each cache clear."""
    seen = []

    async def record(pattern):
        seen.append((pattern, db_session.in_transaction()))

    monkeypatch.setattr(module, "invalidate_cache", record)
    return seen


@pytest.mark.api
@pytest.mark.asyncio
class TestReportCacheInvalidation:

    async def test_payment_write_commits_before_clearing(
        self, client: AsyncClient, auth_headers, grower, db_session, monkeypatch
    ):
        seen = _record_invalidations(monkeypatch, db_session, payments_router)

        await _create_payment(client, auth_headers, grower)

        assert seen == [("payment_reports:*", False)]

    async def test_subscription_write_commits_before_clearing(
        self, client: AsyncClient, auth_headers, grower, monthly_plan, db_session, monkeypatch
    ):
        seen = _record_invalidations(monkeypatch, db_session, subscriptions_router)

        resp = await client.post(
            "/api/subscriptions",
            json={
                "coffee_grower_id": grower.id,
                "plan_id": monthly_plan.id,
                "start_date": "2024-03-01",
            },
            headers=auth_headers,
        )

        assert resp.status_code == 201
        assert seen == [("subscription_reports:*", False), ("payment_reports:*", False)]

    async def test_applied_webhook_commits_before_clearing(
        self, client: AsyncClient, auth_headers, grower, db_session, monkeypatch
    ):
        created = await _create_payment(client, auth_headers, grower)
        seen = _record_invalidations(monkeypatch, db_session, webhooks_router)

        resp = await client.post(
            "/api/webhooks/wompi",
            json=_webhook("APPROVED", "tx-77", reference=created["provider_reference"]),
        )

        assert resp.json()["outcome"] == "applied"
        assert [open_tx for _, open_tx in seen] == [False, False]


@pytest.mark.api
@pytest.mark.asyncio
class TestHealth:

    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
