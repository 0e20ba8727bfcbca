"""
API tests for the order, dashboard and health endpoints.
"""

import uuid
from decimal import Decimal

import pytest

ORDERS = "/api/v1/orders"

ORDER_BODY = {
    "customer": {"name": "  Acme Corp ", "email": "buyer@acme.test"},
    "items": [
        {"name": "Widget", "price": "10.00", "quantity": 3, "sku": "W-1"},
        {"name": "Gadget", "price": "25.50", "quantity": 2},
    ],
}


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture
async def created_order(async_client) -> dict:
    response = await async_client.post(ORDERS, json=ORDER_BODY, headers=as_user("sales-1"))
    assert response.status_code == 201
    return response.json()


# ============================================================================
# Actor Resolution Tests
# ============================================================================


class TestActorResolution:
    """Test the X-User-Id header handling."""

    @pytest.mark.asyncio
    async def test_missing_header(self, async_client) -> None:
        response = await async_client.get(ORDERS)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_user(self, async_client) -> None:
        response = await async_client.get(ORDERS, headers=as_user("nobody"))
        assert response.status_code == 403
        assert response.json()["detail"] == "Unknown or inactive user"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, async_client) -> None:
        response = await async_client.get(
            "/health", headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"


# ============================================================================
# Order Endpoint Tests
# ============================================================================


class TestOrderEndpoints:
    """Test creation, listing and transitions over HTTP."""

    @pytest.mark.asyncio
    async def test_create_order(self, created_order) -> None:
        assert created_order["status"] == "pending"
        assert created_order["customer_name"] == "Acme Corp"
        assert Decimal(created_order["total"]) == Decimal("81.00")
        assert created_order["created_by"] == "sales-1"
        assert len(created_order["items"]) == 2
        # Creator can still cancel a pending order.
        assert created_order["allowed_actions"] == ["cancel"]

    @pytest.mark.asyncio
    async def test_create_requires_sales_role(self, async_client) -> None:
        response = await async_client.post(ORDERS, json=ORDER_BODY, headers=as_user("acct-1"))

        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "unauthorized"
        assert body["role"] == "accountant"
        assert body["action"] == "create"

    @pytest.mark.asyncio
    async def test_create_business_validation(self, async_client) -> None:
        body = {"customer": {"name": "Acme"}, "items": []}
        response = await async_client.post(ORDERS, json=body, headers=as_user("sales-1"))

        assert response.status_code == 422
        assert response.json()["error"] == "validation_failed"
        assert "items" in response.json()["fields"]

    @pytest.mark.asyncio
    async def test_create_oversized_price(self, async_client) -> None:
        body = {
            "customer": {"name": "Acme"},
            "items": [{"name": "Widget", "price": "1e30", "quantity": 1}],
        }
        response = await async_client.post(ORDERS, json=body, headers=as_user("sales-1"))

        assert response.status_code == 422
        assert response.json()["fields"] == {"items[0].price": "Price is too large"}

    @pytest.mark.asyncio
    async def test_create_schema_validation(self, async_client) -> None:
        response = await async_client.post(
            ORDERS, json={"items": []}, headers=as_user("sales-1")
        )
        assert response.status_code == 422
        assert response.json()["details"]

    @pytest.mark.asyncio
    async def test_list_scoped_by_role(self, async_client, created_order) -> None:
        own = await async_client.get(ORDERS, headers=as_user("sales-1"))
        other = await async_client.get(ORDERS, headers=as_user("sales-2"))
        warehouse = await async_client.get(ORDERS, headers=as_user("wh-1"))

        assert own.json()["total"] == 1
        assert other.json()["total"] == 0
        assert warehouse.json()["total"] == 0

        accountant = await async_client.get(
            ORDERS, params={"status": "pending"}, headers=as_user("acct-1")
        )
        [order] = accountant.json()["orders"]
        assert set(order["allowed_actions"]) == {
            "approve", "reject", "request_edit", "cancel",
        }

    @pytest.mark.asyncio
    async def test_get_order_outside_view(self, async_client, created_order) -> None:
        response = await async_client.get(
            f"{ORDERS}/{created_order['id']}", headers=as_user("ship-1")
        )
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_approve_and_history(self, async_client, created_order) -> None:
        url = f"{ORDERS}/{created_order['id']}"

        response = await async_client.post(
            f"{url}/transitions", json={"action": "approve"}, headers=as_user("acct-1")
        )

        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert response.json()["approved_by"] == "acct-1"

        history = await async_client.get(f"{url}/history", headers=as_user("sales-1"))
        assert [e["action"] for e in history.json()] == ["status_changed", "order_created"]
        assert history.json()[0]["from_status"] == "pending"
        assert history.json()[0]["sequence"] == 2

    @pytest.mark.asyncio
    async def test_partial_complete_response_fields(
        self, async_client, created_order
    ) -> None:
        url = f"{ORDERS}/{created_order['id']}/transitions"
        steps = [
            ("acct-1", {"action": "approve"}),
            ("wh-1", {"action": "confirm"}),
            ("ship-1", {"action": "ship", "tracking_number": "TRK-9"}),
            ("ship-1", {"action": "partial_complete", "notes": "1 box missing"}),
        ]
        for user_id, body in steps:
            response = await async_client.post(url, json=body, headers=as_user(user_id))
            assert response.status_code == 200

        order = response.json()
        assert order["status"] == "partial_complete"
        assert order["partially_completed_by"] == "ship-1"
        assert order["partially_completed_at"] is not None
        assert order["completed_by"] is None
        assert order["completed_at"] is None
        assert order["completion_notes"] == "1 box missing"

    @pytest.mark.asyncio
    async def test_invalid_state_context(self, async_client, created_order) -> None:
        response = await async_client.post(
            f"{ORDERS}/{created_order['id']}/transitions",
            json={"action": "ship"},
            headers=as_user("ship-1"),
        )

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "invalid_state"
        assert body["current_status"] == "pending"
        assert body["allowed_from"] == ["warehouse_confirmed"]

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, async_client, created_order) -> None:
        response = await async_client.post(
            f"{ORDERS}/{created_order['id']}/transitions",
            json={"action": "reject", "reason": "   "},
            headers=as_user("acct-1"),
        )

        assert response.status_code == 422
        assert response.json()["fields"] == {"reason": "Reason is required"}

    @pytest.mark.asyncio
    async def test_role_without_capability(self, async_client, created_order) -> None:
        response = await async_client.post(
            f"{ORDERS}/{created_order['id']}/transitions",
            json={"action": "approve"},
            headers=as_user("wh-1"),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_order(self, async_client) -> None:
        response = await async_client.post(
            f"{ORDERS}/{uuid.uuid4()}/transitions",
            json={"action": "approve"},
            headers=as_user("acct-1"),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_unknown_action_rejected_by_schema(self, async_client, created_order) -> None:
        response = await async_client.post(
            f"{ORDERS}/{created_order['id']}/transitions",
            json={"action": "teleport"},
            headers=as_user("acct-1"),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_transition_notifies_creator(self, async_client, created_order) -> None:
        await async_client.post(
            f"{ORDERS}/{created_order['id']}/transitions",
            json={"action": "reject", "reason": "Over budget"},
            headers=as_user("acct-1"),
        )

        response = await async_client.get(
            "/api/v1/notifications", headers=as_user("sales-1")
        )

        titles = [n["title"] for n in response.json()["notifications"]]
        assert titles[0] == "Order Rejected"
        assert "Over budget" in response.json()["notifications"][0]["message"]


# ============================================================================
# Dashboard and Health Tests
# ============================================================================


class TestDashboardAndHealth:
    """Test metrics and probe endpoints."""

    @pytest.mark.asyncio
    async def test_empty_dashboard(self, async_client) -> None:
        response = await async_client.get(
            "/api/v1/dashboard/metrics", headers=as_user("acct-1")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["role"] == "accountant"
        assert body["total_orders"] == 0
        assert body["role_metrics"]["approval_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_dashboard_counts(self, async_client, created_order) -> None:
        response = await async_client.get(
            "/api/v1/dashboard/metrics", headers=as_user("acct-1")
        )

        body = response.json()
        assert body["status_counts"]["pending"] == 1
        assert body["priority_orders"][0]["order_number"] == created_order["order_number"]
        assert body["recent_activity"][0]["action"] == "order_created"

    @pytest.mark.asyncio
    async def test_health(self, async_client) -> None:
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["environment"] == "test"

    @pytest.mark.asyncio
    async def test_ready_without_engine(self, async_client) -> None:
        response = await async_client.get("/ready")
        assert response.status_code == 503
        assert response.json()["database"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_live(self, async_client) -> None:
        response = await async_client.get("/live")
        assert response.json()["status"] == "alive"
