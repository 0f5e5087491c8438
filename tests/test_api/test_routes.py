"""Tests for the HTTP API."""

from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from savor_save.api.routes import get_store
from savor_save.main import app
from savor_save.state.memory_store import MemoryStore

USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}

EXPENSE = {
    "description": "Masala Dosa",
    "amount": "250",
    "category": "dine-in",
    "meal_type": "breakfast",
    "restaurant": "MTR",
    "cuisine": "South Indian",
}

ORDER = {
    "restaurant_id": "rest-1",
    "restaurant_name": "Punjab Grill",
    "items": [{"name": "Butter Chicken", "quantity": 2, "price": "320"}],
    "delivery_type": "pickup",
}


@pytest_asyncio.fixture
async def test_client(store: MemoryStore) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client backed by a fresh in-memory store."""
    app.dependency_overrides[get_store] = lambda: store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health(test_client: AsyncClient) -> None:
    response = await test_client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestExpenseRoutes:
    """Tests for expense endpoints."""

    @pytest.mark.asyncio
    async def test_add_and_read_back(self, test_client: AsyncClient) -> None:
        created = await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)

        assert created.status_code == 201
        expense = created.json()
        assert not expense["id"].startswith("local-")
        assert expense["user_id"] == "user-1"

        listed = await test_client.get("/api/v1/expenses", headers=USER)
        assert [e["id"] for e in listed.json()] == [expense["id"]]

        fetched = await test_client.get(f"/api/v1/expenses/{expense['id']}", headers=USER)
        assert fetched.json() == expense

    @pytest.mark.asyncio
    async def test_other_user_cannot_see_expense(self, test_client: AsyncClient) -> None:
        created = await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)

        response = await test_client.get(
            f"/api/v1/expenses/{created.json()['id']}", headers=OTHER_USER
        )

        assert response.status_code == 404
        assert (await test_client.get("/api/v1/expenses")).json() == []

    @pytest.mark.asyncio
    async def test_invalid_amount(self, test_client: AsyncClient) -> None:
        response = await test_client.post(
            "/api/v1/expenses", json={**EXPENSE, "amount": "0"}, headers=USER
        )

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidAmountError"

    @pytest.mark.asyncio
    async def test_missing_fields(self, test_client: AsyncClient) -> None:
        response = await test_client.post(
            "/api/v1/expenses", json={"description": "Dosa"}, headers=USER
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_partial_update(self, test_client: AsyncClient) -> None:
        created = (await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)).json()

        response = await test_client.patch(
            f"/api/v1/expenses/{created['id']}", json={"notes": "Extra chutney"}, headers=USER
        )

        assert response.status_code == 200
        assert response.json()["notes"] == "Extra chutney"
        assert response.json()["restaurant"] == "MTR"

    @pytest.mark.asyncio
    async def test_status_change(self, test_client: AsyncClient) -> None:
        created = (await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)).json()

        response = await test_client.put(
            f"/api/v1/expenses/{created['id']}/status", json={"status": "pending"}, headers=USER
        )

        assert response.json()["status"] == "pending"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, test_client: AsyncClient) -> None:
        created = (await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)).json()
        url = f"/api/v1/expenses/{created['id']}/cancel"

        first = await test_client.post(url, json={"reason": "Duplicate"}, headers=USER)
        second = await test_client.post(url, json={}, headers=USER)

        assert first.status_code == 200
        assert first.json()["status"] == "cancelled"
        assert first.json()["cancelled_reason"] == "Duplicate"
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_status_cancelled_sets_cancelled_at(self, test_client: AsyncClient) -> None:
        created = (await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)).json()
        url = f"/api/v1/expenses/{created['id']}/status"

        cancelled = await test_client.put(url, json={"status": "cancelled"}, headers=USER)
        reopened = await test_client.put(url, json={"status": "completed"}, headers=USER)
        patched = await test_client.patch(
            f"/api/v1/expenses/{created['id']}", json={"status": "pending"}, headers=USER
        )

        assert cancelled.status_code == 200
        assert cancelled.json()["cancelled_at"] is not None
        assert reopened.status_code == 409
        assert patched.status_code == 409

    @pytest.mark.asyncio
    async def test_update_breaking_split_is_rejected(self, test_client: AsyncClient) -> None:
        created = (
            await test_client.post(
                "/api/v1/expenses/split",
                json={"expense": EXPENSE, "total": "100", "people": 3},
                headers=USER,
            )
        ).json()
        url = f"/api/v1/expenses/{created['id']}"

        response = await test_client.patch(url, json={"amount": "50"}, headers=USER)

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidExpenseError"
        assert Decimal((await test_client.get(url, headers=USER)).json()["amount"]) == Decimal(
            "33.34"
        )

    @pytest.mark.asyncio
    async def test_delete(self, test_client: AsyncClient) -> None:
        created = (await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)).json()
        url = f"/api/v1/expenses/{created['id']}"

        assert (await test_client.delete(url, headers=USER)).status_code == 204
        assert (await test_client.get(url, headers=USER)).status_code == 404

    @pytest.mark.asyncio
    async def test_split_expense(self, test_client: AsyncClient) -> None:
        response = await test_client.post(
            "/api/v1/expenses/split",
            json={"expense": EXPENSE, "total": "100", "people": 3},
            headers=USER,
        )

        assert response.status_code == 201
        assert Decimal(response.json()["amount"]) == Decimal("33.34")
        assert response.json()["transaction_type"] == "split"

    @pytest.mark.asyncio
    async def test_summaries(self, test_client: AsyncClient) -> None:
        await test_client.post("/api/v1/expenses", json=EXPENSE, headers=USER)
        await test_client.post(
            "/api/v1/expenses",
            json={**EXPENSE, "amount": "150", "cuisine": "Chinese", "meal_type": "dinner"},
            headers=USER,
        )

        today = (await test_client.get("/api/v1/expenses/totals/today", headers=USER)).json()
        assert Decimal(today["total"]) == Decimal("400")

        groups = (await test_client.get("/api/v1/expenses/groups/cuisine", headers=USER)).json()
        assert {k: Decimal(v) for k, v in groups.items()} == {
            "South Indian": Decimal("250"),
            "Chinese": Decimal("150"),
        }

        recent = (await test_client.get("/api/v1/expenses/recent?limit=1", headers=USER)).json()
        assert len(recent) == 1

        stats = (await test_client.get("/api/v1/expenses/stats", headers=USER)).json()
        assert stats["completed_count"] == 2

        for path in ("daily", "weekly", "monthly"):
            response = await test_client.get(f"/api/v1/expenses/summary/{path}", headers=USER)
            assert response.status_code == 200
            assert Decimal(response.json()["total"]) == Decimal("400")

    @pytest.mark.asyncio
    async def test_unknown_period(self, test_client: AsyncClient) -> None:
        response = await test_client.get("/api/v1/expenses/totals/year", headers=USER)
        assert response.status_code == 422


class TestOrderRoutes:
    """Tests for order endpoints."""

    @pytest.mark.asyncio
    async def test_order_lifecycle(self, test_client: AsyncClient) -> None:
        created = await test_client.post("/api/v1/orders", json=ORDER, headers=USER)

        assert created.status_code == 201
        order = created.json()
        assert len(order["order_number"]) == 12
        assert Decimal(order["total_amount"]) == Decimal("672.00")

        confirmed = await test_client.post(
            f"/api/v1/orders/{order['id']}/status", json={"status": "confirmed"}, headers=USER
        )
        assert confirmed.json() == {"order_id": order["id"], "status": "confirmed", "found": True}

        cancelled = await test_client.post(
            f"/api/v1/orders/{order['id']}/cancel", json={"reason": "Late"}, headers=USER
        )
        assert cancelled.json()["status"] == "cancelled"
        assert cancelled.json()["cancelled_by"] == "customer"

        conflict = await test_client.post(
            f"/api/v1/orders/{order['id']}/status", json={"status": "delivered"}, headers=USER
        )
        assert conflict.status_code == 409

        history = await test_client.get(f"/api/v1/orders/{order['id']}/history", headers=USER)
        assert [h["status"] for h in history.json()] == ["placed", "confirmed", "cancelled"]

        tracking = await test_client.get(f"/api/v1/orders/{order['id']}/tracking", headers=USER)
        assert tracking.json()["is_cancelled"] is True
        assert tracking.json()["progress_percentage"] == 25.0

    @pytest.mark.asyncio
    async def test_rating(self, test_client: AsyncClient) -> None:
        order = (await test_client.post("/api/v1/orders", json=ORDER, headers=USER)).json()
        url = f"/api/v1/orders/{order['id']}"

        early = await test_client.post(f"{url}/rating", json={"rating": 5}, headers=USER)
        assert early.status_code == 409

        await test_client.post(f"{url}/status", json={"status": "delivered"}, headers=USER)
        rated = await test_client.post(
            f"{url}/rating", json={"rating": 5, "review": "Great"}, headers=USER
        )
        assert rated.json()["rating"] == 5

        out_of_range = await test_client.post(f"{url}/rating", json={"rating": 9}, headers=USER)
        assert out_of_range.status_code == 422

    @pytest.mark.asyncio
    async def test_other_users_order_is_hidden(self, test_client: AsyncClient) -> None:
        order = (await test_client.post("/api/v1/orders", json=ORDER, headers=USER)).json()

        response = await test_client.post(
            f"/api/v1/orders/{order['id']}/status",
            json={"status": "confirmed"},
            headers=OTHER_USER,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_list_orders(self, test_client: AsyncClient) -> None:
        await test_client.post("/api/v1/orders", json=ORDER, headers=USER)
        await test_client.post("/api/v1/orders", json=ORDER, headers=USER)

        orders = (await test_client.get("/api/v1/orders", headers=USER)).json()

        assert len(orders) == 2


class TestBudgetRoutes:
    """Tests for budget endpoints."""

    @pytest.mark.asyncio
    async def test_budget_usage_and_check(self, test_client: AsyncClient) -> None:
        default = (await test_client.get("/api/v1/budget", headers=USER)).json()
        assert Decimal(default["monthly"]) == Decimal("10000")

        saved = await test_client.put("/api/v1/budget", json={"monthly": "1000"}, headers=USER)
        assert Decimal(saved.json()["monthly"]) == Decimal("1000")

        await test_client.post("/api/v1/expenses", json={**EXPENSE, "amount": "900"}, headers=USER)

        usage = (await test_client.get("/api/v1/budget/usage", headers=USER)).json()
        assert Decimal(usage["percentage_used"]) == Decimal("90.00")
        assert usage["should_alert"] is True

        check = (
            await test_client.post("/api/v1/budget/check", json={"amount": "200"}, headers=USER)
        ).json()
        assert check["allowed"] is False
        assert check["message"] == "This expense will exceed your budget by ₹100.00"


class TestSplitRoutes:
    """Tests for split helpers."""

    @pytest.mark.asyncio
    async def test_equal_split(self, test_client: AsyncClient) -> None:
        response = await test_client.post("/api/v1/splits/equal", json={"total": "100", "people": 3})

        assert [Decimal(s["amount"]) for s in response.json()] == [
            Decimal("33.34"),
            Decimal("33.33"),
            Decimal("33.33"),
        ]

    @pytest.mark.asyncio
    async def test_manual_split_mismatch(self, test_client: AsyncClient) -> None:
        response = await test_client.post(
            "/api/v1/splits/validate",
            json={
                "total": "100",
                "people": 2,
                "shares": [{"person": 1, "amount": "40"}, {"person": 2, "amount": "40"}],
            },
        )

        assert response.status_code == 422
        assert response.json()["error"] == "SplitMismatchError"


class TestPaymentRoutes:
    """Tests for payment callbacks."""

    @pytest.mark.asyncio
    async def test_payment_success(self, test_client: AsyncClient) -> None:
        response = await test_client.post(
            "/api/v1/payments/success",
            json={
                "request": {"restaurant_name": "Punjab Grill", "items": ORDER["items"]},
                "payment": {"order_id": "order_1", "payment_id": "pay_1", "amount": "712"},
            },
            headers=USER,
        )

        assert response.status_code == 201
        result = response.json()
        assert result["expense"]["notes"] == "Payment ID: pay_1"
        assert result["order"]["expense_id"] == result["expense"]["id"]
        assert result["order"]["payment_status"] == "completed"

    @pytest.mark.asyncio
    async def test_payment_dismissed(self, test_client: AsyncClient) -> None:
        response = await test_client.post("/api/v1/payments/dismiss", headers=USER)
        assert response.status_code == 204


def test_websocket_ping_and_errors() -> None:
    with TestClient(app) as client:
        with client.websocket_connect("/ws?user_id=user-1") as websocket:
            connected = websocket.receive_json()
            assert connected["type"] == "connected"
            assert connected["user_id"] == "user-1"

            websocket.send_text('{"type": "ping"}')
            assert websocket.receive_json() == {"type": "pong"}

            websocket.send_text("not json")
            assert websocket.receive_json()["type"] == "error"
