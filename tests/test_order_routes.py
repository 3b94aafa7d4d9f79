"""
בדיקות ל-API ניהול ההזמנות.

מכסה:
- שליפת הזמנות (כולל לפי טלפון בפורמט מקומי)
- עדכון סטטוס: מסירה מורידה מלאי, 409 על מלאי חסר / סטטוס סופי
- ביטול, סטטיסטיקות, קישור הזמנה מהירה, סריקת עגלות ידנית
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from order_bot.core.config import settings
from order_bot.core.exceptions import ErrorCode
from order_bot.db.models.catalog import ItemStock
from order_bot.db.models.order import OrderStatus

BASE = "/api/whatsapp"


class TestOrderQueries:

    @pytest.mark.integration
    async def test_list_orders(self, test_client, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        first = await order_factory([(item, 1)])
        second = await order_factory([(item, 2)])

        response = await test_client.get(f"{BASE}/orders")

        assert response.status_code == 200
        ids = {order["id"] for order in response.json()}
        assert ids == {first.id, second.id}

    @pytest.mark.integration
    async def test_get_order_with_lines(self, test_client, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 2)])

        response = await test_client.get(f"{BASE}/orders/{order.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["order_number"] == order.order_number
        assert data["status"] == "pending"
        assert data["total_amount"] == 3000.0
        assert data["lines"] == [{
            "item_id": item.id,
            "item_name": "Coca Cola 500ml",
            "quantity": 2,
            "unit_price": 1500.0,
            "total_price": 3000.0,
        }]

    @pytest.mark.integration
    async def test_get_missing_order(self, test_client) -> None:
        response = await test_client.get(f"{BASE}/orders/999")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == ErrorCode.ORDER_NOT_FOUND.value

    @pytest.mark.integration
    async def test_orders_by_local_phone(self, test_client, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        mine = await order_factory([(item, 1)], phone="255712345678")
        await order_factory([(item, 1)], phone="255799999999")

        response = await test_client.get(f"{BASE}/orders/phone/0712345678")

        assert response.status_code == 200
        assert [order["id"] for order in response.json()] == [mine.id]


class TestOrderMutations:

    @pytest.mark.integration
    async def test_deliver_deducts_stock(
        self, test_client, db_session, catalog_factory, customer_factory, order_factory, recording_gateway
    ) -> None:
        customer = await customer_factory()
        item = await catalog_factory(stock=10)
        order = await order_factory([(item, 3)], customer=customer)

        response = await test_client.put(f"{BASE}/orders/{order.id}/status", json={"status": "DELIVERED"})

        assert response.status_code == 200
        assert response.json()["status"] == "delivered"
        quantity = (await db_session.execute(
            select(ItemStock.quantity).where(ItemStock.id == item.test_stock.id)
        )).scalar_one()
        assert quantity == 7
        assert "Order Delivered" in recording_gateway.sent[0]["body"]

    @pytest.mark.integration
    async def test_deliver_with_insufficient_stock_is_conflict(
        self, test_client, db_session, catalog_factory, order_factory
    ) -> None:
        item = await catalog_factory(stock=1)
        order = await order_factory([(item, 3)])
        order_id = order.id

        response = await test_client.put(f"{BASE}/orders/{order_id}/status", json={"status": "delivered"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == ErrorCode.INSUFFICIENT_STOCK.value
        follow_up = await test_client.get(f"{BASE}/orders/{order_id}")
        assert follow_up.json()["status"] == "pending"

    @pytest.mark.integration
    async def test_invalid_status_value(self, test_client, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)])
        response = await test_client.put(f"{BASE}/orders/{order.id}/status", json={"status": "shipped"})
        assert response.status_code == 422

    @pytest.mark.integration
    async def test_cancel(self, test_client, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)])

        response = await test_client.put(f"{BASE}/orders/{order.id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    @pytest.mark.integration
    async def test_cancel_delivered_is_conflict(self, test_client, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)], status=OrderStatus.DELIVERED)

        response = await test_client.put(f"{BASE}/orders/{order.id}/cancel")

        assert response.status_code == 409


class TestStatsAndLinks:

    @pytest.mark.integration
    async def test_stats(self, test_client, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        await order_factory([(item, 2)])

        response = await test_client.get(f"{BASE}/stats/orders")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["pending"] == 1
        assert data["total_revenue"] == 3000.0

    @pytest.mark.integration
    async def test_product_link(self, test_client, catalog_factory, monkeypatch) -> None:
        monkeypatch.setattr(settings, "WHATSAPP_BUSINESS_PHONE", "+255700000000")
        item = await catalog_factory(price=Decimal("2500.00"), stock=4)

        response = await test_client.get(f"{BASE}/product-link/{item.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["short_message"] == f"ORDER:{item.id}"
        assert data["whatsapp_link"] == f"https://wa.me/255700000000?text=ORDER%3A{item.id}"
        assert data["item"]["price"] == 2500.0
        assert data["item"]["stock"] == 4

    @pytest.mark.integration
    async def test_product_link_unknown_item(self, test_client) -> None:
        response = await test_client.get(f"{BASE}/product-link/12345")
        assert response.status_code == 404

    @pytest.mark.integration
    async def test_manual_abandoned_cart_scan(self, test_client) -> None:
        response = await test_client.post(f"{BASE}/abandoned-carts/check")
        assert response.status_code == 200
        assert response.json() == {"sent": 0}

    @pytest.mark.unit
    async def test_health(self, test_client) -> None:
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
