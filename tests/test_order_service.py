"""
בדיקות ל-OrderService - יצירה, מחזור חיי סטטוס, ביטול ודירוג.

מכסה:
- יצירת הזמנה: צילום מחיר, בדיקת מלאי (בלי הורדה), מספר הזמנה יומי
- מסירה: הורדת מלאי + רשומת מכירה, פעם אחת בלבד
- מסירה עם מלאי חסר - הכל מתגלגל אחורה
- ביטול, מעברים לא חוקיים מסטטוס סופי
- התראה אחת לכל סטטוס
- דירוג וסטטיסטיקות
"""
from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.core.exceptions import (
    EmptyOrderError,
    InsufficientStockError,
    InvalidOrderTransitionError,
    InvalidRatingError,
    InvalidStateError,
    ItemNotFoundError,
    NoActivePriceError,
    OrderNotCancellableError,
    OrderNotFoundError,
    WarehouseNotFoundError,
)
from order_bot.db.models.catalog import ItemStock
from order_bot.db.models.order import OrderStatus
from order_bot.db.models.sale import Sale
from order_bot.domain.services.notification_service import NotificationDispatcher
from order_bot.domain.services.order_service import (
    OrderLineRequest,
    OrderService,
    format_order_number,
)

# מספר ברירת המחדל של ה-factories ב-conftest
TEST_PHONE = "255712345678"


@pytest.fixture
def service(db_session: AsyncSession, recording_gateway) -> OrderService:
    return OrderService(db_session, notifier=NotificationDispatcher(recording_gateway))


async def _stock_quantity(db_session: AsyncSession, stock_id: int) -> int:
    result = await db_session.execute(
        select(ItemStock.quantity).where(ItemStock.id == stock_id)
    )
    return result.scalar_one()


async def _sales(db_session: AsyncSession) -> list[Sale]:
    return list((await db_session.execute(select(Sale))).scalars().all())


# ============================================================================
# Creation
# ============================================================================


class TestCreateOrder:

    @pytest.mark.unit
    def test_order_number_format(self) -> None:
        assert format_order_number(datetime(2024, 3, 7).date(), 12) == "WA2403070012"

    @pytest.mark.integration
    async def test_create_snapshots_prices_and_keeps_stock(self, service, db_session, catalog_factory, customer_factory) -> None:
        customer = await customer_factory()
        item = await catalog_factory(price=Decimal("2500.00"), stock=10)

        order = await service.create_order(
            TEST_PHONE,
            item.test_warehouse.id,
            [OrderLineRequest(item_id=item.id, quantity=4)],
            delivery_address="Sinza, Dar es Salaam",
        )

        assert order.status == OrderStatus.PENDING
        assert order.total_amount == Decimal("10000.00")
        assert order.customer_id == customer.id
        assert order.order_number.startswith("WA")
        assert len(order.order_number) == 12
        assert [(line.item_name, line.quantity, line.unit_price) for line in order.lines] == [
            ("Coca Cola 500ml", 4, Decimal("2500.00"))
        ]
        # מלאי יורד רק במסירה
        assert await _stock_quantity(db_session, item.test_stock.id) == 10

    @pytest.mark.integration
    async def test_order_numbers_are_sequential_per_day(self, service, catalog_factory) -> None:
        item = await catalog_factory()
        lines = [OrderLineRequest(item_id=item.id, quantity=1)]

        first = await service.create_order(TEST_PHONE, item.test_warehouse.id, lines)
        second = await service.create_order(TEST_PHONE, item.test_warehouse.id, lines)

        assert int(second.order_number[-4:]) == int(first.order_number[-4:]) + 1

    @pytest.mark.integration
    async def test_order_without_customer_record(self, service, catalog_factory) -> None:
        item = await catalog_factory()
        order = await service.create_order(
            "255799000000", item.test_warehouse.id, [OrderLineRequest(item.id, 1)]
        )
        assert order.customer_id is None

    @pytest.mark.integration
    async def test_empty_lines(self, service, catalog_factory) -> None:
        item = await catalog_factory()
        with pytest.raises(EmptyOrderError):
            await service.create_order(TEST_PHONE, item.test_warehouse.id, [])

    @pytest.mark.integration
    async def test_unknown_warehouse(self, service, catalog_factory) -> None:
        item = await catalog_factory()
        with pytest.raises(WarehouseNotFoundError):
            await service.create_order(TEST_PHONE, 9999, [OrderLineRequest(item.id, 1)])

    @pytest.mark.integration
    async def test_unknown_item(self, service, catalog_factory) -> None:
        item = await catalog_factory()
        with pytest.raises(ItemNotFoundError):
            await service.create_order(TEST_PHONE, item.test_warehouse.id, [OrderLineRequest(9999, 1)])

    @pytest.mark.integration
    async def test_item_without_price(self, service, catalog_factory) -> None:
        item = await catalog_factory(price=None)
        with pytest.raises(NoActivePriceError):
            await service.create_order(TEST_PHONE, item.test_warehouse.id, [OrderLineRequest(item.id, 1)])

    @pytest.mark.integration
    async def test_insufficient_stock(self, service, catalog_factory) -> None:
        item = await catalog_factory(stock=2)
        with pytest.raises(InsufficientStockError) as exc_info:
            await service.create_order(TEST_PHONE, item.test_warehouse.id, [OrderLineRequest(item.id, 3)])
        assert exc_info.value.details["available"] == 2
        assert exc_info.value.details["requested"] == 3


# ============================================================================
# Status lifecycle
# ============================================================================


class TestStatusLifecycle:

    @pytest.mark.integration
    async def test_confirm_sets_timestamp_and_notifies(
        self, service, catalog_factory, order_factory, recording_gateway
    ) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)])

        updated = await service.update_status(order.id, OrderStatus.CONFIRMED)

        assert updated.status == OrderStatus.CONFIRMED
        assert updated.confirmed_at is not None
        assert updated.notified_for_current_status is True
        assert len(recording_gateway.sent) == 1
        assert "Order Confirmed" in recording_gateway.sent[0]["body"]

    @pytest.mark.integration
    async def test_delivery_deducts_stock_and_records_sale(
        self, service, db_session, catalog_factory, customer_factory, order_factory
    ) -> None:
        customer = await customer_factory()
        item = await catalog_factory(stock=10)
        order = await order_factory([(item, 3)], customer=customer)

        updated = await service.update_status(order.id, OrderStatus.DELIVERED)

        assert updated.status == OrderStatus.DELIVERED
        assert updated.delivered_at is not None
        assert await _stock_quantity(db_session, item.test_stock.id) == 7
        sales = await _sales(db_session)
        assert len(sales) == 1
        assert sales[0].customer_id == customer.id
        assert sales[0].quantity == 3
        assert sales[0].amount_paid == Decimal("4500.00")
        assert order.order_number in sales[0].remarks

    @pytest.mark.integration
    async def test_delivering_twice_deducts_once(
        self, service, db_session, catalog_factory, customer_factory, order_factory, recording_gateway
    ) -> None:
        customer = await customer_factory()
        item = await catalog_factory(stock=10)
        order = await order_factory([(item, 3)], customer=customer)

        await service.update_status(order.id, OrderStatus.DELIVERED)
        await service.update_status(order.id, OrderStatus.DELIVERED)

        assert await _stock_quantity(db_session, item.test_stock.id) == 7
        assert len(await _sales(db_session)) == 1
        # התראה אחת בלבד למרות שתי קריאות
        assert len(recording_gateway.sent) == 1

    @pytest.mark.integration
    async def test_delivery_without_customer_skips_sale(self, service, db_session, catalog_factory, order_factory) -> None:
        item = await catalog_factory(stock=10)
        order = await order_factory([(item, 2)], phone="255788000000")

        await service.update_status(order.id, OrderStatus.DELIVERED)

        assert await _stock_quantity(db_session, item.test_stock.id) == 8
        assert await _sales(db_session) == []

    @pytest.mark.integration
    async def test_oversold_delivery_rolls_back(
        self, service, db_session, catalog_factory, customer_factory, order_factory
    ) -> None:
        customer = await customer_factory()
        item = await catalog_factory(stock=10)
        other = await catalog_factory(name="Sugar 1kg", stock=10, warehouse=item.test_warehouse)
        order = await order_factory([(item, 2), (other, 5)], customer=customer)
        order_id = order.id
        item_stock_id = item.test_stock.id
        other_stock_id = other.test_stock.id

        other.test_stock.quantity = 4
        await db_session.commit()

        with pytest.raises(InsufficientStockError):
            await service.update_status(order_id, OrderStatus.DELIVERED)

        reloaded = await service.get_order(order_id)
        assert reloaded.status == OrderStatus.PENDING
        assert reloaded.delivered_at is None
        # גם השורה הראשונה (שעברה) לא ירדה
        assert await _stock_quantity(db_session, item_stock_id) == 10
        assert await _stock_quantity(db_session, other_stock_id) == 4
        assert await _sales(db_session) == []

    @pytest.mark.integration
    async def test_terminal_status_cannot_change(self, service, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)], status=OrderStatus.CANCELLED)
        with pytest.raises(InvalidOrderTransitionError):
            await service.update_status(order.id, OrderStatus.CONFIRMED)

    @pytest.mark.integration
    async def test_unknown_order(self, service) -> None:
        with pytest.raises(OrderNotFoundError):
            await service.update_status(4242, OrderStatus.CONFIRMED)

    @pytest.mark.integration
    async def test_pending_has_no_template(self, service, catalog_factory, order_factory, recording_gateway) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)], status=OrderStatus.CONFIRMED)

        updated = await service.update_status(order.id, OrderStatus.PENDING)

        assert updated.status == OrderStatus.PENDING
        assert recording_gateway.sent == []
        assert updated.notified_for_current_status is False

    @pytest.mark.integration
    async def test_failed_notification_keeps_status(
        self, db_session, catalog_factory, order_factory, failing_gateway
    ) -> None:
        service = OrderService(db_session, notifier=NotificationDispatcher(failing_gateway))
        item = await catalog_factory()
        order = await order_factory([(item, 1)])

        updated = await service.update_status(order.id, OrderStatus.READY)

        assert updated.status == OrderStatus.READY
        assert updated.notified_for_current_status is False


# ============================================================================
# Cancellation
# ============================================================================


class TestCancelOrder:

    @pytest.mark.integration
    async def test_cancel_pending(self, service, db_session, catalog_factory, order_factory, recording_gateway) -> None:
        item = await catalog_factory(stock=10)
        order = await order_factory([(item, 4)])

        cancelled = await service.cancel_order(order.id)

        assert cancelled.status == OrderStatus.CANCELLED
        assert await _stock_quantity(db_session, item.test_stock.id) == 10
        assert "Order Cancelled" in recording_gateway.sent[0]["body"]

    @pytest.mark.integration
    async def test_cancel_delivered_raises(self, service, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)], status=OrderStatus.DELIVERED)
        with pytest.raises(OrderNotCancellableError):
            await service.cancel_order(order.id)

    @pytest.mark.integration
    async def test_cancel_twice_notifies_once(self, service, catalog_factory, order_factory, recording_gateway) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)])

        await service.cancel_order(order.id)
        again = await service.cancel_order(order.id)

        assert again.status == OrderStatus.CANCELLED
        assert len(recording_gateway.sent) == 1


# ============================================================================
# Rating & stats
# ============================================================================


class TestRatingAndStats:

    @pytest.mark.integration
    async def test_rate_delivered_order(self, service, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)], status=OrderStatus.DELIVERED)

        assert await service.rate_order(order.id, TEST_PHONE, 4, "  Good  ") is True
        assert order.rating == 4
        assert order.feedback == "Good"
        # דירוג שני לא דורס
        assert await service.rate_order(order.id, TEST_PHONE, 1) is False
        assert order.rating == 4

    @pytest.mark.integration
    async def test_rate_requires_delivered(self, service, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)], status=OrderStatus.READY)
        with pytest.raises(InvalidStateError):
            await service.rate_order(order.id, TEST_PHONE, 5)

    @pytest.mark.integration
    async def test_rate_other_customers_order(self, service, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        order = await order_factory([(item, 1)], status=OrderStatus.DELIVERED)
        with pytest.raises(OrderNotFoundError):
            await service.rate_order(order.id, "255700000099", 5)

    @pytest.mark.unit
    @pytest.mark.parametrize("rating", [0, 6, True, "5"])
    async def test_rating_out_of_range(self, service, rating) -> None:
        with pytest.raises(InvalidRatingError):
            await service.rate_order(1, TEST_PHONE, rating)

    @pytest.mark.integration
    async def test_unrated_delivered_orders(self, service, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        delivered = await order_factory([(item, 1)], status=OrderStatus.DELIVERED)
        await order_factory([(item, 1)], status=OrderStatus.DELIVERED, rating=5)
        await order_factory([(item, 1)], status=OrderStatus.PENDING)

        orders = await service.get_unrated_delivered_orders(TEST_PHONE)
        assert [order.id for order in orders] == [delivered.id]

    @pytest.mark.integration
    async def test_stats_exclude_cancelled_revenue(self, service, catalog_factory, order_factory) -> None:
        item = await catalog_factory()
        await order_factory([(item, 2)], status=OrderStatus.PENDING)
        await order_factory([(item, 1)], status=OrderStatus.DELIVERED)
        await order_factory([(item, 4)], status=OrderStatus.CANCELLED)

        stats = await service.get_order_stats()

        assert stats["total"] == 3
        assert stats["pending"] == 1
        assert stats["delivered"] == 1
        assert stats["cancelled"] == 1
        assert stats["confirmed"] == 0
        assert stats["total_revenue"] == Decimal("4500.00")
