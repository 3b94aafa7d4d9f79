"""
Order Service - creation, status lifecycle, cancellation and rating

Stock is validated (not decremented) when an order is created. The
authoritative deduction happens once, at the transition to ``delivered``.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.core.config import settings
from order_bot.core.exceptions import (
    AppException,
    EmptyOrderError,
    ErrorCode,
    InsufficientStockError,
    InvalidOrderTransitionError,
    InvalidRatingError,
    InvalidStateError,
    ItemNotFoundError,
    NoActivePriceError,
    OrderNotCancellableError,
    OrderNotFoundError,
    OrderNumberExhaustedError,
    StockRecordNotFoundError,
    WarehouseNotFoundError,
)
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator, TextSanitizer
from order_bot.db.models.order import Order, OrderLine, OrderStatus
from order_bot.domain.services.catalog_service import CatalogService
from order_bot.domain.services.customer_service import CustomerDirectory
from order_bot.domain.services.sale_ledger import SaleLedger
from order_bot.domain.services.warehouse_service import WarehouseDirectory

logger = get_logger(__name__)


class LineRequest(Protocol):
    item_id: int
    quantity: int


@dataclass(frozen=True)
class OrderLineRequest:
    item_id: int
    quantity: int


def format_order_number(day: date, sequence: int) -> str:
    """WA + yyMMdd + 4-digit daily sequence"""
    return f"{settings.ORDER_NUMBER_PREFIX}{day.strftime('%y%m%d')}{sequence:04d}"


class OrderService:
    """Service for managing WhatsApp orders"""

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[CatalogService] = None,
        customers: Optional[CustomerDirectory] = None,
        warehouses: Optional[WarehouseDirectory] = None,
        sales: Optional[SaleLedger] = None,
        notifier=None,
    ):
        self.db = db
        self.catalog = catalog or CatalogService(db)
        self.customers = customers or CustomerDirectory(db)
        self.warehouses = warehouses or WarehouseDirectory(db)
        self.sales = sales or SaleLedger(db)
        self._notifier = notifier

    @property
    def notifier(self):
        # אתחול עצלן - הדיאלוג יוצר OrderService בלי לגעת בספק ההתראות
        if self._notifier is None:
            from order_bot.domain.services.notification_service import NotificationDispatcher
            from order_bot.domain.services.whatsapp import get_whatsapp_notifications_provider

            self._notifier = NotificationDispatcher(get_whatsapp_notifications_provider())
        return self._notifier

    # ==================== Creation ====================

    async def create_order(
        self,
        phone: str,
        warehouse_id: int,
        lines: Iterable[LineRequest],
        delivery_address: Optional[str] = None,
        notes: Optional[str] = None,
        *,
        auto_commit: bool = True,
    ) -> Order:
        """
        Validate lines, snapshot prices and persist the order in ``pending``.

        With auto_commit=False the order is only flushed and the caller owns
        the transaction.

        Raises:
            EmptyOrderError, WarehouseNotFoundError, ItemNotFoundError,
            NoActivePriceError, InsufficientStockError,
            OrderNumberExhaustedError
        """
        lines = list(lines)
        if not lines:
            raise EmptyOrderError()

        warehouse = await self.warehouses.get_warehouse(warehouse_id)
        if warehouse is None:
            raise WarehouseNotFoundError(warehouse_id)

        # לקוח אופציונלי - הזמנה יכולה להיווצר לפני שיש רשומת לקוח
        customer = await self.customers.find_by_phone(phone)

        snapshots: list[dict] = []
        total_amount = Decimal("0")
        for requested in lines:
            item = await self.catalog.get_item(requested.item_id)
            if item is None:
                raise ItemNotFoundError(requested.item_id)

            unit_price = await self.catalog.active_price(item)
            if unit_price is None:
                raise NoActivePriceError(item.name, item.id)

            # בדיקה בלבד - המלאי יורד רק במסירה
            stock = await self.catalog.stock_for(item, warehouse_id)
            available = stock.quantity if stock else 0
            if available < requested.quantity:
                raise InsufficientStockError(item.name, available, requested.quantity, item.id)

            line_total = unit_price * requested.quantity
            total_amount += line_total
            snapshots.append({
                "item_id": item.id,
                "item_name": item.name,
                "quantity": requested.quantity,
                "unit_price": unit_price,
                "total_price": line_total,
            })

        now = datetime.utcnow()
        sequence = await self._count_orders_on(now.date()) + 1
        order = None
        attempts = settings.ORDER_NUMBER_MAX_ATTEMPTS
        for attempt in range(attempts):
            order_number = format_order_number(now.date(), sequence + attempt)
            candidate = Order(
                order_number=order_number,
                customer_phone=phone,
                customer=customer,
                warehouse_id=warehouse.id,
                total_amount=total_amount,
                status=OrderStatus.PENDING,
                delivery_address=delivery_address or None,
                notes=notes,
                notified_for_current_status=False,
                created_at=now,
                lines=[OrderLine(**snapshot) for snapshot in snapshots],
            )
            try:
                # savepoint - מספר הזמנה כפול מיצירה מקבילה נופל על unique constraint
                async with self.db.begin_nested():
                    self.db.add(candidate)
            except IntegrityError:
                logger.warning(
                    "Order number collision, retrying with next sequence",
                    extra_data={"order_number": order_number, "attempt": attempt + 1}
                )
                continue
            order = candidate
            break

        if order is None:
            raise OrderNumberExhaustedError(attempts)

        if auto_commit:
            await self.db.commit()

        logger.info(
            "Order created",
            extra_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "phone": PhoneNumberValidator.mask(phone),
                "lines": len(snapshots),
                "total_amount": str(total_amount),
            }
        )
        return order

    async def _count_orders_on(self, day: date) -> int:
        start = datetime.combine(day, time.min)
        end = start + timedelta(days=1)
        result = await self.db.execute(
            select(func.count(Order.id)).where(Order.created_at >= start, Order.created_at < end)
        )
        return result.scalar_one()

    # ==================== Queries ====================

    async def list_orders(self) -> List[Order]:
        result = await self.db.execute(
            select(Order).order_by(Order.created_at.desc(), Order.id.desc())
        )
        return list(result.scalars().all())

    async def get_order_or_none(self, order_id: int) -> Optional[Order]:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_order(self, order_id: int) -> Order:
        order = await self.get_order_or_none(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    async def get_orders_by_phone(self, phone: str, limit: Optional[int] = None) -> List[Order]:
        query = (
            select(Order)
            .where(Order.customer_phone == phone)
            .order_by(Order.created_at.desc(), Order.id.desc())
        )
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_unrated_delivered_orders(self, phone: str) -> List[Order]:
        result = await self.db.execute(
            select(Order)
            .where(
                Order.customer_phone == phone,
                Order.status == OrderStatus.DELIVERED,
                Order.rating.is_(None),
            )
            .order_by(Order.delivered_at.desc(), Order.id.desc())
        )
        return list(result.scalars().all())

    async def _lock_order(self, order_id: int) -> Order:
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        return order

    # ==================== Status lifecycle ====================

    async def update_status(self, order_id: int, new_status: OrderStatus) -> Order:
        """
        Move an order to new_status.

        delivered/cancelled are terminal: repeating the same status is a
        no-op, anything else raises InvalidOrderTransitionError. Moving to
        delivered locks, re-checks and decrements every stock row in the
        same transaction as the status change; InsufficientStockError
        rolls everything back and leaves the order in its previous status.
        The customer is notified after commit.
        """
        new_status = OrderStatus(new_status)
        try:
            order = await self._lock_order(order_id)
            previous_status = order.status

            if previous_status.is_terminal:
                if new_status != previous_status:
                    raise InvalidOrderTransitionError(
                        order.id, previous_status.value, new_status.value
                    )
                # שחרור הנעילה - אין מה לשנות
                await self.db.commit()
                logger.info(
                    "Order already in terminal status, nothing to do",
                    extra_data={"order_id": order.id, "status": previous_status.value}
                )
                await self._notify_once(order, new_status)
                return order

            now = datetime.utcnow()
            if new_status == OrderStatus.CONFIRMED and not order.confirmed_at:
                order.confirmed_at = now

            if new_status == OrderStatus.DELIVERED:
                await self._deduct_stock(order)
                if not order.delivered_at:
                    order.delivered_at = now

            if new_status != previous_status:
                order.status = new_status
                order.notified_for_current_status = False

            await self.db.commit()
        except (AppException, SQLAlchemyError):
            await self.db.rollback()
            raise

        logger.info(
            "Order status updated",
            extra_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "previous_status": previous_status.value,
                "new_status": new_status.value,
            }
        )
        await self._notify_once(order, new_status)
        return order

    async def _deduct_stock(self, order: Order) -> None:
        """Lock, re-check and decrement stock for every line. Flushes only."""
        customer_id = order.customer_id
        if customer_id is None:
            customer = await self.customers.find_by_phone(order.customer_phone)
            customer_id = customer.id if customer else None

        # סדר נעילה קבוע לפי item_id - מונע deadlock בין שתי מסירות
        for line in sorted(order.lines, key=lambda line: line.item_id):
            stock = await self.catalog.lock_stock(line.item_id, order.warehouse_id)
            if stock is None:
                raise StockRecordNotFoundError(line.item_name, order.warehouse_id)
            if stock.quantity < line.quantity:
                raise InsufficientStockError(
                    line.item_name, stock.quantity, line.quantity, line.item_id
                )

            previous_quantity = stock.quantity
            await self.catalog.adjust_stock(stock.id, previous_quantity - line.quantity)
            logger.info(
                "Stock deducted on delivery",
                extra_data={
                    "order_id": order.id,
                    "item_id": line.item_id,
                    "warehouse_id": order.warehouse_id,
                    "from_quantity": previous_quantity,
                    "to_quantity": previous_quantity - line.quantity,
                }
            )

            if customer_id is not None:
                await self._record_sale(order, line, customer_id)

    async def _record_sale(self, order: Order, line: OrderLine, customer_id: int) -> None:
        """Sale record for one line. A failure here is logged and skipped."""
        try:
            async with self.db.begin_nested():
                await self.sales.record_sale(
                    customer_id=customer_id,
                    item_id=line.item_id,
                    warehouse_id=order.warehouse_id,
                    quantity=line.quantity,
                    amount=line.total_price,
                    remarks=f"WhatsApp Order #{order.order_number}",
                )
        except SQLAlchemyError as e:
            logger.error(
                "Failed to create sale record for delivered line",
                extra_data={
                    "order_id": order.id,
                    "item_id": line.item_id,
                    "error": str(e),
                },
                exc_info=True
            )

    async def _notify_once(self, order: Order, status: OrderStatus) -> bool:
        """Notify unless the current status was already announced."""
        if order.notified_for_current_status:
            logger.debug(
                "Customer already notified for current status",
                extra_data={"order_id": order.id, "status": status.value}
            )
            return False

        sent = await self.notifier.notify(order, status)
        if sent:
            try:
                order.notified_for_current_status = True
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.warning(
                    "Failed to persist notification flag",
                    extra_data={"order_id": order.id, "error": str(e)}
                )
        return sent

    async def cancel_order(self, order_id: int) -> Order:
        """
        Cancel an order. Stock was never decremented before delivery, so
        nothing is restored.

        Raises:
            OrderNotCancellableError: the order was already delivered
        """
        try:
            order = await self._lock_order(order_id)
            if order.status == OrderStatus.DELIVERED:
                raise OrderNotCancellableError(order.id)

            if order.status == OrderStatus.CANCELLED:
                await self.db.commit()
                await self._notify_once(order, OrderStatus.CANCELLED)
                return order

            previous_status = order.status
            order.status = OrderStatus.CANCELLED
            order.notified_for_current_status = False
            await self.db.commit()
        except (AppException, SQLAlchemyError):
            await self.db.rollback()
            raise

        logger.info(
            "Order cancelled",
            extra_data={
                "order_id": order.id,
                "order_number": order.order_number,
                "previous_status": previous_status.value,
            }
        )
        await self._notify_once(order, OrderStatus.CANCELLED)
        return order

    # ==================== Rating ====================

    async def rate_order(
        self,
        order_id: int,
        phone: str,
        rating: int,
        feedback: Optional[str] = None,
        *,
        auto_commit: bool = True,
    ) -> bool:
        """
        Rate a delivered order of this phone.

        Returns:
            True if the rating was stored, False if the order was already rated
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise InvalidRatingError(rating)

        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id, Order.customer_phone == phone)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFoundError(order_id)
        if order.status != OrderStatus.DELIVERED:
            raise InvalidStateError(
                message="Only delivered orders can be rated",
                error_code=ErrorCode.INVALID_STATE,
                details={"order_id": order.id, "status": order.status.value},
            )
        if order.rating is not None:
            return False

        order.rating = rating
        order.feedback = TextSanitizer.sanitize(feedback or "", max_length=1000) or None
        order.rated_at = datetime.utcnow()
        await self.db.flush()
        if auto_commit:
            await self.db.commit()

        logger.info(
            "Order rated",
            extra_data={"order_id": order.id, "rating": rating, "has_feedback": bool(order.feedback)}
        )
        return True

    # ==================== Stats ====================

    async def get_order_stats(self) -> dict:
        """Counts per status and revenue excluding cancelled orders"""
        result = await self.db.execute(
            select(Order.status, func.count(Order.id), func.sum(Order.total_amount))
            .group_by(Order.status)
        )
        stats: dict = {"total": 0}
        stats.update({status.value: 0 for status in OrderStatus})
        revenue = Decimal("0")
        for status, count, amount in result.all():
            status = OrderStatus(status)
            stats[status.value] = count
            stats["total"] += count
            if status != OrderStatus.CANCELLED and amount is not None:
                revenue += Decimal(str(amount))
        stats["total_revenue"] = revenue
        return stats
