"""
Order Admin API Routes

פעולות ניהול להזמנות שנוצרו בצ'אט: צפייה, עדכון סטטוס, ביטול, סטטיסטיקות
וקישורי הזמנה מהירה. ללא אימות - נחשף מאחורי רשת פנימית בלבד.
"""
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_serializer, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.db.database import get_db
from order_bot.db.models.order import OrderStatus
from order_bot.domain.services.abandoned_cart_service import AbandonedCartScanner
from order_bot.domain.services.order_service import OrderService
from order_bot.domain.services.product_link_service import generate_order_link

logger = get_logger(__name__)

router = APIRouter()


class OrderLineResponse(BaseModel):
    """Snapshot of one ordered item"""
    item_id: int
    item_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal

    model_config = {"from_attributes": True}

    @field_serializer("unit_price", "total_price")
    def serialize_money(self, v: Decimal) -> float:
        return float(v)


class OrderResponse(BaseModel):
    """Response schema for order data"""
    id: int
    order_number: str
    customer_phone: str
    warehouse_id: int
    status: OrderStatus
    total_amount: Decimal
    delivery_address: str | None
    notes: str | None
    rating: int | None
    feedback: str | None
    created_at: datetime | None
    confirmed_at: datetime | None
    delivered_at: datetime | None
    lines: List[OrderLineResponse]

    model_config = {"from_attributes": True}

    @field_serializer("total_amount")
    def serialize_total(self, v: Decimal) -> float:
        return float(v)


class StatusUpdate(BaseModel):
    """Request schema for a status change"""
    status: OrderStatus

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        # מקבלים גם "DELIVERED" וגם "delivered"
        if isinstance(v, str):
            return v.strip().lower()
        return v


class OrderStatsResponse(BaseModel):
    total: int
    pending: int
    confirmed: int
    processing: int
    ready: int
    delivered: int
    cancelled: int
    total_revenue: Decimal

    @field_serializer("total_revenue")
    def serialize_revenue(self, v: Decimal) -> float:
        return float(v)


class ProductLinkItem(BaseModel):
    id: int
    name: str
    code: str | None
    price: Decimal | None
    stock: int

    @field_serializer("price")
    def serialize_price(self, v: Decimal | None) -> float | None:
        return float(v) if v is not None else None


class ProductLinkResponse(BaseModel):
    success: bool
    item: ProductLinkItem
    whatsapp_link: str
    short_message: str
    instructions: str


class AbandonedCartScanResponse(BaseModel):
    sent: int


@router.get(
    "/orders",
    response_model=List[OrderResponse],
    summary="List orders",
    description="All orders, newest first.",
)
async def list_orders(db: AsyncSession = Depends(get_db)) -> List[OrderResponse]:
    return await OrderService(db).list_orders()


@router.get(
    "/orders/phone/{phone}",
    response_model=List[OrderResponse],
    summary="Orders of one customer",
)
async def get_orders_by_phone(phone: str, db: AsyncSession = Depends(get_db)) -> List[OrderResponse]:
    """Phone is normalized before lookup, so +255... and 0... both match."""
    return await OrderService(db).get_orders_by_phone(PhoneNumberValidator.normalize(phone))


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
    responses={404: {"description": "Order not found"}},
)
async def get_order(order_id: int, db: AsyncSession = Depends(get_db)) -> OrderResponse:
    return await OrderService(db).get_order(order_id)


@router.put(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    summary="Update order status",
    description=(
        "Moves the order to a new status. Delivering deducts stock atomically; "
        "the customer is notified once per status."
    ),
    responses={
        404: {"description": "Order not found"},
        409: {"description": "Order is delivered or cancelled, or stock is insufficient"},
    },
)
async def update_order_status(
    order_id: int,
    body: StatusUpdate,
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    order = await OrderService(db).update_status(order_id, body.status)
    logger.info(
        "Order status updated via API",
        extra_data={"order_id": order_id, "status": body.status.value},
    )
    return order


@router.put(
    "/orders/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    responses={
        404: {"description": "Order not found"},
        409: {"description": "Delivered orders cannot be cancelled"},
    },
)
async def cancel_order(order_id: int, db: AsyncSession = Depends(get_db)) -> OrderResponse:
    return await OrderService(db).cancel_order(order_id)


@router.get(
    "/stats/orders",
    response_model=OrderStatsResponse,
    summary="Order statistics",
    description="Count per status and revenue excluding cancelled orders.",
)
async def get_order_stats(db: AsyncSession = Depends(get_db)) -> OrderStatsResponse:
    return await OrderService(db).get_order_stats()


@router.get(
    "/product-link/{item_id}",
    response_model=ProductLinkResponse,
    summary="WhatsApp quick-order link for an item",
    responses={404: {"description": "Item not found"}},
)
async def get_product_link(item_id: int, db: AsyncSession = Depends(get_db)) -> ProductLinkResponse:
    return await generate_order_link(db, item_id)


@router.post(
    "/abandoned-carts/check",
    response_model=AbandonedCartScanResponse,
    summary="Run the abandoned cart scan now",
)
async def check_abandoned_carts(db: AsyncSession = Depends(get_db)) -> AbandonedCartScanResponse:
    sent = await AbandonedCartScanner(db).scan()
    return {"sent": sent}
