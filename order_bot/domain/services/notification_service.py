"""
Notification Dispatcher - order status messages to the customer
"""
from typing import Optional

from order_bot.conversation.rendering import money, order_items_text
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.db.models.order import Order, OrderStatus
from order_bot.domain.services.whatsapp.base_provider import BaseWhatsAppProvider

logger = get_logger(__name__)


def _customer_name(order: Order) -> str:
    if order.customer is not None and order.customer.name:
        return order.customer.name
    return "Customer"


def _confirmed(order: Order) -> str:
    return (
        f"✅ *Order Confirmed!*\n\n"
        f"Hi {_customer_name(order)},\n\n"
        f"Your order *#{order.order_number}* has been confirmed!\n\n"
        f"*Items:*\n{order_items_text(order)}\n\n"
        f"*Total:* {money(order.total_amount)}\n"
        f"*Delivery Address:* {order.delivery_address or 'Not specified'}\n\n"
        "We're preparing your order for delivery. You'll be notified when it's ready!"
    )


def _ready_for_delivery(order: Order) -> str:
    return (
        f"📦 *Order Ready!*\n\n"
        f"Hi {_customer_name(order)},\n\n"
        f"Great news! Your order *#{order.order_number}* is on its way to you!\n\n"
        f"*Items:*\n{order_items_text(order)}\n\n"
        f"*Total Amount:* {money(order.total_amount)}\n"
        f"*Delivery Address:* {order.delivery_address or 'Not specified'}\n"
        "*Payment:* Cash on Delivery\n\n"
        "Our delivery team will contact you shortly!"
    )


def _delivered(order: Order) -> str:
    return (
        f"✅ *Order Delivered!*\n\n"
        f"Hi {_customer_name(order)},\n\n"
        f"Your order *#{order.order_number}* has been delivered successfully!\n\n"
        f"*Items:*\n{order_items_text(order)}\n\n"
        f"*Total Paid:* {money(order.total_amount)}\n\n"
        "Thank you for shopping with us! 🎉\n\n"
        "Type *menu* anytime to place a new order or *rate* to rate this order."
    )


def _cancelled(order: Order) -> str:
    return (
        f"❌ *Order Cancelled*\n\n"
        f"Hi {_customer_name(order)},\n\n"
        f"Your order *#{order.order_number}* has been cancelled.\n\n"
        f"*Items:*\n{order_items_text(order)}\n\n"
        f"*Total:* {money(order.total_amount)}\n\n"
        "If you have any questions, please contact us.\n\n"
        "Type *menu* to place a new order."
    )


TEMPLATES = {
    OrderStatus.CONFIRMED: _confirmed,
    OrderStatus.PROCESSING: _ready_for_delivery,
    OrderStatus.READY: _ready_for_delivery,
    OrderStatus.DELIVERED: _delivered,
    OrderStatus.CANCELLED: _cancelled,
}


class NotificationDispatcher:
    """Renders a status template and sends it. Never raises to the caller."""

    def __init__(self, gateway: BaseWhatsAppProvider):
        self.gateway = gateway

    def render(self, order: Order, status: OrderStatus) -> Optional[str]:
        template = TEMPLATES.get(OrderStatus(status))
        return template(order) if template else None

    async def notify(self, order: Order, status: OrderStatus) -> bool:
        """
        Send the template for ``status``.

        Returns:
            True if a message was sent, False when there is no template for
            the status or the send failed.
        """
        try:
            text = self.render(order, status)
            if text is None:
                logger.debug(
                    "No notification template for status",
                    extra_data={"order_id": order.id, "status": str(status)}
                )
                return False

            await self.gateway.send_text(order.customer_phone, text)
            logger.info(
                "Order status notification sent",
                extra_data={
                    "order_id": order.id,
                    "order_number": order.order_number,
                    "status": OrderStatus(status).value,
                    "phone": PhoneNumberValidator.mask(order.customer_phone),
                }
            )
            return True
        except Exception as e:
            # כשלון בהתראה לא חוסם את שינוי הסטטוס
            logger.error(
                "Failed to send order status notification",
                extra_data={
                    "order_id": order.id,
                    "status": str(status),
                    "phone": PhoneNumberValidator.mask(order.customer_phone),
                    "error": str(e),
                },
                exc_info=True
            )
            return False
