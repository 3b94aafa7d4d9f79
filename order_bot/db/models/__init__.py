"""
Database Models
"""
from order_bot.db.models.conversation_session import ConversationSession
from order_bot.db.models.order import Order, OrderLine, OrderStatus
from order_bot.db.models.catalog import Category, Item, ItemCondition, ItemPrice, ItemStock
from order_bot.db.models.warehouse import Warehouse
from order_bot.db.models.customer import Customer
from order_bot.db.models.sale import Sale
from order_bot.db.models.webhook_event import WebhookEvent

__all__ = [
    "ConversationSession",
    "Order",
    "OrderLine",
    "OrderStatus",
    "Category",
    "Item",
    "ItemCondition",
    "ItemPrice",
    "ItemStock",
    "Warehouse",
    "Customer",
    "Sale",
    "WebhookEvent",
]
