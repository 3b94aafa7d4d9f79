"""
Domain Services
"""
from order_bot.domain.services.catalog_service import CatalogService, ItemView
from order_bot.domain.services.customer_service import CustomerDirectory
from order_bot.domain.services.warehouse_service import WarehouseDirectory
from order_bot.domain.services.sale_ledger import SaleLedger
from order_bot.domain.services.order_service import OrderService, OrderLineRequest
from order_bot.domain.services.notification_service import NotificationDispatcher
from order_bot.domain.services.abandoned_cart_service import AbandonedCartScanner

__all__ = [
    "CatalogService",
    "ItemView",
    "CustomerDirectory",
    "WarehouseDirectory",
    "SaleLedger",
    "OrderService",
    "OrderLineRequest",
    "NotificationDispatcher",
    "AbandonedCartScanner",
]
