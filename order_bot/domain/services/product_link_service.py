"""
Product deep links - wa.me Click-to-Chat links that open the bot on an item
"""
from urllib.parse import quote

from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.core.config import settings
from order_bot.core.exceptions import ItemNotFoundError
from order_bot.domain.services.catalog_service import CatalogService

QUICK_ORDER_PREFIX = "ORDER:"


def quick_order_message(item_id: int) -> str:
    return f"{QUICK_ORDER_PREFIX}{item_id}"


def build_whatsapp_link(message: str) -> str:
    """wa.me link with a pre-filled message for the business number."""
    phone = settings.WHATSAPP_BUSINESS_PHONE.lstrip("+")
    return f"https://wa.me/{phone}?text={quote(message, safe='')}"


async def generate_order_link(db: AsyncSession, item_id: int, catalog: CatalogService | None = None) -> dict:
    """
    Deep link for embedding on a product page.

    Raises:
        ItemNotFoundError: unknown item id
    """
    catalog = catalog or CatalogService(db)
    item = await catalog.get_item(item_id)
    if item is None:
        raise ItemNotFoundError(item_id)

    view = await catalog.describe(item)
    message = quick_order_message(item.id)
    return {
        "success": True,
        "item": {
            "id": item.id,
            "name": item.name,
            "code": item.code,
            "price": view.price,
            "stock": view.stock,
        },
        "whatsapp_link": build_whatsapp_link(message),
        "short_message": message,
        "instructions": (
            f'Click the link or send "{message}" to our WhatsApp number to order this item.'
        ),
    }
