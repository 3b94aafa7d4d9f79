"""
Catalog Service - items, prices and per-warehouse stock
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.db.models.catalog import Category, Item, ItemPrice, ItemStock
from order_bot.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ItemView:
    """Item with its active price and primary stock row"""
    item: Item
    price: Optional[Decimal]
    stock_record: Optional[ItemStock]

    @property
    def has_stock_record(self) -> bool:
        return self.stock_record is not None

    @property
    def stock(self) -> int:
        return self.stock_record.quantity if self.stock_record else 0

    @property
    def warehouse_id(self) -> Optional[int]:
        return self.stock_record.warehouse_id if self.stock_record else None


class CatalogService:
    """Read access to the catalog plus the single stock mutation"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_item(self, item_id: int) -> Optional[Item]:
        result = await self.db.execute(select(Item).where(Item.id == item_id))
        return result.scalar_one_or_none()

    async def get_item_by_code(self, code: str) -> Optional[Item]:
        """Exact, case-insensitive code match"""
        code = (code or "").strip()
        if not code:
            return None
        result = await self.db.execute(
            select(Item).where(func.lower(Item.code) == code.lower()).limit(1)
        )
        return result.scalar_one_or_none()

    async def find_items(
        self,
        name_query: Optional[str] = None,
        category_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Item]:
        """Items filtered by name substring (case-insensitive) and/or category"""
        query = select(Item)
        if name_query:
            escaped = name_query.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            query = query.where(func.lower(Item.name).like(f"%{escaped}%", escape="\\"))
        if category_id is not None:
            query = query.where(Item.category_id == category_id)
        query = query.order_by(Item.name, Item.id)
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_categories(self, limit: Optional[int] = None) -> List[Category]:
        query = select(Category).order_by(Category.name, Category.id)
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_category(self, category_id: int) -> Optional[Category]:
        result = await self.db.execute(select(Category).where(Category.id == category_id))
        return result.scalar_one_or_none()

    async def active_price(self, item: Item) -> Optional[Decimal]:
        result = await self.db.execute(
            select(ItemPrice.selling_price)
            .where(ItemPrice.item_id == item.id, ItemPrice.is_active.is_(True))
            .order_by(ItemPrice.id.desc())
            .limit(1)
        )
        price = result.scalar_one_or_none()
        return Decimal(price) if price is not None else None

    async def primary_stock(self, item: Item) -> Optional[ItemStock]:
        """The item's first stock row. Used when no warehouse was chosen yet."""
        result = await self.db.execute(
            select(ItemStock).where(ItemStock.item_id == item.id).order_by(ItemStock.id).limit(1)
        )
        return result.scalar_one_or_none()

    async def stock_for(self, item: Item, warehouse_id: Optional[int] = None) -> Optional[ItemStock]:
        if warehouse_id is None:
            return await self.primary_stock(item)
        result = await self.db.execute(
            select(ItemStock).where(
                ItemStock.item_id == item.id,
                ItemStock.warehouse_id == warehouse_id,
            )
        )
        return result.scalar_one_or_none()

    async def lock_stock(self, item_id: int, warehouse_id: int) -> Optional[ItemStock]:
        """SELECT ... FOR UPDATE on the stock row (delivery-time deduction)"""
        result = await self.db.execute(
            select(ItemStock)
            .where(ItemStock.item_id == item_id, ItemStock.warehouse_id == warehouse_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def adjust_stock(self, stock_id: int, new_quantity: int) -> ItemStock:
        """Set the on-hand quantity of a stock row. Flushes, does not commit."""
        if new_quantity < 0:
            raise ValueError("Stock quantity cannot be negative")
        stock = await self.db.get(ItemStock, stock_id)
        if stock is None:
            raise ValueError(f"Stock record {stock_id} not found")
        stock.quantity = new_quantity
        await self.db.flush()
        return stock

    async def describe(self, item: Item) -> ItemView:
        return ItemView(
            item=item,
            price=await self.active_price(item),
            stock_record=await self.primary_stock(item),
        )

    async def describe_many(self, items: List[Item]) -> List[ItemView]:
        """Batch version of describe() for list rendering"""
        if not items:
            return []
        ids = [item.id for item in items]

        price_rows = await self.db.execute(
            select(ItemPrice)
            .where(ItemPrice.item_id.in_(ids), ItemPrice.is_active.is_(True))
            .order_by(ItemPrice.id)
        )
        prices: dict[int, Decimal] = {}
        for price in price_rows.scalars():
            # האחרון מנצח - כמו ב-active_price
            prices[price.item_id] = Decimal(price.selling_price)

        stock_rows = await self.db.execute(
            select(ItemStock).where(ItemStock.item_id.in_(ids)).order_by(ItemStock.id)
        )
        stocks: dict[int, ItemStock] = {}
        for stock in stock_rows.scalars():
            stocks.setdefault(stock.item_id, stock)

        return [
            ItemView(item=item, price=prices.get(item.id), stock_record=stocks.get(item.id))
            for item in items
        ]
