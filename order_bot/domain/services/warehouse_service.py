"""
Warehouse Directory
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.db.models.warehouse import Warehouse


class WarehouseDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_warehouse(self, warehouse_id: Optional[int]) -> Optional[Warehouse]:
        if warehouse_id is None:
            return None
        return await self.db.get(Warehouse, warehouse_id)
