"""
Sale Ledger - accounting records for delivered order lines
"""
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.db.models.sale import Sale


class SaleLedger:
    """Append-only sale records. The caller owns the transaction."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_sale(
        self,
        customer_id: int,
        item_id: int,
        warehouse_id: int,
        quantity: int,
        amount: Decimal,
        remarks: str | None = None,
    ) -> Sale:
        sale = Sale(
            customer_id=customer_id,
            item_id=item_id,
            warehouse_id=warehouse_id,
            quantity=quantity,
            amount_paid=amount,
            remarks=remarks,
        )
        self.db.add(sale)
        await self.db.flush()
        return sale
