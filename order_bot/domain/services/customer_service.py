"""
Customer Directory - lookup-or-create customers by phone number
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.db.models.customer import Customer
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator, TextSanitizer

logger = get_logger(__name__)


class CustomerDirectory:
    """Customer records keyed by phone"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_phone(self, phone: str) -> Optional[Customer]:
        result = await self.db.execute(select(Customer).where(Customer.phone == phone))
        return result.scalar_one_or_none()

    async def create(self, phone: str, name: str) -> Customer:
        customer = Customer(phone=phone, name=name)
        self.db.add(customer)
        await self.db.flush()
        return customer

    async def ensure_exists(self, phone: str, name: Optional[str] = None) -> Customer:
        """
        Create the customer if absent and commit.

        Two first messages from the same number can race here, the loser
        hits the unique constraint inside its savepoint and re-reads.
        """
        customer = await self.find_by_phone(phone)
        if customer:
            return customer

        display_name = TextSanitizer.sanitize(name or "", max_length=100) or f"Customer {phone}"
        try:
            async with self.db.begin_nested():
                customer = await self.create(phone, display_name)
        except IntegrityError:
            customer = await self.find_by_phone(phone)
            if customer is None:
                raise
            return customer

        await self.db.commit()
        logger.info(
            "Customer created from WhatsApp contact",
            extra_data={"phone": PhoneNumberValidator.mask(phone), "customer_id": customer.id}
        )
        return customer
