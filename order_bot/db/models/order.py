"""
Order Model - orders placed through the WhatsApp channel
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import relationship

from order_bot.db.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    READY = "ready"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


class Order(Base):
    """Confirmed purchase with an immutable line-item snapshot"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(20), unique=True, nullable=False, index=True)

    customer_phone = Column(String(32), nullable=False, index=True)
    # nullable - הזמנה יכולה להיווצר לפני שקיימת רשומת לקוח
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=True)
    warehouse_id = Column(Integer, ForeignKey("warehouses.id"), nullable=False)

    # סכום השורות ברגע היצירה - לא משתנה אחר כך
    total_amount = Column(Numeric(12, 2), nullable=False)
    status = Column(SQLEnum(OrderStatus), nullable=False, default=OrderStatus.PENDING, index=True)

    delivery_address = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)

    # נשלחה הודעה ללקוח עבור הסטטוס הנוכחי
    notified_for_current_status = Column(Boolean, nullable=False, default=False)

    # דירוג לאחר מסירה
    rating = Column(Integer, nullable=True)
    feedback = Column(Text, nullable=True)
    rated_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    confirmed_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)

    # Relationships
    lines = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderLine.id",
    )
    customer = relationship("Customer", lazy="selectin")


class OrderLine(Base):
    """Price snapshot of one item within an order"""

    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    item_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="lines")
