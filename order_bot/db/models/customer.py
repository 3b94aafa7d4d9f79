"""
Customer Model - directory record keyed by phone number
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime

from order_bot.db.database import Base


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(32), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
