"""
Conversation Session Model - per-phone dialogue state
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON

from order_bot.db.database import Base


class ConversationSession(Base):
    """Dialogue state and scratch context for one WhatsApp number"""

    __tablename__ = "conversation_sessions"

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(32), unique=True, nullable=False, index=True)

    # State machine
    state = Column(String(50), nullable=False, default="MAIN_MENU")

    # עגלה + נתוני flow נוכחי (ראו order_bot.conversation.context)
    context_data = Column(JSON, nullable=False, default=dict)

    last_inbound_message_id = Column(String(200), nullable=True)
    last_cart_reminder_sent_at = Column(DateTime, nullable=True)

    # optimistic lock - כל UPDATE בודק ומקדם את הגרסה
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, index=True)

    __mapper_args__ = {"version_id_col": version}
