"""
Webhook Event Model - טבלת idempotency למניעת עיבוד כפול של הודעות webhook.

כל הודעה נכנסת נרשמת לפי message_id. רק הודעות עם status=completed
נחסמות מ-retry. הודעה שנתקעה ב-processing מעבר לסף מותרת לעיבוד חוזר.
"""
from datetime import datetime

from sqlalchemy import Column, String, DateTime, Index

from order_bot.db.database import Base


class WebhookEvent(Base):
    """רשומת idempotency - הודעה שהתקבלה מ-webhook"""

    __tablename__ = "webhook_events"

    message_id = Column(String(200), primary_key=True)
    platform = Column(String(20), nullable=False, default="whatsapp")
    status = Column(String(20), nullable=False, default="processing")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
