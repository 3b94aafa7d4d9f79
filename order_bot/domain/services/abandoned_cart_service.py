"""
Abandoned Cart Scanner - reminds customers about carts left idle
"""
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.conversation.context import CartLine, SessionContext
from order_bot.conversation.rendering import money
from order_bot.conversation.states import CHECKOUT_STATES
from order_bot.core.config import settings
from order_bot.core.exceptions import TransientSendFailure
from order_bot.core.logging import get_logger, log_async_operation
from order_bot.core.validation import PhoneNumberValidator
from order_bot.db.models.conversation_session import ConversationSession

logger = get_logger(__name__)


def render_reminder(cart: Sequence[CartLine]) -> str:
    total = sum((line.total_price for line in cart), start=0)
    message = "🛒 *You have items in your cart!*\n\n"
    message += f"You left {len(cart)} item(s) in your cart:\n\n"
    for index, line in enumerate(cart, start=1):
        message += f"{index}. {line.item_name}\n"
        message += f"   Qty: {line.quantity} × {money(line.unit_price)}\n"
    message += f"\n💰 *Total: {money(total)}*\n\n"
    message += "Complete your order now!\n"
    message += "Type *cart* to review and checkout.\n\n"
    message += "Need help? Type *menu* to start over."
    return message


class AbandonedCartScanner:
    """
    Finds idle sessions with a non-empty cart and sends one reminder per
    cooldown window.

    Each candidate is re-read under a row lock before sending, so a cart
    that moved into checkout (or was already reminded by an overlapping
    run) after the query is skipped.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway=None,
        threshold: Optional[timedelta] = None,
    ):
        self.db = db
        self._gateway = gateway
        self.threshold = threshold or timedelta(hours=settings.ABANDONED_CART_THRESHOLD_HOURS)

    @property
    def gateway(self):
        if self._gateway is None:
            from order_bot.domain.services.whatsapp import get_whatsapp_notifications_provider

            self._gateway = get_whatsapp_notifications_provider()
        return self._gateway

    def _is_eligible(self, session: ConversationSession, cutoff: datetime) -> bool:
        if session.state in {state.value for state in CHECKOUT_STATES}:
            return False
        if session.updated_at is None or session.updated_at >= cutoff:
            return False
        if session.last_cart_reminder_sent_at is not None and session.last_cart_reminder_sent_at >= cutoff:
            return False
        return SessionContext.from_blob(session.context_data).has_cart

    async def find_candidates(self, now: Optional[datetime] = None) -> List[ConversationSession]:
        now = now or datetime.utcnow()
        cutoff = now - self.threshold
        result = await self.db.execute(
            select(ConversationSession)
            .where(
                ConversationSession.updated_at < cutoff,
                ConversationSession.state.notin_([state.value for state in CHECKOUT_STATES]),
                or_(
                    ConversationSession.last_cart_reminder_sent_at.is_(None),
                    ConversationSession.last_cart_reminder_sent_at < cutoff,
                ),
            )
            .order_by(ConversationSession.updated_at)
        )
        # תוכן העגלה נבדק ב-Python - JSON queries שונות בין Postgres ל-SQLite
        return [
            session for session in result.scalars().all()
            if SessionContext.from_blob(session.context_data).has_cart
        ]

    @log_async_operation("abandoned_cart_scan")
    async def scan(self, now: Optional[datetime] = None) -> int:
        """Send due reminders. Returns how many were sent."""
        now = now or datetime.utcnow()
        candidates = await self.find_candidates(now)
        candidate_ids = [session.id for session in candidates]
        logger.info(
            "Abandoned carts found",
            extra_data={"count": len(candidate_ids)}
        )

        sent = 0
        for session_id in candidate_ids:
            try:
                if await self._remind(session_id, now):
                    sent += 1
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Failed to process abandoned cart",
                    extra_data={"session_id": session_id, "error": str(e)},
                    exc_info=True
                )
        return sent

    async def _remind(self, session_id: int, now: datetime) -> bool:
        result = await self.db.execute(
            select(ConversationSession)
            .where(ConversationSession.id == session_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        session = result.scalar_one_or_none()
        cutoff = now - self.threshold
        if session is None or not self._is_eligible(session, cutoff):
            await self.db.commit()
            return False

        phone_masked = PhoneNumberValidator.mask(session.phone_number)
        cart = SessionContext.from_blob(session.context_data).cart
        try:
            await self.gateway.send_text(session.phone_number, render_reminder(cart))
        except TransientSendFailure as e:
            # בלי חותמת זמן - ננסה שוב בסריקה הבאה
            await self.db.commit()
            logger.warning(
                "Abandoned cart reminder not sent",
                extra_data={"phone": phone_masked, "error": e.message}
            )
            return False

        session.last_cart_reminder_sent_at = now
        await self.db.commit()
        logger.info(
            "Abandoned cart reminder sent",
            extra_data={"phone": phone_masked, "cart_lines": len(cart)}
        )
        return True
