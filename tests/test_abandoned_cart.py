"""
בדיקות ל-AbandonedCartScanner - תזכורות לעגלות שננטשו.

מכסה:
- עגלה שלא נגעו בה 30 שעות מקבלת תזכורת אחת
- סריקה שנייה באותו חלון לא שולחת שוב
- שליחה שנכשלה לא מסמנת חותמת זמן (ננסה שוב בסריקה הבאה)
- sessions באמצע checkout / עגלה ריקה / פעילות לאחרונה מדולגים
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.conversation.context import CartLine
from order_bot.conversation.states import SessionState
from order_bot.conversation.store import ConversationStore
from order_bot.db.models.conversation_session import ConversationSession
from order_bot.domain.services.abandoned_cart_service import AbandonedCartScanner, render_reminder

PHONE = "255711000111"


def _line(item_id: int = 1, quantity: int = 2) -> CartLine:
    return CartLine(
        item_id=item_id,
        item_name="Rice 5kg",
        quantity=quantity,
        unit_price=Decimal("12000.00"),
        warehouse_id=1,
    )


async def _idle_session(
    db_session: AsyncSession,
    phone: str = PHONE,
    hours: int = 30,
    state: SessionState = SessionState.MAIN_MENU,
    with_cart: bool = True,
) -> None:
    store = ConversationStore(db_session)
    if with_cart:
        await store.add_cart_line(phone, _line())
    await store.set_state(phone, state)
    await db_session.execute(
        update(ConversationSession)
        .where(ConversationSession.phone_number == phone)
        .values(updated_at=datetime.utcnow() - timedelta(hours=hours))
        .execution_options(synchronize_session=False)
    )
    await db_session.commit()


async def _reminder_stamp(db_session: AsyncSession, phone: str = PHONE):
    result = await db_session.execute(
        select(ConversationSession.last_cart_reminder_sent_at)
        .where(ConversationSession.phone_number == phone)
    )
    return result.scalar_one()


class TestRenderReminder:

    @pytest.mark.unit
    def test_lists_lines_and_total(self) -> None:
        text = render_reminder([_line(1, 2), _line(2, 1)])
        assert "You left 2 item(s)" in text
        assert "Qty: 2 × TZS 12,000.00" in text
        assert "Total: TZS 36,000.00" in text


class TestAbandonedCartScanner:

    @pytest.mark.integration
    async def test_idle_cart_gets_one_reminder(self, db_session, recording_gateway) -> None:
        await _idle_session(db_session)
        scanner = AbandonedCartScanner(db_session, gateway=recording_gateway)

        assert await scanner.scan() == 1
        assert recording_gateway.sent[0]["to"] == PHONE
        assert "You have items in your cart" in recording_gateway.sent[0]["body"]
        assert await _reminder_stamp(db_session) is not None

        # סריקה שנייה - כבר נשלחה תזכורת בחלון הנוכחי
        assert await scanner.scan() == 0
        assert len(recording_gateway.sent) == 1

    @pytest.mark.integration
    async def test_reminded_again_after_cooldown(self, db_session, recording_gateway) -> None:
        await _idle_session(db_session)
        scanner = AbandonedCartScanner(db_session, gateway=recording_gateway)
        await scanner.scan()

        later = datetime.utcnow() + timedelta(hours=25)
        assert await scanner.scan(now=later) == 1

    @pytest.mark.integration
    async def test_failed_send_is_not_stamped(self, db_session, failing_gateway, recording_gateway) -> None:
        await _idle_session(db_session)

        assert await AbandonedCartScanner(db_session, gateway=failing_gateway).scan() == 0
        assert await _reminder_stamp(db_session) is None

        assert await AbandonedCartScanner(db_session, gateway=recording_gateway).scan() == 1

    @pytest.mark.integration
    @pytest.mark.parametrize("state", [SessionState.ENTERING_ADDRESS, SessionState.CONFIRMING_ORDER])
    async def test_checkout_states_are_skipped(self, db_session, recording_gateway, state) -> None:
        await _idle_session(db_session, state=state)
        assert await AbandonedCartScanner(db_session, gateway=recording_gateway).scan() == 0

    @pytest.mark.integration
    async def test_recent_activity_is_skipped(self, db_session, recording_gateway) -> None:
        await _idle_session(db_session, hours=2)
        assert await AbandonedCartScanner(db_session, gateway=recording_gateway).scan() == 0

    @pytest.mark.integration
    async def test_empty_cart_is_skipped(self, db_session, recording_gateway) -> None:
        await _idle_session(db_session, with_cart=False)
        assert await AbandonedCartScanner(db_session, gateway=recording_gateway).scan() == 0

    @pytest.mark.integration
    async def test_custom_threshold(self, db_session, recording_gateway) -> None:
        await _idle_session(db_session, hours=3)
        scanner = AbandonedCartScanner(db_session, gateway=recording_gateway, threshold=timedelta(hours=2))
        assert await scanner.scan() == 1

    @pytest.mark.integration
    async def test_only_idle_sessions_in_mixed_batch(self, db_session, recording_gateway) -> None:
        await _idle_session(db_session, phone="255711000001")
        await _idle_session(db_session, phone="255711000002", hours=1)
        await _idle_session(db_session, phone="255711000003", state=SessionState.CONFIRMING_ORDER)

        assert await AbandonedCartScanner(db_session, gateway=recording_gateway).scan() == 1
        assert [message["to"] for message in recording_gateway.sent] == ["255711000001"]
