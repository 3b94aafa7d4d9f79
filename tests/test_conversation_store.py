"""
בדיקות ל-ConversationStore - שמירת state ו-context לכל מספר טלפון.

מכסה:
- יצירת session חדש ב-MAIN_MENU
- set_state / merge_context / פעולות עגלה
- reset - התחלה מחדש עם עגלה ריקה
- optimistic locking - כתיבה מעותק ישן נכשלת עם StaleDataError
"""
from decimal import Decimal

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from order_bot.conversation.context import CartLine, SearchFlow
from order_bot.conversation.states import SessionState
from order_bot.conversation.store import ConversationStore
from order_bot.db.models.conversation_session import ConversationSession

PHONE = "255700000001"


def _line(item_id: int, quantity: int) -> CartLine:
    return CartLine(
        item_id=item_id,
        item_name=f"Item {item_id}",
        quantity=quantity,
        unit_price=Decimal("2000.00"),
        warehouse_id=1,
    )


class TestConversationStore:

    @pytest.mark.unit
    async def test_get_or_create_starts_in_main_menu(self, db_session: AsyncSession) -> None:
        store = ConversationStore(db_session)
        session = await store.get_or_create(PHONE)
        await db_session.commit()

        assert store.current_state(session) == SessionState.MAIN_MENU
        assert store.load_context(session).cart == []

        again = await store.get_or_create(PHONE)
        assert again.id == session.id

    @pytest.mark.unit
    async def test_set_state_with_context_patch(self, db_session: AsyncSession) -> None:
        store = ConversationStore(db_session)
        await store.set_state(PHONE, SessionState.SEARCHING, {"flow": {"kind": "search", "query": "rice"}})

        session = await store.get_or_create(PHONE)
        assert store.current_state(session) == SessionState.SEARCHING
        assert store.load_context(session).flow_as(SearchFlow).query == "rice"

    @pytest.mark.unit
    async def test_cart_operations(self, db_session: AsyncSession) -> None:
        store = ConversationStore(db_session)
        await store.add_cart_line(PHONE, _line(1, 2))
        await store.add_cart_line(PHONE, _line(1, 3))
        await store.add_cart_line(PHONE, _line(2, 1))

        cart = await store.get_cart(PHONE)
        assert [(line.item_id, line.quantity) for line in cart] == [(1, 5), (2, 1)]

        await store.remove_cart_line(PHONE, 1)
        assert [line.item_id for line in await store.get_cart(PHONE)] == [2]

        await store.clear_cart(PHONE)
        assert await store.get_cart(PHONE) == []

    @pytest.mark.unit
    async def test_reset_clears_cart_and_state(self, db_session: AsyncSession) -> None:
        store = ConversationStore(db_session)
        await store.add_cart_line(PHONE, _line(1, 1))
        await store.set_state(PHONE, SessionState.CART_REVIEW)

        await store.reset(PHONE)

        session = await store.get_or_create(PHONE)
        assert store.current_state(session) == SessionState.MAIN_MENU
        assert store.load_context(session).cart == []

    @pytest.mark.unit
    async def test_unknown_state_in_db_falls_back_to_main_menu(self, db_session: AsyncSession) -> None:
        store = ConversationStore(db_session)
        session = await store.get_or_create(PHONE)
        session.state = "SOMETHING_REMOVED"
        await db_session.commit()

        assert store.current_state(session) == SessionState.MAIN_MENU

    @pytest.mark.unit
    async def test_stale_write_is_rejected(self, db_session: AsyncSession) -> None:
        """כתיבה מקבילה קידמה את version - הכתיבה שלנו נכשלת במקום לדרוס את העגלה"""
        store = ConversationStore(db_session)
        session = await store.get_or_create(PHONE)
        await db_session.commit()

        # writer אחר מעדכן את השורה ישירות
        await db_session.execute(
            update(ConversationSession)
            .where(ConversationSession.id == session.id)
            .values(version=ConversationSession.version + 1)
            .execution_options(synchronize_session=False)
        )

        session.state = SessionState.CART_REVIEW.value
        with pytest.raises(StaleDataError):
            await db_session.flush()
        await db_session.rollback()
