"""
Conversation Store - durable per-phone dialogue state
"""
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.conversation.context import CartLine, SessionContext
from order_bot.conversation.states import INITIAL_STATE, SessionState, coerce_state
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.db.models.conversation_session import ConversationSession

logger = get_logger(__name__)


class ConversationStore:
    """
    Read-modify-write access to ConversationSession rows.

    Every call re-reads the row, nothing is cached in process. Writes go
    through the ``version`` column, so a writer that loaded a stale copy gets
    ``StaleDataError`` on flush instead of silently overwriting the other
    writer's cart.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_or_create(self, phone: str, *, lock: bool = False) -> ConversationSession:
        """Get existing session or create new one in MAIN_MENU"""
        session = await self._load(phone, lock=lock)
        if session is not None:
            return session

        try:
            # savepoint - הודעה ראשונה כפולה מאותו מספר יכולה להגיע במקביל
            async with self.db.begin_nested():
                session = ConversationSession(
                    phone_number=phone,
                    state=INITIAL_STATE.value,
                    context_data=SessionContext().to_blob(),
                )
                self.db.add(session)
        except IntegrityError:
            logger.info(
                "Session created concurrently, re-reading",
                extra_data={"phone": PhoneNumberValidator.mask(phone)}
            )
            session = await self._load(phone, lock=lock)
            if session is None:
                raise
            return session

        logger.info(
            "Conversation session created",
            extra_data={"phone": PhoneNumberValidator.mask(phone)}
        )
        return session

    async def _load(self, phone: str, *, lock: bool) -> ConversationSession | None:
        query = select(ConversationSession).where(ConversationSession.phone_number == phone)
        if lock:
            query = query.with_for_update()
        # populate_existing - תמיד ערכים עדכניים מה-DB ולא מה-identity map
        query = query.execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    @staticmethod
    def load_context(session: ConversationSession) -> SessionContext:
        return SessionContext.from_blob(session.context_data)

    @staticmethod
    def current_state(session: ConversationSession) -> SessionState:
        return coerce_state(session.state)

    async def save(
        self,
        session: ConversationSession,
        state: SessionState,
        context: SessionContext,
        *,
        inbound_message_id: str | None = None,
    ) -> ConversationSession:
        """Write state + context and flush. The caller commits."""
        session.state = state.value
        # dict חדש כדי ש-SQLAlchemy יזהה שינוי ב-JSON
        session.context_data = context.to_blob()
        if inbound_message_id:
            session.last_inbound_message_id = inbound_message_id
        await self.db.flush()
        return session

    async def _mutate(
        self,
        phone: str,
        *,
        state: SessionState | None = None,
        update: Any = None,
    ) -> ConversationSession:
        session = await self.get_or_create(phone, lock=True)
        context = self.load_context(session)
        if update is not None:
            context = update(context)
        await self.save(session, state or self.current_state(session), context)
        await self.db.commit()
        return session

    async def set_state(
        self,
        phone: str,
        new_state: SessionState,
        context_patch: dict[str, Any] | None = None,
    ) -> ConversationSession:
        """Move to new_state, optionally patching the context"""
        def apply(context: SessionContext) -> SessionContext:
            return _patch(context, context_patch) if context_patch else context

        return await self._mutate(phone, state=new_state, update=apply)

    async def merge_context(self, phone: str, patch: dict[str, Any]) -> ConversationSession:
        return await self._mutate(phone, update=lambda context: _patch(context, patch))

    async def add_cart_line(self, phone: str, line: CartLine) -> ConversationSession:
        """Merge a line by item_id (quantities summed, total recomputed)"""
        return await self._mutate(phone, update=lambda context: context.with_line(line))

    async def remove_cart_line(self, phone: str, item_id: int) -> ConversationSession:
        return await self._mutate(phone, update=lambda context: context.without_item(item_id))

    async def get_cart(self, phone: str) -> list[CartLine]:
        session = await self.get_or_create(phone)
        return self.load_context(session).cart

    async def clear_cart(self, phone: str) -> ConversationSession:
        return await self._mutate(phone, update=lambda context: context.cleared())

    async def reset(self, phone: str) -> ConversationSession:
        """Start over: MAIN_MENU with an empty context"""
        return await self._mutate(
            phone,
            state=INITIAL_STATE,
            update=lambda context: SessionContext(),
        )


def _patch(context: SessionContext, patch: dict[str, Any]) -> SessionContext:
    """Shallow patch of the typed context. Values are validated again."""
    data = context.to_blob()
    data.update(patch)
    return SessionContext.model_validate(data)
