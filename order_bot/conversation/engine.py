"""
Dialogue Engine - processes one inbound message for one phone number

Per message: ensure the customer exists (best-effort), lock the session
row, dispatch (quick order, global commands, state handler), validate the
transition, save and commit. Sending is left to the caller.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from order_bot.conversation import rendering
from order_bot.conversation.context import SessionContext
from order_bot.conversation.handlers import DialogueHandlers, Transition
from order_bot.conversation.messages import DialogueResult, TextMessage
from order_bot.conversation.states import (
    EXPECTED_FLOWS,
    INITIAL_STATE,
    SessionState,
    is_valid_transition,
)
from order_bot.conversation.store import ConversationStore
from order_bot.core.config import settings
from order_bot.core.exceptions import AppException, InvalidStateTransitionError, SessionConflictError
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.domain.services.catalog_service import CatalogService
from order_bot.domain.services.customer_service import CustomerDirectory
from order_bot.domain.services.order_service import OrderService
from order_bot.domain.services.product_link_service import QUICK_ORDER_PREFIX

logger = get_logger(__name__)

MENU_COMMANDS = frozenset({"menu", "start"})
RESTART_COMMANDS = frozenset({"restart", "start over"})
HELP_COMMANDS = frozenset({"help"})


class DialogueEngine:
    """Single entry point for inbound customer messages"""

    def __init__(
        self,
        db: AsyncSession,
        catalog: Optional[CatalogService] = None,
        customers: Optional[CustomerDirectory] = None,
        orders: Optional[OrderService] = None,
        store: Optional[ConversationStore] = None,
    ):
        self.db = db
        self.catalog = catalog or CatalogService(db)
        self.customers = customers or CustomerDirectory(db)
        self.orders = orders or OrderService(db, catalog=self.catalog, customers=self.customers)
        self.store = store or ConversationStore(db)
        self.handlers = DialogueHandlers(self.catalog, self.orders)

    async def handle(
        self,
        phone: str,
        token: str,
        *,
        message_id: Optional[str] = None,
        contact_name: Optional[str] = None,
    ) -> DialogueResult:
        """
        Process a normalized token from ``phone``.

        Never raises: any failure ends in MAIN_MENU with an apology and the
        cart preserved.
        """
        phone_masked = PhoneNumberValidator.mask(phone)
        token = (token or "").strip()

        await self._ensure_customer(phone, contact_name)

        attempts = settings.SESSION_SAVE_MAX_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                return await self._process(phone, token, message_id)
            except StaleDataError:
                # כתיבה מקבילה לאותו session - קריאה מחדש ועיבוד חוזר
                await self.db.rollback()
                logger.warning(
                    "Session changed concurrently, retrying",
                    extra_data={"phone": phone_masked, "attempt": attempt, "max_attempts": attempts}
                )
            except AppException as e:
                await self.db.rollback()
                logger.warning(
                    "Dialogue handling failed",
                    extra_data={
                        "phone": phone_masked,
                        "error_code": e.error_code.value,
                        "error": e.message,
                    }
                )
                return await self._fail_open(phone)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Unexpected error in dialogue handling",
                    extra_data={"phone": phone_masked, "error": str(e)},
                    exc_info=True
                )
                return await self._fail_open(phone)

        conflict = SessionConflictError(phone_masked, attempts)
        logger.error(conflict.message, extra_data=conflict.details)
        return await self._fail_open(phone)

    async def _ensure_customer(self, phone: str, contact_name: Optional[str]) -> None:
        """Best-effort: a directory failure never blocks the conversation"""
        try:
            await self.customers.ensure_exists(phone, contact_name)
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "Failed to ensure customer record",
                extra_data={"phone": PhoneNumberValidator.mask(phone), "error": str(e)}
            )

    async def _process(self, phone: str, token: str, message_id: Optional[str]) -> DialogueResult:
        session = await self.store.get_or_create(phone, lock=True)
        state = self.store.current_state(session)

        if message_id and session.last_inbound_message_id == message_id:
            await self.db.commit()
            logger.info(
                "Duplicate inbound message ignored",
                extra_data={"phone": PhoneNumberValidator.mask(phone), "message_id": message_id}
            )
            return DialogueResult(state=state.value, messages=[], duplicate=True)

        context = self.store.load_context(session).for_state(EXPECTED_FLOWS[state])
        transition = await self._dispatch(state, phone, token, context)

        if not is_valid_transition(state, transition.state):
            raise InvalidStateTransitionError(state.value, transition.state.value)

        await self.store.save(session, transition.state, transition.context, inbound_message_id=message_id)
        await self.db.commit()

        if transition.state != state:
            logger.info(
                "Dialogue state changed",
                extra_data={
                    "phone": PhoneNumberValidator.mask(phone),
                    "from_state": state.value,
                    "to_state": transition.state.value,
                }
            )
        return DialogueResult(state=transition.state.value, messages=transition.messages)

    async def _dispatch(
        self,
        state: SessionState,
        phone: str,
        token: str,
        context: SessionContext,
    ) -> Transition:
        command = token.lower()

        # קישור הזמנה מהירה עוקף את ה-state הנוכחי
        if command.startswith(QUICK_ORDER_PREFIX.lower()):
            return await self.handlers.quick_order(phone, token[len(QUICK_ORDER_PREFIX):], context)

        if command in MENU_COMMANDS:
            return Transition(INITIAL_STATE, context.with_flow(None), [rendering.main_menu()])

        if command in RESTART_COMMANDS:
            return Transition(
                INITIAL_STATE,
                SessionContext(),
                [TextMessage("🔄 Starting over..."), rendering.main_menu()],
            )

        if command in HELP_COMMANDS:
            return Transition(state, context, [rendering.help_message()])

        return await self.handlers.handle(state, phone, token, context)

    async def _fail_open(self, phone: str) -> DialogueResult:
        """Force MAIN_MENU (cart kept) and apologize"""
        try:
            session = await self.store.get_or_create(phone, lock=True)
            context = self.store.load_context(session).with_flow(None)
            await self.store.save(session, INITIAL_STATE, context)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Failed to reset session after error",
                extra_data={"phone": PhoneNumberValidator.mask(phone), "error": str(e)},
                exc_info=True
            )
        return DialogueResult(
            state=INITIAL_STATE.value,
            messages=[rendering.apology(), rendering.main_menu()],
        )
