"""
State Handlers - one handler per dialogue state

Each handler takes (phone, token, context) and returns a Transition: the
next state, the new context and the messages to send. Handlers never send
and never commit; the engine validates the transition, saves the session
and hands the messages to the outbound dispatcher.
"""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from order_bot.conversation import rendering
from order_bot.conversation.context import (
    CartLine,
    CategoryFlow,
    CheckoutFlow,
    ItemSelectionFlow,
    RatingFlow,
    ReorderFlow,
    SearchFlow,
    SessionContext,
    TrackingFlow,
)
from order_bot.conversation.messages import OutboundMessage, TextMessage
from order_bot.conversation.states import SessionState
from order_bot.core.config import settings
from order_bot.core.exceptions import AppException, NoActivePriceError
from order_bot.core.logging import get_logger
from order_bot.core.validation import (
    AddressValidator,
    PhoneNumberValidator,
    TextSanitizer,
    parse_positive_int,
)
from order_bot.db.models.catalog import Item
from order_bot.db.models.order import Order
from order_bot.domain.services.catalog_service import CatalogService
from order_bot.domain.services.order_service import OrderService

logger = get_logger(__name__)

BACK_TOKENS = frozenset({"back", "back_to_menu", "cancel"})


@dataclass
class Transition:
    """Handler result: where to go, what to remember, what to say"""
    state: SessionState
    context: SessionContext
    messages: list[OutboundMessage] = field(default_factory=list)


Handler = Callable[[str, str, SessionContext], Awaitable[Transition]]


def _pick_order_id(token: str, order_ids: Sequence[int]) -> Optional[int]:
    """Resolve a list reply: position in the list (1-based) or an ``order_<id>`` row id."""
    lowered = token.lower()
    if lowered.startswith("order_"):
        order_id = parse_positive_int(lowered[len("order_"):])
        return order_id if order_id in order_ids else None
    position = parse_positive_int(token)
    if position is not None and position <= len(order_ids):
        return order_ids[position - 1]
    return None


def _prefixed_id(token: str, prefix: str) -> Optional[int]:
    if not token.lower().startswith(prefix):
        return None
    return parse_positive_int(token[len(prefix):])


class DialogueHandlers:
    """Handlers for the ordering conversation states"""

    def __init__(self, catalog: CatalogService, orders: OrderService):
        self.catalog = catalog
        self.orders = orders

    def _get_handler(self, state: SessionState) -> Handler:
        """Get handler function for state"""
        handlers = {
            SessionState.MAIN_MENU: self._handle_main_menu,

            # Catalog
            SessionState.BROWSING_CATEGORIES: self._handle_browsing_categories,
            SessionState.VIEWING_ITEMS: self._handle_viewing_items,
            SessionState.SEARCHING: self._handle_searching,
            SessionState.SEARCHING_BY_CODE: self._handle_searching_by_code,
            SessionState.ADDING_TO_CART: self._handle_adding_to_cart,

            # Checkout
            SessionState.CART_REVIEW: self._handle_cart_review,
            SessionState.ENTERING_ADDRESS: self._handle_entering_address,
            SessionState.CONFIRMING_ORDER: self._handle_confirming_order,

            # After-sale
            SessionState.TRACKING_ORDER: self._handle_tracking_order,
            SessionState.RATING_ORDER: self._handle_rating_order,
            SessionState.PROVIDING_FEEDBACK: self._handle_providing_feedback,
            SessionState.VIEWING_ORDER_HISTORY: self._handle_order_history,
            SessionState.SELECTING_REORDER: self._handle_selecting_reorder,
        }
        return handlers.get(state, self._handle_main_menu)

    async def handle(self, state: SessionState, phone: str, token: str, context: SessionContext) -> Transition:
        return await self._get_handler(state)(phone, token, context)

    # ==================== Shared screens ====================

    @staticmethod
    def _to_menu(context: SessionContext, *prefix: OutboundMessage) -> Transition:
        """MAIN_MENU with the flow dropped and the cart kept"""
        return Transition(
            SessionState.MAIN_MENU,
            context.with_flow(None),
            [*prefix, rendering.main_menu()],
        )

    async def _show_categories(self, context: SessionContext, *prefix: OutboundMessage) -> Transition:
        categories = await self.catalog.list_categories()
        if not categories:
            return self._to_menu(context, TextMessage("📂 No categories available at the moment."))
        return Transition(
            SessionState.BROWSING_CATEGORIES,
            context.with_flow(None),
            [*prefix, rendering.category_list(categories)],
        )

    async def _show_category_items(self, context: SessionContext, category_id: int) -> Transition:
        category = await self.catalog.get_category(category_id)
        if category is None:
            return await self._show_categories(context, TextMessage("❌ Category not found."))

        items = await self.catalog.find_items(category_id=category.id)
        if not items:
            return await self._show_categories(
                context,
                TextMessage(f"😔 No products available in {category.name} right now."),
            )

        views = await self.catalog.describe_many(items)
        return Transition(
            SessionState.VIEWING_ITEMS,
            context.with_flow(CategoryFlow(category_id=category.id)),
            [rendering.item_list(
                views,
                body=f"Products in *{category.name}*:",
                header=f"📦 {category.name}",
                back_row=rendering.BACK_TO_CATEGORIES_ROW,
            )],
        )

    async def _show_search_results(self, context: SessionContext, query: str) -> Optional[Transition]:
        items = await self.catalog.find_items(name_query=query)
        if not items:
            return None
        views = await self.catalog.describe_many(items)
        return Transition(
            SessionState.VIEWING_ITEMS,
            context.with_flow(SearchFlow(query=query)),
            [rendering.item_list(
                views,
                body=f'🔍 Search results for "{query}":',
                header="🔍 Search Results",
                back_row=rendering.BACK_TO_MENU_ROW,
            )],
        )

    async def _select_item(
        self,
        context: SessionContext,
        item: Item,
        *,
        heading: Optional[str] = None,
        cancel_hint: str = "go back",
    ) -> Transition:
        """Item details + quantity prompt -> ADDING_TO_CART"""
        view = await self.catalog.describe(item)
        if view.price is None:
            raise NoActivePriceError(item.name, item.id)
        if view.stock <= 0:
            return self._to_menu(
                context,
                TextMessage(f"😔 Sorry, *{item.name}* is currently out of stock."),
            )
        return Transition(
            SessionState.ADDING_TO_CART,
            context.with_flow(ItemSelectionFlow(item_id=item.id)),
            [rendering.item_prompt(view, heading=heading, cancel_hint=cancel_hint)],
        )

    def _show_cart(self, context: SessionContext) -> Transition:
        if not context.has_cart:
            return Transition(SessionState.MAIN_MENU, context.with_flow(None), [rendering.empty_cart()])
        return Transition(SessionState.CART_REVIEW, context.with_flow(None), [rendering.cart_review(context)])

    def _start_checkout(self, context: SessionContext) -> Transition:
        if not context.has_cart:
            return Transition(SessionState.MAIN_MENU, context.with_flow(None), [rendering.empty_cart()])
        return Transition(SessionState.ENTERING_ADDRESS, context.with_flow(None), [rendering.address_prompt()])

    async def _show_tracking(self, phone: str, context: SessionContext, *prefix: OutboundMessage) -> Transition:
        limit = min(settings.TRACKING_ORDERS_LIMIT, rendering.max_content_rows())
        orders = await self.orders.get_orders_by_phone(phone, limit=limit)
        if not orders:
            return self._to_menu(
                context,
                TextMessage("📦 You don't have any orders yet.\n\nStart shopping to place your first order!"),
            )
        return Transition(
            SessionState.TRACKING_ORDER,
            context.with_flow(TrackingFlow(order_ids=[order.id for order in orders])),
            [*prefix, rendering.tracking_list(orders)],
        )

    async def _show_rating(self, phone: str, context: SessionContext) -> Transition:
        orders = await self.orders.get_unrated_delivered_orders(phone)
        orders = orders[:rendering.max_content_rows()]
        if not orders:
            return self._to_menu(
                context,
                TextMessage("⭐ You don't have any delivered orders waiting for a rating."),
            )
        return Transition(
            SessionState.RATING_ORDER,
            context.with_flow(RatingFlow(unrated_order_ids=[order.id for order in orders])),
            [rendering.rating_list(orders)],
        )

    async def _show_history(self, phone: str, context: SessionContext) -> Transition:
        limit = min(settings.REORDER_HISTORY_LIMIT, rendering.max_content_rows())
        orders = await self.orders.get_orders_by_phone(phone, limit=limit)
        if not orders:
            return self._to_menu(
                context,
                TextMessage("🔄 You don't have any previous orders to reorder yet."),
            )
        return Transition(
            SessionState.VIEWING_ORDER_HISTORY,
            context.with_flow(ReorderFlow(order_history_ids=[order.id for order in orders])),
            [rendering.order_history_list(orders)],
        )

    async def _own_order(self, phone: str, order_id: Optional[int]) -> Optional[Order]:
        """Order by id, only if it belongs to this phone"""
        if order_id is None:
            return None
        order = await self.orders.get_order_or_none(order_id)
        if order is None or order.customer_phone != phone:
            return None
        return order

    # ==================== Quick order ====================

    async def quick_order(self, phone: str, identifier: str, context: SessionContext) -> Transition:
        """ORDER:<id|code> from a product deep link, valid from any state"""
        identifier = identifier.strip()
        item = None
        if identifier.isascii() and identifier.isdigit():
            item = await self.catalog.get_item(int(identifier))
        if item is None:
            item = await self.catalog.get_item_by_code(identifier)

        if item is None:
            logger.info(
                "Quick order for unknown product",
                extra_data={"phone": PhoneNumberValidator.mask(phone), "identifier": identifier[:50]}
            )
            return self._to_menu(
                context,
                TextMessage(f'❌ Sorry, product "{identifier}" not found.'),
            )
        return await self._select_item(
            context, item, heading="🛒 *Quick Order*", cancel_hint="return to menu"
        )

    # ==================== Main Menu ====================

    async def _handle_main_menu(self, phone: str, token: str, context: SessionContext) -> Transition:
        choice = token.lower()

        if choice in ("browse_categories", "continue_shopping"):
            return await self._show_categories(context)

        if choice == "search_products":
            return Transition(
                SessionState.SEARCHING,
                context.with_flow(None),
                [TextMessage('🔍 Please enter the product name you\'re looking for (or type "cancel" to go back):')],
            )

        if choice == "search_by_code":
            return Transition(
                SessionState.SEARCHING_BY_CODE,
                context.with_flow(None),
                [TextMessage('🔢 Please enter the product code (or type "cancel" to go back):')],
            )

        if choice in ("view_cart", "cart"):
            return self._show_cart(context)

        if choice == "checkout":
            return self._start_checkout(context)

        if choice in ("track_order", "track"):
            return await self._show_tracking(phone, context)

        if choice in ("rate_order", "rate"):
            return await self._show_rating(phone, context)

        if choice in ("quick_reorder", "reorder"):
            return await self._show_history(phone, context)

        # בחירת קטגוריה מרשימה ישנה שעדיין פתוחה בצ'אט
        category_id = _prefixed_id(token, "cat_")
        if category_id is not None:
            return await self._show_category_items(context, category_id)

        # כל השאר (כולל back_to_menu) - הצגת התפריט מחדש
        return self._to_menu(context)

    # ==================== Catalog ====================

    async def _handle_browsing_categories(self, phone: str, token: str, context: SessionContext) -> Transition:
        if token.lower() in BACK_TOKENS:
            return self._to_menu(context)

        category_id = _prefixed_id(token, "cat_")
        if category_id is None:
            return await self._show_categories(
                context, TextMessage("Please select a category from the list.")
            )
        return await self._show_category_items(context, category_id)

    async def _handle_viewing_items(self, phone: str, token: str, context: SessionContext) -> Transition:
        choice = token.lower()
        if choice == "back_to_categories":
            return await self._show_categories(context)
        if choice in BACK_TOKENS:
            return self._to_menu(context)

        item_id = _prefixed_id(token, "item_")
        item = await self.catalog.get_item(item_id) if item_id is not None else None
        if item is not None:
            return await self._select_item(context, item)

        # בחירה לא תקינה - הצגת הרשימה מחדש לפי ה-flow
        hint = TextMessage("❌ Item not found." if item_id is not None else "Please select a product from the list.")
        category_flow = context.flow_as(CategoryFlow)
        if category_flow is not None:
            transition = await self._show_category_items(context, category_flow.category_id)
            transition.messages.insert(0, hint)
            return transition
        search_flow = context.flow_as(SearchFlow)
        if search_flow is not None and search_flow.query:
            transition = await self._show_search_results(context, search_flow.query)
            if transition is not None:
                transition.messages.insert(0, hint)
                return transition
        return self._to_menu(context, hint)

    async def _handle_searching(self, phone: str, token: str, context: SessionContext) -> Transition:
        if token.lower() in BACK_TOKENS:
            return self._to_menu(context)

        query = TextSanitizer.sanitize(token, max_length=100)
        if not query:
            return Transition(
                SessionState.SEARCHING,
                context,
                [TextMessage('🔍 Please enter a product name (or type "cancel" to go back):')],
            )

        transition = await self._show_search_results(context, query)
        if transition is None:
            return Transition(
                SessionState.SEARCHING,
                context.with_flow(None),
                [TextMessage(
                    f'❌ No products found matching "{query}".\n\n'
                    'Please try a different search term or type "cancel" to go back.'
                )],
            )
        return transition

    async def _handle_searching_by_code(self, phone: str, token: str, context: SessionContext) -> Transition:
        if token.lower() in BACK_TOKENS:
            return self._to_menu(context)

        code = TextSanitizer.sanitize(token, max_length=50)
        item = await self.catalog.get_item_by_code(code)
        if item is None:
            return Transition(
                SessionState.SEARCHING_BY_CODE,
                context,
                [TextMessage(
                    f'❌ No product found with code "{code}".\n\n'
                    'Please check the code and try again, or type "cancel" to go back.'
                )],
            )
        return await self._select_item(context, item, heading="✅ *Product found!*")

    async def _handle_adding_to_cart(self, phone: str, token: str, context: SessionContext) -> Transition:
        if token.lower() in BACK_TOKENS:
            return self._to_menu(context, TextMessage("❌ Cancelled. Your cart was not changed."))

        selection = context.flow_as(ItemSelectionFlow)
        if selection is None:
            return self._to_menu(context, TextMessage("Please select a product first."))

        quantity = parse_positive_int(token)
        if quantity is None:
            return Transition(
                SessionState.ADDING_TO_CART,
                context,
                [TextMessage(
                    '❌ Please enter a valid quantity (a whole number greater than 0), '
                    'or type "cancel" to go back.'
                )],
            )

        item = await self.catalog.get_item(selection.item_id)
        if item is None:
            return self._to_menu(context, TextMessage("❌ Sorry, this product is no longer available."))

        unit_price = await self.catalog.active_price(item)
        if unit_price is None:
            raise NoActivePriceError(item.name, item.id)

        stock = await self.catalog.primary_stock(item)
        in_cart = sum(line.quantity for line in context.cart if line.item_id == item.id)
        available = max((stock.quantity if stock else 0) - in_cart, 0)
        if quantity > available:
            return Transition(
                SessionState.ADDING_TO_CART,
                context,
                [TextMessage(f"Sorry, only {available} units available. Please enter a lower quantity:")],
            )

        line = CartLine(
            item_id=item.id,
            item_name=item.name,
            quantity=quantity,
            unit_price=unit_price,
            warehouse_id=stock.warehouse_id if stock else None,
        )
        return Transition(
            SessionState.MAIN_MENU,
            context.with_line(line).with_flow(None),
            [rendering.added_to_cart(quantity, item.name)],
        )

    # ==================== Checkout ====================

    async def _handle_cart_review(self, phone: str, token: str, context: SessionContext) -> Transition:
        choice = token.lower()
        if choice == "checkout":
            return self._start_checkout(context)
        if choice == "clear_cart":
            return self._to_menu(context.cleared(), TextMessage("🗑️ Your cart has been cleared."))
        if choice in BACK_TOKENS:
            return self._to_menu(context)
        return self._show_cart(context)

    async def _handle_entering_address(self, phone: str, token: str, context: SessionContext) -> Transition:
        if not context.has_cart:
            return Transition(SessionState.MAIN_MENU, context.with_flow(None), [rendering.empty_cart()])
        if token.lower() == "cancel":
            return self._to_menu(context, TextMessage("Checkout cancelled. Your cart is saved."))
        if not TextSanitizer.check_for_injection(token)[0]:
            return Transition(
                SessionState.ENTERING_ADDRESS,
                context,
                [TextMessage("That address contains characters we can't accept."), rendering.address_prompt()],
            )

        address = "" if token.lower() == "skip" else AddressValidator.normalize(token)
        return Transition(
            SessionState.CONFIRMING_ORDER,
            context.with_flow(CheckoutFlow(delivery_address=address)),
            [rendering.order_summary(context, address)],
        )

    async def _handle_confirming_order(self, phone: str, token: str, context: SessionContext) -> Transition:
        choice = token.lower()
        checkout = context.flow_as(CheckoutFlow) or CheckoutFlow()

        if choice == "cancel_order":
            # העגלה נשארת כמו שהיא
            return self._to_menu(context, TextMessage("Order cancelled."))

        if choice != "confirm_order":
            return Transition(
                SessionState.CONFIRMING_ORDER,
                context,
                [rendering.order_summary(context, checkout.delivery_address)],
            )

        if not context.has_cart:
            return Transition(SessionState.MAIN_MENU, context.with_flow(None), [rendering.empty_cart()])

        try:
            order = await self.orders.create_order(
                phone,
                context.cart[0].warehouse_id,
                context.cart,
                delivery_address=checkout.delivery_address or None,
                auto_commit=False,
            )
        except AppException as e:
            logger.warning(
                "Checkout failed, cart kept",
                extra_data={
                    "phone": PhoneNumberValidator.mask(phone),
                    "error_code": e.error_code.value,
                    "error": e.message,
                }
            )
            return self._to_menu(
                context,
                TextMessage(
                    f"❌ Failed to create order. {e.message}\n\n"
                    "Your cart has been kept. Please review it and try again."
                ),
            )

        return Transition(
            SessionState.MAIN_MENU,
            context.cleared().with_flow(None),
            [rendering.order_confirmed(order)],
        )

    # ==================== Tracking ====================

    async def _handle_tracking_order(self, phone: str, token: str, context: SessionContext) -> Transition:
        if token.lower() in BACK_TOKENS:
            return self._to_menu(context)

        tracking = context.flow_as(TrackingFlow) or TrackingFlow()
        order = await self._own_order(phone, _pick_order_id(token, tracking.order_ids))
        if order is None:
            if _prefixed_id(token, "order_") is not None:
                return self._to_menu(context, TextMessage("❌ Order not found."))
            return await self._show_tracking(
                phone, context, TextMessage("Please select an order from the list.")
            )
        return Transition(SessionState.MAIN_MENU, context.with_flow(None), [rendering.order_detail(order)])

    # ==================== Rating ====================

    async def _handle_rating_order(self, phone: str, token: str, context: SessionContext) -> Transition:
        if token.lower() in BACK_TOKENS:
            return self._to_menu(context)

        rating_flow = context.flow_as(RatingFlow) or RatingFlow()

        # שלב ראשון - בחירת הזמנה
        if rating_flow.selected_order_id is None:
            order_ids = rating_flow.unrated_order_ids
            order_id = _pick_order_id(token, order_ids)
            if order_id is None:
                return Transition(
                    SessionState.RATING_ORDER,
                    context,
                    [TextMessage(
                        f'❌ Please select a valid order number (1-{len(order_ids)}) or type "cancel".'
                    )],
                )
            order = await self._own_order(phone, order_id)
            if order is None or order.rating is not None:
                return self._to_menu(context, TextMessage("❌ Order not found or already rated."))
            return Transition(
                SessionState.RATING_ORDER,
                context.with_flow(rating_flow.model_copy(update={"selected_order_id": order.id})),
                rendering.stars_prompt(order),
            )

        # שלב שני - דירוג 1-5
        rating = parse_positive_int(token)
        if rating is None or rating > 5:
            return Transition(
                SessionState.RATING_ORDER,
                context,
                [TextMessage('❌ Please enter a rating between 1 and 5 (or type "cancel"):')],
            )
        return Transition(
            SessionState.PROVIDING_FEEDBACK,
            context.with_flow(rating_flow.model_copy(update={"rating": rating})),
            [rendering.feedback_prompt(rating)],
        )

    async def _handle_providing_feedback(self, phone: str, token: str, context: SessionContext) -> Transition:
        rating_flow = context.flow_as(RatingFlow)
        if rating_flow is None or rating_flow.selected_order_id is None or rating_flow.rating is None:
            return self._to_menu(context)
        if token.lower() == "cancel":
            return self._to_menu(context, TextMessage("Rating cancelled."))
        if not TextSanitizer.check_for_injection(token)[0]:
            return Transition(
                SessionState.PROVIDING_FEEDBACK,
                context,
                [TextMessage("Please send your comments as plain text."), rendering.feedback_prompt(rating_flow.rating)],
            )

        feedback = None if token.lower() == "skip" else TextSanitizer.sanitize(token) or None
        stored = await self.orders.rate_order(
            rating_flow.selected_order_id,
            phone,
            rating_flow.rating,
            feedback,
            auto_commit=False,
        )
        if not stored:
            return self._to_menu(context, TextMessage("This order has already been rated. Thank you!"))

        messages: list[OutboundMessage] = [rendering.rating_thanks(rating_flow.rating, bool(feedback))]
        remaining = await self.orders.get_unrated_delivered_orders(phone)
        if remaining:
            messages.append(rendering.more_to_rate(len(remaining)))
        else:
            messages.append(rendering.main_menu())
        return Transition(SessionState.MAIN_MENU, context.with_flow(None), messages)

    # ==================== Quick reorder ====================

    async def _handle_order_history(self, phone: str, token: str, context: SessionContext) -> Transition:
        if token.lower() in BACK_TOKENS:
            return self._to_menu(context)

        history = context.flow_as(ReorderFlow) or ReorderFlow()
        order_id = _pick_order_id(token, history.order_history_ids)
        if order_id is None:
            return Transition(
                SessionState.VIEWING_ORDER_HISTORY,
                context,
                [TextMessage(
                    f'❌ Please select a valid order number (1-{len(history.order_history_ids)}) '
                    'or type "cancel".'
                )],
            )

        order = await self._own_order(phone, order_id)
        if order is None:
            return self._to_menu(context, TextMessage("❌ Order not found."))
        return Transition(
            SessionState.SELECTING_REORDER,
            context.with_flow(history.model_copy(update={"source_order_id": order.id})),
            [rendering.reorder_summary(order)],
        )

    async def _handle_selecting_reorder(self, phone: str, token: str, context: SessionContext) -> Transition:
        choice = token.lower()
        history = context.flow_as(ReorderFlow) or ReorderFlow()

        if choice in ("cancel", "back", "back_to_menu"):
            return self._to_menu(context, TextMessage("Reorder cancelled. Your cart is unchanged."))

        order = await self._own_order(phone, history.source_order_id)
        if order is None:
            return self._to_menu(context, TextMessage("❌ Order not found."))

        if choice != "confirm":
            return Transition(SessionState.SELECTING_REORDER, context, [rendering.reorder_summary(order)])

        added: list[str] = []
        skipped: list[str] = []
        for line in order.lines:
            item = await self.catalog.get_item(line.item_id)
            if item is None:
                skipped.append(line.item_name)
                continue
            unit_price = await self.catalog.active_price(item)
            stock = await self.catalog.primary_stock(item)
            if unit_price is None or stock is None or stock.quantity <= 0:
                skipped.append(item.name)
                continue
            # מחיר נוכחי, לא המחיר מההזמנה הקודמת
            context = context.with_line(CartLine(
                item_id=item.id,
                item_name=item.name,
                quantity=line.quantity,
                unit_price=unit_price,
                warehouse_id=stock.warehouse_id,
            ))
            added.append(item.name)

        logger.info(
            "Reorder merged into cart",
            extra_data={
                "phone": PhoneNumberValidator.mask(phone),
                "source_order_id": order.id,
                "added": len(added),
                "skipped": len(skipped),
            }
        )
        return Transition(
            SessionState.MAIN_MENU,
            context.with_flow(None),
            [rendering.reorder_result(added, skipped)],
        )
