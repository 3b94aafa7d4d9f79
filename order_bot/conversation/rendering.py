"""
Message templates for the ordering dialogue
"""
from decimal import Decimal
from typing import Iterable, Sequence

from order_bot.conversation.context import CartLine, SessionContext
from order_bot.conversation.messages import (
    Button,
    ButtonMessage,
    ImageMessage,
    ListRow,
    OutboundMessage,
    TextMessage,
    single_section_list,
)
from order_bot.core.config import settings
from order_bot.db.models.catalog import ItemCondition
from order_bot.db.models.order import Order, OrderStatus

DIVIDER = "━━━━━━━━━━━━━━━━"

BACK_TO_MENU_ROW = ListRow(id="back_to_menu", title="⬅️ Back to Menu", description="Return to main menu")
BACK_TO_CATEGORIES_ROW = ListRow(id="back_to_categories", title="⬅️ Back", description="Return to categories")

STATUS_EMOJI = {
    OrderStatus.DELIVERED: "✅",
    OrderStatus.CANCELLED: "❌",
}

RATING_LABELS = {
    1: "Very Poor",
    2: "Poor",
    3: "Average",
    4: "Good",
    5: "Excellent",
}


def money(amount: Decimal | int | float | None) -> str:
    if amount is None:
        return "N/A"
    return f"{settings.CURRENCY} {Decimal(amount):,.2f}"


def short_date(value) -> str:
    return value.strftime("%d/%m/%Y") if value else "-"


def max_content_rows() -> int:
    """שורות תוכן ברשימה - שורה אחת שמורה לניווט"""
    return settings.LIST_MAX_ROWS - 1


# ==================== Menus ====================

def main_menu() -> OutboundMessage:
    rows = [
        ListRow("browse_categories", "📂 Browse Categories", "View products by category"),
        ListRow("search_products", "🔍 Search Products", "Search for specific items"),
        ListRow("search_by_code", "🔢 Search by Code", "Enter product code directly"),
        ListRow("view_cart", "🛒 View Cart", "Review your shopping cart"),
        ListRow("track_order", "📦 Track Order", "Check your order status"),
        ListRow("rate_order", "⭐ Rate Order", "Rate your delivered orders"),
        ListRow("quick_reorder", "🔄 Quick Reorder", "Reorder from your history"),
    ]
    return single_section_list(
        "Welcome to our store! 🛒\n\nHow can I help you today?",
        "Select Option",
        rows,
        header="🏪 Main Menu",
    )


def help_message() -> TextMessage:
    return TextMessage(
        "❓ Help & Commands\n\n"
        '🔹 Type "menu" - Show main menu\n'
        '🔹 Type "cart" - View your cart\n'
        '🔹 Type "track" - Track your orders\n'
        '🔹 Type "restart" - Start over with an empty cart\n'
        '🔹 Type "help" - Show this help message\n\n'
        "Need assistance? Contact our support team!"
    )


def apology() -> TextMessage:
    return TextMessage(
        'Sorry, something went wrong. Please try again or type "menu" to return to main menu.'
    )


# ==================== Catalog ====================

def category_list(categories: Sequence) -> OutboundMessage:
    rows = [
        ListRow(f"cat_{category.id}", category.name, "")
        for category in categories[:max_content_rows()]
    ]
    rows.append(BACK_TO_MENU_ROW)
    return single_section_list(
        "Please select a category to browse products:",
        "Select Category",
        rows,
        header="📂 Categories",
    )


def item_row(view) -> ListRow:
    stock_info = f"Stock: {view.stock}" if view.has_stock_record else "Out of stock"
    price = money(view.price) if view.price is not None else "Price N/A"
    return ListRow(f"item_{view.item.id}", view.item.name, f"{price} | {stock_info}")


def item_list(views: Sequence, *, body: str, header: str, back_row: ListRow) -> OutboundMessage:
    shown = views[:max_content_rows()]
    if len(views) > len(shown):
        body += f"\n\nShowing {len(shown)} of {len(views)}. Search to narrow down."
    rows = [item_row(view) for view in shown]
    rows.append(back_row)
    return single_section_list(body, "Select Item", rows, header=header)


def item_prompt(view, *, heading: str | None = None, cancel_hint: str = "go back") -> OutboundMessage:
    """Item details + quantity request. Image with caption when the item has one."""
    item = view.item
    badge = "🔄 Used" if item.condition == ItemCondition.USED else "✨ New"
    lines = []
    if heading:
        lines.append(f"{heading}\n")
    lines.append(f"📦 *{item.name}*")
    lines.append(badge)
    lines.append(f"🔖 Code: {item.code or 'N/A'}")
    lines.append(f"💰 Price: {money(view.price)}")
    lines.append(f"📊 Available: {view.stock} units")
    if item.description:
        lines.append(f"\n📝 {item.description}")
    lines.append(f'\nPlease enter the quantity you want to order (or type "cancel" to {cancel_hint}):')
    details = "\n".join(lines)

    if item.image_url:
        return ImageMessage(url=item.image_url, caption=details)
    return TextMessage(details)


def added_to_cart(quantity: int, item_name: str) -> OutboundMessage:
    return ButtonMessage(
        f"✅ Added {quantity} x {item_name} to your cart!\n\nWhat would you like to do next?",
        (
            Button("continue_shopping", "🛍️ Continue Shopping"),
            Button("view_cart", "🛒 View Cart"),
            Button("checkout", "✔️ Checkout"),
        ),
    )


# ==================== Cart & checkout ====================

def cart_lines_text(cart: Iterable[CartLine]) -> str:
    text = ""
    for index, line in enumerate(cart, start=1):
        text += f"{index}. {line.item_name}\n"
        text += f"   Qty: {line.quantity} x {money(line.unit_price)} = {money(line.total_price)}\n\n"
    return text


def empty_cart() -> OutboundMessage:
    return ButtonMessage(
        "🛒 Your cart is empty.\n\nStart shopping to add items!",
        (
            Button("browse_categories", "📂 Browse Products"),
            Button("search_products", "🔍 Search"),
        ),
    )


def cart_review(context: SessionContext) -> OutboundMessage:
    body = "🛒 Your Shopping Cart\n\n" + cart_lines_text(context.cart)
    body += f"{DIVIDER}\n💰 Total: {money(context.cart_total)}"
    return ButtonMessage(
        body,
        (
            Button("checkout", "✔️ Checkout"),
            Button("clear_cart", "🗑️ Clear Cart"),
            Button("back_to_menu", "⬅️ Back"),
        ),
    )


def address_prompt() -> OutboundMessage:
    return ButtonMessage(
        "📍 Please enter your delivery address:\n\n"
        '(Or type "skip" to use phone number as reference)',
        (Button("skip", "⏭️ Skip"),),
    )


def order_summary(context: SessionContext, delivery_address: str) -> OutboundMessage:
    body = "📋 Order Summary\n\n" + cart_lines_text(context.cart)
    body += f"{DIVIDER}\n💰 Total: {money(context.cart_total)}\n\n"
    if delivery_address:
        body += f"📍 Delivery: {delivery_address}\n\n"
    body += "Confirm your order?"
    return ButtonMessage(
        body,
        (
            Button("confirm_order", "✅ Confirm"),
            Button("cancel_order", "❌ Cancel"),
        ),
    )


def order_confirmed(order: Order) -> OutboundMessage:
    return TextMessage(
        "✅ Order Confirmed!\n\n"
        f"Order #{order.order_number}\n"
        f"Total: {money(order.total_amount)}\n"
        f"Status: {order.status.value}\n\n"
        "We'll notify you when your order is ready for delivery!"
    )


# ==================== Orders ====================

def order_items_text(order: Order) -> str:
    return "\n".join(
        f"• {line.item_name} x{line.quantity} - {money(line.total_price)}"
        for line in order.lines
    )


def tracking_list(orders: Sequence[Order]) -> OutboundMessage:
    rows = [
        ListRow(
            f"order_{order.id}",
            f"#{order.order_number}",
            f"{order.status.value} | {money(order.total_amount)} | {short_date(order.created_at)}",
        )
        for order in orders[:max_content_rows()]
    ]
    rows.append(BACK_TO_MENU_ROW)
    return single_section_list(
        "Select an order to view details:",
        "View Order",
        rows,
        header="📦 Your Orders",
    )


def order_detail(order: Order) -> OutboundMessage:
    body = "📦 Order Details\n\n"
    body += f"Order #{order.order_number}\n"
    body += f"Status: {order.status.value.upper()}\n"
    body += f"Date: {order.created_at.strftime('%d/%m/%Y %H:%M') if order.created_at else '-'}\n\n"
    body += "Items:\n"
    for index, line in enumerate(order.lines, start=1):
        body += f"{index}. {line.item_name}\n"
        body += f"   {line.quantity} x {money(line.unit_price)} = {money(line.total_price)}\n"
    body += f"\n{DIVIDER}\n💰 Total: {money(order.total_amount)}\n"
    if order.delivery_address:
        body += f"\n📍 Delivery: {order.delivery_address}"
    return ButtonMessage(
        body,
        (
            Button("track_order", "📦 My Orders"),
            Button("back_to_menu", "⬅️ Main Menu"),
        ),
    )


def numbered_order_list(
    orders: Sequence[Order],
    *,
    body: str,
    header: str,
    button_text: str,
    describe,
) -> OutboundMessage:
    rows = [
        ListRow(f"order_{order.id}", f"{index}. #{order.order_number}", describe(order))
        for index, order in enumerate(orders, start=1)
    ]
    rows.append(BACK_TO_MENU_ROW)
    return single_section_list(body, button_text, rows, header=header)


def rating_list(orders: Sequence[Order]) -> OutboundMessage:
    return numbered_order_list(
        orders,
        body=(
            "⭐ *Rate Your Orders*\n\nPlease select an order to rate.\n\n"
            f'Type the number (1-{len(orders)}) or "cancel" to go back:'
        ),
        header="⭐ Rate Order",
        button_text="Select Order",
        describe=lambda order: (
            f"Delivered {short_date(order.delivered_at)} | {money(order.total_amount)} | "
            f"{len(order.lines)} item(s)"
        ),
    )


def stars_prompt(order: Order) -> list[OutboundMessage]:
    details = f"📦 *Order #{order.order_number}*\n\n🛍️ Items:\n"
    details += "\n".join(f"• {line.item_name} x{line.quantity}" for line in order.lines)
    details += f"\n\n💰 Total: {money(order.total_amount)}"
    rows = [
        ListRow(str(value), f"{'⭐' * value} {label}", "")
        for value, label in RATING_LABELS.items()
    ]
    return [
        TextMessage(details),
        single_section_list(
            '⭐ *How would you rate this order?*\n\nPlease rate from 1 to 5 stars, or type "cancel":',
            "Rate",
            rows,
        ),
    ]


def feedback_prompt(rating: int) -> OutboundMessage:
    return ButtonMessage(
        f"{'⭐' * rating} You rated this order {rating}/5 stars!\n\n"
        "💬 Would you like to add feedback? (optional)\n\n"
        'Type your feedback or "skip" to finish:',
        (Button("skip", "⏭️ Skip"),),
    )


def rating_thanks(rating: int, with_feedback: bool) -> TextMessage:
    text = f"{'⭐' * rating} Thank you for your {rating}-star rating!\n\n"
    if with_feedback:
        text += "💬 Your feedback has been recorded.\n\n"
    text += "🙏 We appreciate your feedback and will use it to improve our service!"
    return TextMessage(text)


def more_to_rate(count: int) -> OutboundMessage:
    return ButtonMessage(
        f"📝 You have {count} more order(s) to rate.",
        (
            Button("rate_order", "⭐ Rate Next"),
            Button("back_to_menu", "⬅️ Main Menu"),
        ),
    )


def order_history_list(orders: Sequence[Order]) -> OutboundMessage:
    return numbered_order_list(
        orders,
        body=(
            "🔄 *Quick Reorder*\n\nSelect an order to reorder.\n\n"
            f'Type the number (1-{len(orders)}) to reorder, or "cancel":'
        ),
        header="🔄 Quick Reorder",
        button_text="Select Order",
        describe=lambda order: (
            f"{STATUS_EMOJI.get(order.status, '⏳')} {short_date(order.created_at)} | "
            f"{money(order.total_amount)} | "
            + ", ".join(f"{line.item_name} x{line.quantity}" for line in order.lines)
        ),
    )


def reorder_summary(order: Order) -> OutboundMessage:
    body = f"🔄 *Reorder Confirmation*\n\n📦 Order #{order.order_number}\n\n"
    body += "🛍️ Items to be added to your cart:\n\n"
    for line in order.lines:
        body += f"• {line.item_name}\n"
        body += f"  Qty: {line.quantity} × {money(line.unit_price)} = {money(line.total_price)}\n\n"
    body += "Prices are refreshed to today's prices when added."
    return ButtonMessage(
        body,
        (
            Button("confirm", "✅ Confirm"),
            Button("cancel", "❌ Cancel"),
        ),
    )


def reorder_result(added: Sequence[str], skipped: Sequence[str]) -> OutboundMessage:
    if added:
        body = f"✅ *Reorder Successful!*\n\n{len(added)} item(s) have been added to your cart."
    else:
        body = "❌ None of the items from this order are available right now."
    if skipped:
        body += "\n\n⚠️ Not available: " + ", ".join(skipped)
    return ButtonMessage(
        body,
        (
            Button("view_cart", "🛒 View Cart"),
            Button("checkout", "✔️ Checkout"),
            Button("continue_shopping", "🛍️ Continue Shopping"),
        ),
    )
