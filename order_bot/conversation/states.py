"""
State Definitions and Transition Table for the ordering dialogue
"""
from enum import Enum


class SessionState(str, Enum):
    """States of the customer ordering conversation"""

    MAIN_MENU = "MAIN_MENU"

    # Catalog
    BROWSING_CATEGORIES = "BROWSING_CATEGORIES"
    VIEWING_ITEMS = "VIEWING_ITEMS"
    SEARCHING = "SEARCHING"
    SEARCHING_BY_CODE = "SEARCHING_BY_CODE"
    ADDING_TO_CART = "ADDING_TO_CART"

    # Checkout
    CART_REVIEW = "CART_REVIEW"
    ENTERING_ADDRESS = "ENTERING_ADDRESS"
    CONFIRMING_ORDER = "CONFIRMING_ORDER"

    # After-sale
    TRACKING_ORDER = "TRACKING_ORDER"
    RATING_ORDER = "RATING_ORDER"
    PROVIDING_FEEDBACK = "PROVIDING_FEEDBACK"
    VIEWING_ORDER_HISTORY = "VIEWING_ORDER_HISTORY"
    SELECTING_REORDER = "SELECTING_REORDER"


INITIAL_STATE = SessionState.MAIN_MENU

# תזכורת עגלה נטושה לא נשלחת באמצע checkout
CHECKOUT_STATES = frozenset({
    SessionState.ENTERING_ADDRESS,
    SessionState.CONFIRMING_ORDER,
})

# יעדים שמותרים מכל state: פקודות גלובליות (menu/start, שגיאה) והזמנה מהירה (ORDER:<id>)
GLOBAL_TARGETS = frozenset({
    SessionState.MAIN_MENU,
    SessionState.ADDING_TO_CART,
})

# State transitions mapping (handler results only; self-loops are always allowed)
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.MAIN_MENU: frozenset({
        SessionState.BROWSING_CATEGORIES,
        SessionState.VIEWING_ITEMS,
        SessionState.SEARCHING,
        SessionState.SEARCHING_BY_CODE,
        SessionState.CART_REVIEW,
        SessionState.ENTERING_ADDRESS,
        SessionState.TRACKING_ORDER,
        SessionState.RATING_ORDER,
        SessionState.VIEWING_ORDER_HISTORY,
    }),

    # Catalog browsing
    SessionState.BROWSING_CATEGORIES: frozenset({
        SessionState.VIEWING_ITEMS,
        SessionState.MAIN_MENU,
    }),
    SessionState.VIEWING_ITEMS: frozenset({
        SessionState.ADDING_TO_CART,
        SessionState.BROWSING_CATEGORIES,
        SessionState.MAIN_MENU,
    }),
    SessionState.SEARCHING: frozenset({
        SessionState.VIEWING_ITEMS,
        SessionState.MAIN_MENU,
    }),
    SessionState.SEARCHING_BY_CODE: frozenset({
        SessionState.ADDING_TO_CART,
        SessionState.MAIN_MENU,
    }),
    SessionState.ADDING_TO_CART: frozenset({
        SessionState.MAIN_MENU,
    }),

    # Checkout: cart -> address -> confirm
    SessionState.CART_REVIEW: frozenset({
        SessionState.ENTERING_ADDRESS,
        SessionState.MAIN_MENU,
    }),
    SessionState.ENTERING_ADDRESS: frozenset({
        SessionState.CONFIRMING_ORDER,
        SessionState.MAIN_MENU,
    }),
    SessionState.CONFIRMING_ORDER: frozenset({
        SessionState.MAIN_MENU,
    }),

    # Tracking
    SessionState.TRACKING_ORDER: frozenset({
        SessionState.MAIN_MENU,
    }),

    # Rating: choose order -> stars (same state) -> feedback
    SessionState.RATING_ORDER: frozenset({
        SessionState.PROVIDING_FEEDBACK,
        SessionState.MAIN_MENU,
    }),
    SessionState.PROVIDING_FEEDBACK: frozenset({
        SessionState.MAIN_MENU,
    }),

    # Quick reorder
    SessionState.VIEWING_ORDER_HISTORY: frozenset({
        SessionState.SELECTING_REORDER,
        SessionState.MAIN_MENU,
    }),
    SessionState.SELECTING_REORDER: frozenset({
        SessionState.MAIN_MENU,
    }),
}

# סוג ה-flow (ראו context.py) שכל state מצפה לו. flow אחר נחשב כחסר.
EXPECTED_FLOWS: dict[SessionState, frozenset[str]] = {
    SessionState.MAIN_MENU: frozenset({"none"}),
    SessionState.BROWSING_CATEGORIES: frozenset({"none"}),
    SessionState.VIEWING_ITEMS: frozenset({"category", "search"}),
    SessionState.SEARCHING: frozenset({"none", "search"}),
    SessionState.SEARCHING_BY_CODE: frozenset({"none"}),
    SessionState.ADDING_TO_CART: frozenset({"item"}),
    SessionState.CART_REVIEW: frozenset({"none"}),
    SessionState.ENTERING_ADDRESS: frozenset({"none", "checkout"}),
    SessionState.CONFIRMING_ORDER: frozenset({"checkout"}),
    SessionState.TRACKING_ORDER: frozenset({"tracking"}),
    SessionState.RATING_ORDER: frozenset({"rating"}),
    SessionState.PROVIDING_FEEDBACK: frozenset({"rating"}),
    SessionState.VIEWING_ORDER_HISTORY: frozenset({"reorder"}),
    SessionState.SELECTING_REORDER: frozenset({"reorder"}),
}


def coerce_state(value: str | None) -> SessionState:
    """ערך state מה-DB -> enum. ערך לא מוכר חוזר ל-MAIN_MENU."""
    try:
        return SessionState(value)
    except ValueError:
        return INITIAL_STATE


def is_valid_transition(current: SessionState, target: SessionState) -> bool:
    """Check if a handler may move the dialogue from current to target"""
    if target == current or target in GLOBAL_TARGETS:
        return True
    return target in TRANSITIONS.get(current, frozenset())
