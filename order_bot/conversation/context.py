"""
Typed session context.

The JSON blob stored in ``ConversationSession.context_data`` holds the cart
plus exactly one flow variant describing the in-progress sub-dialogue.
Flows are a discriminated union on ``kind`` so each state only sees the
fields it owns.
"""
from decimal import Decimal
from typing import Annotated, Any, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, computed_field, model_validator
from pydantic.alias_generators import to_camel


class CartLine(BaseModel):
    """One item in the cart. total_price is always quantity * unit_price."""

    # camelCase aliases: עגלות שנשמרו בפורמט הישן נטענות כמו שהן
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    item_id: int
    item_name: str
    quantity: PositiveInt
    unit_price: Decimal
    warehouse_id: int | None = None

    @computed_field
    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


class NoFlow(BaseModel):
    kind: Literal["none"] = "none"


class CategoryFlow(BaseModel):
    kind: Literal["category"] = "category"
    category_id: int


class SearchFlow(BaseModel):
    kind: Literal["search"] = "search"
    query: str = ""


class ItemSelectionFlow(BaseModel):
    kind: Literal["item"] = "item"
    item_id: int


class CheckoutFlow(BaseModel):
    kind: Literal["checkout"] = "checkout"
    delivery_address: str = ""


class TrackingFlow(BaseModel):
    kind: Literal["tracking"] = "tracking"
    order_ids: list[int] = Field(default_factory=list)


class RatingFlow(BaseModel):
    kind: Literal["rating"] = "rating"
    unrated_order_ids: list[int] = Field(default_factory=list)
    selected_order_id: int | None = None
    rating: int | None = None


class ReorderFlow(BaseModel):
    kind: Literal["reorder"] = "reorder"
    order_history_ids: list[int] = Field(default_factory=list)
    source_order_id: int | None = None


Flow = Annotated[
    Union[
        NoFlow,
        CategoryFlow,
        SearchFlow,
        ItemSelectionFlow,
        CheckoutFlow,
        TrackingFlow,
        RatingFlow,
        ReorderFlow,
    ],
    Field(discriminator="kind"),
]

FlowT = TypeVar("FlowT", bound=BaseModel)


def _legacy_flow(data: dict[str, Any]) -> dict[str, Any] | None:
    """Build a flow from the flat keys older sessions stored."""
    if data.get("selectedOrderForRating") or data.get("unratedOrderIds") or data.get("unratedOrders"):
        return {
            "kind": "rating",
            "unrated_order_ids": data.get("unratedOrderIds") or data.get("unratedOrders") or [],
            "selected_order_id": data.get("selectedOrderForRating") or data.get("orderId"),
            "rating": data.get("ratingValue") or data.get("rating"),
        }
    if data.get("orderHistoryIds") or data.get("orderHistory"):
        return {
            "kind": "reorder",
            "order_history_ids": data.get("orderHistoryIds") or data.get("orderHistory") or [],
            "source_order_id": data.get("reorderSourceOrderId") or data.get("reorderFromId"),
        }
    if "deliveryAddress" in data:
        return {"kind": "checkout", "delivery_address": data.get("deliveryAddress") or ""}
    if data.get("selectedItemId"):
        return {"kind": "item", "item_id": data["selectedItemId"]}
    if data.get("searchQuery"):
        return {"kind": "search", "query": data["searchQuery"]}
    if data.get("selectedCategoryId"):
        return {"kind": "category", "category_id": data["selectedCategoryId"]}
    return None


class SessionContext(BaseModel):
    """Cart + the flow of the current state"""

    model_config = ConfigDict(frozen=True)

    cart: list[CartLine] = Field(default_factory=list)
    flow: Flow = Field(default_factory=NoFlow)

    @model_validator(mode="before")
    @classmethod
    def migrate_legacy_blob(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "flow" in data:
            return data
        flow = _legacy_flow(data)
        return {"cart": data.get("cart") or [], "flow": flow or {"kind": "none"}}

    @classmethod
    def from_blob(cls, blob: dict[str, Any] | None) -> "SessionContext":
        return cls.model_validate(blob or {})

    def to_blob(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    # ---- cart helpers ----

    @property
    def cart_total(self) -> Decimal:
        return sum((line.total_price for line in self.cart), Decimal("0"))

    @property
    def has_cart(self) -> bool:
        return bool(self.cart)

    def with_cart(self, cart: list[CartLine]) -> "SessionContext":
        return self.model_copy(update={"cart": list(cart)})

    def with_line(self, line: CartLine) -> "SessionContext":
        return self.with_cart(merge_cart_line(self.cart, line))

    def without_item(self, item_id: int) -> "SessionContext":
        return self.with_cart([line for line in self.cart if line.item_id != item_id])

    def cleared(self) -> "SessionContext":
        return self.model_copy(update={"cart": []})

    # ---- flow helpers ----

    def with_flow(self, flow: BaseModel | None = None) -> "SessionContext":
        return self.model_copy(update={"flow": flow or NoFlow()})

    def flow_as(self, flow_type: type[FlowT]) -> FlowT | None:
        """The current flow if it is of the requested variant, else None."""
        return self.flow if isinstance(self.flow, flow_type) else None

    def for_state(self, expected_kinds: frozenset[str]) -> "SessionContext":
        """Drop a flow that does not belong to the state being handled."""
        if self.flow.kind in expected_kinds:
            return self
        return self.with_flow(None)


def merge_cart_line(cart: list[CartLine], line: CartLine) -> list[CartLine]:
    """
    Merge a line into the cart by item_id.

    An existing line keeps its unit price and warehouse; quantities are summed
    and the total is recomputed. Lines for other items are untouched.
    """
    merged: list[CartLine] = []
    found = False
    for existing in cart:
        if existing.item_id == line.item_id and not found:
            merged.append(existing.model_copy(
                update={"quantity": existing.quantity + line.quantity}
            ))
            found = True
        else:
            merged.append(existing)
    if not found:
        merged.append(line)
    return merged
