"""Pydantic models for the Rappi order agent.

Covers order templates, scraped menu candidates, menu catalogs, cart plans,
the persisted callback-flow state and its response payloads, restaurant
search results, checkout dry-run summaries, reorder sessions and SSE events.

Models that are written to or read from files use camelCase aliases on the
wire (``restaurantUrl``, ``matchedItems``...) and snake_case in Python.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from rappi_order.text import round_price, slugify


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class CamelModel(BaseModel):
    """Base model serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Order templates
# ---------------------------------------------------------------------------


class OrderLine(CamelModel):
    """One requested dish in an order template."""

    name: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)
    notes: str = ""
    options: list[Any] = Field(default_factory=list)


class OrderTemplate(CamelModel):
    """User-authored order template, immutable once validated."""

    model_config = ConfigDict(frozen=True)

    restaurant_url: str | None = None
    restaurant_name: str | None = None
    currency: str | None = None
    items: list[OrderLine] = Field(min_length=1)


# ---------------------------------------------------------------------------
# Menu extraction
# ---------------------------------------------------------------------------


class MenuCandidate(CamelModel):
    """Unclassified text fragments believed to describe one sellable item.

    Each field comes from an independent DOM heuristic, so any of them may be
    empty, wrong, or contaminated with text from neighbouring nodes.
    """

    name_text: str = ""
    description_text: str = ""
    price_text: str = ""
    category_title: str = ""
    raw_text: str = ""
    nested_item_count: int = 0


class MenuItemDraft(BaseModel):
    """A candidate accepted by the classifier, before deduplication."""

    name: str
    description: str = ""
    price: float
    category: str = "General"


def catalog_item_id(name: str, price: float) -> str:
    """Deterministic catalog id from slugified name and rounded price."""
    return f"{slugify(name)}-{round_price(price)}"


class MenuItem(CamelModel):
    """A deduplicated menu entry."""

    id: str = ""
    name: str = Field(min_length=1)
    description: str = ""
    price: float = Field(default=0.0, ge=0)
    category: str = "General"

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        name = value.strip()
        if not name:
            raise ValueError("menu item name must not be blank")
        return name

    def model_post_init(self, __context: Any) -> None:
        """Derive the catalog id when the source did not provide one."""
        if not self.id:
            self.id = catalog_item_id(self.name, self.price)


class MenuCatalog(CamelModel):
    """Canonical menu of one restaurant, read-only once built."""

    restaurant_name: str = ""
    restaurant_url: str = ""
    scraped_at: datetime = Field(default_factory=_utcnow)
    item_count: int = 0
    items: list[MenuItem] = Field(default_factory=list)

    def model_post_init(self, __context: Any) -> None:
        self.item_count = len(self.items)


class MenuScrape(CamelModel):
    """Raw output of the browser collaborator for one restaurant page."""

    restaurant_name: str = "Unknown restaurant"
    restaurant_url: str = ""
    candidates: list[MenuCandidate] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Cart plans
# ---------------------------------------------------------------------------


class MatchedLine(CamelModel):
    """A requested line resolved to a catalog entry."""

    menu_item_id: str
    name: str
    unit_price: float
    quantity: int
    line_subtotal: float
    notes: str = ""
    requested_name: str
    options: list[Any] = Field(default_factory=list)


class UnresolvedLine(CamelModel):
    """A requested line with no catalog match."""

    requested_name: str
    quantity: int
    notes: str = ""
    reason: str


class CartTotals(CamelModel):
    subtotal: float = 0.0
    estimated_fees: float | None = None
    grand_total: float = 0.0


class SafeMode(CamelModel):
    """Structural guarantee that a plan can never trigger a real purchase."""

    real_purchase_disabled: Literal[True] = True
    requires_confirm_pay_flag: Literal[True] = True
    requires_second_interactive_confirmation: Literal[True] = True


class CartPlan(CamelModel):
    """Priced cart derived from an order template and a menu catalog."""

    model_config = ConfigDict(frozen=True)

    version: int = 1
    generated_at: datetime = Field(default_factory=_utcnow)
    source_restaurant_url: str | None = None
    source_restaurant_name: str | None = None
    currency: str = "ARS"
    matched_items: list[MatchedLine] = Field(default_factory=list)
    unresolved_items: list[UnresolvedLine] = Field(default_factory=list)
    totals: CartTotals = Field(default_factory=CartTotals)
    safe_mode: SafeMode = Field(default_factory=SafeMode)


# ---------------------------------------------------------------------------
# Checkout dry run / payment gate
# ---------------------------------------------------------------------------


class DryRunLine(CamelModel):
    name: str
    quantity: int
    unit_price: float
    subtotal: float


class DryRunSummary(CamelModel):
    """Human-reviewable summary of a cart plan before any payment step."""

    items: list[DryRunLine] = Field(default_factory=list)
    unresolved_items: list[UnresolvedLine] = Field(default_factory=list)
    currency: str = "ARS"
    totals: CartTotals = Field(default_factory=CartTotals)
    safe_mode: SafeMode = Field(default_factory=SafeMode)


class PaymentGate(CamelModel):
    """Outcome of the interactive payment gate."""

    attempted: bool
    permitted: bool
    message: str


class PaymentAttempt(CamelModel):
    """Result reported by the browser collaborator for a live payment click."""

    attempted: bool
    submitted: bool
    message: str


# ---------------------------------------------------------------------------
# Callback flow state machine
# ---------------------------------------------------------------------------


class FlowStage(str, enum.Enum):
    """Stages of the conversational ordering flow."""

    IDLE = "idle"
    MENU = "menu"
    CART = "cart"
    CHECKOUT_SUMMARY = "checkout-summary"
    CHECKOUT_BLOCKED = "checkout-blocked"
    CHECKOUT_CONFIRMED = "checkout-confirmed"
    PAYMENT_BLOCKED = "payment-blocked"
    PAYMENT_ATTEMPTED = "payment-attempted"
    PAYMENT_SUBMITTED = "payment-submitted"
    ABORTED = "aborted"


class MenuCache(CamelModel):
    restaurant_url: str = ""
    fetched_at: str = ""
    items: list[MenuItem] = Field(default_factory=list)


class FlowState(CamelModel):
    """Cross-invocation state of one ordering conversation."""

    selected_restaurant_url: str
    menu_cache: MenuCache = Field(default_factory=MenuCache)
    cart_items: dict[str, int] = Field(default_factory=dict)
    stage: FlowStage = FlowStage.IDLE
    checkout_confirmed: bool = False


class FlowButton(BaseModel):
    """A selectable action; ``callback_data`` is the token sent back on press."""

    text: str
    callback_data: str
    style: str | None = None


class FlowResponse(BaseModel):
    """Message plus rows of action buttons emitted for one callback."""

    message: str
    buttons: list[list[FlowButton]] = Field(default_factory=list)
    stage: FlowStage


# ---------------------------------------------------------------------------
# Restaurant search
# ---------------------------------------------------------------------------


class RestaurantCard(CamelModel):
    """Raw restaurant link card scraped from a search results page."""

    href: str = ""
    anchor_text: str = ""
    text_blob: str = ""
    name_candidates: list[str] = Field(default_factory=list)
    short_text: list[str] = Field(default_factory=list)


class Restaurant(CamelModel):
    name: str
    url: str
    rating: float | None = None
    delivery_fee: float | None = None
    snippet: str = ""


# ---------------------------------------------------------------------------
# Reorder sessions
# ---------------------------------------------------------------------------


class ReorderState(str, enum.Enum):
    """Lifecycle states of a one-shot reorder session."""

    PENDING = "pending"
    FETCHING_MENU = "fetching_menu"
    MATCHING = "matching"
    COMPLETED = "completed"
    FAILED = "failed"


class ReorderSession(BaseModel):
    """Full state of a reorder session run through the workflow graph."""

    id: str
    template: dict[str, Any]
    state: ReorderState = ReorderState.PENDING
    cart_plan: CartPlan | None = None
    summary: DryRunSummary | None = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class OrderEvent(BaseModel):
    """Server-Sent Event pushed while a reorder session runs."""

    event_type: str
    session_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
