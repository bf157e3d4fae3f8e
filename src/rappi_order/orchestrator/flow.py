"""Callback-driven ordering flow.

A chat front end sends opaque ``rappi:...`` callback tokens; each one is
parsed, applied to the conversation's :class:`~rappi_order.models.FlowState`
and answered with a :class:`~rappi_order.models.FlowResponse` (message plus
button rows). The controller only mutates the state object it is handed;
loading and saving it is :mod:`rappi_order.orchestrator.flow_store`'s job.

Token grammar::

    rappi:menu:start
    rappi:menu:more:<page>      page is a non-negative int, empty means 0
    rappi:add:<item id>
    rappi:checkout:summary
    rappi:confirm:checkout
    rappi:confirm:pay
    rappi:abort
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from rappi_order.agents.menu_extractor import MenuExtractor
from rappi_order.models import (
    FlowButton,
    FlowResponse,
    FlowStage,
    FlowState,
    MenuCache,
    MenuItem,
    PaymentAttempt,
)
from rappi_order.policy import assert_restaurant_url
from rappi_order.protocols.browser import BrowserError
from rappi_order.text import format_price

if TYPE_CHECKING:
    from rappi_order.config import Settings
    from rappi_order.orchestrator.flow_store import FlowStateStore
    from rappi_order.protocols.browser import BrowserCollaborator

logger = structlog.get_logger(__name__)

CALLBACK_PREFIX = "rappi:"
LIVE_ORDER_SWITCH = "RAPPI_LIVE_ORDER_ENABLED"

CANCEL_ROW = [FlowButton(text="Cancel", callback_data="rappi:abort", style="danger")]


class CallbackParseError(ValueError):
    """Raised for a callback token outside the grammar."""


class CallbackAction(str, enum.Enum):
    MENU_START = "menu:start"
    MENU_MORE = "menu:more"
    ADD = "add"
    CHECKOUT_SUMMARY = "checkout:summary"
    CONFIRM_CHECKOUT = "confirm:checkout"
    CONFIRM_PAY = "confirm:pay"
    ABORT = "abort"


@dataclass(frozen=True)
class Callback:
    """A parsed callback token."""

    action: CallbackAction
    raw: str
    page: int = 0
    item_id: str = ""


_EXACT_TOKENS = {
    "menu:start": CallbackAction.MENU_START,
    "checkout:summary": CallbackAction.CHECKOUT_SUMMARY,
    "confirm:checkout": CallbackAction.CONFIRM_CHECKOUT,
    "confirm:pay": CallbackAction.CONFIRM_PAY,
    "abort": CallbackAction.ABORT,
}


def parse_callback(data: str) -> Callback:
    """Parse a callback token.

    Raises
    ------
    CallbackParseError
        On a wrong namespace, an unknown verb, a negative or non-integer
        page, or an empty item id.
    """
    raw = (data or "").strip()
    if not raw.startswith(CALLBACK_PREFIX):
        raise CallbackParseError(f"Invalid callback data: {raw}")
    body = raw[len(CALLBACK_PREFIX):]

    if body in _EXACT_TOKENS:
        return Callback(action=_EXACT_TOKENS[body], raw=raw)

    if body.startswith("menu:more:"):
        argument = body[len("menu:more:"):].strip()
        if not argument:
            return Callback(action=CallbackAction.MENU_MORE, raw=raw, page=0)
        if not (argument.isascii() and argument.isdigit()):
            raise CallbackParseError(f"Invalid menu page in callback data: {raw}")
        return Callback(action=CallbackAction.MENU_MORE, raw=raw, page=int(argument))

    if body.startswith("add:"):
        item_id = body[len("add:"):].strip()
        if not item_id:
            raise CallbackParseError(f"Invalid menu item callback data: {raw}")
        return Callback(action=CallbackAction.ADD, raw=raw, item_id=item_id)

    raise CallbackParseError(f"Unsupported callback data: {raw}")


def clamp_page(page: int, total_pages: int) -> int:
    if page < 0:
        return 0
    return min(page, max(0, total_pages - 1))


def cart_item_count(cart_items: dict[str, int]) -> int:
    return sum(cart_items.values())


@dataclass(frozen=True)
class _SummaryLine:
    item_id: str
    name: str
    quantity: int
    unit_price: float
    line_total: float


def _find_item(state: FlowState, item_id: str) -> MenuItem | None:
    for item in state.menu_cache.items:
        if item.id == item_id:
            return item
    return None


def _summary_lines(state: FlowState) -> list[_SummaryLine]:
    lines: list[_SummaryLine] = []
    for item_id, quantity in state.cart_items.items():
        if quantity <= 0:
            continue
        item = _find_item(state, item_id)
        unit_price = item.price if item else 0.0
        lines.append(
            _SummaryLine(
                item_id=item_id,
                name=item.name if item else item_id,
                quantity=quantity,
                unit_price=unit_price,
                line_total=unit_price * quantity,
            )
        )
    return lines


def _respond(state: FlowState, message: str, buttons: list[list[FlowButton]]) -> FlowResponse:
    return FlowResponse(message=message, buttons=[*buttons, list(CANCEL_ROW)], stage=state.stage)


class FlowController:
    """Applies callback tokens to a :class:`FlowState`.

    Parameters
    ----------
    browser:
        Collaborator used to fetch menus and attempt live payments. The only
        awaited calls in a transition go through it.
    live_order_enabled:
        External switch that must be on, together with a confirmed
        checkout, before a payment attempt is delegated.
    default_restaurant_url:
        Restaurant used when neither the call nor the state selects one.
    page_size:
        Number of menu items per page.
    """

    def __init__(
        self,
        browser: BrowserCollaborator,
        *,
        live_order_enabled: bool = False,
        default_restaurant_url: str,
        page_size: int = 6,
        extractor: MenuExtractor | None = None,
    ) -> None:
        self._browser = browser
        self._live_order_enabled = live_order_enabled
        self._default_restaurant_url = assert_restaurant_url(default_restaurant_url)
        self._page_size = max(1, page_size)
        self._extractor = extractor or MenuExtractor()

    @classmethod
    def from_settings(cls, settings: Settings, browser: BrowserCollaborator) -> FlowController:
        return cls(
            browser,
            live_order_enabled=settings.live_order_enabled,
            default_restaurant_url=settings.default_restaurant_url,
            page_size=settings.menu_page_size,
        )

    @property
    def default_restaurant_url(self) -> str:
        return self._default_restaurant_url

    def initial_state(self) -> FlowState:
        return FlowState(selected_restaurant_url=self._default_restaurant_url)

    async def handle(
        self,
        callback_data: str,
        state: FlowState,
        restaurant_url: str | None = None,
    ) -> FlowResponse:
        """Apply one callback token to *state* in place and build the reply.

        The token is parsed before anything touches *state*, so a malformed
        token leaves it exactly as it was.
        """
        callback = parse_callback(callback_data)
        state.selected_restaurant_url = assert_restaurant_url(
            restaurant_url or state.selected_restaurant_url or self._default_restaurant_url
        )
        previous = state.stage

        if callback.action in (CallbackAction.MENU_START, CallbackAction.MENU_MORE):
            response = await self._show_menu(state, callback.page)
        elif callback.action is CallbackAction.ADD:
            response = self._add(state, callback.item_id)
        elif callback.action is CallbackAction.CHECKOUT_SUMMARY:
            response = self._checkout_summary(state)
        elif callback.action is CallbackAction.CONFIRM_CHECKOUT:
            response = self._confirm_checkout(state)
        elif callback.action is CallbackAction.CONFIRM_PAY:
            response = await self._confirm_pay(state)
        else:
            response = self._abort(state)

        logger.info(
            "flow_transition",
            callback=callback.raw,
            from_stage=previous.value,
            to_stage=state.stage.value,
        )
        return response

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------

    def _has_cached_menu(self, state: FlowState) -> bool:
        cache = state.menu_cache
        return cache.restaurant_url == state.selected_restaurant_url and bool(cache.items)

    async def _ensure_menu(self, state: FlowState) -> None:
        if self._has_cached_menu(state):
            return

        url = state.selected_restaurant_url
        scrape = await self._browser.fetch_menu_candidates(url)
        catalog = self._extractor.build_catalog(scrape.restaurant_name, url, scrape.candidates)
        state.menu_cache = MenuCache(
            restaurant_url=url,
            fetched_at=catalog.scraped_at.isoformat(),
            items=catalog.items,
        )

    async def _show_menu(self, state: FlowState, page: int) -> FlowResponse:
        try:
            await self._ensure_menu(state)
        except BrowserError as exc:
            logger.warning("flow_menu_fetch_failed", url=state.selected_restaurant_url, error=str(exc))
            return _respond(
                state,
                f"Could not fetch the menu for this restaurant ({exc}). Try again.",
                [[FlowButton(text="Retry menu", callback_data="rappi:menu:start")]],
            )

        state.stage = FlowStage.MENU
        items = state.menu_cache.items
        if not items:
            return _respond(
                state,
                "Could not extract a menu from this restaurant. Try again.",
                [[FlowButton(text="Retry menu", callback_data="rappi:menu:start")]],
            )

        total_pages = max(1, math.ceil(len(items) / self._page_size))
        page = clamp_page(page, total_pages)
        start = page * self._page_size

        buttons = [
            [
                FlowButton(
                    text=f"+ {item.name} (ARS {format_price(item.price)})",
                    callback_data=f"rappi:add:{item.id}",
                )
            ]
            for item in items[start : start + self._page_size]
        ]

        navigation: list[FlowButton] = []
        if page > 0:
            navigation.append(FlowButton(text="Previous page", callback_data=f"rappi:menu:more:{page - 1}"))
        if page < total_pages - 1:
            navigation.append(FlowButton(text="More", callback_data=f"rappi:menu:more:{page + 1}"))
        if navigation:
            buttons.append(navigation)

        buttons.append(
            [FlowButton(text="Checkout summary", callback_data="rappi:checkout:summary", style="primary")]
        )
        return _respond(state, f"Menu {page + 1}/{total_pages} - {state.selected_restaurant_url}", buttons)

    # ------------------------------------------------------------------
    # Cart and checkout
    # ------------------------------------------------------------------

    def _add(self, state: FlowState, item_id: str) -> FlowResponse:
        # Any cart change invalidates an earlier checkout confirmation.
        state.checkout_confirmed = False
        state.cart_items[item_id] = state.cart_items.get(item_id, 0) + 1
        state.stage = FlowStage.CART

        item = _find_item(state, item_id)
        label = item.name if item else item_id
        return _respond(
            state,
            f"Added: {label} (x{state.cart_items[item_id]}). "
            f"Cart: {cart_item_count(state.cart_items)} item(s).",
            [
                [FlowButton(text="View menu", callback_data="rappi:menu:start")],
                [FlowButton(text="Checkout summary", callback_data="rappi:checkout:summary", style="primary")],
            ],
        )

    def _checkout_summary(self, state: FlowState) -> FlowResponse:
        state.stage = FlowStage.CHECKOUT_SUMMARY
        lines = _summary_lines(state)

        buttons = [[FlowButton(text="Back to menu", callback_data="rappi:menu:start")]]
        if not lines:
            return _respond(state, "Cart is empty. Pick items from the menu.", buttons)

        detail = "\n".join(
            f"{line.quantity}x {line.name} - ARS {format_price(line.line_total)}" for line in lines
        )
        total = sum(line.line_total for line in lines)
        buttons.insert(
            0,
            [FlowButton(text="Confirm checkout", callback_data="rappi:confirm:checkout", style="primary")],
        )
        return _respond(state, f"Checkout summary:\n{detail}\nTotal: ARS {format_price(total)}", buttons)

    def _confirm_checkout(self, state: FlowState) -> FlowResponse:
        lines = _summary_lines(state)
        if not lines:
            state.checkout_confirmed = False
            state.stage = FlowStage.CHECKOUT_BLOCKED
            return _respond(
                state,
                "Checkout blocked: the cart is empty. Add items before confirming.",
                [[FlowButton(text="View menu", callback_data="rappi:menu:start")]],
            )

        state.checkout_confirmed = True
        state.stage = FlowStage.CHECKOUT_CONFIRMED
        total = sum(line.line_total for line in lines)
        return _respond(
            state,
            f"Checkout confirmed. Estimated total: ARS {format_price(total)}. Press pay for a live attempt.",
            [
                [FlowButton(text="Confirm payment", callback_data="rappi:confirm:pay", style="primary")],
                [FlowButton(text="Checkout summary", callback_data="rappi:checkout:summary")],
            ],
        )

    async def _confirm_pay(self, state: FlowState) -> FlowResponse:
        if not state.checkout_confirmed or not self._live_order_enabled:
            state.stage = FlowStage.PAYMENT_BLOCKED
            reasons = []
            if not state.checkout_confirmed:
                reasons.append("checkout not confirmed")
            if not self._live_order_enabled:
                reasons.append(f"{LIVE_ORDER_SWITCH}=true not set")
            return _respond(
                state,
                f"Payment blocked: {' and '.join(reasons)}.",
                [[FlowButton(text="Confirm checkout", callback_data="rappi:confirm:checkout", style="primary")]],
            )

        try:
            attempt = await self._browser.perform_live_payment_attempt(state.selected_restaurant_url)
        except BrowserError as exc:
            logger.warning("flow_payment_attempt_failed", error=str(exc))
            attempt = PaymentAttempt(
                attempted=True,
                submitted=False,
                message=f"Live purchase attempt failed: {exc}",
            )

        state.stage = FlowStage.PAYMENT_SUBMITTED if attempt.submitted else FlowStage.PAYMENT_ATTEMPTED
        return _respond(
            state,
            attempt.message,
            [[FlowButton(text="Checkout summary", callback_data="rappi:checkout:summary")]],
        )

    def _abort(self, state: FlowState) -> FlowResponse:
        state.cart_items = {}
        state.checkout_confirmed = False
        state.stage = FlowStage.ABORTED
        return _respond(
            state,
            "Flow cancelled. Cart emptied.",
            [[FlowButton(text="Start menu", callback_data="rappi:menu:start")]],
        )


async def run_callback(
    store: FlowStateStore,
    controller: FlowController,
    callback_data: str,
    restaurant_url: str | None = None,
) -> tuple[FlowResponse, FlowState]:
    """Load the stored state, apply one callback, and persist the result.

    The state file is only rewritten when the transition completes.
    """
    with store.transaction() as state:
        response = await controller.handle(callback_data, state, restaurant_url=restaurant_url)
    return response, state
