"""LangGraph StateGraph for the one-shot reorder workflow.

Nodes
-----
load_template -- validate the raw order template
fetch_menu    -- scrape the restaurant menu and build a catalog
build_cart    -- match template lines against the catalog
summarize     -- produce the dry-run checkout summary
fail          -- terminal failure node

Edges (with conditional routing)
------
load_template -> fetch_menu (no catalog, template names a restaurant)
              | build_cart (catalog supplied or nothing to fetch)
              | fail
fetch_menu -> build_cart | fail
build_cart -> summarize
summarize -> END
"""

from __future__ import annotations

import structlog
from langgraph.graph import END, StateGraph

from rappi_order.agents.cart_matcher import CartMatcher, OrderValidationError, validate_order_template
from rappi_order.agents.checkout_agent import build_dry_run_summary
from rappi_order.agents.menu_extractor import MenuExtractor
from rappi_order.models import ReorderState
from rappi_order.orchestrator.state import ReorderGraphState
from rappi_order.policy import PolicyViolationError
from rappi_order.protocols.browser import BrowserCollaborator, BrowserError
from rappi_order.streaming import (
    EVENT_CART_READY,
    EVENT_COMPLETED,
    EVENT_ERROR,
    EVENT_FETCHING_MENU,
    EVENT_MATCHING,
    EVENT_MENU_READY,
    EVENT_TEMPLATE_LOADED,
    OrderEventStream,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Node factories
# ---------------------------------------------------------------------------


def _make_load_template_node(stream: OrderEventStream):
    async def load_template_node(state: ReorderGraphState) -> ReorderGraphState:
        session_id = state.get("session_id", "")
        try:
            template = validate_order_template(state.get("raw_template"))
        except OrderValidationError as exc:
            return {**state, "error": f"Invalid order template: {exc}"}

        await stream.emit(
            session_id,
            EVENT_TEMPLATE_LOADED,
            data={"items": [line.name for line in template.items]},
            message=f"Loaded template with {len(template.items)} item(s).",
        )
        return {**state, "template": template, "error": None}

    return load_template_node


def _make_fetch_menu_node(
    browser: BrowserCollaborator | None,
    extractor: MenuExtractor,
    stream: OrderEventStream,
):
    """Create the *fetch_menu* node function."""

    async def fetch_menu_node(state: ReorderGraphState) -> ReorderGraphState:
        session_id = state.get("session_id", "")
        template = state["template"]
        url = template.restaurant_url or ""

        if browser is None:
            return {**state, "error": "No browser configured to fetch the menu."}

        await stream.emit(
            session_id,
            EVENT_FETCHING_MENU,
            data={"restaurant_url": url},
            message=f"Fetching menu from {url}...",
        )

        try:
            scrape = await browser.fetch_menu_candidates(url)
            catalog = extractor.build_catalog(scrape.restaurant_name, url, scrape.candidates)
        except (BrowserError, PolicyViolationError) as exc:
            logger.warning("fetch_menu_node_error", session_id=session_id, error=str(exc))
            return {**state, "error": f"Menu fetch failed: {exc}"}

        await stream.emit(
            session_id,
            EVENT_MENU_READY,
            data={"restaurant": catalog.restaurant_name, "item_count": catalog.item_count},
            message=f"Menu ready: {catalog.item_count} item(s).",
        )
        return {**state, "catalog": catalog, "current_state": ReorderState.MATCHING, "error": None}

    return fetch_menu_node


def _make_build_cart_node(matcher: CartMatcher, stream: OrderEventStream):
    async def build_cart_node(state: ReorderGraphState) -> ReorderGraphState:
        session_id = state.get("session_id", "")
        await stream.emit(session_id, EVENT_MATCHING, message="Matching items against the menu...")

        plan = matcher.build_cart_plan(state["template"], state.get("catalog"))
        await stream.emit(
            session_id,
            EVENT_CART_READY,
            data={
                "matched": len(plan.matched_items),
                "unresolved": [line.requested_name for line in plan.unresolved_items],
                "subtotal": plan.totals.subtotal,
            },
            message=(
                f"Cart ready: {len(plan.matched_items)} matched, "
                f"{len(plan.unresolved_items)} unresolved."
            ),
        )
        return {**state, "cart_plan": plan, "current_state": ReorderState.MATCHING}

    return build_cart_node


def _make_summarize_node(stream: OrderEventStream):
    async def summarize_node(state: ReorderGraphState) -> ReorderGraphState:
        session_id = state.get("session_id", "")
        summary = build_dry_run_summary(state["cart_plan"])
        await stream.emit(
            session_id,
            EVENT_COMPLETED,
            data={"summary": summary.to_json_dict()},
            message=f"Dry run complete. Total: {summary.currency} {summary.totals.grand_total:.2f}",
        )
        return {**state, "summary": summary, "current_state": ReorderState.COMPLETED}

    return summarize_node


def _make_fail_node(stream: OrderEventStream):
    """Create the terminal failure node."""

    async def fail_node(state: ReorderGraphState) -> ReorderGraphState:
        error = state.get("error") or "Reorder failed."
        await stream.emit(state.get("session_id", ""), EVENT_ERROR, message=error)
        return {**state, "error": error, "current_state": ReorderState.FAILED}

    return fail_node


# ---------------------------------------------------------------------------
# Conditional routing functions
# ---------------------------------------------------------------------------


def _after_load(state: ReorderGraphState) -> str:
    if state.get("error"):
        return "fail"
    template = state.get("template")
    if state.get("catalog") is None and template is not None and template.restaurant_url:
        return "fetch_menu"
    return "build_cart"


def _after_fetch(state: ReorderGraphState) -> str:
    return "fail" if state.get("error") else "build_cart"


# ---------------------------------------------------------------------------
# Graph builder
# ---------------------------------------------------------------------------


def build_reorder_graph(
    stream: OrderEventStream,
    browser: BrowserCollaborator | None = None,
    extractor: MenuExtractor | None = None,
    matcher: CartMatcher | None = None,
) -> StateGraph:
    """Construct the reorder workflow.

    Parameters
    ----------
    stream:
        Event stream receiving progress events.
    browser:
        Collaborator used when the menu has to be fetched. Without one, a
        template that needs a fetch fails.

    Returns
    -------
    StateGraph
        An uncompiled graph.  Call ``.compile()`` before invoking.
    """
    graph = StateGraph(ReorderGraphState)

    graph.add_node("load_template", _make_load_template_node(stream))
    graph.add_node("fetch_menu", _make_fetch_menu_node(browser, extractor or MenuExtractor(), stream))
    graph.add_node("build_cart", _make_build_cart_node(matcher or CartMatcher(), stream))
    graph.add_node("summarize", _make_summarize_node(stream))
    graph.add_node("fail", _make_fail_node(stream))

    graph.set_entry_point("load_template")

    graph.add_conditional_edges(
        "load_template",
        _after_load,
        {"fetch_menu": "fetch_menu", "build_cart": "build_cart", "fail": "fail"},
    )
    graph.add_conditional_edges(
        "fetch_menu",
        _after_fetch,
        {"build_cart": "build_cart", "fail": "fail"},
    )
    graph.add_edge("build_cart", "summarize")

    graph.add_edge("summarize", END)
    graph.add_edge("fail", END)

    return graph


def compile_reorder_graph(
    stream: OrderEventStream,
    browser: BrowserCollaborator | None = None,
):
    """Build and compile the reorder graph into a runnable."""
    return build_reorder_graph(stream, browser=browser).compile()
