"""LangGraph state schema for the reorder workflow."""

from __future__ import annotations

from typing import Any, TypedDict

from rappi_order.models import CartPlan, DryRunSummary, MenuCatalog, OrderTemplate, ReorderState


class ReorderGraphState(TypedDict, total=False):
    """Data flowing between reorder graph nodes."""

    # --- Input ----------------------------------------------------------------
    session_id: str
    raw_template: dict[str, Any]
    catalog: MenuCatalog | None

    # --- Progress -------------------------------------------------------------
    current_state: ReorderState
    template: OrderTemplate | None

    # --- Output ---------------------------------------------------------------
    cart_plan: CartPlan | None
    summary: DryRunSummary | None

    error: str | None
