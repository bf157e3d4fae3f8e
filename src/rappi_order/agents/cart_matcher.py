"""Cart matching specialist agent.

Resolves each requested line of an :class:`~rappi_order.models.OrderTemplate`
against a :class:`~rappi_order.models.MenuCatalog` and prices the result.
Lines without a match are reported, never raised.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import ValidationError

from rappi_order.models import (
    CartPlan,
    CartTotals,
    MatchedLine,
    MenuCatalog,
    MenuItem,
    OrderTemplate,
    UnresolvedLine,
)
from rappi_order.text import normalize_name, slugify

logger = structlog.get_logger(__name__)

UNRESOLVED_REASON = "no menu match found"


class OrderValidationError(ValueError):
    """Raised when an order template is missing items or has malformed lines."""


def validate_order_template(order: Any) -> OrderTemplate:
    """Check the template shape and return it as an :class:`OrderTemplate`.

    Raises
    ------
    OrderValidationError
        With a message naming the first offending line.
    """
    if isinstance(order, OrderTemplate):
        return order
    if not isinstance(order, dict):
        raise OrderValidationError("Order template must be an object.")

    items = order.get("items")
    if not isinstance(items, list) or not items:
        raise OrderValidationError("Order template must include a non-empty items array.")

    for index, item in enumerate(items):
        if not isinstance(item, dict):
            raise OrderValidationError(f"Invalid item at index {index}.")
        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise OrderValidationError(f"Item at index {index} is missing a valid name.")
        quantity = item.get("quantity")
        # 2.0 from JSON or YAML counts as a whole quantity.
        if isinstance(quantity, float) and quantity.is_integer():
            quantity = int(quantity)
        if quantity is not None and (
            isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0
        ):
            raise OrderValidationError(f"Item '{name}' has invalid quantity.")

    try:
        return OrderTemplate.model_validate(order)
    except ValidationError as exc:
        raise OrderValidationError(f"Invalid order template: {exc.errors()[0]['msg']}") from exc


class CartMatcher:
    """Matches requested dishes to catalog entries and totals the cart."""

    def find_match(self, requested_name: str, items: list[MenuItem]) -> MenuItem | None:
        """First hit wins: exact normalised name, containment, then slug."""
        indexed = [(name, item) for item in items if (name := normalize_name(item.name))]
        target = normalize_name(requested_name)
        if not target:
            return None

        for name, item in indexed:
            if name == target:
                return item

        for name, item in indexed:
            if target in name or name in target:
                return item

        target_slug = slugify(target)
        for name, item in indexed:
            if target_slug and slugify(name) == target_slug:
                return item
        return None

    def build_cart_plan(self, order: OrderTemplate | dict[str, Any], catalog: MenuCatalog | None) -> CartPlan:
        """Price every resolvable line of *order* against *catalog*.

        Parameters
        ----------
        order:
            Validated template, or a raw tree that is validated first.
        catalog:
            Menu to match against; ``None`` leaves every line unresolved.

        Returns
        -------
        CartPlan
        """
        template = validate_order_template(order)
        menu_items = catalog.items if catalog is not None else []

        matched: list[MatchedLine] = []
        unresolved: list[UnresolvedLine] = []
        subtotal = 0.0

        for line in template.items:
            match = self.find_match(line.name, menu_items)
            if match is None:
                unresolved.append(
                    UnresolvedLine(
                        requested_name=line.name,
                        quantity=line.quantity,
                        notes=line.notes,
                        reason=UNRESOLVED_REASON,
                    )
                )
                continue

            line_subtotal = match.price * line.quantity
            subtotal += line_subtotal
            matched.append(
                MatchedLine(
                    menu_item_id=match.id,
                    name=match.name,
                    unit_price=match.price,
                    quantity=line.quantity,
                    line_subtotal=line_subtotal,
                    notes=line.notes,
                    requested_name=line.name,
                    options=list(line.options),
                )
            )

        logger.info(
            "cart_plan_built",
            matched=len(matched),
            unresolved=len(unresolved),
            subtotal=subtotal,
        )

        return CartPlan(
            source_restaurant_url=template.restaurant_url or (catalog.restaurant_url if catalog else None) or None,
            source_restaurant_name=(catalog.restaurant_name if catalog else None) or template.restaurant_name,
            currency=template.currency or "ARS",
            matched_items=matched,
            unresolved_items=unresolved,
            totals=CartTotals(subtotal=subtotal, estimated_fees=None, grand_total=subtotal),
        )
