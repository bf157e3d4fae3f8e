"""Tests for order validation and cart matching."""

import pytest
from pydantic import ValidationError

from rappi_order.agents.cart_matcher import (
    UNRESOLVED_REASON,
    CartMatcher,
    OrderValidationError,
    validate_order_template,
)
from rappi_order.models import CartPlan, MenuCatalog, MenuItem, OrderTemplate


@pytest.fixture
def matcher():
    return CartMatcher()


class TestValidateOrderTemplate:
    def test_valid_tree(self):
        template = validate_order_template({"items": [{"name": "Faina"}]})
        assert isinstance(template, OrderTemplate)
        assert template.items[0].quantity == 1

    def test_not_an_object(self):
        with pytest.raises(OrderValidationError, match="must be an object"):
            validate_order_template(["Faina"])

    @pytest.mark.parametrize("order", [{}, {"items": []}, {"items": "Faina"}])
    def test_missing_items(self, order):
        with pytest.raises(OrderValidationError, match="non-empty items array"):
            validate_order_template(order)

    def test_item_not_an_object(self):
        with pytest.raises(OrderValidationError, match="Invalid item at index 1"):
            validate_order_template({"items": [{"name": "Faina"}, "Fugazza"]})

    def test_item_without_name(self):
        with pytest.raises(OrderValidationError, match="index 0 is missing a valid name"):
            validate_order_template({"items": [{"name": "   "}]})

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, -2.0, 0.0, "2", True])
    def test_invalid_quantity(self, quantity):
        with pytest.raises(OrderValidationError, match="'Faina' has invalid quantity"):
            validate_order_template({"items": [{"name": "Faina", "quantity": quantity}]})

    def test_whole_float_quantity_is_accepted(self):
        template = validate_order_template({"items": [{"name": "Faina", "quantity": 2.0}]})
        assert template.items[0].quantity == 2
        assert isinstance(template.items[0].quantity, int)


class TestFindMatch:
    def test_exact_match_ignores_case_and_accents(self, matcher, catalog):
        assert matcher.find_match("PIZZA MUZZARELLÁ", catalog.items).name == "Pizza Muzzarella"

    def test_containment(self, matcher, catalog):
        assert matcher.find_match("pizza", catalog.items).name == "Pizza Muzzarella"

    def test_slug_match(self, matcher, catalog):
        assert matcher.find_match("Empanada-Carne", catalog.items).name == "Empanada Carne"

    def test_no_match(self, matcher, catalog):
        assert matcher.find_match("Sushi", catalog.items) is None

    def test_names_without_words_never_match_everything(self, matcher):
        items = [
            MenuItem.model_construct(id="blank", name=" ", price=1.0),
            MenuItem(name="!!", price=1),
            MenuItem(name="Pizza", price=2),
        ]
        assert matcher.find_match("Faina", items) is None
        assert matcher.find_match("Pizza grande", items).name == "Pizza"

    def test_blank_menu_item_name_is_rejected(self):
        with pytest.raises(ValidationError, match="must not be blank"):
            MenuItem(name=" ", price=1)
        assert MenuItem(name="  Faina ", price=1).name == "Faina"

    def test_blank_catalog_entry_cannot_swallow_lines(self, matcher):
        with pytest.raises(ValidationError):
            MenuCatalog.model_validate({"items": [{"name": " ", "price": 1}, {"name": "Pizza", "price": 2}]})



class TestBuildCartPlan:
    def test_weekly_order(self, matcher, catalog, restaurant_url):
        order = {
            "restaurantUrl": restaurant_url,
            "items": [
                {"name": "Pizza Muzzarella", "quantity": 2, "notes": "bien cocida"},
                {"name": "Faina"},
            ],
        }
        plan = matcher.build_cart_plan(order, catalog)

        assert isinstance(plan, CartPlan)
        assert plan.source_restaurant_url == restaurant_url
        assert plan.source_restaurant_name == "Guber"
        assert plan.currency == "ARS"

        [line] = plan.matched_items
        assert line.menu_item_id == "pizza-muzzarella-8500"
        assert line.quantity == 2
        assert line.line_subtotal == 17000
        assert line.notes == "bien cocida"

        [missing] = plan.unresolved_items
        assert missing.requested_name == "Faina"
        assert missing.reason == UNRESOLVED_REASON

        assert plan.totals.subtotal == 17000
        assert plan.totals.grand_total == 17000
        assert plan.totals.estimated_fees is None

    def test_serialised_plan_uses_camel_case(self, matcher, catalog):
        plan = matcher.build_cart_plan({"items": [{"name": "Empanada Carne", "quantity": 3}]}, catalog)
        data = plan.to_json_dict()
        assert data["matchedItems"][0]["lineSubtotal"] == 5700
        assert data["totals"]["grandTotal"] == 5700
        assert data["safeMode"] == {
            "realPurchaseDisabled": True,
            "requiresConfirmPayFlag": True,
            "requiresSecondInteractiveConfirmation": True,
        }

    def test_without_catalog_everything_is_unresolved(self, matcher):
        plan = matcher.build_cart_plan({"items": [{"name": "Faina", "quantity": 2}]}, None)
        assert plan.matched_items == []
        assert plan.unresolved_items[0].quantity == 2
        assert plan.totals.subtotal == 0

    def test_currency_from_template(self, matcher, catalog):
        plan = matcher.build_cart_plan({"currency": "USD", "items": [{"name": "Pizza"}]}, catalog)
        assert plan.currency == "USD"

    def test_invalid_order_is_rejected(self, matcher, catalog):
        with pytest.raises(OrderValidationError):
            matcher.build_cart_plan({"items": []}, catalog)
