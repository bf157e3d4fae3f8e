"""Tests for the checkout dry run, the payment gate and the operating policy."""

import pytest

from rappi_order.agents.cart_matcher import CartMatcher
from rappi_order.agents.checkout_agent import (
    CONFIRM_PAY_PHRASE,
    build_dry_run_summary,
    guard_payment_execution,
)
from rappi_order.policy import (
    PolicyViolationError,
    assert_restaurant_url,
    assert_restaurant_vertical,
    is_allowed_vertical,
)


@pytest.fixture
def plan(catalog):
    order = {
        "items": [
            {"name": "Pizza Muzzarella", "quantity": 2},
            {"name": "Empanada Carne", "quantity": 3},
            {"name": "Flan casero"},
        ]
    }
    return CartMatcher().build_cart_plan(order, catalog)


class TestDryRunSummary:
    def test_lines_and_totals(self, plan):
        summary = build_dry_run_summary(plan)
        assert [(line.name, line.quantity, line.subtotal) for line in summary.items] == [
            ("Pizza Muzzarella", 2, 17000),
            ("Empanada Carne", 3, 5700),
        ]
        assert summary.totals.subtotal == 22700
        assert summary.totals.grand_total == 22700
        assert [line.requested_name for line in summary.unresolved_items] == ["Flan casero"]
        assert summary.currency == "ARS"

    def test_safe_mode_is_always_on(self, plan):
        data = build_dry_run_summary(plan).to_json_dict()
        assert data["safeMode"]["realPurchaseDisabled"] is True
        assert data["items"][0]["unitPrice"] == 8500


class TestPaymentGate:
    def test_without_flag(self):
        gate = guard_payment_execution(False)
        assert not gate.attempted
        assert not gate.permitted
        assert gate.message.startswith("Payment flow not attempted")

    def test_first_confirmation_declined(self):
        gate = guard_payment_execution(True, first_confirmation=False)
        assert gate.message == "User cancelled before second confirmation."
        assert not gate.attempted

    @pytest.mark.parametrize("phrase", [None, "", "confirm pay", "CONFIRM"])
    def test_phrase_mismatch(self, phrase):
        gate = guard_payment_execution(True, first_confirmation=True, typed_phrase=phrase)
        assert gate.message == "Second confirmation phrase mismatch; payment flow remains blocked."
        assert not gate.attempted

    def test_full_confirmation_still_never_permits(self):
        gate = guard_payment_execution(True, first_confirmation=True, typed_phrase=f"  {CONFIRM_PAY_PHRASE} ")
        assert gate.attempted
        assert not gate.permitted
        assert "permanently disabled" in gate.message


class TestPolicy:
    def test_restaurant_url_is_normalised(self):
        url = "https://WWW.Rappi.com.ar/restaurantes/215137-guber"
        assert assert_restaurant_url(url) == "https://www.rappi.com.ar/restaurantes/215137-guber"

    @pytest.mark.parametrize(
        ("url", "message"),
        [
            ("not a url", "Invalid URL"),
            ("ftp://www.rappi.com.ar/restaurantes/1", "Invalid URL"),
            ("https://www.pedidosya.com.ar/restaurantes/1", "Only https://www.rappi.com.ar"),
            ("https://notrappi.com.ar/restaurantes/1", "Only https://www.rappi.com.ar"),
            ("https://www.rappi.com.ar.attacker.io/restaurantes/1", "Only https://www.rappi.com.ar"),
            ("https://evil-rappi.com.ar.attacker.io/restaurantes/1", "Only https://www.rappi.com.ar"),
            ("https://www.rappi.com.ar/supermercados/1-coto", "Only restaurant URLs"),
        ],
    )
    def test_rejected_urls(self, url, message):
        with pytest.raises(PolicyViolationError, match=message):
            assert_restaurant_url(url)

    def test_subdomains_and_bare_host_allowed(self):
        assert assert_restaurant_url("https://rappi.com.ar/restaurantes/1") == "https://rappi.com.ar/restaurantes/1"
        assert assert_restaurant_url("https://m.rappi.com.ar/restaurantes/1").startswith("https://m.rappi.com.ar/")

    def test_blocked_vertical(self):
        with pytest.raises(PolicyViolationError, match="supermercado"):
            assert_restaurant_vertical("Supermercado Día")
        assert not is_allowed_vertical("Turbo 15 min")
        assert is_allowed_vertical("Pizzería Güerrín")
