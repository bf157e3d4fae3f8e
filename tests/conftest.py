"""Shared test fixtures for the Rappi order agent."""

import pytest
import structlog

from rappi_order.config import Settings
from rappi_order.models import (
    MenuCandidate,
    MenuCatalog,
    MenuItem,
    MenuScrape,
    PaymentAttempt,
    RestaurantCard,
)
from rappi_order.protocols.browser import BrowserError

RESTAURANT_URL = "https://www.rappi.com.ar/restaurantes/215137-guber"


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any structlog configuration a test applied (e.g. via the CLI).

    setup_logging binds structlog to the sys.stderr of the moment, which under
    pytest is a per-test capture stream that is closed after the test.
    """
    yield
    structlog.reset_defaults()


class FakeBrowser:
    """In-memory browser collaborator recording every call."""

    def __init__(
        self,
        candidates=None,
        restaurant_name="Guber",
        cards=None,
        payment=None,
        fail_fetch=False,
    ):
        self.candidates = candidates if candidates is not None else []
        self.restaurant_name = restaurant_name
        self.cards = cards or []
        self.payment = payment or PaymentAttempt(attempted=True, submitted=True, message="clicked")
        self.fail_fetch = fail_fetch
        self.menu_calls = []
        self.search_calls = []
        self.payment_calls = []

    async def fetch_menu_candidates(self, url):
        self.menu_calls.append(url)
        if self.fail_fetch:
            raise BrowserError("navigation timeout")
        return MenuScrape(
            restaurant_name=self.restaurant_name,
            restaurant_url=url,
            candidates=list(self.candidates),
        )

    async def fetch_restaurant_cards(self, search_url):
        self.search_calls.append(search_url)
        return list(self.cards)

    async def perform_live_payment_attempt(self, restaurant_url):
        self.payment_calls.append(restaurant_url)
        return self.payment


def make_candidates(count):
    return [
        MenuCandidate(
            name_text=f"Hamburguesa Especial {index}",
            price_text=f"$ {1000 + index * 100}",
            category_title="Hamburguesas",
            raw_text=f"Hamburguesa Especial {index} $ {1000 + index * 100}",
        )
        for index in range(count)
    ]


@pytest.fixture
def restaurant_url():
    return RESTAURANT_URL


@pytest.fixture
def settings(tmp_path):
    """Create test settings with all files under a temp directory."""
    return Settings(
        environment="testing",
        config_dir=tmp_path,
        default_restaurant_url=RESTAURANT_URL,
        live_order_enabled=False,
    )


@pytest.fixture
def menu_candidates():
    return [
        MenuCandidate(
            name_text="Pizza Muzzarella",
            description_text="Salsa de tomate y muzzarella",
            price_text="$ 8.500",
            category_title="Pizzas",
            raw_text="Pizza Muzzarella Salsa de tomate y muzzarella $ 8.500",
        ),
        MenuCandidate(
            name_text="Empanada Carne",
            price_text="$ 1.900",
            category_title="Empanadas",
            raw_text="Empanada Carne $ 1.900",
        ),
        MenuCandidate(name_text="Agregar", raw_text="Agregar"),
    ]


@pytest.fixture
def fake_browser(menu_candidates):
    return FakeBrowser(candidates=menu_candidates)


@pytest.fixture
def catalog():
    return MenuCatalog(
        restaurant_name="Guber",
        restaurant_url=RESTAURANT_URL,
        items=[
            MenuItem(name="Pizza Muzzarella", price=8500, category="Pizzas"),
            MenuItem(name="Empanada Carne", price=1900, category="Empanadas"),
        ],
    )


@pytest.fixture
def restaurant_cards():
    return [
        RestaurantCard(
            href="/restaurantes/100-la-pizzeria-de-juan",
            anchor_text="La Pizzeria de Juan",
            text_blob="La Pizzeria de Juan ★ 4.6 Envío gratis Pizzas y empanadas",
            name_candidates=["La Pizzeria de Juan"],
        ),
        RestaurantCard(
            href="https://www.rappi.com.ar/restaurantes/200-sushi-club?utm=1",
            anchor_text="Sushi Club",
            text_blob="Sushi Club ★ 4.8 Envío $ 900",
            name_candidates=["Sushi Club"],
        ),
        RestaurantCard(
            href="/restaurantes/100-la-pizzeria-de-juan#top",
            anchor_text="Duplicate",
            text_blob="Duplicate",
        ),
        RestaurantCard(
            href="/restaurantes/delivery",
            anchor_text="Ver todos",
            text_blob="Ver todos",
        ),
    ]
