"""Tests for the menu extraction agent."""

from datetime import datetime, timezone

import pytest

from rappi_order.agents.menu_extractor import (
    ExtractionPolicy,
    MenuExtractor,
    NameSource,
    choose_description,
    choose_menu_name,
    extract_price,
    is_likely_menu_name,
    is_section_title_artifact,
    is_structural_noise,
    reads_like_item,
    sanitize_category,
    strip_contamination,
    truncate_long_name,
)
from rappi_order.models import MenuCandidate, MenuItemDraft, catalog_item_id
from rappi_order.policy import PolicyViolationError

RESTAURANT_URL = "https://www.rappi.com.ar/restaurantes/215137-guber"


@pytest.fixture
def extractor():
    return MenuExtractor()


class TestPriceRules:
    def test_currency_prefix(self):
        assert extract_price("$ 12.500") == 12500
        assert extract_price("ARS 1.900,50") == 1900.5
        assert extract_price("ar$900") == 900

    def test_bare_number_only_when_allowed(self):
        assert extract_price("12.500") is None
        assert extract_price("12.500", allow_bare_number=True) == 12500

    def test_no_price(self):
        assert extract_price("Sin precio") is None
        assert extract_price("") is None

    def test_word_containing_ar_is_not_a_currency(self):
        assert extract_price("Sumar 2 unidades") is None

    def test_many_price_tokens_is_noise(self):
        raw = " ".join(f"Plato {i} $ {1000 + i}" for i in range(6))
        assert is_structural_noise(MenuCandidate(raw_text=raw))

    def test_reads_like_item(self):
        assert reads_like_item("Pizza Muzzarella $ 8.500")
        assert not reads_like_item("$ 8.500")
        assert not reads_like_item("ARS 8.500")
        assert not reads_like_item("Pizza Muzzarella")

    def test_nested_items_is_noise(self):
        assert is_structural_noise(MenuCandidate(raw_text="Combo $ 100", nested_item_count=4))
        assert not is_structural_noise(MenuCandidate(raw_text="Combo $ 100", nested_item_count=3))


class TestNameRules:
    def test_action_labels_are_not_names(self):
        assert not is_likely_menu_name("Agregar")
        assert not is_likely_menu_name("Ver más")
        assert not is_likely_menu_name("$ 1.900")
        assert not is_likely_menu_name("12")

    def test_action_tail_is_stripped(self):
        assert is_likely_menu_name("Pizza Fugazzeta Agregar")

    def test_field_name_wins(self):
        assert choose_menu_name("Pizza Fugazzeta", "x $ 100") == ("Pizza Fugazzeta", NameSource.FIELD)

    def test_prefix_before_price(self):
        name, source = choose_menu_name("Agregar", "Empanada de carne cortada a cuchillo $ 1.900 Masa casera.")
        assert name == "Empanada de carne cortada a cuchillo"
        assert source is NameSource.PRICE_PREFIX

    def test_prefix_stops_at_delimiter(self):
        name, _ = choose_menu_name("", "Lomito completo | Con papas $ 5.000")
        assert name == "Lomito completo"

    def test_leading_words_fallback(self):
        name, source = choose_menu_name("", "$ 100 uno dos tres cuatro cinco seis siete ocho nueve diez")
        assert source is NameSource.LEADING_WORDS
        assert len(name.split()) <= 9

    def test_custom_policy_threshold(self):
        strict = ExtractionPolicy(min_name_length=10)
        assert is_likely_menu_name("Fugazza")
        assert not is_likely_menu_name("Fugazza", strict)


class TestContamination:
    def test_description_removed_from_name(self):
        name = strip_contamination("Pizza Napolitana Tomate y ajo", "Tomate y ajo", "General")
        assert name == "Pizza Napolitana"

    def test_category_prefix_removed_when_two_words_remain(self):
        assert strip_contamination("Hamburguesas Burger Doble", "", "Hamburguesas") == "Burger Doble"

    def test_category_kept_when_it_is_part_of_a_short_name(self):
        assert strip_contamination("Pizza Muzzarella", "", "Pizza") == "Pizza Muzzarella"

    def test_long_name_cut_at_separator(self):
        name = "Combo Familiar - dos pizzas grandes con cuatro empanadas y una gaseosa de litro y medio"
        assert truncate_long_name(name) == "Combo Familiar"

    def test_short_name_untouched(self):
        assert truncate_long_name("Milanesa - napolitana") == "Milanesa - napolitana"


class TestSectionTitles:
    def test_name_equal_to_category(self):
        assert is_section_title_artifact("Pizzas", NameSource.FIELD, "PIZZAS", "", "Pizzas $ 100")

    def test_raw_prefix_without_description(self):
        assert is_section_title_artifact("Bebidas", NameSource.PRICE_PREFIX, "General", "", "Bebidas $ 900")

    def test_field_name_is_trusted(self):
        assert not is_section_title_artifact("Coca Cola", NameSource.FIELD, "Bebidas", "", "Coca Cola $ 900")

    def test_description_is_evidence_of_a_dish(self):
        assert not is_section_title_artifact(
            "Fugazza", NameSource.PRICE_PREFIX, "General", "Cebolla y queso", "Fugazza $ 900 Cebolla y queso"
        )


class TestCategory:
    def test_defaults(self):
        assert sanitize_category("") == "General"
        assert sanitize_category("$ 1.000") == "General"
        assert sanitize_category("x" * 65) == "General"
        assert sanitize_category("  Empanadas ") == "Empanadas"


class TestDescription:
    RAW = "Pizza Muzzarella $ 8.500 Salsa de tomate casera"

    def test_dedicated_field_wins(self):
        assert choose_description("Pizza Muzzarella", "Con aceitunas verdes", self.RAW) == "Con aceitunas verdes"

    def test_field_with_price_token_falls_back_to_raw_tail(self):
        assert choose_description("Pizza Muzzarella", "Grande $ 9.000", self.RAW) == "Salsa de tomate casera"

    def test_short_field_falls_back_to_raw_tail(self):
        assert choose_description("Pizza Muzzarella", "Rica", self.RAW) == "Salsa de tomate casera"

    def test_field_equal_to_name_falls_back_to_raw_tail(self):
        assert choose_description("Pizza Muzzarella", "pizza muzzarella", self.RAW) == "Salsa de tomate casera"

    def test_action_words_are_trimmed(self):
        assert choose_description("Faina", "Porción de faina Agregar", "") == "Porción de faina"

    def test_empty_when_nothing_qualifies(self):
        assert choose_description("Pizza Muzzarella", "", "Pizza Muzzarella sin precio") == ""
        assert choose_description("Pizza Muzzarella", "Rica", "Pizza Muzzarella $ 8.500 Top") == ""
        assert choose_description("Pizza Muzzarella", "", "Pizza Muzzarella $ 8.500") == ""


class TestParseCandidate:
    def test_structured_candidate(self, extractor):
        draft = extractor.parse_candidate(
            {
                "nameText": "Pizza Muzzarella",
                "descriptionText": "Salsa de tomate y muzzarella",
                "priceText": "$ 8.500",
                "categoryTitle": "Pizzas",
                "rawText": "Pizza Muzzarella Salsa de tomate y muzzarella $ 8.500",
            }
        )
        assert draft == MenuItemDraft(
            name="Pizza Muzzarella",
            description="Salsa de tomate y muzzarella",
            price=8500,
            category="Pizzas",
        )

    def test_raw_string_candidate(self, extractor):
        draft = extractor.parse_candidate("Empanada de carne cortada a cuchillo $ 1.900 Masa casera.")
        assert draft.name == "Empanada de carne cortada a cuchillo"
        assert draft.price == 1900
        assert draft.description == "Masa casera."
        assert draft.category == "General"

    def test_without_price_is_rejected(self, extractor):
        assert extractor.parse_candidate({"nameText": "Pizza", "rawText": "Pizza"}) is None

    def test_action_button_is_rejected(self, extractor):
        assert extractor.parse_candidate({"nameText": "Agregar", "rawText": "Agregar $"}) is None

    def test_section_header_is_rejected(self, extractor):
        candidate = {"nameText": "Pizzas", "categoryTitle": "Pizzas", "rawText": "Pizzas $ 8.500"}
        assert extractor.parse_candidate(candidate) is None

    def test_none_is_rejected(self, extractor):
        assert extractor.parse_candidate(None) is None


class TestBuildCatalog:
    def test_duplicates_merge_into_one_item(self, extractor):
        candidates = [
            MenuCandidate(name_text="Pizza Muzzarella", price_text="$ 8.500", raw_text="Pizza Muzzarella $ 8.500"),
            MenuCandidate(
                name_text="pizza  muzzarella",
                description_text="Con aceitunas",
                price_text="$ 8.500",
                category_title="Pizzas",
                raw_text="pizza muzzarella $ 8.500 Con aceitunas",
            ),
        ]
        catalog = extractor.build_catalog("Guber", RESTAURANT_URL, candidates)
        assert catalog.item_count == 1
        item = catalog.items[0]
        assert item.description == "Con aceitunas"
        assert item.category == "Pizzas"
        assert item.id == catalog_item_id(item.name, 8500)

    def test_fuzzy_merge_prefers_more_specific_name(self, extractor):
        candidates = [
            MenuCandidate(name_text="Milanesa Napolitana", price_text="$ 7.000", raw_text="Milanesa Napolitana $ 7.000"),
            MenuCandidate(
                name_text="Milanesa Napolitana con papas",
                price_text="$ 7.000",
                raw_text="Milanesa Napolitana con papas $ 7.000",
            ),
        ]
        catalog = extractor.build_catalog("Guber", RESTAURANT_URL, candidates)
        assert [item.name for item in catalog.items] == ["Milanesa Napolitana con papas"]
        assert catalog.items[0].id == "milanesa-napolitana-con-papas-7000"

    def test_different_prices_stay_separate(self, extractor):
        candidates = [
            MenuCandidate(name_text="Empanada Carne", price_text="$ 1.900", raw_text="Empanada Carne $ 1.900"),
            MenuCandidate(name_text="Empanada Carne", price_text="$ 2.100", raw_text="Empanada Carne $ 2.100"),
        ]
        catalog = extractor.build_catalog("Guber", RESTAURANT_URL, candidates)
        assert [item.id for item in catalog.items] == ["empanada-carne-1900", "empanada-carne-2100"]

    def test_ids_unique_and_order_preserved(self, extractor, menu_candidates):
        catalog = extractor.build_catalog("Guber", RESTAURANT_URL, menu_candidates)
        ids = [item.id for item in catalog.items]
        assert ids == ["pizza-muzzarella-8500", "empanada-carne-1900"]
        assert len(set(ids)) == len(ids)

    def test_serialization_round_trip_keeps_ids(self, extractor, menu_candidates):
        from rappi_order.models import MenuCatalog

        catalog = extractor.build_catalog(
            "Guber", RESTAURANT_URL, menu_candidates, scraped_at=datetime(2026, 1, 1, tzinfo=timezone.utc)
        )
        restored = MenuCatalog.model_validate(catalog.to_json_dict())
        assert restored == catalog
        assert restored.to_json_dict()["itemCount"] == 2

    def test_non_restaurant_url_is_blocked(self, extractor, menu_candidates):
        with pytest.raises(PolicyViolationError):
            extractor.build_catalog("Super", "https://www.rappi.com.ar/supermercados/1-coto", menu_candidates)

    def test_blocked_vertical_name(self, extractor, menu_candidates):
        with pytest.raises(PolicyViolationError, match="farmacia"):
            extractor.build_catalog("Farmacia Central", RESTAURANT_URL, menu_candidates)
