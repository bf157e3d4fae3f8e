"""Tests for order template parsing."""

import json

import pytest

from rappi_order.order.template_parser import (
    TemplateSyntaxError,
    UnsupportedTemplateFormat,
    parse_order_file,
    parse_order_text,
    parse_scalar,
    parse_template,
    render_template,
    strip_comment,
)

ORDER_YAML = """\
# weekly order
restaurantUrl: https://www.rappi.com.ar/restaurantes/215137-guber
items:
  - name: Pizza Muzzarella  # large
    quantity: 2
    notes: "sin aceitunas # por favor"
  - name: Faina
"""


class TestScalars:
    def test_numbers_and_literals(self):
        assert parse_scalar("2") == 2
        assert parse_scalar("-3") == -3
        assert parse_scalar("1.5") == 1.5
        assert parse_scalar("true") is True
        assert parse_scalar("false") is False
        assert parse_scalar("null") is None

    def test_quoted_strings_unwrap(self):
        assert parse_scalar('"12"') == "12"
        assert parse_scalar("'true'") == "true"

    def test_plain_text_stays_text(self):
        assert parse_scalar("Pizza Muzzarella") == "Pizza Muzzarella"

    def test_comment_inside_quotes_is_kept(self):
        assert strip_comment('notes: "a # b"  # real').rstrip() == 'notes: "a # b"'

    def test_doubled_apostrophe_inside_single_quotes(self):
        assert parse_scalar("'it''s'") == "it's"
        line = "notes: 'it''s #1'  # real"
        assert strip_comment(line).rstrip() == "notes: 'it''s #1'"

    def test_hash_inside_word_is_not_a_comment(self):
        assert strip_comment("name: Combo#2") == "name: Combo#2"


class TestParseTemplate:
    def test_order_document(self):
        tree = parse_template(ORDER_YAML)
        assert tree == {
            "restaurantUrl": "https://www.rappi.com.ar/restaurantes/215137-guber",
            "items": [
                {"name": "Pizza Muzzarella", "quantity": 2, "notes": "sin aceitunas # por favor"},
                {"name": "Faina"},
            ],
        }

    def test_sequence_at_key_column(self):
        text = "items:\n- name: Faina\n- name: Fugazza\ncurrency: ARS\n"
        assert parse_template(text) == {
            "items": [{"name": "Faina"}, {"name": "Fugazza"}],
            "currency": "ARS",
        }

    def test_four_space_indent_is_inferred(self):
        text = "items:\n    - name: Faina\n      quantity: 3\n"
        assert parse_template(text) == {"items": [{"name": "Faina", "quantity": 3}]}

    def test_nested_mapping(self):
        text = "restaurant:\n  name: Guber\n  address:\n    city: CABA\n"
        assert parse_template(text) == {"restaurant": {"name": "Guber", "address": {"city": "CABA"}}}

    def test_scalar_sequence(self):
        assert parse_template("tags:\n  - veggie\n  - 2\n") == {"tags": ["veggie", 2]}

    def test_empty_document(self):
        assert parse_template("# nothing here\n\n") == {}

    def test_inconsistent_indentation_fails(self):
        text = "items:\n  - name: Faina\n    quantity: 1\nrestaurant:\n   name: Guber\n"
        with pytest.raises(TemplateSyntaxError, match="line 5"):
            parse_template(text)

    def test_line_without_colon_fails(self):
        with pytest.raises(TemplateSyntaxError, match="line 2"):
            parse_template("currency: ARS\njust some text\n")

    def test_tab_indentation_fails(self):
        with pytest.raises(TemplateSyntaxError, match="Tabs"):
            parse_template("items:\n\t- name: Faina\n")

    def test_duplicate_key_fails(self):
        with pytest.raises(TemplateSyntaxError, match="Duplicate key 'currency'"):
            parse_template("currency: ARS\ncurrency: USD\n")


class TestRoundTrip:
    def test_render_then_parse_is_identity(self):
        tree = parse_template(ORDER_YAML)
        assert parse_template(render_template(tree)) == tree

    def test_both_quote_kinds_survive(self):
        tree = {"items": [{"name": "Pizza", "notes": 'it\'s #1 "big"'}, {"name": "O'Hara's #2"}]}
        rendered = render_template(tree)
        assert "notes: 'it''s #1 \"big\"'" in rendered
        assert parse_template(rendered) == tree

    def test_ambiguous_strings_are_quoted(self):
        tree = {"items": [{"name": "true", "notes": "12"}, {"name": "a: b"}]}
        assert parse_template(render_template(tree)) == tree

    def test_render_is_stable(self):
        rendered = render_template(parse_template(ORDER_YAML))
        assert render_template(parse_template(rendered)) == rendered


class TestFileAdapter:
    def test_yaml_file(self, tmp_path):
        path = tmp_path / "order.yaml"
        path.write_text(ORDER_YAML, encoding="utf-8")
        assert parse_order_file(path)["items"][1] == {"name": "Faina"}

    def test_yml_extension(self, tmp_path):
        path = tmp_path / "order.YML"
        path.write_text("items:\n  - name: Faina\n", encoding="utf-8")
        assert parse_order_file(path) == {"items": [{"name": "Faina"}]}

    def test_json_file(self, tmp_path):
        path = tmp_path / "order.json"
        path.write_text(json.dumps({"items": [{"name": "Faina", "quantity": 1}]}), encoding="utf-8")
        assert parse_order_file(path) == {"items": [{"name": "Faina", "quantity": 1}]}

    def test_unknown_extension_fails(self, tmp_path):
        path = tmp_path / "order.txt"
        path.write_text("items: []", encoding="utf-8")
        with pytest.raises(UnsupportedTemplateFormat, match=".txt"):
            parse_order_file(path)

    def test_unknown_text_format_fails(self):
        with pytest.raises(UnsupportedTemplateFormat):
            parse_order_text("{}", "toml")
