"""Order template parsing.

Order templates are JSON or a restricted indentation-based subset of YAML:
nested maps and sequences plus scalars, nothing else (no anchors, block
scalars, flow collections or multi-document files). The indentation step is
inferred from the first nested line of the document, then every deeper level
must be exactly one step further in.

Example::

    restaurantUrl: https://www.rappi.com.ar/restaurantes/demo
    items:
      - name: Pizza Muzzarella  # large
        quantity: 2
      - name: Empanada
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_KEY_VALUE_RE = re.compile(r"^([^\s:#\-'\"][^:]*?|-[^\s:][^:]*?)\s*:(?:\s+(.*))?$")
_INT_RE = re.compile(r"^[-+]?\d+$")
_FLOAT_RE = re.compile(r"^[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?$")
_PLAIN_SAFE_RE = re.compile(r"^[^\s'\"#\-:][^#]*$")

JSON_EXTENSIONS = (".json",)
YAML_EXTENSIONS = (".yaml", ".yml")


class TemplateSyntaxError(ValueError):
    """Raised when a template has invalid indentation or key/value shape."""


class UnsupportedTemplateFormat(ValueError):
    """Raised when a template file extension is neither JSON nor YAML."""


@dataclass(frozen=True)
class _Line:
    number: int
    indent: int
    text: str


# ---------------------------------------------------------------------------
# Lexing
# ---------------------------------------------------------------------------


def strip_comment(line: str) -> str:
    """Drop a ``#`` comment unless the ``#`` sits inside a quoted scalar.

    Inside single quotes a doubled ``''`` is an escaped apostrophe.
    """
    quote: str | None = None
    index = 0
    while index < len(line):
        char = line[index]
        if quote:
            if char == quote == "'" and line[index + 1 : index + 2] == "'":
                index += 1
            elif char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "#" and (index == 0 or line[index - 1].isspace()):
            return line[:index]
        index += 1
    return line


def _count_indent(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _tokenize(text: str) -> list[_Line]:
    lines: list[_Line] = []
    for number, raw in enumerate(text.splitlines(), start=1):
        leading = raw[: len(raw) - len(raw.lstrip())]
        if "\t" in leading:
            raise TemplateSyntaxError(f"Tabs are not allowed for indentation (line {number})")
        stripped = strip_comment(raw).rstrip()
        if not stripped.strip():
            continue
        lines.append(_Line(number=number, indent=_count_indent(stripped), text=stripped.strip()))
    return lines


def _is_sequence_entry(text: str) -> bool:
    return text == "-" or text.startswith("- ")


def _split_key_value(text: str) -> tuple[str, str | None] | None:
    match = _KEY_VALUE_RE.match(text)
    if not match:
        return None
    key = match.group(1).strip()
    value = (match.group(2) or "").strip()
    return key, value or None


def parse_scalar(value: str) -> Any:
    """Coerce a scalar token: quotes unwrap, literals and numbers convert."""
    token = value.strip()
    if len(token) >= 2 and token[0] == token[-1] == '"':
        return token[1:-1]
    if len(token) >= 2 and token[0] == token[-1] == "'":
        return token[1:-1].replace("''", "'")
    if token == "true":
        return True
    if token == "false":
        return False
    if token == "null":
        return None
    if _INT_RE.match(token):
        return int(token)
    if _FLOAT_RE.match(token):
        return float(token)
    return token


# ---------------------------------------------------------------------------
# Recursive descent
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, lines: list[_Line]) -> None:
        self._lines = lines
        self._index = 0
        self._step: int | None = None

    def parse(self) -> Any:
        if not self._lines:
            return {}
        root = self._lines[0]
        tree = self._parse_node(root.indent)
        if self._index < len(self._lines):
            line = self._lines[self._index]
            raise TemplateSyntaxError(f"Unexpected content at line {line.number}: {line.text}")
        return tree

    def _peek(self) -> _Line | None:
        if self._index < len(self._lines):
            return self._lines[self._index]
        return None

    def _parse_child(self, parent_indent: int, keyed: bool = False) -> Any:
        """Parse the block nested under a key or dash with no inline value."""
        line = self._peek()
        if line is None or line.indent < parent_indent:
            return None
        if line.indent == parent_indent:
            # "key:" followed by "- item" at the same column is a sequence value.
            if keyed and _is_sequence_entry(line.text):
                return self._parse_sequence(parent_indent)
            return None

        if self._step is None:
            self._step = line.indent - parent_indent
        expected = parent_indent + self._step
        if line.indent != expected:
            raise TemplateSyntaxError(
                f"Invalid indentation at line {line.number}: expected {expected} spaces, "
                f"found {line.indent}"
            )
        return self._parse_node(expected)

    def _parse_node(self, indent: int) -> Any:
        line = self._peek()
        if line is None or line.indent < indent:
            return None
        if _is_sequence_entry(line.text):
            return self._parse_sequence(indent)
        return self._parse_mapping(indent)

    def _parse_sequence(self, indent: int) -> list[Any]:
        items: list[Any] = []
        while (line := self._peek()) is not None:
            if line.indent < indent:
                break
            if line.indent > indent:
                raise TemplateSyntaxError(f"Invalid indentation at line {line.number}: {line.text}")
            if not _is_sequence_entry(line.text):
                break

            self._index += 1
            payload = line.text[1:].lstrip()
            if not payload:
                items.append(self._parse_child(indent))
                continue

            pair = _split_key_value(payload)
            if pair is None:
                items.append(parse_scalar(payload))
                continue

            # Keys of an inline mapping item align with the text after the dash.
            column = indent + (len(line.text) - len(payload))
            item: dict[str, Any] = {}
            self._assign(item, pair, column, line)
            self._parse_mapping_into(item, column)
            items.append(item)
        return items

    def _parse_mapping(self, indent: int) -> dict[str, Any]:
        mapping: dict[str, Any] = {}
        self._parse_mapping_into(mapping, indent)
        return mapping

    def _parse_mapping_into(self, mapping: dict[str, Any], indent: int) -> None:
        while (line := self._peek()) is not None:
            if line.indent < indent:
                break
            if line.indent > indent:
                raise TemplateSyntaxError(f"Invalid indentation at line {line.number}: {line.text}")
            if _is_sequence_entry(line.text):
                break
            pair = _split_key_value(line.text)
            if pair is None:
                raise TemplateSyntaxError(f"Invalid key/value line {line.number}: {line.text}")
            self._index += 1
            self._assign(mapping, pair, indent, line)

    def _assign(self, mapping: dict[str, Any], pair: tuple[str, str | None], indent: int, line: _Line) -> None:
        key, value = pair
        if key in mapping:
            raise TemplateSyntaxError(f"Duplicate key '{key}' at line {line.number}")
        mapping[key] = self._parse_child(indent, keyed=True) if value is None else parse_scalar(value)


def parse_template(text: str) -> Any:
    """Parse restricted-YAML *text* into plain dicts, lists and scalars.

    Raises
    ------
    TemplateSyntaxError
        On inconsistent indentation or a line that is not ``key: value``.
    """
    return _Parser(_tokenize(text)).parse()


# ---------------------------------------------------------------------------
# Rendering (inverse of parse_template for canonical trees)
# ---------------------------------------------------------------------------


def _render_scalar(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (int, float)):
        return repr(value)

    text = str(value)
    plain = (
        bool(_PLAIN_SAFE_RE.match(text))
        and text == text.strip()
        and ": " not in text
        and not text.endswith(":")
        and parse_scalar(text) == text
    )
    if plain:
        return text
    if '"' in text:
        escaped = text.replace("'", "''")
        return f"'{escaped}'"
    return f'"{text}"'


def _render_lines(value: Any, indent: int, step: int) -> list[str]:
    pad = " " * indent
    lines: list[str] = []
    if isinstance(value, dict):
        for key, child in value.items():
            if isinstance(child, (dict, list)) and child:
                lines.append(f"{pad}{key}:")
                lines.extend(_render_lines(child, indent + step, step))
            else:
                lines.append(f"{pad}{key}: {_render_scalar(child if child not in ({}, []) else None)}")
        return lines

    for child in value:
        if isinstance(child, dict) and child:
            nested = _render_lines(child, indent + 2, step)
            lines.append(f"{pad}- {nested[0].lstrip()}")
            lines.extend(nested[1:])
        elif isinstance(child, list) and child:
            lines.append(f"{pad}-")
            lines.extend(_render_lines(child, indent + step, step))
        else:
            lines.append(f"{pad}- {_render_scalar(child)}")
    return lines


def render_template(tree: dict[str, Any] | list[Any], step: int = 2) -> str:
    """Serialise a tree back into the restricted YAML subset."""
    return "\n".join(_render_lines(tree, 0, step)) + "\n"


# ---------------------------------------------------------------------------
# File adapter
# ---------------------------------------------------------------------------


def parse_order_text(text: str, fmt: str) -> Any:
    """Parse *text* as ``"json"`` or ``"yaml"``."""
    if fmt == "json":
        return json.loads(text)
    if fmt == "yaml":
        return parse_template(text)
    raise UnsupportedTemplateFormat(f"Unsupported order format: {fmt}. Use json or yaml")


def parse_order_file(path: str | Path) -> Any:
    """Load an order template file, choosing the parser by extension."""
    file_path = Path(path)
    ext = file_path.suffix.lower()
    if ext in JSON_EXTENSIONS:
        fmt = "json"
    elif ext in YAML_EXTENSIONS:
        fmt = "yaml"
    else:
        raise UnsupportedTemplateFormat(
            f"Unsupported order file extension: {ext or '(none)'}. Use .json, .yaml or .yml"
        )

    tree = parse_order_text(file_path.read_text(encoding="utf-8"), fmt)
    logger.debug("order_file_parsed", path=str(file_path), format=fmt)
    return tree
