"""Text normalisation helpers shared by menu extraction, matching and search."""

from __future__ import annotations

import math
import re
import unicodedata

_WHITESPACE_RE = re.compile(r"\s+")
_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")
_NON_WORD_RE = re.compile(r"[^a-z0-9\s]")
_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def normalize_whitespace(value: object) -> str:
    """Collapse runs of whitespace and trim; ``None`` becomes ``""``."""
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def fold_diacritics(value: str) -> str:
    """Strip combining marks (``"Faína"`` -> ``"Faina"``)."""
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_name(value: object) -> str:
    """Case-folded, diacritic-free, whitespace-collapsed form of a name."""
    return normalize_whitespace(fold_diacritics(str(value or "")).lower())


def normalize_search_text(value: object) -> str:
    """Like :func:`normalize_name` but also replaces punctuation with spaces."""
    folded = fold_diacritics(str(value or "")).lower()
    return normalize_whitespace(_NON_WORD_RE.sub(" ", folded))


def slugify(value: object) -> str:
    """URL-safe slug: ``"Pizza Muzzarella (Grande)"`` -> ``"pizza-muzzarella-grande"``."""
    folded = fold_diacritics(str(value or "")).lower()
    return _NON_SLUG_RE.sub("-", folded).strip("-")


def text_to_number(value: object) -> float | None:
    """Parse an es-AR formatted amount (``"12.500,50"`` -> ``12500.5``)."""
    if not value:
        return None
    normalized = str(value).replace(".", "").replace(",", ".", 1)
    match = _NUMBER_RE.search(normalized)
    if not match:
        return None
    number = float(match.group(0))
    return int(number) if number.is_integer() else number


def round_price(value: float) -> int:
    """Round half up, independent of banker's rounding."""
    return int(math.floor(float(value) + 0.5))


def format_price(value: float | None) -> str:
    """Format a price the es-AR way with no decimals (``12500`` -> ``"12.500"``)."""
    return f"{round_price(value or 0):,}".replace(",", ".")


def word_count(value: str) -> int:
    return len(value.split())
