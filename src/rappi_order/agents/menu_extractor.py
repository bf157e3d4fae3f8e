"""Menu extraction specialist agent.

Turns noisy per-node text fragments scraped from a restaurant page into a
deduplicated :class:`~rappi_order.models.MenuCatalog`.

Each heuristic is a standalone predicate or transform taking an
:class:`ExtractionPolicy`, so the thresholds (tuned against the storefront's
current markup) can be overridden without touching the rules themselves.
:class:`MenuExtractor` composes them:

1. reject structural noise (containers of several items)
2. resolve the price (dedicated field, then raw text)
3. resolve the name (field -> text before price -> first words)
4. resolve category and description
5. reject section-title artifacts
6. strip description/category contamination from the name, trim long names
7. merge duplicates into a catalog keyed by normalised name + rounded price
"""

from __future__ import annotations

import enum
import re
from datetime import datetime, timezone
from typing import Any, Iterable

import structlog
from pydantic import BaseModel

from rappi_order.models import (
    MenuCandidate,
    MenuCatalog,
    MenuItem,
    MenuItemDraft,
    catalog_item_id,
)
from rappi_order.policy import assert_restaurant_url, assert_restaurant_vertical
from rappi_order.text import (
    fold_diacritics,
    normalize_name,
    normalize_whitespace,
    round_price,
    text_to_number,
    word_count,
)

logger = structlog.get_logger(__name__)

DEFAULT_CATEGORY = "General"

# "$ 12.500", "ARS 1.900,50", "ar$900"; period groups thousands, comma is decimal.
_CURRENCY_PRICE_RE = re.compile(r"(?:\$|\bars?\$?)\s*(\d[\d.\s]*(?:,\d{1,2})?)", re.IGNORECASE)
_PRICE_HINT_RE = re.compile(r"(?:\$|\bars?\$?)\s*\d", re.IGNORECASE)
_BARE_PRICE_RE = re.compile(r"^(\d[\d.\s]*(?:,\d{1,2})?)$")
_ALPHA_RE = re.compile(r"[a-zA-ZÀ-ɏ]")
_FRAGMENT_DELIMITER_RE = re.compile(r"[|·•]")
_LEADING_JUNK_RE = re.compile(r"^[\-:•·|\s]+")
_NAME_ACTION_TAIL_RE = re.compile(
    r"\b(?:agregar|añadir|anadir|sumar|personalizar|editar)\b.*$", re.IGNORECASE
)
_DESCRIPTION_ACTION_TAIL_RE = re.compile(r"\b(?:agregar|añadir|anadir|sumar)\b.*$", re.IGNORECASE)
_LONG_NAME_SEPARATOR_RE = re.compile(r"\s+-\s+|\s*[:–]\s*")
_EDGE_SEPARATORS = " -:|•·–,"


class ExtractionPolicy(BaseModel):
    """Empirically tuned thresholds for the extraction heuristics."""

    min_name_length: int = 3
    max_name_length: int = 96
    max_name_words: int = 12
    fallback_name_words: int = 9
    section_title_max_words: int = 4
    min_words_after_category_strip: int = 2
    max_price_tokens: int = 5
    max_nested_items: int = 3
    min_description_length: int = 6
    max_description_length: int = 180
    max_category_length: int = 64
    fuzzy_min_name_length: int = 8
    action_hints: tuple[str, ...] = (
        "agregar",
        "anadir",
        "sumar",
        "ver mas",
        "personalizar",
        "editar",
        "add",
        "customize",
        "see more",
    )


DEFAULT_POLICY = ExtractionPolicy()


class NameSource(str, enum.Enum):
    """Where a resolved name came from."""

    FIELD = "field"
    PRICE_PREFIX = "price_prefix"
    LEADING_WORDS = "leading_words"


# ---------------------------------------------------------------------------
# Price rules
# ---------------------------------------------------------------------------


def is_price_like(value: str) -> bool:
    """True when *value* contains a currency-tagged amount."""
    return bool(_PRICE_HINT_RE.search(value or ""))


def reads_like_item(value: str) -> bool:
    """True when *value* holds a currency amount and some name text beside it."""
    text = value or ""
    return is_price_like(text) and bool(_ALPHA_RE.search(_CURRENCY_PRICE_RE.sub(" ", text)))


def extract_price(value: str, allow_bare_number: bool = False) -> float | None:
    """Return the first currency-tagged amount in *value*.

    With *allow_bare_number*, a field that is nothing but a number
    (``"12.500"``) is accepted too; that only makes sense for a dedicated
    price field.
    """
    text = normalize_whitespace(value)
    if not text:
        return None

    match = _CURRENCY_PRICE_RE.search(text)
    if match:
        return text_to_number(match.group(1))

    if not allow_bare_number:
        return None

    bare = _BARE_PRICE_RE.match(text)
    return text_to_number(bare.group(1)) if bare else None


def distinct_price_tokens(value: str) -> set[float]:
    """Distinct amounts of every currency-tagged token in *value*."""
    amounts: set[float] = set()
    for match in _CURRENCY_PRICE_RE.finditer(value or ""):
        amount = text_to_number(match.group(1))
        if amount is not None:
            amounts.add(amount)
    return amounts


def is_structural_noise(candidate: MenuCandidate, policy: ExtractionPolicy = DEFAULT_POLICY) -> bool:
    """A node holding several prices or item sub-nodes is a container, not a dish."""
    if candidate.nested_item_count > policy.max_nested_items:
        return True
    return len(distinct_price_tokens(candidate.raw_text)) > policy.max_price_tokens


# ---------------------------------------------------------------------------
# Name rules
# ---------------------------------------------------------------------------


def sanitize_menu_name(value: str) -> str:
    text = _LEADING_JUNK_RE.sub("", normalize_whitespace(value))
    text = _NAME_ACTION_TAIL_RE.sub("", text)
    return normalize_whitespace(text)


def has_action_hint(value: str, policy: ExtractionPolicy = DEFAULT_POLICY) -> bool:
    folded = fold_diacritics(value).lower()
    return any(re.search(rf"\b{re.escape(hint)}\b", folded) for hint in policy.action_hints)


def is_likely_menu_name(value: str, policy: ExtractionPolicy = DEFAULT_POLICY) -> bool:
    """Reject UI affordances, prices and fragments that cannot be dish names."""
    text = sanitize_menu_name(value)
    if not text or len(text) < policy.min_name_length or len(text) > policy.max_name_length:
        return False
    if "$" in text or not _ALPHA_RE.search(text):
        return False
    return not has_action_hint(text, policy)


def choose_menu_name(
    name_text: str,
    raw_text: str,
    policy: ExtractionPolicy = DEFAULT_POLICY,
) -> tuple[str, NameSource]:
    """Resolve a name; the first source passing the name filter wins."""
    if is_likely_menu_name(name_text, policy):
        return sanitize_menu_name(name_text), NameSource.FIELD

    price_match = _CURRENCY_PRICE_RE.search(raw_text)
    before_price = raw_text[: price_match.start()].strip() if price_match else raw_text
    prefix = sanitize_menu_name(_FRAGMENT_DELIMITER_RE.split(before_price)[0])
    if is_likely_menu_name(prefix, policy):
        return prefix, NameSource.PRICE_PREFIX

    words = _FRAGMENT_DELIMITER_RE.split(raw_text)[0].split(" ")[: policy.fallback_name_words]
    return sanitize_menu_name(" ".join(words)), NameSource.LEADING_WORDS


def _remove_fragment(text: str, fragment: str) -> str:
    cleaned = re.sub(re.escape(fragment), " ", text, count=1, flags=re.IGNORECASE)
    return normalize_whitespace(cleaned).strip(_EDGE_SEPARATORS)


def strip_contamination(
    name: str,
    description: str,
    category: str,
    policy: ExtractionPolicy = DEFAULT_POLICY,
) -> str:
    """Remove description or category text glued onto the name.

    Structured extraction sometimes concatenates adjacent text nodes, so a
    name can arrive as ``"Hamburguesas Burger Doble Medallon smash x2"``.
    A strip only applies when what is left is still a plausible name.
    """
    result = name
    if description and len(description) < len(result) and description.lower() in result.lower():
        cleaned = _remove_fragment(result, description)
        if is_likely_menu_name(cleaned, policy):
            result = cleaned

    if (
        category
        and category != DEFAULT_CATEGORY
        and len(category) < len(result)
        and re.search(rf"\b{re.escape(category.lower())}\b", result.lower())
    ):
        cleaned = _remove_fragment(result, category)
        if (
            is_likely_menu_name(cleaned, policy)
            and word_count(cleaned) >= policy.min_words_after_category_strip
        ):
            result = cleaned

    return result


def truncate_long_name(name: str, policy: ExtractionPolicy = DEFAULT_POLICY) -> str:
    """Cut an overlong name at its first hyphen, colon or en-dash."""
    if word_count(name) <= policy.max_name_words:
        return name
    head = _LONG_NAME_SEPARATOR_RE.split(name, maxsplit=1)[0].strip(_EDGE_SEPARATORS)
    if head and is_likely_menu_name(head, policy):
        return head
    return name


def is_section_title_artifact(
    name: str,
    source: NameSource,
    category: str,
    description: str,
    raw_text: str,
    policy: ExtractionPolicy = DEFAULT_POLICY,
) -> bool:
    """Detect a grouping header that slipped through as a dish."""
    normalized = normalize_name(name)
    if normalized == normalize_name(category):
        return True

    return (
        source is not NameSource.FIELD
        and word_count(name) <= policy.section_title_max_words
        and not description
        and normalize_name(raw_text).startswith(normalized)
    )


# ---------------------------------------------------------------------------
# Description / category rules
# ---------------------------------------------------------------------------


def sanitize_description(value: str, policy: ExtractionPolicy = DEFAULT_POLICY) -> str:
    text = _DESCRIPTION_ACTION_TAIL_RE.sub("", normalize_whitespace(value))
    return text[: policy.max_description_length].strip()


def is_likely_description(value: str, name: str, policy: ExtractionPolicy = DEFAULT_POLICY) -> bool:
    if not value or len(value) < policy.min_description_length:
        return False
    if value.lower() == (name or "").lower():
        return False
    if not _ALPHA_RE.search(value):
        return False
    return not is_price_like(value)


def choose_description(
    name: str,
    description_text: str,
    raw_text: str,
    policy: ExtractionPolicy = DEFAULT_POLICY,
) -> str:
    """Dedicated field first, then the raw text after the price, else empty."""
    cleaned_name = sanitize_menu_name(name)
    cleaned = sanitize_description(description_text, policy)
    if is_likely_description(cleaned, cleaned_name, policy):
        return cleaned

    price_match = _CURRENCY_PRICE_RE.search(raw_text)
    if not price_match:
        return ""

    tail = sanitize_description(raw_text[price_match.end():], policy)
    return tail if is_likely_description(tail, cleaned_name, policy) else ""


def sanitize_category(value: str, policy: ExtractionPolicy = DEFAULT_POLICY) -> str:
    category = normalize_whitespace(value)
    if not category or len(category) > policy.max_category_length or is_price_like(category):
        return DEFAULT_CATEGORY
    return category


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


def _coerce_candidate(candidate: Any) -> MenuCandidate | None:
    if candidate is None:
        return None
    if isinstance(candidate, MenuCandidate):
        source = candidate
    elif isinstance(candidate, str):
        source = MenuCandidate(raw_text=candidate)
    else:
        source = MenuCandidate.model_validate(candidate)

    return MenuCandidate(
        name_text=normalize_whitespace(source.name_text),
        description_text=normalize_whitespace(source.description_text),
        price_text=normalize_whitespace(source.price_text),
        category_title=normalize_whitespace(source.category_title),
        raw_text=normalize_whitespace(source.raw_text),
        nested_item_count=source.nested_item_count,
    )


class MenuExtractor:
    """Classifies menu candidates and builds deduplicated catalogs."""

    def __init__(self, policy: ExtractionPolicy | None = None) -> None:
        self._policy = policy or DEFAULT_POLICY

    @property
    def policy(self) -> ExtractionPolicy:
        return self._policy

    def parse_candidate(self, candidate: MenuCandidate | dict[str, Any] | str | None) -> MenuItemDraft | None:
        """Classify one candidate; ``None`` means "not a dish"."""
        policy = self._policy
        fields = _coerce_candidate(candidate)
        if fields is None:
            return None

        if is_structural_noise(fields, policy):
            return None

        price = extract_price(fields.price_text, allow_bare_number=True)
        if price is None:
            price = extract_price(fields.raw_text)
        if price is None or price < 0:
            return None

        name, source = choose_menu_name(fields.name_text, fields.raw_text, policy)
        if not is_likely_menu_name(name, policy):
            return None

        category = sanitize_category(fields.category_title, policy)
        description = choose_description(name, fields.description_text, fields.raw_text, policy)

        if is_section_title_artifact(name, source, category, description, fields.raw_text, policy):
            return None

        name = strip_contamination(name, description, category, policy)
        name = truncate_long_name(name, policy)

        return MenuItemDraft(name=name, description=description, price=price, category=category)

    def build_catalog(
        self,
        restaurant_name: str,
        restaurant_url: str,
        candidates: Iterable[MenuCandidate | dict[str, Any] | str],
        scraped_at: datetime | None = None,
    ) -> MenuCatalog:
        """Classify every candidate and merge duplicates into a catalog.

        Raises
        ------
        PolicyViolationError
            If the URL is not a restaurant page or the restaurant name
            reveals a blocked vertical.
        """
        safe_url = assert_restaurant_url(restaurant_url)
        name = normalize_whitespace(restaurant_name) or "Unknown restaurant"
        assert_restaurant_vertical(name)

        entries: list[MenuItemDraft] = []
        total = 0
        accepted = 0
        for candidate in candidates:
            total += 1
            draft = self.parse_candidate(candidate)
            if draft is None:
                continue
            accepted += 1
            self._insert(entries, draft)

        items = [
            MenuItem(
                id=catalog_item_id(entry.name, entry.price),
                name=entry.name,
                description=entry.description,
                price=entry.price,
                category=entry.category,
            )
            for entry in entries
        ]

        logger.info(
            "menu_catalog_built",
            restaurant=name,
            candidates=total,
            accepted=accepted,
            items=len(items),
        )
        return MenuCatalog(
            restaurant_name=name,
            restaurant_url=safe_url,
            scraped_at=scraped_at or datetime.now(tz=timezone.utc),
            items=items,
        )

    # ------------------------------------------------------------------
    # Deduplication
    # ------------------------------------------------------------------

    @staticmethod
    def dedup_key(draft: MenuItemDraft) -> tuple[str, int]:
        return normalize_name(draft.name), round_price(draft.price)

    def _find_match(self, entries: list[MenuItemDraft], draft: MenuItemDraft) -> int | None:
        key = self.dedup_key(draft)
        draft_id = catalog_item_id(draft.name, draft.price)
        for index, entry in enumerate(entries):
            if self.dedup_key(entry) == key or catalog_item_id(entry.name, entry.price) == draft_id:
                return index

        name, price = key
        min_length = self._policy.fuzzy_min_name_length
        for index, entry in enumerate(entries):
            entry_name, entry_price = self.dedup_key(entry)
            if entry_price != price:
                continue
            if entry_name == name:
                return index
            if len(entry_name) >= min_length and len(name) >= min_length:
                if entry_name in name or name in entry_name:
                    return index
        return None

    def _insert(
        self,
        entries: list[MenuItemDraft],
        draft: MenuItemDraft,
        position: int | None = None,
    ) -> None:
        index = self._find_match(entries, draft)
        if index is None:
            if position is None:
                entries.append(draft)
            else:
                entries.insert(position, draft)
            return

        existing = entries.pop(index)
        merged = self.merge(existing, draft)
        # The merged name may now collide with another entry; keep merging.
        self._insert(entries, merged, index if position is None else min(index, position))

    @staticmethod
    def merge(existing: MenuItemDraft, incoming: MenuItemDraft) -> MenuItemDraft:
        """Combine two renderings of the same dish."""
        existing_norm = normalize_name(existing.name)
        incoming_norm = normalize_name(incoming.name)
        if existing_norm == incoming_norm:
            name = incoming.name if len(incoming.name) < len(existing.name) else existing.name
        elif existing_norm in incoming_norm:
            name = incoming.name
        else:
            name = existing.name

        category = existing.category
        if category == DEFAULT_CATEGORY and incoming.category != DEFAULT_CATEGORY:
            category = incoming.category

        return MenuItemDraft(
            name=name,
            description=existing.description or incoming.description,
            price=existing.price,
            category=category,
        )
