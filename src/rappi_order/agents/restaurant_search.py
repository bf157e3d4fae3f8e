"""Restaurant search specialist agent.

Turns raw restaurant link cards scraped from a search results page into a
filtered list of :class:`~rappi_order.models.Restaurant` entries ranked by
how well they match the user's query.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import urlencode, urljoin, urlsplit, urlunsplit

import structlog
from pydantic import BaseModel

from rappi_order.models import Restaurant, RestaurantCard
from rappi_order.policy import PolicyViolationError, assert_restaurant_url, is_allowed_vertical
from rappi_order.text import normalize_search_text, normalize_whitespace, text_to_number

if TYPE_CHECKING:
    from rappi_order.protocols.browser import BrowserCollaborator

logger = structlog.get_logger(__name__)

GENERIC_PATH_SEGMENTS = frozenset(
    {"delivery", "restaurant", "restaurantes", "search", "categoria", "categorias"}
)
STOPWORDS = frozenset(
    {"a", "al", "con", "de", "del", "el", "en", "la", "las", "los", "para", "por", "un", "una", "y"}
)
_REJECTED_NAME_HINTS = (
    "envio",
    "delivery",
    "calificacion",
    "rating",
    "pedido minimo",
    "desde",
    "agregar",
    "sumar",
    "ver mas",
)

_RATING_PATTERNS = (
    re.compile(r"(?:★|⭐|rating|calificaci[oó]n)\s*(\d(?:[.,]\d)?)", re.IGNORECASE),
    re.compile(r"(\d(?:[.,]\d)?)\s*(?:★|⭐)"),
)
_FREE_DELIVERY_RE = re.compile(r"(?:env[ií]o|delivery)\s+gratis", re.IGNORECASE)
_DELIVERY_FEE_PATTERNS = (
    re.compile(r"env[ií]o\s*(?:desde)?\s*\$\s*([0-9.,]+)", re.IGNORECASE),
    re.compile(r"delivery\s*(?:desde)?\s*\$\s*([0-9.,]+)", re.IGNORECASE),
    re.compile(r"\$\s*([0-9.,]+)\s*(?:env[ií]o|delivery)", re.IGNORECASE),
)
_ALPHA_RE = re.compile(r"[a-zA-ZÀ-ɏ]")
_CANDIDATE_SPLIT_RE = re.compile(r"[|·•]")
_BLOB_SPLIT_RE = re.compile(r"\s{2,}|[|·•]")

SNIPPET_MAX_LENGTH = 220


class RelevanceWeights(BaseModel):
    """Tuning parameters for query relevance scoring."""

    name_phrase: float = 120
    snippet_phrase: float = 45
    url_phrase: float = 30
    name_word: float = 30
    name_substring: float = 16
    snippet_word: float = 10
    snippet_substring: float = 4
    url_token: float = 6
    free_delivery_bonus: float = 1
    max_rating_bonus: float = 5
    intent_threshold: float = 70
    min_token_length: int = 3


def build_restaurants_search_url(base_url: str, query: str | None = None, city: str | None = None) -> str:
    url = urljoin(base_url, "/restaurantes")
    params = {key: value for key, value in (("query", query), ("city", city)) if value}
    return f"{url}?{urlencode(params)}" if params else url


# ---------------------------------------------------------------------------
# Card parsing
# ---------------------------------------------------------------------------


def is_restaurant_detail_path(pathname: str) -> bool:
    """True for ``/restaurantes/<slug>`` style paths, not listing pages."""
    path = (pathname or "").strip().lower().rstrip("/")
    if not path or path in ("/restaurantes", "/restaurant"):
        return False
    if not (path.startswith("/restaurantes/") or path.startswith("/restaurant/")):
        return False
    parts = [part for part in path.split("/") if part]
    return len(parts) >= 2 and parts[-1] not in GENERIC_PATH_SEGMENTS


def normalize_restaurant_url(href: str, base_url: str) -> str | None:
    """Resolve *href*, drop query and fragment, and keep only detail pages."""
    if not href:
        return None
    parts = urlsplit(urljoin(base_url, href))
    if not is_restaurant_detail_path(parts.path):
        return None
    try:
        return assert_restaurant_url(urlunsplit((parts.scheme, parts.netloc, parts.path, "", "")))
    except PolicyViolationError:
        return None


def parse_rating(text: str) -> float | None:
    for pattern in _RATING_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return text_to_number(match.group(1).replace(".", ","))
    return None


def parse_delivery_fee(text: str) -> float | None:
    source = text or ""
    if _FREE_DELIVERY_RE.search(source):
        return 0
    for pattern in _DELIVERY_FEE_PATTERNS:
        match = pattern.search(source)
        if match:
            return text_to_number(match.group(1))
    return None


def sanitize_restaurant_name(value: str) -> str:
    text = re.sub(r"[|·•]+", " ", normalize_whitespace(value))
    return re.sub(r"^\s*[-:]+\s*", "", text).strip()


def is_likely_restaurant_name(candidate: str) -> bool:
    if not candidate or len(candidate) < 3 or len(candidate) > 90:
        return False
    if any(char in candidate for char in "<>$"):
        return False
    if not _ALPHA_RE.search(candidate):
        return False
    normalized = normalize_search_text(candidate)
    return not any(hint in normalized for hint in _REJECTED_NAME_HINTS)


def derive_name_from_url(url: str) -> str:
    """``.../restaurantes/215137-guber-burgers`` -> ``"Guber Burgers"``."""
    segments = [part for part in urlsplit(url or "").path.split("/") if part]
    if not segments or segments[-1].lower() in GENERIC_PATH_SEGMENTS:
        return ""
    slug = re.sub(r"^\d+-", "", segments[-1]).replace("-", " ").strip()
    if not is_likely_restaurant_name(slug):
        return ""
    return " ".join(token[:1].upper() + token[1:] for token in slug.split(" "))


def pick_restaurant_name(card: RestaurantCard) -> str:
    """Name cascade: explicit candidates, short texts, anchor, blob, URL slug."""
    candidates: list[str] = []
    for value in [*card.name_candidates, *card.short_text, card.anchor_text]:
        clean = normalize_whitespace(value)
        if clean and clean not in candidates:
            candidates.append(clean)

    for candidate in candidates:
        for fragment in _CANDIDATE_SPLIT_RE.split(candidate):
            name = sanitize_restaurant_name(fragment)
            if is_likely_restaurant_name(name):
                return name
        name = sanitize_restaurant_name(candidate)
        if is_likely_restaurant_name(name):
            return name

    for segment in _BLOB_SPLIT_RE.split(card.text_blob or ""):
        name = sanitize_restaurant_name(segment)
        if is_likely_restaurant_name(name):
            return name

    return derive_name_from_url(card.href) or "Unknown restaurant"


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def _has_whole_word(text: str, token: str) -> bool:
    return bool(text and token and re.search(rf"\b{re.escape(token)}\b", text))


def query_tokens(query: str, weights: RelevanceWeights) -> tuple[str, list[str]]:
    normalized = normalize_search_text(query)
    tokens: list[str] = []
    for token in normalized.split():
        if len(token) >= weights.min_token_length and token not in STOPWORDS and token not in tokens:
            tokens.append(token)
    return normalized, tokens


def score_restaurant(
    restaurant: Restaurant,
    normalized_query: str,
    tokens: list[str],
    weights: RelevanceWeights,
) -> tuple[float, bool]:
    """Return ``(score, intent_match)`` for one restaurant."""
    if not normalized_query and not tokens:
        return 0.0, False

    name = normalize_search_text(restaurant.name)
    snippet = normalize_search_text(restaurant.snippet)
    url_path = normalize_search_text(urlsplit(restaurant.url).path.replace("/", " "))

    score = 0.0
    if normalized_query:
        if normalized_query in name:
            score += weights.name_phrase
        if normalized_query in snippet:
            score += weights.snippet_phrase
        if normalized_query in url_path:
            score += weights.url_phrase

    matched_tokens = 0
    for token in tokens:
        token_score = 0.0
        if _has_whole_word(name, token):
            token_score += weights.name_word
        elif token in name:
            token_score += weights.name_substring

        if _has_whole_word(snippet, token):
            token_score += weights.snippet_word
        elif token in snippet:
            token_score += weights.snippet_substring

        if token in url_path:
            token_score += weights.url_token

        if token_score > 0:
            matched_tokens += 1
            score += token_score

    if restaurant.rating is not None:
        score += max(0.0, min(restaurant.rating, weights.max_rating_bonus))
    if restaurant.delivery_fee == 0:
        score += weights.free_delivery_bonus

    return score, matched_tokens > 0 or score >= weights.intent_threshold


class RestaurantSearchAgent:
    """Parses, filters and ranks restaurant search results."""

    def __init__(self, base_url: str, weights: RelevanceWeights | None = None) -> None:
        self._base_url = base_url
        self._weights = weights or RelevanceWeights()

    def parse_cards(self, cards: list[RestaurantCard]) -> list[Restaurant]:
        """Deduplicate cards by URL and extract name, rating, fee and snippet."""
        by_url: dict[str, Restaurant] = {}
        for card in cards:
            url = normalize_restaurant_url(card.href, self._base_url)
            if url is None or url in by_url:
                continue
            snippet = normalize_whitespace(" ".join([card.text_blob, *card.short_text]))
            by_url[url] = Restaurant(
                name=pick_restaurant_name(card),
                url=url,
                rating=parse_rating(card.text_blob),
                delivery_fee=parse_delivery_fee(card.text_blob),
                snippet=snippet[:SNIPPET_MAX_LENGTH],
            )
        return list(by_url.values())

    def rank(self, restaurants: list[Restaurant], query: str | None) -> list[Restaurant]:
        """Sort by relevance; when any result matches the intent, drop the rest."""
        normalized, tokens = query_tokens(query or "", self._weights)
        scored = [
            (restaurant, *score_restaurant(restaurant, normalized, tokens, self._weights))
            for restaurant in restaurants
        ]
        if any(intent for _, _, intent in scored):
            scored = [entry for entry in scored if entry[2]]

        scored.sort(
            key=lambda entry: (
                -entry[1],
                -(entry[0].rating if entry[0].rating is not None else -1),
                entry[0].delivery_fee if entry[0].delivery_fee is not None else float("inf"),
                entry[0].name.lower(),
            )
        )
        return [restaurant for restaurant, _, _ in scored]

    def select(
        self,
        cards: list[RestaurantCard],
        query: str | None = None,
        max_results: int = 20,
        min_rating: float | None = None,
        delivery_fee_max: float | None = None,
    ) -> list[Restaurant]:
        """Full pipeline over already-scraped cards.

        Restaurants with an unknown rating or fee pass the corresponding
        filter.
        """
        results = [r for r in self.parse_cards(cards) if is_allowed_vertical(r.snippet)]
        if min_rating is not None:
            results = [r for r in results if r.rating is None or r.rating >= min_rating]
        if delivery_fee_max is not None:
            results = [r for r in results if r.delivery_fee is None or r.delivery_fee <= delivery_fee_max]

        ranked = self.rank(results, query)[:max_results]
        logger.info("restaurants_ranked", query=query, cards=len(cards), results=len(ranked))
        return ranked

    async def search(
        self,
        browser: BrowserCollaborator,
        query: str | None = None,
        city: str | None = None,
        max_results: int = 20,
        min_rating: float | None = None,
        delivery_fee_max: float | None = None,
    ) -> list[Restaurant]:
        search_url = build_restaurants_search_url(self._base_url, query, city)
        cards = await browser.fetch_restaurant_cards(search_url)
        return self.select(
            cards,
            query=query,
            max_results=max_results,
            min_rating=min_rating,
            delivery_fee_max=delivery_fee_max,
        )
