"""Operating policy: restaurant vertical only, real purchases disabled.

Violations raise :class:`PolicyViolationError` and abort the whole operation,
because they mean the tool is about to act outside its sanctioned scope.
"""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

import structlog

logger = structlog.get_logger(__name__)

REAL_PURCHASES_DISABLED = True

ALLOWED_HOST = "rappi.com.ar"
RESTAURANT_PATH_HINTS = ("/restaurantes", "/restaurant")
BLOCKED_VERTICAL_KEYWORDS = ("supermercado", "farmacia", "turbo", "licores", "express")


class PolicyViolationError(Exception):
    """Raised when an operation would leave the restaurant-only scope."""


def assert_restaurant_url(url: str) -> str:
    """Validate *url* as a restaurant page on the allowed storefront.

    Returns the normalised URL string.
    """
    raw = str(url or "").strip()
    parts = urlsplit(raw)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise PolicyViolationError(f"Invalid URL: {raw}")

    host = parts.hostname
    if host != ALLOWED_HOST and not host.endswith("." + ALLOWED_HOST):
        raise PolicyViolationError("Only https://www.rappi.com.ar restaurant URLs are allowed.")

    path = parts.path.lower()
    if not any(hint in path for hint in RESTAURANT_PATH_HINTS):
        logger.warning("policy_blocked_url", url=raw)
        raise PolicyViolationError(
            "Only restaurant URLs are supported. Supermarket/pharmacy/other verticals are blocked."
        )

    return urlunsplit((parts.scheme, parts.netloc.lower(), parts.path or "/", parts.query, parts.fragment))


def assert_restaurant_vertical(text: str) -> None:
    """Reject scraped text that names a non-restaurant vertical."""
    low = str(text or "").lower()
    for keyword in BLOCKED_VERTICAL_KEYWORDS:
        if keyword in low:
            logger.warning("policy_blocked_vertical", keyword=keyword)
            raise PolicyViolationError(
                f"Blocked vertical detected: {keyword}. Only restaurants are supported."
            )


def is_allowed_vertical(text: str) -> bool:
    try:
        assert_restaurant_vertical(text)
    except PolicyViolationError:
        return False
    return True
