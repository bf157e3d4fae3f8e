"""Browser collaborator.

The ordering core never queries the DOM itself. It talks to a
:class:`BrowserCollaborator`, which hands back already-extracted text
fragments and payment outcomes. :class:`PlaywrightBrowser` is the production
implementation, driving Chromium with a stored login session.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Protocol
from urllib.parse import urljoin

import structlog
from playwright.async_api import BrowserContext, Error as PlaywrightError, Page, async_playwright

from rappi_order.agents.menu_extractor import reads_like_item
from rappi_order.models import MenuCandidate, MenuScrape, PaymentAttempt, RestaurantCard
from rappi_order.policy import assert_restaurant_url, assert_restaurant_vertical

logger = structlog.get_logger(__name__)

LOCALE = "es-AR"
PLACE_ORDER_SELECTOR = "[data-qa='place-order-button']"
RESTAURANT_LINK_SELECTOR = 'a[href*="/restaurantes/"], a[href*="/restaurant/"]'
RESTAURANT_NAME_SELECTOR = 'h1, [data-testid*="store-name"], [data-qa*="store-name"]'

MENU_READY_SELECTORS = [
    '[data-testid*="product"]',
    '[data-testid*="menu-item"]',
    '[data-qa*="product"]',
    '[data-qa*="menu-item"]',
    "section h2",
    "h1",
]
MENU_ITEM_SELECTORS = [
    '[data-testid*="product-card"]',
    '[data-testid*="product"]',
    '[data-testid*="menu-item"]',
    '[data-testid*="dish"]',
    '[data-qa*="product"]',
    '[data-qa*="menu-item"]',
    '[data-qa*="dish"]',
    "article[data-testid]",
    'li[data-testid*="product"]',
    '[role="listitem"]',
]
MENU_NAME_SELECTORS = [
    '[data-testid*="product-name"]',
    '[data-testid*="menu-item-name"]',
    '[data-testid*="name"]',
    '[data-qa*="product-name"]',
    '[data-qa*="menu-item-name"]',
    '[data-qa*="name"]',
    "h3",
    "h2",
    '[role="heading"]',
    "strong",
]
MENU_DESCRIPTION_SELECTORS = ['[data-testid*="description"]', '[data-qa*="description"]', "p"]
MENU_PRICE_SELECTORS = [
    '[data-testid*="price"]',
    '[data-testid*="amount"]',
    '[data-qa*="price"]',
    '[data-qa*="amount"]',
    "span",
    "p",
    "div",
]
# Test-id hooks on the fields of a single card; never whole items themselves.
FIELD_NODE_SELECTORS = [
    '[data-testid*="name"]',
    '[data-testid*="price"]',
    '[data-testid*="amount"]',
    '[data-testid*="description"]',
    '[data-testid*="image"]',
    '[data-qa*="name"]',
    '[data-qa*="price"]',
    '[data-qa*="amount"]',
    '[data-qa*="description"]',
    '[data-qa*="image"]',
]
MENU_SECTION_SELECTOR = '[data-testid*="section"], [data-qa*="section"], section'
CATEGORY_TITLE_SELECTOR = 'h2, h3, [role="heading"], [data-testid*="title"], [data-qa*="title"]'

# Stop scrolling once this many item nodes are rendered.
WARM_NODE_TARGET = 24

_COLLECT_MENU_CANDIDATES_JS = """
({
  itemSelectors, nameSelectors, descriptionSelectors, priceSelectors, fieldSelectors, sectionSelector, categorySelector,
}) => {
  const clean = (value) => String(value || '').replace(/\\s+/g, ' ').trim();
  const looksLikePrice = (text) =>
    /(?:\\$|ars?\\$?)\\s*[0-9]/i.test(text) || /^[0-9][0-9.\\s]*(?:,[0-9]{1,2})?$/.test(text);

  const firstText = (root, selectors, currency) => {
    for (const selector of selectors) {
      for (const node of root.querySelectorAll(selector)) {
        const text = clean(node.textContent);
        if (text && (!currency || looksLikePrice(text))) {
          return text;
        }
      }
    }
    return '';
  };

  const joined = itemSelectors.join(', ');
  const fieldSelector = fieldSelectors.join(', ');
  const seen = new Set();
  const nodes = [];
  for (const selector of itemSelectors) {
    for (const node of document.querySelectorAll(selector)) {
      if (!seen.has(node)) {
        seen.add(node);
        nodes.push(node);
      }
    }
  }
  const pool = nodes.length > 0
    ? nodes
    : Array.from(document.querySelectorAll('section article, section li, article, li')).slice(0, 1200);

  return pool.slice(0, 1600).map((node) => {
    const section = node.closest(sectionSelector);
    return {
      nameText: firstText(node, nameSelectors, false),
      descriptionText: firstText(node, descriptionSelectors, false),
      priceText: firstText(node, priceSelectors, true),
      categoryTitle: clean(section?.querySelector(categorySelector)?.textContent || ''),
      rawText: clean(node.textContent).slice(0, 600),
      nestedItemTexts: Array.from(node.querySelectorAll(joined))
        .filter((child) => !child.matches(fieldSelector))
        .slice(0, 24)
        .map((child) => clean(child.textContent).slice(0, 200)),
    };
  });
}
"""

_COLLECT_RESTAURANT_CARDS_JS = """
(anchors) => {
  const clean = (value) => String(value || '').replace(/\\s+/g, ' ').trim();
  const pushUnique = (list, value) => {
    const text = clean(value);
    if (text && !list.includes(text)) {
      list.push(text);
    }
  };
  const nameSelectors = [
    '[data-testid*="store-name"]', '[data-testid*="restaurant-name"]',
    '[data-qa*="store-name"]', '[data-qa*="restaurant-name"]',
    'h2', 'h3', 'strong', '[role="heading"]',
  ];

  return anchors.slice(0, 1200).map((anchor) => {
    const card = anchor.closest('[data-testid*="store"], [data-qa*="store"], article, li, section, div') || anchor;
    const nameCandidates = [];
    pushUnique(nameCandidates, anchor.getAttribute('aria-label'));
    pushUnique(nameCandidates, anchor.getAttribute('title'));
    pushUnique(nameCandidates, anchor.textContent);
    for (const selector of nameSelectors) {
      const fromAnchor = anchor.querySelector(selector);
      const fromCard = card.querySelector(selector);
      if (fromAnchor) pushUnique(nameCandidates, fromAnchor.textContent);
      if (fromCard) pushUnique(nameCandidates, fromCard.textContent);
    }
    const shortText = Array.from(card.querySelectorAll('h1,h2,h3,strong,span,p'))
      .map((element) => clean(element.textContent))
      .filter((text) => text.length >= 3 && text.length <= 96)
      .slice(0, 18);
    return {
      href: anchor.href || anchor.getAttribute('href') || '',
      anchorText: clean(anchor.textContent),
      textBlob: clean(card.textContent).slice(0, 700),
      nameCandidates,
      shortText,
    };
  });
}
"""


def count_nested_items(texts: list[str]) -> int:
    """Nested nodes that read like a whole dish rather than a field of one."""
    return sum(1 for text in texts if reads_like_item(text))


def candidate_from_dom(entry: dict[str, Any]) -> MenuCandidate:
    """Build a :class:`MenuCandidate` from one record of the menu collection script."""
    data = dict(entry)
    nested = data.pop("nestedItemTexts", None) or []
    data["nestedItemCount"] = count_nested_items(nested)
    return MenuCandidate.model_validate(data)


class BrowserError(Exception):
    """Raised when the browser cannot complete a fetch or payment action."""


class BrowserCollaborator(Protocol):
    """Boundary between the ordering core and a real browser."""

    async def fetch_menu_candidates(self, url: str) -> MenuScrape: ...

    async def fetch_restaurant_cards(self, search_url: str) -> list[RestaurantCard]: ...

    async def perform_live_payment_attempt(self, restaurant_url: str) -> PaymentAttempt: ...


def _missing_session_message(session_file: Path) -> str:
    return (
        f"No session state found at {session_file}. Run 'rappi-order login bootstrap' "
        "first to perform the manual Google + OTP login."
    )


class PlaywrightBrowser:
    """Chromium-backed :class:`BrowserCollaborator`.

    Parameters
    ----------
    session_file:
        Playwright storage-state file written by :func:`bootstrap_login`.
    headless:
        Run Chromium without a window.
    slowmo_ms:
        Delay inserted between browser operations.
    scroll_passes:
        Upper bound on lazy-load scroll passes over a menu page.
    """

    def __init__(
        self,
        session_file: str | Path,
        headless: bool = False,
        slowmo_ms: int = 0,
        scroll_passes: int = 8,
    ) -> None:
        self._session_file = Path(session_file).expanduser()
        self._headless = headless
        self._slowmo_ms = slowmo_ms
        self._scroll_passes = max(0, min(12, scroll_passes))

    @asynccontextmanager
    async def _page(self) -> AsyncIterator[Page]:
        if not self._session_file.exists():
            raise BrowserError(_missing_session_message(self._session_file))

        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=self._headless, slow_mo=self._slowmo_ms)
            context: BrowserContext = await browser.new_context(
                storage_state=str(self._session_file),
                locale=LOCALE,
            )
            try:
                yield await context.new_page()
            finally:
                await context.close()
                await browser.close()

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------

    async def fetch_menu_candidates(self, url: str) -> MenuScrape:
        safe_url = assert_restaurant_url(url)
        try:
            async with self._page() as page:
                await page.goto(safe_url, wait_until="domcontentloaded")
                await page.wait_for_timeout(900)
                await self._settle(page, timeout=7000)
                await self._wait_for_menu(page)
                await self._warm_menu(page)

                name = await self._restaurant_name(page)
                assert_restaurant_vertical(name)
                raw: list[dict[str, Any]] = await page.evaluate(
                    _COLLECT_MENU_CANDIDATES_JS,
                    {
                        "itemSelectors": MENU_ITEM_SELECTORS,
                        "nameSelectors": MENU_NAME_SELECTORS,
                        "descriptionSelectors": MENU_DESCRIPTION_SELECTORS,
                        "priceSelectors": MENU_PRICE_SELECTORS,
                        "fieldSelectors": FIELD_NODE_SELECTORS,
                        "sectionSelector": MENU_SECTION_SELECTOR,
                        "categorySelector": CATEGORY_TITLE_SELECTOR,
                    },
                )
        except PlaywrightError as exc:
            logger.warning("menu_fetch_failed", url=safe_url, error=str(exc))
            raise BrowserError(f"Menu fetch failed: {exc}") from exc

        logger.info("menu_candidates_fetched", url=safe_url, restaurant=name, candidates=len(raw))
        return MenuScrape(
            restaurant_name=name,
            restaurant_url=safe_url,
            candidates=[candidate_from_dom(entry) for entry in raw],
        )

    async def _settle(self, page: Page, timeout: int) -> None:
        try:
            await page.wait_for_load_state("networkidle", timeout=timeout)
        except PlaywrightError:
            logger.debug("network_idle_timeout", url=page.url)

    async def _wait_for_menu(self, page: Page) -> None:
        try:
            await page.wait_for_function(
                "(selectors) => selectors.some((s) => document.querySelector(s))",
                arg=MENU_READY_SELECTORS,
                timeout=9000,
            )
        except PlaywrightError:
            logger.debug("menu_ready_timeout", url=page.url)

    async def _warm_menu(self, page: Page) -> None:
        """Scroll until enough item nodes have been lazily rendered."""
        selector = ", ".join(MENU_ITEM_SELECTORS)
        for _ in range(self._scroll_passes):
            if await page.locator(selector).count() >= WARM_NODE_TARGET:
                break
            await page.evaluate("window.scrollBy(0, Math.max(340, Math.round(window.innerHeight * 0.85)))")
            await page.wait_for_timeout(450)
        await page.evaluate("window.scrollTo(0, 0)")
        await page.wait_for_timeout(250)

    async def _restaurant_name(self, page: Page) -> str:
        heading = page.locator(RESTAURANT_NAME_SELECTOR).first
        try:
            text = await heading.inner_text(timeout=3000)
        except PlaywrightError:
            text = ""
        return text.strip() or "Unknown restaurant"

    # ------------------------------------------------------------------
    # Restaurant search
    # ------------------------------------------------------------------

    async def fetch_restaurant_cards(self, search_url: str) -> list[RestaurantCard]:
        try:
            async with self._page() as page:
                await page.goto(search_url, wait_until="domcontentloaded")
                await page.wait_for_timeout(1000)
                await self._settle(page, timeout=6000)
                try:
                    await page.wait_for_selector(RESTAURANT_LINK_SELECTOR, timeout=8000)
                except PlaywrightError:
                    logger.debug("restaurant_links_timeout", url=search_url)
                await page.wait_for_timeout(400)
                raw: list[dict[str, Any]] = await page.eval_on_selector_all(
                    RESTAURANT_LINK_SELECTOR, _COLLECT_RESTAURANT_CARDS_JS
                )
        except PlaywrightError as exc:
            logger.warning("restaurant_search_failed", url=search_url, error=str(exc))
            raise BrowserError(f"Restaurant search failed: {exc}") from exc

        logger.info("restaurant_cards_fetched", url=search_url, cards=len(raw))
        return [RestaurantCard.model_validate(entry) for entry in raw]

    # ------------------------------------------------------------------
    # Live payment
    # ------------------------------------------------------------------

    async def perform_live_payment_attempt(self, restaurant_url: str) -> PaymentAttempt:
        """Click the place-order button on the checkout page.

        Any browser failure after the session check becomes an
        attempted-but-not-submitted result.
        """
        safe_url = assert_restaurant_url(restaurant_url)
        try:
            async with self._page() as page:
                await page.goto(safe_url, wait_until="domcontentloaded")
                await page.goto(urljoin(safe_url, "/checkout"), wait_until="domcontentloaded")
                await self._settle(page, timeout=7000)

                button = page.locator(PLACE_ORDER_SELECTOR).first
                try:
                    await button.wait_for(state="visible", timeout=7000)
                except PlaywrightError:
                    return PaymentAttempt(
                        attempted=True,
                        submitted=False,
                        message=(
                            "Live payment enabled, but the checkout page has no "
                            f"{PLACE_ORDER_SELECTOR} button."
                        ),
                    )

                await button.click(timeout=7000)
        except PlaywrightError as exc:
            logger.warning("live_payment_failed", url=safe_url, error=str(exc))
            return PaymentAttempt(
                attempted=True,
                submitted=False,
                message=f"Live purchase attempt failed: {exc}",
            )

        logger.warning("live_payment_submitted", url=safe_url)
        return PaymentAttempt(
            attempted=True,
            submitted=True,
            message=f"Live purchase attempt executed: clicked {PLACE_ORDER_SELECTOR}.",
        )


async def bootstrap_login(
    base_url: str,
    session_file: str | Path,
    headless: bool = False,
    slowmo_ms: int = 0,
    prompt: Callable[[str], str] = input,
) -> Path:
    """Open a browser for a manual login and store the session state.

    The user completes Google sign-in and any OTP challenge in the window,
    then confirms through *prompt*.
    """
    target = Path(session_file).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch(headless=headless, slow_mo=slowmo_ms)
            context = await browser.new_context(locale=LOCALE)
            try:
                page = await context.new_page()
                await page.goto(base_url, wait_until="domcontentloaded")
                await asyncio.to_thread(prompt, "Press ENTER when login is complete and stable: ")
                await context.storage_state(path=str(target))
            finally:
                await context.close()
                await browser.close()
    except PlaywrightError as exc:
        raise BrowserError(f"Login bootstrap failed: {exc}") from exc

    target.chmod(0o600)
    logger.info("session_state_stored", path=str(target))
    return target
