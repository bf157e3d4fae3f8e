"""``rappi-order`` command-line interface.

Results are printed to stdout as JSON; logs go to stderr. Every command
exits 1 with the error message on stderr when its input is rejected.

    rappi-order login bootstrap
    rappi-order restaurants search --query pizza
    rappi-order menu fetch --restaurant-url URL [--out menu.json]
    rappi-order cart build --order-file order.yaml [--menu-file menu.json] [--out cart.json]
    rappi-order checkout dry-run --cart-file cart.json [--confirm-pay]
    rappi-order flow callback --data rappi:menu:start
    rappi-order reorder --template order.yaml [--menu-file menu.json]
    rappi-order serve
"""

from __future__ import annotations

import argparse
import asyncio
import inspect
import json
import sys
import uuid
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from common import setup_logging

from rappi_order.agents.cart_matcher import CartMatcher, OrderValidationError
from rappi_order.agents.checkout_agent import build_dry_run_summary, guard_payment_execution
from rappi_order.agents.menu_extractor import MenuExtractor
from rappi_order.agents.restaurant_search import RestaurantSearchAgent
from rappi_order.config import Settings, get_settings
from rappi_order.models import CartPlan, MenuCatalog, ReorderState
from rappi_order.order.template_parser import (
    TemplateSyntaxError,
    UnsupportedTemplateFormat,
    parse_order_file,
)
from rappi_order.orchestrator.flow import CallbackParseError, FlowController, run_callback
from rappi_order.orchestrator.flow_store import FlowStateStore, write_json_atomic
from rappi_order.orchestrator.graph import compile_reorder_graph
from rappi_order.policy import PolicyViolationError
from rappi_order.protocols.browser import BrowserError, PlaywrightBrowser, bootstrap_login
from rappi_order.streaming import OrderEventStream

logger = structlog.get_logger(__name__)

CLI_ERRORS = (
    TemplateSyntaxError,
    UnsupportedTemplateFormat,
    OrderValidationError,
    CallbackParseError,
    PolicyViolationError,
    BrowserError,
    FileNotFoundError,
    json.JSONDecodeError,
    ValidationError,
)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def _browser(settings: Settings, args: argparse.Namespace) -> PlaywrightBrowser:
    return PlaywrightBrowser(
        settings.session_file,
        headless=args.headless or settings.headless,
        slowmo_ms=args.slowmo if args.slowmo is not None else settings.slowmo_ms,
        scroll_passes=settings.menu_scroll_passes,
    )


def _read_catalog(path: str) -> MenuCatalog:
    return MenuCatalog.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _login_bootstrap(args: argparse.Namespace, settings: Settings) -> int:
    path = await bootstrap_login(
        settings.base_url,
        args.session_file or settings.session_file,
        headless=args.headless,
        slowmo_ms=args.slowmo or 0,
    )
    print(f"Session state stored at {path}", file=sys.stderr)
    print("Protect this file as secret material (contains auth tokens).", file=sys.stderr)
    return 0


async def _restaurants_search(args: argparse.Namespace, settings: Settings) -> int:
    agent = RestaurantSearchAgent(settings.base_url)
    results = await agent.search(
        _browser(settings, args),
        query=args.query,
        city=args.city or settings.default_city,
        max_results=args.max,
        min_rating=args.min_rating,
        delivery_fee_max=args.delivery_fee_max,
    )
    _print_json([restaurant.to_json_dict() for restaurant in results])
    return 0


async def _fetch_catalog(url: str, settings: Settings, args: argparse.Namespace) -> MenuCatalog:
    scrape = await _browser(settings, args).fetch_menu_candidates(url)
    return MenuExtractor().build_catalog(scrape.restaurant_name, url, scrape.candidates)


async def _menu_fetch(args: argparse.Namespace, settings: Settings) -> int:
    catalog = await _fetch_catalog(args.restaurant_url, settings, args)
    if args.out:
        write_json_atomic(Path(args.out).resolve(), catalog.to_json_dict())
        print(f"Menu written to {Path(args.out).resolve()}", file=sys.stderr)
    _print_json(catalog.to_json_dict())
    return 0


async def _cart_build(args: argparse.Namespace, settings: Settings) -> int:
    order = parse_order_file(args.order_file)
    if args.menu_file:
        catalog = _read_catalog(args.menu_file)
    elif isinstance(order, dict) and order.get("restaurantUrl"):
        catalog = await _fetch_catalog(order["restaurantUrl"], settings, args)
    else:
        print(
            "Provide --menu-file or set restaurantUrl in the order file for live menu fetch.",
            file=sys.stderr,
        )
        return 1

    plan = CartMatcher().build_cart_plan(order, catalog)
    if args.out:
        write_json_atomic(Path(args.out).resolve(), plan.to_json_dict())
        print(f"Cart plan written to {Path(args.out).resolve()}", file=sys.stderr)
    _print_json(plan.to_json_dict())
    return 0


async def _checkout_dry_run(args: argparse.Namespace, settings: Settings) -> int:
    plan = CartPlan.model_validate(json.loads(Path(args.cart_file).read_text(encoding="utf-8")))
    _print_json(build_dry_run_summary(plan).to_json_dict())

    first_confirmation = None
    typed_phrase = None
    if args.confirm_pay:
        answer = input("You passed --confirm-pay. Continue to payment pre-check simulation? [y/N]: ")
        first_confirmation = answer.strip().lower() in ("y", "yes")
        if first_confirmation:
            typed_phrase = input('Type "CONFIRM PAY" to continue: ')

    gate = guard_payment_execution(args.confirm_pay, first_confirmation, typed_phrase)
    print(f"Payment gate: {gate.message}", file=sys.stderr)
    return 0


async def _flow_callback(args: argparse.Namespace, settings: Settings) -> int:
    store = FlowStateStore(args.state_file or settings.flow_state_file, settings.default_restaurant_url)
    controller = FlowController.from_settings(settings, _browser(settings, args))
    response, state = await run_callback(store, controller, args.data, restaurant_url=args.restaurant_url)
    _print_json({**response.model_dump(mode="json"), "state": state.to_json_dict()})
    return 0


async def _reorder(args: argparse.Namespace, settings: Settings) -> int:
    template = parse_order_file(args.template)
    catalog = _read_catalog(args.menu_file) if args.menu_file else None

    stream = OrderEventStream()
    graph = compile_reorder_graph(stream, browser=_browser(settings, args))
    result = await graph.ainvoke(
        {
            "session_id": str(uuid.uuid4()),
            "raw_template": template,
            "catalog": catalog,
            "current_state": ReorderState.PENDING,
        }
    )

    if result.get("current_state") != ReorderState.COMPLETED:
        print(result.get("error") or "Reorder failed.", file=sys.stderr)
        return 1

    plan: CartPlan = result["cart_plan"]
    if args.out:
        write_json_atomic(Path(args.out).resolve(), plan.to_json_dict())
    _print_json({"cartPlan": plan.to_json_dict(), "summary": result["summary"].to_json_dict()})
    return 0


def _serve(args: argparse.Namespace, settings: Settings) -> int:
    from rappi_order.main import main as serve_main

    if args.port:
        settings.port = args.port
    serve_main(settings)
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _browser_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--headless", action="store_true", help="Run the browser without a window")
    parser.add_argument("--slowmo", type=int, default=None, metavar="MS")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rappi-order",
        description="Restaurant ordering assistant for Rappi Argentina (real purchases disabled).",
    )
    parser.add_argument("--log-level", default=None, help="Override RAPPI_LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Manage the stored browser session")
    login_sub = login.add_subparsers(dest="action", required=True)
    bootstrap = login_sub.add_parser("bootstrap", help="Manual Google + OTP login")
    bootstrap.add_argument("--session-file", default=None)
    _browser_options(bootstrap)
    bootstrap.set_defaults(handler=_login_bootstrap)

    restaurants = sub.add_parser("restaurants", help="Restaurant discovery")
    restaurants_sub = restaurants.add_subparsers(dest="action", required=True)
    search = restaurants_sub.add_parser("search", help="Search and rank restaurants")
    search.add_argument("--query", required=True)
    search.add_argument("--city", default=None)
    search.add_argument("--max", type=int, default=20)
    search.add_argument("--min-rating", type=float, default=None)
    search.add_argument("--delivery-fee-max", type=float, default=None)
    _browser_options(search)
    search.set_defaults(handler=_restaurants_search)

    menu = sub.add_parser("menu", help="Menu extraction")
    menu_sub = menu.add_subparsers(dest="action", required=True)
    fetch = menu_sub.add_parser("fetch", help="Scrape a restaurant menu into a catalog")
    fetch.add_argument("--restaurant-url", required=True)
    fetch.add_argument("--out", default=None)
    _browser_options(fetch)
    fetch.set_defaults(handler=_menu_fetch)

    cart = sub.add_parser("cart", help="Cart planning")
    cart_sub = cart.add_subparsers(dest="action", required=True)
    build = cart_sub.add_parser("build", help="Match an order template against a menu")
    build.add_argument("--order-file", required=True)
    build.add_argument("--menu-file", default=None)
    build.add_argument("--out", default=None)
    _browser_options(build)
    build.set_defaults(handler=_cart_build)

    checkout = sub.add_parser("checkout", help="Checkout review")
    checkout_sub = checkout.add_subparsers(dest="action", required=True)
    dry_run = checkout_sub.add_parser("dry-run", help="Summarise a cart plan without paying")
    dry_run.add_argument("--cart-file", required=True)
    dry_run.add_argument("--confirm-pay", action="store_true")
    dry_run.set_defaults(handler=_checkout_dry_run)

    flow = sub.add_parser("flow", help="Callback-driven ordering flow")
    flow_sub = flow.add_subparsers(dest="action", required=True)
    callback = flow_sub.add_parser("callback", help="Apply one rappi:... callback token")
    callback.add_argument("--data", required=True)
    callback.add_argument("--restaurant-url", default=None)
    callback.add_argument("--state-file", default=None)
    _browser_options(callback)
    callback.set_defaults(handler=_flow_callback)

    reorder = sub.add_parser("reorder", help="Template -> menu -> cart plan -> dry-run summary")
    reorder.add_argument("--template", required=True)
    reorder.add_argument("--menu-file", default=None)
    reorder.add_argument("--out", default=None)
    _browser_options(reorder)
    reorder.set_defaults(handler=_reorder)

    serve = sub.add_parser("serve", help="Run the HTTP service")
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(handler=_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(args.log_level or settings.log_level)

    try:
        if inspect.iscoroutinefunction(args.handler):
            return asyncio.run(args.handler(args, settings))
        return args.handler(args, settings)
    except CLI_ERRORS as exc:
        logger.debug("command_failed", command=args.command, error=str(exc))
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
