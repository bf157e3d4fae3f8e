"""FastAPI application for the Rappi order agent.

Exposes REST endpoints for:
- Order template parsing and validation
- Menu catalog building (from supplied candidates or a live scrape)
- Cart planning and checkout dry runs
- The callback-driven ordering flow
- Restaurant search
- One-shot reorder sessions with SSE progress streaming
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from common import ErrorResponse, HealthResponse

from rappi_order.agents.cart_matcher import CartMatcher, OrderValidationError, validate_order_template
from rappi_order.agents.checkout_agent import build_dry_run_summary
from rappi_order.agents.menu_extractor import MenuExtractor
from rappi_order.agents.restaurant_search import RestaurantSearchAgent
from rappi_order.config import Settings
from rappi_order.models import (
    CamelModel,
    CartPlan,
    MenuCandidate,
    MenuCatalog,
    ReorderSession,
    ReorderState,
)
from rappi_order.order.template_parser import (
    TemplateSyntaxError,
    UnsupportedTemplateFormat,
    parse_order_text,
)
from rappi_order.orchestrator.flow import CallbackParseError, FlowController, run_callback
from rappi_order.orchestrator.flow_store import FlowStateStore
from rappi_order.orchestrator.graph import compile_reorder_graph
from rappi_order.orchestrator.state import ReorderGraphState
from rappi_order.policy import PolicyViolationError
from rappi_order.protocols.browser import BrowserCollaborator, BrowserError, PlaywrightBrowser
from rappi_order.streaming import OrderEventStream

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class TemplateParseRequest(CamelModel):
    content: str
    format: Literal["json", "yaml"] = "yaml"


class CatalogRequest(CamelModel):
    """Build a catalog from *candidates*, or scrape the restaurant when omitted."""

    restaurant_url: str
    restaurant_name: str = "Unknown restaurant"
    candidates: list[MenuCandidate] | None = None


class CartPlanRequest(CamelModel):
    order: dict[str, Any]
    catalog: MenuCatalog


class FlowCallbackRequest(CamelModel):
    callback_data: str
    restaurant_url: str | None = None


class RestaurantSearchRequest(CamelModel):
    query: str | None = None
    city: str | None = None
    max_results: int = Field(default=20, gt=0)
    min_rating: float | None = None
    delivery_fee_max: float | None = None


class ReorderRequest(CamelModel):
    template: dict[str, Any]
    catalog: MenuCatalog | None = None


# ---------------------------------------------------------------------------
# Session manager (in-memory)
# ---------------------------------------------------------------------------


class SessionManager:
    """In-memory reorder session store."""

    def __init__(self) -> None:
        self._sessions: dict[str, ReorderSession] = {}
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def create_session(self, template: dict[str, Any]) -> ReorderSession:
        session = ReorderSession(id=str(uuid.uuid4()), template=template)
        self._sessions[session.id] = session
        return session

    def get_session(self, session_id: str) -> ReorderSession | None:
        return self._sessions.get(session_id)

    def update_session(self, session_id: str, **kwargs: Any) -> ReorderSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        for key, value in kwargs.items():
            if hasattr(session, key):
                setattr(session, key, value)
        session.updated_at = datetime.now(tz=timezone.utc)
        return session

    def track(self, session_id: str, task: asyncio.Task[Any]) -> None:
        self._tasks[session_id] = task

    async def wait(self, session_id: str) -> ReorderSession | None:
        """Wait for the session's workflow task, if any, to finish."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_session(session_id)


# ---------------------------------------------------------------------------
# Application state container
# ---------------------------------------------------------------------------


class AppState:
    """Shared application state accessible from route handlers."""

    def __init__(self, settings: Settings, browser: BrowserCollaborator) -> None:
        self.settings = settings
        self.browser = browser
        self.session_manager = SessionManager()
        self.event_stream = OrderEventStream()
        self.flow_store = FlowStateStore(settings.flow_state_file, settings.default_restaurant_url)
        self.flow_controller = FlowController.from_settings(settings, browser)
        # One callback at a time per conversation.
        self.flow_lock = asyncio.Lock()


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc), status_code=status_code).model_dump(),
    )


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None, browser: BrowserCollaborator | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    settings:
        Application settings; read from the environment when omitted.
    browser:
        Browser collaborator. Defaults to a :class:`PlaywrightBrowser` using
        the configured session file.
    """
    settings = settings or Settings()
    browser = browser or PlaywrightBrowser(
        settings.session_file,
        headless=settings.headless,
        slowmo_ms=settings.slowmo_ms,
        scroll_passes=settings.menu_scroll_passes,
    )

    app = FastAPI(
        title="Rappi Order Agent",
        description=(
            "Restaurant ordering assistant for Rappi Argentina: menu extraction, "
            "cart planning, dry-run checkout and a callback-driven ordering flow."
        ),
        version=settings.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    state = AppState(settings, browser)
    app.state.app_state = state
    app.state.settings = settings

    extractor = MenuExtractor()
    matcher = CartMatcher()
    restaurant_search = RestaurantSearchAgent(settings.base_url)

    # -------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            version=settings.service_version,
            environment=settings.environment,
            live_order_enabled=settings.live_order_enabled,
        )

    # -------------------------------------------------------------------
    # Templates, catalogs, carts
    # -------------------------------------------------------------------

    @app.post("/api/v1/templates/parse", tags=["order"])
    async def parse_template_endpoint(req: TemplateParseRequest) -> dict[str, Any]:
        """Parse a JSON or restricted-YAML template and validate its shape."""
        try:
            tree = parse_order_text(req.content, req.format)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
        template = validate_order_template(tree)
        return template.to_json_dict()

    @app.post("/api/v1/menu/catalog", tags=["menu"])
    async def build_catalog_endpoint(req: CatalogRequest) -> dict[str, Any]:
        """Classify candidates into a deduplicated catalog."""
        if req.candidates is None:
            scrape = await state.browser.fetch_menu_candidates(req.restaurant_url)
            name, candidates = scrape.restaurant_name, scrape.candidates
        else:
            name, candidates = req.restaurant_name, req.candidates
        catalog = extractor.build_catalog(name, req.restaurant_url, candidates)
        return catalog.to_json_dict()

    @app.post("/api/v1/cart/plan", tags=["cart"])
    async def cart_plan_endpoint(req: CartPlanRequest) -> dict[str, Any]:
        return matcher.build_cart_plan(req.order, req.catalog).to_json_dict()

    @app.post("/api/v1/checkout/dry-run", tags=["checkout"])
    async def dry_run_endpoint(plan: CartPlan) -> dict[str, Any]:
        """Summarise a cart plan; never places an order."""
        return build_dry_run_summary(plan).to_json_dict()

    # -------------------------------------------------------------------
    # Callback flow
    # -------------------------------------------------------------------

    @app.post("/api/v1/flow/callback", tags=["flow"])
    async def flow_callback(req: FlowCallbackRequest) -> dict[str, Any]:
        """Apply one callback token to the persisted flow state."""
        async with state.flow_lock:
            response, flow_state = await run_callback(
                state.flow_store,
                state.flow_controller,
                req.callback_data,
                restaurant_url=req.restaurant_url,
            )
        return {**response.model_dump(mode="json"), "state": flow_state.to_json_dict()}

    @app.get("/api/v1/flow/state", tags=["flow"])
    async def flow_state_endpoint() -> dict[str, Any]:
        return state.flow_store.load().to_json_dict()

    # -------------------------------------------------------------------
    # Restaurant search
    # -------------------------------------------------------------------

    @app.post("/api/v1/restaurants/search", tags=["restaurants"])
    async def search_restaurants(req: RestaurantSearchRequest) -> dict[str, Any]:
        results = await restaurant_search.search(
            state.browser,
            query=req.query,
            city=req.city or settings.default_city,
            max_results=req.max_results,
            min_rating=req.min_rating,
            delivery_fee_max=req.delivery_fee_max,
        )
        return {
            "query": req.query,
            "count": len(results),
            "restaurants": [restaurant.to_json_dict() for restaurant in results],
        }

    # -------------------------------------------------------------------
    # Reorder sessions
    # -------------------------------------------------------------------

    @app.post("/api/v1/reorder", tags=["reorder"])
    async def create_reorder(req: ReorderRequest) -> dict[str, Any]:
        """Start a reorder session; follow it through the ``/stream`` endpoint."""
        session = state.session_manager.create_session(req.template)

        async def _run_graph() -> None:
            compiled = compile_reorder_graph(state.event_stream, browser=state.browser)
            state.session_manager.update_session(
                session.id,
                state=ReorderState.FETCHING_MENU if req.catalog is None else ReorderState.MATCHING,
            )
            initial: ReorderGraphState = {
                "session_id": session.id,
                "raw_template": req.template,
                "catalog": req.catalog,
                "current_state": ReorderState.PENDING,
                "template": None,
                "cart_plan": None,
                "summary": None,
                "error": None,
            }
            result = await compiled.ainvoke(initial)
            state.session_manager.update_session(
                session.id,
                state=result.get("current_state", ReorderState.FAILED),
                cart_plan=result.get("cart_plan"),
                summary=result.get("summary"),
                error=result.get("error"),
            )
            logger.info("reorder_finished", session_id=session.id, state=result.get("current_state"))

        state.session_manager.track(session.id, asyncio.create_task(_run_graph()))

        return {
            "session_id": session.id,
            "status": session.state.value,
            "stream_url": f"/api/v1/reorder/{session.id}/stream",
        }

    @app.get("/api/v1/reorder/{session_id}", tags=["reorder"])
    async def get_reorder(session_id: str) -> dict[str, Any]:
        session = state.session_manager.get_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return session.model_dump(mode="json")

    @app.get("/api/v1/reorder/{session_id}/stream", tags=["reorder"])
    async def stream_reorder(session_id: str) -> EventSourceResponse:
        """SSE stream of reorder workflow events."""
        if state.session_manager.get_session(session_id) is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")

        async def event_generator():  # type: ignore[no-untyped-def]
            async for event in state.event_stream.subscribe(session_id):
                yield {
                    "event": event.event_type,
                    "data": json.dumps(event.model_dump(mode="json")),
                }

        return EventSourceResponse(event_generator())

    # -------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------

    @app.exception_handler(TemplateSyntaxError)
    @app.exception_handler(UnsupportedTemplateFormat)
    @app.exception_handler(CallbackParseError)
    async def bad_input_handler(request: Request, exc: ValueError) -> JSONResponse:
        return _error(400, "Malformed input", exc)

    @app.exception_handler(OrderValidationError)
    async def validation_handler(request: Request, exc: OrderValidationError) -> JSONResponse:
        return _error(422, "Invalid order template", exc)

    @app.exception_handler(PolicyViolationError)
    async def policy_handler(request: Request, exc: PolicyViolationError) -> JSONResponse:
        logger.warning("policy_violation", error=str(exc), path=request.url.path)
        return _error(403, "Policy violation", exc)

    @app.exception_handler(BrowserError)
    async def browser_handler(request: Request, exc: BrowserError) -> JSONResponse:
        logger.warning("browser_error", error=str(exc), path=request.url.path)
        return _error(502, "Browser collaborator failed", exc)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", error=str(exc), path=request.url.path)
        return _error(500, "Internal server error", exc)

    return app
