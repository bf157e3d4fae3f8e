"""Entry point for the Rappi order agent HTTP service."""

from __future__ import annotations

import structlog
import uvicorn
from fastapi import FastAPI

from common import setup_logging

from rappi_order.api import create_app
from rappi_order.config import Settings, get_settings
from rappi_order.protocols.browser import BrowserCollaborator

logger = structlog.get_logger(__name__)


def build_app(settings: Settings | None = None, browser: BrowserCollaborator | None = None) -> FastAPI:
    """Construct the fully-configured application."""
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = create_app(settings, browser=browser)

    logger.info(
        "application_ready",
        service=settings.service_name,
        version=settings.service_version,
        live_order_enabled=settings.live_order_enabled,
        flow_state_file=str(settings.flow_state_file),
    )
    return app


def main(settings: Settings | None = None) -> None:
    """Launch the Rappi order agent server."""
    settings = settings or get_settings()
    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
