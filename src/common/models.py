"""Shared Pydantic models used by the HTTP surface."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check payload; also reports whether live orders are switched on."""

    status: str = "healthy"
    service: str
    version: str
    environment: str = "development"
    live_order_enabled: bool = False


class ErrorResponse(BaseModel):
    """Body of every error the API returns."""

    error: str
    detail: str | None = None
    status_code: int = 500
