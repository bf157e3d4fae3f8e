"""Configuration management for the Rappi order agent."""

from __future__ import annotations

from pathlib import Path

from pydantic import model_validator
from pydantic_settings import SettingsConfigDict

from common.config import Settings as BaseSettings

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "rappi-cli"


class Settings(BaseSettings):
    """Rappi order agent configuration.

    Inherits ``log_level`` / ``environment`` from ``common.config.Settings``
    and reads every project option from ``RAPPI_``-prefixed variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="RAPPI_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Service identity
    service_name: str = "rappi-order-agent"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030

    # Storefront
    base_url: str = "https://www.rappi.com.ar"
    default_city: str = "Buenos Aires"
    default_restaurant_url: str = "https://www.rappi.com.ar/restaurantes/215137-guber"
    currency: str = "ARS"

    # Local files
    config_dir: Path = DEFAULT_CONFIG_DIR
    session_file: Path | None = None
    flow_state_file: Path | None = None

    # Browser
    headless: bool = False
    slowmo_ms: int = 0
    menu_scroll_passes: int = 8

    # Callback flow
    menu_page_size: int = 6
    live_order_enabled: bool = False

    @model_validator(mode="after")
    def _default_paths(self) -> "Settings":
        if self.session_file is None:
            self.session_file = self.config_dir / "session-state.json"
        if self.flow_state_file is None:
            self.flow_state_file = self.config_dir / "flow-state.json"
        return self


def get_settings() -> Settings:
    """Return a settings instance built from the environment."""
    return Settings()
