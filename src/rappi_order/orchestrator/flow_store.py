"""File persistence for :class:`~rappi_order.models.FlowState`.

The whole state is one JSON document. Writes go to a temporary file in the
same directory which is then renamed over the target, so readers only ever
see the previous or the next complete document.
"""

from __future__ import annotations

import json
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import structlog

from rappi_order.models import FlowStage, FlowState, MenuCache, MenuItem
from rappi_order.policy import assert_restaurant_url

logger = structlog.get_logger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True, mode=DIR_MODE)
    try:
        path.chmod(DIR_MODE)
    except OSError:
        logger.debug("chmod_unsupported", path=str(path))


def write_json_atomic(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path* through a temp file and a rename."""
    ensure_private_dir(path.parent)
    tmp = path.parent / f".{path.name}.{os.getpid()}.{time.time_ns()}.tmp"
    try:
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)
            fh.flush()
            os.fsync(fh.fileno())
        tmp.replace(path)
        path.chmod(FILE_MODE)
    finally:
        tmp.unlink(missing_ok=True)


def _sanitize_menu_items(raw: Any) -> list[MenuItem]:
    items: list[MenuItem] = []
    if not isinstance(raw, list):
        return items
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        item_id = str(entry.get("id") or "").strip()
        name = str(entry.get("name") or "").strip()
        if not item_id or not name:
            continue
        try:
            price = float(entry.get("price") or 0)
        except (TypeError, ValueError):
            price = 0.0
        items.append(
            MenuItem(
                id=item_id,
                name=name,
                price=max(price, 0.0),
                description=str(entry.get("description") or ""),
                category=str(entry.get("category") or "General"),
            )
        )
    return items


def _sanitize_cart_items(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        return {}
    cart: dict[str, int] = {}
    for item_id, quantity in raw.items():
        if not item_id or isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            continue
        cart[str(item_id)] = quantity
    return cart


def normalize_flow_state(raw: Any, default_restaurant_url: str) -> FlowState:
    """Rebuild a :class:`FlowState` from an untrusted JSON document.

    Malformed menu items and cart lines are dropped and an unknown stage
    falls back to ``idle``. Restaurant URLs are still held to policy.
    """
    data = raw if isinstance(raw, dict) else {}

    selected = data.get("selectedRestaurantUrl")
    if not isinstance(selected, str) or not selected.strip():
        selected = default_restaurant_url

    cache = data.get("menuCache") if isinstance(data.get("menuCache"), dict) else {}
    cache_url = cache.get("restaurantUrl")
    fetched_at = cache.get("fetchedAt")

    try:
        stage = FlowStage(data.get("stage"))
    except ValueError:
        stage = FlowStage.IDLE

    return FlowState(
        selected_restaurant_url=assert_restaurant_url(selected),
        menu_cache=MenuCache(
            restaurant_url=assert_restaurant_url(cache_url)
            if isinstance(cache_url, str) and cache_url.strip()
            else "",
            fetched_at=fetched_at if isinstance(fetched_at, str) else "",
            items=_sanitize_menu_items(cache.get("items")),
        ),
        cart_items=_sanitize_cart_items(data.get("cartItems")),
        stage=stage,
        checkout_confirmed=bool(data.get("checkoutConfirmed")),
    )


class FlowStateStore:
    """Loads and atomically saves the flow state file."""

    def __init__(self, path: str | Path, default_restaurant_url: str) -> None:
        self._path = Path(path).expanduser()
        self._default_restaurant_url = assert_restaurant_url(default_restaurant_url)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> FlowState:
        """Read the stored state; a missing file starts a fresh conversation."""
        if not self._path.exists():
            return FlowState(selected_restaurant_url=self._default_restaurant_url)
        raw = json.loads(self._path.read_text(encoding="utf-8"))
        return normalize_flow_state(raw, self._default_restaurant_url)

    def save(self, state: FlowState) -> None:
        write_json_atomic(self._path, state.to_json_dict())
        logger.debug("flow_state_saved", path=str(self._path), stage=state.stage.value)

    @contextmanager
    def transaction(self) -> Iterator[FlowState]:
        """Yield the loaded state and save it only if the block succeeds."""
        state = self.load()
        yield state
        self.save(state)
