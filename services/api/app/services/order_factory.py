from __future__ import annotations

import os
import threading

from services.api.app.services.order_base import OrderService
from services.api.app.services.order_mock import InMemoryOrderService

_MOCK_SERVICE: InMemoryOrderService | None = None
_MOCK_LOCK = threading.Lock()


def _mock_order_service() -> InMemoryOrderService:
    global _MOCK_SERVICE

    # Carts live in memory, so every request in the process must see the same instance.
    with _MOCK_LOCK:
        if _MOCK_SERVICE is None:
            _MOCK_SERVICE = InMemoryOrderService(auto_cart=True)
        return _MOCK_SERVICE


def get_order_service() -> OrderService:
    """Select the order service based on env vars.

    Defaults to the in-memory service so tests and local dev are deterministic unless
    explicitly configured otherwise.
    """

    mode = os.getenv("UNICLIMA_ORDER_SERVICE", "mock").strip().lower()

    if mode == "mock":
        return _mock_order_service()

    if mode == "vendure":
        from services.api.app.services.order_vendure import VendureOrderService

        return VendureOrderService.from_env()

    raise ValueError(f"Unknown UNICLIMA_ORDER_SERVICE={mode!r}. Expected mock or vendure.")
