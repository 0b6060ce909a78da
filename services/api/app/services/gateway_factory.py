from __future__ import annotations

import os
import threading

from services.api.app.services.gateway_base import PaymentGateway
from services.api.app.services.gateway_mock import MockPaymentGateway

_MOCK_GATEWAY: MockPaymentGateway | None = None
_MOCK_LOCK = threading.Lock()


def _mock_gateway() -> MockPaymentGateway:
    global _MOCK_GATEWAY

    with _MOCK_LOCK:
        if _MOCK_GATEWAY is None:
            _MOCK_GATEWAY = MockPaymentGateway()
        return _MOCK_GATEWAY


def get_payment_gateway() -> PaymentGateway:
    """Select a payment gateway based on env vars.

    Defaults to the mock gateway so tests and local dev never touch Stripe unless
    explicitly configured otherwise.
    """

    mode = os.getenv("UNICLIMA_PAYMENT_GATEWAY", "mock").strip().lower()

    if mode == "mock":
        return _mock_gateway()

    if mode == "stripe":
        from services.api.app.services.gateway_stripe import StripePaymentGateway

        return StripePaymentGateway.from_env()

    raise ValueError(f"Unknown UNICLIMA_PAYMENT_GATEWAY={mode!r}. Expected mock or stripe.")
