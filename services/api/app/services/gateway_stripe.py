from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from services.api.app.services.gateway_base import (
    GatewayResult,
    GatewayStatus,
    PaymentGatewayKeyMissingError,
    PaymentGatewayUnavailableError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class _StripeConfig:
    publishable_key: str
    api_base: str
    timeout_seconds: float
    locale: str


class StripePaymentGateway:
    """Confirms PaymentIntents the way Stripe.js does in the browser.

    Only the publishable key and the intent's client secret are used; the secret key
    stays with the commerce backend that created the intent.

    Env vars:
    - UNICLIMA_PAYMENT_GATEWAY=stripe
    - UNICLIMA_STRIPE_PUBLISHABLE_KEY (required)
    - UNICLIMA_STRIPE_API_BASE (default: https://api.stripe.com)
    - UNICLIMA_STRIPE_TIMEOUT_SECONDS (default: 20)
    """

    vendor = "STRIPE"

    def __init__(self, cfg: _StripeConfig, transport: httpx.BaseTransport | None = None) -> None:
        self._cfg = cfg
        self._transport = transport

    @classmethod
    def from_env(cls, transport: httpx.BaseTransport | None = None) -> "StripePaymentGateway":
        key = os.getenv("UNICLIMA_STRIPE_PUBLISHABLE_KEY", "").strip()
        if not key:
            raise PaymentGatewayKeyMissingError()

        return cls(
            _StripeConfig(
                publishable_key=key,
                api_base=os.getenv("UNICLIMA_STRIPE_API_BASE", "https://api.stripe.com").rstrip("/"),
                timeout_seconds=float(os.getenv("UNICLIMA_STRIPE_TIMEOUT_SECONDS", "20")),
                locale="es",
            ),
            transport=transport,
        )

    def confirm_payment(
        self, client_secret: str, payment_method: str, *, return_url: str | None = None
    ) -> GatewayResult:
        intent_id = _intent_id(client_secret)
        form = {
            "client_secret": client_secret,
            "payment_method": payment_method,
            "expected_payment_method_type": "card",
        }
        if return_url:
            form["return_url"] = return_url

        logger.info("Confirming payment intent %s", intent_id)
        payload = self._request("POST", f"/v1/payment_intents/{intent_id}/confirm", data=form)
        return _result_from_payload(intent_id, payload)

    def retrieve_payment(self, client_secret: str) -> GatewayResult:
        intent_id = _intent_id(client_secret)
        payload = self._request(
            "GET", f"/v1/payment_intents/{intent_id}", params={"client_secret": client_secret}
        )
        return _result_from_payload(intent_id, payload)

    def _request(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self._cfg.publishable_key}",
            "Stripe-Locale": self._cfg.locale,
        }
        try:
            with httpx.Client(
                base_url=self._cfg.api_base,
                timeout=self._cfg.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = client.request(method, path, data=data, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise PaymentGatewayUnavailableError(str(e)) from e

        if response.status_code >= 500:
            raise PaymentGatewayUnavailableError(f"Stripe HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise PaymentGatewayUnavailableError(f"Stripe returned non-JSON body: {e}") from e

        if not isinstance(payload, dict):
            raise PaymentGatewayUnavailableError(f"Unexpected Stripe payload: {payload!r}")
        return payload


def _intent_id(client_secret: str) -> str:
    return client_secret.split("_secret_", 1)[0]


def _result_from_payload(intent_id: str, payload: dict[str, Any]) -> GatewayResult:
    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("decline_code") or error.get("code") or "default"
        return GatewayResult(
            status=GatewayStatus.FAILED,
            payment_reference=intent_id,
            error_code=str(code),
            message=error.get("message"),
        )

    status = payload.get("status")
    reference = str(payload.get("id") or intent_id)

    if status == "succeeded":
        return GatewayResult(status=GatewayStatus.SUCCEEDED, payment_reference=reference)

    if status == "requires_capture":
        return GatewayResult(status=GatewayStatus.SUCCEEDED, payment_reference=reference, captured=False)

    if status in ("requires_action", "processing"):
        next_action = payload.get("next_action") or {}
        redirect = (next_action.get("redirect_to_url") or {}).get("url")
        return GatewayResult(
            status=GatewayStatus.REQUIRES_ACTION,
            payment_reference=reference,
            redirect_url=redirect,
        )

    last_error = payload.get("last_payment_error") or {}
    code = last_error.get("decline_code") or last_error.get("code") or "default"
    return GatewayResult(
        status=GatewayStatus.FAILED,
        payment_reference=reference,
        error_code=str(code),
        message=last_error.get("message") or f"PaymentIntent status {status!r}",
    )
