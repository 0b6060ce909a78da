from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

from packages.shared.schemas.order import (
    OrderLineV1,
    OrderStateV1,
    OrderV1,
    PaymentV1,
    ShippingAddressV1,
    ShippingMethodV1,
)
from services.api.app.services.order_base import (
    OrderErrorCode,
    OrderErrorResult,
    OrderResult,
    OrderServiceProtocolError,
    OrderServiceUnavailableError,
    OrderSessionContext,
)

logger = logging.getLogger(__name__)

SESSION_TOKEN_HEADER = "vendure-token"

_ORDER_FIELDS = """
fragment OrderFields on Order {
    __typename
    id
    code
    state
    active
    currencyCode
    subTotalWithTax
    shippingWithTax
    totalWithTax
    lines {
        id
        quantity
        linePriceWithTax
        productVariant { id name sku }
    }
    shippingAddress {
        fullName
        company
        streetLine1
        streetLine2
        city
        province
        postalCode
        countryCode
        phoneNumber
    }
    shippingLines {
        price
        priceWithTax
        shippingMethod { id name description }
    }
    payments { id method amount state transactionId errorMessage }
}
"""

_ERROR_FIELDS = """
    ... on ErrorResult { __typename errorCode message }
"""

ACTIVE_ORDER = (
    _ORDER_FIELDS
    + """
query GetActiveOrder {
    activeOrder { ...OrderFields }
}
"""
)

SET_ORDER_SHIPPING_ADDRESS = (
    _ORDER_FIELDS
    + """
mutation SetOrderShippingAddress($input: CreateAddressInput!) {
    setOrderShippingAddress(input: $input) {
        ... on Order { ...OrderFields }
"""
    + _ERROR_FIELDS
    + """
    }
}
"""
)

ELIGIBLE_SHIPPING_METHODS = """
query GetEligibleShippingMethods {
    eligibleShippingMethods { id name description price priceWithTax }
}
"""

SET_ORDER_SHIPPING_METHOD = (
    _ORDER_FIELDS
    + """
mutation SetOrderShippingMethod($shippingMethodId: [ID!]!) {
    setOrderShippingMethod(shippingMethodId: $shippingMethodId) {
        ... on Order { ...OrderFields }
"""
    + _ERROR_FIELDS
    + """
    }
}
"""
)

TRANSITION_ORDER_TO_STATE = (
    _ORDER_FIELDS
    + """
mutation TransitionOrderToState($state: String!) {
    transitionOrderToState(state: $state) {
        ... on Order { ...OrderFields }
        ... on OrderStateTransitionError {
            __typename errorCode message transitionError fromState toState
        }
"""
    + _ERROR_FIELDS
    + """
    }
}
"""
)

CREATE_STRIPE_PAYMENT_INTENT = """
mutation CreateStripePaymentIntent {
    createStripePaymentIntent
}
"""

ADD_PAYMENT_TO_ORDER = (
    _ORDER_FIELDS
    + """
mutation AddPaymentToOrder($input: PaymentInput!) {
    addPaymentToOrder(input: $input) {
        ... on Order { ...OrderFields }
        ... on PaymentFailedError { __typename errorCode message paymentErrorMessage }
        ... on PaymentDeclinedError { __typename errorCode message paymentErrorMessage }
        ... on OrderStateTransitionError {
            __typename errorCode message transitionError fromState toState
        }
"""
    + _ERROR_FIELDS
    + """
    }
}
"""
)

ORDER_BY_CODE = (
    _ORDER_FIELDS
    + """
query GetOrderByCode($code: String!) {
    orderByCode(code: $code) { ...OrderFields }
}
"""
)


@dataclass(frozen=True, slots=True)
class _VendureConfig:
    shop_api_url: str
    timeout_seconds: float


class VendureOrderService:
    """Order service backed by the Vendure Shop API.

    Env vars:
    - UNICLIMA_ORDER_SERVICE=vendure
    - UNICLIMA_VENDURE_SHOP_API (default: http://localhost:3001/shop-api)
    - UNICLIMA_VENDURE_TIMEOUT_SECONDS (default: 15)
    """

    vendor = "VENDURE"

    def __init__(self, cfg: _VendureConfig, transport: httpx.BaseTransport | None = None) -> None:
        self._cfg = cfg
        self._transport = transport

    @classmethod
    def from_env(cls, transport: httpx.BaseTransport | None = None) -> "VendureOrderService":
        return cls(
            _VendureConfig(
                shop_api_url=os.getenv(
                    "UNICLIMA_VENDURE_SHOP_API", "http://localhost:3001/shop-api"
                ).rstrip("/"),
                timeout_seconds=float(os.getenv("UNICLIMA_VENDURE_TIMEOUT_SECONDS", "15")),
            ),
            transport=transport,
        )

    def active_order(self, ctx: OrderSessionContext) -> OrderV1 | None:
        data = self._query(ctx, ACTIVE_ORDER, {})
        raw = data.get("activeOrder")
        return _parse_order(raw) if raw else None

    def set_shipping_address(self, ctx: OrderSessionContext, address: ShippingAddressV1) -> OrderResult:
        variables = {
            "input": {
                "fullName": address.full_name,
                "company": address.company,
                "streetLine1": address.street_line1,
                "streetLine2": address.street_line2,
                "city": address.city,
                "province": address.province,
                "postalCode": address.postal_code,
                "countryCode": address.country_code,
                "phoneNumber": address.phone_number,
            }
        }
        return self._mutate(ctx, SET_ORDER_SHIPPING_ADDRESS, variables, "setOrderShippingAddress")

    def eligible_shipping_methods(self, ctx: OrderSessionContext) -> list[ShippingMethodV1]:
        data = self._query(ctx, ELIGIBLE_SHIPPING_METHODS, {})
        methods = data.get("eligibleShippingMethods") or []
        try:
            return [
                ShippingMethodV1(
                    id=str(m["id"]),
                    name=m.get("name") or "",
                    description=m.get("description") or "",
                    price=int(m["price"]),
                    price_with_tax=int(m["priceWithTax"]),
                )
                for m in methods
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise OrderServiceProtocolError(f"eligibleShippingMethods: {e}") from e

    def set_shipping_method(self, ctx: OrderSessionContext, method_id: str) -> OrderResult:
        return self._mutate(
            ctx, SET_ORDER_SHIPPING_METHOD, {"shippingMethodId": [method_id]}, "setOrderShippingMethod"
        )

    def transition_order_to_state(self, ctx: OrderSessionContext, state: OrderStateV1) -> OrderResult:
        return self._mutate(
            ctx, TRANSITION_ORDER_TO_STATE, {"state": state.value}, "transitionOrderToState"
        )

    def create_payment_intent(
        self, ctx: OrderSessionContext, *, idempotency_key: str
    ) -> str | OrderErrorResult:
        payload = self._post(
            ctx,
            CREATE_STRIPE_PAYMENT_INTENT,
            {},
            extra_headers={"Idempotency-Key": idempotency_key},
        )
        errors = payload.get("errors")
        if errors:
            # The Stripe plugin reports a wrong order state as a plain GraphQL error.
            return OrderErrorResult(
                error_code=OrderErrorCode.ORDER_PAYMENT_STATE_ERROR,
                message=_first_message(errors),
            )

        secret = (payload.get("data") or {}).get("createStripePaymentIntent")
        if not isinstance(secret, str) or not secret:
            raise OrderServiceProtocolError("createStripePaymentIntent returned no client secret")
        return secret

    def add_payment_to_order(
        self, ctx: OrderSessionContext, *, method: str, metadata: dict[str, Any]
    ) -> OrderResult:
        variables = {"input": {"method": method, "metadata": metadata}}
        return self._mutate(ctx, ADD_PAYMENT_TO_ORDER, variables, "addPaymentToOrder")

    def order_by_code(self, ctx: OrderSessionContext, code: str) -> OrderV1 | None:
        data = self._query(ctx, ORDER_BY_CODE, {"code": code})
        raw = data.get("orderByCode")
        return _parse_order(raw) if raw else None

    def _query(self, ctx: OrderSessionContext, document: str, variables: dict) -> dict[str, Any]:
        payload = self._post(ctx, document, variables)
        errors = payload.get("errors")
        if errors:
            raise OrderServiceProtocolError(_first_message(errors))
        return payload.get("data") or {}

    def _mutate(
        self, ctx: OrderSessionContext, document: str, variables: dict, field: str
    ) -> OrderResult:
        payload = self._post(ctx, document, variables)
        errors = payload.get("errors")
        if errors:
            if any(_error_code(e) == "BAD_USER_INPUT" for e in errors):
                return OrderErrorResult(
                    error_code=OrderErrorCode.VALIDATION_ERROR, message=_first_message(errors)
                )
            raise OrderServiceProtocolError(_first_message(errors))

        raw = (payload.get("data") or {}).get(field)
        if not isinstance(raw, dict):
            raise OrderServiceProtocolError(f"{field} returned {raw!r}")
        return _parse_result(raw)

    def _post(
        self,
        ctx: OrderSessionContext,
        document: str,
        variables: dict,
        *,
        extra_headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if ctx.token:
            headers[SESSION_TOKEN_HEADER] = ctx.token
        if ctx.auth_token:
            headers["Authorization"] = f"Bearer {ctx.auth_token}"
        headers.update(extra_headers or {})

        try:
            with httpx.Client(timeout=self._cfg.timeout_seconds, transport=self._transport) as client:
                response = client.post(
                    self._cfg.shop_api_url,
                    json={"query": document, "variables": variables},
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise OrderServiceUnavailableError(str(e)) from e

        if response.status_code >= 500:
            raise OrderServiceUnavailableError(f"HTTP {response.status_code}")

        ctx.capture_token(response.headers.get(SESSION_TOKEN_HEADER))

        try:
            payload = response.json()
        except ValueError as e:
            raise OrderServiceProtocolError(f"non-JSON body (HTTP {response.status_code})") from e

        if not isinstance(payload, dict):
            raise OrderServiceProtocolError(f"unexpected body {payload!r}")

        for error in payload.get("errors") or []:
            logger.warning("GraphQL error: %s", error.get("message"))
        return payload


def _error_code(error: dict) -> str | None:
    return (error.get("extensions") or {}).get("code")


def _first_message(errors: list[dict]) -> str:
    return str(errors[0].get("message") or "GraphQL error")


def _parse_result(raw: dict[str, Any]) -> OrderResult:
    if raw.get("errorCode"):
        try:
            return OrderErrorResult(
                error_code=OrderErrorCode(raw["errorCode"]),
                message=raw.get("message") or "",
                payment_error_message=raw.get("paymentErrorMessage"),
                transition_error=raw.get("transitionError"),
                from_state=raw.get("fromState"),
                to_state=raw.get("toState"),
            )
        except ValueError as e:
            raise OrderServiceProtocolError(f"unknown errorCode {raw['errorCode']!r}") from e
    return _parse_order(raw)


def _parse_order(raw: dict[str, Any]) -> OrderV1:
    try:
        address = raw.get("shippingAddress") or None
        shipping_lines = raw.get("shippingLines") or []
        method = None
        if shipping_lines:
            first = shipping_lines[0]
            sm = first.get("shippingMethod") or {}
            method = ShippingMethodV1(
                id=str(sm["id"]),
                name=sm.get("name") or "",
                description=sm.get("description") or "",
                price=int(first.get("price") or 0),
                price_with_tax=int(first.get("priceWithTax") or 0),
            )

        return OrderV1(
            id=str(raw["id"]),
            code=raw["code"],
            state=OrderStateV1(raw["state"]),
            active=bool(raw.get("active", True)),
            currency_code=raw.get("currencyCode") or "EUR",
            sub_total=int(raw.get("subTotalWithTax") or 0),
            shipping=int(raw.get("shippingWithTax") or 0),
            total_with_tax=int(raw.get("totalWithTax") or 0),
            lines=[
                OrderLineV1(
                    id=str(line["id"]),
                    variant_id=str(line["productVariant"]["id"]),
                    name=line["productVariant"].get("name") or "",
                    sku=line["productVariant"].get("sku"),
                    quantity=int(line["quantity"]),
                    line_total=int(line.get("linePriceWithTax") or 0),
                )
                for line in raw.get("lines") or []
            ],
            payments=[
                PaymentV1(
                    id=str(p["id"]),
                    method=p["method"],
                    amount=int(p["amount"]),
                    state=p["state"],
                    transaction_id=p.get("transactionId"),
                    error_message=p.get("errorMessage"),
                )
                for p in raw.get("payments") or []
            ],
            shipping_address=(
                ShippingAddressV1(
                    full_name=address.get("fullName") or "",
                    company=address.get("company"),
                    street_line1=address.get("streetLine1") or "",
                    street_line2=address.get("streetLine2"),
                    city=address.get("city") or "",
                    province=address.get("province"),
                    postal_code=address.get("postalCode") or "",
                    country_code=address.get("countryCode") or "",
                    phone_number=address.get("phoneNumber"),
                )
                if address and address.get("streetLine1")
                else None
            ),
            shipping_method=method,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise OrderServiceProtocolError(f"malformed Order: {e}") from e
