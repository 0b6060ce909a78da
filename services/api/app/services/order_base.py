from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel

from packages.shared.schemas.order import OrderStateV1, OrderV1, ShippingAddressV1, ShippingMethodV1


class OrderServiceError(Exception):
    """Base class for order service transport errors."""


class OrderServiceUnavailableError(OrderServiceError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Order service unreachable: {detail}")
        self.detail = detail


class OrderServiceProtocolError(OrderServiceError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Unexpected order service response: {detail}")
        self.detail = detail


class OrderErrorCode(str, Enum):
    NO_ACTIVE_ORDER_ERROR = "NO_ACTIVE_ORDER_ERROR"
    ORDER_MODIFICATION_ERROR = "ORDER_MODIFICATION_ERROR"
    INELIGIBLE_SHIPPING_METHOD_ERROR = "INELIGIBLE_SHIPPING_METHOD_ERROR"
    ORDER_PAYMENT_STATE_ERROR = "ORDER_PAYMENT_STATE_ERROR"
    INELIGIBLE_PAYMENT_METHOD_ERROR = "INELIGIBLE_PAYMENT_METHOD_ERROR"
    PAYMENT_FAILED_ERROR = "PAYMENT_FAILED_ERROR"
    PAYMENT_DECLINED_ERROR = "PAYMENT_DECLINED_ERROR"
    ORDER_STATE_TRANSITION_ERROR = "ORDER_STATE_TRANSITION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class OrderErrorResult(BaseModel):
    """One of the named error variants of the order service's result unions."""

    error_code: OrderErrorCode
    message: str = ""
    payment_error_message: str | None = None
    transition_error: str | None = None
    from_state: str | None = None
    to_state: str | None = None


OrderResult = OrderV1 | OrderErrorResult


@dataclass(slots=True)
class OrderSessionContext:
    """Per-attempt credentials for the order service.

    `token` is the cart session token the backend hands out in response headers; it
    is captured once and then only ever read for the rest of the attempt.
    """

    token: str | None = None
    auth_token: str | None = None

    def capture_token(self, token: str | None) -> None:
        if token and self.token is None:
            self.token = token


class OrderService(Protocol):
    vendor: str

    def active_order(self, ctx: OrderSessionContext) -> OrderV1 | None: ...

    def set_shipping_address(
        self, ctx: OrderSessionContext, address: ShippingAddressV1
    ) -> OrderResult: ...

    def eligible_shipping_methods(self, ctx: OrderSessionContext) -> list[ShippingMethodV1]: ...

    def set_shipping_method(self, ctx: OrderSessionContext, method_id: str) -> OrderResult: ...

    def transition_order_to_state(
        self, ctx: OrderSessionContext, state: OrderStateV1
    ) -> OrderResult: ...

    def create_payment_intent(
        self, ctx: OrderSessionContext, *, idempotency_key: str
    ) -> str | OrderErrorResult: ...

    def add_payment_to_order(
        self, ctx: OrderSessionContext, *, method: str, metadata: dict[str, Any]
    ) -> OrderResult: ...

    def order_by_code(self, ctx: OrderSessionContext, code: str) -> OrderV1 | None: ...
