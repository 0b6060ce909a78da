from __future__ import annotations

import threading
from typing import Any
from uuid import uuid4

from packages.shared.schemas.order import (
    OrderLineV1,
    OrderStateV1,
    OrderV1,
    PaymentStateV1,
    PaymentV1,
    ShippingAddressV1,
    ShippingMethodV1,
)
from services.api.app.services.order_base import (
    OrderErrorCode,
    OrderErrorResult,
    OrderResult,
    OrderServiceUnavailableError,
    OrderSessionContext,
)

# Shipping zones as configured in the backend seed: peninsular Spain and Portugal only.
_DEFAULT_ZONES: dict[str, list[ShippingMethodV1]] = {
    "ES": [
        ShippingMethodV1(
            id="sm1",
            name="Envío estándar",
            description="Entrega en 24/72h laborables",
            price=500,
            price_with_tax=605,
        )
    ],
    "PT": [
        ShippingMethodV1(
            id="sm2",
            name="Envío Portugal",
            description="Entrega en 3/5 días laborables",
            price=900,
            price_with_tax=1089,
        )
    ],
}

_KNOWN_COUNTRIES = {"ES", "PT", "FR", "DE", "IT", "GB", "US", "AD"}

_DEFAULT_CART: list[tuple[str, str, int, int]] = [
    ("var-fil-ac-001", "Filtro de aire acondicionado", 2, 2500),
    ("var-term-dig-002", "Termostato digital", 1, 8900),
]


class InMemoryOrderService:
    """Deterministic stand-in for the commerce backend.

    Orders are keyed by session token. Faults can be queued per operation name with
    `fail_next` so tests can exercise transport failures without a network.
    """

    vendor = "MOCK_ORDERS"

    def __init__(
        self,
        zones: dict[str, list[ShippingMethodV1]] | None = None,
        *,
        auto_cart: bool = False,
    ) -> None:
        self._zones = zones if zones is not None else _DEFAULT_ZONES
        self._orders: dict[str, OrderV1] = {}
        self._intents: dict[str, dict[str, Any]] = {}
        self._intents_by_key: dict[str, str] = {}
        self._faults: dict[str, list[Exception]] = {}
        self._next_id = 1
        self._next_secret = 1
        self._lock = threading.RLock()

        # Local dev: sessions without a cart get the default one on first read.
        self.auto_cart = auto_cart
        self.authorize_only = False
        self.calls: list[str] = []

    # Test and dev helpers

    def start_cart(
        self,
        ctx: OrderSessionContext,
        lines: list[tuple[str, str, int, int]] | None = None,
    ) -> OrderV1:
        """Create an active order as the add-to-cart flow would and bind it to ctx."""

        with self._lock:
            token = ctx.token or uuid4().hex
            ctx.capture_token(token)

            order_lines = [
                OrderLineV1(
                    id=f"line-{i}",
                    variant_id=variant_id,
                    name=name,
                    quantity=quantity,
                    line_total=unit_price * quantity,
                )
                for i, (variant_id, name, quantity, unit_price) in enumerate(
                    lines if lines is not None else _DEFAULT_CART, start=1
                )
            ]
            order = OrderV1(
                id=str(self._next_id),
                code=uuid4().hex[:16].upper(),
                state=OrderStateV1.ADDING_ITEMS,
                lines=order_lines,
            )
            self._next_id += 1
            self._orders[token] = _with_totals(order)
            return self._orders[token]

    def fail_next(self, operation: str, exc: Exception | None = None, times: int = 1) -> None:
        queue = self._faults.setdefault(operation, [])
        for _ in range(times):
            queue.append(exc or OrderServiceUnavailableError(f"injected failure in {operation}"))

    def force_state(self, ctx: OrderSessionContext, state: OrderStateV1) -> None:
        """Simulate another tab or a webhook moving the order underneath the session."""

        with self._lock:
            order = self._require(ctx)
            self._orders[ctx.token or ""] = order.model_copy(update={"state": state})

    def add_line(self, ctx: OrderSessionContext, variant_id: str, quantity: int, unit_price: int) -> None:
        with self._lock:
            order = self._require(ctx)
            line = OrderLineV1(
                id=f"line-{len(order.lines) + 1}",
                variant_id=variant_id,
                quantity=quantity,
                line_total=quantity * unit_price,
            )
            self._orders[ctx.token or ""] = _with_totals(
                order.model_copy(update={"lines": [*order.lines, line]})
            )

    # OrderService

    def active_order(self, ctx: OrderSessionContext) -> OrderV1 | None:
        self._enter("active_order")
        order = self._orders.get(ctx.token or "")
        if order is None and self.auto_cart:
            return self.start_cart(ctx)
        if order is None or not order.active:
            return None
        return order

    def set_shipping_address(self, ctx: OrderSessionContext, address: ShippingAddressV1) -> OrderResult:
        self._enter("set_shipping_address")
        with self._lock:
            order = self._orders.get(ctx.token or "")
            if order is None or not order.active:
                return _no_active_order()

            if order.state != OrderStateV1.ADDING_ITEMS:
                return OrderErrorResult(
                    error_code=OrderErrorCode.ORDER_MODIFICATION_ERROR,
                    message=f'Order "{order.code}" may not be modified in the current state',
                )

            country = address.country_code.upper()
            if country not in _KNOWN_COUNTRIES:
                return OrderErrorResult(
                    error_code=OrderErrorCode.VALIDATION_ERROR,
                    message=f'The countryCode "{address.country_code}" was not recognized',
                )

            method = order.shipping_method
            if method is not None and method.id not in {m.id for m in self._zones.get(country, [])}:
                method = None

            updated = order.model_copy(
                update={
                    "shipping_address": address.model_copy(update={"country_code": country}),
                    "shipping_method": method,
                }
            )
            self._orders[ctx.token or ""] = _with_totals(updated)
            return self._orders[ctx.token or ""]

    def eligible_shipping_methods(self, ctx: OrderSessionContext) -> list[ShippingMethodV1]:
        self._enter("eligible_shipping_methods")
        order = self._orders.get(ctx.token or "")
        if order is None or order.shipping_address is None:
            return []
        return list(self._zones.get(order.shipping_address.country_code, []))

    def set_shipping_method(self, ctx: OrderSessionContext, method_id: str) -> OrderResult:
        self._enter("set_shipping_method")
        with self._lock:
            order = self._orders.get(ctx.token or "")
            if order is None or not order.active:
                return _no_active_order()

            if order.state != OrderStateV1.ADDING_ITEMS:
                return OrderErrorResult(
                    error_code=OrderErrorCode.ORDER_MODIFICATION_ERROR,
                    message=f'Order "{order.code}" may not be modified in the current state',
                )

            country = order.shipping_address.country_code if order.shipping_address else ""
            method = next((m for m in self._zones.get(country, []) if m.id == method_id), None)
            if method is None:
                return OrderErrorResult(
                    error_code=OrderErrorCode.INELIGIBLE_SHIPPING_METHOD_ERROR,
                    message="This Order is not eligible for the selected ShippingMethod",
                )

            self._orders[ctx.token or ""] = _with_totals(
                order.model_copy(update={"shipping_method": method})
            )
            return self._orders[ctx.token or ""]

    def transition_order_to_state(self, ctx: OrderSessionContext, state: OrderStateV1) -> OrderResult:
        self._enter("transition_order_to_state")
        with self._lock:
            order = self._orders.get(ctx.token or "")
            if order is None or not order.active:
                return _no_active_order()

            problem = None
            if state == OrderStateV1.ARRANGING_PAYMENT:
                if order.state != OrderStateV1.ADDING_ITEMS:
                    problem = f'Cannot transition Order from "{order.state.value}" to "{state.value}"'
                elif not order.lines:
                    problem = "Cannot transition Order to the \"ArrangingPayment\" state when it is empty"
                elif order.shipping_method is None:
                    problem = (
                        "Cannot transition Order to the \"ArrangingPayment\" state when it has no "
                        "ShippingMethod"
                    )
            elif state == OrderStateV1.ADDING_ITEMS:
                if order.state != OrderStateV1.ARRANGING_PAYMENT:
                    problem = f'Cannot transition Order from "{order.state.value}" to "{state.value}"'
            else:
                problem = f'Cannot transition Order from "{order.state.value}" to "{state.value}"'

            if problem is not None:
                return OrderErrorResult(
                    error_code=OrderErrorCode.ORDER_STATE_TRANSITION_ERROR,
                    message="Cannot transition Order state",
                    transition_error=problem,
                    from_state=order.state.value,
                    to_state=state.value,
                )

            self._orders[ctx.token or ""] = order.model_copy(update={"state": state})
            return self._orders[ctx.token or ""]

    def create_payment_intent(
        self, ctx: OrderSessionContext, *, idempotency_key: str
    ) -> str | OrderErrorResult:
        self._enter("create_payment_intent")
        with self._lock:
            order = self._orders.get(ctx.token or "")
            if order is None or not order.active:
                return _no_active_order()

            if order.state != OrderStateV1.ARRANGING_PAYMENT:
                return OrderErrorResult(
                    error_code=OrderErrorCode.ORDER_PAYMENT_STATE_ERROR,
                    message="A Payment may only be added when Order is in \"ArrangingPayment\" state",
                )

            existing = self._intents_by_key.get(idempotency_key)
            if existing is not None:
                return existing

            secret = f"cs_test_{self._next_secret}"
            self._next_secret += 1
            self._intents[secret] = {"order_code": order.code, "amount": order.total_with_tax}
            self._intents_by_key[idempotency_key] = secret
            return secret

    @property
    def intents_created(self) -> int:
        return len(self._intents)

    def add_payment_to_order(
        self, ctx: OrderSessionContext, *, method: str, metadata: dict[str, Any]
    ) -> OrderResult:
        self._enter("add_payment_to_order")
        with self._lock:
            order = self._orders.get(ctx.token or "")
            if order is None or not order.active:
                return _no_active_order()

            if method != "stripe":
                return OrderErrorResult(
                    error_code=OrderErrorCode.INELIGIBLE_PAYMENT_METHOD_ERROR,
                    message=f'The payment method "{method}" is not eligible',
                )

            if order.state != OrderStateV1.ARRANGING_PAYMENT:
                return OrderErrorResult(
                    error_code=OrderErrorCode.ORDER_PAYMENT_STATE_ERROR,
                    message="A Payment may only be added when Order is in \"ArrangingPayment\" state",
                )

            intent_ref = str(metadata.get("paymentIntentId") or "")
            intent = next(
                (v for k, v in self._intents.items() if k.split("_secret_", 1)[0] == intent_ref),
                None,
            )
            if intent is None or intent["order_code"] != order.code:
                return OrderErrorResult(
                    error_code=OrderErrorCode.PAYMENT_FAILED_ERROR,
                    message="The payment failed",
                    payment_error_message=f"Unknown payment intent {intent_ref!r}",
                )

            if intent["amount"] != order.total_with_tax:
                return OrderErrorResult(
                    error_code=OrderErrorCode.PAYMENT_FAILED_ERROR,
                    message="The payment failed",
                    payment_error_message="Payment amount does not match the order total",
                )

            payment_state = PaymentStateV1.AUTHORIZED if self.authorize_only else PaymentStateV1.SETTLED
            order_state = (
                OrderStateV1.PAYMENT_AUTHORIZED if self.authorize_only else OrderStateV1.PAYMENT_SETTLED
            )
            payment = PaymentV1(
                id=f"pay-{len(order.payments) + 1}",
                method=method,
                amount=order.total_with_tax,
                state=payment_state,
                transaction_id=intent_ref,
            )
            self._orders[ctx.token or ""] = order.model_copy(
                update={
                    "state": order_state,
                    "active": False,
                    "payments": [*order.payments, payment],
                }
            )
            return self._orders[ctx.token or ""]

    def order_by_code(self, ctx: OrderSessionContext, code: str) -> OrderV1 | None:
        del ctx
        self._enter("order_by_code")
        return next((o for o in self._orders.values() if o.code == code), None)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        queue = self._faults.get(operation)
        if queue:
            raise queue.pop(0)

    def _require(self, ctx: OrderSessionContext) -> OrderV1:
        order = self._orders.get(ctx.token or "")
        if order is None:
            raise KeyError("No order for this session")
        return order


def _no_active_order() -> OrderErrorResult:
    return OrderErrorResult(
        error_code=OrderErrorCode.NO_ACTIVE_ORDER_ERROR,
        message="There is no active Order associated with the current session",
    )


def _with_totals(order: OrderV1) -> OrderV1:
    sub_total = sum(line.line_total for line in order.lines)
    shipping = order.shipping_method.price_with_tax if order.shipping_method else 0
    return order.model_copy(
        update={"sub_total": sub_total, "shipping": shipping, "total_with_tax": sub_total + shipping}
    )
