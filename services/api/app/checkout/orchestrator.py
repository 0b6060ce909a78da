"""Checkout orchestration.

One `CheckoutOrchestrator` drives one `CheckoutSession` through address, shipping,
payment and confirmation against the remote order service and the payment gateway.
Every step decision is taken from the last server response, never from the cart cache.
Mutating operations are serialized per session: a call that arrives while another one
is running is rejected instead of queued.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, NoReturn, TypeVar
from urllib.parse import quote

from packages.shared.schemas.checkout import (
    CheckoutStatusV1,
    CheckoutStepV1,
    PaymentOutcomeStatusV1,
    PaymentOutcomeV1,
)
from packages.shared.schemas.events import EntityTypeV1, EventTypeV1
from packages.shared.schemas.order import (
    OrderStateV1,
    OrderV1,
    PaymentIntentV1,
    PaymentStateV1,
    PaymentV1,
    ShippingAddressV1,
    ShippingMethodV1,
)
from services.api.app.checkout.address import validate_address
from services.api.app.checkout.audit import CheckoutAuditLog
from services.api.app.checkout.cart_cache import ActiveOrderCache
from services.api.app.checkout.errors import (
    RECONCILIATION_MESSAGE,
    STATE_CONFLICT_MESSAGE,
    CheckoutError,
    ConcurrentIntentError,
    GatewayError,
    NetworkError,
    NoShippingAvailableError,
    OrderTerminalError,
    OutOfSequenceError,
    PaymentReconciliationError,
    StaleSelectionError,
    StateConflictError,
    ValidationError,
    gateway_message,
    is_instrument_error,
    translate_order_error,
)
from services.api.app.checkout.retry import retry_idempotent
from services.api.app.checkout.session import CheckoutSession
from services.api.app.services.gateway_base import (
    GatewayResult,
    GatewayStatus,
    PaymentGateway,
    PaymentGatewayError,
)
from services.api.app.services.order_base import (
    OrderErrorCode,
    OrderErrorResult,
    OrderResult,
    OrderService,
    OrderServiceProtocolError,
    OrderServiceUnavailableError,
    OrderSessionContext,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAYMENT_METHOD_CODE = "stripe"


def _mask(secret: str) -> str:
    return f"{secret[:7]}***"


class CheckoutOrchestrator:
    def __init__(
        self,
        session: CheckoutSession,
        order_service: OrderService,
        gateway: PaymentGateway,
        *,
        audit: CheckoutAuditLog | None = None,
        storefront_url: str | None = None,
    ) -> None:
        self.session = session
        self._orders = order_service
        self._gateway = gateway
        self._audit = audit
        self._storefront_url = (
            storefront_url or os.getenv("UNICLIMA_STOREFRONT_URL", "http://localhost:3000")
        ).rstrip("/")
        self.cart = ActiveOrderCache(self._fetch_active_order)

    # Session lifecycle

    def start(self) -> OrderV1:
        """Bind the session to the server's active order and open the first attempt."""

        with self._exclusive():
            order = self._current_order()
            if self._audit is not None:
                self._audit.start_attempt(
                    self.session,
                    order_code=order.code,
                    order_service=self._orders.vendor,
                    payment_gateway=self._gateway.vendor,
                )
            self._record(EventTypeV1.ATTEMPT_STARTED, {"order_code": order.code, "state": order.state.value})
            return order

    def reset(self) -> CheckoutStatusV1:
        """Abandon the current attempt locally. No remote call is made."""

        with self._exclusive():
            self._reset_locked("RESET")
        return self.status(refresh=False)

    # Steps

    def submit_shipping_address(self, address: ShippingAddressV1) -> list[ShippingMethodV1]:
        """Attach `address` to the order and return the eligible shipping methods for it."""

        with self._exclusive():
            field_errors = validate_address(address)
            if field_errors:
                raise ValidationError("Revisa los datos de envío.", field_errors=field_errors)

            s = self.session
            self._ensure_not_terminal(self._current_order())
            if s.arranging_payment:
                self._reopen_order()

            result = self._remote(lambda: self._orders.set_shipping_address(s.ctx, address), retry=True)
            order = self._expect_order(result)

            s.address_revision += 1
            s.applied_address = address
            s.applied_method_id = None
            s.transition_outcome_unknown = False
            s.intent = None
            s.eligible_methods = []
            s.eligible_revision = None
            s.tracker.clear_from(CheckoutStepV1.ADDRESS)
            s.tracker.mark_satisfied(CheckoutStepV1.ADDRESS)
            self._record(
                EventTypeV1.ADDRESS_SUBMITTED,
                {
                    "order_code": order.code,
                    "country_code": address.country_code.upper(),
                    "postal_code": address.postal_code,
                    "revision": s.address_revision,
                },
            )

            return self._fetch_eligible_locked()

    def fetch_eligible_shipping_methods(self) -> list[ShippingMethodV1]:
        with self._exclusive():
            self._ensure_not_terminal(self._current_order())
            if not self.session.tracker.is_satisfied(CheckoutStepV1.ADDRESS):
                raise OutOfSequenceError("Submit a shipping address before fetching shipping methods")
            return self._fetch_eligible_locked()

    def select_shipping_method(self, method_id: str) -> OrderV1:
        with self._exclusive():
            s = self.session
            if not s.tracker.is_satisfied(CheckoutStepV1.ADDRESS):
                raise OutOfSequenceError("Submit a shipping address before choosing a shipping method")

            self._ensure_not_terminal(self._current_order())

            eligible_ids = {m.id for m in s.eligible_methods}
            if s.eligible_revision != s.address_revision or method_id not in eligible_ids:
                raise StaleSelectionError(
                    "El método de envío seleccionado ya no está disponible. Por favor, elige otro.",
                    code="STALE_SHIPPING_METHOD",
                )

            if s.arranging_payment:
                self._reopen_order()

            result = self._remote(lambda: self._orders.set_shipping_method(s.ctx, method_id), retry=True)
            if isinstance(result, OrderErrorResult) and (
                result.error_code == OrderErrorCode.INELIGIBLE_SHIPPING_METHOD_ERROR
            ):
                # The server no longer agrees with our eligible set; force a refetch.
                s.eligible_revision = None
            order = self._expect_order(result)

            s.intent = None
            s.applied_method_id = method_id
            s.transition_outcome_unknown = False
            s.tracker.clear_from(CheckoutStepV1.SHIPPING)
            s.tracker.mark_satisfied(CheckoutStepV1.SHIPPING)
            if s.tracker.current == CheckoutStepV1.SHIPPING:
                s.tracker.advance(CheckoutStepV1.PAYMENT)
            self.cart.invalidate()

            self._record(
                EventTypeV1.SHIPPING_METHOD_SELECTED,
                {"order_code": order.code, "method_id": method_id, "total_with_tax": order.total_with_tax},
            )
            return order

    def transition_to_arranging_payment(self) -> OrderV1:
        with self._exclusive():
            s = self.session
            if s.tracker.current != CheckoutStepV1.PAYMENT or not s.tracker.is_satisfied(
                CheckoutStepV1.SHIPPING
            ):
                raise OutOfSequenceError("Choose a shipping method before arranging payment")
            if s.arranging_payment:
                raise OutOfSequenceError("The order is already arranging payment")

            self._ensure_not_terminal(self._current_order())

            try:
                result = self._remote(
                    lambda: self._orders.transition_order_to_state(s.ctx, OrderStateV1.ARRANGING_PAYMENT)
                )
            except NetworkError:
                # The server may have applied the transition without us seeing the answer.
                s.transition_outcome_unknown = True
                raise

            if (
                isinstance(result, OrderErrorResult)
                and result.error_code == OrderErrorCode.ORDER_STATE_TRANSITION_ERROR
                and result.from_state == OrderStateV1.ARRANGING_PAYMENT.value
            ):
                if not s.transition_outcome_unknown:
                    logger.warning("Order moved to ArrangingPayment outside session %s", s.session_id)
                    self._conflict(StateConflictError(STATE_CONFLICT_MESSAGE, code="CONCURRENT_TRANSITION"))

                logger.info("Earlier transition of session %s was applied", s.session_id)
                result = self._remote(lambda: self._orders.active_order(s.ctx), retry=True) or _no_active_order()
                order = self._expect_order(result)
                if not self._matches_applied_selection(order):
                    logger.warning(
                        "Order of session %s no longer carries the applied address or shipping method",
                        s.session_id,
                    )
                    self._conflict(StateConflictError(STATE_CONFLICT_MESSAGE, code="CONCURRENT_TRANSITION"))
            else:
                order = self._expect_order(result)

            if order.state != OrderStateV1.ARRANGING_PAYMENT:
                self._conflict(
                    StateConflictError(
                        STATE_CONFLICT_MESSAGE, code=OrderErrorCode.ORDER_STATE_TRANSITION_ERROR.value
                    )
                )

            s.transition_outcome_unknown = False
            s.arranging_payment = True
            self._record(EventTypeV1.ORDER_TRANSITIONED, {"order_code": order.code, "state": order.state.value})
            return order

    def create_payment_intent(self) -> PaymentIntentV1:
        s = self.session
        if not s.intent_lock.acquire(blocking=False):
            raise ConcurrentIntentError("Ya se está preparando el pago de este pedido.")
        try:
            with self._exclusive():
                return self._create_payment_intent_locked()
        finally:
            s.intent_lock.release()

    def confirm_payment(self, client_secret: str, payment_method: str) -> PaymentOutcomeV1:
        with self._exclusive():
            s = self.session
            self._ensure_not_terminal(s.order)
            if s.tracker.current != CheckoutStepV1.PAYMENT or not s.arranging_payment:
                raise OutOfSequenceError("Create a payment intent before confirming the payment")
            if s.pending_action_secret is not None:
                raise OutOfSequenceError("A payment is waiting for the customer to authenticate")
            if s.intent is None or s.intent.client_secret != client_secret:
                raise StaleSelectionError(
                    "Los datos del pago han cambiado. Por favor, inténtalo de nuevo.",
                    code="STALE_PAYMENT_INTENT",
                )
            self._ensure_reconcilable()

            if s.confirm_outcome_unknown:
                # The last confirm never answered; ask before charging again.
                previous = self._gateway_call(lambda: self._gateway.retrieve_payment(client_secret))
                if previous.status != GatewayStatus.FAILED:
                    s.confirm_outcome_unknown = False
                    return self._handle_gateway_result(previous)

            result = self._gateway_call(
                lambda: self._gateway.confirm_payment(
                    client_secret, payment_method, return_url=self.return_url()
                ),
                confirming=True,
            )
            s.confirm_outcome_unknown = False
            return self._handle_gateway_result(result)

    def resume_payment(self, client_secret: str) -> PaymentOutcomeV1:
        """Continue a payment that was suspended for customer authentication."""

        with self._exclusive():
            s = self.session
            self._ensure_not_terminal(s.order)
            if s.pending_action_secret is None:
                raise OutOfSequenceError("No payment is waiting for authentication")
            if s.pending_action_secret != client_secret:
                raise StaleSelectionError(
                    "Los datos del pago han cambiado. Por favor, inténtalo de nuevo.",
                    code="STALE_PAYMENT_INTENT",
                )

            result = self._gateway_call(lambda: self._gateway.retrieve_payment(client_secret))
            if result.status == GatewayStatus.REQUIRES_ACTION:
                return PaymentOutcomeV1(
                    status=PaymentOutcomeStatusV1.REQUIRES_ACTION,
                    order=s.order,
                    redirect_url=result.redirect_url,
                )

            s.pending_action_secret = None
            return self._handle_gateway_result(result)

    def finalize(self) -> OrderV1:
        with self._exclusive():
            s = self.session
            if not s.tracker.is_satisfied(CheckoutStepV1.PAYMENT) or s.order is None:
                raise OutOfSequenceError("The payment must be confirmed before the order is finalized")

            code = s.order.code
            order = self._remote(lambda: self._orders.order_by_code(s.ctx, code), retry=True)
            if order is None or not order.is_completed:
                raise OutOfSequenceError(f"Order {code} is not paid yet")

            s.order = order
            s.tracker.advance(CheckoutStepV1.CONFIRMATION)
            self.cart.clear()

            self._record(EventTypeV1.CHECKOUT_FINALIZED, {"order_code": order.code, "state": order.state.value})
            if self._audit is not None:
                self._audit.finish_attempt(s, "COMPLETED")
            return order

    # Read-only

    def lookup_order(self, code: str) -> OrderV1 | None:
        return lookup_order(self._orders, self.session.ctx, code)

    def status(self, *, refresh: bool = True) -> CheckoutStatusV1:
        """Snapshot for the UI. With `refresh`, an invalidated cart is refetched first."""

        s = self.session
        order = self.cart.peek()
        if refresh:
            try:
                order = self.cart.get()
            except NetworkError:
                logger.warning("Cart refresh failed for session %s; showing last snapshot", s.session_id)

        return CheckoutStatusV1(
            session_id=s.session_id,
            attempt=s.attempt,
            current_step=s.tracker.current,
            satisfied_steps=s.tracker.satisfied,
            order=order or s.order,
            eligible_shipping_methods=list(s.eligible_methods),
            pending_action=s.pending_action_secret is not None,
            failed_payments=list(s.failed_payments),
            last_failure=s.last_failure,
        )

    def return_url(self) -> str:
        code = self.session.order.code if self.session.order else ""
        return f"{self._storefront_url}/pedido/confirmacion?code={quote(code)}"

    # Internals

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        s = self.session
        if not s.lock.acquire(blocking=False):
            raise OutOfSequenceError("Another checkout step is still in progress")
        try:
            s.last_failure = None
            yield
        except CheckoutError as e:
            s.last_failure = e.to_failure()
            raise
        finally:
            s.lock.release()

    def _remote(self, call: Callable[[], T], *, retry: bool = False) -> T:
        """Run an order service call whose response updates session state."""

        s = self.session
        seq = s.next_seq()
        result = _call_order_service(call, retry=retry)

        if seq < s.applied_seq:
            logger.info("Discarding response %s; %s already applied", seq, s.applied_seq)
            self.cart.invalidate()
            self._resync_cart()
            raise StaleSelectionError(
                "Tu pedido se ha actualizado. Por favor, revisa los datos e inténtalo de nuevo.",
                code="STALE_RESPONSE",
            )

        s.applied_seq = seq
        return result

    def _resync_cart(self) -> None:
        try:
            self.cart.get()
        except NetworkError:
            logger.warning("Cart resync failed for session %s", self.session.session_id)

    def _fetch_active_order(self) -> OrderV1 | None:
        return _call_order_service(lambda: self._orders.active_order(self.session.ctx), retry=True)

    def _current_order(self) -> OrderV1:
        """The order of this attempt, loaded from the server once per attempt."""

        s = self.session
        if s.order is not None:
            return s.order

        order = self._remote(lambda: self._orders.active_order(s.ctx), retry=True)
        if order is None:
            raise StateConflictError(STATE_CONFLICT_MESSAGE, code=OrderErrorCode.NO_ACTIVE_ORDER_ERROR.value)

        s.order = order
        s.arranging_payment = order.state == OrderStateV1.ARRANGING_PAYMENT
        self.cart.replace(order)
        if self._audit is not None:
            self._audit.set_order_code(s, order.code)
        return order

    def _matches_applied_selection(self, order: OrderV1) -> bool:
        s = self.session
        if s.applied_address is None or order.shipping_address is None:
            return False
        if order.shipping_method is None or order.shipping_method.id != s.applied_method_id:
            return False
        return _destination(order.shipping_address) == _destination(s.applied_address)

    def _ensure_not_terminal(self, order: OrderV1 | None) -> None:
        if order is not None and order.is_terminal:
            raise OrderTerminalError(order.code)

    def _ensure_reconcilable(self) -> None:
        s = self.session
        if s.order is not None and s.reconciliation_failed_for == s.order.code:
            raise PaymentReconciliationError(
                RECONCILIATION_MESSAGE.format(code=s.order.code), code="RECONCILIATION_PENDING"
            )

    def _expect_order(self, result: OrderResult) -> OrderV1:
        if isinstance(result, OrderErrorResult):
            self._raise_order_error(result)
        return self._apply_order(result)

    def _apply_order(self, order: OrderV1) -> OrderV1:
        s = self.session
        previous = s.order
        if previous is not None and previous.id != order.id:
            logger.warning("Order changed under session %s: %s -> %s", s.session_id, previous.id, order.id)
            self._conflict(StateConflictError(STATE_CONFLICT_MESSAGE, code="ORDER_CHANGED"))

        s.order = order
        self.cart.replace(order)
        return order

    def _raise_order_error(self, result: OrderErrorResult) -> NoReturn:
        code = self.session.order.code if self.session.order else None
        err = translate_order_error(result, order_code=code)
        logger.warning("Order service returned %s: %s", result.error_code.value, result.message)
        if isinstance(err, StateConflictError):
            self._conflict(err)
        raise err

    def _conflict(self, err: StateConflictError) -> NoReturn:
        self._reset_locked("CONFLICT", error_message=err.code)
        raise err

    def _reset_locked(self, status: str, *, error_message: str | None = None) -> None:
        s = self.session
        previous_code = s.order.code if s.order else None
        if self._audit is not None:
            self._audit.finish_attempt(s, status, error_message=error_message)

        s.start_new_attempt()
        s.order = None
        self.cart.invalidate()

        if self._audit is not None:
            self._audit.start_attempt(
                s,
                order_code=previous_code,
                order_service=self._orders.vendor,
                payment_gateway=self._gateway.vendor,
            )
        self._record(EventTypeV1.CHECKOUT_RESET, {"reason": status, "previous_order_code": previous_code})

    def _reopen_order(self) -> None:
        """Move the order back to AddingItems so its address or shipping can change."""

        s = self.session
        result = self._remote(
            lambda: self._orders.transition_order_to_state(s.ctx, OrderStateV1.ADDING_ITEMS)
        )
        self._expect_order(result)
        s.arranging_payment = False
        s.intent = None

    def _fetch_eligible_locked(self) -> list[ShippingMethodV1]:
        s = self.session
        revision = s.address_revision

        methods = self._remote(lambda: self._orders.eligible_shipping_methods(s.ctx), retry=True)
        methods = [m for m in methods if m.eligible]
        s.eligible_methods = methods
        s.eligible_revision = revision
        self._record(
            EventTypeV1.SHIPPING_METHODS_FETCHED,
            {"method_ids": [m.id for m in methods], "revision": revision},
        )

        if not methods:
            raise NoShippingAvailableError()

        if s.tracker.current == CheckoutStepV1.ADDRESS:
            s.tracker.advance(CheckoutStepV1.SHIPPING)
        return methods

    def _create_payment_intent_locked(self) -> PaymentIntentV1:
        s = self.session
        if s.tracker.current != CheckoutStepV1.PAYMENT or not s.arranging_payment or s.order is None:
            raise OutOfSequenceError("The order must be arranging payment before a payment intent is created")
        self._ensure_not_terminal(s.order)
        if s.pending_action_secret is not None:
            raise OutOfSequenceError("A payment is waiting for the customer to authenticate")
        self._ensure_reconcilable()

        order = s.order
        intent = s.intent
        if (
            intent is not None
            and intent.order_code == order.code
            and intent.amount == order.total_with_tax
            and intent.attempt == s.attempt
        ):
            return intent

        key = f"{order.code}:{order.total_with_tax}:{s.attempt}:{s.payment_round}"
        result = self._remote(lambda: self._orders.create_payment_intent(s.ctx, idempotency_key=key))
        if isinstance(result, OrderErrorResult):
            self._raise_order_error(result)

        s.intent = PaymentIntentV1(
            client_secret=result,
            order_code=order.code,
            amount=order.total_with_tax,
            attempt=s.attempt,
        )
        logger.info("Payment intent %s created for order %s", _mask(result), order.code)
        self._record(
            EventTypeV1.PAYMENT_INTENT_CREATED,
            {"order_code": order.code, "amount": order.total_with_tax, "intent_id": s.intent.intent_id},
        )
        return s.intent

    def _gateway_call(self, call: Callable[[], GatewayResult], *, confirming: bool = False) -> GatewayResult:
        try:
            return call()
        except PaymentGatewayError as e:
            logger.warning("Payment gateway call failed: %s", e)
            if confirming:
                self.session.confirm_outcome_unknown = True
            raise NetworkError() from e

    def _handle_gateway_result(self, result: GatewayResult) -> PaymentOutcomeV1:
        s = self.session

        if result.status == GatewayStatus.SUCCEEDED:
            return self._attach_payment(result)

        if result.status == GatewayStatus.REQUIRES_ACTION:
            s.pending_action_secret = s.intent.client_secret if s.intent else None
            self._record(
                EventTypeV1.PAYMENT_REQUIRES_ACTION,
                {"payment_reference": result.payment_reference},
                entity_type=EntityTypeV1.PAYMENT_ATTEMPT,
                entity_id=result.payment_reference,
            )
            return PaymentOutcomeV1(
                status=PaymentOutcomeStatusV1.REQUIRES_ACTION,
                order=s.order,
                redirect_url=result.redirect_url,
            )

        return self._record_decline(result)

    def _record_decline(self, result: GatewayResult) -> PaymentOutcomeV1:
        s = self.session
        code = result.error_code
        instrument = is_instrument_error(code)
        amount = s.intent.amount if s.intent else (s.order.total_with_tax if s.order else 0)

        s.failed_payments.append(
            PaymentV1(
                id=f"failed-{len(s.failed_payments) + 1}",
                method=PAYMENT_METHOD_CODE,
                amount=amount,
                state=PaymentStateV1.DECLINED if instrument else PaymentStateV1.ERROR,
                error_message=result.message or code,
            )
        )
        # A fresh intent is required for the next try.
        s.intent = None
        s.payment_round += 1
        s.pending_action_secret = None

        if self._audit is not None:
            self._audit.record_payment(
                s,
                payment_reference=result.payment_reference,
                amount=amount,
                state=PaymentStateV1.DECLINED.value if instrument else PaymentStateV1.ERROR.value,
                gateway_code=code,
                error_message=result.message,
            )
        self._record(
            EventTypeV1.PAYMENT_DECLINED,
            {"payment_reference": result.payment_reference, "code": code, "retryable": instrument},
            entity_type=EntityTypeV1.PAYMENT_ATTEMPT,
            entity_id=result.payment_reference,
        )

        error = GatewayError(gateway_message(code), code=code, retryable=instrument)
        if not instrument:
            raise error

        failure = error.to_failure()
        s.last_failure = failure
        return PaymentOutcomeV1(status=PaymentOutcomeStatusV1.DECLINED, order=s.order, failure=failure)

    def _attach_payment(self, result: GatewayResult) -> PaymentOutcomeV1:
        s = self.session
        reference = result.payment_reference
        metadata: dict[str, Any] = {"paymentIntentId": reference}

        try:
            attached = self._remote(
                lambda: self._orders.add_payment_to_order(s.ctx, method=PAYMENT_METHOD_CODE, metadata=metadata)
            )
        except CheckoutError as e:
            self._reconciliation_failed(reference, "ORDER_SERVICE_UNREACHABLE", cause=e)

        if isinstance(attached, OrderErrorResult):
            self._reconciliation_failed(reference, attached.error_code.value)

        settled = [p for p in attached.successful_payments() if p.transaction_id]
        if not attached.is_paid or len(settled) != 1:
            self._reconciliation_failed(reference, f"UNEXPECTED_ORDER_STATE_{attached.state.value}")

        s.order = attached
        self.cart.replace(attached)
        s.tracker.mark_satisfied(CheckoutStepV1.PAYMENT)
        s.intent = None
        s.pending_action_secret = None

        payment = settled[0]
        if self._audit is not None:
            self._audit.record_payment(
                s,
                payment_reference=reference,
                amount=payment.amount,
                state=payment.state.value,
            )
        self._record(
            EventTypeV1.PAYMENT_ATTACHED,
            {
                "order_code": attached.code,
                "payment_reference": reference,
                "transaction_id": payment.transaction_id,
                "captured": result.captured,
                "state": attached.state.value,
            },
            entity_type=EntityTypeV1.PAYMENT_ATTEMPT,
            entity_id=reference,
        )
        return PaymentOutcomeV1(status=PaymentOutcomeStatusV1.SUCCEEDED, order=attached)

    def _reconciliation_failed(
        self, reference: str, detail: str, *, cause: Exception | None = None
    ) -> NoReturn:
        s = self.session
        code = s.order.code if s.order else "-"
        s.reconciliation_failed_for = code
        s.pending_action_secret = None
        logger.error(
            "Payment %s succeeded at the gateway but was not attached to order %s: %s",
            reference,
            code,
            detail,
        )

        if self._audit is not None:
            self._audit.record_payment(
                s,
                payment_reference=reference,
                amount=s.intent.amount if s.intent else 0,
                state="UNRECONCILED",
                error_message=detail,
            )
        self._record(
            EventTypeV1.RECONCILIATION_FAILED,
            {"order_code": code, "payment_reference": reference, "detail": detail},
            entity_type=EntityTypeV1.PAYMENT_ATTEMPT,
            entity_id=reference,
        )
        if self._audit is not None:
            self._audit.finish_attempt(s, "RECONCILIATION_FAILED", error_message=detail)

        raise PaymentReconciliationError(RECONCILIATION_MESSAGE.format(code=code), code=detail) from cause

    def _record(
        self,
        event_type: EventTypeV1,
        payload: dict[str, Any],
        *,
        entity_type: EntityTypeV1 = EntityTypeV1.CHECKOUT_ATTEMPT,
        entity_id: str | None = None,
    ) -> None:
        s = self.session
        logger.info("checkout %s attempt %s: %s %s", s.session_id, s.attempt, event_type.value, payload)
        if self._audit is not None:
            self._audit.record_event(s, event_type, payload, entity_type=entity_type, entity_id=entity_id)


def _destination(address: ShippingAddressV1) -> tuple[str, str, str]:
    return (
        address.street_line1.strip().lower(),
        address.postal_code.strip().upper(),
        address.country_code.strip().upper(),
    )


def _no_active_order() -> OrderErrorResult:
    return OrderErrorResult(
        error_code=OrderErrorCode.NO_ACTIVE_ORDER_ERROR,
        message="There is no active Order associated with the current session",
    )


def _call_order_service(call: Callable[[], T], *, retry: bool = False) -> T:
    """Run an order service call, translating transport failures into NetworkError."""

    def attempt() -> T:
        try:
            return call()
        except OrderServiceUnavailableError as e:
            logger.warning("Order service unavailable: %s", e.detail)
            raise NetworkError() from e
        except OrderServiceProtocolError as e:
            logger.error("Order service protocol error: %s", e.detail)
            raise NetworkError(retryable=False) from e

    return retry_idempotent(attempt) if retry else attempt()


def lookup_order(order_service: OrderService, ctx: OrderSessionContext, code: str) -> OrderV1 | None:
    """Read-only confirmation lookup by order code."""

    return _call_order_service(lambda: order_service.order_by_code(ctx, code), retry=True)
