from __future__ import annotations

import pytest

from packages.shared.schemas.checkout import CheckoutErrorKindV1, PresentationV1
from services.api.app.checkout.errors import (
    GatewayError,
    NetworkError,
    NoShippingAvailableError,
    PaymentReconciliationError,
    StaleSelectionError,
    StateConflictError,
    ValidationError,
    gateway_message,
    is_instrument_error,
    translate_order_error,
)
from services.api.app.services.order_base import OrderErrorCode, OrderErrorResult


@pytest.mark.parametrize(
    ("code", "expected"),
    [
        (OrderErrorCode.VALIDATION_ERROR, ValidationError),
        (OrderErrorCode.INELIGIBLE_SHIPPING_METHOD_ERROR, StaleSelectionError),
        (OrderErrorCode.NO_ACTIVE_ORDER_ERROR, StateConflictError),
        (OrderErrorCode.ORDER_MODIFICATION_ERROR, StateConflictError),
        (OrderErrorCode.ORDER_STATE_TRANSITION_ERROR, StateConflictError),
        (OrderErrorCode.ORDER_PAYMENT_STATE_ERROR, StateConflictError),
        (OrderErrorCode.PAYMENT_FAILED_ERROR, PaymentReconciliationError),
        (OrderErrorCode.PAYMENT_DECLINED_ERROR, PaymentReconciliationError),
        (OrderErrorCode.INELIGIBLE_PAYMENT_METHOD_ERROR, GatewayError),
    ],
)
def test_translate_dispatches_on_error_code(code: OrderErrorCode, expected: type) -> None:
    err = translate_order_error(OrderErrorResult(error_code=code, message="whatever"), order_code="ABC")
    assert isinstance(err, expected)
    assert err.code == code.value


def test_server_validation_message_is_passed_through() -> None:
    result = OrderErrorResult(
        error_code=OrderErrorCode.VALIDATION_ERROR,
        message='The countryCode "XX" was not recognized',
    )
    err = translate_order_error(result)
    assert err.message == 'The countryCode "XX" was not recognized'
    assert err.to_failure().presentation == PresentationV1.INLINE


def test_reconciliation_message_names_the_order() -> None:
    result = OrderErrorResult(error_code=OrderErrorCode.PAYMENT_FAILED_ERROR, message="The payment failed")
    failure = translate_order_error(result, order_code="UC-1001").to_failure()
    assert "UC-1001" in failure.message
    assert failure.kind == CheckoutErrorKindV1.RECONCILIATION
    assert failure.presentation == PresentationV1.INTERSTITIAL
    assert failure.retryable is False


def test_failure_flags_per_kind() -> None:
    assert NetworkError().to_failure().presentation == PresentationV1.RETRY
    assert NetworkError().retryable is True
    assert NetworkError(retryable=False).to_failure().retryable is False

    no_shipping = NoShippingAvailableError().to_failure()
    assert no_shipping.kind == CheckoutErrorKindV1.NO_SHIPPING_AVAILABLE
    assert no_shipping.retryable is False

    conflict = StateConflictError("changed").to_failure()
    assert conflict.presentation == PresentationV1.INTERSTITIAL


def test_validation_failure_carries_field_errors() -> None:
    failure = ValidationError("Revisa", field_errors={"city": "La ciudad es obligatoria"}).to_failure()
    assert failure.field_errors == {"city": "La ciudad es obligatoria"}


def test_gateway_messages_fall_back_to_default() -> None:
    assert gateway_message("card_declined") == "Tu tarjeta ha sido rechazada. Por favor, usa otra tarjeta."
    assert gateway_message("insufficient_funds").startswith("Fondos insuficientes")
    assert gateway_message("something_new") == gateway_message(None)


@pytest.mark.parametrize(
    ("code", "instrument"),
    [
        ("card_declined", True),
        ("insufficient_funds", True),
        ("expired_card", True),
        ("payment_method_not_available", False),
        ("payment_intent_unexpected_state", False),
        (None, False),
    ],
)
def test_instrument_error_classification(code: str | None, instrument: bool) -> None:
    assert is_instrument_error(code) is instrument
