"""Checkout error taxonomy and translation of remote failures into it.

Everything the orchestrator raises is a `CheckoutError`; routers render
`CheckoutError.to_failure()` and never see adapter exceptions.
"""

from __future__ import annotations

from packages.shared.schemas.checkout import (
    CheckoutErrorKindV1,
    CheckoutFailureV1,
    PresentationV1,
)
from services.api.app.services.order_base import OrderErrorCode, OrderErrorResult

GENERIC_ERROR_MESSAGE = "Ha ocurrido un error inesperado. Por favor, intenta de nuevo."
NETWORK_ERROR_MESSAGE = "Error de conexión. Por favor, verifica tu internet e intenta de nuevo."
NO_SHIPPING_MESSAGE = (
    "No hay métodos de envío disponibles para esta dirección. "
    "Por favor, introduce otra dirección de entrega."
)
STATE_CONFLICT_MESSAGE = (
    "Tu pedido ha cambiado mientras finalizabas la compra. Por favor, revisa el carrito y "
    "vuelve a empezar."
)
RECONCILIATION_MESSAGE = (
    "No hemos podido confirmar tu pago. Es posible que el cargo se haya realizado: no "
    "vuelvas a pagar y contacta con atención al cliente indicando el pedido {code}."
)
ORDER_TERMINAL_MESSAGE = "Este pedido ya está cerrado. Puedes consultarlo en la página de confirmación."

# Stripe error codes as shown to customers by the storefront.
GATEWAY_MESSAGES: dict[str, str] = {
    "card_declined": "Tu tarjeta ha sido rechazada. Por favor, usa otra tarjeta.",
    "expired_card": "Tu tarjeta ha expirado. Por favor, usa otra tarjeta.",
    "incorrect_cvc": "El código de seguridad (CVC) es incorrecto.",
    "incorrect_number": "El número de tarjeta es incorrecto.",
    "invalid_expiry_month": "El mes de expiración es inválido.",
    "invalid_expiry_year": "El año de expiración es inválido.",
    "invalid_number": "El número de tarjeta no es válido.",
    "processing_error": "Error al procesar el pago. Inténtalo de nuevo.",
    "insufficient_funds": "Fondos insuficientes. Por favor, usa otra tarjeta.",
    "authentication_required": "Se requiere autenticación adicional.",
    "payment_intent_authentication_failure": "No se pudo verificar tu tarjeta. Inténtalo de nuevo.",
    "default": "Ha ocurrido un error con el pago. Por favor, inténtalo de nuevo.",
}

# Codes caused by the card itself; anything else is a configuration or eligibility
# problem that another card will not fix.
INSTRUMENT_ERROR_CODES = frozenset(
    {
        "card_declined",
        "expired_card",
        "incorrect_cvc",
        "incorrect_number",
        "invalid_cvc",
        "invalid_expiry_month",
        "invalid_expiry_year",
        "invalid_number",
        "processing_error",
        "insufficient_funds",
        "lost_card",
        "stolen_card",
        "generic_decline",
        "do_not_honor",
        "authentication_required",
        "payment_intent_authentication_failure",
    }
)


def gateway_message(code: str | None) -> str:
    return GATEWAY_MESSAGES.get(code or "default", GATEWAY_MESSAGES["default"])


def is_instrument_error(code: str | None) -> bool:
    return code in INSTRUMENT_ERROR_CODES


class CheckoutError(Exception):
    kind: CheckoutErrorKindV1 = CheckoutErrorKindV1.VALIDATION
    presentation: PresentationV1 = PresentationV1.INLINE
    retryable: bool = False

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def to_failure(self) -> CheckoutFailureV1:
        return CheckoutFailureV1(
            kind=self.kind,
            message=self.message,
            retryable=self.retryable,
            presentation=self.presentation,
            code=self.code,
        )


class ValidationError(CheckoutError):
    kind = CheckoutErrorKindV1.VALIDATION
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        field_errors: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=code)
        self.field_errors = field_errors or {}

    def to_failure(self) -> CheckoutFailureV1:
        failure = super().to_failure()
        failure.field_errors = dict(self.field_errors)
        return failure


class NetworkError(CheckoutError):
    kind = CheckoutErrorKindV1.NETWORK
    presentation = PresentationV1.RETRY

    def __init__(self, message: str = NETWORK_ERROR_MESSAGE, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StateConflictError(CheckoutError):
    kind = CheckoutErrorKindV1.STATE_CONFLICT
    presentation = PresentationV1.INTERSTITIAL


class GatewayError(CheckoutError):
    kind = CheckoutErrorKindV1.GATEWAY

    def __init__(self, message: str, *, code: str | None = None, retryable: bool = False) -> None:
        super().__init__(message, code=code)
        self.retryable = retryable


class PaymentReconciliationError(CheckoutError):
    kind = CheckoutErrorKindV1.RECONCILIATION
    presentation = PresentationV1.INTERSTITIAL


class OutOfSequenceError(CheckoutError):
    kind = CheckoutErrorKindV1.OUT_OF_SEQUENCE


class StaleSelectionError(CheckoutError):
    kind = CheckoutErrorKindV1.STALE_SELECTION
    retryable = True


class ConcurrentIntentError(CheckoutError):
    kind = CheckoutErrorKindV1.CONCURRENT_INTENT


class NoShippingAvailableError(CheckoutError):
    kind = CheckoutErrorKindV1.NO_SHIPPING_AVAILABLE

    def __init__(self, message: str = NO_SHIPPING_MESSAGE) -> None:
        super().__init__(message, code="NO_ELIGIBLE_SHIPPING_METHODS")


class OrderTerminalError(CheckoutError):
    kind = CheckoutErrorKindV1.ORDER_TERMINAL
    presentation = PresentationV1.INTERSTITIAL

    def __init__(self, order_code: str) -> None:
        super().__init__(ORDER_TERMINAL_MESSAGE, code=order_code)
        self.order_code = order_code


def translate_order_error(result: OrderErrorResult, *, order_code: str | None = None) -> CheckoutError:
    """Map a named order service error variant to the checkout taxonomy.

    Dispatch is on `error_code` only; server messages are passed through for display.
    """

    code = result.error_code

    if code == OrderErrorCode.VALIDATION_ERROR:
        return ValidationError(result.message, code=code.value)

    if code == OrderErrorCode.INELIGIBLE_SHIPPING_METHOD_ERROR:
        return StaleSelectionError(result.message, code=code.value)

    if code in (
        OrderErrorCode.NO_ACTIVE_ORDER_ERROR,
        OrderErrorCode.ORDER_MODIFICATION_ERROR,
        OrderErrorCode.ORDER_STATE_TRANSITION_ERROR,
        OrderErrorCode.ORDER_PAYMENT_STATE_ERROR,
    ):
        return StateConflictError(STATE_CONFLICT_MESSAGE, code=code.value)

    if code in (OrderErrorCode.PAYMENT_DECLINED_ERROR, OrderErrorCode.PAYMENT_FAILED_ERROR):
        return PaymentReconciliationError(
            RECONCILIATION_MESSAGE.format(code=order_code or "-"), code=code.value
        )

    if code == OrderErrorCode.INELIGIBLE_PAYMENT_METHOD_ERROR:
        return GatewayError(result.message or gateway_message(None), code=code.value)

    return CheckoutError(result.message or GENERIC_ERROR_MESSAGE, code=code.value)
