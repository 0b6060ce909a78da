from __future__ import annotations

from services.api.app.services.gateway_base import GatewayResult, GatewayStatus

# Stripe test payment methods and the decline code each one produces.
_DECLINING_METHODS = {
    "pm_card_chargeDeclined": ("card_declined", "Your card was declined."),
    "pm_card_chargeDeclinedInsufficientFunds": ("insufficient_funds", "Your card has insufficient funds."),
    "pm_card_chargeDeclinedExpiredCard": ("expired_card", "Your card has expired."),
    "pm_card_chargeDeclinedIncorrectCvc": ("incorrect_cvc", "Your card's security code is incorrect."),
    "pm_card_chargeDeclinedProcessingError": ("processing_error", "An error occurred while processing your card."),
}
_SUCCEEDING_METHODS = {"pm_card_visa", "pm_card_mastercard", "pm_card_amex", "pm_card_es"}
_ACTION_METHODS = {"pm_card_threeDSecure2Required", "pm_card_authenticationRequired"}


def _reference(client_secret: str) -> str:
    return client_secret.split("_secret_", 1)[0]


class MockPaymentGateway:
    vendor = "MOCK_GATEWAY"

    def __init__(self) -> None:
        self._states: dict[str, GatewayResult] = {}
        self.confirmations: list[tuple[str, str]] = []

    def confirm_payment(
        self, client_secret: str, payment_method: str, *, return_url: str | None = None
    ) -> GatewayResult:
        self.confirmations.append((client_secret, payment_method))
        reference = _reference(client_secret)

        previous = self._states.get(client_secret)
        if previous is not None and previous.status == GatewayStatus.SUCCEEDED:
            return GatewayResult(
                status=GatewayStatus.FAILED,
                payment_reference=reference,
                error_code="payment_intent_unexpected_state",
                message="This PaymentIntent has already succeeded.",
            )

        if payment_method in _SUCCEEDING_METHODS:
            result = GatewayResult(status=GatewayStatus.SUCCEEDED, payment_reference=reference)
        elif payment_method in _ACTION_METHODS:
            result = GatewayResult(
                status=GatewayStatus.REQUIRES_ACTION,
                payment_reference=reference,
                redirect_url=f"https://hooks.stripe.test/3d_secure_2/{reference}?return_url={return_url or ''}",
            )
        elif payment_method in _DECLINING_METHODS:
            code, message = _DECLINING_METHODS[payment_method]
            result = GatewayResult(
                status=GatewayStatus.FAILED,
                payment_reference=reference,
                error_code=code,
                message=message,
            )
        else:
            result = GatewayResult(
                status=GatewayStatus.FAILED,
                payment_reference=reference,
                error_code="payment_method_not_available",
                message=f"No such PaymentMethod: {payment_method!r}",
            )

        self._states[client_secret] = result
        return result

    def complete_action(self, client_secret: str, *, approve: bool = True) -> None:
        """Simulate the customer finishing (or failing) the 3-D Secure challenge."""

        reference = _reference(client_secret)
        if approve:
            self._states[client_secret] = GatewayResult(
                status=GatewayStatus.SUCCEEDED, payment_reference=reference
            )
        else:
            self._states[client_secret] = GatewayResult(
                status=GatewayStatus.FAILED,
                payment_reference=reference,
                error_code="payment_intent_authentication_failure",
                message="The provided PaymentMethod has failed authentication.",
            )

    def retrieve_payment(self, client_secret: str) -> GatewayResult:
        result = self._states.get(client_secret)
        if result is None:
            return GatewayResult(
                status=GatewayStatus.FAILED,
                payment_reference=_reference(client_secret),
                error_code="resource_missing",
                message="No such payment_intent",
            )
        return result
