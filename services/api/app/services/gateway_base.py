from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class PaymentGatewayError(Exception):
    """Base class for payment gateway transport errors."""


class PaymentGatewayUnavailableError(PaymentGatewayError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Payment gateway unreachable: {detail}")
        self.detail = detail


class PaymentGatewayKeyMissingError(PaymentGatewayError):
    def __init__(self) -> None:
        super().__init__(
            "Stripe publishable key not configured. Set UNICLIMA_STRIPE_PUBLISHABLE_KEY "
            "or use UNICLIMA_PAYMENT_GATEWAY=mock."
        )


class GatewayStatus(str, Enum):
    SUCCEEDED = "succeeded"
    REQUIRES_ACTION = "requires_action"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class GatewayResult:
    status: GatewayStatus
    payment_reference: str
    # False when the gateway only authorized the amount (manual capture).
    captured: bool = True
    error_code: str | None = None
    message: str | None = None
    redirect_url: str | None = None


class PaymentGateway(Protocol):
    vendor: str

    def confirm_payment(
        self, client_secret: str, payment_method: str, *, return_url: str | None = None
    ) -> GatewayResult: ...

    def retrieve_payment(self, client_secret: str) -> GatewayResult: ...
