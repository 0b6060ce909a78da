from __future__ import annotations

from pydantic import BaseModel, Field

from packages.shared.schemas.checkout import CheckoutStatusV1
from packages.shared.schemas.order import OrderV1, PaymentIntentV1, ShippingMethodV1


class CheckoutSessionCreateRequest(BaseModel):
    # Cart session token from the storefront; a new cart session is opened when absent.
    order_token: str | None = None
    auth_token: str | None = None


class ShippingMethodsResponse(BaseModel):
    session_id: str
    address_revision: int
    methods: list[ShippingMethodV1] = Field(default_factory=list)


class ShippingMethodSelectRequest(BaseModel):
    method_id: str = Field(..., min_length=1)


class PaymentIntentResponse(BaseModel):
    session_id: str
    client_secret: str
    intent_id: str
    order_code: str
    amount: int
    attempt: int

    @classmethod
    def from_intent(cls, session_id: str, intent: PaymentIntentV1) -> "PaymentIntentResponse":
        return cls(
            session_id=session_id,
            client_secret=intent.client_secret,
            intent_id=intent.intent_id,
            order_code=intent.order_code,
            amount=intent.amount,
            attempt=intent.attempt,
        )


class PaymentConfirmRequest(BaseModel):
    client_secret: str = Field(..., min_length=1)
    # Gateway payment method id collected by the card element, e.g. pm_card_visa.
    payment_method: str = Field(..., min_length=1)


class PaymentResumeRequest(BaseModel):
    client_secret: str = Field(..., min_length=1)


class FinalizeResponse(BaseModel):
    session_id: str
    order_code: str
    order: OrderV1
    status: CheckoutStatusV1
